"""Availability propagation into collaborator listing records.

Collaborators keep a denormalized `busy` flag on every listing they own for a
subject. The engagement lock is authoritative; these flags are eventually
consistent copies. Pushes are best-effort: a failed push never fails the lock
transition that triggered it. Failures are logged, counted and remembered as
drift so an operator (or `reconcile`) can re-push the authoritative value.

Env:
- BUSY_PROPAGATION_MODE: async|inline|off (default async)
- BUSY_PROPAGATION_WORKERS (default 1; one worker keeps pushes in order)
- BUSY_LISTING_SINK: null|sqlite|http (default null)
- BUSY_LISTING_DB / BUSY_LISTING_TABLE: sqlite sink target
- BUSY_LISTING_URL / BUSY_LISTING_TIMEOUT_SECONDS: http sink target
"""

from __future__ import annotations

import abc
import json
import logging
import os
import re
import sqlite3
import threading
import time
import urllib.error
import urllib.request
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional, Set

from . import metrics
from .ops_stats import OPS_STATS

logger = logging.getLogger("busy_gate.propagation")

MODE_ASYNC = "async"
MODE_INLINE = "inline"
MODE_OFF = "off"

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_RETRYABLE_HTTP = {408, 429, 500, 502, 503, 504}


class ListingSink(abc.ABC):
    """Target that holds the denormalized busy flag."""

    @abc.abstractmethod
    def update_busy_flag(self, subject: str, busy: bool) -> int:
        """Set `busy` on every listing of `subject`; return the updated count."""
        raise NotImplementedError


class NullListingSink(ListingSink):
    """No collaborator listings configured."""

    def update_busy_flag(self, subject: str, busy: bool) -> int:
        return 0


class SQLiteListingSink(ListingSink):
    """Bulk-update a collaborator listing table keyed by subject."""

    def __init__(self, db_path: str, table: str = "listings", subject_column: str = "subject",
                 timeout_s: float = 5.0, create: bool = True):
        if not _IDENT_RE.match(table) or not _IDENT_RE.match(subject_column):
            raise ValueError("invalid listing table/column name")
        self.db_path = str(db_path)
        self.table = table
        self.subject_column = subject_column
        self.timeout_s = float(timeout_s)
        if create:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            try:
                with conn:
                    conn.execute(f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        listing_id TEXT PRIMARY KEY,
                        {self.subject_column} TEXT NOT NULL,
                        busy INTEGER NOT NULL DEFAULT 0
                    )
                    """)
            finally:
                conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=self.timeout_s)

    def update_busy_flag(self, subject: str, busy: bool) -> int:
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    f"UPDATE {self.table} SET busy = ? WHERE {self.subject_column} = ?",
                    (1 if busy else 0, subject),
                )
                return int(cur.rowcount)
        finally:
            conn.close()


class HttpListingSink(ListingSink):
    """POST `{"subject", "busy"}` to a collaborator endpoint.

    Retries network errors and retryable HTTP statuses with bounded backoff.
    A JSON response body may report `{"updated": n}`.
    """

    def __init__(self, url: str, *, timeout_s: float = 5.0, max_attempts: int = 3):
        self.url = url
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))

    def update_busy_flag(self, subject: str, busy: bool) -> int:
        payload = json.dumps({"subject": subject, "busy": bool(busy)}, separators=(",", ":")).encode("utf-8")
        last_err: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            req = urllib.request.Request(
                self.url,
                data=payload,
                headers={"Content-Type": "application/json", "X-Busy-Attempt": str(attempt)},
                method="POST",
            )
            retryable = True
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                    body = resp.read()
                return _updated_count(body)
            except urllib.error.HTTPError as e:
                retryable = int(e.code or 0) in _RETRYABLE_HTTP
                last_err = e
            except (urllib.error.URLError, OSError) as e:
                last_err = e

            if attempt < self.max_attempts and retryable:
                time.sleep(min(2.0, 0.25 * (2 ** (attempt - 1))))
            else:
                break

        raise RuntimeError(f"listing push failed after {attempt} attempt(s): {last_err}") from last_err


def _updated_count(body: bytes) -> int:
    if not body:
        return 0
    try:
        obj = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return 0
    if isinstance(obj, dict):
        try:
            return int(obj.get("updated", 0))
        except (TypeError, ValueError):
            return 0
    return 0


def build_listing_sink_from_env() -> ListingSink:
    """Build the listing sink from env vars.

    Env:
      BUSY_LISTING_SINK: null|sqlite|http (default null)
      BUSY_LISTING_DB: required if sqlite
      BUSY_LISTING_TABLE: optional (default listings)
      BUSY_LISTING_URL: required if http
      BUSY_LISTING_TIMEOUT_SECONDS: optional, float
    """
    kind = os.getenv("BUSY_LISTING_SINK", "null").strip().lower() or "null"
    if kind == "sqlite":
        db = os.getenv("BUSY_LISTING_DB", "").strip()
        if not db:
            raise ValueError("BUSY_LISTING_DB is required when BUSY_LISTING_SINK=sqlite")
        table = os.getenv("BUSY_LISTING_TABLE", "listings").strip() or "listings"
        return SQLiteListingSink(db, table=table)
    if kind == "http":
        url = os.getenv("BUSY_LISTING_URL", "").strip()
        if not url:
            raise ValueError("BUSY_LISTING_URL is required when BUSY_LISTING_SINK=http")
        timeout_s = float(os.getenv("BUSY_LISTING_TIMEOUT_SECONDS", "5") or "5")
        return HttpListingSink(url, timeout_s=timeout_s)
    if kind not in ("null", "none", ""):
        raise ValueError(f"unknown BUSY_LISTING_SINK: {kind}")
    return NullListingSink()


@dataclass(frozen=True)
class PropagationConfig:
    mode: str = MODE_ASYNC
    workers: int = 1

    @classmethod
    def from_env(cls) -> "PropagationConfig":
        mode = os.getenv("BUSY_PROPAGATION_MODE", cls.mode).strip().lower() or cls.mode
        if mode not in (MODE_ASYNC, MODE_INLINE, MODE_OFF):
            mode = cls.mode
        try:
            workers = int(os.getenv("BUSY_PROPAGATION_WORKERS", str(cls.workers)))
        except ValueError:
            workers = cls.workers
        workers = max(1, min(workers, 16))
        return cls(mode=mode, workers=workers)


@dataclass(frozen=True)
class PropagationResult:
    subject: str
    busy: bool
    ok: bool
    updated: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, object]:
        d: Dict[str, object] = {"subject": self.subject, "busy": self.busy, "ok": self.ok, "updated": self.updated}
        if self.error:
            d["error"] = self.error
        return d


class AvailabilityPropagator:
    def __init__(self, sink: Optional[ListingSink] = None, config: Optional[PropagationConfig] = None):
        self.sink = sink or NullListingSink()
        self.config = config or PropagationConfig.from_env()
        self._lock = threading.Lock()
        # subject -> busy flag that failed to land
        self._drift: Dict[str, bool] = {}
        self._pending: Set[Future] = set()
        self._executor: Optional[ThreadPoolExecutor] = None

    def set_busy(self, subject: str, is_busy: bool) -> PropagationResult:
        """Push the flag synchronously. Never raises."""
        try:
            updated = int(self.sink.update_busy_flag(subject, bool(is_busy)))
        except Exception as e:  # sinks are collaborator code; any failure is drift
            logger.warning("listing propagation failed subject=%s busy=%s: %s", subject, is_busy, e)
            with self._lock:
                self._drift[subject] = bool(is_busy)
            OPS_STATS.record_propagation_failure()
            metrics.record_propagation(bool(is_busy), ok=False)
            return PropagationResult(subject=subject, busy=bool(is_busy), ok=False, error=f"{type(e).__name__}: {e}")

        with self._lock:
            self._drift.pop(subject, None)
        metrics.record_propagation(bool(is_busy), ok=True)
        logger.debug("listing propagation subject=%s busy=%s updated=%s", subject, is_busy, updated)
        return PropagationResult(subject=subject, busy=bool(is_busy), ok=True, updated=updated)

    def dispatch(self, subject: str, is_busy: bool) -> str:
        """Out-of-band push used by lock transitions.

        Returns "scheduled", "ok", "failed" or "disabled".
        """
        mode = self.config.mode
        if mode == MODE_OFF:
            return "disabled"
        if mode == MODE_INLINE:
            return "ok" if self.set_busy(subject, is_busy).ok else "failed"

        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.workers, thread_name_prefix="busy-propagate"
                )
            try:
                fut = self._executor.submit(self.set_busy, subject, bool(is_busy))
            except RuntimeError as e:
                # Executor already shut down.
                logger.warning("listing propagation not scheduled subject=%s: %s", subject, e)
                self._drift[subject] = bool(is_busy)
                OPS_STATS.record_propagation_failure()
                return "failed"
            self._pending.add(fut)
        fut.add_done_callback(self._forget)
        return "scheduled"

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._pending.discard(fut)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for scheduled pushes; True when none are left pending."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def drifted_subjects(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._drift)

    def reconcile(self, desired: Mapping[str, bool]) -> Dict[str, PropagationResult]:
        """Re-push authoritative flags synchronously."""
        results: Dict[str, PropagationResult] = {}
        for subject, busy in desired.items():
            results[subject] = self.set_busy(subject, bool(busy))
        failed = sum(1 for r in results.values() if not r.ok)
        logger.info("listing reconcile subjects=%s failed=%s", len(results), failed)
        return results

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait_for_pending)
