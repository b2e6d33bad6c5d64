"""Rolling daily busy quota per subject.

A subject may be busy for at most `max_busy_ms` inside a rolling
`window_ms` period. Reaching the maximum disables the window and starts a
cooldown (`reenable_at`); the window only re-opens through `recompute` (once
usage falls back under the maximum and the cooldown passed) or through an
explicit `manual_enable` after the cooldown.

Env:
- BUSY_QUOTA_MAX_BUSY_HOURS (default: 8)
- BUSY_QUOTA_WINDOW_HOURS (default: 24)
- BUSY_QUOTA_BLOCK_HOURS (default: 15)
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Iterable, Optional

from .clock import MS_IN_HOUR, LocalTimeSource, TimeSource
from .errors import BUSY_E_INTERNAL, BUSY_E_NOT_FOUND, BUSY_E_TOO_EARLY, busy_error
from .models import BusyAllocationRecord, QuotaStatus, QuotaWindowRecord
from .store import BusyStore

logger = logging.getLogger("busy_gate.quota")

MAX_BUSY_MS = 8 * MS_IN_HOUR
WINDOW_MS = 24 * MS_IN_HOUR
BLOCK_DURATION_MS = 15 * MS_IN_HOUR


@dataclass(frozen=True)
class QuotaPolicy:
    max_busy_ms: int = MAX_BUSY_MS
    window_ms: int = WINDOW_MS
    block_duration_ms: int = BLOCK_DURATION_MS

    @classmethod
    def from_env(cls) -> "QuotaPolicy":
        def _hours(name: str, default_ms: int) -> int:
            raw = os.getenv(name)
            if raw is None or not raw.strip():
                return default_ms
            try:
                return int(float(raw) * MS_IN_HOUR)
            except (ValueError, OverflowError):
                return default_ms

        max_busy = _hours("BUSY_QUOTA_MAX_BUSY_HOURS", cls.max_busy_ms)
        window = _hours("BUSY_QUOTA_WINDOW_HOURS", cls.window_ms)
        block = _hours("BUSY_QUOTA_BLOCK_HOURS", cls.block_duration_ms)
        # Clamp to sensible bounds; the quota can never exceed its own window.
        window = max(MS_IN_HOUR, min(window, 30 * 24 * MS_IN_HOUR))
        max_busy = max(1, min(max_busy, window))
        block = max(0, min(block, 30 * 24 * MS_IN_HOUR))
        return cls(max_busy_ms=max_busy, window_ms=window, block_duration_ms=block)


class QuotaWindow:
    """Quota accounting over `BusyStore.quota_windows`.

    Public methods open their own transaction. The `*_in` variants take an
    open connection so the allocation ledger can compose them inside a
    single BEGIN IMMEDIATE block.
    """

    def __init__(
        self,
        store: BusyStore,
        policy: Optional[QuotaPolicy] = None,
        clock: Optional[TimeSource] = None,
    ):
        self.store = store
        self.policy = policy or QuotaPolicy.from_env()
        self.clock = clock or LocalTimeSource()

    # ---------------------------
    # Connection-scoped primitives
    # ---------------------------

    def ensure_in(self, conn: sqlite3.Connection, subject: str, now_ms: int) -> QuotaWindowRecord:
        w = self.store.get_window(conn, subject)
        if w is None:
            w = QuotaWindowRecord(subject=subject, window_start_ms=now_ms)
            if self.store.insert_window(conn, w):
                return w
            # Lost a creation race outside a transaction; use the winner's row.
            w = self.store.get_window(conn, subject)
            if w is None:
                raise busy_error(BUSY_E_INTERNAL, "quota window vanished after insert", subject=subject)

        if now_ms - w.window_start_ms >= self.policy.window_ms:
            w.cumulative_busy_ms = 0
            w.window_start_ms = now_ms
            if w.reenable_at_ms is not None and w.reenable_at_ms > now_ms:
                w.enabled = False
            else:
                w.enabled = True
                w.reenable_at_ms = None
            self.store.save_window(conn, w)
            logger.debug("quota window reset subject=%s enabled=%s", subject, w.enabled)
        return w

    def remaining_of(self, w: QuotaWindowRecord) -> int:
        return max(0, self.policy.max_busy_ms - int(w.cumulative_busy_ms))

    def disable_in(self, conn: sqlite3.Connection, w: QuotaWindowRecord, now_ms: int) -> None:
        w.enabled = False
        w.reenable_at_ms = now_ms + self.policy.block_duration_ms
        self.store.save_window(conn, w)
        logger.info("quota window disabled subject=%s reenable_at_ms=%s", w.subject, w.reenable_at_ms)

    def add_busy_in(self, conn: sqlite3.Connection, w: QuotaWindowRecord, granted_ms: int, now_ms: int) -> None:
        w.cumulative_busy_ms = min(self.policy.max_busy_ms, max(0, w.cumulative_busy_ms + int(granted_ms)))
        if w.cumulative_busy_ms >= self.policy.max_busy_ms:
            self.disable_in(conn, w, now_ms)
        else:
            self.store.save_window(conn, w)

    def recompute_in(
        self,
        conn: sqlite3.Connection,
        w: QuotaWindowRecord,
        intervals: Iterable[BusyAllocationRecord],
        now_ms: int,
    ) -> QuotaWindowRecord:
        total = sum(rec.effective_duration_ms() for rec in intervals)
        w.cumulative_busy_ms = max(0, min(int(total), self.policy.max_busy_ms))

        if w.cumulative_busy_ms >= self.policy.max_busy_ms:
            w.enabled = False
            if w.reenable_at_ms is None:
                w.reenable_at_ms = now_ms + self.policy.block_duration_ms
        elif w.reenable_at_ms is not None and w.reenable_at_ms <= now_ms:
            w.enabled = True
            w.reenable_at_ms = None

        self.store.save_window(conn, w)
        return w

    def status_of(self, w: QuotaWindowRecord) -> QuotaStatus:
        return QuotaStatus(
            subject=w.subject,
            busy_ms_used=int(w.cumulative_busy_ms),
            remaining_ms=self.remaining_of(w),
            enabled=bool(w.enabled),
            reenable_at_ms=w.reenable_at_ms,
            window_start_ms=int(w.window_start_ms),
            max_busy_ms=self.policy.max_busy_ms,
        )

    # ---------------------------
    # Public operations
    # ---------------------------

    def ensure_window(self, subject: str) -> QuotaWindowRecord:
        """Create or roll over the subject's window and return it."""
        now = self.clock.now_ms()
        with self.store.transaction("quota_ensure") as conn:
            return self.ensure_in(conn, subject, now)

    def remaining_ms(self, subject: str) -> int:
        return self.remaining_of(self.ensure_window(subject))

    def recompute(self, subject: str, intervals: Iterable[BusyAllocationRecord]) -> QuotaWindowRecord:
        """Overwrite cumulative usage from the given intervals."""
        now = self.clock.now_ms()
        intervals = list(intervals)
        with self.store.transaction("quota_recompute") as conn:
            w = self.ensure_in(conn, subject, now)
            return self.recompute_in(conn, w, intervals, now)

    def manual_enable(self, subject: str) -> QuotaWindowRecord:
        now = self.clock.now_ms()
        with self.store.transaction("quota_enable") as conn:
            w = self.store.get_window(conn, subject)
            if w is None:
                raise busy_error(BUSY_E_NOT_FOUND, "no quota window for subject", subject=subject)
            if w.reenable_at_ms is not None and w.reenable_at_ms > now:
                raise busy_error(
                    BUSY_E_TOO_EARLY,
                    "cooldown still active",
                    subject=subject,
                    reenable_at_ms=int(w.reenable_at_ms),
                    wait_ms=int(w.reenable_at_ms - now),
                )
            w.enabled = True
            w.reenable_at_ms = None
            self.store.save_window(conn, w)
        logger.info("quota window manually enabled subject=%s", subject)
        return w

    def status(self, subject: str) -> QuotaStatus:
        return self.status_of(self.ensure_window(subject))
