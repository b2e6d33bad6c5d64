"""Exclusive engagement lock per subject.

State machine: Free -> Held -> Free. Every transition is one conditional
UPDATE on the subject's row and the caller learns from `rowcount` whether it
won; no in-process locking is involved, so any number of workers or
processes sharing the SQLite file observe at most one holder per subject.

Expiry is passive. A Held row whose `expires_at` has passed reads as Free and
can be taken over by any requester; `get_lock` and `purge_expired` rewrite
such rows to Free on the way.

Env:
- BUSY_ENGAGE_MAX_TTL_SECONDS (default: 86400)
- BUSY_ENGAGE_DEFAULT_TTL_SECONDS (default: 0, no expiry)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from . import metrics
from .clock import MS_IN_SECOND, LocalTimeSource, TimeSource
from .errors import (
    BUSY_E_BAD_REQUEST,
    BUSY_E_NOT_FOUND,
    BUSY_E_NOT_HELD,
    BUSY_E_NOT_OWNER,
    BUSY_W_HISTORY_RECORD_FAILED,
    BUSY_W_PROPAGATION_FAILED,
    busy_error,
    require_id,
)
from .history import EngagementHistoryRecorder
from .models import LOCK_HELD, AcquireResult, EngagementLockRecord, ReleaseOutcome, ReleaseResult
from .ops_stats import OPS_STATS
from .propagation import AvailabilityPropagator
from .store import BusyStore

logger = logging.getLogger("busy_gate.engagement")

ACQUIRED = "ACQUIRED"
REFRESHED = "REFRESHED"
ALREADY_HELD = "ALREADY_HELD"

_RELEASE_ATTEMPTS = 3


@dataclass(frozen=True)
class EngagementConfig:
    max_ttl_ms: int = 24 * 3600 * MS_IN_SECOND
    default_ttl_ms: int = 0

    @classmethod
    def from_env(cls) -> "EngagementConfig":
        def _seconds(name: str, default_ms: int) -> int:
            try:
                return int(float(os.getenv(name, str(default_ms / MS_IN_SECOND))) * MS_IN_SECOND)
            except (ValueError, OverflowError):
                return default_ms

        max_ttl = _seconds("BUSY_ENGAGE_MAX_TTL_SECONDS", cls.max_ttl_ms)
        default_ttl = _seconds("BUSY_ENGAGE_DEFAULT_TTL_SECONDS", cls.default_ttl_ms)
        max_ttl = max(MS_IN_SECOND, min(max_ttl, 30 * 24 * 3600 * MS_IN_SECOND))
        default_ttl = max(0, min(default_ttl, max_ttl))
        return cls(max_ttl_ms=max_ttl, default_ttl_ms=default_ttl)


class EngagementLock:
    def __init__(
        self,
        store: BusyStore,
        propagator: Optional[AvailabilityPropagator] = None,
        recorder: Optional[EngagementHistoryRecorder] = None,
        config: Optional[EngagementConfig] = None,
        clock: Optional[TimeSource] = None,
    ):
        self.store = store
        self.propagator = propagator or AvailabilityPropagator()
        self.clock = clock or LocalTimeSource()
        self.recorder = recorder or EngagementHistoryRecorder(store, clock=self.clock)
        self.config = config or EngagementConfig.from_env()

    def _expires_at(self, now_ms: int, ttl_ms: Optional[int]) -> Optional[int]:
        if ttl_ms is None:
            ttl_ms = self.config.default_ttl_ms
        ttl_ms = int(ttl_ms)
        if ttl_ms <= 0:
            return None
        return now_ms + min(ttl_ms, self.config.max_ttl_ms)

    def _propagate(self, subject: str, busy: bool, warnings: List[str]) -> str:
        outcome = self.propagator.dispatch(subject, busy)
        if outcome == "failed":
            warnings.append(BUSY_W_PROPAGATION_FAILED)
        return outcome

    def try_acquire(
        self,
        subject: str,
        requester: str,
        ttl_ms: Optional[int] = None,
        context: Optional[str] = None,
    ) -> AcquireResult:
        """Take the subject's lock for `requester`.

        Contention is a normal outcome (`acquired=False`, code ALREADY_HELD),
        not an error.
        """
        subject = require_id(subject, "subject")
        requester = require_id(requester, "requester")
        now = self.clock.now_ms()

        with self.store.connection("engage_try") as conn:
            self.store.ensure_lock_row(conn, subject)
            # A refresh only overwrites expiry when the caller supplied a TTL.
            refresh_exp = self._expires_at(now, ttl_ms) if ttl_ms is not None else None
            if self.store.refresh_held_by(conn, subject, requester, now, refresh_exp, context):
                code = REFRESHED
            elif self.store.cas_acquire(conn, subject, requester, now, self._expires_at(now, ttl_ms), context):
                code = ACQUIRED
            else:
                code = ALREADY_HELD
            current = self.store.get_lock(conn, subject)

        OPS_STATS.record_acquire(code)
        metrics.record_engagement("try", code.lower())

        if code == ALREADY_HELD or current is None:
            logger.info("engage contention subject=%s requester=%s", subject, requester)
            return AcquireResult(
                acquired=False,
                code=ALREADY_HELD,
                subject=subject,
                holder=current.holder if current else None,
                acquired_at_ms=current.acquired_at_ms if current else None,
                expires_at_ms=current.expires_at_ms if current else None,
                context=current.context if current else None,
            )

        warnings: List[str] = []
        propagation = self._propagate(subject, True, warnings)
        logger.info("engage %s subject=%s requester=%s", code.lower(), subject, requester)
        return AcquireResult(
            acquired=True,
            code=code,
            subject=subject,
            holder=current.holder,
            acquired_at_ms=current.acquired_at_ms,
            expires_at_ms=current.expires_at_ms,
            context=current.context,
            propagation=propagation,
            warnings=warnings,
        )

    def heartbeat(self, subject: str, requester: str, extend_ms: int) -> int:
        """Push the holder's expiry to now + extend_ms and return it."""
        subject = require_id(subject, "subject")
        requester = require_id(requester, "requester")
        extend_ms = int(extend_ms)
        if extend_ms <= 0:
            raise busy_error(BUSY_E_BAD_REQUEST, "extend_ms must be positive", extend_ms=extend_ms)

        now = self.clock.now_ms()
        expires_at = now + min(extend_ms, self.config.max_ttl_ms)
        with self.store.connection("engage_heartbeat") as conn:
            ok = self.store.extend_hold(conn, subject, requester, now, expires_at)
        metrics.record_engagement("heartbeat", "ok" if ok else "not_owner")
        if not ok:
            raise busy_error(BUSY_E_NOT_OWNER, "requester does not hold this lock", subject=subject)
        return expires_at

    def release(
        self,
        subject: str,
        requester: str,
        outcome: Optional[ReleaseOutcome] = None,
        record_history: bool = True,
    ) -> ReleaseResult:
        subject = require_id(subject, "subject")
        requester = require_id(requester, "requester")
        outcome = outcome or ReleaseOutcome()

        captured: Optional[EngagementLockRecord] = None
        now = self.clock.now_ms()
        with self.store.connection("engage_release") as conn:
            for _ in range(_RELEASE_ATTEMPTS):
                now = self.clock.now_ms()
                lock = self.store.get_lock(conn, subject)
                if lock is None:
                    self._release_failed("not_found")
                    raise busy_error(BUSY_E_NOT_FOUND, "no engagement lock for subject", subject=subject)
                if not lock.is_held(now):
                    self._release_failed("not_held")
                    raise busy_error(BUSY_E_NOT_HELD, "subject is not engaged", subject=subject)
                if lock.holder != requester:
                    self._release_failed("not_owner")
                    raise busy_error(BUSY_E_NOT_OWNER, "requester does not hold this lock", subject=subject)
                if self.store.cas_release(conn, subject, lock.version):
                    captured = lock
                    break
                # The holder refreshed between our read and write; read again.

        if captured is None:
            self._release_failed("conflict")
            raise busy_error(BUSY_E_NOT_HELD, "lock changed concurrently, retry", subject=subject)

        OPS_STATS.record_release("released")
        metrics.record_engagement("release", "released")

        warnings: List[str] = []
        propagation = self._propagate(subject, False, warnings)

        history = None
        if record_history:
            try:
                history = self.recorder.record(
                    subject=subject,
                    holder=requester,
                    started_at_ms=captured.acquired_at_ms,
                    ended_at_ms=now,
                    value=outcome.value,
                    notes=outcome.notes,
                    context=captured.context,
                    metadata=outcome.metadata,
                )
            except Exception as e:  # the lock is already free; history loss is reported, not raised
                logger.warning("history record failed subject=%s holder=%s: %s", subject, requester, e)
                OPS_STATS.record_history_failure()
                warnings.append(BUSY_W_HISTORY_RECORD_FAILED)

        logger.info("engage released subject=%s requester=%s", subject, requester)
        return ReleaseResult(
            subject=subject,
            released_at_ms=now,
            context=captured.context,
            history=history,
            propagation=propagation,
            warnings=warnings,
        )

    def _release_failed(self, reason: str) -> None:
        OPS_STATS.record_release(reason)
        metrics.record_engagement("release", reason)

    def get_lock(self, subject: str) -> EngagementLockRecord:
        """Current lock state; an expired hold is cleared and reported Free."""
        now = self.clock.now_ms()
        cleared = False
        with self.store.connection("engage_status") as conn:
            lock = self.store.get_lock(conn, subject)
            if lock is None:
                return EngagementLockRecord(subject=subject)
            if lock.status == LOCK_HELD and lock.is_expired(now):
                cleared = self.store.cas_release(conn, subject, lock.version)
                lock = self.store.get_lock(conn, subject) or EngagementLockRecord(subject=subject)
        if cleared:
            logger.info("expired engagement cleared subject=%s", subject)
            self.propagator.dispatch(subject, False)
        return lock

    def list_busy(self) -> List[EngagementLockRecord]:
        now = self.clock.now_ms()
        with self.store.connection("engage_busy") as conn:
            return self.store.held_locks(conn, now)

    def purge_expired(self) -> List[str]:
        """Clear every expired hold; returns the subjects freed."""
        now = self.clock.now_ms()
        freed: List[str] = []
        with self.store.connection("engage_purge") as conn:
            for lock in self.store.expired_locks(conn, now):
                if self.store.cas_release(conn, lock.subject, lock.version):
                    freed.append(lock.subject)
        for subject in freed:
            self.propagator.dispatch(subject, False)
        if freed:
            logger.info("purged %s expired engagement(s)", len(freed))
        return freed
