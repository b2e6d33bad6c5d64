"""Busy allocation ledger.

Pre-grants a bounded busy interval out of the subject's daily quota and keeps
an interval record per grant. The ledger never looks at the engagement lock.

Allocation is a read-check-write sequence (window state, remaining quota,
new record, new cumulative) and therefore runs as one BEGIN IMMEDIATE
transaction; two concurrent allocations for the same subject serialize and
can never jointly exceed the quota.
"""

from __future__ import annotations

import logging
import secrets
from typing import List, Optional

from . import metrics
from .clock import TimeSource
from .errors import (
    BUSY_E_BAD_REQUEST,
    BUSY_E_NOT_FOUND,
    BUSY_E_QUOTA_EXCEEDED,
    BUSY_E_WINDOW_DISABLED,
    busy_error,
    require_id,
)
from .models import AllocationGrant, BusyAllocationRecord, QuotaStatus
from .ops_stats import OPS_STATS
from .quota import QuotaWindow
from .store import BusyStore

logger = logging.getLogger("busy_gate.ledger")


def _record_allocation(outcome: str) -> None:
    OPS_STATS.record_allocation(outcome)
    metrics.record_allocation(outcome)


class BusyAllocationLedger:
    def __init__(
        self,
        store: BusyStore,
        quota: QuotaWindow,
        clock: Optional[TimeSource] = None,
    ):
        self.store = store
        self.quota = quota
        self.clock = clock or quota.clock

    def allocate(self, subject: str, requester: str, requested_ms: int) -> AllocationGrant:
        """Grant up to `requested_ms` of busy time from the subject's quota.

        Raises BusyGateError with WINDOW_DISABLED, QUOTA_EXCEEDED or
        BAD_REQUEST. A QUOTA_EXCEEDED failure still persists the disabled
        window it causes.
        """
        subject = require_id(subject, "subject")
        requester = require_id(requester, "requester")
        requested_ms = int(requested_ms)
        if requested_ms <= 0:
            raise busy_error(BUSY_E_BAD_REQUEST, "requested duration must be positive", requested_ms=requested_ms)

        now = self.clock.now_ms()
        exceeded_reenable_at: Optional[int] = None
        grant: Optional[AllocationGrant] = None

        with self.store.transaction("ledger_allocate") as conn:
            w = self.quota.ensure_in(conn, subject, now)
            if not w.enabled:
                _record_allocation("window_disabled")
                raise busy_error(
                    BUSY_E_WINDOW_DISABLED,
                    "busy quota window is disabled",
                    subject=subject,
                    reenable_at_ms=w.reenable_at_ms,
                )

            remaining = self.quota.remaining_of(w)
            if remaining <= 0:
                # Commit the disable before failing; do not raise inside the transaction.
                self.quota.disable_in(conn, w, now)
                exceeded_reenable_at = w.reenable_at_ms
            else:
                granted = min(remaining, requested_ms)
                record = BusyAllocationRecord(
                    allocation_id=f"alloc_{secrets.token_urlsafe(12)}",
                    subject=subject,
                    granted_by=requester,
                    start_at_ms=now,
                    end_at_ms=now + granted,
                    duration_ms=granted,
                )
                self.store.insert_allocation(conn, record)
                self.quota.add_busy_in(conn, w, granted, now)
                grant = AllocationGrant(
                    record=record,
                    granted_ms=granted,
                    remaining_ms=self.quota.remaining_of(w),
                )

        if grant is None:
            _record_allocation("quota_exceeded")
            logger.info("quota exceeded subject=%s requester=%s", subject, requester)
            raise busy_error(
                BUSY_E_QUOTA_EXCEEDED,
                "busy quota exhausted for the current window",
                subject=subject,
                reenable_at_ms=exceeded_reenable_at,
            )

        _record_allocation("granted")
        logger.info(
            "allocated subject=%s requester=%s granted_ms=%s remaining_ms=%s",
            subject, requester, grant.granted_ms, grant.remaining_ms,
        )
        return grant

    def release_allocation(self, allocation_id: str) -> BusyAllocationRecord:
        """End an allocation early and recompute the subject's usage.

        An allocation whose end already passed is returned unchanged.
        """
        allocation_id = require_id(allocation_id, "allocation_id")
        now = self.clock.now_ms()
        with self.store.transaction("ledger_release") as conn:
            rec = self.store.get_allocation(conn, allocation_id)
            if rec is None:
                raise busy_error(BUSY_E_NOT_FOUND, "unknown allocation", allocation_id=allocation_id)
            if rec.end_at_ms is not None and rec.end_at_ms <= now:
                return rec

            duration = max(0, now - rec.start_at_ms)
            self.store.finalize_allocation(conn, allocation_id, now, duration)
            rec.end_at_ms = now
            rec.duration_ms = duration
            rec.released = True

            w = self.quota.ensure_in(conn, rec.subject, now)
            intervals = self.store.allocations_since(conn, rec.subject, w.window_start_ms)
            self.quota.recompute_in(conn, w, intervals, now)

        logger.info("allocation released early id=%s duration_ms=%s", allocation_id, rec.duration_ms)
        return rec

    def quota_status(self, subject: str) -> QuotaStatus:
        """Fresh quota numbers, recomputed from the ledger."""
        now = self.clock.now_ms()
        with self.store.transaction("ledger_status") as conn:
            w = self.quota.ensure_in(conn, subject, now)
            intervals = self.store.allocations_since(conn, subject, w.window_start_ms)
            w = self.quota.recompute_in(conn, w, intervals, now)
            return self.quota.status_of(w)

    def list_allocations(self, subject: str, limit: int = 50) -> List[BusyAllocationRecord]:
        limit = max(1, min(int(limit), 500))
        with self.store.connection("ledger_list") as conn:
            return self.store.recent_allocations(conn, subject, limit)
