"""BusyGate: one object wiring the store, quota, ledger, lock, propagator and
history recorder together.

The HTTP server and the CLI both drive the system through this facade. The
allocation ledger and the engagement lock stay independent: acquiring a lock
does not consume quota, and an allocation does not take the lock.

Env:
- BUSY_DB_PATH (default: busy_gate.db)
- plus the component variables read by each `*.from_env()`
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .clock import LocalTimeSource, TimeSource
from .engagement import EngagementConfig, EngagementLock
from .history import ROLE_BOTH, EngagementHistoryRecorder
from .ledger import BusyAllocationLedger
from .lockdown import CircuitBreakerConfig, DbCircuitBreaker
from .models import (
    AcquireResult,
    AllocationGrant,
    BusyAllocationRecord,
    EngagementHistoryRecord,
    EngagementLockRecord,
    QuotaStatus,
    QuotaWindowRecord,
    ReleaseOutcome,
    ReleaseResult,
)
from .propagation import (
    AvailabilityPropagator,
    ListingSink,
    PropagationConfig,
    PropagationResult,
    build_listing_sink_from_env,
)
from .quota import QuotaPolicy, QuotaWindow
from .store import BusyStore

logger = logging.getLogger("busy_gate.gateway")


@dataclass(frozen=True)
class GateConfig:
    db_path: str = "busy_gate.db"
    quota: QuotaPolicy = field(default_factory=QuotaPolicy)
    engagement: EngagementConfig = field(default_factory=EngagementConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    circuit: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    @classmethod
    def from_env(cls) -> "GateConfig":
        db_path = os.getenv("BUSY_DB_PATH", cls.db_path).strip() or cls.db_path
        return cls(
            db_path=db_path,
            quota=QuotaPolicy.from_env(),
            engagement=EngagementConfig.from_env(),
            propagation=PropagationConfig.from_env(),
            circuit=CircuitBreakerConfig.from_env(),
        )


class BusyGate:
    def __init__(
        self,
        config: Optional[GateConfig] = None,
        *,
        sink: Optional[ListingSink] = None,
        clock: Optional[TimeSource] = None,
        store: Optional[BusyStore] = None,
    ):
        self.config = config or GateConfig.from_env()
        self.clock = clock or LocalTimeSource()
        self.store = store or BusyStore(self.config.db_path, circuit=DbCircuitBreaker(self.config.circuit))
        self.propagator = AvailabilityPropagator(
            sink if sink is not None else build_listing_sink_from_env(),
            config=self.config.propagation,
        )
        self.quota = QuotaWindow(self.store, self.config.quota, clock=self.clock)
        self.ledger = BusyAllocationLedger(self.store, self.quota, clock=self.clock)
        self.recorder = EngagementHistoryRecorder(self.store, clock=self.clock)
        self.lock = EngagementLock(
            self.store,
            propagator=self.propagator,
            recorder=self.recorder,
            config=self.config.engagement,
            clock=self.clock,
        )

    @property
    def circuit(self) -> DbCircuitBreaker:
        return self.store.circuit

    # ---------------------------
    # Quota / allocations
    # ---------------------------

    def allocate(self, subject: str, requester: str, requested_ms: int) -> AllocationGrant:
        return self.ledger.allocate(subject, requester, requested_ms)

    def release_allocation(self, allocation_id: str) -> BusyAllocationRecord:
        return self.ledger.release_allocation(allocation_id)

    def quota_status(self, subject: str) -> QuotaStatus:
        return self.ledger.quota_status(subject)

    def manual_enable(self, subject: str) -> QuotaWindowRecord:
        return self.quota.manual_enable(subject)

    def list_allocations(self, subject: str, limit: int = 50) -> List[BusyAllocationRecord]:
        return self.ledger.list_allocations(subject, limit=limit)

    # ---------------------------
    # Engagement lock
    # ---------------------------

    def try_acquire(self, subject: str, requester: str, ttl_ms: Optional[int] = None,
                    context: Optional[str] = None) -> AcquireResult:
        return self.lock.try_acquire(subject, requester, ttl_ms=ttl_ms, context=context)

    def heartbeat(self, subject: str, requester: str, extend_ms: int) -> int:
        return self.lock.heartbeat(subject, requester, extend_ms)

    def release(self, subject: str, requester: str, *, value: float = 0.0, notes: str = "",
                metadata: Optional[Dict[str, Any]] = None, record_history: bool = True) -> ReleaseResult:
        outcome = ReleaseOutcome(value=value, notes=notes or "", metadata=dict(metadata or {}))
        return self.lock.release(subject, requester, outcome=outcome, record_history=record_history)

    def lock_status(self, subject: str) -> EngagementLockRecord:
        return self.lock.get_lock(subject)

    def busy_list(self) -> List[EngagementLockRecord]:
        return self.lock.list_busy()

    def sweep_expired(self) -> List[str]:
        return self.lock.purge_expired()

    # ---------------------------
    # History
    # ---------------------------

    def history(self, party: Optional[str] = None, role: str = ROLE_BOTH, *, subject: Optional[str] = None,
                holder: Optional[str] = None, limit: int = 50) -> List[EngagementHistoryRecord]:
        return self.recorder.list_history(party, role, subject=subject, holder=holder, limit=limit)

    def verify_history(self) -> Tuple[bool, str, int]:
        return self.recorder.verify_chain()

    # ---------------------------
    # Listings
    # ---------------------------

    def reconcile_listings(self) -> Dict[str, PropagationResult]:
        """Re-push the authoritative busy flag for every known subject."""
        now = self.clock.now_ms()
        with self.store.connection("reconcile") as conn:
            locks = self.store.all_locks(conn)
        desired: Dict[str, bool] = {lock.subject: lock.is_held(now) for lock in locks}
        for subject in self.propagator.drifted_subjects():
            desired.setdefault(subject, False)
        return self.propagator.reconcile(desired)

    def stats_extra(self) -> Dict[str, Any]:
        return {
            "lockdown_active": self.circuit.is_lockdown_active(),
            "drifted_subjects": len(self.propagator.drifted_subjects()),
            "propagation_mode": self.propagator.config.mode,
        }

    def close(self) -> None:
        if not self.propagator.flush(timeout=5.0):
            logger.warning("closing with listing pushes still pending")
        self.propagator.shutdown()
