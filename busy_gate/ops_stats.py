"""Operational statistics for busy-gate.

Lightweight in-memory counters served at /v1/stats, independent of the
Prometheus registry.

Notes
-----
- Counters reset on process restart.
- Engagement history is the durable record; these are not evidence.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Engagement lock
    acquires_total: int = 0
    acquires_by_code: Dict[str, int] = field(default_factory=dict)
    releases_total: int = 0
    releases_by_outcome: Dict[str, int] = field(default_factory=dict)

    # Quota
    allocations_total: int = 0
    allocations_by_outcome: Dict[str, int] = field(default_factory=dict)

    # Degraded side effects
    propagation_failures_total: int = 0
    history_failures_total: int = 0

    # Fail-closed signals
    storage_lockdown_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_acquire(self, code: str) -> None:
        with self._lock:
            self._c.acquires_total += 1
            self._inc_map(self._c.acquires_by_code, code or "unknown")

    def record_release(self, outcome: str) -> None:
        with self._lock:
            self._c.releases_total += 1
            self._inc_map(self._c.releases_by_outcome, outcome or "unknown")

    def record_allocation(self, outcome: str) -> None:
        with self._lock:
            self._c.allocations_total += 1
            self._inc_map(self._c.allocations_by_outcome, outcome or "unknown")

    def record_propagation_failure(self) -> None:
        with self._lock:
            self._c.propagation_failures_total += 1

    def record_history_failure(self) -> None:
        with self._lock:
            self._c.history_failures_total += 1

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "acquires_total": c.acquires_total,
                "acquires_by_code": dict(c.acquires_by_code),
                "releases_total": c.releases_total,
                "releases_by_outcome": dict(c.releases_by_outcome),
                "allocations_total": c.allocations_total,
                "allocations_by_outcome": dict(c.allocations_by_outcome),
                "propagation_failures_total": c.propagation_failures_total,
                "history_failures_total": c.history_failures_total,
                "storage_lockdown_total": c.storage_lockdown_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
