"""Record types shared by the store and the components.

Timestamps are epoch milliseconds. `as_dict()` renders them as ISO-8601 UTC
strings for the HTTP surface and CLI output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .clock import ms_to_iso


LOCK_FREE = "free"
LOCK_HELD = "held"


@dataclass
class QuotaWindowRecord:
    subject: str
    window_start_ms: int
    cumulative_busy_ms: int = 0
    enabled: bool = True
    reenable_at_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "window_start": ms_to_iso(self.window_start_ms),
            "cumulative_busy_ms": int(self.cumulative_busy_ms),
            "enabled": bool(self.enabled),
            "reenable_at": ms_to_iso(self.reenable_at_ms),
        }


@dataclass(frozen=True)
class QuotaStatus:
    subject: str
    busy_ms_used: int
    remaining_ms: int
    enabled: bool
    reenable_at_ms: Optional[int]
    window_start_ms: int
    max_busy_ms: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "busy_ms_used": self.busy_ms_used,
            "remaining_ms": self.remaining_ms,
            "busy_hours_used": round(self.busy_ms_used / 3_600_000, 3),
            "remaining_hours": round(self.remaining_ms / 3_600_000, 3),
            "enabled": self.enabled,
            "reenable_at": ms_to_iso(self.reenable_at_ms),
            "window_start": ms_to_iso(self.window_start_ms),
            "max_busy_ms": self.max_busy_ms,
        }


@dataclass
class BusyAllocationRecord:
    allocation_id: str
    subject: str
    granted_by: str
    start_at_ms: int
    end_at_ms: Optional[int]
    duration_ms: Optional[int]
    released: bool = False

    def effective_duration_ms(self) -> int:
        """Explicit duration when set, else the closed interval, else 0."""
        if self.duration_ms is not None:
            return max(0, int(self.duration_ms))
        if self.end_at_ms is not None:
            return max(0, int(self.end_at_ms) - int(self.start_at_ms))
        return 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "allocation_id": self.allocation_id,
            "subject": self.subject,
            "granted_by": self.granted_by,
            "start_at": ms_to_iso(self.start_at_ms),
            "end_at": ms_to_iso(self.end_at_ms),
            "duration_ms": self.duration_ms,
            "released": self.released,
        }


@dataclass(frozen=True)
class AllocationGrant:
    record: BusyAllocationRecord
    granted_ms: int
    remaining_ms: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "record": self.record.as_dict(),
            "granted_ms": self.granted_ms,
            "remaining_ms": self.remaining_ms,
            "granted_hours": self.granted_ms / 3_600_000,
            "remaining_hours": self.remaining_ms / 3_600_000,
        }


@dataclass
class EngagementLockRecord:
    subject: str
    status: str = LOCK_FREE
    holder: Optional[str] = None
    acquired_at_ms: Optional[int] = None
    expires_at_ms: Optional[int] = None
    context: Optional[str] = None
    version: int = 0

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at_ms is not None and int(self.expires_at_ms) <= now_ms

    def is_held(self, now_ms: int) -> bool:
        # An expired lock is Free no matter what the stored status says.
        return self.status == LOCK_HELD and not self.is_expired(now_ms)

    def as_dict(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        held = self.is_held(now_ms) if now_ms is not None else self.status == LOCK_HELD
        return {
            "subject": self.subject,
            "status": LOCK_HELD if held else LOCK_FREE,
            "holder": self.holder if held else None,
            "acquired_at": ms_to_iso(self.acquired_at_ms) if held else None,
            "expires_at": ms_to_iso(self.expires_at_ms) if held else None,
            "context": self.context if held else None,
        }


@dataclass
class EngagementHistoryRecord:
    history_id: str
    subject: str
    holder: str
    started_at_ms: int
    ended_at_ms: int
    value: float = 0.0
    notes: str = ""
    context: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    prev_hash: str = ""
    entry_hash: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "history_id": self.history_id,
            "subject": self.subject,
            "holder": self.holder,
            "started_at": ms_to_iso(self.started_at_ms),
            "ended_at": ms_to_iso(self.ended_at_ms),
            "value": self.value,
            "notes": self.notes,
            "context": self.context,
            "metadata": dict(self.metadata),
            "entry_hash": self.entry_hash,
        }


@dataclass
class AcquireResult:
    """Outcome of EngagementLock.try_acquire.

    `acquired` is False only for ALREADY_HELD; the holder fields then describe
    the current (foreign) holder for caller feedback.
    """

    acquired: bool
    code: str
    subject: str
    holder: Optional[str]
    acquired_at_ms: Optional[int] = None
    expires_at_ms: Optional[int] = None
    context: Optional[str] = None
    propagation: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "acquired": self.acquired,
            "code": self.code,
            "subject": self.subject,
            "status": LOCK_HELD if self.holder else LOCK_FREE,
            "holder": self.holder,
            "acquired_at": ms_to_iso(self.acquired_at_ms),
            "expires_at": ms_to_iso(self.expires_at_ms),
            "context": self.context,
        }
        if self.propagation is not None:
            d["propagation"] = self.propagation
        if self.warnings:
            d["warnings"] = list(self.warnings)
        return d


@dataclass
class ReleaseOutcome:
    """Caller-supplied facts about a finished engagement."""

    value: float = 0.0
    notes: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReleaseResult:
    subject: str
    released_at_ms: int
    context: Optional[str]
    history: Optional[EngagementHistoryRecord] = None
    propagation: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "subject": self.subject,
            "status": LOCK_FREE,
            "released_at": ms_to_iso(self.released_at_ms),
            "context": self.context,
            "history": self.history.as_dict() if self.history else None,
        }
        if self.propagation is not None:
            d["propagation"] = self.propagation
        if self.warnings:
            d["warnings"] = list(self.warnings)
        return d
