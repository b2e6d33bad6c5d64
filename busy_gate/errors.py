"""Stable error taxonomy for busy-gate.

Every recoverable failure surfaces as a single exception type carrying a
machine-readable `code`. Transport layers map `http_status` directly; callers
that only care about the kind compare `code` against the constants below.

Warnings are plain code strings attached to successful results (the primary
transition went through, a downstream side effect did not).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


# Quota window / allocation ledger
BUSY_E_QUOTA_EXCEEDED = "BUSY_E_QUOTA_EXCEEDED"
BUSY_E_WINDOW_DISABLED = "BUSY_E_WINDOW_DISABLED"
BUSY_E_TOO_EARLY = "BUSY_E_TOO_EARLY"

# Engagement lock
BUSY_E_ALREADY_HELD = "BUSY_E_ALREADY_HELD"
BUSY_E_NOT_FOUND = "BUSY_E_NOT_FOUND"
BUSY_E_NOT_HELD = "BUSY_E_NOT_HELD"
BUSY_E_NOT_OWNER = "BUSY_E_NOT_OWNER"

# Generic / transport
BUSY_E_BAD_REQUEST = "BUSY_E_BAD_REQUEST"
BUSY_E_RATE_LIMITED = "BUSY_E_RATE_LIMITED"
BUSY_E_LOCKDOWN_ACTIVE = "BUSY_E_LOCKDOWN_ACTIVE"
BUSY_E_INTERNAL = "BUSY_E_INTERNAL"

# Non-fatal warnings (never raised)
BUSY_W_PROPAGATION_FAILED = "BUSY_W_PROPAGATION_FAILED"
BUSY_W_HISTORY_RECORD_FAILED = "BUSY_W_HISTORY_RECORD_FAILED"


_DEFAULT_HTTP_STATUS: Dict[str, int] = {
    BUSY_E_QUOTA_EXCEEDED: 429,
    BUSY_E_WINDOW_DISABLED: 409,
    BUSY_E_TOO_EARLY: 409,
    BUSY_E_ALREADY_HELD: 409,
    BUSY_E_NOT_FOUND: 404,
    BUSY_E_NOT_HELD: 409,
    BUSY_E_NOT_OWNER: 403,
    BUSY_E_BAD_REQUEST: 400,
    BUSY_E_RATE_LIMITED: 429,
    BUSY_E_LOCKDOWN_ACTIVE: 503,
    BUSY_E_INTERNAL: 500,
}

_RETRYABLE = {
    BUSY_E_QUOTA_EXCEEDED,
    BUSY_E_WINDOW_DISABLED,
    BUSY_E_ALREADY_HELD,
    BUSY_E_RATE_LIMITED,
    BUSY_E_LOCKDOWN_ACTIVE,
}


@dataclass
class BusyGateError(Exception):
    """Base busy-gate exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def busy_error(code: str, message: str, **details: Any) -> BusyGateError:
    """Build a BusyGateError with the default status/retryability for `code`."""
    return BusyGateError(
        code=code,
        message=message,
        retryable=code in _RETRYABLE,
        http_status=_DEFAULT_HTTP_STATUS.get(code, 400),
        details=details,
    )


def require_id(value: Optional[str], name: str) -> str:
    """Reject a missing or blank identifier with BAD_REQUEST."""
    if value is None or not str(value).strip():
        raise busy_error(BUSY_E_BAD_REQUEST, f"{name} is required")
    return str(value)
