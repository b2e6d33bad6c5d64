"""Time sources.

All persisted timestamps are integer epoch milliseconds (UTC). Components take
a TimeSource so tests and simulations can drive time explicitly instead of
sleeping.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional


MS_IN_SECOND = 1000
MS_IN_HOUR = 3600 * MS_IN_SECOND


class TimeSource:
    """Interface for the current wall-clock time."""

    def now_ms(self) -> int:
        raise NotImplementedError


class LocalTimeSource(TimeSource):
    """Local system clock."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def ms_to_iso(ms: Optional[int]) -> Optional[str]:
    """Render epoch ms as ISO-8601 UTC; None stays None."""
    if ms is None:
        return None
    return ms_to_datetime(int(ms)).isoformat()
