"""Per-requester polling limiter for `try_acquire`.

A requester that finds a subject engaged is expected to back off and poll
again. `PollLimiter` caps how often one requester may poll: each requester
gets `burst` attempts that refill at `per_second`. State is in-process only;
every server worker keeps its own table.
"""

from __future__ import annotations

import threading
import time
from typing import Dict, Optional, Tuple

_UNIT_SECONDS = {"s": 1.0, "sec": 1.0, "m": 60.0, "min": 60.0, "h": 3600.0, "hour": 3600.0}


def parse_poll_rate(text: str) -> Tuple[float, float]:
    """'120/m' -> (burst=120, per_second=2.0). Units: s, m, h."""
    count, sep, unit = (text or "").strip().lower().partition("/")
    if not sep or unit.strip() not in _UNIT_SECONDS:
        raise ValueError(f"invalid poll rate {text!r}; expected like '120/m'")
    burst = float(count)
    if not burst > 0:
        raise ValueError("poll rate must be positive")
    return burst, burst / _UNIT_SECONDS[unit.strip()]


class PollLimiter:
    def __init__(self, burst: float, per_second: float, max_requesters: int = 20000):
        if burst <= 0 or per_second <= 0:
            raise ValueError("burst and per_second must be positive")
        self.burst = float(burst)
        self.per_second = float(per_second)
        self.max_requesters = max(1, int(max_requesters))
        # requester -> (attempts left, monotonic time of last poll)
        self._allowance: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def allow(self, requester: str, now: Optional[float] = None) -> bool:
        """Spend one attempt for `requester`; False when it is polling too fast."""
        key = requester or "_anon"
        now = time.monotonic() if now is None else now
        with self._lock:
            entry = self._allowance.get(key)
            if entry is None:
                if len(self._allowance) >= self.max_requesters:
                    return False
                left = self.burst
            else:
                left, last = entry
                left = min(self.burst, left + max(0.0, now - last) * self.per_second)
            if left < 1.0:
                self._allowance[key] = (left, now)
                return False
            self._allowance[key] = (left - 1.0, now)
            return True

    @classmethod
    def from_text(cls, text: str, max_requesters: int = 20000) -> "PollLimiter":
        burst, per_second = parse_poll_rate(text)
        return cls(burst, per_second, max_requesters=max_requesters)
