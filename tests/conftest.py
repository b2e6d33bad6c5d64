import threading

import pytest

from busy_gate.clock import MS_IN_HOUR, TimeSource
from busy_gate.gateway import BusyGate, GateConfig
from busy_gate.lockdown import CircuitBreakerConfig
from busy_gate.propagation import ListingSink, PropagationConfig
from busy_gate.quota import QuotaPolicy
from busy_gate.store import BusyStore

T0 = 1_767_225_600_000  # 2026-01-01T00:00:00Z


class ManualClock(TimeSource):
    """Test clock advanced explicitly."""

    def __init__(self, start_ms: int = T0):
        self._now = int(start_ms)
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def advance(self, ms: int) -> None:
        with self._lock:
            self._now += int(ms)

    def advance_hours(self, hours: float) -> None:
        self.advance(int(hours * MS_IN_HOUR))


class RecordingSink(ListingSink):
    """Listing sink that records every push; `fail=True` makes it raise."""

    def __init__(self):
        self.calls = []
        self.fail = False
        self._lock = threading.Lock()

    def update_busy_flag(self, subject, busy):
        if self.fail:
            raise RuntimeError("listing store unavailable")
        with self._lock:
            self.calls.append((subject, bool(busy)))
        return 1


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path):
    return BusyStore(str(tmp_path / "busy.db"), circuit=None)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def gate_config(tmp_path):
    return GateConfig(
        db_path=str(tmp_path / "gate.db"),
        quota=QuotaPolicy(),
        propagation=PropagationConfig(mode="inline"),
        circuit=CircuitBreakerConfig(latency_threshold_ms=60_000),
    )


@pytest.fixture
def gate(gate_config, clock, sink):
    g = BusyGate(gate_config, sink=sink, clock=clock)
    yield g
    g.close()
