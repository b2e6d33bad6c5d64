import sqlite3
import threading
from dataclasses import replace

import pytest

from busy_gate.clock import MS_IN_HOUR, MS_IN_SECOND
from busy_gate.engagement import ACQUIRED, ALREADY_HELD, REFRESHED, EngagementConfig, EngagementLock
from busy_gate.errors import (
    BUSY_E_BAD_REQUEST,
    BUSY_E_NOT_FOUND,
    BUSY_E_NOT_HELD,
    BUSY_E_NOT_OWNER,
    BUSY_W_HISTORY_RECORD_FAILED,
    BUSY_W_PROPAGATION_FAILED,
    BusyGateError,
)
from busy_gate.gateway import BusyGate
from busy_gate.models import LOCK_FREE, LOCK_HELD
from busy_gate.propagation import AvailabilityPropagator, PropagationConfig


def test_acquire_contend_and_release_flow(gate, clock, sink):
    t_acquire = clock.now_ms()
    r = gate.try_acquire("w1", "A", context="listing-9")
    assert r.acquired is True
    assert r.code == ACQUIRED
    assert r.holder == "A"
    assert r.acquired_at_ms == t_acquire
    assert r.expires_at_ms is None
    assert r.propagation == "ok"
    assert sink.calls == [("w1", True)]

    clock.advance(5 * 60 * MS_IN_SECOND)
    contended = gate.try_acquire("w1", "B")
    assert contended.acquired is False
    assert contended.code == ALREADY_HELD
    assert contended.holder == "A"
    assert contended.context == "listing-9"
    # Contention never pushes a flag.
    assert sink.calls == [("w1", True)]

    with pytest.raises(BusyGateError) as ei:
        gate.release("w1", "B")
    assert ei.value.code == BUSY_E_NOT_OWNER
    assert ei.value.http_status == 403

    clock.advance(MS_IN_HOUR)
    result = gate.release("w1", "A", value=250.0, metadata={"rating": 5})
    assert result.history is not None
    assert result.history.started_at_ms == t_acquire
    assert result.history.ended_at_ms == clock.now_ms()
    assert result.history.context == "listing-9"
    assert result.history.value == 250.0
    assert result.history.notes == "Released by A"
    assert result.history.metadata == {"rating": 5}
    assert result.warnings == []
    assert sink.calls[-1] == ("w1", False)

    history = gate.history(subject="w1")
    assert len(history) == 1

    status = gate.lock_status("w1")
    assert status.status == LOCK_FREE
    assert status.holder is None


def test_same_holder_reacquire_is_idempotent_and_creates_no_history(gate, clock):
    first = gate.try_acquire("w1", "A", ttl_ms=60 * MS_IN_SECOND)
    clock.advance(30 * MS_IN_SECOND)

    again = gate.try_acquire("w1", "A")
    assert again.acquired is True
    assert again.code == REFRESHED
    assert again.acquired_at_ms == first.acquired_at_ms
    # No TTL supplied: expiry untouched.
    assert again.expires_at_ms == first.expires_at_ms

    refreshed = gate.try_acquire("w1", "A", ttl_ms=60 * MS_IN_SECOND, context="job-2")
    assert refreshed.code == REFRESHED
    assert refreshed.expires_at_ms == clock.now_ms() + 60 * MS_IN_SECOND
    assert refreshed.context == "job-2"

    assert gate.history(subject="w1") == []


def test_expired_lock_can_be_taken_without_release(gate, clock):
    gate.try_acquire("w1", "A", ttl_ms=1 * MS_IN_SECOND)
    clock.advance(2 * MS_IN_SECOND)

    r = gate.try_acquire("w1", "B")
    assert r.acquired is True
    assert r.code == ACQUIRED
    assert r.holder == "B"
    assert gate.history(subject="w1") == []


def test_non_positive_ttl_means_no_expiry(gate, clock):
    r = gate.try_acquire("w1", "A", ttl_ms=0)
    assert r.expires_at_ms is None
    clock.advance_hours(100)
    assert gate.try_acquire("w1", "B").acquired is False


def test_ttl_is_clamped_to_max(gate_config, clock, sink):
    config = replace(gate_config, engagement=EngagementConfig(max_ttl_ms=10 * MS_IN_SECOND))
    g = BusyGate(config, sink=sink, clock=clock)
    try:
        r = g.try_acquire("w1", "A", ttl_ms=MS_IN_HOUR)
        assert r.expires_at_ms == clock.now_ms() + 10 * MS_IN_SECOND
    finally:
        g.close()


def test_heartbeat_extends_only_for_holder(gate, clock):
    gate.try_acquire("w1", "A", ttl_ms=10 * MS_IN_SECOND)
    clock.advance(5 * MS_IN_SECOND)

    expires_at = gate.heartbeat("w1", "A", 60 * MS_IN_SECOND)
    assert expires_at == clock.now_ms() + 60 * MS_IN_SECOND
    assert gate.lock_status("w1").expires_at_ms == expires_at

    with pytest.raises(BusyGateError) as ei:
        gate.heartbeat("w1", "B", 60 * MS_IN_SECOND)
    assert ei.value.code == BUSY_E_NOT_OWNER


def test_heartbeat_on_expired_lock_is_not_owner(gate, clock):
    gate.try_acquire("w1", "A", ttl_ms=MS_IN_SECOND)
    clock.advance(2 * MS_IN_SECOND)
    with pytest.raises(BusyGateError) as ei:
        gate.heartbeat("w1", "A", 60 * MS_IN_SECOND)
    assert ei.value.code == BUSY_E_NOT_OWNER


def test_heartbeat_rejects_non_positive_extension(gate):
    gate.try_acquire("w1", "A")
    with pytest.raises(BusyGateError) as ei:
        gate.heartbeat("w1", "A", 0)
    assert ei.value.code == BUSY_E_BAD_REQUEST


def test_release_error_kinds(gate, clock):
    with pytest.raises(BusyGateError) as ei:
        gate.release("ghost", "A")
    assert ei.value.code == BUSY_E_NOT_FOUND

    gate.try_acquire("w1", "A")
    gate.release("w1", "A")
    with pytest.raises(BusyGateError) as ei:
        gate.release("w1", "A")
    assert ei.value.code == BUSY_E_NOT_HELD
    assert ei.value.http_status == 409


def test_release_of_expired_lock_is_not_held(gate, clock):
    gate.try_acquire("w1", "A", ttl_ms=MS_IN_SECOND)
    clock.advance(2 * MS_IN_SECOND)
    with pytest.raises(BusyGateError) as ei:
        gate.release("w1", "A")
    assert ei.value.code == BUSY_E_NOT_HELD


def test_release_without_history(gate):
    gate.try_acquire("w1", "A")
    result = gate.release("w1", "A", record_history=False)
    assert result.history is None
    assert gate.history(subject="w1") == []


def test_history_failure_becomes_warning(gate, monkeypatch):
    gate.try_acquire("w1", "A")

    def _boom(**kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(gate.recorder, "record", _boom)
    result = gate.release("w1", "A")
    assert result.history is None
    assert BUSY_W_HISTORY_RECORD_FAILED in result.warnings
    # The lock transition itself went through.
    assert gate.lock_status("w1").status == LOCK_FREE


def test_propagation_failure_never_rolls_back_lock(gate, sink):
    sink.fail = True
    r = gate.try_acquire("w1", "A")
    assert r.acquired is True
    assert r.propagation == "failed"
    assert BUSY_W_PROPAGATION_FAILED in r.warnings
    assert gate.lock_status("w1").holder == "A"
    assert gate.propagator.drifted_subjects() == {"w1": True}


def test_get_lock_clears_expired_row_and_propagates_free(gate, clock, sink):
    gate.try_acquire("w1", "A", ttl_ms=MS_IN_SECOND)
    clock.advance(2 * MS_IN_SECOND)

    lock = gate.lock_status("w1")
    assert lock.status == LOCK_FREE
    assert lock.holder is None
    assert sink.calls[-1] == ("w1", False)

    with gate.store.connection() as conn:
        row = gate.store.get_lock(conn, "w1")
    assert row.status == LOCK_FREE


def test_unknown_subject_reads_as_free(gate):
    lock = gate.lock_status("never-seen")
    assert lock.status == LOCK_FREE
    assert lock.as_dict()["holder"] is None


def test_busy_list_and_purge_expired(gate, clock, sink):
    gate.try_acquire("w1", "A", ttl_ms=MS_IN_SECOND)
    gate.try_acquire("w2", "B")
    gate.try_acquire("w3", "C", ttl_ms=MS_IN_HOUR)

    assert {lock.subject for lock in gate.busy_list()} == {"w1", "w2", "w3"}

    clock.advance(2 * MS_IN_SECOND)
    assert {lock.subject for lock in gate.busy_list()} == {"w2", "w3"}

    freed = gate.sweep_expired()
    assert freed == ["w1"]
    assert ("w1", False) in sink.calls
    assert gate.sweep_expired() == []

    with gate.store.connection() as conn:
        assert gate.store.get_lock(conn, "w1").status == LOCK_FREE
        assert gate.store.get_lock(conn, "w2").status == LOCK_HELD


def test_missing_identifiers_are_bad_request(gate):
    with pytest.raises(BusyGateError) as ei:
        gate.try_acquire("w1", "")
    assert ei.value.code == BUSY_E_BAD_REQUEST
    with pytest.raises(BusyGateError):
        gate.release("", "A")


def test_version_bumps_on_every_transition(gate):
    gate.try_acquire("w1", "A")
    with gate.store.connection() as conn:
        v1 = gate.store.get_lock(conn, "w1").version
    gate.try_acquire("w1", "A")
    gate.release("w1", "A")
    with gate.store.connection() as conn:
        v3 = gate.store.get_lock(conn, "w1").version
    assert v3 == v1 + 2


def test_stale_version_release_does_not_match(gate):
    gate.try_acquire("w1", "A")
    with gate.store.connection() as conn:
        lock = gate.store.get_lock(conn, "w1")
        assert gate.store.cas_release(conn, "w1", lock.version - 1) is False
        assert gate.store.cas_release(conn, "w1", lock.version) is True


def test_concurrent_try_acquire_has_single_winner(gate_config, clock, sink):
    gates = [BusyGate(gate_config, sink=sink, clock=clock) for _ in range(4)]
    barrier = threading.Barrier(16)
    outcomes = []
    lock = threading.Lock()

    def worker(i):
        g = gates[i % len(gates)]
        barrier.wait()
        r = g.try_acquire("hot", f"req-{i}")
        with lock:
            outcomes.append((r.acquired, r.holder))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for g in gates:
        g.close()

    winners = [o for o in outcomes if o[0]]
    assert len(winners) == 1
    holder = winners[0][1]
    # Every loser saw the same holder.
    assert all(h == holder for _, h in outcomes)
    assert len(gates[0].busy_list()) == 1


def test_lock_can_be_used_standalone(store, clock):
    propagator = AvailabilityPropagator(config=PropagationConfig(mode="off"))
    lock = EngagementLock(store, propagator=propagator, clock=clock, config=EngagementConfig())
    assert lock.try_acquire("w1", "A").acquired is True
    assert lock.release("w1", "A").history is not None


def test_config_from_env_ignores_infinite_seconds(monkeypatch):
    monkeypatch.setenv("BUSY_ENGAGE_MAX_TTL_SECONDS", "inf")
    monkeypatch.setenv("BUSY_ENGAGE_DEFAULT_TTL_SECONDS", "-inf")
    cfg = EngagementConfig.from_env()
    assert cfg.max_ttl_ms == EngagementConfig.max_ttl_ms
    assert cfg.default_ttl_ms == EngagementConfig.default_ttl_ms
