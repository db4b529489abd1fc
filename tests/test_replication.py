"""
Replica Set Tests
"""

import sys
import os
import math
import threading
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from shardkv.cluster.replication import ReplicaSet


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


def make_replica_set(clock, history_size=1024):
    replicas = ReplicaSet(heartbeat_timeout=5.0, history_size=history_size, clock=clock)
    replicas.register_group("A", "A", ["B", "C"])
    return replicas


def test_lag_in_offsets_and_time():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 5, timestamp=99.95)
    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "C", 5, timestamp=100.05)

    group = replicas.get_group("A")
    assert group.followers["B"].lag_offsets == 0
    assert group.followers["B"].lag_ms == 0.0
    assert group.followers["C"].lag_offsets == 5
    assert group.followers["C"].lag_ms == pytest.approx(50.0)


def test_primary_progress_recomputes_follower_lag():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "A", 20, timestamp=100.2)

    group = replicas.get_group("A")
    assert group.followers["B"].lag_offsets == 10
    assert group.followers["B"].lag_ms == pytest.approx(0.0)

    # Still at 10 while the primary passed it 200ms ago
    replicas.record_heartbeat("A", "B", 10, timestamp=100.4)
    assert group.followers["B"].lag_ms == pytest.approx(200.0)


def test_eligible_replicas_respects_bound():
    clock = FakeClock(100.05)
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 5, timestamp=99.95)
    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "C", 5, timestamp=100.05)

    assert replicas.eligible_replicas("A", 100) == ["B", "C"]
    assert replicas.eligible_replicas("A", 10) == ["B"]


def test_eligible_replicas_orders_by_load_on_equal_lag():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=100.0, load=0.7)
    replicas.record_heartbeat("A", "C", 10, timestamp=100.0, load=0.2)

    assert replicas.eligible_replicas("A", 50) == ["C", "B"]


def test_no_eligible_replicas_returns_empty():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    assert replicas.eligible_replicas("A", 1000) == [], "never-heard replicas are suspect"
    assert replicas.eligible_replicas("unknown", 1000) == []


def test_silent_replica_becomes_suspect_then_recovers():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=100.0)
    assert replicas.eligible_replicas("A", 100) == ["B"]

    clock.now = 106.0
    assert replicas.is_suspect("A", "B")
    assert replicas.eligible_replicas("A", 100) == []
    assert replicas.available_replicas("A") == []

    replicas.record_heartbeat("A", "A", 10, timestamp=106.0)
    replicas.record_heartbeat("A", "B", 10, timestamp=106.0)
    assert replicas.eligible_replicas("A", 100) == ["B"]


def test_offsets_never_move_backwards():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "B", 50, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 20, timestamp=100.5)

    assert replicas.get_group("A").followers["B"].offset == 50


def test_lag_unknown_beyond_history():
    """A replica behind everything the primary history remembers is never eligible."""
    clock = FakeClock()
    replicas = make_replica_set(clock, history_size=3)

    for i, offset in enumerate((10, 20, 30, 40, 50)):
        replicas.record_heartbeat("A", "A", offset, timestamp=100.0 + i * 0.01)
    replicas.record_heartbeat("A", "B", 5, timestamp=100.05)

    assert math.isinf(replicas.get_group("A").followers["B"].lag_ms)
    assert replicas.eligible_replicas("A", 10_000) == []


def test_replica_behind_first_primary_report_is_never_eligible():
    clock = FakeClock(100.05)
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "A", 1_000_000, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 0, timestamp=100.05)

    state = replicas.get_group("A").followers["B"]
    assert state.lag_offsets == 1_000_000
    assert math.isinf(state.lag_ms)
    assert replicas.eligible_replicas("A", 100) == []


def test_lag_unknown_until_primary_reports():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "B", 0, timestamp=100.0)
    assert math.isinf(replicas.get_group("A").followers["B"].lag_ms)
    assert replicas.eligible_replicas("A", 1000) == []

    replicas.record_heartbeat("A", "A", 0, timestamp=100.0)
    assert replicas.get_group("A").followers["B"].lag_ms == 0.0
    assert replicas.eligible_replicas("A", 1000) == ["B"]


def test_heartbeats_from_unknown_reporters_are_ignored():
    clock = FakeClock()
    replicas = make_replica_set(clock)

    replicas.record_heartbeat("A", "Z", 10, timestamp=100.0)
    replicas.record_heartbeat("nope", "B", 10, timestamp=100.0)

    assert "Z" not in replicas.get_group("A").followers
    assert replicas.get_group("nope") is None


def test_register_group_keeps_existing_follower_state():
    clock = FakeClock()
    replicas = make_replica_set(clock)
    replicas.record_heartbeat("A", "B", 42, timestamp=100.0)

    replicas.register_group("A", "A", ["B", "D"])
    group = replicas.get_group("A")

    assert set(group.followers) == {"B", "D"}
    assert group.followers["B"].offset == 42


def test_promote_keeps_single_primary():
    clock = FakeClock()
    replicas = make_replica_set(clock)
    replicas.record_heartbeat("A", "A", 10, timestamp=100.0)
    replicas.record_heartbeat("A", "B", 8, timestamp=100.0)

    replicas.promote("A", "B")
    group = replicas.get_group("A")

    assert group.primary == "B"
    assert "B" not in group.followers
    assert set(group.followers) == {"A", "C"}
    assert group.primary_offset == 8

    with pytest.raises(KeyError):
        replicas.promote("A", "Z")


def test_concurrent_heartbeats():
    clock = FakeClock()
    replicas = ReplicaSet(heartbeat_timeout=5.0, clock=clock)
    for shard in range(8):
        replicas.register_group(f"s{shard}", f"p{shard}", [f"r{shard}"])

    def report(shard):
        for offset in range(1, 501):
            replicas.record_heartbeat(f"s{shard}", f"p{shard}", offset, timestamp=100.0)
            replicas.record_heartbeat(f"s{shard}", f"r{shard}", offset, timestamp=100.0)

    threads = [threading.Thread(target=report, args=(s,)) for s in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    for shard in range(8):
        group = replicas.get_group(f"s{shard}")
        assert group.primary_offset == 500
        assert group.followers[f"r{shard}"].offset == 500
        assert group.followers[f"r{shard}"].lag_offsets == 0
