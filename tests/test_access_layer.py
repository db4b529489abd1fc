"""
Sharded Access Layer Tests
End-to-end: bootstrap, writes, joins, leaves and ring persistence.
"""

import sys
import os
import threading
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from shardkv import ConsistencyLevel, Node, NodeStatus, ShardUnavailableError
from shardkv.access_layer import create_access_layer
from shardkv.sharding.events import RebalanceFinished

KEYS = [f"user:{i}" for i in range(500)]


@pytest.fixture
def layer(tmp_path):
    layer = create_access_layer(data_dir=str(tmp_path), virtual_nodes=16, replication_factor=2)
    layer.bootstrap([Node("A"), Node("B"), Node("C")])
    yield layer
    layer.shutdown()


def test_write_then_read(layer):
    for key in KEYS:
        owner = layer.write(key, f"v-{key}")
        assert owner == layer.locate(key)

    for key in KEYS:
        assert layer.read(key) == (f"v-{key}", True)
    assert layer.read("missing") == (None, False)


def test_route_strong_matches_locate(layer):
    for key in KEYS[:50]:
        assert layer.route(key, ConsistencyLevel.STRONG) == layer.locate(key)


def test_bounded_route_uses_heartbeats(layer):
    key = "user:42"
    shard = layer.locate(key)
    follower = layer.replicas.get_group(shard).members()[1]

    assert layer.route(key, ConsistencyLevel.BOUNDED, 100) == shard

    layer.record_heartbeat(shard, shard, 10)
    layer.record_heartbeat(shard, follower, 10)
    assert layer.route(key, ConsistencyLevel.BOUNDED, 100) == follower


def test_join_moves_data_and_keeps_every_key(layer):
    for key in KEYS:
        layer.write(key, f"v-{key}")
    finished = []
    layer.events.subscribe(RebalanceFinished, finished.append)

    assert layer.add_node(Node("D")).result(timeout=30)

    assert "D" in layer.ring.snapshot().nodes
    assert layer.get_store("D").size() > 0
    assert finished and finished[0].succeeded
    for key in KEYS:
        assert layer.read(key) == (f"v-{key}", True)
        holders = [n for n in "ABCD" if layer.get_store(n).exists(key)]
        assert holders == [layer.locate(key)]


def test_leave_moves_data_off_node(layer):
    for key in KEYS:
        layer.write(key, f"v-{key}")

    assert layer.remove_node("B").result(timeout=30)

    assert "B" not in layer.ring.snapshot().nodes
    assert layer.get_store("B") is None
    for key in KEYS:
        assert layer.read(key) == (f"v-{key}", True)


def test_writes_during_rebalance_are_not_lost(layer):
    for key in KEYS:
        layer.write(key, "old")

    def writer():
        for key in KEYS:
            layer.write(key, "new")

    t = threading.Thread(target=writer)
    t.start()
    future = layer.add_node(Node("D"))
    t.join(timeout=30)

    assert future.result(timeout=30)
    for key in KEYS:
        assert layer.read(key) == ("new", True)


def test_dead_primary_fails_fast(layer):
    key = "user:7"
    shard = layer.locate(key)
    layer.mark_node(shard, NodeStatus.DEAD)
    layer.resilient.policy.max_attempts = 1

    with pytest.raises(ShardUnavailableError):
        layer.read(key)
    with pytest.raises(ShardUnavailableError):
        layer.write(key, "x")


def test_ring_survives_restart(layer, tmp_path):
    assert layer.save_ring()
    snap = layer.ring.snapshot()

    restarted = create_access_layer(data_dir=str(tmp_path), virtual_nodes=16)
    try:
        assert restarted.load_ring()
        assert restarted.ring.snapshot().hashes == snap.hashes
        for key in KEYS:
            assert restarted.locate(key) == layer.locate(key)
    finally:
        restarted.shutdown()


def test_info(layer):
    layer.write("user:1", "x")
    info = layer.get_info()

    assert set(info["nodes"]) == {"A", "B", "C"}
    assert sum(info["keys"].values()) == 1
    assert "stats" in info["migrations"]
