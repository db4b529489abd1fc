"""
Ring Snapshot Persistence Tests
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shardkv.config import NodeStatus
from shardkv.sharding.consistent_hash import ConsistentHashRing, Node
from shardkv.storage.ring_store import RingSnapshotStore


def make_ring():
    ring = ConsistentHashRing(virtual_nodes=8)
    ring.add_node(Node("A", address="10.0.0.1:7000"))
    ring.add_node(Node("B", address="10.0.0.2:7000", weight=2))
    ring.set_node_status("B", NodeStatus.DRAINING)
    return ring


def test_save_and_load(tmp_path):
    store = RingSnapshotStore(str(tmp_path))
    snap = make_ring().snapshot()

    assert store.load() is None
    assert store.save(snap)

    loaded = store.load()
    assert loaded.hashes == snap.hashes
    assert loaded.owners == snap.owners
    assert loaded.version == snap.version
    assert loaded.nodes["B"].status == NodeStatus.DRAINING
    assert loaded.vnode_counts == {"A": 8, "B": 16}

    metadata = store.get_metadata()
    assert metadata.ring_version == snap.version
    assert metadata.entry_count == 24
    assert metadata.node_count == 2


def test_corrupt_snapshot_falls_back_to_backup(tmp_path):
    store = RingSnapshotStore(str(tmp_path))
    ring = make_ring()
    first = ring.snapshot()
    store.save(first)
    ring.add_node(Node("C"))
    store.save(ring.snapshot())

    with open(store.snapshot_path, "wb") as f:
        f.write(b"not gzip")

    loaded = store.load()
    assert loaded.hashes == first.hashes
    assert "C" not in loaded.nodes

    # The backup was copied back over the corrupt file
    assert store.load().hashes == first.hashes


def test_nothing_usable(tmp_path):
    store = RingSnapshotStore(str(tmp_path))
    with open(store.snapshot_path, "wb") as f:
        f.write(b"garbage")

    assert store.load() is None
    assert store.get_metadata() is None
