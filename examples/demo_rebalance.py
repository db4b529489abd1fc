"""
Demo of the sharded access layer.
Shows key placement, replica-aware reads and an online node join.
"""

import sys
import os
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shardkv import ConsistencyLevel, Node, create_access_layer
from shardkv.sharding.events import MigrationStateChanged, RebalanceFinished


def print_header(text):
    """Print a section header."""
    print("\n" + "=" * 60)
    print(f" {text}")
    print("=" * 60)


def demo():
    """Run the rebalance demo."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")

    layer = create_access_layer(virtual_nodes=64, replication_factor=2)
    try:
        # Step 1: Seed the ring
        print_header("Step 1: Bootstrapping 3 Nodes")
        layer.bootstrap([Node("node1"), Node("node2"), Node("node3")])

        keys = [f"user:{i}" for i in range(1000)]
        for key in keys:
            layer.write(key, {"name": key})

        for node_id, count in sorted(layer.get_info()["keys"].items()):
            print(f"  {node_id}: {count} keys")

        # Step 2: Reads at different consistency levels
        print_header("Step 2: Routing Reads")
        key = "user:42"
        shard = layer.locate(key)
        follower = layer.replicas.get_group(shard).members()[1]
        layer.record_heartbeat(shard, shard, 100)
        layer.record_heartbeat(shard, follower, 100)

        for level in ConsistencyLevel:
            print(f"  {level.value:<8} -> {layer.route(key, level, max_lag_ms=50)}")

        # Step 3: Online join
        print_header("Step 3: Adding node4")
        layer.events.subscribe(
            MigrationStateChanged,
            lambda e: print(f"  task {e.task_id}: {e.old_state} -> {e.new_state}")
            if e.new_state in ("DONE", "FAILED") else None,
        )
        layer.events.subscribe(
            RebalanceFinished,
            lambda e: print(f"  rebalance {e.rebalance_id}: "
                            f"{'ok' if e.succeeded else 'failed'} ({e.tasks} tasks)"),
        )
        layer.add_node(Node("node4")).result(timeout=60)

        for node_id, count in sorted(layer.get_info()["keys"].items()):
            print(f"  {node_id}: {count} keys")

        missing = [k for k in keys if not layer.read(k)[1]]
        print(f"\n  Keys lost during rebalance: {len(missing)}")

    finally:
        layer.shutdown()


if __name__ == "__main__":
    demo()
