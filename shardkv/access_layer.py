"""
Sharded access layer: the ring, replica tracking, routing and migrations
wired together behind one object.
"""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, List, Optional, Tuple

from .config import ClusterConfig, ConsistencyLevel, NodeStatus, get_default_config
from .cluster.replication import ReplicaSet
from .errors import NodeNotFoundError
from .resilience.circuit_breaker import CircuitBreaker
from .resilience.retry import ResilientRouter, RetryPolicy
from .sharding.consistent_hash import ConsistentHashRing, Key, Node, hash_key
from .sharding.events import StatusChannel
from .sharding.migration import MigrationCoordinator
from .sharding.router import ReadRequest, ShardRouter
from .storage.kv_store import KVStore
from .storage.ring_store import RingSnapshotStore

logger = logging.getLogger(__name__)


class ShardedAccessLayer:
    """
    Entry point for a calling service.

    Owns one in-memory KVStore per node so that writes, migrations and
    primary reads have somewhere concrete to land. Replication between a
    primary and its followers is driven from outside through
    record_heartbeat.
    """

    def __init__(self, config: Optional[ClusterConfig] = None,
                 data_dir: Optional[str] = None):
        self.config = config or get_default_config()

        self.ring = ConsistentHashRing(virtual_nodes=self.config.virtual_nodes)
        self.replicas = ReplicaSet(
            heartbeat_timeout=self.config.heartbeat_timeout,
            history_size=self.config.primary_history_size,
        )
        self.router = ShardRouter(self.ring, self.replicas)
        self.resilient = ResilientRouter(
            self.router,
            policy=RetryPolicy.from_config(self.config),
            breaker=CircuitBreaker(
                failure_threshold=self.config.breaker_failure_threshold,
                reset_timeout=self.config.breaker_reset_timeout,
            ),
        )
        self.events = StatusChannel()
        self.migrations = MigrationCoordinator(
            self.ring,
            max_concurrent=self.config.max_concurrent_migrations,
            max_attempts=self.config.max_migration_attempts,
            channel=self.events,
            history_size=self.config.migration_history_size,
        )
        self.ring_store = RingSnapshotStore(data_dir) if data_dir else None

        self._stores: Dict[str, KVStore] = {}
        self._stores_lock = threading.Lock()

        self.migrations.set_callbacks(get_store=self.get_store)

    def get_store(self, node_id: str) -> Optional[KVStore]:
        with self._stores_lock:
            return self._stores.get(node_id)

    def _ensure_store(self, node_id: str) -> KVStore:
        with self._stores_lock:
            store = self._stores.get(node_id)
            if store is None:
                store = KVStore(node_id)
                self._stores[node_id] = store
            return store

    # Membership

    def bootstrap(self, nodes: List[Node]):
        """Seed an empty cluster directly; no data exists yet to move."""
        for node in nodes:
            self.ring.add_node(node)
            self._ensure_store(node.node_id)
        self.refresh_groups()

    def add_node(self, node: Node, virtual_count: Optional[int] = None) -> Future:
        """Join a node and migrate its ranges to it in the background."""
        self._ensure_store(node.node_id)
        return self.migrations.add_node(
            node, virtual_count, on_complete=lambda _: self.refresh_groups()
        )

    def remove_node(self, node_id: str) -> Future:
        """Drain a node in the background and drop it from the ring."""
        return self.migrations.remove_node(
            node_id, on_complete=lambda _: self._forget(node_id)
        )

    def _forget(self, node_id: str):
        if node_id not in self.ring.snapshot().nodes:
            self.replicas.remove_group(node_id)
            with self._stores_lock:
                self._stores.pop(node_id, None)
        self.refresh_groups()

    def mark_node(self, node_id: str, status: NodeStatus):
        self.ring.set_node_status(node_id, status)

    def refresh_groups(self):
        """
        Derive replication groups from the ring.

        Each ring owner is a shard; its followers are the next distinct
        nodes clockwise from its first virtual node.
        """
        snap = self.ring.snapshot()
        for node_id, count in snap.vnode_counts.items():
            if count == 0:
                continue
            preference = snap.get_nodes(f"{node_id}:0", self.config.replication_factor + 1)
            followers = [n.node_id for n in preference if n.node_id != node_id]
            self.replicas.register_group(
                node_id,
                self.replicas.get_primary(node_id) or node_id,
                followers[: self.config.replication_factor - 1],
            )

    # Lookup and routing

    def locate(self, key: Key) -> str:
        return self.ring.locate(key).node_id

    def route(self, key: Key, consistency: ConsistencyLevel = ConsistencyLevel.STRONG,
              max_lag_ms: float = 0.0) -> str:
        return self.router.route(ReadRequest(key, consistency, max_lag_ms)).node_id

    def record_heartbeat(self, shard_id: str, replica_id: str, offset: int,
                         timestamp: Optional[float] = None, load: float = 0.0):
        self.replicas.record_heartbeat(shard_id, replica_id, offset, timestamp, load)

    # Data path

    def write(self, key: Key, value: Any) -> str:
        """
        Write to the shard primary.

        Held back while the key's range is being cut over, so a write lands
        either before the copy is verified or on the new owner.

        Returns:
            The node id that accepted the write
        """
        with self.migrations.fence.write(hash_key(key)):
            def apply(node: Node) -> str:
                store = self.get_store(node.node_id)
                if store is None:
                    raise NodeNotFoundError(node.node_id)
                store.set(key, value)
                return node.node_id

            return self.resilient.call_write(key, apply)

    def read(self, key: Key) -> Tuple[Optional[Any], bool]:
        """Strong read from the shard primary."""
        def fetch(node: Node) -> Tuple[Optional[Any], bool]:
            store = self.get_store(node.node_id)
            if store is None:
                raise NodeNotFoundError(node.node_id)
            return store.get(key)

        return self.resilient.call(ReadRequest.strong(key), fetch)

    # Persistence

    def save_ring(self) -> bool:
        if self.ring_store is None:
            return False
        return self.ring_store.save(self.ring.snapshot())

    def load_ring(self) -> bool:
        """Restore the ring from disk, e.g. after a coordinator restart."""
        if self.ring_store is None:
            return False
        snapshot = self.ring_store.load()
        if snapshot is None:
            return False
        self.ring.publish(snapshot)
        for node_id in snapshot.nodes:
            self._ensure_store(node_id)
        self.refresh_groups()
        logger.info("Loaded ring v%d with %d nodes", snapshot.version, len(snapshot.nodes))
        return True

    def get_info(self) -> Dict:
        snap = self.ring.snapshot()
        with self._stores_lock:
            stores = dict(self._stores)
        return {
            "ring_version": snap.version,
            "nodes": {n.node_id: n.status.value for n in snap.nodes.values()},
            "ring_entries": len(snap),
            "keys": {node_id: s.size() for node_id, s in stores.items()},
            "replication": self.replicas.get_status(),
            "migrations": self.migrations.get_migration_status(),
            "routing": self.resilient.get_stats(),
        }

    def shutdown(self):
        self.migrations.shutdown()


def create_access_layer(data_dir: Optional[str] = None, **config_overrides) -> ShardedAccessLayer:
    """Create an access layer with the given configuration overrides."""
    return ShardedAccessLayer(get_default_config(**config_overrides), data_dir=data_dir)
