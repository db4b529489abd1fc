"""
Shard-aware router: resolves a request to the node that should serve it.
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional

from .consistent_hash import ConsistentHashRing, Key, Node, RingSnapshot
from ..cluster.replication import ReplicaSet
from ..config import ConsistencyLevel, NodeStatus
from ..errors import EmptyRingError, ShardUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReadRequest:
    """A read with its consistency requirement. max_lag_ms applies to BOUNDED."""
    key: Key
    consistency: ConsistencyLevel = ConsistencyLevel.STRONG
    max_lag_ms: float = 0.0

    def __post_init__(self):
        if self.consistency == ConsistencyLevel.BOUNDED and self.max_lag_ms < 0:
            raise ValueError("max_lag_ms must be >= 0")

    @classmethod
    def strong(cls, key: Key) -> 'ReadRequest':
        return cls(key, ConsistencyLevel.STRONG)

    @classmethod
    def bounded(cls, key: Key, max_lag_ms: float) -> 'ReadRequest':
        return cls(key, ConsistencyLevel.BOUNDED, max_lag_ms)

    @classmethod
    def eventual(cls, key: Key) -> 'ReadRequest':
        return cls(key, ConsistencyLevel.EVENTUAL)


class ShardRouter:
    """
    Routes requests to nodes based on key ownership and replica freshness.

    Features:
    - Writes always go to the shard primary
    - STRONG reads go to the primary
    - BOUNDED reads go to the freshest replica within the bound, else primary
    - EVENTUAL reads are spread round-robin over live replicas
    - Fails fast with ShardUnavailableError; never retries
    """

    def __init__(self, ring: ConsistentHashRing, replicas: ReplicaSet):
        self.ring = ring
        self.replicas = replicas

        self._lock = threading.Lock()
        self._cursors: Dict[str, Iterator[int]] = {}

        # Callbacks
        self._is_node_reachable: Optional[Callable[[Node], bool]] = None

    def set_callbacks(self, is_node_reachable=None):
        """Set router callbacks."""
        self._is_node_reachable = is_node_reachable

    def _reachable(self, node: Node) -> bool:
        if node.status == NodeStatus.DEAD:
            return False
        if self._is_node_reachable:
            return self._is_node_reachable(node)
        return True

    def _shard_primary(self, snap: RingSnapshot, key: Key) -> Node:
        """
        Primary for the shard owning key.

        The shard is identified by its ring owner; the replica set may have
        promoted a different member of the group to primary.
        """
        try:
            owner = snap.locate(key)
        except EmptyRingError:
            raise ShardUnavailableError(None, "ring is empty") from None

        primary_id = self.replicas.get_primary(owner.node_id) or owner.node_id
        primary = snap.nodes.get(primary_id)
        if primary is None:
            raise ShardUnavailableError(owner.node_id, f"primary {primary_id} not on ring")
        if not self._reachable(primary):
            raise ShardUnavailableError(owner.node_id, f"primary {primary_id} unreachable")
        return primary

    def _next_index(self, shard_id: str, size: int) -> int:
        with self._lock:
            cursor = self._cursors.get(shard_id)
            if cursor is None:
                cursor = itertools.count()
                self._cursors[shard_id] = cursor
            return next(cursor) % size

    def _live_nodes(self, snap: RingSnapshot, replica_ids: List[str]) -> List[Node]:
        nodes = []
        for replica_id in replica_ids:
            node = snap.nodes.get(replica_id)
            if node is not None and self._reachable(node):
                nodes.append(node)
        return nodes

    def route(self, request: ReadRequest) -> Node:
        """
        Resolve a read to a node.

        Raises:
            ShardUnavailableError: the shard has no reachable primary and no
                replica may serve the request instead
        """
        snap = self.ring.snapshot()

        if request.consistency == ConsistencyLevel.STRONG:
            return self._shard_primary(snap, request.key)

        try:
            shard_id = snap.locate(request.key).node_id
        except EmptyRingError:
            raise ShardUnavailableError(None, "ring is empty") from None

        if request.consistency == ConsistencyLevel.BOUNDED:
            eligible = self._live_nodes(
                snap, self.replicas.eligible_replicas(shard_id, request.max_lag_ms)
            )
            if eligible:
                return eligible[0]
            return self._shard_primary(snap, request.key)

        live = self._live_nodes(snap, self.replicas.available_replicas(shard_id))
        if live:
            return live[self._next_index(shard_id, len(live))]
        return self._shard_primary(snap, request.key)

    def route_write(self, key: Key) -> Node:
        """Writes are ordered by the shard primary, so they always go there."""
        return self._shard_primary(self.ring.snapshot(), key)

    def get_routing_info(self, key: Key) -> Dict:
        """Get routing information for a key."""
        snap = self.ring.snapshot()
        if snap.is_empty():
            return {"key": key, "shard": None, "primary": None, "replicas": []}

        shard_id = snap.locate(key).node_id
        group = self.replicas.get_group(shard_id)
        return {
            "key": key,
            "shard": shard_id,
            "ring_version": snap.version,
            "primary": self.replicas.get_primary(shard_id) or shard_id,
            "replicas": list(group.followers) if group else [],
            "available_replicas": self.replicas.available_replicas(shard_id),
        }
