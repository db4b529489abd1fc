"""
Consistent hashing ring for key distribution.

The ring is published as an immutable RingSnapshot. Lookups read the current
snapshot reference without locking; mutations build a replacement snapshot
under a writer lock and publish it with a single reference assignment.
"""

import hashlib
import bisect
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple, Union

from ..config import NodeStatus
from ..errors import (
    ConcurrencyConflict, DuplicateNodeError, EmptyRingError, NodeNotFoundError,
)

Key = Union[str, bytes]

HASH_BITS = 128
HASH_SPACE = 1 << HASH_BITS


def hash_key(key: Key) -> int:
    """Hash a key onto the ring as an unsigned 128-bit integer."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    return int.from_bytes(hashlib.md5(key).digest(), "big")


@dataclass(frozen=True)
class Node:
    """A physical node."""
    node_id: str
    address: str = ""
    weight: int = 1
    status: NodeStatus = NodeStatus.ACTIVE

    def __post_init__(self):
        if self.weight < 1:
            raise ValueError(f"Node weight must be >= 1, got {self.weight}")

    def to_dict(self) -> Dict:
        return {
            "node_id": self.node_id,
            "address": self.address,
            "weight": self.weight,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Node':
        return cls(
            node_id=data["node_id"],
            address=data.get("address", ""),
            weight=data.get("weight", 1),
            status=NodeStatus(data.get("status", "ACTIVE")),
        )


@dataclass(frozen=True)
class VirtualNode:
    """A virtual node on the hash ring."""
    physical_node: str
    virtual_id: int
    hash_value: int


@dataclass(frozen=True)
class KeyRange:
    """
    Ring interval (start, end].

    Wraps past the top of the hash space when start >= end. start == end
    covers the whole ring (a ring with a single entry).
    """
    start: int
    end: int

    def contains(self, hash_value: int) -> bool:
        if self.start == self.end:
            return True
        if self.start < self.end:
            return self.start < hash_value <= self.end
        return hash_value > self.start or hash_value <= self.end

    def overlaps(self, other: 'KeyRange') -> bool:
        if self.start == self.end or other.start == other.end:
            return True
        # Two ring intervals overlap iff one contains the other's end point
        return self.contains(other.end) or other.contains(self.end)

    def __str__(self) -> str:
        return f"({self.start:032x}, {self.end:032x}]"


def virtual_nodes_for(node_id: str, count: int) -> List[VirtualNode]:
    """Derive the virtual nodes of a physical node."""
    return [
        VirtualNode(node_id, i, hash_key(f"{node_id}:{i}"))
        for i in range(count)
    ]


@dataclass(frozen=True)
class RingSnapshot:
    """
    Immutable view of the ring.

    hashes is strictly increasing and owners[i] owns the interval
    (hashes[i-1], hashes[i]], with index 0 wrapping around to the last entry.
    """
    hashes: Tuple[int, ...] = ()
    owners: Tuple[str, ...] = ()
    nodes: Dict[str, Node] = field(default_factory=dict)
    vnode_counts: Dict[str, int] = field(default_factory=dict)
    version: int = 0

    def __len__(self) -> int:
        return len(self.hashes)

    def is_empty(self) -> bool:
        return not self.hashes

    def _index_for(self, hash_value: int) -> int:
        idx = bisect.bisect_left(self.hashes, hash_value)
        if idx == len(self.hashes):
            idx = 0  # Wrap around
        return idx

    def owner_of_hash(self, hash_value: int) -> str:
        """Node id owning a position on the ring."""
        if not self.hashes:
            raise EmptyRingError()
        return self.owners[self._index_for(hash_value)]

    def locate(self, key: Key) -> Node:
        """Node responsible for a key."""
        return self.nodes[self.owner_of_hash(hash_key(key))]

    def get_nodes(self, key: Key, count: int) -> List[Node]:
        """Distinct nodes walking clockwise from the key (preference list)."""
        if not self.hashes:
            return []

        idx = self._index_for(hash_key(key))
        result: List[Node] = []
        seen = set()

        for i in range(len(self.hashes)):
            node_id = self.owners[(idx + i) % len(self.hashes)]
            if node_id not in seen:
                seen.add(node_id)
                result.append(self.nodes[node_id])
                if len(result) >= count:
                    break

        return result

    def intervals(self) -> Iterator[Tuple[KeyRange, str]]:
        """Yield (range, owner) for every ring entry."""
        for i, end in enumerate(self.hashes):
            yield KeyRange(self.hashes[i - 1], end), self.owners[i]

    def virtual_nodes(self, node_id: str) -> List[VirtualNode]:
        """
        Nominal virtual nodes of a node.

        hash_value is the position derived from the node id. A position that
        collided with another node was placed at the next free hash instead,
        so it can differ from the ring entry.
        """
        if node_id not in self.nodes:
            raise NodeNotFoundError(node_id)
        return virtual_nodes_for(node_id, self.vnode_counts[node_id])

    # Derivations. Each returns a new snapshot with version + 1.

    def with_node(self, node: Node, virtual_count: int) -> 'RingSnapshot':
        if node.node_id in self.nodes:
            raise DuplicateNodeError(node.node_id)

        entries = dict(zip(self.hashes, self.owners))
        for vnode in virtual_nodes_for(node.node_id, virtual_count):
            h = vnode.hash_value
            # Probe past collisions so positions stay unique
            while h in entries:
                h = (h + 1) % HASH_SPACE
            entries[h] = node.node_id

        nodes = dict(self.nodes)
        nodes[node.node_id] = node
        counts = dict(self.vnode_counts)
        counts[node.node_id] = virtual_count
        return self._rebuilt(entries, nodes, counts)

    def with_member(self, node: Node) -> 'RingSnapshot':
        """Register a node descriptor without giving it any ring positions."""
        if node.node_id in self.nodes:
            raise DuplicateNodeError(node.node_id)
        nodes = dict(self.nodes)
        nodes[node.node_id] = node
        counts = dict(self.vnode_counts)
        counts[node.node_id] = 0
        return replace(self, nodes=nodes, vnode_counts=counts, version=self.version + 1)

    def without_node(self, node_id: str) -> 'RingSnapshot':
        if node_id not in self.nodes:
            raise NodeNotFoundError(node_id)

        entries = {h: n for h, n in zip(self.hashes, self.owners) if n != node_id}
        nodes = {k: v for k, v in self.nodes.items() if k != node_id}
        counts = {k: v for k, v in self.vnode_counts.items() if k != node_id}
        return self._rebuilt(entries, nodes, counts)

    def with_status(self, node_id: str, status: NodeStatus) -> 'RingSnapshot':
        if node_id not in self.nodes:
            raise NodeNotFoundError(node_id)
        nodes = dict(self.nodes)
        nodes[node_id] = replace(nodes[node_id], status=status)
        return replace(self, nodes=nodes, version=self.version + 1)

    def with_range_owner(self, key_range: KeyRange, expected_owner: str,
                         new_owner: str) -> 'RingSnapshot':
        """
        Hand key_range from expected_owner to new_owner.

        Raises ConcurrencyConflict unless every position in the range is
        currently owned by expected_owner.
        """
        if new_owner not in self.nodes:
            raise NodeNotFoundError(new_owner)
        if not self.hashes:
            raise EmptyRingError()

        if self.range_owners(key_range) != {expected_owner}:
            raise ConcurrencyConflict(
                key_range, f"range no longer owned solely by {expected_owner}"
            )

        if key_range.start == key_range.end:
            return self._rebuilt({key_range.end: new_owner}, self.nodes, self.vnode_counts)

        entries = {
            h: n for h, n in zip(self.hashes, self.owners)
            if not key_range.contains(h)
        }
        # Keep the boundary so keys just below the range stay with their owner
        entries.setdefault(key_range.start, self.owner_of_hash(key_range.start))
        entries[key_range.end] = new_owner
        return self._rebuilt(entries, self.nodes, self.vnode_counts)

    def range_owners(self, key_range: KeyRange) -> Set[str]:
        """Every node owning some position inside key_range."""
        owners = {self.owner_of_hash(key_range.end)}
        for h, n in zip(self.hashes, self.owners):
            if key_range.contains(h):
                owners.add(n)
        return owners

    def split_by_owner(self, key_range: KeyRange) -> List[Tuple[KeyRange, str]]:
        """Cut key_range at this ring's entries into single-owner pieces."""
        if not self.hashes:
            raise EmptyRingError()

        cuts = sorted(
            (h for h in self.hashes if key_range.contains(h) and h != key_range.end),
            key=lambda h: (h - key_range.start) % HASH_SPACE,
        )
        pieces = []
        lower = key_range.start
        for upper in cuts + [key_range.end]:
            piece = KeyRange(lower, upper)
            pieces.append((piece, self.owner_of_hash(upper)))
            lower = upper
        return pieces

    def _rebuilt(self, entries: Dict[int, str], nodes: Dict[str, Node],
                 counts: Dict[str, int]) -> 'RingSnapshot':
        ordered = sorted(entries.items())
        return RingSnapshot(
            hashes=tuple(h for h, _ in ordered),
            owners=tuple(n for _, n in ordered),
            nodes=nodes,
            vnode_counts=counts,
            version=self.version + 1,
        )

    def to_dict(self) -> Dict:
        """Serializable layout: ordered (hash, node_id) pairs plus descriptors."""
        return {
            "version": self.version,
            "entries": [[format(h, "x"), n] for h, n in zip(self.hashes, self.owners)],
            "nodes": [
                dict(node.to_dict(), virtual_nodes=self.vnode_counts.get(node_id, 0))
                for node_id, node in sorted(self.nodes.items())
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RingSnapshot':
        nodes = {}
        counts = {}
        for item in data.get("nodes", []):
            node = Node.from_dict(item)
            nodes[node.node_id] = node
            counts[node.node_id] = item.get("virtual_nodes", 0)

        entries = [(int(h, 16), n) for h, n in data.get("entries", [])]
        hashes = tuple(h for h, _ in entries)
        if any(a >= b for a, b in zip(hashes, hashes[1:])):
            raise ValueError("Ring entries must be strictly increasing")
        unknown = {n for _, n in entries} - set(nodes)
        if unknown:
            raise ValueError(f"Ring entries reference unknown nodes: {sorted(unknown)}")

        return cls(
            hashes=hashes,
            owners=tuple(n for _, n in entries),
            nodes=nodes,
            vnode_counts=counts,
            version=data.get("version", 0),
        )


class ConsistentHashRing:
    """
    Consistent hashing ring for distributing keys across nodes.

    Features:
    - Virtual nodes (scaled by node weight) for better distribution
    - O(log n) lookups that never take a lock
    - Copy-on-write mutations published atomically
    - Minimal key movement on node changes
    """

    def __init__(self, virtual_nodes: int = 128,
                 snapshot: Optional[RingSnapshot] = None):
        self.virtual_nodes = virtual_nodes

        self._snapshot = snapshot or RingSnapshot()
        self._write_lock = threading.Lock()

    def snapshot(self) -> RingSnapshot:
        """Current published snapshot."""
        return self._snapshot

    def publish(self, snapshot: RingSnapshot):
        """Replace the ring wholesale (e.g. after loading from disk)."""
        with self._write_lock:
            self._snapshot = snapshot

    def update(self, derive: Callable[[RingSnapshot], RingSnapshot]) -> RingSnapshot:
        """Derive a new snapshot from the current one and publish it."""
        with self._write_lock:
            self._snapshot = derive(self._snapshot)
            return self._snapshot

    def add_node(self, node: Node, virtual_count: Optional[int] = None) -> RingSnapshot:
        """
        Add a node to the ring.

        Args:
            node: The node descriptor
            virtual_count: Ring positions for the node; defaults to
                virtual_nodes * node.weight

        Returns:
            The newly published snapshot
        """
        if virtual_count is None:
            virtual_count = self.virtual_nodes * node.weight
        with self._write_lock:
            self._snapshot = self._snapshot.with_node(node, virtual_count)
            return self._snapshot

    def remove_node(self, node_id: str) -> RingSnapshot:
        """Remove a node and all of its virtual nodes."""
        with self._write_lock:
            self._snapshot = self._snapshot.without_node(node_id)
            return self._snapshot

    def set_node_status(self, node_id: str, status: NodeStatus) -> RingSnapshot:
        with self._write_lock:
            self._snapshot = self._snapshot.with_status(node_id, status)
            return self._snapshot

    def reassign_range(self, key_range: KeyRange, expected_owner: str,
                       new_owner: str) -> RingSnapshot:
        """Atomically flip ownership of a range (the cutover instant)."""
        with self._write_lock:
            self._snapshot = self._snapshot.with_range_owner(
                key_range, expected_owner, new_owner
            )
            return self._snapshot

    def locate(self, key: Key) -> Node:
        """
        Get the node responsible for a key.

        Raises:
            EmptyRingError: if the ring has no entries
        """
        return self._snapshot.locate(key)

    def get_nodes(self, key: Key, count: int) -> List[Node]:
        """Get up to count distinct nodes for a key (for replication)."""
        return self._snapshot.get_nodes(key, count)

    def get_node(self, node_id: str) -> Node:
        try:
            return self._snapshot.nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def get_all_nodes(self) -> List[Node]:
        """Get all physical nodes."""
        return list(self._snapshot.nodes.values())

    def get_node_count(self) -> int:
        return len(self._snapshot.nodes)

    def get_ring_state(self, limit: int = 20) -> List[Dict]:
        """Get the first entries of the ring for debugging."""
        snap = self._snapshot
        return [
            {"hash": format(h, "032x"), "node": n}
            for h, n in zip(snap.hashes[:limit], snap.owners[:limit])
        ]

    def get_key_distribution(self, sample_keys: List[Key]) -> Dict[str, int]:
        """
        Get distribution of keys across nodes.

        Args:
            sample_keys: List of keys to check

        Returns:
            Dict of node_id -> key count
        """
        snap = self._snapshot
        distribution: Dict[str, int] = {}
        if snap.is_empty():
            return distribution
        for key in sample_keys:
            node_id = snap.owner_of_hash(hash_key(key))
            distribution[node_id] = distribution.get(node_id, 0) + 1
        return distribution
