"""
Exception hierarchy for the sharded access layer.
"""

from typing import Optional


class ShardKVError(Exception):
    """Base class for all library errors."""


class RingError(ShardKVError):
    """Misuse of the hash ring API. Never retried automatically."""


class DuplicateNodeError(RingError):
    def __init__(self, node_id: str):
        super().__init__(f"Node already on ring: {node_id}")
        self.node_id = node_id


class NodeNotFoundError(RingError):
    def __init__(self, node_id: str):
        super().__init__(f"Node not on ring: {node_id}")
        self.node_id = node_id


class EmptyRingError(RingError):
    def __init__(self):
        super().__init__("Ring has no nodes")


class ShardUnavailableError(ShardKVError):
    """The primary for a shard cannot serve the request."""

    def __init__(self, shard_id: Optional[str], reason: str = "primary unreachable"):
        super().__init__(f"Shard {shard_id} unavailable: {reason}")
        self.shard_id = shard_id
        self.reason = reason


class CircuitOpenError(ShardUnavailableError):
    """Calls to a node are short-circuited by an open breaker."""

    def __init__(self, node_id: str):
        super().__init__(node_id, reason="circuit open")
        self.node_id = node_id


class MigrationError(ShardKVError):
    """Base class for migration failures, reported on the status channel."""


class MigrationCopyFailure(MigrationError):
    """Transient failure while copying a key range."""

    def __init__(self, task_id: str, reason: str):
        super().__init__(f"Copy failed for {task_id}: {reason}")
        self.task_id = task_id
        self.reason = reason


class ConcurrencyConflict(MigrationError):
    """Another cutover holds, or already changed, an overlapping range."""

    def __init__(self, key_range, reason: str):
        super().__init__(f"Conflict on range {key_range}: {reason}")
        self.key_range = key_range
        self.reason = reason
