"""Sharding layer components."""

from .consistent_hash import ConsistentHashRing, RingSnapshot, Node, VirtualNode, KeyRange, hash_key
from .router import ShardRouter, ReadRequest
from .migration import MigrationCoordinator, MigrationTask, MigrationState, RangeFence, plan_migration
from .events import StatusChannel

__all__ = [
    'ConsistentHashRing',
    'RingSnapshot',
    'Node',
    'VirtualNode',
    'KeyRange',
    'hash_key',
    'ShardRouter',
    'ReadRequest',
    'MigrationCoordinator',
    'MigrationTask',
    'MigrationState',
    'RangeFence',
    'plan_migration',
    'StatusChannel',
]
