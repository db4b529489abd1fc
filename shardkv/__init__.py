"""
shardkv
A sharded key/value access layer: consistent hashing with virtual nodes,
replica-aware read routing and online range migration.
"""

import logging

__version__ = "1.0.0"

from .config import ClusterConfig, ConsistencyLevel, NodeStatus, get_default_config
from .errors import (
    ShardKVError, RingError, DuplicateNodeError, NodeNotFoundError, EmptyRingError,
    ShardUnavailableError, CircuitOpenError,
    MigrationError, MigrationCopyFailure, ConcurrencyConflict,
)
from .sharding import (
    ConsistentHashRing, RingSnapshot, Node, KeyRange, ShardRouter, ReadRequest,
    MigrationCoordinator, MigrationTask, MigrationState, plan_migration,
)
from .cluster import ReplicaSet
from .access_layer import ShardedAccessLayer, create_access_layer

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Config
    'ClusterConfig',
    'ConsistencyLevel',
    'NodeStatus',
    'get_default_config',
    # Errors
    'ShardKVError',
    'RingError',
    'DuplicateNodeError',
    'NodeNotFoundError',
    'EmptyRingError',
    'ShardUnavailableError',
    'CircuitOpenError',
    'MigrationError',
    'MigrationCopyFailure',
    'ConcurrencyConflict',
    # Core
    'ConsistentHashRing',
    'RingSnapshot',
    'Node',
    'KeyRange',
    'ShardRouter',
    'ReadRequest',
    'MigrationCoordinator',
    'MigrationTask',
    'MigrationState',
    'plan_migration',
    'ReplicaSet',
    # Facade
    'ShardedAccessLayer',
    'create_access_layer',
]
