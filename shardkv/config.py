"""
Configuration management for the sharded access layer.
"""

import os
from dataclasses import dataclass, fields
from typing import Dict, Optional
from enum import Enum


class ConsistencyLevel(Enum):
    """Per-request read consistency levels."""
    STRONG = "STRONG"       # Primary only
    BOUNDED = "BOUNDED"     # Any replica within a lag bound, else primary
    EVENTUAL = "EVENTUAL"   # Any live replica


class NodeStatus(Enum):
    """Node health states."""
    ACTIVE = "ACTIVE"
    DRAINING = "DRAINING"
    DEAD = "DEAD"


@dataclass
class ClusterConfig:
    """Configuration for the ring, replica tracking and migrations."""
    # Sharding settings
    virtual_nodes: int = 128  # Virtual nodes per unit of node weight
    replication_factor: int = 3

    # Replica tracking
    heartbeat_timeout: float = 5.0    # seconds before a replica is suspect
    primary_history_size: int = 1024  # primary offsets kept for time-lag

    # Migration settings
    max_concurrent_migrations: int = 4
    max_migration_attempts: int = 3
    migration_history_size: int = 100

    # Retry policy around routed calls
    retry_max_attempts: int = 3
    retry_base_delay: float = 0.05  # seconds
    retry_max_delay: float = 1.0    # seconds

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_reset_timeout: float = 10.0  # seconds

    def __post_init__(self):
        if self.virtual_nodes < 1:
            raise ValueError("virtual_nodes must be >= 1")
        if self.replication_factor < 1:
            raise ValueError("replication_factor must be >= 1")
        if self.max_concurrent_migrations < 1:
            raise ValueError("max_concurrent_migrations must be >= 1")
        if self.max_migration_attempts < 1:
            raise ValueError("max_migration_attempts must be >= 1")


def get_default_config(**overrides) -> ClusterConfig:
    """Get default configuration, optionally overriding some fields."""
    return ClusterConfig(**overrides)


def config_from_env(environ: Optional[Dict[str, str]] = None,
                    prefix: str = "SHARDKV_") -> ClusterConfig:
    """
    Build a config from environment variables.

    Every field of ClusterConfig can be set as ``SHARDKV_<FIELD_NAME>``,
    e.g. ``SHARDKV_VIRTUAL_NODES=64``.
    """
    environ = os.environ if environ is None else environ
    values = {}

    for f in fields(ClusterConfig):
        raw = environ.get(prefix + f.name.upper())
        if raw is None:
            continue
        try:
            values[f.name] = f.type(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {prefix + f.name.upper()}: {raw!r}") from None

    return ClusterConfig(**values)
