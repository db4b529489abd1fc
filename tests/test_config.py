"""
Configuration Tests
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from shardkv.config import ClusterConfig, config_from_env, get_default_config


def test_defaults():
    config = get_default_config()
    assert config.virtual_nodes == 128
    assert config.replication_factor == 3
    assert config.max_concurrent_migrations == 4


def test_overrides():
    config = get_default_config(virtual_nodes=32, heartbeat_timeout=1.5)
    assert config.virtual_nodes == 32
    assert config.heartbeat_timeout == 1.5


@pytest.mark.parametrize("field", [
    "virtual_nodes", "replication_factor",
    "max_concurrent_migrations", "max_migration_attempts",
])
def test_rejects_non_positive(field):
    with pytest.raises(ValueError):
        ClusterConfig(**{field: 0})


def test_from_env():
    env = {
        "SHARDKV_VIRTUAL_NODES": "64",
        "SHARDKV_RETRY_BASE_DELAY": "0.2",
        "UNRELATED": "ignored",
    }
    config = config_from_env(env)

    assert config.virtual_nodes == 64
    assert config.retry_base_delay == 0.2
    assert config.replication_factor == 3


def test_from_env_custom_prefix():
    config = config_from_env({"KV_REPLICATION_FACTOR": "5"}, prefix="KV_")
    assert config.replication_factor == 5


def test_from_env_bad_value():
    with pytest.raises(ValueError, match="SHARDKV_VIRTUAL_NODES"):
        config_from_env({"SHARDKV_VIRTUAL_NODES": "many"})

    with pytest.raises(ValueError):
        config_from_env({"SHARDKV_VIRTUAL_NODES": "0"})
