"""Storage layer components."""

from .kv_store import KVStore
from .ring_store import RingSnapshotStore

__all__ = ['KVStore', 'RingSnapshotStore']
