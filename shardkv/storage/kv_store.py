"""
In-memory key-value store backing a single node.
Thread-safe; supports the range operations used by shard migration.
"""

import threading
import time
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from ..sharding.consistent_hash import Key, KeyRange, hash_key


@dataclass
class KeyMetadata:
    """Metadata for a stored key."""
    value: Any
    hash_value: int
    updated_at: float
    version: int = 1


@dataclass
class StoreStats:
    """Statistics for the KV store."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    range_copies_in: int = 0
    range_discards: int = 0
    start_time: float = field(default_factory=time.time)

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "range_copies_in": self.range_copies_in,
            "range_discards": self.range_discards,
            "uptime_seconds": time.time() - self.start_time,
            "hit_rate": self.hit_rate()
        }


class KVStore:
    """
    Thread-safe in-memory key-value store for one node.

    Keys are stored with their ring hash so a whole KeyRange can be read,
    overwritten or discarded during migration.
    """

    def __init__(self, node_id: str = ""):
        self.node_id = node_id
        self._store: Dict[Key, KeyMetadata] = {}
        self._lock = threading.RLock()
        self._stats = StoreStats()

    def set(self, key: Key, value: Any, version: Optional[int] = None) -> bool:
        """
        Set a key-value pair.

        Args:
            key: The key to set
            value: The value to store
            version: Version number (defaults to previous + 1)
        """
        with self._lock:
            existing = self._store.get(key)
            new_version = version if version else (existing.version + 1 if existing else 1)

            self._store[key] = KeyMetadata(
                value=value,
                hash_value=existing.hash_value if existing else hash_key(key),
                updated_at=time.time(),
                version=new_version
            )
            self._stats.sets += 1
            return True

    def get(self, key: Key) -> Tuple[Optional[Any], bool]:
        """
        Get a value by key.

        Returns:
            Tuple of (value, found)
        """
        with self._lock:
            metadata = self._store.get(key)
            if metadata is None:
                self._stats.misses += 1
                return None, False
            self._stats.hits += 1
            return metadata.value, True

    def delete(self, key: Key) -> bool:
        with self._lock:
            if self._store.pop(key, None) is None:
                return False
            self._stats.deletes += 1
            return True

    def exists(self, key: Key) -> bool:
        with self._lock:
            return key in self._store

    def keys(self) -> List[Key]:
        with self._lock:
            return list(self._store.keys())

    def range_items(self, key_range: KeyRange) -> Dict[Key, Tuple[Any, int]]:
        """All (value, version) pairs whose key hashes into key_range."""
        with self._lock:
            return {
                key: (meta.value, meta.version)
                for key, meta in self._store.items()
                if key_range.contains(meta.hash_value)
            }

    def replace_range(self, key_range: KeyRange, items: Dict[Key, Tuple[Any, int]]) -> int:
        """
        Overwrite key_range with exactly the given items.

        Keys in the range that are not in items are removed, so applying the
        same items twice leaves the store unchanged.

        Returns:
            Number of keys written
        """
        hashes = {key: hash_key(key) for key in items}
        for key, h in hashes.items():
            if not key_range.contains(h):
                raise ValueError(f"Key {key!r} is outside range {key_range}")

        with self._lock:
            stale = [
                key for key, meta in self._store.items()
                if key_range.contains(meta.hash_value) and key not in items
            ]
            for key in stale:
                del self._store[key]

            now = time.time()
            for key, (value, version) in items.items():
                self._store[key] = KeyMetadata(value=value, hash_value=hashes[key],
                                               updated_at=now, version=version)

            self._stats.range_copies_in += 1
            return len(items)

    def delete_range(self, key_range: KeyRange) -> int:
        """Discard every key in the range. Returns the number removed."""
        with self._lock:
            doomed = [
                key for key, meta in self._store.items()
                if key_range.contains(meta.hash_value)
            ]
            for key in doomed:
                del self._store[key]
            self._stats.range_discards += 1
            return len(doomed)

    def size(self) -> int:
        with self._lock:
            return len(self._store)

    def get_stats(self) -> Dict:
        with self._lock:
            stats = self._stats.to_dict()
            stats["keys"] = len(self._store)
            return stats
