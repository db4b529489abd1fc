"""
Ring snapshot persistence for handoff across coordinator restarts.
"""

import os
import json
import gzip
import time
import logging
import threading
import shutil
from typing import Optional
from dataclasses import dataclass

from ..sharding.consistent_hash import RingSnapshot

logger = logging.getLogger(__name__)


@dataclass
class RingSnapshotMetadata:
    """Metadata about a saved ring."""
    timestamp: float
    ring_version: int
    entry_count: int
    node_count: int
    compressed_size: int


class RingSnapshotStore:
    """
    Saves and loads ring snapshots.

    Features:
    - Compressed JSON storage
    - Corruption-safe writes (temp file + rename)
    - Fallback to the previous snapshot on a corrupt load
    """

    def __init__(self, data_dir: str):
        self.data_dir = data_dir
        self.snapshot_path = os.path.join(data_dir, "ring.json.gz")
        self.snapshot_tmp_path = os.path.join(data_dir, "ring.json.tmp.gz")
        self.backup_path = self.snapshot_path + ".bak"
        self.metadata_path = os.path.join(data_dir, "ring.meta.json")

        self._lock = threading.Lock()

        os.makedirs(data_dir, exist_ok=True)

    def save(self, snapshot: RingSnapshot) -> bool:
        """
        Persist a ring snapshot.

        Returns:
            True if the snapshot was saved
        """
        with self._lock:
            try:
                payload = {
                    "format": 1,
                    "timestamp": time.time(),
                    "ring": snapshot.to_dict(),
                }

                with gzip.open(self.snapshot_tmp_path, "wb") as f:
                    f.write(json.dumps(payload).encode("utf-8"))

                if os.path.exists(self.snapshot_path):
                    os.replace(self.snapshot_path, self.backup_path)
                os.replace(self.snapshot_tmp_path, self.snapshot_path)

                metadata = {
                    "timestamp": payload["timestamp"],
                    "ring_version": snapshot.version,
                    "entry_count": len(snapshot),
                    "node_count": len(snapshot.nodes),
                    "compressed_size": os.path.getsize(self.snapshot_path)
                }
                with open(self.metadata_path, "w") as f:
                    json.dump(metadata, f)

                logger.info("Saved ring v%d (%d entries) to %s",
                            snapshot.version, len(snapshot), self.snapshot_path)
                return True

            except OSError:
                logger.exception("Ring snapshot save failed")
                if os.path.exists(self.snapshot_tmp_path):
                    os.remove(self.snapshot_tmp_path)
                return False

    def load(self) -> Optional[RingSnapshot]:
        """
        Load the latest ring snapshot.

        Returns:
            The snapshot, or None if nothing usable is on disk
        """
        with self._lock:
            for path in (self.snapshot_path, self.backup_path):
                if not os.path.exists(path):
                    continue
                try:
                    return self._read(path)
                except (OSError, EOFError, ValueError, KeyError, TypeError) as e:
                    logger.warning("Ring snapshot %s unreadable: %s", path, e)
            return None

    def _read(self, path: str) -> RingSnapshot:
        with gzip.open(path, "rb") as f:
            payload = json.loads(f.read().decode("utf-8"))
        snapshot = RingSnapshot.from_dict(payload["ring"])
        if path == self.backup_path:
            shutil.copy(path, self.snapshot_path)
            logger.warning("Restored ring v%d from backup", snapshot.version)
        return snapshot

    def get_metadata(self) -> Optional[RingSnapshotMetadata]:
        """Get metadata about the latest snapshot."""
        if not os.path.exists(self.metadata_path):
            return None

        try:
            with open(self.metadata_path, "r") as f:
                data = json.load(f)
            return RingSnapshotMetadata(**data)
        except (OSError, ValueError, TypeError):
            return None
