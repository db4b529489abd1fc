"""
Replica tracking: per-shard replication offsets, lag and liveness.
"""

import math
import time
import bisect
import logging
import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ReplicaState:
    """What we last heard from one replica of a shard."""
    replica_id: str
    offset: int = 0
    last_seen: Optional[float] = None
    lag_offsets: int = 0
    lag_ms: float = math.inf
    load: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "replica_id": self.replica_id,
            "offset": self.offset,
            "last_seen": self.last_seen,
            "lag_offsets": self.lag_offsets,
            "lag_ms": self.lag_ms,
            "load": self.load,
        }


@dataclass
class ReplicationGroup:
    """
    A shard's primary plus its followers.

    Exactly one primary at a time. primary_history records when the primary
    first reported each offset so follower lag can be expressed in time.
    """
    shard_id: str
    primary: str
    followers: Dict[str, ReplicaState] = field(default_factory=dict)
    primary_offset: int = 0
    primary_seen: Optional[float] = None
    primary_history: Deque[Tuple[int, float]] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def members(self) -> List[str]:
        return [self.primary] + list(self.followers)


class ReplicaSet:
    """
    Tracks replica health and staleness per shard.

    Features:
    - Heartbeat ingestion from many reporters concurrently
    - Lag in offsets and in milliseconds
    - Suspect marking after a heartbeat timeout
    - Per-shard locking
    - Primary promotion
    """

    def __init__(self, heartbeat_timeout: float = 5.0,
                 history_size: int = 1024,
                 clock: Callable[[], float] = time.time):
        self.heartbeat_timeout = heartbeat_timeout
        self.history_size = history_size
        self._clock = clock

        self._groups: Dict[str, ReplicationGroup] = {}
        self._registry_lock = threading.Lock()

    def register_group(self, shard_id: str, primary: str,
                       followers: Optional[List[str]] = None) -> ReplicationGroup:
        """
        Create or reshape the replication group of a shard.

        Followers that were already tracked keep their state.
        """
        with self._registry_lock:
            group = self._groups.get(shard_id)
            if group is None:
                group = ReplicationGroup(
                    shard_id=shard_id,
                    primary=primary,
                    primary_history=deque(maxlen=self.history_size)
                )
                self._groups[shard_id] = group

        with group.lock:
            group.primary = primary
            wanted = [f for f in (followers or []) if f != primary]
            group.followers = {
                f: group.followers.get(f) or ReplicaState(replica_id=f)
                for f in wanted
            }
        return group

    def remove_group(self, shard_id: str):
        with self._registry_lock:
            self._groups.pop(shard_id, None)

    def get_group(self, shard_id: str) -> Optional[ReplicationGroup]:
        with self._registry_lock:
            return self._groups.get(shard_id)

    def get_primary(self, shard_id: str) -> Optional[str]:
        group = self.get_group(shard_id)
        if group is None:
            return None
        with group.lock:
            return group.primary

    def record_heartbeat(self, shard_id: str, replica_id: str,
                         observed_offset: int, timestamp: Optional[float] = None,
                         load: float = 0.0):
        """
        Record a replication heartbeat.

        Args:
            shard_id: Shard the replica belongs to
            replica_id: Reporting node (the primary reports its write offset)
            observed_offset: Highest offset the replica has applied
            timestamp: When the offset was observed (defaults to now)
            load: Reported load, used to break lag ties
        """
        if timestamp is None:
            timestamp = self._clock()

        group = self.get_group(shard_id)
        if group is None:
            logger.debug("Heartbeat for unknown shard %s from %s", shard_id, replica_id)
            return

        with group.lock:
            if replica_id == group.primary:
                self._record_primary(group, observed_offset, timestamp)
                return

            state = group.followers.get(replica_id)
            if state is None:
                logger.debug("Heartbeat from %s, not a follower of %s", replica_id, shard_id)
                return

            # Offsets never move backwards
            state.offset = max(state.offset, observed_offset)
            state.last_seen = max(state.last_seen or timestamp, timestamp)
            state.load = load
            self._recompute_lag(group, state, state.last_seen)

    def _record_primary(self, group: ReplicationGroup, offset: int, timestamp: float):
        if offset > group.primary_offset or not group.primary_history:
            group.primary_offset = max(group.primary_offset, offset)
            group.primary_history.append((group.primary_offset, timestamp))
        group.primary_seen = max(group.primary_seen or timestamp, timestamp)

        for state in group.followers.values():
            self._recompute_lag(group, state, max(timestamp, state.last_seen or timestamp))

    def _recompute_lag(self, group: ReplicationGroup, state: ReplicaState, now: float):
        state.lag_offsets = max(0, group.primary_offset - state.offset)

        history = group.primary_history
        if not history:
            # Nothing known about the primary yet
            state.lag_ms = math.inf
            return

        if state.lag_offsets == 0:
            state.lag_ms = 0.0
            return

        # Time since the primary first moved past the replica's offset
        offsets = [o for o, _ in history]
        idx = bisect.bisect_right(offsets, state.offset)
        if idx == 0:
            # Missing writes predate the earliest primary report
            state.lag_ms = math.inf
            return
        if idx >= len(history):
            state.lag_ms = 0.0
            return
        state.lag_ms = max(0.0, (now - history[idx][1]) * 1000.0)

    def is_suspect(self, shard_id: str, replica_id: str,
                   now: Optional[float] = None) -> bool:
        """A follower is suspect if it has not reported within heartbeat_timeout."""
        group = self.get_group(shard_id)
        if group is None:
            return True
        with group.lock:
            state = group.followers.get(replica_id)
            if state is None:
                return True
            return self._suspect(state, self._clock() if now is None else now)

    def _suspect(self, state: ReplicaState, now: float) -> bool:
        if state.last_seen is None:
            return True
        return now - state.last_seen > self.heartbeat_timeout

    def eligible_replicas(self, shard_id: str, max_lag_ms: float) -> List[str]:
        """
        Followers fresh enough for a bounded read.

        Returns:
            Replica ids ordered by ascending lag then load; empty if none
            qualify, in which case the caller falls back to the primary.
        """
        group = self.get_group(shard_id)
        if group is None:
            return []

        now = self._clock()
        with group.lock:
            candidates = [
                s for s in group.followers.values()
                if not self._suspect(s, now) and s.lag_ms <= max_lag_ms
            ]
            candidates.sort(key=lambda s: (s.lag_ms, s.load))
            return [s.replica_id for s in candidates]

    def available_replicas(self, shard_id: str) -> List[str]:
        """Non-suspect followers ordered by load."""
        group = self.get_group(shard_id)
        if group is None:
            return []

        now = self._clock()
        with group.lock:
            live = [s for s in group.followers.values() if not self._suspect(s, now)]
            live.sort(key=lambda s: s.load)
            return [s.replica_id for s in live]

    def promote(self, shard_id: str, replica_id: str):
        """
        Make a follower the primary of its shard.

        The old primary becomes a follower at the new primary's offset
        history; it has to report again before it serves reads.
        """
        group = self.get_group(shard_id)
        if group is None:
            raise KeyError(shard_id)

        with group.lock:
            if replica_id == group.primary:
                return
            state = group.followers.pop(replica_id, None)
            if state is None:
                raise KeyError(replica_id)

            old_primary = group.primary
            group.followers[old_primary] = ReplicaState(
                replica_id=old_primary,
                offset=group.primary_offset,
            )
            group.primary = replica_id
            group.primary_offset = state.offset
            group.primary_seen = state.last_seen
            group.primary_history.clear()
            if state.last_seen is not None:
                group.primary_history.append((state.offset, state.last_seen))
            for follower in group.followers.values():
                self._recompute_lag(group, follower, follower.last_seen or self._clock())

            logger.info("Shard %s: promoted %s over %s", shard_id, replica_id, old_primary)

    def get_status(self) -> Dict[str, Dict]:
        """Snapshot of every group for diagnostics."""
        with self._registry_lock:
            groups = list(self._groups.values())

        now = self._clock()
        status = {}
        for group in groups:
            with group.lock:
                status[group.shard_id] = {
                    "primary": group.primary,
                    "primary_offset": group.primary_offset,
                    "followers": [
                        dict(s.to_dict(), suspect=self._suspect(s, now))
                        for s in group.followers.values()
                    ],
                }
        return status
