"""
Shard migration: moving key ranges between nodes when membership changes.

Each task walks PLANNED -> COPYING -> VERIFYING -> CUTOVER -> DONE. Reads and
writes keep going to the source node until the cutover flips the range's
owner in the ring; that flip is the only instant ownership changes.
"""

import time
import uuid
import logging
import threading
from collections import Counter, deque
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Set, Tuple

from .consistent_hash import ConsistentHashRing, KeyRange, Node, RingSnapshot
from .events import (
    MigrationEscalated, MigrationReplanned, MigrationRetrying,
    MigrationStateChanged, RebalanceFinished, StatusChannel,
)
from ..config import NodeStatus
from ..errors import ConcurrencyConflict, DuplicateNodeError, MigrationCopyFailure

logger = logging.getLogger(__name__)


class MigrationState(Enum):
    """State of a migration task."""
    PLANNED = "PLANNED"
    COPYING = "COPYING"
    VERIFYING = "VERIFYING"
    CUTOVER = "CUTOVER"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# States from which a task can still be cancelled
CANCELLABLE = (MigrationState.PLANNED, MigrationState.COPYING,
               MigrationState.VERIFYING, MigrationState.FAILED)


@dataclass
class MigrationTask:
    """Move one key range from source_node to target_node."""
    task_id: str
    key_range: KeyRange
    source_node: str
    target_node: str
    state: MigrationState = MigrationState.PLANNED
    attempts: int = 0
    keys_copied: int = 0
    error: Optional[str] = None
    conflict: bool = False
    rebalance_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "task_id": self.task_id,
            "range_start": format(self.key_range.start, "x"),
            "range_end": format(self.key_range.end, "x"),
            "source": self.source_node,
            "target": self.target_node,
            "state": self.state.value,
            "attempts": self.attempts,
            "keys_copied": self.keys_copied,
            "error": self.error,
            "rebalance_id": self.rebalance_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MigrationTask':
        return cls(
            task_id=data["task_id"],
            key_range=KeyRange(int(data["range_start"], 16), int(data["range_end"], 16)),
            source_node=data["source"],
            target_node=data["target"],
            state=MigrationState(data.get("state", "PLANNED")),
            attempts=data.get("attempts", 0),
            keys_copied=data.get("keys_copied", 0),
            error=data.get("error"),
            rebalance_id=data.get("rebalance_id"),
        )


@dataclass
class MigrationStats:
    """Statistics for migration operations."""
    total_migrations: int = 0
    successful_migrations: int = 0
    failed_migrations: int = 0
    escalated_migrations: int = 0
    cancelled_migrations: int = 0
    keys_migrated: int = 0
    conflicts: int = 0
    last_migration_time: Optional[float] = None


def _new_task_id(prefix: str = "mig") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def plan_migration(old_ring: RingSnapshot, new_ring: RingSnapshot,
                   rebalance_id: Optional[str] = None) -> List[MigrationTask]:
    """
    Diff two ring snapshots.

    Cuts the ring at every entry of either snapshot; each resulting interval
    has a single owner in both rings, and an interval whose owner differs
    becomes one migration task.
    """
    if old_ring.is_empty() or new_ring.is_empty():
        return []

    points = sorted(set(old_ring.hashes) | set(new_ring.hashes))
    tasks = []

    for i, end in enumerate(points):
        before = old_ring.owner_of_hash(end)
        after = new_ring.owner_of_hash(end)
        if before == after:
            continue
        tasks.append(MigrationTask(
            task_id=_new_task_id(),
            key_range=KeyRange(points[i - 1], end),
            source_node=before,
            target_node=after,
            rebalance_id=rebalance_id,
        ))

    return tasks


class RangeFence:
    """
    Holds back writes to key ranges that are being cut over.

    hold() claims a range exclusively and waits for in-flight writes into it
    to drain; write() blocks while its position is claimed.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._held: Dict[str, KeyRange] = {}
        self._inflight: Counter = Counter()

    def _is_fenced(self, hash_value: int) -> bool:
        return any(r.contains(hash_value) for r in self._held.values())

    @contextmanager
    def hold(self, owner: str, key_range: KeyRange) -> Iterator[None]:
        with self._cond:
            for other_owner, other in self._held.items():
                if other.overlaps(key_range):
                    raise ConcurrencyConflict(
                        key_range, f"overlapping cutover held by {other_owner}"
                    )
            self._held[owner] = key_range
            while any(key_range.contains(h) for h in self._inflight):
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._held.pop(owner, None)
                self._cond.notify_all()

    @contextmanager
    def write(self, hash_value: int) -> Iterator[None]:
        with self._cond:
            while self._is_fenced(hash_value):
                self._cond.wait()
            self._inflight[hash_value] += 1
        try:
            yield
        finally:
            with self._cond:
                self._inflight[hash_value] -= 1
                if self._inflight[hash_value] <= 0:
                    del self._inflight[hash_value]
                self._cond.notify_all()

    def held_ranges(self) -> Dict[str, KeyRange]:
        with self._cond:
            return dict(self._held)


class _Cancelled(Exception):
    pass


class MigrationCoordinator:
    """
    Rebalances key ownership when nodes join or leave.

    Features:
    - Ring diffing into per-range tasks
    - Bounded background worker pool
    - Idempotent copy with verification before cutover
    - Automatic retry of failed copies, escalation after max attempts
    - Re-planning when a cutover loses a conflict
    - Cancellation before cutover
    - Task export/resume across restarts
    """

    def __init__(self, ring: ConsistentHashRing,
                 max_concurrent: int = 4,
                 max_attempts: int = 3,
                 channel: Optional[StatusChannel] = None,
                 history_size: int = 100):
        self.ring = ring
        self.max_concurrent = max_concurrent
        self.max_attempts = max_attempts
        self.channel = channel or StatusChannel()
        self.fence = RangeFence()

        self._lock = threading.RLock()
        self._active: Dict[str, MigrationTask] = {}
        self._history: Deque[MigrationTask] = deque(maxlen=history_size)
        self._cancel_requested: Set[str] = set()
        self._stats = MigrationStats()

        self._workers = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="migration"
        )
        # Membership changes are applied one at a time
        self._rebalancer = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="rebalance"
        )
        self._rebalance_futures: List[Future] = []

        # Callbacks
        self._get_store: Optional[Callable[[str], Any]] = None
        self._send_range: Optional[Callable[[str, KeyRange, Dict], bool]] = None

    def set_callbacks(self, get_store=None, send_range=None):
        """
        Set migration callbacks.

        Args:
            get_store: node_id -> store with range_items/replace_range/delete_range
            send_range: (target_node, key_range, items) -> bool, for remote
                targets; defaults to writing into get_store(target_node)
        """
        self._get_store = get_store
        self._send_range = send_range

    def shutdown(self, wait: bool = True):
        self._rebalancer.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)

    # Planning

    def plan_migration(self, old_ring: RingSnapshot, new_ring: RingSnapshot,
                       rebalance_id: Optional[str] = None) -> List[MigrationTask]:
        return plan_migration(old_ring, new_ring, rebalance_id)

    # Membership changes

    def add_node(self, node: Node, virtual_count: Optional[int] = None,
                 on_complete: Optional[Callable[[bool], None]] = None) -> Future:
        """
        Join a node and move its ranges to it.

        The node is published with no ring positions first, so it can be
        routed to as soon as the first range is cut over. on_complete runs
        on the rebalance thread before the future resolves.

        Returns:
            Future resolving to True if every range moved
        """
        if virtual_count is None:
            virtual_count = self.ring.virtual_nodes * node.weight

        if node.node_id in self.ring.snapshot().nodes:
            raise DuplicateNodeError(node.node_id)

        def build(snap: RingSnapshot) -> Tuple[RingSnapshot, RingSnapshot]:
            target = snap.with_node(node, virtual_count)
            self.ring.update(lambda s: s.with_member(node))
            return snap, target

        return self._submit_rebalance(f"join-{node.node_id}", build, on_complete)

    def remove_node(self, node_id: str,
                    on_complete: Optional[Callable[[bool], None]] = None) -> Future:
        """
        Drain a node: move its ranges to their new owners, then drop it.

        Returns:
            Future resolving to True if every range moved
        """
        self.ring.get_node(node_id)  # raises NodeNotFoundError early

        def build(snap: RingSnapshot) -> Tuple[RingSnapshot, RingSnapshot]:
            target = snap.without_node(node_id)
            self.ring.set_node_status(node_id, NodeStatus.DRAINING)
            return snap, target

        return self._submit_rebalance(f"leave-{node_id}", build, on_complete)

    def _submit_rebalance(self, label: str, build, on_complete=None) -> Future:
        rebalance_id = f"{label}-{uuid.uuid4().hex[:8]}"
        future = self._rebalancer.submit(self._rebalance, rebalance_id, build, on_complete)
        with self._lock:
            self._rebalance_futures.append(future)
        return future

    def _rebalance(self, rebalance_id: str, build, on_complete=None) -> bool:
        finished: List[MigrationTask] = []
        crashed: List[str] = []

        try:
            old, target = build(self.ring.snapshot())
        except Exception:
            logger.exception("Rebalance %s could not be planned", rebalance_id)
            target = None
        else:
            tasks = plan_migration(old, target, rebalance_id)
            logger.info("Rebalance %s: %d migration tasks", rebalance_id, len(tasks))

            submitted = [(task, self.submit(task)) for task in tasks]
            for task, future in submitted:
                try:
                    finished.extend(future.result())
                except Exception:
                    logger.exception("Migration %s crashed", task.task_id)
                    self._retire(task)
                    crashed.append(task.task_id)

        failed = crashed + [t.task_id for t in finished if t.state != MigrationState.DONE]
        succeeded = target is not None and not failed

        if succeeded:
            succeeded = self._publish_target(rebalance_id, target)
        elif target is not None:
            logger.error("Rebalance %s incomplete: %d tasks not done",
                         rebalance_id, len(failed))

        self.channel.publish(RebalanceFinished(
            rebalance_id=rebalance_id,
            succeeded=succeeded,
            tasks=len(finished) + len(crashed),
            failed_tasks=failed,
        ))
        if on_complete is not None:
            on_complete(succeeded)
        return succeeded

    def _publish_target(self, rebalance_id: str, target: RingSnapshot) -> bool:
        """Swap in the target ring once serving ownership already matches it."""
        def derive(current: RingSnapshot) -> RingSnapshot:
            if plan_migration(current, target):
                raise ConcurrencyConflict(None, "serving ring diverged from target")
            nodes = {nid: current.nodes.get(nid, n) for nid, n in target.nodes.items()}
            return replace(target, nodes=nodes, version=current.version + 1)

        try:
            snap = self.ring.update(derive)
        except ConcurrencyConflict as e:
            logger.error("Rebalance %s: %s", rebalance_id, e)
            return False

        logger.info("Rebalance %s complete, ring v%d", rebalance_id, snap.version)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for all submitted rebalances. Returns True if all succeeded."""
        with self._lock:
            futures = list(self._rebalance_futures)
        results = [f.result(timeout=timeout) for f in futures]
        with self._lock:
            self._rebalance_futures = [f for f in self._rebalance_futures if not f.done()]
        return all(results)

    # Task execution

    def submit(self, task: MigrationTask) -> Future:
        """Run a task in the background. The future yields the tasks it ended as."""
        with self._lock:
            self._active[task.task_id] = task
        return self._workers.submit(self._run_task, task)

    def _run_task(self, task: MigrationTask) -> List[MigrationTask]:
        finished = []
        pending = [task]

        while pending:
            current = pending.pop()
            state = self.execute_migration(current)

            while state == MigrationState.FAILED and not current.conflict:
                if current.attempts >= self.max_attempts:
                    self._escalate(current)
                    break
                logger.warning("Retrying %s (attempt %d): %s",
                               current.task_id, current.attempts + 1, current.error)
                self.channel.publish(MigrationRetrying(
                    task_id=current.task_id,
                    attempt=current.attempts + 1,
                    error=current.error or "",
                ))
                state = self.execute_migration(current)

            replacements = []
            if state == MigrationState.FAILED and current.conflict:
                if current.attempts >= self.max_attempts:
                    self._escalate(current)
                else:
                    replacements = self._replan(current)
                    pending.extend(replacements)

            self._retire(current)
            if not replacements:
                finished.append(current)

        return finished

    def execute_migration(self, task: MigrationTask) -> MigrationState:
        """
        Run one attempt of a task.

        A FAILED task re-enters from PLANNED; copying is a full overwrite of
        the target range so repeating it is safe.

        Returns:
            The state the task ended in
        """
        with self._lock:
            if task.state == MigrationState.FAILED:
                self._transition(task, MigrationState.PLANNED)
            if task.state != MigrationState.PLANNED:
                return task.state
            task.attempts += 1
            task.error = None
            task.conflict = False
            task.started_at = time.time()
            self._active.setdefault(task.task_id, task)

        try:
            self._check_cancelled(task)
            self._transition(task, MigrationState.COPYING)
            self._copy(task)

            self._check_cancelled(task)
            with self.fence.hold(task.task_id, task.key_range):
                self._transition(task, MigrationState.VERIFYING)
                # Re-copy under the fence to pick up writes made during COPYING
                self._copy(task)
                self._verify(task)

                self._check_cancelled(task)
                self._transition(task, MigrationState.CUTOVER)
                self.ring.reassign_range(task.key_range, task.source_node, task.target_node)

            self._transition(task, MigrationState.DONE)

        except _Cancelled:
            self._transition(task, MigrationState.CANCELLED)
        except ConcurrencyConflict as e:
            task.conflict = True
            self._fail(task, str(e))
            with self._lock:
                self._stats.conflicts += 1
        except (MigrationCopyFailure, OSError) as e:
            self._fail(task, str(e))
        except Exception as e:
            logger.exception("Migration %s: unexpected error in %s",
                             task.task_id, task.state.value)
            self._fail(task, f"{type(e).__name__}: {e}")

        if task.state == MigrationState.DONE:
            self._discard_source(task)

        task.completed_at = time.time()
        return task.state

    def _transition(self, task: MigrationTask, new_state: MigrationState):
        with self._lock:
            old_state = task.state
            task.state = new_state
        logger.info("Migration %s: %s -> %s", task.task_id, old_state.value, new_state.value)
        self.channel.publish(MigrationStateChanged(
            task_id=task.task_id,
            old_state=old_state.value,
            new_state=new_state.value,
        ))

    def _fail(self, task: MigrationTask, error: str):
        task.error = error
        self._transition(task, MigrationState.FAILED)

    def _check_cancelled(self, task: MigrationTask):
        with self._lock:
            if task.task_id in self._cancel_requested:
                raise _Cancelled()

    def _store(self, node_id: str):
        if self._get_store is None:
            raise MigrationCopyFailure("-", "no store callback configured")
        store = self._get_store(node_id)
        if store is None:
            raise MigrationCopyFailure("-", f"no store for {node_id}")
        return store

    def _copy(self, task: MigrationTask):
        items = self._store(task.source_node).range_items(task.key_range)

        if self._send_range is not None:
            if not self._send_range(task.target_node, task.key_range, items):
                raise MigrationCopyFailure(task.task_id, f"send to {task.target_node} failed")
        else:
            self._store(task.target_node).replace_range(task.key_range, items)

        task.keys_copied = len(items)

    def _verify(self, task: MigrationTask):
        if self._send_range is not None:
            # Remote targets acknowledge in send_range; nothing local to compare
            return
        source = self._store(task.source_node).range_items(task.key_range)
        target = self._store(task.target_node).range_items(task.key_range)
        if source != target:
            raise MigrationCopyFailure(
                task.task_id,
                f"verification mismatch ({len(source)} source keys, {len(target)} target keys)"
            )

    def _discard_source(self, task: MigrationTask):
        if self._get_store is None:
            return
        store = self._get_store(task.source_node)
        if store is None:
            return
        try:
            removed = store.delete_range(task.key_range)
        except Exception:
            # Ownership has already moved; the stale copy is unreachable
            logger.exception("Migration %s: %s could not discard its range",
                             task.task_id, task.source_node)
            return
        logger.debug("Migration %s: %s discarded %d keys",
                     task.task_id, task.source_node, removed)

    def _escalate(self, task: MigrationTask):
        logger.error("Migration %s escalated after %d attempts: %s",
                     task.task_id, task.attempts, task.error)
        with self._lock:
            self._stats.escalated_migrations += 1
        self.channel.publish(MigrationEscalated(
            task_id=task.task_id,
            attempts=task.attempts,
            error=task.error or "",
        ))

    def _replan(self, task: MigrationTask) -> List[MigrationTask]:
        """Re-plan a task that lost a cutover conflict against the latest ring."""
        snap = self.ring.snapshot()

        if task.target_node not in snap.nodes:
            self.channel.publish(MigrationReplanned(task.task_id, None, "target left the ring"))
            return []

        if snap.range_owners(task.key_range) == {task.target_node}:
            # Ownership already flipped, e.g. resumed after a crash past cutover
            self._transition(task, MigrationState.DONE)
            self._discard_source(task)
            self.channel.publish(MigrationReplanned(task.task_id, None, "already owned by target"))
            return []

        replacements = []
        for piece, owner in snap.split_by_owner(task.key_range):
            if owner == task.target_node:
                continue
            replacement = MigrationTask(
                task_id=_new_task_id(),
                key_range=piece,
                source_node=owner,
                target_node=task.target_node,
                attempts=task.attempts,
                rebalance_id=task.rebalance_id,
            )
            with self._lock:
                self._active[replacement.task_id] = replacement
            self.channel.publish(MigrationReplanned(
                task.task_id, replacement.task_id, task.error or "conflict"
            ))
            replacements.append(replacement)

        return replacements

    def _retire(self, task: MigrationTask):
        with self._lock:
            self._active.pop(task.task_id, None)
            self._cancel_requested.discard(task.task_id)
            self._history.append(task)

            self._stats.total_migrations += 1
            self._stats.last_migration_time = time.time()
            if task.state == MigrationState.DONE:
                self._stats.successful_migrations += 1
                self._stats.keys_migrated += task.keys_copied
            elif task.state == MigrationState.CANCELLED:
                self._stats.cancelled_migrations += 1
            else:
                self._stats.failed_migrations += 1

    # Control and status

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a task that has not reached CUTOVER.

        Returns:
            True if the cancellation was accepted
        """
        with self._lock:
            task = self._active.get(task_id)
            if task is None or task.state not in CANCELLABLE:
                return False
            self._cancel_requested.add(task_id)
            return True

    def cutover_ranges(self) -> List[KeyRange]:
        """Ranges of tasks currently in CUTOVER."""
        with self._lock:
            return [t.key_range for t in self._active.values()
                    if t.state == MigrationState.CUTOVER]

    def export_tasks(self) -> List[Dict]:
        """Unfinished tasks, serialized for handoff to a restarted coordinator."""
        with self._lock:
            return [t.to_dict() for t in self._active.values()]

    def resume(self, exported: List[Dict]) -> List[Future]:
        """
        Restart exported tasks.

        Anything not DONE starts again from PLANNED; partial progress from
        before the restart is never trusted.
        """
        futures = []
        for data in exported:
            task = MigrationTask.from_dict(data)
            if task.state == MigrationState.DONE:
                continue
            task.state = MigrationState.PLANNED
            task.attempts = 0
            futures.append(self.submit(task))
        return futures

    def get_task(self, task_id: str) -> Optional[MigrationTask]:
        with self._lock:
            if task_id in self._active:
                return self._active[task_id]
            for task in self._history:
                if task.task_id == task_id:
                    return task
        return None

    def get_history(self) -> List[MigrationTask]:
        with self._lock:
            return list(self._history)

    def get_migration_status(self) -> Dict:
        """Get current migration status."""
        with self._lock:
            return {
                "active_migrations": [t.to_dict() for t in self._active.values()],
                "stats": {
                    "total_migrations": self._stats.total_migrations,
                    "successful": self._stats.successful_migrations,
                    "failed": self._stats.failed_migrations,
                    "escalated": self._stats.escalated_migrations,
                    "cancelled": self._stats.cancelled_migrations,
                    "conflicts": self._stats.conflicts,
                    "keys_migrated": self._stats.keys_migrated
                }
            }
