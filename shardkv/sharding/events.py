"""
Typed migration events and the status channel that carries them.

Migrations run in the background with no caller waiting on them, so their
progress and failures are published here instead of raised.
"""

import time
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Type, TypeVar, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationStateChanged:
    task_id: str
    old_state: str
    new_state: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MigrationRetrying:
    task_id: str
    attempt: int
    error: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MigrationEscalated:
    """A task exhausted its attempts and needs an operator."""
    task_id: str
    attempts: int
    error: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class MigrationReplanned:
    """A cutover lost a conflict and was re-planned against the latest ring."""
    task_id: str
    replacement_task_id: Optional[str]
    reason: str
    at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RebalanceFinished:
    rebalance_id: str
    succeeded: bool
    tasks: int
    failed_tasks: List[str] = field(default_factory=list)
    at: float = field(default_factory=time.time)


MigrationEvent = Union[
    MigrationStateChanged,
    MigrationRetrying,
    MigrationEscalated,
    MigrationReplanned,
    RebalanceFinished,
]

E = TypeVar("E")


class StatusChannel:
    """
    Publish/subscribe for migration events.

    Subscribers register for one event class and only receive that kind.
    The most recent events are retained for polling.
    """

    def __init__(self, history_size: int = 1000):
        self._lock = threading.Lock()
        self._subscribers: Dict[type, List[Callable]] = {}
        self._history: Deque[MigrationEvent] = deque(maxlen=history_size)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]):
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[E], handler: Callable[[E], None]):
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: MigrationEvent):
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(type(event), []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                # A broken subscriber must not stall migrations
                logger.exception("Status subscriber failed on %s", type(event).__name__)

    def recent(self, event_type: Optional[Type[E]] = None) -> List[MigrationEvent]:
        with self._lock:
            if event_type is None:
                return list(self._history)
            return [e for e in self._history if isinstance(e, event_type)]
