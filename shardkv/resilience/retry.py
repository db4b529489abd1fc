"""
Retry-with-backoff policy and a router wrapper that applies it.

The router itself never retries; callers that want retries and circuit
breaking compose them around it with ResilientRouter.
"""

import time
import random
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar

from .circuit_breaker import CircuitBreaker
from ..config import ClusterConfig
from ..errors import CircuitOpenError, ShardUnavailableError
from ..sharding.consistent_hash import Key, Node
from ..sharding.router import ReadRequest, ShardRouter

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff with optional full jitter."""
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: bool = True
    retry_on: Tuple[Type[BaseException], ...] = (ShardUnavailableError, ConnectionError, TimeoutError)

    @classmethod
    def from_config(cls, config: ClusterConfig) -> 'RetryPolicy':
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        ceiling = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            return random.uniform(0, ceiling)
        return ceiling

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and isinstance(error, self.retry_on)


class ResilientRouter:
    """
    Wraps a ShardRouter with retries and a per-node circuit breaker.

    call() routes the request, skips nodes whose circuit is open, runs the
    operation against the chosen node and feeds the outcome back into the
    breaker.
    """

    def __init__(self, router: ShardRouter,
                 policy: Optional[RetryPolicy] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.router = router
        self.policy = policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

        self._stats_lock = threading.Lock()
        self._stats = {"calls": 0, "retries": 0, "short_circuited": 0, "failures": 0}

    def _count(self, name: str):
        with self._stats_lock:
            self._stats[name] += 1

    def _attempt(self, resolve: Callable[[], Node], operation: Callable[[Node], T]) -> T:
        node = resolve()
        if not self.breaker.allow(node.node_id):
            self._count("short_circuited")
            raise CircuitOpenError(node.node_id)

        try:
            result = operation(node)
        except self.policy.retry_on:
            self.breaker.record_failure(node.node_id)
            raise
        self.breaker.record_success(node.node_id)
        return result

    def _run(self, resolve: Callable[[], Node], operation: Callable[[Node], T]) -> T:
        self._count("calls")
        attempt = 1
        while True:
            try:
                return self._attempt(resolve, operation)
            except Exception as e:
                if not self.policy.should_retry(e, attempt):
                    self._count("failures")
                    raise
                delay = self.policy.delay(attempt)
                logger.debug("Attempt %d failed (%s), retrying in %.3fs", attempt, e, delay)
                self._count("retries")
                attempt += 1
                self._sleep(delay)

    def call(self, request: ReadRequest, operation: Callable[[Node], T]) -> T:
        """Route a read and run operation(node) with retries."""
        return self._run(lambda: self.router.route(request), operation)

    def call_write(self, key: Key, operation: Callable[[Node], T]) -> T:
        """Route a write to the primary and run operation(node) with retries."""
        return self._run(lambda: self.router.route_write(key), operation)

    def get_stats(self) -> Dict:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["breaker"] = self.breaker.get_stats()
        return stats
