"""
Retry Policy and Circuit Breaker Tests
"""

import sys
import os
import threading
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from shardkv.cluster.replication import ReplicaSet
from shardkv.errors import CircuitOpenError
from shardkv.resilience.circuit_breaker import BreakerState, CircuitBreaker
from shardkv.resilience.retry import ResilientRouter, RetryPolicy
from shardkv.sharding.consistent_hash import ConsistentHashRing, Node
from shardkv.sharding.router import ReadRequest, ShardRouter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_router():
    ring = ConsistentHashRing(virtual_nodes=8)
    for node_id in ("A", "B", "C"):
        ring.add_node(Node(node_id))
    return ShardRouter(ring, ReplicaSet())


def test_breaker_opens_and_recovers():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout=10.0, clock=clock)

    for _ in range(3):
        assert breaker.allow("A")
        breaker.record_failure("A")
    assert breaker.state("A") == BreakerState.OPEN
    assert not breaker.allow("A")
    assert breaker.allow("B"), "circuits are per node"

    clock.now = 11.0
    assert breaker.allow("A"), "one probe after the reset timeout"
    assert breaker.state("A") == BreakerState.HALF_OPEN
    assert not breaker.allow("A"), "only one probe at a time"

    breaker.record_success("A")
    assert breaker.state("A") == BreakerState.CLOSED
    assert breaker.allow("A")


def test_failed_probe_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=5.0, clock=clock)
    breaker.record_failure("A")

    clock.now = 6.0
    assert breaker.allow("A")
    breaker.record_failure("A")

    assert breaker.state("A") == BreakerState.OPEN
    assert not breaker.allow("A")


def test_backoff_delays():
    policy = RetryPolicy(base_delay=0.1, max_delay=0.5, multiplier=2.0, jitter=False)

    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [0.1, 0.2, 0.4, 0.5]

    jittered = RetryPolicy(base_delay=0.1, max_delay=0.5)
    assert all(0 <= jittered.delay(3) <= 0.4 for _ in range(20))


def test_retries_transient_errors():
    router = make_router()
    sleeps = []
    resilient = ResilientRouter(router, RetryPolicy(max_attempts=3, jitter=False),
                                sleep=sleeps.append)
    calls = []

    def flaky(node):
        calls.append(node.node_id)
        if len(calls) < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    assert resilient.call(ReadRequest.strong("user:1"), flaky) == "ok"
    assert len(calls) == 3
    assert sleeps == [0.05, 0.1]
    assert resilient.get_stats()["retries"] == 2


def test_non_retryable_error_propagates():
    resilient = ResilientRouter(make_router(), RetryPolicy(max_attempts=5), sleep=lambda _: None)
    calls = []

    def broken(node):
        calls.append(node)
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        resilient.call_write("user:1", broken)
    assert len(calls) == 1


def test_open_circuit_short_circuits():
    router = make_router()
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0)
    resilient = ResilientRouter(router, RetryPolicy(max_attempts=2, jitter=False),
                                breaker=breaker, sleep=lambda _: None)

    def down(node):
        raise ConnectionError("refused")

    with pytest.raises(ConnectionError):
        resilient.call_write("user:1", down)

    calls = []
    with pytest.raises(CircuitOpenError):
        resilient.call_write("user:1", calls.append)
    assert calls == []
    assert resilient.get_stats()["short_circuited"] == 2


def test_stats_are_exact_under_concurrency():
    resilient = ResilientRouter(make_router(), RetryPolicy(max_attempts=1), sleep=lambda _: None)

    def worker(n):
        for i in range(500):
            resilient.call_write(f"user:{n}:{i}", lambda node: node.node_id)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    stats = resilient.get_stats()
    assert stats["calls"] == 4000
    assert stats["failures"] == 0
    assert set(stats["breaker"]) <= {"A", "B", "C"}
