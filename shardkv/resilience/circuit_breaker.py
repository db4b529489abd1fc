"""
Per-node circuit breaker.
"""

import time
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class _Circuit:
    state: BreakerState = BreakerState.CLOSED
    failures: int = 0
    opened_at: float = 0.0
    probe_in_flight: bool = False


class CircuitBreaker:
    """
    Circuit breaker keyed by node id.

    Features:
    - Opens after failure_threshold consecutive failures
    - Lets a single probe through after reset_timeout (half-open)
    - Closes again on a successful probe
    """

    def __init__(self, failure_threshold: int = 5, reset_timeout: float = 10.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._circuits: Dict[str, _Circuit] = {}

    def _circuit(self, node_id: str) -> _Circuit:
        circuit = self._circuits.get(node_id)
        if circuit is None:
            circuit = _Circuit()
            self._circuits[node_id] = circuit
        return circuit

    def allow(self, node_id: str) -> bool:
        """Whether a call to node_id may proceed."""
        with self._lock:
            circuit = self._circuit(node_id)

            if circuit.state == BreakerState.CLOSED:
                return True

            if circuit.state == BreakerState.OPEN:
                if self._clock() - circuit.opened_at < self.reset_timeout:
                    return False
                circuit.state = BreakerState.HALF_OPEN
                circuit.probe_in_flight = False

            if circuit.probe_in_flight:
                return False
            circuit.probe_in_flight = True
            return True

    def record_success(self, node_id: str):
        with self._lock:
            circuit = self._circuit(node_id)
            if circuit.state != BreakerState.CLOSED:
                logger.info("Circuit for %s closed", node_id)
            circuit.state = BreakerState.CLOSED
            circuit.failures = 0
            circuit.probe_in_flight = False

    def record_failure(self, node_id: str):
        with self._lock:
            circuit = self._circuit(node_id)
            circuit.failures += 1
            circuit.probe_in_flight = False

            if (circuit.state == BreakerState.HALF_OPEN or
                    circuit.failures >= self.failure_threshold):
                if circuit.state != BreakerState.OPEN:
                    logger.warning("Circuit for %s opened after %d failures",
                                   node_id, circuit.failures)
                circuit.state = BreakerState.OPEN
                circuit.opened_at = self._clock()

    def state(self, node_id: str) -> BreakerState:
        with self._lock:
            return self._circuit(node_id).state

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                node_id: {"state": c.state.value, "failures": c.failures}
                for node_id, c in self._circuits.items()
            }
