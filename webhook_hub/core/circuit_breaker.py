"""
Circuit Breaker Pattern Implementation

Per-endpoint health tracking for outgoing webhook delivery. One breaker
instance holds the state of every endpoint it has seen, keyed by endpoint
(target URL or endpoint name).
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from webhook_hub.core.exceptions import CircuitBreakerOpenError
from webhook_hub.core.instrumentation import CIRCUIT_CLOSED, CIRCUIT_OPENED, Instrumentation
from webhook_hub.core.logging import get_logger

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # Cooldown elapsed, probing


@dataclass
class CircuitBreakerConfig:
    """Default policy, used when a call does not pass its own"""
    failure_threshold: int = 5
    cooldown_seconds: float = 300.0


@dataclass
class EndpointCircuit:
    """State tracking for one endpoint"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: float | None = None
    opened_at: float | None = None

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_at": self.last_failure_at,
            "opened_at": self.opened_at,
        }


class CircuitBreaker:
    """
    Circuit breaker for outgoing endpoints.

    States:
    - CLOSED: normal operation, counting consecutive failures
    - OPEN: endpoint is failing, block all attempts until the cooldown passes
    - HALF_OPEN: cooldown passed; one success closes, one failure re-opens
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        instrumentation: Instrumentation | None = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._instrumentation = instrumentation
        self._circuits: dict[str, EndpointCircuit] = {}
        # threading.Lock so the same instance is safe across Celery event loops
        self._lock = threading.Lock()

    def _circuit(self, endpoint: str) -> EndpointCircuit:
        circuit = self._circuits.get(endpoint)
        if circuit is None:
            circuit = EndpointCircuit()
            self._circuits[endpoint] = circuit
        return circuit

    def _threshold(self, failure_threshold: int | None) -> int:
        return self.config.failure_threshold if failure_threshold is None else failure_threshold

    def _cooldown(self, cooldown_seconds: float | None) -> float:
        return self.config.cooldown_seconds if cooldown_seconds is None else cooldown_seconds

    def _transition(self, endpoint: str, circuit: EndpointCircuit, new_state: CircuitState) -> None:
        """Change state. Caller holds the lock."""
        old_state = circuit.state
        circuit.state = new_state

        if new_state == CircuitState.OPEN:
            circuit.opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            circuit.failure_count = 0
            circuit.last_failure_at = None
            circuit.opened_at = None

        logger.info(
            f"Circuit breaker '{endpoint}' transitioned",
            extra_data={
                "endpoint": endpoint,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "failure_count": circuit.failure_count,
            }
        )

        if self._instrumentation is None or old_state == new_state:
            return
        if new_state == CircuitState.OPEN:
            self._instrumentation.emit(CIRCUIT_OPENED, endpoint=endpoint, failure_count=circuit.failure_count)
        elif new_state == CircuitState.CLOSED:
            self._instrumentation.emit(CIRCUIT_CLOSED, endpoint=endpoint)

    def allowed(
        self,
        endpoint: str,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
    ) -> bool:
        """
        Check whether a delivery attempt may proceed.

        An open circuit whose cooldown has elapsed moves to half_open here
        and the call is allowed through.
        """
        cooldown = self._cooldown(cooldown_seconds)
        with self._lock:
            circuit = self._circuit(endpoint)

            if circuit.state == CircuitState.CLOSED:
                return True

            if circuit.state == CircuitState.OPEN:
                opened_at = circuit.opened_at or 0.0
                if self._clock() - opened_at >= cooldown:
                    self._transition(endpoint, circuit, CircuitState.HALF_OPEN)
                    return True
                return False

            return True

    def check(
        self,
        endpoint: str,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
    ) -> None:
        """
        Same as ``allowed`` but raises instead of returning False.

        Raises:
            CircuitBreakerOpenError: the circuit is open and cooling down
        """
        if not self.allowed(endpoint, failure_threshold, cooldown_seconds):
            raise CircuitBreakerOpenError(endpoint, self.retry_after(endpoint, cooldown_seconds))

    def record_success(self, endpoint: str) -> None:
        """Record a successful delivery"""
        with self._lock:
            circuit = self._circuit(endpoint)
            if circuit.state == CircuitState.HALF_OPEN:
                self._transition(endpoint, circuit, CircuitState.CLOSED)
            elif circuit.state == CircuitState.CLOSED:
                circuit.failure_count = 0

    def record_failure(
        self,
        endpoint: str,
        failure_threshold: int | None = None,
        error: Exception | str | None = None,
    ) -> None:
        """Record a failed delivery"""
        threshold = self._threshold(failure_threshold)
        with self._lock:
            circuit = self._circuit(endpoint)
            circuit.failure_count += 1
            circuit.last_failure_at = self._clock()

            logger.warning(
                f"Circuit breaker '{endpoint}' recorded failure",
                extra_data={
                    "endpoint": endpoint,
                    "failure_count": circuit.failure_count,
                    "threshold": threshold,
                    "error": str(error) if error else None,
                }
            )

            if circuit.state == CircuitState.HALF_OPEN:
                # the trial request failed, back to open for another cooldown
                self._transition(endpoint, circuit, CircuitState.OPEN)
            elif circuit.state == CircuitState.CLOSED and circuit.failure_count >= threshold:
                self._transition(endpoint, circuit, CircuitState.OPEN)

    def retry_after(self, endpoint: str, cooldown_seconds: float | None = None) -> float:
        """Seconds until an open circuit admits a trial request (0 when not open)"""
        cooldown = self._cooldown(cooldown_seconds)
        with self._lock:
            circuit = self._circuits.get(endpoint)
            if circuit is None or circuit.state != CircuitState.OPEN:
                return 0.0
            elapsed = self._clock() - (circuit.opened_at or 0.0)
            return max(0.0, cooldown - elapsed)

    def open(self, endpoint: str) -> None:
        """Force the circuit open (operator action)"""
        with self._lock:
            self._transition(endpoint, self._circuit(endpoint), CircuitState.OPEN)

    def close(self, endpoint: str) -> None:
        """Force the circuit closed (operator action)"""
        with self._lock:
            self._transition(endpoint, self._circuit(endpoint), CircuitState.CLOSED)

    def state(self, endpoint: str) -> CircuitState:
        with self._lock:
            circuit = self._circuits.get(endpoint)
            return circuit.state if circuit else CircuitState.CLOSED

    def failure_count(self, endpoint: str) -> int:
        with self._lock:
            circuit = self._circuits.get(endpoint)
            return circuit.failure_count if circuit else 0

    def all_states(self) -> dict[str, dict]:
        with self._lock:
            return {endpoint: circuit.as_dict() for endpoint, circuit in self._circuits.items()}

    def reset(self, endpoint: str) -> None:
        with self._lock:
            self._circuits.pop(endpoint, None)

    def clear(self) -> None:
        """Reset all circuits (for testing)"""
        with self._lock:
            self._circuits.clear()
