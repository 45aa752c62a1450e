"""Circuit breaker around the upstream completion call."""
import time
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
from chatproxy.errors import CircuitBreakerOpenError
from chatproxy.metrics import record_circuit_breaker_failure, record_circuit_breaker_state
from chatproxy.constants import (
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Testing if service recovered


T = TypeVar("T")


def _always(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    """
    Circuit breaker for async upstream calls.

    States:
    - CLOSED: Normal operation, requests go through
    - OPEN: Too many consecutive failures, reject without calling
    - HALF_OPEN: Recovery timeout elapsed, the next call is a probe

    ``counts_as_failure`` decides which exceptions trip the breaker; errors
    it rejects are re-raised without touching the failure count.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        recovery_timeout: float = CIRCUIT_BREAKER_RECOVERY_TIMEOUT,
        counts_as_failure: Callable[[BaseException], bool] = _always
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.counts_as_failure = counts_as_failure

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._last_failure_time
                and time.time() - self._last_failure_time >= self.recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                self._failure_count = 0
                record_circuit_breaker_state(self.name, self._state.value)
            return self._state

    def _on_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                record_circuit_breaker_state(self.name, self._state.value)
            self._failure_count = 0
            self._last_failure_time = None

    def _on_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()
            record_circuit_breaker_failure(self.name)

            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                record_circuit_breaker_state(self.name, self._state.value)

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is open
        """
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self.counts_as_failure(e):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def reset(self):
        """Manually reset circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._last_failure_time = None
            record_circuit_breaker_state(self.name, self._state.value)

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self._last_failure_time,
            "recovery_timeout": self.recovery_timeout
        }
