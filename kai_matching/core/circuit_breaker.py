"""
Circuit breaker for generative model calls.

When the model provider keeps failing, ranking requests fail fast with a
retryable error instead of queueing behind a dead endpoint.

Circuit States:
- CLOSED: Normal operation, calls pass through
- OPEN: Provider failing, calls are rejected without contacting it
- HALF_OPEN: Probing recovery, a limited number of calls allowed
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from .observability import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open and request is rejected."""
    pass


class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    Usage:
        breaker = CircuitBreaker(name="Azure OpenAI", failure_threshold=5, timeout=60)
        payload = await breaker.call(model.generate_json, prompt, schema, "rankings")
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: float = 60.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Service name for logging
            failure_threshold: Number of consecutive failures before opening circuit
            timeout: Seconds to wait before probing again (OPEN → HALF_OPEN)
            half_open_max_calls: Max calls allowed in HALF_OPEN state
            clock: Monotonic time source
        """
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")

        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_calls = 0

        logger.info(
            f"CircuitBreaker '{name}' initialized: "
            f"threshold={failure_threshold}, timeout={timeout}s"
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit breaker state."""
        return self._state

    def _should_attempt_reset(self) -> bool:
        if self._last_failure_time is None:
            return False
        return self._clock() - self._last_failure_time >= self.timeout

    def _open_circuit(self):
        self._state = CircuitState.OPEN
        self._last_failure_time = self._clock()
        logger.warning(
            f"CircuitBreaker '{self.name}' OPENED after {self._failure_count} failures"
        )

    def _close_circuit(self):
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_calls = 0
        logger.info(f"CircuitBreaker '{self.name}' CLOSED: service recovered")

    def _half_open_circuit(self):
        self._state = CircuitState.HALF_OPEN
        self._half_open_calls = 0
        logger.info(f"CircuitBreaker '{self.name}' HALF_OPEN: testing service recovery")

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If circuit is open
            Exception: Original exception from func if call fails
        """
        with tracer.start_as_current_span("circuit_breaker.call") as span:
            span.set_attribute("circuit_name", self.name)
            span.set_attribute("circuit_state", self._state.value)

            if self._state == CircuitState.OPEN:
                if self._should_attempt_reset():
                    self._half_open_circuit()
                else:
                    span.set_attribute("circuit_action", "reject")
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker '{self.name}' is OPEN "
                        f"(failed {self._failure_count} times)"
                    )

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    span.set_attribute("circuit_action", "reject_half_open")
                    raise CircuitBreakerOpenError(
                        f"Circuit breaker '{self.name}' is HALF_OPEN, probe already in flight"
                    )
                self._half_open_calls += 1

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                self._failure_count += 1
                span.set_attribute("call_success", False)
                span.set_attribute("failure_count", self._failure_count)

                if self._state == CircuitState.HALF_OPEN:
                    self._open_circuit()
                    span.set_attribute("circuit_action", "reopened")
                elif self._failure_count >= self.failure_threshold:
                    self._open_circuit()
                    span.set_attribute("circuit_action", "opened")

                logger.error(
                    f"CircuitBreaker '{self.name}' call failed: {e} "
                    f"(failures: {self._failure_count}/{self.failure_threshold})"
                )
                raise

            if self._state == CircuitState.HALF_OPEN:
                self._close_circuit()
                span.set_attribute("circuit_action", "closed")
            else:
                self._failure_count = 0

            span.set_attribute("call_success", True)
            return result
