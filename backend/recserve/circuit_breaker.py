"""Circuit breaker for calls to the ranking model service.

Prevents a failing model service from stalling every serving request and the
batch precomputation loop behind slow timeouts.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests fail fast without attempting
- HALF_OPEN: Testing if service has recovered

Usage:
    from recserve.circuit_breaker import ranking_circuit_breaker

    result = await ranking_circuit_breaker.call_async(fetch, user_id, limit)

    # Health checks
    from recserve.circuit_breaker import get_circuit_breaker_states
    states = get_circuit_breaker_states()
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"       # Normal operation
    OPEN = "open"           # Failing fast
    HALF_OPEN = "half_open" # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker.

    Attributes:
        name: Unique name for the circuit breaker (used in logging)
        failure_threshold: Number of failures before circuit opens
        success_threshold: Number of successes in half-open to close circuit
        reset_timeout_seconds: Time before attempting recovery (half-open)
        retry_attempts: Number of attempts per call
        retry_min_wait: Minimum wait between retries (seconds)
        retry_max_wait: Maximum wait between retries (seconds)
        retry_multiplier: Exponential backoff multiplier
        exceptions: Exception types that are retried
    """
    name: str
    failure_threshold: int = 5
    success_threshold: int = 2
    reset_timeout_seconds: float = 30.0
    retry_attempts: int = 3
    retry_min_wait: float = 1.0
    retry_max_wait: float = 10.0
    retry_multiplier: float = 2.0
    exceptions: tuple = field(default_factory=lambda: (Exception,))


@dataclass
class CircuitBreakerStats:
    """Statistics for a circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0  # Calls rejected due to open circuit
    current_failures: int = 0
    current_successes: int = 0
    state_changes: int = 0


class CircuitBreakerOpen(Exception):
    """Exception raised when circuit breaker is open."""

    def __init__(self, breaker_name: str, time_until_retry: float):
        self.breaker_name = breaker_name
        self.time_until_retry = time_until_retry
        super().__init__(
            f"Circuit breaker '{breaker_name}' is OPEN. "
            f"Retry in {time_until_retry:.1f} seconds."
        )


class CircuitBreaker:
    """Circuit breaker for coroutine calls, with tenacity retries.

    Runs on the event loop only, so state changes need no locking.
    """

    def __init__(self, config: CircuitBreakerConfig, clock: Callable[[], float] = time.monotonic):
        """Initialize circuit breaker with configuration.

        Args:
            config: CircuitBreakerConfig with breaker settings
            clock: Monotonic seconds source
        """
        self.config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._last_state_change_time = clock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state with automatic half-open transition."""
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._last_state_change_time
            if elapsed >= self.config.reset_timeout_seconds:
                self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(**vars(self._stats))

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._last_state_change_time = self._clock()
        self._stats.state_changes += 1
        self._stats.current_successes = 0

        logger.warning(
            f"Circuit breaker '{self.config.name}' state changed: "
            f"{old_state.value} -> {new_state.value}"
        )

    def _record_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.current_failures = 0
        self._stats.current_successes += 1

        if self._state == CircuitState.HALF_OPEN:
            if self._stats.current_successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def _record_failure(self, error: BaseException) -> None:
        self._stats.failed_calls += 1
        self._stats.current_failures += 1
        self._stats.current_successes = 0

        logger.warning(
            f"Circuit breaker '{self.config.name}' recorded failure "
            f"({self._stats.current_failures}/{self.config.failure_threshold}): {error}"
        )

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open returns to open
            self._transition_to(CircuitState.OPEN)
        elif self._state == CircuitState.CLOSED:
            if self._stats.current_failures >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def _time_until_retry(self) -> float:
        elapsed = self._clock() - self._last_state_change_time
        return max(0.0, self.config.reset_timeout_seconds - elapsed)

    async def call_async(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute a coroutine function with circuit breaker protection.

        Raises:
            CircuitBreakerOpen: If the circuit is open
            Exception: Any exception from func after retries are exhausted
        """
        self._stats.total_calls += 1
        if self.state == CircuitState.OPEN:
            self._stats.rejected_calls += 1
            raise CircuitBreakerOpen(self.config.name, self._time_until_retry())

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.retry_attempts),
                wait=wait_exponential(
                    multiplier=self.config.retry_multiplier,
                    min=self.config.retry_min_wait,
                    max=self.config.retry_max_wait,
                ),
                retry=retry_if_exception_type(self.config.exceptions),
                reraise=True,
            ):
                with attempt:
                    result = await func(*args, **kwargs)
            self._record_success()
            return result
        except RetryError as e:
            error = e.last_attempt.exception()
            self._record_failure(error)
            raise error from e
        except Exception as e:
            self._record_failure(e)
            raise

    def reset(self) -> None:
        """Reset circuit breaker to closed state and clear statistics."""
        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._last_state_change_time = self._clock()
        logger.info(f"Circuit breaker '{self.config.name}' reset to CLOSED")

    def get_status(self) -> Dict[str, Any]:
        """Get detailed status for health checks."""
        stats = self.stats
        current_state = self.state

        return {
            "name": self.config.name,
            "state": current_state.value,
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "reset_timeout_seconds": self.config.reset_timeout_seconds,
                "retry_attempts": self.config.retry_attempts,
            },
            "stats": {
                "total_calls": stats.total_calls,
                "successful_calls": stats.successful_calls,
                "failed_calls": stats.failed_calls,
                "rejected_calls": stats.rejected_calls,
                "current_failures": stats.current_failures,
            },
            "time_until_retry": (
                self._time_until_retry() if current_state == CircuitState.OPEN else None
            ),
            "state_changes": stats.state_changes,
        }


# Transport-level failures only; HTTP 4xx/5xx responses are not retried
RANKING_EXCEPTIONS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
)

# - 3 attempts with exponential backoff: 0.5s, 1s
# - Opens after 5 consecutive failures
# - 30 second reset timeout
ranking_circuit_breaker = CircuitBreaker(
    CircuitBreakerConfig(
        name="ranking",
        failure_threshold=5,
        success_threshold=2,
        reset_timeout_seconds=30.0,
        retry_attempts=3,
        retry_min_wait=0.5,
        retry_max_wait=5.0,
        retry_multiplier=1.0,
        exceptions=RANKING_EXCEPTIONS,
    )
)


def get_circuit_breaker_states() -> Dict[str, Dict[str, Any]]:
    """Get status of all circuit breakers for health checks."""
    return {"ranking": ranking_circuit_breaker.get_status()}


def get_circuit_breakers_healthy() -> bool:
    """True if no circuit breaker is OPEN."""
    return all(
        status["state"] != CircuitState.OPEN.value
        for status in get_circuit_breaker_states().values()
    )
