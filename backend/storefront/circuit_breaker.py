"""Circuit breaker guarding outbound payment-provider calls."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation, requests allowed
    OPEN = "open"  # Circuit broken, requests rejected
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerStats:
    """Statistics for circuit breaker monitoring"""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    timed_out_calls: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    consecutive_failures: int = 0
    circuit_opened_count: int = 0


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is open."""


class CircuitBreaker:
    """
    Circuit breaker to protect against cascading provider failures.

    The circuit breaker has three states:
    - CLOSED: Normal operation, all requests pass through
    - OPEN: After failure threshold, requests are immediately rejected
    - HALF_OPEN: After cooldown, trial requests are allowed

    Every call is bounded by ``timeout_seconds``; a timeout counts as a failure
    and surfaces as ``asyncio.TimeoutError`` to the caller. Exceptions listed in
    ``excluded_exceptions`` mean the service answered and refused the request,
    so they count as successes.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        success_threshold: int = 1,
        timeout_seconds: float | None = None,
        enabled: bool | None = None,
        excluded_exceptions: tuple[type[BaseException], ...] = (),
    ):
        self.name = name
        self.failure_threshold = failure_threshold if failure_threshold is not None else 5
        self.cooldown_seconds = cooldown_seconds if cooldown_seconds is not None else 60.0
        self.success_threshold = success_threshold
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled if enabled is not None else True
        self.excluded_exceptions = excluded_exceptions

        self._state = CircuitState.CLOSED
        self._stats = CircuitBreakerStats()
        self._last_state_change = time.monotonic()
        self._half_open_successes = 0

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, checking for automatic transitions."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_state_change >= self.cooldown_seconds:
                self._transition_to(CircuitState.HALF_OPEN)
        return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._last_state_change = time.monotonic()

        if new_state == CircuitState.OPEN:
            self._stats.circuit_opened_count += 1
            logger.warning(
                "circuit_opened",
                circuit=self.name,
                consecutive_failures=self._stats.consecutive_failures,
            )
        elif new_state == CircuitState.CLOSED:
            self._stats.consecutive_failures = 0
            self._half_open_successes = 0
            if old_state == CircuitState.HALF_OPEN:
                logger.info("circuit_closed", circuit=self.name)
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_successes = 0
            logger.info("circuit_half_open", circuit=self.name)
        self._publish()

    def _publish(self) -> None:
        from .metrics import circuit_breaker_state, track_circuit_breaker_metrics

        circuit_breaker_state.labels(circuit_name=self.name).set(
            {CircuitState.CLOSED: 0, CircuitState.OPEN: 1, CircuitState.HALF_OPEN: 2}[self._state]
        )
        track_circuit_breaker_metrics(self.name, asdict(self._stats))

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        timeout_seconds: float | None = None,
        **kwargs: Any,
    ) -> T:
        """
        Await ``func(*args, **kwargs)`` through the breaker.

        Raises:
            CircuitOpenError: If circuit is open
            asyncio.TimeoutError: If the call exceeds its timeout
            Original exception: If func fails
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        if not self.enabled:
            return await _bounded(func(*args, **kwargs), timeout)

        if self.state == CircuitState.OPEN:
            self._stats.rejected_calls += 1
            self._publish()
            raise CircuitOpenError(
                f"Circuit breaker '{self.name}' is open. "
                f"Service will be retried after {self.cooldown_seconds} seconds."
            )

        try:
            result = await _bounded(func(*args, **kwargs), timeout)
        except asyncio.TimeoutError:
            self._stats.timed_out_calls += 1
            self._on_failure()
            raise
        except self.excluded_exceptions:
            self._on_success()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self._stats.total_calls += 1
        self._stats.successful_calls += 1
        self._stats.last_success_time = time.time()
        self._stats.consecutive_failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.success_threshold:
                self._transition_to(CircuitState.CLOSED)
                return
        self._publish()

    def _on_failure(self) -> None:
        self._stats.total_calls += 1
        self._stats.failed_calls += 1
        self._stats.last_failure_time = time.time()
        self._stats.consecutive_failures += 1

        if self._state == CircuitState.HALF_OPEN:
            # Failure in half-open state immediately opens circuit
            self._transition_to(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and self._stats.consecutive_failures >= self.failure_threshold
        ):
            self._transition_to(CircuitState.OPEN)
        else:
            self._publish()

    def reset(self) -> None:
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._stats.consecutive_failures = 0
        self._half_open_successes = 0
        self._last_state_change = time.monotonic()
        logger.info("circuit_reset", circuit=self.name)
        self._publish()

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED


async def _bounded(awaitable: Awaitable[T], timeout: float | None) -> T:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=max(0.01, timeout))


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
]
