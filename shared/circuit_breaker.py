"""
Circuit breaker guarding calls to the upstream index.
"""

import time
from enum import Enum
from typing import Dict, Any, Callable, Optional

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, scheduler stops draining


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Opens once ``failure_threshold`` failures accumulate without an
    intervening success. Closing is lazy: the next state check after
    ``recovery_timeout`` seconds have passed since the last failure closes
    the breaker and zeroes the failure count. There is no half-open probe;
    the first request let through decides by its own outcome whether the
    breaker stays closed.
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 name: str = "index",
                 clock: Optional[Callable[[], float]] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self.logger = get_logger(f"risk.circuit_breaker.{name}")
        self._clock = clock or time.monotonic

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> Optional[float]:
        return self._last_failure_time

    def _can_attempt_reset(self) -> bool:
        """Check if enough time has passed since the last failure."""
        if self._last_failure_time is None:
            return True
        return (self._clock() - self._last_failure_time) > self.recovery_timeout

    def _refresh_state(self) -> CircuitBreakerState:
        if self._state == CircuitBreakerState.OPEN and self._can_attempt_reset():
            self._state = CircuitBreakerState.CLOSED
            self._failure_count = 0
            self.logger.info("Circuit breaker closed after recovery timeout",
                             recovery_timeout=self.recovery_timeout)
        return self._state

    @property
    def state(self) -> CircuitBreakerState:
        return self._refresh_state()

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._refresh_state() == CircuitBreakerState.OPEN

    def record_success(self) -> None:
        """Record a successful upstream call."""
        if self._failure_count:
            self.logger.debug("Circuit breaker failure count reset",
                              previous_failures=self._failure_count)
        self._failure_count = 0
        self._state = CircuitBreakerState.CLOSED

    def record_failure(self) -> None:
        """Record a failure and update state."""
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._failure_count >= self.failure_threshold and self._state != CircuitBreakerState.OPEN:
            self._state = CircuitBreakerState.OPEN
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=self._failure_count,
                threshold=self.failure_threshold
            )

    def reset(self) -> None:
        """Force the breaker closed and forget past failures."""
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "last_failure_time": self._last_failure_time,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout
        }
