"""
Circuit breaker for calls against the portal.

State machine:
    CLOSED    -> OPEN       failure count reaches failure_threshold
    OPEN      -> HALF_OPEN  first call after timeout_seconds since last failure
    HALF_OPEN -> CLOSED     success_threshold successes in a row
    HALF_OPEN -> OPEN       any failure

Every transition happens synchronously between two awaits, so the state is
consistent for all coroutines sharing one breaker.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .config import CircuitBreakerConfig
from .enums import CircuitState, LogLevel
from .exceptions import CircuitOpenError


@dataclass
class CircuitBreakerSnapshot:
    """Point-in-time view of the breaker for status reporting."""

    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]
    total_rejections: int


class CircuitBreaker:
    """Three-state circuit breaker driven by the RetryManager."""

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._config = config
        self._clock = clock
        self._logger = logger

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._total_rejections = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def before_call(self, operation_name: str) -> None:
        """
        Gate a call.

        Raises:
            CircuitOpenError: While OPEN and the cool-down has not elapsed
        """
        if self._state != CircuitState.OPEN:
            return

        elapsed = self._clock() - (self._last_failure_time or 0.0)
        if elapsed >= self._config.timeout_seconds:
            self._state = CircuitState.HALF_OPEN
            self._success_count = 0
            self._log(
                LogLevel.INFO,
                f"Circuit breaker transitioning to HALF_OPEN for {operation_name}",
            )
            return

        self._total_rejections += 1
        raise CircuitOpenError(
            operation_name,
            retry_after=self._config.timeout_seconds - elapsed,
        )

    def record_success(self, operation_name: str) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self._config.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
                self._log(LogLevel.INFO, f"Circuit breaker CLOSED for {operation_name}")
        elif self._state == CircuitState.CLOSED:
            self._failure_count = max(0, self._failure_count - 1)

    def record_failure(self, operation_name: str) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self._config.failure_threshold
        ):
            self._state = CircuitState.OPEN
            self._log(
                LogLevel.WARN,
                f"Circuit breaker OPEN for {operation_name} after {self._failure_count} failures",
                {"failure_count": self._failure_count},
            )
        elif self._state == CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            self._log(LogLevel.WARN, f"Circuit breaker back to OPEN for {operation_name}")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time = None
        self._total_rejections = 0

    def snapshot(self) -> CircuitBreakerSnapshot:
        return CircuitBreakerSnapshot(
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_time=self._last_failure_time,
            total_rejections=self._total_rejections,
        )

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "CircuitBreaker", message, data or {})
