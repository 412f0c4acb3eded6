"""
Retry Manager for the number blocker system.

This module wraps any fallible async operation with bounded retries,
exponential backoff with optional jitter, and a shared circuit breaker.

Behavior:
- Up to max_retries + 1 attempts per call
- delay(k) = min(max_delay, base_delay * exponential_base ** (k - 1)), ±25% jitter
- Authentication, validation and non-429 4xx errors are never retried
- An OPEN breaker rejects the call before any attempt is made
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import httpx

from .audit_logger import AuditLogger
from .circuit_breaker import CircuitBreaker
from .config import CircuitBreakerConfig, RetryConfig
from .enums import CircuitState, LogLevel
from .exceptions import AuthenticationError, CircuitOpenError, ValidationError

T = TypeVar("T")

JITTER_FRACTION = 0.25


@dataclass
class RetryResult(Generic[T]):
    """Result of a retry operation."""

    success: bool
    result: Optional[T]
    attempts: int
    last_error: Optional[Exception]


@dataclass
class RetryStats:
    """Cumulative counters, independent of breaker state."""

    total_attempts: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_retries: int = 0


class RetryManager:
    """
    Manages retry logic with exponential backoff and circuit breaking.

    One instance is shared by every worker of a run, so the breaker trips on
    the aggregate failure rate against the portal.
    """

    # Message fragments that mark an error as permanent
    NON_RETRYABLE_MESSAGES = (
        "authentication",
        "unauthorized",
        "invalid credentials",
        "validation",
        "invalid format",
    )

    def __init__(
        self,
        config: RetryConfig,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        logger: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """
        Initialize the retry manager.

        Args:
            config: Retry configuration with attempt count and delays
            breaker_config: Circuit breaker thresholds (defaults if omitted)
            logger: Optional audit logger
            sleep: Awaitable used between attempts
            clock: Monotonic clock used by the breaker
            rng: Uniform [0, 1) source used for jitter
        """
        self._config = config
        self._logger = logger
        self._sleep = sleep
        self._rng = rng
        self._breaker = CircuitBreaker(
            breaker_config or CircuitBreakerConfig(),
            clock=clock,
            logger=logger,
        )
        self._stats = RetryStats()

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def stats(self) -> RetryStats:
        return self._stats

    def base_delay(self, attempt: int) -> float:
        """
        Pre-jitter backoff for a 1-indexed attempt number.

        Args:
            attempt: The attempt that just failed (1 for the first attempt)

        Returns:
            The delay in seconds before the next attempt
        """
        exponential = self._config.base_delay_seconds * (
            self._config.exponential_base ** (attempt - 1)
        )
        return min(exponential, self._config.max_delay_seconds)

    def calculate_delay(self, attempt: int, jitter: Optional[bool] = None) -> float:
        """Backoff for `attempt`, jittered by up to ±25% when enabled."""
        delay = self.base_delay(attempt)
        use_jitter = self._config.jitter if jitter is None else jitter

        if use_jitter:
            jitter_amount = delay * JITTER_FRACTION
            offset = (self._rng() - 0.5) * 2 * jitter_amount
            return max(0.0, delay + offset)

        return delay

    def is_non_retryable(self, error: Exception) -> bool:
        """
        Check if an error must propagate on its first occurrence.

        Args:
            error: The exception raised by the operation

        Returns:
            True for authentication, validation and non-429 4xx failures
        """
        if isinstance(error, (AuthenticationError, ValidationError, CircuitOpenError)):
            return True

        message = str(error).lower()
        if any(fragment in message for fragment in self.NON_RETRYABLE_MESSAGES):
            return True

        status = getattr(error, "status", None)
        if status is None and isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code

        if isinstance(status, int) and 400 <= status < 500 and status != 429:
            return True

        return False

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "API Operation",
        context: Optional[dict] = None,
    ) -> T:
        """
        Execute an operation with retry logic and circuit breaking.

        Args:
            operation: The async operation to execute
            operation_name: Name used in log entries and breaker errors
            context: Extra data attached to log entries

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the breaker is OPEN (no attempt is made)
            Exception: The first non-retryable error, or the last error once
                all attempts are exhausted
        """
        context = context or {}
        self._breaker.before_call(operation_name)

        max_attempts = self._config.max_retries + 1
        last_error: Optional[Exception] = None
        attempt = 0

        while attempt < max_attempts:
            attempt += 1
            self._stats.total_attempts += 1

            try:
                started = time.perf_counter()
                result = await operation()
            except Exception as e:
                last_error = e
                self._stats.total_failures += 1
                self._log(
                    LogLevel.DEBUG,
                    f"{operation_name} failed on attempt {attempt}: {e}",
                    {**context, "attempt": attempt, "error_type": type(e).__name__},
                )

                if self.is_non_retryable(e):
                    self._log(
                        LogLevel.WARN,
                        f"Non-retryable error for {operation_name}, aborting retries",
                        {**context, "error": str(e)},
                    )
                    self._breaker.record_failure(operation_name)
                    raise

                if attempt < max_attempts:
                    self._stats.total_retries += 1
                    delay = self.calculate_delay(attempt)
                    self._log(
                        LogLevel.DEBUG,
                        f"Waiting {delay:.3f}s before retry {attempt} for {operation_name}",
                        context,
                    )
                    await self._sleep(delay)
                continue

            self._stats.total_successes += 1
            self._breaker.record_success(operation_name)
            if attempt > 1:
                self._log(
                    LogLevel.INFO,
                    f"{operation_name} succeeded on attempt {attempt}",
                    {**context, "duration_ms": (time.perf_counter() - started) * 1000},
                )
            return result

        self._breaker.record_failure(operation_name)
        self._log(
            LogLevel.WARN,
            f"{operation_name} failed after {max_attempts} attempts",
            {**context, "error": str(last_error)},
        )
        assert last_error is not None
        raise last_error

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "API Operation",
        context: Optional[dict] = None,
    ) -> RetryResult[T]:
        """
        Like execute(), but reports failure in a RetryResult instead of raising.
        """
        attempts_before = self._stats.total_attempts
        try:
            result = await self.execute(operation, operation_name, context)
        except Exception as e:
            return RetryResult(
                success=False,
                result=None,
                attempts=self._stats.total_attempts - attempts_before,
                last_error=e,
            )
        return RetryResult(
            success=True,
            result=result,
            attempts=self._stats.total_attempts - attempts_before,
            last_error=None,
        )

    def get_stats(self) -> dict:
        """Cumulative counters plus the current breaker state."""
        attempts = self._stats.total_attempts
        success_rate = (
            f"{self._stats.total_successes / attempts * 100:.2f}%" if attempts else "0%"
        )
        snapshot = self._breaker.snapshot()
        return {
            "total_attempts": attempts,
            "total_successes": self._stats.total_successes,
            "total_failures": self._stats.total_failures,
            "total_retries": self._stats.total_retries,
            "total_rejections": snapshot.total_rejections,
            "state": snapshot.state.value,
            "failure_count": snapshot.failure_count,
            "success_rate": success_rate,
        }

    def reset(self) -> None:
        """Reset the breaker and statistics."""
        self._breaker.reset()
        self._stats = RetryStats()

    @property
    def state(self) -> CircuitState:
        return self._breaker.state

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "RetryManager", message, data or {})
