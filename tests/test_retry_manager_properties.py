"""
Property-based tests for the Retry Manager module.

Uses Hypothesis for property-based testing of backoff, jitter, retry
classification and cumulative statistics.
"""

import asyncio

import httpx
from hypothesis import given, settings
from hypothesis import strategies as st

from number_blocker.config import CircuitBreakerConfig, RetryConfig
from number_blocker.exceptions import (
    AuthenticationError,
    PortalHTTPError,
    TransportError,
    ValidationError,
)
from number_blocker.retry_manager import RetryManager, RetryResult


# Strategies for generating test data

@st.composite
def retry_config_strategy(draw) -> RetryConfig:
    """Generate valid RetryConfig objects."""
    base = draw(st.floats(min_value=0.001, max_value=5.0))
    return RetryConfig(
        max_retries=draw(st.integers(min_value=0, max_value=6)),
        base_delay_seconds=base,
        max_delay_seconds=draw(st.floats(min_value=base, max_value=120.0)),
        exponential_base=draw(st.floats(min_value=1.0, max_value=4.0)),
        jitter=draw(st.booleans()),
    )


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://portal.example/action")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("portal answered", request=request, response=response)


@st.composite
def non_retryable_error_strategy(draw) -> Exception:
    """Generate errors that must never be retried."""
    kind = draw(st.sampled_from(["auth", "validation", "message", "status", "httpx"]))
    if kind == "auth":
        return AuthenticationError(code="rejected", message="Login rejected")
    if kind == "validation":
        return ValidationError(code="bad_input", message="Bad input")
    if kind == "message":
        phrase = draw(st.sampled_from([
            "Authentication failed",
            "UNAUTHORIZED",
            "invalid credentials supplied",
            "Validation error on field",
            "Invalid format for number",
        ]))
        return RuntimeError(phrase)
    status = draw(st.integers(min_value=400, max_value=499).filter(lambda s: s != 429))
    if kind == "status":
        return PortalHTTPError(status=status, message=f"HTTP {status}")
    return _status_error(status)


class _Recorder:
    """Fake sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _manager(config: RetryConfig, **kwargs) -> tuple[RetryManager, _Recorder]:
    sleep = _Recorder()
    breaker = kwargs.pop("breaker_config", CircuitBreakerConfig(failure_threshold=1000))
    return RetryManager(config, breaker, sleep=sleep, **kwargs), sleep


class TestExponentialBackoffProperty:
    """Pre-jitter delays follow min(max_delay, base * exponential_base^(k-1))."""

    @given(
        config=retry_config_strategy(),
        attempt=st.integers(min_value=1, max_value=12),
    )
    @settings(max_examples=100)
    def test_base_delay_matches_formula(self, config: RetryConfig, attempt: int) -> None:
        manager, _ = _manager(config)

        expected = min(
            config.max_delay_seconds,
            config.base_delay_seconds * config.exponential_base ** (attempt - 1),
        )

        assert abs(manager.base_delay(attempt) - expected) < 1e-9
        assert abs(manager.calculate_delay(attempt, jitter=False) - expected) < 1e-9

    @given(config=retry_config_strategy())
    @settings(max_examples=50)
    def test_delays_are_non_decreasing_and_capped(self, config: RetryConfig) -> None:
        manager, _ = _manager(config)

        delays = [manager.base_delay(k) for k in range(1, 10)]

        for earlier, later in zip(delays, delays[1:]):
            assert later >= earlier
        assert all(delay <= config.max_delay_seconds for delay in delays)

    def test_default_schedule(self) -> None:
        manager, _ = _manager(RetryConfig())

        assert [manager.base_delay(k) for k in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]


class TestJitterBoundsProperty:
    """Jittered delays stay within ±25% of the base delay and are never negative."""

    @given(
        config=retry_config_strategy(),
        attempt=st.integers(min_value=1, max_value=10),
        random_value=st.floats(min_value=0.0, max_value=0.999999),
    )
    @settings(max_examples=100)
    def test_jitter_within_bounds(
        self,
        config: RetryConfig,
        attempt: int,
        random_value: float,
    ) -> None:
        manager, _ = _manager(config, rng=lambda: random_value)
        base = manager.base_delay(attempt)

        delay = manager.calculate_delay(attempt, jitter=True)

        assert delay >= 0.0
        assert base * 0.75 - 1e-9 <= delay <= base * 1.25 + 1e-9

    def test_jitter_extremes(self) -> None:
        low, _ = _manager(RetryConfig(base_delay_seconds=4.0), rng=lambda: 0.0)
        mid, _ = _manager(RetryConfig(base_delay_seconds=4.0), rng=lambda: 0.5)

        assert low.calculate_delay(1, jitter=True) == 3.0
        assert mid.calculate_delay(1, jitter=True) == 4.0


class TestNonRetryableProperty:
    """Authentication, validation and non-429 4xx errors get exactly one attempt."""

    @given(
        config=retry_config_strategy(),
        error=non_retryable_error_strategy(),
    )
    @settings(max_examples=100, deadline=None)
    def test_single_attempt(self, config: RetryConfig, error: Exception) -> None:
        manager, sleep = _manager(config)
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            raise error

        async def run() -> Exception:
            try:
                await manager.execute(operation, "test")
            except Exception as e:
                return e
            raise AssertionError("execute() should have raised")

        raised = asyncio.run(run())

        assert raised is error
        assert calls == 1
        assert sleep.delays == []
        assert manager.get_stats()["total_retries"] == 0

    def test_rate_limited_status_is_retried(self) -> None:
        manager, sleep = _manager(RetryConfig(max_retries=2, jitter=False))
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            raise PortalHTTPError(status=429, message="Too many requests")

        async def run() -> None:
            try:
                await manager.execute(operation)
            except PortalHTTPError:
                pass

        asyncio.run(run())

        assert calls == 3
        assert sleep.delays == [1.0, 2.0]

    def test_server_error_is_retryable(self) -> None:
        manager, _ = _manager(RetryConfig())

        assert not manager.is_non_retryable(PortalHTTPError(status=503, message="HTTP 503"))
        assert not manager.is_non_retryable(_status_error(500))
        assert not manager.is_non_retryable(TransportError(code="transport_error", message="reset"))


class TestRetryExhaustionProperty:
    """Transient failures are retried max_retries times, then the last error propagates."""

    @given(max_retries=st.integers(min_value=0, max_value=6))
    @settings(max_examples=30, deadline=None)
    def test_exhaustion_raises_last_error(self, max_retries: int) -> None:
        manager, sleep = _manager(RetryConfig(max_retries=max_retries, jitter=False))
        errors: list[Exception] = []

        async def operation() -> str:
            error = TransportError(code="transport_error", message=f"failure {len(errors)}")
            errors.append(error)
            raise error

        async def run() -> Exception:
            try:
                await manager.execute(operation)
            except TransportError as e:
                return e
            raise AssertionError("execute() should have raised")

        raised = asyncio.run(run())

        assert len(errors) == max_retries + 1
        assert raised is errors[-1]
        assert len(sleep.delays) == max_retries

        stats = manager.get_stats()
        assert stats["total_attempts"] == max_retries + 1
        assert stats["total_failures"] == max_retries + 1
        assert stats["total_retries"] == max_retries
        assert stats["total_successes"] == 0

    @given(
        max_retries=st.integers(min_value=1, max_value=6),
        data=st.data(),
    )
    @settings(max_examples=30, deadline=None)
    def test_recovers_within_budget(self, max_retries: int, data) -> None:
        failures = data.draw(st.integers(min_value=0, max_value=max_retries))
        manager, sleep = _manager(RetryConfig(max_retries=max_retries, jitter=False))
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            if calls <= failures:
                raise TransportError(code="transport_error", message="connection reset")
            return "done"

        result = asyncio.run(manager.execute(operation))

        assert result == "done"
        assert calls == failures + 1
        assert len(sleep.delays) == failures
        assert manager.get_stats()["total_successes"] == 1


class TestRetryResult:
    """execute_with_retry() reports instead of raising."""

    def test_success_result(self) -> None:
        manager, _ = _manager(RetryConfig())

        async def operation() -> int:
            return 42

        result = asyncio.run(manager.execute_with_retry(operation))

        assert isinstance(result, RetryResult)
        assert result.success is True
        assert result.result == 42
        assert result.attempts == 1
        assert result.last_error is None

    def test_failure_result(self) -> None:
        manager, _ = _manager(RetryConfig(max_retries=2))

        async def operation() -> int:
            raise TransportError(code="transport_error", message="down")

        result = asyncio.run(manager.execute_with_retry(operation))

        assert result.success is False
        assert result.result is None
        assert result.attempts == 3
        assert isinstance(result.last_error, TransportError)

    def test_reset_clears_stats(self) -> None:
        manager, _ = _manager(RetryConfig(max_retries=1))

        async def operation() -> int:
            raise TransportError(code="transport_error", message="down")

        asyncio.run(manager.execute_with_retry(operation))
        assert manager.get_stats()["total_attempts"] == 2

        manager.reset()

        stats = manager.get_stats()
        assert stats["total_attempts"] == 0
        assert stats["state"] == "CLOSED"
        assert stats["success_rate"] == "0%"
