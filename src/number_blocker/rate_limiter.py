"""
Rate Limiter module for the number blocker system.

This module provides rate limiting functionality with:
- A cap on concurrently running requests
- Rolling 1-second and 60-second request windows
- FIFO admission of waiting callers, re-checked on a short poll interval
"""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .audit_logger import AuditLogger
from .config import RateLimitConfig
from .enums import LogLevel

T = TypeVar("T")

SECOND_WINDOW = 1.0
MINUTE_WINDOW = 60.0


@dataclass
class RateLimitStatus:
    """Snapshot of the limiter's queue and windows."""

    running_requests: int
    queue_length: int
    requests_last_second: int
    requests_last_minute: int
    max_concurrent: int


class RateLimiter:
    """
    Rate limiter shared by every caller of one portal session.

    Ensures:
    - At most max_concurrent requests run at the same time
    - At most requests_per_second starts in any rolling second
    - At most requests_per_minute starts in any rolling minute
    - Waiting callers are admitted in arrival order
    """

    def __init__(
        self,
        config: RateLimitConfig,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Concurrency cap, window limits and poll interval
            logger: Optional audit logger
            clock: Monotonic clock for the rolling windows
            sleep: Awaitable used while blocked
        """
        self._config = config
        self._logger = logger
        self._clock = clock
        self._sleep = sleep

        # Start times of admitted requests, oldest first, at most one minute old
        self._request_times: deque[float] = deque()
        self._running = 0
        self._waiting = 0
        # asyncio.Lock wakes waiters in FIFO order; only the head of the
        # queue polls the windows
        self._admission = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._request_times and now - self._request_times[0] >= MINUTE_WINDOW:
            self._request_times.popleft()

    def _count_since(self, now: float, window: float) -> int:
        return sum(1 for started in self._request_times if now - started < window)

    def _can_start(self, now: float) -> bool:
        self._prune(now)
        if self._running >= self._config.max_concurrent:
            return False
        if self._count_since(now, SECOND_WINDOW) >= self._config.requests_per_second:
            return False
        if len(self._request_times) >= self._config.requests_per_minute:
            return False
        return True

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[None]:
        """
        Wait for a free slot, hold it for the body, release it on exit.

        Usage:
            async with rate_limiter.acquire():
                response = await make_request()
        """
        self._waiting += 1
        try:
            async with self._admission:
                waited = False
                while not self._can_start(self._clock()):
                    waited = True
                    await self._sleep(self._config.poll_interval_seconds)
                self._request_times.append(self._clock())
                self._running += 1
                if waited:
                    self._log_debug(
                        "Request admitted after waiting for capacity",
                        {"running": self._running, "queued": self._waiting - 1},
                    )
        finally:
            self._waiting -= 1

        try:
            yield
        finally:
            self._running -= 1

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "API Operation",
    ) -> T:
        """Run `operation` once a slot is available; errors propagate unchanged."""
        async with self.acquire():
            return await operation()

    def get_status(self) -> RateLimitStatus:
        now = self._clock()
        self._prune(now)
        return RateLimitStatus(
            running_requests=self._running,
            queue_length=self._waiting,
            requests_last_second=self._count_since(now, SECOND_WINDOW),
            requests_last_minute=len(self._request_times),
            max_concurrent=self._config.max_concurrent,
        )

    def _log_debug(self, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(LogLevel.DEBUG, "RateLimiter", message, data or {})
