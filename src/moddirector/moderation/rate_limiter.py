"""Token bucket rate limiter for outbound classifier calls."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class TokenBucket:
    """Async token bucket: ``requests_per_minute`` permits, refilled continuously.

    Callers ``await acquire()`` before each request; the wait completes before
    the call proceeds.
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._capacity = float(max(1, requests_per_minute))
        self._rate = self._capacity / 60.0  # tokens per second
        self._tokens = self._capacity
        self._clock = clock
        self._sleep = sleep
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> float:
        return self._capacity

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def try_acquire(self) -> bool:
        """Take a permit if one is available right now."""
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        """Wait until a permit is available, then take it."""
        # Waiters queue on the lock so permits are handed out in arrival order
        async with self._lock:
            while not self.try_acquire():
                deficit = 1.0 - self._tokens
                await self._sleep(deficit / self._rate)
