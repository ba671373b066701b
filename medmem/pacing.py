"""Token-bucket pacing for oracle requests."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger("medmem.pacing")


class TokenBucket:
    """
    Classic token bucket: refills at ``rate`` tokens per second up to
    ``capacity``. Each oracle request spends one token.

    The default (1 token/s, burst of 1) spaces consecutive requests about one
    second apart. The first request never waits, and nothing is spent after
    the last one because the bucket is only consulted before a call.
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must allow at least one request")
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
            self.last_update = now

    def try_acquire(self, count: float = 1.0) -> bool:
        """Take *count* tokens if they are available right now."""
        self._refill()
        if self.tokens >= count:
            self.tokens -= count
            return True
        return False

    async def acquire(self, count: float = 1.0, timeout: float | None = None) -> bool:
        """Wait until *count* tokens are available and take them.

        Returns False if *timeout* seconds pass first.
        """
        if count > self.capacity:
            raise ValueError(f"cannot acquire {count} tokens from a bucket of {self.capacity}")

        start = self._clock()
        async with self._lock:
            while not self.try_acquire(count):
                delay = (count - self.tokens) / self.rate
                if timeout is not None:
                    remaining = timeout - (self._clock() - start)
                    if remaining <= 0:
                        return False
                    delay = min(delay, remaining)
                logger.debug("Pacing oracle request: waiting %.2fs", delay)
                await self._sleep(delay)
        return True
