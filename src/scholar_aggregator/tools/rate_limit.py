"""
Outbound call pacing.

RateLimiter enforces a provider quota over a sliding window; RequestQueue
bounds how many provider calls are in flight at once. Callers waiting on the
queue are admitted in arrival order.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RateLimiter:
    """
    Sliding-window rate limiter for API calls.

    Tracks calls within a window and delays callers once the window is full.
    """

    def __init__(self, max_calls: int = 100, window_seconds: int = 60):
        """
        Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in the window (default: 100)
            window_seconds: Time window in seconds (default: 60)
        """
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._calls: List[float] = []
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Acquire permission to make a call.

        Returns:
            Wait time in seconds (0 if the call was recorded)
        """
        async with self._lock:
            now = time.time()

            # Remove calls outside the window
            self._calls = [t for t in self._calls if now - t < self.window_seconds]

            if len(self._calls) >= self.max_calls:
                oldest = min(self._calls)
                wait_time = self.window_seconds - (now - oldest) + 0.1
                return max(wait_time, 0)

            self._calls.append(now)
            return 0

    async def wait_if_needed(self):
        """Wait until a call can be made, then record it."""
        wait_time = await self.acquire()
        while wait_time > 0:
            logger.info(f"Rate limit reached, waiting {wait_time:.1f}s")
            await asyncio.sleep(wait_time)
            wait_time = await self.acquire()

    @property
    def calls_remaining(self) -> int:
        """Get number of calls remaining in current window."""
        now = time.time()
        recent_calls = [t for t in self._calls if now - t < self.window_seconds]
        return max(0, self.max_calls - len(recent_calls))


class RequestQueue:
    """
    Counting semaphore around provider calls.

    Example:
        queue = RequestQueue(concurrency=2)
        data = await queue.run(lambda: client.search("vexus"))
    """

    def __init__(self, concurrency: int = 2):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._active = 0
        self._peak = 0

    async def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory()`` once a slot is free."""
        async with self._semaphore:
            self._active += 1
            self._peak = max(self._peak, self._active)
            try:
                return await factory()
            finally:
                self._active -= 1

    @property
    def active(self) -> int:
        """Calls currently in flight."""
        return self._active

    @property
    def peak(self) -> int:
        """Highest number of simultaneous calls seen."""
        return self._peak
