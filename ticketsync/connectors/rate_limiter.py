"""
In-process sliding-window rate limiter for the HubSpot search API.

HubSpot caps search requests per trailing window (100 calls / 10 s for
private apps). One limiter is shared by every request of a connector
instance, so one sync run never exceeds the quota on its own.

Usage:
    limiter = SlidingWindowRateLimiter(max_calls=100, window_ms=10_000)
    await limiter.wait_if_needed()  # Blocks until the call fits the window
    # ... make API call ...
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from ticketsync.config import settings

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Allow at most ``max_calls`` calls in any trailing ``window_ms`` window.

    Keeps the timestamps of recent calls. When the window is full the caller
    sleeps exactly until the oldest timestamp leaves it. Callers are served
    in the order they called ``wait_if_needed()``.

    ``clock`` and ``sleep`` are injectable so tests can run on a fake clock.
    """

    def __init__(
        self,
        max_calls: Optional[int] = None,
        window_ms: Optional[int] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_calls: int = max_calls if max_calls is not None else settings.HUBSPOT_RATE_LIMIT_CALLS
        window: int = window_ms if window_ms is not None else settings.HUBSPOT_RATE_LIMIT_WINDOW_MS
        if self.max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window <= 0:
            raise ValueError("window_ms must be positive")
        self.window_seconds: float = window / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()
        self.total_waits: int = 0

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()

    async def wait_if_needed(self) -> float:
        """
        Wait until one more call fits the window, then record it.

        Returns:
            Seconds spent waiting (0.0 when the window had room).
        """
        async with self._lock:
            now: float = self._clock()
            self._evict(now)

            waited: float = 0.0
            if len(self._calls) >= self.max_calls:
                wait: float = self.window_seconds - (now - self._calls[0])
                if wait > 0:
                    logger.info(
                        "[HubSpot] Rate limit reached (%d calls / %.1fs), waiting %.2fs",
                        self.max_calls, self.window_seconds, wait,
                    )
                    await self._sleep(wait)
                    waited = wait
                    self.total_waits += 1
                now = self._clock()
                self._evict(now)

            self._calls.append(now)
            return waited

    @property
    def calls_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._calls)
