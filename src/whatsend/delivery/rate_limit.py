"""
Rolling rate limiter: at most ``limit`` acquisitions in any ``period`` window.
"""

import asyncio
import time
from collections import deque


class RollingRateLimiter:

    def __init__(self, limit: int, period: float, clock=time.monotonic):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.period = period
        self._clock = clock
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self.period:
            self._stamps.popleft()

    async def acquire(self) -> None:
        """Wait until the window has room, then take a slot."""
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._stamps) < self.limit:
                    self._stamps.append(now)
                    return
                await asyncio.sleep(self.period - (now - self._stamps[0]))

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._stamps)
