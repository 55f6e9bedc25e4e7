"""
Tests for RollingRateLimiter.
"""

import asyncio
import time

import pytest

from whatsend.delivery import RollingRateLimiter


class TestRollingRateLimiter:

    async def test_acquires_up_to_limit_immediately(self):
        limiter = RollingRateLimiter(3, 10.0)

        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire()

        assert time.monotonic() - started < 0.5
        assert limiter.in_window == 3

    async def test_waits_for_window_to_roll(self):
        limiter = RollingRateLimiter(2, 0.2)

        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire()

        assert time.monotonic() - started >= 0.18

    async def test_full_window_blocks(self):
        limiter = RollingRateLimiter(1, 10.0)
        await limiter.acquire()

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(limiter.acquire(), 0.05)

    def test_window_expires(self):
        now = [100.0]
        limiter = RollingRateLimiter(2, 1.0, clock=lambda: now[0])
        limiter._stamps.extend([99.5, 99.9])

        assert limiter.in_window == 2
        now[0] = 100.6
        assert limiter.in_window == 1

    def test_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            RollingRateLimiter(0, 1.0)
