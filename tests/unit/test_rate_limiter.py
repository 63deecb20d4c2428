"""
Tests for the fixed-interval rate limiter.
"""

from unittest.mock import AsyncMock, patch

import pytest

from fetchcore.crawler.rate_limiter import RateLimiter
from fetchcore.utils import AtomicCounter


@pytest.mark.unit
class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_acquire_does_not_wait(self):
        limiter = RateLimiter(interval=1.0)
        with patch("fetchcore.crawler.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await limiter.acquire() == 0
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_later_acquires_wait_the_full_interval(self):
        limiter = RateLimiter(interval=0.75)
        with patch("fetchcore.crawler.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            for _ in range(4):
                await limiter.acquire()
        assert sleep.await_count == 3
        assert all(call.args == (0.75,) for call in sleep.await_args_list)
        assert limiter.issued == 4

    @pytest.mark.asyncio
    async def test_zero_interval_never_sleeps(self):
        limiter = RateLimiter(interval=0.0)
        with patch("fetchcore.crawler.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await limiter.acquire()
            await limiter.acquire()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shares_counter_with_owner(self):
        counter = AtomicCounter()
        limiter = RateLimiter(interval=0.0, counter=counter)
        await limiter.acquire()
        await limiter.acquire()
        assert counter.value == 2
