from __future__ import annotations

import asyncio

import pytest

from services.cache import MemoryCache
from utils.rate_limit import DistributedRateLimiter


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_limit() -> None:
    clock = FakeClock()
    limiter = DistributedRateLimiter(MemoryCache(), clock=clock)

    result1 = await limiter.hit("k1", limit=2, window_seconds=60)
    result2 = await limiter.hit("k1", limit=2, window_seconds=60)
    result3 = await limiter.hit("k1", limit=2, window_seconds=60)

    assert result1.allowed is True
    assert result2.allowed is True
    assert result3.allowed is False
    assert result3.current == 3
    assert result3.retry_after == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_rate_limiter_resets_after_window() -> None:
    clock = FakeClock()
    limiter = DistributedRateLimiter(MemoryCache(), clock=clock)

    assert (await limiter.hit("k2", limit=1, window_seconds=60)).allowed is True
    assert (await limiter.hit("k2", limit=1, window_seconds=60)).allowed is False

    clock.now += 60
    assert (await limiter.hit("k2", limit=1, window_seconds=60)).allowed is True


@pytest.mark.asyncio
async def test_keys_are_limited_independently() -> None:
    limiter = DistributedRateLimiter(MemoryCache(), clock=FakeClock())

    assert (await limiter.hit("a", limit=1, window_seconds=60)).allowed is True
    assert (await limiter.hit("b", limit=1, window_seconds=60)).allowed is True
    assert (await limiter.hit("a", limit=1, window_seconds=60)).allowed is False


@pytest.mark.asyncio
async def test_acquire_waits_for_next_window() -> None:
    limiter = DistributedRateLimiter(MemoryCache())

    await limiter.acquire("k3", limit=1, window_seconds=1)
    result = await asyncio.wait_for(limiter.acquire("k3", limit=1, window_seconds=1), timeout=3)

    assert result.allowed is True


@pytest.mark.asyncio
async def test_acquire_gives_up_when_wait_callback_declines() -> None:
    limiter = DistributedRateLimiter(MemoryCache(), clock=FakeClock(1_019.99))
    calls = 0

    async def keep_waiting() -> bool:
        nonlocal calls
        calls += 1
        return False

    assert (await limiter.hit("k4", limit=1, window_seconds=60)).allowed is True
    result = await asyncio.wait_for(
        limiter.acquire("k4", limit=1, window_seconds=60, on_wait=keep_waiting), timeout=3
    )

    assert result is None
    assert calls == 1
