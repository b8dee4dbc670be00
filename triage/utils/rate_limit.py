from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from services.cache import CacheBackend

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    retry_after: float = 0.0


class DistributedRateLimiter:
    """Fixed-window counter over a cache backend.

    Counter keys carry the window index, so every process sharing the backend
    agrees on window boundaries without coordinating.
    """

    def __init__(self, cache: CacheBackend, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self._clock = clock

    async def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        window_index = int(now // window_seconds)
        current = await self.cache.incr(f"{key}:{window_index}", ttl=window_seconds)
        window_end = (window_index + 1) * window_seconds
        return RateLimitResult(
            allowed=current <= limit,
            current=current,
            limit=limit,
            retry_after=0.0 if current <= limit else max(0.0, window_end - now),
        )

    async def acquire(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        on_wait: Callable[[], Awaitable[bool]] | None = None,
    ) -> RateLimitResult | None:
        """Wait until the current window admits one more hit, then take it.

        ``on_wait`` runs after every pause; returning ``False`` abandons the
        wait and ``acquire`` returns ``None`` without taking a slot.
        """
        while True:
            result = await self.hit(key, limit=limit, window_seconds=window_seconds)
            if result.allowed:
                return result
            LOGGER.debug("Rate limit reached for %s; waiting %.2fs", key, result.retry_after)
            await asyncio.sleep(result.retry_after or 0.05)
            if on_wait is not None and not await on_wait():
                return None
