from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis

from core.config import RedisConfig


class CacheBackend(Protocol):
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _MemoryValue:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    """Process-local backend; counters are only shared by workers in one process."""

    def __init__(self, key_prefix: str = "") -> None:
        self._store: dict[str, _MemoryValue] = {}
        self._lock = asyncio.Lock()
        self._prefix = f"{key_prefix}:" if key_prefix else ""

    def _is_expired(self, entry: _MemoryValue) -> bool:
        if entry.expires_at is None:
            return False
        return time.time() >= entry.expires_at

    def _live(self, key: str) -> _MemoryValue | None:
        entry = self._store.get(self._prefix + key)
        if entry is None:
            return None
        if self._is_expired(entry):
            self._store.pop(self._prefix + key, None)
            return None
        return entry

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                expires_at = time.time() + ttl if ttl else None
                self._store[self._prefix + key] = _MemoryValue(value=1, expires_at=expires_at)
                return 1
            entry.value = int(entry.value) + 1
            return entry.value

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    """Shared backend so every worker process draws from the same dispatch budget."""

    def __init__(self, url: str, key_prefix: str = "") -> None:
        self._client = redis.from_url(url, decode_responses=True)
        self._prefix = f"{key_prefix}:" if key_prefix else ""

    async def incr(self, key: str, ttl: int | None = None) -> int:
        full_key = self._prefix + key
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(full_key)
            if ttl:
                pipe.expire(full_key, ttl)
            result = await pipe.execute()
        return int(result[0])

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url, key_prefix=config.key_prefix)
    return MemoryCache(key_prefix=config.key_prefix)
