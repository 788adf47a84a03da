"""Key-value cache backends shared by the refresh token store and throttling."""
from __future__ import annotations

import asyncio
from typing import Optional

import redis.asyncio as redis

from .logging import get_logger


logger = get_logger("guardiao.storage")


class CacheBackend:
    """Minimal cache interface used by the API."""

    async def get(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def pop(self, key: str) -> Optional[bytes]:  # pragma: no cover - interface
        """Atomically return and remove ``key``."""

        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryCache(CacheBackend):
    """In-process cache used when Redis isn't configured."""

    def __init__(self) -> None:
        self._store: dict[str, tuple[bytes, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _now() -> float:
        return asyncio.get_running_loop().time()

    def _live_entry(self, key: str) -> Optional[bytes]:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at < self._now():
            self._store.pop(key, None)
            return None
        return value

    async def get(self, key: str) -> Optional[bytes]:
        async with self._lock:
            return self._live_entry(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = None
            if ttl:
                expires_at = self._now() + ttl
            self._store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def pop(self, key: str) -> Optional[bytes]:
        async with self._lock:
            value = self._live_entry(key)
            self._store.pop(key, None)
            return value


class RedisCache(CacheBackend):
    """Redis backed cache using ``redis.asyncio``."""

    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url)

    async def get(self, key: str) -> Optional[bytes]:
        return await self._client.get(key)

    async def set(self, key: str, value: bytes, ttl: Optional[int] = None) -> None:
        await self._client.set(name=key, value=value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def pop(self, key: str) -> Optional[bytes]:
        return await self._client.getdel(key)

    async def close(self) -> None:
        await self._client.aclose()


def build_cache(redis_url: str | None) -> CacheBackend:
    if redis_url:
        try:
            return RedisCache(redis_url)
        except (ValueError, redis.RedisError):
            logger.warning("redis_cache_initialisation_failed", exc_info=True)
    return MemoryCache()


__all__ = ["CacheBackend", "MemoryCache", "RedisCache", "build_cache"]
