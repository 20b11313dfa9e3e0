"""
Tagged Cache

Key/value cache for dashboard and metrics reads. Entries may carry tags so a
whole family (e.g. everything derived from the metrics tables) can be flushed
at once after an aggregation run.

Backends:
- InMemoryCache: process-local, used when REDIS_URL is "memory://"
- RedisCache: shared cache backed by redis.asyncio
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set, Tuple

from app.core.config import settings

logger = logging.getLogger(__name__)

MEMORY_CACHE_URL = "memory://"
TAG_KEY_PREFIX = "cache:tag:"


class MetricsCache(ABC):
    """Cache interface used by the aggregator and dashboard."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Iterable[str] = ()
    ) -> None:
        pass

    @abstractmethod
    async def forget(self, key: str) -> None:
        pass

    @abstractmethod
    async def flush_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry carrying any of the given tags. Returns entries removed."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    async def remember(
        self,
        key: str,
        ttl: Optional[int],
        factory: Callable[[], Awaitable[Any]],
        tags: Iterable[str] = ()
    ) -> Any:
        """Return the cached value for key, computing and storing it on a miss."""
        value = await self.get(key)
        if value is not None:
            return value
        value = await factory()
        await self.set(key, value, ttl=ttl, tags=tags)
        return value


class InMemoryCache(MetricsCache):
    """Process-local cache with per-entry expiry."""

    def __init__(self):
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._tags: Dict[str, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            async with self._lock:
                self._drop(key)
            return None
        return value

    def _drop(self, key: str) -> bool:
        """Remove key and its tag memberships. Caller holds the lock."""
        for tag in list(self._tags):
            keys = self._tags[tag]
            keys.discard(key)
            if not keys:
                del self._tags[tag]
        return self._entries.pop(key, None) is not None

    async def set(self, key, value, ttl=None, tags=()):
        ttl = settings.CACHE_DEFAULT_TTL_SECONDS if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl > 0 else None
        async with self._lock:
            self._entries[key] = (value, expires_at)
            for tag in tags:
                self._tags.setdefault(tag, set()).add(key)

    async def forget(self, key: str) -> None:
        async with self._lock:
            self._drop(key)

    async def flush_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        async with self._lock:
            for tag in tags:
                for key in self._tags.pop(tag, set()):
                    if self._drop(key):
                        removed += 1
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._tags.clear()


class RedisCache(MetricsCache):
    """Redis-backed cache. Values are stored as JSON; tags are redis sets of keys."""

    def __init__(self, url: str, prefix: str = "aidly:"):
        import redis.asyncio as redis

        self.prefix = prefix
        self._client = redis.from_url(url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.prefix}{TAG_KEY_PREFIX}{tag}"

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key, value, ttl=None, tags=()):
        ttl = settings.CACHE_DEFAULT_TTL_SECONDS if ttl is None else ttl
        payload = json.dumps(value, default=str)
        async with self._client.pipeline(transaction=True) as pipe:
            if ttl > 0:
                pipe.set(self._key(key), payload, ex=ttl)
            else:
                pipe.set(self._key(key), payload)
            for tag in tags:
                pipe.sadd(self._tag_key(tag), key)
            await pipe.execute()

    async def forget(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def flush_tags(self, tags: Iterable[str]) -> int:
        removed = 0
        for tag in tags:
            tag_key = self._tag_key(tag)
            members = await self._client.smembers(tag_key)
            if members:
                removed += await self._client.delete(*[self._key(m) for m in members])
            await self._client.delete(tag_key)
        return removed

    async def clear(self) -> None:
        async for key in self._client.scan_iter(match=f"{self.prefix}*"):
            await self._client.delete(key)


_cache: Optional[MetricsCache] = None


def get_cache() -> MetricsCache:
    """Return the process-wide cache, selecting the backend from REDIS_URL."""
    global _cache
    if _cache is None:
        url = (settings.REDIS_URL or "").strip()
        if not url or url.lower() == MEMORY_CACHE_URL:
            _cache = InMemoryCache()
        else:
            _cache = RedisCache(url)
            logger.info("Using redis cache backend")
    return _cache
