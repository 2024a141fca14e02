"""Response cache backends.

Defines the CacheBackend ABC and two concrete implementations:
- RedisCacheBackend: shared cache in Redis with JSON serialization
- InMemoryCacheBackend: dict-based backend with TTL, for single-process and tests

A cache failure is never a request failure: Redis errors are logged and
treated as a miss.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from econ_router.config import Settings

log = structlog.get_logger(__name__)

KEY_PREFIX = "econ_router:response:"


def response_cache_key(task_type: str, prompt: str) -> str:
    """Stable key for a prompt of a given task type, independent of tier."""
    digest = hashlib.sha256(f"{task_type}\x00{prompt}".encode()).hexdigest()
    return f"{KEY_PREFIX}{digest}"


class CacheBackend(ABC):
    """Abstract interface all cache backends must implement."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return cached value for key, or None if not found / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        """Store value under key with TTL in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key from cache (no-op if key does not exist)."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info/stats dict."""

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCacheBackend(CacheBackend):
    """Cache backend backed by Redis.

    Values are JSON-serialised so they round-trip cleanly without pickle.
    The client is created lazily on first call so construction never blocks.
    """

    def __init__(self, redis_url: str, client: aioredis.Redis | None = None) -> None:
        self._redis_url = redis_url
        self._client = client

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(key)
        except RedisError as exc:
            log.warning("cache.redis.get_failed", key=key, error=str(exc))
            return None
        return None if raw is None else json.loads(raw)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self._get_client().setex(key, ttl, json.dumps(value, default=str))
        except RedisError as exc:
            log.warning("cache.redis.set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(key)
        except RedisError as exc:
            log.warning("cache.redis.delete_failed", key=key, error=str(exc))

    async def info(self) -> dict[str, Any]:
        try:
            dbsize = await self._get_client().dbsize()
        except RedisError as exc:
            return {"backend": "redis", "connected": False, "error": str(exc)}
        return {"backend": "redis", "connected": True, "db_size": dbsize}

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class _CacheEntry:
    """Single entry stored by InMemoryCacheBackend."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, ttl: int) -> None:
        self.value = value
        self.expires_at: float = time.monotonic() + ttl

    @property
    def is_expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class InMemoryCacheBackend(CacheBackend):
    """Dict-backed cache with TTL support.

    Guarded by an asyncio.Lock. Does NOT persist across process restarts.
    """

    def __init__(self, max_entries: int = 10_000) -> None:
        self._store: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._max_entries = max_entries

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if entry.is_expired:
                del self._store[key]
                return None
            return entry.value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            if len(self._store) >= self._max_entries and key not in self._store:
                # Evict the oldest insertion
                self._store.pop(next(iter(self._store)))
            self._store[key] = _CacheEntry(value, ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def info(self) -> dict[str, Any]:
        async with self._lock:
            expired = [k for k, v in self._store.items() if v.is_expired]
            for k in expired:
                del self._store[k]
            return {"backend": "memory", "connected": True, "total_keys": len(self._store)}


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cache_backend(settings: Settings) -> CacheBackend:
    """Return the CacheBackend selected by ``settings.cache_backend``."""
    if settings.cache_backend == "redis":
        log.info("cache.backend_selected", backend="redis", url=settings.redis_url)
        return RedisCacheBackend(settings.redis_url)

    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend()
