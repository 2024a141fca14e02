"""Tests for the response cache backends.

Covers:
- InMemoryCacheBackend: get/set/TTL/delete/eviction/info
- RedisCacheBackend: JSON round trip and error tolerance (mocked redis client)
- get_cache_backend factory: selects backend from settings
- response_cache_key: stable, task-scoped keys
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from econ_router.cache.backend import (
    KEY_PREFIX,
    InMemoryCacheBackend,
    RedisCacheBackend,
    _CacheEntry,
    get_cache_backend,
    response_cache_key,
)
from econ_router.config import Settings


# ---------------------------------------------------------------------------
# InMemoryCacheBackend tests
# ---------------------------------------------------------------------------


class TestInMemoryCacheBackend:
    """Unit tests for InMemoryCacheBackend."""

    @pytest.fixture
    def backend(self):
        return InMemoryCacheBackend()

    async def test_set_and_get_returns_value(self, backend):
        """set() followed by get() returns the stored value."""
        await backend.set("key1", {"tier": "local", "output": "hi"}, ttl=60)
        assert await backend.get("key1") == {"tier": "local", "output": "hi"}

    async def test_get_missing_key_returns_none(self, backend):
        assert await backend.get("nonexistent") is None

    def test_zero_ttl_entry_is_expired(self):
        assert _CacheEntry(value="expired", ttl=0).is_expired

    async def test_expired_entry_not_returned(self, backend):
        """Expired entries return None and are pruned from the store."""
        backend._store["stale"] = _CacheEntry(value="old", ttl=0)

        assert await backend.get("stale") is None
        assert "stale" not in backend._store

    async def test_delete_removes_key(self, backend):
        await backend.set("key1", "value", ttl=60)
        await backend.delete("key1")
        await backend.delete("never-set")

        assert await backend.get("key1") is None

    async def test_oldest_entry_evicted_at_capacity(self):
        backend = InMemoryCacheBackend(max_entries=2)
        await backend.set("a", 1, ttl=60)
        await backend.set("b", 2, ttl=60)
        await backend.set("c", 3, ttl=60)

        assert await backend.get("a") is None
        assert await backend.get("b") == 2
        assert await backend.get("c") == 3

    async def test_overwrite_at_capacity_does_not_evict(self):
        backend = InMemoryCacheBackend(max_entries=2)
        await backend.set("a", 1, ttl=60)
        await backend.set("b", 2, ttl=60)
        await backend.set("b", 20, ttl=60)

        assert await backend.get("a") == 1
        assert await backend.get("b") == 20

    async def test_info_prunes_expired(self, backend):
        await backend.set("live", 1, ttl=60)
        backend._store["stale"] = _CacheEntry(value="old", ttl=0)

        info = await backend.info()

        assert info == {"backend": "memory", "connected": True, "total_keys": 1}


# ---------------------------------------------------------------------------
# RedisCacheBackend tests
# ---------------------------------------------------------------------------


class TestRedisCacheBackend:
    """RedisCacheBackend with a mocked redis client."""

    async def test_set_serializes_json_with_ttl(self):
        client = AsyncMock()
        backend = RedisCacheBackend("redis://localhost:6379/0", client=client)

        await backend.set("k", {"tier": "premium", "output": "x"}, ttl=120)

        key, ttl, raw = client.setex.await_args.args
        assert (key, ttl) == ("k", 120)
        assert json.loads(raw) == {"tier": "premium", "output": "x"}

    async def test_get_deserializes_json(self):
        client = AsyncMock()
        client.get.return_value = json.dumps({"tier": "local", "output": "y"})
        backend = RedisCacheBackend("redis://localhost:6379/0", client=client)

        assert await backend.get("k") == {"tier": "local", "output": "y"}

    async def test_get_miss_returns_none(self):
        client = AsyncMock()
        client.get.return_value = None
        backend = RedisCacheBackend("redis://localhost:6379/0", client=client)

        assert await backend.get("k") is None

    async def test_redis_errors_are_treated_as_misses(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        client.setex.side_effect = RedisConnectionError("down")
        client.delete.side_effect = RedisConnectionError("down")
        client.dbsize.side_effect = RedisConnectionError("down")
        backend = RedisCacheBackend("redis://localhost:6379/0", client=client)

        assert await backend.get("k") is None
        await backend.set("k", "v", ttl=60)
        await backend.delete("k")
        info = await backend.info()
        assert info["connected"] is False

    async def test_close_releases_client(self):
        client = AsyncMock()
        backend = RedisCacheBackend("redis://localhost:6379/0", client=client)

        await backend.close()

        client.aclose.assert_awaited_once()
        assert backend._client is None


# ---------------------------------------------------------------------------
# Factory & keys
# ---------------------------------------------------------------------------


def test_factory_defaults_to_memory():
    assert isinstance(get_cache_backend(Settings()), InMemoryCacheBackend)


def test_factory_selects_redis():
    backend = get_cache_backend(Settings(cache_backend="redis"))
    assert isinstance(backend, RedisCacheBackend)


def test_cache_key_is_stable_and_task_scoped():
    key = response_cache_key("summarize", "hello")

    assert key.startswith(KEY_PREFIX)
    assert key == response_cache_key("summarize", "hello")
    assert key != response_cache_key("simple_qa", "hello")
    assert key != response_cache_key("summarize", "hello!")
