"""Response cache used when the optimizer enables caching."""

from __future__ import annotations

from econ_router.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
    response_cache_key,
)

__all__ = [
    "CacheBackend",
    "InMemoryCacheBackend",
    "RedisCacheBackend",
    "get_cache_backend",
    "response_cache_key",
]
