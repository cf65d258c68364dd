"""
Response caching for EdgeCache.

This package provides:
- A tag-indexed cache store with TTL expiry and LRU bounding
- An optional Redis backend with transparent in-memory fallback
- Request cache key derivation
- Tag and pattern based invalidation
"""

from .cache_manager import (
    CacheConfig,
    CacheEntry,
    CachedResponse,
    MemoryTagStore,
    RedisTagStore,
    ResponseCacheStore,
    create_cache_store,
)

from .keys import (
    build_cache_key,
    is_cacheable_method,
)

from .invalidation import CacheInvalidator

__all__ = [
    # Core classes
    'CacheConfig',
    'CacheEntry',
    'CachedResponse',
    'MemoryTagStore',
    'RedisTagStore',
    'ResponseCacheStore',

    # Cache invalidation
    'CacheInvalidator',

    # Key derivation
    'build_cache_key',
    'is_cacheable_method',

    # Factory functions
    'create_cache_store',
]
