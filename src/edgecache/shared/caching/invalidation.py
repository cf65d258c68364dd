"""
Cache invalidation for EdgeCache.

Purges response cache entries by tag or key pattern on behalf of mutating
routes. Invalidation never fails the caller: errors are logged, counted
and swallowed.
"""

import time
from typing import Any, Dict, Iterable

from ..errors import InvalidationError
from ..logging_config import get_logger
from .cache_manager import ResponseCacheStore


class CacheInvalidator:
    """Cache invalidation front-end over a ResponseCacheStore."""

    def __init__(self, store: ResponseCacheStore):
        self.store = store
        self.logger = get_logger(__name__, 'cache_invalidator')

        self.stats = {
            'invalidations_executed': 0,
            'invalidations_failed': 0,
            'keys_invalidated': 0,
            'total_processing_time': 0.0,
        }

    def _record(self, started: float, cleared: int = 0, failed: bool = False) -> None:
        self.stats['invalidations_executed'] += 1
        self.stats['keys_invalidated'] += cleared
        self.stats['total_processing_time'] += time.time() - started
        if failed:
            self.stats['invalidations_failed'] += 1

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Invalidate entries carrying any of the tags; returns entries removed."""
        tags = sorted(set(tags))
        if not tags:
            return 0

        start_time = time.time()
        try:
            cleared = await self.store.clear_by_tags(tags)
        except Exception as e:
            self._record(start_time, failed=True)
            error = InvalidationError(f"Tag invalidation failed: {e}", details={'tags': tags})
            self.logger.error(error.message, operation="invalidate_tags", tags=tags, code=error.code)
            return 0

        self._record(start_time, cleared)
        self.logger.debug(f"Invalidated {cleared} entries by tag", operation="invalidate_tags", tags=tags)
        return cleared

    async def invalidate_patterns(self, patterns: Iterable[str]) -> int:
        """Invalidate entries whose key matches any glob pattern."""
        total_cleared = 0
        for pattern in patterns:
            start_time = time.time()
            try:
                cleared = await self.store.clear_pattern(pattern)
            except Exception as e:
                self._record(start_time, failed=True)
                error = InvalidationError(f"Pattern invalidation failed: {e}", details={'pattern': pattern})
                self.logger.error(error.message, operation="invalidate_patterns", pattern=pattern, code=error.code)
                continue
            self._record(start_time, cleared)
            total_cleared += cleared
        return total_cleared

    async def invalidate_key(self, key: str) -> bool:
        start_time = time.time()
        try:
            deleted = await self.store.delete(key)
        except Exception as e:
            self._record(start_time, failed=True)
            self.logger.error(f"Error invalidating cache key {key}: {e}", operation="invalidate_key")
            return False
        self._record(start_time, 1 if deleted else 0)
        return deleted

    async def invalidate_all(self) -> int:
        """Empty the whole store (operator reset)."""
        start_time = time.time()
        try:
            cleared = await self.store.clear_all()
        except Exception as e:
            self._record(start_time, failed=True)
            self.logger.error(f"Error clearing cache: {e}", operation="invalidate_all")
            return 0
        self._record(start_time, cleared)
        self.logger.info(f"Cleared {cleared} cache entries", operation="invalidate_all")
        return cleared

    def get_stats(self) -> Dict[str, Any]:
        """Get invalidation statistics."""
        executed = self.stats['invalidations_executed']
        return {
            **self.stats,
            'avg_processing_time': self.stats['total_processing_time'] / executed if executed else 0.0,
        }
