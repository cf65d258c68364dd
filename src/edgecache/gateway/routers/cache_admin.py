"""
EdgeCache gateway - cache operator router.

Statistics, full reset and tag invalidation of the response cache.
"""
from fastapi import APIRouter, Depends

from ...shared.caching.cache_manager import ResponseCacheStore
from ...shared.caching.invalidation import CacheInvalidator
from ...shared.logging_config import get_logger
from ...shared.schemas import InvalidateTagsRequest, api_success
from ..dependencies import get_cache_invalidator, get_cache_store

logger = get_logger(__name__, 'cache_admin')

router = APIRouter()


@router.get("/stats")
async def cache_stats(
    store: ResponseCacheStore = Depends(get_cache_store),
    invalidator: CacheInvalidator = Depends(get_cache_invalidator),
):
    """Hit/miss counters, backend state and invalidation statistics."""
    return api_success(
        data={
            **store.stats(),
            "invalidator": invalidator.get_stats(),
        },
        message="Cache statistics",
    )


@router.delete("")
async def clear_cache(invalidator: CacheInvalidator = Depends(get_cache_invalidator)):
    cleared = await invalidator.invalidate_all()
    logger.info("Cache cleared by operator", operation="clear_cache", keys_deleted=cleared)
    return api_success(data={"keys_deleted": cleared}, message="Cache cleared")


@router.post("/invalidate")
async def invalidate_tags(
    body: InvalidateTagsRequest,
    invalidator: CacheInvalidator = Depends(get_cache_invalidator),
):
    cleared = await invalidator.invalidate_tags(body.tags)
    return api_success(
        data={"tags": sorted(set(body.tags)), "keys_deleted": cleared},
        message="Cache tags invalidated",
    )


@router.post("/reset-metrics")
async def reset_metrics(store: ResponseCacheStore = Depends(get_cache_store)):
    store.reset_metrics()
    return api_success(message="Cache metrics reset")
