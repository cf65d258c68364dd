"""
EdgeCache gateway middleware.

Per-route caching decorators (response caching, tag and pattern
invalidation) and app-wide middleware for private no-cache headers,
public endpoint rate limiting and request logging.
"""
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Union

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..shared.caching.cache_manager import CachedResponse, ResponseCacheStore
from ..shared.caching.invalidation import CacheInvalidator
from ..shared.caching.keys import KeyGenerator, build_cache_key, is_cacheable_method
from ..shared.config import PublicEndpointSettings, Settings, get_settings
from ..shared.logging_config import RequestContext, get_logger
from ..shared.schemas import is_logical_success
from .endpoint import is_success_status, render_response, route_status_code, wrap_endpoint

logger = get_logger(__name__, 'gateway_middleware')

CACHE_STATUS_HEADER = "X-Cache"

# Never replayed from the cache
_UNCACHED_HEADERS = {"set-cookie", CACHE_STATUS_HEADER.lower()}

TTL = Union[int, str, None]


def app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def app_store(request: Request, store: Optional[ResponseCacheStore]) -> ResponseCacheStore:
    return store if store is not None else request.app.state.cache_store


def capture_response(response: Response) -> Optional[CachedResponse]:
    """Snapshot a rendered response; streaming responses cannot be captured."""
    body = getattr(response, "body", None)
    if body is None:
        return None
    headers = {
        name: value
        for name, value in response.headers.items()
        if name.lower() not in _UNCACHED_HEADERS
    }
    return CachedResponse(
        status_code=response.status_code,
        body=bytes(body),
        media_type=response.media_type,
        headers=headers,
    )


def replay_response(cached: CachedResponse) -> Response:
    return Response(
        content=cached.body,
        status_code=cached.status_code,
        headers=cached.headers,
        media_type=cached.media_type,
    )


def is_storable(response: Response) -> bool:
    """2xx responses reporting logical success are stored."""
    return is_success_status(response.status_code) and is_logical_success(response)


def cache_response(
    ttl: TTL = None,
    *,
    key_generator: Optional[KeyGenerator] = None,
    vary_by_user: bool = False,
    tags: Iterable[str] = (),
    store: Optional[ResponseCacheStore] = None,
) -> Callable:
    """
    Cache a GET/HEAD endpoint's response.

    Args:
        ttl: Seconds, a TTL category name (short, medium, long, day) or None for the default
        key_generator: Replaces the default key derivation entirely
        vary_by_user: Scope entries to the requesting user
        tags: Tags attached to stored entries for group invalidation
        store: Cache store; defaults to ``request.app.state.cache_store``

    Responses carry ``X-Cache: HIT`` or ``X-Cache: MISS``. Concurrent misses
    on one key run the endpoint once; the others are served the stored copy.
    """
    tags = frozenset(tags)
    # Reject unknown categories at import time
    get_settings().cache.resolve_ttl(ttl)

    def decorator(func: Callable) -> Callable:
        async def around(request: Request, call_next):
            settings = app_settings(request)
            if not settings.cache.cache_enabled or not is_cacheable_method(request.method):
                return await call_next()

            cache_store = app_store(request, store)
            key = build_cache_key(request, vary_by_user=vary_by_user, key_generator=key_generator)

            async def compute():
                response = render_response(await call_next(), route_status_code(request))
                if not is_storable(response):
                    return response
                return capture_response(response) or response

            result, hit = await cache_store.get_or_compute(
                key,
                compute,
                ttl=settings.cache.resolve_ttl(ttl),
                tags=tags,
                cacheable=lambda value: isinstance(value, CachedResponse),
                accept=lambda value: isinstance(value, CachedResponse),
            )

            response = replay_response(result) if isinstance(result, CachedResponse) else result
            response.headers[CACHE_STATUS_HEADER] = "HIT" if hit else "MISS"
            logger.debug(
                f"Cache {'hit' if hit else 'miss'} for request",
                operation="cache_response",
                key=key,
                path=request.url.path,
            )
            return response

        return wrap_endpoint(func, around)

    return decorator


def _mutation_succeeded(result) -> bool:
    # Plain return values are serialized by FastAPI with the route's 2xx status
    if isinstance(result, Response):
        return is_success_status(result.status_code)
    return True


def _invalidator(request: Request, store: Optional[ResponseCacheStore], own: List[CacheInvalidator]) -> CacheInvalidator:
    if store is None:
        return request.app.state.cache_invalidator
    if not own:
        own.append(CacheInvalidator(store))
    return own[0]


def clear_cache_by_tags(tags: Iterable[str], *, store: Optional[ResponseCacheStore] = None) -> Callable:
    """Purge entries carrying any of the tags after the endpoint succeeds.

    Invalidation failures are logged and never fail the request.
    """
    tags = sorted(set(tags))
    own: List[CacheInvalidator] = []

    def decorator(func: Callable) -> Callable:
        async def around(request: Request, call_next):
            result = await call_next()
            if _mutation_succeeded(result):
                cleared = await _invalidator(request, store, own).invalidate_tags(tags)
                logger.info(
                    "Cache tags invalidated on mutation",
                    operation="clear_cache_by_tags",
                    tags=tags,
                    method=request.method,
                    path=request.url.path,
                    keys_deleted=cleared,
                )
            return result

        return wrap_endpoint(func, around)

    return decorator


def clear_cache_on_mutation(patterns: Iterable[str], *, store: Optional[ResponseCacheStore] = None) -> Callable:
    """Purge entries whose key matches any glob pattern after the endpoint succeeds."""
    patterns = list(patterns)
    own: List[CacheInvalidator] = []

    def decorator(func: Callable) -> Callable:
        async def around(request: Request, call_next):
            result = await call_next()
            if _mutation_succeeded(result):
                cleared = await _invalidator(request, store, own).invalidate_patterns(patterns)
                logger.info(
                    "Cache invalidated on mutation",
                    operation="clear_cache_on_mutation",
                    patterns=patterns,
                    method=request.method,
                    path=request.url.path,
                    keys_deleted=cleared,
                )
            return result

        return wrap_endpoint(func, around)

    return decorator


def _matches_prefix(path: str, prefixes: List[str]) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in prefixes)


class NoCacheMiddleware(BaseHTTPMiddleware):
    """Forbid client and proxy caching of private (admin) responses."""

    NO_CACHE_HEADERS = {
        "Cache-Control": "private, no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }

    def __init__(self, app: ASGIApp, prefixes: Optional[List[str]] = None):
        super().__init__(app)
        self.prefixes = prefixes if prefixes is not None else get_settings().public.private_prefixes

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        if _matches_prefix(request.url.path, self.prefixes):
            for name, value in self.NO_CACHE_HEADERS.items():
                response.headers[name] = value
        return response


class PublicRateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiting per client IP on public path prefixes."""

    def __init__(self, app: ASGIApp, settings: Optional[PublicEndpointSettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        super().__init__(app)
        self.settings = settings or get_settings().public
        self.clock = clock
        self.request_counts: Dict[str, Deque[float]] = defaultdict(deque)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Process rate limiting for public requests."""
        if not self.settings.public_rate_limit_enabled:
            return await call_next(request)
        if not _matches_prefix(request.url.path, self.settings.public_prefixes):
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        if client_ip in self.settings.whitelisted_ips:
            return await call_next(request)

        limit = self.settings.public_rate_limit_max
        window_size = self.settings.public_rate_limit_window_seconds
        current_time = self.clock()
        client_requests = self.request_counts[client_ip]

        # Remove old requests outside the window
        while client_requests and client_requests[0] <= current_time - window_size:
            client_requests.popleft()

        reset_after = int(window_size - (current_time - client_requests[0])) if client_requests else window_size

        if len(client_requests) >= limit:
            logger.warning(
                f"Public rate limit exceeded for IP: {client_ip} on {request.url.path}",
                operation="rate_limit",
                client_ip=client_ip,
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "success": False,
                    "message": "Too many requests. Please try again later.",
                    "data": None,
                },
                headers={
                    "RateLimit-Limit": str(limit),
                    "RateLimit-Remaining": "0",
                    "RateLimit-Reset": str(reset_after),
                    "Retry-After": str(reset_after),
                },
            )

        client_requests.append(current_time)

        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(limit)
        response.headers["RateLimit-Remaining"] = str(max(0, limit - len(client_requests)))
        response.headers["RateLimit-Reset"] = str(reset_after)
        return response

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request."""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request logging with a per-request id.
    Binds X-Request-ID (or a fresh UUID) for the duration of the request.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        with RequestContext(request_id):
            logger.info(
                "Request started",
                operation="request",
                method=request.method,
                path=request.url.path,
            )
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    "Request failed",
                    operation="request",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.time() - start_time) * 1000, 2),
                    error=str(e),
                )
                raise

            duration = time.time() - start_time
            logger.info(
                "Request completed",
                operation="request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(duration)
        return response
