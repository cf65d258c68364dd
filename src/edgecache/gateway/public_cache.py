"""
Conditional GET support for public, read-only endpoints.

Successful responses get a content ETag plus public Cache-Control; a request
whose If-None-Match carries the current ETag is answered with an empty 304.
"""
import hashlib
import json
from typing import Any, Callable, List, Optional

from fastapi import Request, Response, status

from ..shared.caching.keys import is_cacheable_method
from ..shared.logging_config import get_logger
from ..shared.schemas import is_logical_success
from .endpoint import render_response, route_status_code, wrap_endpoint
from .middleware import app_settings

logger = get_logger(__name__, 'public_cache')

VARY_HEADER_VALUE = "Accept-Encoding"


def canonical_json(payload: Any) -> str:
    """Stable serialization: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_etag(payload: Any) -> str:
    """Strong validator over the canonical serialization of a payload."""
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f'"{digest}"'


def etag_for_body(body: bytes) -> str:
    """ETag of a rendered body; JSON bodies are canonicalized before hashing."""
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, ValueError):
        return f'"{hashlib.sha256(body).hexdigest()}"'
    return compute_etag(payload)


def parse_if_none_match(header_value: Optional[str]) -> List[str]:
    if not header_value:
        return []
    return [item.strip() for item in header_value.split(",") if item.strip()]


def not_modified(etag: str, cache_control: str) -> Response:
    """Empty 304 carrying only the validator and caching directives."""
    response = Response(status_code=status.HTTP_304_NOT_MODIFIED)
    for name in ("content-length", "content-type"):
        if name in response.headers:
            del response.headers[name]
    response.headers["ETag"] = etag
    response.headers["Cache-Control"] = cache_control
    response.headers["Vary"] = VARY_HEADER_VALUE
    return response


def public_cache(max_age: Optional[int] = None) -> Callable:
    """
    Add ETag validation to a public endpoint.

    Args:
        max_age: Cache-Control max-age in seconds; defaults to PUBLIC_CACHE_MAX_AGE

    Only 200 responses reporting logical success are touched; error and
    not-found responses leave without any caching metadata.
    """
    def decorator(func: Callable) -> Callable:
        async def around(request: Request, call_next):
            if not is_cacheable_method(request.method):
                return await call_next()

            response = render_response(await call_next(), route_status_code(request))
            body = getattr(response, "body", None)
            if response.status_code != status.HTTP_200_OK or body is None or not is_logical_success(response):
                return response

            seconds = max_age if max_age is not None else app_settings(request).public.public_cache_max_age
            cache_control = f"public, max-age={seconds}"
            etag = etag_for_body(body)

            if etag in parse_if_none_match(request.headers.get("if-none-match")):
                logger.debug("ETag matched, returning 304", operation="public_cache", path=request.url.path)
                return not_modified(etag, cache_control)

            response.headers["ETag"] = etag
            response.headers["Cache-Control"] = cache_control
            response.headers["Vary"] = VARY_HEADER_VALUE
            return response

        return wrap_endpoint(func, around)

    return decorator
