"""
Cache key derivation for HTTP requests.
"""
import re
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from starlette.requests import Request

CACHEABLE_METHODS = frozenset({"GET", "HEAD"})

KEY_PREFIX = "route:"
ANONYMOUS_SUFFIX = ":anon"

KeyGenerator = Callable[[Request], str]

_SLASHES = re.compile(r"/{2,}")


def is_cacheable_method(method: str) -> bool:
    """Only safe, idempotent reads are served from the cache."""
    return method.upper() in CACHEABLE_METHODS


def normalize_path(path: str) -> str:
    """Collapse repeated slashes and drop a trailing slash (root excepted)."""
    path = _SLASHES.sub("/", path or "/")
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def canonical_query(request: Request) -> str:
    """Sorted, re-encoded query string; repeated keys and blank values are kept."""
    pairs = sorted(request.query_params.multi_items())
    return urlencode(pairs)


def request_user_id(request: Request) -> Optional[str]:
    """Identity set on request.state by the authentication layer, if any."""
    state = request.state
    identity = getattr(state, "user_id", None)
    if identity is None:
        user = getattr(state, "user", None)
        if isinstance(user, dict):
            identity = user.get("user_id", user.get("id"))
        elif user is not None:
            identity = getattr(user, "user_id", None)
            if identity is None:
                identity = getattr(user, "id", None)
    if identity is None or identity == "":
        return None
    return str(identity)


def build_cache_key(
    request: Request,
    vary_by_user: bool = False,
    key_generator: Optional[KeyGenerator] = None,
) -> str:
    """Derive the cache key of a request.

    A custom key generator replaces the default derivation entirely,
    user scoping included.
    """
    if key_generator is not None:
        return key_generator(request)

    # Encoded so a literal "?" or ":" in the path cannot mimic the query or user suffix
    key = KEY_PREFIX + quote(normalize_path(request.scope["path"]), safe="/")
    query = canonical_query(request)
    if query:
        key = f"{key}?{query}"

    if vary_by_user:
        identity = request_user_id(request)
        key += f":user:{quote(identity, safe='')}" if identity is not None else ANONYMOUS_SUFFIX
    return key
