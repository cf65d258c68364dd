"""
Error taxonomy for EdgeCache.

Cache-layer errors are recovered where they occur: the store degrades to a
miss and invalidation failures are logged. Only ModuleDisabledError is meant
to reach a client, as a 503.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class EdgeCacheError(Exception):
    """Base error for the caching layer."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "CACHE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "message": self.message,
            "code": self.code,
            "data": self.details or None,
        }


class CacheBackendError(EdgeCacheError):
    """The remote cache backend failed or is unreachable."""

    code = "CACHE_BACKEND_UNAVAILABLE"


class CacheEntryCorruptError(EdgeCacheError):
    """A stored entry could not be decoded."""

    code = "CACHE_ENTRY_CORRUPT"


class InvalidationError(EdgeCacheError):
    """Purging cache entries by tag or pattern failed."""

    code = "CACHE_INVALIDATION_FAILED"


class ModuleDisabledError(EdgeCacheError):
    """A guarded module is switched off in the admin settings."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "MODULE_DISABLED"

    def __init__(self, module_name: str):
        super().__init__(
            f"The {module_name} module is currently disabled",
            details={"module": module_name},
        )
        self.module_name = module_name


async def edgecache_error_handler(request: Request, exc: EdgeCacheError) -> JSONResponse:
    """Render EdgeCache errors in the response envelope."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope renderer for EdgeCacheError and its subclasses."""
    app.add_exception_handler(EdgeCacheError, edgecache_error_handler)
