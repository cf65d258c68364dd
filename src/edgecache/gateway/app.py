"""
EdgeCache gateway - FastAPI application.

Wires the response cache store, the settings gate and the cache-aware
routers into one application.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import uvicorn

from ..shared.caching.cache_manager import ResponseCacheStore, create_cache_store
from ..shared.caching.invalidation import CacheInvalidator
from ..shared.config import Settings, get_config_summary, get_settings, validate_configuration
from ..shared.errors import register_exception_handlers
from ..shared.logging_config import LoggingConfig, get_logger
from ..shared.settings_gate import InMemorySettingsRepository, SettingsGate, SettingsRepository
from .middleware import NoCacheMiddleware, PublicRateLimitMiddleware, RequestLoggingMiddleware
from .routers import cache_admin, public, settings as settings_routes, tours

logger = get_logger(__name__, 'gateway_app')


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Starts the cache store (Redis connection, expiry sweeper) and stops it on shutdown.
    """
    logger.info("Starting EdgeCache gateway...", operation="startup")
    for problem in validate_configuration(app.state.settings):
        logger.warning(problem, operation="startup")

    store: ResponseCacheStore = app.state.cache_store
    await store.initialize()
    logger.info(
        "EdgeCache gateway startup completed",
        operation="startup",
        config=get_config_summary(app.state.settings),
    )

    try:
        yield
    finally:
        logger.info("Shutting down EdgeCache gateway...", operation="shutdown")
        try:
            await store.shutdown()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", operation="shutdown")
        logger.info("EdgeCache gateway shutdown completed", operation="shutdown")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ResponseCacheStore] = None,
    settings_repository: Optional[SettingsRepository] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings; defaults to the environment
        store: Cache store; defaults to one built from the settings
        settings_repository: Admin settings storage; defaults to in-memory

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()
    settings_repository = settings_repository or InMemorySettingsRepository()

    app = FastAPI(
        title=settings.app_name,
        description="HTTP response caching gateway",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.cache_store = store or create_cache_store(settings)
    app.state.cache_invalidator = CacheInvalidator(app.state.cache_store)
    app.state.settings_repository = settings_repository
    app.state.settings_gate = SettingsGate(settings_repository, ttl=settings.cache.settings_cache_ttl)
    app.state.tour_catalog = tours.TourCatalog()
    app.state.page_store = public.PageStore()

    # Last added is executed first
    app.add_middleware(NoCacheMiddleware, prefixes=settings.public.private_prefixes)
    app.add_middleware(PublicRateLimitMiddleware, settings=settings.public)
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(public.router, prefix="/api/public", tags=["Public"])
    app.include_router(settings_routes.public_router, prefix="/api/settings", tags=["Settings"])
    app.include_router(tours.router, prefix="/api/tours", tags=["Tours"])
    app.include_router(settings_routes.admin_router, prefix="/api/admin/settings", tags=["Admin"])
    app.include_router(cache_admin.router, prefix="/api/admin/cache", tags=["Admin"])

    @app.get("/health", include_in_schema=False)
    async def health():
        store: ResponseCacheStore = app.state.cache_store
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "status": "degraded" if store.degraded else "operational",
            "cache_backend": store.backend,
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.exception(f"Unhandled exception: {exc}", operation="global_exception_handler")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "An internal server error occurred",
                "data": {"request_id": getattr(request.state, "request_id", None)},
            },
        )

    return app


def run_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False, workers: int = 1):
    """
    Run the gateway with uvicorn.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable auto-reload for development
        workers: Number of worker processes
    """
    settings = get_settings()
    uvicorn.run(
        "edgecache.gateway.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,
        log_config=LoggingConfig.get_config_dict(
            level=settings.monitoring.log_level.value,
            format_type="json" if settings.is_production() else settings.monitoring.log_format,
        ),
        access_log=settings.debug,
    )


if __name__ == "__main__":
    run_server(reload=get_settings().debug)
