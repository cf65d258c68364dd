"""
EdgeCache gateway - dependencies.

Components live on ``app.state`` (created by ``create_app``); these
functions expose them to endpoints through FastAPI's dependency injection.
"""
from typing import Callable

from fastapi import Depends, Request

from ..shared.caching.cache_manager import ResponseCacheStore
from ..shared.caching.invalidation import CacheInvalidator
from ..shared.config import Settings, get_settings
from ..shared.errors import ModuleDisabledError
from ..shared.settings_gate import SettingsGate


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


def get_cache_store(request: Request) -> ResponseCacheStore:
    return request.app.state.cache_store


def get_cache_invalidator(request: Request) -> CacheInvalidator:
    return request.app.state.cache_invalidator


def get_settings_gate(request: Request) -> SettingsGate:
    return request.app.state.settings_gate


def get_settings_repository(request: Request):
    return request.app.state.settings_repository


def module_guard(module_name: str) -> Callable:
    """
    Dependency rejecting requests to a disabled module with a 503.

    Usage:
        @router.get("/tours", dependencies=[Depends(module_guard("tours"))])

    A settings lookup failure lets the request through.
    """
    async def guard(gate: SettingsGate = Depends(get_settings_gate)) -> None:
        if not await gate.is_module_enabled(module_name):
            raise ModuleDisabledError(module_name)

    return guard
