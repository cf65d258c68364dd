"""
EdgeCache gateway - settings router.

Public module flags (response cached) and the admin toggle that refreshes
the settings gate and purges cached settings responses.
"""
from fastapi import APIRouter, Depends, Request

from ...shared.logging_config import get_logger
from ...shared.schemas import ModuleUpdateRequest, api_success
from ...shared.settings_gate import SettingsGate
from ..dependencies import get_settings_gate, get_settings_repository
from ..middleware import cache_response, clear_cache_by_tags

logger = get_logger(__name__, 'settings_router')

SETTINGS_TAGS = ["settings", "settings:public"]

public_router = APIRouter()
admin_router = APIRouter()


@public_router.get("/public")
@cache_response("long", tags=SETTINGS_TAGS)
async def public_settings(request: Request, gate: SettingsGate = Depends(get_settings_gate)):
    """Module flags as seen by clients."""
    settings = await gate.get_settings()
    return api_success(data={"active_modules": settings.active_modules})


@admin_router.get("")
async def admin_settings(gate: SettingsGate = Depends(get_settings_gate)):
    settings = await gate.get_settings()
    return api_success(data=settings.model_dump())


@admin_router.patch("/modules")
@clear_cache_by_tags(["settings"])
async def update_modules(
    body: ModuleUpdateRequest,
    repository=Depends(get_settings_repository),
    gate: SettingsGate = Depends(get_settings_gate),
):
    document = await repository.update(body.active_modules)
    gate.invalidate()
    logger.info(
        "Module flags updated",
        operation="update_modules",
        active_modules=body.active_modules,
    )
    return api_success(data=document, message="Settings updated")
