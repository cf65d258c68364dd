"""
Shared Schemas - response envelope and settings documents.

Endpoints answer with the `{success, message, data}` envelope. The cache
layer reads the logical outcome from `EnvelopeResponse.ok`, which the
helpers below populate; hand-built JSON envelopes are read for `success`.
"""
import json
from typing import Any, Dict, List, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class ApiEnvelope(BaseModel):
    """Standard API response envelope."""
    success: bool = Field(True, description="Logical outcome of the request")
    message: str = Field("Success", description="Human readable message")
    data: Optional[Any] = Field(None, description="Response payload")


class EnvelopeResponse(JSONResponse):
    """JSON response that records whether the envelope reports success."""

    def __init__(self, content: Any = None, status_code: int = 200, ok: bool = True, **kwargs):
        self.ok = ok
        super().__init__(content=content, status_code=status_code, **kwargs)


def api_success(data: Any = None, message: str = "Success", status_code: int = 200,
                headers: Optional[Dict[str, str]] = None) -> EnvelopeResponse:
    """Build a successful envelope response."""
    envelope = ApiEnvelope(success=True, message=message, data=data)
    return EnvelopeResponse(
        content=jsonable_encoder(envelope),
        status_code=status_code,
        ok=True,
        headers=headers,
    )


def api_error(message: str, status_code: int = 500, data: Any = None,
              headers: Optional[Dict[str, str]] = None) -> EnvelopeResponse:
    """Build an error envelope response."""
    envelope = ApiEnvelope(success=False, message=message, data=data)
    return EnvelopeResponse(
        content=jsonable_encoder(envelope),
        status_code=status_code,
        ok=False,
        headers=headers,
    )


def envelope_response(envelope: ApiEnvelope, status_code: int = 200) -> EnvelopeResponse:
    """Render an ApiEnvelope returned by an endpoint."""
    return EnvelopeResponse(
        content=jsonable_encoder(envelope),
        status_code=status_code,
        ok=envelope.success,
    )


def is_logical_success(response) -> bool:
    """Logical outcome of a rendered response.

    EnvelopeResponse carries it as ``ok``. Other JSON responses are read for an
    envelope ``success`` flag; anything without one counts as success.
    """
    if isinstance(response, EnvelopeResponse):
        return response.ok
    if isinstance(response, JSONResponse):
        try:
            payload = json.loads(response.body)
        except ValueError:
            return True
        return not (isinstance(payload, dict) and payload.get("success") is False)
    return True


class ModuleSettings(BaseModel):
    """Admin settings document consumed by the settings gate."""
    active_modules: Dict[str, bool] = Field(
        default_factory=lambda: {
            "tours": True,
            "users": True,
            "bookings": True,
            "payments": True,
        },
        description="Module name to enabled flag",
    )

    def is_enabled(self, module_name: str) -> bool:
        return bool(self.active_modules.get(module_name, False))


class InvalidateTagsRequest(BaseModel):
    """Body of the operator tag invalidation endpoint."""
    tags: List[str] = Field(..., min_length=1, description="Tags to purge")


class ModuleUpdateRequest(BaseModel):
    """Body of the admin module toggle endpoint."""
    active_modules: Dict[str, bool] = Field(..., description="Module flags to merge into the settings")
