"""License server endpoints: ``/heartbeat`` and ``/register``."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import JSONResponse

from trialgate.errors import (
    DeviceLimitError,
    DeviceNotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from trialgate.server.heartbeat import HeartbeatService
from trialgate.server.registration import RegistrationService

logger = logging.getLogger("trialgate.api.license")

router = APIRouter(tags=["license"])

LICENSE_PATHS = frozenset({
    "/heartbeat",
    "/register",
    "/api/heartbeat",
    "/api/register",
})


class HeartbeatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str | None = Field(default=None, alias="deviceId")
    app_version: str | None = Field(default=None, alias="appVersion")
    download_key: str | None = Field(default=None, alias="downloadKey")


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str | None = Field(default=None, alias="deviceId")
    download_key: str | None = Field(default=None, alias="downloadKey")


def _heartbeat_service(request: Request) -> HeartbeatService:
    return request.app.state.heartbeat_service


def _registration_service(request: Request) -> RegistrationService:
    return request.app.state.registration_service


@router.post("/heartbeat")
@router.post("/api/heartbeat")
async def heartbeat(body: HeartbeatRequest, request: Request):
    """Device check-in: trial status, token renewal, update info."""
    service = _heartbeat_service(request)
    try:
        result = await service.heartbeat(body.device_id, body.app_version, body.download_key)
    except ValidationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    except RateLimitExceededError as exc:
        return JSONResponse({"error": str(exc)}, status_code=429)
    return result.to_dict()


@router.post("/register")
@router.post("/api/register")
async def register(body: RegisterRequest, request: Request):
    """Bind the calling device to a download key."""
    service = _registration_service(request)
    try:
        result = await service.register(body.device_id, body.download_key)
    except (ValidationError, DeviceNotFoundError) as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
    except DeviceLimitError as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=403)
    return result.to_dict()
