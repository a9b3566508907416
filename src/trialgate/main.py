"""FastAPI entry point for the trialgate license server."""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from trialgate.api.license import LICENSE_PATHS
from trialgate.api.license import router as license_router
from trialgate.config import Settings, get_settings
from trialgate.errors import SigningKeyError
from trialgate.licensing.token import TokenCodec
from trialgate.server.heartbeat import HeartbeatService
from trialgate.server.registration import RegistrationService
from trialgate.storage.repositories import LicenseStore
from trialgate.storage.sql_store import SQLLicenseStore

logger = logging.getLogger("trialgate")

_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def install_services(
    app: FastAPI,
    store: LicenseStore,
    codec: TokenCodec,
    settings: Settings,
) -> None:
    """Attach the heartbeat and registration services to *app*."""
    if not codec.can_sign:
        raise SigningKeyError("License server requires a signing key")
    app.state.heartbeat_service = HeartbeatService(
        store, codec, settings.limits, settings.policy,
    )
    app.state.registration_service = RegistrationService(
        store, codec, settings.limits, settings.policy,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Refuse to start without a usable signing key
    codec = TokenCodec.for_server(settings.signing)

    store = SQLLicenseStore()
    await store.init(settings.storage.database_url)
    install_services(app, store, codec, settings)
    logger.info(
        "License server ready (trial %d days, %d heartbeats/day, %d devices/key)",
        settings.policy.trial_days,
        settings.limits.heartbeats_per_day,
        settings.limits.default_max_devices,
    )

    yield

    await store.close()
    logger.info("License server stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    get_settings()

    app = FastAPI(
        title="Trialgate",
        description="Trial and device registration license server",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=_CORS_HEADERS)
        if request.url.path in LICENSE_PATHS and request.method != "POST":
            response: Response = JSONResponse({"error": "Method not allowed"}, status_code=405)
        else:
            response = await call_next(request)
        response.headers.update(_CORS_HEADERS)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore[no-untyped-def]
        return JSONResponse({"error": "Malformed request body"}, status_code=400)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}

    app.include_router(license_router)

    return app


app = create_app()


def main() -> None:
    """Run the license server."""
    logging.basicConfig(
        level=logging.DEBUG if get_settings().debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = get_settings()
    try:
        TokenCodec.for_server(settings.signing)
    except SigningKeyError as exc:
        logger.error("Cannot start license server: %s", exc)
        sys.exit(1)

    uvicorn.run(
        "trialgate.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
