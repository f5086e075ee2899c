"""
FastAPI application factory for RoomHub.

This module creates the FastAPI app with:
- CORS configuration for the web client
- RoomHub lifecycle management (store open/close)
- API routes under /api/v1
- Error rendering for RoomHubError
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .._version import __version__
from ..config import ServerConfig
from ..errors import (
    INVALID_REQUEST,
    AccessError,
    InfrastructureError,
    NotFoundError,
    RateLimitedError,
    RoomHubError,
    ValidationError,
)
from ..server import RoomHub
from .routes import router
from .settings import Settings

logger = logging.getLogger(__name__)


def status_for(error: RoomHubError) -> int:
    """HTTP status for a RoomHubError."""
    if isinstance(error, AccessError):
        return 400 if error.code == INVALID_REQUEST else 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, RateLimitedError):
        return 429
    if isinstance(error, InfrastructureError):
        return 503
    return 500


def create_app(hub: RoomHub | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        hub: Prebuilt services (built from the environment when omitted)
        settings: HTTP settings (loaded from the environment when omitted)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Manage RoomHub lifecycle."""
        room_hub = hub or RoomHub.from_config(ServerConfig.from_env())
        await room_hub.start()
        app.state.hub = room_hub
        app.state.settings = settings

        yield

        await room_hub.close()

    app = FastAPI(
        title="RoomHub",
        description="Room access control, ticket workflow and activity feed.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RoomHubError)
    async def handle_roomhub_error(request: Request, exc: RoomHubError):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{exc.code} at {request.url.path}: {exc.message}")
        elif status == 403:
            logger.info(f"Denied {request.method} {request.url.path}: {exc.code}")

        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after_seconds)}
        return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.error(f"Unhandled error at {request.url.path}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "code": "INTERNAL_ERROR", "message": "Internal server error"},
        )

    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "roomhub", "version": __version__}

    return app


# Default app instance
app = create_app()
