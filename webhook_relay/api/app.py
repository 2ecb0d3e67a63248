"""FastAPI application for the webhook relay.

This module provides:
- Application factory with lifespan-managed retry processing
- Mapping of domain errors to HTTP status codes
- Health check endpoint
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from webhook_relay import __version__
from webhook_relay.api.webhooks import events_router, inbound_router, router
from webhook_relay.config import settings
from webhook_relay.errors import (
    PersistenceError,
    SignatureError,
    ValidationError,
    WebhookNotFoundError,
    WebhookRelayError,
)
from webhook_relay.logging_config import configure_logging
from webhook_relay.webhooks.manager import get_webhook_manager

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES: dict[type[WebhookRelayError], int] = {
    ValidationError: 400,
    SignatureError: 401,
    WebhookNotFoundError: 404,
    PersistenceError: 503,
}


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error message")
    error_type: str | None = Field(default=None, description="Domain error class")
    detail: str | None = Field(default=None, description="Detailed error information")


def status_code_for(exc: WebhookRelayError) -> int:
    """HTTP status for a domain error (500 when unmapped)."""
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


# ============================================================================
# Application Setup
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    """Application lifespan handler."""
    # Startup
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info("application_starting")

    manager = get_webhook_manager()
    await manager.start()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await manager.shutdown()


def create_app(
    title: str = "Webhook Relay API",
    version: str = __version__,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        title: API title.
        version: API version.
        cors_origins: Allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title=title,
        version=version,
        lifespan=lifespan,
        docs_url="/docs",
        openapi_url="/openapi.json",
    )

    # Configure CORS
    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add exception handlers
    @app.exception_handler(WebhookRelayError)
    async def webhook_relay_error_handler(
        request: Request, exc: WebhookRelayError  # noqa: ARG001
    ) -> JSONResponse:
        status_code = status_code_for(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log("request_failed", status_code=status_code, **exc.to_dict())
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.message,
                error_type=exc.__class__.__name__,
            ).model_dump(),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException  # noqa: ARG001
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
            ).model_dump(),
        )

    app.include_router(router)
    app.include_router(events_router)
    app.include_router(inbound_router)

    @app.get("/health", tags=["Health"])
    async def health() -> dict[str, Any]:
        """Basic liveness check with retry processor state."""
        manager = get_webhook_manager()
        return {
            "status": "ok",
            "retry_processor_running": manager.scheduler.is_running,
            "retry_queue_size": await manager.scheduler.size(),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app
