"""Webhook management API endpoints.

Provides REST API for managing webhook registrations, viewing delivery
history, publishing internal events and receiving third-party callbacks.
Domain errors raised by the manager are mapped to HTTP responses by the
application's exception handler.
"""

import json
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from webhook_relay.webhooks.manager import get_webhook_manager
from webhook_relay.webhooks.models import (
    DeliveryOutcome,
    DeliveryRecord,
    InboundResult,
    ProcessEventResult,
    Webhook,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
events_router = APIRouter(prefix="/events", tags=["Events"])
inbound_router = APIRouter(prefix="/inbound", tags=["Inbound"])


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(BaseModel):
    """Request to register a new webhook."""

    owner_id: str = Field(..., description="Owner of the subscription", min_length=1)
    integration_type: str = Field(
        ..., description="Integration tag, e.g. 'salesforce'", min_length=1
    )
    event_type: str = Field(
        ..., description="Event type to subscribe to (exact match)", min_length=1
    )
    target_url: str = Field(..., description="Absolute http(s) endpoint URL")
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra options; 'secret' overrides the generated secret",
    )


class EventRequest(BaseModel):
    """Internal event to fan out to subscribers."""

    event_type: str = Field(..., description="Type of event", min_length=1)
    payload: Any = Field(default=None, description="Event payload, any JSON value")


class TestWebhookRequest(BaseModel):
    """Optional payload for a test delivery."""

    payload: Any = Field(default=None, description="Test payload (default sample if null)")


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook details response."""

    id: str
    owner_id: str
    integration_type: str
    event_type: str
    target_url: str
    secret: str
    is_active: bool
    retry_count: int
    options: dict[str, Any]
    created_at: str
    updated_at: str | None

    @classmethod
    def from_webhook(cls, webhook: Webhook) -> "WebhookResponse":
        """Create response from Webhook model."""
        return cls(
            id=webhook.id,
            owner_id=webhook.owner_id,
            integration_type=webhook.integration_type,
            event_type=webhook.event_type,
            target_url=webhook.target_url,
            secret=webhook.secret,
            is_active=webhook.is_active,
            retry_count=webhook.retry_count,
            options=webhook.options,
            created_at=webhook.created_at.isoformat(),
            updated_at=webhook.updated_at.isoformat() if webhook.updated_at else None,
        )


class DeliveryRecordResponse(BaseModel):
    """Delivery ledger entry response."""

    id: str
    webhook_id: str
    event_type: str
    success: bool
    http_status: int
    error: str | None
    attempt: int
    delivered_at: str

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryRecordResponse":
        """Create response from DeliveryRecord model."""
        return cls(
            id=record.id,
            webhook_id=record.webhook_id,
            event_type=record.event_type,
            success=record.success,
            http_status=record.http_status,
            error=record.error,
            attempt=record.attempt,
            delivered_at=record.delivered_at.isoformat(),
        )


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    webhook_id: str
    delivery_id: str | None
    http_status: int
    error: str | None
    duration_ms: float

    @classmethod
    def from_outcome(cls, outcome: DeliveryOutcome) -> "TestWebhookResponse":
        """Create response from a DeliveryOutcome."""
        return cls(
            success=outcome.success,
            webhook_id=outcome.webhook_id,
            delivery_id=outcome.record.id if outcome.record else None,
            http_status=outcome.http_status,
            error=outcome.error,
            duration_ms=outcome.duration_ms,
        )


# ============================================================================
# Webhook Endpoints
# ============================================================================


@router.post(
    "",
    response_model=WebhookResponse,
    responses={
        201: {"description": "Webhook created"},
        400: {"description": "Invalid request"},
    },
    status_code=201,
)
async def create_webhook(request: WebhookCreateRequest) -> WebhookResponse:
    """Register a new webhook.

    The response carries the full signing secret. It is not returned again
    by any other endpoint.
    """
    manager = get_webhook_manager()
    result = await manager.register_webhook(
        owner_id=request.owner_id,
        integration_type=request.integration_type,
        event_type=request.event_type,
        target_url=request.target_url,
        options=request.options,
    )
    return WebhookResponse.from_webhook(result.webhook)


@router.get(
    "",
    response_model=list[WebhookResponse],
)
async def list_webhooks(
    owner_id: str | None = None,
    event_type: str | None = None,
    active_only: bool = False,
) -> list[WebhookResponse]:
    """List registered webhooks with masked secrets."""
    manager = get_webhook_manager()
    webhooks = await manager.list_webhooks(
        owner_id=owner_id,
        event_type=event_type,
        active_only=active_only,
    )
    return [WebhookResponse.from_webhook(w) for w in webhooks]


@router.get("/stats")
async def get_webhook_stats(
    owner_id: str | None = None,
    window_hours: int = Query(default=24, ge=1, le=24 * 90),
) -> dict[str, Any]:
    """Get webhook counts and recent delivery statistics."""
    manager = get_webhook_manager()
    stats = await manager.get_stats(owner_id, window_hours=window_hours)
    return stats.to_dict()


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(webhook_id: str) -> WebhookResponse:
    """Get webhook details by ID."""
    manager = get_webhook_manager()
    webhook = await manager.get_webhook(webhook_id)
    return WebhookResponse.from_webhook(webhook)


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deactivated"},
        404: {"description": "Webhook not found"},
    },
    status_code=204,
)
async def delete_webhook(webhook_id: str) -> None:
    """Deactivate a webhook.

    The record is kept for audit. Repeating the call is a no-op.
    """
    manager = get_webhook_manager()
    await manager.unregister_webhook(webhook_id)


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    request: TestWebhookRequest | None = None,
) -> TestWebhookResponse:
    """Send a test event to a webhook.

    Sends a single test.event delivery. Failures are reported, not retried.
    """
    manager = get_webhook_manager()
    outcome = await manager.test_webhook(
        webhook_id,
        payload=request.payload if request else None,
    )
    return TestWebhookResponse.from_outcome(outcome)


@router.get(
    "/{webhook_id}/deliveries",
    response_model=list[DeliveryRecordResponse],
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_deliveries(
    webhook_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[DeliveryRecordResponse]:
    """List delivery attempts for a webhook, newest first."""
    manager = get_webhook_manager()
    records = await manager.get_delivery_logs(webhook_id, limit=limit)
    return [DeliveryRecordResponse.from_record(r) for r in records]


# ============================================================================
# Event Endpoints
# ============================================================================


@events_router.post(
    "",
    response_model=ProcessEventResult,
    responses={
        400: {"description": "Invalid event"},
        503: {"description": "Subscriber lookup failed"},
    },
)
async def publish_event(request: EventRequest) -> ProcessEventResult:
    """Fan an internal event out to every active subscriber.

    Per-webhook failures are reported in the results and retried in the
    background.
    """
    manager = get_webhook_manager()
    return await manager.process_event(request.event_type, request.payload)


# ============================================================================
# Inbound Endpoints
# ============================================================================


@inbound_router.post(
    "/{event_type}",
    response_model=InboundResult,
    responses={
        400: {"description": "Malformed body"},
        401: {"description": "Signature missing or invalid"},
    },
)
async def receive_inbound_webhook(event_type: str, request: Request) -> InboundResult:
    """Receive a signed callback from a third-party integration.

    The signature is checked against the exact request body.
    """
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body) if raw_body else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Request body is not valid JSON") from e

    manager = get_webhook_manager()
    return await manager.process_inbound_webhook(
        event_type,
        payload,
        dict(request.headers),
        raw_body=raw_body,
    )
