"""Webhook subscription, delivery ledger and retry queue models."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Error marker written to the ledger when a delivery is abandoned
RETRY_CEILING_EXCEEDED = "retry ceiling exceeded"


def _now() -> datetime:
    return datetime.now(UTC)


def mask_secret(secret: str) -> str:
    """Mask all but the last four characters of a secret."""
    if len(secret) <= 4:
        return "*" * len(secret)
    return f"{'*' * 8}{secret[-4:]}"


class Webhook(BaseModel):
    """A registered webhook subscription."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:16]}",
        description="Unique webhook identifier",
    )
    owner_id: str = Field(..., description="Owner of the subscription")
    integration_type: str = Field(
        ..., description="Integration tag, e.g. 'salesforce'"
    )
    event_type: str = Field(..., description="Exact-match routing key")
    target_url: str = Field(..., description="Subscriber endpoint URL")
    secret: str = Field(..., description="HMAC signing secret")
    is_active: bool = Field(
        default=True,
        description="Inactive webhooks are kept for audit but never routed to",
    )
    retry_count: int = Field(
        default=0,
        description="Number of failed deliveries queued for retry",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Registration options (secret excluded)",
    )
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime | None = Field(default=None)

    def sanitized(self) -> Webhook:
        """Return a copy safe to hand to administration surfaces."""
        return self.model_copy(update={"secret": mask_secret(self.secret)})

    def to_json_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        return self.model_dump(mode="json")


class DeliveryRecord(BaseModel):
    """Append-only ledger entry for one delivery attempt."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"dlv_{uuid.uuid4().hex[:16]}")
    webhook_id: str
    event_type: str
    success: bool
    http_status: int = Field(default=0, description="0 when no response arrived")
    error: str | None = None
    attempt: int = Field(default=1, description="1-based attempt number")
    delivered_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal_failure(self) -> bool:
        """Whether this entry marks an abandoned delivery."""
        return self.error == RETRY_CEILING_EXCEEDED


class DeliveryOutcome(BaseModel):
    """Classified result of a single delivery attempt."""

    webhook_id: str
    success: bool
    http_status: int = 0
    error: str | None = None
    attempt: int = 1
    duration_ms: float = 0.0
    record: DeliveryRecord | None = None


class RetryQueueItem(BaseModel):
    """A failed delivery waiting for its next attempt."""

    id: str = Field(default_factory=lambda: f"rty_{uuid.uuid4().hex[:16]}")
    webhook: Webhook = Field(..., description="Snapshot taken at failure time")
    event_type: str
    payload: Any = None
    retry_count: int = Field(
        ...,
        ge=1,
        description="Attempts already made for this delivery",
    )
    next_retry_at: datetime
    created_at: datetime = Field(default_factory=_now)

    def is_due(self, now: datetime) -> bool:
        """Check if the item is ready for another attempt."""
        return self.next_retry_at <= now


# ============================================================================
# Programmatic API results
# ============================================================================


class RegistrationResult(BaseModel):
    """Result of registering a webhook.

    The only place the full secret is returned to a caller.
    """

    success: bool = True
    webhook_id: str
    webhook: Webhook


class UnregistrationResult(BaseModel):
    """Result of unregistering a webhook."""

    success: bool = True
    webhook_id: str


class EventDeliveryResult(BaseModel):
    """Per-webhook outcome reported by process_event."""

    webhook_id: str
    success: bool
    http_status: int = 0
    error: str | None = None
    retry_scheduled: bool = False


class ProcessEventResult(BaseModel):
    """Result of dispatching one internal event."""

    success: bool = True
    event_type: str
    webhooks_processed: int = 0
    results: list[EventDeliveryResult] = Field(default_factory=list)


class InboundResult(BaseModel):
    """Result of accepting an inbound third-party callback."""

    success: bool = True
    event_type: str
    handlers_invoked: int = 0


class WebhookStats(BaseModel):
    """Aggregate webhook and delivery statistics."""

    total_webhooks: int = 0
    active_webhooks: int = 0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    retry_queue_size: int = 0
    window_hours: int = 24

    @property
    def success_rate(self) -> float:
        """Successful deliveries as a percentage of all deliveries."""
        if self.total_deliveries == 0:
            return 0.0
        return (self.successful_deliveries / self.total_deliveries) * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary including the derived success rate."""
        data = self.model_dump()
        data["success_rate"] = self.success_rate
        return data
