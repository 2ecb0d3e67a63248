"""Outbound webhook delivery and inbound callback handling.

This module provides:
- WebhookRegistry: Registration and lifecycle of subscriptions
- EventRouter: Event-type routing with an invalidating cache
- Deliverer: Signed HTTP delivery with a concurrency bound
- DeliveryLedger: Append-only audit trail of attempts
- RetryScheduler: Exponential-backoff re-delivery
- EventHandlerDispatch: Side-effect handlers keyed by event type
- WebhookManager: Facade wiring the above together
- HMAC-SHA256 signing and verification
"""

from webhook_relay.webhooks.deliverer import Deliverer, build_envelope
from webhook_relay.webhooks.handlers import EventHandler, EventHandlerDispatch
from webhook_relay.webhooks.ledger import DeliveryLedger
from webhook_relay.webhooks.manager import (
    WebhookManager,
    create_webhook_manager,
    get_webhook_manager,
    set_webhook_manager,
)
from webhook_relay.webhooks.models import (
    RETRY_CEILING_EXCEEDED,
    DeliveryOutcome,
    DeliveryRecord,
    EventDeliveryResult,
    InboundResult,
    ProcessEventResult,
    RegistrationResult,
    RetryQueueItem,
    UnregistrationResult,
    Webhook,
    WebhookStats,
)
from webhook_relay.webhooks.queue import InMemoryRetryQueue, RetryQueue, SQLiteRetryQueue
from webhook_relay.webhooks.registry import WebhookRegistry
from webhook_relay.webhooks.retry import RetryScheduler, backoff_delay
from webhook_relay.webhooks.router import EventRouter
from webhook_relay.webhooks.security import (
    SIGNATURE_HEADER,
    canonical_json,
    generate_secret,
    sign,
    verify,
)
from webhook_relay.webhooks.storage import (
    InMemoryWebhookStore,
    SQLiteWebhookStore,
    WebhookStore,
)

__all__ = [
    # Models
    "RETRY_CEILING_EXCEEDED",
    "DeliveryOutcome",
    "DeliveryRecord",
    "EventDeliveryResult",
    "InboundResult",
    "ProcessEventResult",
    "RegistrationResult",
    "RetryQueueItem",
    "UnregistrationResult",
    "Webhook",
    "WebhookStats",
    # Storage
    "InMemoryWebhookStore",
    "SQLiteWebhookStore",
    "WebhookStore",
    # Components
    "Deliverer",
    "DeliveryLedger",
    "EventHandler",
    "EventHandlerDispatch",
    "EventRouter",
    "InMemoryRetryQueue",
    "RetryQueue",
    "RetryScheduler",
    "SQLiteRetryQueue",
    "WebhookRegistry",
    "backoff_delay",
    "build_envelope",
    # Manager
    "WebhookManager",
    "create_webhook_manager",
    "get_webhook_manager",
    "set_webhook_manager",
    # Security
    "SIGNATURE_HEADER",
    "canonical_json",
    "generate_secret",
    "sign",
    "verify",
]
