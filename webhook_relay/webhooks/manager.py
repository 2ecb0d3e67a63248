"""Webhook management facade.

Wires the registry, router, signer, deliverer, ledger, retry scheduler and
handler dispatch together and exposes the programmatic API used by event
producers and administration surfaces.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from webhook_relay.config import Settings
from webhook_relay.config import settings as default_settings
from webhook_relay.errors import (
    SignatureError,
    ValidationError,
    WebhookNotFoundError,
    WebhookRelayError,
)
from webhook_relay.integrations import register_default_handlers
from webhook_relay.webhooks.deliverer import Deliverer
from webhook_relay.webhooks.handlers import EventHandler, EventHandlerDispatch
from webhook_relay.webhooks.ledger import DeliveryLedger
from webhook_relay.webhooks.models import (
    DeliveryOutcome,
    DeliveryRecord,
    EventDeliveryResult,
    InboundResult,
    ProcessEventResult,
    RegistrationResult,
    UnregistrationResult,
    Webhook,
    WebhookStats,
)
from webhook_relay.webhooks.queue import InMemoryRetryQueue, RetryQueue, SQLiteRetryQueue
from webhook_relay.webhooks.registry import WebhookRegistry
from webhook_relay.webhooks.retry import RetryScheduler
from webhook_relay.webhooks.router import EventRouter
from webhook_relay.webhooks.security import (
    canonical_json,
    extract_signature,
    verify_from_headers,
)
from webhook_relay.webhooks.storage import (
    InMemoryWebhookStore,
    SQLiteWebhookStore,
    WebhookStore,
)

logger = structlog.get_logger(__name__)

TEST_EVENT_TYPE = "test.event"


def integration_for_event(event_type: str) -> str:
    """Integration tag of an event type: the part before the first dot."""
    return event_type.split(".", 1)[0]


class WebhookManager:
    """Manages webhook subscriptions and event delivery.

    Outbound: ``process_event`` routes an event to every active subscriber,
    delivering concurrently (bounded by the deliverer's semaphore) while
    registered handlers run alongside. Failed deliveries go to the retry
    scheduler; the producer only ever sees per-webhook outcomes.

    Inbound: ``process_inbound_webhook`` verifies a third-party callback's
    signature and then runs the handlers registered for its event type.
    """

    def __init__(
        self,
        store: WebhookStore | None = None,
        *,
        settings: Settings | None = None,
        retry_queue: RetryQueue | None = None,
        handlers: EventHandlerDispatch | None = None,
    ) -> None:
        """Initialize the webhook manager.

        Args:
            store: Repository for webhooks and delivery records.
            settings: Configuration (uses global settings if not provided).
            retry_queue: Retry queue backend (in-memory if not provided).
            handlers: Handler table (empty if not provided).
        """
        self._settings = settings or default_settings
        self._store = store or InMemoryWebhookStore()

        self.registry = WebhookRegistry(self._store)
        self.router = EventRouter(
            self.registry,
            cache_ttl_seconds=self._settings.WEBHOOK_ROUTER_CACHE_TTL_SECONDS,
        )
        self.ledger = DeliveryLedger(self._store)
        self.deliverer = Deliverer(
            self.ledger,
            timeout_seconds=self._settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS,
            user_agent=self._settings.WEBHOOK_USER_AGENT,
            max_concurrent_deliveries=self._settings.WEBHOOK_MAX_CONCURRENT_DELIVERIES,
        )
        self.scheduler = RetryScheduler(
            self.deliverer,
            self.ledger,
            queue=retry_queue or InMemoryRetryQueue(),
            max_retries=self._settings.WEBHOOK_MAX_RETRIES,
            base_delay_seconds=self._settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS,
            interval_seconds=self._settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
            webhook_lookup=self.registry.get,
        )
        self.handlers = handlers or EventHandlerDispatch()
        self._inbound_secrets: dict[str, str] = {}
        self._logger = logger.bind(component="webhook_manager")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the retry processor."""
        await self.scheduler.start()
        self._logger.info("webhook_manager_started")

    async def shutdown(self) -> None:
        """Stop the retry processor and release the store."""
        await self.scheduler.stop()
        await self._store.close()
        self._logger.info("webhook_manager_stopped")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register_webhook(
        self,
        owner_id: str,
        integration_type: str,
        event_type: str,
        target_url: str,
        options: dict[str, Any] | None = None,
    ) -> RegistrationResult:
        """Register a webhook.

        The returned webhook carries the full secret; this is the only
        time it is handed out.

        Raises:
            ValidationError: If any input is malformed.
            PersistenceError: If the store write fails.
        """
        try:
            webhook = await self.registry.register(
                owner_id, integration_type, event_type, target_url, options
            )
        except WebhookRelayError as e:
            self._logger.error(
                "webhook_registration_failed",
                owner_id=owner_id,
                integration_type=integration_type,
                event_type=event_type,
                error=e.message,
            )
            raise

        return RegistrationResult(webhook_id=webhook.id, webhook=webhook)

    async def unregister_webhook(self, webhook_id: str) -> UnregistrationResult:
        """Deactivate a webhook (idempotent).

        Raises:
            WebhookNotFoundError: If the webhook never existed.
            PersistenceError: If the store fails.
        """
        await self.registry.unregister(webhook_id)
        return UnregistrationResult(webhook_id=webhook_id)

    async def get_webhook(self, webhook_id: str) -> Webhook:
        """Get a sanitized webhook.

        Raises:
            WebhookNotFoundError: If the webhook does not exist.
        """
        webhook = await self.registry.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        return webhook

    async def list_webhooks(
        self,
        *,
        owner_id: str | None = None,
        event_type: str | None = None,
        active_only: bool = False,
    ) -> list[Webhook]:
        """List sanitized webhooks."""
        return await self.registry.list(
            owner_id=owner_id,
            event_type=event_type,
            active_only=active_only,
        )

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register a side-effect handler for an event type."""
        self.handlers.register(event_type, handler)

    def register_inbound_secret(self, integration_type: str, secret: str) -> None:
        """Set the secret used to verify an integration's inbound callbacks."""
        if not integration_type or not secret:
            raise ValidationError("integration_type and secret are required")
        self._inbound_secrets[integration_type] = secret

    # ------------------------------------------------------------------
    # Outbound events
    # ------------------------------------------------------------------

    async def process_event(self, event_type: str, payload: Any) -> ProcessEventResult:
        """Deliver an internal event to every active subscriber.

        Args:
            event_type: Type of event.
            payload: Event payload, any JSON value.

        Returns:
            Per-webhook outcomes. Delivery failures are reported here and
            retried in the background; they never raise.

        Raises:
            ValidationError: If event_type is empty.
            PersistenceError: If subscribers cannot be resolved.
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("event_type must be a non-empty string", field="event_type")

        self._logger.info("processing_event", event_type=event_type)

        webhooks = await self.router.find_matching_webhooks(event_type)
        if not webhooks:
            self._logger.debug("no_webhooks_subscribed", event_type=event_type)

        results, _ = await asyncio.gather(
            asyncio.gather(*(self._deliver_to(w, event_type, payload) for w in webhooks)),
            self.handlers.dispatch(event_type, payload, {}),
        )

        self._logger.info(
            "event_processed",
            event_type=event_type,
            webhook_count=len(webhooks),
            succeeded=sum(1 for r in results if r.success),
        )

        return ProcessEventResult(
            event_type=event_type,
            webhooks_processed=len(webhooks),
            results=list(results),
        )

    async def _deliver_to(
        self,
        webhook: Webhook,
        event_type: str,
        payload: Any,
    ) -> EventDeliveryResult:
        try:
            outcome = await self.deliverer.deliver(webhook, event_type, payload)
        except WebhookRelayError as e:
            self._logger.error(
                "delivery_not_recorded",
                webhook_id=webhook.id,
                event_type=event_type,
                error=e.message,
            )
            # The attempt's result is unknown, so it counts as a failed first attempt
            retry_scheduled = await self._schedule_retry(
                webhook,
                event_type,
                payload,
                failed_attempts=1,
                last_status=0,
                last_error=e.message,
            )
            return EventDeliveryResult(
                webhook_id=webhook.id,
                success=False,
                error=e.message,
                retry_scheduled=retry_scheduled,
            )

        retry_scheduled = False
        if not outcome.success:
            retry_scheduled = await self._schedule_retry(
                webhook,
                event_type,
                payload,
                failed_attempts=outcome.attempt,
                last_status=outcome.http_status,
                last_error=outcome.error,
            )

        return EventDeliveryResult(
            webhook_id=webhook.id,
            success=outcome.success,
            http_status=outcome.http_status,
            error=outcome.error,
            retry_scheduled=retry_scheduled,
        )

    async def _schedule_retry(
        self,
        webhook: Webhook,
        event_type: str,
        payload: Any,
        *,
        failed_attempts: int,
        last_status: int,
        last_error: str | None,
    ) -> bool:
        """Hand a failed delivery to the scheduler; True if it was queued."""
        queued = False
        try:
            item = await self.scheduler.schedule_retry(
                webhook,
                event_type,
                payload,
                failed_attempts=failed_attempts,
                last_status=last_status,
                last_error=last_error,
            )
            if item is not None:
                queued = True
                await self.registry.record_retry(webhook.id)
        except WebhookRelayError as e:
            self._logger.error(
                "retry_scheduling_failed",
                webhook_id=webhook.id,
                event_type=event_type,
                error=e.message,
            )
        return queued

    # ------------------------------------------------------------------
    # Inbound callbacks
    # ------------------------------------------------------------------

    async def process_inbound_webhook(
        self,
        event_type: str,
        payload: Any,
        headers: Mapping[str, str] | None = None,
        *,
        raw_body: bytes | str | None = None,
    ) -> InboundResult:
        """Verify and handle a third-party callback.

        Args:
            event_type: Callback event type, e.g. "hubspot.deal.created".
            payload: Parsed callback body.
            headers: Request headers carrying the signature.
            raw_body: Exact request body; compact JSON of payload if omitted.

        Returns:
            Number of handlers that ran.

        Raises:
            ValidationError: If event_type is empty.
            SignatureError: If the signature is missing, unverifiable or wrong.
        """
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("event_type must be a non-empty string", field="event_type")

        request_headers = dict(headers or {})
        body = raw_body if raw_body is not None else canonical_json(payload)
        integration = integration_for_event(event_type)
        secret = self._inbound_secrets.get(integration)

        try:
            if secret is not None:
                verify_from_headers(body, request_headers, secret)
            elif extract_signature(request_headers) is not None:
                raise SignatureError(
                    f"No inbound secret configured for integration {integration}"
                )
            elif self._settings.WEBHOOK_INBOUND_REQUIRE_SIGNATURE:
                raise SignatureError(f"Unsigned callback rejected for {integration}")
        except SignatureError as e:
            self._logger.warning(
                "inbound_webhook_rejected",
                event_type=event_type,
                integration=integration,
                error=e.message,
            )
            raise

        invoked = await self.handlers.dispatch(event_type, payload, request_headers)

        self._logger.info(
            "inbound_webhook_processed",
            event_type=event_type,
            handlers_invoked=invoked,
            header_names=sorted(request_headers),
        )
        return InboundResult(event_type=event_type, handlers_invoked=invoked)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def get_stats(
        self,
        owner_id: str | None = None,
        *,
        window_hours: int = 24,
    ) -> WebhookStats:
        """Summarize webhooks and recent delivery attempts.

        Terminal "retry ceiling exceeded" markers are not attempts and are
        excluded from the delivery counts.
        """
        webhooks = await self.registry.list(owner_id=owner_id)
        since = datetime.now(UTC) - timedelta(hours=window_hours)
        records = await self.ledger.since(
            since,
            webhook_ids=[w.id for w in webhooks] if owner_id is not None else None,
        )
        attempts = [r for r in records if not r.is_terminal_failure]
        successful = sum(1 for r in attempts if r.success)

        return WebhookStats(
            total_webhooks=len(webhooks),
            active_webhooks=sum(1 for w in webhooks if w.is_active),
            total_deliveries=len(attempts),
            successful_deliveries=successful,
            failed_deliveries=len(attempts) - successful,
            retry_queue_size=await self.scheduler.size(),
            window_hours=window_hours,
        )

    async def get_delivery_logs(self, webhook_id: str, limit: int = 100) -> list[DeliveryRecord]:
        """Get a webhook's delivery records, newest first.

        Raises:
            WebhookNotFoundError: If the webhook does not exist.
        """
        if await self.registry.get(webhook_id) is None:
            raise WebhookNotFoundError(webhook_id)
        return await self.ledger.history(webhook_id, limit=limit)

    async def test_webhook(self, webhook_id: str, payload: Any = None) -> DeliveryOutcome:
        """Send a single test.event delivery; failures are not retried.

        Raises:
            WebhookNotFoundError: If the webhook does not exist.
            ValidationError: If the webhook is inactive.
        """
        webhook = await self.registry.get(webhook_id, include_secret=True)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)
        if not webhook.is_active:
            raise ValidationError(f"Webhook {webhook_id} is inactive", field="webhook_id")

        test_payload = payload if payload is not None else {
            "test": True,
            "timestamp": datetime.now(UTC).isoformat(),
            "webhook_id": webhook_id,
        }
        outcome = await self.deliverer.deliver(webhook, TEST_EVENT_TYPE, test_payload)

        self._logger.info(
            "webhook_tested",
            webhook_id=webhook_id,
            success=outcome.success,
            status_code=outcome.http_status,
        )
        return outcome

    async def cleanup_old_logs(self, days_old: int | None = None) -> int:
        """Delete delivery records older than the retention period."""
        days = days_old if days_old is not None else self._settings.WEBHOOK_LOG_RETENTION_DAYS
        if days < 0:
            raise ValidationError("days_old must not be negative", field="days_old")
        return await self.ledger.purge_older_than(days)


def create_webhook_manager(
    settings: Settings | None = None,
    *,
    with_default_handlers: bool = True,
) -> WebhookManager:
    """Build a manager with the backends selected by configuration.

    Args:
        settings: Configuration (uses global settings if not provided).
        with_default_handlers: Register the built-in integration handlers.

    Returns:
        Configured WebhookManager (not yet started).
    """
    config = settings or default_settings
    backend = config.WEBHOOK_STORAGE_BACKEND.lower()

    store: WebhookStore
    if backend == "sqlite":
        store = SQLiteWebhookStore(config.WEBHOOK_DB_PATH)
    elif backend == "memory":
        store = InMemoryWebhookStore()
    else:
        raise ValueError(f"Unknown WEBHOOK_STORAGE_BACKEND: {config.WEBHOOK_STORAGE_BACKEND}")

    queue: RetryQueue
    if config.WEBHOOK_DURABLE_RETRY_QUEUE:
        queue = SQLiteRetryQueue(config.WEBHOOK_DB_PATH)
    else:
        queue = InMemoryRetryQueue()

    manager = WebhookManager(store, settings=config, retry_queue=queue)
    if with_default_handlers:
        register_default_handlers(manager.handlers)

    logger.info(
        "webhook_manager_created",
        storage_backend=backend,
        durable_retry_queue=config.WEBHOOK_DURABLE_RETRY_QUEUE,
    )
    return manager


# Global webhook manager instance
_webhook_manager: WebhookManager | None = None


def get_webhook_manager() -> WebhookManager:
    """Get the global webhook manager instance.

    Returns:
        Singleton WebhookManager.
    """
    global _webhook_manager
    if _webhook_manager is None:
        _webhook_manager = create_webhook_manager()
    return _webhook_manager


def set_webhook_manager(manager: WebhookManager | None) -> None:
    """Set the global webhook manager instance.

    Useful for testing.

    Args:
        manager: WebhookManager instance, or None to reset.
    """
    global _webhook_manager
    _webhook_manager = manager
