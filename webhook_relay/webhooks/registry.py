"""Webhook registration and lifecycle management.

Owns the Active -> Inactive lifecycle of subscriptions. Unregistering is
a soft delete: the record stays in the store for audit, but is excluded
from routing.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import AnyHttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from webhook_relay.errors import ValidationError, WebhookNotFoundError
from webhook_relay.webhooks.models import Webhook
from webhook_relay.webhooks.security import generate_secret
from webhook_relay.webhooks.storage import WebhookStore

logger = structlog.get_logger(__name__)

# Called with the event type whose subscriber set changed
MutationListener = Callable[[str], Awaitable[None] | None]

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


def validate_target_url(target_url: str) -> str:
    """Validate that a target URL is an absolute http(s) URL.

    Args:
        target_url: URL supplied at registration.

    Returns:
        The URL, stripped of surrounding whitespace.

    Raises:
        ValidationError: If the URL is malformed or relative.
    """
    if not isinstance(target_url, str) or not target_url.strip():
        raise ValidationError("target_url is required", field="target_url")

    candidate = target_url.strip()
    try:
        parsed = _URL_ADAPTER.validate_python(candidate)
    except PydanticValidationError as e:
        raise ValidationError(
            f"target_url is not a valid absolute URL: {candidate}",
            field="target_url",
        ) from e

    if not parsed.host:
        raise ValidationError("target_url must include a host", field="target_url")

    return candidate


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", field=field)
    return value.strip()


class WebhookRegistry:
    """CRUD over webhook subscriptions.

    Mutation listeners are notified after every successful register or
    unregister so that routing caches can drop stale subscriber lists.
    """

    def __init__(self, store: WebhookStore) -> None:
        """Initialize the registry.

        Args:
            store: Repository holding the webhooks collection.
        """
        self._store = store
        self._listeners: list[MutationListener] = []
        self._logger = logger.bind(component="webhook_registry")

    @property
    def store(self) -> WebhookStore:
        """The backing repository."""
        return self._store

    def add_listener(self, listener: MutationListener) -> None:
        """Subscribe to subscriber-set changes.

        Args:
            listener: Sync or async callable receiving the event type.
        """
        self._listeners.append(listener)

    async def _notify(self, event_type: str) -> None:
        for listener in self._listeners:
            result = listener(event_type)
            if asyncio.iscoroutine(result):
                await result

    async def register(
        self,
        owner_id: str,
        integration_type: str,
        event_type: str,
        target_url: str,
        options: dict[str, Any] | None = None,
    ) -> Webhook:
        """Register a new webhook.

        Args:
            owner_id: Owner of the subscription.
            integration_type: Integration tag, e.g. "salesforce".
            event_type: Event type to subscribe to (exact match).
            target_url: Absolute http(s) endpoint URL.
            options: Extra options; ``secret`` overrides the generated secret.

        Returns:
            Created webhook, including its full secret.

        Raises:
            ValidationError: If any input is malformed.
            PersistenceError: If the store write fails.
        """
        owner = _require_text(owner_id, "owner_id")
        integration = _require_text(integration_type, "integration_type")
        event = _require_text(event_type, "event_type")
        url = validate_target_url(target_url)

        extra = dict(options or {})
        secret = extra.pop("secret", None)
        if secret is not None and (not isinstance(secret, str) or not secret):
            raise ValidationError("secret must be a non-empty string", field="secret")

        webhook = Webhook(
            owner_id=owner,
            integration_type=integration,
            event_type=event,
            target_url=url,
            secret=secret or generate_secret(),
            options=extra,
        )

        await self._store.insert_webhook(webhook)
        await self._notify(webhook.event_type)

        self._logger.info(
            "webhook_registered",
            webhook_id=webhook.id,
            owner_id=owner,
            integration_type=integration,
            event_type=event,
            target_url=url,
        )

        return webhook

    async def unregister(self, webhook_id: str) -> Webhook:
        """Deactivate a webhook.

        Idempotent: unregistering an inactive webhook succeeds without
        touching the store.

        Args:
            webhook_id: Webhook identifier.

        Returns:
            The (sanitized) inactive webhook.

        Raises:
            WebhookNotFoundError: If no such webhook was ever registered.
            PersistenceError: If the store fails.
        """
        webhook = await self._store.get_webhook(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)

        if not webhook.is_active:
            self._logger.debug("webhook_already_inactive", webhook_id=webhook_id)
            return webhook.sanitized()

        updated = await self._store.set_webhook_active(
            webhook_id, False, datetime.now(UTC)
        )
        if updated is None:
            raise WebhookNotFoundError(webhook_id)

        await self._notify(updated.event_type)

        self._logger.info(
            "webhook_unregistered",
            webhook_id=webhook_id,
            event_type=updated.event_type,
        )
        return updated.sanitized()

    async def get(self, webhook_id: str, *, include_secret: bool = False) -> Webhook | None:
        """Get a webhook by ID.

        Args:
            webhook_id: Webhook identifier.
            include_secret: Return the unmasked secret.

        Returns:
            Webhook if found, None otherwise.
        """
        webhook = await self._store.get_webhook(webhook_id)
        if webhook is None or include_secret:
            return webhook
        return webhook.sanitized()

    async def list(
        self,
        *,
        owner_id: str | None = None,
        event_type: str | None = None,
        active_only: bool = False,
        include_secret: bool = False,
    ) -> list[Webhook]:
        """List registered webhooks.

        Args:
            owner_id: Filter by owner.
            event_type: Filter by event type.
            active_only: Only return active webhooks.
            include_secret: Return unmasked secrets.

        Returns:
            List of matching webhooks.
        """
        webhooks = await self._store.list_webhooks(
            owner_id=owner_id,
            event_type=event_type,
            active_only=active_only,
        )
        if include_secret:
            return webhooks
        return [w.sanitized() for w in webhooks]

    async def find_active(self, event_type: str) -> list[Webhook]:
        """Query the store for active subscribers of an event type."""
        return await self._store.find_active_webhooks(event_type)

    async def record_retry(self, webhook_id: str) -> None:
        """Increment a webhook's informational retry counter."""
        await self._store.increment_retry_count(webhook_id)
