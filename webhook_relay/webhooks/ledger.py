"""Append-only audit trail of delivery attempts."""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import structlog

from webhook_relay.webhooks.models import RETRY_CEILING_EXCEEDED, DeliveryRecord
from webhook_relay.webhooks.storage import WebhookStore

logger = structlog.get_logger(__name__)


class DeliveryLedger:
    """Records every delivery attempt and answers audit queries.

    Entries are never updated once written; a failed delivery that is later
    retried produces one entry per attempt, and an abandoned delivery gets a
    final entry carrying the ``retry ceiling exceeded`` marker.
    """

    def __init__(self, store: WebhookStore) -> None:
        """Initialize the ledger.

        Args:
            store: Repository holding the webhook_deliveries collection.
        """
        self._store = store
        self._logger = logger.bind(component="delivery_ledger")

    async def record(
        self,
        *,
        webhook_id: str,
        event_type: str,
        success: bool,
        http_status: int = 0,
        error: str | None = None,
        attempt: int = 1,
    ) -> DeliveryRecord:
        """Append a delivery attempt.

        Args:
            webhook_id: Target webhook.
            event_type: Event that was delivered.
            success: Whether the subscriber accepted the delivery.
            http_status: Response status, 0 if no response arrived.
            error: Failure description.
            attempt: 1-based attempt number.

        Returns:
            The stored record.

        Raises:
            PersistenceError: If the store write fails.
        """
        entry = DeliveryRecord(
            webhook_id=webhook_id,
            event_type=event_type,
            success=success,
            http_status=http_status,
            error=error,
            attempt=attempt,
        )
        await self._store.insert_delivery(entry)

        self._logger.debug(
            "delivery_recorded",
            delivery_id=entry.id,
            webhook_id=webhook_id,
            success=success,
            http_status=http_status,
            attempt=attempt,
        )
        return entry

    async def record_terminal_failure(
        self,
        *,
        webhook_id: str,
        event_type: str,
        attempts: int,
        http_status: int = 0,
    ) -> DeliveryRecord:
        """Append the marker entry for a delivery that will not be retried."""
        return await self.record(
            webhook_id=webhook_id,
            event_type=event_type,
            success=False,
            http_status=http_status,
            error=RETRY_CEILING_EXCEEDED,
            attempt=attempts,
        )

    async def history(self, webhook_id: str, *, limit: int = 100) -> list[DeliveryRecord]:
        """Get a webhook's delivery records, newest first."""
        return await self._store.list_deliveries(webhook_id, limit=limit)

    async def since(
        self,
        since: datetime,
        *,
        webhook_ids: Sequence[str] | None = None,
    ) -> list[DeliveryRecord]:
        """Get delivery records newer than a cutoff."""
        return await self._store.list_deliveries_since(since, webhook_ids=webhook_ids)

    async def purge_older_than(self, days: int) -> int:
        """Delete records older than the given number of days.

        Returns:
            Number of records removed.
        """
        cutoff = datetime.now(UTC) - timedelta(days=days)
        removed = await self._store.delete_deliveries_before(cutoff)

        self._logger.info(
            "delivery_logs_purged",
            cutoff=cutoff.isoformat(),
            days_old=days,
            removed=removed,
        )
        return removed
