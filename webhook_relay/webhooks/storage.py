"""Repository interface over the webhook and delivery record store.

The store itself is an external collaborator. This module defines the
boundary (``WebhookStore``) plus two backends: an in-process dictionary
store used by default and in tests, and an aiosqlite-backed store for
durable deployments.
"""

import json
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from webhook_relay.errors import PersistenceError, RetryConfig, with_retry
from webhook_relay.webhooks.models import DeliveryRecord, Webhook

logger = structlog.get_logger(__name__)

DEFAULT_DB_PATH = Path("data/webhooks.db")

# Lock contention on SQLite surfaces as OperationalError and is worth retrying
SQLITE_RETRY = RetryConfig(
    max_attempts=3,
    retry_exceptions=(aiosqlite.OperationalError,),
)


class WebhookStore(ABC):
    """Abstract repository for webhooks and delivery records."""

    @abstractmethod
    async def insert_webhook(self, webhook: Webhook) -> None:
        """Persist a new webhook."""

    @abstractmethod
    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        """Fetch a webhook by ID."""

    @abstractmethod
    async def list_webhooks(
        self,
        *,
        owner_id: str | None = None,
        event_type: str | None = None,
        active_only: bool = False,
    ) -> list[Webhook]:
        """List webhooks matching the filters."""

    @abstractmethod
    async def find_active_webhooks(self, event_type: str) -> list[Webhook]:
        """List active webhooks subscribed to an event type."""

    @abstractmethod
    async def set_webhook_active(
        self,
        webhook_id: str,
        is_active: bool,
        updated_at: datetime,
    ) -> Webhook | None:
        """Update the active flag, returning the updated webhook."""

    @abstractmethod
    async def increment_retry_count(self, webhook_id: str) -> None:
        """Bump the informational retry counter."""

    @abstractmethod
    async def insert_delivery(self, record: DeliveryRecord) -> None:
        """Append a delivery record."""

    @abstractmethod
    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        """List a webhook's delivery records, newest first."""

    @abstractmethod
    async def list_deliveries_since(
        self,
        since: datetime,
        *,
        webhook_ids: Sequence[str] | None = None,
    ) -> list[DeliveryRecord]:
        """List delivery records newer than a cutoff."""

    @abstractmethod
    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        """Delete delivery records older than a cutoff (retention)."""

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


# ============================================================================
# In-memory backend
# ============================================================================


class InMemoryWebhookStore(WebhookStore):
    """Dictionary-backed store.

    Returns copies so callers can never mutate stored state in place.
    """

    def __init__(self) -> None:
        self._webhooks: dict[str, Webhook] = {}
        self._deliveries: list[DeliveryRecord] = []

    async def insert_webhook(self, webhook: Webhook) -> None:
        if webhook.id in self._webhooks:
            raise PersistenceError(
                f"Webhook {webhook.id} already exists",
                operation="insert_webhook",
                recoverable=False,
            )
        self._webhooks[webhook.id] = webhook.model_copy(deep=True)

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        return webhook.model_copy(deep=True) if webhook else None

    async def list_webhooks(
        self,
        *,
        owner_id: str | None = None,
        event_type: str | None = None,
        active_only: bool = False,
    ) -> list[Webhook]:
        webhooks = list(self._webhooks.values())

        if owner_id is not None:
            webhooks = [w for w in webhooks if w.owner_id == owner_id]
        if event_type is not None:
            webhooks = [w for w in webhooks if w.event_type == event_type]
        if active_only:
            webhooks = [w for w in webhooks if w.is_active]

        return [w.model_copy(deep=True) for w in webhooks]

    async def find_active_webhooks(self, event_type: str) -> list[Webhook]:
        return await self.list_webhooks(event_type=event_type, active_only=True)

    async def set_webhook_active(
        self,
        webhook_id: str,
        is_active: bool,
        updated_at: datetime,
    ) -> Webhook | None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is None:
            return None
        webhook.is_active = is_active
        webhook.updated_at = updated_at
        return webhook.model_copy(deep=True)

    async def increment_retry_count(self, webhook_id: str) -> None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is not None:
            webhook.retry_count += 1

    async def insert_delivery(self, record: DeliveryRecord) -> None:
        self._deliveries.append(record)

    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        matching = [d for d in reversed(self._deliveries) if d.webhook_id == webhook_id]
        return matching[:limit]

    async def list_deliveries_since(
        self,
        since: datetime,
        *,
        webhook_ids: Sequence[str] | None = None,
    ) -> list[DeliveryRecord]:
        records = [d for d in self._deliveries if d.delivered_at >= since]
        if webhook_ids is not None:
            wanted = set(webhook_ids)
            records = [d for d in records if d.webhook_id in wanted]
        return records

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        kept = [d for d in self._deliveries if d.delivered_at >= cutoff]
        removed = len(self._deliveries) - len(kept)
        self._deliveries = kept
        return removed


# ============================================================================
# SQLite backend
# ============================================================================


class SQLiteBase:
    """Shared connection handling for aiosqlite-backed components.

    Subclasses list their DDL in ``_schema``. Every operation opens its own
    connection; transient lock errors are retried with tenacity and any
    remaining SQLite failure is raised as PersistenceError.
    """

    _schema: tuple[str, ...] = ()

    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self._initialized = False

    async def _ensure_initialized(self) -> None:
        """Ensure database tables exist."""
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with aiosqlite.connect(self.db_path) as db:
            for statement in self._schema:
                await db.execute(statement)
            await db.commit()

        self._initialized = True

    @with_retry(SQLITE_RETRY)
    async def _execute_write(self, sql: str, params: Sequence[Any]) -> int:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            return cursor.rowcount

    @with_retry(SQLITE_RETRY)
    async def _execute_fetch(self, sql: str, params: Sequence[Any]) -> list[dict[str, Any]]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(sql, params) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _write(self, operation: str, sql: str, params: Sequence[Any] = ()) -> int:
        try:
            return await self._execute_write(sql, params)
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(
                f"Store write failed during {operation}: {e}",
                operation=operation,
            ) from e

    async def _fetch(
        self,
        operation: str,
        sql: str,
        params: Sequence[Any] = (),
    ) -> list[dict[str, Any]]:
        try:
            return await self._execute_fetch(sql, params)
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(
                f"Store read failed during {operation}: {e}",
                operation=operation,
            ) from e


class SQLiteWebhookStore(SQLiteBase, WebhookStore):
    """SQLite-based storage for webhooks and the delivery ledger."""

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS webhooks (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            integration_type TEXT NOT NULL,
            event_type TEXT NOT NULL,
            target_url TEXT NOT NULL,
            secret TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            retry_count INTEGER NOT NULL DEFAULT 0,
            options_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS webhook_deliveries (
            id TEXT PRIMARY KEY,
            webhook_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            success INTEGER NOT NULL,
            http_status INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            attempt INTEGER NOT NULL DEFAULT 1,
            delivered_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_webhooks_event_active
        ON webhooks(event_type, is_active)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_deliveries_webhook
        ON webhook_deliveries(webhook_id, delivered_at)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_deliveries_delivered_at
        ON webhook_deliveries(delivered_at)
        """,
    )

    def __init__(self, db_path: Path | str | None = None) -> None:
        super().__init__(db_path)
        self._logger = logger.bind(component="webhook_store")

    async def insert_webhook(self, webhook: Webhook) -> None:
        await self._write(
            "insert_webhook",
            """
            INSERT INTO webhooks (
                id, owner_id, integration_type, event_type, target_url, secret,
                is_active, retry_count, options_json, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                webhook.id,
                webhook.owner_id,
                webhook.integration_type,
                webhook.event_type,
                webhook.target_url,
                webhook.secret,
                int(webhook.is_active),
                webhook.retry_count,
                json.dumps(webhook.options, default=str),
                webhook.created_at.isoformat(),
                webhook.updated_at.isoformat() if webhook.updated_at else None,
            ),
        )
        self._logger.debug("webhook_row_inserted", webhook_id=webhook.id)

    async def get_webhook(self, webhook_id: str) -> Webhook | None:
        rows = await self._fetch(
            "get_webhook",
            "SELECT * FROM webhooks WHERE id = ?",
            (webhook_id,),
        )
        return self._row_to_webhook(rows[0]) if rows else None

    async def list_webhooks(
        self,
        *,
        owner_id: str | None = None,
        event_type: str | None = None,
        active_only: bool = False,
    ) -> list[Webhook]:
        conditions = []
        params: list[Any] = []

        if owner_id is not None:
            conditions.append("owner_id = ?")
            params.append(owner_id)
        if event_type is not None:
            conditions.append("event_type = ?")
            params.append(event_type)
        if active_only:
            conditions.append("is_active = 1")

        query = "SELECT * FROM webhooks"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at"

        rows = await self._fetch("list_webhooks", query, params)
        return [self._row_to_webhook(row) for row in rows]

    async def find_active_webhooks(self, event_type: str) -> list[Webhook]:
        rows = await self._fetch(
            "find_active_webhooks",
            "SELECT * FROM webhooks WHERE event_type = ? AND is_active = 1 ORDER BY created_at",
            (event_type,),
        )
        return [self._row_to_webhook(row) for row in rows]

    async def set_webhook_active(
        self,
        webhook_id: str,
        is_active: bool,
        updated_at: datetime,
    ) -> Webhook | None:
        changed = await self._write(
            "set_webhook_active",
            "UPDATE webhooks SET is_active = ?, updated_at = ? WHERE id = ?",
            (int(is_active), updated_at.isoformat(), webhook_id),
        )
        if changed == 0:
            return None
        return await self.get_webhook(webhook_id)

    async def increment_retry_count(self, webhook_id: str) -> None:
        await self._write(
            "increment_retry_count",
            "UPDATE webhooks SET retry_count = retry_count + 1 WHERE id = ?",
            (webhook_id,),
        )

    async def insert_delivery(self, record: DeliveryRecord) -> None:
        await self._write(
            "insert_delivery",
            """
            INSERT INTO webhook_deliveries (
                id, webhook_id, event_type, success, http_status, error,
                attempt, delivered_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.webhook_id,
                record.event_type,
                int(record.success),
                record.http_status,
                record.error,
                record.attempt,
                record.delivered_at.isoformat(),
            ),
        )

    async def list_deliveries(
        self,
        webhook_id: str,
        *,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        rows = await self._fetch(
            "list_deliveries",
            """
            SELECT * FROM webhook_deliveries
            WHERE webhook_id = ?
            ORDER BY delivered_at DESC, rowid DESC
            LIMIT ?
            """,
            (webhook_id, limit),
        )
        return [self._row_to_delivery(row) for row in rows]

    async def list_deliveries_since(
        self,
        since: datetime,
        *,
        webhook_ids: Sequence[str] | None = None,
    ) -> list[DeliveryRecord]:
        query = "SELECT * FROM webhook_deliveries WHERE delivered_at >= ?"
        params: list[Any] = [since.isoformat()]

        if webhook_ids is not None:
            if not webhook_ids:
                return []
            placeholders = ", ".join("?" for _ in webhook_ids)
            query += f" AND webhook_id IN ({placeholders})"
            params.extend(webhook_ids)

        rows = await self._fetch("list_deliveries_since", query, params)
        return [self._row_to_delivery(row) for row in rows]

    async def delete_deliveries_before(self, cutoff: datetime) -> int:
        return await self._write(
            "delete_deliveries_before",
            "DELETE FROM webhook_deliveries WHERE delivered_at < ?",
            (cutoff.isoformat(),),
        )

    def _row_to_webhook(self, row: dict[str, Any]) -> Webhook:
        return Webhook(
            id=row["id"],
            owner_id=row["owner_id"],
            integration_type=row["integration_type"],
            event_type=row["event_type"],
            target_url=row["target_url"],
            secret=row["secret"],
            is_active=bool(row["is_active"]),
            retry_count=row["retry_count"],
            options=json.loads(row["options_json"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=(
                datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None
            ),
        )

    def _row_to_delivery(self, row: dict[str, Any]) -> DeliveryRecord:
        return DeliveryRecord(
            id=row["id"],
            webhook_id=row["webhook_id"],
            event_type=row["event_type"],
            success=bool(row["success"]),
            http_status=row["http_status"],
            error=row["error"],
            attempt=row["attempt"],
            delivered_at=datetime.fromisoformat(row["delivered_at"]),
        )
