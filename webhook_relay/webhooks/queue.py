"""Retry queue backends.

Both backends use claim semantics: ``claim_due`` hands out due items and
marks them in flight, so a concurrent scan cannot pick the same item up
again. A claimed item leaves the in-flight state through ``complete``
(removed) or ``reschedule`` (back to pending with new timing).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from webhook_relay.errors import PersistenceError, with_retry
from webhook_relay.webhooks.models import RetryQueueItem, Webhook
from webhook_relay.webhooks.storage import SQLITE_RETRY, SQLiteBase

logger = structlog.get_logger(__name__)


class RetryQueue(ABC):
    """Holds failed deliveries until their next attempt is due."""

    @abstractmethod
    async def push(self, item: RetryQueueItem) -> None:
        """Add a pending item."""

    @abstractmethod
    async def claim_due(self, now: datetime) -> list[RetryQueueItem]:
        """Claim every pending item whose next_retry_at has passed."""

    @abstractmethod
    async def reschedule(self, item: RetryQueueItem) -> None:
        """Store new timing for a claimed item and release the claim."""

    @abstractmethod
    async def complete(self, item_id: str) -> None:
        """Remove an item for good."""

    @abstractmethod
    async def items(self) -> list[RetryQueueItem]:
        """Snapshot of every item, pending or in flight."""

    async def size(self) -> int:
        """Number of items in the queue."""
        return len(await self.items())

    async def recover(self) -> int:
        """Release claims left behind by a previous run.

        Returns:
            Number of items released.
        """
        return 0


class InMemoryRetryQueue(RetryQueue):
    """Process-local queue; pending retries are lost on restart."""

    def __init__(self) -> None:
        self._items: dict[str, RetryQueueItem] = {}
        self._claimed: set[str] = set()
        self._lock = asyncio.Lock()

    async def push(self, item: RetryQueueItem) -> None:
        async with self._lock:
            self._items[item.id] = item

    async def claim_due(self, now: datetime) -> list[RetryQueueItem]:
        async with self._lock:
            due = [
                item
                for item_id, item in self._items.items()
                if item_id not in self._claimed and item.is_due(now)
            ]
            due.sort(key=lambda i: i.next_retry_at)
            self._claimed.update(item.id for item in due)
            return [item.model_copy() for item in due]

    async def reschedule(self, item: RetryQueueItem) -> None:
        async with self._lock:
            if item.id in self._items:
                self._items[item.id] = item
            self._claimed.discard(item.id)

    async def complete(self, item_id: str) -> None:
        async with self._lock:
            self._items.pop(item_id, None)
            self._claimed.discard(item_id)

    async def items(self) -> list[RetryQueueItem]:
        async with self._lock:
            return list(self._items.values())


class SQLiteRetryQueue(SQLiteBase, RetryQueue):
    """Durable queue stored in the webhook_retry_queue table.

    Pending retries survive a process restart. Claims are an in_flight
    flag set inside an IMMEDIATE transaction; ``recover`` clears flags left
    by a crashed process so those items are attempted again.
    """

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS webhook_retry_queue (
            id TEXT PRIMARY KEY,
            webhook_json TEXT NOT NULL,
            event_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            retry_count INTEGER NOT NULL,
            next_retry_at TEXT NOT NULL,
            in_flight INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_retry_queue_next_retry_at
        ON webhook_retry_queue(in_flight, next_retry_at)
        """,
    )

    def __init__(self, db_path: Path | str | None = None) -> None:
        super().__init__(db_path)
        self._logger = logger.bind(component="sqlite_retry_queue")

    async def push(self, item: RetryQueueItem) -> None:
        await self._write(
            "retry_queue_push",
            """
            INSERT OR REPLACE INTO webhook_retry_queue (
                id, webhook_json, event_type, payload_json, retry_count,
                next_retry_at, in_flight, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                item.id,
                item.webhook.model_dump_json(),
                item.event_type,
                json.dumps(item.payload, default=str),
                item.retry_count,
                item.next_retry_at.isoformat(),
                item.created_at.isoformat(),
            ),
        )

    @with_retry(SQLITE_RETRY)
    async def _claim(self, now: datetime) -> list[dict[str, Any]]:
        await self._ensure_initialized()
        async with aiosqlite.connect(self.db_path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    """
                    SELECT * FROM webhook_retry_queue
                    WHERE in_flight = 0 AND next_retry_at <= ?
                    ORDER BY next_retry_at
                    """,
                    (now.isoformat(),),
                ) as cursor:
                    rows = [dict(row) for row in await cursor.fetchall()]

                if rows:
                    placeholders = ", ".join("?" for _ in rows)
                    await db.execute(
                        f"UPDATE webhook_retry_queue SET in_flight = 1 WHERE id IN ({placeholders})",
                        [row["id"] for row in rows],
                    )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return rows

    async def claim_due(self, now: datetime) -> list[RetryQueueItem]:
        try:
            rows = await self._claim(now)
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(
                f"Store write failed during retry_queue_claim: {e}",
                operation="retry_queue_claim",
            ) from e
        return [self._row_to_item(row) for row in rows]

    async def reschedule(self, item: RetryQueueItem) -> None:
        await self._write(
            "retry_queue_reschedule",
            """
            UPDATE webhook_retry_queue
            SET retry_count = ?, next_retry_at = ?, in_flight = 0
            WHERE id = ?
            """,
            (item.retry_count, item.next_retry_at.isoformat(), item.id),
        )

    async def complete(self, item_id: str) -> None:
        await self._write(
            "retry_queue_complete",
            "DELETE FROM webhook_retry_queue WHERE id = ?",
            (item_id,),
        )

    async def items(self) -> list[RetryQueueItem]:
        rows = await self._fetch(
            "retry_queue_items",
            "SELECT * FROM webhook_retry_queue ORDER BY next_retry_at",
        )
        return [self._row_to_item(row) for row in rows]

    async def recover(self) -> int:
        released = await self._write(
            "retry_queue_recover",
            "UPDATE webhook_retry_queue SET in_flight = 0 WHERE in_flight = 1",
        )
        if released:
            self._logger.warning("retry_claims_released", count=released)
        return released

    def _row_to_item(self, row: dict[str, Any]) -> RetryQueueItem:
        return RetryQueueItem(
            id=row["id"],
            webhook=Webhook.model_validate_json(row["webhook_json"]),
            event_type=row["event_type"],
            payload=json.loads(row["payload_json"]),
            retry_count=row["retry_count"],
            next_retry_at=datetime.fromisoformat(row["next_retry_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
