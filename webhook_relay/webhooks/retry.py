"""Exponential-backoff retry scheduling for failed deliveries.

State machine for a queued delivery:
    Pending --success--> Delivered (removed)
    Pending --failure, attempts remain--> Pending (next delay)
    Pending --failure, ceiling reached--> Failed (removed, ledger marker)

``max_retries`` is the total number of attempts a delivery gets, the
initial live attempt included. After failed attempt n the next attempt is
scheduled ``base_delay * 2 ** (n - 1)`` seconds later.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from webhook_relay.errors import RetryExhaustedError, WebhookRelayError
from webhook_relay.webhooks.deliverer import Deliverer
from webhook_relay.webhooks.ledger import DeliveryLedger
from webhook_relay.webhooks.models import RetryQueueItem, Webhook
from webhook_relay.webhooks.queue import InMemoryRetryQueue, RetryQueue

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 5.0
DEFAULT_INTERVAL_SECONDS = 60.0

# Returns the current webhook record, or None if it no longer exists
WebhookLookup = Callable[[str], Awaitable[Webhook | None]]


def backoff_delay(failed_attempts: int, base_delay: float = DEFAULT_BASE_DELAY_SECONDS) -> float:
    """Delay before the attempt following ``failed_attempts`` failures.

    Args:
        failed_attempts: Attempts made so far (1-based).
        base_delay: Delay after the first failure, in seconds.

    Returns:
        Delay in seconds: 5, 10, 20, ... for the default base delay.
    """
    if failed_attempts < 1:
        raise ValueError("failed_attempts must be at least 1")
    return base_delay * 2 ** (failed_attempts - 1)


class RetryScheduler:
    """Re-dispatches failed deliveries until success or the retry ceiling.

    A background ticker calls ``process_due`` once per interval. Due items
    are claimed from the queue before any network call, so overlapping
    scans and live enqueues never send the same item twice, and attempts
    for one item stay strictly sequential.
    """

    def __init__(
        self,
        deliverer: Deliverer,
        ledger: DeliveryLedger,
        *,
        queue: RetryQueue | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        webhook_lookup: WebhookLookup | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            deliverer: Performs the re-delivery attempts.
            ledger: Receives the terminal failure marker.
            queue: Queue backend (in-memory if not provided).
            max_retries: Total attempts per delivery.
            base_delay_seconds: Delay after the first failure.
            interval_seconds: Ticker period.
            webhook_lookup: Used to skip webhooks deactivated since queuing.
            clock: Source of "now" (UTC).
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self._deliverer = deliverer
        self._ledger = ledger
        self._queue = queue or InMemoryRetryQueue()
        self._max_retries = max_retries
        self._base_delay = base_delay_seconds
        self._interval = interval_seconds
        self._webhook_lookup = webhook_lookup
        self._clock = clock or (lambda: datetime.now(UTC))
        self._ticker: asyncio.Task[None] | None = None
        self._logger = logger.bind(component="retry_scheduler")

    @property
    def max_retries(self) -> int:
        """Total attempts per delivery."""
        return self._max_retries

    @property
    def queue(self) -> RetryQueue:
        """The queue backend."""
        return self._queue

    @property
    def is_running(self) -> bool:
        """Whether the background ticker is active."""
        return self._ticker is not None and not self._ticker.done()

    def delay_for(self, failed_attempts: int) -> float:
        """Backoff delay after the given number of failed attempts."""
        return backoff_delay(failed_attempts, self._base_delay)

    async def schedule_retry(
        self,
        webhook: Webhook,
        event_type: str,
        payload: Any,
        *,
        failed_attempts: int = 1,
        last_status: int = 0,
        last_error: str | None = None,
    ) -> RetryQueueItem | None:
        """Queue a failed delivery, or give up if the ceiling is reached.

        Args:
            webhook: Webhook the delivery failed for.
            event_type: Type of event.
            payload: Original event payload.
            failed_attempts: Attempts made so far.
            last_status: HTTP status of the last attempt.
            last_error: Error of the last attempt.

        Returns:
            The queued item, or None when the delivery was abandoned.
        """
        if failed_attempts >= self._max_retries:
            await self._give_up(
                webhook.id,
                event_type,
                attempts=failed_attempts,
                last_status=last_status,
                last_error=last_error,
            )
            return None

        delay = self.delay_for(failed_attempts)
        item = RetryQueueItem(
            webhook=webhook.model_copy(deep=True),
            event_type=event_type,
            payload=payload,
            retry_count=failed_attempts,
            next_retry_at=self._clock() + timedelta(seconds=delay),
        )
        await self._queue.push(item)

        self._logger.info(
            "webhook_added_to_retry_queue",
            item_id=item.id,
            webhook_id=webhook.id,
            event_type=event_type,
            retry_count=item.retry_count,
            delay_seconds=delay,
            next_retry_at=item.next_retry_at.isoformat(),
        )
        return item

    async def process_due(self, now: datetime | None = None) -> int:
        """Re-attempt every item whose retry time has passed.

        Args:
            now: Reference time (defaults to the scheduler clock).

        Returns:
            Number of items processed.
        """
        current = now or self._clock()
        due = await self._queue.claim_due(current)
        if not due:
            return 0

        self._logger.info("retrying_due_deliveries", count=len(due))

        await asyncio.gather(*(self._retry(item, current) for item in due))
        return len(due)

    async def _is_still_active(self, webhook_id: str) -> bool:
        if self._webhook_lookup is None:
            return True
        current = await self._webhook_lookup(webhook_id)
        return current is not None and current.is_active

    async def _retry(self, item: RetryQueueItem, now: datetime) -> None:
        attempt = item.retry_count + 1
        try:
            if not await self._is_still_active(item.webhook.id):
                await self._queue.complete(item.id)
                self._logger.info(
                    "retry_dropped_inactive_webhook",
                    item_id=item.id,
                    webhook_id=item.webhook.id,
                )
                return

            outcome = await self._deliverer.deliver(
                item.webhook,
                item.event_type,
                item.payload,
                attempt=attempt,
            )
        except WebhookRelayError as e:
            # Attempt could not be recorded; release the claim unchanged
            await self._queue.reschedule(item)
            self._logger.error(
                "retry_attempt_errored",
                item_id=item.id,
                webhook_id=item.webhook.id,
                **e.to_dict(),
            )
            return

        if outcome.success:
            await self._queue.complete(item.id)
            self._logger.info(
                "retry_delivered",
                item_id=item.id,
                webhook_id=item.webhook.id,
                attempt=attempt,
            )
            return

        if attempt >= self._max_retries:
            await self._queue.complete(item.id)
            await self._give_up(
                item.webhook.id,
                item.event_type,
                attempts=attempt,
                last_status=outcome.http_status,
                last_error=outcome.error,
            )
            return

        delay = self.delay_for(attempt)
        rescheduled = item.model_copy(
            update={
                "retry_count": attempt,
                "next_retry_at": now + timedelta(seconds=delay),
            }
        )
        await self._queue.reschedule(rescheduled)
        self._logger.info(
            "retry_rescheduled",
            item_id=item.id,
            webhook_id=item.webhook.id,
            retry_count=attempt,
            delay_seconds=delay,
        )

    async def _give_up(
        self,
        webhook_id: str,
        event_type: str,
        *,
        attempts: int,
        last_status: int,
        last_error: str | None,
    ) -> None:
        exhausted = RetryExhaustedError(
            "Webhook retry limit exceeded",
            webhook_id=webhook_id,
            event_type=event_type,
            attempts=attempts,
            last_status=last_status,
            last_error=last_error,
        )
        await self._ledger.record_terminal_failure(
            webhook_id=webhook_id,
            event_type=event_type,
            attempts=attempts,
            http_status=last_status,
        )
        self._logger.error("webhook_retry_ceiling_exceeded", **exhausted.to_dict())

    async def pending(self) -> list[RetryQueueItem]:
        """Snapshot of queued items."""
        return await self._queue.items()

    async def size(self) -> int:
        """Number of queued items."""
        return await self._queue.size()

    # ------------------------------------------------------------------
    # Background ticker
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background ticker (no-op if already running)."""
        if self.is_running:
            return

        released = await self._queue.recover()
        self._ticker = asyncio.create_task(self._run(), name="webhook-retry-ticker")
        self._logger.info(
            "retry_processor_started",
            interval_seconds=self._interval,
            released_claims=released,
        )

    async def stop(self) -> None:
        """Stop the background ticker."""
        if self._ticker is None:
            return

        self._ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._ticker
        self._ticker = None
        self._logger.info("retry_processor_stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.process_due()
            except WebhookRelayError as e:
                self._logger.error("retry_tick_failed", **e.to_dict())
