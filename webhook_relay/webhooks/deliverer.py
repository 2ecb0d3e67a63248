"""Signed HTTP delivery of event envelopes to subscribers.

Handles building the wire envelope, signing the exact request body,
posting it with a hard timeout and classifying the result. Every attempt
lands in the delivery ledger before ``deliver`` returns.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from webhook_relay.errors import DeliveryError
from webhook_relay.webhooks.ledger import DeliveryLedger
from webhook_relay.webhooks.models import DeliveryOutcome, Webhook
from webhook_relay.webhooks.security import (
    SIGNATURE_HEADER,
    canonical_json,
    sign,
    signature_header_value,
)

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = "WebhookRelay-Webhook/1.0"
DEFAULT_TIMEOUT_SECONDS = 30.0


def build_envelope(
    webhook: Webhook,
    event_type: str,
    payload: Any,
    *,
    timestamp: datetime | None = None,
) -> dict[str, Any]:
    """Wrap an event payload in the outbound envelope.

    Args:
        webhook: Target webhook.
        event_type: Type of event.
        payload: Original event payload, any JSON value.
        timestamp: Envelope timestamp (defaults to now).

    Returns:
        Envelope dictionary ready for serialization.
    """
    return {
        "event_type": event_type,
        "timestamp": (timestamp or datetime.now(UTC)).isoformat(),
        "data": payload,
        "webhook_id": webhook.id,
    }


class Deliverer:
    """Performs signed webhook POSTs.

    Features:
    - Async HTTP delivery with a hard timeout
    - HMAC-SHA256 signature over the exact body sent
    - Semaphore bounding concurrent outbound requests
    - Ledger entry for every outcome
    """

    def __init__(
        self,
        ledger: DeliveryLedger,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        max_concurrent_deliveries: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the deliverer.

        Args:
            ledger: Ledger receiving one entry per attempt.
            timeout_seconds: HTTP request timeout in seconds.
            user_agent: User-Agent header value.
            max_concurrent_deliveries: Max concurrent delivery requests.
            clock: Source of envelope timestamps.
        """
        if max_concurrent_deliveries < 1:
            raise ValueError("max_concurrent_deliveries must be at least 1")

        self._ledger = ledger
        self._timeout = timeout_seconds
        self._user_agent = user_agent
        self._max_concurrent = max_concurrent_deliveries
        self._semaphore = asyncio.Semaphore(max_concurrent_deliveries)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logger.bind(component="webhook_deliverer")

    @property
    def max_concurrent_deliveries(self) -> int:
        """Upper bound on in-flight requests."""
        return self._max_concurrent

    async def deliver(
        self,
        webhook: Webhook,
        event_type: str,
        payload: Any,
        *,
        attempt: int = 1,
    ) -> DeliveryOutcome:
        """Deliver one event to one webhook.

        Args:
            webhook: Target webhook (must carry its real secret).
            event_type: Type of event.
            payload: Event payload.
            attempt: 1-based attempt number, recorded in the ledger.

        Returns:
            Classified outcome including the ledger record.

        Raises:
            PersistenceError: If the ledger entry cannot be written.
        """
        envelope = build_envelope(webhook, event_type, payload, timestamp=self._clock())
        body = canonical_json(envelope)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            SIGNATURE_HEADER: signature_header_value(sign(body, webhook.secret)),
        }

        self._logger.debug(
            "attempting_delivery",
            webhook_id=webhook.id,
            event_type=event_type,
            attempt=attempt,
            url=webhook.target_url,
        )

        started = time.monotonic()
        status_code = 0
        error: str | None = None

        try:
            async with self._semaphore:
                status_code = await self._post(webhook.target_url, body, headers)
        except DeliveryError as e:
            status_code = e.status_code
            error = e.message

        duration_ms = (time.monotonic() - started) * 1000
        success = error is None

        record = await self._ledger.record(
            webhook_id=webhook.id,
            event_type=event_type,
            success=success,
            http_status=status_code,
            error=error,
            attempt=attempt,
        )

        if success:
            self._logger.info(
                "delivery_success",
                webhook_id=webhook.id,
                event_type=event_type,
                status_code=status_code,
                attempt=attempt,
            )
        else:
            self._logger.warning(
                "delivery_failed",
                webhook_id=webhook.id,
                event_type=event_type,
                status_code=status_code,
                attempt=attempt,
                error=error,
            )

        return DeliveryOutcome(
            webhook_id=webhook.id,
            success=success,
            http_status=status_code,
            error=error,
            attempt=attempt,
            duration_ms=duration_ms,
            record=record,
        )

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> int:
        """Make a single HTTP request.

        Returns:
            Status code of a 2xx response.

        Raises:
            DeliveryError: On non-2xx, timeout or transport failure.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(
                f"Request timeout after {self._timeout}s",
                details={"url": url},
            ) from e
        except httpx.ConnectError as e:
            raise DeliveryError(
                f"Connection error: {e}",
                details={"url": url},
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(
                f"HTTP error: {e}",
                details={"url": url},
            ) from e

        if not response.is_success:
            raise DeliveryError(
                f"Webhook delivery failed: HTTP {response.status_code}",
                status_code=response.status_code,
                details={"url": url},
            )

        return response.status_code
