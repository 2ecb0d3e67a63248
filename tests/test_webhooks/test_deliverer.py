"""Tests for signed webhook delivery."""

import asyncio
import json
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from webhook_relay.errors import PersistenceError
from webhook_relay.webhooks.deliverer import DEFAULT_USER_AGENT, Deliverer, build_envelope
from webhook_relay.webhooks.ledger import DeliveryLedger
from webhook_relay.webhooks.models import Webhook
from webhook_relay.webhooks.security import SIGNATURE_HEADER, verify
from webhook_relay.webhooks.storage import InMemoryWebhookStore

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def store():
    """Create an in-memory store."""
    return InMemoryWebhookStore()


@pytest.fixture
def ledger(store):
    """Create a ledger over the store."""
    return DeliveryLedger(store)


@pytest.fixture
def deliverer(ledger):
    """Create a deliverer with a fixed clock."""
    return Deliverer(
        ledger,
        timeout_seconds=5.0,
        clock=lambda: datetime(2024, 1, 1, tzinfo=UTC),
    )


@pytest.fixture
def webhook():
    """Create a sample webhook."""
    return Webhook(
        owner_id="u1",
        integration_type="crm",
        event_type="contact.created",
        target_url="https://example.com/hook",
        secret="s3cr3t",
    )


def _mock_post(mock_client, *, status_code=200, side_effect=None):
    """Wire a response (or error) into a patched httpx.AsyncClient."""
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.is_success = 200 <= status_code < 300
    post = AsyncMock(return_value=mock_response, side_effect=side_effect)
    mock_client.return_value.__aenter__.return_value.post = post
    return post


# ============================================================================
# Envelope Tests
# ============================================================================


class TestBuildEnvelope:
    """Tests for the outbound envelope."""

    def test_envelope_fields(self, webhook):
        """Test that the envelope wraps the payload with metadata."""
        ts = datetime(2024, 1, 1, tzinfo=UTC)
        envelope = build_envelope(webhook, "contact.created", {"id": 1}, timestamp=ts)

        assert envelope == {
            "event_type": "contact.created",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "data": {"id": 1},
            "webhook_id": webhook.id,
        }

    def test_envelope_non_object_payload(self, webhook):
        """Test that any JSON value can be carried as data."""
        envelope = build_envelope(webhook, "ping", [1, 2, 3])
        assert envelope["data"] == [1, 2, 3]


# ============================================================================
# Delivery Tests
# ============================================================================


class TestDeliver:
    """Tests for single delivery attempts."""

    @pytest.mark.asyncio
    async def test_successful_delivery(self, deliverer, webhook, store):
        """Test a 2xx response is classified as success and recorded."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, status_code=200)
            outcome = await deliverer.deliver(webhook, "contact.created", {"id": 1})

        assert outcome.success is True
        assert outcome.http_status == 200
        assert outcome.error is None
        assert outcome.attempt == 1

        records = await store.list_deliveries(webhook.id)
        assert len(records) == 1
        assert records[0].success is True
        assert records[0].http_status == 200
        assert outcome.record == records[0]

    @pytest.mark.asyncio
    async def test_request_is_signed(self, deliverer, webhook):
        """Test headers and that the signature covers the exact body sent."""
        with patch("httpx.AsyncClient") as mock_client:
            post = _mock_post(mock_client)
            await deliverer.deliver(webhook, "contact.created", {"id": 1, "name": "Ada"})

        args, kwargs = post.call_args
        body = kwargs["content"]
        headers = kwargs["headers"]

        assert args[0] == "https://example.com/hook"
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == DEFAULT_USER_AGENT
        assert headers[SIGNATURE_HEADER].startswith("sha256=")
        assert verify(body, headers[SIGNATURE_HEADER], webhook.secret)

        envelope = json.loads(body)
        assert envelope["event_type"] == "contact.created"
        assert envelope["data"] == {"id": 1, "name": "Ada"}
        assert envelope["webhook_id"] == webhook.id
        assert b" " not in body

    @pytest.mark.asyncio
    async def test_timeout_configured(self, deliverer, webhook):
        """Test that the client is created with the configured timeout."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client)
            await deliverer.deliver(webhook, "contact.created", {})

        mock_client.assert_called_once_with(timeout=5.0)

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self, deliverer, webhook, store):
        """Test that a 500 response is a failure carrying the status."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, status_code=500)
            outcome = await deliverer.deliver(webhook, "contact.created", {})

        assert outcome.success is False
        assert outcome.http_status == 500
        assert "HTTP 500" in outcome.error

        records = await store.list_deliveries(webhook.id)
        assert records[0].success is False
        assert records[0].http_status == 500

    @pytest.mark.asyncio
    async def test_redirect_is_failure(self, deliverer, webhook):
        """Test that a 3xx response is not treated as delivered."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, status_code=302)
            outcome = await deliverer.deliver(webhook, "contact.created", {})

        assert outcome.success is False
        assert outcome.http_status == 302

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self, deliverer, webhook):
        """Test that a timeout is a failure with status 0."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, side_effect=httpx.ReadTimeout("timed out"))
            outcome = await deliverer.deliver(webhook, "contact.created", {})

        assert outcome.success is False
        assert outcome.http_status == 0
        assert "timeout" in outcome.error.lower()

    @pytest.mark.asyncio
    async def test_connection_error_is_failure(self, deliverer, webhook):
        """Test that a refused connection is a failure with status 0."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, side_effect=httpx.ConnectError("refused"))
            outcome = await deliverer.deliver(webhook, "contact.created", {})

        assert outcome.success is False
        assert outcome.http_status == 0
        assert "Connection error" in outcome.error

    @pytest.mark.asyncio
    async def test_attempt_number_recorded(self, deliverer, webhook, store):
        """Test that the attempt number flows into the ledger."""
        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client, status_code=503)
            await deliverer.deliver(webhook, "contact.created", {}, attempt=3)

        records = await store.list_deliveries(webhook.id)
        assert records[0].attempt == 3

    @pytest.mark.asyncio
    async def test_ledger_failure_propagates(self, webhook):
        """Test that a ledger write failure raises PersistenceError."""
        ledger = MagicMock(spec=DeliveryLedger)
        ledger.record = AsyncMock(side_effect=PersistenceError("down", operation="insert_delivery"))
        deliverer = Deliverer(ledger)

        with patch("httpx.AsyncClient") as mock_client:
            _mock_post(mock_client)
            with pytest.raises(PersistenceError):
                await deliverer.deliver(webhook, "contact.created", {})


# ============================================================================
# Concurrency Tests
# ============================================================================


class TestConcurrency:
    """Tests for the in-flight request bound."""

    def test_invalid_bound(self, ledger):
        """Test that the bound must be positive."""
        with pytest.raises(ValueError):
            Deliverer(ledger, max_concurrent_deliveries=0)

    @pytest.mark.asyncio
    async def test_concurrent_requests_bounded(self, ledger):
        """Test that no more than the bound are in flight at once."""
        deliverer = Deliverer(ledger, max_concurrent_deliveries=2)
        webhooks = [
            Webhook(
                owner_id="u1",
                integration_type="crm",
                event_type="contact.created",
                target_url=f"https://example.com/hook/{i}",
                secret="s",
            )
            for i in range(6)
        ]

        in_flight = 0
        peak = 0
        response = MagicMock(status_code=200, is_success=True)

        async def slow_post(*args, **kwargs):  # noqa: ARG001
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return response

        with patch("httpx.AsyncClient") as mock_client:
            mock_client.return_value.__aenter__.return_value.post = slow_post
            outcomes = await asyncio.gather(
                *(deliverer.deliver(w, "contact.created", {}) for w in webhooks)
            )

        assert all(o.success for o in outcomes)
        assert peak == 2
