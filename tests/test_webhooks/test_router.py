"""Tests for event routing and its cache."""

from unittest.mock import AsyncMock, patch

import pytest

from webhook_relay.errors import PersistenceError
from webhook_relay.webhooks.registry import WebhookRegistry
from webhook_relay.webhooks.router import EventRouter, RouterCacheStats
from webhook_relay.webhooks.storage import InMemoryWebhookStore

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create a registry over an in-memory store."""
    return WebhookRegistry(InMemoryWebhookStore())


@pytest.fixture
def router(registry):
    """Create a router with expiry disabled."""
    return EventRouter(registry, cache_ttl_seconds=0)


async def _register(registry, event_type="contact.created"):
    return await registry.register("u1", "crm", event_type, "https://example.com/hook")


# ============================================================================
# Routing Tests
# ============================================================================


class TestFindMatchingWebhooks:
    """Tests for subscriber resolution."""

    @pytest.mark.asyncio
    async def test_no_subscribers(self, router):
        """Test that an unknown event type yields an empty list."""
        assert await router.find_matching_webhooks("nobody.cares") == []

    @pytest.mark.asyncio
    async def test_exact_match_only(self, registry, router):
        """Test that routing is exact-match on event type."""
        match = await _register(registry, "contact.created")
        await _register(registry, "contact.updated")
        await _register(registry, "contact")

        result = await router.find_matching_webhooks("contact.created")

        assert [w.id for w in result] == [match.id]

    @pytest.mark.asyncio
    async def test_second_lookup_is_cached(self, registry, router):
        """Test that a repeated lookup does not hit the store."""
        await _register(registry)
        await router.find_matching_webhooks("contact.created")

        with patch.object(registry, "find_active", new_callable=AsyncMock) as find_active:
            result = await router.find_matching_webhooks("contact.created")

        find_active.assert_not_called()
        assert len(result) == 1
        assert router.stats.hits == 1
        assert router.stats.misses == 1

    @pytest.mark.asyncio
    async def test_register_invalidates(self, registry, router):
        """Test that a new subscriber is visible on the next lookup."""
        await router.find_matching_webhooks("contact.created")

        webhook = await _register(registry)
        result = await router.find_matching_webhooks("contact.created")

        assert [w.id for w in result] == [webhook.id]

    @pytest.mark.asyncio
    async def test_unregister_invalidates(self, registry, router):
        """Test that a deactivated webhook disappears from routing."""
        webhook = await _register(registry)
        assert len(await router.find_matching_webhooks("contact.created")) == 1

        await registry.unregister(webhook.id)

        assert await router.find_matching_webhooks("contact.created") == []

    @pytest.mark.asyncio
    async def test_invalidation_is_per_event_type(self, registry, router):
        """Test that other event types keep their cache entries."""
        await _register(registry, "a")
        await router.find_matching_webhooks("a")
        await router.find_matching_webhooks("b")

        await _register(registry, "b")

        assert "a" in router.cache_info()["event_types"]
        assert "b" not in router.cache_info()["event_types"]

    @pytest.mark.asyncio
    async def test_invalidate_all(self, registry, router):
        """Test clearing every entry."""
        await _register(registry)
        await router.find_matching_webhooks("contact.created")

        await router.invalidate()

        assert router.cache_info()["event_types"] == []

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, registry, router):
        """Test that a store failure on a miss raises PersistenceError."""
        with patch.object(
            registry,
            "find_active",
            new=AsyncMock(side_effect=PersistenceError("down", operation="find_active_webhooks")),
        ), pytest.raises(PersistenceError):
            await router.find_matching_webhooks("contact.created")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, registry):
        """Test that an expired entry is reloaded from the store."""
        router = EventRouter(registry, cache_ttl_seconds=10)
        await _register(registry)

        await router.find_matching_webhooks("contact.created")
        router._cache["contact.created"].loaded_at -= 60
        await router.find_matching_webhooks("contact.created")

        assert router.stats.misses == 2


class TestRouterCacheStats:
    """Tests for cache counters."""

    def test_hit_rate(self):
        """Test hit rate calculation."""
        stats = RouterCacheStats(hits=3, misses=1)
        assert stats.hit_rate == 75.0
        assert stats.to_dict()["hit_rate"] == 75.0

    def test_hit_rate_empty(self):
        """Test hit rate with no lookups."""
        assert RouterCacheStats().hit_rate == 0.0
