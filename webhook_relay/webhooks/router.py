"""Event-type routing with an invalidation-aware read-through cache."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import structlog

from webhook_relay.webhooks.models import Webhook
from webhook_relay.webhooks.registry import WebhookRegistry

logger = structlog.get_logger(__name__)


@dataclass
class _CacheEntry:
    webhooks: tuple[Webhook, ...]
    loaded_at: float


@dataclass
class RouterCacheStats:
    """Counters for routing cache behaviour."""

    hits: int = 0
    misses: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert stats to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
            "hit_rate": self.hit_rate,
        }


class EventRouter:
    """Resolves an event type to its active subscribers.

    Lookups are served from memory when possible. A miss (or an entry older
    than the TTL) queries the registry's store and repopulates the cache.
    Registry mutations invalidate the affected event type. Each event type
    carries a generation number so a store query that was in flight while
    an invalidation happened does not write its stale result back.
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        *,
        cache_ttl_seconds: float = 300.0,
    ) -> None:
        """Initialize the router.

        Args:
            registry: Registry used for store lookups and mutation events.
            cache_ttl_seconds: Maximum age of a cache entry; 0 disables expiry.
        """
        self._registry = registry
        self._ttl = cache_ttl_seconds
        self._cache: dict[str, _CacheEntry] = {}
        self._generations: dict[str, int] = {}
        self._global_generation = 0
        self._lock = asyncio.Lock()
        self.stats = RouterCacheStats()
        self._logger = logger.bind(component="event_router")

        registry.add_listener(self.invalidate)

    def _generation(self, event_type: str) -> tuple[int, int]:
        return self._global_generation, self._generations.get(event_type, 0)

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        if self._ttl <= 0:
            return True
        return (time.monotonic() - entry.loaded_at) < self._ttl

    async def find_matching_webhooks(self, event_type: str) -> list[Webhook]:
        """Get active webhooks subscribed to an event type.

        Args:
            event_type: Exact-match routing key.

        Returns:
            Matching webhooks; empty when nobody is subscribed.

        Raises:
            PersistenceError: If the store cannot be queried on a cache miss.
        """
        async with self._lock:
            entry = self._cache.get(event_type)
            if entry is not None and self._is_fresh(entry):
                self.stats.hits += 1
                return list(entry.webhooks)
            self.stats.misses += 1
            generation = self._generation(event_type)

        webhooks = await self._registry.find_active(event_type)

        async with self._lock:
            if self._generation(event_type) == generation:
                self._cache[event_type] = _CacheEntry(
                    webhooks=tuple(webhooks),
                    loaded_at=time.monotonic(),
                )
            else:
                self._logger.debug("router_cache_fill_skipped", event_type=event_type)

        self._logger.debug(
            "webhooks_resolved_from_store",
            event_type=event_type,
            webhook_count=len(webhooks),
        )
        return list(webhooks)

    async def invalidate(self, event_type: str | None = None) -> None:
        """Drop cached subscribers.

        Args:
            event_type: Event type to drop; None clears everything.
        """
        async with self._lock:
            if event_type is None:
                self._cache.clear()
                self._global_generation += 1
            else:
                self._cache.pop(event_type, None)
                self._generations[event_type] = self._generations.get(event_type, 0) + 1
            self.stats.invalidations += 1

        self._logger.debug("router_cache_invalidated", event_type=event_type)

    def cache_info(self) -> dict[str, Any]:
        """Describe the current cache contents and counters."""
        return {
            "event_types": sorted(self._cache),
            "ttl_seconds": self._ttl,
            **self.stats.to_dict(),
        }
