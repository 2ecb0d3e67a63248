"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        WEBHOOK_MAX_RETRIES: Total delivery attempts before a failure is terminal.
        WEBHOOK_RETRY_BASE_DELAY_SECONDS: Delay after the first failed attempt.
        WEBHOOK_RETRY_INTERVAL_SECONDS: How often the retry ticker scans the queue.
        WEBHOOK_DELIVERY_TIMEOUT_SECONDS: Hard timeout per HTTP delivery attempt.
        WEBHOOK_MAX_CONCURRENT_DELIVERIES: Bound on in-flight outbound requests.
        WEBHOOK_ROUTER_CACHE_TTL_SECONDS: Max age of a routing cache entry.
        WEBHOOK_USER_AGENT: User-Agent header sent with deliveries.
        WEBHOOK_STORAGE_BACKEND: "memory" or "sqlite".
        WEBHOOK_DB_PATH: SQLite database path for the sqlite backend.
        WEBHOOK_DURABLE_RETRY_QUEUE: Persist pending retries in SQLite.
        WEBHOOK_INBOUND_REQUIRE_SIGNATURE: Reject unsigned inbound callbacks.
        WEBHOOK_LOG_RETENTION_DAYS: Default age for delivery log cleanup.
        LOG_LEVEL: Logging level.
        LOG_FORMAT: "json" or "text".
    """

    # Delivery
    WEBHOOK_MAX_RETRIES: int = 3
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: float = 5.0
    WEBHOOK_RETRY_INTERVAL_SECONDS: float = 60.0
    WEBHOOK_DELIVERY_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_MAX_CONCURRENT_DELIVERIES: int = 10
    WEBHOOK_USER_AGENT: str = "WebhookRelay-Webhook/1.0"

    # Routing
    WEBHOOK_ROUTER_CACHE_TTL_SECONDS: float = 300.0

    # Storage
    WEBHOOK_STORAGE_BACKEND: str = "memory"
    WEBHOOK_DB_PATH: str = "data/webhooks.db"
    WEBHOOK_DURABLE_RETRY_QUEUE: bool = False
    WEBHOOK_LOG_RETENTION_DAYS: int = 30

    # Inbound callbacks
    WEBHOOK_INBOUND_REQUIRE_SIGNATURE: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        return cls(
            WEBHOOK_MAX_RETRIES=_get_int_env("WEBHOOK_MAX_RETRIES", 3),
            WEBHOOK_RETRY_BASE_DELAY_SECONDS=_get_float_env(
                "WEBHOOK_RETRY_BASE_DELAY_SECONDS", 5.0
            ),
            WEBHOOK_RETRY_INTERVAL_SECONDS=_get_float_env(
                "WEBHOOK_RETRY_INTERVAL_SECONDS", 60.0
            ),
            WEBHOOK_DELIVERY_TIMEOUT_SECONDS=_get_float_env(
                "WEBHOOK_DELIVERY_TIMEOUT_SECONDS", 30.0
            ),
            WEBHOOK_MAX_CONCURRENT_DELIVERIES=_get_int_env(
                "WEBHOOK_MAX_CONCURRENT_DELIVERIES", 10
            ),
            WEBHOOK_USER_AGENT=os.getenv("WEBHOOK_USER_AGENT", "WebhookRelay-Webhook/1.0"),
            WEBHOOK_ROUTER_CACHE_TTL_SECONDS=_get_float_env(
                "WEBHOOK_ROUTER_CACHE_TTL_SECONDS", 300.0
            ),
            WEBHOOK_STORAGE_BACKEND=os.getenv("WEBHOOK_STORAGE_BACKEND", "memory"),
            WEBHOOK_DB_PATH=os.getenv("WEBHOOK_DB_PATH", "data/webhooks.db"),
            WEBHOOK_DURABLE_RETRY_QUEUE=_get_bool_env(
                "WEBHOOK_DURABLE_RETRY_QUEUE", default=False
            ),
            WEBHOOK_LOG_RETENTION_DAYS=_get_int_env("WEBHOOK_LOG_RETENTION_DAYS", 30),
            WEBHOOK_INBOUND_REQUIRE_SIGNATURE=_get_bool_env(
                "WEBHOOK_INBOUND_REQUIRE_SIGNATURE", default=True
            ),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_FORMAT=os.getenv("LOG_FORMAT", "json"),
        )


# Global settings instance
settings = Settings.from_env()
