"""Tests for configuration loading."""

import pytest

from webhook_relay.config import Settings


class TestSettingsFromEnv:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        """Test defaults when nothing is set."""
        for name in ("WEBHOOK_MAX_RETRIES", "WEBHOOK_STORAGE_BACKEND", "LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.WEBHOOK_MAX_RETRIES == 3
        assert settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS == 5.0
        assert settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS == 30.0
        assert settings.WEBHOOK_USER_AGENT == "WebhookRelay-Webhook/1.0"
        assert settings.WEBHOOK_STORAGE_BACKEND == "memory"
        assert settings.LOG_FORMAT == "json"

    def test_overrides(self, monkeypatch):
        """Test reading typed values from the environment."""
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "5")
        monkeypatch.setenv("WEBHOOK_RETRY_BASE_DELAY_SECONDS", "0.5")
        monkeypatch.setenv("WEBHOOK_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("WEBHOOK_DURABLE_RETRY_QUEUE", "yes")
        monkeypatch.setenv("WEBHOOK_INBOUND_REQUIRE_SIGNATURE", "off")

        settings = Settings.from_env()

        assert settings.WEBHOOK_MAX_RETRIES == 5
        assert settings.WEBHOOK_RETRY_BASE_DELAY_SECONDS == 0.5
        assert settings.WEBHOOK_STORAGE_BACKEND == "sqlite"
        assert settings.WEBHOOK_DURABLE_RETRY_QUEUE is True
        assert settings.WEBHOOK_INBOUND_REQUIRE_SIGNATURE is False

    def test_unrecognized_bool_uses_default(self, monkeypatch):
        """Test that garbage booleans fall back to the default."""
        monkeypatch.setenv("WEBHOOK_INBOUND_REQUIRE_SIGNATURE", "maybe")

        assert Settings.from_env().WEBHOOK_INBOUND_REQUIRE_SIGNATURE is True

    def test_invalid_int(self, monkeypatch):
        """Test that a non-numeric value fails loudly."""
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "three")

        with pytest.raises(ValueError):
            Settings.from_env()
