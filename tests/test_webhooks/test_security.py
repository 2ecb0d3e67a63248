"""Tests for webhook security module."""

import hashlib
import hmac
import json

import pytest

from webhook_relay.errors import SignatureError
from webhook_relay.webhooks.security import (
    LEGACY_SIGNATURE_HEADER,
    SIGNATURE_HEADER,
    canonical_json,
    extract_signature,
    generate_secret,
    sign,
    signature_header_value,
    verify,
    verify_from_headers,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_payload():
    """Sample webhook payload."""
    return {
        "event_type": "contact.created",
        "timestamp": "2024-01-01T00:00:00+00:00",
        "data": {"id": 1, "name": "Ada"},
        "webhook_id": "wh_0123456789abcdef",
    }


@pytest.fixture
def sample_secret():
    """Sample webhook secret."""
    return "s3cr3t"


# ============================================================================
# canonical_json Tests
# ============================================================================


class TestCanonicalJson:
    """Tests for compact JSON serialization."""

    def test_compact_separators(self):
        """Test that no whitespace is emitted between tokens."""
        assert canonical_json({"a": 1, "b": [1, 2]}) == b'{"a":1,"b":[1,2]}'

    def test_preserves_key_order(self):
        """Test that insertion order is kept."""
        body = canonical_json({"z": 1, "a": 2})
        assert body == b'{"z":1,"a":2}'

    def test_scalar_payload(self):
        """Test serializing a non-object JSON value."""
        assert canonical_json("hello") == b'"hello"'
        assert canonical_json(None) == b"null"


# ============================================================================
# sign / verify Tests
# ============================================================================


class TestSign:
    """Tests for HMAC-SHA256 signing."""

    def test_sign_matches_hmac(self, sample_payload, sample_secret):
        """Test that the signature is HMAC-SHA256 over the exact body."""
        body = canonical_json(sample_payload)
        expected = hmac.new(sample_secret.encode(), body, hashlib.sha256).hexdigest()

        assert sign(body, sample_secret) == expected
        assert len(sign(body, sample_secret)) == 64

    def test_sign_text_and_bytes_agree(self, sample_secret):
        """Test that text bodies are signed as their UTF-8 bytes."""
        assert sign('{"a":1}', sample_secret) == sign(b'{"a":1}', sample_secret)

    def test_different_secret_different_signature(self, sample_payload):
        """Test that the secret changes the signature."""
        body = canonical_json(sample_payload)
        assert sign(body, "secret-one") != sign(body, "secret-two")

    def test_header_value_prefix(self):
        """Test the sha256= header prefix."""
        assert signature_header_value("abc") == "sha256=abc"


class TestVerify:
    """Tests for signature verification."""

    def test_verify_valid_signature(self, sample_payload, sample_secret):
        """Test verifying a freshly computed signature."""
        body = canonical_json(sample_payload)
        signature = sign(body, sample_secret)

        assert verify(body, signature, sample_secret) is True

    def test_verify_prefixed_signature(self, sample_payload, sample_secret):
        """Test that the sha256= prefix is accepted."""
        body = canonical_json(sample_payload)
        header = signature_header_value(sign(body, sample_secret))

        assert verify(body, header, sample_secret) is True

    def test_verify_wrong_secret(self, sample_payload, sample_secret):
        """Test that a different secret fails verification."""
        body = canonical_json(sample_payload)
        signature = sign(body, sample_secret)

        assert verify(body, signature, "other") is False

    def test_verify_tampered_body(self, sample_payload, sample_secret):
        """Test that a modified body fails verification."""
        body = canonical_json(sample_payload)
        signature = sign(body, sample_secret)

        assert verify(body + b" ", signature, sample_secret) is False

    def test_reformatted_body_fails(self, sample_payload, sample_secret):
        """Test that re-serializing with other whitespace breaks the signature."""
        signature = sign(canonical_json(sample_payload), sample_secret)
        pretty = json.dumps(sample_payload, indent=2).encode()

        assert verify(pretty, signature, sample_secret) is False

    def test_verify_empty_inputs(self, sample_secret):
        """Test that empty signature or secret never verifies."""
        assert verify(b"{}", "", sample_secret) is False
        assert verify(b"{}", "abc", "") is False

    def test_verify_non_ascii_signature(self, sample_secret):
        """Test that a non-ASCII header value fails instead of raising."""
        assert verify(b"{}", "sha256=éé", sample_secret) is False
        assert verify(b"{}", "é" * 64, sample_secret) is False


# ============================================================================
# Header Tests
# ============================================================================


class TestHeaders:
    """Tests for header extraction and verification."""

    def test_extract_case_insensitive(self):
        """Test that header names are matched case-insensitively."""
        assert extract_signature({"x-signature-256": "sha256=abc"}) == "sha256=abc"

    def test_extract_legacy_header(self):
        """Test that the GitHub-style header name is accepted."""
        assert extract_signature({LEGACY_SIGNATURE_HEADER: "sha256=abc"}) == "sha256=abc"

    def test_extract_missing(self):
        """Test that missing headers give None."""
        assert extract_signature({"Content-Type": "application/json"}) is None

    def test_verify_from_headers_valid(self, sample_payload, sample_secret):
        """Test verifying a correctly signed request."""
        body = canonical_json(sample_payload)
        headers = {SIGNATURE_HEADER: signature_header_value(sign(body, sample_secret))}

        # Should not raise
        verify_from_headers(body, headers, sample_secret)

    def test_verify_from_headers_missing(self, sample_secret):
        """Test that a missing header raises SignatureError."""
        with pytest.raises(SignatureError, match="Missing"):
            verify_from_headers(b"{}", {}, sample_secret)

    def test_verify_from_headers_invalid(self, sample_secret):
        """Test that a wrong signature raises SignatureError."""
        with pytest.raises(SignatureError, match="Invalid"):
            verify_from_headers(b"{}", {SIGNATURE_HEADER: "sha256=" + "0" * 64}, sample_secret)

    def test_verify_from_headers_non_ascii(self, sample_secret):
        """Test that a non-ASCII signature header raises SignatureError."""
        with pytest.raises(SignatureError, match="Invalid"):
            verify_from_headers(b"{}", {SIGNATURE_HEADER: "sha256=é"}, sample_secret)


class TestGenerateSecret:
    """Tests for secret generation."""

    def test_secret_is_hex(self):
        """Test that generated secrets are 64 hex characters."""
        secret = generate_secret()
        assert len(secret) == 64
        int(secret, 16)

    def test_secrets_unique(self):
        """Test that secrets are not reused."""
        assert len({generate_secret() for _ in range(20)}) == 20
