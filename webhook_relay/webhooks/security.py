"""Webhook security utilities.

Provides HMAC-SHA256 signature generation and verification for webhook
payloads. Outbound deliveries are signed over the exact request body;
inbound callbacks are verified the same way before any handler runs.
"""

import hashlib
import hmac
import json
import secrets
from collections.abc import Mapping
from typing import Any

import structlog

from webhook_relay.errors import SignatureError

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Signature-256"
# Accepted on inbound callbacks from providers using the GitHub-style name
LEGACY_SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="

# Random bytes used for generated secrets
SECRET_BYTES = 32


def _to_bytes(body: bytes | str) -> bytes:
    if isinstance(body, bytes):
        return body
    return body.encode("utf-8")


def canonical_json(payload: Any) -> bytes:
    """Serialize a payload to the compact JSON bytes used on the wire."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


def generate_secret() -> str:
    """Generate a new webhook secret (hex-encoded random bytes)."""
    return secrets.token_hex(SECRET_BYTES)


def sign(body: bytes | str, secret: str) -> str:
    """Compute the HMAC-SHA256 signature of a request body.

    Args:
        body: Raw JSON bytes (or text) exactly as transmitted.
        secret: Webhook secret key.

    Returns:
        Lowercase hex digest.
    """
    return hmac.new(
        secret.encode("utf-8"),
        _to_bytes(body),
        hashlib.sha256,
    ).hexdigest()


def signature_header_value(signature: str) -> str:
    """Format a signature for the X-Signature-256 header."""
    return f"{SIGNATURE_PREFIX}{signature}"


def verify(body: bytes | str, signature: str, secret: str) -> bool:
    """Verify an HMAC-SHA256 signature using constant-time comparison.

    Args:
        body: Raw JSON bytes (or text) that was signed.
        signature: Claimed signature, bare hex or "sha256=<hex>".
        secret: Webhook secret key.

    Returns:
        True if the signature matches, False otherwise.
    """
    if not signature or not secret:
        return False

    claimed = signature.strip()
    if claimed.startswith(SIGNATURE_PREFIX):
        claimed = claimed[len(SIGNATURE_PREFIX):]

    expected = sign(body, secret)
    # Bytes comparison; header values may contain non-ASCII text
    is_valid = hmac.compare_digest(
        claimed.lower().encode("utf-8"),
        expected.encode("ascii"),
    )

    if not is_valid:
        logger.warning("webhook_signature_invalid", body_length=len(_to_bytes(body)))
    return is_valid


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """Find the signature header, ignoring header-name case."""
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in (SIGNATURE_HEADER, LEGACY_SIGNATURE_HEADER):
        value = lowered.get(name.lower())
        if value:
            return value
    return None


def verify_from_headers(
    body: bytes | str,
    headers: Mapping[str, str],
    secret: str,
) -> None:
    """Verify a request body against the signature in its headers.

    Args:
        body: Raw request body.
        headers: Request headers.
        secret: Secret the sender signed with.

    Raises:
        SignatureError: If the header is missing or the signature is wrong.
    """
    signature = extract_signature(headers)
    if not signature:
        raise SignatureError(f"Missing {SIGNATURE_HEADER} header")

    if not verify(body, signature, secret):
        raise SignatureError("Invalid webhook signature")
