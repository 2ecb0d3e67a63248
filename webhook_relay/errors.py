"""Error taxonomy and transient-failure retry helpers.

Exception Hierarchy:
    WebhookRelayError (base)
    ├── ValidationError - Malformed registration input
    ├── WebhookNotFoundError - Unknown webhook identifier
    ├── SignatureError - Inbound signature failed verification
    ├── DeliveryError - Network failure, timeout or non-2xx response
    ├── RetryExhaustedError - Delivery failed max_retries times
    └── PersistenceError - Backing store unreachable or failed
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ============================================================================
# Exception Hierarchy
# ============================================================================


class WebhookRelayError(Exception):
    """Base exception for all webhook relay errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether the error can be recovered from.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class ValidationError(WebhookRelayError):
    """Registration input was malformed.

    Surfaced synchronously to the caller and never retried.

    Attributes:
        field: Name of the offending input field.
    """

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=False)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["field"] = self.field
        return base


class WebhookNotFoundError(WebhookRelayError):
    """No webhook exists with the given identifier."""

    def __init__(self, webhook_id: str) -> None:
        super().__init__(
            f"Webhook {webhook_id} not found",
            details={"webhook_id": webhook_id},
        )
        self.webhook_id = webhook_id


class SignatureError(WebhookRelayError):
    """An inbound payload's signature is missing or does not verify."""


class DeliveryError(WebhookRelayError):
    """A single delivery attempt failed.

    Attributes:
        status_code: HTTP status received, 0 when no response arrived.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=True)
        self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["status_code"] = self.status_code
        return base


class RetryExhaustedError(WebhookRelayError):
    """A delivery failed on every allowed attempt.

    Terminal. Logged and written to the delivery ledger; never raised into
    the code path of the event producer.

    Attributes:
        webhook_id: Webhook whose delivery was abandoned.
        event_type: Event type of the abandoned delivery.
        attempts: Number of attempts made.
    """

    def __init__(
        self,
        message: str,
        *,
        webhook_id: str,
        event_type: str,
        attempts: int,
        last_status: int = 0,
        last_error: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"last_status": last_status, "last_error": last_error},
            recoverable=False,
        )
        self.webhook_id = webhook_id
        self.event_type = event_type
        self.attempts = attempts

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update(
            {
                "webhook_id": self.webhook_id,
                "event_type": self.event_type,
                "attempts": self.attempts,
            }
        )
        return base


class PersistenceError(WebhookRelayError):
    """The backing store failed during a read or write.

    Attributes:
        operation: Store operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, details=details, recoverable=recoverable)
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base["operation"] = self.operation
        return base


# ============================================================================
# Retry Configuration
# ============================================================================


@dataclass
class RetryConfig:
    """Configuration for retrying transient failures.

    Attributes:
        max_attempts: Maximum number of attempts (including initial).
        min_wait_seconds: Minimum wait between retries.
        max_wait_seconds: Maximum wait between retries.
        multiplier: Exponential backoff multiplier.
        retry_exceptions: Exception types to retry on.
    """

    max_attempts: int = 3
    min_wait_seconds: float = 0.05
    max_wait_seconds: float = 1.0
    multiplier: float = 0.1
    retry_exceptions: tuple[type[BaseException], ...] = field(
        default_factory=lambda: (PersistenceError,)
    )


def with_retry(
    config: RetryConfig | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator retrying an async callable with exponential backoff.

    Args:
        config: Retry configuration.

    Returns:
        Decorated function with retry logic. The last exception is re-raised
        once attempts run out.

    Example:
        @with_retry(RetryConfig(retry_exceptions=(aiosqlite.OperationalError,)))
        async def write():
            ...
    """
    retry_config = config or RetryConfig()

    def decorator(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(fn)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0

            async for attempt_context in AsyncRetrying(
                stop=stop_after_attempt(retry_config.max_attempts),
                wait=wait_exponential(
                    multiplier=retry_config.multiplier,
                    min=retry_config.min_wait_seconds,
                    max=retry_config.max_wait_seconds,
                ),
                retry=retry_if_exception_type(retry_config.retry_exceptions),
                reraise=True,
            ):
                with attempt_context:
                    attempt += 1
                    if attempt > 1:
                        logger.info(
                            "retry_attempt",
                            function=fn.__name__,
                            attempt=attempt,
                            max_attempts=retry_config.max_attempts,
                        )
                    return await fn(*args, **kwargs)

            # This should not be reached due to reraise=True
            raise RuntimeError("Retry loop exited unexpectedly")

        return wrapper

    return decorator
