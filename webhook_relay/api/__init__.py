"""FastAPI surface for webhook administration, event intake and inbound callbacks."""

from webhook_relay.api.app import ErrorResponse, create_app
from webhook_relay.api.webhooks import events_router, inbound_router, router

__all__ = [
    "ErrorResponse",
    "create_app",
    "events_router",
    "inbound_router",
    "router",
]
