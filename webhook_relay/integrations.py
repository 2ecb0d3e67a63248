"""Handlers for inbound CRM, chat and calendar callbacks.

Each handler records the callback's key fields. Deployments that sync
these objects elsewhere register their own handlers for the same event
types alongside (or instead of) these.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from webhook_relay.webhooks.handlers import EventHandler, EventHandlerDispatch

logger = structlog.get_logger(__name__)


def _get(payload: Any, *path: str) -> Any:
    """Walk nested dictionaries, returning None on any missing key."""
    current = payload
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


# ============================================================================
# Salesforce
# ============================================================================


def handle_salesforce_contact_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    first = _get(payload, "FirstName") or ""
    last = _get(payload, "LastName") or ""
    logger.info(
        "salesforce_contact_created",
        contact_id=_get(payload, "Id"),
        name=f"{first} {last}".strip(),
        email=_get(payload, "Email"),
    )


def handle_salesforce_contact_updated(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    first = _get(payload, "FirstName") or ""
    last = _get(payload, "LastName") or ""
    logger.info(
        "salesforce_contact_updated",
        contact_id=_get(payload, "Id"),
        name=f"{first} {last}".strip(),
    )


def handle_salesforce_opportunity_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "salesforce_opportunity_created",
        opportunity_id=_get(payload, "Id"),
        name=_get(payload, "Name"),
        amount=_get(payload, "Amount"),
        stage=_get(payload, "StageName"),
    )


# ============================================================================
# HubSpot
# ============================================================================


def handle_hubspot_contact_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "hubspot_contact_created",
        contact_id=_get(payload, "objectId"),
        email=_get(payload, "properties", "email"),
        first_name=_get(payload, "properties", "firstname"),
        last_name=_get(payload, "properties", "lastname"),
    )


def handle_hubspot_contact_updated(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "hubspot_contact_updated",
        contact_id=_get(payload, "objectId"),
        email=_get(payload, "properties", "email"),
    )


def handle_hubspot_deal_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "hubspot_deal_created",
        deal_id=_get(payload, "objectId"),
        deal_name=_get(payload, "properties", "dealname"),
        amount=_get(payload, "properties", "amount"),
    )


# ============================================================================
# Slack
# ============================================================================


def handle_slack_message_posted(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    text = _get(payload, "event", "text")
    logger.info(
        "slack_message_posted",
        channel=_get(payload, "event", "channel"),
        user=_get(payload, "event", "user"),
        text=text[:100] if isinstance(text, str) else None,
    )


def handle_slack_channel_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "slack_channel_created",
        channel_id=_get(payload, "channel", "id"),
        channel_name=_get(payload, "channel", "name"),
    )


# ============================================================================
# Google Calendar
# ============================================================================


def handle_google_calendar_event_created(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "google_calendar_event_created",
        event_id=_get(payload, "id"),
        summary=_get(payload, "summary"),
        start_time=_get(payload, "start", "dateTime"),
    )


def handle_google_calendar_event_updated(payload: Any, headers: Mapping[str, str]) -> None:  # noqa: ARG001
    logger.info(
        "google_calendar_event_updated",
        event_id=_get(payload, "id"),
        summary=_get(payload, "summary"),
    )


DEFAULT_HANDLERS: dict[str, EventHandler] = {
    "salesforce.contact.created": handle_salesforce_contact_created,
    "salesforce.contact.updated": handle_salesforce_contact_updated,
    "salesforce.opportunity.created": handle_salesforce_opportunity_created,
    "hubspot.contact.created": handle_hubspot_contact_created,
    "hubspot.contact.updated": handle_hubspot_contact_updated,
    "hubspot.deal.created": handle_hubspot_deal_created,
    "slack.message.posted": handle_slack_message_posted,
    "slack.channel.created": handle_slack_channel_created,
    "google.calendar.event.created": handle_google_calendar_event_created,
    "google.calendar.event.updated": handle_google_calendar_event_updated,
}


def register_default_handlers(dispatch: EventHandlerDispatch) -> int:
    """Register the built-in integration handlers.

    Args:
        dispatch: Handler table to populate.

    Returns:
        Number of handlers registered.
    """
    for event_type, handler in DEFAULT_HANDLERS.items():
        dispatch.register(event_type, handler)

    logger.info("event_handlers_registered", handler_count=len(DEFAULT_HANDLERS))
    return len(DEFAULT_HANDLERS)
