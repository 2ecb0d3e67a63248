"""Pluggable side-effect handlers keyed by event type.

Integration modules register handlers at startup. Handlers receive
``(payload, headers)``, may be sync or async, and their return values are
ignored. A failing handler is logged and never affects webhook delivery.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any, Mapping[str, str]], Awaitable[None] | None]


class EventHandlerDispatch:
    """Lookup table from event type to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._logger = logger.bind(component="event_handler_dispatch")

    def register(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for an event type.

        Args:
            event_type: Exact event type to handle.
            handler: Sync or async callable taking (payload, headers).
        """
        if not event_type:
            raise ValueError("event_type must be non-empty")

        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)
            self._logger.debug(
                "event_handler_registered",
                event_type=event_type,
                handler=getattr(handler, "__name__", repr(handler)),
            )

    def unregister(self, event_type: str, handler: EventHandler) -> None:
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event_type]

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        """Handlers registered for an event type."""
        return list(self._handlers.get(event_type, []))

    @property
    def event_types(self) -> list[str]:
        """Event types with at least one handler."""
        return sorted(self._handlers)

    def clear(self) -> None:
        """Remove every handler."""
        self._handlers.clear()

    async def dispatch(
        self,
        event_type: str,
        payload: Any,
        headers: Mapping[str, str] | None = None,
    ) -> int:
        """Invoke each handler for an event once, concurrently.

        Sync handlers run in a worker thread so they never block the loop.

        Args:
            event_type: Type of event.
            payload: Event payload.
            headers: Request headers (empty for internal events).

        Returns:
            Number of handlers that completed without raising.
        """
        request_headers = dict(headers or {})
        handlers = self.handlers_for(event_type)
        if not handlers:
            return 0

        results = await asyncio.gather(
            *(self._invoke(event_type, h, payload, request_headers) for h in handlers)
        )
        return sum(1 for completed in results if completed)

    async def _invoke(
        self,
        event_type: str,
        handler: EventHandler,
        payload: Any,
        headers: dict[str, str],
    ) -> bool:
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(payload, headers)
            else:
                result = await asyncio.to_thread(handler, payload, headers)
                if inspect.iscoroutine(result):
                    await result
        except Exception as e:
            self._logger.error(
                "event_handler_failed",
                event_type=event_type,
                handler=getattr(handler, "__name__", repr(handler)),
                error=str(e),
            )
            return False
        return True
