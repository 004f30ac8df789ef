"""EventBus protocol and implementations.

The EventBus is the notification channel between the execution engine and
its observers. The engine holds no reference to any UI object; it only
emits events here.

- LocalEventBus: synchronous, in-process bus. Handlers run on the engine's
  event loop in registration order.
- NullEventBus: discards everything (the engine's default).
"""

import logging
from collections.abc import Callable
from typing import Protocol

from scripter.events import Event, EventType

logger = logging.getLogger(__name__)

SyncHandler = Callable[[Event], None]


class EventBus(Protocol):
    """Protocol for event bus implementations."""

    def emit(self, event: Event) -> None:
        """Emit an event to all registered handlers."""
        ...

    def subscribe(
        self,
        handler: SyncHandler,
        event_types: list[EventType] | None = None,
    ) -> None:
        """Subscribe a handler to events."""
        ...

    def unsubscribe(self, handler: SyncHandler) -> None:
        """Unsubscribe a handler from events."""
        ...


class LocalEventBus:
    """Synchronous in-process event bus.

    A handler that raises is logged and skipped. Observer bugs must never
    change what the engine does with the run.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[SyncHandler, list[EventType] | None]] = []

    def emit(self, event: Event) -> None:
        """Emit an event to all matching handlers."""
        for handler, event_types in list(self._handlers):
            if event_types is None or event.event_type in event_types:
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler %r failed on %s", handler, event.event_type.value)

    def subscribe(
        self,
        handler: SyncHandler,
        event_types: list[EventType] | None = None,
    ) -> None:
        """Subscribe a handler to events."""
        self._handlers.append((handler, event_types))

    def unsubscribe(self, handler: SyncHandler) -> None:
        """Unsubscribe a handler from events."""
        self._handlers = [(h, et) for h, et in self._handlers if h != handler]

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()


class NullEventBus:
    """No-op event bus for testing or when nobody is watching."""

    def emit(self, event: Event) -> None:
        """Discard event."""
        pass

    def subscribe(
        self,
        handler: SyncHandler,
        event_types: list[EventType] | None = None,
    ) -> None:
        """No-op."""
        pass

    def unsubscribe(self, handler: SyncHandler) -> None:
        """No-op."""
        pass


__all__ = [
    "EventBus",
    "LocalEventBus",
    "NullEventBus",
    "SyncHandler",
]
