"""Synchronous event emitter for settlement events.

Handlers are isolated: a failing handler is logged and the remaining
handlers still receive the event. Emission never affects payout state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from payout_engine.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=DomainEvent)

EventHandler = Callable[[DomainEvent], None]


@dataclass
class HandlerRegistration:
    """Registration of an event handler."""

    handler: EventHandler
    event_types: set[str] | None  # None = all events
    categories: set[EventCategory] | None  # None = all categories

    def matches(self, event: DomainEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.categories and event.category not in self.categories:
            return False
        return True


class EventEmitter:
    """Publishes settlement events to registered handlers.

    Usage:
        emitter = EventEmitter()
        emitter.on(PayoutPaid, send_statement)
        emitter.on_category(EventCategory.ANOMALY, page_on_call)
        emitter.emit(event)
    """

    def __init__(self) -> None:
        self._handlers: list[HandlerRegistration] = []

    def on(self, event_type: type[T] | list[type[T]], handler: EventHandler) -> None:
        """Register handler for specific event type(s)."""
        types = event_type if isinstance(event_type, list) else [event_type]
        self._handlers.append(
            HandlerRegistration(
                handler=handler,
                event_types={t.__name__ for t in types},
                categories=None,
            )
        )

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Register handler for event category(ies)."""
        cats = set(category) if isinstance(category, list) else {category}
        self._handlers.append(
            HandlerRegistration(handler=handler, event_types=None, categories=cats)
        )

    def on_all(self, handler: EventHandler) -> None:
        """Register handler for all events."""
        self._handlers.append(
            HandlerRegistration(handler=handler, event_types=None, categories=None)
        )

    def off(self, handler: EventHandler) -> None:
        """Unregister a handler."""
        self._handlers = [reg for reg in self._handlers if reg.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Emit an event to all matching handlers.

        Returns list of any exceptions raised by handlers.
        """
        errors: list[Exception] = []
        for reg in self._handlers:
            if not reg.matches(event):
                continue
            try:
                reg.handler(event)
            except Exception as e:
                logger.exception(
                    "Handler %s failed for event %s",
                    reg.handler,
                    event.event_type,
                )
                errors.append(e)
        return errors


class RecordingHandler:
    """Handler that keeps every event it receives, for audit trails and tests."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[T]) -> list[T]:
        return [e for e in self.events if isinstance(e, event_type)]
