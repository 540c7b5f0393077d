"""In-process domain event dispatch."""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from src.models.events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventDispatcher:
    """Observer list keyed by event type.

    Events are published after the change they describe has been persisted,
    so a failing handler is logged and skipped rather than propagated.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._global_handlers: list[EventHandler] = []

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Register a handler for one event type."""
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Register a handler for every event."""
        self._global_handlers.append(handler)

    async def publish(self, event: DomainEvent) -> int:
        """Deliver an event to its subscribers in registration order.

        Args:
            event: The event to deliver.

        Returns:
            int: Number of handlers that completed successfully.
        """
        handlers = [*self._handlers.get(event.event_type, []), *self._global_handlers]
        delivered = 0
        for handler in handlers:
            try:
                await handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    event.event_type,
                    event.event_id,
                )
        logger.debug("Published %s to %d/%d handlers", event.event_type, delivered, len(handlers))
        return delivered

    async def publish_all(self, events: list[DomainEvent]) -> None:
        """Deliver several events in order."""
        for event in events:
            await self.publish(event)
