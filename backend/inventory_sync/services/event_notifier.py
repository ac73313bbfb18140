"""In-process publish/subscribe for sync lifecycle events."""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

log = logging.getLogger(__name__)

MANUAL_COMPLETED = "manual_completed"
PRODUCTS_COMPLETED = "products_completed"
CONFIG_UPDATED = "config_updated"
STOCK_COMPLETED = "stock_completed"

# Channels forwarded to external listeners (websocket)
OUTWARD_CHANNELS = (MANUAL_COMPLETED, PRODUCTS_COMPLETED, CONFIG_UPDATED)

EventHandler = Callable[[str, Any], None]


class EventNotifier:
    """
    Synchronous fan-out to the handlers subscribed when publish() is called.

    A handler that raises is logged and skipped; the remaining handlers still
    receive the event.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event_type: str, payload: Any = None) -> int:
        """Deliver an event; returns the number of handlers that accepted it."""
        handlers = list(self._handlers.get(event_type, ()))
        delivered = 0
        for handler in handlers:
            try:
                handler(event_type, payload)
                delivered += 1
            except Exception as e:
                log.error(f"Event handler {getattr(handler, '__name__', handler)!r} failed for {event_type}: {e}", exc_info=True)
        log.debug(f"Published {event_type} to {delivered}/{len(handlers)} handlers")
        return delivered

    def subscriber_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, ()))
