"""
Event bus for marketplace domain events.

Synchronous in-process pub/sub. The engine publishes only after its
transaction has committed, and handlers run in the publishing thread.
Handler errors are logged but never propagate back into the engine.
"""

import logging
import threading
from typing import Callable, Dict, Iterable, List

from core.events import MarketplaceEvent

logger = logging.getLogger(__name__)


def _event_name(event_type: str | type) -> str:
    return event_type if isinstance(event_type, str) else event_type.__name__


class EventBus:
    """
    In-process event bus for marketplace domain events.

    Subscribe by event class or class name, publish by event instance.
    Handlers are called in subscription order. Publishing is safe from
    concurrent request threads.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str | type, callback: Callable):
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event class or its name (e.g. QuoteSubmitted or 'QuoteSubmitted')
            callback: Function to call when event is published
        """
        with self._lock:
            self._subscribers.setdefault(_event_name(event_type), []).append(callback)

    def subscribe_many(self, event_types: Iterable[str | type], callback: Callable):
        """Subscribe one callback to several event types."""
        for event_type in event_types:
            self.subscribe(event_type, callback)

    def publish(self, event: MarketplaceEvent):
        """Deliver an event to every subscriber of its type."""
        event_type = event.__class__.__name__

        with self._lock:
            callbacks = list(self._subscribers.get(event_type, ()))

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (event_id=%s)",
                    getattr(callback, "__name__", repr(callback)),
                    event_type,
                    event.event_id,
                )
