"""
EventBus: topic based publish/subscribe shared by one notebook's components.
"""

import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Any], None]


class EventBus:
    """
    Synchronous topic bus.

    Handlers are called as ``handler(context, payload)`` in the order they
    were registered. Topics are plain strings compared by equality.
    """

    def __init__(self):
        self._handlers: dict[str, list[tuple[Handler, Any]]] = {}

    def on(self, topic: str, handler: Handler, context: Any = None):
        """Register ``handler`` for ``topic``."""
        self._handlers.setdefault(topic, []).append((handler, context))

    def off(self, topic: str, handler: Optional[Handler] = None):
        """Remove ``handler`` from ``topic``, or every handler if omitted."""
        if handler is None:
            self._handlers.pop(topic, None)
            return
        entries = self._handlers.get(topic, [])
        self._handlers[topic] = [(h, c) for h, c in entries if h is not handler]

    def trigger(self, topic: str, payload: Any = None) -> int:
        """
        Invoke every handler registered for ``topic``.

        Returns:
            Number of handlers called
        """
        # Copy so handlers may subscribe or unsubscribe while we iterate.
        entries = list(self._handlers.get(topic, ()))
        logger.debug("event %s -> %d handler(s)", topic, len(entries))
        for handler, context in entries:
            handler(context, payload)
        return len(entries)

    def has_handlers(self, topic: str) -> bool:
        return bool(self._handlers.get(topic))

    def clear(self):
        """Drop all subscriptions."""
        self._handlers.clear()
