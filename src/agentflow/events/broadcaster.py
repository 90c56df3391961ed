"""In-memory event broadcaster.

Holds the live subscriber list and delivers each event synchronously, in
registration order. There is no replay: a subscriber sees only events
published after it subscribed. Durable history lives in the event log.

A subscriber that raises is logged and skipped; the remaining subscribers
still receive the event.
"""

import logging
from typing import Callable, List

from agentflow.events.models import PipelineEvent


logger = logging.getLogger(__name__)

EventHandler = Callable[[PipelineEvent], None]
Unsubscribe = Callable[[], None]


class EventBroadcaster:
    """Synchronous fan-out to registered handlers.

    Example:
        >>> broadcaster = EventBroadcaster()
        >>> received = []
        >>> unsubscribe = broadcaster.subscribe(received.append)
        >>> broadcaster.broadcast(event)
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        """Register handler and return a callable that removes it.

        Calling the returned function more than once is harmless.
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def broadcast(self, event: PipelineEvent) -> None:
        """Deliver event to every handler registered right now."""
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber raised",
                    extra={
                        "event_type": event.event_type,
                        "request_id": event.request_id,
                    },
                )
