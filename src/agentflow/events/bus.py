"""Event bus facade.

The EventBus combines two collaborators behind one publish() call:
- EventBroadcaster: synchronous in-memory delivery to live subscribers
- EventLog: durable append of the same event for later replay

Publishing is serialized with an asyncio.Lock, so the order subscribers
observe for a correlation id is the order the log records. Subscribers
are notified first; a failed append is logged and does not undo the
notification.

Source:
- src/agentflow/events/broadcaster.py (EventBroadcaster)
- src/agentflow/events/store.py (EventLog, JsonlEventLog)
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from agentflow.events.broadcaster import EventBroadcaster, EventHandler, Unsubscribe
from agentflow.events.models import EventType, PipelineEvent
from agentflow.events.store import EventLog, JsonlEventLog


logger = logging.getLogger(__name__)


class EventBus:
    """Publish/subscribe with a durable per-id history.

    Attributes:
        broadcaster: Live subscriber fan-out.
        log: Durable append-only storage.

    Example:
        >>> bus = EventBus.for_directory(Path(".pipeline/events"))
        >>> unsubscribe = bus.subscribe(print)
        >>> await bus.publish(EventType.PIPELINE_ACCEPTED, "req-1", {"branch": "x"})
        >>> bus.get_events("req-1")
        [PipelineEvent(event_type='pipeline.accepted', ...)]
    """

    def __init__(
        self,
        log: EventLog,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self.log = log
        self.broadcaster = broadcaster or EventBroadcaster()
        self._lock = asyncio.Lock()

    @classmethod
    def for_directory(cls, directory: Path) -> "EventBus":
        """Build a bus backed by a JSONL log under directory."""
        return cls(log=JsonlEventLog(directory))

    def subscribe(self, handler: EventHandler) -> Unsubscribe:
        """Register a live handler. It sees no past events."""
        return self.broadcaster.subscribe(handler)

    async def publish(
        self,
        event_type: Union[EventType, str],
        request_id: str,
        data: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PipelineEvent:
        """Build, broadcast and persist an event.

        Args:
            event_type: The event type (an EventType or a dotted name).
            request_id: Correlation id.
            data: Event payload.
            metadata: Optional producer metadata.

        Returns:
            The published event.
        """
        event = PipelineEvent(
            event_type=event_type,
            request_id=request_id,
            data=data or {},
            metadata=metadata,
        )
        await self.publish_event(event)
        return event

    async def publish_event(self, event: PipelineEvent) -> None:
        """Broadcast and persist an already-built event."""
        async with self._lock:
            self.broadcaster.broadcast(event)
            try:
                self.log.append(event)
            except Exception:
                logger.exception(
                    "Failed to persist event",
                    extra={
                        "event_type": event.event_type,
                        "request_id": event.request_id,
                    },
                )

    def get_events(self, request_id: str) -> List[PipelineEvent]:
        """Return the durable history for request_id, oldest first."""
        return self.log.read(request_id)

    def release(self, request_id: str) -> None:
        """Let the log drop what it holds for a finished request_id."""
        self.log.release(request_id)

    def close(self) -> None:
        self.log.close()
