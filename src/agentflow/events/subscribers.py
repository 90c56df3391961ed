"""Built-in event bus subscribers.

LoggingSubscriber writes every published event as a structured log entry,
suitable for log aggregation. The log level is chosen from the event type:

- *.failed, *.error: ERROR
- *.stopped, *.escalated, *.cancelled: WARNING
- streaming agent steps (session.message, tool calls/results): DEBUG
- everything else: INFO
"""

import logging
from typing import Dict, Optional

from agentflow.events.models import EventType, PipelineEvent


logger = logging.getLogger(__name__)


_LEVEL_BY_SUFFIX: Dict[str, int] = {
    "failed": logging.ERROR,
    "error": logging.ERROR,
    "stopped": logging.WARNING,
    "escalated": logging.WARNING,
    "cancelled": logging.WARNING,
}

_STREAMING_TYPES = frozenset({
    EventType.SESSION_MESSAGE.value,
    EventType.SESSION_TOOL_CALL.value,
    EventType.SESSION_TOOL_RESULT.value,
})


class LoggingSubscriber:
    """Event handler that logs events using structured logging.

    Attributes:
        logger: The logger events are written to.

    Example:
        >>> bus.subscribe(LoggingSubscriber())
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    def level_for(self, event_type: str) -> int:
        if event_type in _STREAMING_TYPES:
            return logging.DEBUG
        suffix = event_type.rsplit(".", 1)[-1]
        return _LEVEL_BY_SUFFIX.get(suffix, logging.INFO)

    def __call__(self, event: PipelineEvent) -> None:
        self._logger.log(
            self.level_for(event.event_type),
            "Event %s for %s",
            event.event_type,
            event.request_id,
            extra=event.to_log_dict(),
        )
