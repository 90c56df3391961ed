"""Event publication and durable history.

The EventBus is a thin facade over:
- EventBroadcaster: synchronous delivery to live subscribers
- JsonlEventLog: append-only JSONL file per correlation id

LoggingSubscriber and MetricsSubscriber are the built-in subscribers
wired at application start.
"""

from agentflow.events.broadcaster import EventBroadcaster, EventHandler, Unsubscribe
from agentflow.events.bus import EventBus
from agentflow.events.metrics import (
    MetricsSubscriber,
    PipelineMetrics,
    generate_metrics_output,
    get_metrics,
)
from agentflow.events.models import EVENT_SCHEMA_VERSION, EventType, PipelineEvent
from agentflow.events.store import EventLog, JsonlEventLog
from agentflow.events.subscribers import LoggingSubscriber

__all__ = [
    # Models
    "EVENT_SCHEMA_VERSION",
    "EventType",
    "PipelineEvent",
    # Bus
    "EventBroadcaster",
    "EventBus",
    "EventHandler",
    "EventLog",
    "JsonlEventLog",
    "Unsubscribe",
    # Subscribers
    "LoggingSubscriber",
    "MetricsSubscriber",
    "PipelineMetrics",
    "generate_metrics_output",
    "get_metrics",
]
