"""Event models for the event bus.

This module defines the data models for published events:
- EventType: the versioned, fixed enumeration of event types the service emits
- PipelineEvent: the wire record shared by subscribers and the durable log

Wire format (one JSON object per event, one line per event in the log):
    {"event_type": "...", "request_id": "...", "timestamp": "<ISO-8601>",
     "data": {...}, "metadata": {...}}

Consumers must treat unknown event types as ignorable, so PipelineEvent
carries the type as a plain string and EventType.parse() returns None for
types this version does not know.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


EVENT_SCHEMA_VERSION = 1


class EventType(str, Enum):
    """Types of events published on the bus.

    Pipeline Events:
        PIPELINE_ACCEPTED .. PIPELINE_ERROR cover a quality-check request
        from registration to one of its four terminal outcomes. completed,
        failed, stopped and error are never conflated.

    Session Events:
        SESSION_* cover an issue-to-PR session. SESSION_MESSAGE,
        SESSION_TOOL_CALL and SESSION_TOOL_RESULT stream agent progress.

    Reaction Events:
        REACTION_* record decisions taken by the reaction engine.
    """

    PIPELINE_ACCEPTED = "pipeline.accepted"
    PIPELINE_TIER_CLASSIFIED = "pipeline.tier_classified"
    PIPELINE_STARTED = "pipeline.started"
    PIPELINE_AGENT_STARTED = "pipeline.agent.started"
    PIPELINE_AGENT_COMPLETED = "pipeline.agent.completed"
    PIPELINE_AGENT_FAILED = "pipeline.agent.failed"
    PIPELINE_CORRECTING = "pipeline.correcting"
    PIPELINE_COMPLETED = "pipeline.completed"
    PIPELINE_FAILED = "pipeline.failed"
    PIPELINE_STOPPED = "pipeline.stopped"
    PIPELINE_ERROR = "pipeline.error"

    SESSION_ACCEPTED = "session.accepted"
    SESSION_STARTED = "session.started"
    SESSION_TRANSITION = "session.transition"
    SESSION_MESSAGE = "session.message"
    SESSION_TOOL_CALL = "session.tool_call"
    SESSION_TOOL_RESULT = "session.tool_result"
    SESSION_PLAN_READY = "session.plan_ready"
    SESSION_IMPLEMENTING = "session.implementing"
    SESSION_PR_CREATED = "session.pr_created"
    SESSION_COMPLETED = "session.completed"
    SESSION_CI_PASSED = "session.ci_passed"
    SESSION_CI_FAILED = "session.ci_failed"
    SESSION_REVIEW_REQUESTED = "session.review_requested"
    SESSION_CHANGES_REQUESTED = "session.changes_requested"
    SESSION_MERGED = "session.merged"
    SESSION_FAILED = "session.failed"
    SESSION_ESCALATED = "session.escalated"
    SESSION_CANCELLED = "session.cancelled"

    REACTION_TRIGGERED = "reaction.triggered"
    REACTION_AGENT_RESPAWNED = "reaction.agent_respawned"
    REACTION_NOTIFIED = "reaction.notified"
    REACTION_ESCALATED = "reaction.escalated"
    REACTION_AUTO_MERGED = "reaction.auto_merged"

    @classmethod
    def parse(cls, value: str) -> Optional["EventType"]:
        """Return the EventType for value, or None if it is unknown."""
        try:
            return cls(value)
        except ValueError:
            return None


class PipelineEvent(BaseModel):
    """A single event published on the bus.

    Attributes:
        event_type: Dotted event name. Usually an EventType value; unknown
            names from newer producers are preserved as-is.
        request_id: Correlation id (pipeline request id or session id).
        timestamp: When the event was published (UTC).
        data: Event payload.
        metadata: Optional producer metadata.

    Example:
        >>> event = PipelineEvent(
        ...     event_type=EventType.PIPELINE_ACCEPTED,
        ...     request_id="req-1",
        ...     data={"branch": "feature/x"},
        ... )
        >>> event.event_type
        'pipeline.accepted'
    """

    event_type: str = Field(
        ...,
        min_length=1,
        description="Dotted event type name",
    )

    request_id: str = Field(
        ...,
        min_length=1,
        description="Correlation id the event belongs to",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event was published (UTC timezone)",
    )

    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event payload",
    )

    metadata: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Producer metadata, omitted from the wire when absent",
    )

    @field_validator("event_type", mode="before")
    @classmethod
    def normalize_event_type(cls, v: Any) -> Any:
        """Store enum members as their plain string value."""
        if isinstance(v, Enum):
            return v.value
        return v

    @property
    def known_type(self) -> Optional[EventType]:
        return EventType.parse(self.event_type)

    def to_json_line(self) -> str:
        """Serialize to a single JSON line (without the trailing newline)."""
        return self.model_dump_json(exclude_none=True)

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert to a flat dictionary for structured logging."""
        return {
            "event_type": self.event_type,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }
