"""Lifecycle state machines.

Pipeline requests and sessions share one generic table-driven machine:
- pipeline: accepted → running → approved | failed | error
- session: accepted → planning → implementing → pr_created → ci_running
  → review_requested → merged, with escalation from any live state
"""

from agentflow.state.machine import StateMachine, TransitionError
from agentflow.state.models import (
    INACTIVE_SESSION_STATUSES,
    PIPELINE_TRANSITIONS,
    SESSION_TRANSITIONS,
    PipelineStatus,
    SessionStatus,
    is_active_session_status,
    is_terminal_pipeline_status,
)

__all__ = [
    # Machine
    "StateMachine",
    "TransitionError",
    # Tables
    "INACTIVE_SESSION_STATUSES",
    "PIPELINE_TRANSITIONS",
    "SESSION_TRANSITIONS",
    "PipelineStatus",
    "SessionStatus",
    "is_active_session_status",
    "is_terminal_pipeline_status",
]
