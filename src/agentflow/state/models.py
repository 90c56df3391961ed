"""Lifecycle states and transition tables.

This module defines the two lifecycles tracked by the service:
- PipelineStatus: a quality-check request, accepted → running → verdict
- SessionStatus: an issue-to-PR session, accepted → ... → merged

Each lifecycle ships its transition table. Tables are plain data so they
can be inspected by tests and property checks.
"""

from enum import Enum
from typing import Dict, FrozenSet


class PipelineStatus(str, Enum):
    """Status of a pipeline request.

    Status Flow:
        accepted → running → approved | failed | error

    A request that fails before it starts running (tier classification
    error) may move straight from accepted to failed or error.

    Attributes:
        ACCEPTED: Request registered, not yet classified.
        RUNNING: Quality agents are executing.
        APPROVED: Every agent passed.
        FAILED: At least one agent failed, or the run was stopped.
        ERROR: An internal or collaborator error ended the run.
    """

    ACCEPTED = "accepted"
    RUNNING = "running"
    APPROVED = "approved"
    FAILED = "failed"
    ERROR = "error"


PIPELINE_TRANSITIONS: Dict[PipelineStatus, FrozenSet[PipelineStatus]] = {
    PipelineStatus.ACCEPTED: frozenset({
        PipelineStatus.RUNNING,
        PipelineStatus.FAILED,
        PipelineStatus.ERROR,
    }),
    PipelineStatus.RUNNING: frozenset({
        PipelineStatus.APPROVED,
        PipelineStatus.FAILED,
        PipelineStatus.ERROR,
    }),
    PipelineStatus.APPROVED: frozenset(),
    PipelineStatus.FAILED: frozenset(),
    PipelineStatus.ERROR: frozenset(),
}


class SessionStatus(str, Enum):
    """Status of an issue-to-PR session.

    Status Flow:
        accepted → planning → implementing → pr_created → ci_running
        → review_requested → merged

    ci_running and review_requested can re-enter implementing when a
    reaction respawns the agent. Every non-terminal state can escalate;
    an escalated session waits for a human and can only be cancelled.

    Attributes:
        ACCEPTED: Session registered.
        PLANNING: Agent is producing a plan.
        IMPLEMENTING: Agent is editing the worktree.
        PR_CREATED: Branch pushed, pull request opened (or attempted).
        CI_RUNNING: Waiting on CI for the pull request.
        REVIEW_REQUESTED: CI green, waiting on review.
        MERGED: Pull request merged.
        FAILED: A pipeline step failed.
        ESCALATED: Handed to a human.
        CANCELLED: Cancelled by a caller or superseded.
    """

    ACCEPTED = "accepted"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    PR_CREATED = "pr_created"
    CI_RUNNING = "ci_running"
    REVIEW_REQUESTED = "review_requested"
    MERGED = "merged"
    FAILED = "failed"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"


_ALWAYS = frozenset({
    SessionStatus.FAILED,
    SessionStatus.ESCALATED,
    SessionStatus.CANCELLED,
})

SESSION_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.ACCEPTED: _ALWAYS | {SessionStatus.PLANNING},
    SessionStatus.PLANNING: _ALWAYS | {SessionStatus.IMPLEMENTING},
    SessionStatus.IMPLEMENTING: _ALWAYS | {SessionStatus.PR_CREATED, SessionStatus.CI_RUNNING},
    SessionStatus.PR_CREATED: _ALWAYS | {SessionStatus.CI_RUNNING},
    # Respawned agents re-enter implementing from either waiting state
    SessionStatus.CI_RUNNING: _ALWAYS | {
        SessionStatus.IMPLEMENTING,
        SessionStatus.REVIEW_REQUESTED,
        SessionStatus.MERGED,
    },
    SessionStatus.REVIEW_REQUESTED: _ALWAYS | {
        SessionStatus.IMPLEMENTING,
        SessionStatus.MERGED,
    },
    SessionStatus.ESCALATED: frozenset({SessionStatus.CANCELLED}),
    SessionStatus.MERGED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


INACTIVE_SESSION_STATUSES: FrozenSet[SessionStatus] = frozenset({
    SessionStatus.MERGED,
    SessionStatus.FAILED,
    SessionStatus.ESCALATED,
    SessionStatus.CANCELLED,
})


def is_terminal_pipeline_status(status: PipelineStatus) -> bool:
    return not PIPELINE_TRANSITIONS.get(status)


def is_active_session_status(status: SessionStatus) -> bool:
    """Return True while a session counts against the parallel cap."""
    return status not in INACTIVE_SESSION_STATUSES
