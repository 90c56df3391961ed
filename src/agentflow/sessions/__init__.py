"""Issue-to-PR sessions: lifecycle, reactions and persistence."""

from agentflow.sessions.manager import (
    IssueFetchError,
    SessionCapacityError,
    SessionConflictError,
    SessionManager,
    SessionNotFoundError,
    SessionStepError,
    SessionTransitionError,
    TrackerUnavailableError,
    branch_name_for,
    slugify,
)
from agentflow.sessions.models import (
    ExternalSignal,
    IssueSource,
    Session,
    SessionPlan,
    SignalKind,
    StartSessionRequest,
    WriteOnceError,
)
from agentflow.sessions.orchestrator import (
    ImplementationResult,
    OrchestratorAgent,
    OrchestratorError,
    parse_plan,
)
from agentflow.sessions.reactions import ReactionDecision, ReactionEngine
from agentflow.sessions.store import SessionStore

__all__ = [
    # Models
    "ExternalSignal",
    "IssueSource",
    "Session",
    "SessionPlan",
    "SignalKind",
    "StartSessionRequest",
    "WriteOnceError",
    # Store
    "SessionStore",
    # Agents
    "ImplementationResult",
    "OrchestratorAgent",
    "OrchestratorError",
    "parse_plan",
    # Reactions
    "ReactionDecision",
    "ReactionEngine",
    # Manager
    "SessionManager",
    "branch_name_for",
    "slugify",
    # Errors
    "IssueFetchError",
    "SessionCapacityError",
    "SessionConflictError",
    "SessionNotFoundError",
    "SessionStepError",
    "SessionTransitionError",
    "TrackerUnavailableError",
]
