"""Session data models.

This module defines the data models for the issue-to-PR flow:
- StartSessionRequest: inbound request to start a session
- SessionPlan: the plan produced by the planning step
- ExternalSignal: a CI / review / merge signal routed to a session
- Session: one issue-to-PR lifecycle with its status machine
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from agentflow.cancellation import CancellationToken
from agentflow.config import ReactionSignal
from agentflow.integrations.github import IssueDetail
from agentflow.state.machine import StateMachine
from agentflow.state.models import SESSION_TRANSITIONS, SessionStatus, is_active_session_status


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WriteOnceError(Exception):
    """Raised when a write-once session field is assigned a second time.

    Attributes:
        field_name: The field that was already set.
    """

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Session field '{field_name}' is already set")


class IssueSource(str, Enum):
    """Where a session's issue reference came from."""

    TRACKER = "tracker"
    INLINE = "inline"
    PROMPT = "prompt"


class StartSessionRequest(BaseModel):
    """Request to start a session.

    Exactly one issue source is used, by precedence: the tracker (when an
    issue number is given and a tracker is configured), the inline
    title/body, then the free-text prompt.
    """

    model_config = ConfigDict(populate_by_name=True)

    issue_number: Optional[int] = Field(default=None, ge=1, alias="issueNumber")
    prompt: Optional[str] = Field(default=None, min_length=1)
    title: Optional[str] = None
    body: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    project_path: str = Field(..., min_length=1, alias="projectPath")
    model: Optional[str] = None
    provider: Optional[str] = None
    base_branch: Optional[str] = Field(default=None, alias="baseBranch")
    skip_plan: bool = Field(default=False, alias="skipPlan")

    @model_validator(mode="after")
    def require_issue_source(self) -> "StartSessionRequest":
        if self.issue_number is None and not (self.prompt or self.title):
            raise ValueError("Provide either issueNumber, prompt, or title")
        return self

    @property
    def is_prompt_only(self) -> bool:
        return self.issue_number is None


class SessionPlan(BaseModel):
    """Implementation plan produced by the planner.

    Attributes:
        summary: One-paragraph summary of the change.
        approach: How the change will be made.
        steps: Ordered implementation steps.
        files_to_modify: Files the planner expects to touch.
        estimated_complexity: low, medium or high.
    """

    summary: str
    approach: str = ""
    steps: List[str] = Field(default_factory=list)
    files_to_modify: List[str] = Field(default_factory=list)
    estimated_complexity: str = "medium"


class SignalKind(str, Enum):
    """External events that sessions react to."""

    CI_PASSED = "ci_passed"
    CI_FAILED = "ci_failed"
    APPROVED = "approved"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"


class ExternalSignal(BaseModel):
    """A signal from the code host, routed to a session.

    Attributes:
        kind: What happened.
        branch: Head branch of the PR or check suite.
        pr_number: Pull request number, if known.
        issue_number: Issue number parsed from the branch, if any.
        details: Extra payload (sha, conclusion, reviewer, url).
    """

    kind: SignalKind
    branch: Optional[str] = None
    pr_number: Optional[int] = None
    issue_number: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Session:
    """One issue-to-PR lifecycle.

    Branch, worktree and pull request fields are write-once: they are set
    by the step that creates them and raise WriteOnceError afterwards.
    Status changes go through the session's state machine, normally via
    SessionStore.transition() so they are published and persisted.

    Attributes:
        id: Session id, also the event correlation id.
        issue: The issue being worked on (number 0 for prompt-only).
        source: Where the issue came from.
        project_path: Repository the session works in.
        model: Model identifier for the planner and implementer.
        provider: Provider name for the planner and implementer.
        base_branch: Branch the work is based on and merged into.
        plan: The plan, once planning finished.
        retry_counts: Signals seen per reaction signal.
        first_signal_at: When each reaction signal was first seen.
        escalation_reasons: Distinct reasons the session was escalated for.
        ci_green: Latest CI verdict on the PR.
        approved: Whether the PR has an approving review.
        error: Failure message for failed sessions.
        token: Cancellation token for the session's running work.
    """

    def __init__(
        self,
        issue: IssueDetail,
        project_path: str,
        model: str,
        provider: str,
        base_branch: str,
        source: IssueSource = IssueSource.TRACKER,
        session_id: Optional[str] = None,
        status: SessionStatus = SessionStatus.ACCEPTED,
        created_at: Optional[datetime] = None,
    ):
        self.id = session_id or f"session-{uuid.uuid4().hex[:12]}"
        self.issue = issue
        self.source = source
        self.project_path = project_path
        self.model = model
        self.provider = provider
        self.base_branch = base_branch
        self.machine: StateMachine[SessionStatus] = StateMachine(
            status, SESSION_TRANSITIONS, label=f"session:{self.id}"
        )

        self._branch: Optional[str] = None
        self._worktree_path: Optional[str] = None
        self._pr_number: Optional[int] = None
        self._pr_url: Optional[str] = None

        self.plan: Optional[SessionPlan] = None
        self.retry_counts: Dict[ReactionSignal, int] = {}
        self.first_signal_at: Dict[ReactionSignal, datetime] = {}
        self.escalation_reasons: List[str] = []
        self.ci_green = False
        self.approved = False
        self.error: Optional[str] = None
        self.stuck_signalled_at: Optional[datetime] = None

        self.created_at = created_at or utcnow()
        self.updated_at = self.created_at
        self.token = CancellationToken()
        self.task: Any = None

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self.machine.state

    @property
    def is_active(self) -> bool:
        return is_active_session_status(self.status)

    @property
    def is_prompt_only(self) -> bool:
        return self.source == IssueSource.PROMPT

    # -------------------------------------------------------------------------
    # Write-once fields
    # -------------------------------------------------------------------------

    @property
    def branch(self) -> Optional[str]:
        return self._branch

    @property
    def worktree_path(self) -> Optional[str]:
        return self._worktree_path

    @property
    def pr_number(self) -> Optional[int]:
        return self._pr_number

    @property
    def pr_url(self) -> Optional[str]:
        return self._pr_url

    def set_branch(self, branch: str, worktree_path: str) -> None:
        if self._branch is not None:
            raise WriteOnceError("branch")
        if self._worktree_path is not None:
            raise WriteOnceError("worktree_path")
        self._branch = branch
        self._worktree_path = worktree_path

    def set_pr(self, pr_number: Optional[int], pr_url: str) -> None:
        if self._pr_url is not None:
            raise WriteOnceError("pr_url")
        self._pr_number = pr_number
        self._pr_url = pr_url

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "issue": self.issue.model_dump(),
            "source": self.source.value,
            "project_path": self.project_path,
            "model": self.model,
            "provider": self.provider,
            "base_branch": self.base_branch,
            "branch": self._branch,
            "worktree_path": self._worktree_path,
            "pr_number": self._pr_number,
            "pr_url": self._pr_url,
            "plan": self.plan.model_dump() if self.plan else None,
            "retry_counts": {k.value: v for k, v in self.retry_counts.items()},
            "first_signal_at": {
                k.value: v.isoformat() for k, v in self.first_signal_at.items()
            },
            "escalation_reasons": list(self.escalation_reasons),
            "ci_green": self.ci_green,
            "approved": self.approved,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        """Rebuild a session from to_dict() output."""
        session = cls(
            issue=IssueDetail(**data["issue"]),
            project_path=data["project_path"],
            model=data["model"],
            provider=data["provider"],
            base_branch=data["base_branch"],
            source=IssueSource(data.get("source", IssueSource.TRACKER.value)),
            session_id=data["id"],
            status=SessionStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
        session._branch = data.get("branch")
        session._worktree_path = data.get("worktree_path")
        session._pr_number = data.get("pr_number")
        session._pr_url = data.get("pr_url")
        if data.get("plan"):
            session.plan = SessionPlan(**data["plan"])
        session.retry_counts = {
            ReactionSignal(k): v for k, v in (data.get("retry_counts") or {}).items()
        }
        session.first_signal_at = {
            ReactionSignal(k): datetime.fromisoformat(v)
            for k, v in (data.get("first_signal_at") or {}).items()
        }
        session.escalation_reasons = list(data.get("escalation_reasons") or [])
        session.ci_green = bool(data.get("ci_green"))
        session.approved = bool(data.get("approved"))
        session.error = data.get("error")
        session.updated_at = datetime.fromisoformat(data["updated_at"])
        return session

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, issue={self.issue.number}, status={self.status.value})"
