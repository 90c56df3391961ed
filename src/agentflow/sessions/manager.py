"""Session manager: the issue-to-PR flow.

Drives a session through:
    accepted → planning → implementing → pr_created → ci_running

then hands it to the ReactionEngine as CI, review and merge signals
arrive from the code host:
    ci_passed → review_requested; approval + green CI → approved_and_green
    ci_failed / changes_requested → respawn, notify or escalate
    merged → merged

Any error inside a pipeline step is fatal for the session: it moves to
failed and publishes a user-visible error message plus session.failed.
Failing to open the pull request is the one exception; the branch was
pushed, so the session carries on to ci_running.

Source:
- src/agentflow/sessions/store.py (SessionStore)
- src/agentflow/sessions/reactions.py (ReactionEngine)
- src/agentflow/sessions/orchestrator.py (OrchestratorAgent)
- src/agentflow/integrations/git.py (GitOperations)
- src/agentflow/integrations/github.py (Tracker)
"""

import asyncio
import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from agentflow.agents.executor import AgentStep, StepKind
from agentflow.cancellation import CancelledByRequest
from agentflow.config import PipelineServiceConfig, ReactionSignal
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.integrations.git import GitOperations, GitResult, parse_pr_number
from agentflow.integrations.github import IssueDetail, Tracker
from agentflow.sessions.models import (
    ExternalSignal,
    IssueSource,
    Session,
    SessionPlan,
    SignalKind,
    StartSessionRequest,
    utcnow,
)
from agentflow.sessions.orchestrator import OrchestratorAgent
from agentflow.sessions.reactions import ReactionDecision, ReactionEngine
from agentflow.sessions.store import SessionStore
from agentflow.state.models import SessionStatus


logger = logging.getLogger(__name__)

# Statuses in which an agent is (or is about to be) at work on the session.
AGENT_WORKING_STATUSES = frozenset({
    SessionStatus.ACCEPTED,
    SessionStatus.PLANNING,
    SessionStatus.IMPLEMENTING,
})


# =============================================================================
# Errors
# =============================================================================


class SessionConflictError(Exception):
    """Raised when an issue already has a recently active session.

    Attributes:
        session_id: The existing session.
        status: Its current status.
    """

    def __init__(self, session_id: str, status: SessionStatus):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Issue already has an active session: {session_id}")


class SessionCapacityError(Exception):
    """Raised when the parallel session cap is reached."""

    def __init__(self, limit: int, active: int):
        self.limit = limit
        self.active = active
        super().__init__(f"Max parallel sessions reached ({limit})")


class SessionNotFoundError(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionTransitionError(Exception):
    """Raised when a control operation is not allowed from the current status."""

    def __init__(self, session_id: str, status: SessionStatus, target: SessionStatus):
        self.session_id = session_id
        self.status = status
        self.target = target
        super().__init__(f"Cannot move session to {target.value} from status: {status.value}")


class TrackerUnavailableError(Exception):
    """Raised when an issue number is given without a tracker or inline details."""


class IssueFetchError(Exception):
    """Raised when the tracker cannot return the requested issue."""


class SessionStepError(Exception):
    """Raised inside the session pipeline to fail the session with a message."""


# =============================================================================
# Helpers
# =============================================================================


def slugify(text: str) -> str:
    """Convert an issue title to a branch-friendly slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:50] or "task"


def branch_name_for(issue: IssueDetail, prompt_only: bool, suffix: Optional[str] = None) -> str:
    """Branch for a session's work: issue/<n>/<slug>-<suffix> or prompt/<slug>-<suffix>."""
    suffix = suffix or uuid.uuid4().hex[:5]
    prefix = "prompt" if prompt_only else f"issue/{issue.number}"
    return f"{prefix}/{slugify(issue.title)}-{suffix}"


class SessionManager:
    """Starts, drives and controls sessions.

    Attributes:
        config: Pipeline configuration.
        store: Session registry.
        bus: Event bus.
        orchestrator: Planner and implementer.
        git: Worktree, push and pull request operations.
        tracker: Issue tracker, if configured.
        reactions: Reaction engine wired to this manager.

    Example:
        >>> session = await manager.start(StartSessionRequest(issueNumber=7, projectPath="/repo"))
        >>> session.status
        <SessionStatus.PLANNING: 'planning'>
    """

    def __init__(
        self,
        config: PipelineServiceConfig,
        store: SessionStore,
        bus: EventBus,
        orchestrator: OrchestratorAgent,
        git: GitOperations,
        tracker: Optional[Tracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.store = store
        self.bus = bus
        self.orchestrator = orchestrator
        self.git = git
        self.tracker = tracker
        self._clock = clock
        self._start_lock = asyncio.Lock()
        self.reactions = ReactionEngine(
            config=config,
            store=store,
            bus=bus,
            respawn=self._schedule_respawn,
            merge=self._merge_pr,
            tracker=tracker,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Intake
    # -------------------------------------------------------------------------

    async def start(self, request: StartSessionRequest) -> Session:
        """Create a session and schedule its pipeline.

        Raises:
            SessionConflictError: The issue has an active, recently updated session.
            SessionCapacityError: The parallel session cap is reached.
            TrackerUnavailableError: No tracker and no inline issue details.
            IssueFetchError: The tracker could not return the issue.
        """
        # Held from the uniqueness and capacity checks until the session is registered.
        async with self._start_lock:
            if not request.is_prompt_only:
                await self._supersede_or_reject(request.issue_number)

            limit = self.config.tracker.max_parallel
            active = self.store.active_count()
            if active >= limit:
                raise SessionCapacityError(limit, active)

            issue, source = await self._build_issue(request)

            session = Session(
                issue=issue,
                project_path=request.project_path,
                model=request.model or self.config.orchestrator.model,
                provider=request.provider or self.config.orchestrator.provider,
                base_branch=request.base_branch or self.config.branch.main,
                source=source,
                created_at=self._clock(),
            )
            self.store.add(session)

        display_title = issue.title if session.is_prompt_only else f"#{issue.number}: {issue.title}"
        await self.bus.publish(
            EventType.SESSION_ACCEPTED,
            session.id,
            {
                "title": display_title,
                "prompt": issue.body or issue.title,
                "issue_number": issue.number,
                "source": source.value,
                "worktree_path": request.project_path,
                "model": session.model,
                "provider": session.provider,
            },
        )
        await self.store.transition(session, SessionStatus.PLANNING)

        logger.info(
            "Session started",
            extra={"session_id": session.id, "issue_number": issue.number, "source": source.value},
        )
        self._spawn(session, self._run_pipeline(session, skip_plan=request.skip_plan))
        return session

    async def _supersede_or_reject(self, issue_number: int) -> None:
        existing = self.store.active_for_issue(issue_number)
        if existing is None:
            return
        idle = self._clock() - existing.updated_at
        if idle < timedelta(minutes=self.config.sessions.stale_after_min):
            raise SessionConflictError(existing.id, existing.status)

        logger.info(
            "Cancelling stale session for retry",
            extra={"session_id": existing.id, "issue_number": issue_number},
        )
        await self._cancel(existing, "Superseded by new session")

    async def _build_issue(self, request: StartSessionRequest) -> Tuple[IssueDetail, IssueSource]:
        if request.is_prompt_only:
            prompt_text = request.prompt or request.title or ""
            title = request.title or prompt_text[:80].replace("\n", " ")
            return (
                IssueDetail(
                    number=0,
                    title=title,
                    body=request.body or request.prompt or title,
                    labels=list(request.labels),
                ),
                IssueSource.PROMPT,
            )

        if self.tracker is not None:
            try:
                issue = await self.tracker.fetch_issue_detail(request.issue_number)
            except Exception as e:
                raise IssueFetchError(f"Failed to fetch issue: {e}") from e
            return issue, IssueSource.TRACKER

        if request.title:
            return (
                IssueDetail(
                    number=request.issue_number,
                    title=request.title,
                    body=request.body or "",
                    labels=list(request.labels),
                ),
                IssueSource.INLINE,
            )

        raise TrackerUnavailableError(
            "No tracker configured. Provide inline issue details (title, body) or a prompt."
        )

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _spawn(self, session: Session, coro: Awaitable[None]) -> None:
        session.task = asyncio.get_running_loop().create_task(self._guard(session, coro))

    async def _guard(self, session: Session, coro: Awaitable[None]) -> None:
        """Top-level catch for a session task: failures become terminal events."""
        try:
            await coro
        except CancelledByRequest as e:
            logger.info(
                "Session work cancelled",
                extra={"session_id": session.id, "reason": e.reason},
            )
        except Exception as e:
            logger.exception("Session pipeline failed", extra={"session_id": session.id})
            await self._fail(session, str(e) or type(e).__name__)

    async def wait(self, session_id: str) -> None:
        """Wait for a session's current task, if any, to settle."""
        session = self.store.get(session_id)
        if session is not None and session.task is not None:
            await asyncio.gather(session.task, return_exceptions=True)

    async def _run_pipeline(self, session: Session, skip_plan: bool = False) -> None:
        await self.bus.publish(EventType.SESSION_STARTED, session.id, {})
        await self._comment_started(session)
        issue = session.issue

        # Step 1: plan
        if skip_plan:
            plan = SessionPlan(summary=issue.title, approach=issue.body or issue.title)
        else:
            plan = await self.orchestrator.plan(
                issue,
                session.project_path,
                session.model,
                session.provider,
                token=session.token,
                on_step=self._step_publisher(session),
            )
        session.plan = plan
        self.store.touch(session)
        await self.bus.publish(
            EventType.SESSION_PLAN_READY,
            session.id,
            {"plan": plan.model_dump()},
        )
        session.token.raise_if_cancelled()

        # Step 2: worktree and branch
        branch = branch_name_for(issue, session.is_prompt_only)
        worktree = await self.git.create_worktree(session.project_path, branch, session.base_branch)
        if not worktree.ok:
            raise SessionStepError(f"Worktree creation failed: {worktree.error}")
        session.set_branch(branch, worktree.output)
        await self._require_transition(session, SessionStatus.IMPLEMENTING)
        await self.bus.publish(
            EventType.SESSION_IMPLEMENTING,
            session.id,
            {"branch": branch, "worktree_path": worktree.output},
        )

        # Step 3: implement
        await self._implement_and_push(session, feedback=None)

        # Step 4: pull request
        await self._require_transition(session, SessionStatus.PR_CREATED)
        pr = await self.git.create_pr(
            session.worktree_path,
            self._pr_title(session),
            self._pr_body(session),
            session.base_branch,
            branch,
        )
        if pr.ok:
            pr_url = pr.output.strip()
            session.set_pr(parse_pr_number(pr_url), pr_url)
            self.store.touch(session)
            await self.bus.publish(
                EventType.SESSION_PR_CREATED,
                session.id,
                {"pr_number": session.pr_number, "pr_url": pr_url, "branch": branch},
            )
        else:
            logger.warning(
                "PR creation failed, session still tracks the pushed branch",
                extra={"session_id": session.id, "error": pr.error},
            )
            await self._emit_error(
                session,
                f"PR creation failed: {pr.error}. Branch was pushed but PR could not be created.",
            )

        # Step 5: wait for CI
        await self._require_transition(session, SessionStatus.CI_RUNNING)
        label = issue.title if session.is_prompt_only else f"#{issue.number}: {issue.title}"
        completion: Dict[str, Any] = {
            "result": f"PR created for {label}" if pr.ok else f"Branch pushed for {label} (PR creation failed)",
            "branch": branch,
        }
        if not pr.ok:
            completion["error_message"] = f"Error: PR creation failed: {pr.error}"
        await self.bus.publish(EventType.SESSION_COMPLETED, session.id, completion)

    async def _implement_and_push(self, session: Session, feedback: Optional[str]) -> None:
        result = await self.orchestrator.implement(
            session.issue,
            session.plan or SessionPlan(summary=session.issue.title),
            session.worktree_path,
            session.branch,
            session.model,
            session.provider,
            feedback=feedback,
            token=session.token,
            on_step=self._step_publisher(session),
        )
        self.store.touch(session)
        session.token.raise_if_cancelled()
        logger.info(
            "Implementation complete",
            extra={"session_id": session.id, "turns_used": result.turns_used},
        )

        commit = await self.git.commit_all(session.worktree_path, self._commit_message(session, feedback))
        if not commit.ok:
            raise SessionStepError(f"Commit failed: {commit.error}")

        push = await self.git.push(session.worktree_path, session.branch)
        if not push.ok:
            raise SessionStepError(f"Push failed: {push.error}")

    async def _require_transition(self, session: Session, status: SessionStatus) -> None:
        session.token.raise_if_cancelled()
        if not await self.store.transition(session, status):
            raise SessionStepError(
                f"Cannot move session to {status.value} from status: {session.status.value}"
            )

    def _step_publisher(self, session: Session):
        """Stream agent steps as session.message / tool_call / tool_result events."""

        async def publish(step: AgentStep) -> None:
            self.store.touch(session)
            if step.kind == StepKind.TEXT:
                await self.bus.publish(
                    EventType.SESSION_MESSAGE,
                    session.id,
                    {"role": "assistant", "content": step.text, "turn": step.turn},
                )
            elif step.kind == StepKind.TOOL_CALL and step.tool_call is not None:
                await self.bus.publish(
                    EventType.SESSION_TOOL_CALL,
                    session.id,
                    {
                        "tool_name": step.tool_call.name,
                        "tool_input": step.tool_call.arguments,
                        "tool_call_id": step.tool_call.id,
                    },
                )
            elif step.kind == StepKind.TOOL_RESULT and step.tool_result is not None:
                await self.bus.publish(
                    EventType.SESSION_TOOL_RESULT,
                    session.id,
                    {
                        "tool_call_id": step.tool_result.call_id,
                        "output": step.tool_result.output,
                        "is_error": step.tool_result.is_error,
                    },
                )

        return publish

    async def _emit_error(self, session: Session, message: str) -> None:
        await self.bus.publish(
            EventType.SESSION_MESSAGE,
            session.id,
            {"role": "assistant", "content": f"Error: {message}"},
        )

    async def _fail(self, session: Session, message: str) -> None:
        await self._emit_error(session, message)
        if not await self.store.transition(session, SessionStatus.FAILED, reason=message):
            return
        session.error = message
        self.store.save()
        await self.bus.publish(
            EventType.SESSION_FAILED,
            session.id,
            {"error": message, "error_message": f"Error: {message}"},
        )

    async def _comment_started(self, session: Session) -> None:
        if self.tracker is None or session.is_prompt_only:
            return
        try:
            await self.tracker.add_comment(
                session.issue.number,
                f"**agentflow** is now working on this issue.\n\nSession: `{session.id}`",
            )
        except Exception as e:
            logger.warning(
                "Failed to comment on issue",
                extra={"session_id": session.id, "error": str(e)},
            )

    def _pr_title(self, session: Session) -> str:
        if session.is_prompt_only:
            return f"feat: {session.issue.title}"
        return f"fix: {session.issue.title} (Closes #{session.issue.number})"

    def _pr_body(self, session: Session) -> str:
        plan = session.plan or SessionPlan(summary=session.issue.title)
        return (
            f"## Summary\n\n{plan.summary}\n\n## Approach\n\n{plan.approach}\n\n---\n\n"
            f"Automated by agentflow session `{session.id}`"
        )

    def _commit_message(self, session: Session, feedback: Optional[str]) -> str:
        if feedback:
            return f"fix: address feedback for {session.issue.title}"
        if session.is_prompt_only:
            return f"feat: {session.issue.title}"
        return f"fix: {session.issue.title} (#{session.issue.number})"

    # -------------------------------------------------------------------------
    # Reaction callbacks
    # -------------------------------------------------------------------------

    async def _schedule_respawn(self, session: Session, signal: ReactionSignal, prompt: str) -> None:
        # Implementing before this returns; later signals see the agent at work.
        await self._guard(session, self._enter_respawn(session))
        if session.status == SessionStatus.IMPLEMENTING:
            self._spawn(session, self._respawn(session, signal, prompt))

    async def _enter_respawn(self, session: Session) -> None:
        if session.status == SessionStatus.PR_CREATED:
            await self._require_transition(session, SessionStatus.CI_RUNNING)
        await self._require_transition(session, SessionStatus.IMPLEMENTING)

    async def _respawn(self, session: Session, signal: ReactionSignal, prompt: str) -> None:
        await self.bus.publish(
            EventType.SESSION_IMPLEMENTING,
            session.id,
            {"branch": session.branch, "respawn": True, "signal": signal.value},
        )
        session.ci_green = False
        if signal == ReactionSignal.CHANGES_REQUESTED:
            session.approved = False

        await self._implement_and_push(session, feedback=prompt)
        await self._require_transition(session, SessionStatus.CI_RUNNING)

    async def _merge_pr(self, session: Session) -> GitResult:
        if session.pr_number is None:
            return GitResult(ok=False, error="Session has no pull request")
        return await self.git.merge_pr(session.project_path, session.pr_number)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        session = self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def escalate(self, session_id: str, reason: Optional[str] = None) -> Session:
        """Escalate a session to a human. Repeated escalation is a no-op.

        Raises:
            SessionNotFoundError: Unknown session id.
            SessionTransitionError: The session already merged, failed or was cancelled.
        """
        session = self.get(session_id)
        if session.status != SessionStatus.ESCALATED and not session.machine.can_transition(
            SessionStatus.ESCALATED
        ):
            raise SessionTransitionError(session.id, session.status, SessionStatus.ESCALATED)
        await self.reactions.escalate(session, reason or "Manual escalation")
        return session

    async def cancel(self, session_id: str, reason: Optional[str] = None) -> Session:
        """Cancel a session and its running work.

        Raises:
            SessionNotFoundError: Unknown session id.
            SessionTransitionError: The session is already in a terminal state.
        """
        session = self.get(session_id)
        if not await self._cancel(session, reason or "Cancelled by user"):
            raise SessionTransitionError(session.id, session.status, SessionStatus.CANCELLED)
        return session

    async def _cancel(self, session: Session, reason: str) -> bool:
        if not await self.store.transition(session, SessionStatus.CANCELLED, reason=reason):
            return False
        session.token.cancel(reason)
        await self.bus.publish(EventType.SESSION_CANCELLED, session.id, {"reason": reason})
        return True

    async def delete(self, session_id: str) -> None:
        """Remove a session record, cancelling it first if it is still active.

        Raises:
            SessionNotFoundError: Unknown session id.
        """
        session = self.get(session_id)
        if session.is_active:
            await self._cancel(session, "Session deleted")
        self.store.remove(session_id)

    async def shutdown(self) -> None:
        """Cancel running session work and wait for it to settle."""
        tasks = []
        for session in self.store.list():
            if session.task is not None and not session.task.done():
                session.token.cancel("Service shutting down")
                tasks.append(session.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------------
    # External signals
    # -------------------------------------------------------------------------

    async def handle_signal(self, signal: ExternalSignal) -> Optional[ReactionDecision]:
        """Route a code-host signal to its session and react.

        Returns:
            The reaction decision, or None when no reaction was needed, an
            agent is still working, or no active session owns the signal.
        """
        session = self.store.find_for_signal(
            branch=signal.branch,
            pr_number=signal.pr_number,
            issue_number=signal.issue_number,
        )
        if session is None:
            logger.info(
                "No active session for signal",
                extra={"signal": signal.kind.value, "branch": signal.branch, "pr_number": signal.pr_number},
            )
            return None

        self.store.touch(session)
        payload = {"branch": signal.branch, "pr_number": signal.pr_number, **signal.details}

        if signal.kind == SignalKind.MERGED:
            if await self.store.transition(session, SessionStatus.MERGED, reason="PR merged"):
                await self.bus.publish(EventType.SESSION_MERGED, session.id, payload)
            return None

        if signal.kind == SignalKind.CI_PASSED:
            await self.bus.publish(EventType.SESSION_CI_PASSED, session.id, payload)
            if self._agent_busy(session):
                return self._skip_reaction(session, signal)
            session.ci_green = True
            if session.status == SessionStatus.PR_CREATED:
                await self.store.transition(session, SessionStatus.CI_RUNNING)
            if session.status == SessionStatus.CI_RUNNING:
                await self.store.transition(session, SessionStatus.REVIEW_REQUESTED, reason="CI passed")
            return await self._react_if_ready_to_merge(session)

        if signal.kind == SignalKind.APPROVED:
            session.approved = True
            await self.bus.publish(
                EventType.SESSION_REVIEW_REQUESTED,
                session.id,
                {**payload, "approved": True},
            )
            if self._agent_busy(session):
                return self._skip_reaction(session, signal)
            return await self._react_if_ready_to_merge(session)

        if signal.kind == SignalKind.CI_FAILED:
            session.ci_green = False
            await self.bus.publish(EventType.SESSION_CI_FAILED, session.id, payload)
            if self._agent_busy(session):
                return self._skip_reaction(session, signal)
            return await self.reactions.react(session, ReactionSignal.CI_FAILED)

        session.approved = False
        await self.bus.publish(EventType.SESSION_CHANGES_REQUESTED, session.id, payload)
        if self._agent_busy(session):
            return self._skip_reaction(session, signal)
        return await self.reactions.react(session, ReactionSignal.CHANGES_REQUESTED)

    @staticmethod
    def _agent_busy(session: Session) -> bool:
        if session.status in AGENT_WORKING_STATUSES:
            return True
        # The first pipeline still owns the session until it reaches ci_running.
        return (
            session.status == SessionStatus.PR_CREATED
            and session.task is not None
            and not session.task.done()
        )

    @staticmethod
    def _skip_reaction(session: Session, signal: ExternalSignal) -> None:
        # The running agent pushes a new commit; CI and review restart from it.
        logger.info(
            "Agent still working, signal recorded without reaction",
            extra={"session_id": session.id, "signal": signal.kind.value, "status": session.status.value},
        )
        return None

    async def _react_if_ready_to_merge(self, session: Session) -> Optional[ReactionDecision]:
        if session.ci_green and session.approved:
            return await self.reactions.react(session, ReactionSignal.APPROVED_AND_GREEN)
        return None

    async def sweep_stale(self) -> int:
        """Send agent_stuck to sessions whose agent has been idle too long.

        Only sessions with an agent at work (accepted, planning,
        implementing) are checked; each idle period is signalled once.

        Returns:
            Number of sessions signalled.
        """
        rule = self.config.reactions.agent_stuck
        if rule.after_min is None:
            return 0
        now = self._clock()
        threshold = timedelta(minutes=rule.after_min)
        signalled = 0
        for session in self.store.list():
            if session.status not in AGENT_WORKING_STATUSES:
                continue
            if now - session.updated_at < threshold:
                continue
            if session.stuck_signalled_at is not None and session.stuck_signalled_at >= session.updated_at:
                continue
            session.stuck_signalled_at = now
            await self.reactions.react(session, ReactionSignal.AGENT_STUCK)
            signalled += 1
        return signalled

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Run sweep_stale forever, every interval_seconds."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_stale()
            except Exception:
                logger.exception("Stale session sweep failed")
