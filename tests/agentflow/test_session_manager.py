"""Unit tests for the SessionManager issue-to-PR flow and its reactions.

The orchestrator, git and tracker collaborators are replaced with fakes
so that each scenario exercises the real store, event bus, state machine
and reaction engine.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from agentflow.agents.executor import AgentStep, StepKind
from agentflow.agents.models import TokenUsage, ToolCall, ToolResult
from agentflow.config import PipelineServiceConfig, ReactionAction
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.integrations.git import GitResult
from agentflow.integrations.github import GitHubAPIError, IssueDetail
from agentflow.sessions import (
    ExternalSignal,
    ImplementationResult,
    IssueFetchError,
    IssueSource,
    Session,
    SessionCapacityError,
    SessionConflictError,
    SessionManager,
    SessionNotFoundError,
    SessionPlan,
    SessionStore,
    SessionTransitionError,
    SignalKind,
    StartSessionRequest,
    TrackerUnavailableError,
)
from agentflow.state.models import SessionStatus


def run_async(coro):
    return asyncio.run(coro)


PR_URL = "https://github.com/acme/widgets/pull/17"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


class FakeOrchestrator:
    def __init__(
        self,
        plan_gate: Optional[asyncio.Event] = None,
        respawn_gate: Optional[asyncio.Event] = None,
    ):
        self.plan_gate = plan_gate
        self.respawn_gate = respawn_gate
        self.feedback: List[Optional[str]] = []

    async def plan(self, issue, project_path, model, provider, token=None, on_step=None):
        if on_step is not None:
            await on_step(AgentStep(StepKind.TEXT, 1, text="Exploring the login handler"))
        if self.plan_gate is not None:
            await self.plan_gate.wait()
        return SessionPlan(summary=f"Fix {issue.title}", approach="Patch the handler", steps=["edit"])

    async def implement(
        self, issue, plan, worktree_path, branch, model, provider,
        feedback=None, token=None, on_step=None,
    ):
        self.feedback.append(feedback)
        if feedback is not None and self.respawn_gate is not None:
            await self.respawn_gate.wait()
        if on_step is not None:
            call = ToolCall(id="c1", name="edit_file", arguments={"path": "app.py"})
            await on_step(AgentStep(StepKind.TOOL_CALL, 1, tool_call=call))
            await on_step(AgentStep(
                StepKind.TOOL_RESULT, 1,
                tool_result=ToolResult(call_id="c1", name="edit_file", output="Edited app.py"),
            ))
        return ImplementationResult(summary="Patched", turns_used=2, usage=TokenUsage())


class FakeGit:
    def __init__(self, push_ok: bool = True, pr_ok: bool = True, merge_ok: bool = True):
        self.push_ok = push_ok
        self.pr_ok = pr_ok
        self.merge_ok = merge_ok
        self.commits: List[str] = []
        self.pr_titles: List[str] = []
        self.merged: List[int] = []

    async def create_worktree(self, project_path, branch, base_branch):
        return GitResult(ok=True, output=f"/worktrees/{branch.replace('/', '-')}")

    async def commit_all(self, worktree_path, message):
        self.commits.append(message)
        return GitResult(ok=True)

    async def push(self, worktree_path, branch):
        if not self.push_ok:
            return GitResult(ok=False, error="remote rejected")
        return GitResult(ok=True)

    async def create_pr(self, worktree_path, title, body, base_branch, head_branch):
        self.pr_titles.append(title)
        if not self.pr_ok:
            return GitResult(ok=False, error="gh not authenticated")
        return GitResult(ok=True, output=PR_URL + "\n")

    async def merge_pr(self, project_path, pr_number):
        self.merged.append(pr_number)
        if not self.merge_ok:
            return GitResult(ok=False, error="merge conflict")
        return GitResult(ok=True)


class FakeTracker:
    def __init__(self, fail_fetch: bool = False):
        self.fail_fetch = fail_fetch
        self.comments: List[tuple] = []

    async def fetch_issue_detail(self, issue_number: int) -> IssueDetail:
        await asyncio.sleep(0)
        if self.fail_fetch:
            raise GitHubAPIError("GitHub API error: 404", status_code=404)
        return IssueDetail(number=issue_number, title="Login fails", body="Steps to reproduce", labels=["bug"])

    async def add_comment(self, issue_number: int, body: str) -> None:
        self.comments.append((issue_number, body))


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        config: Optional[PipelineServiceConfig] = None,
        tracker: Optional[FakeTracker] = None,
        with_tracker: bool = True,
        git: Optional[FakeGit] = None,
        orchestrator: Optional[FakeOrchestrator] = None,
    ):
        self.clock = FakeClock()
        self.bus = EventBus.for_directory(tmp_path / "events")
        self.store = SessionStore(self.bus, clock=self.clock)
        self.tracker = tracker or (FakeTracker() if with_tracker else None)
        self.git = git or FakeGit()
        self.orchestrator = orchestrator or FakeOrchestrator()
        self.manager = SessionManager(
            config=config or PipelineServiceConfig(),
            store=self.store,
            bus=self.bus,
            orchestrator=self.orchestrator,
            git=self.git,
            tracker=self.tracker,
            clock=self.clock,
        )

    async def start_issue(self, issue_number: int = 42, **fields) -> Session:
        request = StartSessionRequest(issueNumber=issue_number, projectPath="/repo", **fields)
        session = await self.manager.start(request)
        await self.manager.wait(session.id)
        return session

    def types(self, session_id: str) -> List[str]:
        return [e.event_type for e in self.bus.get_events(session_id)]

    def transitions(self, session_id: str) -> List[str]:
        return [
            e.data["to"] for e in self.bus.get_events(session_id)
            if e.event_type == EventType.SESSION_TRANSITION.value
        ]


def _config(**sections) -> PipelineServiceConfig:
    return PipelineServiceConfig.model_validate(sections)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Intake and pipeline
# ---------------------------------------------------------------------------


class TestSessionPipeline:

    def test_issue_session_reaches_ci_running(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            return h, await h.start_issue()

        h, session = run_async(scenario())

        assert session.status == SessionStatus.CI_RUNNING
        assert session.source == IssueSource.TRACKER
        assert session.branch.startswith("issue/42/login-fails-")
        assert session.pr_number == 17
        assert session.pr_url == PR_URL
        assert h.git.pr_titles == ["fix: Login fails (Closes #42)"]
        assert session.id in h.tracker.comments[0][1]

        assert h.transitions(session.id) == ["planning", "implementing", "pr_created", "ci_running"]
        stream = [t for t in h.types(session.id) if t != EventType.SESSION_TRANSITION.value]
        assert stream == [
            "session.accepted",
            "session.started",
            "session.message",
            "session.plan_ready",
            "session.implementing",
            "session.tool_call",
            "session.tool_result",
            "session.pr_created",
            "session.completed",
        ]

    def test_prompt_session_without_tracker(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, with_tracker=False)
            session = await h.manager.start(
                StartSessionRequest(prompt="Add a health endpoint", projectPath="/repo")
            )
            await h.manager.wait(session.id)
            return h, session

        h, session = run_async(scenario())

        assert session.issue.number == 0
        assert session.is_prompt_only
        assert session.branch.startswith("prompt/add-a-health-endpoint-")
        assert h.git.pr_titles == ["feat: Add a health endpoint"]
        accepted = h.bus.get_events(session.id)[0]
        assert accepted.data["title"] == "Add a health endpoint"

    def test_inline_issue_without_tracker(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, with_tracker=False)
            return await h.start_issue(7, title="Crash on save", body="Traceback ...")

        session = run_async(scenario())

        assert session.source == IssueSource.INLINE
        assert session.issue.title == "Crash on save"

    def test_issue_number_needs_tracker_or_details(self, tmp_path: Path):
        async def scenario():
            await Harness(tmp_path, with_tracker=False).start_issue(7)

        with pytest.raises(TrackerUnavailableError):
            run_async(scenario())

    def test_tracker_failure_is_reported(self, tmp_path: Path):
        async def scenario():
            await Harness(tmp_path, tracker=FakeTracker(fail_fetch=True)).start_issue(7)

        with pytest.raises(IssueFetchError):
            run_async(scenario())

    def test_recent_session_conflicts_and_stale_one_is_superseded(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            first = await h.start_issue()
            with pytest.raises(SessionConflictError) as exc_info:
                await h.start_issue()
            assert exc_info.value.session_id == first.id

            h.clock.advance(3)
            second = await h.start_issue()
            return h, first, second

        h, first, second = run_async(scenario())

        assert first.status == SessionStatus.CANCELLED
        assert first.token.reason == "Superseded by new session"
        assert second.status == SessionStatus.CI_RUNNING
        assert EventType.SESSION_CANCELLED.value in h.types(first.id)

    def test_simultaneous_starts_for_one_issue(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            request = StartSessionRequest(issueNumber=7, projectPath="/repo")
            results = await asyncio.gather(
                h.manager.start(request), h.manager.start(request), return_exceptions=True
            )
            active = h.store.active_count()
            await h.manager.shutdown()
            return results, active

        results, active = run_async(scenario())

        sessions = [r for r in results if isinstance(r, Session)]
        conflicts = [r for r in results if isinstance(r, SessionConflictError)]
        assert len(sessions) == 1
        assert len(conflicts) == 1
        assert conflicts[0].session_id == sessions[0].id
        assert active == 1

    def test_parallel_cap(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, config=_config(tracker={"max_parallel": 1}))
            await h.manager.start(StartSessionRequest(prompt="one", projectPath="/repo"))
            with pytest.raises(SessionCapacityError) as exc_info:
                await h.manager.start(StartSessionRequest(prompt="two", projectPath="/repo"))
            await h.manager.shutdown()
            return exc_info.value

        error = run_async(scenario())
        assert (error.limit, error.active) == (1, 1)

    def test_push_failure_fails_the_session(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, git=FakeGit(push_ok=False))
            return h, await h.start_issue()

        h, session = run_async(scenario())

        assert session.status == SessionStatus.FAILED
        assert session.error == "Push failed: remote rejected"
        events = h.bus.get_events(session.id)
        assert events[-1].event_type == EventType.SESSION_FAILED.value
        assert events[-1].data["error_message"] == "Error: Push failed: remote rejected"

    def test_pr_failure_is_not_fatal(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, git=FakeGit(pr_ok=False))
            return h, await h.start_issue()

        h, session = run_async(scenario())

        assert session.status == SessionStatus.CI_RUNNING
        assert session.pr_url is None
        completed = h.bus.get_events(session.id)[-1]
        assert completed.event_type == EventType.SESSION_COMPLETED.value
        assert "gh not authenticated" in completed.data["error_message"]


# ---------------------------------------------------------------------------
# Signals and reactions
# ---------------------------------------------------------------------------


class TestSessionSignals:

    def test_ci_failure_respawns_with_feedback(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            decision = await h.manager.handle_signal(
                ExternalSignal(kind=SignalKind.CI_FAILED, branch=session.branch)
            )
            await h.manager.wait(session.id)
            return h, session, decision

        h, session, decision = run_async(scenario())

        assert decision.action == ReactionAction.RESPAWN_AGENT
        assert decision.attempt == 1
        assert session.status == SessionStatus.CI_RUNNING
        assert h.orchestrator.feedback[-1].startswith("CI failed on this PR")
        assert h.git.commits[-1] == "fix: address feedback for Login fails"
        assert h.transitions(session.id)[-2:] == ["implementing", "ci_running"]

    def test_signals_during_respawn_are_recorded_without_reaction(self, tmp_path: Path):
        async def scenario():
            gate = asyncio.Event()
            h = Harness(tmp_path, orchestrator=FakeOrchestrator(respawn_gate=gate))
            session = await h.start_issue()
            first = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_FAILED, pr_number=17))
            status_during = session.status
            await _settle()
            second = await h.manager.handle_signal(
                ExternalSignal(kind=SignalKind.CHANGES_REQUESTED, pr_number=17)
            )
            late_ci = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_PASSED, pr_number=17))
            gate.set()
            await h.manager.wait(session.id)
            return h, session, first, status_during, second, late_ci

        h, session, first, status_during, second, late_ci = run_async(scenario())

        assert first.action == ReactionAction.RESPAWN_AGENT
        assert status_during == SessionStatus.IMPLEMENTING
        assert second is None
        assert late_ci is None
        assert not session.ci_green
        assert session.status == SessionStatus.CI_RUNNING
        assert len(h.orchestrator.feedback) == 2
        types = h.types(session.id)
        assert EventType.SESSION_CHANGES_REQUESTED.value in types
        assert EventType.SESSION_FAILED.value not in types
        assert types.count(EventType.REACTION_AGENT_RESPAWNED.value) == 1

    def test_third_ci_failure_escalates(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            signal = ExternalSignal(kind=SignalKind.CI_FAILED, pr_number=17)
            decisions = []
            for _ in range(3):
                decisions.append(await h.manager.handle_signal(signal))
                await h.manager.wait(session.id)
            return h, session, decisions

        h, session, decisions = run_async(scenario())

        assert [d.action for d in decisions] == [
            ReactionAction.RESPAWN_AGENT,
            ReactionAction.RESPAWN_AGENT,
            ReactionAction.ESCALATE,
        ]
        assert decisions[-1].forced
        assert len(h.orchestrator.feedback) == 3
        assert session.status == SessionStatus.ESCALATED
        assert session.escalation_reasons == ["ci_failed persisted after 3 retries"]
        assert session.token.cancelled
        assert "Escalated for human review" in h.tracker.comments[-1][1]
        types = h.types(session.id)
        assert types.count(EventType.REACTION_ESCALATED.value) == 1

    def test_approved_and_green_notifies_by_default(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            after_ci = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_PASSED, pr_number=17))
            after_review = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.APPROVED, pr_number=17))
            return h, session, after_ci, after_review

        h, session, after_ci, after_review = run_async(scenario())

        assert after_ci is None
        assert after_review.action == ReactionAction.NOTIFY
        assert session.status == SessionStatus.REVIEW_REQUESTED
        assert h.tracker.comments[-1] == (42, "PR approved and CI green, ready to merge")
        assert h.git.merged == []

    def test_auto_merge(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, config=_config(sessions={"auto_merge": True}))
            session = await h.start_issue()
            await h.manager.handle_signal(ExternalSignal(kind=SignalKind.APPROVED, pr_number=17))
            decision = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_PASSED, pr_number=17))
            return h, session, decision

        h, session, decision = run_async(scenario())

        assert decision.action == ReactionAction.AUTO_MERGE
        assert h.git.merged == [17]
        assert session.status == SessionStatus.MERGED
        types = h.types(session.id)
        assert EventType.REACTION_AUTO_MERGED.value in types
        assert types[-1] == EventType.SESSION_MERGED.value

    def test_auto_merge_failure_escalates(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path, config=_config(sessions={"auto_merge": True}), git=FakeGit(merge_ok=False))
            session = await h.start_issue()
            await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_PASSED, pr_number=17))
            await h.manager.handle_signal(ExternalSignal(kind=SignalKind.APPROVED, pr_number=17))
            return session

        session = run_async(scenario())

        assert session.status == SessionStatus.ESCALATED
        assert session.escalation_reasons == ["Auto-merge failed: merge conflict"]

    def test_merged_signal_ends_session_and_later_signals_are_ignored(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            merged = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.MERGED, pr_number=17))
            late = await h.manager.handle_signal(ExternalSignal(kind=SignalKind.CI_FAILED, pr_number=17))
            return h, session, merged, late

        h, session, merged, late = run_async(scenario())

        assert merged is None and late is None
        assert session.status == SessionStatus.MERGED
        assert EventType.REACTION_TRIGGERED.value not in h.types(session.id)

    def test_signal_routed_by_issue_number(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            await h.manager.handle_signal(
                ExternalSignal(kind=SignalKind.CI_PASSED, branch="unrelated", issue_number=42)
            )
            return session

        assert run_async(scenario()).ci_green

    def test_changes_requested_escalates_after_time_limit(self, tmp_path: Path):
        config = _config(reactions={
            "changes_requested": {
                "action": "respawn_agent",
                "prompt": "Address review",
                "max_retries": 5,
                "escalate_after_min": 30,
            }
        })

        async def scenario():
            h = Harness(tmp_path, config=config)
            session = await h.start_issue()
            signal = ExternalSignal(kind=SignalKind.CHANGES_REQUESTED, pr_number=17)
            first = await h.manager.handle_signal(signal)
            await h.manager.wait(session.id)
            h.clock.advance(31)
            second = await h.manager.handle_signal(signal)
            return session, first, second

        session, first, second = run_async(scenario())

        assert first.action == ReactionAction.RESPAWN_AGENT
        assert second.action == ReactionAction.ESCALATE
        assert second.reason == "changes_requested unresolved after 30 minutes"
        assert session.status == SessionStatus.ESCALATED


# ---------------------------------------------------------------------------
# Control operations
# ---------------------------------------------------------------------------


class TestSessionControl:

    def test_escalate_is_idempotent_then_cancel(self, tmp_path: Path):
        async def scenario():
            h = Harness(tmp_path)
            session = await h.start_issue()
            await h.manager.escalate(session.id, "Needs product input")
            await h.manager.escalate(session.id, "Needs product input")
            await h.manager.escalate(session.id, "Security review required")
            await h.manager.cancel(session.id)
            with pytest.raises(SessionTransitionError):
                await h.manager.cancel(session.id)
            with pytest.raises(SessionTransitionError):
                await h.manager.escalate(session.id)
            return h, session

        h, session = run_async(scenario())

        assert session.status == SessionStatus.CANCELLED
        assert session.escalation_reasons == ["Needs product input", "Security review required"]
        types = h.types(session.id)
        assert types.count(EventType.SESSION_ESCALATED.value) == 1
        assert types.count(EventType.REACTION_ESCALATED.value) == 2

    def test_unknown_session(self, tmp_path: Path):
        async def scenario():
            await Harness(tmp_path).manager.cancel("session-missing")

        with pytest.raises(SessionNotFoundError):
            run_async(scenario())

    def test_delete_cancels_running_work(self, tmp_path: Path):
        async def scenario():
            gate = asyncio.Event()
            h = Harness(tmp_path, orchestrator=FakeOrchestrator(plan_gate=gate))
            session = await h.manager.start(StartSessionRequest(prompt="Refactor", projectPath="/repo"))
            await _settle()
            task = session.task
            await h.manager.delete(session.id)
            gate.set()
            await task
            return h, session

        h, session = run_async(scenario())

        assert h.store.get(session.id) is None
        assert session.status == SessionStatus.CANCELLED
        assert h.git.commits == []


class TestStaleSweep:

    def test_stuck_agent_is_escalated(self, tmp_path: Path):
        async def scenario():
            gate = asyncio.Event()
            h = Harness(tmp_path, orchestrator=FakeOrchestrator(plan_gate=gate))
            session = await h.manager.start(StartSessionRequest(issueNumber=5, projectPath="/repo"))
            await _settle()
            h.clock.advance(16)
            first = await h.manager.sweep_stale()
            second = await h.manager.sweep_stale()
            gate.set()
            await h.manager.wait(session.id)
            return session, first, second

        session, first, second = run_async(scenario())

        assert (first, second) == (1, 0)
        assert session.status == SessionStatus.ESCALATED
        assert session.escalation_reasons == ["Session stuck, needs human review"]

    def test_stuck_notice_fires_once_per_idle_period(self, tmp_path: Path):
        config = _config(reactions={"agent_stuck": {"action": "notify", "after_min": 15, "message": "Still working"}})

        async def scenario():
            gate = asyncio.Event()
            h = Harness(tmp_path, config=config, orchestrator=FakeOrchestrator(plan_gate=gate))
            session = await h.manager.start(StartSessionRequest(issueNumber=5, projectPath="/repo"))
            await _settle()
            h.clock.advance(10)
            early = await h.manager.sweep_stale()
            h.clock.advance(10)
            first = await h.manager.sweep_stale()
            second = await h.manager.sweep_stale()
            gate.set()
            await h.manager.wait(session.id)
            return h, session, (early, first, second)

        h, session, counts = run_async(scenario())

        assert counts == (0, 1, 0)
        assert (5, "Still working") in h.tracker.comments
        assert session.status == SessionStatus.CI_RUNNING


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestSessionStorePersistence:

    def test_records_survive_reload(self, tmp_path: Path):
        persist = tmp_path / "sessions.json"

        async def scenario():
            h = Harness(tmp_path)
            h.store.persist_path = persist
            session = await h.start_issue()
            await h.manager.escalate(session.id, "Needs a human")
            return session

        session = run_async(scenario())

        reloaded = SessionStore(EventBus.for_directory(tmp_path / "events"), persist_path=persist)
        assert reloaded.load() == 1
        restored = reloaded.get(session.id)
        assert restored.status == SessionStatus.ESCALATED
        assert restored.branch == session.branch
        assert restored.pr_number == 17
        assert restored.escalation_reasons == ["Needs a human"]
        assert restored.plan.summary == "Fix Login fails"

    def test_malformed_records_are_skipped(self, tmp_path: Path):
        persist = tmp_path / "sessions.json"
        persist.write_text('[{"id": "broken"}]')

        store = SessionStore(EventBus.for_directory(tmp_path), persist_path=persist)

        assert store.load() == 0
        assert len(store) == 0
