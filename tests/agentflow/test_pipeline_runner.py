"""Unit tests for the PipelineRunner lifecycle.

Every run must end with exactly one terminal event: completed, failed,
stopped or error.
"""

import asyncio
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from agentflow.agents.models import AgentResult, AgentStatus, Finding
from agentflow.breaker import CircuitBreaker
from agentflow.config import CircuitBreakerConfig, PipelineServiceConfig
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.models import DiffStats, Tier
from agentflow.pipeline import (
    PipelineConflictError,
    PipelineRequest,
    PipelineRequestConfig,
    PipelineRunner,
    QualityPipelineResult,
    build_quality_breaker,
)
from agentflow.state.models import PipelineStatus


def run_async(coro):
    return asyncio.run(coro)


TERMINAL_TYPES = {
    EventType.PIPELINE_COMPLETED.value,
    EventType.PIPELINE_FAILED.value,
    EventType.PIPELINE_STOPPED.value,
    EventType.PIPELINE_ERROR.value,
}


class FakeDiffProvider:
    def __init__(self, stats: Optional[DiffStats] = None, gate: Optional[asyncio.Event] = None):
        self.stats = stats or DiffStats(files_changed=2, lines_added=20, lines_deleted=5)
        self.gate = gate
        self.calls: List[tuple] = []

    async def diff_stats(self, worktree_path: str, base_branch: str) -> DiffStats:
        self.calls.append((worktree_path, base_branch))
        if self.gate is not None:
            await self.gate.wait()
        return self.stats


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_request(request_id: str = "req-1", **overrides) -> PipelineRequest:
    fields = dict(request_id=request_id, branch="feature/x", worktree_path="/tmp/wt")
    fields.update(overrides)
    return PipelineRequest(**fields)


def _make_quality(statuses: Optional[List[AgentStatus]] = None) -> MagicMock:
    statuses = statuses or [AgentStatus.PASSED, AgentStatus.PASSED]
    results = [
        AgentResult(agent=f"agent-{i}", status=s, findings=[Finding(description="note")])
        for i, s in enumerate(statuses)
    ]
    overall = "passed" if all(s == AgentStatus.PASSED for s in statuses) else "failed"
    quality = MagicMock()
    quality.run = AsyncMock(return_value=QualityPipelineResult(
        agent_results=results,
        overall_status=overall,
    ))
    return quality


def _make_runner(
    tmp_path: Path,
    quality=None,
    diff_provider=None,
    config: Optional[PipelineServiceConfig] = None,
    breaker: Optional[CircuitBreaker] = None,
):
    bus = EventBus.for_directory(tmp_path)
    runner = PipelineRunner(
        config=config or PipelineServiceConfig(),
        bus=bus,
        diff_provider=diff_provider or FakeDiffProvider(),
        quality_pipeline=quality or _make_quality(),
        breaker=breaker,
    )
    return runner, bus


def _types(bus: EventBus, request_id: str = "req-1") -> List[str]:
    return [e.event_type for e in bus.get_events(request_id)]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPipelineRunnerVerdicts:

    def test_approved_run(self, tmp_path: Path):
        runner, bus = _make_runner(tmp_path)

        state = run_async(runner.run(_make_request()))

        assert state.status == PipelineStatus.APPROVED
        assert state.tier == Tier.SMALL
        assert state.pipeline_branch == "pipeline/feature/x"
        assert state.completed_at is not None
        assert _types(bus) == [
            "pipeline.accepted",
            "pipeline.tier_classified",
            "pipeline.started",
            "pipeline.completed",
        ]
        assert state.events_count == 4
        completed = bus.get_events("req-1")[-1]
        assert completed.data["events_count"] == 4
        assert completed.data["findings_count"] == 2

    def test_failed_run(self, tmp_path: Path):
        quality = _make_quality([AgentStatus.PASSED, AgentStatus.FAILED])
        runner, bus = _make_runner(tmp_path, quality=quality)

        state = run_async(runner.run(_make_request()))

        assert state.status == PipelineStatus.FAILED
        assert _types(bus)[-1] == EventType.PIPELINE_FAILED.value
        agents = bus.get_events("req-1")[-1].data["agents"]
        assert [a["status"] for a in agents] == ["passed", "failed"]

    def test_default_base_branch_and_tier_agents(self, tmp_path: Path):
        diff = FakeDiffProvider(DiffStats(files_changed=40, lines_added=900))
        quality = _make_quality()
        runner, bus = _make_runner(tmp_path, quality=quality, diff_provider=diff)

        run_async(runner.run(_make_request()))

        assert diff.calls == [("/tmp/wt", "main")]
        started = bus.get_events("req-1")[2]
        assert started.data["tier"] == "large"
        assert "performance" in started.data["agents"]
        assert quality.run.call_args.args[2] == Tier.LARGE

    def test_request_overrides_win(self, tmp_path: Path):
        quality = _make_quality()
        runner, bus = _make_runner(tmp_path, quality=quality)
        request = _make_request(
            base_branch="develop",
            config=PipelineRequestConfig(tier=Tier.MEDIUM, agents=["security"]),
        )

        run_async(runner.run(request))

        classified = bus.get_events("req-1")[1]
        assert classified.data["tier"] == "medium"
        assert classified.data["overridden"] is True
        assert quality.run.call_args.args[3] == ["security"]

    def test_diff_failure_is_an_error(self, tmp_path: Path):
        diff = MagicMock()
        diff.diff_stats = AsyncMock(side_effect=RuntimeError("not a git repository"))
        runner, bus = _make_runner(tmp_path, diff_provider=diff)

        state = run_async(runner.run(_make_request()))

        assert state.status == PipelineStatus.ERROR
        assert state.error == "not a git repository"
        error_event = bus.get_events("req-1")[-1]
        assert error_event.event_type == EventType.PIPELINE_ERROR.value
        assert error_event.data["error_type"] == "RuntimeError"
        assert [t for t in _types(bus) if t in TERMINAL_TYPES] == ["pipeline.error"]

    def test_finished_runs_release_their_log_handles(self, tmp_path: Path):
        diff = MagicMock()
        diff.diff_stats = AsyncMock(side_effect=[DiffStats(files_changed=1), RuntimeError("gone")] * 2)
        runner, bus = _make_runner(tmp_path, diff_provider=diff)

        async def scenario():
            for n in range(4):
                await runner.run(_make_request(f"req-{n}"))

        run_async(scenario())

        assert bus.log.open_handles == 0
        assert _types(bus, "req-0")[-1] == "pipeline.completed"
        assert _types(bus, "req-3")[-1] == "pipeline.error"


class TestPipelineRunnerControl:

    def test_stop_during_run(self, tmp_path: Path):
        async def scenario():
            gate = asyncio.Event()
            runner, bus = _make_runner(tmp_path, diff_provider=FakeDiffProvider(gate=gate))
            runner.submit(_make_request())
            for _ in range(5):
                await asyncio.sleep(0)

            assert runner.is_running("req-1")
            assert runner.stop("req-1")
            gate.set()
            await runner.registry.get("req-1").task
            return runner, bus

        runner, bus = run_async(scenario())

        state = runner.get_status("req-1")
        assert state.status == PipelineStatus.FAILED
        assert state.error == "Stopped by user"
        assert not runner.is_running("req-1")
        assert [t for t in _types(bus) if t in TERMINAL_TYPES] == ["pipeline.stopped"]

    def test_stop_unknown_or_finished(self, tmp_path: Path):
        runner, _ = _make_runner(tmp_path)
        assert runner.stop("missing") is False

        run_async(runner.run(_make_request()))
        assert runner.stop("req-1") is False

    def test_live_duplicate_is_rejected(self, tmp_path: Path):
        async def scenario():
            gate = asyncio.Event()
            runner, _ = _make_runner(tmp_path, diff_provider=FakeDiffProvider(gate=gate))
            runner.submit(_make_request())
            with pytest.raises(PipelineConflictError):
                runner.submit(_make_request())
            gate.set()
            await runner.shutdown()

        run_async(scenario())

    def test_finished_run_can_be_resubmitted(self, tmp_path: Path):
        runner, _ = _make_runner(tmp_path)
        run_async(runner.run(_make_request()))

        state = run_async(runner.run(_make_request()))

        assert state.status == PipelineStatus.APPROVED
        assert len(runner.list_all()) == 1


class TestQualityBreaker:

    def test_disabled_breaker(self):
        config = PipelineServiceConfig(circuit_breaker=CircuitBreakerConfig(enabled=False))
        assert build_quality_breaker(config) is None

    def test_open_circuit_ends_runs_with_error(self, tmp_path: Path):
        quality = MagicMock()
        quality.run = AsyncMock(side_effect=RuntimeError("provider down"))
        breaker = CircuitBreaker("quality_pipeline", failure_threshold=1, cooldown_seconds=60)
        runner, bus = _make_runner(tmp_path, quality=quality, breaker=breaker)

        first = run_async(runner.run(_make_request("req-1")))
        second = run_async(runner.run(_make_request("req-2")))

        assert first.status == PipelineStatus.ERROR
        assert second.status == PipelineStatus.ERROR
        assert bus.get_events("req-2")[-1].data["error_type"] == "CircuitOpenError"
        assert quality.run.await_count == 1
