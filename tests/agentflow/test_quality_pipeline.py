"""Unit tests for the QualityPipeline: concurrent agents and correction cycles."""

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from agentflow.agents.models import (
    AgentContext,
    AgentResult,
    AgentRole,
    AgentStatus,
    Finding,
    FindingSeverity,
)
from agentflow.cancellation import CancellationToken
from agentflow.config import AgentOverride, AutoCorrectionConfig, PipelineServiceConfig
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.models import DiffStats, Tier
from agentflow.pipeline.models import PipelineRequest
from agentflow.pipeline.quality import QualityPipeline, collect_corrections


def run_async(coro):
    return asyncio.run(coro)


class ScriptedExecutor:
    """Executor double returning scripted statuses per agent, one per call."""

    def __init__(self, role: AgentRole, script: Dict[str, List[AgentStatus]], log: List):
        self.role = role
        self.script = script
        self.log = log

    async def execute(self, role: AgentRole, context: AgentContext, token=None, on_step=None):
        self.log.append((role.name, context))
        statuses = self.script.get(role.name) or [AgentStatus.PASSED]
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        findings = []
        if status == AgentStatus.FAILED:
            findings.append(Finding(severity=FindingSeverity.CRITICAL, description=f"{role.name} broke"))
        else:
            findings.append(Finding(
                severity=FindingSeverity.WARNING,
                description=f"{role.name} tidy-up",
                file="app.py",
                fix_applied=True,
            ))
        return AgentResult(agent=role.name, status=status, findings=findings)


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_request() -> PipelineRequest:
    return PipelineRequest(request_id="req-1", branch="feature/x", worktree_path="/tmp/wt")


def _make_pipeline(
    tmp_path: Path,
    script: Optional[Dict[str, List[AgentStatus]]] = None,
    max_attempts: int = 0,
    config: Optional[PipelineServiceConfig] = None,
):
    config = config or PipelineServiceConfig(
        auto_correction=AutoCorrectionConfig(max_attempts=max_attempts)
    )
    bus = EventBus.for_directory(tmp_path)
    log: List = []
    script = script or {}

    def factory(role: AgentRole) -> ScriptedExecutor:
        return ScriptedExecutor(role, script, log)

    return QualityPipeline(bus, config, factory), bus, log


def _run(pipeline: QualityPipeline, agents: List[str]):
    return run_async(pipeline.run(
        "req-1", _make_request(), Tier.SMALL, agents, DiffStats(files_changed=1)
    ))


def _types(bus: EventBus) -> List[str]:
    return [e.event_type for e in bus.get_events("req-1")]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestQualityPipeline:

    def test_all_passed(self, tmp_path: Path):
        pipeline, bus, _ = _make_pipeline(tmp_path)

        result = _run(pipeline, ["tests", "style"])

        assert result.passed
        assert [r.agent for r in result.agent_results] == ["tests", "style"]
        types = _types(bus)
        assert types.count(EventType.PIPELINE_AGENT_STARTED.value) == 2
        assert types.count(EventType.PIPELINE_AGENT_COMPLETED.value) == 2

    def test_failure_without_corrections(self, tmp_path: Path):
        pipeline, bus, log = _make_pipeline(tmp_path, {"tests": [AgentStatus.FAILED]})

        result = _run(pipeline, ["tests", "style"])

        assert result.overall_status == "failed"
        assert result.correction_cycles == []
        assert len(log) == 2
        assert EventType.PIPELINE_CORRECTING.value not in _types(bus)

    def test_correction_cycle_reruns_failed_agents(self, tmp_path: Path):
        pipeline, bus, log = _make_pipeline(
            tmp_path,
            {"tests": [AgentStatus.FAILED, AgentStatus.PASSED]},
            max_attempts=2,
        )

        result = _run(pipeline, ["tests", "style"])

        assert result.passed
        assert result.correction_cycles == ["cycle-1: tests"]
        rerun_name, rerun_context = log[-1]
        assert rerun_name == "tests"
        assert [r.agent for r in rerun_context.previous_results] == ["tests", "style"]

        correcting = [
            e for e in bus.get_events("req-1")
            if e.event_type == EventType.PIPELINE_CORRECTING.value
        ]
        assert correcting[0].data == {"correction_number": 1, "failed_agents": ["tests"]}

    def test_corrections_stop_at_max_attempts(self, tmp_path: Path):
        pipeline, _, log = _make_pipeline(
            tmp_path, {"tests": [AgentStatus.FAILED]}, max_attempts=2
        )

        result = _run(pipeline, ["tests"])

        assert result.overall_status == "failed"
        assert len(result.correction_cycles) == 2
        assert len(log) == 3

    def test_timeout_fails_but_is_not_corrected(self, tmp_path: Path):
        pipeline, bus, log = _make_pipeline(
            tmp_path, {"tests": [AgentStatus.TIMEOUT]}, max_attempts=3
        )

        result = _run(pipeline, ["tests"])

        assert result.overall_status == "failed"
        assert len(log) == 1
        assert EventType.PIPELINE_AGENT_FAILED.value in _types(bus)

    def test_unknown_agent_is_an_error_result(self, tmp_path: Path):
        pipeline, bus, _ = _make_pipeline(tmp_path)

        result = _run(pipeline, ["tests", "astrology"])

        bad = result.agent_results[1]
        assert bad.status == AgentStatus.ERROR
        assert "Agent setup failed" in bad.findings[0].description
        assert result.overall_status == "failed"

    def test_cancelled_token_skips_corrections(self, tmp_path: Path):
        pipeline, _, log = _make_pipeline(
            tmp_path, {"tests": [AgentStatus.FAILED]}, max_attempts=3
        )
        token = CancellationToken()
        token.cancel("Stopped by user")

        run_async(pipeline.run(
            "req-1", _make_request(), Tier.SMALL, ["tests"], DiffStats(), token=token
        ))

        assert len(log) == 1

    def test_role_override_from_config(self, tmp_path: Path):
        config = PipelineServiceConfig(
            agents={"security": AgentOverride(model="gpt-4.1", provider="openai", max_turns=7)}
        )
        pipeline, _, _ = _make_pipeline(tmp_path, config=config)

        role = pipeline.resolve_role("security")

        assert (role.model, role.provider, role.max_turns) == ("gpt-4.1", "openai", 7)
        assert pipeline.resolve_role("tests").provider == "anthropic"


    def test_corrections_come_only_from_fixed_findings(self, tmp_path: Path):
        pipeline, _, _ = _make_pipeline(tmp_path, {"security": [AgentStatus.FAILED]})

        result = _run(pipeline, ["tests", "security", "style"])

        assert result.overall_status == "failed"
        assert [f.description for f in result.corrections_applied] == ["tests tidy-up", "style tidy-up"]

    def test_agents_in_a_wave_run_concurrently(self, tmp_path: Path):
        agents = ["tests", "security", "style"]

        async def scenario():
            started: List[str] = []
            all_started = asyncio.Event()

            class RendezvousExecutor:
                def __init__(self, role: AgentRole):
                    self.role = role

                async def execute(self, role, context, token=None, on_step=None):
                    started.append(role.name)
                    if len(started) == len(agents):
                        all_started.set()
                    await asyncio.wait_for(all_started.wait(), timeout=2)
                    return AgentResult(agent=role.name, status=AgentStatus.PASSED)

            pipeline = QualityPipeline(
                EventBus.for_directory(tmp_path), PipelineServiceConfig(), RendezvousExecutor
            )
            result = await pipeline.run(
                "req-1", _make_request(), Tier.SMALL, agents, DiffStats(files_changed=1)
            )
            return result, started

        result, started = run_async(scenario())

        assert sorted(started) == sorted(agents)
        assert [r.status for r in result.agent_results] == [AgentStatus.PASSED] * 3
        assert [r.agent for r in result.agent_results] == agents


class TestCollectCorrections:

    def test_deduplicates_across_waves(self):
        fixed = Finding(description="unused import", file="a.py", line=3, fix_applied=True)
        unfixed = Finding(description="naming", file="a.py", line=9)
        first = AgentResult(agent="style", status=AgentStatus.FAILED, findings=[fixed, unfixed])
        second = AgentResult(agent="style", status=AgentStatus.PASSED, findings=[fixed])
        other = AgentResult(agent="docs", status=AgentStatus.PASSED, findings=[fixed])

        corrections = collect_corrections([first, second, other])

        assert len(corrections) == 2

    def test_failed_agents_contribute_their_fixed_findings(self):
        fixed = Finding(description="pinned dependency", file="requirements.txt", fix_applied=True)
        broken = Finding(severity=FindingSeverity.CRITICAL, description="secret in repo")
        failed = AgentResult(agent="security", status=AgentStatus.FAILED, findings=[broken, fixed])

        assert collect_corrections([failed]) == [fixed]
