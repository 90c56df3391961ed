"""Quality pipeline: concurrent quality agents with optional correction waves.

For one request the pipeline resolves every requested agent role (base
role plus per-role config override), runs all agents concurrently with
their own executor, and joins on all of them before aggregating.

Correction cycles: when `auto_correction.max_attempts` is positive, agents
that reported `failed` are re-run, with the previous results in their
context, until they pass or the attempts are used up.

Concurrent agents share one worktree. Two agents editing the same file
at once can interleave their edits; nothing here serializes them.

Source:
- src/agentflow/agents/executor.py (AgentExecutor)
- src/agentflow/agents/roles.py (resolve_agent_role)
- src/agentflow/events/bus.py (EventBus)
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from agentflow.agents.executor import AgentExecutor
from agentflow.agents.models import (
    AgentContext,
    AgentResult,
    AgentRole,
    AgentStatus,
    Finding,
    FindingSeverity,
)
from agentflow.agents.roles import AgentName, resolve_agent_role
from agentflow.cancellation import CancellationToken
from agentflow.config import PipelineServiceConfig
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType
from agentflow.models import DiffStats, Tier
from agentflow.pipeline.models import PipelineRequest, QualityPipelineResult


logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[AgentRole], AgentExecutor]

_FAILING_STATUSES = frozenset({AgentStatus.FAILED, AgentStatus.ERROR, AgentStatus.TIMEOUT})


class QualityPipeline:
    """Runs a set of quality agents against one worktree.

    Attributes:
        bus: Event bus for per-agent events.
        config: Pipeline configuration (agent overrides, corrections).
        executor_factory: Builds an isolated executor for a resolved role.

    Example:
        >>> pipeline = QualityPipeline(bus, config, executor_factory)
        >>> result = await pipeline.run("req-1", request, Tier.SMALL, ["tests", "style"], stats)
        >>> result.overall_status
        'passed'
    """

    def __init__(
        self,
        bus: EventBus,
        config: PipelineServiceConfig,
        executor_factory: ExecutorFactory,
    ):
        self.bus = bus
        self.config = config
        self.executor_factory = executor_factory

    async def run(
        self,
        request_id: str,
        request: PipelineRequest,
        tier: Tier,
        agent_names: List[str],
        diff_stats: DiffStats,
        token: Optional[CancellationToken] = None,
    ) -> QualityPipelineResult:
        """Run the agents and aggregate their verdicts.

        Args:
            request_id: Correlation id for events.
            request: The originating request.
            tier: Classified tier.
            agent_names: Agents to run.
            diff_stats: Changeset summary handed to every agent.
            token: Cancellation token shared with every agent.

        Returns:
            The aggregated result. Agent failures never raise.
        """
        context = AgentContext(
            branch=request.branch,
            worktree_path=request.worktree_path,
            tier=tier,
            diff_stats=diff_stats,
            base_branch=request.base_branch or self.config.branch.main,
            metadata=dict(request.metadata),
        )

        results = await self.run_agent_wave(request_id, agent_names, context, token)
        produced: List[AgentResult] = list(results)
        cycles: List[str] = []

        for cycle in range(self.config.auto_correction.max_attempts):
            if token is not None and token.cancelled:
                break

            failed_names = [r.agent for r in results if r.status == AgentStatus.FAILED]
            if not failed_names:
                break

            cycles.append(f"cycle-{cycle + 1}: {','.join(failed_names)}")
            logger.info(
                "Starting correction cycle",
                extra={
                    "request_id": request_id,
                    "cycle": cycle + 1,
                    "failed_agents": failed_names,
                },
            )
            await self.bus.publish(
                EventType.PIPELINE_CORRECTING,
                request_id,
                {"correction_number": cycle + 1, "failed_agents": failed_names},
            )

            correction_context = context.model_copy(update={"previous_results": list(results)})
            corrected = await self.run_agent_wave(
                request_id, failed_names, correction_context, token
            )
            produced.extend(corrected)

            by_agent = {r.agent: r for r in corrected}
            results = [by_agent.get(r.agent, r) for r in results]

        overall = "failed" if any(r.status in _FAILING_STATUSES for r in results) else "passed"
        corrections = collect_corrections(produced)

        logger.info(
            "Quality pipeline completed",
            extra={
                "request_id": request_id,
                "overall_status": overall,
                "agent_count": len(results),
                "corrections": len(corrections),
            },
        )

        return QualityPipelineResult(
            agent_results=results,
            corrections_applied=corrections,
            correction_cycles=cycles,
            overall_status=overall,
        )

    async def run_agent_wave(
        self,
        request_id: str,
        agent_names: List[str],
        context: AgentContext,
        token: Optional[CancellationToken] = None,
    ) -> List[AgentResult]:
        """Run agents concurrently and return their results in input order."""
        return list(
            await asyncio.gather(
                *(self._run_agent(request_id, name, context, token) for name in agent_names)
            )
        )

    def resolve_role(self, agent_name: str) -> AgentRole:
        """Resolve a role with its config override.

        Raises:
            ValueError: If agent_name is not a known agent.
        """
        override = self.config.agents.get(agent_name)
        if override is None:
            return resolve_agent_role(AgentName(agent_name))
        return resolve_agent_role(
            AgentName(agent_name),
            model=override.model,
            provider=override.provider,
            max_turns=override.max_turns,
        )

    async def _run_agent(
        self,
        request_id: str,
        agent_name: str,
        context: AgentContext,
        token: Optional[CancellationToken],
    ) -> AgentResult:
        try:
            role = self.resolve_role(agent_name)
            executor = self.executor_factory(role)
        except Exception as e:
            logger.exception(
                "Could not prepare agent",
                extra={"request_id": request_id, "agent": agent_name},
            )
            result = AgentResult(
                agent=agent_name,
                status=AgentStatus.ERROR,
                findings=[
                    Finding(
                        severity=FindingSeverity.CRITICAL,
                        description=f"Agent setup failed: {e}",
                    )
                ],
            )
            await self._publish_finished(request_id, result)
            return result

        await self.bus.publish(
            EventType.PIPELINE_AGENT_STARTED,
            request_id,
            {"agent": role.name, "model": role.model, "provider": role.provider},
        )

        result = await executor.execute(role, context, token=token)
        await self._publish_finished(request_id, result)
        return result

    async def _publish_finished(self, request_id: str, result: AgentResult) -> None:
        event_type = (
            EventType.PIPELINE_AGENT_COMPLETED
            if result.status in (AgentStatus.PASSED, AgentStatus.FAILED)
            else EventType.PIPELINE_AGENT_FAILED
        )
        await self.bus.publish(
            event_type,
            request_id,
            {
                "agent": result.agent,
                "status": result.status.value,
                "findings_count": len(result.findings),
                "fixes_applied": result.fixes_applied,
                "duration_ms": result.metadata.duration_ms,
                "turns_used": result.metadata.turns_used,
            },
        )


def collect_corrections(results: List[AgentResult]) -> List[Finding]:
    """Union of fixed findings across results, first occurrence wins."""
    seen: Dict[Tuple[str, str, Optional[str], Optional[int]], Finding] = {}
    for result in results:
        for finding in result.findings:
            if not finding.fix_applied:
                continue
            key = (result.agent, finding.description, finding.file, finding.line)
            seen.setdefault(key, finding)
    return list(seen.values())
