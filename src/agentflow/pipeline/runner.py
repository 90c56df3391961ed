"""Pipeline runner: one quality-check request from intake to verdict.

Drives a PipelineRequest through:
    accepted → tier_classified → running → started → quality agents → verdict

Every request ends with exactly one of four terminal events:
- pipeline.completed: every agent passed (status approved)
- pipeline.failed: at least one agent failed, errored or timed out
- pipeline.stopped: the caller stopped the run (status failed internally)
- pipeline.error: an internal or collaborator exception (status error)

Per-request bookkeeping (state, state machine, cancellation token, task)
is bundled in one PipelineRun held by a single PipelineRegistry.

Source:
- src/agentflow/pipeline/quality.py (QualityPipeline)
- src/agentflow/pipeline/tiers.py (classify_tier, agents_for_tier)
- src/agentflow/breaker.py (CircuitBreaker)
- src/agentflow/events/bus.py (EventBus)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from agentflow.breaker import CircuitBreaker
from agentflow.cancellation import CancellationToken, CancelledByRequest
from agentflow.config import PipelineServiceConfig
from agentflow.events.bus import EventBus
from agentflow.events.models import EventType, PipelineEvent
from agentflow.integrations.git import DiffStatsProvider
from agentflow.models import DiffStats, Tier
from agentflow.pipeline.models import PipelineRequest, PipelineState, QualityPipelineResult
from agentflow.pipeline.quality import QualityPipeline
from agentflow.pipeline.tiers import agents_for_tier, classify_tier
from agentflow.state.machine import StateMachine
from agentflow.state.models import PIPELINE_TRANSITIONS, PipelineStatus


logger = logging.getLogger(__name__)


class PipelineConflictError(Exception):
    """Raised when a request id already has a live run.

    Attributes:
        request_id: The conflicting request id.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Pipeline {request_id} is already running")


class PipelineCancelledError(CancelledByRequest):
    """Raised at a checkpoint when a run's token has been cancelled."""

    def __init__(self, request_id: str, reason: Optional[str] = None):
        self.request_id = request_id
        super().__init__(reason)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass
class PipelineRun:
    """Everything the runner tracks for one request id."""

    state: PipelineState
    machine: StateMachine[PipelineStatus]
    token: CancellationToken
    task: Optional["asyncio.Task[PipelineState]"] = None

    @property
    def request_id(self) -> str:
        return self.state.request_id

    @property
    def live(self) -> bool:
        return not self.machine.is_terminal()


class PipelineRegistry:
    """Single owner of every pipeline run, live or finished."""

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}

    def register(self, run: PipelineRun) -> None:
        """Add a run, replacing a finished one with the same id.

        Raises:
            PipelineConflictError: If a live run already uses the id.
        """
        existing = self._runs.get(run.request_id)
        if existing is not None and existing.live:
            raise PipelineConflictError(run.request_id)
        self._runs[run.request_id] = run

    def get(self, request_id: str) -> Optional[PipelineRun]:
        return self._runs.get(request_id)

    def live_runs(self) -> List[PipelineRun]:
        return [run for run in self._runs.values() if run.live]

    def all_runs(self) -> List[PipelineRun]:
        return list(self._runs.values())

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)


def build_quality_breaker(config: PipelineServiceConfig) -> Optional[CircuitBreaker]:
    """Breaker guarding quality pipeline calls, or None when disabled."""
    if not config.circuit_breaker.enabled:
        return None
    return CircuitBreaker(
        "quality_pipeline",
        failure_threshold=config.circuit_breaker.failure_threshold,
        cooldown_seconds=config.circuit_breaker.cooldown_seconds,
        excluded_exceptions=(CancelledByRequest,),
    )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class PipelineRunner:
    """Per-request orchestrator for the quality-check flow.

    Attributes:
        config: Pipeline configuration (branches, tiers).
        bus: Event bus for lifecycle events.
        diff_provider: Supplies diff statistics for a worktree.
        quality_pipeline: Runs the selected agents.
        breaker: Optional circuit breaker around the quality pipeline.
        registry: All runs keyed by request id.
    """

    def __init__(
        self,
        config: PipelineServiceConfig,
        bus: EventBus,
        diff_provider: DiffStatsProvider,
        quality_pipeline: QualityPipeline,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config
        self.bus = bus
        self.diff_provider = diff_provider
        self.quality_pipeline = quality_pipeline
        self.breaker = breaker
        self.registry = PipelineRegistry()
        self.bus.subscribe(self._count_event)

    def _count_event(self, event: PipelineEvent) -> None:
        run = self.registry.get(event.request_id)
        if run is not None:
            run.state.events_count += 1

    def _register(self, request: PipelineRequest) -> PipelineRun:
        state = PipelineState(
            request_id=request.request_id,
            pipeline_branch=f"{self.config.branch.pipeline_prefix}{request.branch}",
            request=request,
        )
        run = PipelineRun(
            state=state,
            machine=StateMachine(
                PipelineStatus.ACCEPTED,
                PIPELINE_TRANSITIONS,
                label=f"pipeline:{request.request_id}",
            ),
            token=CancellationToken(),
        )
        self.registry.register(run)
        return run

    async def run(self, request: PipelineRequest) -> PipelineState:
        """Run a request to completion and return its final state.

        Raises:
            PipelineConflictError: If the request id already has a live run.
        """
        return await self._execute(self._register(request))

    def submit(self, request: PipelineRequest) -> PipelineState:
        """Schedule a request on the running loop and return immediately.

        Raises:
            PipelineConflictError: If the request id already has a live run.
        """
        run = self._register(request)
        run.task = asyncio.get_running_loop().create_task(self._execute(run))
        return run.state

    async def _execute(self, run: PipelineRun) -> PipelineState:
        request = run.state.request
        request_id = run.request_id
        base_branch = request.base_branch or self.config.branch.main
        started = time.monotonic()

        logger.info(
            "Pipeline accepted",
            extra={
                "request_id": request_id,
                "branch": request.branch,
                "base_branch": base_branch,
            },
        )

        try:
            await self.bus.publish(
                EventType.PIPELINE_ACCEPTED,
                request_id,
                {
                    "branch": request.branch,
                    "base_branch": base_branch,
                    "worktree_path": request.worktree_path,
                    "pipeline_branch": run.state.pipeline_branch,
                },
                metadata=request.metadata or None,
            )

            self._checkpoint(run)
            diff_stats = await self.diff_provider.diff_stats(request.worktree_path, base_branch)
            self._checkpoint(run)

            tier = classify_tier(diff_stats, self.config.tiers, request.config.tier)
            run.state.tier = tier
            await self.bus.publish(
                EventType.PIPELINE_TIER_CLASSIFIED,
                request_id,
                {
                    "tier": tier.value,
                    "overridden": request.config.tier is not None,
                    "files_changed": diff_stats.files_changed,
                    "lines_changed": diff_stats.lines_changed,
                },
            )
            self._advance(run, PipelineStatus.RUNNING)

            agent_names = agents_for_tier(tier, self.config.tiers, request.config.agents)
            await self.bus.publish(
                EventType.PIPELINE_STARTED,
                request_id,
                {"tier": tier.value, "agents": agent_names},
            )
            self._checkpoint(run)

            result = await self._run_quality(run, tier, agent_names, diff_stats)
            self._checkpoint(run)

            await self._finish_verdict(run, result, started)

        except CancelledByRequest as e:
            await self._finish_stopped(run, e.reason, started)
        except asyncio.CancelledError:
            await self._finish_stopped(run, "Task cancelled", started)
            raise
        except Exception as e:
            logger.exception(
                "Pipeline errored",
                extra={"request_id": request_id, "error": str(e)},
            )
            await self._finish_error(run, e, started)
        finally:
            self.bus.release(request_id)

        return run.state

    async def _run_quality(
        self,
        run: PipelineRun,
        tier: Tier,
        agent_names: List[str],
        diff_stats: DiffStats,
    ) -> QualityPipelineResult:
        def call():
            return self.quality_pipeline.run(
                run.request_id,
                run.state.request,
                tier,
                agent_names,
                diff_stats,
                token=run.token,
            )

        if self.breaker is None:
            return await call()
        return await self.breaker.execute(call)

    def _checkpoint(self, run: PipelineRun) -> None:
        if run.token.cancelled:
            raise PipelineCancelledError(run.request_id, run.token.reason)

    def _advance(self, run: PipelineRun, status: PipelineStatus) -> None:
        run.machine.transition(status)
        run.state.status = status

    def _force(self, run: PipelineRun, status: PipelineStatus) -> None:
        if run.machine.try_transition(status):
            run.state.status = status

    def _complete(self, run: PipelineRun) -> None:
        run.state.completed_at = datetime.now(timezone.utc)
        run.task = None

    async def _finish_verdict(
        self, run: PipelineRun, result: QualityPipelineResult, started: float
    ) -> None:
        approved = result.passed
        run.state.agent_results = result.agent_results
        run.state.corrections_applied = result.corrections_applied
        run.state.corrections_count = len(result.corrections_applied)
        self._advance(run, PipelineStatus.APPROVED if approved else PipelineStatus.FAILED)
        self._complete(run)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Pipeline finished",
            extra={
                "request_id": run.request_id,
                "status": run.state.status.value,
                "duration_ms": duration_ms,
            },
        )
        await self.bus.publish(
            EventType.PIPELINE_COMPLETED if approved else EventType.PIPELINE_FAILED,
            run.request_id,
            {
                "status": run.state.status.value,
                "tier": run.state.tier.value if run.state.tier else None,
                "duration_ms": duration_ms,
                "agents": [
                    {
                        "agent": r.agent,
                        "status": r.status.value,
                        "findings_count": len(r.findings),
                    }
                    for r in result.agent_results
                ],
                "findings_count": sum(len(r.findings) for r in result.agent_results),
                "corrections_count": run.state.corrections_count,
                "correction_cycles": len(result.correction_cycles),
                "events_count": run.state.events_count + 1,
            },
        )

    async def _finish_stopped(
        self, run: PipelineRun, reason: Optional[str], started: float
    ) -> None:
        self._force(run, PipelineStatus.FAILED)
        run.state.error = reason or "Stopped"
        self._complete(run)
        logger.warning(
            "Pipeline stopped",
            extra={"request_id": run.request_id, "reason": reason},
        )
        await self.bus.publish(
            EventType.PIPELINE_STOPPED,
            run.request_id,
            {
                "status": run.state.status.value,
                "reason": run.state.error,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )

    async def _finish_error(self, run: PipelineRun, error: Exception, started: float) -> None:
        self._force(run, PipelineStatus.ERROR)
        run.state.error = str(error) or type(error).__name__
        self._complete(run)
        await self.bus.publish(
            EventType.PIPELINE_ERROR,
            run.request_id,
            {
                "status": run.state.status.value,
                "error": run.state.error,
                "error_type": type(error).__name__,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )

    # -------------------------------------------------------------------------
    # Control and queries
    # -------------------------------------------------------------------------

    def stop(self, request_id: str, reason: str = "Stopped by user") -> bool:
        """Signal a live run to stop. Returns False if nothing was live."""
        run = self.registry.get(request_id)
        if run is None or not run.live:
            return False
        logger.info("Stopping pipeline", extra={"request_id": request_id, "reason": reason})
        run.token.cancel(reason)
        return True

    def stop_all(self, reason: str = "Service shutting down") -> int:
        """Signal every live run to stop. Returns how many were signalled."""
        stopped = 0
        for run in self.registry.live_runs():
            if self.stop(run.request_id, reason):
                stopped += 1
        return stopped

    async def shutdown(self) -> None:
        """Stop every live run and wait for their tasks to settle."""
        self.stop_all()
        tasks = [run.task for run in self.registry.all_runs() if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self, request_id: str) -> Optional[PipelineState]:
        run = self.registry.get(request_id)
        return run.state if run is not None else None

    def is_running(self, request_id: str) -> bool:
        run = self.registry.get(request_id)
        return run is not None and run.live

    def list_all(self) -> List[PipelineState]:
        return [run.state for run in self.registry.all_runs()]
