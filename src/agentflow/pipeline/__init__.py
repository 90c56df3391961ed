"""Quality-check flow: tier classification, quality agents and the runner."""

from agentflow.pipeline.models import (
    PipelineRequest,
    PipelineRequestConfig,
    PipelineState,
    QualityPipelineResult,
)
from agentflow.pipeline.quality import ExecutorFactory, QualityPipeline, collect_corrections
from agentflow.pipeline.runner import (
    PipelineCancelledError,
    PipelineConflictError,
    PipelineRegistry,
    PipelineRun,
    PipelineRunner,
    build_quality_breaker,
)
from agentflow.pipeline.tiers import agents_for_tier, classify_tier

__all__ = [
    # Models
    "PipelineRequest",
    "PipelineRequestConfig",
    "PipelineState",
    "QualityPipelineResult",
    # Tiers
    "agents_for_tier",
    "classify_tier",
    # Quality pipeline
    "ExecutorFactory",
    "QualityPipeline",
    "collect_corrections",
    # Runner
    "PipelineCancelledError",
    "PipelineConflictError",
    "PipelineRegistry",
    "PipelineRun",
    "PipelineRunner",
    "build_quality_breaker",
]
