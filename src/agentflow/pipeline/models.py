"""Pipeline request and state models.

This module defines the data models for the quality-check flow:
- PipelineRequest: what a caller submits
- PipelineState: the externally visible state of a request
- QualityPipelineResult: the aggregated verdict of one quality run
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from agentflow.agents.models import AgentResult, Finding
from agentflow.models import Tier
from agentflow.state.models import PipelineStatus


class PipelineRequestConfig(BaseModel):
    """Per-request overrides.

    Attributes:
        tier: Skip classification and use this tier.
        agents: Run exactly these agents instead of the tier defaults.
    """

    tier: Optional[Tier] = None
    agents: Optional[List[str]] = None


class PipelineRequest(BaseModel):
    """A quality-check request for a branch.

    Attributes:
        request_id: Correlation id; generated when omitted.
        branch: Branch under review.
        worktree_path: Checkout of the branch the agents work in.
        base_branch: Diff base; defaults to the configured main branch.
        config: Per-request overrides.
        metadata: Caller metadata, echoed into agent contexts.
    """

    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    branch: str = Field(..., min_length=1)
    worktree_path: str = Field(..., min_length=1)
    base_branch: Optional[str] = None
    config: PipelineRequestConfig = Field(default_factory=PipelineRequestConfig)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PipelineState(BaseModel):
    """Externally visible state of a pipeline request."""

    request_id: str
    status: PipelineStatus = PipelineStatus.ACCEPTED
    tier: Optional[Tier] = None
    pipeline_branch: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    request: PipelineRequest
    events_count: int = 0
    corrections_count: int = 0
    corrections_applied: List[Finding] = Field(default_factory=list)
    agent_results: List[AgentResult] = Field(default_factory=list)
    error: Optional[str] = None


class QualityPipelineResult(BaseModel):
    """Aggregated outcome of one quality pipeline run.

    Attributes:
        agent_results: Final result per agent, in requested order.
        corrections_applied: Findings fixed in place, across all waves.
        correction_cycles: One entry per correction wave that ran.
        overall_status: "failed" if any agent failed, errored or timed out.
    """

    agent_results: List[AgentResult] = Field(default_factory=list)
    corrections_applied: List[Finding] = Field(default_factory=list)
    correction_cycles: List[str] = Field(default_factory=list)
    overall_status: str = "passed"

    @property
    def passed(self) -> bool:
        return self.overall_status == "passed"
