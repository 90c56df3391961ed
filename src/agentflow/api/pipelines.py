"""Pipeline run routes and event replay.

POST /pipeline/run         Submit a quality-check run (202)
GET  /pipeline/list        List known runs
GET  /pipeline/{id}        Run state
POST /pipeline/{id}/stop   Cooperative stop
GET  /events/{id}          Durable event history for a correlation id
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agentflow.models import Tier
from agentflow.pipeline.models import PipelineRequest, PipelineRequestConfig, PipelineState
from agentflow.pipeline.runner import PipelineConflictError


router = APIRouter()


class RunConfigBody(BaseModel):
    tier: Optional[Tier] = None
    agents: Optional[List[str]] = None


class RunPipelineBody(BaseModel):
    """Body of POST /pipeline/run. Accepts camelCase or snake_case keys."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: Optional[str] = Field(default=None, min_length=1, alias="requestId")
    branch: str = Field(..., min_length=1)
    base_branch: Optional[str] = Field(default=None, alias="baseBranch")
    worktree_path: str = Field(..., min_length=1, alias="worktreePath")
    config: RunConfigBody = Field(default_factory=RunConfigBody)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_request(self) -> PipelineRequest:
        fields: Dict[str, Any] = {
            "branch": self.branch,
            "base_branch": self.base_branch,
            "worktree_path": self.worktree_path,
            "config": PipelineRequestConfig(tier=self.config.tier, agents=self.config.agents),
            "metadata": self.metadata,
        }
        if self.request_id:
            fields["request_id"] = self.request_id
        return PipelineRequest(**fields)


def _summary(state: PipelineState) -> Dict[str, Any]:
    return {
        "request_id": state.request_id,
        "status": state.status.value,
        "tier": state.tier.value if state.tier else None,
        "branch": state.request.branch,
        "pipeline_branch": state.pipeline_branch,
        "started_at": state.started_at.isoformat(),
        "completed_at": state.completed_at.isoformat() if state.completed_at else None,
    }


@router.post("/pipeline/run", status_code=202)
async def run_pipeline(body: RunPipelineBody, request: Request):
    """Accept a run; progress and the verdict arrive as events."""
    svc = request.app.state.services
    try:
        state = svc.runner.submit(body.to_request())
    except PipelineConflictError as e:
        return JSONResponse(
            status_code=409,
            content={"error": str(e), "request_id": e.request_id},
        )
    return {
        "status": "accepted",
        "request_id": state.request_id,
        "pipeline_branch": state.pipeline_branch,
    }


@router.get("/pipeline/list")
async def list_pipelines(request: Request):
    svc = request.app.state.services
    states = svc.runner.list_all()
    return {
        "pipelines": [_summary(s) for s in states],
        "total": len(states),
        "running": sum(1 for s in states if svc.runner.is_running(s.request_id)),
    }


@router.get("/pipeline/{request_id}")
async def get_pipeline(request_id: str, request: Request):
    svc = request.app.state.services
    state = svc.runner.get_status(request_id)
    if state is None:
        return JSONResponse(status_code=404, content={"error": "Pipeline not found"})
    return state.model_dump(mode="json")


@router.post("/pipeline/{request_id}/stop")
async def stop_pipeline(request_id: str, request: Request):
    svc = request.app.state.services
    state = svc.runner.get_status(request_id)
    if state is None:
        return JSONResponse(status_code=404, content={"error": "Pipeline not found"})
    if not svc.runner.stop(request_id):
        return JSONResponse(
            status_code=409,
            content={"error": f"Pipeline is not running: {state.status.value}"},
        )
    return {"status": "stopping", "request_id": request_id}


@router.get("/events/{request_id}")
async def get_events(request_id: str, request: Request):
    svc = request.app.state.services
    events = svc.bus.get_events(request_id)
    return {
        "request_id": request_id,
        "events": [e.model_dump(mode="json", exclude_none=True) for e in events],
        "count": len(events),
    }
