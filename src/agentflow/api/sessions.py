"""Session routes.

GET    /sessions               List sessions (optional ?status=)
GET    /sessions/{id}          Session detail
POST   /sessions/start         Start a session from an issue or prompt (202)
POST   /sessions/{id}/escalate Escalate to a human
POST   /sessions/{id}/cancel   Cancel a session
DELETE /sessions/{id}          Remove a session record
"""

from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agentflow.sessions.manager import (
    IssueFetchError,
    SessionCapacityError,
    SessionConflictError,
    SessionNotFoundError,
    SessionTransitionError,
    TrackerUnavailableError,
)
from agentflow.sessions.models import StartSessionRequest
from agentflow.state.models import SessionStatus


router = APIRouter(prefix="/sessions")


class ReasonBody(BaseModel):
    reason: Optional[str] = None


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "Session not found"})


def _conflict(e: SessionTransitionError) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={"error": str(e), "sessionId": e.session_id, "status": e.status.value},
    )


@router.get("")
async def list_sessions(request: Request, status: Optional[SessionStatus] = None):
    store = request.app.state.services.sessions.store
    sessions = store.list(status)
    return {
        "sessions": [s.to_dict() for s in sessions],
        "total": len(sessions),
        "active": store.active_count(),
    }


@router.get("/{session_id}")
async def get_session(session_id: str, request: Request):
    session = request.app.state.services.sessions.store.get(session_id)
    if session is None:
        return _not_found()
    return session.to_dict()


@router.post("/start", status_code=202)
async def start_session(body: StartSessionRequest, request: Request):
    manager = request.app.state.services.sessions
    try:
        session = await manager.start(body)
    except SessionConflictError as e:
        return JSONResponse(
            status_code=409,
            content={
                "error": "Issue already has an active session",
                "sessionId": e.session_id,
                "status": e.status.value,
            },
        )
    except SessionCapacityError as e:
        return JSONResponse(
            status_code=429,
            content={"error": str(e), "active": e.active},
        )
    except IssueFetchError as e:
        return JSONResponse(status_code=502, content={"error": str(e)})
    except TrackerUnavailableError as e:
        return JSONResponse(status_code=503, content={"error": str(e)})

    return {
        "sessionId": session.id,
        "status": session.status.value,
        "issueNumber": session.issue.number,
    }


@router.post("/{session_id}/escalate")
async def escalate_session(session_id: str, request: Request, body: Optional[ReasonBody] = None):
    manager = request.app.state.services.sessions
    try:
        await manager.escalate(session_id, body.reason if body else None)
    except SessionNotFoundError:
        return _not_found()
    except SessionTransitionError as e:
        return _conflict(e)
    return {"status": "escalated", "sessionId": session_id}


@router.post("/{session_id}/cancel")
async def cancel_session(session_id: str, request: Request, body: Optional[ReasonBody] = None):
    manager = request.app.state.services.sessions
    try:
        await manager.cancel(session_id, body.reason if body else None)
    except SessionNotFoundError:
        return _not_found()
    except SessionTransitionError as e:
        return _conflict(e)
    return {"status": "cancelled", "sessionId": session_id}


@router.delete("/{session_id}")
async def delete_session(session_id: str, request: Request):
    manager = request.app.state.services.sessions
    try:
        await manager.delete(session_id)
    except SessionNotFoundError:
        return _not_found()
    return {"status": "removed", "sessionId": session_id}
