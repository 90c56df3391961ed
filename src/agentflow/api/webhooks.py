"""GitHub webhook receiver.

POST /webhooks/github validates the delivery signature (when a secret is
configured), parses the delivery into a session signal and routes it to
the owning session.
"""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/github")
async def github_webhook(request: Request):
    """Handle one GitHub delivery.

    Returns:
        401 on a missing or invalid signature, 400 on invalid JSON,
        otherwise 200 with status "ignored" or "processed".
    """
    svc = request.app.state.services
    handler = svc.webhook_handler
    raw_body = await request.body()

    if handler.secret is not None:
        signature = request.headers.get("X-Hub-Signature-256")
        if not signature:
            return JSONResponse(status_code=401, content={"error": "Missing X-Hub-Signature-256 header"})
        if not handler.verify_signature(raw_body, signature):
            return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    event_name = request.headers.get("X-GitHub-Event")
    parsed = handler.parse(event_name, payload)
    if parsed.ignored:
        return {"status": "ignored", "reason": parsed.reason}

    signal = parsed.signal
    decision = await svc.sessions.handle_signal(signal)
    return {
        "status": "processed",
        "action": signal.kind.value,
        "branch": signal.branch,
        "pr_number": signal.pr_number,
        "reaction": decision.action.value if decision else None,
    }
