"""Branch event router: trigger endpoints for the environment lifecycle."""

import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from pydantic import BaseModel

from agents.environment import EnvironmentAgent
from framework.errors import InvalidNameError
from framework.models import BranchEventKind, BranchRef
from ..services.orchestrator_service import get_agent

logger = logging.getLogger("envops.app.branches")

router = APIRouter(prefix="/api/branches", tags=["branches"])


class BranchEventRequest(BaseModel):
    name: str
    event: BranchEventKind


def _accept(agent: EnvironmentAgent, ref: BranchRef) -> dict:
    try:
        environment_id = agent.environment_id_for(ref.name)
    except InvalidNameError as e:
        raise HTTPException(status_code=422, detail=str(e))
    agent.submit(ref)
    return {
        "accepted": True,
        "branch": ref.name,
        "event": ref.event.value,
        "environment_id": environment_id,
    }


@router.post("/events", status_code=202)
async def branch_event(body: BranchEventRequest, agent: EnvironmentAgent = Depends(get_agent)):
    """Accept a branch lifecycle event; the workflow runs in the background."""
    return _accept(agent, BranchRef(name=body.name, event=body.event))


def _verify_signature(secret: str, payload: bytes, signature: Optional[str]) -> None:
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    if not signature or not hmac.compare_digest(expected, signature):
        raise HTTPException(status_code=401, detail="invalid webhook signature")


@router.post("/github", status_code=202)
async def github_webhook(
    request: Request,
    response: Response,
    x_github_event: str = Header(...),
    x_hub_signature_256: Optional[str] = Header(None),
    agent: EnvironmentAgent = Depends(get_agent),
):
    """GitHub webhook (create, delete, push). Tags and other events are ignored."""
    raw = await request.body()
    secret = agent.settings.github_webhook_secret
    if secret:
        _verify_signature(secret, raw, x_hub_signature_256)
    if x_github_event == "ping":
        response.status_code = 200
        return {"accepted": False, "reason": "pong"}

    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="webhook body must be a JSON object")

    ref = BranchRef.from_github(x_github_event, payload)
    if ref is None:
        response.status_code = 200
        return {"accepted": False, "reason": f"ignored {x_github_event} event"}
    logger.info(f"GitHub {x_github_event} -> {ref.event.value} {ref.name}")
    return _accept(agent, ref)
