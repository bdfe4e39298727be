"""Environments router: lifecycle state and terminal reports."""

from fastapi import APIRouter, Depends, HTTPException

from agents.environment import EnvironmentAgent
from ..services.orchestrator_service import get_agent

router = APIRouter(prefix="/api/environments", tags=["environments"])


@router.get("")
def list_environments(agent: EnvironmentAgent = Depends(get_agent)):
    """All known environments with their current phase."""
    environments = []
    for state in agent.store.list_states():
        entry = state.to_dict()
        entry["in_flight"] = agent.in_flight(state.environment_id)
        environments.append(entry)
    return {"environments": environments, "count": len(environments)}


@router.get("/{environment_id}")
def get_environment(environment_id: str, agent: EnvironmentAgent = Depends(get_agent)):
    """One environment's state plus the reports of its finished workflow runs."""
    state = agent.store.load(environment_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"unknown environment '{environment_id}'")
    entry = state.to_dict()
    entry["in_flight"] = agent.in_flight(environment_id)
    entry["reports"] = [r.to_dict() for r in agent.store.get_reports(environment_id)]
    return entry
