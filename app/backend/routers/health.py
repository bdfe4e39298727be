"""Health check router."""

from fastapi import APIRouter, Depends

from agents.environment import EnvironmentAgent
from framework.models import Phase
from ..services.orchestrator_service import get_agent

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health_check(agent: EnvironmentAgent = Depends(get_agent)):
    """Basic health check with a phase breakdown of known environments."""
    by_phase = {phase.value: 0 for phase in Phase}
    for state in agent.store.list_states():
        by_phase[state.phase.value] += 1
    return {
        "status": "healthy",
        "mode": agent.settings.mode.value,
        "environments": by_phase,
        "alerts": agent.alerts.get_alert_summary(),
    }
