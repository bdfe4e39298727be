"""Orchestrator Service: builds the environment agent and its collaborators once per process."""

import logging
from typing import Optional

from agents.environment import EnvironmentAgent
from config.settings import OrchestratorSettings
from framework.agent_framework import AgentFramework
from utils.alerting import AlertChannel, AlertManager
from utils.cluster_client import ClusterClient
from utils.exposure_provider import ExposureProvider
from utils.migration_tool import MigrationTool
from utils.state_store import StateStore

logger = logging.getLogger("envops.app.orchestrator")

_agent: Optional[EnvironmentAgent] = None


def build_agent(settings: OrchestratorSettings) -> EnvironmentAgent:
    """Wire clients, state store and alerting into a registered EnvironmentAgent."""
    mock = settings.mock_mode
    cluster = ClusterClient(mock_mode=mock, kubeconfig=settings.kubeconfig, context=settings.kube_context)
    exposure = ExposureProvider(mock_mode=mock, cluster=cluster)
    migrations = MigrationTool(
        mock_mode=mock,
        binary=settings.liquibase_binary,
        changelog_dir=settings.changelog_dir,
        database=settings.database_name,
        jdbc_url_template=settings.jdbc_url_template,
    )
    alerts = AlertManager(mock_mode=mock)
    if settings.slack_webhook_url:
        alerts.configure_channel(AlertChannel.SLACK, {"webhook_url": settings.slack_webhook_url})
    if settings.report_webhook_url:
        alerts.configure_channel(AlertChannel.WEBHOOK, {"webhook_url": settings.report_webhook_url})

    agent = EnvironmentAgent(cluster, exposure, migrations, StateStore(settings.state_file), alerts,
                             settings=settings)
    AgentFramework(mock_mode=mock).register_agent(agent)
    logger.info(f"Environment agent ready (mode={settings.mode.value})")
    return agent


def get_agent() -> EnvironmentAgent:
    global _agent
    if _agent is None:
        _agent = build_agent(OrchestratorSettings.from_env())
    return _agent
