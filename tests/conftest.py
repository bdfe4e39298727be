"""Shared fixtures: mock-mode collaborators, a fake clock and a wired EnvironmentAgent."""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agents.environment import EnvironmentAgent  # noqa: E402
from config.settings import OrchestratorSettings, RetryPolicy  # noqa: E402
from framework.agent_framework import AgentFramework  # noqa: E402
from utils.alerting import AlertManager  # noqa: E402
from utils.cluster_client import ClusterClient  # noqa: E402
from utils.exposure_provider import ExposureProvider  # noqa: E402
from utils.migration_tool import MigrationTool  # noqa: E402
from utils.state_store import StateStore  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when a workflow sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    s = OrchestratorSettings()
    s.retry = RetryPolicy(max_attempts=3, base_delay_seconds=1.0, max_delay_seconds=4.0,
                          jitter_fraction=0.0, call_timeout_seconds=5.0)
    return s


@pytest.fixture
def cluster():
    return ClusterClient(mock_mode=True)


@pytest.fixture
def exposure_provider(cluster):
    return ExposureProvider(mock_mode=True, cluster=cluster)


@pytest.fixture
def migration_tool():
    return MigrationTool(mock_mode=True)


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def alerts():
    return AlertManager(mock_mode=True)


@pytest.fixture
def framework():
    return AgentFramework(mock_mode=True)


@pytest.fixture
def agent_factory(cluster, exposure_provider, migration_tool, store, alerts, settings, clock, framework):
    """Build a registered agent; keyword overrides replace individual collaborators."""

    def _make(**overrides) -> EnvironmentAgent:
        agent = EnvironmentAgent(
            overrides.get("cluster", cluster),
            overrides.get("exposure_provider", exposure_provider),
            overrides.get("migration_tool", migration_tool),
            overrides.get("store", store),
            overrides.get("alerts", alerts),
            settings=overrides.get("settings", settings),
            clock=clock,
            sleep=clock.sleep,
        )
        framework.register_agent(agent)
        return agent

    return _make


@pytest.fixture
def agent(agent_factory):
    return agent_factory()


@pytest.fixture
def wait_for_phase():
    """Await (in real time) until a persisted state reaches the given phase."""

    async def _wait(store, environment_id, phase, timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            state = store.load(environment_id)
            if state is not None and state.phase == phase:
                return state
            if loop.time() > deadline:
                seen = state.phase.value if state else None
                raise AssertionError(f"{environment_id} never reached {phase.value} (last: {seen})")
            await asyncio.sleep(0.001)

    return _wait
