"""Tests for RecoveryMixin: clearing finalizers on a wedged namespace."""

import pytest

from agents.environment.rendering import load_base_template, render
from config.settings import DEFAULT_BASE_TEMPLATE
from framework.agent_framework import EventType

ENV = "feature-user-auth"


@pytest.fixture
def stuck(cluster):
    cluster.apply_resources(render(load_base_template(DEFAULT_BASE_TEMPLATE), ENV))
    cluster.stuck_namespaces.add(ENV)
    cluster.delete_namespace(ENV)
    return cluster


class TestRecover:

    @pytest.mark.asyncio
    async def test_already_gone_is_success(self, agent, cluster):
        result = await agent.recover("never-existed")
        assert result.already_gone
        assert not result.finalizers_cleared
        assert cluster.call_count("clear_finalizers") == 0

    @pytest.mark.asyncio
    async def test_clears_finalizers_and_reissues_delete(self, agent, stuck, framework):
        deletes_before = stuck.call_count("delete_namespace")
        result = await agent.recover(ENV)
        assert result.finalizers_cleared
        assert result.delete_reissued
        assert stuck.call_count("clear_finalizers") == 1
        assert stuck.call_count("delete_namespace") == deletes_before + 1
        assert not stuck.get_resource_status(ENV).exists
        events = framework.get_event_log(EventType.RECOVERY_EXECUTED)
        assert events[-1].data == {"environment_id": ENV, "finalizers": ["kubernetes"]}

    @pytest.mark.asyncio
    async def test_race_with_normal_deletion(self, agent, stuck, monkeypatch):
        original = stuck.clear_finalizers

        def vanish_first(environment_id):
            stuck.namespaces.pop(environment_id, None)
            return original(environment_id)

        monkeypatch.setattr(stuck, "clear_finalizers", vanish_first)
        result = await agent.recover(ENV)
        assert result.delete_reissued
        assert result.already_gone
        assert not stuck.get_resource_status(ENV).exists
