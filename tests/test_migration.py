"""Tests for MigrationMixin and MigrationTool."""

import subprocess

import pytest

from config.settings import DEFAULT_CHANGESETS
from framework.agent_framework import EventType
from framework.errors import MigrationFailure, TransientClusterError
from framework.models import ChangesetStatus
from utils.migration_tool import MigrationTool

ENDPOINT = "203.0.113.7:5432"


class FlakyMigrationTool(MigrationTool):
    """Mock tool whose first `flaky` calls fail as if the database were unreachable."""

    def __init__(self, flaky: int):
        super().__init__(mock_mode=True)
        self.flaky = flaky

    def run_changeset(self, endpoint, changeset):
        if self.flaky:
            self.flaky -= 1
            raise TransientClusterError("connection refused")
        return super().run_changeset(endpoint, changeset)


class TestMigrate:

    @pytest.mark.asyncio
    async def test_runs_in_declared_order(self, agent, migration_tool, framework):
        result = await agent.migrate(ENDPOINT, DEFAULT_CHANGESETS)
        assert result.succeeded
        assert [cs for _, cs in migration_tool.runs] == list(DEFAULT_CHANGESETS)
        assert framework.get_event_log(EventType.SCHEMA_MIGRATED)

    @pytest.mark.asyncio
    async def test_halts_on_first_failure(self, agent, migration_tool):
        migration_tool.failing_changesets["B"] = "relation already exists"
        result = await agent.migrate(ENDPOINT, ["A", "B", "C"])
        assert [o.status for o in result.outcomes] == [
            ChangesetStatus.SUCCESS, ChangesetStatus.FAILURE, ChangesetStatus.NOT_RUN,
        ]
        assert [cs for _, cs in migration_tool.runs] == ["A", "B"]
        with pytest.raises(MigrationFailure) as exc:
            result.raise_for_failure()
        assert exc.value.changeset == "B"

    @pytest.mark.asyncio
    async def test_rerun_skips_applied_changesets(self, agent):
        await agent.migrate(ENDPOINT, ["A", "B"])
        result = await agent.migrate(ENDPOINT, ["A", "B"])
        assert result.succeeded
        assert [o.detail for o in result.outcomes] == ["already applied", "already applied"]

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, agent_factory, clock):
        tool = FlakyMigrationTool(flaky=2)
        agent = agent_factory(migration_tool=tool)
        result = await agent.migrate(ENDPOINT, ["A", "B"])
        assert result.succeeded
        assert clock.sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_unresolved_transient_failure_halts(self, agent_factory):
        tool = FlakyMigrationTool(flaky=10)
        agent = agent_factory(migration_tool=tool)
        result = await agent.migrate(ENDPOINT, ["A", "B"])
        assert result.status_of("A") == ChangesetStatus.FAILURE
        assert "connection refused" in result.outcomes[0].detail
        assert result.status_of("B") == ChangesetStatus.NOT_RUN

    @pytest.mark.asyncio
    async def test_empty_changeset_list(self, agent):
        result = await agent.migrate(ENDPOINT, [])
        assert result.succeeded
        assert result.outcomes == []


class FakeCompleted:
    def __init__(self, returncode, stdout="", stderr=""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class TestLiveMigrationTool:
    """Liquibase CLI invocation with subprocess.run patched out."""

    @pytest.fixture
    def tool(self, tmp_path):
        return MigrationTool(mock_mode=False, binary="liquibase", changelog_dir=tmp_path, database="app")

    def test_jdbc_url(self, tool):
        assert tool.jdbc_url(ENDPOINT) == "jdbc:postgresql://203.0.113.7:5432/app"

    def test_success(self, tool, monkeypatch, tmp_path):
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return FakeCompleted(0, stdout="Liquibase command 'update' was executed successfully.")

        monkeypatch.setattr(subprocess, "run", fake_run)
        outcome = tool.run_changeset(ENDPOINT, "changelogs/admin/users.yaml")
        assert outcome.status == ChangesetStatus.SUCCESS
        assert calls[0] == [
            "liquibase",
            "--url=jdbc:postgresql://203.0.113.7:5432/app",
            f"--search-path={tmp_path}",
            "--changelog-file=changelogs/admin/users.yaml",
            "update",
        ]

    def test_failure_reports_last_stderr_line(self, tool, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda args, **kw: FakeCompleted(
            1, stderr="Running Changeset: users.yaml::1\nERROR: relation \"users\" already exists"))
        outcome = tool.run_changeset(ENDPOINT, "users.yaml")
        assert outcome.status == ChangesetStatus.FAILURE
        assert outcome.detail == 'ERROR: relation "users" already exists'

    def test_connection_refused_is_transient(self, tool, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda args, **kw: FakeCompleted(
            1, stderr="Connection refused. Check that the hostname and port are correct"))
        with pytest.raises(TransientClusterError):
            tool.run_changeset(ENDPOINT, "users.yaml")

    def test_timeout_is_transient(self, tool, monkeypatch):
        def fake_run(args, **kwargs):
            raise subprocess.TimeoutExpired(args, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", fake_run)
        with pytest.raises(TransientClusterError):
            tool.run_changeset(ENDPOINT, "users.yaml")

    def test_missing_binary_is_a_failure(self, tool, monkeypatch):
        def fake_run(args, **kwargs):
            raise FileNotFoundError(2, "No such file or directory", "liquibase")

        monkeypatch.setattr(subprocess, "run", fake_run)
        outcome = tool.run_changeset(ENDPOINT, "users.yaml")
        assert outcome.status == ChangesetStatus.FAILURE
        assert "not found" in outcome.detail
