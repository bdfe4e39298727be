"""
MigrationTool: runs one schema changeset against an environment endpoint.

Live mode shells out to the Liquibase CLI (`liquibase update`); credentials
come from the standard LIQUIBASE_COMMAND_USERNAME / LIQUIBASE_COMMAND_PASSWORD
environment variables. Liquibase's own DATABASECHANGELOG bookkeeping skips
changesets that were already applied.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from pathlib import Path
from typing import Mapping, Optional

from config.settings import JDBC_URL_TEMPLATE, LIQUIBASE_BINARY, MIGRATION_CALL_TIMEOUT_SECONDS
from framework.errors import TransientClusterError
from framework.models import ChangesetOutcome, ChangesetStatus

logger = logging.getLogger("envops.migration_tool")

# stderr fragments meaning the database was not reachable yet
TRANSIENT_MARKERS = (
    "connection refused",
    "connection attempt failed",
    "communications link failure",
    "could not connect",
)


def _fmt(args: list[str]) -> str:
    return " ".join(shlex.quote(a) for a in args)


class MigrationTool:
    """Mock-capable Liquibase runner."""

    def __init__(self, mock_mode: bool = True, binary: str = LIQUIBASE_BINARY,
                 changelog_dir: Path = Path("db"), database: str = "app",
                 jdbc_url_template: str = JDBC_URL_TEMPLATE,
                 timeout_seconds: float = MIGRATION_CALL_TIMEOUT_SECONDS,
                 env: Optional[Mapping[str, str]] = None):
        self.mock_mode = mock_mode
        self.binary = binary
        self.changelog_dir = Path(changelog_dir)
        self.database = database
        self.jdbc_url_template = jdbc_url_template
        self.timeout_seconds = timeout_seconds
        self._env = dict(env) if env else None

        # mock-mode knobs and bookkeeping
        self.failing_changesets: dict[str, str] = {}
        self.applied: dict[str, list[str]] = {}
        self.runs: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def run_changeset(self, endpoint: str, changeset: str) -> ChangesetOutcome:
        if self.mock_mode:
            return self._mock_run(endpoint, changeset)
        return self._live_run(endpoint, changeset)

    def jdbc_url(self, endpoint: str) -> str:
        return self.jdbc_url_template.format(endpoint=endpoint, database=self.database)

    def _mock_run(self, endpoint: str, changeset: str) -> ChangesetOutcome:
        with self._lock:
            self.runs.append((endpoint, changeset))
            if changeset in self.failing_changesets:
                detail = self.failing_changesets[changeset]
                logger.info(f"[MOCK] {changeset} failed on {endpoint}: {detail}")
                return ChangesetOutcome(changeset=changeset, status=ChangesetStatus.FAILURE, detail=detail)
            done = self.applied.setdefault(endpoint, [])
            detail = "already applied" if changeset in done else "applied"
            if changeset not in done:
                done.append(changeset)
        logger.info(f"[MOCK] {changeset} on {endpoint}: {detail}")
        return ChangesetOutcome(changeset=changeset, status=ChangesetStatus.SUCCESS, detail=detail)

    def _merged_env(self) -> Optional[Mapping[str, str]]:
        if not self._env:
            return None
        merged = os.environ.copy()
        merged.update(self._env)
        return merged

    def _live_run(self, endpoint: str, changeset: str) -> ChangesetOutcome:
        args = [
            self.binary,
            f"--url={self.jdbc_url(endpoint)}",
            f"--search-path={self.changelog_dir}",
            f"--changelog-file={changeset}",
            "update",
        ]
        logger.info(f"+ {_fmt(args)}")
        start = time.time()
        try:
            p = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=self.timeout_seconds,
                env=self._merged_env(),
            )
        except subprocess.TimeoutExpired as e:
            raise TransientClusterError(f"{changeset} timed out after {self.timeout_seconds}s") from e
        except FileNotFoundError as e:
            return ChangesetOutcome(changeset=changeset, status=ChangesetStatus.FAILURE,
                                    detail=f"{self.binary} not found: {e}")
        duration = time.time() - start

        if p.returncode == 0:
            return ChangesetOutcome(changeset=changeset, status=ChangesetStatus.SUCCESS,
                                    detail="applied", duration_seconds=duration)

        stderr = (p.stderr or p.stdout or "").strip()
        lowered = stderr.lower()
        if any(marker in lowered for marker in TRANSIENT_MARKERS):
            raise TransientClusterError(f"{changeset}: database unreachable at {endpoint}")
        last_line = stderr.splitlines()[-1] if stderr else f"exit code {p.returncode}"
        return ChangesetOutcome(changeset=changeset, status=ChangesetStatus.FAILURE,
                                detail=last_line, duration_seconds=duration)
