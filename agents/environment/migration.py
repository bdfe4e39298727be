"""
MigrationMixin: ordered schema changesets against an environment endpoint.

Changesets run strictly in the declared order and the first failure halts
the sequence. Skipping already-applied changesets is the migration tool's
job, not ours.
"""

from __future__ import annotations

import logging
from typing import Sequence

from framework.agent_framework import EventType
from framework.errors import TransientClusterError
from framework.models import ChangesetOutcome, ChangesetStatus, MigrationResult
from framework.retry import call_with_retry

logger = logging.getLogger("envops.migration")


class MigrationMixin:
    """Mixin providing the schema migration driver."""

    async def migrate(self, endpoint: str, changesets: Sequence[str]) -> MigrationResult:
        result = MigrationResult(endpoint=endpoint)
        remaining = list(changesets)

        while remaining:
            changeset = remaining.pop(0)
            try:
                outcome = await call_with_retry(
                    self.migration_tool.run_changeset, endpoint, changeset,
                    policy=self.settings.retry,
                    operation=f"changeset {changeset}",
                    sleep=self._sleep,
                    timeout=self.migration_tool.timeout_seconds,
                )
            except TransientClusterError as e:
                outcome = ChangesetOutcome(changeset=changeset, status=ChangesetStatus.FAILURE, detail=str(e))

            result.outcomes.append(outcome)
            if outcome.status != ChangesetStatus.SUCCESS:
                logger.error(f"Changeset {changeset} failed on {endpoint}: {outcome.detail}")
                result.outcomes.extend(
                    ChangesetOutcome(changeset=c, status=ChangesetStatus.NOT_RUN) for c in remaining
                )
                break
            logger.info(f"Changeset {changeset}: {outcome.detail or 'ok'}")

        if result.succeeded:
            self.emit_event(EventType.SCHEMA_MIGRATED, {
                "endpoint": endpoint,
                "changesets": [o.changeset for o in result.outcomes],
            })
        return result
