"""
ReconcileMixin: Converge cluster state with a rendered EnvironmentSpec.

Contains:
- apply (idempotent create-or-update)
- delete (absent resources are success)
"""

from __future__ import annotations

import logging

from framework.agent_framework import EventType
from framework.models import ApplyResult, DeleteResult, EnvironmentSpec
from framework.retry import call_with_retry

logger = logging.getLogger("envops.reconcile")


class ReconcileMixin:
    """Mixin providing cluster apply/delete with bounded transient retries."""

    async def apply(self, spec: EnvironmentSpec) -> ApplyResult:
        result = await call_with_retry(
            self.cluster.apply_resources, spec,
            policy=self.settings.retry,
            operation=f"apply {spec.environment_id}",
            sleep=self._sleep,
        )
        logger.info(
            f"Applied {spec.environment_id}: {len(result.created)} created, "
            f"{len(result.configured)} unchanged/configured"
        )
        self.emit_event(EventType.RESOURCES_APPLIED, {
            "environment_id": spec.environment_id,
            "created": list(result.created),
            "configured": list(result.configured),
        })
        return result

    async def delete(self, environment_id: str) -> DeleteResult:
        result = await call_with_retry(
            self.cluster.delete_namespace, environment_id,
            policy=self.settings.retry,
            operation=f"delete {environment_id}",
            sleep=self._sleep,
        )
        if result.already_absent:
            logger.info(f"Delete {environment_id}: already absent")
        else:
            logger.info(f"Delete {environment_id}: deletion started")
        return result
