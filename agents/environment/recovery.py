"""
RecoveryMixin: unwedge an environment stuck in Terminating.

Clears the finalizers that block garbage collection, then re-issues the
delete. Racing with a normal deletion that finishes first is expected, so
"already gone" at any step counts as success.
"""

from __future__ import annotations

import logging

from framework.agent_framework import EventType
from framework.models import RecoveryResult
from framework.retry import call_with_retry

logger = logging.getLogger("envops.recovery")


class RecoveryMixin:
    """Mixin providing stuck-state recovery."""

    async def recover(self, environment_id: str) -> RecoveryResult:
        policy = self.settings.retry
        result = RecoveryResult(environment_id=environment_id)

        status = await call_with_retry(
            self.cluster.get_resource_status, environment_id,
            policy=policy, operation=f"status {environment_id}", sleep=self._sleep,
        )
        if not status.exists:
            logger.info(f"Recovery for {environment_id}: already gone")
            result.already_gone = True
            return result

        logger.warning(
            f"Recovering {environment_id}: clearing finalizers {status.finalizers or '[]'}"
        )
        await call_with_retry(
            self.cluster.clear_finalizers, environment_id,
            policy=policy, operation=f"clear finalizers {environment_id}", sleep=self._sleep,
        )
        result.finalizers_cleared = True

        deleted = await self.delete(environment_id)
        result.delete_reissued = True
        result.already_gone = deleted.already_absent

        self.emit_event(EventType.RECOVERY_EXECUTED, {
            "environment_id": environment_id,
            "finalizers": list(status.finalizers),
        })
        return result
