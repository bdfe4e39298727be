"""
ExposureMixin: External endpoint for a ready environment.

Contains:
- expose (idempotent address request)
- wait_for_endpoint (poll until an address is assigned; never retried)
- release (return the address during teardown)
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from config.settings import PollPolicy
from framework.agent_framework import EventType
from framework.errors import ExposureTimeoutError, PermanentClusterError
from framework.models import ExposureHandle, PollOutcome
from framework.retry import call_with_retry

logger = logging.getLogger("envops.exposure")


class ExposureMixin:
    """Mixin providing external exposure management."""

    async def expose(self, environment_id: str, descriptor: Optional[dict] = None) -> ExposureHandle:
        """Request an external address. Returns the existing handle when already exposed."""
        handle = await call_with_retry(
            self.exposure_provider.request_external_address, environment_id, descriptor,
            policy=self.settings.retry,
            operation=f"expose {environment_id}",
            sleep=self._sleep,
        )
        logger.info(f"Exposure requested for {environment_id}: {handle.namespace}/{handle.name}")
        return handle

    async def wait_for_endpoint(self, handle: ExposureHandle, port: int,
                                policy: Optional[PollPolicy] = None,
                                cancelled: Optional[Callable[[], bool]] = None) -> Optional[str]:
        """
        Wait for the provider to assign an address and return "address:port".

        Returns None when cancelled. Raises ExposureTimeoutError when the budget
        runs out; the caller must not retry, since each allocation may cost quota.
        """
        policy = policy or self.settings.endpoint_poll
        result = await self.wait_until(
            lambda: self.exposure_provider.get_assigned_address(handle),
            lambda address: bool(address),
            policy.interval_seconds,
            policy.max_wait_seconds,
            cancelled=cancelled,
            description=f"endpoint for {handle.environment_id}",
            backoff=policy.backoff,
            max_interval=policy.max_interval_seconds,
        )
        if result.outcome == PollOutcome.CANCELLED:
            return None
        if result.outcome == PollOutcome.TIMED_OUT:
            raise ExposureTimeoutError(
                f"no external address for {handle.environment_id} within {policy.max_wait_seconds:g}s"
            )
        if result.outcome == PollOutcome.FAILED:
            raise PermanentClusterError(result.reason)

        endpoint = f"{result.last_status}:{port}" if port else str(result.last_status)
        self.emit_event(EventType.ENDPOINT_ASSIGNED, {
            "environment_id": handle.environment_id,
            "endpoint": endpoint,
        })
        return endpoint

    async def release(self, environment_id: str, handle: Optional[ExposureHandle] = None) -> bool:
        """Release the external address. Nothing to release is success."""
        released = await call_with_retry(
            self.exposure_provider.release, environment_id, handle.name if handle else None,
            policy=self.settings.retry,
            operation=f"release exposure {environment_id}",
            sleep=self._sleep,
        )
        if released:
            logger.info(f"Released external address for {environment_id}")
        return released
