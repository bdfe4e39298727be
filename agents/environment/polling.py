"""
PollingMixin: bounded check-then-sleep waits on external status.

The loop yields to the event loop on every sleep so workflows for other
environments keep running. Running out of budget is a result (TIMED_OUT),
not an exception; callers decide whether to fail or retry.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Union

from framework.errors import PermanentClusterError, TransientClusterError
from framework.models import PollOutcome, PollResult

logger = logging.getLogger("envops.polling")

FailedCheck = Callable[[Any], Union[bool, str, None]]


class PollingMixin:
    """Mixin providing the readiness poller."""

    async def _read_once(self, read_status: Callable[[], Any], limit: Optional[float] = None) -> Any:
        """Read status once, bounded by the per-call timeout and `limit` (seconds), whichever is lower."""
        timeout = self.settings.retry.call_timeout_seconds
        if limit is not None:
            timeout = min(timeout, limit)
        if inspect.iscoroutinefunction(read_status):
            pending = read_status()
        else:
            pending = asyncio.to_thread(read_status)
        try:
            return await asyncio.wait_for(pending, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransientClusterError(f"status read timed out after {timeout:g}s") from e

    async def wait_until(
        self,
        read_status: Callable[[], Any],
        predicate: Callable[[Any], bool],
        interval: float,
        max_wait: float,
        *,
        failed: Optional[FailedCheck] = None,
        cancelled: Optional[Callable[[], bool]] = None,
        description: str = "",
        backoff: float = 1.0,
        max_interval: Optional[float] = None,
    ) -> PollResult:
        """
        Poll read_status until predicate(status) holds.

        Returns READY, FAILED (failed(status) reported a permanent error state,
        or the accessor raised PermanentClusterError), CANCELLED (cancelled()
        returned True) or TIMED_OUT once elapsed >= max_wait. Transient read
        errors count as "not ready yet".
        """
        label = description or getattr(read_status, "__name__", "status")
        start = self._clock()
        attempts = 0
        delay = interval
        status: Any = None

        while True:
            if cancelled is not None and cancelled():
                logger.info(f"Wait for {label} cancelled after {attempts} checks")
                return PollResult(PollOutcome.CANCELLED, self._clock() - start, attempts, status,
                                  reason="superseded by delete")

            attempts += 1
            # a read may not push the outcome past max_wait plus one interval
            limit = max(max_wait - (self._clock() - start), 0) + delay
            try:
                status = await self._read_once(read_status, limit)
            except TransientClusterError as e:
                logger.debug(f"{label}: transient read error ({e}), treating as not ready")
            except PermanentClusterError as e:
                return PollResult(PollOutcome.FAILED, self._clock() - start, attempts, status, reason=str(e))
            else:
                verdict = failed(status) if failed is not None else None
                if verdict:
                    reason = verdict if isinstance(verdict, str) else f"{label} entered a permanent error state"
                    logger.warning(f"{label}: {reason}")
                    return PollResult(PollOutcome.FAILED, self._clock() - start, attempts, status, reason=reason)
                if predicate(status):
                    elapsed = self._clock() - start
                    logger.info(f"{label} satisfied after {elapsed:g}s ({attempts} checks)")
                    return PollResult(PollOutcome.READY, elapsed, attempts, status)

            elapsed = self._clock() - start
            if elapsed >= max_wait:
                logger.warning(f"{label} not satisfied within {max_wait:g}s ({attempts} checks)")
                return PollResult(PollOutcome.TIMED_OUT, elapsed, attempts, status,
                                  reason=f"{label} timed out after {max_wait:g}s")

            await self._sleep(delay)
            if backoff != 1.0:
                delay = delay * backoff
                if max_interval is not None:
                    delay = min(delay, max_interval)
