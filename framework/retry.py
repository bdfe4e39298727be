"""
Bounded retry for calls to external collaborators.

Each attempt runs the (blocking) client call in a worker thread under a per-call
timeout so polling workflows for other environments keep running. Only
TransientClusterError is retried; everything else propagates on first sight.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from config.settings import RetryPolicy
from framework.errors import TransientClusterError

logger = logging.getLogger("envops.retry")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before retry number `attempt` (1-based): exponential, capped, jittered."""
    base = min(policy.base_delay_seconds * (2 ** (attempt - 1)), policy.max_delay_seconds)
    return base + random.uniform(0, base * policy.jitter_fraction)


async def call_with_retry(
    func: Callable[..., Any],
    *args: Any,
    policy: RetryPolicy,
    operation: str,
    sleep: Optional[Sleep] = None,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Any:
    """Run `func(*args, **kwargs)` with a per-call timeout and transient-only retries."""
    sleep = sleep or asyncio.sleep
    call_timeout = timeout if timeout is not None else policy.call_timeout_seconds
    attempts = max(policy.max_attempts, 1)
    last_error: Optional[TransientClusterError] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=call_timeout,
            )
        except asyncio.TimeoutError:
            last_error = TransientClusterError(f"{operation} timed out after {call_timeout}s")
        except TransientClusterError as e:
            last_error = e

        if attempt < attempts:
            delay = backoff_delay(policy, attempt)
            logger.warning(
                f"{operation} failed ({last_error}); retry {attempt}/{attempts - 1} in {delay:.1f}s"
            )
            await sleep(delay)

    logger.error(f"{operation} failed after {attempts} attempts: {last_error}")
    raise last_error
