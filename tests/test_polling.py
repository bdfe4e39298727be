"""Tests for the readiness poller (PollingMixin.wait_until)."""

import asyncio
import time

import pytest

from framework.errors import PermanentClusterError, TransientClusterError
from framework.models import PollOutcome


class Sequence:
    """Status accessor returning queued values (or raising queued errors), then the last value forever."""

    def __init__(self, *values):
        self.values = list(values)
        self.reads = 0

    def __call__(self):
        self.reads += 1
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        if isinstance(value, Exception):
            raise value
        return value


def _truthy(status):
    return bool(status)


class TestWaitUntil:

    @pytest.mark.asyncio
    async def test_ready_immediately(self, agent, clock):
        result = await agent.wait_until(Sequence(True), _truthy, 10, 60)
        assert result.outcome == PollOutcome.READY
        assert result.ready
        assert result.attempts == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_ready_after_some_checks(self, agent, clock):
        accessor = Sequence(False, False, True)
        result = await agent.wait_until(accessor, _truthy, 10, 60)
        assert result.outcome == PollOutcome.READY
        assert result.attempts == 3
        assert result.elapsed_seconds == 20
        assert result.last_status is True

    @pytest.mark.asyncio
    async def test_timeout_within_budget_plus_one_interval(self, agent, clock):
        result = await agent.wait_until(Sequence(False), _truthy, 10, 60)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert 60 <= result.elapsed_seconds < 70
        assert result.attempts == 7
        assert clock.sleeps == [10] * 6

    @pytest.mark.asyncio
    async def test_timeout_when_interval_does_not_divide_budget(self, agent, clock):
        result = await agent.wait_until(Sequence(False), _truthy, 15, 50)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert 50 <= result.elapsed_seconds < 65

    @pytest.mark.asyncio
    async def test_never_times_out_early(self, agent, clock):
        result = await agent.wait_until(Sequence(False), _truthy, 15, 720)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert 720 <= result.elapsed_seconds < 735

    @pytest.mark.asyncio
    async def test_transient_read_errors_count_as_not_ready(self, agent, clock):
        accessor = Sequence(TransientClusterError("blip"), TransientClusterError("blip"), True)
        result = await agent.wait_until(accessor, _truthy, 5, 60)
        assert result.outcome == PollOutcome.READY
        assert result.attempts == 3

    @pytest.mark.asyncio
    async def test_transient_errors_until_budget_runs_out(self, agent, clock):
        result = await agent.wait_until(Sequence(TransientClusterError("down")), _truthy, 10, 30)
        assert result.outcome == PollOutcome.TIMED_OUT

    @pytest.mark.asyncio
    async def test_fails_fast_on_permanent_state(self, agent, clock):
        accessor = Sequence({"ready": False, "reason": None}, {"ready": False, "reason": "CrashLoopBackOff"})
        result = await agent.wait_until(
            accessor, lambda s: s["ready"], 15, 720, failed=lambda s: s["reason"],
        )
        assert result.outcome == PollOutcome.FAILED
        assert result.reason == "CrashLoopBackOff"
        assert result.attempts == 2
        assert clock.now == 15

    @pytest.mark.asyncio
    async def test_failed_callable_may_return_bool(self, agent):
        result = await agent.wait_until(Sequence("broken"), lambda s: False, 1, 10,
                                        failed=lambda s: s == "broken", description="db")
        assert result.outcome == PollOutcome.FAILED
        assert "db" in result.reason

    @pytest.mark.asyncio
    async def test_permanent_read_error_fails(self, agent):
        result = await agent.wait_until(Sequence(PermanentClusterError("forbidden", 403)), _truthy, 1, 10)
        assert result.outcome == PollOutcome.FAILED
        assert "forbidden" in result.reason

    @pytest.mark.asyncio
    async def test_cancelled(self, agent, clock):
        accessor = Sequence(False)
        result = await agent.wait_until(accessor, _truthy, 10, 600, cancelled=lambda: accessor.reads >= 2)
        assert result.outcome == PollOutcome.CANCELLED
        assert accessor.reads == 2

    @pytest.mark.asyncio
    async def test_progressive_backoff(self, agent, clock):
        result = await agent.wait_until(Sequence(False), _truthy, 1, 20, backoff=2.0, max_interval=4)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert clock.sleeps[:4] == [1, 2, 4, 4]

    @pytest.mark.asyncio
    async def test_async_accessor(self, agent):
        async def read():
            return True

        result = await agent.wait_until(read, _truthy, 1, 10)
        assert result.ready


class TestReadBoundedByBudget:
    """A slow status read never pushes TIMED_OUT past max_wait plus one interval."""

    @pytest.fixture
    def realtime_agent(self, agent):
        agent._clock = time.monotonic
        agent._sleep = asyncio.sleep
        return agent

    @pytest.mark.asyncio
    async def test_slow_async_read(self, realtime_agent):
        async def slow_read():
            await asyncio.sleep(1.0)
            return True

        started = time.monotonic()
        result = await realtime_agent.wait_until(slow_read, _truthy, 0.05, 0.2)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_slow_blocking_read(self, realtime_agent):
        def slow_read():
            time.sleep(1.0)
            return True

        started = time.monotonic()
        result = await realtime_agent.wait_until(slow_read, _truthy, 0.05, 0.2)
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.attempts == 1
        assert time.monotonic() - started < 0.5

    @pytest.mark.asyncio
    async def test_sub_second_budget_in_reason(self, realtime_agent):
        result = await realtime_agent.wait_until(Sequence(False), _truthy, 0.05, 0.2, description="db")
        assert result.outcome == PollOutcome.TIMED_OUT
        assert result.reason == "db timed out after 0.2s"
