"""
Environment Agent

Maps a branch's existence to the existence of an isolated, fully provisioned
database environment:
- Provision: Render -> Reconcile -> Poll(ready) -> Expose -> Poll(endpoint) -> Migrate
- Decommission: Release exposure -> Reconcile(delete) -> Poll(gone) -> Recovery (if stuck)

One workflow task per environment id. Concurrent creates for the same id are
coalesced; a delete arriving mid-create is observed between phases (and inside
polling) and turns the workflow into a teardown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

from config.settings import BRANCH_ANNOTATION, OrchestratorSettings, PollPolicy
from framework.agent_framework import BaseAgent, EventType, TaskResult
from framework.errors import EnvOpsError
from framework.models import (
    CREATE_SIDE_ACTIVE, BranchEventKind, BranchRef, EnvironmentSpec, EnvironmentState,
    Phase, PollOutcome, PollResult, WorkflowReport,
)

from .exposure import ExposureMixin
from .migration import MigrationMixin
from .naming import resolve
from .polling import PollingMixin
from .reconcile import ReconcileMixin
from .recovery import RecoveryMixin
from .rendering import load_base_template, render

logger = logging.getLogger("envops.agent")

PROVISION = "provision"
DECOMMISSION = "decommission"

TERMINAL_EVENTS = {
    Phase.READY: EventType.ENVIRONMENT_READY,
    Phase.FAILED: EventType.ENVIRONMENT_FAILED,
    Phase.DELETED: EventType.ENVIRONMENT_DELETED,
}


class WorkflowHalted(EnvOpsError):
    """A phase ended without success (timeout, permanent error state)."""


class EnvironmentAgent(ReconcileMixin, PollingMixin, ExposureMixin, MigrationMixin, RecoveryMixin, BaseAgent):
    """
    Lifecycle orchestrator for per-branch environments.

    Every run ends in Ready, Failed or Deleted and produces a WorkflowReport
    that is persisted, emitted as an event and routed to the alert manager.
    """

    def __init__(self, cluster_client, exposure_provider, migration_tool, state_store, alert_manager,
                 settings: Optional[OrchestratorSettings] = None,
                 base_template: Optional[list[dict]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        super().__init__(
            name="EnvironmentAgent",
            description="Provisions and tears down per-branch database environments",
        )
        self.cluster = cluster_client
        self.exposure_provider = exposure_provider
        self.migration_tool = migration_tool
        self.store = state_store
        self.alerts = alert_manager
        self.settings = settings or OrchestratorSettings()
        self._base_template = base_template
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._wall_epoch = datetime.now(timezone.utc)
        self._clock_epoch = self._clock()

        self._inflight: dict[str, tuple[str, asyncio.Task]] = {}
        self._delete_requests: set[str] = set()
        self._background: set[asyncio.Task] = set()

    def register_tools(self) -> None:
        self.register_tool("provision_environment", self.provision_environment,
                           "Provision (or re-provision) the environment for a branch", risk_level="medium")
        self.register_tool("decommission_environment", self.decommission_environment,
                           "Tear down the environment for a branch", risk_level="high")
        self.register_tool("recover_environment", self.recover,
                           "Clear blocking finalizers and re-issue delete", risk_level="high")
        self.register_tool("resume_environments", self.resume_environments,
                           "Resume workflows interrupted in a non-terminal phase")

    async def run_cycle(self, context: dict = None) -> list[TaskResult]:
        """Process a batch of branch events concurrently (context['events'])."""
        events: list[BranchRef] = (context or {}).get("events", [])
        calls = []
        for ref in events:
            tool = "decommission_environment" if ref.event == BranchEventKind.DELETED else "provision_environment"
            calls.append(self.execute_tool(tool, branch=ref.name))
        return list(await asyncio.gather(*calls))

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    @property
    def base_template(self) -> list[dict]:
        if self._base_template is None:
            self._base_template = load_base_template(Path(self.settings.base_template_path))
        return self._base_template

    def environment_id_for(self, branch: str) -> str:
        return resolve(branch, self.settings.max_id_length)

    async def provision_environment(self, branch: str) -> WorkflowReport:
        return await self.on_branch_event(BranchRef(name=branch, event=BranchEventKind.CREATED))

    async def decommission_environment(self, branch: str) -> WorkflowReport:
        return await self.on_branch_event(BranchRef(name=branch, event=BranchEventKind.DELETED))

    async def on_branch_event(self, ref: BranchRef) -> WorkflowReport:
        """Route a branch event to its workflow and return the terminal report."""
        environment_id = self.environment_id_for(ref.name)
        logger.info(f"Branch event {ref.event.value} for {ref.name!r} -> {environment_id}")
        self.emit_event(EventType.BRANCH_EVENT_ACCEPTED, {
            "branch": ref.name,
            "event": ref.event.value,
            "environment_id": environment_id,
        })
        if ref.event == BranchEventKind.DELETED:
            return await self._route_delete(environment_id, ref.name)
        return await self._route_create(environment_id, ref.name)

    def submit(self, ref: BranchRef) -> asyncio.Task:
        """Schedule on_branch_event in the background. Needs a running loop."""
        return self._track(asyncio.ensure_future(self.on_branch_event(ref)))

    def submit_resume(self) -> asyncio.Task:
        """Schedule resume_environments in the background. Needs a running loop."""
        return self._track(asyncio.ensure_future(self.resume_environments()))

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for every submitted and in-flight workflow to finish."""
        while self._background or self._inflight:
            pending = list(self._background) + [task for _, task in self._inflight.values()]
            await asyncio.wait(pending)

    async def shutdown(self) -> None:
        """Cancel running workflows. Their persisted phase is resumed on next start."""
        tasks = list(self._background) + [task for _, task in self._inflight.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running workflow task(s)")

    def in_flight(self, environment_id: str) -> Optional[str]:
        running = self._inflight.get(environment_id)
        return running[0] if running else None

    async def _route_create(self, environment_id: str, branch: str) -> WorkflowReport:
        while True:
            running = self._inflight.get(environment_id)
            if running is None:
                return await self._start(environment_id, PROVISION, self.provision(environment_id, branch))
            kind, task = running
            if kind == PROVISION and environment_id not in self._delete_requests:
                logger.info(f"{environment_id}: create coalesced with in-flight provision")
                return await asyncio.shield(task)
            logger.info(f"{environment_id}: waiting for in-flight teardown before provisioning")
            await asyncio.wait({task})

    async def _route_delete(self, environment_id: str, branch: str) -> WorkflowReport:
        running = self._inflight.get(environment_id)
        if running is not None and running[0] == DECOMMISSION:
            logger.info(f"{environment_id}: delete coalesced with in-flight teardown")
            return await asyncio.shield(running[1])

        self._request_delete(environment_id)
        if running is not None:
            logger.info(f"{environment_id}: delete requested while provisioning, cancelling create")
            workflow = self._decommission_after(environment_id, branch, running[1])
        else:
            workflow = self.decommission(environment_id, branch)
        return await self._start(environment_id, DECOMMISSION, workflow)

    async def _start(self, environment_id: str, kind: str, workflow) -> WorkflowReport:
        task = asyncio.ensure_future(workflow)
        self._inflight[environment_id] = (kind, task)

        def _forget(done: asyncio.Task) -> None:
            current = self._inflight.get(environment_id)
            if current is not None and current[1] is done:
                del self._inflight[environment_id]

        task.add_done_callback(_forget)
        # callers may be cancelled (HTTP disconnect); the workflow keeps going
        return await asyncio.shield(task)

    def _request_delete(self, environment_id: str) -> None:
        self._delete_requests.add(environment_id)
        state = self.store.load(environment_id)
        if state is not None and not state.delete_requested:
            state.delete_requested = True
            self.store.save(state)

    def _delete_pending(self, environment_id: str) -> bool:
        return environment_id in self._delete_requests

    async def _decommission_after(self, environment_id: str, branch: str,
                                  provision: asyncio.Task) -> WorkflowReport:
        report = await provision
        if report.final_phase == Phase.DELETED:
            return report
        return await self.decommission(environment_id, branch)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return self._wall_epoch + timedelta(seconds=self._clock() - self._clock_epoch)

    def _transition(self, state: EnvironmentState, phase: Phase) -> None:
        previous = state.phase
        state.transition(phase, self._now())
        state.delete_requested = self._delete_pending(state.environment_id)
        self.store.save(state)
        logger.info(f"{state.environment_id}: {previous.value} -> {phase.value}")
        self.emit_event(EventType.PHASE_CHANGED, {
            "environment_id": state.environment_id,
            "from": previous.value,
            "to": phase.value,
        })

    def _fail(self, state: EnvironmentState, reason: str) -> None:
        state.fail(reason, self._now())
        self.store.save(state)
        logger.error(f"{state.environment_id}: Failed ({reason})")

    def _load_state(self, environment_id: str, branch: str) -> EnvironmentState:
        state = self.store.load(environment_id)
        if state is None:
            now = self._now()
            state = EnvironmentState(environment_id=environment_id, branch=branch,
                                     created_at=now, last_transition_at=now)
            self.store.save(state)
        elif branch:
            state.branch = branch
        return state

    def _render(self, state: EnvironmentState) -> EnvironmentSpec:
        overrides = {"annotations": {BRANCH_ANNOTATION: state.branch}}
        return render(self.base_template, state.environment_id, overrides)

    def _finish(self, state: EnvironmentState) -> WorkflowReport:
        report = WorkflowReport.from_state(state)
        report.finished_at = self._now()
        self.store.record_report(report)
        self.emit_event(TERMINAL_EVENTS[state.phase], {
            "environment_id": state.environment_id,
            "report": report,
        })
        self.alerts.report_outcome(report, source_agent=self.name)
        logger.info(f"Workflow finished: {report}")
        return report

    async def provision(self, environment_id: str, branch: str) -> WorkflowReport:
        """
        Run the create workflow. A persisted non-terminal create-side phase is
        resumed from that phase; earlier side effects are not repeated.
        """
        state = self._load_state(environment_id, branch)
        steps = [
            (Phase.RECONCILING, self._step_reconcile),
            (Phase.WAITING_READY, self._step_wait_ready),
            (Phase.EXPOSING, self._step_expose),
            (Phase.WAITING_ENDPOINT, self._step_wait_endpoint),
            (Phase.MIGRATING, self._step_migrate),
        ]
        phases = [phase for phase, _ in steps]

        try:
            if state.phase in (Phase.DELETING, Phase.WAITING_GONE):
                logger.info(f"{environment_id}: finishing interrupted teardown first")
                await self._teardown(state)
            if state.phase.is_terminal:
                self._transition(state, Phase.PENDING)
                state.failure_reason = None
                state.external_endpoint = None

            start = 0
            if state.phase in CREATE_SIDE_ACTIVE and state.phase != Phase.PENDING:
                start = phases.index(state.phase)
                logger.info(f"{environment_id}: resuming provision at {state.phase.value}")

            spec = self._render(state)
            for phase, step in steps[start:]:
                if self._delete_pending(environment_id):
                    break
                if state.phase != phase:
                    self._transition(state, phase)
                if not await step(state, spec):
                    break

            if self._delete_pending(environment_id):
                logger.info(f"{environment_id}: superseded by delete at {state.phase.value}")
                await self._teardown(state)
                self._delete_requests.discard(environment_id)
            else:
                self._transition(state, Phase.READY)
        except EnvOpsError as e:
            self._fail(state, f"{state.phase.value}: {e}")
        except Exception as e:
            logger.exception(f"{environment_id}: unexpected error in {state.phase.value}")
            self._fail(state, f"{state.phase.value}: {type(e).__name__}: {e}")
        return self._finish(state)

    async def decommission(self, environment_id: str, branch: str) -> WorkflowReport:
        """Run the delete workflow. Deleting an environment that never existed succeeds."""
        state = self._load_state(environment_id, branch)
        try:
            if state.phase == Phase.DELETED:
                self._transition(state, Phase.PENDING)
            await self._teardown(state)
        except EnvOpsError as e:
            self._fail(state, f"{state.phase.value}: {e}")
        except Exception as e:
            logger.exception(f"{environment_id}: unexpected error in {state.phase.value}")
            self._fail(state, f"{state.phase.value}: {type(e).__name__}: {e}")
        finally:
            self._delete_requests.discard(environment_id)
        return self._finish(state)

    async def resume_environments(self) -> list[WorkflowReport]:
        """Resume every persisted workflow that stopped in a non-terminal phase."""
        pending = []
        for state in self.store.list_states():
            if state.phase.is_terminal or self.in_flight(state.environment_id):
                continue
            teardown = state.delete_requested or state.phase in (Phase.DELETING, Phase.WAITING_GONE)
            event = BranchEventKind.DELETED if teardown else BranchEventKind.CREATED
            logger.info(f"Resuming {state.environment_id} ({state.phase.value}) as {event.value}")
            if teardown:
                pending.append(self._route_delete(state.environment_id, state.branch))
            else:
                pending.append(self._route_create(state.environment_id, state.branch))
        return list(await asyncio.gather(*pending))

    # ------------------------------------------------------------------
    # Provision steps: return False when superseded by a delete
    # ------------------------------------------------------------------

    async def _step_reconcile(self, state: EnvironmentState, spec: EnvironmentSpec) -> bool:
        await self.apply(spec)
        return True

    async def _wait_ready(self, environment_id: str, policy: PollPolicy) -> PollResult:
        return await self.wait_until(
            lambda: self.cluster.get_resource_status(environment_id),
            lambda status: status.exists and status.ready,
            policy.interval_seconds,
            policy.max_wait_seconds,
            failed=lambda status: status.failure_reason,
            cancelled=lambda: self._delete_pending(environment_id),
            description=f"database {environment_id}",
            backoff=policy.backoff,
            max_interval=policy.max_interval_seconds,
        )

    async def _step_wait_ready(self, state: EnvironmentState, spec: EnvironmentSpec) -> bool:
        policy = self.settings.ready_poll
        result = await self._wait_ready(state.environment_id, policy)
        if result.outcome == PollOutcome.TIMED_OUT and self.settings.readiness_retry_once:
            logger.warning(f"{state.environment_id}: database not ready, re-applying and waiting once more")
            await self.apply(spec)
            result = await self._wait_ready(state.environment_id, policy)

        if result.outcome == PollOutcome.CANCELLED:
            return False
        if result.outcome == PollOutcome.TIMED_OUT:
            raise WorkflowHalted(f"database not ready within {policy.max_wait_seconds:g}s")
        if result.outcome == PollOutcome.FAILED:
            raise WorkflowHalted(result.reason)
        return True

    async def _step_expose(self, state: EnvironmentState, spec: EnvironmentSpec) -> bool:
        descriptor = spec.manifests(include_exposure=True)[-1]
        state.exposure_handle = await self.expose(state.environment_id, descriptor)
        self.store.save(state)
        return True

    async def _step_wait_endpoint(self, state: EnvironmentState, spec: EnvironmentSpec) -> bool:
        handle = state.exposure_handle
        if handle is None:
            handle = await self.expose(state.environment_id, spec.manifests(include_exposure=True)[-1])
            state.exposure_handle = handle
        endpoint = await self.wait_for_endpoint(
            handle, spec.exposure_port,
            cancelled=lambda: self._delete_pending(state.environment_id),
        )
        if endpoint is None:
            return False
        state.external_endpoint = endpoint
        self.store.save(state)
        return True

    async def _step_migrate(self, state: EnvironmentState, spec: EnvironmentSpec) -> bool:
        result = await self.migrate(state.external_endpoint, self.settings.changesets)
        result.raise_for_failure()
        return True

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _wait_gone(self, environment_id: str, policy: PollPolicy) -> PollResult:
        return await self.wait_until(
            lambda: self.cluster.get_resource_status(environment_id),
            lambda status: not status.exists,
            policy.interval_seconds,
            policy.max_wait_seconds,
            description=f"removal of {environment_id}",
            backoff=policy.backoff,
            max_interval=policy.max_interval_seconds,
        )

    async def _teardown(self, state: EnvironmentState) -> None:
        environment_id = state.environment_id
        if state.phase != Phase.WAITING_GONE:
            if state.phase != Phase.DELETING:
                self._transition(state, Phase.DELETING)
            await self.release(environment_id, state.exposure_handle)
            state.exposure_handle = None
            state.external_endpoint = None
            deleted = await self.delete(environment_id)
            self._transition(state, Phase.WAITING_GONE)
            if deleted.already_absent:
                self._transition(state, Phase.DELETED)
                return

        result = await self._wait_gone(environment_id, self.settings.gone_grace_poll)
        if result.outcome == PollOutcome.TIMED_OUT:
            logger.warning(
                f"{environment_id}: still present after {self.settings.gone_grace_poll.max_wait_seconds:g}s, "
                f"running recovery"
            )
            await self.recover(environment_id)
            result = await self._wait_gone(environment_id, self.settings.gone_final_poll)
        if not result.ready:
            raise WorkflowHalted(result.reason or f"{environment_id} was not removed")
        self._transition(state, Phase.DELETED)
