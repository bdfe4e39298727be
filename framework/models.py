"""
Data model for the EnvOps orchestrator.

BranchRef events come in, EnvironmentSpec values flow from the renderer to the
reconciler, and EnvironmentState is the one mutable record each workflow owns.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from framework.errors import InvalidTransitionError, MigrationFailure


class BranchEventKind(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class BranchRef:
    """A branch lifecycle event from the trigger source."""
    name: str
    event: BranchEventKind

    @classmethod
    def from_github(cls, event_name: str, payload: dict) -> Optional["BranchRef"]:
        """
        Build a BranchRef from a GitHub webhook delivery.

        `create`/`delete` carry `ref_type` and a bare `ref`; `push` carries a
        full `refs/heads/...` ref and a `deleted` flag. Tags and other events
        return None.
        """
        if event_name in ("create", "delete"):
            if payload.get("ref_type") != "branch" or not payload.get("ref"):
                return None
            kind = BranchEventKind.CREATED if event_name == "create" else BranchEventKind.DELETED
            return cls(name=payload["ref"], event=kind)
        if event_name == "push":
            ref = payload.get("ref", "")
            if not ref.startswith("refs/heads/"):
                return None
            name = ref[len("refs/heads/"):]
            if payload.get("deleted"):
                return cls(name=name, event=BranchEventKind.DELETED)
            if payload.get("created"):
                return cls(name=name, event=BranchEventKind.CREATED)
            return cls(name=name, event=BranchEventKind.UPDATED)
        return None


class Phase(Enum):
    PENDING = "Pending"
    RECONCILING = "Reconciling"
    WAITING_READY = "WaitingReady"
    EXPOSING = "Exposing"
    WAITING_ENDPOINT = "WaitingEndpoint"
    MIGRATING = "Migrating"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"
    WAITING_GONE = "WaitingGone"
    DELETED = "Deleted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


CREATE_CHAIN = (
    Phase.PENDING,
    Phase.RECONCILING,
    Phase.WAITING_READY,
    Phase.EXPOSING,
    Phase.WAITING_ENDPOINT,
    Phase.MIGRATING,
    Phase.READY,
)
CREATE_SIDE_ACTIVE = frozenset(CREATE_CHAIN[:-1])
TERMINAL_PHASES = frozenset({Phase.READY, Phase.FAILED, Phase.DELETED})


def _allowed_transitions() -> dict[Phase, frozenset[Phase]]:
    allowed: dict[Phase, set[Phase]] = {phase: set() for phase in Phase}
    for current, nxt in zip(CREATE_CHAIN, CREATE_CHAIN[1:]):
        allowed[current].add(nxt)
    for phase in CREATE_SIDE_ACTIVE:
        allowed[phase].update({Phase.FAILED, Phase.DELETING})
    allowed[Phase.DELETING].update({Phase.WAITING_GONE, Phase.FAILED})
    allowed[Phase.WAITING_GONE].update({Phase.DELETED, Phase.FAILED})
    # terminal re-entry on retry
    allowed[Phase.READY].update({Phase.PENDING, Phase.DELETING})
    allowed[Phase.FAILED].update({Phase.PENDING, Phase.DELETING})
    allowed[Phase.DELETED].add(Phase.PENDING)
    return {phase: frozenset(targets) for phase, targets in allowed.items()}


ALLOWED_TRANSITIONS = _allowed_transitions()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return copy.copy(value)


@dataclass(frozen=True)
class EnvironmentSpec:
    """Fully rendered resource set for one environment. Never mutated after rendering."""
    environment_id: str
    namespace: Mapping[str, Any]
    database: Mapping[str, Any]
    service: Mapping[str, Any]
    exposure: Mapping[str, Any]
    credentials: tuple = ()
    labels: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        for name in ("namespace", "database", "service", "exposure", "labels"):
            object.__setattr__(self, name, _freeze(getattr(self, name)))
        object.__setattr__(self, "credentials", _freeze(tuple(self.credentials)))

    def manifests(self, include_exposure: bool = False) -> list[dict]:
        """Plain-dict copies in apply order: namespace, credentials, database, service."""
        ordered = [self.namespace, *self.credentials, self.database, self.service]
        if include_exposure:
            ordered.append(self.exposure)
        return [_thaw(m) for m in ordered]

    @property
    def exposure_port(self) -> int:
        ports = self.exposure.get("spec", {}).get("ports", ())
        if ports:
            return int(ports[0].get("port", 0))
        return 0


@dataclass
class ApplyResult:
    environment_id: str
    created: list[str] = field(default_factory=list)
    configured: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created)


@dataclass
class DeleteResult:
    environment_id: str
    deletion_started: bool = False
    already_absent: bool = False


@dataclass
class ResourceStatus:
    """Observed status of an environment's owning resource (namespace + database)."""
    environment_id: str
    exists: bool
    terminating: bool = False
    ready: bool = False
    failure_reason: Optional[str] = None
    finalizers: list[str] = field(default_factory=list)
    detail: str = ""


@dataclass(frozen=True)
class ExposureHandle:
    environment_id: str
    namespace: str
    name: str
    reference: str = ""


class PollOutcome(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    elapsed_seconds: float
    attempts: int
    last_status: Any = None
    reason: str = ""

    @property
    def ready(self) -> bool:
        return self.outcome == PollOutcome.READY


class ChangesetStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NOT_RUN = "not_run"


@dataclass
class ChangesetOutcome:
    changeset: str
    status: ChangesetStatus
    detail: str = ""
    duration_seconds: float = 0.0


@dataclass
class MigrationResult:
    endpoint: str
    outcomes: list[ChangesetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(o.status == ChangesetStatus.SUCCESS for o in self.outcomes)

    @property
    def failed_changeset(self) -> Optional[ChangesetOutcome]:
        for outcome in self.outcomes:
            if outcome.status == ChangesetStatus.FAILURE:
                return outcome
        return None

    def status_of(self, changeset: str) -> ChangesetStatus:
        for outcome in self.outcomes:
            if outcome.changeset == changeset:
                return outcome.status
        raise KeyError(changeset)

    def raise_for_failure(self) -> None:
        failed = self.failed_changeset
        if failed is not None:
            raise MigrationFailure(failed.changeset, failed.detail)


@dataclass
class RecoveryResult:
    environment_id: str
    already_gone: bool = False
    finalizers_cleared: bool = False
    delete_reissued: bool = False


@dataclass
class EnvironmentState:
    """The orchestrator's record of one environment's progress through the lifecycle."""
    environment_id: str
    branch: str
    phase: Phase = Phase.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    last_transition_at: datetime = field(default_factory=_utcnow)
    external_endpoint: Optional[str] = None
    failure_reason: Optional[str] = None
    exposure_handle: Optional[ExposureHandle] = None
    delete_requested: bool = False
    duration_by_phase: dict[str, float] = field(default_factory=dict)

    def transition(self, phase: Phase, now: Optional[datetime] = None) -> None:
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"{self.environment_id}: {self.phase.value} -> {phase.value} is not allowed"
            )
        now = now or _utcnow()
        spent = max((now - self.last_transition_at).total_seconds(), 0.0)
        key = self.phase.value
        self.duration_by_phase[key] = self.duration_by_phase.get(key, 0.0) + spent
        self.phase = phase
        self.last_transition_at = now

    def fail(self, reason: str, now: Optional[datetime] = None) -> None:
        self.transition(Phase.FAILED, now)
        self.failure_reason = reason

    def to_dict(self) -> dict:
        handle = self.exposure_handle
        return {
            "environment_id": self.environment_id,
            "branch": self.branch,
            "phase": self.phase.value,
            "created_at": self.created_at.isoformat(),
            "last_transition_at": self.last_transition_at.isoformat(),
            "external_endpoint": self.external_endpoint,
            "failure_reason": self.failure_reason,
            "exposure_handle": None if handle is None else {
                "environment_id": handle.environment_id,
                "namespace": handle.namespace,
                "name": handle.name,
                "reference": handle.reference,
            },
            "delete_requested": self.delete_requested,
            "duration_by_phase": dict(self.duration_by_phase),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EnvironmentState":
        handle = data.get("exposure_handle")
        return cls(
            environment_id=data["environment_id"],
            branch=data.get("branch", ""),
            phase=Phase(data["phase"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            last_transition_at=datetime.fromisoformat(data["last_transition_at"]),
            external_endpoint=data.get("external_endpoint"),
            failure_reason=data.get("failure_reason"),
            exposure_handle=ExposureHandle(**handle) if handle else None,
            delete_requested=bool(data.get("delete_requested", False)),
            duration_by_phase=dict(data.get("duration_by_phase", {})),
        )


@dataclass
class WorkflowReport:
    """Terminal outcome of one workflow run."""
    environment_id: str
    branch: str
    final_phase: Phase
    external_endpoint: Optional[str] = None
    duration_by_phase: dict[str, float] = field(default_factory=dict)
    failure_reason: Optional[str] = None
    finished_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_state(cls, state: EnvironmentState) -> "WorkflowReport":
        return cls(
            environment_id=state.environment_id,
            branch=state.branch,
            final_phase=state.phase,
            external_endpoint=state.external_endpoint,
            duration_by_phase=dict(state.duration_by_phase),
            failure_reason=state.failure_reason,
        )

    def to_dict(self) -> dict:
        return {
            "environment_id": self.environment_id,
            "branch": self.branch,
            "final_phase": self.final_phase.value,
            "external_endpoint": self.external_endpoint,
            "duration_by_phase": {k: round(v, 3) for k, v in self.duration_by_phase.items()},
            "failure_reason": self.failure_reason,
            "finished_at": self.finished_at.isoformat(),
        }

    def __str__(self):
        suffix = f" ({self.failure_reason})" if self.failure_reason else ""
        return f"[{self.final_phase.value}] {self.environment_id}{suffix}"
