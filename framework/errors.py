"""
Error taxonomy for environment lifecycle workflows.

Fatal input/config errors (InvalidNameError, TemplateError) are never retried.
TransientClusterError is retried locally with backoff by the component that
issued the call; PermanentClusterError surfaces immediately.
"""

from __future__ import annotations

from typing import Optional


class EnvOpsError(RuntimeError):
    """Base class for all orchestrator errors."""


class InvalidNameError(EnvOpsError, ValueError):
    """Branch name is empty or has no usable characters."""


class TemplateError(EnvOpsError):
    """Base template is missing a required patch target or is malformed."""


class ClusterError(EnvOpsError):
    """Failure reported by (or while reaching) the cluster API."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientClusterError(ClusterError):
    """Network blip, auth expiry, conflict, rate limit or quota: retry with backoff."""


class PermanentClusterError(ClusterError):
    """Malformed spec, permission denied, or resource in a permanent error state."""


class ExposureTimeoutError(EnvOpsError):
    """No external address was assigned within the endpoint budget."""


class MigrationFailure(EnvOpsError):
    """A changeset failed; later changesets were not run."""

    def __init__(self, changeset: str, detail: str = ""):
        super().__init__(f"changeset '{changeset}' failed: {detail}" if detail else f"changeset '{changeset}' failed")
        self.changeset = changeset
        self.detail = detail


class InvalidTransitionError(EnvOpsError):
    """An EnvironmentState phase change not allowed by the lifecycle."""


def classify_status(status: Optional[int], message: str) -> ClusterError:
    """Map an HTTP-style status code from a cluster or provider API to the taxonomy."""
    if status is None or status == 0:
        return TransientClusterError(message, status)
    lowered = message.lower()
    if "exceeded quota" in lowered or "rate limit" in lowered:
        return TransientClusterError(message, status)
    # 403 NamespaceTerminating: the namespace goes away once its teardown finishes
    if "namespaceterminating" in lowered or "being terminated" in lowered:
        return TransientClusterError(message, status)
    if status in (401, 408, 409, 429) or status >= 500:
        return TransientClusterError(message, status)
    return PermanentClusterError(message, status)
