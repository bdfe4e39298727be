"""
ClusterClient: cluster API capability used by the environment agent.

Handles:
- Idempotent apply of a rendered EnvironmentSpec (server-side apply)
- Namespace deletion tolerant of already-absent resources
- Status reads: namespace phase, database readiness, crash-looping pods
- Clearing finalizers that keep a namespace stuck in Terminating

mock_mode keeps an in-memory cluster so workflows can be exercised without
a real API server.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from config.settings import (
    DATABASE_RESOURCE, ENVIRONMENT_LABEL, FIELD_MANAGER, PERMANENT_FAILURE_REASONS,
    ROLE_ANNOTATION, ROLE_DATABASE,
)
from framework.errors import ClusterError, PermanentClusterError, TransientClusterError, classify_status
from framework.models import ApplyResult, DeleteResult, EnvironmentSpec, ResourceStatus

logger = logging.getLogger("envops.cluster")


def _key(manifest: dict) -> str:
    return f"{manifest.get('kind', '?')}/{manifest.get('metadata', {}).get('name', '?')}"


@dataclass
class MockNamespace:
    """In-memory namespace for mock mode."""
    name: str
    resources: dict[str, dict] = field(default_factory=dict)
    phase: str = "Active"
    finalizers: list[str] = field(default_factory=list)
    status_reads: int = 0
    terminating_reads: int = 0


class ClusterClient:
    """
    Mock-capable cluster client.
    Wraps the Kubernetes Python client (dynamic client for apply, CoreV1 for
    namespaces and pods, CustomObjects for the database resource).
    """

    def __init__(self, mock_mode: bool = True, kubeconfig: Optional[str] = None,
                 context: Optional[str] = None, database_resource: Optional[dict] = None,
                 ready_after_reads: int = 1, gone_after_reads: int = 1):
        self.mock_mode = mock_mode
        self.database_resource = database_resource or dict(DATABASE_RESOURCE)

        # mock-mode behaviour knobs
        self.ready_after_reads = ready_after_reads
        self.gone_after_reads = gone_after_reads
        self.stuck_namespaces: set[str] = set()
        self.crashloop_namespaces: set[str] = set()
        self.namespaces: dict[str, MockNamespace] = {}
        self.calls: dict[str, int] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._lock = threading.Lock()

        self.api_client = None
        self.core = None
        self.custom = None
        self.dynamic = None

        if not mock_mode:
            self._load_config(kubeconfig, context)
            self.api_client = k8s_client.ApiClient()
            self.core = k8s_client.CoreV1Api(self.api_client)
            self.custom = k8s_client.CustomObjectsApi(self.api_client)
            self.dynamic = DynamicClient(self.api_client)

    @staticmethod
    def _load_config(kubeconfig: Optional[str], context: Optional[str]) -> None:
        if kubeconfig:
            k8s_config.load_kube_config(config_file=kubeconfig, context=context)
            return
        try:
            k8s_config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            k8s_config.load_kube_config(context=context)
            logger.info("Loaded Kubernetes configuration from default kubeconfig")

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    def apply_resources(self, spec: EnvironmentSpec) -> ApplyResult:
        """Create-or-update every resource in the spec. Safe to repeat."""
        self._record("apply_resources")
        if self.mock_mode:
            return self._mock_apply(spec)
        return self._live_apply(spec)

    def delete_namespace(self, environment_id: str) -> DeleteResult:
        """Delete the environment namespace; absent is success."""
        self._record("delete_namespace")
        if self.mock_mode:
            return self._mock_delete(environment_id)
        return self._live_delete(environment_id)

    def get_resource_status(self, environment_id: str) -> ResourceStatus:
        self._record("get_resource_status")
        if self.mock_mode:
            return self._mock_status(environment_id)
        return self._live_status(environment_id)

    def clear_finalizers(self, environment_id: str) -> None:
        """Drop blocking finalizers on the namespace and the database resource."""
        self._record("clear_finalizers")
        if self.mock_mode:
            self._mock_clear_finalizers(environment_id)
            return
        self._live_clear_finalizers(environment_id)

    # ------------------------------------------------------------------
    # Mock mode
    # ------------------------------------------------------------------

    def inject_failure(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `operation` raise `error` (mock mode)."""
        self._failures.setdefault(operation, []).extend([error] * times)

    def call_count(self, operation: str) -> int:
        return self.calls.get(operation, 0)

    def _record(self, operation: str) -> None:
        with self._lock:
            self.calls[operation] = self.calls.get(operation, 0) + 1
            pending = self._failures.get(operation)
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def _mock_apply(self, spec: EnvironmentSpec) -> ApplyResult:
        result = ApplyResult(environment_id=spec.environment_id)
        with self._lock:
            ns = self.namespaces.get(spec.environment_id)
            if ns is not None and ns.phase == "Terminating":
                raise classify_status(
                    403, f"namespaces \"{spec.environment_id}\" is forbidden: unable to create new content "
                         f"in namespace {spec.environment_id} because it is being terminated")
            if ns is None:
                ns = MockNamespace(name=spec.environment_id)
                self.namespaces[spec.environment_id] = ns
            for manifest in spec.manifests():
                key = _key(manifest)
                if key in ns.resources:
                    result.configured.append(key)
                else:
                    result.created.append(key)
                ns.resources[key] = copy.deepcopy(manifest)
        logger.debug(f"[MOCK] apply {spec.environment_id}: "
                     f"{len(result.created)} created, {len(result.configured)} configured")
        return result

    def _mock_delete(self, environment_id: str) -> DeleteResult:
        with self._lock:
            ns = self.namespaces.get(environment_id)
            if ns is None:
                return DeleteResult(environment_id=environment_id, already_absent=True)
            if ns.phase != "Terminating":
                ns.phase = "Terminating"
                ns.finalizers = ["kubernetes"]
                ns.terminating_reads = 0
        return DeleteResult(environment_id=environment_id, deletion_started=True)

    def _mock_status(self, environment_id: str) -> ResourceStatus:
        with self._lock:
            ns = self.namespaces.get(environment_id)
            if ns is None:
                return ResourceStatus(environment_id=environment_id, exists=False)

            if ns.phase == "Terminating":
                ns.terminating_reads += 1
                if environment_id not in self.stuck_namespaces and \
                        ns.terminating_reads >= self.gone_after_reads:
                    del self.namespaces[environment_id]
                    return ResourceStatus(environment_id=environment_id, exists=False)
                return ResourceStatus(
                    environment_id=environment_id, exists=True, terminating=True,
                    finalizers=list(ns.finalizers), detail="Terminating",
                )

            ns.status_reads += 1
            if environment_id in self.crashloop_namespaces:
                return ResourceStatus(
                    environment_id=environment_id, exists=True,
                    failure_reason="database-1: CrashLoopBackOff",
                )
            has_database = any(
                m.get("metadata", {}).get("annotations", {}).get(ROLE_ANNOTATION) == ROLE_DATABASE
                for m in ns.resources.values()
            )
            ready = has_database and ns.status_reads >= self.ready_after_reads
            return ResourceStatus(
                environment_id=environment_id, exists=True, ready=ready,
                detail="Ready" if ready else "Provisioning",
            )

    def _mock_clear_finalizers(self, environment_id: str) -> None:
        with self._lock:
            ns = self.namespaces.get(environment_id)
            if ns is None:
                return
            ns.finalizers = []
            self.stuck_namespaces.discard(environment_id)
            if ns.phase == "Terminating":
                del self.namespaces[environment_id]

    # ------------------------------------------------------------------
    # Live mode (Kubernetes)
    # ------------------------------------------------------------------

    def _translate(self, operation: str, exc: Exception) -> ClusterError:
        if isinstance(exc, ApiException):
            return classify_status(exc.status, f"{operation}: {exc.status} {exc.reason} {exc.body or ''}".strip())
        if isinstance(exc, ResourceNotFoundError):
            return PermanentClusterError(f"{operation}: {exc}")
        return TransientClusterError(f"{operation}: {type(exc).__name__}: {exc}")

    def _live_apply(self, spec: EnvironmentSpec) -> ApplyResult:
        result = ApplyResult(environment_id=spec.environment_id)
        for manifest in spec.manifests():
            key = _key(manifest)
            name = manifest["metadata"]["name"]
            try:
                api = self.dynamic.resources.get(api_version=manifest["apiVersion"], kind=manifest["kind"])
                namespace = manifest["metadata"].get("namespace") if api.namespaced else None
                try:
                    api.get(name=name, namespace=namespace)
                    result.configured.append(key)
                except ApiException as e:
                    if e.status != 404:
                        raise
                    result.created.append(key)
                api.server_side_apply(
                    body=manifest, name=name, namespace=namespace,
                    field_manager=FIELD_MANAGER, force_conflicts=True,
                )
            except (ApiException, ResourceNotFoundError, HTTPError) as e:
                raise self._translate(f"apply {key}", e) from e
        logger.info(f"Applied {spec.environment_id}: {len(result.created)} created, "
                    f"{len(result.configured)} configured")
        return result

    def _live_delete(self, environment_id: str) -> DeleteResult:
        try:
            self.core.delete_namespace(name=environment_id, propagation_policy="Background")
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {environment_id} already absent")
                return DeleteResult(environment_id=environment_id, already_absent=True)
            if e.status == 409:
                # deletion already in progress
                return DeleteResult(environment_id=environment_id, deletion_started=True)
            raise self._translate(f"delete namespace {environment_id}", e) from e
        except HTTPError as e:
            raise self._translate(f"delete namespace {environment_id}", e) from e
        logger.info(f"Namespace {environment_id} deletion initiated")
        return DeleteResult(environment_id=environment_id, deletion_started=True)

    def _list_databases(self, environment_id: str) -> list[dict[str, Any]]:
        res = self.database_resource
        listing = self.custom.list_namespaced_custom_object(
            res["group"], res["version"], environment_id, res["plural"],
            label_selector=f"{ENVIRONMENT_LABEL}={environment_id}",
        )
        return listing.get("items", [])

    @staticmethod
    def _database_ready(item: dict) -> bool:
        status = item.get("status") or {}
        for condition in status.get("conditions") or []:
            if condition.get("type") == "Ready":
                return condition.get("status") == "True"
        wanted = (item.get("spec") or {}).get("instances")
        ready = status.get("readyInstances")
        return wanted is not None and ready is not None and ready >= wanted

    def _crashloop_reason(self, environment_id: str) -> Optional[str]:
        pods = self.core.list_namespaced_pod(environment_id)
        for pod in pods.items:
            for cs in (pod.status.container_statuses or []):
                waiting = cs.state.waiting if cs.state else None
                if waiting is not None and waiting.reason in PERMANENT_FAILURE_REASONS:
                    return f"{pod.metadata.name}: {waiting.reason}"
        return None

    def _live_status(self, environment_id: str) -> ResourceStatus:
        try:
            ns = self.core.read_namespace(name=environment_id)
        except ApiException as e:
            if e.status == 404:
                return ResourceStatus(environment_id=environment_id, exists=False)
            raise self._translate(f"read namespace {environment_id}", e) from e
        except HTTPError as e:
            raise self._translate(f"read namespace {environment_id}", e) from e

        finalizers = list(ns.metadata.finalizers or []) + list((ns.spec.finalizers if ns.spec else None) or [])
        if ns.status and ns.status.phase == "Terminating":
            return ResourceStatus(
                environment_id=environment_id, exists=True, terminating=True,
                finalizers=finalizers, detail="Terminating",
            )

        try:
            failure = self._crashloop_reason(environment_id)
            if failure:
                return ResourceStatus(environment_id=environment_id, exists=True,
                                      failure_reason=failure, finalizers=finalizers)
            databases = self._list_databases(environment_id)
        except (ApiException, HTTPError) as e:
            raise self._translate(f"read database status {environment_id}", e) from e

        ready = bool(databases) and all(self._database_ready(d) for d in databases)
        phase = (databases[0].get("status") or {}).get("phase", "") if databases else "NotFound"
        return ResourceStatus(environment_id=environment_id, exists=True, ready=ready,
                              finalizers=finalizers, detail=phase)

    def _live_clear_finalizers(self, environment_id: str) -> None:
        res = self.database_resource
        try:
            for item in self._list_databases(environment_id):
                name = item["metadata"]["name"]
                if item["metadata"].get("finalizers"):
                    self.custom.patch_namespaced_custom_object(
                        res["group"], res["version"], environment_id, res["plural"], name,
                        {"metadata": {"finalizers": None}},
                    )
                    logger.info(f"Cleared finalizers on {res['plural']}/{name} in {environment_id}")

            self.core.patch_namespace(environment_id, {"metadata": {"finalizers": None}})
            ns = self.core.read_namespace(name=environment_id)
            if ns.spec and ns.spec.finalizers:
                ns.spec.finalizers = []
                self.core.replace_namespace_finalize(environment_id, ns)
            logger.info(f"Cleared finalizers on namespace {environment_id}")
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {environment_id} gone while clearing finalizers")
                return
            raise self._translate(f"clear finalizers {environment_id}", e) from e
        except HTTPError as e:
            raise self._translate(f"clear finalizers {environment_id}", e) from e

    def close(self) -> None:
        if self.api_client is not None:
            self.api_client.close()
