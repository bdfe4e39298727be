"""
ExposureProvider: external address allocation for ready environments.

Live mode manages a LoadBalancer Service in the environment namespace, reusing
the ClusterClient's API connection. Requests are idempotent: an environment that
already has an exposure gets its existing handle back.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import threading
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from framework.errors import ClusterError, PermanentClusterError, TransientClusterError, classify_status
from framework.models import ExposureHandle
from utils.cluster_client import ClusterClient

logger = logging.getLogger("envops.exposure_provider")

MOCK_ADDRESS_POOL = ipaddress.ip_network("203.0.113.0/24")


class ExposureProvider:
    """Mock-capable load-balancer provider."""

    def __init__(self, mock_mode: bool = True, cluster: Optional[ClusterClient] = None,
                 assign_after_reads: Optional[int] = 1, quota: Optional[int] = None):
        self.mock_mode = mock_mode
        self.cluster = cluster
        # mock-mode knobs: None means an address is never assigned
        self.assign_after_reads = assign_after_reads
        self.quota = quota
        self.allocations = 0
        self._handles: dict[str, ExposureHandle] = {}
        self._reads: dict[str, int] = {}
        self._lock = threading.Lock()

        if not mock_mode and (cluster is None or cluster.core is None):
            raise ValueError("live ExposureProvider needs a live ClusterClient")

    def request_external_address(self, environment_id: str,
                                 descriptor: Optional[dict] = None) -> ExposureHandle:
        """Request an external address; returns the existing handle if already requested."""
        if self.mock_mode:
            return self._mock_request(environment_id, descriptor)
        return self._live_request(environment_id, descriptor)

    def get_assigned_address(self, handle: ExposureHandle) -> Optional[str]:
        """Return the assigned address, or None while allocation is pending."""
        if self.mock_mode:
            return self._mock_address(handle)
        return self._live_address(handle)

    def release(self, environment_id: str, name: Optional[str] = None) -> bool:
        """Release the exposure. Returns False if there was nothing to release."""
        if self.mock_mode:
            with self._lock:
                self._reads.pop(environment_id, None)
                return self._handles.pop(environment_id, None) is not None
        return self._live_release(environment_id, name or f"{environment_id}-external")

    # ------------------------------------------------------------------
    # Mock mode
    # ------------------------------------------------------------------

    def _mock_request(self, environment_id: str, descriptor: Optional[dict]) -> ExposureHandle:
        with self._lock:
            existing = self._handles.get(environment_id)
            if existing is not None:
                return existing
            if self.quota is not None and len(self._handles) >= self.quota:
                raise TransientClusterError("load balancer quota exceeded", status=403)
            name = (descriptor or {}).get("metadata", {}).get("name") or f"{environment_id}-external"
            digest = hashlib.sha256(environment_id.encode()).hexdigest()[:12]
            handle = ExposureHandle(environment_id=environment_id, namespace=environment_id,
                                    name=name, reference=f"lb-{digest}")
            self._handles[environment_id] = handle
            self._reads[environment_id] = 0
            self.allocations += 1
        logger.info(f"[MOCK] Requested external address for {environment_id} ({handle.reference})")
        return handle

    def _mock_address(self, handle: ExposureHandle) -> Optional[str]:
        with self._lock:
            if handle.environment_id not in self._handles:
                return None
            self._reads[handle.environment_id] += 1
            if self.assign_after_reads is None or self._reads[handle.environment_id] < self.assign_after_reads:
                return None
        offset = int(handle.reference.split("-")[-1], 16) % (MOCK_ADDRESS_POOL.num_addresses - 2) + 1
        return str(MOCK_ADDRESS_POOL[offset])

    # ------------------------------------------------------------------
    # Live mode
    # ------------------------------------------------------------------

    def _translate(self, operation: str, exc: Exception) -> ClusterError:
        if isinstance(exc, ApiException):
            return classify_status(exc.status, f"{operation}: {exc.status} {exc.reason} {exc.body or ''}".strip())
        return TransientClusterError(f"{operation}: {type(exc).__name__}: {exc}")

    def _live_request(self, environment_id: str, descriptor: Optional[dict]) -> ExposureHandle:
        body = dict(descriptor or {})
        name = body.get("metadata", {}).get("name") or f"{environment_id}-external"
        core = self.cluster.core
        try:
            svc = core.read_namespaced_service(name=name, namespace=environment_id)
            logger.info(f"Exposure {environment_id}/{name} already exists")
        except ApiException as e:
            if e.status != 404:
                raise self._translate(f"read service {environment_id}/{name}", e) from e
            if not body:
                raise PermanentClusterError(
                    f"no exposure descriptor for {environment_id}/{name}", status=400) from e
            try:
                svc = core.create_namespaced_service(namespace=environment_id, body=body)
            except ApiException as create_error:
                if create_error.status != 409:
                    raise self._translate(f"create service {environment_id}/{name}", create_error) from create_error
                svc = core.read_namespaced_service(name=name, namespace=environment_id)
            logger.info(f"Requested LoadBalancer {environment_id}/{name}")
        except HTTPError as e:
            raise self._translate(f"request exposure {environment_id}", e) from e
        return ExposureHandle(environment_id=environment_id, namespace=environment_id,
                              name=name, reference=svc.metadata.uid or "")

    def _live_address(self, handle: ExposureHandle) -> Optional[str]:
        try:
            svc = self.cluster.core.read_namespaced_service(name=handle.name, namespace=handle.namespace)
        except (ApiException, HTTPError) as e:
            raise self._translate(f"read service {handle.namespace}/{handle.name}", e) from e
        lb = svc.status.load_balancer if svc.status else None
        for ingress in (lb.ingress if lb else None) or []:
            if ingress.ip or ingress.hostname:
                return ingress.ip or ingress.hostname
        return None

    def _live_release(self, environment_id: str, name: str) -> bool:
        try:
            self.cluster.core.delete_namespaced_service(name=name, namespace=environment_id)
        except ApiException as e:
            if e.status == 404:
                return False
            raise self._translate(f"delete service {environment_id}/{name}", e) from e
        except HTTPError as e:
            raise self._translate(f"delete service {environment_id}/{name}", e) from e
        logger.info(f"Released LoadBalancer {environment_id}/{name}")
        return True
