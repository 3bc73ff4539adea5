"""
Kubernetes client wrapper.

Exposes the handful of cluster operations the routine needs: scaling
StatefulSets, creating and reading VolumeSnapshots and batch Jobs. The
official client is synchronous, so every call runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from man10routine.config.loader import KubernetesConfig
from man10routine.errors.errors import (
    ErrorCode, RoutineError, new_configuration_error, new_not_found_error, new_transient_error
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

COMPONENT = "kubernetes"

SNAPSHOT_GROUP = "snapshot.storage.k8s.io"
SNAPSHOT_VERSION = "v1"
SNAPSHOT_PLURAL = "volumesnapshots"


@dataclass
class StatefulSetStatus:
    """Replica counts of a StatefulSet."""
    name: str
    desired: int
    current: int
    ready: int


@dataclass
class JobStatus:
    """Progress counters and conditions of a batch Job."""
    name: str
    active: int = 0
    succeeded: int = 0
    failed: int = 0
    conditions: Dict[str, str] = field(default_factory=dict)

    def _has_terminal_condition(self) -> bool:
        return "Complete" in self.conditions or "Failed" in self.conditions

    def is_complete(self) -> bool:
        if self._has_terminal_condition():
            return self.conditions.get("Complete") == "True"
        return self.active == 0 and self.succeeded > 0 and self.failed == 0

    def is_failed(self) -> bool:
        if self._has_terminal_condition():
            return self.conditions.get("Failed") == "True"
        return self.active == 0 and self.failed > 0


def load_kube_config(kube_config: KubernetesConfig) -> None:
    """Load credentials from the configured kubeconfig, the pod, or ~/.kube/config.

    Raises:
        RoutineError: CONFIGURATION if no usable credentials are found
    """
    context = kube_config.context or None
    try:
        if kube_config.kubeconfig:
            config.load_kube_config(config_file=kube_config.kubeconfig, context=context)
            return
        try:
            config.load_incluster_config()
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying kubeconfig")
            config.load_kube_config(context=context)
    except (config.ConfigException, OSError) as e:
        raise new_configuration_error("load_kube_config", "no usable Kubernetes credentials", e)


class KubeClient:
    """Async facade over the Kubernetes API for a single namespace."""

    def __init__(
        self,
        namespace: str,
        apps_v1: Optional[client.AppsV1Api] = None,
        batch_v1: Optional[client.BatchV1Api] = None,
        custom_objects: Optional[client.CustomObjectsApi] = None,
        request_timeout: float = 30.0,
    ):
        self.namespace = namespace
        self.request_timeout = request_timeout
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.batch_v1 = batch_v1 or client.BatchV1Api()
        self.custom_objects = custom_objects or client.CustomObjectsApi()

    @classmethod
    def from_config(cls, kube_config: KubernetesConfig, namespace: str) -> 'KubeClient':
        load_kube_config(kube_config)
        return cls(namespace, request_timeout=kube_config.request_timeout.total_seconds())

    async def _call(self, operation: str, resource: str, func: Callable[..., T], *args, **kwargs) -> T:
        """Run a blocking API call in a worker thread, bounded by the request timeout."""
        kwargs.setdefault("_request_timeout", self.request_timeout)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as e:
            raise self._api_error(e, operation, resource)
        except urllib3.exceptions.HTTPError as e:
            raise new_transient_error(COMPONENT, operation, f"Kubernetes API unreachable while handling {resource}", e) \
                .with_context("resource", resource)

    @staticmethod
    def _api_error(e: ApiException, operation: str, resource: str) -> RoutineError:
        message = f"Kubernetes API returned {e.status} for {resource}: {e.reason}"
        if e.status == 404:
            error = new_not_found_error(COMPONENT, operation, message, e)
        elif e.status in (401, 403):
            error = RoutineError(ErrorCode.AUTHENTICATION, COMPONENT, operation, message, e)
        elif e.status == 429 or (e.status or 0) >= 500:
            error = new_transient_error(COMPONENT, operation, message, e)
        else:
            error = RoutineError(ErrorCode.KUBERNETES_API, COMPONENT, operation, message, e)
        return error.with_context("resource", resource)

    async def get_statefulset(self, name: str) -> StatefulSetStatus:
        """Read the desired, current and ready replica counts of a StatefulSet."""
        sts = await self._call(
            "get_statefulset", f"statefulset/{name}",
            self.apps_v1.read_namespaced_stateful_set, name, self.namespace,
        )
        status = sts.status
        return StatefulSetStatus(
            name=name,
            desired=sts.spec.replicas or 0,
            current=(status.replicas if status else 0) or 0,
            ready=(status.ready_replicas if status else 0) or 0,
        )

    async def scale_statefulset(self, name: str, replicas: int) -> None:
        await self._call(
            "scale", f"statefulset/{name}",
            self.apps_v1.patch_namespaced_stateful_set_scale,
            name, self.namespace, {"spec": {"replicas": replicas}},
        )
        logger.info(f"Scaled statefulset {self.namespace}/{name} to {replicas}")

    async def create_volume_snapshot(self, body: Dict[str, Any]) -> Dict[str, Any]:
        name = body["metadata"]["name"]
        return await self._call(
            "create_snapshot", f"volumesnapshot/{name}",
            self.custom_objects.create_namespaced_custom_object,
            SNAPSHOT_GROUP, SNAPSHOT_VERSION, self.namespace, SNAPSHOT_PLURAL, body,
        )

    async def get_volume_snapshot(self, name: str) -> Dict[str, Any]:
        return await self._call(
            "get_snapshot", f"volumesnapshot/{name}",
            self.custom_objects.get_namespaced_custom_object,
            SNAPSHOT_GROUP, SNAPSHOT_VERSION, self.namespace, SNAPSHOT_PLURAL, name,
        )

    async def create_job(self, body: Dict[str, Any]) -> str:
        """Create a batch Job from a manifest and return its name."""
        name = body.get("metadata", {}).get("name", "")
        job = await self._call(
            "create_job", f"job/{name}",
            self.batch_v1.create_namespaced_job, self.namespace, body,
        )
        return job.metadata.name

    async def get_job_status(self, name: str) -> JobStatus:
        job = await self._call(
            "get_job", f"job/{name}",
            self.batch_v1.read_namespaced_job_status, name, self.namespace,
        )
        status = job.status
        if status is None:
            return JobStatus(name=name)
        conditions: List = status.conditions or []
        return JobStatus(
            name=name,
            active=status.active or 0,
            succeeded=status.succeeded or 0,
            failed=status.failed or 0,
            conditions={c.type: c.status for c in conditions},
        )
