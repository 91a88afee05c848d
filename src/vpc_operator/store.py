"""Declarative object store access for ClusterRequest objects.

The store is the only shared mutable resource: a pass reads a ClusterRequest
once at the start and writes it once at the end. Writes carry the
resourceVersion read at the start, so a concurrent modification surfaces as
ConflictError instead of being overwritten.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any, Protocol

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .models import (
    CLUSTER_API_GROUP,
    CLUSTER_REQUEST_PLURAL,
    INFRASTRUCTURE_GROUP,
    INFRASTRUCTURE_VERSION,
    PARENT_CLUSTER_PLURAL,
    ClusterRequest,
    ObjectKey,
    ParentCluster,
    find_parent_reference,
)

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409

# Server-side timeout for a single watch request before it is re-established
WATCH_TIMEOUT_SECONDS = 300


class PersistError(Exception):
    """Raised when an object cannot be read or written."""

    pass


class NotFoundError(PersistError):
    """Raised when the requested object does not exist."""

    pass


class ConflictError(PersistError):
    """Raised when an update lost an optimistic-concurrency race."""

    pass


class ClusterStore(Protocol):
    """Store operations consumed by the reconciler and dispatcher."""

    def get(self, key: ObjectKey) -> ClusterRequest: ...

    def update(self, cluster_request: ClusterRequest) -> ClusterRequest: ...

    def get_owner_cluster(self, cluster_request: ClusterRequest) -> ParentCluster | None: ...

    def list_keys(self) -> list[ObjectKey]: ...

    def watch_keys(self) -> Iterator[ObjectKey]: ...


def _translate(e: ApiException, action: str, key: ObjectKey) -> PersistError:
    if e.status == HTTP_NOT_FOUND:
        return NotFoundError(f"{action} {key}: not found")
    if e.status == HTTP_CONFLICT:
        return ConflictError(f"{action} {key}: object was modified concurrently, retry")
    return PersistError(f"{action} {key} failed (HTTP {e.status}): {e.reason}")


class KubernetesClusterStore:
    """ClusterStore backed by the Kubernetes custom objects API."""

    def __init__(
        self,
        api: k8s_client.CustomObjectsApi | None = None,
        namespace: str = "",
    ) -> None:
        """Initialize the store.

        Args:
            api: Custom objects API client. Built from the loaded kube config when None.
            namespace: Restrict list and watch to one namespace ("" for all).
        """
        self._api = api or k8s_client.CustomObjectsApi()
        self._namespace = namespace

    def get(self, key: ObjectKey) -> ClusterRequest:
        try:
            raw = self._api.get_namespaced_custom_object(
                INFRASTRUCTURE_GROUP,
                INFRASTRUCTURE_VERSION,
                key.namespace,
                CLUSTER_REQUEST_PLURAL,
                key.name,
            )
        except ApiException as e:
            raise _translate(e, "get", key) from e

        try:
            return ClusterRequest.from_manifest(raw)
        except ValidationError as e:
            raise PersistError(f"get {key}: stored object is invalid: {e}") from e

    def update(self, cluster_request: ClusterRequest) -> ClusterRequest:
        """Write spec, metadata and status back in one logical operation.

        The main resource is replaced first, then the status subresource using
        the resourceVersion returned by the first write. When the first write
        released the last finalizer of an object being deleted, the object is
        gone and the status write is skipped.
        """
        key = cluster_request.key
        manifest = cluster_request.to_manifest()

        try:
            written = self._api.replace_namespaced_custom_object(
                INFRASTRUCTURE_GROUP,
                INFRASTRUCTURE_VERSION,
                key.namespace,
                CLUSTER_REQUEST_PLURAL,
                key.name,
                manifest,
            )
        except ApiException as e:
            raise _translate(e, "update", key) from e

        metadata = cluster_request.metadata
        if metadata.deletion_requested and not metadata.finalizers:
            logger.info("Finalizers released, object left to garbage collection", extra={"key": str(key)})
            return cluster_request

        status_manifest = {
            **manifest,
            "metadata": {**manifest["metadata"], "resourceVersion": written["metadata"]["resourceVersion"]},
        }
        try:
            written = self._api.replace_namespaced_custom_object_status(
                INFRASTRUCTURE_GROUP,
                INFRASTRUCTURE_VERSION,
                key.namespace,
                CLUSTER_REQUEST_PLURAL,
                key.name,
                status_manifest,
            )
        except ApiException as e:
            raise _translate(e, "update status of", key) from e

        return ClusterRequest.from_manifest(written)

    def get_owner_cluster(self, cluster_request: ClusterRequest) -> ParentCluster | None:
        """Resolve the owning Cluster through the owner reference.

        Returns None when the owner reference has not been set yet or the
        referenced Cluster does not exist.
        """
        ref = find_parent_reference(cluster_request.metadata)
        if ref is None:
            return None

        version = ref.api_version.rpartition("/")[2]
        key = ObjectKey(namespace=cluster_request.metadata.namespace, name=ref.name)
        try:
            raw = self._api.get_namespaced_custom_object(
                CLUSTER_API_GROUP, version, key.namespace, PARENT_CLUSTER_PLURAL, key.name
            )
        except ApiException as e:
            if e.status == HTTP_NOT_FOUND:
                return None
            raise _translate(e, "get owner cluster", key) from e

        try:
            return ParentCluster.model_validate(raw)
        except ValidationError as e:
            raise PersistError(f"get owner cluster {key}: stored object is invalid: {e}") from e

    def _list_kwargs(self) -> tuple[Any, dict[str, Any]]:
        if self._namespace:
            return self._api.list_namespaced_custom_object, {
                "group": INFRASTRUCTURE_GROUP,
                "version": INFRASTRUCTURE_VERSION,
                "namespace": self._namespace,
                "plural": CLUSTER_REQUEST_PLURAL,
            }
        return self._api.list_cluster_custom_object, {
            "group": INFRASTRUCTURE_GROUP,
            "version": INFRASTRUCTURE_VERSION,
            "plural": CLUSTER_REQUEST_PLURAL,
        }

    def list_keys(self) -> list[ObjectKey]:
        list_fn, kwargs = self._list_kwargs()
        try:
            raw = list_fn(**kwargs)
        except ApiException as e:
            raise PersistError(f"list {CLUSTER_REQUEST_PLURAL} failed (HTTP {e.status}): {e.reason}") from e
        return [
            ObjectKey(namespace=item["metadata"]["namespace"], name=item["metadata"]["name"])
            for item in raw.get("items", [])
        ]

    def watch_keys(self) -> Iterator[ObjectKey]:
        """Stream keys of changed ClusterRequests. Blocks; run it in a thread."""
        list_fn, kwargs = self._list_kwargs()
        watcher = k8s_watch.Watch()
        try:
            for event in watcher.stream(list_fn, timeout_seconds=WATCH_TIMEOUT_SECONDS, **kwargs):
                obj = event.get("object") or {}
                metadata = obj.get("metadata") or {}
                if "name" not in metadata or "namespace" not in metadata:
                    continue
                yield ObjectKey(namespace=metadata["namespace"], name=metadata["name"])
        finally:
            watcher.stop()


def connect(namespace: str = "") -> KubernetesClusterStore:
    """Load in-cluster or local kube config and return a store.

    Raises:
        PersistError: If no usable kube config is found.
    """
    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        logger.info("Not running in a cluster, loading local kubeconfig")
        try:
            k8s_config.load_kube_config()
        except k8s_config.ConfigException as e:
            raise PersistError(f"No usable Kubernetes configuration: {e}") from e
    return KubernetesClusterStore(namespace=namespace)
