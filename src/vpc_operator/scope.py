"""Per-pass reconciliation scope.

A ClusterScope holds everything one reconciliation pass works on: the
ClusterRequest being reconciled (the in-memory working copy), its parent
Cluster, the resource client and the store. Spec and status mutations
accumulate on the working copy and are written back exactly once when the
scope closes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from .config import DEFAULT_ZONE
from .models import ClusterRequest, ParentCluster
from .resource_client import FloatingIPInfo, ResourceClient, SubnetInfo, VPCInfo
from .store import ClusterStore


class ScopeError(Exception):
    """Raised when a scope cannot be constructed or used."""

    pass


@dataclass
class ClusterScopeParams:
    """Inputs for constructing a ClusterScope."""

    store: ClusterStore | None
    resource_client: ResourceClient | None
    cluster: ParentCluster | None
    cluster_request: ClusterRequest | None
    logger: logging.Logger | logging.LoggerAdapter | None = None
    default_zone: str = DEFAULT_ZONE
    resource_group_id: str | None = None


class ClusterScope:
    """Context of a single reconciliation pass for one ClusterRequest."""

    def __init__(self, params: ClusterScopeParams) -> None:
        """Validate params and take ownership of the working copy.

        Raises:
            ScopeError: If a required collaborator is missing.
        """
        if params.store is None:
            raise ScopeError("store is required when creating a ClusterScope")
        if params.resource_client is None:
            raise ScopeError("resource client is required when creating a ClusterScope")
        if params.cluster is None:
            raise ScopeError("parent Cluster is required when creating a ClusterScope")
        if params.cluster_request is None:
            raise ScopeError("ClusterRequest is required when creating a ClusterScope")

        self._store = params.store
        self._client = params.resource_client
        self.cluster = params.cluster
        self.cluster_request = params.cluster_request
        self.logger = params.logger or logging.getLogger(__name__)
        self._default_zone = params.default_zone
        self._resource_group_id = params.resource_group_id
        self._closed = False

    @property
    def name(self) -> str:
        return self.cluster_request.metadata.name

    @property
    def namespace(self) -> str:
        return self.cluster_request.metadata.namespace

    @property
    def zone(self) -> str:
        return self.cluster_request.spec.zone or self._default_zone

    @property
    def resource_prefix(self) -> str:
        # Cluster names repeat across namespaces; provider names must not
        return f"{self.namespace}-{self.name}"

    @property
    def vpc_name(self) -> str:
        return self.cluster_request.spec.vpc or f"{self.resource_prefix}-vpc"

    @property
    def endpoint_address_name(self) -> str:
        return f"{self.resource_prefix}-control-plane"

    @property
    def subnet_name(self) -> str:
        return f"{self.resource_prefix}-subnet"

    @property
    def closed(self) -> bool:
        return self._closed

    def ensure_vpc(self) -> VPCInfo:
        """Create the cluster's VPC, or return it if it already exists."""
        resource_group = self.cluster_request.spec.resource_group or self._resource_group_id
        return self._client.create_or_find_vpc(self.vpc_name, resource_group)

    def reserve_endpoint_address(self) -> FloatingIPInfo:
        """Reserve the floating IP fronting the control plane."""
        return self._client.reserve_address(self.endpoint_address_name, self.zone)

    def ensure_subnet(self) -> SubnetInfo:
        """Create the cluster subnet inside the recorded VPC.

        Raises:
            ScopeError: If no VPC has been recorded yet.
        """
        vpc = self.cluster_request.status.vpc
        if vpc is None:
            raise ScopeError(f"cannot create a subnet for {self.namespace}/{self.name} before its VPC")
        return self._client.create_subnet(vpc.id, self.subnet_name, self.zone)

    def delete_vpc(self) -> bool:
        """Tear down the cluster's VPC and everything recorded inside it.

        A VPC or floating IP missing from status is looked up by name, so
        resources created by a pass whose status write was lost are still
        cleaned up.

        Returns:
            True if a VPC was found and deleted, False if none exists.
        """
        status = self.cluster_request.status
        vpc_id = status.vpc.id if status.vpc else None
        if vpc_id is None:
            found = self._client.find_vpc(self.vpc_name)
            if found is None:
                return False
            vpc_id = found.id

        floating_ip_id = status.api_endpoint.floating_ip_id if status.api_endpoint else None
        if floating_ip_id is None:
            address = self._client.find_address(self.endpoint_address_name)
            if address is not None:
                floating_ip_id = address.id

        self._client.delete_vpc(
            vpc_id,
            subnet_id=status.subnet.id if status.subnet else None,
            floating_ip_id=floating_ip_id,
        )
        return True

    def close(self) -> None:
        """Persist the working copy. Only the first call writes."""
        if self._closed:
            return
        self._closed = True
        self._store.update(self.cluster_request)
        self.logger.debug("Persisted ClusterRequest")


@contextmanager
def cluster_scope(params: ClusterScopeParams) -> Iterator[ClusterScope]:
    """Open a scope and guarantee a single write-back on every exit path.

    A failing write-back is raised when the pass itself succeeded. When the
    pass already failed, the original error propagates and the write-back
    failure is logged.

    Raises:
        ScopeError: If the scope cannot be constructed. Nothing is written.
    """
    scope = ClusterScope(params)
    try:
        yield scope
    except BaseException:
        try:
            scope.close()
        except Exception as close_error:
            scope.logger.warning(
                "Failed to persist ClusterRequest after an earlier error",
                extra={"error": str(close_error), "error_type": type(close_error).__name__},
            )
        raise
    scope.close()
