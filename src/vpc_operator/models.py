"""Pydantic models for ClusterRequest objects and their observed status.

These models provide:
1. Type-safe parsing of the Kubernetes wire format (camelCase aliases)
2. Validation at the boundary: a status record is either absent or complete
3. Clean transformation back to a manifest for the store
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Finalizer marker placed on every ClusterRequest before any cloud resource exists
CLUSTER_FINALIZER = "vpccluster.infrastructure.cluster.x-k8s.io"

INFRASTRUCTURE_GROUP = "infrastructure.cluster.x-k8s.io"
INFRASTRUCTURE_VERSION = "v1alpha3"
CLUSTER_REQUEST_KIND = "VPCCluster"
CLUSTER_REQUEST_PLURAL = "vpcclusters"

CLUSTER_API_GROUP = "cluster.x-k8s.io"
PARENT_CLUSTER_KIND = "Cluster"
PARENT_CLUSTER_PLURAL = "clusters"

CONTROL_PLANE_PORT = 6443

NonEmptyStr = Annotated[str, Field(min_length=1)]


class _WireModel(BaseModel):
    """Base for models that round-trip through the Kubernetes API."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Object identity and metadata
# =============================================================================


class ObjectKey(BaseModel):
    """Namespace/name identity of a stored object."""

    model_config = ConfigDict(frozen=True)

    namespace: NonEmptyStr
    name: NonEmptyStr

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def parse(cls, value: str) -> ObjectKey:
        """Parse a ``namespace/name`` string.

        Raises:
            ValueError: If the value is not of the form namespace/name.
        """
        namespace, sep, name = value.partition("/")
        if not sep or not namespace or not name or "/" in name:
            raise ValueError(f"expected NAMESPACE/NAME, got {value!r}")
        return cls(namespace=namespace, name=name)


class OwnerReference(_WireModel):
    """Back-link from a ClusterRequest to the object that owns it."""

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str = ""

    @property
    def group(self) -> str:
        """API group portion of apiVersion (empty for the core group)."""
        group, sep, _ = self.api_version.rpartition("/")
        return group if sep else ""


class ObjectMeta(_WireModel):
    """Subset of Kubernetes object metadata used by the operator."""

    name: NonEmptyStr
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    generation: int = 0
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(
        default_factory=list, alias="ownerReferences"
    )
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")

    @property
    def deletion_requested(self) -> bool:
        """True once the store has been asked to delete the object."""
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str) -> bool:
        """Add a finalizer. Returns True if the metadata changed."""
        if finalizer in self.finalizers:
            return False
        self.finalizers.append(finalizer)
        return True

    def remove_finalizer(self, finalizer: str) -> bool:
        """Remove a finalizer. Returns True if the metadata changed."""
        if finalizer not in self.finalizers:
            return False
        self.finalizers = [f for f in self.finalizers if f != finalizer]
        return True


# =============================================================================
# Desired state
# =============================================================================


class APIEndpoint(_WireModel):
    """Control-plane endpoint a cluster's API server is reachable on."""

    host: str = ""
    port: Annotated[int, Field(ge=0, le=65535)] = 0

    @property
    def is_set(self) -> bool:
        return bool(self.host)


class ClusterRequestSpec(_WireModel):
    """Desired infrastructure for one cluster."""

    region: str | None = None
    zone: str | None = None
    resource_group: str | None = Field(None, alias="resourceGroup")
    # Explicit VPC name; derived from the object name when unset
    vpc: str | None = None
    control_plane_endpoint: APIEndpoint = Field(
        default_factory=APIEndpoint, alias="controlPlaneEndpoint"
    )


# =============================================================================
# Observed state
# =============================================================================


class VPCStatus(_WireModel):
    """VPC recorded after a successful create-or-find."""

    id: NonEmptyStr
    name: NonEmptyStr


class SubnetStatus(_WireModel):
    """Subnet recorded after a successful create."""

    id: NonEmptyStr
    name: NonEmptyStr
    zone: NonEmptyStr
    ipv4_cidr_block: NonEmptyStr = Field(alias="ipv4CidrBlock")

    @field_validator("ipv4_cidr_block")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("ipv4CidrBlock must be in CIDR notation (e.g., 10.240.0.0/24)")
        return v


class EndpointStatus(_WireModel):
    """Floating IP reserved for the control-plane endpoint."""

    address: NonEmptyStr
    floating_ip_id: NonEmptyStr = Field(alias="floatingIPID")


class ClusterObservedStatus(_WireModel):
    """Observed state, owned exclusively by the reconciler.

    Each sub-record goes from absent to fully populated once per resource
    lifetime. Partial records fail validation.
    """

    ready: bool = False
    vpc: VPCStatus | None = None
    subnet: SubnetStatus | None = None
    api_endpoint: EndpointStatus | None = Field(None, alias="apiEndpoint")


# =============================================================================
# Objects
# =============================================================================


class ClusterRequest(_WireModel):
    """Desired-state object for one cluster's network infrastructure."""

    api_version: str = Field(
        f"{INFRASTRUCTURE_GROUP}/{INFRASTRUCTURE_VERSION}", alias="apiVersion"
    )
    kind: str = CLUSTER_REQUEST_KIND
    metadata: ObjectMeta
    spec: ClusterRequestSpec = Field(default_factory=ClusterRequestSpec)
    status: ClusterObservedStatus = Field(default_factory=ClusterObservedStatus)

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)

    @property
    def infrastructure_complete(self) -> bool:
        """True when VPC, control-plane endpoint and subnet are all in place.

        The endpoint counts as present when its host is set, whether the
        reconciler reserved it or the user supplied it.
        """
        return (
            self.status.vpc is not None
            and self.spec.control_plane_endpoint.is_set
            and self.status.subnet is not None
        )

    @classmethod
    def from_manifest(cls, data: dict[str, Any]) -> ClusterRequest:
        """Build from a Kubernetes-style dict (as returned by the API)."""
        return cls.model_validate(data)

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to a Kubernetes-style dict, omitting unset optionals."""
        manifest = self.model_dump(by_alias=True, exclude_none=True, mode="json")
        # ready is always reported, even when False
        manifest.setdefault("status", {})["ready"] = self.status.ready
        return manifest


class ParentCluster(_WireModel):
    """Owning cluster object; looked up, never mutated."""

    api_version: str = Field(f"{CLUSTER_API_GROUP}/{INFRASTRUCTURE_VERSION}", alias="apiVersion")
    kind: str = PARENT_CLUSTER_KIND
    metadata: ObjectMeta

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(namespace=self.metadata.namespace, name=self.metadata.name)


def find_parent_reference(metadata: ObjectMeta) -> OwnerReference | None:
    """Return the owner reference pointing at the parent Cluster, if any."""
    for ref in metadata.owner_references:
        if ref.kind == PARENT_CLUSTER_KIND and ref.group == CLUSTER_API_GROUP:
            return ref
    return None
