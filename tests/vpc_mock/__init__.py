"""VPC and Kubernetes Mocks for Integration Testing.

This package provides in-memory stand-ins for the two external systems the
operator talks to, so whole reconciliation flows run without a cluster or
cloud account.

Key Features:
- MockVpcService: the VpcV1 calls the resource client makes, with
  pagination, 404/409 provider behaviour and failure injection
- InMemoryClusterStore: ClusterStore with resourceVersion conflicts and
  finalizer-gated deletion

Usage:
    from vpc_mock import InMemoryClusterStore, MockVpcService, make_cluster_request

    service = MockVpcService()
    store = InMemoryClusterStore()
    key = store.add(make_cluster_request("c1", "demo"))

    reconciler = ClusterReconciler(
        store, config, resource_client_factory=lambda _: IBMVPCResourceClient(service)
    )
    reconciler.reconcile(key)
"""

from .service import SERVICE_URL, InjectedFailure, MockCloudState, MockVpcService
from .store import InMemoryClusterStore, make_cluster_request

__all__ = [
    "SERVICE_URL",
    "InMemoryClusterStore",
    "InjectedFailure",
    "MockCloudState",
    "MockVpcService",
    "make_cluster_request",
]
