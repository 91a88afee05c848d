"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for vpc_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from vpc_mock import InMemoryClusterStore, MockVpcService  # noqa: E402

from vpc_operator.config import OperatorConfig  # noqa: E402
from vpc_operator.reconciler import ClusterReconciler  # noqa: E402
from vpc_operator.resource_client import IBMVPCResourceClient  # noqa: E402

TEST_ENV = {
    "IAM_ENDPOINT": "https://iam.cloud.ibm.com",
    "API_KEY": "test-api-key-0123456789",
    "SERVICE_ENDPOINT": "https://us-south.iaas.cloud.ibm.com/v1",
}


@pytest.fixture
def config() -> OperatorConfig:
    """A valid configuration with immediate requeue between steps."""
    return OperatorConfig(
        iam_endpoint=TEST_ENV["IAM_ENDPOINT"],
        api_key=TEST_ENV["API_KEY"],
        service_endpoint=TEST_ENV["SERVICE_ENDPOINT"],
    )


@pytest.fixture
def service() -> MockVpcService:
    return MockVpcService()


@pytest.fixture
def store() -> InMemoryClusterStore:
    return InMemoryClusterStore()


@pytest.fixture
def reconciler(
    store: InMemoryClusterStore, config: OperatorConfig, service: MockVpcService
) -> ClusterReconciler:
    """Reconciler wired to the in-memory store and mock VPC service."""
    return ClusterReconciler(
        store,
        config,
        resource_client_factory=lambda _credentials: IBMVPCResourceClient(service),
    )
