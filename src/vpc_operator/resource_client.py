"""Cloud provisioning client for VPCs, subnets and floating IPs.

Each method performs one provisioning operation and is idempotent by name:
an existing resource with the requested name is returned instead of a
duplicate being created. Every SDK failure surfaces as ResourceClientError;
nothing is retried here. Retries belong to the dispatcher.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import parse_qs, urlparse

from ibm_cloud_sdk_core import ApiException
from ibm_vpc import VpcV1

from .config import CloudCredentials
from .security import build_authenticator, log_security_audit_event

logger = logging.getLogger(__name__)

# Page size for list calls
LIST_PAGE_LIMIT = 100

# Address count for subnets created without an explicit CIDR
DEFAULT_SUBNET_ADDRESS_COUNT = 256

HTTP_NOT_FOUND = 404


class ResourceClientError(Exception):
    """Raised when a provisioning call fails."""

    def __init__(self, operation: str, message: str, status_code: int | None = None) -> None:
        self.operation = operation
        self.status_code = status_code
        detail = f" (HTTP {status_code})" if status_code else ""
        super().__init__(f"{operation} failed{detail}: {message}")


@dataclass(frozen=True)
class VPCInfo:
    """Provider descriptor of a VPC."""

    id: str
    name: str


@dataclass(frozen=True)
class FloatingIPInfo:
    """Provider descriptor of a reserved floating IP."""

    id: str
    address: str
    name: str = ""


@dataclass(frozen=True)
class SubnetInfo:
    """Provider descriptor of a subnet."""

    id: str
    name: str
    zone: str
    ipv4_cidr_block: str


class ResourceClient(Protocol):
    """Operations the reconciler needs from the cloud backend."""

    def find_vpc(self, name: str) -> VPCInfo | None: ...

    def create_or_find_vpc(self, name: str, resource_group_id: str | None = None) -> VPCInfo: ...

    def find_address(self, name: str, zone: str | None = None) -> FloatingIPInfo | None: ...

    def reserve_address(self, name: str, zone: str) -> FloatingIPInfo: ...

    def create_subnet(self, vpc_id: str, name: str, zone: str) -> SubnetInfo: ...

    def delete_vpc(
        self,
        vpc_id: str,
        subnet_id: str | None = None,
        floating_ip_id: str | None = None,
    ) -> None: ...


ResourceClientFactory = Callable[[CloudCredentials], ResourceClient]


def _next_start(result: dict[str, Any]) -> str | None:
    """Extract the pagination token from a list result's next link."""
    href = (result.get("next") or {}).get("href")
    if not href:
        return None
    values = parse_qs(urlparse(href).query).get("start")
    return values[0] if values else None


class IBMVPCResourceClient:
    """ResourceClient backed by the IBM Cloud VPC API.

    The VPC API does not cascade deletes, so delete_vpc tears down the
    floating IP and subnet first. Subnet deletion is asynchronous on the
    provider side; a VPC delete issued while the subnet is still draining
    fails and is retried on the next pass.
    """

    def __init__(self, service: VpcV1) -> None:
        self._service = service

    @classmethod
    def from_credentials(cls, credentials: CloudCredentials) -> IBMVPCResourceClient:
        """Build a client for the configured service endpoint."""
        service = VpcV1(authenticator=build_authenticator(credentials))
        service.set_service_url(credentials.service_endpoint)
        return cls(service)

    def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            response = fn(*args, **kwargs)
        except ApiException as e:
            raise ResourceClientError(operation, e.message or str(e), e.code) from e
        return response.get_result() or {}

    def _list(self, operation: str, fn: Callable[..., Any], collection: str) -> Iterator[dict[str, Any]]:
        start: str | None = None
        while True:
            kwargs: dict[str, Any] = {"limit": LIST_PAGE_LIMIT}
            if start:
                kwargs["start"] = start
            result = self._call(operation, fn, **kwargs)
            yield from result.get(collection, [])
            start = _next_start(result)
            if start is None:
                return

    def _delete(self, operation: str, fn: Callable[..., Any], resource_id: str) -> None:
        try:
            fn(id=resource_id)
        except ApiException as e:
            if e.code == HTTP_NOT_FOUND:
                logger.info(
                    "Resource already gone",
                    extra={"operation": operation, "resource_id": resource_id},
                )
                return
            raise ResourceClientError(operation, e.message or str(e), e.code) from e

    def find_vpc(self, name: str) -> VPCInfo | None:
        for vpc in self._list("list_vpcs", self._service.list_vpcs, "vpcs"):
            if vpc.get("name") == name:
                return VPCInfo(id=vpc["id"], name=vpc["name"])
        return None

    def create_or_find_vpc(self, name: str, resource_group_id: str | None = None) -> VPCInfo:
        existing = self.find_vpc(name)
        if existing is not None:
            logger.info("Found existing VPC", extra={"vpc_id": existing.id, "vpc_name": name})
            return existing

        kwargs: dict[str, Any] = {"name": name}
        if resource_group_id:
            kwargs["resource_group"] = {"id": resource_group_id}
        vpc = self._call("create_vpc", self._service.create_vpc, **kwargs)
        logger.info("Created VPC", extra={"vpc_id": vpc["id"], "vpc_name": name})
        return VPCInfo(id=vpc["id"], name=vpc["name"])

    def find_address(self, name: str, zone: str | None = None) -> FloatingIPInfo | None:
        """Find a floating IP by name, optionally restricted to one zone."""
        for fip in self._list("list_floating_ips", self._service.list_floating_ips, "floating_ips"):
            if fip.get("name") != name:
                continue
            if zone is not None and (fip.get("zone") or {}).get("name") != zone:
                continue
            return FloatingIPInfo(id=fip["id"], address=fip["address"], name=fip["name"])
        return None

    def reserve_address(self, name: str, zone: str) -> FloatingIPInfo:
        existing = self.find_address(name, zone)
        if existing is not None:
            logger.info("Found existing floating IP", extra={"floating_ip_id": existing.id, "zone": zone})
            return existing

        prototype = {"name": name, "zone": {"name": zone}}
        fip = self._call("create_floating_ip", self._service.create_floating_ip, prototype)
        logger.info(
            "Reserved floating IP",
            extra={"floating_ip_id": fip["id"], "address": fip["address"], "zone": zone},
        )
        return FloatingIPInfo(id=fip["id"], address=fip["address"], name=fip.get("name", name))

    def create_subnet(self, vpc_id: str, name: str, zone: str) -> SubnetInfo:
        for subnet in self._list("list_subnets", self._service.list_subnets, "subnets"):
            if subnet.get("name") == name and (subnet.get("vpc") or {}).get("id") == vpc_id:
                logger.info("Found existing subnet", extra={"subnet_id": subnet["id"]})
                return self._subnet_info(subnet)

        prototype = {
            "name": name,
            "vpc": {"id": vpc_id},
            "zone": {"name": zone},
            "total_ipv4_address_count": DEFAULT_SUBNET_ADDRESS_COUNT,
        }
        subnet = self._call("create_subnet", self._service.create_subnet, prototype)
        logger.info(
            "Created subnet",
            extra={"subnet_id": subnet["id"], "vpc_id": vpc_id, "zone": zone},
        )
        return self._subnet_info(subnet)

    @staticmethod
    def _subnet_info(subnet: dict[str, Any]) -> SubnetInfo:
        return SubnetInfo(
            id=subnet["id"],
            name=subnet["name"],
            zone=subnet["zone"]["name"],
            ipv4_cidr_block=subnet["ipv4_cidr_block"],
        )

    def delete_vpc(
        self,
        vpc_id: str,
        subnet_id: str | None = None,
        floating_ip_id: str | None = None,
    ) -> None:
        if floating_ip_id:
            self._delete("delete_floating_ip", self._service.delete_floating_ip, floating_ip_id)

        # Subnets block VPC deletion; include any the status never recorded
        subnet_ids = {
            subnet["id"]
            for subnet in self._list("list_subnets", self._service.list_subnets, "subnets")
            if (subnet.get("vpc") or {}).get("id") == vpc_id
        }
        if subnet_id:
            subnet_ids.add(subnet_id)
        for sid in sorted(subnet_ids):
            self._delete("delete_subnet", self._service.delete_subnet, sid)

        self._delete("delete_vpc", self._service.delete_vpc, vpc_id)
        log_security_audit_event(
            "deletion",
            target_resource=vpc_id,
            action="delete_vpc",
            result="success",
        )
