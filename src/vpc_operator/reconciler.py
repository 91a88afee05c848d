"""Reconciliation state machine for ClusterRequest objects.

Each pass runs:
1. Entry gate: load the ClusterRequest, resolve its parent Cluster
2. Open a scope (working copy + resource client)
3. Delete protocol if deletion was requested, else the create protocol
4. Close the scope: one write-back of spec, metadata and status

CREATE PROTOCOL:
The next step is chosen by derive_phase()/next_step() from the object alone:
finalizer -> VPC -> control-plane endpoint -> subnet -> ready. A pass performs
at most one provisioning step and ends with an immediate requeue, so every
cloud mutation is checkpointed in status before the next one starts. A failed
or interrupted pass resumes at the first step whose status is still absent.

DELETE PROTOCOL:
Tear down the VPC (and what it contains), then release the finalizer. The
finalizer is only released after the teardown call succeeded; on failure the
object stays in the store and the pass reports a retryable error.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError

from .config import OperatorConfig
from .models import (
    CLUSTER_FINALIZER,
    CONTROL_PLANE_PORT,
    APIEndpoint,
    EndpointStatus,
    ObjectKey,
    SubnetStatus,
    VPCStatus,
)
from .phase import ClusterPhase, ReconcileStep, derive_phase, next_step
from .provenance import AuditLogger, PassRecord
from .resource_client import IBMVPCResourceClient, ResourceClientError, ResourceClientFactory
from .scope import ClusterScope, ClusterScopeParams, ScopeError, cluster_scope
from .store import ClusterStore, ConflictError, NotFoundError, PersistError

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    """What the dispatcher should do after a pass."""

    DONE = "done"
    REQUEUE = "requeue"
    ERROR = "error"


class ProvisioningError(Exception):
    """A resource client call failed; carries resource kind and object identity."""

    def __init__(self, kind: str, key: ObjectKey, cause: Exception | str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"failed to reconcile {kind} for ClusterRequest {key}: {cause}")


@dataclass
class ReconcileOutcome:
    """Result of a single reconciliation pass."""

    key: str
    kind: OutcomeKind = OutcomeKind.DONE
    requeue_after: float | None = None
    step: ReconcileStep = ReconcileStep.NONE
    phase: ClusterPhase | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded (done or requeue)."""
        return self.error is None

    def requeue(self, after: float) -> None:
        self.kind = OutcomeKind.REQUEUE
        self.requeue_after = after

    def fail(self, error: Exception) -> None:
        self.kind = OutcomeKind.ERROR
        self.requeue_after = None
        self.error = error


class PassLoggerAdapter(logging.LoggerAdapter):
    """Adds the object identity to every record while keeping per-call extras."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs


class ClusterReconciler:
    """Drives one ClusterRequest toward its desired infrastructure per pass.

    The reconciler is stateless between passes: everything it needs to
    resume is read from the object itself. It is safe to call concurrently
    for different keys; the dispatcher guarantees one pass per key at a time.
    """

    def __init__(
        self,
        store: ClusterStore,
        config: OperatorConfig,
        resource_client_factory: ResourceClientFactory = IBMVPCResourceClient.from_credentials,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: Declarative store holding ClusterRequests and Clusters.
            config: Validated operator configuration.
            resource_client_factory: Builds a resource client from credentials.
            audit_logger: Per-pass audit log (defaults to config.enable_audit_logging).
        """
        self._store = store
        self._config = config
        self._client_factory = resource_client_factory
        self._audit = audit_logger or AuditLogger(enabled=config.enable_audit_logging)

    @property
    def config(self) -> OperatorConfig:
        return self._config

    def reconcile(self, key: ObjectKey) -> ReconcileOutcome:
        """Run one reconciliation pass for the object identified by key.

        Never raises for errors inside the pass; they are returned in the
        outcome for the dispatcher to schedule a retry.
        """
        outcome = ReconcileOutcome(key=str(key))
        record = self._audit.create_record(str(key))
        log = PassLoggerAdapter(logger, {"cluster_request": str(key)})

        try:
            self._reconcile(key, outcome, record, log)
        except ProvisioningError as e:
            log.warning(
                "Provisioning failed, will retry",
                extra={"resource_kind": e.kind, "error": str(e)},
            )
            outcome.fail(e)
        except ScopeError as e:
            log.error("Failed to create scope", extra={"error": str(e)})
            outcome.fail(e)
        except ConflictError as e:
            log.warning("Write conflict, will retry", extra={"error": str(e)})
            outcome.fail(e)
        except PersistError as e:
            log.error("Store error", extra={"error": str(e)})
            outcome.fail(e)
        except Exception as e:
            log.exception("Unexpected error during reconciliation")
            outcome.fail(e)

        outcome.end_time = datetime.now(UTC)

        record.step = outcome.step.value
        record.outcome = outcome.kind.value
        record.requeue_after_seconds = outcome.requeue_after
        record.duration_seconds = outcome.duration_seconds
        if outcome.phase is not None:
            record.phase_after = outcome.phase.value
        if outcome.error is not None:
            record.error = str(outcome.error)
            record.error_type = type(outcome.error).__name__
        self._audit.log_record(record)

        return outcome

    def _reconcile(
        self,
        key: ObjectKey,
        outcome: ReconcileOutcome,
        record: PassRecord,
        log: logging.LoggerAdapter,
    ) -> None:
        try:
            cluster_request = self._store.get(key)
        except NotFoundError:
            # Object is gone; nothing left to converge
            log.info("ClusterRequest not found, nothing to do")
            return

        record.phase_before = derive_phase(cluster_request).value

        cluster = self._store.get_owner_cluster(cluster_request)
        if cluster is None:
            log.info("Cluster controller has not yet set the owner reference")
            outcome.phase = derive_phase(cluster_request)
            return

        try:
            resource_client = self._client_factory(self._config.credentials)
        except Exception as e:
            raise ScopeError(f"failed to create resource client: {e}") from e

        params = ClusterScopeParams(
            store=self._store,
            resource_client=resource_client,
            cluster=cluster,
            cluster_request=cluster_request,
            logger=log,
            default_zone=self._config.default_zone,
            resource_group_id=self._config.resource_group_id,
        )
        with cluster_scope(params) as scope:
            if cluster_request.metadata.deletion_requested:
                self._reconcile_delete(scope, outcome)
            else:
                self._reconcile_normal(scope, outcome)

        outcome.phase = derive_phase(scope.cluster_request)

    def _reconcile_normal(self, scope: ClusterScope, outcome: ReconcileOutcome) -> None:
        cluster_request = scope.cluster_request
        key = cluster_request.key
        step = next_step(derive_phase(cluster_request))
        outcome.step = step
        requeue_after = float(self._config.step_requeue_seconds)

        match step:
            case ReconcileStep.ADD_FINALIZER:
                # Persisted before any cloud resource exists
                cluster_request.metadata.add_finalizer(CLUSTER_FINALIZER)
                scope.logger.info("Added finalizer")
                outcome.requeue(requeue_after)

            case ReconcileStep.ENSURE_VPC:
                try:
                    vpc = scope.ensure_vpc()
                    cluster_request.status.vpc = VPCStatus(id=vpc.id, name=vpc.name)
                except (ResourceClientError, ValidationError) as e:
                    raise ProvisioningError("VPC", key, e) from e
                scope.logger.info("VPC recorded", extra={"vpc_id": vpc.id, "vpc_name": vpc.name})
                outcome.requeue(requeue_after)

            case ReconcileStep.RESERVE_ENDPOINT:
                try:
                    fip = scope.reserve_endpoint_address()
                    endpoint_status = EndpointStatus(address=fip.address, floating_ip_id=fip.id)
                except (ResourceClientError, ValidationError) as e:
                    raise ProvisioningError("Control Plane Endpoint", key, e) from e
                cluster_request.spec.control_plane_endpoint = APIEndpoint(
                    host=fip.address, port=CONTROL_PLANE_PORT
                )
                cluster_request.status.api_endpoint = endpoint_status
                scope.logger.info(
                    "Control plane endpoint reserved",
                    extra={"address": fip.address, "floating_ip_id": fip.id},
                )
                outcome.requeue(requeue_after)

            case ReconcileStep.ENSURE_SUBNET:
                try:
                    subnet = scope.ensure_subnet()
                    cluster_request.status.subnet = SubnetStatus(
                        id=subnet.id,
                        name=subnet.name,
                        zone=subnet.zone,
                        ipv4_cidr_block=subnet.ipv4_cidr_block,
                    )
                except (ResourceClientError, ValidationError) as e:
                    raise ProvisioningError("Subnet", key, e) from e
                scope.logger.info(
                    "Subnet recorded",
                    extra={"subnet_id": subnet.id, "zone": subnet.zone, "cidr": subnet.ipv4_cidr_block},
                )
                outcome.requeue(requeue_after)

            case ReconcileStep.MARK_READY:
                if not cluster_request.infrastructure_complete:
                    # derive_phase only reaches MARK_READY with everything recorded
                    raise ProvisioningError("readiness", key, "infrastructure is incomplete")
                cluster_request.status.ready = True
                scope.logger.info("ClusterRequest is ready")

            case ReconcileStep.NONE:
                scope.logger.debug("ClusterRequest already converged")

    def _reconcile_delete(self, scope: ClusterScope, outcome: ReconcileOutcome) -> None:
        cluster_request = scope.cluster_request
        outcome.step = ReconcileStep.DELETE

        if not cluster_request.metadata.has_finalizer(CLUSTER_FINALIZER):
            # Finalizer never added, so no cloud resource was ever created
            scope.logger.info("Deletion requested without finalizer, nothing to clean up")
            return

        try:
            deleted = scope.delete_vpc()
        except ResourceClientError as e:
            raise ProvisioningError("VPC deletion", cluster_request.key, e) from e

        cluster_request.metadata.remove_finalizer(CLUSTER_FINALIZER)
        scope.logger.info("Cloud resources released, finalizer removed", extra={"vpc_deleted": deleted})
