"""Lifecycle phase derivation for ClusterRequest objects.

The phase is never stored. It is recomputed from the finalizer set and the
observed status on every pass, so status fields double as completion
checkpoints and a pass can resume from wherever the last one stopped.
"""

from __future__ import annotations

from enum import Enum

from .models import CLUSTER_FINALIZER, ClusterRequest


class ClusterPhase(str, Enum):
    """Position of a ClusterRequest in the create/delete protocol."""

    UNREGISTERED = "Unregistered"
    REGISTERED = "Registered"
    HAS_VPC = "HasVPC"
    HAS_ENDPOINT = "HasEndpoint"
    HAS_SUBNET = "HasSubnet"
    READY = "Ready"
    DELETION_REQUESTED = "DeletionRequested"


class ReconcileStep(str, Enum):
    """The single action a pass takes for a given phase."""

    ADD_FINALIZER = "AddFinalizer"
    ENSURE_VPC = "EnsureVPC"
    RESERVE_ENDPOINT = "ReserveEndpoint"
    ENSURE_SUBNET = "EnsureSubnet"
    MARK_READY = "MarkReady"
    DELETE = "Delete"
    NONE = "None"


_STEP_FOR_PHASE: dict[ClusterPhase, ReconcileStep] = {
    ClusterPhase.UNREGISTERED: ReconcileStep.ADD_FINALIZER,
    ClusterPhase.REGISTERED: ReconcileStep.ENSURE_VPC,
    ClusterPhase.HAS_VPC: ReconcileStep.RESERVE_ENDPOINT,
    ClusterPhase.HAS_ENDPOINT: ReconcileStep.ENSURE_SUBNET,
    ClusterPhase.HAS_SUBNET: ReconcileStep.MARK_READY,
    ClusterPhase.READY: ReconcileStep.NONE,
    ClusterPhase.DELETION_REQUESTED: ReconcileStep.DELETE,
}


def derive_phase(cluster_request: ClusterRequest, finalizer: str = CLUSTER_FINALIZER) -> ClusterPhase:
    """Derive the current phase from metadata and observed status.

    Deletion wins over every create phase. Create phases are checked in
    provisioning order, so a later resource recorded without an earlier one
    still resolves to the earliest missing step.
    """
    if cluster_request.metadata.deletion_requested:
        return ClusterPhase.DELETION_REQUESTED

    if not cluster_request.metadata.has_finalizer(finalizer):
        return ClusterPhase.UNREGISTERED

    status = cluster_request.status
    if status.vpc is None:
        return ClusterPhase.REGISTERED

    # The endpoint step is keyed on desired state: a host set by the user
    # means no floating IP is reserved.
    if not cluster_request.spec.control_plane_endpoint.is_set:
        return ClusterPhase.HAS_VPC

    if status.subnet is None:
        return ClusterPhase.HAS_ENDPOINT

    if not status.ready:
        return ClusterPhase.HAS_SUBNET

    return ClusterPhase.READY


def next_step(phase: ClusterPhase) -> ReconcileStep:
    """Return the step a pass performs in the given phase."""
    return _STEP_FOR_PHASE[phase]
