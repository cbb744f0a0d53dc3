from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable

from .models import MountObservation, PlacementDecision, PlacementMode, VolumeRecord

READ_WRITE_ONCE = "ReadWriteOnce"
READ_WRITE_ONCE_POD = "ReadWriteOncePod"
READ_WRITE_MANY = "ReadWriteMany"
READ_ONLY_MANY = "ReadOnlyMany"
BLOCK_VOLUME_MODE = "Block"
BOUND_PHASE = "Bound"

REASON_BLOCK = "block volumes unsupported"
REASON_NOT_BOUND = "not bound"
REASON_STRICT = "mounted elsewhere, strict mode"

_SHARED_ACCESS_MODES = frozenset({READ_WRITE_MANY, READ_ONLY_MANY})

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacementPolicy:
    colocate: bool = True
    strict_rwo: bool = True


def classify(
    volume: VolumeRecord,
    mounts: Iterable[MountObservation],
    policy: PlacementPolicy,
) -> PlacementDecision:
    """Decide whether and where a worker may mount ``volume``.

    Block volumes and unbound claims are always skipped. Shared-access volumes
    are never skipped for mount safety. A single-writer volume that is
    currently mounted is colocated with its mounter, skipped under strict mode,
    or pinned to the fallback node as an operator-accepted read hazard.
    """
    if volume.volume_mode == BLOCK_VOLUME_MODE:
        return PlacementDecision(mode=PlacementMode.SKIP, node=None, reason=REASON_BLOCK)
    if volume.phase != BOUND_PHASE:
        return PlacementDecision(mode=PlacementMode.SKIP, node=None, reason=REASON_NOT_BOUND)

    mount_node = _first_mount_node(mounts)
    if mount_node is None:
        return PlacementDecision(mode=PlacementMode.PIN, node=None, reason="not mounted")

    access_modes = set(volume.access_modes)
    if access_modes & _SHARED_ACCESS_MODES:
        if policy.colocate:
            return PlacementDecision(
                mode=PlacementMode.COLOCATE,
                node=mount_node,
                reason=f"shared access, colocated with mount on {mount_node}",
            )
        return PlacementDecision(mode=PlacementMode.PIN, node=None, reason="shared access")

    if READ_WRITE_ONCE_POD in access_modes:
        return PlacementDecision(
            mode=PlacementMode.SKIP,
            node=None,
            reason=f"mounted elsewhere, {READ_WRITE_ONCE_POD} held by a pod on {mount_node}",
        )

    if policy.colocate:
        return PlacementDecision(
            mode=PlacementMode.COLOCATE,
            node=mount_node,
            reason=f"colocated with mount on {mount_node}",
        )
    if policy.strict_rwo:
        return PlacementDecision(mode=PlacementMode.SKIP, node=None, reason=REASON_STRICT)

    logger.warning(
        "pinning mounted single-writer volume %s/%s to the fallback node; strict mode is off",
        volume.namespace,
        volume.pvc_name,
    )
    return PlacementDecision(
        mode=PlacementMode.PIN,
        node=None,
        reason=f"mounted on {mount_node}, read hazard accepted (strict mode off)",
    )


def select_node(decision: PlacementDecision, fallback_node: str | None) -> str | None:
    return decision.node or fallback_node


def _first_mount_node(mounts: Iterable[MountObservation]) -> str | None:
    nodes = sorted({mount.node_name for mount in mounts if mount.node_name})
    return nodes[0] if nodes else None
