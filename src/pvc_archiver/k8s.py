from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, Iterable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .app_logging import log_with_fields
from .models import MountObservation, VolumeRecord, WorkItem
from .worker import COMPONENT_LABEL, COMPONENT_NAME

DEFAULT_DISCOVERY_TIMEOUT_SECONDS = 20
_INACTIVE_POD_PHASES = frozenset({"Succeeded", "Failed"})
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api


class KubernetesDiscoveryError(RuntimeError):
    """Raised when namespaces, PVCs or pods cannot be listed."""


DiscoveryError = KubernetesDiscoveryError


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(api_client=api_client, core_api=client.CoreV1Api(api_client))


def list_namespaces(
    clients: KubernetesClients,
    *,
    namespaces: Iterable[str] = (),
    prefix: str = "",
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[str]:
    """Namespaces to scan: an explicit list wins over the prefix filter."""
    explicit = sorted({namespace.strip() for namespace in namespaces if namespace and namespace.strip()})
    if explicit:
        return explicit

    items = _safe_kubernetes_discovery_call(
        operation="list namespaces",
        hint="Confirm cluster connectivity and RBAC verbs for namespaces.",
        func=lambda: clients.core_api.list_namespace(_request_timeout=request_timeout_seconds).items,
    )
    names = [item.metadata.name for item in items if item.metadata and item.metadata.name]
    return sorted(name for name in names if name.startswith(prefix))


def list_volume_records(
    clients: KubernetesClients,
    namespace: str,
    *,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[VolumeRecord]:
    pvc_items = _safe_kubernetes_discovery_call(
        operation=f"list PVCs in namespace '{namespace}'",
        hint="Check namespace spelling, API reachability, and RBAC verbs for persistentvolumeclaims.",
        func=lambda: clients.core_api.list_namespaced_persistent_volume_claim(
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ).items,
    )

    records = [_volume_record(pvc, default_namespace=namespace) for pvc in pvc_items]
    records.sort(key=lambda item: (item.namespace, item.pvc_name))
    return records


def list_mount_observations(
    clients: KubernetesClients,
    namespace: str,
    *,
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> dict[str, list[MountObservation]]:
    """Map PVC name to the active pods referencing it and their nodes.

    Finished pods and this tool's own worker pods are ignored.
    """
    pod_items = _safe_kubernetes_discovery_call(
        operation=f"list Pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace still exists.",
        func=lambda: clients.core_api.list_namespaced_pod(
            namespace=namespace,
            _request_timeout=request_timeout_seconds,
        ).items,
    )

    index: dict[str, list[MountObservation]] = {}
    for pod in pod_items:
        if _is_inactive(pod) or _is_archiver_pod(pod):
            continue
        pod_name = pod.metadata.name if pod.metadata and pod.metadata.name else "unknown"
        node_name = getattr(pod.spec, "node_name", None)
        for volume in (pod.spec.volumes if pod.spec else None) or []:
            pvc_source = volume.persistent_volume_claim
            if not pvc_source or not pvc_source.claim_name:
                continue
            observation = MountObservation(pod_name=pod_name, node_name=node_name or None)
            mounts = index.setdefault(pvc_source.claim_name, [])
            if observation not in mounts:
                mounts.append(observation)
    return index


def build_worklist(
    clients: KubernetesClients,
    *,
    namespaces: Iterable[str] = (),
    prefix: str = "",
    request_timeout_seconds: int = DEFAULT_DISCOVERY_TIMEOUT_SECONDS,
) -> list[WorkItem]:
    """Single discovery pass producing unique (namespace, pvc) work items.

    A namespace whose PVCs or pods cannot be listed is logged and skipped.
    Failure to list namespaces at all propagates.
    """
    target_namespaces = list_namespaces(
        clients,
        namespaces=namespaces,
        prefix=prefix,
        request_timeout_seconds=request_timeout_seconds,
    )
    if not target_namespaces:
        log_with_fields(logger, logging.WARNING, "no namespaces matched", prefix=prefix)

    items: list[WorkItem] = []
    seen: set[tuple[str, str]] = set()
    for namespace in target_namespaces:
        try:
            volumes = list_volume_records(clients, namespace, request_timeout_seconds=request_timeout_seconds)
            mounts = (
                list_mount_observations(clients, namespace, request_timeout_seconds=request_timeout_seconds)
                if volumes
                else {}
            )
        except KubernetesDiscoveryError as error:
            log_with_fields(logger, logging.ERROR, "namespace skipped", namespace=namespace, error=str(error))
            continue

        log_with_fields(logger, logging.INFO, "namespace scanned", namespace=namespace, pvcs=len(volumes))
        for volume in volumes:
            key = (volume.namespace, volume.pvc_name)
            if key in seen:
                continue
            seen.add(key)
            items.append(WorkItem(volume=volume, mounts=tuple(mounts.get(volume.pvc_name, ()))))
    return items


def _volume_record(pvc: client.V1PersistentVolumeClaim, *, default_namespace: str) -> VolumeRecord:
    capacity = None
    if pvc.status and pvc.status.capacity:
        capacity = pvc.status.capacity.get("storage")

    return VolumeRecord(
        namespace=(pvc.metadata.namespace if pvc.metadata else None) or default_namespace,
        pvc_name=(pvc.metadata.name if pvc.metadata else None) or "",
        pvc_uid=(pvc.metadata.uid if pvc.metadata else None) or "",
        phase=pvc.status.phase if pvc.status and pvc.status.phase else "Unknown",
        capacity=capacity,
        storage_class=pvc.spec.storage_class_name if pvc.spec else None,
        access_modes=tuple(pvc.spec.access_modes or ()) if pvc.spec else (),
        volume_mode=(getattr(pvc.spec, "volume_mode", None) if pvc.spec else None) or "Filesystem",
        bound_pv=pvc.spec.volume_name if pvc.spec else None,
    )


def _is_inactive(pod: client.V1Pod) -> bool:
    phase = pod.status.phase if getattr(pod, "status", None) else None
    return phase in _INACTIVE_POD_PHASES


def _is_archiver_pod(pod: client.V1Pod) -> bool:
    labels = getattr(pod.metadata, "labels", None) or {}
    return labels.get(COMPONENT_LABEL) == COMPONENT_NAME


def _safe_kubernetes_discovery_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesDiscoveryError(
            f"Kubernetes discovery failed while trying to {operation}: {error}. {hint}"
        ) from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes discovery failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
