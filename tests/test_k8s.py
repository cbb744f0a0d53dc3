from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from pvc_archiver.k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesDiscoveryError,
    build_worklist,
    list_mount_observations,
    list_namespaces,
    list_volume_records,
    load_kubernetes_clients,
)
from pvc_archiver.models import MountObservation
from pvc_archiver.worker import COMPONENT_LABEL, COMPONENT_NAME


def _namespace(name: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def _pod(
    *,
    name: str,
    pvc_names: list[str],
    node_name: str | None = "worker-01",
    phase: str = "Running",
    labels: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}),
        spec=SimpleNamespace(
            node_name=node_name,
            volumes=[
                SimpleNamespace(persistent_volume_claim=SimpleNamespace(claim_name=pvc_name))
                for pvc_name in pvc_names
            ]
            + [SimpleNamespace(persistent_volume_claim=None)],
        ),
        status=SimpleNamespace(phase=phase),
    )


def _pvc(
    *,
    namespace: str,
    name: str,
    uid: str = "pvc-uid",
    access_modes: list[str] | None = None,
    phase: str = "Bound",
    volume_mode: str | None = "Filesystem",
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(namespace=namespace, name=name, uid=uid),
        spec=SimpleNamespace(
            access_modes=access_modes or ["ReadWriteOnce"],
            storage_class_name="fast",
            volume_name=f"pv-{name}",
            volume_mode=volume_mode,
        ),
        status=SimpleNamespace(phase=phase, capacity={"storage": "1Gi"}),
    )


def _clients(*, core_api: Mock | None = None) -> KubernetesClients:
    return KubernetesClients(api_client=Mock(), core_api=core_api or Mock())


def test_list_namespaces_with_explicit_list_skips_cluster_lookup() -> None:
    core_api = Mock()

    names = list_namespaces(_clients(core_api=core_api), namespaces=["team-b", " team-a ", "team-b"], prefix="x")

    assert names == ["team-a", "team-b"]
    core_api.list_namespace.assert_not_called()


def test_list_namespaces_with_prefix_filters_and_sorts() -> None:
    core_api = Mock()
    core_api.list_namespace.return_value = SimpleNamespace(
        items=[_namespace("team-b"), _namespace("kube-system"), _namespace("team-a")]
    )

    names = list_namespaces(_clients(core_api=core_api), prefix="team-", request_timeout_seconds=7)

    assert names == ["team-a", "team-b"]
    core_api.list_namespace.assert_called_once_with(_request_timeout=7)


def test_list_namespaces_with_api_exception_raises_actionable_discovery_error() -> None:
    core_api = Mock()
    core_api.list_namespace.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(KubernetesDiscoveryError, match="API status 403"):
        list_namespaces(_clients(core_api=core_api))


def test_list_volume_records_maps_claim_fields() -> None:
    core_api = Mock()
    core_api.list_namespaced_persistent_volume_claim.return_value = SimpleNamespace(
        items=[
            _pvc(namespace="apps", name="zeta", access_modes=["ReadWriteMany"]),
            _pvc(namespace="apps", name="alpha", phase="Pending", volume_mode=None),
        ]
    )

    records = list_volume_records(_clients(core_api=core_api), "apps")

    assert [record.pvc_name for record in records] == ["alpha", "zeta"]
    alpha, zeta = records
    assert alpha.phase == "Pending"
    assert alpha.volume_mode == "Filesystem"
    assert alpha.capacity == "1Gi"
    assert alpha.storage_class == "fast"
    assert alpha.bound_pv == "pv-alpha"
    assert zeta.access_modes == ("ReadWriteMany",)


def test_list_volume_records_with_api_exception_raises_actionable_discovery_error() -> None:
    core_api = Mock()
    core_api.list_namespaced_persistent_volume_claim.side_effect = ApiException(status=500, reason="boom")

    with pytest.raises(KubernetesDiscoveryError, match="list PVCs in namespace 'apps'"):
        list_volume_records(_clients(core_api=core_api), "apps")


def test_list_mount_observations_ignores_finished_and_archiver_pods() -> None:
    core_api = Mock()
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[
            _pod(name="api-0", pvc_names=["data"], node_name="worker-03"),
            _pod(name="migrate", pvc_names=["data"], node_name="worker-07", phase="Succeeded"),
            _pod(
                name="pvca-data-1234abcd-20260223t100000z",
                pvc_names=["data"],
                node_name="worker-09",
                labels={COMPONENT_LABEL: COMPONENT_NAME},
            ),
            _pod(name="pending-0", pvc_names=["cache"], node_name=None, phase="Pending"),
        ]
    )

    mounts = list_mount_observations(_clients(core_api=core_api), "apps")

    assert mounts == {
        "data": [MountObservation(pod_name="api-0", node_name="worker-03")],
        "cache": [MountObservation(pod_name="pending-0", node_name=None)],
    }


def test_build_worklist_attaches_mounts_and_skips_failing_namespace() -> None:
    core_api = Mock()
    core_api.list_namespace.return_value = SimpleNamespace(items=[_namespace("team-a"), _namespace("team-b")])

    def list_pvcs(*, namespace: str, _request_timeout: int) -> SimpleNamespace:
        if namespace == "team-b":
            raise ApiException(status=403, reason="Forbidden")
        return SimpleNamespace(items=[_pvc(namespace=namespace, name="data"), _pvc(namespace=namespace, name="idle")])

    core_api.list_namespaced_persistent_volume_claim.side_effect = list_pvcs
    core_api.list_namespaced_pod.return_value = SimpleNamespace(
        items=[_pod(name="api-0", pvc_names=["data"], node_name="worker-03")]
    )

    items = build_worklist(_clients(core_api=core_api), prefix="team-")

    assert [(item.volume.namespace, item.volume.pvc_name) for item in items] == [("team-a", "data"), ("team-a", "idle")]
    assert items[0].mounts == (MountObservation(pod_name="api-0", node_name="worker-03"),)
    assert items[1].mounts == ()


def test_build_worklist_with_namespace_listing_failure_propagates() -> None:
    core_api = Mock()
    core_api.list_namespace.side_effect = ApiException(status=401, reason="Unauthorized")

    with pytest.raises(KubernetesDiscoveryError):
        build_worklist(_clients(core_api=core_api))


def test_build_worklist_without_pvcs_does_not_list_pods() -> None:
    core_api = Mock()
    core_api.list_namespaced_persistent_volume_claim.return_value = SimpleNamespace(items=[])

    items = build_worklist(_clients(core_api=core_api), namespaces=["empty"])

    assert items == []
    core_api.list_namespaced_pod.assert_not_called()


def test_load_kubernetes_clients_with_in_cluster_mode_uses_incluster_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    api_client = Mock()
    core_api = Mock()

    monkeypatch.setattr("pvc_archiver.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("pvc_archiver.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("pvc_archiver.k8s.client.ApiClient", Mock(return_value=api_client))
    monkeypatch.setattr("pvc_archiver.k8s.client.CoreV1Api", Mock(return_value=core_api))

    clients = load_kubernetes_clients(kubeconfig_path="~/.kube/config", context="ignored", in_cluster=True)

    load_incluster_config.assert_called_once_with()
    load_kube_config.assert_not_called()
    assert clients.api_client is api_client
    assert clients.core_api is core_api


def test_load_kubernetes_clients_with_kubeconfig_mode_expands_path_and_context(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_kube_config = Mock()

    monkeypatch.setenv("HOME", "/tmp/pvca-home")
    monkeypatch.setattr("pvc_archiver.k8s.config.load_incluster_config", Mock())
    monkeypatch.setattr("pvc_archiver.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("pvc_archiver.k8s.client.ApiClient", Mock(return_value=Mock()))
    monkeypatch.setattr("pvc_archiver.k8s.client.CoreV1Api", Mock(return_value=Mock()))

    load_kubernetes_clients(kubeconfig_path="~/.kube/config", context="dev-cluster", in_cluster=False)

    load_kube_config.assert_called_once_with(config_file="/tmp/pvca-home/.kube/config", context="dev-cluster")


def test_load_kubernetes_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "pvc_archiver.k8s.config.load_kube_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="context does not exist"):
        load_kubernetes_clients(kubeconfig_path="/etc/pvca/config", context="missing", in_cluster=False)
