from __future__ import annotations

import csv
import hashlib
import io
import os
from pathlib import Path
import tarfile
from unittest.mock import Mock

import pytest

from pvc_archiver.cli import build_parser, main, run_overrides
from pvc_archiver.k8s import KubernetesAuthenticationError, KubernetesDiscoveryError
from pvc_archiver.models import OutcomeRecord, OutcomeResult, VolumeRecord, WorkItem
from pvc_archiver.report import OutcomeHistoryStore


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("PVCA_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def _item(pvc_name: str) -> WorkItem:
    return WorkItem(
        volume=VolumeRecord(
            namespace="team-a",
            pvc_name=pvc_name,
            pvc_uid=f"uid-{pvc_name}",
            phase="Bound",
            capacity="1Gi",
            storage_class="fast",
            access_modes=("ReadWriteMany",),
        )
    )


def test_build_parser_maps_run_flags_to_config_overrides() -> None:
    args = build_parser().parse_args(
        [
            "run",
            "--namespace",
            "team-a",
            "--namespace",
            "team-b",
            "--no-colocate",
            "--exclude-path",
            "cache",
            "--parallelism",
            "4",
            "--fallback-node",
            "worker-01",
        ]
    )

    overrides = run_overrides(args)

    assert overrides["namespaces"] == ["team-a", "team-b"]
    assert overrides["colocate"] is False
    assert overrides["strict_rwo"] is None
    assert overrides["excludes"] == ["cache"]
    assert overrides["parallelism"] == 4
    assert overrides["fallback_node"] == "worker-01"
    assert overrides["dry_run"] is None


def test_main_run_with_invalid_flag_value_exits_with_config_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["run", "--compression-level", "0"]) == 2
    assert "configuration error" in capsys.readouterr().err


def test_main_run_with_unreadable_kubeconfig_exits_with_dependency_error(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setattr(
        "pvc_archiver.cli.load_kubernetes_clients",
        Mock(side_effect=KubernetesAuthenticationError("no kubeconfig")),
    )
    build_worklist = Mock()
    monkeypatch.setattr("pvc_archiver.cli.build_worklist", build_worklist)

    assert main(["run", "--report", str(tmp_path / "report.csv")]) == 3
    build_worklist.assert_not_called()


def test_main_run_with_unlistable_namespaces_exits_with_dependency_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("pvc_archiver.cli.load_kubernetes_clients", Mock())
    monkeypatch.setattr(
        "pvc_archiver.cli.build_worklist",
        Mock(side_effect=KubernetesDiscoveryError("API status 401 (Unauthorized)")),
    )

    assert main(["run"]) == 3


def test_main_run_in_dry_run_writes_report_and_summary(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr("pvc_archiver.cli.load_kubernetes_clients", Mock())
    monkeypatch.setattr("pvc_archiver.cli.build_worklist", Mock(return_value=[_item("data"), _item("cache")]))
    report = tmp_path / "out" / "report.csv"

    exit_code = main(
        [
            "run",
            "--dry-run",
            "--fallback-node",
            "worker-01",
            "--report",
            str(report),
            "--history-db",
            str(tmp_path / "history.db"),
        ]
    )

    assert exit_code == 0
    with report.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert [row["result"] for row in rows] == ["dry-run", "dry-run"]
    assert {row["backup_node"] for row in rows} == {"worker-01"}
    assert "dry-run" in capsys.readouterr().out
    assert OutcomeHistoryStore(tmp_path / "history.db").count_by_result() == {"dry-run": 2}


def test_main_run_exits_zero_even_when_items_fail(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("pvc_archiver.cli.load_kubernetes_clients", Mock())
    monkeypatch.setattr("pvc_archiver.cli.build_worklist", Mock(return_value=[_item("data")]))

    # No fallback node: the unmounted volume cannot be placed.
    assert main(["run", "--report", str(tmp_path / "report.csv")]) == 0


def _write_archive(directory: Path, prefix: str) -> None:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        info = tarfile.TarInfo("./hello.txt")
        info.size = 5
        archive.addfile(info, io.BytesIO(b"hello"))
    data = buffer.getvalue()
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{prefix}.tar.gz").write_bytes(data)
    (directory / f"{prefix}.tar.gz.sha256").write_text(
        f"{hashlib.sha256(data).hexdigest()}  {prefix}.tar.gz\n",
        encoding="utf-8",
    )


def test_main_verify_reports_success_and_failure(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    good = tmp_path / "good"
    _write_archive(good, "team-a-data-20260223T100000Z")
    bad = tmp_path / "bad"
    _write_archive(bad, "team-a-data-20260223T100000Z")
    (bad / "team-a-data-20260223T100000Z.tar.gz").write_bytes(b"not gzip")

    assert main(["verify", "--directory", str(good)]) == 0
    assert main(["verify", "--directory", str(bad)]) == 1
    assert main(["verify", "--directory", str(tmp_path / "empty")]) == 1
    output = capsys.readouterr().out
    assert "ok     team-a-data-20260223T100000Z" in output
    assert "FAILED team-a-data-20260223T100000Z" in output


def test_main_history_prints_recent_rows(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = OutcomeHistoryStore(tmp_path / "history.db")
    store.initialize()
    store.append(
        OutcomeRecord(
            timestamp="2026-02-23T10:05:00Z",
            namespace="team-a",
            pvc_name="data",
            storage_class="fast",
            access_modes=("ReadWriteOnce",),
            capacity="1Gi",
            phase="Bound",
            result=OutcomeResult.OK,
            detail="colocated with mount on worker-03",
            node="worker-03",
            bytes=2048,
        )
    )

    assert main(["history", "--history-db", str(tmp_path / "history.db"), "--limit", "5"]) == 0
    assert "team-a/data ok node=worker-03 bytes=2048" in capsys.readouterr().out


def test_main_history_without_database_exits_with_config_error() -> None:
    assert main(["history"]) == 2
