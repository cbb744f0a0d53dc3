from __future__ import annotations

import csv
from pathlib import Path
import threading

from pvc_archiver.models import OutcomeRecord, OutcomeResult
from pvc_archiver.report import CSV_COLUMNS, CsvReportSink, OutcomeHistoryStore, outcome_row


def _record(
    *,
    pvc_name: str = "data",
    result: OutcomeResult = OutcomeResult.OK,
    timestamp: str = "2026-02-23T10:05:00Z",
    detail: str = "colocated with mount on worker-03",
    **artifact: object,
) -> OutcomeRecord:
    values: dict[str, object] = {
        "node": "worker-03",
        "destination_path": f"/data/backups/pvc-archives/team-a/{pvc_name}",
        "archive_file": f"team-a-{pvc_name}-20260223T100000Z.tar.gz",
        "bytes": 2048,
        "checksum_ok": True,
    }
    values.update(artifact)
    return OutcomeRecord(
        timestamp=timestamp,
        namespace="team-a",
        pvc_name=pvc_name,
        storage_class="local-path",
        access_modes=("ReadWriteOnce", "ReadOnlyMany"),
        capacity="10Gi",
        phase="Bound",
        result=result,
        detail=detail,
        **values,  # type: ignore[arg-type]
    )


def test_outcome_row_formats_modes_flags_and_missing_values() -> None:
    skipped = _record(
        result=OutcomeResult.SKIPPED,
        detail="mounted elsewhere, strict mode",
        node=None,
        destination_path=None,
        archive_file=None,
        bytes=None,
        checksum_ok=None,
    )

    assert outcome_row(_record())[4] == "ReadWriteOnce+ReadOnlyMany"
    assert outcome_row(_record())[-1] == "true"
    assert outcome_row(skipped)[7:] == ["skipped", "mounted elsewhere, strict mode", "-", "-", "-", "-", "-"]


def test_csv_report_sink_writes_header_once(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "report.csv"
    sink = CsvReportSink(path)

    sink.append(_record(pvc_name="data"))
    CsvReportSink(path).append(_record(pvc_name="cache", result=OutcomeResult.ERROR, detail="container-exit-2"))

    with path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.reader(handle))
    assert rows[0] == list(CSV_COLUMNS)
    assert len(rows) == 3
    assert rows[1][2] == "data"
    assert rows[2][7:9] == ["error", "container-exit-2"]


def test_csv_report_sink_keeps_rows_whole_under_concurrent_appends(tmp_path: Path) -> None:
    sink = CsvReportSink(tmp_path / "report.csv")
    threads = [
        threading.Thread(target=lambda index=index: sink.append(_record(pvc_name=f"vol-{index}", detail="x" * 500)))
        for index in range(20)
    ]

    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with sink.path.open(encoding="utf-8", newline="") as handle:
        rows = list(csv.DictReader(handle))
    assert sorted(row["pvc"] for row in rows) == sorted(f"vol-{index}" for index in range(20))
    assert all(len(row) == len(CSV_COLUMNS) for row in rows)


def test_get_last_success_map_tracks_latest_success_timestamp(tmp_path: Path) -> None:
    store = OutcomeHistoryStore(tmp_path / "history.db")
    store.initialize()

    store.append(_record(result=OutcomeResult.ERROR, timestamp="2026-02-23T10:01:00Z", detail="timed-out"))
    store.append(_record(timestamp="2026-02-23T11:01:00Z"))
    store.append(_record(timestamp="2026-02-22T09:00:00Z"))

    last_success = store.get_last_success_map()

    assert last_success[("team-a", "data")] == "2026-02-23T11:01:00Z"


def test_get_recent_results_returns_newest_first_with_limit(tmp_path: Path) -> None:
    store = OutcomeHistoryStore(tmp_path / "history.db")
    store.initialize()
    store.append(_record(pvc_name="old", timestamp="2026-02-23T09:00:00Z"))
    store.append(_record(pvc_name="new", timestamp="2026-02-23T12:00:00Z", checksum_ok=None, bytes=None))

    rows = store.get_recent_results(limit=1)

    assert len(rows) == 1
    assert rows[0]["pvc_name"] == "new"
    assert rows[0]["checksum_ok"] is None
    assert store.get_recent_results(limit=0) == []


def test_count_by_result_groups_outcomes(tmp_path: Path) -> None:
    store = OutcomeHistoryStore(tmp_path / "history.db")
    store.initialize()
    store.append(_record(pvc_name="a"))
    store.append(_record(pvc_name="b", result=OutcomeResult.SKIPPED))
    store.append(_record(pvc_name="c", result=OutcomeResult.SKIPPED))

    assert store.count_by_result() == {"ok": 1, "skipped": 2}
