from __future__ import annotations

import csv
from pathlib import Path
import sqlite3
import threading
from typing import Any, Protocol

from .models import OutcomeRecord, OutcomeResult

CSV_COLUMNS = (
    "date",
    "namespace",
    "pvc",
    "storageClass",
    "accessModes",
    "capacity",
    "phase",
    "result",
    "detail",
    "backup_node",
    "hostpath",
    "archive_file",
    "bytes",
    "checksum_ok",
)
MISSING = "-"


class ReportSink(Protocol):
    def append(self, record: OutcomeRecord) -> None: ...


class CsvReportSink:
    """Append-only CSV report; one row per outcome, safe for concurrent appends."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: OutcomeRecord) -> None:
        with self._lock:
            write_header = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", encoding="utf-8", newline="") as handle:
                writer = csv.writer(handle)
                if write_header:
                    writer.writerow(CSV_COLUMNS)
                writer.writerow(outcome_row(record))
                handle.flush()


def outcome_row(record: OutcomeRecord) -> list[str]:
    return [
        record.timestamp,
        record.namespace,
        record.pvc_name,
        record.storage_class or MISSING,
        "+".join(record.access_modes) or MISSING,
        record.capacity or MISSING,
        record.phase or MISSING,
        record.result.value,
        record.detail or MISSING,
        record.node or MISSING,
        record.destination_path or MISSING,
        record.archive_file or MISSING,
        MISSING if record.bytes is None else str(record.bytes),
        MISSING if record.checksum_ok is None else str(record.checksum_ok).lower(),
    ]


class OutcomeHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS outcome_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    pvc_name TEXT NOT NULL,
                    result TEXT NOT NULL,
                    detail TEXT,
                    node TEXT,
                    destination_path TEXT,
                    archive_file TEXT,
                    bytes INTEGER,
                    checksum_ok INTEGER,
                    recorded_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_outcome_history_lookup
                ON outcome_history(namespace, pvc_name, result, recorded_at)
                """
            )
            connection.commit()

    def append(self, record: OutcomeRecord) -> None:
        with self._lock, sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO outcome_history (
                    namespace,
                    pvc_name,
                    result,
                    detail,
                    node,
                    destination_path,
                    archive_file,
                    bytes,
                    checksum_ok,
                    recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.namespace,
                    record.pvc_name,
                    record.result.value,
                    record.detail,
                    record.node,
                    record.destination_path,
                    record.archive_file,
                    record.bytes,
                    None if record.checksum_ok is None else int(record.checksum_ok),
                    record.timestamp,
                ),
            )
            connection.commit()

    def get_last_success_map(self) -> dict[tuple[str, str], str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT current.namespace, current.pvc_name, current.recorded_at
                FROM outcome_history AS current
                WHERE current.result = ?
                  AND current.id = (
                    SELECT candidate.id
                    FROM outcome_history AS candidate
                    WHERE candidate.result = ?
                      AND candidate.namespace = current.namespace
                      AND candidate.pvc_name = current.pvc_name
                    ORDER BY candidate.recorded_at DESC, candidate.id DESC
                    LIMIT 1
                  )
                """,
                (OutcomeResult.OK.value, OutcomeResult.OK.value),
            )
            rows = cursor.fetchall()

        return {(namespace, pvc_name): last_success for namespace, pvc_name, last_success in rows}

    def get_recent_results(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, pvc_name, result, detail, node, archive_file, bytes, checksum_ok, recorded_at
                FROM outcome_history
                ORDER BY recorded_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "namespace": row[0],
                "pvc_name": row[1],
                "result": row[2],
                "detail": row[3],
                "node": row[4],
                "archive_file": row[5],
                "bytes": row[6],
                "checksum_ok": None if row[7] is None else bool(row[7]),
                "recorded_at": row[8],
            }
            for row in rows
        ]

    def count_by_result(self) -> dict[str, int]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT result, COUNT(*) FROM outcome_history GROUP BY result")
            rows = cursor.fetchall()

        return {str(result): int(count) for result, count in rows}
