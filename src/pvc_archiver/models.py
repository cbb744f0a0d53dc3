from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import json
from typing import Any


class PlacementMode(str, Enum):
    COLOCATE = "colocate"
    PIN = "pin"
    SKIP = "skip"


class WorkerState(str, Enum):
    PENDING = "Pending"
    CREATED = "Created"
    READY = "Ready"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        return self in {WorkerState.SUCCEEDED, WorkerState.FAILED, WorkerState.TIMED_OUT}


class OutcomeResult(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    ERROR = "error"
    DRY_RUN = "dry-run"


@dataclass(frozen=True)
class VolumeRecord:
    namespace: str
    pvc_name: str
    pvc_uid: str
    phase: str
    capacity: str | None
    storage_class: str | None
    access_modes: tuple[str, ...]
    volume_mode: str = "Filesystem"
    bound_pv: str | None = None


@dataclass(frozen=True)
class MountObservation:
    pod_name: str
    node_name: str | None


@dataclass(frozen=True)
class WorkItem:
    volume: VolumeRecord
    mounts: tuple[MountObservation, ...] = ()


@dataclass(frozen=True)
class PlacementDecision:
    mode: PlacementMode
    node: str | None
    reason: str


@dataclass(frozen=True)
class ArchiveMetadata:
    file: str
    bytes: int
    checksum: str | None
    checksum_ok: bool
    parts: int = 1
    finished_at: str | None = None

    @classmethod
    def from_json(cls, payload: str) -> ArchiveMetadata:
        """Parse the ``<prefix>.meta.json`` record written by the archive job.

        Raises ``ValueError`` when the payload is not a JSON object or lacks
        the ``file`` field.
        """
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError("archive metadata must be a JSON object")
        file_name = data.get("file")
        if not isinstance(file_name, str):
            raise ValueError("archive metadata is missing 'file'")
        return cls(
            file=file_name,
            bytes=int(data.get("bytes") or 0),
            checksum=data.get("checksum") or None,
            checksum_ok=_as_bool(data.get("checksum_ok", False)),
            parts=int(data.get("parts") or 1),
            finished_at=data.get("finished_at") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "bytes": self.bytes,
            "checksum": self.checksum,
            "checksum_ok": self.checksum_ok,
            "parts": self.parts,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class WorkerResult:
    exit_code: int
    metadata: ArchiveMetadata | None
    message: str = ""


@dataclass(frozen=True)
class OutcomeRecord:
    timestamp: str
    namespace: str
    pvc_name: str
    storage_class: str | None
    access_modes: tuple[str, ...]
    capacity: str | None
    phase: str
    result: OutcomeResult
    detail: str
    node: str | None = None
    destination_path: str | None = None
    archive_file: str | None = None
    bytes: int | None = None
    checksum_ok: bool | None = None


@dataclass
class RunSummary:
    records: list[OutcomeRecord] = field(default_factory=list)

    def count(self, result: OutcomeResult) -> int:
        return sum(1 for record in self.records if record.result == result)

    def counts(self) -> dict[str, int]:
        return {result.value: self.count(result) for result in OutcomeResult}


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}
