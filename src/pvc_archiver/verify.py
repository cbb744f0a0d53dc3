from __future__ import annotations

from dataclasses import dataclass, field
import glob
import gzip
import hashlib
import io
from pathlib import Path
import re
import tarfile
from typing import Iterable
import zlib

from .archive_job import (
    ARCHIVE_SUFFIX,
    PARTS_SUFFIX,
    checksum_file_name,
    metadata_file_name,
)
from .models import ArchiveMetadata

_CHUNK_SIZE = 64 * 1024
_PART_PATTERN = re.compile(r"^(?P<prefix>.+)\.part\.[0-9]+$")
_CHECKSUM_LINE = re.compile(r"^(?P<digest>[0-9a-fA-F]{64})\s+\*?(?P<name>.+)$")


@dataclass(frozen=True)
class ArtifactVerification:
    prefix: str
    files: tuple[str, ...] = ()
    bytes: int = 0
    checksum: str | None = None
    checksum_ok: bool = False
    stream_ok: bool = False
    metadata: ArchiveMetadata | None = None
    problems: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return not self.problems


def find_artifact_prefixes(directory: Path) -> list[str]:
    """Prefixes of final-named archives in ``directory``; staging entries are ignored."""
    prefixes: set[str] = set()
    if not directory.is_dir():
        return []
    for entry in directory.iterdir():
        name = entry.name
        if name.startswith(".") or not entry.is_file():
            continue
        if name.endswith(ARCHIVE_SUFFIX):
            prefixes.add(name[: -len(ARCHIVE_SUFFIX)])
            continue
        match = _PART_PATTERN.match(name)
        if match:
            prefixes.add(match.group("prefix"))
    return sorted(prefixes)


def verify_artifact(directory: Path, prefix: str) -> ArtifactVerification:
    """Check one artifact the way a restore would consume it.

    The archive must exist under its final name before its checksum file is
    read; the gzip/tar stream must be well-formed; the recomputed digest must
    match both the checksum file and, when present, the metadata record.
    """
    single = directory / f"{prefix}{ARCHIVE_SUFFIX}"
    parts = sorted(Path(path) for path in glob.glob(str(directory / f"{glob.escape(prefix)}{PARTS_SUFFIX}.[0-9]*")))
    if single.is_file():
        files = [single]
        split = False
    elif parts:
        files = parts
        split = True
    else:
        return ArtifactVerification(prefix=prefix, problems=(f"archive not found for prefix {prefix}",))

    problems: list[str] = []
    per_file, stream_digest, total_bytes = _digest_files(files)

    checksum_ok = False
    checksum_path = directory / checksum_file_name(prefix, split=split)
    if not checksum_path.is_file():
        problems.append(f"checksum file missing: {checksum_path.name}")
    else:
        expected = _read_checksum_file(checksum_path)
        mismatched = [name for name, digest in per_file.items() if expected.get(name) != digest]
        unexpected = sorted(set(expected) - set(per_file))
        if mismatched:
            problems.append(f"checksum mismatch: {', '.join(sorted(mismatched))}")
        if unexpected:
            problems.append(f"checksum file lists missing files: {', '.join(unexpected)}")
        checksum_ok = not mismatched and not unexpected

    stream_ok = _stream_is_well_formed(files)
    if not stream_ok:
        problems.append("compressed stream is not a well-formed tar.gz")

    metadata: ArchiveMetadata | None = None
    metadata_path = directory / metadata_file_name(prefix)
    if metadata_path.is_file():
        try:
            metadata = ArchiveMetadata.from_json(metadata_path.read_text(encoding="utf-8"))
        except ValueError as error:
            problems.append(f"metadata record unreadable: {error}")
        else:
            if metadata.checksum and metadata.checksum != stream_digest:
                problems.append("metadata checksum does not match the archive")
            if metadata.bytes and metadata.bytes != total_bytes:
                problems.append(f"metadata size {metadata.bytes} does not match archive size {total_bytes}")
            if metadata.parts != len(files):
                problems.append(f"metadata lists {metadata.parts} parts, found {len(files)}")

    return ArtifactVerification(
        prefix=prefix,
        files=tuple(path.name for path in files),
        bytes=total_bytes,
        checksum=stream_digest,
        checksum_ok=checksum_ok,
        stream_ok=stream_ok,
        metadata=metadata,
        problems=tuple(problems),
    )


def verify_directory(directory: Path) -> list[ArtifactVerification]:
    return [verify_artifact(directory, prefix) for prefix in find_artifact_prefixes(directory)]


def _digest_files(files: list[Path]) -> tuple[dict[str, str], str, int]:
    stream_digest = hashlib.sha256()
    per_file: dict[str, str] = {}
    total_bytes = 0
    for path in files:
        digest = hashlib.sha256()
        with path.open("rb") as file_handle:
            for chunk in iter(lambda: file_handle.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
                stream_digest.update(chunk)
                total_bytes += len(chunk)
        per_file[path.name] = digest.hexdigest()
    return per_file, stream_digest.hexdigest(), total_bytes


def _read_checksum_file(path: Path) -> dict[str, str]:
    expected: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        match = _CHECKSUM_LINE.match(line.strip())
        if match:
            expected[Path(match.group("name")).name] = match.group("digest").lower()
    return expected


def _stream_is_well_formed(files: list[Path]) -> bool:
    try:
        with _ConcatenatedReader(files) as reader, gzip.GzipFile(fileobj=reader, mode="rb") as stream:
            with tarfile.open(fileobj=stream, mode="r|") as archive:
                for _member in archive:
                    pass
            # Drain to the gzip trailer so the CRC and length are checked.
            while stream.read(_CHUNK_SIZE):
                pass
    except (tarfile.TarError, OSError, EOFError, zlib.error):
        return False
    return True


class _ConcatenatedReader(io.RawIOBase):
    """Read several files back to back as one stream, as ``cat`` would."""

    def __init__(self, paths: Iterable[Path]) -> None:
        super().__init__()
        self._paths = list(paths)
        self._handle: io.BufferedReader | None = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: bytearray) -> int:  # type: ignore[override]
        while True:
            if self._handle is None:
                if not self._paths:
                    return 0
                self._handle = self._paths.pop(0).open("rb")
            count = self._handle.readinto(buffer)
            if count:
                return count
            self._handle.close()
            self._handle = None

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
            self._handle = None
        super().close()
