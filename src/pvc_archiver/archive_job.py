from __future__ import annotations

from dataclasses import dataclass
import re
import shlex

from .errors import ConfigError
from .models import ArchiveMetadata

SOURCE_MOUNT_PATH = "/src"
OUTPUT_MOUNT_PATH = "/backup/out"
TERMINATION_LOG_PATH = "/dev/termination-log"
META_LOG_MARKER = "ARCHIVE_META"

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"
PARTS_SUFFIX = ".part"
PARTS_CHECKSUM_SUFFIX = ".parts.sha256"
META_SUFFIX = ".meta.json"
PART_SUFFIX_DIGITS = 4

_SPLIT_SIZE_PATTERN = re.compile(r"^[0-9]+[KMGT]?$")
_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class ArchiveJobSpec:
    prefix: str
    compression_level: int = 1
    excludes: tuple[str, ...] = ("lost+found",)
    split_size: str | None = None
    source_dir: str = SOURCE_MOUNT_PATH
    output_dir: str = OUTPUT_MOUNT_PATH
    termination_log: str | None = TERMINATION_LOG_PATH

    def validate(self) -> None:
        if not _PREFIX_PATTERN.match(self.prefix):
            raise ConfigError(f"archive prefix contains unsupported characters: {self.prefix!r}")
        if not 1 <= self.compression_level <= 9:
            raise ConfigError(f"compression level must be between 1 and 9, got {self.compression_level}")
        if self.split_size is not None and not _SPLIT_SIZE_PATTERN.match(self.split_size):
            raise ConfigError(f"split size must look like 512M or 4G, got {self.split_size!r}")
        for exclude in self.excludes:
            validate_exclude_path(exclude)

    @property
    def split(self) -> bool:
        return self.split_size is not None

    @property
    def archive_file(self) -> str:
        return archive_file_name(self.prefix, split=self.split)

    @property
    def checksum_file(self) -> str:
        return checksum_file_name(self.prefix, split=self.split)

    @property
    def metadata_file(self) -> str:
        return metadata_file_name(self.prefix)


def validate_exclude_path(path: str) -> None:
    stripped = path.strip()
    if not stripped:
        raise ConfigError("exclude paths must not be empty")
    if stripped.startswith("/"):
        raise ConfigError(f"exclude paths must be relative to the volume root: {path!r}")
    if ".." in stripped.split("/"):
        raise ConfigError(f"exclude paths must not traverse upwards: {path!r}")


def archive_prefix(namespace: str, pvc_name: str, run_stamp: str) -> str:
    return f"{sanitize_filesystem_component(namespace)}-{sanitize_filesystem_component(pvc_name)}-{run_stamp}"


def archive_file_name(prefix: str, *, split: bool = False) -> str:
    return f"{prefix}{PARTS_SUFFIX}" if split else f"{prefix}{ARCHIVE_SUFFIX}"


def checksum_file_name(prefix: str, *, split: bool = False) -> str:
    return f"{prefix}{PARTS_CHECKSUM_SUFFIX}" if split else f"{prefix}{ARCHIVE_SUFFIX}{CHECKSUM_SUFFIX}"


def metadata_file_name(prefix: str) -> str:
    return f"{prefix}{META_SUFFIX}"


def part_file_name(prefix: str, index: int) -> str:
    return f"{prefix}{PARTS_SUFFIX}.{index:0{PART_SUFFIX_DIGITS}d}"


def sanitize_filesystem_component(value: str) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", value)
    return sanitized or "unknown"


def parse_metadata_log_line(logs: str) -> ArchiveMetadata | None:
    """Return the last ``ARCHIVE_META`` record found in worker logs, if any.

    The termination message is authoritative; this is the fallback when the
    worker succeeded but could not write it.
    """
    found: ArchiveMetadata | None = None
    for line in logs.splitlines():
        marker_index = line.find(META_LOG_MARKER)
        if marker_index < 0:
            continue
        payload = line[marker_index + len(META_LOG_MARKER) :].strip()
        try:
            found = ArchiveMetadata.from_json(payload)
        except ValueError:
            continue
    return found


def render_archive_script(spec: ArchiveJobSpec) -> str:
    """Render the POSIX sh program executed inside the worker container.

    Output is staged in a hidden directory next to the final files and only
    renamed into place once complete; archives are renamed before their
    checksum file. Any failure removes already published files and exits
    non-zero.
    """
    spec.validate()
    exclude_args = " ".join(shlex.quote(f"--exclude={exclude.strip()}") for exclude in spec.excludes)
    values = {
        "SRC": spec.source_dir,
        "OUT": spec.output_dir,
        "PREFIX": spec.prefix,
        "LEVEL": str(spec.compression_level),
        "SPLIT_SIZE": spec.split_size or "",
        "TERMINATION_LOG": spec.termination_log or "",
        "PART_DIGITS": str(PART_SUFFIX_DIGITS),
    }
    assignments = "\n".join(f"{name}={shlex.quote(value)}" for name, value in values.items())
    return _SCRIPT_TEMPLATE.replace("__ASSIGNMENTS__", assignments).replace("__EXCLUDE_ARGS__", exclude_args)


_SCRIPT_TEMPLATE = r"""set -eu
__ASSIGNMENTS__
STAGE="$OUT/.$PREFIX.tmp.$$"
STATUS="$STAGE/.pipeline-status"
PUBLISHED=""
DONE=0

finish() {
  rc=$?
  rm -rf "$STAGE"
  if [ "$DONE" -ne 1 ]; then
    for name in $PUBLISHED; do rm -f "$OUT/$name"; done
    [ "$rc" -ne 0 ] || rc=1
  fi
  exit "$rc"
}
fail() {
  echo "archive job failed: $*" >&2
  exit 1
}
trap finish EXIT
trap 'exit 143' TERM
trap 'exit 130' INT

mkdir -p "$OUT"
rm -rf "$STAGE"
mkdir "$STAGE"
: >"$STATUS"
cd "$SRC"

if [ -n "$SPLIT_SIZE" ]; then
  { tar -cf - __EXCLUDE_ARGS__ . || echo "tar exited with status $?" >>"$STATUS"; } \
    | { gzip -c -"$LEVEL" || echo "gzip exited with status $?" >>"$STATUS"; } \
    | { split -b "$SPLIT_SIZE" -a "$PART_DIGITS" -d - "$STAGE/$PREFIX.part." || echo "split exited with status $?" >>"$STATUS"; }
else
  { tar -cf - __EXCLUDE_ARGS__ . || echo "tar exited with status $?" >>"$STATUS"; } \
    | { gzip -c -"$LEVEL" || echo "gzip exited with status $?" >>"$STATUS"; } >"$STAGE/$PREFIX.tar.gz"
fi
if [ -s "$STATUS" ]; then
  fail "$(tr '\n' ';' <"$STATUS")"
fi

cd "$STAGE"
if [ -n "$SPLIT_SIZE" ]; then
  set -- "$PREFIX".part.*
  [ -e "$1" ] || fail "split produced no parts"
  FILE="$PREFIX.part"
  SUMS="$PREFIX.parts.sha256"
else
  set -- "$PREFIX.tar.gz"
  FILE="$PREFIX.tar.gz"
  SUMS="$PREFIX.tar.gz.sha256"
fi
PARTS=$#
sha256sum "$@" >"$SUMS" || fail "checksum computation failed"
BYTES=$(( $(cat "$@" | wc -c) ))
CHECKSUM=$(cat "$@" | sha256sum | cut -d ' ' -f 1)
[ -n "$CHECKSUM" ] || fail "checksum computation produced no digest"

for name in "$@"; do
  PUBLISHED="$PUBLISHED $name"
  mv -f "$STAGE/$name" "$OUT/$name"
done
PUBLISHED="$PUBLISHED $SUMS"
mv -f "$STAGE/$SUMS" "$OUT/$SUMS"

cd "$OUT"
cat "$@" | gzip -t || fail "compressed stream is not well-formed"
sha256sum -c --status "$SUMS" || fail "checksum mismatch against $SUMS"

FINISHED=$(date -u +%Y-%m-%dT%H:%M:%SZ)
printf '{"file": "%s", "bytes": %s, "checksum": "%s", "checksum_ok": true, "parts": %s, "finished_at": "%s"}\n' \
  "$FILE" "$BYTES" "$CHECKSUM" "$PARTS" "$FINISHED" >"$STAGE/$PREFIX.meta.json"
PUBLISHED="$PUBLISHED $PREFIX.meta.json"
mv -f "$STAGE/$PREFIX.meta.json" "$OUT/$PREFIX.meta.json"
DONE=1

if [ -n "$TERMINATION_LOG" ]; then
  cat "$OUT/$PREFIX.meta.json" >"$TERMINATION_LOG" || echo "could not write $TERMINATION_LOG" >&2
fi
echo "ARCHIVE_META $(cat "$OUT/$PREFIX.meta.json")"
"""
