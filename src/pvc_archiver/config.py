from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import os
import re
from typing import Any, Callable, Mapping

import yaml

from .archive_job import validate_exclude_path
from .errors import ConfigError

ENV_PREFIX = "PVCA_"
ENV_CONFIG_PATH = "PVCA_CONFIG"
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class AppConfig:
    fallback_node: str | None = None
    namespace_prefix: str = ""
    namespaces: tuple[str, ...] = ()
    include_pvc_pattern: str = ".*"
    exclude_pvc_pattern: str = ""
    backup_base_path: str = "/data/backups/pvc-archives"
    colocate: bool = True
    strict_rwo: bool = True
    compression_level: int = 1
    split_size: str | None = None
    excludes: tuple[str, ...] = ("lost+found",)
    image: str = "debian:bookworm-slim"
    ready_timeout_seconds: int = 300
    run_timeout_seconds: int = 0
    deadline_seconds: int = 0
    poll_interval_seconds: int = 5
    retain_worker: bool = False
    dry_run: bool = False
    parallelism: int = 1
    retry_attempts: int = 3
    backoff_base_seconds: float = 2.0
    report_path: Path = Path("./reports/backup_report.csv")
    log_dir: Path | None = Path("./reports/logs")
    history_db_path: Path | None = None
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    discovery_timeout_seconds: int = 20

    def validate(self) -> None:
        problems: list[str] = []
        if not self.backup_base_path.startswith("/"):
            problems.append("backup_base_path must be an absolute node path")
        if not 1 <= self.compression_level <= 9:
            problems.append("compression_level must be between 1 and 9")
        if self.split_size is not None and not re.match(r"^[0-9]+[KMGT]?$", self.split_size):
            problems.append("split_size must look like 512M or 4G")
        for name in ("include_pvc_pattern", "exclude_pvc_pattern"):
            try:
                re.compile(getattr(self, name))
            except re.error as error:
                problems.append(f"{name} is not a valid regular expression: {error}")
        for exclude in self.excludes:
            try:
                validate_exclude_path(exclude)
            except ConfigError as error:
                problems.append(str(error))
        for name in ("ready_timeout_seconds", "poll_interval_seconds", "parallelism", "retry_attempts",
                     "discovery_timeout_seconds"):
            if getattr(self, name) <= 0:
                problems.append(f"{name} must be positive")
        for name in ("run_timeout_seconds", "deadline_seconds", "backoff_base_seconds"):
            if getattr(self, name) < 0:
                problems.append(f"{name} must not be negative")
        if problems:
            raise ConfigError("; ".join(problems))


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> AppConfig:
    """Build the run configuration from defaults, a YAML file, ``PVCA_*`` variables and overrides.

    Later sources win; ``None`` overrides are ignored so unset CLI flags fall
    through. The result is validated once all sources are applied.
    """
    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    path = config_path or environ.get(ENV_CONFIG_PATH)
    if path:
        values.update(_read_yaml_values(Path(path).expanduser()))

    for name in _FIELD_COERCERS:
        env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if env_value is not None:
            values[name] = env_value

    values.update({name: value for name, value in overrides.items() if value is not None})

    config = AppConfig(**{name: _coerce(name, value) for name, value in values.items()})
    config.validate()
    return config


def apply_overrides(config: AppConfig, **overrides: Any) -> AppConfig:
    changes = {name: _coerce(name, value) for name, value in overrides.items() if value is not None}
    updated = replace(config, **changes) if changes else config
    updated.validate()
    return updated


def ensure_directories(config: AppConfig) -> None:
    config.report_path.parent.mkdir(parents=True, exist_ok=True)
    if config.log_dir is not None:
        config.log_dir.mkdir(parents=True, exist_ok=True)
    if config.history_db_path is not None:
        config.history_db_path.parent.mkdir(parents=True, exist_ok=True)


def _read_yaml_values(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except FileNotFoundError as error:
        raise ConfigError(f"config file not found: {path}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"config file {path} is not valid YAML: {error}") from error
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")

    values: dict[str, Any] = {}
    for key, value in raw.items():
        name = str(key).strip().replace("-", "_")
        if name not in _FIELD_COERCERS:
            raise ConfigError(f"unknown config key: {key}")
        values[name] = value
    return values


def _coerce(name: str, value: Any) -> Any:
    coercer = _FIELD_COERCERS.get(name)
    if coercer is None:
        raise ConfigError(f"unknown config key: {name}")
    try:
        return coercer(value)
    except (TypeError, ValueError) as error:
        raise ConfigError(f"invalid value for {name}: {value!r}") from error


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items = re.split(r"[,\s]+", value)
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise TypeError(f"expected a list, got {type(value).__name__}")
    return tuple(item.strip() for item in items if item and item.strip())


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _as_optional_path(value: Any) -> Path | None:
    stripped = _as_optional_str(value)
    return Path(stripped).expanduser() if stripped else None


def _as_path(value: Any) -> Path:
    return Path(str(value)).expanduser()


_FIELD_COERCERS: dict[str, Callable[[Any], Any]] = {
    "fallback_node": _as_optional_str,
    "namespace_prefix": lambda value: str(value or "").strip(),
    "namespaces": _as_str_tuple,
    "include_pvc_pattern": lambda value: str(value or ".*"),
    "exclude_pvc_pattern": lambda value: str(value or ""),
    "backup_base_path": lambda value: str(value).rstrip("/") or "/",
    "colocate": _as_bool,
    "strict_rwo": _as_bool,
    "compression_level": int,
    "split_size": _as_optional_str,
    "excludes": _as_str_tuple,
    "image": lambda value: str(value).strip(),
    "ready_timeout_seconds": int,
    "run_timeout_seconds": int,
    "deadline_seconds": int,
    "poll_interval_seconds": int,
    "retain_worker": _as_bool,
    "dry_run": _as_bool,
    "parallelism": int,
    "retry_attempts": int,
    "backoff_base_seconds": float,
    "report_path": _as_path,
    "log_dir": _as_optional_path,
    "history_db_path": _as_optional_path,
    "kubeconfig_path": _as_optional_str,
    "context": _as_optional_str,
    "in_cluster": _as_bool,
    "discovery_timeout_seconds": int,
}
