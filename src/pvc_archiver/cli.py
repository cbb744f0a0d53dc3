from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, apply_overrides, ensure_directories, load_config
from .coordinator import RunCoordinator, kubernetes_controller_factory
from .errors import ConfigError
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    build_worklist,
    load_kubernetes_clients,
)
from .models import OutcomeResult
from .report import CsvReportSink, OutcomeHistoryStore, ReportSink
from .verify import find_artifact_prefixes, verify_artifact

LOG_FILE_NAME = "pvc-archiver.jsonl"
EXIT_OK = 0
EXIT_VERIFY_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_DEPENDENCY_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pvc-archiver",
        description="Archive Kubernetes PVC contents to node-local storage",
    )
    parser.add_argument("--config", help="Path to YAML config (defaults to $PVCA_CONFIG)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console and file log level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Discover PVCs and archive each one")
    run.add_argument("--namespace", action="append", dest="namespaces", help="Namespace to scan (repeatable)")
    run.add_argument("--namespace-prefix", help="Scan namespaces starting with this prefix")
    run.add_argument("--include", dest="include_pvc_pattern", help="Only archive PVCs matching this regex")
    run.add_argument("--exclude", dest="exclude_pvc_pattern", help="Skip PVCs matching this regex")
    run.add_argument("--fallback-node", help="Node used when a volume is not mounted anywhere")
    run.add_argument("--base-path", dest="backup_base_path", help="Absolute destination path on the node")
    run.add_argument("--colocate", action=argparse.BooleanOptionalAction, default=None,
                     help="Run workers on the node that already mounts the volume")
    run.add_argument("--strict-rwo", action=argparse.BooleanOptionalAction, default=None,
                     help="Skip single-writer volumes mounted on another node")
    run.add_argument("--compression-level", type=int, help="gzip level, 1-9")
    run.add_argument("--split-size", help="Split archives into parts of this size (e.g. 4G)")
    run.add_argument("--exclude-path", action="append", dest="excludes",
                     help="Path inside the volume to leave out (repeatable)")
    run.add_argument("--parallelism", type=int, help="Volumes archived concurrently")
    run.add_argument("--retain-worker", action="store_true", default=None, help="Keep worker pods after they finish")
    run.add_argument("--dry-run", action="store_true", default=None, help="Plan only; create no worker pods")
    run.add_argument("--report", dest="report_path", help="CSV report path")
    run.add_argument("--history-db", dest="history_db_path", help="SQLite outcome history path")

    verify = subparsers.add_parser("verify", help="Verify finished archives in a host directory")
    verify.add_argument("--directory", required=True, help="Directory holding archives for one PVC")
    verify.add_argument("--prefix", help="Verify only this archive prefix")

    history = subparsers.add_parser("history", help="Show recent outcomes from the SQLite history")
    history.add_argument("--limit", type=int, default=20, help="Number of rows to show")
    history.add_argument("--history-db", dest="history_db_path", help="SQLite outcome history path")
    return parser


def run_overrides(args: argparse.Namespace) -> dict[str, Any]:
    names = (
        "namespaces",
        "namespace_prefix",
        "include_pvc_pattern",
        "exclude_pvc_pattern",
        "fallback_node",
        "backup_base_path",
        "colocate",
        "strict_rwo",
        "compression_level",
        "split_size",
        "excludes",
        "parallelism",
        "retain_worker",
        "dry_run",
        "report_path",
        "history_db_path",
    )
    return {name: getattr(args, name, None) for name in names}


def cmd_run(config: AppConfig, *, log_level: str) -> int:
    ensure_directories(config)
    logger = setup_logger(config.log_dir / LOG_FILE_NAME if config.log_dir is not None else None, log_level)

    sinks: list[ReportSink] = [CsvReportSink(config.report_path)]
    if config.history_db_path is not None:
        history = OutcomeHistoryStore(config.history_db_path)
        history.initialize()
        sinks.append(history)

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
        items = build_worklist(
            clients,
            namespaces=config.namespaces,
            prefix=config.namespace_prefix,
            request_timeout_seconds=config.discovery_timeout_seconds,
        )
    except (KubernetesAuthenticationError, KubernetesDiscoveryError) as error:
        log_with_fields(logger, logging.ERROR, "cluster unavailable, run aborted", error=str(error))
        print(f"cluster unavailable: {error}", file=sys.stderr)
        return EXIT_DEPENDENCY_ERROR

    factory = None
    if not config.dry_run:
        factory = kubernetes_controller_factory(clients.core_api, poll_interval_seconds=config.poll_interval_seconds)
    coordinator = RunCoordinator(config=config, controller_factory=factory, sinks=sinks)
    try:
        summary = coordinator.run(items)
    except KeyboardInterrupt:
        log_with_fields(logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 130

    counts = summary.counts()
    print("Outcomes:")
    for result in OutcomeResult:
        print(f"  {result.value:8} {counts.get(result.value, 0)}")
    for record in summary.records:
        if record.result == OutcomeResult.ERROR:
            print(f"  error {record.namespace}/{record.pvc_name}: {record.detail}")
    print(f"\nReport: {config.report_path}")
    return EXIT_OK


def cmd_verify(directory: Path, prefix: str | None) -> int:
    prefixes = [prefix] if prefix else find_artifact_prefixes(directory)
    if not prefixes:
        print(f"no archives found in {directory}", file=sys.stderr)
        return EXIT_VERIFY_FAILED

    failed = 0
    for name in prefixes:
        verification = verify_artifact(directory, name)
        if verification.ok:
            print(f"ok     {name} files={len(verification.files)} bytes={verification.bytes} sha256={verification.checksum}")
            continue
        failed += 1
        print(f"FAILED {name}: {'; '.join(verification.problems)}")
    return EXIT_VERIFY_FAILED if failed else EXIT_OK


def cmd_history(config: AppConfig, limit: int) -> int:
    if config.history_db_path is None:
        print("history_db_path is not configured", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    store = OutcomeHistoryStore(config.history_db_path)
    store.initialize()
    rows = store.get_recent_results(limit=limit)
    if not rows:
        print("(no outcomes recorded yet)")
    for row in rows:
        size = f" bytes={row['bytes']}" if row["bytes"] is not None else ""
        print(
            f"{row['recorded_at']} {row['namespace']}/{row['pvc_name']} "
            f"{row['result']} node={row['node'] or '-'}{size} {row['detail'] or ''}".rstrip()
        )
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "verify":
        setup_logger(None, args.log_level)
        return cmd_verify(Path(args.directory).expanduser(), args.prefix)

    try:
        config = load_config(args.config)
        if args.command == "run":
            config = apply_overrides(config, **run_overrides(args))
        elif args.command == "history":
            config = apply_overrides(config, history_db_path=args.history_db_path)
    except ConfigError as error:
        print(f"configuration error: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.command == "run":
        return cmd_run(config, log_level=args.log_level)
    if args.command == "history":
        setup_logger(None, args.log_level)
        return cmd_history(config, args.limit)
    parser.error(f"Unknown command: {args.command}")
    return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
