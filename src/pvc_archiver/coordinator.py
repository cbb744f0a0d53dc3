from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from pathlib import Path
import re
import threading
import uuid
from typing import Callable, Iterable, Protocol, Sequence

from kubernetes import client

from .app_logging import log_with_fields
from .archive_job import ArchiveJobSpec, archive_file_name, archive_prefix
from .config import AppConfig
from .errors import (
    ExecutionError,
    NotReadyError,
    ResultUnavailableError,
    SkippedByPolicy,
    SubmitError,
    error_message,
    is_retryable_startup_error,
)
from .models import (
    ArchiveMetadata,
    OutcomeRecord,
    OutcomeResult,
    PlacementDecision,
    PlacementMode,
    RunSummary,
    WorkerResult,
    WorkerState,
    WorkItem,
)
from .placement import PlacementPolicy, classify, select_node
from .report import ReportSink
from .retry import call_with_backoff
from .worker import RUN_LABEL, WorkerPodController, WorkerSpec, worker_pod_name

RUN_STAMP_FORMAT = "%Y%m%dT%H%M%SZ"
RECORD_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
DETAIL_RUN_DEADLINE = "run deadline exceeded"
DETAIL_NO_TARGET_NODE = "no-target-node"
DETAIL_EXCLUDED = "excluded by pattern"

logger = logging.getLogger(__name__)


class WorkerController(Protocol):
    state: WorkerState

    def submit(self) -> None: ...

    def await_ready(self, timeout_seconds: float) -> WorkerState: ...

    def await_completion(self, timeout_seconds: float | None = None) -> WorkerState: ...

    def fetch_result(self) -> WorkerResult: ...

    def collect_logs(self, destination: Path) -> Path | None: ...

    def cleanup(self) -> None: ...


ControllerFactory = Callable[[WorkerSpec, threading.Event], WorkerController]


@dataclass(frozen=True)
class PlannedBackup:
    item: WorkItem
    decision: PlacementDecision
    node: str | None
    host_dir: str
    prefix: str
    pod_name: str
    archive_file: str


def kubernetes_controller_factory(
    core_api: client.CoreV1Api,
    *,
    poll_interval_seconds: float,
) -> ControllerFactory:
    def build(spec: WorkerSpec, cancel_event: threading.Event) -> WorkerController:
        return WorkerPodController(
            core_api=core_api,
            spec=spec,
            cancel_event=cancel_event,
            poll_interval_seconds=poll_interval_seconds,
            logger=logging.getLogger("pvc_archiver.worker"),
        )

    return build


def run_stamp(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(RUN_STAMP_FORMAT)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RunCoordinator:
    """Plan and execute one archive worker per discovered volume.

    Every work item produces exactly one outcome record, which is appended to
    every sink as soon as it is known. Failures stay scoped to their item.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        controller_factory: ControllerFactory | None,
        sinks: Sequence[ReportSink] = (),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if controller_factory is None and not config.dry_run:
            raise ValueError("a controller factory is required unless dry_run is enabled")
        self.config = config
        self.controller_factory = controller_factory
        self.sinks = list(sinks)
        self.clock = clock
        self.cancel_event = threading.Event()
        self.run_id = uuid.uuid4().hex[:12]
        self._include = re.compile(config.include_pvc_pattern)
        self._exclude = re.compile(config.exclude_pvc_pattern) if config.exclude_pvc_pattern else None
        self._policy = PlacementPolicy(colocate=config.colocate, strict_rwo=config.strict_rwo)

    def plan(self, item: WorkItem, stamp: str) -> PlannedBackup:
        """Decide placement and naming for one item.

        Raises ``SkippedByPolicy`` when the PVC is filtered out by the
        include/exclude patterns or cannot be mounted safely.
        """
        volume = item.volume
        if not self._include.search(volume.pvc_name):
            raise SkippedByPolicy(DETAIL_EXCLUDED)
        if self._exclude is not None and self._exclude.search(volume.pvc_name):
            raise SkippedByPolicy(DETAIL_EXCLUDED)

        decision = classify(volume, item.mounts, self._policy)
        if decision.mode == PlacementMode.SKIP:
            raise SkippedByPolicy(decision.reason)

        prefix = archive_prefix(volume.namespace, volume.pvc_name, stamp)
        return PlannedBackup(
            item=item,
            decision=decision,
            node=select_node(decision, self.config.fallback_node),
            host_dir=f"{self.config.backup_base_path.rstrip('/')}/{volume.namespace}/{volume.pvc_name}",
            prefix=prefix,
            pod_name=worker_pod_name(volume.namespace, volume.pvc_name, stamp),
            archive_file=archive_file_name(prefix, split=self.config.split_size is not None),
        )

    def run(self, items: Iterable[WorkItem]) -> RunSummary:
        work = list(items)
        stamp = run_stamp(self.clock())
        records: list[OutcomeRecord | None] = [None] * len(work)
        log_with_fields(
            logger,
            logging.INFO,
            "run started",
            items=len(work),
            stamp=stamp,
            run_id=self.run_id,
            parallelism=self.config.parallelism,
            dry_run=self.config.dry_run,
        )

        timer: threading.Timer | None = None
        if self.config.deadline_seconds > 0:
            timer = threading.Timer(self.config.deadline_seconds, self._deadline_reached)
            timer.daemon = True
            timer.start()

        def process(index: int) -> None:
            records[index] = self._process(work[index], stamp)

        try:
            if self.config.parallelism <= 1 or len(work) <= 1:
                for index in range(len(work)):
                    process(index)
            else:
                with ThreadPoolExecutor(
                    max_workers=self.config.parallelism,
                    thread_name_prefix="pvc-archiver",
                ) as executor:
                    futures = [executor.submit(process, index) for index in range(len(work))]
                    try:
                        for future in futures:
                            future.result()
                    except KeyboardInterrupt:
                        # Running items observe the event; queued items record the deadline.
                        self.cancel_event.set()
                        raise
        finally:
            if timer is not None:
                timer.cancel()

        summary = RunSummary(records=[record for record in records if record is not None])
        log_with_fields(logger, logging.INFO, "run finished", **summary.counts())
        return summary

    def cancel(self) -> None:
        self.cancel_event.set()

    def _deadline_reached(self) -> None:
        log_with_fields(logger, logging.WARNING, "run deadline reached", deadline_seconds=self.config.deadline_seconds)
        self.cancel_event.set()

    def _process(self, item: WorkItem, stamp: str) -> OutcomeRecord:
        try:
            record = self._process_item(item, stamp)
        except Exception as error:  # pylint: disable=broad-except
            record = self._record(item, OutcomeResult.ERROR, f"unexpected failure: {error_message(error)}")

        level = logging.ERROR if record.result == OutcomeResult.ERROR else logging.INFO
        log_with_fields(
            logger,
            level,
            "item finished",
            namespace=record.namespace,
            pvc=record.pvc_name,
            result=record.result.value,
            detail=record.detail,
        )
        for sink in self.sinks:
            try:
                sink.append(record)
            except Exception as error:  # pylint: disable=broad-except
                log_with_fields(
                    logger,
                    logging.ERROR,
                    "report append failed",
                    sink=type(sink).__name__,
                    error=error_message(error),
                )
        return record

    def _process_item(self, item: WorkItem, stamp: str) -> OutcomeRecord:
        if self.cancel_event.is_set():
            return self._record(item, OutcomeResult.ERROR, DETAIL_RUN_DEADLINE)

        try:
            planned = self.plan(item, stamp)
        except SkippedByPolicy as skipped:
            return self._record(item, OutcomeResult.SKIPPED, skipped.reason)

        if self.config.dry_run:
            detail = planned.decision.reason if planned.node else f"{DETAIL_NO_TARGET_NODE}; {planned.decision.reason}"
            return self._record(
                item,
                OutcomeResult.DRY_RUN,
                detail,
                node=planned.node,
                destination_path=planned.host_dir,
                archive_file=planned.archive_file,
            )

        if planned.node is None:
            return self._record(
                item,
                OutcomeResult.ERROR,
                f"{DETAIL_NO_TARGET_NODE}: {planned.decision.reason} and no fallback node is configured",
                destination_path=planned.host_dir,
            )

        return self._execute(planned)

    def _execute(self, planned: PlannedBackup) -> OutcomeRecord:
        if self.controller_factory is None:
            raise RuntimeError("no controller factory configured for a non-dry run")
        item = planned.item
        controller = self.controller_factory(self._worker_spec(planned), self.cancel_event)
        attempts_used = 0

        def start(attempt: int) -> None:
            nonlocal attempts_used
            attempts_used = attempt
            if attempt > 1:
                controller.cleanup()
            controller.submit()
            controller.await_ready(self.config.ready_timeout_seconds)

        def on_retry(attempt: int, delay: float, error: Exception) -> None:
            log_with_fields(
                logger,
                logging.WARNING,
                "worker startup failed, retrying",
                namespace=item.volume.namespace,
                pvc=item.volume.pvc_name,
                attempt=attempt,
                delay_seconds=delay,
                error=error_message(error),
            )

        def failed(detail: str) -> OutcomeRecord:
            return self._record(
                item,
                OutcomeResult.ERROR,
                detail,
                node=planned.node,
                destination_path=planned.host_dir,
            )

        try:
            try:
                call_with_backoff(
                    start,
                    attempts=self.config.retry_attempts,
                    base_delay_seconds=self.config.backoff_base_seconds,
                    is_retryable=lambda error: is_retryable_startup_error(error) and not self.cancel_event.is_set(),
                    sleep=self.cancel_event.wait,
                    on_retry=on_retry,
                )
            except (SubmitError, NotReadyError) as error:
                if self.cancel_event.is_set():
                    return failed(DETAIL_RUN_DEADLINE)
                return failed(f"{error} (after {attempts_used} attempts)")

            run_timeout = self.config.run_timeout_seconds or None
            controller.await_completion(run_timeout)
            metadata = _validated_metadata(controller.fetch_result())
            return self._record(
                item,
                OutcomeResult.OK,
                planned.decision.reason,
                node=planned.node,
                destination_path=planned.host_dir,
                archive_file=metadata.file,
                bytes=metadata.bytes,
                checksum_ok=metadata.checksum_ok,
            )
        except ExecutionError as error:
            detail = error.detail if error.detail == error.reason else f"{error.detail}: {error.reason}"
            return failed(detail)
        except ResultUnavailableError as error:
            return failed(str(error))
        finally:
            self._finish_worker(controller, planned)

    def _finish_worker(self, controller: WorkerController, planned: PlannedBackup) -> None:
        if self.config.log_dir is not None and controller.state != WorkerState.PENDING:
            volume = planned.item.volume
            controller.collect_logs(self.config.log_dir / volume.namespace / f"{planned.pod_name}.log")
        if not self.config.retain_worker:
            controller.cleanup()

    def _worker_spec(self, planned: PlannedBackup) -> WorkerSpec:
        volume = planned.item.volume
        run_timeout = self.config.run_timeout_seconds
        return WorkerSpec(
            namespace=volume.namespace,
            pod_name=planned.pod_name,
            pvc_name=volume.pvc_name,
            node_name=planned.node or "",
            host_path=planned.host_dir,
            image=self.config.image,
            job=ArchiveJobSpec(
                prefix=planned.prefix,
                compression_level=self.config.compression_level,
                excludes=self.config.excludes,
                split_size=self.config.split_size,
            ),
            volume_mode=volume.volume_mode,
            active_deadline_seconds=run_timeout if run_timeout > 0 else None,
            labels={RUN_LABEL: self.run_id},
        )

    def _record(
        self,
        item: WorkItem,
        result: OutcomeResult,
        detail: str,
        **artifact: object,
    ) -> OutcomeRecord:
        volume = item.volume
        return OutcomeRecord(
            timestamp=self.clock().astimezone(timezone.utc).strftime(RECORD_TIMESTAMP_FORMAT),
            namespace=volume.namespace,
            pvc_name=volume.pvc_name,
            storage_class=volume.storage_class,
            access_modes=volume.access_modes,
            capacity=volume.capacity,
            phase=volume.phase,
            result=result,
            detail=detail,
            **artifact,  # type: ignore[arg-type]
        )


def _validated_metadata(result: WorkerResult) -> ArchiveMetadata:
    if result.exit_code != 0:
        reason = f"archive job exited with code {result.exit_code}"
        if result.message:
            reason = f"{reason}: {result.message.splitlines()[-1]}"
        raise ExecutionError(reason, detail=f"container-exit-{result.exit_code}")
    metadata = result.metadata
    if metadata is None or not metadata.file:
        raise ExecutionError("archive-missing")
    if not metadata.checksum_ok:
        raise ExecutionError("checksum-mismatch")
    return metadata
