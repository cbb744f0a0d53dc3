from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import logging
from pathlib import Path
import re
import threading
import time
from typing import Callable

from kubernetes import client, watch
from kubernetes.client import ApiException

from .app_logging import log_with_fields
from .archive_job import (
    OUTPUT_MOUNT_PATH,
    SOURCE_MOUNT_PATH,
    ArchiveJobSpec,
    parse_metadata_log_line,
    render_archive_script,
)
from .errors import (
    ConfigError,
    ExecutionError,
    NotReadyError,
    ResultUnavailableError,
    SubmitError,
    WorkerTimeoutError,
    error_message,
)
from .models import ArchiveMetadata, WorkerResult, WorkerState

APP_LABEL = "app.kubernetes.io/name"
COMPONENT_LABEL = "app.kubernetes.io/component"
APP_NAME = "pvc-archiver"
COMPONENT_NAME = "pvc-archiver"
CONTAINER_NAME = "archiver"
SOURCE_VOLUME_NAME = "src"
OUTPUT_VOLUME_NAME = "out"
FILESYSTEM_VOLUME_MODE = "Filesystem"
TERMINATION_GRACE_PERIOD_SECONDS = 10
NON_RETRYABLE_SUBMIT_STATUSES = frozenset({400, 401, 403, 404, 422})
MAX_WATCH_WINDOW_SECONDS = 60
LOG_TAIL_LINES = 50
DEADLINE_EXCEEDED_REASON = "DeadlineExceeded"
RUN_LABEL = "pvc-archiver/run-id"

_DNS_LABEL_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_TERMINAL_PHASES = frozenset({"Succeeded", "Failed"})


@dataclass(frozen=True)
class WorkerSpec:
    namespace: str
    pod_name: str
    pvc_name: str
    node_name: str
    host_path: str
    image: str
    job: ArchiveJobSpec
    volume_mode: str = FILESYSTEM_VOLUME_MODE
    active_deadline_seconds: int | None = None
    labels: dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        problems: list[str] = []
        if len(self.pod_name) > 63 or not _DNS_LABEL_PATTERN.match(self.pod_name):
            problems.append(f"pod name {self.pod_name!r} is not a valid DNS label")
        if not self.namespace:
            problems.append("namespace is empty")
        if not self.pvc_name:
            problems.append("pvc name is empty")
        if not self.node_name:
            problems.append("no target node was selected")
        if not self.host_path.startswith("/"):
            problems.append(f"destination path {self.host_path!r} must be absolute")
        if not self.image:
            problems.append("worker image is empty")
        if self.volume_mode != FILESYSTEM_VOLUME_MODE:
            problems.append(f"volume mode {self.volume_mode} cannot be archived at the filesystem level")
        if self.active_deadline_seconds is not None and self.active_deadline_seconds <= 0:
            problems.append("active deadline must be positive")
        try:
            self.job.validate()
        except ConfigError as error:
            problems.append(str(error))
        if problems:
            raise SubmitError("; ".join(problems), retryable=False)

    def to_pod(self) -> client.V1Pod:
        self.validate()
        labels = {
            APP_LABEL: APP_NAME,
            COMPONENT_LABEL: COMPONENT_NAME,
            **self.labels,
        }
        root_security = client.V1PodSecurityContext(
            run_as_user=0,
            run_as_group=0,
            fs_group=0,
            fs_group_change_policy="OnRootMismatch",
        )
        return client.V1Pod(
            metadata=client.V1ObjectMeta(name=self.pod_name, namespace=self.namespace, labels=labels),
            spec=client.V1PodSpec(
                restart_policy="Never",
                node_name=self.node_name,
                security_context=root_security,
                tolerations=[client.V1Toleration(operator="Exists")],
                termination_grace_period_seconds=TERMINATION_GRACE_PERIOD_SECONDS,
                active_deadline_seconds=self.active_deadline_seconds,
                containers=[
                    client.V1Container(
                        name=CONTAINER_NAME,
                        image=self.image,
                        image_pull_policy="IfNotPresent",
                        command=["sh", "-c", render_archive_script(self.job)],
                        termination_message_policy="FallbackToLogsOnError",
                        security_context=client.V1SecurityContext(
                            run_as_user=0,
                            run_as_group=0,
                            allow_privilege_escalation=False,
                            read_only_root_filesystem=False,
                        ),
                        volume_mounts=[
                            # Read-only mount protects workloads from accidental writes.
                            client.V1VolumeMount(name=SOURCE_VOLUME_NAME, mount_path=SOURCE_MOUNT_PATH, read_only=True),
                            client.V1VolumeMount(name=OUTPUT_VOLUME_NAME, mount_path=OUTPUT_MOUNT_PATH, read_only=False),
                        ],
                    )
                ],
                volumes=[
                    client.V1Volume(
                        name=SOURCE_VOLUME_NAME,
                        persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                            claim_name=self.pvc_name,
                            read_only=True,
                        ),
                    ),
                    client.V1Volume(
                        name=OUTPUT_VOLUME_NAME,
                        host_path=client.V1HostPathVolumeSource(path=self.host_path, type="DirectoryOrCreate"),
                    ),
                ],
            ),
        )


class WorkerPodController:
    """Drive one node-pinned archive pod from creation to cleanup."""

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        spec: WorkerSpec,
        cancel_event: threading.Event | None = None,
        poll_interval_seconds: float = 5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.spec = spec
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.state = WorkerState.PENDING
        self._last_pod: client.V1Pod | None = None

    @property
    def namespace(self) -> str:
        return self.spec.namespace

    @property
    def pod_name(self) -> str:
        return self.spec.pod_name

    def submit(self) -> None:
        pod = self.spec.to_pod()
        try:
            self._create_pod(pod)
        except ApiException as error:
            retryable = error.status not in NON_RETRYABLE_SUBMIT_STATUSES
            raise SubmitError(_format_api_error(error), retryable=retryable) from error
        except SubmitError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise SubmitError(error_message(error)) from error
        self.state = WorkerState.CREATED
        self._log(logging.INFO, "worker submitted", node=self.spec.node_name)

    def await_ready(self, timeout_seconds: float) -> WorkerState:
        """Block until the pod reports Ready or has already finished.

        A pod that runs to completion before readiness is observed counts as
        ready; its terminal phase is reported by ``await_completion``.
        """
        try:
            pod = self._wait_for(_is_ready_or_terminal, timeout_seconds=timeout_seconds)
        except ApiException as error:
            raise NotReadyError(f"could not observe pod readiness: {_format_api_error(error)}") from error
        except ResultUnavailableError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            raise NotReadyError(f"could not observe pod readiness: {error_message(error)}") from error
        if pod is None:
            if self.cancel_event.is_set():
                raise NotReadyError(f"pod {self.namespace}/{self.pod_name} readiness wait cancelled")
            detail = f"last observed phase={_pod_phase(self._last_pod)}"
            hint = _extract_pending_hint(self._last_pod) if self._last_pod is not None else None
            if hint:
                detail = f"{detail}; {hint}"
            raise NotReadyError(
                f"pod {self.namespace}/{self.pod_name} did not become Ready within {timeout_seconds:g}s ({detail})"
            )
        self.state = WorkerState.READY
        self._log(logging.INFO, "worker ready", phase=_pod_phase(pod))
        return self.state

    def await_completion(self, timeout_seconds: float | None = None) -> WorkerState:
        """Block until the pod is Succeeded or Failed.

        With no ceiling the pod is re-checked every ``poll_interval_seconds``
        until it finishes or the run is cancelled.
        """
        if self.state == WorkerState.READY:
            self.state = WorkerState.RUNNING
        try:
            pod = self._wait_for(_is_terminal, timeout_seconds=timeout_seconds)
        except ApiException as error:
            self.state = WorkerState.FAILED
            raise ExecutionError(
                f"lost track of the worker pod: {_format_api_error(error)}",
                detail="worker-lost",
            ) from error
        except ResultUnavailableError:
            raise
        except Exception as error:  # pylint: disable=broad-except
            self.state = WorkerState.FAILED
            raise ExecutionError(
                f"lost track of the worker pod: {error_message(error)}",
                detail="worker-lost",
            ) from error
        if pod is None:
            self.state = WorkerState.TIMED_OUT
            if self.cancel_event.is_set():
                reason = "run deadline exceeded"
            else:
                reason = f"pod did not finish within {timeout_seconds:g}s"
            self._log(logging.WARNING, "worker timed out", reason=reason)
            raise WorkerTimeoutError(reason, detail="timed-out")

        if _pod_status_reason(pod) == DEADLINE_EXCEEDED_REASON:
            self.state = WorkerState.TIMED_OUT
            reason = f"pod exceeded its active deadline of {self.spec.active_deadline_seconds}s"
            self._log(logging.WARNING, "worker timed out", reason=reason)
            raise WorkerTimeoutError(reason, detail="timed-out")

        self.state = WorkerState.SUCCEEDED if _pod_phase(pod) == "Succeeded" else WorkerState.FAILED
        self._log(logging.INFO, "worker finished", state=self.state.value)
        return self.state

    def fetch_result(self) -> WorkerResult:
        try:
            pod = self.core_api.read_namespaced_pod(name=self.pod_name, namespace=self.namespace)
        except Exception as error:  # pylint: disable=broad-except
            raise ResultUnavailableError(f"could not read pod status: {error_message(error)}") from error

        terminated = _terminated_state(pod)
        if terminated is None:
            raise ResultUnavailableError(f"container {CONTAINER_NAME} has no terminated state")

        exit_code = int(terminated.exit_code if terminated.exit_code is not None else -1)
        message = (terminated.message or "").strip()
        if exit_code != 0:
            return WorkerResult(exit_code=exit_code, metadata=None, message=message)
        if not message:
            metadata = self._metadata_from_logs()
            if metadata is None:
                raise ResultUnavailableError("archive metadata record was not reported by the worker")
            return WorkerResult(exit_code=exit_code, metadata=metadata, message=message)
        try:
            metadata = ArchiveMetadata.from_json(message)
        except ValueError as error:
            raise ResultUnavailableError(f"archive metadata record is unreadable: {error}") from error
        return WorkerResult(exit_code=exit_code, metadata=metadata, message=message)

    def _metadata_from_logs(self) -> ArchiveMetadata | None:
        try:
            logs = self.core_api.read_namespaced_pod_log(
                name=self.pod_name,
                namespace=self.namespace,
                container=CONTAINER_NAME,
                tail_lines=LOG_TAIL_LINES,
            )
        except Exception as error:  # pylint: disable=broad-except
            self._log(logging.WARNING, "worker log read failed", error=error_message(error))
            return None
        metadata = parse_metadata_log_line(logs or "")
        if metadata is not None:
            self._log(logging.WARNING, "termination message empty, metadata taken from logs")
        return metadata

    def collect_logs(self, destination: Path) -> Path | None:
        try:
            logs = self.core_api.read_namespaced_pod_log(
                name=self.pod_name,
                namespace=self.namespace,
                container=CONTAINER_NAME,
            )
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(logs or "", encoding="utf-8")
        except Exception as error:  # pylint: disable=broad-except
            self._log(logging.WARNING, "worker log collection failed", error=error_message(error))
            return None
        return destination

    def cleanup(self) -> None:
        try:
            self._delete_pod()
        except Exception as error:  # pylint: disable=broad-except
            self._log(logging.WARNING, "worker cleanup failed", error=error_message(error))
            return
        self._log(logging.INFO, "worker deleted")

    def _create_pod(self, pod: client.V1Pod) -> None:
        try:
            self.core_api.create_namespaced_pod(namespace=self.namespace, body=pod)
        except ApiException as error:
            if error.status != 409:
                raise
            self._replace_own_pod(pod)

    def _replace_own_pod(self, pod: client.V1Pod) -> None:
        """Re-create a pod left behind by an earlier attempt of this run.

        A same-named pod labelled with another run id belongs to a concurrent
        run and is never deleted.
        """
        run_id = (pod.metadata.labels or {}).get(RUN_LABEL)
        try:
            existing = self.core_api.read_namespaced_pod(name=self.pod_name, namespace=self.namespace)
        except ApiException as error:
            if error.status != 404:
                raise
        else:
            existing_labels = getattr(getattr(existing, "metadata", None), "labels", None) or {}
            if existing_labels.get(RUN_LABEL) != run_id:
                raise SubmitError(
                    f"pod {self.namespace}/{self.pod_name} already exists and belongs to another run",
                    retryable=False,
                )
            self._delete_pod()
        self.core_api.create_namespaced_pod(namespace=self.namespace, body=pod)

    def _delete_pod(self) -> None:
        try:
            self.core_api.delete_namespaced_pod(
                name=self.pod_name,
                namespace=self.namespace,
                grace_period_seconds=0,
                body=client.V1DeleteOptions(),
            )
        except ApiException as error:
            if error.status == 404:
                return
            raise

    def _wait_for(
        self,
        predicate: Callable[[client.V1Pod], bool],
        *,
        timeout_seconds: float | None,
    ) -> client.V1Pod | None:
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        while not self.cancel_event.is_set():
            pod = self.core_api.read_namespaced_pod(name=self.pod_name, namespace=self.namespace)
            self._last_pod = pod
            if predicate(pod):
                return pod

            window = self.poll_interval_seconds if deadline is None else deadline - time.monotonic()
            if window <= 0:
                return None
            pod = self._watch_window(predicate, window_seconds=min(window, MAX_WATCH_WINDOW_SECONDS))
            if pod is not None:
                return pod
            if deadline is not None and time.monotonic() >= deadline:
                return None
        return None

    def _watch_window(
        self,
        predicate: Callable[[client.V1Pod], bool],
        *,
        window_seconds: float,
    ) -> client.V1Pod | None:
        stream = watch.Watch()
        try:
            for event in stream.stream(
                self.core_api.list_namespaced_pod,
                namespace=self.namespace,
                field_selector=f"metadata.name={self.pod_name}",
                timeout_seconds=max(1, int(window_seconds)),
            ):
                if self.cancel_event.is_set():
                    return None
                pod = event.get("object")
                if pod is None:
                    continue
                if event.get("type") == "DELETED":
                    raise ResultUnavailableError(f"pod {self.namespace}/{self.pod_name} was deleted while waiting")
                self._last_pod = pod
                if predicate(pod):
                    return pod
        except ApiException as error:
            # 410 Gone means the watch bookmark expired; the next window re-reads the pod.
            if error.status != 410:
                raise
        finally:
            stream.stop()
        return None

    def _log(self, level: int, message: str, **fields: object) -> None:
        log_with_fields(
            self.logger,
            level,
            message,
            namespace=self.namespace,
            pod=self.pod_name,
            pvc=self.spec.pvc_name,
            **fields,
        )


def worker_pod_name(namespace: str, pvc_name: str, run_stamp: str) -> str:
    """Deterministic pod name for one (namespace, pvc, run) triple.

    The hash keeps names distinct when long PVC names are truncated.
    """
    digest = hashlib.sha256(f"{namespace}/{pvc_name}".encode("utf-8")).hexdigest()[:8]
    stamp = sanitize_dns_label(run_stamp, max_length=20)
    head = sanitize_dns_label(f"pvca-{pvc_name}", max_length=63 - len(digest) - len(stamp) - 2)
    return f"{head}-{digest}-{stamp}"


def sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "pvca"


def _is_ready_or_terminal(pod: client.V1Pod) -> bool:
    if _is_terminal(pod):
        return True
    conditions = getattr(getattr(pod, "status", None), "conditions", None) or []
    return any(
        getattr(condition, "type", None) == "Ready" and getattr(condition, "status", None) == "True"
        for condition in conditions
    )


def _is_terminal(pod: client.V1Pod) -> bool:
    return _pod_phase(pod) in _TERMINAL_PHASES


def _pod_phase(pod: object | None) -> str:
    status = getattr(pod, "status", None)
    phase = getattr(status, "phase", None) if status is not None else None
    return phase or "Unknown"


def _pod_status_reason(pod: object | None) -> str | None:
    return getattr(getattr(pod, "status", None), "reason", None)


def _terminated_state(pod: object) -> object | None:
    container_statuses = getattr(getattr(pod, "status", None), "container_statuses", None) or []
    for container_status in container_statuses:
        if getattr(container_status, "name", CONTAINER_NAME) != CONTAINER_NAME:
            continue
        state = getattr(container_status, "state", None)
        terminated = getattr(state, "terminated", None) if state is not None else None
        if terminated is not None:
            return terminated
    return None


def _format_api_error(error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"API status {status} ({reason})"


def _extract_pending_hint(pod: object) -> str | None:
    pod_status = getattr(pod, "status", None)
    if pod_status is None:
        return None

    conditions = getattr(pod_status, "conditions", None) or []
    for condition in conditions:
        if getattr(condition, "type", None) == "PodScheduled" and getattr(condition, "status", None) == "False":
            reason = getattr(condition, "reason", None) or "Unschedulable"
            message = (getattr(condition, "message", None) or "").strip()
            return f"pod unschedulable ({reason}: {message})" if message else f"pod unschedulable ({reason})"

    for attribute in ("init_container_statuses", "container_statuses"):
        container_statuses = getattr(pod_status, attribute, None) or []
        for container_status in container_statuses:
            state = getattr(container_status, "state", None)
            waiting_state = getattr(state, "waiting", None) if state is not None else None
            if waiting_state is None:
                continue
            reason = getattr(waiting_state, "reason", None) or "ContainerWaiting"
            message = (getattr(waiting_state, "message", None) or "").strip()
            if message:
                return f"container waiting ({reason}: {message})"
            return f"container waiting ({reason})"

    return None
