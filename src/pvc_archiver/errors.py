from __future__ import annotations


class ArchiverError(RuntimeError):
    """Base class for errors raised while archiving a volume."""


class ConfigError(ArchiverError):
    """Raised when the run configuration is invalid."""


class SkippedByPolicy(ArchiverError):
    """Not a failure: the volume was deliberately left alone."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class WorkerStageError(ArchiverError):
    stage = "worker"

    def __init__(self, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{self.stage} stage failed: {normalized_reason}")
        self.reason = normalized_reason


class SubmitError(WorkerStageError):
    stage = "submit"

    def __init__(self, reason: str, *, retryable: bool = True) -> None:
        super().__init__(reason)
        self.retryable = retryable


class NotReadyError(WorkerStageError):
    stage = "ready"


class ExecutionError(WorkerStageError):
    stage = "execute"

    def __init__(self, reason: str, *, detail: str | None = None) -> None:
        super().__init__(reason)
        self.detail = detail or self.reason


class WorkerTimeoutError(ExecutionError):
    stage = "complete"


class ResultUnavailableError(WorkerStageError):
    stage = "result"


def is_retryable_startup_error(error: BaseException) -> bool:
    if isinstance(error, SubmitError):
        return error.retryable
    return isinstance(error, NotReadyError)


def error_message(error: BaseException) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
