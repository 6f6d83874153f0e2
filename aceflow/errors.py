"""
Error taxonomy for the execution and checkpoint-recovery subsystem.

Every error carries a stable code and a distinct process exit code so the
CLI (and any collaborator parsing its output) can tell failures apart.
"""

from enum import IntEnum
from typing import Any, Sequence


class ExitCode(IntEnum):
    """Process exit codes, one per taxonomy entry."""
    OK = 0
    GENERAL_ERROR = 1
    USAGE_ERROR = 2
    TIMEOUT_EXCEEDED = 10
    TRANSIENT_EXECUTION_FAILURE = 11
    FATAL_EXECUTION_FAILURE = 12
    RETRY_EXHAUSTED = 13
    OPERATION_CANCELLED = 14
    OPERATION_CRASHED = 15
    SNAPSHOT_INCOMPLETE = 20
    CHECKSUM_MISMATCH = 21
    CHECKPOINT_NOT_FOUND = 22
    CONCURRENT_OPERATION = 23
    CONFIGURATION_ERROR = 30


class AceFlowError(Exception):
    """Base class for all aceflow errors."""

    code = "aceflow_error"
    exit_code = ExitCode.GENERAL_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "exit_code": int(self.exit_code),
            "message": self.message,
            "details": self.details,
        }


class TimeoutExceeded(AceFlowError):
    """An attempt ran past its computed timeout."""

    code = "timeout_exceeded"
    exit_code = ExitCode.TIMEOUT_EXCEEDED

    def __init__(self, operation: str, attempt: int, timeout_seconds: float):
        super().__init__(
            f"{operation}: attempt {attempt} exceeded its {timeout_seconds:.0f}s timeout",
            operation=operation,
            attempt=attempt,
            timeout_seconds=timeout_seconds,
        )


class TransientExecutionFailure(AceFlowError):
    """The operation exited with a retryable signal."""

    code = "transient_execution_failure"
    exit_code = ExitCode.TRANSIENT_EXECUTION_FAILURE

    def __init__(self, operation: str, attempt: int, exit_code: int | None, reason: str = ""):
        super().__init__(
            f"{operation}: attempt {attempt} failed transiently (exit {exit_code}){': ' + reason if reason else ''}",
            operation=operation,
            attempt=attempt,
            exit_code=exit_code,
            reason=reason,
        )


class FatalExecutionFailure(AceFlowError):
    """The operation exited with a non-retryable signal (validation, configuration)."""

    code = "fatal_execution_failure"
    exit_code = ExitCode.FATAL_EXECUTION_FAILURE

    def __init__(self, operation: str, attempt: int, exit_code: int | None, reason: str = ""):
        super().__init__(
            f"{operation}: attempt {attempt} failed fatally (exit {exit_code}){': ' + reason if reason else ''}",
            operation=operation,
            attempt=attempt,
            exit_code=exit_code,
            reason=reason,
        )


class RetryExhausted(AceFlowError):
    """All attempts were consumed without success."""

    code = "retry_exhausted"
    exit_code = ExitCode.RETRY_EXHAUSTED

    def __init__(self, operation: str, attempts: int, last_outcome: str):
        super().__init__(
            f"{operation}: all {attempts} attempts failed (last outcome: {last_outcome})",
            operation=operation,
            attempts=attempts,
            last_outcome=last_outcome,
        )


class OperationCancelled(AceFlowError):
    """The operation was cancelled by an external request."""

    code = "operation_cancelled"
    exit_code = ExitCode.OPERATION_CANCELLED

    def __init__(self, operation: str, attempt: int):
        super().__init__(
            f"{operation}: cancelled during attempt {attempt}",
            operation=operation,
            attempt=attempt,
        )


class OperationCrashed(AceFlowError):
    """The operation could not be started or its handle failed unexpectedly."""

    code = "operation_crashed"
    exit_code = ExitCode.OPERATION_CRASHED

    def __init__(self, operation: str, attempt: int, error: str):
        super().__init__(
            f"{operation}: attempt {attempt} crashed: {error}",
            operation=operation,
            attempt=attempt,
            error=error,
        )


class SnapshotIncomplete(AceFlowError):
    """A declared component could not be captured into a checkpoint."""

    code = "snapshot_incomplete"
    exit_code = ExitCode.SNAPSHOT_INCOMPLETE

    def __init__(self, component: str, reason: str, path: str | None = None):
        where = f" ({path})" if path else ""
        super().__init__(
            f"Cannot capture component '{component}'{where}: {reason}",
            component=component,
            path=path,
            reason=reason,
        )


class ChecksumMismatch(AceFlowError):
    """Validation or restore detected corruption or tampering."""

    code = "checksum_mismatch"
    exit_code = ExitCode.CHECKSUM_MISMATCH

    def __init__(self, checkpoint_id: str, mismatches: Sequence[str]):
        self.mismatches = list(mismatches)
        super().__init__(
            f"Checkpoint {checkpoint_id} failed validation: {len(self.mismatches)} mismatched path(s): "
            + ", ".join(self.mismatches),
            checkpoint_id=checkpoint_id,
            mismatches=self.mismatches,
        )


class CheckpointNotFound(AceFlowError):
    """No checkpoint exists with the requested id."""

    code = "checkpoint_not_found"
    exit_code = ExitCode.CHECKPOINT_NOT_FOUND

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Checkpoint not found: {checkpoint_id}", checkpoint_id=checkpoint_id)


class ConcurrentOperationInProgress(AceFlowError):
    """Another operation holds the checkpoint store lock."""

    code = "concurrent_operation_in_progress"
    exit_code = ExitCode.CONCURRENT_OPERATION

    def __init__(self, operation: str, lock_path: str):
        super().__init__(
            f"Cannot {operation}: another checkpoint operation is in progress ({lock_path}). "
            "Retry once it has finished.",
            operation=operation,
            lock_path=lock_path,
        )


class UsageError(AceFlowError):
    """The command line was syntactically valid but unusable."""

    code = "usage_error"
    exit_code = ExitCode.USAGE_ERROR


class ConfigurationError(AceFlowError, ValueError):
    """Invalid configuration (raised fail-fast at load time)."""

    code = "configuration_error"
    exit_code = ExitCode.CONFIGURATION_ERROR
