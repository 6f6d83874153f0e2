"""
Data models for aceflow.

Immutable value objects for complexity profiles, execution attempts,
operation records and checkpoints.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping

from .errors import (
    AceFlowError,
    FatalExecutionFailure,
    OperationCancelled,
    OperationCrashed,
    RetryExhausted,
)


class AttemptOutcome(str, Enum):
    """Outcome of a single execution attempt."""
    SUCCESS = "success"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Classification hint for a non-zero exit."""
    TRANSIENT = "transient"
    FATAL = "fatal"


class FinalOutcome(str, Enum):
    """Terminal outcome of an operation invocation."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    """Why an operation failed; lets callers tell retryable from deterministic failures."""
    RETRY_EXHAUSTED = "retry_exhausted"
    FATAL_EXECUTION_FAILURE = "fatal_execution_failure"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


class CheckpointTrigger(str, Enum):
    """What caused a checkpoint to be created."""
    MANUAL = "manual"
    AUTO_PRE_OPERATION = "auto-pre-operation"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ComplexityProfile:
    """Deterministic complexity score plus the factors that produced it."""
    score: int
    factors: tuple[tuple[str, int], ...] = ()
    category: str = "standard"

    def __post_init__(self):
        if self.score < 0:
            raise ValueError(f"score must be >= 0, got {self.score}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category,
            "factors": [{"name": name, "weight": weight} for name, weight in self.factors],
        }


@dataclass(frozen=True)
class ExitStatus:
    """What an operation reported when it finished."""
    exit_code: int
    failure_class: FailureClass | None = None
    output: str = ""
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class ExecutionAttempt:
    """A single attempt at running an operation. Never mutated after it ends."""
    attempt_index: int
    timeout_seconds: float
    started_at: datetime
    ended_at: datetime
    outcome: AttemptOutcome
    exit_code: int | None = None
    failure_class: FailureClass | None = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def retryable(self) -> bool:
        """Whether this outcome may drive another attempt."""
        if self.outcome == AttemptOutcome.TIMED_OUT:
            return True
        return self.outcome == AttemptOutcome.FAILED and self.failure_class == FailureClass.TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_index": self.attempt_index,
            "timeout_seconds": self.timeout_seconds,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "failure_class": self.failure_class.value if self.failure_class else None,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecutionAttempt":
        failure_class = data.get("failure_class")
        return cls(
            attempt_index=int(data["attempt_index"]),
            timeout_seconds=float(data["timeout_seconds"]),
            started_at=_parse(data["started_at"]),
            ended_at=_parse(data["ended_at"]),
            outcome=AttemptOutcome(data["outcome"]),
            exit_code=data.get("exit_code"),
            failure_class=FailureClass(failure_class) if failure_class else None,
            error=data.get("error"),
        )


@dataclass(frozen=True)
class OperationRecord:
    """
    Full history of one executor invocation.

    attempts holds every attempt made, in order, so a failed run can be
    diagnosed without re-running it.
    """
    operation_name: str
    attempts: tuple[ExecutionAttempt, ...]
    final_outcome: FinalOutcome
    total_duration_seconds: float
    started_at: datetime
    failure_kind: FailureKind | None = None
    complexity_score: int = 0
    checkpoint_id: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.final_outcome == FinalOutcome.SUCCEEDED

    @property
    def last_attempt(self) -> ExecutionAttempt | None:
        return self.attempts[-1] if self.attempts else None

    def error(self) -> AceFlowError | None:
        """Build the taxonomy error matching this record's failure, if any."""
        last = self.last_attempt
        attempt = last.attempt_index if last else 0
        if self.failure_kind == FailureKind.FATAL_EXECUTION_FAILURE:
            return FatalExecutionFailure(
                self.operation_name, attempt, last.exit_code if last else None, last.error or "" if last else ""
            )
        if self.failure_kind == FailureKind.CRASHED:
            return OperationCrashed(self.operation_name, attempt, (last.error if last else None) or "unknown error")
        if self.failure_kind == FailureKind.CANCELLED:
            return OperationCancelled(self.operation_name, attempt)
        if self.failure_kind == FailureKind.RETRY_EXHAUSTED:
            return RetryExhausted(self.operation_name, len(self.attempts), last.outcome.value if last else "none")
        return None

    def raise_for_outcome(self) -> None:
        """Raise the matching taxonomy error unless the operation succeeded."""
        error = self.error()
        if error is not None:
            raise error

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "final_outcome": self.final_outcome.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "total_duration_seconds": self.total_duration_seconds,
            "started_at": _iso(self.started_at),
            "complexity_score": self.complexity_score,
            "checkpoint_id": self.checkpoint_id,
            "attempts": [a.to_dict() for a in self.attempts],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OperationRecord":
        failure_kind = data.get("failure_kind")
        return cls(
            operation_name=data["operation_name"],
            attempts=tuple(ExecutionAttempt.from_dict(a) for a in data.get("attempts", [])),
            final_outcome=FinalOutcome(data["final_outcome"]),
            total_duration_seconds=float(data["total_duration_seconds"]),
            started_at=_parse(data["started_at"]),
            failure_kind=FailureKind(failure_kind) if failure_kind else None,
            complexity_score=int(data.get("complexity_score", 0)),
            checkpoint_id=data.get("checkpoint_id"),
        )


@dataclass(frozen=True)
class ChecksumManifest:
    """Relative path -> sha256 hex digest of the file content."""
    entries: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, str]:
        return dict(sorted(self.entries.items()))

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def digest(self) -> str:
        """Hash of the canonical manifest, stored in metadata to detect a tampered manifest."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class Checkpoint:
    """Sealed, immutable snapshot of project component state."""
    id: str
    created_at: datetime
    trigger: CheckpointTrigger
    component_states: Mapping[str, str]
    archive_ref: str
    manifest: ChecksumManifest
    source_revision: str | None = None
    description: str = ""
    total_bytes: int = 0

    def metadata(self) -> dict[str, Any]:
        """Metadata record persisted next to the archive payload."""
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "trigger": self.trigger.value,
            "component_states": dict(self.component_states),
            "archive_ref": self.archive_ref,
            "manifest_digest": self.manifest.digest(),
            "file_count": len(self.manifest),
            "total_bytes": self.total_bytes,
            "source_revision": self.source_revision,
            "description": self.description,
        }

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, Any], manifest: ChecksumManifest) -> "Checkpoint":
        return cls(
            id=metadata["id"],
            created_at=_parse(metadata["created_at"]),
            trigger=CheckpointTrigger(metadata["trigger"]),
            component_states=dict(metadata.get("component_states", {})),
            archive_ref=metadata["archive_ref"],
            manifest=manifest,
            source_revision=metadata.get("source_revision"),
            description=metadata.get("description", ""),
            total_bytes=int(metadata.get("total_bytes", 0)),
        )

    def summary(self) -> "CheckpointSummary":
        return CheckpointSummary(
            id=self.id,
            created_at=self.created_at,
            trigger=self.trigger,
            components=tuple(self.component_states),
            file_count=len(self.manifest),
            total_bytes=self.total_bytes,
            source_revision=self.source_revision,
            description=self.description,
        )


@dataclass(frozen=True)
class CheckpointSummary:
    """Lightweight listing entry for a checkpoint."""
    id: str
    created_at: datetime
    trigger: CheckpointTrigger
    components: tuple[str, ...]
    file_count: int
    total_bytes: int
    source_revision: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "trigger": self.trigger.value,
            "components": list(self.components),
            "file_count": self.file_count,
            "total_bytes": self.total_bytes,
            "source_revision": self.source_revision,
            "description": self.description,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Result of re-hashing a checkpoint payload against its manifest."""
    checkpoint_id: str
    valid: bool
    mismatches: tuple[str, ...] = ()


@dataclass(frozen=True)
class RestoreResult:
    """Which components a restore applied."""
    checkpoint_id: str
    restored_components: tuple[str, ...]
    files_restored: int
    duration_seconds: float


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Prune policy for the checkpoint store.

    Automatic checkpoints older than max_age, or beyond the newest
    max_auto_checkpoints, are deleted; the newest automatic checkpoint is
    always kept. Manual checkpoints are deleted only when listed in targets.
    """
    max_age: timedelta = timedelta(days=7)
    max_auto_checkpoints: int | None = 10
    targets: frozenset[str] = frozenset()


@dataclass(frozen=True)
class PruneResult:
    """Ids deleted and kept by a prune pass."""
    deleted: tuple[str, ...]
    kept: tuple[str, ...]
