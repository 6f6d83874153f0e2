"""
Performance Ledger - append-only history of operation outcomes.

Computes rolling success-rate metrics so humans and automation can tell
whether execution is healthy. Two implementations share the read logic:
an in-memory ledger and a JSON-lines file ledger.
"""

import json
import math
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

from .models import FinalOutcome, OperationRecord
from .utils.logger import get_logger

logger = get_logger("ledger")

# Health thresholds: the hook success-rate goal was 85% -> 95%.
DEFAULT_TARGET_RATE = 0.95
DEFAULT_WARNING_RATE = 0.85


class LedgerHealth(str, Enum):
    """Health verdict derived from the success rate."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class OperationStats:
    """Per-operation counts."""
    operation_name: str
    total: int
    succeeded: int
    failed: int
    cancelled: int
    average_attempts: float
    average_duration_seconds: float

    @property
    def success_rate(self) -> float:
        decided = self.succeeded + self.failed
        return self.succeeded / decided if decided else math.nan

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_name": self.operation_name,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "success_rate": None if math.isnan(self.success_rate) else round(self.success_rate, 4),
            "average_attempts": round(self.average_attempts, 2),
            "average_duration_seconds": round(self.average_duration_seconds, 3),
        }


class PerformanceLedger(ABC):
    """
    Append-only record of operation outcomes.

    append() is the only mutator. success_rate() returns NaN for an empty
    selection; callers must check with math.isnan().
    """

    def __init__(self):
        self._listeners: list[Callable[[OperationRecord], None]] = []

    @abstractmethod
    def _store(self, record: OperationRecord) -> None:
        ...

    @abstractmethod
    def records(self) -> list[OperationRecord]:
        """All records, oldest first."""

    def append(self, record: OperationRecord) -> None:
        """Append a finished operation record."""
        self._store(record)
        logger.debug(
            f"Recorded {record.operation_name}: {record.final_outcome.value}",
            extra={"attempts": len(record.attempts)},
        )
        for listener in self._listeners:
            try:
                listener(record)
            except Exception as e:
                logger.warning(f"Listener error: {e}")

    def subscribe(self, listener: Callable[[OperationRecord], None]) -> Callable[[], None]:
        """Subscribe to appended records. Returns unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _select(
        self,
        operation: str | None = None,
        since: datetime | None = None,
        last: int | None = None,
    ) -> list[OperationRecord]:
        selected = self.records()
        if operation is not None:
            selected = [r for r in selected if r.operation_name == operation]
        if since is not None:
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
            selected = [r for r in selected if r.started_at >= since]
        if last is not None:
            selected = selected[-last:] if last > 0 else []
        return selected

    def success_rate(
        self,
        operation: str | None = None,
        since: datetime | None = None,
        last: int | None = None,
    ) -> float:
        """successes / (successes + failures) over the selected window; NaN if empty.

        Cancelled operations count as neither success nor failure.
        """
        selected = self._select(operation, since, last)
        succeeded = sum(1 for r in selected if r.final_outcome == FinalOutcome.SUCCEEDED)
        failed = sum(1 for r in selected if r.final_outcome == FinalOutcome.FAILED)
        if succeeded + failed == 0:
            return math.nan
        return succeeded / (succeeded + failed)

    def recent(self, n: int) -> list[OperationRecord]:
        """The n most recent records, oldest first."""
        if n <= 0:
            return []
        return self.records()[-n:]

    def health(
        self,
        target: float = DEFAULT_TARGET_RATE,
        warning: float = DEFAULT_WARNING_RATE,
        **window: Any,
    ) -> LedgerHealth:
        """Classify the success rate against the target and warning thresholds."""
        rate = self.success_rate(**window)
        if math.isnan(rate):
            return LedgerHealth.UNKNOWN
        if rate >= target:
            return LedgerHealth.HEALTHY
        if rate >= warning:
            return LedgerHealth.DEGRADED
        return LedgerHealth.CRITICAL

    def summary(self) -> list[OperationStats]:
        """Per-operation statistics, ordered by operation name."""
        grouped: dict[str, list[OperationRecord]] = {}
        for record in self.records():
            grouped.setdefault(record.operation_name, []).append(record)

        stats = []
        for name in sorted(grouped):
            records = grouped[name]
            stats.append(OperationStats(
                operation_name=name,
                total=len(records),
                succeeded=sum(1 for r in records if r.final_outcome == FinalOutcome.SUCCEEDED),
                failed=sum(1 for r in records if r.final_outcome == FinalOutcome.FAILED),
                cancelled=sum(1 for r in records if r.final_outcome == FinalOutcome.CANCELLED),
                average_attempts=sum(len(r.attempts) for r in records) / len(records),
                average_duration_seconds=sum(r.total_duration_seconds for r in records) / len(records),
            ))
        return stats

    def __len__(self) -> int:
        return len(self.records())


class InMemoryLedger(PerformanceLedger):
    """Ledger held in process memory."""

    def __init__(self, records: Sequence[OperationRecord] = ()):
        super().__init__()
        self._records: list[OperationRecord] = list(records)
        self._lock = threading.Lock()

    def _store(self, record: OperationRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self) -> list[OperationRecord]:
        with self._lock:
            return list(self._records)


class JsonlLedger(PerformanceLedger):
    """
    Ledger persisted as one JSON object per line.

    Appends are single O_APPEND writes of a complete line. Malformed lines
    (e.g. a torn write after a crash) are skipped with a warning on read.
    """

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path)
        self._lock = threading.Lock()

    def _store(self, record: OperationRecord) -> None:
        line = json.dumps(record.to_dict(), sort_keys=True) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a+b") as f:
                # Never glue a record onto a torn last line.
                if f.seek(0, os.SEEK_END) > 0:
                    f.seek(-1, os.SEEK_END)
                    if f.read(1) != b"\n":
                        line = "\n" + line
                f.write(line.encode("utf-8"))

    def records(self) -> list[OperationRecord]:
        if not self.path.exists():
            return []
        records = []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(OperationRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed ledger line {number} in {self.path.name}: {e}")
        return records
