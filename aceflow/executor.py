"""
Retry Executor - runs one operation under adaptive timeouts with progressive retry.

State machine per invocation:
    Running(N) -> Succeeded
    Running(N) -> TimedOut / Failed(transient) -> Running(N+1) while N < max_retries
    Running(N) -> Failed(fatal) / Crashed -> Exhausted immediately
    Running(N) -> Cancelled (no retry)

Attempts are strictly sequential. Between attempts the executor sleeps
attempt * backoff_unit seconds. The finished OperationRecord is appended to
the performance ledger exactly once.
"""

import asyncio
import time
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .config import TimeoutPolicy
from .errors import (
    FatalExecutionFailure,
    OperationCancelled,
    TimeoutExceeded,
    TransientExecutionFailure,
)
from .ledger import InMemoryLedger, PerformanceLedger
from .models import (
    AttemptOutcome,
    ComplexityProfile,
    ExecutionAttempt,
    ExitStatus,
    FailureClass,
    FailureKind,
    FinalOutcome,
    OperationRecord,
)
from .operations import Operation
from .timeouts import backoff_delay, compute_timeout
from .utils.logger import get_logger

logger = get_logger("executor")

SleepFunc = Callable[[float], Awaitable[Any]]


class CancelToken:
    """External cancellation request, honoured mid-attempt and during backoff."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = ""

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RetryExecutor:
    """
    Executes operations with computed timeouts and progressive retry.

    Features:
    - Complexity-aware per-attempt timeouts, clamped to the policy maximum
    - Whole process-tree termination on timeout or cancellation
    - Transient/fatal failure classification (fatal short-circuits)
    - Linear backoff between attempts
    - Event emission for observability
    """

    def __init__(
        self,
        policy: TimeoutPolicy,
        ledger: PerformanceLedger | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.policy = policy
        self.ledger = ledger if ledger is not None else InMemoryLedger()
        self._sleep = sleep
        self._listeners: list[Callable[[dict], None]] = []

    def subscribe(self, listener: Callable[[dict], None]) -> Callable[[], None]:
        """Subscribe to executor events. Returns unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _emit(self, event: str, data: dict) -> None:
        for listener in self._listeners:
            try:
                listener({"event": event, **data})
            except Exception as e:
                logger.warning(f"Listener error: {e}")

    async def execute(
        self,
        operation: Operation,
        profile: ComplexityProfile,
        cancel_token: CancelToken | None = None,
        checkpoint_id: str | None = None,
    ) -> OperationRecord:
        """Run the operation to a terminal state and return its full record."""
        log = logger.bind(operation=operation.name)
        started_at = _now()
        start = time.monotonic()
        attempts: list[ExecutionAttempt] = []
        final_outcome = FinalOutcome.FAILED
        failure_kind: FailureKind | None = FailureKind.RETRY_EXHAUSTED

        for attempt_index in range(1, self.policy.max_retries + 1):
            if cancel_token is not None and cancel_token.cancelled:
                final_outcome, failure_kind = FinalOutcome.CANCELLED, FailureKind.CANCELLED
                break

            attempt = await self._run_attempt(operation, profile, attempt_index, cancel_token)
            attempts.append(attempt)

            if attempt.outcome == AttemptOutcome.SUCCESS:
                final_outcome, failure_kind = FinalOutcome.SUCCEEDED, None
                break
            if attempt.outcome == AttemptOutcome.CANCELLED:
                final_outcome, failure_kind = FinalOutcome.CANCELLED, FailureKind.CANCELLED
                break
            if attempt.outcome == AttemptOutcome.CRASHED:
                failure_kind = FailureKind.CRASHED
                break
            if not attempt.retryable:
                log.error(f"Non-retryable failure on attempt {attempt_index}: {attempt.error}")
                failure_kind = FailureKind.FATAL_EXECUTION_FAILURE
                break
            if attempt_index >= self.policy.max_retries:
                log.warning(f"Max attempts ({self.policy.max_retries}) exhausted")
                failure_kind = FailureKind.RETRY_EXHAUSTED
                break

            delay = backoff_delay(attempt_index, self.policy)
            log.info(
                f"Retrying in {delay:.1f}s (attempt {attempt_index + 1}/{self.policy.max_retries})",
                extra={"delay_s": delay},
            )
            self._emit("retry:scheduled", {
                "operation": operation.name,
                "attempt": attempt_index + 1,
                "delay_seconds": delay,
            })
            if not await self._backoff(delay, cancel_token):
                log.warning("Cancelled during backoff")
                final_outcome, failure_kind = FinalOutcome.CANCELLED, FailureKind.CANCELLED
                break

        record = OperationRecord(
            operation_name=operation.name,
            attempts=tuple(attempts),
            final_outcome=final_outcome,
            total_duration_seconds=time.monotonic() - start,
            started_at=started_at,
            failure_kind=failure_kind,
            complexity_score=profile.score,
            checkpoint_id=checkpoint_id,
        )
        self.ledger.append(record)

        if record.succeeded:
            log.info(f"Succeeded after {len(attempts)} attempt(s) ({record.total_duration_seconds:.1f}s)")
        else:
            log.error(
                f"Finished {final_outcome.value} after {len(attempts)} attempt(s)",
                extra={"failure_kind": failure_kind.value if failure_kind else None},
            )
        self._emit("operation:complete", {"operation": operation.name, "record": record})
        return record

    def execute_sync(self, operation: Operation, profile: ComplexityProfile, **kwargs: Any) -> OperationRecord:
        """Blocking wrapper around execute() for non-async callers."""
        return asyncio.run(self.execute(operation, profile, **kwargs))

    async def _backoff(self, delay: float, cancel_token: CancelToken | None) -> bool:
        """Sleep between attempts. Returns False if cancelled meanwhile."""
        if cancel_token is None:
            await self._sleep(delay)
            return True

        sleep_task = asyncio.ensure_future(self._sleep(delay))
        cancel_task = asyncio.ensure_future(cancel_token.wait())
        try:
            await asyncio.wait({sleep_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleep_task, cancel_task):
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        return not cancel_token.cancelled

    async def _run_attempt(
        self,
        operation: Operation,
        profile: ComplexityProfile,
        attempt_index: int,
        cancel_token: CancelToken | None,
    ) -> ExecutionAttempt:
        timeout = compute_timeout(profile, attempt_index, self.policy)
        log = logger.bind(operation=operation.name, attempt=attempt_index)
        started_at = _now()

        self._emit("attempt:start", {
            "operation": operation.name,
            "attempt": attempt_index,
            "timeout_seconds": timeout,
        })
        log.info(f"Starting attempt {attempt_index}/{self.policy.max_retries} (timeout {timeout:.0f}s)")

        try:
            handle = await operation.start()
        except Exception as e:
            log.error(f"Failed to start: {e}")
            return self._finish(operation, ExecutionAttempt(
                attempt_index=attempt_index,
                timeout_seconds=timeout,
                started_at=started_at,
                ended_at=_now(),
                outcome=AttemptOutcome.CRASHED,
                error=f"{type(e).__name__}: {e}",
            ))

        wait_task = asyncio.ensure_future(handle.wait())
        waiters = {wait_task}
        cancel_task = None
        if cancel_token is not None:
            cancel_task = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
                with suppress(asyncio.CancelledError):
                    await cancel_task

        if wait_task not in done:
            cancelled = cancel_task is not None and cancel_token.cancelled
            await handle.terminate(self.policy.terminate_grace_seconds)
            wait_task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await wait_task

            if cancelled:
                error = OperationCancelled(operation.name, attempt_index)
                outcome = AttemptOutcome.CANCELLED
            else:
                error = TimeoutExceeded(operation.name, attempt_index, timeout)
                outcome = AttemptOutcome.TIMED_OUT
            log.warning(error.message)
            return self._finish(operation, ExecutionAttempt(
                attempt_index=attempt_index,
                timeout_seconds=timeout,
                started_at=started_at,
                ended_at=_now(),
                outcome=outcome,
                error=error.message,
            ))

        if wait_task.cancelled():
            # The operation cancelled itself; there is no exit status to classify.
            if cancel_token is not None and cancel_token.cancelled:
                outcome, message = AttemptOutcome.CANCELLED, OperationCancelled(operation.name, attempt_index).message
            else:
                outcome, message = AttemptOutcome.CRASHED, "CancelledError: operation was cancelled"
            log.error(f"Attempt ended by cancellation: {message}")
            return self._finish(operation, ExecutionAttempt(
                attempt_index=attempt_index,
                timeout_seconds=timeout,
                started_at=started_at,
                ended_at=_now(),
                outcome=outcome,
                error=message,
            ))

        try:
            status: ExitStatus = wait_task.result()
        except Exception as e:
            log.error(f"Crashed: {e}")
            return self._finish(operation, ExecutionAttempt(
                attempt_index=attempt_index,
                timeout_seconds=timeout,
                started_at=started_at,
                ended_at=_now(),
                outcome=AttemptOutcome.CRASHED,
                error=f"{type(e).__name__}: {e}",
            ))

        if status.ok:
            return self._finish(operation, ExecutionAttempt(
                attempt_index=attempt_index,
                timeout_seconds=timeout,
                started_at=started_at,
                ended_at=_now(),
                outcome=AttemptOutcome.SUCCESS,
                exit_code=0,
            ))

        failure_class = status.failure_class
        reason = status.reason
        if failure_class is None:
            failure_class = FailureClass.TRANSIENT if self.policy.retry_unclassified_failures else FailureClass.FATAL
            reason = "unclassified exit"

        if failure_class == FailureClass.TRANSIENT:
            error = TransientExecutionFailure(operation.name, attempt_index, status.exit_code, reason)
        else:
            error = FatalExecutionFailure(operation.name, attempt_index, status.exit_code, reason)
        log.warning(error.message)

        return self._finish(operation, ExecutionAttempt(
            attempt_index=attempt_index,
            timeout_seconds=timeout,
            started_at=started_at,
            ended_at=_now(),
            outcome=AttemptOutcome.FAILED,
            exit_code=status.exit_code,
            failure_class=failure_class,
            error=error.message,
        ))

    def _finish(self, operation: Operation, attempt: ExecutionAttempt) -> ExecutionAttempt:
        self._emit("attempt:end", {
            "operation": operation.name,
            "attempt": attempt.attempt_index,
            "outcome": attempt.outcome.value,
            "duration_seconds": attempt.duration_seconds,
        })
        return attempt
