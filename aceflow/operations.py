"""
Operations - externally invocable units of work the retry executor can run.

An operation is started, awaited and, when its timeout expires or the run
is cancelled, terminated. Each finished run reports an ExitStatus carrying
an optional failure classification hint (transient vs fatal) supplied by
the operation itself.
"""

import asyncio
import os
import re
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Protocol, Sequence

from .errors import FatalExecutionFailure, TransientExecutionFailure
from .models import ExitStatus, FailureClass
from .utils.logger import get_logger
from .utils.process_utils import resolve_executable, terminate_process_tree

logger = get_logger("operations")

# Lines like "aceflow-failure: transient" let an operation classify its own failure.
HINT_MARKER = re.compile(r"^\s*aceflow-failure:\s*(transient|fatal)\b", re.IGNORECASE | re.MULTILINE)

DEFAULT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "ETIMEDOUT",
    "ECONNRESET",
    "ECONNREFUSED",
    "EPIPE",
    "ENOTFOUND",
    "EAI_AGAIN",
    "rate limit",
    "rate exceeded",
    "too many requests",
    "throttl",
    "resource temporarily unavailable",
    "service unavailable",
    "connection reset",
)

DEFAULT_FATAL_PATTERNS: tuple[str, ...] = (
    "ValidationException",
    "validation error",
    "invalid configuration",
    "configuration error",
    "syntax error",
)

MAX_CAPTURED_OUTPUT = 64 * 1024
# How long output may keep flowing after the command itself has exited.
OUTPUT_DRAIN_SECONDS = 1.0


class RunningOperation(Protocol):
    """Handle to an operation that has been started."""

    async def wait(self) -> ExitStatus:
        ...

    async def terminate(self, grace_seconds: float) -> None:
        ...


class Operation(Protocol):
    """Anything with a name that can be started and later terminated."""

    name: str

    async def start(self) -> RunningOperation:
        ...


@dataclass(frozen=True)
class ClassificationHints:
    """
    Operation-supplied rules for classifying a non-zero exit.

    Checked in order: an explicit `aceflow-failure:` marker in the output,
    fatal exit codes, transient exit codes, fatal output patterns, transient
    output patterns. No match leaves the failure unclassified.
    """
    transient_exit_codes: frozenset[int] = frozenset()
    fatal_exit_codes: frozenset[int] = frozenset()
    transient_patterns: tuple[str, ...] = DEFAULT_TRANSIENT_PATTERNS
    fatal_patterns: tuple[str, ...] = DEFAULT_FATAL_PATTERNS

    def classify(self, exit_code: int, output: str) -> tuple[FailureClass | None, str]:
        markers = HINT_MARKER.findall(output)
        if markers:
            return FailureClass(markers[-1].lower()), "operation reported failure class"
        if exit_code in self.fatal_exit_codes:
            return FailureClass.FATAL, f"exit code {exit_code} is fatal"
        if exit_code in self.transient_exit_codes:
            return FailureClass.TRANSIENT, f"exit code {exit_code} is transient"

        lowered = output.lower()
        for pattern in self.fatal_patterns:
            if pattern.lower() in lowered:
                return FailureClass.FATAL, f"output matched '{pattern}'"
        for pattern in self.transient_patterns:
            if pattern.lower() in lowered:
                return FailureClass.TRANSIENT, f"output matched '{pattern}'"
        return None, ""


class _RunningCommand:
    """A spawned command: streams output while it runs, kills the whole tree on terminate."""

    def __init__(self, process: asyncio.subprocess.Process, hints: ClassificationHints, log_path: Path | None):
        self._process = process
        self._hints = hints
        self._log_path = log_path
        self._output: deque[bytes] = deque()
        self._output_bytes = 0
        self._readers = [
            asyncio.create_task(self._pump(process.stdout)),
            asyncio.create_task(self._pump(process.stderr)),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    async def _pump(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            self._output.append(chunk)
            self._output_bytes += len(chunk)
            # Keep only the tail; diagnosis needs the last lines.
            while self._output_bytes > MAX_CAPTURED_OUTPUT and len(self._output) > 1:
                self._output_bytes -= len(self._output.popleft())
            if self._log_path:
                try:
                    with open(self._log_path, "ab") as f:
                        f.write(chunk)
                except OSError as e:
                    logger.warning(f"Failed to write to log: {e}")

    def output(self) -> str:
        return b"".join(self._output).decode(errors="replace")

    async def wait(self) -> ExitStatus:
        exit_code = await self._process.wait()
        _, pending = await asyncio.wait(self._readers, timeout=OUTPUT_DRAIN_SECONDS)
        if pending:
            # Background children inherited the pipes.
            logger.warning(f"Process {self.pid} exited but left descendants holding its output, terminating them")
            await terminate_process_tree(self._process, OUTPUT_DRAIN_SECONDS)
            _, pending = await asyncio.wait(pending, timeout=OUTPUT_DRAIN_SECONDS)
            for reader in pending:
                reader.cancel()
                with suppress(asyncio.CancelledError):
                    await reader
        output = self.output()
        if exit_code == 0:
            return ExitStatus(exit_code=0, output=output)
        failure_class, reason = self._hints.classify(exit_code, output)
        return ExitStatus(exit_code=exit_code, failure_class=failure_class, output=output, reason=reason)

    async def terminate(self, grace_seconds: float) -> None:
        await terminate_process_tree(self._process, grace_seconds)
        for reader in self._readers:
            reader.cancel()
        for reader in self._readers:
            with suppress(asyncio.CancelledError):
                await reader


@dataclass
class CommandOperation:
    """
    Run an external command in its own process session.

    The session makes the command the leader of a fresh process group, so
    a timeout can terminate everything it spawned.
    """
    argv: Sequence[str]
    name: str = ""
    cwd: Path | None = None
    env: dict[str, str] | None = None
    hints: ClassificationHints = field(default_factory=ClassificationHints)
    log_dir: Path | None = None

    def __post_init__(self):
        if not self.argv:
            raise ValueError("CommandOperation requires a non-empty argv")
        if not self.name:
            self.name = " ".join(self.argv)

    def _log_path(self) -> Path | None:
        if self.log_dir is None:
            return None
        self.log_dir.mkdir(parents=True, exist_ok=True)
        slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", self.name)[:60].strip("-") or "operation"
        return self.log_dir / f"{slug}-{int(datetime.now().timestamp() * 1000)}.log"

    async def start(self) -> RunningOperation:
        command = resolve_executable(self.argv[0])
        env = os.environ.copy()
        if self.env:
            env.update(self.env)

        log_path = self._log_path()
        if log_path:
            with open(log_path, "w") as f:
                f.write(f"=== Operation: {self.name} ===\n")
                f.write(f"Started: {datetime.now().isoformat()}\n")
                f.write("=" * 50 + "\n\n")

        process = await asyncio.create_subprocess_exec(
            command,
            *self.argv[1:],
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd else None,
            env=env,
            start_new_session=True,
        )
        logger.debug(f"Started {self.name}", extra={"pid": process.pid})
        return _RunningCommand(process, self.hints, log_path)


OperationFunc = Callable[[], Awaitable["int | ExitStatus | None"]]


class _RunningTask:
    def __init__(self, task: asyncio.Task):
        self._task = task

    async def wait(self) -> ExitStatus:
        try:
            result = await self._task
        except TransientExecutionFailure as e:
            return ExitStatus(
                exit_code=e.details.get("exit_code") or 1,
                failure_class=FailureClass.TRANSIENT,
                reason=e.message,
            )
        except FatalExecutionFailure as e:
            return ExitStatus(
                exit_code=e.details.get("exit_code") or 1,
                failure_class=FailureClass.FATAL,
                reason=e.message,
            )
        if result is None:
            return ExitStatus(exit_code=0)
        if isinstance(result, ExitStatus):
            return result
        return ExitStatus(exit_code=int(result))

    async def terminate(self, grace_seconds: float) -> None:
        self._task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=grace_seconds)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        except Exception as e:
            logger.debug(f"Operation raised while being terminated: {e}")


@dataclass
class CallableOperation:
    """
    Wrap an async callable as an operation.

    The callable returns an exit code, an ExitStatus or None (success), or
    raises TransientExecutionFailure / FatalExecutionFailure to classify its
    failure. Any other exception counts as a crash.
    """
    func: OperationFunc
    name: str = "callable"

    async def start(self) -> RunningOperation:
        return _RunningTask(asyncio.ensure_future(self.func()))
