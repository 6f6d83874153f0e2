"""Utility helpers for working with external processes."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
from pathlib import Path

import psutil

from .logger import get_logger

logger = get_logger("process")


def resolve_executable(command: str) -> str:
    """Resolve an executable command name to an absolute path.

    Raises FileNotFoundError if the command cannot be located or is not executable.
    """
    if not command:
        raise FileNotFoundError("Command is empty")

    # Absolute or relative path provided
    if os.path.sep in command or command.startswith("."):
        candidate = Path(command).expanduser().resolve()
        if not candidate.exists():
            raise FileNotFoundError(f"Command not found: {candidate}")
        if not os.access(candidate, os.X_OK):
            raise FileNotFoundError(f"Command is not executable: {candidate}")
        return str(candidate)

    which = shutil.which(command)
    if not which:
        raise FileNotFoundError(f"Command '{command}' not found on PATH")
    return which


def _descendants(pid: int) -> list[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _signal_group(pgid: int, sig: int) -> bool:
    """Signal every member of a process group. False once the group is empty."""
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError as e:
        logger.debug(f"Cannot signal process group {pgid}: {e}")
        return False


async def _wait_group_exit(pgid: int, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while _signal_group(pgid, 0):
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(0.05)
    return True


async def terminate_process_tree(process: asyncio.subprocess.Process, grace_seconds: float = 5.0) -> None:
    """Terminate a process, its process group, and any descendants that left the group.

    SIGTERM first; anything still alive after the grace period is SIGKILLed.
    The process must have been started with start_new_session=True, which
    makes its pid the group id. The group is signalled even when the leader
    has already exited, since its children may still be running.
    """
    pgid = process.pid

    # Snapshot descendants before the parent dies and they get reparented.
    children = _descendants(process.pid)

    if sys.platform == "win32":
        if process.returncode is None:
            process.terminate()
    else:
        _signal_group(pgid, signal.SIGTERM)
    for child in children:
        try:
            child.terminate()
        except psutil.Error:
            pass

    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Process {process.pid} ignored SIGTERM for {grace_seconds}s, killing")
        if sys.platform == "win32":
            process.kill()
        else:
            _signal_group(pgid, signal.SIGKILL)
        await process.wait()

    if sys.platform != "win32" and not await _wait_group_exit(pgid, grace_seconds):
        logger.warning(f"Process group {pgid} outlived its leader, killing")
        _signal_group(pgid, signal.SIGKILL)

    _, alive = await asyncio.to_thread(psutil.wait_procs, children, timeout=grace_seconds)
    for child in alive:
        try:
            child.kill()
        except psutil.Error:
            pass
    if alive:
        logger.warning(f"Killed {len(alive)} orphaned descendant(s) of process {process.pid}")
