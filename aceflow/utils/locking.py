"""
Checkpoint store locking.

Two flock(2) lock files guard the store:
- `.write.lock` serialises mutators (create, restore, prune, delete).
- `.read.lock` is held shared by readers (list, validate, export) and
  exclusively by restore/prune/delete, so readers never observe a restore
  in progress.

Acquisition is non-blocking: contention raises ConcurrentOperationInProgress
immediately instead of queueing. flock locks belong to the open file
description, so they exclude other threads of this process as well as
other processes.
"""

from __future__ import annotations

import fcntl
import os
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import ConcurrentOperationInProgress
from .logger import get_logger

logger = get_logger("locking")

WRITE_LOCK_NAME = ".write.lock"
READ_LOCK_NAME = ".read.lock"


@contextmanager
def _flock(path: Path, exclusive: bool, operation: str) -> Iterator[None]:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        mode = fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH
        try:
            fcntl.flock(fd, mode | fcntl.LOCK_NB)
        except BlockingIOError as e:
            logger.warning(f"Lock contention on {path.name} during {operation}")
            raise ConcurrentOperationInProgress(operation, str(path)) from e
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


class StoreLock:
    """Reader/writer locks scoped to one checkpoint store directory."""

    def __init__(self, store_dir: Path):
        self.store_dir = Path(store_dir)
        self.write_path = self.store_dir / WRITE_LOCK_NAME
        self.read_path = self.store_dir / READ_LOCK_NAME

    @contextmanager
    def shared(self, operation: str) -> Iterator[None]:
        """Reader access: concurrent with other readers and with create, never with restore."""
        with _flock(self.read_path, exclusive=False, operation=operation):
            yield

    @contextmanager
    def writer(self, operation: str) -> Iterator[None]:
        """Mutator access that leaves the published store readable (create)."""
        with _flock(self.write_path, exclusive=True, operation=operation):
            yield

    @contextmanager
    def exclusive(self, operation: str) -> Iterator[None]:
        """Full access: no other mutator and no reader (restore, prune, delete)."""
        with ExitStack() as stack:
            stack.enter_context(_flock(self.write_path, exclusive=True, operation=operation))
            stack.enter_context(_flock(self.read_path, exclusive=True, operation=operation))
            yield
