"""
Filesystem helpers for the checkpoint store.

Atomic writes go through a temp file in the destination directory followed
by os.replace, so readers never see a partially written file.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Iterator

_CHUNK_SIZE = 1024 * 1024


def sha256_file(path: Path) -> str:
    """Hex sha256 of a file's content."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def atomic_write(path: Path, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write data to path (temp file + fsync + os.replace)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    temp_path = Path(temp_name)
    try:
        payload = data.encode(encoding) if isinstance(data, str) else data
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, target)
        fsync_directory(target.parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink()
        raise


def fsync_directory(path: Path) -> None:
    """Best-effort directory fsync so renames survive a crash."""
    if os.name == "nt":
        return
    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY
    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def to_relative_key(path: Path, root: Path) -> str:
    """Manifest key for a file: POSIX-style path relative to root."""
    return path.relative_to(root).as_posix()


def is_excluded(relative: str, excludes: Iterable[str]) -> bool:
    """True if a project-relative POSIX path is, or lives under, an excluded path or name."""
    parts = PurePosixPath(relative).parts
    for pattern in excludes:
        pattern = pattern.strip("/")
        if not pattern:
            continue
        if "/" in pattern:
            if relative == pattern or relative.startswith(pattern + "/"):
                return True
        elif pattern in parts:
            return True
    return False


def iter_files(root: Path, start: Path, excludes: Iterable[str]) -> Iterator[Path]:
    """Yield regular files under start (or start itself), skipping excluded paths, in sorted order."""
    excludes = list(excludes)
    if start.is_file():
        if not is_excluded(to_relative_key(start, root), excludes):
            yield start
        return
    for dirpath, dirnames, filenames in os.walk(start, onerror=_raise):
        current = Path(dirpath)
        dirnames[:] = sorted(
            d for d in dirnames if not is_excluded(to_relative_key(current / d, root), excludes)
        )
        for name in sorted(filenames):
            candidate = current / name
            if candidate.is_symlink() or not candidate.is_file():
                continue
            if not is_excluded(to_relative_key(candidate, root), excludes):
                yield candidate


def _raise(error: OSError) -> None:
    raise error
