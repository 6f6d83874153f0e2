"""Utility modules for aceflow."""

from .fs import atomic_write, sha256_file
from .locking import StoreLock
from .logger import get_logger, setup_logging
from .process_utils import resolve_executable, terminate_process_tree

__all__ = [
    "atomic_write",
    "sha256_file",
    "StoreLock",
    "get_logger",
    "setup_logging",
    "resolve_executable",
    "terminate_process_tree",
]
