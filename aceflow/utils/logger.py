"""
Structured logging setup for aceflow.

Logs go to stderr so the CLI's machine-parsable summary line on stdout
stays clean.
"""

import logging
import sys
from datetime import datetime
from typing import Any

# LogRecord attributes that are not user-supplied context
_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Formatter that renders `[time][name][LEVEL] message key=value ...`."""

    COLORS = {
        logging.DEBUG: "\033[90m",    # Gray
        logging.INFO: "\033[36m",     # Cyan
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",    # Red
        logging.CRITICAL: "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True, stream=None):
        super().__init__()
        stream = stream or sys.stderr
        self.use_colors = use_colors and hasattr(stream, "isatty") and stream.isatty()

    @staticmethod
    def _context(record: logging.LogRecord) -> dict[str, Any]:
        return {k: v for k, v in vars(record).items() if k not in _RESERVED and not k.startswith("_")}

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds")
        level = record.levelname.ljust(5)
        message = record.getMessage()

        context = self._context(record)
        if context:
            message += " " + " ".join(f"{k}={v}" for k, v in sorted(context.items()))
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        if self.use_colors:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}[{timestamp}][{record.name}][{level}]{self.RESET} {message}"
        return f"[{timestamp}][{record.name}][{level}] {message}"


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that merges bound context into every record's extra."""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context) -> "ContextLogger":
        """Return a child adapter with additional bound context."""
        merged = dict(self.extra or {})
        merged.update(context)
        return ContextLogger(self.logger, merged)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    if quiet:
        level = logging.WARNING

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter(use_colors=True, stream=sys.stderr))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    # Reduce noise from external libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str, **context) -> ContextLogger:
    """Get a context-aware logger under the aceflow namespace."""
    logger = logging.getLogger(f"aceflow.{name}")
    return ContextLogger(logger, context)
