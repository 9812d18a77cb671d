"""Branchyard structured logging with JSON output and environment context."""

from __future__ import annotations

import json
import logging
import sys
import threading
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

# Per-thread context; reconciler workers each carry their own environment id
_local = threading.local()

EXTRA_FIELDS = (
    "environment_id",
    "owner_id",
    "branch_id",
    "action",
    "outcome",
    "attempt",
    "duration_ms",
    "target_id",
)


def _context() -> dict[str, Any]:
    ctx = getattr(_local, "context", None)
    if ctx is None:
        ctx = {}
        _local.context = ctx
    return ctx


class JsonFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            "ts": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_data.update(_context())

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored console formatter for human-readable output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors.

        Args:
            record: Log record to format

        Returns:
            Colored log string
        """
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now().strftime("%H:%M:%S")

        environment_id = getattr(record, "environment_id", None) or _context().get("environment_id")
        context = f"[{environment_id}]" if environment_id else ""

        return f"{color}{timestamp} {record.levelname:8s}{self.RESET} {context} {record.getMessage()}"


def set_log_context(environment_id: str | None = None, **kwargs: Any) -> None:
    """Set context for subsequent log messages emitted from this thread.

    Args:
        environment_id: Environment ID to include in logs
        **kwargs: Additional context fields
    """
    ctx = _context()
    ctx.clear()
    if environment_id is not None:
        ctx["environment_id"] = environment_id
    ctx.update(kwargs)


def clear_log_context() -> None:
    """Clear this thread's log context."""
    _context().clear()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the branchyard root logger.

    Args:
        name: Logger name (typically module name)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(f"branchyard.{name}")


def setup_logging(
    level: str = "info",
    log_dir: str | Path | None = None,
    json_output: bool = True,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
) -> None:
    """Set up logging configuration.

    Args:
        level: Log level (debug, info, warn, error)
        log_dir: Directory for log files
        json_output: Whether to output JSON logs to file
        console_output: Whether to output to console
        max_bytes: Maximum size of log file before rotation
        backup_count: Number of backup files to keep
    """
    level_name = "WARNING" if level.lower() == "warn" else level.upper()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("branchyard")
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ConsoleFormatter())
        root_logger.addHandler(console_handler)

    if log_dir and json_output:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path / "branchyard.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(JsonFormatter())
        root_logger.addHandler(file_handler)

    root_logger.propagate = False


class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Logger adapter that adds environment context to log messages."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Process log message with extra context.

        Args:
            msg: Log message
            kwargs: Keyword arguments

        Returns:
            Processed message and kwargs
        """
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


def get_environment_logger(environment_id: str) -> LoggerAdapter:
    """Get a logger adapter bound to one environment.

    Args:
        environment_id: Canonical environment id

    Returns:
        LoggerAdapter with environment context
    """
    return LoggerAdapter(get_logger("environment"), {"environment_id": environment_id})


# Initialize default logging on import
setup_logging(console_output=True, json_output=False)
