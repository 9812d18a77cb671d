"""Structured JSONL log writer for reconcile records.

Every reconciliation attempt is appended to reconcile.jsonl as one line.
Thread-safe via threading.Lock on write operations.
"""

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from branchyard.constants import LogEvent


class StructuredLogWriter:
    """Writes structured JSONL log entries to a single file.

    Thread-safe. Reconciler workers share one writer.
    """

    def __init__(
        self,
        log_dir: str | Path,
        name: str = "reconcile",
        max_size_mb: int = 50,
    ) -> None:
        """Initialize writer.

        Args:
            log_dir: Base log directory (.branchyard/logs)
            name: File stem for the JSONL file
            max_size_mb: Max file size in MB before rotation
        """
        self.log_dir = Path(log_dir)
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self._lock = threading.Lock()

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._file_path = self.log_dir / f"{name}.jsonl"
        self._file = open(self._file_path, "a")  # noqa: SIM115

    @property
    def path(self) -> Path:
        """Path of the JSONL file being written."""
        return self._file_path

    def emit(
        self,
        level: str,
        message: str,
        event: LogEvent | str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Write a structured log entry.

        Args:
            level: Log level (debug, info, warn, error)
            message: Human-readable message
            event: Optional event type
            data: Optional extra data dict
        """
        entry: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": level,
            "message": message,
        }

        if event is not None:
            entry["event"] = event.value if isinstance(event, LogEvent) else event
        if data is not None:
            entry["data"] = data

        line = json.dumps(entry, default=str) + "\n"

        with self._lock:
            self._rotate_if_needed()
            self._file.write(line)
            self._file.flush()

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        try:
            pos = self._file.tell()
            if pos > self.max_size_bytes:
                self._file.close()
                rotated = self._file_path.with_suffix(".jsonl.1")
                self._file_path.rename(rotated)
                self._file = open(self._file_path, "a")  # noqa: SIM115
        except OSError:
            pass  # Best-effort rotation

    def close(self) -> None:
        """Flush and close the log file."""
        with self._lock:
            self._file.flush()
            self._file.close()


def read_records(path: str | Path, event: LogEvent | str | None = None) -> list[dict[str, Any]]:
    """Read JSONL entries back, optionally filtered by event type.

    Args:
        path: JSONL file path
        event: Only return entries with this event

    Returns:
        List of decoded entries in file order
    """
    wanted = event.value if isinstance(event, LogEvent) else event
    entries: list[dict[str, Any]] = []
    file_path = Path(path)
    if not file_path.exists():
        return entries
    with open(file_path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if wanted is None or entry.get("event") == wanted:
                entries.append(entry)
    return entries
