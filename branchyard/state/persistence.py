"""Persistence layer for branchyard state: file I/O, locking, and serialization.

Handles all cross-process file locking (fcntl), atomic writes via temp files,
backup creation, and JSON serialization. Repositories receive a PersistenceLayer
instance and operate on the in-memory state dict it manages.
"""

import contextlib
import fcntl
import json
import tempfile
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from branchyard.constants import STATE_DIR
from branchyard.exceptions import StateError
from branchyard.logging import get_logger

logger = get_logger("state.persistence")


class PersistenceLayer:
    """Low-level state persistence with cross-process file locking.

    Uses fcntl.flock so that a long-running ``branchyard run`` loop and
    one-shot CLI invocations can share the same state file safely.
    """

    def __init__(self, name: str = "environments", state_dir: str | Path | None = None) -> None:
        """Initialize persistence layer.

        Args:
            name: State file stem
            state_dir: Directory for state files (defaults to .branchyard/state)
        """
        self.name = name
        self.state_dir = Path(state_dir or STATE_DIR)
        self._state_file = self.state_dir / f"{name}.json"
        self._lock = threading.RLock()
        self._file_lock_depth = 0
        self._state: dict[str, Any] = {}
        self._ensure_dir()

    @property
    def state(self) -> dict[str, Any]:
        """Access the in-memory state dict.

        Repositories use this to read/mutate state within an atomic_update context.
        """
        return self._state

    @state.setter
    def state(self, value: dict[str, Any]) -> None:
        self._state = value

    @property
    def lock(self) -> threading.RLock:
        """Access the in-process reentrant lock for read-only operations."""
        return self._lock

    @property
    def state_file(self) -> Path:
        """Path to the state JSON file."""
        return self._state_file

    def _ensure_dir(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    @contextlib.contextmanager
    def atomic_update(self) -> Iterator[None]:
        """Cross-process atomic read-modify-write.

        Acquires an exclusive file lock, reloads state from disk,
        yields for caller to mutate self._state, then saves to disk
        and releases the lock.

        Nested atomic_update contexts skip reload/save; the outermost
        context handles both. If the body raises, nothing is written and
        the in-memory state is restored from disk on the next update.
        """
        with self._lock:
            if self._file_lock_depth > 0:
                self._file_lock_depth += 1
                try:
                    yield
                finally:
                    self._file_lock_depth -= 1
                return

            lock_path = self._state_file.with_suffix(".lock")
            lock_fd = open(lock_path, "w")  # noqa: SIM115
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX)
                self._file_lock_depth = 1

                self._reload_under_lock()

                try:
                    yield
                except BaseException:
                    # Drop partial in-memory mutations
                    self._reload_under_lock()
                    raise

                self._raw_save()
            finally:
                self._file_lock_depth = 0
                try:
                    fcntl.flock(lock_fd, fcntl.LOCK_UN)
                except OSError as e:
                    logger.debug(f"Lock release failed: {e}")
                lock_fd.close()

    def _reload_under_lock(self) -> None:
        if self._state_file.exists():
            try:
                with open(self._state_file) as f:
                    self._state = json.load(f)
            except json.JSONDecodeError:
                logger.warning(f"State file {self._state_file} is corrupt, keeping in-memory state")
                if not self._state:
                    self._state = self._create_initial_state()
        else:
            self._state = self._create_initial_state()

    def _raw_save(self) -> None:
        """Write state to disk. Called under atomic_update file lock."""
        with self._lock:
            if self._state_file.exists():
                backup_path = self._state_file.with_suffix(".json.bak")
                backup_path.write_text(self._state_file.read_text())

            temp_fd, temp_path = tempfile.mkstemp(
                suffix=".tmp",
                prefix=f"{self.name}_",
                dir=self.state_dir,
            )
            temp_file = Path(temp_path)
            try:
                with open(temp_fd, "w") as f:
                    json.dump(self._state, f, indent=2, default=str)
                temp_file.replace(self._state_file)
            except Exception:
                if temp_file.exists():
                    temp_file.unlink()
                raise

    def load(self) -> dict[str, Any]:
        """Load state from file.

        Returns:
            Copy of the state dictionary

        Raises:
            StateError: If the state file cannot be parsed
        """
        lock_path = self._state_file.with_suffix(".lock")
        lock_fd = open(lock_path, "w")  # noqa: SIM115
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_SH)
            with self._lock:
                if not self._state_file.exists():
                    self._state = self._create_initial_state()
                else:
                    try:
                        with open(self._state_file) as f:
                            self._state = json.load(f)
                    except json.JSONDecodeError as e:
                        raise StateError(f"Failed to parse state file: {e}") from e

                logger.debug(f"Loaded state {self.name}")
                return self._state.copy()
        finally:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
            except OSError as e:
                logger.debug(f"Lock release failed: {e}")
            lock_fd.close()

    def _create_initial_state(self) -> dict[str, Any]:
        """Create initial state structure.

        Returns:
            Initial state dictionary
        """
        return {
            "name": self.name,
            "created_at": datetime.now(UTC).isoformat(),
            "environments": {},
            "pairs": {},
            "generations": {},
            "sequences": {},
            "routing": {},
            "promotions": {},
            "retired": [],
            "intents": [],
            "events": [],
        }

    def delete(self) -> None:
        """Delete state file and its lock and backup companions."""
        with self._lock:
            for path in (
                self._state_file,
                self._state_file.with_suffix(".lock"),
                self._state_file.with_suffix(".json.bak"),
            ):
                if path.exists():
                    path.unlink()
            self._state = {}
        logger.info(f"Deleted state {self.name}")

    def exists(self) -> bool:
        """Check if state file exists."""
        return self._state_file.exists()
