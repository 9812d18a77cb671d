"""Routing repository: durable routing key table.

Maps key index (as a string, for JSON) to the owning environment id. The
in-process RoutingAllocator writes through to this table on every
reservation and release and rebuilds its free list from it on start.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from branchyard.exceptions import StateError
from branchyard.logging import get_logger

if TYPE_CHECKING:
    from branchyard.state.persistence import PersistenceLayer

logger = get_logger("state.routing_repo")


class RoutingRepo:
    """Routing key table operations."""

    def __init__(self, persistence: PersistenceLayer) -> None:
        self._persistence = persistence

    def table(self) -> dict[int, str]:
        """Current reservations as {key index: environment id}."""
        with self._persistence.lock:
            return {int(k): v for k, v in self._persistence.state.get("routing", {}).items()}

    def reserve(self, index: int, environment_id: str) -> None:
        """Reserve a key index for an environment.

        Raises:
            StateError: If another environment already holds the index
        """
        with self._persistence.atomic_update():
            routing = self._persistence.state.setdefault("routing", {})
            holder = routing.get(str(index))
            if holder is not None and holder != environment_id:
                raise StateError(
                    "Routing key already reserved",
                    {"index": index, "holder": holder, "requested_by": environment_id},
                )
            routing[str(index)] = environment_id

    def release(self, index: int) -> str | None:
        """Drop a reservation.

        Returns:
            Environment id that held the key, or None if it was free
        """
        with self._persistence.atomic_update():
            return self._persistence.state.setdefault("routing", {}).pop(str(index), None)

    def reassign(self, old_id: str, new_id: str) -> None:
        """Point reservations held by old_id at new_id (after a re-key)."""
        with self._persistence.atomic_update():
            routing = self._persistence.state.setdefault("routing", {})
            for index, holder in list(routing.items()):
                if holder == old_id:
                    routing[index] = new_id
