"""Intent repository: per-pair generation tracking and the intent log."""

from __future__ import annotations

from typing import TYPE_CHECKING

from branchyard.logging import get_logger
from branchyard.types import DesiredStateEntry, pair_key

if TYPE_CHECKING:
    from branchyard.state.persistence import PersistenceLayer

logger = get_logger("state.intent_repo")

MAX_INTENTS = 5000


class IntentRepo:
    """Generation bookkeeping for desired-state intents.

    Two per-pair counters are kept. ``generations`` orders every accepted
    intent, pipeline or internal. ``sequences`` is the high-water mark of the
    sequence numbers carried by branch pushes and deletes, so staleness of a
    pipeline event is judged only against earlier pipeline events and an
    internally issued intent never consumes a sequence number.
    """

    def __init__(self, persistence: PersistenceLayer) -> None:
        self._persistence = persistence

    def highest_generation(self, owner_id: str, branch_id: str) -> int:
        """Highest generation accepted so far for a pair (0 if none)."""
        with self._persistence.lock:
            return int(self._persistence.state.get("generations", {}).get(pair_key(owner_id, branch_id), 0))

    def next_generation(self, owner_id: str, branch_id: str) -> int:
        """Generation to use for an internally issued intent."""
        return self.highest_generation(owner_id, branch_id) + 1

    def highest_sequence(self, owner_id: str, branch_id: str) -> int:
        """Highest pipeline sequence accepted so far for a pair (0 if none)."""
        with self._persistence.lock:
            return int(self._persistence.state.get("sequences", {}).get(pair_key(owner_id, branch_id), 0))

    def accept(self, entry: DesiredStateEntry) -> bool:
        """Record an intent if it is newer than anything seen for its pair.

        Must be called inside the caller's atomic_update so the check and the
        environment mutation that follows commit together. A sequenced entry
        is checked against the sequence mark and then given the generation
        ``max(sequence, highest generation + 1)``.

        Args:
            entry: Intent to record

        Returns:
            False if the entry is stale
        """
        with self._persistence.atomic_update():
            generations = self._persistence.state.setdefault("generations", {})
            sequences = self._persistence.state.setdefault("sequences", {})
            key = pair_key(entry.owner_id, entry.branch_id)
            current = int(generations.get(key, 0))

            if entry.sequence is not None:
                seen = int(sequences.get(key, 0))
                if entry.sequence <= seen:
                    logger.debug(
                        f"Stale intent {entry.action.value} for {entry.owner_id}/{entry.branch_id}: "
                        f"sequence {entry.sequence} <= {seen}"
                    )
                    return False
                sequences[key] = entry.sequence
                entry.generation = max(entry.sequence, current + 1)
            elif entry.generation <= current:
                logger.debug(
                    f"Stale intent {entry.action.value} for {entry.owner_id}/{entry.branch_id}: "
                    f"generation {entry.generation} <= {current}"
                )
                return False

            generations[key] = entry.generation
            intents = self._persistence.state.setdefault("intents", [])
            intents.append(entry.to_dict())
            if len(intents) > MAX_INTENTS:
                del intents[: len(intents) - MAX_INTENTS]
            return True

    def intents(self, owner_id: str | None = None, branch_id: str | None = None) -> list[DesiredStateEntry]:
        """Accepted intents in arrival order, optionally for one pair."""
        with self._persistence.lock:
            entries = [DesiredStateEntry.from_dict(d) for d in self._persistence.state.get("intents", [])]
        if owner_id is not None:
            entries = [e for e in entries if e.owner_id == owner_id]
        if branch_id is not None:
            entries = [e for e in entries if e.branch_id == branch_id]
        return entries
