"""StateStore facade: single source of truth for environments.

Instantiates the specialized repositories (EnvironmentRepo, IntentRepo,
RoutingRepo, PromotionRepo, ExecutionLog) over one PersistenceLayer and
exposes their public methods. ``transaction()`` lets callers group several
repository calls into one atomic read-modify-write.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from branchyard.state.environment_repo import EnvironmentRepo
from branchyard.state.execution import ExecutionLog
from branchyard.state.intent_repo import IntentRepo
from branchyard.state.persistence import PersistenceLayer
from branchyard.state.promotion_repo import PromotionRepo
from branchyard.state.routing_repo import RoutingRepo

if TYPE_CHECKING:
    from branchyard.config import BranchyardConfig
    from branchyard.constants import EnvironmentKind, LifecycleState
    from branchyard.types import DesiredStateEntry, Environment, PromotionRecord


class StateStore:
    """Durable record of every environment's desired and observed state.

    Uses fcntl.flock for cross-process locking so the run loop and CLI
    invocations can share the same state file.
    """

    def __init__(self, name: str = "environments", state_dir: str | Path | None = None, max_events: int = 1000) -> None:
        """Initialize state store.

        Args:
            name: State file stem
            state_dir: Directory for state files (defaults to .branchyard/state)
            max_events: Cap on the audit event log
        """
        self._persistence = PersistenceLayer(name, state_dir)
        self._environments = EnvironmentRepo(self._persistence)
        self._intents = IntentRepo(self._persistence)
        self._routing = RoutingRepo(self._persistence)
        self._promotions = PromotionRepo(self._persistence)
        self._execution = ExecutionLog(self._persistence, max_events=max_events)
        self._persistence.load()

    @classmethod
    def from_config(cls, config: BranchyardConfig) -> StateStore:
        """Build a store from the ``state`` config section."""
        return cls(config.state.name, config.state.directory, max_events=config.state.max_events)

    # === Persistence ===

    @property
    def state_file(self) -> Path:
        """Path to the state JSON file."""
        return self._persistence.state_file

    def load(self) -> dict[str, Any]:
        """Reload state from disk.

        Returns:
            State dictionary
        """
        return self._persistence.load()

    def exists(self) -> bool:
        """Check if the state file exists."""
        return self._persistence.exists()

    def delete(self) -> None:
        """Delete the state file."""
        self._persistence.delete()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several store calls into one atomic read-modify-write."""
        with self._persistence.atomic_update():
            yield

    # === Environments ===

    def get_environment(self, environment_id: str) -> Environment | None:
        """Get an environment by canonical id."""
        return self._environments.get(environment_id)

    def get_environment_by_pair(self, owner_id: str, branch_id: str) -> Environment | None:
        """Get the current environment for an (owner, branch) pair."""
        return self._environments.get_by_pair(owner_id, branch_id)

    def identity_owner(self, environment_id: str) -> tuple[str, str] | None:
        """Return the (owner, branch) pair that holds a canonical id."""
        return self._environments.identity_owner(environment_id)

    def list_environments(
        self,
        states: set[LifecycleState] | frozenset[LifecycleState] | None = None,
        kinds: set[EnvironmentKind] | None = None,
    ) -> list[Environment]:
        """List environments, optionally filtered by state and kind."""
        return self._environments.list(states=states, kinds=kinds)

    def insert_environment(self, environment: Environment) -> None:
        """Insert a new current record for an (owner, branch) pair."""
        self._environments.insert(environment)

    def save_environment(self, environment: Environment) -> None:
        """Persist an existing environment record."""
        self._environments.save(environment)

    def rekey_environment(self, old_id: str, new_id: str) -> Environment:
        """Move a resource-free record to a new canonical id."""
        with self._persistence.atomic_update():
            env = self._environments.rekey(old_id, new_id)
            self._routing.reassign(old_id, new_id)
        return env

    def retired_environments(self) -> list[Environment]:
        """Superseded destroyed records kept for audit."""
        return self._environments.retired()

    def prune_destroyed(self, cutoff: datetime) -> list[str]:
        """Remove destroyed records older than cutoff."""
        return self._environments.prune_destroyed(cutoff)

    # === Intents ===

    def highest_generation(self, owner_id: str, branch_id: str) -> int:
        """Highest accepted generation for a pair."""
        return self._intents.highest_generation(owner_id, branch_id)

    def next_generation(self, owner_id: str, branch_id: str) -> int:
        """Next generation for an internally issued intent."""
        return self._intents.next_generation(owner_id, branch_id)

    def highest_sequence(self, owner_id: str, branch_id: str) -> int:
        """Highest pipeline sequence accepted for a pair."""
        return self._intents.highest_sequence(owner_id, branch_id)

    def accept_intent(self, entry: DesiredStateEntry) -> bool:
        """Record an intent unless it is stale."""
        return self._intents.accept(entry)

    def list_intents(self, owner_id: str | None = None, branch_id: str | None = None) -> list[DesiredStateEntry]:
        """Accepted intents in arrival order."""
        return self._intents.intents(owner_id, branch_id)

    # === Routing ===

    def routing_table(self) -> dict[int, str]:
        """Routing reservations as {key index: environment id}."""
        return self._routing.table()

    def reserve_routing_key(self, index: int, environment_id: str) -> None:
        """Reserve a routing key index for an environment."""
        self._routing.reserve(index, environment_id)

    def release_routing_key(self, index: int) -> str | None:
        """Drop a routing key reservation."""
        return self._routing.release(index)

    # === Promotions ===

    def save_promotion(self, record: PromotionRecord) -> None:
        """Insert or update a promotion record."""
        self._promotions.save(record)

    def get_promotion(self, promotion_id: str) -> PromotionRecord | None:
        """Get a promotion record by id."""
        return self._promotions.get(promotion_id)

    def list_promotions(self, target_id: str | None = None) -> list[PromotionRecord]:
        """Promotion records ordered by request time."""
        return self._promotions.list(target_id)

    def in_flight_promotion(self, target_id: str) -> PromotionRecord | None:
        """In-flight promotion for a target, if any."""
        return self._promotions.in_flight(target_id)

    # === Execution log ===

    def append_event(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Append an audit event."""
        self._execution.append_event(event_type, data)

    def get_events(self, limit: int | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        """Audit events, newest last."""
        return self._execution.get_events(limit, event_type)
