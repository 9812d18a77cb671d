"""Environment repository: CRUD for environment records and identity lookups.

Current records live under ``environments`` keyed by canonical id, with the
``pairs`` index mapping each (owner, branch) pair to its current record.
Destroyed records replaced by a fresh create move to ``retired`` for audit.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from branchyard.constants import EnvironmentKind, LifecycleState
from branchyard.exceptions import StateError
from branchyard.logging import get_logger
from branchyard.types import Environment, pair_key

if TYPE_CHECKING:
    from branchyard.state.persistence import PersistenceLayer

logger = get_logger("state.environment_repo")


class EnvironmentRepo:
    """Environment record CRUD operations."""

    def __init__(self, persistence: PersistenceLayer) -> None:
        self._persistence = persistence

    def _envs(self) -> dict[str, Any]:
        return self._persistence.state.setdefault("environments", {})

    def _pairs(self) -> dict[str, str]:
        return self._persistence.state.setdefault("pairs", {})

    def get(self, environment_id: str) -> Environment | None:
        """Get an environment by canonical id.

        Args:
            environment_id: Canonical environment id

        Returns:
            Environment copy or None if not found
        """
        with self._persistence.lock:
            data = self._envs().get(environment_id)
            return Environment.from_dict(data) if data else None

    def get_by_pair(self, owner_id: str, branch_id: str) -> Environment | None:
        """Get the current environment record for an (owner, branch) pair."""
        with self._persistence.lock:
            env_id = self._pairs().get(pair_key(owner_id, branch_id))
            if env_id is None:
                return None
            data = self._envs().get(env_id)
            return Environment.from_dict(data) if data else None

    def identity_owner(self, environment_id: str) -> tuple[str, str] | None:
        """Return the (owner, branch) pair that holds a canonical id, if any."""
        with self._persistence.lock:
            data = self._envs().get(environment_id)
            if not data:
                return None
            return (data["owner_id"], data["branch_id"])

    def list(
        self,
        states: set[LifecycleState] | frozenset[LifecycleState] | None = None,
        kinds: set[EnvironmentKind] | None = None,
    ) -> list[Environment]:
        """List environments, optionally filtered by state and kind.

        Returns:
            Environments ordered by creation time
        """
        with self._persistence.lock:
            envs = [Environment.from_dict(d) for d in self._envs().values()]
        if states is not None:
            envs = [e for e in envs if e.lifecycle_state in states]
        if kinds is not None:
            envs = [e for e in envs if e.kind in kinds]
        return sorted(envs, key=lambda e: (e.created_at, e.id))

    def insert(self, environment: Environment) -> None:
        """Insert a new current record for its (owner, branch) pair.

        A destroyed predecessor for the same pair is moved to the retired list.

        Raises:
            StateError: If a live record already exists for the pair or the id is taken
        """
        with self._persistence.atomic_update():
            key = pair_key(environment.owner_id, environment.branch_id)
            previous_id = self._pairs().get(key)
            if previous_id is not None:
                previous = self._envs().get(previous_id)
                if previous and previous["lifecycle_state"] != LifecycleState.DESTROYED.value:
                    raise StateError(
                        "Live environment already exists for pair",
                        {"environment_id": previous_id, "owner_id": environment.owner_id},
                    )
                if previous:
                    self._retire(previous_id)

            existing = self._envs().get(environment.id)
            if existing:
                if existing["lifecycle_state"] != LifecycleState.DESTROYED.value:
                    raise StateError("Environment id already in use", {"environment_id": environment.id})
                self._retire(environment.id)

            self._envs()[environment.id] = environment.to_dict()
            self._pairs()[key] = environment.id

        logger.debug(f"Inserted environment {environment.id}")

    def save(self, environment: Environment) -> None:
        """Persist an existing environment record.

        Raises:
            StateError: If the record does not exist
        """
        with self._persistence.atomic_update():
            if environment.id not in self._envs():
                raise StateError("Unknown environment", {"environment_id": environment.id})
            self._envs()[environment.id] = environment.to_dict()

    def rekey(self, old_id: str, new_id: str) -> Environment:
        """Move a record to a new canonical id.

        Only legal while the record holds no substrate resources.

        Raises:
            StateError: If the old id is unknown, holds resources, or the new id is taken
        """
        with self._persistence.atomic_update():
            data = self._envs().get(old_id)
            if data is None:
                raise StateError("Unknown environment", {"environment_id": old_id})
            if new_id in self._envs():
                raise StateError("Environment id already in use", {"environment_id": new_id})
            env = Environment.from_dict(data)
            if env.observed and not env.observed.is_empty:
                raise StateError("Cannot rekey an environment holding resources", {"environment_id": old_id})
            env.id = new_id
            del self._envs()[old_id]
            self._envs()[new_id] = env.to_dict()
            self._pairs()[pair_key(env.owner_id, env.branch_id)] = new_id

        logger.info(f"Re-keyed environment {old_id} -> {new_id}")
        return env

    def _retire(self, environment_id: str) -> None:
        data = self._envs().pop(environment_id)
        self._persistence.state.setdefault("retired", []).append(data)
        key = pair_key(data["owner_id"], data["branch_id"])
        if self._pairs().get(key) == environment_id:
            del self._pairs()[key]

    def retired(self) -> list[Environment]:
        """Retired (superseded destroyed) records kept for audit."""
        with self._persistence.lock:
            return [Environment.from_dict(d) for d in self._persistence.state.get("retired", [])]

    def prune_destroyed(self, cutoff: datetime) -> list[str]:
        """Remove destroyed and retired records destroyed before cutoff.

        Args:
            cutoff: Records with destroyed_at earlier than this are removed

        Returns:
            Ids of pruned records
        """
        pruned: list[str] = []
        with self._persistence.atomic_update():
            for env_id, data in list(self._envs().items()):
                env = Environment.from_dict(data)
                if env.is_terminal and env.destroyed_at and env.destroyed_at < cutoff:
                    del self._envs()[env_id]
                    key = pair_key(env.owner_id, env.branch_id)
                    if self._pairs().get(key) == env_id:
                        del self._pairs()[key]
                    pruned.append(env_id)

            kept = []
            for data in self._persistence.state.get("retired", []):
                env = Environment.from_dict(data)
                if env.destroyed_at and env.destroyed_at < cutoff:
                    pruned.append(env.id)
                else:
                    kept.append(data)
            self._persistence.state["retired"] = kept

        if pruned:
            logger.info(f"Pruned {len(pruned)} destroyed environment records")
        return pruned
