"""Routing key allocation for environments."""

from __future__ import annotations

import heapq
import threading
from typing import TYPE_CHECKING

from branchyard.config import RoutingConfig
from branchyard.constants import RoutingMode
from branchyard.exceptions import AllocationExhaustedError, StateError
from branchyard.logging import get_logger

if TYPE_CHECKING:
    from branchyard.state import StateStore

logger = get_logger("routing")

RoutingKey = int | str


class RoutingAllocator:
    """Allocate and reclaim unique routing keys.

    Keys are drawn smallest-first from a heap-ordered free list over the
    configured integer range. In path mode the integer is rendered with the
    configured prefix (``env-7``); in priority mode it is used as-is. One
    allocator-wide lock guards allocate and release, and every change is
    written through to the store's routing table.
    """

    def __init__(self, config: RoutingConfig | None = None, store: StateStore | None = None) -> None:
        """Initialize allocator, seeding reservations from the store if given.

        Args:
            config: Routing key space configuration
            store: State store holding the durable routing table
        """
        self.config = config or RoutingConfig()
        self._store = store
        self._lock = threading.Lock()
        self._allocated: dict[int, str] = {}
        self._quarantined: set[int] = set()
        self._free: list[int] = []
        self._seed()

    @classmethod
    def from_store(cls, config: RoutingConfig, store: StateStore) -> RoutingAllocator:
        """Rebuild the allocator from a store's routing table."""
        return cls(config, store)

    def _seed(self) -> None:
        if self._store is not None:
            self._allocated = {
                i: env_id
                for i, env_id in self._store.routing_table().items()
                if self.config.range_start <= i <= self.config.range_end
            }
        self._free = [
            i
            for i in range(self.config.range_start, self.config.range_end + 1)
            if i not in self._allocated and i not in self._quarantined
        ]
        heapq.heapify(self._free)

    def sync(self) -> None:
        """Re-read reservations from the store.

        Picks up keys reserved or released by other processes sharing the
        state file. Quarantined keys stay out of the pool.
        """
        with self._lock:
            if self._store is not None:
                self._store.load()
            self._seed()

    def render(self, index: int) -> RoutingKey:
        """Render a key index as the routing key the proxy consumes."""
        if self.config.mode == RoutingMode.PATH:
            return f"{self.config.path_prefix}{index}"
        return index

    def index_of(self, key: RoutingKey) -> int:
        """Parse a rendered routing key back to its index.

        Raises:
            ValueError: If the key does not belong to this key space
        """
        if isinstance(key, int):
            index = key
        else:
            prefix = self.config.path_prefix
            if not key.startswith(prefix):
                raise ValueError(f"Routing key {key!r} does not start with {prefix!r}")
            index = int(key[len(prefix) :])
        if not self.config.range_start <= index <= self.config.range_end:
            raise ValueError(f"Routing key {key!r} outside range")
        return index

    def allocate(self, environment_id: str) -> RoutingKey:
        """Allocate the smallest free key for an environment.

        Idempotent: an environment that already holds a key gets the same key.

        Args:
            environment_id: Environment receiving the key

        Returns:
            Rendered routing key

        Raises:
            AllocationExhaustedError: If every key in the range is held
        """
        with self._lock:
            for index, holder in self._allocated.items():
                if holder == environment_id:
                    return self.render(index)

            while self._free:
                index = heapq.heappop(self._free)
                if index in self._allocated or index in self._quarantined:
                    continue
                if self._store is not None:
                    try:
                        self._store.reserve_routing_key(index, environment_id)
                    except StateError as e:
                        # Reserved by another process since we seeded the free list
                        self._allocated[index] = e.details.get("holder", "")
                        continue
                self._allocated[index] = environment_id
                key = self.render(index)
                logger.info(f"Allocated routing key {key} to {environment_id}")
                return key

        raise AllocationExhaustedError(
            f"Routing key space exhausted ({self.config.range_start}-{self.config.range_end})",
            self.config.range_start,
            self.config.range_end,
        )

    def release(self, key: RoutingKey) -> None:
        """Return a key to the free pool.

        Only called once the substrate confirmed the routing rule is gone.

        Args:
            key: Rendered routing key
        """
        index = self.index_of(key)
        with self._lock:
            holder = self._allocated.pop(index, None)
            if self._store is not None:
                self._store.release_routing_key(index)
            if holder is None:
                logger.debug(f"Release of unheld routing key {key}")
                return
            if index not in self._quarantined:
                heapq.heappush(self._free, index)
            logger.info(f"Released routing key {key} from {holder}")

    def quarantine(self, key: RoutingKey) -> None:
        """Take a key out of circulation for the life of this allocator.

        Used when the substrate reports the key in use by something the
        store does not know about.
        """
        index = self.index_of(key)
        with self._lock:
            self._quarantined.add(index)
        logger.warning(f"Quarantined routing key {key}")

    def reassign(self, old_id: str, new_id: str) -> None:
        """Follow a re-keyed environment."""
        with self._lock:
            for index, holder in self._allocated.items():
                if holder == old_id:
                    self._allocated[index] = new_id

    def holder(self, key: RoutingKey) -> str | None:
        """Environment currently holding a key."""
        with self._lock:
            return self._allocated.get(self.index_of(key))

    def get_allocated(self) -> dict[RoutingKey, str]:
        """Snapshot of held keys."""
        with self._lock:
            return {self.render(i): env_id for i, env_id in self._allocated.items()}

    @property
    def available_count(self) -> int:
        """Number of keys still available."""
        with self._lock:
            total = self.config.range_end - self.config.range_start + 1
            return total - len(self._allocated) - len(self._quarantined - set(self._allocated))
