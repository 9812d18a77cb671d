"""Wire branchyard components together and drive the periodic loop."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from branchyard.config import BranchyardConfig
from branchyard.constants import LifecycleState
from branchyard.desired_state import DesiredStateSource
from branchyard.driver import InfrastructureDriver, load_driver
from branchyard.exceptions import BranchyardError, StateError
from branchyard.gc import GarbageCollector, SweepReport
from branchyard.identity import IdentityResolver
from branchyard.log_writer import StructuredLogWriter
from branchyard.logging import get_logger
from branchyard.promotion import PromotionCoordinator
from branchyard.reconciler import Reconciler, ReconciliationResult
from branchyard.routing import RoutingAllocator
from branchyard.state import StateStore
from branchyard.types import Environment, PromotionRecord, SourceEvent, SubmitResult

logger = get_logger("orchestrator")


@dataclass
class TickResult:
    """What one loop iteration did."""

    reconcile: ReconciliationResult
    sweep: SweepReport | None = None
    pruned: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reconcile": self.reconcile.to_dict(),
            "sweep": self.sweep.to_dict() if self.sweep else None,
            "pruned": list(self.pruned),
        }


class Orchestrator:
    """Single entry point for events, reconciliation, GC and promotion."""

    def __init__(
        self,
        config: BranchyardConfig | None = None,
        store: StateStore | None = None,
        driver: InfrastructureDriver | None = None,
        writer: StructuredLogWriter | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Configuration (loaded from .branchyard/config.yaml if omitted)
            store: State store (built from ``config.state`` if omitted)
            driver: Infrastructure driver (built from ``config.driver`` if omitted)
            writer: Structured JSONL writer (built from ``config.logging`` if omitted)
        """
        self.config = config or BranchyardConfig.load()
        self.store = store or StateStore.from_config(self.config)
        self.driver = driver or load_driver(self.config.driver)
        if writer is None and self.config.logging.structured_output:
            writer = StructuredLogWriter(
                Path(self.config.logging.directory), max_size_mb=self.config.logging.max_log_size_mb
            )
        self.writer = writer

        self.resolver = IdentityResolver(self.config.naming, self.store.identity_owner)
        self.allocator = RoutingAllocator.from_store(self.config.routing, self.store)
        self.source = DesiredStateSource(self.store, self.resolver, self.config.ownership, self.writer)
        self.reconciler = Reconciler(
            self.store,
            self.driver,
            self.allocator,
            self.resolver,
            self.config.reconciler,
            writer=self.writer,
        )
        self.gc = GarbageCollector(self.store, self.source, self.config.gc, self.writer)
        self.promotions = PromotionCoordinator(
            self.store, self.source, self.reconciler, self.config.promotion, self.writer
        )
        self._last_sweep: float | None = None

    def handle(self, event: SourceEvent) -> SubmitResult:
        """Route an external event to the desired state source."""
        return self.source.handle(event)

    def promote(
        self, source_ids: list[str], target_id: str, requester_id: str | None = None
    ) -> PromotionRecord:
        """Promote source environments into an integration environment."""
        return self.promotions.promote(source_ids, target_id, requester_id)

    def retry(self, environment_id: str) -> Environment:
        """Operator retry: re-arm automatic retries for a failed environment.

        Raises:
            StateError: If the environment is unknown or not failed
        """
        with self.store.transaction():
            env = self.store.get_environment(environment_id)
            if env is None:
                raise StateError("Unknown environment", {"environment_id": environment_id})
            if env.lifecycle_state != LifecycleState.FAILED:
                raise StateError(
                    f"Environment is {env.lifecycle_state.value}, not failed",
                    {"environment_id": environment_id},
                )
            env.retry_count = 0
            env.retryable = True
            self.store.save_environment(env)
        self.store.append_event("operator_retry", {"environment_id": environment_id})
        logger.info(f"Operator retry armed for {environment_id}")
        return env

    def tick(self, now: datetime | None = None, force_sweep: bool = False) -> TickResult:
        """Run one iteration: GC when due, prune, then reconcile everything.

        Args:
            now: Reference time for GC decisions
            force_sweep: Sweep even if the GC interval has not elapsed

        Returns:
            TickResult
        """
        sweep = None
        pruned: list[str] = []
        due = self._last_sweep is None or time.monotonic() - self._last_sweep >= self.config.gc.interval_seconds
        if self.config.gc.enabled and (due or force_sweep):
            sweep = self.gc.sweep(now)
            if not sweep.dry_run:
                pruned = self.gc.prune(now)
            self._last_sweep = time.monotonic()

        result = self.reconciler.reconcile_all()
        return TickResult(reconcile=result, sweep=sweep, pruned=pruned)

    def run(self, stop_event: threading.Event | None = None, max_ticks: int | None = None) -> int:
        """Loop ``tick`` every ``reconciler.interval_seconds`` until stopped.

        Args:
            stop_event: Set to stop the loop
            max_ticks: Stop after this many iterations

        Returns:
            Number of ticks run
        """
        stop_event = stop_event or threading.Event()
        interval = self.config.reconciler.interval_seconds
        ticks = 0
        logger.info(f"Reconcile loop started (interval {interval}s)")
        while not stop_event.is_set():
            try:
                result = self.tick()
                if not result.reconcile.success:
                    logger.warning(f"Reconcile pass finished with {len(result.reconcile.failed)} failures")
            except BranchyardError as e:
                logger.error(f"Tick failed: {e}")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            stop_event.wait(interval)
        logger.info(f"Reconcile loop stopped after {ticks} ticks")
        return ticks

    def close(self) -> None:
        """Flush and close the structured writer."""
        if self.writer:
            self.writer.close()
