"""Promotion of ephemeral artifacts into integration environments."""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from typing import TYPE_CHECKING

from branchyard.config import PromotionConfig
from branchyard.constants import EnvironmentKind, LifecycleState, LogEvent, PromotionStatus
from branchyard.exceptions import BranchyardError, PromotionBusyError, PromotionError, StateError
from branchyard.logging import get_logger
from branchyard.types import Environment, PromotionRecord, SubmitResult, utcnow

if TYPE_CHECKING:
    from branchyard.desired_state import DesiredStateSource
    from branchyard.log_writer import StructuredLogWriter
    from branchyard.reconciler import Reconciler
    from branchyard.state import StateStore

logger = get_logger("promotion")


class PromotionCoordinator:
    """Serialize promotions per integration target.

    Requests for the same target run one at a time in arrival order; requests
    for different targets run in parallel. A request that finds
    ``queue_depth`` others already waiting is rejected with
    PromotionBusyError.
    """

    def __init__(
        self,
        store: StateStore,
        source: DesiredStateSource,
        reconciler: Reconciler,
        config: PromotionConfig | None = None,
        writer: StructuredLogWriter | None = None,
    ) -> None:
        """Initialize coordinator.

        Args:
            store: State store holding environments and promotion records
            source: Desired state source receiving the target's update intent
            reconciler: Reconciler used to converge the target
            config: Queue depth, wait timeout and integration owner
            writer: Optional structured log writer
        """
        self.config = config or PromotionConfig()
        self._store = store
        self._source = source
        self._reconciler = reconciler
        self._writer = writer
        self._cond = threading.Condition()
        self._waiting: dict[str, deque[str]] = {}
        self._active: dict[str, str] = {}

    def queued(self, target_id: str) -> int:
        """Number of requests waiting behind the in-flight one for a target."""
        with self._cond:
            return len(self._waiting.get(target_id, ()))

    def ensure_integration(self, name: str, artifact_ref: str | None = None) -> SubmitResult:
        """Create the integration environment ``name`` unless it is live."""
        return self._source.ensure_integration(self.config.integration_owner, name, artifact_ref)

    def promote(
        self,
        source_environment_ids: list[str],
        target_integration_id: str,
        requester_id: str | None = None,
    ) -> PromotionRecord:
        """Promote source artifacts into an integration environment.

        Blocks until every earlier request for the same target finished.

        Args:
            source_environment_ids: Environments whose artifacts are merged, in order
            target_integration_id: Integration environment receiving the merge
            requester_id: Who asked, recorded on the intent

        Returns:
            Completed or failed PromotionRecord

        Raises:
            PromotionBusyError: If the target's queue is full
            PromotionError: If sources or target are invalid, or the wait timed out
        """
        target_id = target_integration_id
        ticket = uuid.uuid4().hex[:12]
        self._wait_for_turn(target_id, ticket)
        try:
            return self._execute(ticket, list(source_environment_ids), target_id, requester_id)
        finally:
            with self._cond:
                self._active.pop(target_id, None)
                if not self._waiting.get(target_id):
                    self._waiting.pop(target_id, None)
                self._cond.notify_all()

    def _wait_for_turn(self, target_id: str, ticket: str) -> None:
        timeout = self.config.wait_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        with self._cond:
            queue = self._waiting.setdefault(target_id, deque())
            busy = target_id in self._active or bool(queue)
            if busy and len(queue) >= self.config.queue_depth:
                raise PromotionBusyError(
                    f"Promotion queue for {target_id} is full", target_id, self.config.queue_depth
                )
            queue.append(ticket)
            if busy:
                logger.info(f"Promotion {ticket} queued for {target_id} (position {len(queue)})")

            while target_id in self._active or queue[0] != ticket:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    queue.remove(ticket)
                    self._cond.notify_all()
                    raise PromotionError(
                        f"Timed out waiting for promotion slot on {target_id}",
                        target_id,
                        {"wait_timeout_seconds": timeout},
                    )
                self._cond.wait(timeout=remaining)

            queue.popleft()
            self._active[target_id] = ticket

    def _execute(
        self, ticket: str, source_ids: list[str], target_id: str, requester_id: str | None
    ) -> PromotionRecord:
        target = self._validate_target(target_id)
        refs = self._collect_artifacts(source_ids, target_id)

        record = PromotionRecord(
            id=ticket,
            target_id=target.id,
            source_ids=source_ids,
            artifact_refs=refs,
            merged_artifact_ref="+".join(refs),
            status=PromotionStatus.IN_FLIGHT,
            started_at=utcnow(),
        )
        try:
            self._store.save_promotion(record)
        except StateError as e:
            # Another process holds the target
            raise PromotionBusyError(
                f"Promotion {e.details.get('promotion_id')} already in flight for {target.id}",
                target.id,
                self.config.queue_depth,
            ) from e

        self._emit(LogEvent.PROMOTION_STARTED, f"Promoting {', '.join(source_ids)} into {target.id}", record)

        try:
            result = self._source.submit_promotion(target, record.merged_artifact_ref or "", refs, requester_id)
            if not result.accepted:
                return self._finish(record, PromotionStatus.FAILED, f"update intent discarded: {result.reason}")

            outcome = self._reconciler.reconcile_environment(result.environment_id or target.id)
            converged = self._store.get_environment(outcome.environment_id)
            if outcome.error:
                return self._finish(record, PromotionStatus.FAILED, outcome.error)
            if converged is None or converged.lifecycle_state != LifecycleState.RUNNING:
                state = converged.lifecycle_state.value if converged else "missing"
                return self._finish(record, PromotionStatus.FAILED, f"target ended in {state}")
            if converged.deployed_artifact_ref != record.merged_artifact_ref:
                return self._finish(record, PromotionStatus.FAILED, "target serves a newer artifact")
        except BranchyardError as e:
            return self._finish(record, PromotionStatus.FAILED, str(e))

        return self._finish(record, PromotionStatus.COMPLETED)

    def _validate_target(self, target_id: str) -> Environment:
        target = self._store.get_environment(target_id)
        if target is None:
            raise PromotionError(f"Unknown promotion target {target_id}", target_id)
        if target.kind != EnvironmentKind.INTEGRATION:
            raise PromotionError(
                f"{target_id} is a {target.kind.value} environment, not integration",
                target_id,
                {"kind": target.kind.value},
            )
        if target.is_terminal or not target.desired_present:
            raise PromotionError(f"Promotion target {target_id} is not live", target_id)
        return target

    def _collect_artifacts(self, source_ids: list[str], target_id: str) -> list[str]:
        if not source_ids:
            raise PromotionError("Promotion needs at least one source environment", target_id)
        refs: list[str] = []
        for source_id in source_ids:
            env = self._store.get_environment(source_id)
            if env is None or env.is_terminal:
                raise PromotionError(f"Source environment {source_id} is not live", target_id)
            ref = env.deployed_artifact_ref or env.desired_artifact_ref
            if not ref:
                raise PromotionError(f"Source environment {source_id} has no artifact", target_id)
            refs.append(ref)
        return refs

    def _finish(self, record: PromotionRecord, status: PromotionStatus, error: str | None = None) -> PromotionRecord:
        record.status = status
        record.completed_at = utcnow()
        record.error = error
        self._store.save_promotion(record)
        if error:
            logger.error(f"Promotion {record.id} into {record.target_id} failed: {error}")
        message = f"Promotion {record.id} into {record.target_id} {status.value}"
        self._emit(LogEvent.PROMOTION_COMPLETE, message, record)
        return record

    def _emit(self, event: LogEvent, message: str, record: PromotionRecord) -> None:
        logger.info(message)
        self._store.append_event(event.value, record.to_dict())
        if self._writer:
            self._writer.emit("info", message, event=event, data=record.to_dict())
