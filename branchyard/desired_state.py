"""Normalize external events into desired-state intents.

Branch pushes, branch deletions, manual requests, GC sweep ticks and
promotions all become DesiredStateEntry records applied to the StateStore
through ``submit``. Pushes and sequenced deletes are stale when their
sequence is not above the highest sequence recorded for the pair; internally
issued intents take the next generation and never compete with sequences.
Manual requests take the same path as pipeline events once their ownership
check passes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from branchyard.config import OwnershipConfig
from branchyard.constants import (
    EnvironmentKind,
    IntentAction,
    LifecycleState,
    LogEvent,
    ManualAction,
    SourceEventKind,
)
from branchyard.exceptions import OwnershipError
from branchyard.logging import get_logger
from branchyard.types import (
    BranchDeleteEvent,
    BranchPushEvent,
    DesiredStateEntry,
    Environment,
    ManualRequestEvent,
    SourceEvent,
    SubmitResult,
    SweepTickEvent,
    utcnow,
)

if TYPE_CHECKING:
    from branchyard.identity import IdentityResolver
    from branchyard.log_writer import StructuredLogWriter
    from branchyard.state import StateStore

logger = get_logger("desired_state")


class DesiredStateSource:
    """Turn events into intents and apply them to the store."""

    def __init__(
        self,
        store: StateStore,
        resolver: IdentityResolver,
        ownership: OwnershipConfig | None = None,
        writer: StructuredLogWriter | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            store: State store receiving intents
            resolver: Identity resolver for new environments
            ownership: Manual request access rules
            writer: Optional structured log writer
        """
        self._store = store
        self._resolver = resolver
        self._ownership = ownership or OwnershipConfig()
        self._writer = writer

    def handle(self, event: SourceEvent) -> SubmitResult:
        """Dispatch an event to its normalizer.

        Raises:
            TypeError: For unknown event types
        """
        if isinstance(event, BranchPushEvent):
            return self.on_push(event)
        if isinstance(event, BranchDeleteEvent):
            return self.on_delete(event)
        if isinstance(event, ManualRequestEvent):
            return self.on_manual(event)
        if isinstance(event, SweepTickEvent):
            return self.on_sweep(event)
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    # --- Normalizers ---

    def on_push(self, event: BranchPushEvent) -> SubmitResult:
        """Branch push: create when nothing live exists, otherwise update."""
        current = self._store.get_environment_by_pair(event.owner_id, event.branch_id)
        action = IntentAction.UPDATE if current and not current.is_terminal else IntentAction.CREATE
        entry = DesiredStateEntry(
            action=action,
            owner_id=event.owner_id,
            branch_id=event.branch_id,
            generation=event.sequence,
            source_event=SourceEventKind.BRANCH_PUSH,
            sequence=event.sequence,
            artifact_ref=event.artifact_ref,
            owner_tags=dict(event.owner_tags),
        )
        return self.submit(entry)

    def on_delete(self, event: BranchDeleteEvent) -> SubmitResult:
        """Branch deleted or merged: destroy."""
        entry = DesiredStateEntry(
            action=IntentAction.DESTROY,
            owner_id=event.owner_id,
            branch_id=event.branch_id,
            generation=event.sequence or 0,
            source_event=SourceEventKind.BRANCH_DELETE,
            sequence=event.sequence,
        )
        return self.submit(entry, assign_generation=event.sequence is None)

    def on_manual(self, event: ManualRequestEvent) -> SubmitResult:
        """Manual request, accepted only from the owner or an operator.

        Raises:
            OwnershipError: If the requester does not own the environment
        """
        current = self._store.get_environment_by_pair(event.owner_id, event.branch_id)
        self.check_ownership(event, current)

        if event.action == ManualAction.DESTROY:
            action = IntentAction.DESTROY
        elif event.action == ManualAction.CREATE and (current is None or current.is_terminal):
            action = IntentAction.CREATE
        else:
            action = IntentAction.UPDATE if current and not current.is_terminal else IntentAction.CREATE

        artifact_ref = event.artifact_ref
        if event.action == ManualAction.PING:
            if current is None or current.is_terminal:
                return SubmitResult(accepted=False, reason="no live environment to ping")
            artifact_ref = None

        entry = DesiredStateEntry(
            action=action,
            owner_id=event.owner_id,
            branch_id=event.branch_id,
            generation=0,
            source_event=SourceEventKind.MANUAL_REQUEST,
            artifact_ref=artifact_ref,
            requester_id=event.requester_id,
        )
        return self.submit(entry, assign_generation=True)

    def on_sweep(self, event: SweepTickEvent) -> SubmitResult:
        """GC sweep decision: destroy with a fresh generation."""
        env = self._store.get_environment(event.environment_id)
        if env is None or env.is_terminal:
            return SubmitResult(accepted=False, environment_id=event.environment_id, reason="environment gone")
        entry = DesiredStateEntry(
            action=IntentAction.DESTROY,
            owner_id=env.owner_id,
            branch_id=env.branch_id,
            generation=0,
            source_event=SourceEventKind.SWEEP_TICK,
        )
        return self.submit(entry, assign_generation=True)

    def submit_promotion(
        self,
        target: Environment,
        merged_artifact_ref: str,
        artifact_set: list[str],
        requester_id: str | None = None,
    ) -> SubmitResult:
        """Update intent for an integration environment carrying merged artifacts."""
        entry = DesiredStateEntry(
            action=IntentAction.UPDATE,
            owner_id=target.owner_id,
            branch_id=target.branch_id,
            generation=0,
            source_event=SourceEventKind.PROMOTION,
            artifact_ref=merged_artifact_ref,
            kind=target.kind,
            requester_id=requester_id,
            artifact_set=list(artifact_set),
        )
        return self.submit(entry, assign_generation=True)

    def ensure_integration(self, owner_id: str, name: str, artifact_ref: str | None = None) -> SubmitResult:
        """Create intent for an integration environment if none is live."""
        current = self._store.get_environment_by_pair(owner_id, name)
        if current and not current.is_terminal:
            return SubmitResult(accepted=False, environment_id=current.id, reason="already exists")
        entry = DesiredStateEntry(
            action=IntentAction.CREATE,
            owner_id=owner_id,
            branch_id=name,
            generation=0,
            source_event=SourceEventKind.MANUAL_REQUEST,
            artifact_ref=artifact_ref,
            kind=EnvironmentKind.INTEGRATION,
        )
        return self.submit(entry, assign_generation=True)

    def check_ownership(self, event: ManualRequestEvent, current: Environment | None) -> None:
        """Verify a manual requester may act on the target pair.

        Raises:
            OwnershipError: If neither the requester id nor its owner tag matches
        """
        tag_key = self._ownership.tag_key
        owner_value = current.owner_tags.get(tag_key, current.owner_id) if current else event.owner_id
        if event.requester_id in self._ownership.operators:
            return
        if event.requester_id == owner_value or event.requester_tags.get(tag_key) == owner_value:
            return
        raise OwnershipError(
            f"{event.requester_id} does not own {event.owner_id}/{event.branch_id}",
            requester_id=event.requester_id,
            owner_id=owner_value,
        )

    # --- Core ---

    def submit(self, entry: DesiredStateEntry, assign_generation: bool = False) -> SubmitResult:
        """Apply an intent to the store.

        The staleness check and the environment mutation commit in one
        store transaction.

        Args:
            entry: Intent to apply
            assign_generation: Replace entry.generation with the next one for the pair

        Returns:
            SubmitResult describing what happened

        Raises:
            InvalidIdentityError: If a create names an empty owner or branch
        """
        if entry.action == IntentAction.CREATE:
            # Reject malformed identities before anything is recorded
            self._resolver.base_name(entry.owner_id, entry.branch_id)

        with self._store.transaction():
            if assign_generation:
                entry.generation = self._store.next_generation(entry.owner_id, entry.branch_id)

            if not self._store.accept_intent(entry):
                result = SubmitResult(accepted=False, entry=entry, reason="stale")
            else:
                env = self._apply(entry)
                result = SubmitResult(accepted=True, entry=entry, environment_id=env.id if env else None)
                self._store.append_event(
                    "intent_accepted",
                    {
                        "action": entry.action.value,
                        "owner_id": entry.owner_id,
                        "branch_id": entry.branch_id,
                        "generation": entry.generation,
                        "source_event": entry.source_event.value,
                        "environment_id": result.environment_id,
                    },
                )

        self._log(result)
        return result

    def _apply(self, entry: DesiredStateEntry) -> Environment | None:
        now = utcnow()
        env = self._store.get_environment_by_pair(entry.owner_id, entry.branch_id)

        if entry.action == IntentAction.DESTROY:
            if env is None or env.is_terminal:
                return None
            env.desired_present = False
            env.desired_generation = entry.generation
            env.updated_at = now
            if env.lifecycle_state == LifecycleState.FAILED:
                env.retry_count = 0
                env.retryable = True
            self._store.save_environment(env)
            return env

        if env is None or env.is_terminal:
            env_id = self._resolver.resolve(entry.owner_id, entry.branch_id)
            tags = {self._ownership.tag_key: entry.owner_id}
            tags.update(entry.owner_tags)
            env = Environment(
                id=env_id,
                owner_id=entry.owner_id,
                branch_id=entry.branch_id,
                kind=entry.kind,
                desired_artifact_ref=entry.artifact_ref,
                desired_generation=entry.generation,
                created_at=now,
                updated_at=now,
                last_activity_at=now,
                owner_tags=tags,
            )
            self._store.insert_environment(env)
            return env

        if entry.artifact_ref is not None:
            env.desired_artifact_ref = entry.artifact_ref
        env.desired_present = True
        env.desired_generation = entry.generation
        env.owner_tags.update(entry.owner_tags)
        env.updated_at = now
        if entry.source_event != SourceEventKind.PROMOTION:
            env.last_activity_at = now
        if env.lifecycle_state == LifecycleState.FAILED:
            # A fresh intent re-arms automatic retries
            env.retry_count = 0
            env.retryable = True
        self._store.save_environment(env)
        return env

    def _log(self, result: SubmitResult) -> None:
        entry = result.entry
        if entry is None:
            return
        label = f"{entry.action.value} {entry.owner_id}/{entry.branch_id} gen={entry.generation}"
        if result.accepted:
            logger.info(f"Accepted {label} from {entry.source_event.value}")
            event = LogEvent.INTENT_ACCEPTED
        else:
            logger.info(f"Discarded {label}: {result.reason}")
            event = LogEvent.INTENT_DISCARDED
        if self._writer:
            self._writer.emit(
                "info",
                f"{event.value}: {label}",
                event=event,
                data={**entry.to_dict(), "environment_id": result.environment_id, "reason": result.reason},
            )
