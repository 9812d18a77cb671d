"""Branchyard type definitions using dataclasses."""

__all__ = [
    # Environment types
    "InfrastructureRecord",
    "Environment",
    "pair_key",
    # Intent types
    "DesiredStateEntry",
    "SubmitResult",
    # Source events
    "BranchPushEvent",
    "BranchDeleteEvent",
    "ManualRequestEvent",
    "SweepTickEvent",
    "SourceEvent",
    # Promotion types
    "PromotionRecord",
    # Reconcile types
    "ReconcileRecord",
]

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from branchyard.constants import (
    TERMINAL_STATES,
    EnvironmentKind,
    IntentAction,
    LifecycleState,
    ManualAction,
    PromotionStatus,
    SourceEventKind,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def pair_key(owner_id: str, branch_id: str) -> str:
    """Stable string key for an (owner, branch) pair, safe for JSON object keys."""
    return json.dumps([owner_id, branch_id])


# ============================================================================
# Environment types
# ============================================================================


@dataclass
class InfrastructureRecord:
    """Opaque substrate handles owned by exactly one environment."""

    revision_handle: str | None = None
    workload_handle: str | None = None
    routing_rule_handle: str | None = None
    log_sink_handle: str | None = None
    artifact_ref: str | None = None

    @property
    def is_empty(self) -> bool:
        """True when no substrate resource is held."""
        return not (
            self.revision_handle or self.workload_handle or self.routing_rule_handle or self.log_sink_handle
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "revision_handle": self.revision_handle,
            "workload_handle": self.workload_handle,
            "routing_rule_handle": self.routing_rule_handle,
            "log_sink_handle": self.log_sink_handle,
            "artifact_ref": self.artifact_ref,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InfrastructureRecord":
        """Create from dictionary."""
        return cls(
            revision_handle=data.get("revision_handle"),
            workload_handle=data.get("workload_handle"),
            routing_rule_handle=data.get("routing_rule_handle"),
            log_sink_handle=data.get("log_sink_handle"),
            artifact_ref=data.get("artifact_ref"),
        )


@dataclass
class Environment:
    """One owner/branch-scoped deployment unit."""

    id: str
    owner_id: str
    branch_id: str
    kind: EnvironmentKind = EnvironmentKind.EPHEMERAL
    lifecycle_state: LifecycleState = LifecycleState.PENDING
    desired_artifact_ref: str | None = None
    desired_present: bool = True
    desired_generation: int = 0
    routing_key: int | str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    destroyed_at: datetime | None = None
    owner_tags: dict[str, str] = field(default_factory=dict)
    observed: InfrastructureRecord | None = None
    retry_count: int = 0
    failed_step: str | None = None
    retryable: bool = True
    last_error: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        """True once the environment reached a terminal lifecycle state."""
        return self.lifecycle_state in TERMINAL_STATES

    @property
    def pair(self) -> tuple[str, str]:
        """The (owner, branch) identity this environment belongs to."""
        return (self.owner_id, self.branch_id)

    @property
    def deployed_artifact_ref(self) -> str | None:
        """Artifact the substrate is actually serving, if any."""
        return self.observed.artifact_ref if self.observed else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "branch_id": self.branch_id,
            "kind": self.kind.value,
            "lifecycle_state": self.lifecycle_state.value,
            "desired_artifact_ref": self.desired_artifact_ref,
            "desired_present": self.desired_present,
            "desired_generation": self.desired_generation,
            "routing_key": self.routing_key,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "last_activity_at": _iso(self.last_activity_at),
            "destroyed_at": _iso(self.destroyed_at),
            "owner_tags": dict(self.owner_tags),
            "observed": self.observed.to_dict() if self.observed else None,
            "retry_count": self.retry_count,
            "failed_step": self.failed_step,
            "retryable": self.retryable,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Environment":
        """Create from dictionary."""
        now = utcnow()
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            branch_id=data["branch_id"],
            kind=EnvironmentKind(data.get("kind", EnvironmentKind.EPHEMERAL.value)),
            lifecycle_state=LifecycleState(data.get("lifecycle_state", LifecycleState.PENDING.value)),
            desired_artifact_ref=data.get("desired_artifact_ref"),
            desired_present=data.get("desired_present", True),
            desired_generation=data.get("desired_generation", 0),
            routing_key=data.get("routing_key"),
            created_at=_parse(data.get("created_at")) or now,
            updated_at=_parse(data.get("updated_at")) or now,
            last_activity_at=_parse(data.get("last_activity_at")) or now,
            destroyed_at=_parse(data.get("destroyed_at")),
            owner_tags=dict(data.get("owner_tags") or {}),
            observed=InfrastructureRecord.from_dict(data["observed"]) if data.get("observed") else None,
            retry_count=data.get("retry_count", 0),
            failed_step=data.get("failed_step"),
            retryable=data.get("retryable", True),
            last_error=data.get("last_error"),
        )


# ============================================================================
# Intent types
# ============================================================================


@dataclass
class DesiredStateEntry:
    """A create/update/destroy intent for one (owner, branch) pair."""

    action: IntentAction
    owner_id: str
    branch_id: str
    generation: int
    source_event: SourceEventKind
    timestamp: datetime = field(default_factory=utcnow)
    artifact_ref: str | None = None
    kind: EnvironmentKind = EnvironmentKind.EPHEMERAL
    owner_tags: dict[str, str] = field(default_factory=dict)
    requester_id: str | None = None
    artifact_set: list[str] = field(default_factory=list)
    sequence: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "action": self.action.value,
            "owner_id": self.owner_id,
            "branch_id": self.branch_id,
            "generation": self.generation,
            "source_event": self.source_event.value,
            "timestamp": _iso(self.timestamp),
            "artifact_ref": self.artifact_ref,
            "kind": self.kind.value,
            "owner_tags": dict(self.owner_tags),
            "requester_id": self.requester_id,
            "artifact_set": list(self.artifact_set),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DesiredStateEntry":
        """Create from dictionary."""
        return cls(
            action=IntentAction(data["action"]),
            owner_id=data["owner_id"],
            branch_id=data["branch_id"],
            generation=data["generation"],
            source_event=SourceEventKind(data["source_event"]),
            timestamp=_parse(data.get("timestamp")) or utcnow(),
            artifact_ref=data.get("artifact_ref"),
            kind=EnvironmentKind(data.get("kind", EnvironmentKind.EPHEMERAL.value)),
            owner_tags=dict(data.get("owner_tags") or {}),
            requester_id=data.get("requester_id"),
            artifact_set=list(data.get("artifact_set") or []),
            sequence=data.get("sequence"),
        )


@dataclass
class SubmitResult:
    """Outcome of submitting an intent to the state store."""

    accepted: bool
    entry: DesiredStateEntry | None = None
    environment_id: str | None = None
    reason: str | None = None


# ============================================================================
# Source events
# ============================================================================


@dataclass
class BranchPushEvent:
    """A branch was pushed; sequence orders pushes for the same branch."""

    owner_id: str
    branch_id: str
    artifact_ref: str
    sequence: int
    owner_tags: dict[str, str] = field(default_factory=dict)


@dataclass
class BranchDeleteEvent:
    """A branch was deleted or merged."""

    owner_id: str
    branch_id: str
    sequence: int | None = None
    merged: bool = False


@dataclass
class ManualRequestEvent:
    """Operator or developer request issued outside the pipeline."""

    requester_id: str
    owner_id: str
    branch_id: str
    action: ManualAction
    artifact_ref: str | None = None
    requester_tags: dict[str, str] = field(default_factory=dict)


@dataclass
class SweepTickEvent:
    """Garbage collector decided an environment is idle."""

    environment_id: str
    reason: str = "idle"


SourceEvent = BranchPushEvent | BranchDeleteEvent | ManualRequestEvent | SweepTickEvent


# ============================================================================
# Promotion types
# ============================================================================


@dataclass
class PromotionRecord:
    """Links source environments to one integration environment."""

    id: str
    target_id: str
    source_ids: list[str]
    artifact_refs: list[str] = field(default_factory=list)
    merged_artifact_ref: str | None = None
    status: PromotionStatus = PromotionStatus.QUEUED
    requested_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def in_flight(self) -> bool:
        """True while the promotion holds its target."""
        return self.status == PromotionStatus.IN_FLIGHT

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "source_ids": list(self.source_ids),
            "artifact_refs": list(self.artifact_refs),
            "merged_artifact_ref": self.merged_artifact_ref,
            "status": self.status.value,
            "requested_at": _iso(self.requested_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PromotionRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            target_id=data["target_id"],
            source_ids=list(data.get("source_ids") or []),
            artifact_refs=list(data.get("artifact_refs") or []),
            merged_artifact_ref=data.get("merged_artifact_ref"),
            status=PromotionStatus(data.get("status", PromotionStatus.QUEUED.value)),
            requested_at=_parse(data.get("requested_at")) or utcnow(),
            started_at=_parse(data.get("started_at")),
            completed_at=_parse(data.get("completed_at")),
            error=data.get("error"),
        )


# ============================================================================
# Reconcile types
# ============================================================================


@dataclass
class ReconcileRecord:
    """One driver call attempt made while reconciling an environment."""

    environment_id: str
    action: str
    outcome: str
    duration_ms: int
    attempt: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the observability record shape."""
        return {
            "environmentId": self.environment_id,
            "action": self.action,
            "outcome": self.outcome,
            "durationMs": self.duration_ms,
            "attempt": self.attempt,
        }
