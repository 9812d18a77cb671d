"""Idle environment reclamation.

The garbage collector never tears anything down itself. It finds running
ephemeral environments whose last activity is older than the idle threshold
and submits a destroy intent for each through the DesiredStateSource, so GC
decisions go through the same staleness rules as every other intent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from branchyard.config import GarbageCollectorConfig
from branchyard.constants import SWEEPABLE_STATES, EnvironmentKind, LogEvent
from branchyard.logging import get_logger
from branchyard.types import Environment, SweepTickEvent, utcnow

if TYPE_CHECKING:
    from branchyard.desired_state import DesiredStateSource
    from branchyard.log_writer import StructuredLogWriter
    from branchyard.state import StateStore

logger = get_logger("gc")

_FALSE_VALUES = frozenset({"", "0", "false", "no", "off"})


@dataclass
class SweepCandidate:
    """An environment found idle past its threshold."""

    environment_id: str
    owner_id: str
    branch_id: str
    idle_hours: float
    threshold_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment_id": self.environment_id,
            "owner_id": self.owner_id,
            "branch_id": self.branch_id,
            "idle_hours": round(self.idle_hours, 2),
            "threshold_hours": self.threshold_hours,
        }


@dataclass
class SweepReport:
    """Result of one garbage collection sweep."""

    timestamp: datetime
    dry_run: bool
    scanned: int = 0
    candidates: list[SweepCandidate] = field(default_factory=list)
    submitted: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "dry_run": self.dry_run,
            "scanned": self.scanned,
            "candidates": [c.to_dict() for c in self.candidates],
            "submitted": list(self.submitted),
            "excluded": list(self.excluded),
        }


class GarbageCollector:
    """Periodic sweep of idle ephemeral environments.

    Only running or updating environments of kind ``ephemeral`` are scanned.
    Integration environments are left alone: promotions update them without
    refreshing ``last_activity_at``, so idleness says nothing about whether
    they are still wanted. They are removed by an explicit destroy.
    """

    def __init__(
        self,
        store: StateStore,
        source: DesiredStateSource,
        config: GarbageCollectorConfig | None = None,
        writer: StructuredLogWriter | None = None,
    ) -> None:
        """Initialize collector.

        Args:
            store: State store to scan
            source: Desired state source receiving destroy intents
            config: Idle threshold, exclusion and retention settings
            writer: Optional structured log writer
        """
        self.config = config or GarbageCollectorConfig()
        self._store = store
        self._source = source
        self._writer = writer

    def threshold_hours(self, environment: Environment) -> float:
        """Idle threshold for an environment, honouring its TTL tag."""
        raw = environment.owner_tags.get(self.config.ttl_tag_key)
        if raw is None:
            return self.config.idle_threshold_hours
        try:
            hours = float(raw)
        except ValueError:
            logger.warning(f"Ignoring non-numeric TTL tag {raw!r} on {environment.id}")
            return self.config.idle_threshold_hours
        if hours <= 0:
            logger.warning(f"Ignoring non-positive TTL tag {raw!r} on {environment.id}")
            return self.config.idle_threshold_hours
        return hours

    def is_excluded(self, environment: Environment) -> bool:
        """True when the environment carries the exclusion tag."""
        value = environment.owner_tags.get(self.config.exclusion_tag_key)
        return value is not None and value.strip().lower() not in _FALSE_VALUES

    def find_idle(self, now: datetime | None = None) -> tuple[list[SweepCandidate], list[str], int]:
        """Scan for idle environments without writing anything.

        Returns:
            Tuple of (candidates, excluded ids, environments scanned)
        """
        now = now or utcnow()
        environments = self._store.list_environments(
            states=SWEEPABLE_STATES, kinds={EnvironmentKind.EPHEMERAL}
        )
        candidates: list[SweepCandidate] = []
        excluded: list[str] = []
        for env in environments:
            if self.is_excluded(env):
                excluded.append(env.id)
                continue
            candidate = self._check(env, now)
            if candidate:
                candidates.append(candidate)
        return candidates, excluded, len(environments)

    def sweep(self, now: datetime | None = None, dry_run: bool | None = None) -> SweepReport:
        """Run one sweep.

        Args:
            now: Reference time (defaults to the current time)
            dry_run: Override ``gc.dry_run``; when true nothing is submitted

        Returns:
            SweepReport listing candidates and submitted destroys
        """
        now = now or utcnow()
        dry_run = self.config.dry_run if dry_run is None else dry_run
        self._store.load()

        candidates, excluded, scanned = self.find_idle(now)
        report = SweepReport(timestamp=now, dry_run=dry_run, scanned=scanned, candidates=candidates, excluded=excluded)

        if not dry_run:
            for candidate in candidates:
                # Re-check: a push may have landed since the scan
                current = self._store.get_environment(candidate.environment_id)
                if current is None or current.lifecycle_state not in SWEEPABLE_STATES or not self._check(current, now):
                    continue
                result = self._source.on_sweep(
                    SweepTickEvent(candidate.environment_id, reason=f"idle {candidate.idle_hours:.1f}h")
                )
                if result.accepted:
                    report.submitted.append(candidate.environment_id)

        summary = (
            f"GC sweep{' (dry run)' if dry_run else ''}: scanned {scanned}, "
            f"{len(candidates)} idle, {len(report.submitted)} destroy intents submitted"
        )
        logger.info(summary)
        if not dry_run:
            self._store.append_event(LogEvent.SWEEP_COMPLETE.value, report.to_dict())
        if self._writer:
            self._writer.emit("info", summary, event=LogEvent.SWEEP_COMPLETE, data=report.to_dict())
        return report

    def prune(self, now: datetime | None = None) -> list[str]:
        """Remove destroyed records past the retention window.

        Returns:
            Ids of pruned records
        """
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.config.retention_hours)
        return self._store.prune_destroyed(cutoff)

    def _check(self, env: Environment, now: datetime) -> SweepCandidate | None:
        threshold = self.threshold_hours(env)
        idle_hours = (now - env.last_activity_at).total_seconds() / 3600
        if idle_hours <= threshold:
            return None
        return SweepCandidate(env.id, env.owner_id, env.branch_id, idle_hours, threshold)
