"""Execution log: append-only audit events stored with the state."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from branchyard.state.persistence import PersistenceLayer


class ExecutionLog:
    """Capped audit event log."""

    def __init__(self, persistence: PersistenceLayer, max_events: int = 1000) -> None:
        self._persistence = persistence
        self._max_events = max_events

    def append_event(self, event_type: str, data: dict[str, Any] | None = None) -> None:
        """Append an event to the execution log.

        Args:
            event_type: Type of event
            data: Event data
        """
        event = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event": event_type,
            "data": data or {},
        }
        with self._persistence.atomic_update():
            events = self._persistence.state.setdefault("events", [])
            events.append(event)
            if self._max_events and len(events) > self._max_events:
                del events[: len(events) - self._max_events]

    def get_events(self, limit: int | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        """Get execution events, newest last.

        Args:
            limit: Maximum number of events to return
            event_type: Only events of this type

        Returns:
            List of events
        """
        with self._persistence.lock:
            events = list(self._persistence.state.get("events", []))
        if event_type is not None:
            events = [e for e in events if e["event"] == event_type]
        if limit:
            return events[-limit:]
        return events
