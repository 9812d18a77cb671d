"""Promotion repository: promotion record persistence."""

from __future__ import annotations

from typing import TYPE_CHECKING

from branchyard.constants import PromotionStatus
from branchyard.exceptions import StateError
from branchyard.types import PromotionRecord

if TYPE_CHECKING:
    from branchyard.state.persistence import PersistenceLayer


class PromotionRepo:
    """Promotion record CRUD operations."""

    def __init__(self, persistence: PersistenceLayer) -> None:
        self._persistence = persistence

    def save(self, record: PromotionRecord) -> None:
        """Insert or update a promotion record.

        Raises:
            StateError: If saving would leave two in-flight records for one target
        """
        with self._persistence.atomic_update():
            promotions = self._persistence.state.setdefault("promotions", {})
            if record.status == PromotionStatus.IN_FLIGHT:
                for other in promotions.values():
                    if (
                        other["id"] != record.id
                        and other["target_id"] == record.target_id
                        and other["status"] == PromotionStatus.IN_FLIGHT.value
                    ):
                        raise StateError(
                            "Promotion already in flight for target",
                            {"target_id": record.target_id, "promotion_id": other["id"]},
                        )
            promotions[record.id] = record.to_dict()

    def get(self, promotion_id: str) -> PromotionRecord | None:
        """Get a promotion record by id."""
        with self._persistence.lock:
            data = self._persistence.state.get("promotions", {}).get(promotion_id)
            return PromotionRecord.from_dict(data) if data else None

    def list(self, target_id: str | None = None) -> list[PromotionRecord]:
        """Promotion records ordered by request time."""
        with self._persistence.lock:
            records = [PromotionRecord.from_dict(d) for d in self._persistence.state.get("promotions", {}).values()]
        if target_id is not None:
            records = [r for r in records if r.target_id == target_id]
        return sorted(records, key=lambda r: r.requested_at)

    def in_flight(self, target_id: str) -> PromotionRecord | None:
        """The in-flight record for a target, if any."""
        for record in self.list(target_id):
            if record.in_flight:
                return record
        return None
