"""Environment lifecycle state machine.

Happy path is pending -> provisioning -> running -> draining -> destroyed, with
running <-> updating for new artifacts. failed is reachable from provisioning,
updating and draining, and leaves only through a retry or a destroy.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from branchyard.constants import LifecycleState
from branchyard.exceptions import InvalidTransitionError
from branchyard.logging import get_logger
from branchyard.types import utcnow

if TYPE_CHECKING:
    from branchyard.types import Environment

logger = get_logger("lifecycle")

S = LifecycleState

TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    S.PENDING: frozenset({S.PROVISIONING, S.DRAINING}),
    S.PROVISIONING: frozenset({S.RUNNING, S.FAILED}),
    S.RUNNING: frozenset({S.UPDATING, S.DRAINING}),
    S.UPDATING: frozenset({S.RUNNING, S.FAILED}),
    S.DRAINING: frozenset({S.DESTROYED, S.FAILED}),
    S.DESTROYED: frozenset(),
    S.FAILED: frozenset({S.PROVISIONING, S.UPDATING, S.DRAINING}),
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """Check whether a lifecycle transition is allowed."""
    return target in TRANSITIONS[current]


def transition(environment: Environment, target: LifecycleState, now: datetime | None = None) -> None:
    """Move an environment to a new lifecycle state in place.

    Args:
        environment: Environment to mutate
        target: Requested state
        now: Timestamp for bookkeeping fields

    Raises:
        InvalidTransitionError: If the state machine does not allow the move
    """
    current = environment.lifecycle_state
    if not can_transition(current, target):
        raise InvalidTransitionError(environment.id, current.value, target.value)

    now = now or utcnow()
    environment.lifecycle_state = target
    environment.updated_at = now
    if target == S.DESTROYED:
        environment.destroyed_at = now
    logger.debug(f"{environment.id}: {current.value} -> {target.value}")
