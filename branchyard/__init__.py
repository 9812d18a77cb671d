"""Branchyard - ephemeral per-branch environment orchestrator.

Every pushed branch gets its own running environment; idle and merged
branches are reclaimed automatically.
"""

__version__ = "0.1.0"

from branchyard.config import BranchyardConfig
from branchyard.constants import DriverOutcome, EnvironmentKind, LifecycleState
from branchyard.driver import DriverResult, InfrastructureDriver
from branchyard.exceptions import BranchyardError
from branchyard.orchestrator import Orchestrator
from branchyard.types import (
    BranchDeleteEvent,
    BranchPushEvent,
    Environment,
    ManualRequestEvent,
    SweepTickEvent,
)

__all__ = [
    "__version__",
    "BranchyardConfig",
    "BranchyardError",
    "DriverOutcome",
    "DriverResult",
    "EnvironmentKind",
    "InfrastructureDriver",
    "LifecycleState",
    "Orchestrator",
    # Events
    "BranchDeleteEvent",
    "BranchPushEvent",
    "Environment",
    "ManualRequestEvent",
    "SweepTickEvent",
]
