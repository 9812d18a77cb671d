"""Infrastructure driver abstraction.

The orchestrator never starts processes or talks to a platform API itself.
It issues abstract, idempotent provisioning calls through an
InfrastructureDriver and interprets the reported outcome.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from branchyard.constants import DriverOutcome
from branchyard.exceptions import ConfigurationError
from branchyard.logging import get_logger

if TYPE_CHECKING:
    from branchyard.config import DriverConfig

logger = get_logger("driver")

SUCCESS_OUTCOMES = frozenset({DriverOutcome.OK, DriverOutcome.ALREADY_SATISFIED})


@dataclass
class DriverResult:
    """Outcome of one driver call."""

    outcome: DriverOutcome
    handle: str | None = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        """True for ok and already-satisfied outcomes."""
        return self.outcome in SUCCESS_OUTCOMES

    @classmethod
    def ok(cls, handle: str | None = None) -> DriverResult:
        return cls(DriverOutcome.OK, handle)


@dataclass
class ResourceSpec:
    """Workload sizing passed through to the substrate untouched."""

    cpu: str = "250m"
    memory: str = "512Mi"
    replicas: int = 1
    env: dict[str, str] | None = None


class InfrastructureDriver(ABC):
    """Abstract substrate driver.

    Every operation must be idempotent: repeating a call with the same
    arguments after it succeeded reports ``ALREADY_SATISFIED`` (or ``OK``)
    and returns the same handle.
    """

    @abstractmethod
    def register_revision(self, environment_id: str, artifact_ref: str) -> DriverResult:
        """Register an artifact revision; handle is the revision handle."""

    @abstractmethod
    def create_or_update_workload(
        self, environment_id: str, revision_handle: str, resource_spec: ResourceSpec
    ) -> DriverResult:
        """Create or roll the environment's workload; handle is the workload handle."""

    @abstractmethod
    def delete_workload(self, workload_handle: str) -> DriverResult:
        """Delete a workload."""

    @abstractmethod
    def create_routing_rule(
        self, environment_id: str, routing_key: int | str, workload_handle: str
    ) -> DriverResult:
        """Route a key to a workload; handle is the routing rule handle."""

    @abstractmethod
    def delete_routing_rule(self, rule_handle: str) -> DriverResult:
        """Delete a routing rule."""

    @abstractmethod
    def ensure_log_sink(self, environment_id: str) -> DriverResult:
        """Ensure a log sink exists; handle is the log sink handle."""


def load_driver(config: DriverConfig) -> InfrastructureDriver:
    """Build the configured driver.

    ``config.factory`` is a ``module:callable`` path; the callable receives
    ``config.options`` as keyword arguments. Without a factory the in-memory
    substrate is used.

    Raises:
        ConfigurationError: If the factory cannot be imported or returns a non-driver
    """
    if not config.factory:
        from branchyard.drivers.memory import InMemoryDriver

        return InMemoryDriver(**config.options)

    module_name, _, attr = config.factory.partition(":")
    if not module_name or not attr:
        raise ConfigurationError("driver.factory must look like 'module:callable'", {"factory": config.factory})
    try:
        module = importlib.import_module(module_name)
        factory: Any = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load driver factory: {e}", {"factory": config.factory}) from e

    driver = factory(**config.options)
    if not isinstance(driver, InfrastructureDriver):
        raise ConfigurationError(
            "Driver factory did not return an InfrastructureDriver",
            {"factory": config.factory, "type": type(driver).__name__},
        )
    logger.info(f"Loaded infrastructure driver {config.factory}")
    return driver
