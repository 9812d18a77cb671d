"""Pytest configuration and fixtures for branchyard tests."""

from collections.abc import Generator
from pathlib import Path

import pytest

from branchyard.config import BranchyardConfig
from branchyard.drivers.memory import InMemoryDriver
from branchyard.log_writer import StructuredLogWriter
from branchyard.orchestrator import Orchestrator
from branchyard.state import StateStore
from branchyard.types import BranchPushEvent, Environment


@pytest.fixture
def config(tmp_path: Path) -> BranchyardConfig:
    """Configuration rooted in a temporary directory with instant backoff.

    Returns:
        BranchyardConfig instance
    """
    return BranchyardConfig.from_dict(
        {
            "state": {"directory": str(tmp_path / "state")},
            "logging": {"directory": str(tmp_path / "logs")},
            "reconciler": {
                "backoff_base_seconds": 0,
                "call_timeout_seconds": 5.0,
                "interval_seconds": 0.01,
            },
            "routing": {"range_start": 1, "range_end": 50},
            "ownership": {"operators": ["ops-bot"]},
        }
    )


@pytest.fixture
def store(config: BranchyardConfig) -> StateStore:
    """Empty state store in the temporary state directory."""
    return StateStore.from_config(config)


@pytest.fixture
def driver() -> InMemoryDriver:
    """Fresh in-memory substrate."""
    return InMemoryDriver()


@pytest.fixture
def writer(config: BranchyardConfig) -> Generator[StructuredLogWriter, None, None]:
    """Structured writer in the temporary log directory."""
    log_writer = StructuredLogWriter(config.logging.directory)
    yield log_writer
    log_writer.close()


@pytest.fixture
def orchestrator(
    config: BranchyardConfig, store: StateStore, driver: InMemoryDriver, writer: StructuredLogWriter
) -> Orchestrator:
    """Fully wired orchestrator over the in-memory driver."""
    return Orchestrator(config, store=store, driver=driver, writer=writer)


@pytest.fixture
def push(orchestrator: Orchestrator):
    """Submit a branch push and return the accepted environment id."""

    def _push(owner: str, branch: str, artifact: str, sequence: int, **tags: str) -> str | None:
        result = orchestrator.handle(BranchPushEvent(owner, branch, artifact, sequence, owner_tags=tags))
        return result.environment_id

    return _push


@pytest.fixture
def running(orchestrator: Orchestrator, push):
    """Push and reconcile until the environment runs; returns the Environment."""

    def _running(owner: str = "alice", branch: str = "feature/login", artifact: str = "app:1") -> Environment:
        env_id = push(owner, branch, artifact, 1)
        outcome = orchestrator.reconciler.reconcile_environment(env_id)
        assert outcome.error is None, outcome.error
        env = orchestrator.store.get_environment(outcome.environment_id)
        assert env is not None
        return env

    return _running
