"""Tests for the in-memory substrate driver."""

import pytest

from branchyard.config import DriverConfig
from branchyard.constants import DriverAction, DriverOutcome
from branchyard.driver import DriverResult, InfrastructureDriver, ResourceSpec, load_driver
from branchyard.drivers.memory import InMemoryDriver
from branchyard.exceptions import ConfigurationError

OK = DriverOutcome.OK
SATISFIED = DriverOutcome.ALREADY_SATISFIED


def build_memory_driver(**options) -> InMemoryDriver:
    """Factory used by the load_driver tests."""
    return InMemoryDriver(**options)


def build_not_a_driver() -> object:
    """Factory returning the wrong type."""
    return object()


@pytest.fixture
def provisioned() -> tuple[InMemoryDriver, dict[str, str]]:
    """Driver holding one fully provisioned environment."""
    driver = InMemoryDriver()
    revision = driver.register_revision("alice--main", "app:1").handle
    workload = driver.create_or_update_workload("alice--main", revision, ResourceSpec()).handle
    rule = driver.create_routing_rule("alice--main", "env-1", workload).handle
    sink = driver.ensure_log_sink("alice--main").handle
    return driver, {"revision": revision, "workload": workload, "rule": rule, "sink": sink}


class TestIdempotence:
    """Tests for repeated calls."""

    def test_register_revision_repeat(self) -> None:
        """Test registering the same artifact twice returns the same handle."""
        driver = InMemoryDriver()
        first = driver.register_revision("alice--main", "app:1")
        second = driver.register_revision("alice--main", "app:1")
        assert first.outcome == OK
        assert second.outcome == SATISFIED
        assert second.handle == first.handle

    def test_new_artifact_new_revision(self) -> None:
        """Test a new artifact registers a new revision."""
        driver = InMemoryDriver()
        first = driver.register_revision("alice--main", "app:1")
        second = driver.register_revision("alice--main", "app:2")
        assert second.outcome == OK
        assert second.handle != first.handle

    def test_full_provision_repeat(self, provisioned) -> None:
        """Test every create call reports already-satisfied when repeated."""
        driver, handles = provisioned
        assert driver.create_or_update_workload("alice--main", handles["revision"], ResourceSpec()).outcome == SATISFIED
        assert driver.create_routing_rule("alice--main", "env-1", handles["workload"]).outcome == SATISFIED
        assert driver.ensure_log_sink("alice--main").outcome == SATISFIED

    def test_deletes_repeat(self, provisioned) -> None:
        """Test deleting twice reports already-satisfied the second time."""
        driver, handles = provisioned
        assert driver.delete_routing_rule(handles["rule"]).outcome == OK
        assert driver.delete_routing_rule(handles["rule"]).outcome == SATISFIED
        assert driver.delete_workload(handles["workload"]).outcome == OK
        assert driver.delete_workload(handles["workload"]).outcome == SATISFIED
        assert driver.rules == {}
        assert driver.workloads == {}

    def test_workload_needs_known_revision(self) -> None:
        """Test an unknown revision handle is a permanent failure."""
        result = InMemoryDriver().create_or_update_workload("alice--main", "rev-missing", ResourceSpec())
        assert result.outcome == DriverOutcome.PERMANENT_FAILURE


class TestConflicts:
    """Tests for names and keys held outside the store."""

    def test_foreign_name(self) -> None:
        """Test a foreign name conflicts on revision and workload creation."""
        driver = InMemoryDriver()
        driver.foreign_names.add("alice--main")
        assert driver.register_revision("alice--main", "app:1").outcome == DriverOutcome.CONFLICT

    def test_foreign_key(self) -> None:
        """Test a foreign routing key conflicts on rule creation."""
        driver = InMemoryDriver()
        driver.foreign_keys.add("env-1")
        assert driver.create_routing_rule("alice--main", "env-1", "wl-x").outcome == DriverOutcome.CONFLICT

    def test_key_held_by_other_environment(self, provisioned) -> None:
        """Test a key already routed to another environment conflicts."""
        driver, _ = provisioned
        result = driver.create_routing_rule("bob--main", "env-1", "wl-bob")
        assert result.outcome == DriverOutcome.CONFLICT
        assert driver.rule_for_key("env-1") == "rule-alice--main"


class TestInjection:
    """Tests for scripted faults."""

    def test_inject_outcome_once(self) -> None:
        """Test an injected outcome applies to the next matching call only."""
        driver = InMemoryDriver()
        driver.inject(DriverAction.ENSURE_LOG_SINK, DriverOutcome.TRANSIENT_FAILURE)

        assert driver.ensure_log_sink("alice--main").outcome == DriverOutcome.TRANSIENT_FAILURE
        assert driver.ensure_log_sink("alice--main").outcome == OK

    def test_inject_times(self) -> None:
        """Test times repeats the injected outcome."""
        driver = InMemoryDriver()
        driver.inject(DriverAction.ENSURE_LOG_SINK, DriverOutcome.TRANSIENT_FAILURE, times=2)
        outcomes = [driver.ensure_log_sink("a").outcome for _ in range(3)]
        assert outcomes == [DriverOutcome.TRANSIENT_FAILURE, DriverOutcome.TRANSIENT_FAILURE, OK]

    def test_inject_scoped_to_environment(self) -> None:
        """Test a scoped fault skips other environments."""
        driver = InMemoryDriver()
        driver.inject(DriverAction.ENSURE_LOG_SINK, DriverOutcome.PERMANENT_FAILURE, environment_id="bob--main")

        assert driver.ensure_log_sink("alice--main").outcome == OK
        assert driver.ensure_log_sink("bob--main").outcome == DriverOutcome.PERMANENT_FAILURE

    def test_inject_on_delete_matches_owner(self, provisioned) -> None:
        """Test delete faults match the environment owning the handle."""
        driver, handles = provisioned
        driver.inject(DriverAction.DELETE_ROUTING_RULE, DriverOutcome.TRANSIENT_FAILURE, environment_id="alice--main")

        assert driver.delete_routing_rule(handles["rule"]).outcome == DriverOutcome.TRANSIENT_FAILURE
        assert handles["rule"] in driver.rules

    def test_delay_only_executes_normally(self) -> None:
        """Test a delay without an outcome still performs the call."""
        driver = InMemoryDriver()
        driver.inject(DriverAction.ENSURE_LOG_SINK, delay_seconds=0.01)
        assert driver.ensure_log_sink("alice--main").outcome == OK
        assert "alice--main" in driver.log_sinks


class TestCallLog:
    """Tests for recorded calls."""

    def test_calls_recorded_and_filtered(self, provisioned) -> None:
        """Test calls are recorded with their outcome."""
        driver, _ = provisioned
        assert len(driver.calls) == 4
        assert len(driver.calls_for(DriverAction.REGISTER_REVISION)) == 1
        assert len(driver.calls_for(environment_id="alice--main")) == 4

        driver.reset_calls()
        assert driver.calls_for() == []


class TestLoadDriver:
    """Tests for driver selection from configuration."""

    def test_default_is_memory(self) -> None:
        """Test no factory gives the in-memory driver."""
        assert isinstance(load_driver(DriverConfig()), InMemoryDriver)

    def test_factory_with_options(self) -> None:
        """Test a module:callable factory receives options."""
        driver = load_driver(
            DriverConfig(factory=f"{__name__}:build_memory_driver", options={"latency_seconds": 0.0})
        )
        assert isinstance(driver, InfrastructureDriver)

    @pytest.mark.parametrize(
        "factory",
        ["no-colon", "missing_module_xyz:build", f"{__name__}:does_not_exist", f"{__name__}:build_not_a_driver"],
    )
    def test_bad_factory(self, factory: str) -> None:
        """Test bad factories raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            load_driver(DriverConfig(factory=factory))


class TestDriverResult:
    """Tests for DriverResult."""

    @pytest.mark.parametrize(
        "outcome,succeeded",
        [
            (OK, True),
            (SATISFIED, True),
            (DriverOutcome.CONFLICT, False),
            (DriverOutcome.TRANSIENT_FAILURE, False),
            (DriverOutcome.PERMANENT_FAILURE, False),
        ],
    )
    def test_succeeded(self, outcome: DriverOutcome, succeeded: bool) -> None:
        """Test which outcomes count as success."""
        assert DriverResult(outcome).succeeded is succeeded

    def test_ok_helper(self) -> None:
        """Test the ok constructor."""
        result = DriverResult.ok("h-1")
        assert result.outcome == OK
        assert result.handle == "h-1"
