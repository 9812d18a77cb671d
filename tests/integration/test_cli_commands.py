"""Integration tests for the branchyard command-line interface."""

import json
import time
from collections.abc import Generator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner, Result

from branchyard.cli import cli
from branchyard.logging import setup_logging
from branchyard.orchestrator import Orchestrator


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """Commands attach file handlers under tmp_path; detach them afterwards."""
    yield
    setup_logging(console_output=True, json_output=False)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """YAML configuration keeping state and logs under tmp_path."""
    path = tmp_path / "branchyard.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "state": {"directory": str(tmp_path / "state")},
                "logging": {"directory": str(tmp_path / "logs")},
                "reconciler": {"backoff_base_seconds": 0, "interval_seconds": 0.01},
                "ownership": {"operators": ["ops-bot"]},
            }
        )
    )
    return path


@pytest.fixture
def invoke(config_file: Path):
    """Run the CLI against the temporary configuration."""
    runner = CliRunner()

    def _invoke(*args: str) -> Result:
        return runner.invoke(cli, ["--config", str(config_file), *args])

    return _invoke


def status_of(invoke, environment_id: str) -> dict:
    """Environment record as reported by ``status --json``."""
    result = invoke("status", environment_id, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)["environments"][0]


class TestHelp:
    """Tests for command registration."""

    def test_lists_commands(self) -> None:
        """Test --help shows every command."""
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("init", "push", "delete", "request", "reconcile", "gc", "promote", "status", "retry", "run"):
            assert name in result.output

    def test_version(self) -> None:
        """Test --version prints the program name."""
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "branchyard" in result.output


class TestInit:
    """Tests for init."""

    def test_writes_default_config(self, tmp_path: Path) -> None:
        """Test init writes a YAML file and refuses to overwrite it."""
        path = tmp_path / "conf" / "config.yaml"
        runner = CliRunner()

        first = runner.invoke(cli, ["--config", str(path), "init"])
        second = runner.invoke(cli, ["--config", str(path), "init"])
        forced = runner.invoke(cli, ["--config", str(path), "init", "--force"])

        assert first.exit_code == 0
        assert "routing" in yaml.safe_load(path.read_text())
        assert second.exit_code == 1
        assert "already exists" in second.output
        assert forced.exit_code == 0


class TestEvents:
    """Tests for push, delete and request."""

    def test_push_and_reconcile(self, invoke) -> None:
        """Test a push with --reconcile ends with a running environment."""
        result = invoke("push", "alice", "feature/login", "app:1", "--sequence", "1", "--reconcile")

        assert result.exit_code == 0, result.output
        assert "Accepted create (generation 1)" in result.output
        assert "running" in result.output
        env = status_of(invoke, "alice--feature-login")
        assert env["lifecycle_state"] == "running"
        assert env["routing_key"] == "env-1"

    def test_stale_push(self, invoke) -> None:
        """Test a repeated sequence number is discarded."""
        invoke("push", "alice", "main", "app:1", "-s", "1")
        result = invoke("push", "alice", "main", "app:2", "-s", "1")
        assert result.exit_code == 0
        assert "Discarded" in result.output
        assert "stale" in result.output

    def test_bad_tag(self, invoke) -> None:
        """Test a tag without '=' is a usage error."""
        result = invoke("push", "alice", "main", "app:1", "-s", "1", "--tag", "oops")
        assert result.exit_code == 2

    def test_invalid_branch(self, invoke) -> None:
        """Test a branch that sanitizes to nothing fails."""
        result = invoke("push", "alice", "///", "app:1", "-s", "1")
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_delete_and_reconcile(self, invoke) -> None:
        """Test a delete with --reconcile destroys the environment."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")

        result = invoke("delete", "alice", "main", "--merged", "--reconcile")

        assert result.exit_code == 0, result.output
        assert "Accepted destroy" in result.output
        assert status_of(invoke, "alice--main")["lifecycle_state"] == "destroyed"

    def test_request_by_owner(self, invoke) -> None:
        """Test the owner may ping their environment."""
        invoke("push", "alice", "main", "app:1", "-s", "1")
        result = invoke("request", "ping", "alice", "main", "--requester", "alice")
        assert result.exit_code == 0, result.output
        assert "Accepted" in result.output

    def test_request_by_stranger(self, invoke) -> None:
        """Test a stranger's destroy is refused."""
        invoke("push", "alice", "main", "app:1", "-s", "1")
        result = invoke("request", "destroy", "alice", "main", "-r", "mallory")
        assert result.exit_code == 1
        assert "mallory" in result.output
        assert status_of(invoke, "alice--main")["desired_present"] is True

    def test_request_by_operator(self, invoke) -> None:
        """Test a configured operator may destroy anyone's environment."""
        invoke("push", "alice", "main", "app:1", "-s", "1")
        result = invoke("request", "destroy", "alice", "main", "-r", "ops-bot")
        assert result.exit_code == 0, result.output
        assert status_of(invoke, "alice--main")["desired_present"] is False


class TestReconcile:
    """Tests for reconcile."""

    def test_nothing_to_do(self, invoke) -> None:
        """Test an empty store reports nothing to reconcile."""
        result = invoke("reconcile")
        assert result.exit_code == 0
        assert "Nothing to reconcile" in result.output

    def test_reconcile_all_json(self, invoke) -> None:
        """Test pending environments are reconciled in one pass."""
        invoke("push", "alice", "main", "app:1", "-s", "1")
        invoke("push", "bob", "main", "app:1", "-s", "1")

        result = invoke("reconcile", "--json")

        assert result.exit_code == 0, result.output
        outcomes = json.loads(result.output)["outcomes"]
        assert sorted(o["environment_id"] for o in outcomes) == ["alice--main", "bob--main"]
        assert {o["final_state"] for o in outcomes} == {"running"}

    def test_unknown_environment(self, invoke) -> None:
        """Test reconciling an unknown id fails."""
        result = invoke("reconcile", "nobody--main")
        assert result.exit_code == 1


class TestStatus:
    """Tests for status."""

    def test_empty(self, invoke) -> None:
        """Test an empty store prints a placeholder."""
        result = invoke("status")
        assert result.exit_code == 0
        assert "No environments" in result.output

    def test_unknown(self, invoke) -> None:
        """Test an unknown id exits non-zero."""
        result = invoke("status", "nobody--main")
        assert result.exit_code == 1
        assert "Unknown environment" in result.output

    def test_state_filter_and_events(self, invoke) -> None:
        """Test --state filters and --events includes audit events."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")
        invoke("push", "bob", "main", "app:1", "-s", "1")

        result = invoke("status", "--state", "pending", "--events", "5", "--json")

        payload = json.loads(result.output)
        assert [e["id"] for e in payload["environments"]] == ["bob--main"]
        assert payload["events"]

    def test_detail_view(self, invoke) -> None:
        """Test the detail view shows the routing key."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")
        result = invoke("status", "alice--main")
        assert result.exit_code == 0
        assert "env-1" in result.output


class TestRetry:
    """Tests for retry."""

    def test_requires_target(self, invoke) -> None:
        """Test retry without an id or --all-failed fails."""
        result = invoke("retry")
        assert result.exit_code == 1
        assert "--all-failed" in result.output

    def test_not_failed(self, invoke) -> None:
        """Test retrying a running environment fails."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")
        result = invoke("retry", "alice--main")
        assert result.exit_code == 1
        assert "not failed" in result.output

    def test_no_failed_environments(self, invoke) -> None:
        """Test --all-failed with nothing failed is not an error."""
        result = invoke("retry", "--all-failed")
        assert result.exit_code == 0
        assert "No failed environments" in result.output


class TestPromote:
    """Tests for integration and promote."""

    def test_promote_into_integration(self, invoke) -> None:
        """Test promoting two branches merges their artifacts."""
        invoke("push", "alice", "feature-a", "a:1", "-s", "1", "--reconcile")
        invoke("push", "bob", "feature-b", "b:2", "-s", "1", "--reconcile")
        created = invoke("integration", "staging")
        assert created.exit_code == 0, created.output
        assert "integration--staging" in created.output

        result = invoke("promote", "alice--feature-a", "bob--feature-b", "--target", "integration--staging")

        assert result.exit_code == 0, result.output
        assert "now serves" in result.output
        assert status_of(invoke, "integration--staging")["observed"]["artifact_ref"] == "a:1+b:2"

    def test_promote_into_ephemeral(self, invoke) -> None:
        """Test an ephemeral target is rejected."""
        invoke("push", "alice", "feature-a", "a:1", "-s", "1")
        invoke("push", "bob", "feature-b", "b:2", "-s", "1")
        result = invoke("promote", "alice--feature-a", "--target", "bob--feature-b")
        assert result.exit_code == 1
        assert "not integration" in result.output

    def test_integration_exists(self, invoke) -> None:
        """Test requesting an existing integration environment is reported."""
        invoke("integration", "staging")
        result = invoke("integration", "staging")
        assert result.exit_code == 0
        assert "already exists" in result.output


class TestGc:
    """Tests for gc."""

    def test_dry_run_json(self, invoke) -> None:
        """Test a dry run reports without submitting."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")
        result = invoke("gc", "--dry-run", "--json")
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["dry_run"] is True
        assert report["scanned"] == 1
        assert report["submitted"] == []

    def test_ttl_expired_environment_reclaimed(self, invoke) -> None:
        """Test an environment past its TTL tag is destroyed by gc --reconcile."""
        invoke(
            "push", "alice", "main", "app:1", "-s", "1", "--tag", "branchyard/ttl-hours=0.0001", "--reconcile"
        )
        time.sleep(0.5)

        result = invoke("gc", "--reconcile", "--json")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["submitted"] == ["alice--main"]
        assert status_of(invoke, "alice--main")["lifecycle_state"] == "destroyed"

    def test_table_output(self, invoke) -> None:
        """Test the text report on an idle-free store."""
        result = invoke("gc")
        assert result.exit_code == 0
        assert "No idle environments" in result.output


class TestLogsAndRun:
    """Tests for logs and run."""

    def test_logs_empty(self, invoke) -> None:
        """Test logs before anything happened."""
        result = invoke("logs")
        assert result.exit_code == 0
        assert "No records" in result.output

    def test_logs_after_reconcile(self, invoke) -> None:
        """Test reconcile attempts are readable per environment."""
        invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")
        invoke("push", "bob", "main", "app:1", "-s", "1", "--reconcile")

        result = invoke("logs", "--event", "reconcile_attempt", "-e", "alice--main", "--json")

        assert result.exit_code == 0, result.output
        records = [json.loads(line) for line in result.output.splitlines()]
        assert {r["data"]["environmentId"] for r in records} == {"alice--main"}
        assert "register_revision" in {r["data"]["action"] for r in records}

    def test_run_max_ticks(self, invoke) -> None:
        """Test run converges pending environments and stops."""
        invoke("push", "alice", "main", "app:1", "-s", "1")

        result = invoke("run", "--max-ticks", "2")

        assert result.exit_code == 0, result.output
        assert "Stopped after 2 ticks" in result.output
        assert status_of(invoke, "alice--main")["lifecycle_state"] == "running"


class TestCleanup:
    """Tests for releasing resources when a command fails."""

    @pytest.mark.parametrize(
        "args",
        [
            ("push", "alice", "///", "app:1", "-s", "1"),
            ("reconcile", "nobody--main"),
            ("retry", "nobody--main"),
            ("promote", "alice--main", "--target", "integration--nope"),
        ],
    )
    def test_orchestrator_closed_on_error(self, invoke, args: tuple[str, ...]) -> None:
        """Test the orchestrator is closed even when the command fails."""
        with patch.object(Orchestrator, "close", autospec=True) as close:
            result = invoke(*args)

        assert result.exit_code == 1
        close.assert_called_once()

    def test_orchestrator_closed_on_success(self, invoke) -> None:
        """Test a successful command closes the orchestrator once."""
        with patch.object(Orchestrator, "close", autospec=True) as close:
            result = invoke("push", "alice", "main", "app:1", "-s", "1", "--reconcile")

        assert result.exit_code == 0, result.output
        close.assert_called_once()
