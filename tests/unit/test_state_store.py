"""Tests for the branchyard state store."""

import json
import threading
from datetime import timedelta
from pathlib import Path

import pytest

from branchyard.constants import (
    EnvironmentKind,
    IntentAction,
    LifecycleState,
    PromotionStatus,
    SourceEventKind,
)
from branchyard.exceptions import StateError
from branchyard.state import StateStore
from branchyard.types import DesiredStateEntry, Environment, InfrastructureRecord, PromotionRecord, utcnow


def make_env(env_id: str = "alice--main", owner: str = "alice", branch: str = "main", **kwargs) -> Environment:
    """Build an environment record."""
    return Environment(id=env_id, owner_id=owner, branch_id=branch, **kwargs)


def make_entry(
    generation: int, owner: str = "alice", branch: str = "main", sequence: int | None = None
) -> DesiredStateEntry:
    """Build a create intent."""
    return DesiredStateEntry(
        action=IntentAction.CREATE,
        owner_id=owner,
        branch_id=branch,
        generation=generation,
        source_event=SourceEventKind.BRANCH_PUSH,
        artifact_ref=f"app:{generation}",
        sequence=sequence,
    )


@pytest.fixture
def state(tmp_path: Path) -> StateStore:
    """Store in a temporary directory."""
    return StateStore(state_dir=tmp_path)


class TestPersistence:
    """Tests for the on-disk format."""

    def test_state_file_written_on_update(self, state: StateStore, tmp_path: Path) -> None:
        """Test the first mutation creates the JSON file."""
        assert not state.exists()
        state.insert_environment(make_env())

        assert state.exists()
        data = json.loads((tmp_path / "environments.json").read_text())
        assert "alice--main" in data["environments"]

    def test_backup_kept(self, state: StateStore, tmp_path: Path) -> None:
        """Test a .bak copy of the previous file is written."""
        state.insert_environment(make_env())
        state.append_event("touch")
        assert (tmp_path / "environments.json.bak").exists()

    def test_reload_in_new_instance(self, state: StateStore, tmp_path: Path) -> None:
        """Test records survive a restart."""
        env = make_env(routing_key="env-3", owner_tags={"owner": "alice"})
        env.observed = InfrastructureRecord(workload_handle="wl-1", artifact_ref="app:1")
        state.insert_environment(env)

        reopened = StateStore(state_dir=tmp_path).get_environment("alice--main")

        assert reopened is not None
        assert reopened.routing_key == "env-3"
        assert reopened.owner_tags == {"owner": "alice"}
        assert reopened.deployed_artifact_ref == "app:1"

    def test_corrupt_file_raises_on_load(self, state: StateStore, tmp_path: Path) -> None:
        """Test an unparsable state file raises StateError."""
        (tmp_path / "environments.json").write_text("{not json")
        with pytest.raises(StateError):
            state.load()

    def test_transaction_rolls_back(self, state: StateStore) -> None:
        """Test an exception inside a transaction writes nothing."""
        state.insert_environment(make_env())

        with pytest.raises(RuntimeError):
            with state.transaction():
                env = state.get_environment("alice--main")
                env.desired_present = False
                state.save_environment(env)
                raise RuntimeError("boom")

        assert state.get_environment("alice--main").desired_present is True

    def test_delete(self, state: StateStore) -> None:
        """Test delete removes the state file."""
        state.insert_environment(make_env())
        state.delete()
        assert not state.exists()


class TestEnvironments:
    """Tests for environment records."""

    def test_get_by_pair(self, state: StateStore) -> None:
        """Test lookups by (owner, branch)."""
        state.insert_environment(make_env(branch="feature/x", env_id="alice--feature-x"))
        env = state.get_environment_by_pair("alice", "feature/x")
        assert env is not None
        assert env.id == "alice--feature-x"
        assert state.identity_owner("alice--feature-x") == ("alice", "feature/x")
        assert state.identity_owner("nobody") is None

    def test_second_live_record_for_pair_rejected(self, state: StateStore) -> None:
        """Test at most one live environment per pair."""
        state.insert_environment(make_env())
        with pytest.raises(StateError):
            state.insert_environment(make_env(env_id="alice--main-2"))

    def test_destroyed_record_retired_on_recreate(self, state: StateStore) -> None:
        """Test a fresh create moves the destroyed record to the retired list."""
        state.insert_environment(make_env(lifecycle_state=LifecycleState.DESTROYED, destroyed_at=utcnow()))
        state.insert_environment(make_env())

        current = state.get_environment("alice--main")
        assert current.lifecycle_state == LifecycleState.PENDING
        assert [e.lifecycle_state for e in state.retired_environments()] == [LifecycleState.DESTROYED]

    def test_save_unknown_rejected(self, state: StateStore) -> None:
        """Test saving a record that was never inserted fails."""
        with pytest.raises(StateError):
            state.save_environment(make_env())

    def test_list_filters(self, state: StateStore) -> None:
        """Test filtering by state and kind."""
        state.insert_environment(make_env())
        state.insert_environment(make_env("bob--main", owner="bob", lifecycle_state=LifecycleState.RUNNING))
        state.insert_environment(
            make_env("integration--staging", owner="integration", branch="staging", kind=EnvironmentKind.INTEGRATION)
        )

        running = state.list_environments(states={LifecycleState.RUNNING})
        integration = state.list_environments(kinds={EnvironmentKind.INTEGRATION})

        assert [e.id for e in running] == ["bob--main"]
        assert [e.id for e in integration] == ["integration--staging"]
        assert len(state.list_environments()) == 3

    def test_rekey_moves_record_and_routing(self, state: StateStore) -> None:
        """Test rekey moves the record, the pair index and routing reservations."""
        state.insert_environment(make_env(routing_key="env-1"))
        state.reserve_routing_key(1, "alice--main")

        env = state.rekey_environment("alice--main", "alice--main-abc123")

        assert env.id == "alice--main-abc123"
        assert state.get_environment("alice--main") is None
        assert state.get_environment_by_pair("alice", "main").id == "alice--main-abc123"
        assert state.routing_table() == {1: "alice--main-abc123"}

    def test_rekey_refused_with_resources(self, state: StateStore) -> None:
        """Test a record holding substrate resources cannot be re-keyed."""
        state.insert_environment(make_env(observed=InfrastructureRecord(workload_handle="wl-1")))
        with pytest.raises(StateError):
            state.rekey_environment("alice--main", "alice--main-abc123")

    def test_prune_destroyed(self, state: StateStore) -> None:
        """Test destroyed records past the cutoff are removed, newer ones kept."""
        now = utcnow()
        state.insert_environment(
            make_env(lifecycle_state=LifecycleState.DESTROYED, destroyed_at=now - timedelta(days=10))
        )
        state.insert_environment(
            make_env("bob--main", owner="bob", lifecycle_state=LifecycleState.DESTROYED, destroyed_at=now)
        )
        state.insert_environment(make_env("carol--main", owner="carol", lifecycle_state=LifecycleState.RUNNING))

        pruned = state.prune_destroyed(now - timedelta(days=7))

        assert pruned == ["alice--main"]
        assert state.get_environment("alice--main") is None
        assert state.get_environment_by_pair("alice", "main") is None
        assert state.get_environment("bob--main") is not None
        assert state.get_environment("carol--main") is not None


class TestIntents:
    """Tests for generation bookkeeping."""

    def test_accept_raises_high_water_mark(self, state: StateStore) -> None:
        """Test accepted generations move the per-pair high-water mark."""
        assert state.highest_generation("alice", "main") == 0
        assert state.accept_intent(make_entry(3))
        assert state.highest_generation("alice", "main") == 3
        assert state.next_generation("alice", "main") == 4

    @pytest.mark.parametrize("generation", [1, 3])
    def test_stale_rejected(self, state: StateStore, generation: int) -> None:
        """Test generations not above the mark are stale."""
        state.accept_intent(make_entry(3))
        assert not state.accept_intent(make_entry(generation))
        assert len(state.list_intents()) == 1

    def test_pairs_independent(self, state: StateStore) -> None:
        """Test generations are tracked per pair."""
        state.accept_intent(make_entry(5))
        assert state.accept_intent(make_entry(1, branch="other"))
        assert [e.branch_id for e in state.list_intents(owner_id="alice")] == ["main", "other"]
        assert len(state.list_intents(branch_id="other")) == 1

    def test_sequence_checked_against_sequence_mark(self, state: StateStore) -> None:
        """Test a sequenced entry is judged by earlier sequences, not internal generations."""
        state.accept_intent(make_entry(1, sequence=1))
        state.accept_intent(make_entry(2))

        entry = make_entry(2, sequence=2)
        assert state.accept_intent(entry)
        assert entry.generation == 3
        assert state.highest_sequence("alice", "main") == 2
        assert state.highest_generation("alice", "main") == 3
        assert not state.accept_intent(make_entry(9, sequence=2))

    def test_sequence_survives_reload(self, state: StateStore, tmp_path: Path) -> None:
        """Test the sequence mark is persisted with the state file."""
        state.accept_intent(make_entry(4, sequence=4))
        reloaded = StateStore(state_dir=tmp_path)
        assert reloaded.highest_sequence("alice", "main") == 4


class TestRouting:
    """Tests for the routing table."""

    def test_reserve_conflict(self, state: StateStore) -> None:
        """Test one key cannot be held by two environments."""
        state.reserve_routing_key(4, "a")
        state.reserve_routing_key(4, "a")
        with pytest.raises(StateError) as exc_info:
            state.reserve_routing_key(4, "b")
        assert exc_info.value.details["holder"] == "a"

    def test_release_returns_holder(self, state: StateStore) -> None:
        """Test release reports who held the key."""
        state.reserve_routing_key(4, "a")
        assert state.release_routing_key(4) == "a"
        assert state.release_routing_key(4) is None


class TestPromotions:
    """Tests for promotion records."""

    def test_one_in_flight_per_target(self, state: StateStore) -> None:
        """Test a second in-flight record for the same target is refused."""
        state.save_promotion(PromotionRecord("p1", "integration--staging", ["a"], status=PromotionStatus.IN_FLIGHT))
        state.save_promotion(PromotionRecord("p2", "integration--qa", ["a"], status=PromotionStatus.IN_FLIGHT))

        with pytest.raises(StateError):
            state.save_promotion(
                PromotionRecord("p3", "integration--staging", ["b"], status=PromotionStatus.IN_FLIGHT)
            )

        assert state.in_flight_promotion("integration--staging").id == "p1"

    def test_completed_frees_target(self, state: StateStore) -> None:
        """Test completing a record lets the next one go in flight."""
        record = PromotionRecord("p1", "integration--staging", ["a"], status=PromotionStatus.IN_FLIGHT)
        state.save_promotion(record)
        record.status = PromotionStatus.COMPLETED
        state.save_promotion(record)

        state.save_promotion(PromotionRecord("p2", "integration--staging", ["b"], status=PromotionStatus.IN_FLIGHT))

        assert state.get_promotion("p1").status == PromotionStatus.COMPLETED
        assert [r.id for r in state.list_promotions("integration--staging")] == ["p1", "p2"]


class TestExecutionLog:
    """Tests for the audit event log."""

    def test_events_capped(self, tmp_path: Path) -> None:
        """Test the log keeps only the newest max_events entries."""
        state = StateStore(state_dir=tmp_path, max_events=3)
        for i in range(5):
            state.append_event("tick", {"n": i})

        events = state.get_events()
        assert [e["data"]["n"] for e in events] == [2, 3, 4]
        assert events[-1]["event"] == "tick"

    def test_filter_and_limit(self, state: StateStore) -> None:
        """Test filtering by event type and limiting."""
        state.append_event("a")
        state.append_event("b")
        state.append_event("a")
        assert len(state.get_events(event_type="a")) == 2
        assert len(state.get_events(limit=1)) == 1


class TestConcurrency:
    """Tests for concurrent writers."""

    def test_parallel_intents_keep_every_event(self, tmp_path: Path) -> None:
        """Test concurrent writers through separate store instances lose no update."""

        def writer(n: int) -> None:
            StateStore(state_dir=tmp_path).append_event("write", {"n": n})

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        events = StateStore(state_dir=tmp_path).get_events()
        assert sorted(e["data"]["n"] for e in events) == list(range(10))
