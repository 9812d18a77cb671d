"""Invariants that must hold across many environments and interleavings."""

import random
import threading
import time
from datetime import timedelta

import pytest

from branchyard.constants import DriverAction, LifecycleState, PromotionStatus
from branchyard.drivers.memory import InMemoryDriver
from branchyard.orchestrator import Orchestrator
from branchyard.state import StateStore
from branchyard.types import BranchDeleteEvent

S = LifecycleState

# Pairs chosen so several sanitize to the same base name
PAIRS = [
    ("alice", "feature/login"),
    ("alice", "feature-login"),
    ("alice", "Feature_Login"),
    ("Alice", "feature/login"),
    ("bob", "main"),
    ("bob", "MAIN"),
    ("carol", "release/1.2"),
    ("carol", "release-1-2"),
    ("dave", "x" * 80),
    ("dave", "x" * 81),
]


def test_identities_distinct(orchestrator: Orchestrator, push) -> None:
    """Distinct pairs always resolve to distinct environment ids."""
    ids = [push(owner, branch, "app:1", 1) for owner, branch in PAIRS]
    assert len(set(ids)) == len(PAIRS)
    assert all(len(i) <= orchestrator.config.naming.max_name_length for i in ids)


def test_routing_keys_unique_under_concurrency(orchestrator: Orchestrator, push, store: StateStore) -> None:
    """Concurrent provisioning never hands one key to two live environments."""
    orchestrator.config.reconciler.max_workers = 8
    for i in range(30):
        push(f"dev{i}", "main", "app:1", 1)

    orchestrator.tick()
    for i in range(0, 30, 3):
        orchestrator.handle(BranchDeleteEvent(f"dev{i}", "main", sequence=2))
    for i in range(30, 40):
        push(f"dev{i}", "main", "app:1", 1)
    orchestrator.tick()

    live = [e for e in store.list_environments() if not e.is_terminal]
    keys = [e.routing_key for e in live]
    assert len(live) == 30
    assert None not in keys
    assert len(set(keys)) == len(keys)
    assert sorted(store.routing_table().values()) == sorted(e.id for e in live)


def test_converged_reconcile_makes_no_calls(orchestrator: Orchestrator, push, driver: InMemoryDriver) -> None:
    """Reconciling converged environments issues zero driver calls."""
    for owner, branch in PAIRS[:5]:
        push(owner, branch, "app:1", 1)
    orchestrator.tick()
    driver.reset_calls()

    for _ in range(3):
        orchestrator.tick()
    for env in orchestrator.store.list_environments():
        orchestrator.reconciler.reconcile_environment(env.id)

    assert driver.calls == []


@pytest.mark.slow
def test_destroy_waits_for_provisioning(orchestrator: Orchestrator, push, driver: InMemoryDriver, store) -> None:
    """A destroy accepted mid-provisioning is acted on only after provisioning ends."""
    env_id = push("alice", "main", "app:1", 1)
    driver.inject(DriverAction.REGISTER_REVISION, delay_seconds=0.3, environment_id=env_id)
    worker = threading.Thread(target=orchestrator.reconciler.reconcile_environment, args=(env_id,))
    worker.start()
    deadline = time.monotonic() + 2
    while store.get_environment(env_id).lifecycle_state != S.PROVISIONING:
        assert time.monotonic() < deadline
        time.sleep(0.005)

    orchestrator.handle(BranchDeleteEvent("alice", "main", sequence=2))
    worker.join()

    env = store.get_environment(env_id)
    assert env.lifecycle_state == S.RUNNING
    assert env.desired_present is False
    deletes = [c for c in driver.calls if c.action in (DriverAction.DELETE_ROUTING_RULE, DriverAction.DELETE_WORKLOAD)]
    assert deletes == []

    outcome = orchestrator.reconciler.reconcile_environment(env_id)
    assert outcome.final_state == S.DESTROYED


def test_gc_respects_threshold(orchestrator: Orchestrator, push, store: StateStore) -> None:
    """GC never destroys an environment active within its threshold."""
    rng = random.Random(7)
    for i in range(20):
        push(f"dev{i}", "main", "app:1", 1)
    orchestrator.tick()

    now = max(e.last_activity_at for e in store.list_environments()) + timedelta(hours=1)
    idle: dict[str, float] = {}
    for env in store.list_environments():
        hours = rng.uniform(0, 150)
        env.last_activity_at = now - timedelta(hours=hours)
        store.save_environment(env)
        idle[env.id] = hours

    report = orchestrator.gc.sweep(now=now)

    threshold = orchestrator.config.gc.idle_threshold_hours
    assert set(report.submitted) == {env_id for env_id, hours in idle.items() if hours > threshold}
    for env in store.list_environments():
        assert env.desired_present is (idle[env.id] <= threshold)


@pytest.mark.slow
def test_one_promotion_in_flight_per_target(orchestrator: Orchestrator, push, driver: InMemoryDriver, store) -> None:
    """Concurrent promotions never hold a target at the same time."""
    sources = [push(f"dev{i}", "main", f"app:{i}", 1) for i in range(4)]
    target = orchestrator.promotions.ensure_integration("staging").environment_id
    orchestrator.tick()
    driver.inject(DriverAction.REGISTER_REVISION, delay_seconds=0.05, times=4, environment_id=target)

    stop = threading.Event()
    peak = [0]

    def watch() -> None:
        while not stop.is_set():
            in_flight = [p for p in store.list_promotions(target) if p.status == PromotionStatus.IN_FLIGHT]
            peak[0] = max(peak[0], len(in_flight))
            time.sleep(0.002)

    watcher = threading.Thread(target=watch)
    watcher.start()
    workers = [threading.Thread(target=orchestrator.promote, args=([s], target)) for s in sources]
    for w in workers:
        w.start()
    for w in workers:
        w.join()
    stop.set()
    watcher.join()

    records = store.list_promotions(target)
    assert peak[0] == 1
    assert len(records) == 4
    assert {r.status for r in records} == {PromotionStatus.COMPLETED}
