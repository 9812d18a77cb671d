"""In-memory substrate driver.

Keeps revisions, workloads, routing rules and log sinks in dictionaries.
Used by the CLI when no real driver is configured and by the test suite,
which scripts failures, conflicts and slow calls through ``inject``.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from branchyard.constants import DriverAction, DriverOutcome
from branchyard.driver import DriverResult, InfrastructureDriver, ResourceSpec
from branchyard.logging import get_logger

logger = get_logger("drivers.memory")


@dataclass
class InjectedFault:
    """Scripted response for the next matching call."""

    action: DriverAction
    outcome: DriverOutcome | None = None
    environment_id: str | None = None
    delay_seconds: float = 0.0
    message: str = "injected"


@dataclass
class DriverCall:
    """Record of a call made against the in-memory substrate."""

    action: DriverAction
    args: tuple[Any, ...]
    outcome: DriverOutcome
    timestamp: float = field(default_factory=time.monotonic)


class InMemoryDriver(InfrastructureDriver):
    """Simulated substrate with scripted fault injection."""

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._latency = latency_seconds
        self._faults: deque[InjectedFault] = deque()
        self._revision_seq = 0
        self.revisions: dict[str, tuple[str, str]] = {}
        self.workloads: dict[str, dict[str, str]] = {}
        self.rules: dict[str, dict[str, Any]] = {}
        self.log_sinks: dict[str, str] = {}
        self.foreign_names: set[str] = set()
        self.foreign_keys: set[int | str] = set()
        self.calls: list[DriverCall] = []

    # --- Test and simulation hooks ---

    def inject(
        self,
        action: DriverAction,
        outcome: DriverOutcome | None = None,
        times: int = 1,
        environment_id: str | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        """Script the next ``times`` matching calls.

        Args:
            action: Operation to intercept
            outcome: Outcome to report instead of executing (None executes normally)
            times: Number of calls to intercept
            environment_id: Only intercept calls for this environment
            delay_seconds: Sleep before responding
        """
        with self._lock:
            for _ in range(times):
                self._faults.append(InjectedFault(action, outcome, environment_id, delay_seconds))

    def calls_for(self, action: DriverAction | None = None, environment_id: str | None = None) -> list[DriverCall]:
        """Recorded calls, optionally filtered."""
        with self._lock:
            calls = list(self.calls)
        if action is not None:
            calls = [c for c in calls if c.action == action]
        if environment_id is not None:
            calls = [c for c in calls if environment_id in c.args]
        return calls

    def reset_calls(self) -> None:
        with self._lock:
            self.calls.clear()

    def rule_for_key(self, routing_key: int | str) -> str | None:
        """Handle of the rule currently routing a key."""
        with self._lock:
            for handle, rule in self.rules.items():
                if rule["routing_key"] == routing_key:
                    return handle
        return None

    def _take_fault(self, action: DriverAction, environment_id: str | None) -> InjectedFault | None:
        for fault in self._faults:
            if fault.action == action and fault.environment_id in (None, environment_id):
                self._faults.remove(fault)
                return fault
        return None

    def _intercept(
        self, action: DriverAction, environment_id: str | None, args: tuple[Any, ...]
    ) -> DriverResult | None:
        with self._lock:
            fault = self._take_fault(action, environment_id)
        delay = self._latency + (fault.delay_seconds if fault else 0.0)
        if delay:
            time.sleep(delay)
        if fault and fault.outcome is not None:
            self._record(action, args, fault.outcome)
            return DriverResult(fault.outcome, message=fault.message)
        return None

    def _record(self, action: DriverAction, args: tuple[Any, ...], outcome: DriverOutcome) -> None:
        with self._lock:
            self.calls.append(DriverCall(action, args, outcome))

    def _owner_of_workload(self, workload_handle: str) -> str | None:
        for env_id, workload in self.workloads.items():
            if workload["handle"] == workload_handle:
                return env_id
        return None

    # --- InfrastructureDriver ---

    def register_revision(self, environment_id: str, artifact_ref: str) -> DriverResult:
        args = (environment_id, artifact_ref)
        injected = self._intercept(DriverAction.REGISTER_REVISION, environment_id, args)
        if injected:
            return injected

        with self._lock:
            if environment_id in self.foreign_names:
                outcome, handle = DriverOutcome.CONFLICT, None
            else:
                handle = next(
                    (h for h, rev in self.revisions.items() if rev == (environment_id, artifact_ref)),
                    None,
                )
                if handle:
                    outcome = DriverOutcome.ALREADY_SATISFIED
                else:
                    self._revision_seq += 1
                    handle = f"rev-{environment_id}-{self._revision_seq}"
                    self.revisions[handle] = (environment_id, artifact_ref)
                    outcome = DriverOutcome.OK
        self._record(DriverAction.REGISTER_REVISION, args, outcome)
        return DriverResult(outcome, handle)

    def create_or_update_workload(
        self, environment_id: str, revision_handle: str, resource_spec: ResourceSpec
    ) -> DriverResult:
        args = (environment_id, revision_handle)
        injected = self._intercept(DriverAction.CREATE_OR_UPDATE_WORKLOAD, environment_id, args)
        if injected:
            return injected

        with self._lock:
            if environment_id in self.foreign_names:
                outcome, handle = DriverOutcome.CONFLICT, None
            elif revision_handle not in self.revisions:
                outcome, handle = DriverOutcome.PERMANENT_FAILURE, None
            else:
                handle = f"wl-{environment_id}"
                current = self.workloads.get(environment_id)
                if current and current["revision"] == revision_handle:
                    outcome = DriverOutcome.ALREADY_SATISFIED
                else:
                    self.workloads[environment_id] = {"handle": handle, "revision": revision_handle}
                    outcome = DriverOutcome.OK
        self._record(DriverAction.CREATE_OR_UPDATE_WORKLOAD, args, outcome)
        return DriverResult(outcome, handle)

    def delete_workload(self, workload_handle: str) -> DriverResult:
        args = (workload_handle,)
        with self._lock:
            env_id = self._owner_of_workload(workload_handle)
        injected = self._intercept(DriverAction.DELETE_WORKLOAD, env_id, args)
        if injected:
            return injected

        with self._lock:
            if env_id is None:
                outcome = DriverOutcome.ALREADY_SATISFIED
            else:
                del self.workloads[env_id]
                outcome = DriverOutcome.OK
        self._record(DriverAction.DELETE_WORKLOAD, args, outcome)
        return DriverResult(outcome)

    def create_routing_rule(
        self, environment_id: str, routing_key: int | str, workload_handle: str
    ) -> DriverResult:
        args = (environment_id, routing_key, workload_handle)
        injected = self._intercept(DriverAction.CREATE_ROUTING_RULE, environment_id, args)
        if injected:
            return injected

        with self._lock:
            handle = f"rule-{environment_id}"
            holder = next(
                (r["environment_id"] for r in self.rules.values() if r["routing_key"] == routing_key),
                None,
            )
            if routing_key in self.foreign_keys or (holder is not None and holder != environment_id):
                outcome, handle = DriverOutcome.CONFLICT, None
            elif handle in self.rules and self.rules[handle]["routing_key"] == routing_key:
                outcome = DriverOutcome.ALREADY_SATISFIED
            else:
                self.rules[handle] = {
                    "environment_id": environment_id,
                    "routing_key": routing_key,
                    "workload_handle": workload_handle,
                }
                outcome = DriverOutcome.OK
        self._record(DriverAction.CREATE_ROUTING_RULE, args, outcome)
        return DriverResult(outcome, handle)

    def delete_routing_rule(self, rule_handle: str) -> DriverResult:
        args = (rule_handle,)
        with self._lock:
            rule = self.rules.get(rule_handle)
        injected = self._intercept(
            DriverAction.DELETE_ROUTING_RULE, rule["environment_id"] if rule else None, args
        )
        if injected:
            return injected

        with self._lock:
            if self.rules.pop(rule_handle, None) is None:
                outcome = DriverOutcome.ALREADY_SATISFIED
            else:
                outcome = DriverOutcome.OK
        self._record(DriverAction.DELETE_ROUTING_RULE, args, outcome)
        return DriverResult(outcome)

    def ensure_log_sink(self, environment_id: str) -> DriverResult:
        args = (environment_id,)
        injected = self._intercept(DriverAction.ENSURE_LOG_SINK, environment_id, args)
        if injected:
            return injected

        with self._lock:
            if environment_id in self.log_sinks:
                outcome = DriverOutcome.ALREADY_SATISFIED
            else:
                self.log_sinks[environment_id] = f"sink-{environment_id}"
                outcome = DriverOutcome.OK
            handle = self.log_sinks[environment_id]
        self._record(DriverAction.ENSURE_LOG_SINK, args, outcome)
        return DriverResult(outcome, handle)
