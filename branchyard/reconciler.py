"""Reconcile observed infrastructure toward desired state.

The reconciler is the only component that mutates routing keys and
infrastructure records. For each environment it computes a plan (pure),
then executes the plan's driver calls under a per-identity lock, writing
every handle to the store as soon as the substrate confirms it. Provisioning
failures are compensated in reverse order; teardown resumes where it stopped.
"""

from __future__ import annotations

import concurrent.futures
import contextlib
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from branchyard.config import ReconcilerConfig
from branchyard.constants import (
    DEFAULT_AUTO_RETRY_LIMIT,
    DriverAction,
    DriverOutcome,
    LifecycleState,
    LogEvent,
    PlanKind,
)
from branchyard.driver import DriverResult, ResourceSpec
from branchyard.exceptions import (
    AllocationExhaustedError,
    BranchyardError,
    ConflictError,
    InvalidIdentityError,
    PartialFailure,
    PermanentInfraError,
    ProvisioningCancelledError,
    StateError,
    TransientInfraError,
)
from branchyard.lifecycle import transition
from branchyard.logging import clear_log_context, get_environment_logger, get_logger, set_log_context
from branchyard.retry_backoff import RetryBackoffCalculator
from branchyard.types import Environment, InfrastructureRecord, ReconcileRecord

if TYPE_CHECKING:
    from branchyard.driver import InfrastructureDriver
    from branchyard.identity import IdentityResolver
    from branchyard.log_writer import StructuredLogWriter
    from branchyard.routing import RoutingAllocator
    from branchyard.state import StateStore

logger = get_logger("reconciler")

A = DriverAction

PROVISION_STEPS = (
    A.ALLOCATE_ROUTING_KEY,
    A.REGISTER_REVISION,
    A.CREATE_OR_UPDATE_WORKLOAD,
    A.CREATE_ROUTING_RULE,
    A.ENSURE_LOG_SINK,
)
UPDATE_STEPS = (A.REGISTER_REVISION, A.CREATE_OR_UPDATE_WORKLOAD)
TEARDOWN_STEPS = (A.DELETE_ROUTING_RULE, A.DELETE_WORKLOAD, A.RELEASE_ROUTING_KEY)

STEPS_BY_KIND = {
    PlanKind.PROVISION: PROVISION_STEPS,
    PlanKind.UPDATE: UPDATE_STEPS,
    PlanKind.TEARDOWN: TEARDOWN_STEPS,
}

# Failures that automatic retries cannot fix
STRUCTURAL_ERRORS = (InvalidIdentityError, AllocationExhaustedError, ConflictError, ProvisioningCancelledError)

# Fields written by the reconciler; everything else belongs to DesiredStateSource
RECONCILER_FIELDS = (
    "lifecycle_state",
    "routing_key",
    "observed",
    "retry_count",
    "failed_step",
    "retryable",
    "last_error",
    "updated_at",
    "destroyed_at",
)
DESIRED_FIELDS = (
    "desired_artifact_ref",
    "desired_present",
    "desired_generation",
    "owner_tags",
    "last_activity_at",
)


@dataclass(frozen=True)
class PlanAction:
    """One step of a reconcile plan."""

    kind: PlanKind
    action: DriverAction


def plan_kind(environment: Environment, auto_retry_limit: int = DEFAULT_AUTO_RETRY_LIMIT) -> PlanKind | None:
    """Decide which operation, if any, brings an environment to its desired state."""
    env = environment
    state = env.lifecycle_state
    if env.is_terminal:
        return None

    if state == LifecycleState.FAILED:
        if not env.retryable or env.retry_count > auto_retry_limit:
            return None
        if not env.desired_present or env.failed_step == PlanKind.TEARDOWN.value:
            return PlanKind.TEARDOWN
        if env.failed_step == PlanKind.UPDATE.value:
            return PlanKind.UPDATE
        return PlanKind.PROVISION if env.desired_artifact_ref else None

    # An interrupted run finishes before any destroy is acted on
    if state == LifecycleState.PROVISIONING:
        return PlanKind.PROVISION
    if state == LifecycleState.UPDATING:
        return PlanKind.UPDATE
    if not env.desired_present or state == LifecycleState.DRAINING:
        return PlanKind.TEARDOWN
    if state == LifecycleState.PENDING:
        return PlanKind.PROVISION if env.desired_artifact_ref else None
    if env.desired_artifact_ref and env.desired_artifact_ref != env.deployed_artifact_ref:
        return PlanKind.UPDATE
    return None


def plan(environment: Environment, auto_retry_limit: int = DEFAULT_AUTO_RETRY_LIMIT) -> list[PlanAction]:
    """Compute the ordered actions that converge an environment.

    Pure function of the record: no store or driver access.

    Args:
        environment: Environment record
        auto_retry_limit: Automatic retries allowed for a failed environment

    Returns:
        Ordered plan, empty when observed already matches desired
    """
    kind = plan_kind(environment, auto_retry_limit)
    if kind is None:
        return []

    steps = STEPS_BY_KIND[kind]
    if kind == PlanKind.TEARDOWN:
        observed = environment.observed or InfrastructureRecord()
        held = {
            A.DELETE_ROUTING_RULE: bool(observed.routing_rule_handle),
            A.DELETE_WORKLOAD: bool(observed.workload_handle),
            A.RELEASE_ROUTING_KEY: True,
        }
        steps = tuple(step for step in steps if held[step])
    return [PlanAction(kind, step) for step in steps]


@dataclass
class EnvironmentOutcome:
    """Result of reconciling one environment."""

    environment_id: str
    plan_kind: PlanKind | None = None
    final_state: LifecycleState | None = None
    actions: list[str] = field(default_factory=list)
    error: str | None = None
    rekeyed_from: str | None = None

    @property
    def changed(self) -> bool:
        """True when a plan was executed."""
        return self.plan_kind is not None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "environment_id": self.environment_id,
            "plan_kind": self.plan_kind.value if self.plan_kind else None,
            "final_state": self.final_state.value if self.final_state else None,
            "actions": list(self.actions),
            "error": self.error,
            "rekeyed_from": self.rekeyed_from,
        }


@dataclass
class ReconciliationResult:
    """Result of one reconcile pass over all environments."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    outcomes: list[EnvironmentOutcome] = field(default_factory=list)
    environments_checked: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Check if every reconciled environment converged without errors."""
        return not self.errors and all(o.succeeded for o in self.outcomes)

    @property
    def failed(self) -> list[EnvironmentOutcome]:
        """Outcomes that ended in an error."""
        return [o for o in self.outcomes if not o.succeeded]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "environments_checked": self.environments_checked,
            "errors": list(self.errors),
            "success": self.success,
        }


@dataclass
class _Run:
    """Mutable bookkeeping for one plan execution."""

    env: Environment
    kind: PlanKind
    artifact_ref: str | None
    completed: list[DriverAction] = field(default_factory=list)
    conflicts: int = 0
    rekeyed_from: str | None = None


@dataclass
class _IdentityLock:
    """Per-identity lock and the number of callers holding or waiting on it."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class Reconciler:
    """Drive environments toward their desired state through the driver."""

    def __init__(
        self,
        store: StateStore,
        driver: InfrastructureDriver,
        allocator: RoutingAllocator,
        resolver: IdentityResolver,
        config: ReconcilerConfig | None = None,
        writer: StructuredLogWriter | None = None,
        resource_spec: ResourceSpec | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: State store with desired and observed records
            driver: Infrastructure driver
            allocator: Routing key allocator
            resolver: Identity resolver used for re-derivation after conflicts
            config: Worker budget, retry and timeout settings
            writer: Optional JSONL writer for reconcile records
            resource_spec: Workload sizing handed to the driver
            sleep: Backoff sleep function
        """
        self.config = config or ReconcilerConfig()
        self._store = store
        self._driver = driver
        self._allocator = allocator
        self._resolver = resolver
        self._writer = writer
        self._resource_spec = resource_spec or ResourceSpec()
        self._sleep = sleep

        self._locks_guard = threading.Lock()
        self._identity_locks: dict[tuple[str, str], _IdentityLock] = {}
        self._cancel_lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._cancelled: set[str] = set()

    # === Planning ===

    def plan(self, environment: Environment) -> list[PlanAction]:
        """Plan for an environment using this reconciler's retry limit."""
        return plan(environment, self.config.auto_retry_limit)

    # === Entry points ===

    def reconcile_all(self) -> ReconciliationResult:
        """Reconcile every environment that needs work.

        Environments are fanned out over a bounded thread pool; distinct
        identities proceed in parallel.

        Returns:
            ReconciliationResult with one outcome per reconciled environment
        """
        result = ReconciliationResult()
        self._store.load()
        self._allocator.sync()
        environments = self._store.list_environments()
        result.environments_checked = len(environments)

        pending = [env for env in environments if self.plan(env)]
        if not pending:
            return result

        logger.info(f"Reconciling {len(pending)} of {len(environments)} environments")
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="branchyard-reconcile"
        ) as executor:
            futures = {executor.submit(self.reconcile_environment, env.id): env.id for env in pending}
            for future in concurrent.futures.as_completed(futures):
                environment_id = futures[future]
                try:
                    result.outcomes.append(future.result())
                except Exception as e:  # noqa: BLE001
                    logger.error(f"Reconcile of {environment_id} raised: {e}")
                    result.errors.append(f"{environment_id}: {e}")

        return result

    def reconcile_environment(self, environment_id: str) -> EnvironmentOutcome:
        """Reconcile a single environment.

        Serialized per (owner, branch): concurrent callers for the same
        identity run one after the other.

        Args:
            environment_id: Canonical environment id

        Returns:
            EnvironmentOutcome for this pass

        Raises:
            StateError: If the environment is unknown
        """
        env = self._store.get_environment(environment_id)
        if env is None:
            raise StateError("Unknown environment", {"environment_id": environment_id})

        with self._identity_lock(env.pair):
            # Re-read under the lock; a previous holder may have re-keyed or replaced it
            env = self._store.get_environment_by_pair(*env.pair) or env
            actions = self.plan(env)
            if not actions:
                return EnvironmentOutcome(env.id, final_state=env.lifecycle_state)

            run = _Run(env=env, kind=actions[0].kind, artifact_ref=env.desired_artifact_ref)
            set_log_context(environment_id=env.id, owner_id=env.owner_id, branch_id=env.branch_id)
            with self._cancel_lock:
                self._in_flight.add(env.id)
            try:
                if run.kind == PlanKind.TEARDOWN:
                    error = self._teardown(run, actions)
                else:
                    error = self._converge(run, actions)
            finally:
                with self._cancel_lock:
                    self._in_flight.discard(run.env.id)
                    self._cancelled.discard(run.env.id)
                clear_log_context()

        return EnvironmentOutcome(
            environment_id=run.env.id,
            plan_kind=run.kind,
            final_state=run.env.lifecycle_state,
            actions=[a.value for a in run.completed],
            error=str(error) if error else None,
            rekeyed_from=run.rekeyed_from,
        )

    def cancel(self, environment_id: str) -> bool:
        """Request an abort of an in-flight provisioning or update.

        The running plan notices between steps, compensates and ends in
        failed with retryable False.

        Returns:
            True if the environment was in flight
        """
        with self._cancel_lock:
            if environment_id not in self._in_flight:
                return False
            self._cancelled.add(environment_id)
        logger.info(f"Cancellation requested for {environment_id}")
        return True

    @contextlib.contextmanager
    def _identity_lock(self, pair: tuple[str, str]) -> Iterator[None]:
        """Hold the lock for one (owner, branch); the entry is dropped once nobody uses it."""
        with self._locks_guard:
            entry = self._identity_locks.setdefault(pair, _IdentityLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._identity_locks[pair]

    # === Plan execution ===

    def _converge(self, run: _Run, actions: list[PlanAction]) -> BranchyardError | None:
        """Provision or update. Returns the failure, if any."""
        env = run.env
        target = LifecycleState.PROVISIONING if run.kind == PlanKind.PROVISION else LifecycleState.UPDATING
        self._enter(env, target)
        self._persist(env)

        steps = [a.action for a in actions]
        i = 0
        try:
            while i < len(steps):
                self._check_cancelled(env.id)
                action = steps[i]
                try:
                    self._apply_step(run, action)
                except ConflictError:
                    run.conflicts += 1
                    if run.conflicts > 1 or run.kind != PlanKind.PROVISION:
                        raise
                    if action in (A.REGISTER_REVISION, A.CREATE_OR_UPDATE_WORKLOAD):
                        self._rederive_identity(run)
                        i = steps.index(A.REGISTER_REVISION)
                        continue
                    if action == A.CREATE_ROUTING_RULE:
                        self._replace_routing_key(run)
                        continue
                    raise
                run.completed.append(action)
                i += 1
        except BranchyardError as e:
            return self._abort(run, e)

        transition(env, LifecycleState.RUNNING)
        env.retry_count = 0
        env.failed_step = None
        env.retryable = True
        env.last_error = None
        self._persist(env)
        self._announce(env, LogEvent.ENVIRONMENT_RUNNING, f"{env.id} running {run.artifact_ref} at {env.routing_key}")
        return None

    def _teardown(self, run: _Run, actions: list[PlanAction]) -> BranchyardError | None:
        env = run.env
        self._enter(env, LifecycleState.DRAINING)
        self._persist(env)
        try:
            for action in actions:
                self._apply_step(run, action.action)
                run.completed.append(action.action)
        except BranchyardError as e:
            return self._abort(run, e)

        transition(env, LifecycleState.DESTROYED)
        env.failed_step = None
        env.last_error = None
        self._persist(env)
        self._announce(env, LogEvent.ENVIRONMENT_DESTROYED, f"{env.id} destroyed")

        if env.desired_present:
            self._recreate(env)
        return None

    def _apply_step(self, run: _Run, action: DriverAction) -> None:
        """Execute one plan step and persist what it produced."""
        env = run.env
        if env.observed is None:
            env.observed = InfrastructureRecord()
        observed = env.observed

        if action == A.ALLOCATE_ROUTING_KEY:
            if env.routing_key is None:
                env.routing_key = self._allocator.allocate(env.id)
        elif action == A.REGISTER_REVISION:
            result = self._call(env, action, self._driver.register_revision, env.id, run.artifact_ref)
            observed.revision_handle = result.handle
        elif action == A.CREATE_OR_UPDATE_WORKLOAD:
            result = self._call(
                env,
                action,
                self._driver.create_or_update_workload,
                env.id,
                observed.revision_handle,
                self._resource_spec,
            )
            observed.workload_handle = result.handle
            observed.artifact_ref = run.artifact_ref
        elif action == A.CREATE_ROUTING_RULE:
            result = self._call(
                env, action, self._driver.create_routing_rule, env.id, env.routing_key, observed.workload_handle
            )
            observed.routing_rule_handle = result.handle
        elif action == A.ENSURE_LOG_SINK:
            result = self._call(env, action, self._driver.ensure_log_sink, env.id)
            observed.log_sink_handle = result.handle
        elif action == A.DELETE_ROUTING_RULE:
            if observed.routing_rule_handle:
                self._call(env, action, self._driver.delete_routing_rule, observed.routing_rule_handle)
                observed.routing_rule_handle = None
        elif action == A.DELETE_WORKLOAD:
            if observed.workload_handle:
                self._call(env, action, self._driver.delete_workload, observed.workload_handle)
                observed.workload_handle = None
                observed.artifact_ref = None
        elif action == A.RELEASE_ROUTING_KEY:
            if env.routing_key is not None:
                self._allocator.release(env.routing_key)
                env.routing_key = None
            if not self.config.retain_log_sink:
                observed.log_sink_handle = None
        self._persist(env)

    def _abort(self, run: _Run, error: BranchyardError) -> BranchyardError:
        """Compensate a failed provisioning and record the failure."""
        env = run.env
        cause = error
        if run.completed:
            error = PartialFailure(
                f"{run.kind.value} of {env.id} failed after {len(run.completed)} completed steps: {cause.message}",
                [a.value for a in run.completed],
                cause,
            )
        if run.kind == PlanKind.PROVISION:
            self._compensate(run)

        self._enter(env, LifecycleState.FAILED)
        env.failed_step = run.kind.value
        env.retry_count += 1
        env.retryable = not isinstance(cause, STRUCTURAL_ERRORS)
        env.last_error = {"type": type(error).__name__, "message": error.message}
        if isinstance(error, PartialFailure):
            env.last_error["cause"] = type(cause).__name__
            env.last_error["completed_steps"] = list(error.completed_steps)
        self._persist(env)

        self._announce(
            env,
            LogEvent.ENVIRONMENT_FAILED,
            f"{env.id} failed during {run.kind.value}: {cause.message}",
            level="error",
            data={"error": env.last_error, "retryable": env.retryable, "retry_count": env.retry_count},
        )
        return error

    def _compensate(self, run: _Run) -> None:
        """Undo completed provisioning steps in reverse order.

        The routing key is released only after its rule is confirmed gone.
        A compensation step that fails leaves its handle recorded so a later
        teardown can finish the job.
        """
        env = run.env
        rule_gone = True
        for action in (A.DELETE_ROUTING_RULE, A.DELETE_WORKLOAD, A.RELEASE_ROUTING_KEY):
            if action == A.RELEASE_ROUTING_KEY and not rule_gone:
                logger.warning(f"Keeping routing key {env.routing_key} of {env.id}: rule still present")
                break
            try:
                self._apply_step(run, action)
            except BranchyardError as e:
                logger.warning(f"Compensation step {action.value} for {env.id} failed: {e}")
                if action == A.DELETE_ROUTING_RULE:
                    rule_gone = False

    def _rederive_identity(self, run: _Run) -> None:
        """Move a resource-free record to a suffixed id after a name conflict."""
        env = run.env
        old_id = env.id
        if env.observed is not None:
            # Revisions are registrations, not resources; the new name gets its own
            env.observed.revision_handle = None
            env.observed.artifact_ref = None
            self._persist(env)

        new_id = self._resolver.resolve(env.owner_id, env.branch_id, force_suffix=True)
        if new_id == old_id:
            new_id = self._resolver.resolve(env.owner_id, env.branch_id, force_suffix=True, salt=1)

        rekeyed = self._store.rekey_environment(old_id, new_id)
        self._allocator.reassign(old_id, new_id)
        env.id = rekeyed.id
        run.rekeyed_from = run.rekeyed_from or old_id
        with self._cancel_lock:
            self._in_flight.discard(old_id)
            self._in_flight.add(new_id)
            if old_id in self._cancelled:
                self._cancelled.discard(old_id)
                self._cancelled.add(new_id)
        set_log_context(environment_id=new_id, owner_id=env.owner_id, branch_id=env.branch_id)
        logger.warning(f"Name conflict on {old_id}, re-derived identity {new_id}")

    def _replace_routing_key(self, run: _Run) -> None:
        """Quarantine a key the substrate reports in use and take the next one."""
        env = run.env
        old_key = env.routing_key
        if old_key is not None:
            self._allocator.quarantine(old_key)
            self._allocator.release(old_key)
        env.routing_key = self._allocator.allocate(env.id)
        self._persist(env)
        logger.warning(f"Routing key {old_key} in use outside the store, {env.id} moved to {env.routing_key}")

    def _recreate(self, env: Environment) -> None:
        """A create arrived while the environment was draining: start over."""
        fresh = Environment(
            id=self._resolver.resolve(env.owner_id, env.branch_id),
            owner_id=env.owner_id,
            branch_id=env.branch_id,
            kind=env.kind,
            desired_artifact_ref=env.desired_artifact_ref,
            desired_generation=env.desired_generation,
            owner_tags=dict(env.owner_tags),
        )
        self._store.insert_environment(fresh)
        logger.info(f"Re-created {fresh.id} for {env.owner_id}/{env.branch_id} after teardown")

    def _check_cancelled(self, environment_id: str) -> None:
        with self._cancel_lock:
            cancelled = environment_id in self._cancelled
        if cancelled:
            raise ProvisioningCancelledError(
                f"Provisioning of {environment_id} cancelled", {"environment_id": environment_id}
            )

    # === Driver calls ===

    def _call(
        self, env: Environment, action: DriverAction, fn: Callable[..., DriverResult], *args: Any
    ) -> DriverResult:
        """Run a driver call with timeout and transient retries.

        Raises:
            ConflictError: Substrate reports the name or key in use
            PermanentInfraError: Substrate rejected the call
            TransientInfraError: Still failing after the retry budget
        """
        attempts = self.config.retry_attempts
        result = DriverResult(DriverOutcome.TRANSIENT_FAILURE)
        for attempt in range(1, attempts + 1):
            started = time.monotonic()
            result = self._invoke(fn, *args)
            duration_ms = int((time.monotonic() - started) * 1000)
            self._record(ReconcileRecord(env.id, action.value, result.outcome.value, duration_ms, attempt))

            if result.succeeded:
                return result
            if result.outcome == DriverOutcome.CONFLICT:
                raise ConflictError(
                    f"{action.value} conflict for {env.id}", action.value, env.id, {"message": result.message}
                )
            if result.outcome == DriverOutcome.PERMANENT_FAILURE:
                raise PermanentInfraError(
                    f"{action.value} rejected for {env.id}: {result.message}",
                    action.value,
                    env.id,
                )

            if attempt < attempts:
                delay = RetryBackoffCalculator.calculate_delay(
                    attempt,
                    self.config.backoff_strategy,
                    self.config.backoff_base_seconds,
                    self.config.backoff_max_seconds,
                )
                if delay > 0:
                    self._sleep(delay)

        raise TransientInfraError(
            f"{action.value} for {env.id} still failing after {attempts} attempts: {result.message}",
            action.value,
            env.id,
            {"attempts": attempts},
        )

    def _invoke(self, fn: Callable[..., DriverResult], *args: Any) -> DriverResult:
        """Run one driver call under the configured timeout.

        A call that times out is abandoned to its worker thread and reported
        as a transient failure.
        """
        timeout = self.config.call_timeout_seconds
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="branchyard-driver")
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return DriverResult(DriverOutcome.TRANSIENT_FAILURE, message=f"timed out after {timeout}s")
        except ConflictError as e:
            return DriverResult(DriverOutcome.CONFLICT, message=e.message)
        except TransientInfraError as e:
            return DriverResult(DriverOutcome.TRANSIENT_FAILURE, message=e.message)
        except Exception as e:  # noqa: BLE001
            return DriverResult(DriverOutcome.PERMANENT_FAILURE, message=f"{type(e).__name__}: {e}")
        finally:
            executor.shutdown(wait=False)

    def _record(self, record: ReconcileRecord) -> None:
        message = f"{record.action} -> {record.outcome} in {record.duration_ms}ms (attempt {record.attempt})"
        get_environment_logger(record.environment_id).info(
            message,
            extra={
                "action": record.action,
                "outcome": record.outcome,
                "attempt": record.attempt,
                "duration_ms": record.duration_ms,
            },
        )
        if self._writer:
            self._writer.emit("info", message, event=LogEvent.RECONCILE_ATTEMPT, data=record.to_dict())

    # === Persistence ===

    def _enter(self, env: Environment, target: LifecycleState) -> None:
        """Transition unless already there (resuming an interrupted run)."""
        if env.lifecycle_state != target:
            transition(env, target)

    def _persist(self, env: Environment) -> None:
        """Write reconciler-owned fields, keeping concurrent intent changes.

        Desired fields are refreshed from the store afterwards so the running
        plan sees intents accepted while it was executing.
        """
        with self._store.transaction():
            current = self._store.get_environment(env.id)
            if current is None:
                raise StateError("Environment vanished during reconcile", {"environment_id": env.id})
            for name in RECONCILER_FIELDS:
                setattr(current, name, getattr(env, name))
            self._store.save_environment(current)
        for name in DESIRED_FIELDS:
            setattr(env, name, getattr(current, name))

    def _announce(
        self,
        env: Environment,
        event: LogEvent,
        message: str,
        level: str = "info",
        data: dict[str, Any] | None = None,
    ) -> None:
        payload = {"environment_id": env.id, "state": env.lifecycle_state.value, **(data or {})}
        self._store.append_event(event.value, payload)
        if level == "error":
            logger.error(message)
        else:
            logger.info(message)
        if self._writer:
            self._writer.emit(level, message, event=event, data=payload)


__all__ = [
    "EnvironmentOutcome",
    "PlanAction",
    "ReconciliationResult",
    "Reconciler",
    "plan",
    "plan_kind",
]
