"""Branchyard constants and enumerations."""

from enum import Enum


class EnvironmentKind(Enum):
    """Kind of managed environment."""

    EPHEMERAL = "ephemeral"
    INTEGRATION = "integration"
    STABLE = "stable"


class LifecycleState(Enum):
    """Environment lifecycle state."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    UPDATING = "updating"
    DRAINING = "draining"
    DESTROYED = "destroyed"
    FAILED = "failed"


class IntentAction(Enum):
    """Desired-state intent action."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"


class SourceEventKind(Enum):
    """Origin of a desired-state intent."""

    BRANCH_PUSH = "branch_push"
    BRANCH_DELETE = "branch_delete"
    MANUAL_REQUEST = "manual_request"
    SWEEP_TICK = "sweep_tick"
    PROMOTION = "promotion"


class ManualAction(Enum):
    """Actions available to a manual request."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    PING = "ping"


class DriverOutcome(Enum):
    """Outcome reported by an infrastructure driver call."""

    OK = "ok"
    ALREADY_SATISFIED = "already_satisfied"
    CONFLICT = "conflict"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class DriverAction(Enum):
    """Infrastructure driver operations, used in plans and reconcile records."""

    ALLOCATE_ROUTING_KEY = "allocate_routing_key"
    REGISTER_REVISION = "register_revision"
    CREATE_OR_UPDATE_WORKLOAD = "create_or_update_workload"
    CREATE_ROUTING_RULE = "create_routing_rule"
    ENSURE_LOG_SINK = "ensure_log_sink"
    DELETE_ROUTING_RULE = "delete_routing_rule"
    DELETE_WORKLOAD = "delete_workload"
    RELEASE_ROUTING_KEY = "release_routing_key"


class PlanKind(Enum):
    """Kind of reconcile plan computed for an environment."""

    PROVISION = "provision"
    UPDATE = "update"
    TEARDOWN = "teardown"


class PromotionStatus(Enum):
    """Promotion record status."""

    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class RoutingMode(Enum):
    """How routing keys are rendered for the proxy."""

    PATH = "path"
    PRIORITY = "priority"


class LogEvent(Enum):
    """Structured log event types."""

    INTENT_ACCEPTED = "intent_accepted"
    INTENT_DISCARDED = "intent_discarded"
    RECONCILE_ATTEMPT = "reconcile_attempt"
    ENVIRONMENT_RUNNING = "environment_running"
    ENVIRONMENT_FAILED = "environment_failed"
    ENVIRONMENT_DESTROYED = "environment_destroyed"
    SWEEP_COMPLETE = "sweep_complete"
    PROMOTION_STARTED = "promotion_started"
    PROMOTION_COMPLETE = "promotion_complete"


# Lifecycle groupings
TERMINAL_STATES = frozenset({LifecycleState.DESTROYED})
SWEEPABLE_STATES = frozenset({LifecycleState.RUNNING, LifecycleState.UPDATING})

# Default configuration values
DEFAULT_SEPARATOR = "--"
DEFAULT_MAX_COMPONENT_LENGTH = 20
DEFAULT_MAX_NAME_LENGTH = 63
DEFAULT_HASH_LENGTH = 6
DEFAULT_ROUTING_RANGE_START = 1
DEFAULT_ROUTING_RANGE_END = 999
DEFAULT_PATH_PREFIX = "env-"
DEFAULT_MAX_WORKERS = 4
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_AUTO_RETRY_LIMIT = 2
DEFAULT_CALL_TIMEOUT_SECONDS = 30.0
DEFAULT_IDLE_THRESHOLD_HOURS = 72.0
DEFAULT_RETENTION_HOURS = 168.0
DEFAULT_PROMOTION_QUEUE_DEPTH = 4

# Owner tag conventions
OWNER_TAG_KEY = "owner"
EXCLUSION_TAG_KEY = "branchyard/keep"
TTL_TAG_KEY = "branchyard/ttl-hours"
INTEGRATION_OWNER = "integration"

# State file locations
BRANCHYARD_DIR = ".branchyard"
CONFIG_FILE = ".branchyard/config.yaml"
STATE_DIR = ".branchyard/state"
LOGS_DIR = ".branchyard/logs"
