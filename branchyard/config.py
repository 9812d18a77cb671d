"""Branchyard configuration management using Pydantic."""

from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, model_validator

from branchyard.constants import (
    CONFIG_FILE,
    DEFAULT_AUTO_RETRY_LIMIT,
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_HASH_LENGTH,
    DEFAULT_IDLE_THRESHOLD_HOURS,
    DEFAULT_MAX_COMPONENT_LENGTH,
    DEFAULT_MAX_NAME_LENGTH,
    DEFAULT_MAX_WORKERS,
    DEFAULT_PATH_PREFIX,
    DEFAULT_PROMOTION_QUEUE_DEPTH,
    DEFAULT_RETENTION_HOURS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_ROUTING_RANGE_END,
    DEFAULT_ROUTING_RANGE_START,
    DEFAULT_SEPARATOR,
    EXCLUSION_TAG_KEY,
    INTEGRATION_OWNER,
    LOGS_DIR,
    OWNER_TAG_KEY,
    STATE_DIR,
    TTL_TAG_KEY,
    RoutingMode,
)


class ProjectConfig(BaseModel):
    """Project identification configuration."""

    name: str = "branchyard"
    description: str = "Ephemeral per-branch environment orchestrator"


class NamingConfig(BaseModel):
    """Substrate naming constraints for canonical identities."""

    separator: str = Field(default=DEFAULT_SEPARATOR, pattern="^[a-z0-9-]{1,4}$")
    max_component_length: int = Field(default=DEFAULT_MAX_COMPONENT_LENGTH, ge=1, le=128)
    max_name_length: int = Field(default=DEFAULT_MAX_NAME_LENGTH, ge=8, le=253)
    hash_length: int = Field(default=DEFAULT_HASH_LENGTH, ge=4, le=16)

    @model_validator(mode="after")
    def _check_suffix_fits(self) -> "NamingConfig":
        if self.hash_length + 2 >= self.max_name_length:
            raise ValueError("hash_length leaves no room for a name within max_name_length")
        return self


class RoutingConfig(BaseModel):
    """Routing key space configuration."""

    mode: RoutingMode = RoutingMode.PATH
    range_start: int = Field(default=DEFAULT_ROUTING_RANGE_START, ge=0)
    range_end: int = Field(default=DEFAULT_ROUTING_RANGE_END, ge=0)
    path_prefix: str = Field(default=DEFAULT_PATH_PREFIX, pattern="^[a-z0-9-]*$")

    @model_validator(mode="after")
    def _check_range(self) -> "RoutingConfig":
        if self.range_end < self.range_start:
            raise ValueError("range_end must be >= range_start")
        return self


class ReconcilerConfig(BaseModel):
    """Reconciler worker budget, retry and timeout settings."""

    max_workers: int = Field(default=DEFAULT_MAX_WORKERS, ge=1, le=64)
    retry_attempts: int = Field(default=DEFAULT_RETRY_ATTEMPTS, ge=1, le=10)
    auto_retry_limit: int = Field(default=DEFAULT_AUTO_RETRY_LIMIT, ge=0, le=10)
    call_timeout_seconds: float = Field(default=DEFAULT_CALL_TIMEOUT_SECONDS, gt=0, le=600)
    backoff_strategy: str = Field(default="exponential", pattern="^(exponential|linear|fixed)$")
    backoff_base_seconds: float = Field(default=1.0, ge=0, le=600)
    backoff_max_seconds: float = Field(default=30.0, ge=0, le=3600)
    interval_seconds: float = Field(default=15.0, gt=0, le=3600)
    retain_log_sink: bool = True


class GarbageCollectorConfig(BaseModel):
    """Idle environment reclamation settings."""

    enabled: bool = True
    dry_run: bool = False
    interval_seconds: float = Field(default=900.0, gt=0)
    idle_threshold_hours: float = Field(default=DEFAULT_IDLE_THRESHOLD_HOURS, gt=0)
    retention_hours: float = Field(default=DEFAULT_RETENTION_HOURS, ge=0)
    exclusion_tag_key: str = EXCLUSION_TAG_KEY
    ttl_tag_key: str = TTL_TAG_KEY


class PromotionConfig(BaseModel):
    """Promotion queue settings."""

    queue_depth: int = Field(default=DEFAULT_PROMOTION_QUEUE_DEPTH, ge=0, le=100)
    wait_timeout_seconds: float | None = Field(default=None, gt=0)
    integration_owner: str = INTEGRATION_OWNER


class OwnershipConfig(BaseModel):
    """Manual request access scoping."""

    tag_key: str = OWNER_TAG_KEY
    operators: list[str] = Field(default_factory=list)


class StateConfig(BaseModel):
    """State store location."""

    directory: str = STATE_DIR
    name: str = Field(default="environments", pattern="^[A-Za-z0-9_.-]+$")
    max_events: int = Field(default=1000, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="info", pattern="^(debug|info|warn|error)$")
    directory: str = LOGS_DIR
    max_log_size_mb: int = Field(default=50, ge=1, le=1000)
    structured_output: bool = True


class DriverConfig(BaseModel):
    """Infrastructure driver selection."""

    factory: str | None = Field(
        default=None,
        description="Dotted 'module:callable' returning an InfrastructureDriver (default: in-memory)",
    )
    options: dict[str, Any] = Field(default_factory=dict)


class BranchyardConfig(BaseModel):
    """Complete branchyard configuration."""

    project: ProjectConfig = Field(default_factory=ProjectConfig)
    naming: NamingConfig = Field(default_factory=NamingConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    gc: GarbageCollectorConfig = Field(default_factory=GarbageCollectorConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    ownership: OwnershipConfig = Field(default_factory=OwnershipConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    driver: DriverConfig = Field(default_factory=DriverConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "BranchyardConfig":
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Defaults to .branchyard/config.yaml

        Returns:
            BranchyardConfig instance
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BranchyardConfig":
        """Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            BranchyardConfig instance
        """
        return cls(**data)

    def save(self, config_path: str | Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Defaults to .branchyard/config.yaml
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return self.model_dump(mode="json")

    @property
    def idle_threshold_seconds(self) -> float:
        """GC idle threshold in seconds."""
        return self.gc.idle_threshold_hours * 3600

    @property
    def retention_seconds(self) -> float:
        """Retention window for destroyed records in seconds."""
        return self.gc.retention_hours * 3600
