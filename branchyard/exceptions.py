"""Branchyard exception hierarchy."""

from typing import Any


class BranchyardError(Exception):
    """Base exception for all branchyard errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(BranchyardError):
    """Error in branchyard configuration."""

    pass


class StateError(BranchyardError):
    """Error in state management."""

    pass


class InvalidTransitionError(StateError):
    """Lifecycle transition not permitted by the state machine."""

    def __init__(self, environment_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Illegal transition {current} -> {target}",
            {"environment_id": environment_id},
        )
        self.environment_id = environment_id
        self.current = current
        self.target = target


class InvalidIdentityError(BranchyardError):
    """Owner or branch input is empty or malformed after sanitization."""

    def __init__(self, message: str, owner_id: str | None = None, branch_id: str | None = None) -> None:
        super().__init__(message, {"owner_id": owner_id, "branch_id": branch_id})
        self.owner_id = owner_id
        self.branch_id = branch_id


class AllocationExhaustedError(BranchyardError):
    """No routing key left in the configured key space."""

    def __init__(self, message: str, range_start: int, range_end: int) -> None:
        super().__init__(message, {"range_start": range_start, "range_end": range_end})
        self.range_start = range_start
        self.range_end = range_end


class InfraError(BranchyardError):
    """Base error for infrastructure driver outcomes."""

    def __init__(
        self,
        message: str,
        action: str | None = None,
        environment_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.action = action
        self.environment_id = environment_id


class TransientInfraError(InfraError):
    """Network, timeout or rate-limit failure reported by the substrate."""

    pass


class PermanentInfraError(InfraError):
    """Substrate rejected the call and retrying will not help."""

    pass


class ConflictError(InfraError):
    """Substrate reports a name or key already in use that the store did not expect."""

    pass


class PartialFailure(BranchyardError):
    """A multi-step operation failed after some of its steps completed."""

    def __init__(self, message: str, completed_steps: list[str], cause: BaseException) -> None:
        super().__init__(
            message,
            {"completed_steps": completed_steps, "cause": type(cause).__name__},
        )
        self.completed_steps = completed_steps
        self.cause = cause


class ProvisioningCancelledError(BranchyardError):
    """Operator requested an abort of an in-flight provisioning."""

    pass


class OwnershipError(BranchyardError):
    """Manual request from a requester who does not own the environment."""

    def __init__(self, message: str, requester_id: str, owner_id: str) -> None:
        super().__init__(message, {"requester_id": requester_id, "owner_id": owner_id})
        self.requester_id = requester_id
        self.owner_id = owner_id


class PromotionError(BranchyardError):
    """Promotion request could not be carried out."""

    def __init__(
        self, message: str, target_id: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.target_id = target_id


class PromotionBusyError(PromotionError):
    """Promotion queue for the target is full."""

    def __init__(self, message: str, target_id: str, queue_depth: int) -> None:
        super().__init__(message, target_id, {"queue_depth": queue_depth})
        self.queue_depth = queue_depth
