"""Exception hierarchy for shipgate.

All exceptions inherit from ShipgateError, the base exception class.

Exception Hierarchy:
    ShipgateError (base)
    ├── PolicyViolationError       # Caller broke a gate/pipeline rule, never retried
    │   ├── AlreadyOpenError       # Approval already pending for the deployment
    │   ├── NotPendingError        # No pending approval to decide
    │   ├── TooLateError           # Decision arrived after the deadline
    │   ├── InvalidDecisionError   # Decision other than approve/reject
    │   └── IllegalTransitionError # Stage edge not in the pipeline graph
    ├── DeploymentNotFoundError    # Unknown deployment id
    ├── InfrastructureError        # InfrastructureProvider call failed
    │   ├── TransientInfrastructureError  # Timeout/5xx, safe to retry
    │   └── RetryExhaustedError    # Retries used up
    ├── ConfigurationError         # Invalid configuration
    └── StateStorageError          # State directory unreadable or unwritable

Exit Codes:
    1 - General error (ShipgateError)
    3 - Deployment not found
    5 - Policy violation
    6 - Configuration error
    8 - Infrastructure error

Example:
    >>> from shipgate.errors import NotPendingError
    >>> raise NotPendingError("dep-42")
    Traceback (most recent call last):
        ...
    NotPendingError: No pending approval request for deployment dep-42
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path


class ShipgateError(Exception):
    """Base exception for all shipgate errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class PolicyViolationError(ShipgateError):
    """Raised when a caller violates a gate or pipeline rule.

    Policy violations are returned to the caller as typed errors and are
    never retried automatically.
    """

    exit_code: int = 5


class AlreadyOpenError(PolicyViolationError):
    """Raised when opening an approval while one is already pending.

    Attributes:
        deployment_id: Deployment that already has a pending request.
    """

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"Approval request already pending for deployment {deployment_id}")


class NotPendingError(PolicyViolationError):
    """Raised when deciding an approval that is not pending.

    Attributes:
        deployment_id: Deployment the decision was addressed to.
        decision: Current decision of the request, if one exists.
    """

    def __init__(self, deployment_id: str, decision: str | None = None) -> None:
        self.deployment_id = deployment_id
        self.decision = decision
        msg = f"No pending approval request for deployment {deployment_id}"
        if decision is not None:
            msg += f" (request is {decision})"
        super().__init__(msg)


class TooLateError(PolicyViolationError):
    """Raised when a decision arrives after the approval deadline.

    Attributes:
        deployment_id: Deployment the decision was addressed to.
        deadline: The deadline that has passed.
    """

    def __init__(self, deployment_id: str, deadline: datetime) -> None:
        self.deployment_id = deployment_id
        self.deadline = deadline
        super().__init__(
            f"Approval deadline {deadline.isoformat()} has passed for deployment {deployment_id}"
        )


class InvalidDecisionError(PolicyViolationError):
    """Raised when a decision is neither approve nor reject."""

    def __init__(self, decision: str) -> None:
        self.decision = decision
        super().__init__(f"Invalid approval decision: {decision} (expected approved or rejected)")


class IllegalTransitionError(PolicyViolationError):
    """Raised when a stage change is not an edge of the pipeline graph.

    Attributes:
        from_stage: Stage the deployment is in.
        to_stage: Stage that was requested.
    """

    def __init__(self, from_stage: str, to_stage: str) -> None:
        self.from_stage = from_stage
        self.to_stage = to_stage
        super().__init__(f"Illegal stage transition: {from_stage} -> {to_stage}")


class DeploymentNotFoundError(ShipgateError):
    """Raised when a deployment id is unknown.

    Attributes:
        deployment_id: The id that was looked up.
    """

    exit_code: int = 3

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        super().__init__(f"Deployment not found: {deployment_id}")


class InfrastructureError(ShipgateError):
    """Raised by InfrastructureProvider implementations on failure.

    Non-transient errors are not retried.
    """

    exit_code: int = 8


class TransientInfrastructureError(InfrastructureError):
    """Raised for failures that are safe to retry (timeouts, 5xx responses)."""


class RetryExhaustedError(InfrastructureError):
    """Raised when an InfrastructureProvider call fails after all retries.

    Attributes:
        operation: Provider operation name (e.g. "shift_traffic").
        deployment_id: Deployment the call was made for.
        attempts: Number of attempts made.
        last_error: The error raised by the final attempt.
    """

    def __init__(
        self,
        operation: str,
        deployment_id: str,
        attempts: int,
        last_error: BaseException | None = None,
    ) -> None:
        self.operation = operation
        self.deployment_id = deployment_id
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"{operation} failed for deployment {deployment_id} after {attempts} attempts{detail}"
        )


class ConfigurationError(ShipgateError):
    """Raised when configuration is missing or invalid."""

    exit_code: int = 6


class StateStorageError(ShipgateError):
    """Raised when the state directory cannot be read or written.

    Attributes:
        operation: What was being done ("load", "save", ...).
        path: File involved.
    """

    def __init__(self, operation: str, path: Path, reason: str) -> None:
        self.operation = operation
        self.path = path
        super().__init__(f"Failed to {operation} {path}: {reason}")


__all__ = [
    "ShipgateError",
    "PolicyViolationError",
    "AlreadyOpenError",
    "NotPendingError",
    "TooLateError",
    "InvalidDecisionError",
    "IllegalTransitionError",
    "DeploymentNotFoundError",
    "InfrastructureError",
    "TransientInfrastructureError",
    "RetryExhaustedError",
    "ConfigurationError",
    "StateStorageError",
]
