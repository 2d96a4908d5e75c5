"""
Error types for stackpilot.

This module defines the LifecycleError base class and the subclasses used to
classify failures of lifecycle operations. Operations raise these errors
instead of returning ad-hoc status codes; the command layer maps each class
to a process exit code via its ``exit_code`` attribute.

Exit codes:
- 0: success
- 1: recoverable or non-critical failure
- 2: critical or fatal failure
- 3: invalid invocation
"""

from __future__ import annotations

from typing import Any

EXIT_OK = 0
EXIT_RECOVERABLE = 1
EXIT_CRITICAL = 2
EXIT_INVALID = 3


class LifecycleError(Exception):
    """
    Base exception class for lifecycle errors.

    Attributes:
        error_code: Internal error code string (e.g., "validation",
            "state_conflict", "health_gate_timeout").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, service names).
        exit_code: Process exit code the command layer reports.

    Example:
        >>> raise LifecycleError(
        ...     error_code="internal",
        ...     message="Checkpoint manifest is unreadable",
        ...     details={"path": "/opt/stack/.checkpoint/latest/manifest.json"},
        ... )
    """

    exit_code: int = EXIT_CRITICAL

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a LifecycleError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(LifecycleError):
    """
    Error raised for malformed input or references.

    Surfaced immediately and never retried.
    """

    exit_code = EXIT_INVALID

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ValidationError."""
        super().__init__(error_code="validation", message=message, details=details)


class TransientInfrastructureError(LifecycleError):
    """
    Error raised when an idempotent infrastructure call fails transiently.

    Image fetches raise this error; the retry combinator retries it with
    bounded backoff before surfacing it.
    """

    exit_code = EXIT_RECOVERABLE

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransientInfrastructureError."""
        super().__init__(
            error_code="transient_infrastructure", message=message, details=details
        )


class StateConflictError(LifecycleError):
    """
    Error raised when the deployment state forbids the operation.

    Typical causes are a lock held by another operation or a missing
    checkpoint. The ``remediation`` text tells the operator what to do.
    """

    exit_code = EXIT_RECOVERABLE

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        remediation: str | None = None,
    ) -> None:
        """Initialize a StateConflictError."""
        super().__init__(error_code="state_conflict", message=message, details=details)
        self.remediation = remediation
        if remediation:
            self.details.setdefault("remediation", remediation)


class HealthGateTimeout(LifecycleError):
    """
    Error raised when a critical service never reached a healthy status.
    """

    exit_code = EXIT_CRITICAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a HealthGateTimeout."""
        super().__init__(
            error_code="health_gate_timeout", message=message, details=details
        )


class IntegrityFailure(LifecycleError):
    """
    Error raised when a backup archive fails verification.

    Attributes:
        stage: Verification stage that failed ("decompression", "structure",
            "semantic" or "test_restore").
    """

    exit_code = EXIT_CRITICAL

    def __init__(
        self,
        message: str,
        stage: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize an IntegrityFailure."""
        super().__init__(error_code="integrity_failure", message=message, details=details)
        self.stage = stage
        self.details.setdefault("stage", stage)


class StepFailedError(LifecycleError):
    """
    Error raised when an installation step body fails.

    The sequencer persists the failure before raising, so the install can be
    resumed from the failed step.
    """

    exit_code = EXIT_CRITICAL

    def __init__(
        self,
        step: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a StepFailedError."""
        super().__init__(error_code="step_failed", message=message, details=details)
        self.step = step
        self.details.setdefault("step", step)


class InternalError(LifecycleError):
    """
    Error raised for unexpected internal errors.

    Used when the container engine or the filesystem behaves in a way the
    operation cannot recover from.
    """

    exit_code = EXIT_CRITICAL

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
