"""
Base exception classes for application-wide error handling.

Every domain error carries a human-readable message, a machine-readable
error code and a free-form details dict, so batch jobs can log and report
failures uniformly.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Rejected input or violated business rule (never retried)
    ├── NotFoundError - Referenced record does not exist
    ├── ConflictError - Record is no longer in the expected state
    └── ExternalServiceError - Third-party call failed

Usage:
    from core.exceptions import ConflictError, ValidationError

    raise ValidationError("Hourly rate must be positive", error_code="INVALID_RATE")

    try:
        ...
    except ConflictError:
        # Another worker already performed the transition
        logger.info("Lost race, skipping")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for callers and reports
        details: Additional context (ids, states, amounts)

    Example:
        try:
            FeeChargeProcessor.charge_cycle(professional_id, cycle_id)
        except BaseApplicationError as e:
            report.errors.append(str(e))
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to a plain dict.

        Returns:
            Dict with error, error_code, and (when present) details keys
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input is rejected or a business rule is violated.

    Validation errors are final: retrying the same call cannot succeed.

    Example:
        if rate_cents <= 0:
            raise ValidationError(
                "Hourly rate must be positive",
                error_code="INVALID_RATE",
                details={"rate_cents": rate_cents},
            )
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a referenced record does not exist.

    Example:
        cycle = PayoutCycle.objects.filter(id=cycle_id).first()
        if cycle is None:
            raise NotFoundError(
                f"Cycle {cycle_id} not found",
                details={"cycle_id": str(cycle_id)},
            )
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with the current record state.

    Covers duplicates, lost conditional updates and transitions that are
    not allowed from the current state. Batch callers treat conflicts as
    "already done" and skip the item.

    Example:
        updated = PayoutCycle.objects.filter(
            id=cycle.id, status=CycleStatus.OPEN
        ).update(status=CycleStatus.PROCESSING)
        if not updated:
            raise ConflictError(
                "Cycle already advanced",
                details={"cycle_id": str(cycle.id)},
            )
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Subclasses set is_retryable to tell callers whether backing off and
    retrying can help.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    is_retryable: bool = False
