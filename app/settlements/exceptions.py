"""
Settlement-specific exceptions.

Exception Hierarchy:
    SettlementNotFoundError (NotFoundError)

    ValidationError based (rejected, never retried):
    ├── AppointmentNotEligibleError - Appointment not finished or not completed
    ├── DisputeAlreadyResolvedError - Confirmation is not currently disputed
    ├── NoEarningsError - Nothing to charge or pay for a pair
    ├── FeesNotSettledError - Payout requested before the fee is settled
    └── InvalidAmountError - Rate or amount out of range

    ConflictError based (benign when raised by a lost race):
    ├── ConfirmationAlreadyExistsError - Confirmation exists for appointment
    ├── AlreadyConfirmedError - Party already answered
    ├── InvalidStateTransitionError - Transition not allowed from current state
    └── StaleRecordError - Conditional update matched no row

    SettlementIntegrityError - Stored data violates an invariant (fatal for one item)

    GatewayError (ExternalServiceError)
    ├── PaymentMethodMissingError - No card on file (permanent)
    ├── CardDeclinedError - Card declined (permanent)
    ├── InvalidPayoutAccountError - Connect account unusable (permanent)
    ├── InvalidGatewayRequestError - Malformed request or auth failure (permanent)
    ├── GatewayRateLimitError - Rate limited (transient)
    ├── GatewayUnavailableError - Network or 5xx (transient)
    └── GatewayTimeoutError - No response in time (transient)

Usage:
    from settlements.exceptions import NoEarningsError

    if not earnings:
        raise NoEarningsError(
            "No confirmed earnings to charge",
            details={"professional_id": str(professional_id), "cycle_id": str(cycle_id)},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Lookup
# =============================================================================


class SettlementNotFoundError(NotFoundError):
    """Raised when a confirmation, earning, cycle, charge or payout is missing."""

    default_error_code: str = "SETTLEMENT_NOT_FOUND"


# =============================================================================
# Validation Errors
# =============================================================================


class AppointmentNotEligibleError(ValidationError):
    """
    Raised when a confirmation is requested for an appointment that has
    not ended yet or was canceled by the booking collaborator.
    """

    default_error_code: str = "NOT_ELIGIBLE"


class DisputeAlreadyResolvedError(ValidationError):
    """Raised when resolving a confirmation that is not currently disputed."""

    default_error_code: str = "ALREADY_RESOLVED"


class NoEarningsError(ValidationError):
    """Raised when a (professional, cycle) pair has nothing to charge or pay."""

    default_error_code: str = "NO_EARNINGS"


class FeesNotSettledError(ValidationError):
    """
    Raised when a payout is requested for a pair whose FeeCharge is not
    succeeded or waived.
    """

    default_error_code: str = "FEES_NOT_SETTLED"


class InvalidAmountError(ValidationError):
    """Raised when an hourly rate, duration or percent is out of range."""

    default_error_code: str = "INVALID_AMOUNT"


class CycleNotChargeableError(ValidationError):
    """Raised when fees are charged for a cycle that is still open or already closed."""

    default_error_code: str = "CYCLE_NOT_CHARGEABLE"


# =============================================================================
# Conflict Errors
# =============================================================================


class ConfirmationAlreadyExistsError(ConflictError):
    """Raised when a confirmation already exists for the appointment."""

    default_error_code: str = "ALREADY_EXISTS"


class AlreadyConfirmedError(ConflictError):
    """Raised when a party answers a confirmation a second time."""

    default_error_code: str = "ALREADY_CONFIRMED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state transition is not allowed from the current state.

    Example:
        raise InvalidStateTransitionError(
            "Cannot cancel an earning in 'charged' state",
            details={"current_state": "charged", "target_state": "canceled"},
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


class StaleRecordError(ConflictError):
    """
    Raised when a conditional update matched no row.

    Another process moved the record out of the expected state between the
    read and the write. Callers treat this as "already done".
    """

    default_error_code: str = "STALE_RECORD"


# =============================================================================
# Data Integrity
# =============================================================================


class SettlementIntegrityError(BaseApplicationError):
    """
    Raised when stored data violates a settlement invariant.

    Fatal for the single item involved; batch jobs log it with full
    context and move on.
    """

    default_error_code: str = "SETTLEMENT_INTEGRITY_ERROR"


# =============================================================================
# Gateway Errors
# =============================================================================


class GatewayError(ExternalServiceError):
    """
    Base exception for payment gateway failures.

    Attributes:
        gateway_code: The gateway's own error code, when it returned one
        decline_code: Card decline code, when applicable
        is_retryable: Whether backing off and retrying can help
        outcome_unknown: The request may have reached the gateway and
            succeeded; the next attempt must reuse the same idempotency key
    """

    default_error_code: str = "GATEWAY_ERROR"
    is_retryable: bool = False
    outcome_unknown: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        gateway_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if gateway_code:
            details["gateway_code"] = gateway_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.gateway_code = gateway_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors
# -----------------------------------------------------------------------------


class PaymentMethodMissingError(GatewayError):
    """The professional has no payment method on file to charge fees against."""

    default_error_code: str = "NO_PAYMENT_METHOD"


class CardDeclinedError(GatewayError):
    """The card was declined by the issuing bank."""

    default_error_code: str = "CARD_DECLINED"


class InvalidPayoutAccountError(GatewayError):
    """The destination Connect account is missing, restricted or disabled."""

    default_error_code: str = "INVALID_PAYOUT_ACCOUNT"


class InvalidGatewayRequestError(GatewayError):
    """The request was rejected as malformed or unauthenticated."""

    default_error_code: str = "INVALID_GATEWAY_REQUEST"


# -----------------------------------------------------------------------------
# Transient Errors
# -----------------------------------------------------------------------------


class GatewayRateLimitError(GatewayError):
    """Rate limited by the gateway."""

    default_error_code: str = "GATEWAY_RATE_LIMITED"
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """Network failure or gateway server error."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True
    outcome_unknown: bool = True


class GatewayTimeoutError(GatewayError):
    """
    The gateway did not answer in time.

    The operation may have succeeded remotely, so the next attempt reuses
    the idempotency key of this one.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    is_retryable: bool = True
    outcome_unknown: bool = True


__all__ = [
    "SettlementNotFoundError",
    "AppointmentNotEligibleError",
    "DisputeAlreadyResolvedError",
    "NoEarningsError",
    "FeesNotSettledError",
    "InvalidAmountError",
    "CycleNotChargeableError",
    "ConfirmationAlreadyExistsError",
    "AlreadyConfirmedError",
    "InvalidStateTransitionError",
    "StaleRecordError",
    "SettlementIntegrityError",
    "GatewayError",
    "PaymentMethodMissingError",
    "CardDeclinedError",
    "InvalidPayoutAccountError",
    "InvalidGatewayRequestError",
    "GatewayRateLimitError",
    "GatewayUnavailableError",
    "GatewayTimeoutError",
]
