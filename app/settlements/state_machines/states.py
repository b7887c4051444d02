"""
State enums for settlement models.

These are Django TextChoices for database storage and admin integration.
Every status column is declared with choices from this module, and
services only ever compare against these members.

State Machines Overview:

AppointmentConfirmation.final_status (derived, never set directly):
    pending → client_confirmed / professional_confirmed → confirmed
    any "false" answer → disputed → confirmed_canceled / denied

Earning:
    pending_confirmation → confirmed → charged → paid
    pending_confirmation/confirmed → canceled
    confirmed/charged/paid → disputed (reversal)

PayoutCycle:
    open → processing → closed
    processing → failed

FeeCharge:
    pending → succeeded
    pending → failed (attempts exhausted or no payment method)
    pending/failed → waived

Payout:
    pending → processing → completed
    processing → failed → pending (manual reprocess)
"""

from django.db import models


class AppointmentStatus(models.TextChoices):
    """Status of the booking collaborator's appointment as last reported."""

    COMPLETED = "completed", "Completed"
    CANCELED = "canceled", "Canceled"


class ConfirmationFlag(models.TextChoices):
    """
    One party's answer to "did this session happen as billed?".

    UNSET means the party has not answered yet.
    """

    UNSET = "unset", "Unset"
    TRUE = "true", "Occurred"
    FALSE = "false", "Did not occur"


class ConfirmationStatus(models.TextChoices):
    """
    Derived status of an AppointmentConfirmation.

    Terminal: CONFIRMED, CONFIRMED_CANCELED, DENIED
    DISPUTED waits for an admin decision.
    """

    PENDING = "pending", "Pending"
    CLIENT_CONFIRMED = "client_confirmed", "Client Confirmed"
    PROFESSIONAL_CONFIRMED = "professional_confirmed", "Professional Confirmed"
    CONFIRMED = "confirmed", "Confirmed"
    DISPUTED = "disputed", "Disputed"
    CONFIRMED_CANCELED = "confirmed_canceled", "Cancellation Confirmed"
    DENIED = "denied", "Dispute Denied"


class DisputeResolution(models.TextChoices):
    """Admin decision recorded on a disputed confirmation."""

    NONE = "none", "None"
    ADMIN_CONFIRMED = "admin_confirmed", "Admin Confirmed Cancellation"
    ADMIN_DENIED = "admin_denied", "Admin Denied Dispute"


class DisputeAction(models.TextChoices):
    """Action an admin takes on a disputed confirmation."""

    CONFIRM_CANCEL = "confirm_cancel", "Confirm Cancellation"
    DENY = "deny", "Deny Dispute"


class EarningStatus(models.TextChoices):
    """
    States for the Earning model lifecycle.

    Terminal states: PAID, CANCELED, DISPUTED
    """

    PENDING_CONFIRMATION = "pending_confirmation", "Pending Confirmation"
    CONFIRMED = "confirmed", "Confirmed"
    CHARGED = "charged", "Fee Charged"
    PAID = "paid", "Paid"
    CANCELED = "canceled", "Canceled"
    DISPUTED = "disputed", "Disputed"


class CycleStatus(models.TextChoices):
    """
    States for the PayoutCycle model lifecycle.

    Transitions are monotonic: OPEN → PROCESSING → CLOSED or FAILED.
    """

    OPEN = "open", "Open"
    PROCESSING = "processing", "Processing"
    CLOSED = "closed", "Closed"
    FAILED = "failed", "Failed"


class FeeChargeStatus(models.TextChoices):
    """
    States for the FeeCharge model lifecycle.

    PENDING covers both "not attempted yet" and "retry scheduled".
    """

    PENDING = "pending", "Pending"
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    WAIVED = "waived", "Waived"


class PayoutStatus(models.TextChoices):
    """
    States for the Payout model lifecycle.

    FAILED payouts are never retried automatically.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


# Fee charge states after which payouts may proceed
SETTLED_FEE_STATES = (FeeChargeStatus.SUCCEEDED, FeeChargeStatus.WAIVED)

# Confirmation states still waiting on at least one party
AWAITING_STATES = (
    ConfirmationStatus.PENDING,
    ConfirmationStatus.CLIENT_CONFIRMED,
    ConfirmationStatus.PROFESSIONAL_CONFIRMED,
)
