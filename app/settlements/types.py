"""
Data types for settlement operations.

This module defines dataclasses used to pass data between the settlement
services, the gateway and booking ports, and the scheduled run.

Types:
    AppointmentCompleted: Intake event from the booking collaborator
    SessionData: Billing inputs for one earning
    EarningAmounts: Result of an earning calculation
    CycleWindow: Deterministic window for a moment in time
    ChargeResult / TransferResult: Gateway outcomes
    BatchSummary: Outcome of a batch over many items
    PaymentMethodCheck: Outcome of the saved card expiry check
    SettlementRunReport: Outcome of one scheduled run

Usage:
    from settlements.types import SessionData

    session = SessionData.from_appointment(appointment)
    earning = EarningsLedger.materialize_earning(appointment.id, session)
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from settlements.models import AppointmentRecord


# =============================================================================
# Intake
# =============================================================================


@dataclass
class AppointmentCompleted:
    """
    An appointment finished on the booking side.

    Attributes:
        appointment_id: Appointment ID (shared with AppointmentRecord)
        professional_id: Professional who delivered the session
        client_id: Client who booked the session
        start_time / end_time: Session window (timezone-aware)
        hourly_rate_cents: Hourly rate in cents
        adjusted_rate_cents: Rate after an adjustment, if any
    """

    appointment_id: uuid.UUID
    professional_id: uuid.UUID
    client_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    hourly_rate_cents: int
    adjusted_rate_cents: int | None = None

    def __post_init__(self) -> None:
        """Validate the event after initialization."""
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")


@dataclass
class SessionData:
    """
    Billing inputs for one earning.

    Attributes:
        professional_id: Professional the money is owed to
        session_start / session_end: Session window
        hourly_rate_cents: Effective hourly rate in cents
        duration_minutes: Billed length in minutes
    """

    professional_id: uuid.UUID
    session_start: datetime
    session_end: datetime
    hourly_rate_cents: int
    duration_minutes: int

    @classmethod
    def from_appointment(cls, appointment: AppointmentRecord) -> SessionData:
        """Build session data from a stored appointment."""
        return cls(
            professional_id=appointment.professional_id,
            session_start=appointment.start_time,
            session_end=appointment.end_time,
            hourly_rate_cents=appointment.effective_rate_cents,
            duration_minutes=appointment.duration_minutes,
        )


@dataclass(frozen=True)
class EarningAmounts:
    """Amounts for one earning, in cents. net_cents == gross_cents - fee_cents."""

    gross_cents: int
    fee_percent: Decimal
    fee_cents: int
    net_cents: int


@dataclass(frozen=True)
class CycleWindow:
    """
    The cycle window a moment falls into.

    Attributes:
        start: Monday 00:00 UTC, inclusive
        end: Following Monday 00:00 UTC, exclusive
        cutoff: end plus the grace period
    """

    start: datetime
    end: datetime
    cutoff: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


# =============================================================================
# Gateway Results
# =============================================================================


@dataclass
class ChargeResult:
    """
    Result of an off-session fee charge.

    Attributes:
        reference: Gateway charge reference (pi_xxx)
        status: Gateway status, e.g. "succeeded"
        amount_cents: Amount charged
        currency: Currency code
        raw_response: Full gateway response dict
    """

    reference: str
    status: str
    amount_cents: int
    currency: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class TransferResult:
    """
    Result of a transfer to a professional's Connect account.

    Attributes:
        reference: Gateway transfer reference (tr_xxx)
        amount_cents: Amount transferred
        currency: Currency code
        destination_account: Destination account ID
        raw_response: Full gateway response dict
    """

    reference: str
    amount_cents: int
    currency: str
    destination_account: str
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Reports
# =============================================================================


@dataclass
class BatchSummary:
    """
    Outcome of a batch over many independent items.

    A conflict means another worker already did the work; it is counted
    as skipped, never as failed.
    """

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def merge(self, other: BatchSummary) -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PaymentMethodCheck:
    """Saved cards invalidated as expired and owners warned about next month's expiry."""

    invalidated: int = 0
    warned: int = 0


@dataclass
class SettlementRunReport:
    """
    Outcome of one scheduled settlement run.

    Attributes:
        started_at: When the run started
        cards_invalidated: Expired saved cards removed (owners blocked)
        card_expiry_warnings: Owners warned that their card expires next month
        confirmations_created: Confirmations created for finished appointments
        confirmations_auto_confirmed: Confirmations completed by the timeout or
            because their cycle reached its cutoff
        reminders_sent: Reminder events emitted
        cycles_advanced: Cycles moved from open to processing
        cycle_summaries_sent: Per-professional summaries for advanced cycles
        fee_charges: Outcome of fee charging (new charges and due retries)
        payouts: Outcome of payout processing
        current_cycle_id: Cycle covering the end of the run
        errors: Every item-level error message, in step order
        duration_ms: Wall time of the run
    """

    started_at: datetime
    cards_invalidated: int = 0
    card_expiry_warnings: int = 0
    confirmations_created: int = 0
    confirmations_auto_confirmed: int = 0
    reminders_sent: int = 0
    cycles_advanced: int = 0
    cycle_summaries_sent: int = 0
    fee_charges: BatchSummary = field(default_factory=BatchSummary)
    payouts: BatchSummary = field(default_factory=BatchSummary)
    current_cycle_id: uuid.UUID | None = None
    errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        """True when no step recorded an error."""
        return not self.errors

    def add_error(self, step: str, message: str) -> None:
        self.errors.append(f"{step}: {message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict (used as the Celery task result)."""
        return {
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 2),
            "cards_invalidated": self.cards_invalidated,
            "card_expiry_warnings": self.card_expiry_warnings,
            "confirmations_created": self.confirmations_created,
            "confirmations_auto_confirmed": self.confirmations_auto_confirmed,
            "reminders_sent": self.reminders_sent,
            "cycles_advanced": self.cycles_advanced,
            "cycle_summaries_sent": self.cycle_summaries_sent,
            "fee_charges": self.fee_charges.to_dict(),
            "payouts": self.payouts.to_dict(),
            "current_cycle_id": str(self.current_cycle_id) if self.current_cycle_id else None,
            "errors": list(self.errors),
        }


__all__ = [
    "AppointmentCompleted",
    "SessionData",
    "EarningAmounts",
    "CycleWindow",
    "ChargeResult",
    "TransferResult",
    "BatchSummary",
    "PaymentMethodCheck",
    "SettlementRunReport",
]
