"""
Outbound settlement events.

Services describe what happened as small dataclasses and hand them to
EventDispatcher.emit(). Dispatch waits for the surrounding transaction to
commit and uses Signal.send_robust(), so a failing receiver can never roll
back or break the settlement step that emitted the event.

Signals:
    settlement_event: Sent with event=<one of the dataclasses below>
    slot_restore_requested: Sent by SignalBookingAdapter after a confirmed
        cancellation (professional_id, day_of_week, start_time)

Usage:
    from settlements.events import EventDispatcher, PayoutCompleted

    EventDispatcher.emit(
        PayoutCompleted(
            payout_id=payout.id,
            professional_id=payout.professional_id,
            cycle_id=payout.cycle_id,
            net_total_cents=payout.net_total_cents,
            transfer_reference=payout.transfer_reference,
        )
    )
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar

from django.db import transaction
from django.dispatch import Signal

logger = logging.getLogger(__name__)

settlement_event = Signal()

slot_restore_requested = Signal()


# =============================================================================
# Event Types
# =============================================================================


@dataclass(frozen=True)
class SettlementEvent:
    """Base for outbound events. name is the stable routing key."""

    name: ClassVar[str] = "settlement_event"

    def to_payload(self) -> dict[str, Any]:
        """JSON-serializable payload with the event name included."""
        payload: dict[str, Any] = {"event": self.name}
        for key, value in asdict(self).items():
            if isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, datetime):
                value = value.isoformat()
            payload[key] = value
        return payload


@dataclass(frozen=True)
class EarningConfirmed(SettlementEvent):
    name: ClassVar[str] = "earning_confirmed"

    earning_id: uuid.UUID
    appointment_id: uuid.UUID
    professional_id: uuid.UUID
    cycle_id: uuid.UUID
    net_cents: int


@dataclass(frozen=True)
class FeeChargeFailed(SettlementEvent):
    name: ClassVar[str] = "fee_charge_failed"

    fee_charge_id: uuid.UUID
    professional_id: uuid.UUID
    cycle_id: uuid.UUID
    amount_cents: int
    attempt_count: int
    failure_code: str
    failure_message: str


@dataclass(frozen=True)
class AccountBlocked(SettlementEvent):
    name: ClassVar[str] = "account_blocked"

    professional_id: uuid.UUID
    fee_charge_id: uuid.UUID | None
    reason: str


@dataclass(frozen=True)
class AccountUnblocked(SettlementEvent):
    name: ClassVar[str] = "account_unblocked"

    professional_id: uuid.UUID
    reason: str


@dataclass(frozen=True)
class PayoutCompleted(SettlementEvent):
    name: ClassVar[str] = "payout_completed"

    payout_id: uuid.UUID
    professional_id: uuid.UUID
    cycle_id: uuid.UUID
    net_total_cents: int
    transfer_reference: str | None


@dataclass(frozen=True)
class PayoutFailed(SettlementEvent):
    name: ClassVar[str] = "payout_failed"

    payout_id: uuid.UUID
    professional_id: uuid.UUID
    cycle_id: uuid.UUID
    net_total_cents: int
    reason: str


@dataclass(frozen=True)
class CardExpiring(SettlementEvent):
    name: ClassVar[str] = "card_expiring"

    professional_id: uuid.UUID
    expiry_month: int
    expiry_year: int


@dataclass(frozen=True)
class CycleSummary(SettlementEvent):
    """Per-professional totals sent when a cycle becomes chargeable."""

    name: ClassVar[str] = "cycle_summary"

    professional_id: uuid.UUID
    cycle_id: uuid.UUID
    identifier: str
    gross_cents: int
    fee_cents: int
    fee_percent: str
    sessions_count: int


@dataclass(frozen=True)
class ConfirmationReminder(SettlementEvent):
    name: ClassVar[str] = "confirmation_reminder"

    confirmation_id: uuid.UUID
    appointment_id: uuid.UUID
    client_id: uuid.UUID | None
    professional_id: uuid.UUID | None


# =============================================================================
# Dispatcher
# =============================================================================


class EventDispatcher:
    """Sends settlement events once the current transaction commits."""

    @staticmethod
    def emit(event: SettlementEvent) -> None:
        """
        Queue an event for delivery after commit.

        Outside a transaction the event is sent immediately.
        """
        transaction.on_commit(lambda: EventDispatcher.send_now(event))

    @staticmethod
    def send_now(event: SettlementEvent) -> None:
        """Deliver an event to every receiver, logging receiver failures."""
        responses = settlement_event.send_robust(sender=type(event), event=event)
        for receiver, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    "Settlement event receiver failed",
                    extra={
                        "event": event.name,
                        "receiver": getattr(receiver, "__qualname__", repr(receiver)),
                        "error": str(response),
                    },
                )


__all__ = [
    "settlement_event",
    "slot_restore_requested",
    "SettlementEvent",
    "EarningConfirmed",
    "FeeChargeFailed",
    "AccountBlocked",
    "AccountUnblocked",
    "PayoutCompleted",
    "PayoutFailed",
    "CardExpiring",
    "CycleSummary",
    "ConfirmationReminder",
    "EventDispatcher",
]
