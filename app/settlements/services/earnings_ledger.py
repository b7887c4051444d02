"""
Earnings ledger: the source of truth for money owed to professionals.

EarningsLedger is the only writer of Earning status. It creates one earning
per finalized appointment, moves earnings to CHARGED and PAID in bulk when
fee charges and payouts complete, and reverses them on dispute.

Amounts are integer cents:
    gross = round_half_up(hourly_rate_cents * minutes / 60)
    fee   = round_half_up(gross * fee_percent / 100)
    net   = gross - fee

Usage:
    from settlements.services import EarningsLedger
    from settlements.types import SessionData

    earning = EarningsLedger.materialize_earning(
        appointment.id,
        SessionData.from_appointment(appointment),
    )

    EarningsLedger.mark_charged(earning_ids, fee_charge.id)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from core.services import BaseService

from settlements.events import CycleSummary, EarningConfirmed, EventDispatcher
from settlements.exceptions import (
    InvalidAmountError,
    InvalidStateTransitionError,
    SettlementNotFoundError,
)
from settlements.models import (
    PLATFORM_FEE_PERCENT_KEY,
    Earning,
    PlatformSetting,
    ProfessionalAccount,
)
from settlements.services.cycle_scheduler import CycleScheduler
from settlements.state_machines import EarningStatus
from settlements.types import EarningAmounts

if TYPE_CHECKING:
    from collections.abc import Iterable

    from django.db.models import QuerySet

    from settlements.types import SessionData


# =============================================================================
# Constants
# =============================================================================

PLATFORM_FEE_CACHE_KEY = "settlements:platform_fee_percent"

CENT = Decimal("1")

# Earning states counted as still owed to the professional
OUTSTANDING_STATES = (EarningStatus.CONFIRMED, EarningStatus.CHARGED)


class EarningsLedger(BaseService):
    """
    Owns the Earning lifecycle.

    State Flow:
        CONFIRMED (on materialize) -> CHARGED -> PAID
        PENDING_CONFIRMATION/CONFIRMED -> CANCELED
        CONFIRMED/CHARGED/PAID -> DISPUTED

    Bulk operations are idempotent: re-applying them to earnings already
    in the target state changes nothing.
    """

    # =========================================================================
    # Calculation
    # =========================================================================

    @classmethod
    def calculate_earning(
        cls,
        hourly_rate_cents: int,
        duration_minutes: int,
        fee_percent: Decimal | int | str,
    ) -> EarningAmounts:
        """
        Compute gross, fee and net cents for a session.

        Raises:
            InvalidAmountError: Non-positive rate or duration, percent outside
                0-100, or a gross that rounds to zero
        """
        percent = Decimal(str(fee_percent))
        details = {
            "hourly_rate_cents": hourly_rate_cents,
            "duration_minutes": duration_minutes,
            "fee_percent": str(percent),
        }

        if hourly_rate_cents <= 0:
            raise InvalidAmountError("Hourly rate must be positive", details=details)
        if duration_minutes <= 0:
            raise InvalidAmountError("Session duration must be positive", details=details)
        if not Decimal("0") <= percent <= Decimal("100"):
            raise InvalidAmountError("Fee percent must be between 0 and 100", details=details)

        gross = (Decimal(hourly_rate_cents) * duration_minutes / 60).quantize(
            CENT, rounding=ROUND_HALF_UP
        )
        if gross <= 0:
            raise InvalidAmountError("Session amount rounds to zero", details=details)

        fee = (gross * percent / 100).quantize(CENT, rounding=ROUND_HALF_UP)

        return EarningAmounts(
            gross_cents=int(gross),
            fee_percent=percent,
            fee_cents=int(fee),
            net_cents=int(gross - fee),
        )

    @classmethod
    def get_platform_fee_percent(cls, professional: ProfessionalAccount | None = None) -> Decimal:
        """
        Fee percent for a professional.

        Precedence: the professional's override, then the stored
        platform_fee_percent setting (cached), then PLATFORM_FEE_PERCENT.
        """
        if professional is not None and professional.fee_percent_override is not None:
            return Decimal(professional.fee_percent_override)

        cached = cache.get(PLATFORM_FEE_CACHE_KEY)
        if cached is not None:
            return Decimal(cached)

        percent = Decimal(settings.PLATFORM_FEE_PERCENT)
        stored = (
            PlatformSetting.objects.filter(key=PLATFORM_FEE_PERCENT_KEY)
            .values_list("value", flat=True)
            .first()
        )
        if stored is not None:
            try:
                percent = Decimal(stored.strip())
            except InvalidOperation:
                cls.get_logger().warning(
                    "Ignoring invalid platform fee setting",
                    extra={"value": stored},
                )

        cache.set(PLATFORM_FEE_CACHE_KEY, str(percent), settings.PLATFORM_SETTING_CACHE_SECONDS)
        return percent

    @classmethod
    def invalidate_fee_cache(cls) -> None:
        cache.delete(PLATFORM_FEE_CACHE_KEY)

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def materialize_earning(cls, appointment_id: uuid.UUID, session: SessionData) -> Earning:
        """
        Create the earning for a finalized appointment.

        Idempotent: if the appointment already has an earning it is
        returned unchanged, whatever its status.

        Args:
            appointment_id: Appointment the earning is for
            session: Billing inputs

        Returns:
            The appointment's earning

        Raises:
            SettlementNotFoundError: Unknown professional
            InvalidAmountError: Rate or duration out of range
        """
        existing = Earning.objects.filter(appointment_id=appointment_id).first()
        if existing is not None:
            cls.get_logger().info(
                "Earning already exists for appointment",
                extra={"appointment_id": str(appointment_id), "earning_id": str(existing.id)},
            )
            return existing

        try:
            professional = ProfessionalAccount.objects.get(pk=session.professional_id)
        except ProfessionalAccount.DoesNotExist:
            raise SettlementNotFoundError(
                f"Professional {session.professional_id} not found",
                details={"professional_id": str(session.professional_id)},
            )

        amounts = cls.calculate_earning(
            session.hourly_rate_cents,
            session.duration_minutes,
            cls.get_platform_fee_percent(professional),
        )
        cycle = CycleScheduler.get_cycle_for_date(session.session_start)

        try:
            with transaction.atomic():
                earning = Earning.objects.create(
                    professional=professional,
                    appointment_id=appointment_id,
                    cycle=cycle,
                    gross_cents=amounts.gross_cents,
                    platform_fee_percent=amounts.fee_percent,
                    platform_fee_cents=amounts.fee_cents,
                    net_cents=amounts.net_cents,
                    duration_minutes=session.duration_minutes,
                    hourly_rate_cents=session.hourly_rate_cents,
                    session_start=session.session_start,
                    session_end=session.session_end,
                    status=EarningStatus.CONFIRMED,
                )
        except IntegrityError:
            # Concurrent finalize created it first
            existing = Earning.objects.filter(appointment_id=appointment_id).first()
            if existing is None:
                raise
            return existing

        cls.get_logger().info(
            "Earning materialized",
            extra={
                "earning_id": str(earning.id),
                "appointment_id": str(appointment_id),
                "professional_id": str(professional.id),
                "cycle_id": str(cycle.id),
                "gross_cents": amounts.gross_cents,
                "fee_cents": amounts.fee_cents,
                "net_cents": amounts.net_cents,
            },
        )

        EventDispatcher.emit(
            EarningConfirmed(
                earning_id=earning.id,
                appointment_id=appointment_id,
                professional_id=professional.id,
                cycle_id=cycle.id,
                net_cents=earning.net_cents,
            )
        )
        return earning

    # =========================================================================
    # Reversals
    # =========================================================================

    @classmethod
    def cancel_earning(cls, earning_id: uuid.UUID) -> Earning:
        """
        Cancel an earning whose fee was not charged yet.

        Canceling an already canceled earning is a no-op.

        Raises:
            SettlementNotFoundError: No such earning
            InvalidStateTransitionError: The earning is charged, paid or disputed
        """
        return cls._transition(earning_id, "cancel", EarningStatus.CANCELED)

    @classmethod
    def dispute_earning(cls, earning_id: uuid.UUID) -> Earning:
        """
        Reverse an earning after its fee was charged or it was paid.

        The earning keeps its fee charge and payout references, so the
        reversal stays traceable. Disputing twice is a no-op.

        Raises:
            SettlementNotFoundError: No such earning
            InvalidStateTransitionError: The earning is pending or canceled
        """
        return cls._transition(earning_id, "dispute", EarningStatus.DISPUTED)

    @classmethod
    def _transition(cls, earning_id: uuid.UUID, action: str, target: str) -> Earning:
        with transaction.atomic():
            try:
                earning = Earning.objects.select_for_update().get(pk=earning_id)
            except Earning.DoesNotExist:
                raise SettlementNotFoundError(
                    f"Earning {earning_id} not found",
                    details={"earning_id": str(earning_id)},
                )

            if earning.status == target:
                return earning

            previous = earning.status
            try:
                getattr(earning, action)()
            except TransitionNotAllowed:
                raise InvalidStateTransitionError(
                    f"Cannot {action} an earning in '{previous}' state",
                    details={
                        "earning_id": str(earning_id),
                        "current_state": previous,
                        "target_state": target,
                    },
                )
            earning.save()

        cls.get_logger().info(
            f"Earning {target}",
            extra={"earning_id": str(earning_id), "previous_status": previous},
        )
        return earning

    # =========================================================================
    # Bulk Transitions
    # =========================================================================

    @classmethod
    def mark_charged(
        cls,
        earning_ids: Iterable[uuid.UUID],
        fee_charge_id: uuid.UUID,
        now: datetime | None = None,
    ) -> int:
        """
        Move confirmed earnings to CHARGED under a fee charge.

        Earnings already charged (or in any other state) are left alone.

        Returns:
            Number of earnings moved
        """
        now = now or timezone.now()
        updated = Earning.objects.filter(
            id__in=list(earning_ids),
            status=EarningStatus.CONFIRMED,
        ).update(
            status=EarningStatus.CHARGED,
            fee_charge_id=fee_charge_id,
            charged_at=now,
            updated_at=now,
        )
        cls.get_logger().info(
            "Earnings marked charged",
            extra={"fee_charge_id": str(fee_charge_id), "count": updated},
        )
        return updated

    @classmethod
    def mark_paid(
        cls,
        earning_ids: Iterable[uuid.UUID],
        payout_id: uuid.UUID,
        now: datetime | None = None,
    ) -> int:
        """
        Move charged earnings to PAID under a payout.

        Earnings already paid (or in any other state) are left alone.

        Returns:
            Number of earnings moved
        """
        now = now or timezone.now()
        updated = Earning.objects.filter(
            id__in=list(earning_ids),
            status=EarningStatus.CHARGED,
        ).update(
            status=EarningStatus.PAID,
            payout_id=payout_id,
            paid_at=now,
            updated_at=now,
        )
        cls.get_logger().info(
            "Earnings marked paid",
            extra={"payout_id": str(payout_id), "count": updated},
        )
        return updated

    # =========================================================================
    # Cycle Summaries
    # =========================================================================

    @classmethod
    def send_cycle_summaries(cls, cycle_id: uuid.UUID) -> int:
        """
        Emit one CycleSummary per professional with confirmed earnings in the cycle.

        Meant to run right after the cycle reaches its cutoff, before its
        fees are charged.

        Returns:
            Number of summaries emitted
        """
        cycle = CycleScheduler.get_cycle(cycle_id)
        rows = (
            Earning.objects.filter(cycle_id=cycle_id, status=EarningStatus.CONFIRMED)
            .values("professional_id")
            .annotate(
                gross_cents=Sum("gross_cents"),
                fee_cents=Sum("platform_fee_cents"),
                sessions_count=Count("id"),
            )
            .order_by("professional_id")
        )
        professionals = ProfessionalAccount.objects.in_bulk([row["professional_id"] for row in rows])

        for row in rows:
            professional = professionals[row["professional_id"]]
            EventDispatcher.emit(
                CycleSummary(
                    professional_id=professional.id,
                    cycle_id=cycle.id,
                    identifier=cycle.identifier,
                    gross_cents=row["gross_cents"],
                    fee_cents=row["fee_cents"],
                    fee_percent=str(cls.get_platform_fee_percent(professional)),
                    sessions_count=row["sessions_count"],
                )
            )

        cls.get_logger().info(
            "Cycle summaries sent",
            extra={"cycle_id": str(cycle.id), "identifier": cycle.identifier, "count": len(rows)},
        )
        return len(rows)

    # =========================================================================
    # Read Accessors
    # =========================================================================

    @classmethod
    def get_earning(cls, earning_id: uuid.UUID) -> Earning:
        try:
            return Earning.objects.select_related("cycle").get(pk=earning_id)
        except Earning.DoesNotExist:
            raise SettlementNotFoundError(
                f"Earning {earning_id} not found",
                details={"earning_id": str(earning_id)},
            )

    @classmethod
    def get_earnings_for_professional(
        cls,
        professional_id: uuid.UUID,
        status: str | None = None,
    ) -> QuerySet[Earning]:
        earnings = Earning.objects.filter(professional_id=professional_id)
        if status:
            earnings = earnings.filter(status=status)
        return earnings.select_related("cycle")

    @classmethod
    def get_earnings_for_cycle(
        cls,
        cycle_id: uuid.UUID,
        status: str | None = None,
    ) -> QuerySet[Earning]:
        earnings = Earning.objects.filter(cycle_id=cycle_id)
        if status:
            earnings = earnings.filter(status=status)
        return earnings

    @classmethod
    def get_lifetime_summary(cls, professional_id: uuid.UUID) -> dict[str, Any]:
        """
        Totals over a professional's whole history.

        Returns:
            Dict with paid totals, outstanding totals (confirmed or charged)
            and the count of reversed earnings
        """
        earnings = Earning.objects.filter(professional_id=professional_id)
        return {
            "professional_id": str(professional_id),
            "paid": earnings.filter(status=EarningStatus.PAID).totals(),
            "outstanding": earnings.filter(status__in=OUTSTANDING_STATES).totals(),
            "disputed_count": earnings.filter(status=EarningStatus.DISPUTED).count(),
            "canceled_count": earnings.filter(status=EarningStatus.CANCELED).count(),
        }

    @classmethod
    def get_current_cycle_summary(
        cls,
        professional_id: uuid.UUID,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Totals of a professional's earnings in the cycle covering now."""
        cycle = CycleScheduler.get_or_create_current_cycle(now)
        earnings = Earning.objects.for_pair(professional_id, cycle.id)
        return {
            "professional_id": str(professional_id),
            "cycle_id": str(cycle.id),
            "identifier": cycle.identifier,
            "cutoff_date": cycle.cutoff_date.isoformat(),
            "confirmed": earnings.filter(status=EarningStatus.CONFIRMED).totals(),
            "charged": earnings.filter(status=EarningStatus.CHARGED).totals(),
            "paid": earnings.filter(status=EarningStatus.PAID).totals(),
        }
