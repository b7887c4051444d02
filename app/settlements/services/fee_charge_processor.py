"""
Fee charge processor: collects the platform fee per (professional, cycle).

Once a cycle is past its cutoff, each professional with confirmed earnings
in it is charged the sum of those earnings' platform fees against their
saved card. A failed attempt is retried with exponential backoff; after
FEE_CHARGE_MAX_ATTEMPTS the charge fails for good and the professional's
account is blocked until an admin unblocks it, waives the fee, or a later
charge succeeds.

Earnings confirmed after their pair was charged (a dispute denied late,
for instance) are never dropped: they ride on the professional's charge
for the newest processing cycle that has none yet.

Gateway calls follow the two-phase pattern:
1. Claim the attempt with a conditional update (attempt_count, next_retry_at)
   and store its idempotency key on the charge
2. Call the gateway OUTSIDE any transaction with that key
3. Record the outcome in a new transaction

The key is replaced only after an attempt with a known outcome (a decline,
for instance). After a timeout, or a worker that died during the call, the
next attempt repeats the stored key, so the gateway returns the original
charge instead of taking the fee twice.

Usage:
    from settlements.services import FeeChargeProcessor

    result = FeeChargeProcessor.charge_cycle(professional_id, cycle_id)
    if result.success:
        fee_charge = result.data

    # Admin
    FeeChargeProcessor.waive_fee(fee_charge_id, waived_by="admin@example.com", reason="Goodwill")
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Exists, F, OuterRef, Q, Sum
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from core.exceptions import BaseApplicationError, ConflictError
from core.services import BaseService, ServiceResult

from settlements.adapters import IdempotencyKeyGenerator, StripeGateway, backoff_delay
from settlements.events import (
    AccountBlocked,
    AccountUnblocked,
    CardExpiring,
    EventDispatcher,
    FeeChargeFailed,
)
from settlements.exceptions import (
    CycleNotChargeableError,
    GatewayError,
    InvalidStateTransitionError,
    NoEarningsError,
    PaymentMethodMissingError,
    SettlementIntegrityError,
    SettlementNotFoundError,
    StaleRecordError,
)
from settlements.models import Earning, FeeCharge, PayoutCycle, ProfessionalAccount
from settlements.services.earnings_ledger import EarningsLedger
from settlements.state_machines import (
    CycleStatus,
    EarningStatus,
    FeeChargeStatus,
)
from settlements.types import BatchSummary, PaymentMethodCheck

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from settlements.protocols import PaymentGateway
    from settlements.types import ChargeResult


# Cycle statuses whose pairs may still be charged (FAILED for admin retries
# and for pairs confirmed after the cycle failed)
CHARGEABLE_CYCLE_STATES = (CycleStatus.PROCESSING, CycleStatus.FAILED)

EXPIRED_CARD_REASON = "Card has expired"


class FeeChargeProcessor(BaseService):
    """
    Owns FeeCharge creation, attempts and admin overrides.

    Error codes on failed results:
        FEE_CHARGE_RETRY_SCHEDULED: Attempt failed, another one is scheduled
        FEE_CHARGE_FAILED: Charge failed for good, account blocked
    """

    # Payment gateway - can be injected for testing
    _gateway: PaymentGateway | None = None

    @classmethod
    def get_gateway(cls) -> PaymentGateway:
        """Get the payment gateway."""
        return cls._gateway or StripeGateway()

    @classmethod
    def set_gateway(cls, gateway: PaymentGateway | None) -> None:
        """Set the payment gateway (for testing)."""
        cls._gateway = gateway

    # =========================================================================
    # Charging
    # =========================================================================

    @classmethod
    def charge_cycle(
        cls,
        professional_id: uuid.UUID,
        cycle_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ServiceResult[FeeCharge]:
        """
        Charge the platform fee for one professional and one cycle.

        Idempotent: a pair whose charge already succeeded or was waived
        returns success without calling the gateway.

        Args:
            professional_id: Professional to charge
            cycle_id: Cycle whose confirmed earnings are covered
            now: Current time (defaults to timezone.now())

        Returns:
            ServiceResult with the FeeCharge. On failure error_code is
            FEE_CHARGE_RETRY_SCHEDULED or FEE_CHARGE_FAILED.

        Raises:
            CycleNotChargeableError: The cycle is still open or already closed
            NoEarningsError: No confirmed earnings and no existing charge
            StaleRecordError: Another worker holds the attempt, or the next
                retry is not due yet
        """
        now = now or timezone.now()
        log_context = {"professional_id": str(professional_id), "cycle_id": str(cycle_id)}

        cycle_status = PayoutCycle.objects.filter(pk=cycle_id).values_list("status", flat=True).first()
        if cycle_status is None:
            raise SettlementNotFoundError(
                f"Cycle {cycle_id} not found",
                details={"cycle_id": str(cycle_id)},
            )
        if cycle_status not in CHARGEABLE_CYCLE_STATES:
            raise CycleNotChargeableError(
                f"Fees cannot be charged for a cycle in '{cycle_status}' state",
                details={**log_context, "cycle_status": cycle_status},
            )

        fee_charge = FeeCharge.objects.active().for_pair(professional_id, cycle_id).first()
        if fee_charge is None:
            fee_charge = cls._create_fee_charge(professional_id, cycle_id)
        elif fee_charge.is_settled:
            cls.get_logger().info(
                "Fee charge already settled",
                extra={**log_context, "fee_charge_id": str(fee_charge.id), "status": fee_charge.status},
            )
            return ServiceResult.success(fee_charge)

        # Phase 1: claim the attempt
        fee_charge = cls._claim_attempt(fee_charge, now)
        attempt = fee_charge.attempt_count
        log_context = {**log_context, "fee_charge_id": str(fee_charge.id), "attempt": attempt}

        if fee_charge.amount_cents == 0:
            cls.get_logger().info("Zero fee, skipping gateway", extra=log_context)
            return cls._record_success(fee_charge, None, now)

        # Phase 2: gateway call outside any transaction
        professional = fee_charge.professional
        cls.get_logger().info(
            "Charging platform fee",
            extra={**log_context, "amount_cents": fee_charge.amount_cents},
        )
        try:
            if not professional.has_payment_method:
                raise PaymentMethodMissingError(
                    "No payment method on file for fee charges",
                    details={"professional_id": str(professional.id)},
                )
            charge = cls.get_gateway().charge_fee(
                customer_id=professional.stripe_customer_id,
                payment_method_id=professional.default_payment_method_id,
                amount_cents=fee_charge.amount_cents,
                currency=fee_charge.currency,
                idempotency_key=fee_charge.idempotency_key,
                metadata={
                    "fee_charge_id": str(fee_charge.id),
                    "professional_id": str(professional.id),
                    "cycle_id": str(cycle_id),
                },
            )
        except GatewayError as e:
            return cls._record_failure(fee_charge, e, now)

        # Phase 3: record the outcome
        return cls._record_success(fee_charge, charge, now)

    @classmethod
    def _create_fee_charge(cls, professional_id: uuid.UUID, cycle_id: uuid.UUID) -> FeeCharge:
        """Create the pending charge and link every earning it covers to it."""
        with transaction.atomic():
            earning_ids = list(cls._chargeable_earnings(professional_id, cycle_id).values_list("id", flat=True))
            if not earning_ids:
                raise NoEarningsError(
                    "No confirmed earnings to charge",
                    details={"professional_id": str(professional_id), "cycle_id": str(cycle_id)},
                )

            totals = Earning.objects.filter(id__in=earning_ids).totals()
            professional = ProfessionalAccount.objects.get(pk=professional_id)

            try:
                with transaction.atomic():
                    fee_charge = FeeCharge.objects.create(
                        professional=professional,
                        cycle_id=cycle_id,
                        total_gross_cents=totals["gross_cents"],
                        platform_fee_percent=EarningsLedger.get_platform_fee_percent(professional),
                        amount_cents=totals["fee_cents"],
                        earnings_count=totals["count"],
                        currency=settings.SETTLEMENT_CURRENCY,
                    )
            except IntegrityError:
                raise StaleRecordError(
                    "Fee charge created concurrently for pair",
                    details={"professional_id": str(professional_id), "cycle_id": str(cycle_id)},
                )

            Earning.objects.filter(id__in=earning_ids).update(fee_charge=fee_charge)
            carried = Earning.objects.filter(id__in=earning_ids).exclude(cycle_id=cycle_id).count()

        cls.get_logger().info(
            "Fee charge created",
            extra={
                "fee_charge_id": str(fee_charge.id),
                "professional_id": str(professional_id),
                "cycle_id": str(cycle_id),
                "amount_cents": fee_charge.amount_cents,
                "earnings_count": fee_charge.earnings_count,
                "carried_over": carried,
            },
        )
        return fee_charge

    @classmethod
    def _chargeable_earnings(cls, professional_id: uuid.UUID, cycle_id: uuid.UUID) -> QuerySet[Earning]:
        """
        Confirmed earnings a new charge for the pair covers.

        Besides the pair's own unlinked earnings this picks up earnings left
        on the pair's failed charges and the professional's late earnings
        from other cycles.
        """
        late_ids = cls.late_earnings().filter(professional_id=professional_id).values("id")
        return (
            Earning.objects.filter(professional_id=professional_id, status=EarningStatus.CONFIRMED)
            .filter(Q(fee_charge__isnull=True) | Q(fee_charge__status=FeeChargeStatus.FAILED))
            .filter(Q(cycle_id=cycle_id) | Q(fee_charge__cycle_id=cycle_id) | Q(id__in=late_ids))
        )

    @classmethod
    def late_earnings(cls) -> QuerySet[Earning]:
        """
        Unlinked confirmed earnings their own pair can no longer charge.

        They were confirmed after the pair's fee charge was created or after
        their cycle closed.
        """
        pair_charged = FeeCharge.objects.filter(
            professional_id=OuterRef("professional_id"),
            cycle_id=OuterRef("cycle_id"),
        )
        return (
            Earning.objects.unlinked()
            .alias(pair_charged=Exists(pair_charged))
            .filter(Q(pair_charged=True) | Q(cycle__status=CycleStatus.CLOSED))
        )

    @classmethod
    def _claim_attempt(cls, fee_charge: FeeCharge, now: datetime) -> FeeCharge:
        """
        Take the next attempt with a conditional update.

        The stored idempotency key is kept when the previous attempt has no
        known outcome; otherwise the attempt gets a fresh one.

        Raises:
            StaleRecordError: The charge moved on, another worker claimed the
                attempt, or the scheduled retry time has not passed
        """
        attempt = fee_charge.attempt_count + 1
        idempotency_key = fee_charge.idempotency_key or IdempotencyKeyGenerator.generate(
            "fee_charge", fee_charge.id, attempt
        )
        delay = backoff_delay(
            attempt - 1,
            base=settings.FEE_CHARGE_RETRY_BASE_SECONDS,
            max_delay=settings.FEE_CHARGE_RETRY_MAX_SECONDS,
        )
        claimed = (
            FeeCharge.objects.filter(
                pk=fee_charge.pk,
                status=FeeChargeStatus.PENDING,
                attempt_count=fee_charge.attempt_count,
                version=fee_charge.version,
            )
            .filter(Q(next_retry_at__isnull=True) | Q(next_retry_at__lte=now))
            .update(
                attempt_count=F("attempt_count") + 1,
                last_attempt_at=now,
                next_retry_at=now + timedelta(seconds=delay),
                idempotency_key=idempotency_key,
                version=F("version") + 1,
                updated_at=now,
            )
        )
        if not claimed:
            raise StaleRecordError(
                "Fee charge attempt not available",
                details={
                    "fee_charge_id": str(fee_charge.id),
                    "attempt": attempt,
                    "next_retry_at": fee_charge.next_retry_at.isoformat() if fee_charge.next_retry_at else None,
                },
            )
        return FeeCharge.objects.select_related("professional").get(pk=fee_charge.pk)

    @classmethod
    def _record_success(
        cls,
        fee_charge: FeeCharge,
        charge: ChargeResult | None,
        now: datetime,
    ) -> ServiceResult[FeeCharge]:
        reference = charge.reference if charge else None
        with transaction.atomic():
            fee_charge = FeeCharge.objects.select_for_update().get(pk=fee_charge.pk)
            try:
                fee_charge.succeed(gateway_reference=reference)
            except TransitionNotAllowed:
                # Money was taken but the record moved on (waived meanwhile)
                cls.get_logger().critical(
                    "Gateway charged a fee charge that is no longer pending",
                    extra={
                        "fee_charge_id": str(fee_charge.id),
                        "status": fee_charge.status,
                        "gateway_reference": reference,
                    },
                )
                raise SettlementIntegrityError(
                    "Fee charge left pending state during gateway call",
                    details={
                        "fee_charge_id": str(fee_charge.id),
                        "status": fee_charge.status,
                        "gateway_reference": reference,
                    },
                )
            fee_charge.save()

            earning_ids = Earning.objects.filter(
                fee_charge=fee_charge,
                status=EarningStatus.CONFIRMED,
            ).values_list("id", flat=True)
            EarningsLedger.mark_charged(earning_ids, fee_charge.id, now)
            cls._clear_block(fee_charge.professional_id, "Fee charge succeeded")

        cls.get_logger().info(
            "Fee charge succeeded",
            extra={
                "fee_charge_id": str(fee_charge.id),
                "professional_id": str(fee_charge.professional_id),
                "gateway_reference": reference,
                "attempt": fee_charge.attempt_count,
            },
        )
        return ServiceResult.success(fee_charge)

    @classmethod
    def _record_failure(
        cls,
        fee_charge: FeeCharge,
        error: GatewayError,
        now: datetime,
    ) -> ServiceResult[FeeCharge]:
        attempt = fee_charge.attempt_count
        exhausted = attempt >= settings.FEE_CHARGE_MAX_ATTEMPTS
        permanent = isinstance(error, PaymentMethodMissingError) or exhausted

        log_context = {
            "fee_charge_id": str(fee_charge.id),
            "professional_id": str(fee_charge.professional_id),
            "attempt": attempt,
            "error_code": error.error_code,
            "error": error.message,
        }

        if not permanent:
            delay = backoff_delay(
                attempt - 1,
                base=settings.FEE_CHARGE_RETRY_BASE_SECONDS,
                max_delay=settings.FEE_CHARGE_RETRY_MAX_SECONDS,
            )
            next_retry_at = now + timedelta(seconds=delay)
            # A charge that may have gone through is retried with the same key
            FeeCharge.objects.filter(pk=fee_charge.pk, status=FeeChargeStatus.PENDING).update(
                next_retry_at=next_retry_at,
                failure_code=error.error_code,
                failure_message=error.message,
                idempotency_key=fee_charge.idempotency_key if error.outcome_unknown else "",
                version=F("version") + 1,
                updated_at=now,
            )
            cls.get_logger().warning(
                "Fee charge attempt failed, retry scheduled",
                extra={
                    **log_context,
                    "next_retry_at": next_retry_at.isoformat(),
                    "outcome_unknown": error.outcome_unknown,
                },
            )
            return ServiceResult.failure(
                error.message,
                error_code="FEE_CHARGE_RETRY_SCHEDULED",
                data=FeeCharge.objects.get(pk=fee_charge.pk),
            )

        reason = (
            "No payment method on file"
            if isinstance(error, PaymentMethodMissingError)
            else f"Fee charge failed after {attempt} attempt(s): {error.message}"
        )
        with transaction.atomic():
            fee_charge = FeeCharge.objects.select_for_update().get(pk=fee_charge.pk)
            if fee_charge.status != FeeChargeStatus.PENDING:
                raise StaleRecordError(
                    "Fee charge left pending state during gateway call",
                    details={"fee_charge_id": str(fee_charge.id), "status": fee_charge.status},
                )
            fee_charge.fail(failure_code=error.error_code, failure_message=error.message)
            fee_charge.save()

            EventDispatcher.emit(
                FeeChargeFailed(
                    fee_charge_id=fee_charge.id,
                    professional_id=fee_charge.professional_id,
                    cycle_id=fee_charge.cycle_id,
                    amount_cents=fee_charge.amount_cents,
                    attempt_count=attempt,
                    failure_code=error.error_code,
                    failure_message=error.message,
                )
            )
            cls._block(fee_charge.professional_id, fee_charge.id, reason, now)

        cls.get_logger().error("Fee charge failed permanently", extra=log_context)
        return ServiceResult.failure(reason, error_code="FEE_CHARGE_FAILED", data=fee_charge)

    # =========================================================================
    # Batches
    # =========================================================================

    @classmethod
    def charge_ready_pairs(cls, now: datetime | None = None) -> BatchSummary:
        """
        Charge every pair with unlinked confirmed earnings in a chargeable cycle.

        Pairs that already have a charge are skipped: pending ones belong
        to retry_due_charges() and failed ones wait for retry_fee_charge().
        Late earnings of such pairs are then charged with the professional's
        newest processing cycle that has no charge yet; when there is none
        they wait for the next cycle to reach its cutoff.
        """
        now = now or timezone.now()
        summary = BatchSummary()

        pairs = Earning.objects.uncharged_pairs(CHARGEABLE_CYCLE_STATES)
        existing = set(
            FeeCharge.objects.filter(cycle__status__in=CHARGEABLE_CYCLE_STATES).values_list(
                "professional_id", "cycle_id"
            )
        )
        for professional_id, cycle_id in pairs:
            if (professional_id, cycle_id) in existing:
                continue
            cls._run_for_summary(summary, professional_id, cycle_id, now)

        late_professionals = set(cls.late_earnings().values_list("professional_id", flat=True))
        for professional_id in sorted(late_professionals, key=str):
            target = cls._carry_over_cycle(professional_id)
            if target is None:
                cls.get_logger().info(
                    "Late earnings wait for the next cycle",
                    extra={"professional_id": str(professional_id)},
                )
                continue
            cls._run_for_summary(summary, professional_id, target.id, now)

        return summary

    @classmethod
    def _carry_over_cycle(cls, professional_id: uuid.UUID) -> PayoutCycle | None:
        """Newest processing cycle the professional has no fee charge in yet."""
        charged_cycles = FeeCharge.objects.filter(professional_id=professional_id).values("cycle_id")
        return (
            PayoutCycle.objects.processing()
            .exclude(id__in=charged_cycles)
            .order_by("-start_date")
            .first()
        )

    @classmethod
    def retry_due_charges(cls, now: datetime | None = None) -> BatchSummary:
        """Run the next attempt of every pending charge whose retry time passed."""
        now = now or timezone.now()
        summary = BatchSummary()

        due = list(FeeCharge.objects.due_for_retry(now).values_list("professional_id", "cycle_id"))
        for professional_id, cycle_id in due:
            cls._run_for_summary(summary, professional_id, cycle_id, now)

        return summary

    @classmethod
    def _run_for_summary(
        cls,
        summary: BatchSummary,
        professional_id: uuid.UUID,
        cycle_id: uuid.UUID,
        now: datetime,
    ) -> None:
        label = f"fee charge {professional_id}/{cycle_id}"
        try:
            result = cls.charge_cycle(professional_id, cycle_id, now)
        except ConflictError as e:
            cls.get_logger().warning(
                "Skipping fee charge",
                extra={"professional_id": str(professional_id), "cycle_id": str(cycle_id), "reason": str(e)},
            )
            summary.skipped += 1
            return
        except BaseApplicationError as e:
            cls.get_logger().error(
                "Fee charge errored",
                extra={
                    "professional_id": str(professional_id),
                    "cycle_id": str(cycle_id),
                    "error": str(e),
                    "details": e.details,
                },
                exc_info=True,
            )
            summary.record_failure(f"{label}: {e}")
            return

        if result.success:
            summary.processed += 1
        else:
            summary.record_failure(f"{label}: [{result.error_code}] {result.error}")

    # =========================================================================
    # Admin Operations
    # =========================================================================

    @classmethod
    def waive_fee(
        cls,
        fee_charge_id: uuid.UUID,
        waived_by: str = "",
        reason: str = "",
        now: datetime | None = None,
    ) -> ServiceResult[FeeCharge]:
        """
        Waive a pending or failed fee charge without calling the gateway.

        The earnings covered by the charge move to CHARGED as if the charge
        had succeeded, and any payment block on the professional is lifted.
        Waiving an already waived charge is a no-op.
        """
        now = now or timezone.now()

        with transaction.atomic():
            fee_charge = cls._get_fee_charge_for_update(fee_charge_id)

            if fee_charge.status == FeeChargeStatus.WAIVED:
                return ServiceResult.success(fee_charge)

            if fee_charge.status == FeeChargeStatus.FAILED:
                other = (
                    FeeCharge.objects.active()
                    .for_pair(fee_charge.professional_id, fee_charge.cycle_id)
                    .exclude(pk=fee_charge.pk)
                    .first()
                )
                if other is not None:
                    return ServiceResult.failure(
                        "Another fee charge is active for this pair",
                        error_code="INVALID_STATE_TRANSITION",
                        data=fee_charge,
                    )

            try:
                fee_charge.waive(waived_by=waived_by, reason=reason)
            except TransitionNotAllowed:
                return ServiceResult.failure(
                    f"Cannot waive a fee charge in '{fee_charge.status}' state",
                    error_code="INVALID_STATE_TRANSITION",
                    data=fee_charge,
                )
            fee_charge.save()

            earning_ids = Earning.objects.filter(
                fee_charge=fee_charge,
                status=EarningStatus.CONFIRMED,
            ).values_list("id", flat=True)
            EarningsLedger.mark_charged(earning_ids, fee_charge.id, now)
            cls._clear_block(fee_charge.professional_id, "Fee waived")

        cls.get_logger().info(
            "Fee charge waived",
            extra={
                "fee_charge_id": str(fee_charge_id),
                "professional_id": str(fee_charge.professional_id),
                "waived_by": waived_by,
            },
        )
        return ServiceResult.success(fee_charge)

    @classmethod
    def retry_fee_charge(cls, fee_charge_id: uuid.UUID, now: datetime | None = None) -> ServiceResult[FeeCharge]:
        """
        Start a fresh charge for the pair of a failed fee charge.

        The failed row stays for audit; a new PENDING charge with a reset
        attempt counter is created and attempted immediately.

        Raises:
            InvalidStateTransitionError: The charge is not failed
            StaleRecordError: The pair already has an active charge
        """
        fee_charge = cls.get_fee_charge(fee_charge_id)
        if fee_charge.status != FeeChargeStatus.FAILED:
            raise InvalidStateTransitionError(
                f"Only failed fee charges can be retried, not '{fee_charge.status}'",
                details={"fee_charge_id": str(fee_charge_id), "current_state": fee_charge.status},
            )
        if FeeCharge.objects.active().for_pair(fee_charge.professional_id, fee_charge.cycle_id).exists():
            raise StaleRecordError(
                "Pair already has an active fee charge",
                details={"fee_charge_id": str(fee_charge_id)},
            )

        cls.get_logger().info(
            "Retrying failed fee charge",
            extra={"fee_charge_id": str(fee_charge_id), "professional_id": str(fee_charge.professional_id)},
        )
        return cls.charge_cycle(fee_charge.professional_id, fee_charge.cycle_id, now)

    @classmethod
    def unblock_professional(cls, professional_id: uuid.UUID, reason: str = "Unblocked by admin") -> bool:
        """
        Lift a payment block.

        Returns:
            True if the professional was blocked
        """
        with transaction.atomic():
            return cls._clear_block(professional_id, reason)

    # =========================================================================
    # Payment Methods
    # =========================================================================

    @classmethod
    def check_payment_methods(cls, now: datetime | None = None) -> PaymentMethodCheck:
        """
        Invalidate expired saved cards and warn about cards expiring next month.

        An expired card is removed from the account and the professional is
        blocked until a new card is saved. Each upcoming expiry is announced
        with a CardExpiring event once per calendar month.
        """
        now = now or timezone.now()
        today = now.astimezone(dt_timezone.utc).date()
        month_start = datetime(today.year, today.month, 1, tzinfo=dt_timezone.utc)
        if today.month == 12:
            next_year, next_month = today.year + 1, 1
        else:
            next_year, next_month = today.year, today.month + 1
        check = PaymentMethodCheck()

        for professional in ProfessionalAccount.objects.card_expired(today.year, today.month):
            with transaction.atomic():
                invalidated = ProfessionalAccount.objects.filter(
                    pk=professional.pk,
                    default_payment_method_id=professional.default_payment_method_id,
                ).update(default_payment_method_id=None, updated_at=now)
                if not invalidated:
                    continue
                cls._block(professional.id, None, EXPIRED_CARD_REASON, now)
            check.invalidated += 1
            cls.get_logger().warning(
                "Expired card invalidated",
                extra={
                    "professional_id": str(professional.id),
                    "expiry_month": professional.card_expiry_month,
                    "expiry_year": professional.card_expiry_year,
                },
            )

        not_warned = Q(card_expiry_warned_at__isnull=True) | Q(card_expiry_warned_at__lt=month_start)
        expiring = ProfessionalAccount.objects.card_expiring_in(next_year, next_month).filter(not_warned)
        for professional in expiring:
            with transaction.atomic():
                claimed = (
                    ProfessionalAccount.objects.filter(pk=professional.pk)
                    .filter(not_warned)
                    .update(card_expiry_warned_at=now, updated_at=now)
                )
                if not claimed:
                    continue
                EventDispatcher.emit(
                    CardExpiring(
                        professional_id=professional.id,
                        expiry_month=next_month,
                        expiry_year=next_year,
                    )
                )
            check.warned += 1

        if check.invalidated or check.warned:
            cls.get_logger().info(
                "Payment methods checked",
                extra={"invalidated": check.invalidated, "warned": check.warned},
            )
        return check

    # =========================================================================
    # Blocking
    # =========================================================================

    @classmethod
    def _block(
        cls,
        professional_id: uuid.UUID,
        fee_charge_id: uuid.UUID | None,
        reason: str,
        now: datetime,
    ) -> bool:
        blocked = ProfessionalAccount.objects.filter(
            pk=professional_id,
            payment_blocked_at__isnull=True,
        ).update(payment_blocked_at=now, payment_block_reason=reason, updated_at=now)
        if blocked:
            cls.get_logger().warning(
                "Professional blocked",
                extra={"professional_id": str(professional_id), "reason": reason},
            )
            EventDispatcher.emit(
                AccountBlocked(
                    professional_id=professional_id,
                    fee_charge_id=fee_charge_id,
                    reason=reason,
                )
            )
        return bool(blocked)

    @classmethod
    def _clear_block(cls, professional_id: uuid.UUID, reason: str) -> bool:
        unblocked = ProfessionalAccount.objects.filter(
            pk=professional_id,
            payment_blocked_at__isnull=False,
        ).update(payment_blocked_at=None, payment_block_reason="", updated_at=timezone.now())
        if unblocked:
            cls.get_logger().info(
                "Professional unblocked",
                extra={"professional_id": str(professional_id), "reason": reason},
            )
            EventDispatcher.emit(AccountUnblocked(professional_id=professional_id, reason=reason))
        return bool(unblocked)

    # =========================================================================
    # Read Accessors
    # =========================================================================

    @classmethod
    def get_fee_charge(cls, fee_charge_id: uuid.UUID) -> FeeCharge:
        try:
            return FeeCharge.objects.get(pk=fee_charge_id)
        except FeeCharge.DoesNotExist:
            raise SettlementNotFoundError(
                f"Fee charge {fee_charge_id} not found",
                details={"fee_charge_id": str(fee_charge_id)},
            )

    @classmethod
    def get_blocked_professionals(cls) -> QuerySet[ProfessionalAccount]:
        return ProfessionalAccount.objects.blocked().order_by("payment_blocked_at")

    @classmethod
    def get_fee_charges_for_professional(
        cls,
        professional_id: uuid.UUID,
        status: str | None = None,
    ) -> QuerySet[FeeCharge]:
        charges = FeeCharge.objects.filter(professional_id=professional_id)
        if status:
            charges = charges.filter(status=status)
        return charges.select_related("cycle")

    @classmethod
    def get_fee_charge_summary(cls, cycle_id: uuid.UUID | None = None) -> dict[str, Any]:
        """Counts and amounts by status, optionally for one cycle."""
        charges = FeeCharge.objects.all()
        if cycle_id:
            charges = charges.filter(cycle_id=cycle_id)

        by_status = {
            row["status"]: {"count": row["count"], "amount_cents": row["amount_cents"] or 0}
            for row in charges.values("status")
            .annotate(count=Count("id"), amount_cents=Sum("amount_cents"))
            .order_by()
        }
        return {
            "cycle_id": str(cycle_id) if cycle_id else None,
            "by_status": by_status,
            "collected_cents": by_status.get(FeeChargeStatus.SUCCEEDED, {}).get("amount_cents", 0),
            "waived_cents": by_status.get(FeeChargeStatus.WAIVED, {}).get("amount_cents", 0),
            "blocked_professionals": ProfessionalAccount.objects.blocked().count(),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @classmethod
    def _get_fee_charge_for_update(cls, fee_charge_id: uuid.UUID) -> FeeCharge:
        try:
            return FeeCharge.objects.select_for_update().get(pk=fee_charge_id)
        except FeeCharge.DoesNotExist:
            raise SettlementNotFoundError(
                f"Fee charge {fee_charge_id} not found",
                details={"fee_charge_id": str(fee_charge_id)},
            )
