"""
Payout processor: disburses a professional's net earnings per cycle.

Once the pair's fee charge is settled (succeeded or waived), every CHARGED
earning covered by that charge is aggregated into one Payout and
transferred to the professional's Connect account in a single gateway call.
The transfer's idempotency key is stored on the payout and reused after a
failure whose outcome is unknown.

Two-phase flow:
1. Create or refresh the payout totals and transition PENDING -> PROCESSING
   in one transaction
2. Create the transfer OUTSIDE any transaction
3. Record COMPLETED (earnings -> PAID) or FAILED

Failed payouts are never retried automatically. An admin calls
reprocess_payout() once the cause (usually the Connect account) is fixed.

Usage:
    from settlements.services import PayoutProcessor

    result = PayoutProcessor.process_cycle(professional_id, cycle_id)
    summary = PayoutProcessor.process_all_ready_cycles()
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, Exists, OuterRef, Sum
from django.utils import timezone

from core.exceptions import BaseApplicationError, ConflictError
from core.services import BaseService, ServiceResult

from settlements.adapters import IdempotencyKeyGenerator, StripeGateway
from settlements.events import EventDispatcher, PayoutCompleted, PayoutFailed
from settlements.exceptions import (
    FeesNotSettledError,
    GatewayError,
    InvalidPayoutAccountError,
    InvalidStateTransitionError,
    NoEarningsError,
    SettlementNotFoundError,
    StaleRecordError,
)
from settlements.models import Earning, FeeCharge, Payout, PayoutCycle
from settlements.services.cycle_scheduler import CycleScheduler
from settlements.services.earnings_ledger import EarningsLedger
from settlements.state_machines import CycleStatus, EarningStatus, PayoutStatus
from settlements.types import BatchSummary

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from settlements.protocols import PaymentGateway


# Cycle statuses whose settled pairs may still be paid out
PAYABLE_CYCLE_STATES = (CycleStatus.PROCESSING, CycleStatus.FAILED)


class PayoutProcessor(BaseService):
    """
    Owns Payout creation and transfers.

    Shares the payment gateway with FeeChargeProcessor unless one is
    injected here.
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
    # Processing
    # =========================================================================

    @classmethod
    def process_cycle(
        cls,
        professional_id: uuid.UUID,
        cycle_id: uuid.UUID,
        now: datetime | None = None,
    ) -> ServiceResult[Payout]:
        """
        Pay out one professional's charged earnings for one cycle.

        Idempotent: a completed payout is returned as success without a
        second transfer.

        Returns:
            ServiceResult with the Payout; error_code PAYOUT_FAILED when the
            transfer failed or the payout failed earlier

        Raises:
            FeesNotSettledError: The pair's fee charge is not succeeded or waived
            NoEarningsError: No charged earnings to pay
            StaleRecordError: Another worker is processing the payout
        """
        now = now or timezone.now()
        log_context = {"professional_id": str(professional_id), "cycle_id": str(cycle_id)}

        fee_charge = FeeCharge.objects.settled().for_pair(professional_id, cycle_id).first()
        if fee_charge is None:
            raise FeesNotSettledError(
                "Fee charge for the pair is not settled",
                details=log_context,
            )

        payout = Payout.objects.for_pair(professional_id, cycle_id).first()
        if payout is not None:
            if payout.status == PayoutStatus.COMPLETED:
                return ServiceResult.success(payout)
            if payout.status == PayoutStatus.PROCESSING:
                raise StaleRecordError(
                    "Payout is already processing",
                    details={**log_context, "payout_id": str(payout.id)},
                )
            if payout.status == PayoutStatus.FAILED:
                return ServiceResult.failure(
                    payout.failure_reason or "Payout failed",
                    error_code="PAYOUT_FAILED",
                    data=payout,
                )

        # Phase 1: aggregate and move to PROCESSING
        payout = cls._start_payout(professional_id, cycle_id, fee_charge, now)
        log_context = {**log_context, "payout_id": str(payout.id), "attempt": payout.attempt_count}

        # Phase 2: transfer outside any transaction
        reference = None
        if payout.net_total_cents > 0:
            destination = payout.professional.stripe_account_id
            cls.get_logger().info(
                "Creating payout transfer",
                extra={**log_context, "net_total_cents": payout.net_total_cents},
            )
            try:
                if not destination:
                    raise InvalidPayoutAccountError(
                        "No Connect account on file for payouts",
                        details={"professional_id": str(professional_id)},
                    )
                transfer = cls.get_gateway().create_transfer(
                    destination_account=destination,
                    amount_cents=payout.net_total_cents,
                    currency=payout.currency,
                    idempotency_key=payout.idempotency_key,
                    metadata={
                        "payout_id": str(payout.id),
                        "professional_id": str(professional_id),
                        "cycle_id": str(cycle_id),
                    },
                )
            except GatewayError as e:
                cls.get_logger().error(
                    "Payout transfer failed",
                    extra={**log_context, "error_code": e.error_code, "error": e.message},
                )
                return cls._fail_payout(payout, e)
            reference = transfer.reference
        else:
            cls.get_logger().info("Zero net payout, skipping transfer", extra=log_context)

        # Phase 3: record completion
        with transaction.atomic():
            payout = Payout.objects.select_for_update().get(pk=payout.pk)
            payout.complete(transfer_reference=reference)
            payout.save()

            earning_ids = Earning.objects.filter(
                payout=payout,
                status=EarningStatus.CHARGED,
            ).values_list("id", flat=True)
            EarningsLedger.mark_paid(earning_ids, payout.id, now)

            EventDispatcher.emit(
                PayoutCompleted(
                    payout_id=payout.id,
                    professional_id=payout.professional_id,
                    cycle_id=payout.cycle_id,
                    net_total_cents=payout.net_total_cents,
                    transfer_reference=reference,
                )
            )

        cls.get_logger().info(
            "Payout completed",
            extra={**log_context, "transfer_reference": reference, "net_total_cents": payout.net_total_cents},
        )
        return ServiceResult.success(payout)

    @classmethod
    def _start_payout(
        cls,
        professional_id: uuid.UUID,
        cycle_id: uuid.UUID,
        fee_charge: FeeCharge,
        now: datetime,
    ) -> Payout:
        """Create or refresh the pending payout from the fee charge's earnings and start it."""
        with transaction.atomic():
            earnings = Earning.objects.filter(
                fee_charge=fee_charge,
                status=EarningStatus.CHARGED,
            ).select_for_update()
            earning_ids = list(earnings.values_list("id", flat=True))
            if not earning_ids:
                raise NoEarningsError(
                    "No charged earnings to pay out",
                    details={"professional_id": str(professional_id), "cycle_id": str(cycle_id)},
                )
            totals = Earning.objects.filter(id__in=earning_ids).totals()

            payout = Payout.objects.select_for_update().for_pair(professional_id, cycle_id).first()
            if payout is None:
                try:
                    with transaction.atomic():
                        payout = Payout.objects.create(
                            professional_id=professional_id,
                            cycle_id=cycle_id,
                            fee_charge=fee_charge,
                            gross_total_cents=totals["gross_cents"],
                            fee_total_cents=totals["fee_cents"],
                            net_total_cents=totals["net_cents"],
                            earnings_count=totals["count"],
                            currency=settings.SETTLEMENT_CURRENCY,
                        )
                except IntegrityError:
                    raise StaleRecordError(
                        "Payout created concurrently for pair",
                        details={"professional_id": str(professional_id), "cycle_id": str(cycle_id)},
                    )
            elif payout.status != PayoutStatus.PENDING:
                raise StaleRecordError(
                    "Payout left pending state",
                    details={"payout_id": str(payout.id), "status": payout.status},
                )
            else:
                payout.gross_total_cents = totals["gross_cents"]
                payout.fee_total_cents = totals["fee_cents"]
                payout.net_total_cents = totals["net_cents"]
                payout.earnings_count = totals["count"]

            Earning.objects.filter(id__in=earning_ids).update(payout=payout, updated_at=now)
            payout.process()
            payout.idempotency_key = payout.idempotency_key or IdempotencyKeyGenerator.generate(
                "payout_transfer", payout.id, payout.attempt_count
            )
            payout.save()

        cls.get_logger().info(
            "Payout processing",
            extra={
                "payout_id": str(payout.id),
                "earnings_count": payout.earnings_count,
                "net_total_cents": payout.net_total_cents,
            },
        )
        return Payout.objects.select_related("professional").get(pk=payout.pk)

    @classmethod
    def _fail_payout(cls, payout: Payout, error: GatewayError) -> ServiceResult[Payout]:
        reason = error.message
        with transaction.atomic():
            payout = Payout.objects.select_for_update().get(pk=payout.pk)
            payout.fail(reason=reason)
            if not error.outcome_unknown:
                payout.idempotency_key = ""
            payout.save()

            EventDispatcher.emit(
                PayoutFailed(
                    payout_id=payout.id,
                    professional_id=payout.professional_id,
                    cycle_id=payout.cycle_id,
                    net_total_cents=payout.net_total_cents,
                    reason=reason,
                )
            )

        return ServiceResult.failure(reason, error_code="PAYOUT_FAILED", data=payout)

    # =========================================================================
    # Admin Operations
    # =========================================================================

    @classmethod
    def reprocess_payout(cls, payout_id: uuid.UUID, now: datetime | None = None) -> ServiceResult[Payout]:
        """
        Reset a failed payout to PENDING and process it again.

        The new attempt repeats the previous idempotency key when the failed
        transfer may have gone through, and uses a new one otherwise.

        Raises:
            InvalidStateTransitionError: The payout is not failed
        """
        with transaction.atomic():
            try:
                payout = Payout.objects.select_for_update().get(pk=payout_id)
            except Payout.DoesNotExist:
                raise SettlementNotFoundError(
                    f"Payout {payout_id} not found",
                    details={"payout_id": str(payout_id)},
                )
            if not payout.can_retry:
                raise InvalidStateTransitionError(
                    f"Only failed payouts can be reprocessed, not '{payout.status}'",
                    details={"payout_id": str(payout_id), "current_state": payout.status},
                )
            payout.retry()
            payout.save()

        cls.get_logger().info(
            "Reprocessing payout",
            extra={"payout_id": str(payout_id), "previous_attempts": payout.attempt_count},
        )
        return cls.process_cycle(payout.professional_id, payout.cycle_id, now)

    # =========================================================================
    # Batches
    # =========================================================================

    @classmethod
    def process_all_ready_cycles(cls, now: datetime | None = None) -> BatchSummary:
        """
        Pay out every settled pair with charged earnings, then finalize cycles.

        Failed cycles are scanned too: a fee waived or retried after its
        cycle failed still leads to a payout. One pair failing never stops
        the batch. Each processing cycle is closed or failed afterwards when
        no pair has work left.
        """
        now = now or timezone.now()
        summary = BatchSummary()

        finished = Payout.objects.filter(
            professional_id=OuterRef("professional_id"),
            cycle_id=OuterRef("cycle_id"),
            status__in=(PayoutStatus.COMPLETED, PayoutStatus.FAILED),
        )
        unpaid = Earning.objects.filter(fee_charge=OuterRef("pk"), status=EarningStatus.CHARGED)
        pairs = list(
            FeeCharge.objects.settled()
            .filter(cycle__status__in=PAYABLE_CYCLE_STATES)
            .alias(finished=Exists(finished), unpaid=Exists(unpaid))
            .filter(finished=False, unpaid=True)
            .order_by("cycle__start_date", "professional_id")
            .values_list("professional_id", "cycle_id")
        )

        for professional_id, cycle_id in pairs:
            label = f"payout {professional_id}/{cycle_id}"
            try:
                result = cls.process_cycle(professional_id, cycle_id, now)
            except ConflictError as e:
                cls.get_logger().warning(
                    "Skipping payout",
                    extra={"professional_id": str(professional_id), "cycle_id": str(cycle_id), "reason": str(e)},
                )
                summary.skipped += 1
                continue
            except BaseApplicationError as e:
                cls.get_logger().error(
                    "Payout errored",
                    extra={
                        "professional_id": str(professional_id),
                        "cycle_id": str(cycle_id),
                        "error": str(e),
                        "details": e.details,
                    },
                    exc_info=True,
                )
                summary.record_failure(f"{label}: {e}")
                continue

            if result.success:
                summary.processed += 1
            else:
                summary.record_failure(f"{label}: [{result.error_code}] {result.error}")

        cycle_ids = list(
            PayoutCycle.objects.processing().order_by("start_date").values_list("id", flat=True)
        )
        for cycle_id in cycle_ids:
            try:
                CycleScheduler.finalize_cycle(cycle_id, now)
            except ConflictError:
                cls.get_logger().warning(
                    "Cycle finalized by another run",
                    extra={"cycle_id": str(cycle_id)},
                )

        return summary

    # =========================================================================
    # Read Accessors
    # =========================================================================

    @classmethod
    def get_payout(cls, payout_id: uuid.UUID) -> Payout:
        try:
            return Payout.objects.select_related("cycle", "fee_charge").get(pk=payout_id)
        except Payout.DoesNotExist:
            raise SettlementNotFoundError(
                f"Payout {payout_id} not found",
                details={"payout_id": str(payout_id)},
            )

    @classmethod
    def get_payouts_for_professional(
        cls,
        professional_id: uuid.UUID,
        status: str | None = None,
    ) -> QuerySet[Payout]:
        payouts = Payout.objects.filter(professional_id=professional_id)
        if status:
            payouts = payouts.filter(status=status)
        return payouts.select_related("cycle")

    @classmethod
    def get_payout_summary(cls, cycle_id: uuid.UUID | None = None) -> dict[str, Any]:
        """Counts and net amounts by status, optionally for one cycle."""
        payouts = Payout.objects.all()
        if cycle_id:
            payouts = payouts.filter(cycle_id=cycle_id)

        by_status = {
            row["status"]: {"count": row["count"], "net_total_cents": row["net_total_cents"] or 0}
            for row in payouts.values("status")
            .annotate(count=Count("id"), net_total_cents=Sum("net_total_cents"))
            .order_by()
        }
        return {
            "cycle_id": str(cycle_id) if cycle_id else None,
            "by_status": by_status,
            "paid_cents": by_status.get(PayoutStatus.COMPLETED, {}).get("net_total_cents", 0),
            "failed_count": by_status.get(PayoutStatus.FAILED, {}).get("count", 0),
            "processing_cycles": PayoutCycle.objects.filter(status=CycleStatus.PROCESSING).count(),
        }
