"""
Cycle scheduler: weekly payout windows and their lifecycle.

Cycle boundaries come from calendar arithmetic only: every moment maps to
the window starting on the Monday 00:00 UTC at or before it. Two earnings
on the same day therefore always share a cycle, whatever order they are
processed in.

Status changes are conditional updates on the expected prior status, so
concurrent runs can race freely: the row count tells each caller whether
it won.

Usage:
    from settlements.services import CycleScheduler

    cycle = CycleScheduler.get_cycle_for_date(session_start)

    for cycle in CycleScheduler.advance_due_cycles():
        ...  # charge fees for the cycle
"""

from __future__ import annotations

import uuid
from datetime import datetime, time, timedelta, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db.models import Count, Q
from django.utils import timezone

from core.services import BaseService

from settlements.exceptions import SettlementNotFoundError, StaleRecordError
from settlements.models import Earning, FeeCharge, Payout, PayoutCycle
from settlements.state_machines import (
    CycleStatus,
    EarningStatus,
    FeeChargeStatus,
    PayoutStatus,
)
from settlements.types import CycleWindow

if TYPE_CHECKING:
    from django.db.models import QuerySet


# =============================================================================
# Constants
# =============================================================================

CYCLE_LENGTH = timedelta(days=7)

# Earning states that still need or already received money movement
LIVE_EARNING_STATES = (
    EarningStatus.CONFIRMED,
    EarningStatus.CHARGED,
    EarningStatus.PAID,
)

# Earning states that still need money movement
OUTSTANDING_EARNING_STATES = (
    EarningStatus.CONFIRMED,
    EarningStatus.CHARGED,
)


class CycleScheduler(BaseService):
    """
    Owns PayoutCycle creation and status transitions.

    Status Flow:
        OPEN -> PROCESSING (cutoff passed)
        PROCESSING -> CLOSED (every professional paid)
        PROCESSING -> FAILED (nothing left to do, at least one professional failed)
    """

    # =========================================================================
    # Windows
    # =========================================================================

    @classmethod
    def window_for(cls, moment: datetime) -> CycleWindow:
        """
        Compute the cycle window containing a moment.

        Args:
            moment: Timezone-aware datetime

        Returns:
            CycleWindow starting on the Monday 00:00 UTC at or before moment
        """
        day = moment.astimezone(dt_timezone.utc).date()
        monday = day - timedelta(days=day.weekday())
        start = datetime.combine(monday, time.min, tzinfo=dt_timezone.utc)
        end = start + CYCLE_LENGTH
        cutoff = end + timedelta(days=settings.SETTLEMENT_CYCLE_GRACE_DAYS)
        return CycleWindow(start=start, end=end, cutoff=cutoff)

    @classmethod
    def cutoff_boundary(cls, now: datetime | None = None) -> datetime:
        """
        Start of the oldest cycle whose cutoff has not passed yet.

        Sessions starting before the returned moment belong to cycles that
        are already chargeable.
        """
        now = now or timezone.now()
        return cls.window_for(now - timedelta(days=settings.SETTLEMENT_CYCLE_GRACE_DAYS)).start

    @classmethod
    def get_cycle_for_date(cls, moment: datetime) -> PayoutCycle:
        """
        Return the cycle covering a moment, creating it on first use.

        The cycle is returned whatever its status, so late earnings still
        land in the window their session belongs to.
        """
        window = cls.window_for(moment)
        cycle, created = PayoutCycle.objects.get_or_create(
            start_date=window.start,
            defaults={"end_date": window.end, "cutoff_date": window.cutoff},
        )
        if created:
            cls.get_logger().info(
                "Created payout cycle",
                extra={
                    "cycle_id": str(cycle.id),
                    "identifier": cycle.identifier,
                    "cutoff_date": cycle.cutoff_date.isoformat(),
                },
            )
        return cycle

    @classmethod
    def get_or_create_current_cycle(cls, now: datetime | None = None) -> PayoutCycle:
        """
        Return the cycle covering now, creating it if needed.

        Cutoff is always after the window end, so the current cycle is
        open unless its status was changed by hand.
        """
        now = now or timezone.now()
        cycle = cls.get_cycle_for_date(now)
        if not cycle.is_open:
            cls.get_logger().warning(
                "Current cycle is not open",
                extra={"cycle_id": str(cycle.id), "status": cycle.status},
            )
        return cycle

    # =========================================================================
    # Transitions
    # =========================================================================

    @classmethod
    def advance_due_cycles(cls, now: datetime | None = None) -> list[PayoutCycle]:
        """
        Move every open cycle past its cutoff to PROCESSING.

        Returns:
            The cycles this call advanced. A cycle advanced concurrently by
            another run is skipped and not returned.
        """
        now = now or timezone.now()
        advanced: list[PayoutCycle] = []

        for cycle in PayoutCycle.objects.due_for_advance(now):
            updated = PayoutCycle.objects.filter(
                pk=cycle.pk,
                status=CycleStatus.OPEN,
            ).update(status=CycleStatus.PROCESSING, updated_at=now)

            if not updated:
                cls.get_logger().warning(
                    "Cycle already advanced by another run",
                    extra={"cycle_id": str(cycle.id)},
                )
                continue

            cycle.status = CycleStatus.PROCESSING
            advanced.append(cycle)
            cls.get_logger().info(
                "Cycle advanced to processing",
                extra={"cycle_id": str(cycle.id), "identifier": cycle.identifier},
            )

        return advanced

    @classmethod
    def complete_cycle(cls, cycle_id: uuid.UUID, now: datetime | None = None) -> PayoutCycle:
        """
        Close a processing cycle.

        Raises:
            StaleRecordError: The cycle is not processing
        """
        return cls._finish(cycle_id, CycleStatus.CLOSED, "", now)

    @classmethod
    def fail_cycle(
        cls,
        cycle_id: uuid.UUID,
        reason: str,
        now: datetime | None = None,
    ) -> PayoutCycle:
        """
        Mark a processing cycle as failed.

        Raises:
            StaleRecordError: The cycle is not processing
        """
        return cls._finish(cycle_id, CycleStatus.FAILED, reason, now)

    @classmethod
    def _finish(
        cls,
        cycle_id: uuid.UUID,
        status: str,
        reason: str,
        now: datetime | None,
    ) -> PayoutCycle:
        now = now or timezone.now()
        updated = PayoutCycle.objects.filter(
            pk=cycle_id,
            status=CycleStatus.PROCESSING,
        ).update(status=status, processed_at=now, failure_reason=reason, updated_at=now)

        if not updated:
            raise StaleRecordError(
                f"Cycle {cycle_id} is not processing",
                details={"cycle_id": str(cycle_id), "target_status": status},
            )

        log = cls.get_logger().info if status == CycleStatus.CLOSED else cls.get_logger().error
        log(
            f"Cycle {status}",
            extra={"cycle_id": str(cycle_id), "reason": reason},
        )
        return PayoutCycle.objects.get(pk=cycle_id)

    @classmethod
    def finalize_cycle(cls, cycle_id: uuid.UUID, now: datetime | None = None) -> str:
        """
        Close or fail a processing cycle once no professional has work left.

        Per professional with live earnings or a fee charge in the cycle:
            failed: payout failed, or earnings still wait on a failed charge
            remaining: confirmed or charged earnings left, or a charge or
                payout still in flight
            done: everything else

        A cycle never closes while it holds confirmed or charged earnings;
        late earnings keep it processing until a later charge settles them.

        Returns:
            The cycle status after the call
        """
        cycle = cls.get_cycle(cycle_id)
        if cycle.status != CycleStatus.PROCESSING:
            return cycle.status

        earnings = Earning.objects.filter(cycle_id=cycle_id)
        professional_ids = set(
            earnings.filter(status__in=LIVE_EARNING_STATES)
            .values_list("professional_id", flat=True)
            .distinct()
        ) | set(
            FeeCharge.objects.filter(cycle_id=cycle_id)
            .values_list("professional_id", flat=True)
            .distinct()
        )

        outstanding = earnings.filter(status__in=OUTSTANDING_EARNING_STATES)
        waiting = set(outstanding.values_list("professional_id", flat=True))
        stuck = set(
            outstanding.filter(fee_charge__status=FeeChargeStatus.FAILED).values_list(
                "professional_id", flat=True
            )
        )
        payout_status = dict(
            Payout.objects.for_cycle(cycle_id).values_list("professional_id", "status")
        )
        charges = dict(
            FeeCharge.objects.filter(cycle_id=cycle_id)
            .values_list("professional_id")
            .annotate(active=Count("id", filter=~Q(status=FeeChargeStatus.FAILED)))
            .order_by()
        )

        failed: list[str] = []
        remaining = 0
        for professional_id in professional_ids:
            status = payout_status.get(professional_id)
            if status == PayoutStatus.FAILED or professional_id in stuck:
                failed.append(str(professional_id))
            elif professional_id in waiting:
                remaining += 1
            elif status == PayoutStatus.COMPLETED:
                continue
            elif charges.get(professional_id):
                remaining += 1
            elif professional_id in charges:
                # Only failed charges, covering earnings of other cycles
                failed.append(str(professional_id))

        if remaining:
            return cycle.status

        if failed:
            reason = f"Settlement failed for {len(failed)} professional(s): {', '.join(sorted(failed))}"
            return cls.fail_cycle(cycle_id, reason, now).status

        return cls.complete_cycle(cycle_id, now).status

    # =========================================================================
    # Read Accessors
    # =========================================================================

    @classmethod
    def get_cycle(cls, cycle_id: uuid.UUID) -> PayoutCycle:
        """
        Raises:
            SettlementNotFoundError: No such cycle
        """
        try:
            return PayoutCycle.objects.get(pk=cycle_id)
        except PayoutCycle.DoesNotExist:
            raise SettlementNotFoundError(
                f"Cycle {cycle_id} not found",
                details={"cycle_id": str(cycle_id)},
            )

    @classmethod
    def list_cycles(cls, status: str | None = None, limit: int = 52) -> QuerySet[PayoutCycle]:
        """Most recent cycles first, optionally filtered by status."""
        cycles = PayoutCycle.objects.all()
        if status:
            cycles = cycles.filter(status=status)
        return cycles.order_by("-start_date")[:limit]

    @classmethod
    def get_cycle_stats(cls, cycle_id: uuid.UUID) -> dict[str, Any]:
        """Counts and totals for admin views of one cycle."""
        cycle = cls.get_cycle(cycle_id)
        earnings = Earning.objects.filter(cycle_id=cycle_id)

        by_status = {
            row["status"]: row["count"]
            for row in earnings.values("status").annotate(count=Count("id")).order_by()
        }
        charges = {
            row["status"]: row["count"]
            for row in FeeCharge.objects.filter(cycle_id=cycle_id)
            .values("status")
            .annotate(count=Count("id"))
            .order_by()
        }
        payouts = {
            row["status"]: row["count"]
            for row in Payout.objects.for_cycle(cycle_id)
            .values("status")
            .annotate(count=Count("id"))
            .order_by()
        }

        return {
            "cycle_id": str(cycle.id),
            "identifier": cycle.identifier,
            "status": cycle.status,
            "start_date": cycle.start_date.isoformat(),
            "end_date": cycle.end_date.isoformat(),
            "cutoff_date": cycle.cutoff_date.isoformat(),
            "earnings": earnings.filter(status__in=LIVE_EARNING_STATES).totals(),
            "earnings_by_status": by_status,
            "fee_charges_by_status": charges,
            "payouts_by_status": payouts,
            "failed_fee_charges": charges.get(FeeChargeStatus.FAILED, 0),
        }
