"""
Earning model: the ledger record of money owed for one appointment.

One Earning exists per appointment that reached a non-canceled final
confirmation. Amounts are integer cents and satisfy
net_cents == gross_cents - platform_fee_cents at the database level.

Usage:
    from settlements.models import Earning

    totals = Earning.objects.confirmed_for_pair(professional_id, cycle_id).totals()

    earning.cancel()
    earning.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import Count, Sum
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlements.state_machines import EarningStatus


class EarningQuerySet(models.QuerySet):
    """Narrow lookups and aggregates over earnings."""

    def for_pair(self, professional_id, cycle_id) -> EarningQuerySet:
        return self.filter(professional_id=professional_id, cycle_id=cycle_id)

    def confirmed_for_pair(self, professional_id, cycle_id) -> EarningQuerySet:
        """Earnings waiting for the cycle's fee charge."""
        return self.for_pair(professional_id, cycle_id).filter(status=EarningStatus.CONFIRMED)

    def unlinked(self) -> EarningQuerySet:
        """Confirmed earnings no fee charge has picked up yet."""
        return self.filter(status=EarningStatus.CONFIRMED, fee_charge__isnull=True)

    def uncharged_pairs(self, cycle_statuses) -> list[tuple]:
        """Distinct (professional_id, cycle_id) pairs with unlinked earnings in cycles of the given statuses."""
        return list(
            self.unlinked()
            .filter(cycle__status__in=cycle_statuses)
            .values_list("professional_id", "cycle_id")
            .order_by("cycle_id", "professional_id")
            .distinct()
        )

    def totals(self) -> dict[str, int]:
        """Sum gross, fee and net cents and count the rows."""
        result = self.aggregate(
            gross_cents=Sum("gross_cents"),
            fee_cents=Sum("platform_fee_cents"),
            net_cents=Sum("net_cents"),
            count=Count("id"),
        )
        return {key: value or 0 for key, value in result.items()}


class Earning(UUIDPrimaryKeyMixin, BaseModel):
    """
    Money owed to a professional for one appointment.

    State Flow:
        PENDING_CONFIRMATION -> CONFIRMED -> CHARGED -> PAID
        PENDING_CONFIRMATION/CONFIRMED -> CANCELED
        CONFIRMED/CHARGED/PAID -> DISPUTED (reversal)

    Fields:
        professional: Professional the money is owed to
        appointment: Source appointment (one earning each)
        cycle: Payout cycle covering the session date
        gross_cents / platform_fee_cents / net_cents: Amounts in cents
        platform_fee_percent: Fee percent applied when the earning was created
        duration_minutes / hourly_rate_cents: Billing inputs
        session_start / session_end: Session window
        status: Current FSM state
        fee_charge: Fee charge that settled this earning's fee
        payout: Payout that disbursed this earning

    Note:
        Bulk moves to CHARGED and PAID are conditional updates owned by
        EarningsLedger; single-record reversals go through the transitions.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    professional = models.ForeignKey(
        "settlements.ProfessionalAccount",
        on_delete=models.PROTECT,
        related_name="earnings",
        help_text="Professional the money is owed to",
    )

    appointment = models.OneToOneField(
        "settlements.AppointmentRecord",
        on_delete=models.PROTECT,
        related_name="earning",
        help_text="Appointment this earning was created for",
    )

    cycle = models.ForeignKey(
        "settlements.PayoutCycle",
        on_delete=models.PROTECT,
        related_name="earnings",
        help_text="Payout cycle covering the session date",
    )

    fee_charge = models.ForeignKey(
        "settlements.FeeCharge",
        on_delete=models.PROTECT,
        related_name="earnings",
        null=True,
        blank=True,
        help_text="Fee charge that settled this earning's platform fee",
    )

    payout = models.ForeignKey(
        "settlements.Payout",
        on_delete=models.PROTECT,
        related_name="earnings",
        null=True,
        blank=True,
        help_text="Payout that disbursed this earning",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    gross_cents = models.PositiveBigIntegerField(
        help_text="Session price in cents",
    )

    platform_fee_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        help_text="Platform fee percent applied",
    )

    platform_fee_cents = models.PositiveBigIntegerField(
        help_text="Platform fee in cents",
    )

    net_cents = models.PositiveBigIntegerField(
        help_text="Amount owed to the professional in cents",
    )

    # ==========================================================================
    # Session
    # ==========================================================================

    duration_minutes = models.PositiveIntegerField(
        help_text="Billed session length in minutes",
    )

    hourly_rate_cents = models.PositiveIntegerField(
        help_text="Hourly rate in cents used for the calculation",
    )

    session_start = models.DateTimeField(
        help_text="Session start",
    )

    session_end = models.DateTimeField(
        help_text="Session end",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=EarningStatus.PENDING_CONFIRMATION,
        choices=EarningStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the earning (managed by FSM)",
    )

    charged_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the platform fee was settled",
    )

    paid_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payout completed",
    )

    canceled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the earning was canceled",
    )

    disputed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the earning was reversed by a dispute",
    )

    objects = EarningQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-session_start"]
        verbose_name = "Earning"
        verbose_name_plural = "Earnings"
        indexes = [
            models.Index(fields=["professional", "cycle", "status"], name="earning_prof_cycle_status_idx"),
            models.Index(fields=["cycle", "status"], name="earning_cycle_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(
                    net_cents=models.F("gross_cents") - models.F("platform_fee_cents")
                ),
                name="earning_net_equals_gross_minus_fee",
            ),
            models.CheckConstraint(
                condition=models.Q(gross_cents__gt=0),
                name="earning_gross_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=EarningStatus.values),
                name="earning_status_valid",
            ),
        ]

    def __str__(self) -> str:
        return f"Earning({self.id}, {self.status}, {self.net_cents / 100:.2f})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[EarningStatus.PENDING_CONFIRMATION, EarningStatus.CONFIRMED],
        target=EarningStatus.CANCELED,
    )
    def cancel(self):
        """
        Cancel an earning whose fee has not been charged yet.

        Transition: PENDING_CONFIRMATION/CONFIRMED -> CANCELED
        """
        self.canceled_at = timezone.now()

    @transition(
        field=status,
        source=[EarningStatus.CONFIRMED, EarningStatus.CHARGED, EarningStatus.PAID],
        target=EarningStatus.DISPUTED,
    )
    def dispute(self):
        """
        Reverse an earning after money already moved or was committed.

        Transition: CONFIRMED/CHARGED/PAID -> DISPUTED

        The fee_charge and payout references are kept so the reversal can
        be traced to the money movements it undoes.
        """
        self.disputed_at = timezone.now()

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_settled(self) -> bool:
        """Check if the earning can no longer change except by dispute."""
        return self.status in (
            EarningStatus.PAID,
            EarningStatus.CANCELED,
            EarningStatus.DISPUTED,
        )
