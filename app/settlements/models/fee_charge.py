"""
FeeCharge model: the platform's commission collected per cycle.

One non-failed FeeCharge exists per (professional, cycle) pair. It charges
the sum of the platform fees of the pair's confirmed earnings to the
professional's saved card, retrying with backoff up to a maximum number of
attempts.

Usage:
    from settlements.models import FeeCharge

    fee_charge = FeeCharge.objects.active().for_pair(professional_id, cycle_id).first()

    fee_charge.succeed(gateway_reference="pi_123")
    fee_charge.save()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from settlements.state_machines import SETTLED_FEE_STATES, FeeChargeStatus

if TYPE_CHECKING:
    from datetime import datetime


class FeeChargeQuerySet(models.QuerySet):
    """Narrow lookups over fee charges."""

    def for_pair(self, professional_id, cycle_id) -> FeeChargeQuerySet:
        return self.filter(professional_id=professional_id, cycle_id=cycle_id)

    def active(self) -> FeeChargeQuerySet:
        """Charges that still count for their pair (anything but FAILED)."""
        return self.exclude(status=FeeChargeStatus.FAILED)

    def settled(self) -> FeeChargeQuerySet:
        """Charges after which the pair may be paid out."""
        return self.filter(status__in=SETTLED_FEE_STATES)

    def due_for_retry(self, now: datetime) -> FeeChargeQuerySet:
        """Pending charges with at least one failed attempt whose retry time passed."""
        return self.filter(
            status=FeeChargeStatus.PENDING,
            attempt_count__gt=0,
            next_retry_at__lte=now,
        ).order_by("next_retry_at")


class FeeCharge(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    Platform fee collection for one professional and one cycle.

    State Flow:
        PENDING -> SUCCEEDED
        PENDING -> FAILED (attempts exhausted or no payment method)
        PENDING/FAILED -> WAIVED (admin)

    Fields:
        professional: Professional being charged
        cycle: Cycle whose earnings the fee covers
        total_gross_cents: Gross of the covered earnings
        platform_fee_percent: Fee percent in effect when the charge was created
        amount_cents: Fee amount charged (sum of the earnings' fees)
        earnings_count: Number of earnings covered
        status: Current FSM state
        attempt_count / last_attempt_at / next_retry_at: Retry bookkeeping
        idempotency_key: Gateway key reused until an attempt has a known outcome
        failure_code / failure_message: Last gateway failure
        gateway_reference: Gateway charge reference (pi_xxx)
        charged_at: When the charge succeeded
        waived_at / waived_by / waived_reason: Admin waive audit

    Note:
        A FAILED charge keeps its row for audit; an admin retry creates a
        new PENDING charge for the same pair.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    professional = models.ForeignKey(
        "settlements.ProfessionalAccount",
        on_delete=models.PROTECT,
        related_name="fee_charges",
        help_text="Professional being charged",
    )

    cycle = models.ForeignKey(
        "settlements.PayoutCycle",
        on_delete=models.PROTECT,
        related_name="fee_charges",
        help_text="Cycle whose earnings the fee covers",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    total_gross_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Gross of the covered earnings in cents",
    )

    platform_fee_percent = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        help_text="Platform fee percent in effect when the charge was created",
    )

    amount_cents = models.PositiveBigIntegerField(
        help_text="Fee amount to charge in cents",
    )

    earnings_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of earnings covered by the charge",
    )

    currency = models.CharField(
        max_length=3,
        default="usd",
        help_text="ISO 4217 currency code (lowercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=FeeChargeStatus.PENDING,
        choices=FeeChargeStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the fee charge (managed by FSM)",
    )

    # ==========================================================================
    # Retry Bookkeeping
    # ==========================================================================

    attempt_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Gateway attempts made so far",
    )

    last_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the last attempt started",
    )

    next_retry_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Earliest time for the next attempt",
    )

    failure_code = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Error code of the last failed attempt",
    )

    failure_message = models.TextField(
        blank=True,
        default="",
        help_text="Error message of the last failed attempt",
    )

    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Key of the attempt whose gateway outcome is not known yet",
    )

    # ==========================================================================
    # Gateway & Audit
    # ==========================================================================

    gateway_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway charge reference (pi_xxx)",
    )

    charged_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the charge succeeded",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the charge failed for good",
    )

    waived_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When an admin waived the fee",
    )

    waived_by = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Identifier of the admin who waived the fee",
    )

    waived_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the fee was waived",
    )

    objects = FeeChargeQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Fee Charge"
        verbose_name_plural = "Fee Charges"
        indexes = [
            models.Index(fields=["status", "next_retry_at"], name="feecharge_status_retry_idx"),
            models.Index(fields=["professional", "status"], name="feecharge_prof_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["professional", "cycle"],
                condition=~models.Q(status=FeeChargeStatus.FAILED),
                name="one_active_fee_charge_per_pair",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=FeeChargeStatus.values),
                name="fee_charge_status_valid",
            ),
        ]

    def __str__(self) -> str:
        return f"FeeCharge({self.id}, {self.status}, {self.amount_cents / 100:.2f})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=FeeChargeStatus.PENDING,
        target=FeeChargeStatus.SUCCEEDED,
    )
    def succeed(self, gateway_reference: str | None = None):
        """
        Record a successful gateway charge.

        Transition: PENDING -> SUCCEEDED
        """
        self.gateway_reference = gateway_reference
        self.charged_at = timezone.now()
        self.next_retry_at = None
        self.failure_code = ""
        self.failure_message = ""
        self.idempotency_key = ""

    @transition(
        field=status,
        source=FeeChargeStatus.PENDING,
        target=FeeChargeStatus.FAILED,
    )
    def fail(self, failure_code: str = "", failure_message: str = ""):
        """
        Give up on the charge.

        Transition: PENDING -> FAILED

        Args:
            failure_code: Error code of the last attempt
            failure_message: Error message of the last attempt
        """
        self.failed_at = timezone.now()
        self.next_retry_at = None
        self.failure_code = failure_code
        self.failure_message = failure_message
        self.idempotency_key = ""

    @transition(
        field=status,
        source=[FeeChargeStatus.PENDING, FeeChargeStatus.FAILED],
        target=FeeChargeStatus.WAIVED,
    )
    def waive(self, waived_by: str = "", reason: str = ""):
        """
        Waive the fee without charging.

        Transition: PENDING/FAILED -> WAIVED

        Resets the attempt counter so earlier failures no longer count
        against the professional.
        """
        self.waived_at = timezone.now()
        self.waived_by = waived_by
        self.waived_reason = reason
        self.attempt_count = 0
        self.next_retry_at = None
        self.idempotency_key = ""

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_settled(self) -> bool:
        """Check if payouts for the pair may proceed."""
        return self.status in SETTLED_FEE_STATES
