"""
Payout model for the net disbursement to a professional.

One Payout exists per (professional, cycle) pair once the pair's fee is
settled. It aggregates the pair's charged earnings into a single transfer
to the professional's Connect account.

Usage:
    from settlements.models import Payout

    payout.process()  # pending -> processing
    payout.save()

    # After the gateway transfer succeeds
    payout.complete(transfer_reference="tr_123")  # processing -> completed
    payout.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin, VersionedMixin

from settlements.state_machines import PayoutStatus


class PayoutQuerySet(models.QuerySet):
    """Narrow lookups over payouts."""

    def for_pair(self, professional_id, cycle_id) -> PayoutQuerySet:
        return self.filter(professional_id=professional_id, cycle_id=cycle_id)

    def for_cycle(self, cycle_id) -> PayoutQuerySet:
        return self.filter(cycle_id=cycle_id)

    def failed(self) -> PayoutQuerySet:
        return self.filter(status=PayoutStatus.FAILED)


class Payout(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
    """
    Net disbursement for one professional and one cycle.

    State Flow:
        PENDING -> PROCESSING -> COMPLETED
        PENDING/PROCESSING -> FAILED -> PENDING (manual reprocess)

    Fields:
        professional: Professional receiving the payout
        cycle: Cycle whose earnings are paid
        fee_charge: Settled fee charge that allowed the payout
        gross_total_cents / fee_total_cents / net_total_cents: Aggregates
        earnings_count: Number of earnings paid
        status: Current FSM state
        transfer_reference: Gateway transfer reference (tr_xxx)
        attempt_count: Transfer attempts made
        idempotency_key: Transfer key reused until an attempt has a known outcome
        processed_at: When the payout completed
        failed_at / failure_reason: Last failure

    Note:
        Failed payouts are never retried automatically.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    professional = models.ForeignKey(
        "settlements.ProfessionalAccount",
        on_delete=models.PROTECT,
        related_name="payouts",
        help_text="Professional receiving the payout",
    )

    cycle = models.ForeignKey(
        "settlements.PayoutCycle",
        on_delete=models.PROTECT,
        related_name="payouts",
        help_text="Cycle whose earnings are paid",
    )

    fee_charge = models.ForeignKey(
        "settlements.FeeCharge",
        on_delete=models.PROTECT,
        related_name="payouts",
        help_text="Settled fee charge that allowed the payout",
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    gross_total_cents = models.PositiveBigIntegerField(
        help_text="Sum of gross over the paid earnings",
    )

    fee_total_cents = models.PositiveBigIntegerField(
        help_text="Sum of platform fees over the paid earnings",
    )

    net_total_cents = models.PositiveBigIntegerField(
        help_text="Amount transferred to the professional",
    )

    earnings_count = models.PositiveIntegerField(
        help_text="Number of earnings paid",
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
        default=PayoutStatus.PENDING,
        choices=PayoutStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the payout (managed by FSM)",
    )

    transfer_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Gateway transfer reference (tr_xxx)",
    )

    attempt_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Transfer attempts made",
    )

    idempotency_key = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Key of the transfer whose gateway outcome is not known yet",
    )

    # ==========================================================================
    # Timestamps & Error Info
    # ==========================================================================

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payout completed",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payout failed",
    )

    failure_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the payout failed",
    )

    objects = PayoutQuerySet.as_manager()

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payout"
        verbose_name_plural = "Payouts"
        indexes = [
            models.Index(fields=["cycle", "status"], name="payout_cycle_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["professional", "cycle"],
                name="one_payout_per_pair",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    net_total_cents=models.F("gross_total_cents") - models.F("fee_total_cents")
                ),
                name="payout_net_equals_gross_minus_fee",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=PayoutStatus.values),
                name="payout_status_valid",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.net_total_cents / 100:.2f} {self.currency.upper()}"
        return f"Payout({self.id}, {self.status}, {amount_display})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PayoutStatus.PENDING,
        target=PayoutStatus.PROCESSING,
    )
    def process(self):
        """
        Begin the transfer.

        Transition: PENDING -> PROCESSING
        """
        self.attempt_count += 1

    @transition(
        field=status,
        source=PayoutStatus.PROCESSING,
        target=PayoutStatus.COMPLETED,
    )
    def complete(self, transfer_reference: str | None = None):
        """
        Mark the payout as completed.

        Transition: PROCESSING -> COMPLETED
        """
        self.transfer_reference = transfer_reference
        self.processed_at = timezone.now()
        self.idempotency_key = ""

    @transition(
        field=status,
        source=[PayoutStatus.PENDING, PayoutStatus.PROCESSING],
        target=PayoutStatus.FAILED,
    )
    def fail(self, reason: str = ""):
        """
        Mark the payout as failed.

        Transition: PENDING/PROCESSING -> FAILED
        """
        self.failed_at = timezone.now()
        self.failure_reason = reason

    @transition(
        field=status,
        source=PayoutStatus.FAILED,
        target=PayoutStatus.PENDING,
    )
    def retry(self):
        """
        Reset a failed payout for manual reprocessing.

        Transition: FAILED -> PENDING
        """
        self.failed_at = None
        self.failure_reason = ""
        self.transfer_reference = None

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_complete(self) -> bool:
        return self.status == PayoutStatus.COMPLETED

    @property
    def can_retry(self) -> bool:
        """Check if the payout can be reprocessed."""
        return self.status == PayoutStatus.FAILED
