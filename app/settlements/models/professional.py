"""
Professional billing account and platform settings.

A ProfessionalAccount mirrors a professional from the booking side and
shares their id. It holds what settlement needs to move money: the card
used for fee charges, the Connect account used for payouts, an optional
fee override and the payment block flag.

Usage:
    from settlements.models import ProfessionalAccount

    account, _ = ProfessionalAccount.objects.get_or_create(id=professional_id)

    ProfessionalAccount.objects.blocked()
"""

from __future__ import annotations

from decimal import Decimal

from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

# PlatformSetting key holding the global platform fee percent
PLATFORM_FEE_PERCENT_KEY = "platform_fee_percent"


class ProfessionalAccountQuerySet(models.QuerySet):
    """Narrow lookups over professional billing accounts."""

    def blocked(self) -> ProfessionalAccountQuerySet:
        """Accounts currently blocked for unpaid platform fees."""
        return self.filter(payment_blocked_at__isnull=False)

    def with_card(self) -> ProfessionalAccountQuerySet:
        """Accounts with a saved card whose expiry is known."""
        return (
            self.exclude(default_payment_method_id__isnull=True)
            .exclude(default_payment_method_id="")
            .filter(card_expiry_year__isnull=False, card_expiry_month__isnull=False)
        )

    def card_expired(self, year: int, month: int) -> ProfessionalAccountQuerySet:
        """Saved cards whose last valid month is before (year, month)."""
        return self.with_card().filter(
            models.Q(card_expiry_year__lt=year)
            | models.Q(card_expiry_year=year, card_expiry_month__lt=month)
        )

    def card_expiring_in(self, year: int, month: int) -> ProfessionalAccountQuerySet:
        """Saved cards whose last valid month is exactly (year, month)."""
        return self.with_card().filter(card_expiry_year=year, card_expiry_month=month)


class ProfessionalAccount(UUIDPrimaryKeyMixin, BaseModel):
    """
    Billing side of a professional.

    Fields:
        display_name: Name used in logs and admin listings
        stripe_customer_id: Customer the platform fee is charged to
        default_payment_method_id: Saved card used for off-session fee charges
        card_expiry_month / card_expiry_year: Last valid month of the saved card
        card_expiry_warned_at: When the owner was last warned the card expires soon
        stripe_account_id: Connect account receiving payouts
        fee_percent_override: Per-professional platform fee percent
        payment_blocked_at: Set when fee collection failed for good
        payment_block_reason: Why the account was blocked
    """

    display_name = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Professional's display name",
    )

    stripe_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe Customer ID (cus_xxx) charged for platform fees",
    )

    default_payment_method_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Stripe PaymentMethod ID (pm_xxx) used for off-session fee charges",
    )

    card_expiry_month = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(12)],
        help_text="Expiry month of the saved card (1-12)",
    )

    card_expiry_year = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        help_text="Expiry year of the saved card",
    )

    card_expiry_warned_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the upcoming card expiry was last announced",
    )

    stripe_account_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Stripe Connect account ID (acct_xxx) receiving payouts",
    )

    fee_percent_override = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(Decimal("100"))],
        help_text="Platform fee percent for this professional; global setting when empty",
    )

    payment_blocked_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When the account was blocked for unpaid platform fees",
    )

    payment_block_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the account was blocked",
    )

    objects = ProfessionalAccountQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Professional Account"
        verbose_name_plural = "Professional Accounts"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(fee_percent_override__isnull=True)
                | models.Q(fee_percent_override__gte=0, fee_percent_override__lte=100),
                name="professional_fee_override_range",
            ),
            models.CheckConstraint(
                condition=models.Q(card_expiry_month__isnull=True)
                | models.Q(card_expiry_month__gte=1, card_expiry_month__lte=12),
                name="professional_card_expiry_month_range",
            ),
        ]

    def __str__(self) -> str:
        return f"ProfessionalAccount({self.id}, {self.display_name or 'unnamed'})"

    @property
    def is_blocked(self) -> bool:
        """Check if the account is blocked for unpaid fees."""
        return self.payment_blocked_at is not None

    @property
    def has_payment_method(self) -> bool:
        """Check if fees can be charged off-session."""
        return bool(self.stripe_customer_id and self.default_payment_method_id)


class PlatformSetting(BaseModel):
    """
    Key/value store for slowly-changing platform configuration.

    Values are stored as text and parsed by the reader. Saving a setting
    invalidates its cached value (see settlements.handlers).
    """

    key = models.CharField(
        max_length=100,
        unique=True,
        help_text="Setting name, e.g. platform_fee_percent",
    )

    value = models.CharField(
        max_length=255,
        help_text="Setting value as text",
    )

    description = models.TextField(
        blank=True,
        default="",
        help_text="What the setting controls",
    )

    class Meta:
        ordering = ["key"]
        verbose_name = "Platform Setting"
        verbose_name_plural = "Platform Settings"

    def __str__(self) -> str:
        return f"PlatformSetting({self.key}={self.value})"
