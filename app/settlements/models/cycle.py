"""
Weekly payout cycles.

A cycle is a fixed window [start_date, end_date) that buckets earnings for
one fee charge and one payout per professional. Cutoff is when the window
stops accepting late confirmations and becomes chargeable.

Status changes are monotonic and done with conditional updates by
CycleScheduler; nothing else writes the status column.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlements.state_machines import CycleStatus

if TYPE_CHECKING:
    from datetime import datetime


class PayoutCycleQuerySet(models.QuerySet):
    """Narrow lookups over payout cycles."""

    def open(self) -> PayoutCycleQuerySet:
        return self.filter(status=CycleStatus.OPEN)

    def processing(self) -> PayoutCycleQuerySet:
        return self.filter(status=CycleStatus.PROCESSING)

    def due_for_advance(self, now: datetime) -> PayoutCycleQuerySet:
        """Open cycles whose cutoff has passed."""
        return self.open().filter(cutoff_date__lte=now).order_by("start_date")


class PayoutCycle(UUIDPrimaryKeyMixin, BaseModel):
    """
    A weekly window of earnings settled together.

    Fields:
        start_date: Monday 00:00 UTC, inclusive
        end_date: Following Monday 00:00 UTC, exclusive
        cutoff_date: end_date plus the grace period
        status: OPEN -> PROCESSING -> CLOSED or FAILED
        processed_at: When the cycle reached CLOSED or FAILED
        failure_reason: Why the cycle was marked FAILED
    """

    start_date = models.DateTimeField(
        unique=True,
        help_text="Window start (Monday 00:00 UTC, inclusive)",
    )

    end_date = models.DateTimeField(
        help_text="Window end (exclusive)",
    )

    cutoff_date = models.DateTimeField(
        db_index=True,
        help_text="When the cycle becomes chargeable",
    )

    status = models.CharField(
        max_length=20,
        choices=CycleStatus.choices,
        default=CycleStatus.OPEN,
        db_index=True,
        help_text="Cycle lifecycle status",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the cycle was closed or marked failed",
    )

    failure_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the cycle was marked failed",
    )

    objects = PayoutCycleQuerySet.as_manager()

    class Meta:
        ordering = ["-start_date"]
        verbose_name = "Payout Cycle"
        verbose_name_plural = "Payout Cycles"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_date__gt=models.F("start_date")),
                name="cycle_end_after_start",
            ),
            models.CheckConstraint(
                condition=models.Q(cutoff_date__gte=models.F("end_date")),
                name="cycle_cutoff_after_end",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=CycleStatus.values),
                name="cycle_status_valid",
            ),
        ]

    def __str__(self) -> str:
        return f"PayoutCycle({self.identifier}, {self.status})"

    @property
    def identifier(self) -> str:
        """ISO week label, e.g. 2024-W03."""
        year, week, _ = self.start_date.isocalendar()
        return f"{year}-W{week:02d}"

    @property
    def is_open(self) -> bool:
        return self.status == CycleStatus.OPEN

    @property
    def is_settled(self) -> bool:
        """Check if the cycle reached a terminal status."""
        return self.status in (CycleStatus.CLOSED, CycleStatus.FAILED)
