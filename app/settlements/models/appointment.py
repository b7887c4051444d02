"""
Local projection of completed appointments.

The booking collaborator reports AppointmentCompleted events; each one is
stored as an AppointmentRecord sharing the appointment's id. Settlement
reads session times and rates from here and never from the booking store.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlements.state_machines import AppointmentStatus

if TYPE_CHECKING:
    from datetime import datetime


class AppointmentRecordQuerySet(models.QuerySet):
    """Narrow lookups over appointment records."""

    def awaiting_confirmation(self, now: datetime) -> AppointmentRecordQuerySet:
        """Completed appointments that have ended and have no confirmation yet."""
        return self.filter(
            status=AppointmentStatus.COMPLETED,
            end_time__lte=now,
            confirmation__isnull=True,
        )


class AppointmentRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    A completed appointment as reported by the booking collaborator.

    Fields:
        professional: Professional who delivered the session
        client_id: Client who booked the session
        start_time / end_time: Session window
        rate_cents: Hourly rate in cents at booking time
        adjusted_rate_cents: Hourly rate after an adjustment, if any
        status: COMPLETED, or CANCELED if the booking side withdrew it
    """

    professional = models.ForeignKey(
        "settlements.ProfessionalAccount",
        on_delete=models.PROTECT,
        related_name="appointments",
        help_text="Professional who delivered the session",
    )

    client_id = models.UUIDField(
        db_index=True,
        help_text="ID of the client who booked the session",
    )

    start_time = models.DateTimeField(
        help_text="Session start",
    )

    end_time = models.DateTimeField(
        db_index=True,
        help_text="Session end",
    )

    rate_cents = models.PositiveIntegerField(
        help_text="Hourly rate in cents",
    )

    adjusted_rate_cents = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Adjusted hourly rate in cents; takes precedence over rate_cents",
    )

    status = models.CharField(
        max_length=20,
        choices=AppointmentStatus.choices,
        default=AppointmentStatus.COMPLETED,
        db_index=True,
        help_text="Booking-side status as last reported",
    )

    objects = AppointmentRecordQuerySet.as_manager()

    class Meta:
        ordering = ["-end_time"]
        verbose_name = "Appointment Record"
        verbose_name_plural = "Appointment Records"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_time__gt=models.F("start_time")),
                name="appointment_end_after_start",
            ),
            models.CheckConstraint(
                condition=models.Q(status__in=AppointmentStatus.values),
                name="appointment_status_valid",
            ),
        ]

    def __str__(self) -> str:
        return f"AppointmentRecord({self.id}, {self.start_time:%Y-%m-%d %H:%M})"

    @property
    def effective_rate_cents(self) -> int:
        """Hourly rate used for the earning."""
        if self.adjusted_rate_cents is not None:
            return self.adjusted_rate_cents
        return self.rate_cents

    @property
    def duration_minutes(self) -> int:
        """Session length rounded to whole minutes."""
        seconds = Decimal((self.end_time - self.start_time).total_seconds())
        return int((seconds / 60).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
