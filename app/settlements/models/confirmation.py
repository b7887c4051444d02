"""
Two-party confirmation for a completed appointment.

After an appointment ends, both the client and the professional are asked
whether the session happened as billed. Each side answers once. The
confirmation's final_status is derived from the two answers and the admin
resolution and is never written on its own.

Usage:
    from settlements.models import AppointmentConfirmation

    confirmation = AppointmentConfirmation.objects.get(appointment_id=appointment_id)
    if confirmation.final_status == ConfirmationStatus.DISPUTED:
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from settlements.state_machines import (
    AWAITING_STATES,
    ConfirmationFlag,
    ConfirmationStatus,
    DisputeResolution,
)

if TYPE_CHECKING:
    from datetime import datetime


def derive_final_status(
    client_flag: str,
    professional_flag: str,
    resolution: str = DisputeResolution.NONE,
) -> ConfirmationStatus:
    """
    Compute a confirmation's status from both answers and the admin decision.

    An admin resolution wins over the answers. Otherwise both "true" means
    confirmed, any "false" means disputed and a single "true" records which
    side has confirmed so far.
    """
    if resolution == DisputeResolution.ADMIN_CONFIRMED:
        return ConfirmationStatus.CONFIRMED_CANCELED
    if resolution == DisputeResolution.ADMIN_DENIED:
        return ConfirmationStatus.DENIED

    if ConfirmationFlag.FALSE in (client_flag, professional_flag):
        return ConfirmationStatus.DISPUTED
    if client_flag == ConfirmationFlag.TRUE and professional_flag == ConfirmationFlag.TRUE:
        return ConfirmationStatus.CONFIRMED
    if client_flag == ConfirmationFlag.TRUE:
        return ConfirmationStatus.CLIENT_CONFIRMED
    if professional_flag == ConfirmationFlag.TRUE:
        return ConfirmationStatus.PROFESSIONAL_CONFIRMED
    return ConfirmationStatus.PENDING


class AppointmentConfirmationQuerySet(models.QuerySet):
    """Narrow lookups over confirmations."""

    def awaiting(self) -> AppointmentConfirmationQuerySet:
        """Confirmations still waiting on at least one party."""
        return self.filter(final_status__in=AWAITING_STATES)

    def disputed(self) -> AppointmentConfirmationQuerySet:
        return self.filter(final_status=ConfirmationStatus.DISPUTED)

    def expired(self, ended_before: datetime) -> AppointmentConfirmationQuerySet:
        """Awaiting confirmations whose appointment ended before the given moment."""
        return self.awaiting().filter(appointment__end_time__lte=ended_before)

    def needing_reminder(self, ended_before: datetime) -> AppointmentConfirmationQuerySet:
        """Awaiting confirmations past the reminder delay that got no reminder yet."""
        return self.expired(ended_before).filter(reminder_sent_at__isnull=True)

    def pending_for_user(self, user_id) -> AppointmentConfirmationQuerySet:
        """Awaiting confirmations where the user is a party who has not answered."""
        return self.awaiting().filter(
            models.Q(client_id=user_id, client_confirmation=ConfirmationFlag.UNSET)
            | models.Q(
                appointment__professional=user_id,
                professional_confirmation=ConfirmationFlag.UNSET,
            )
        )


class AppointmentConfirmation(UUIDPrimaryKeyMixin, BaseModel):
    """
    Two-party acknowledgment that a session happened as billed.

    Fields:
        appointment: The completed appointment (one confirmation each)
        client_id: Client party, copied from the appointment
        client_confirmation / professional_confirmation: Tri-state answers
        client_confirmed_at / professional_confirmed_at: When each side answered
        final_status: Derived status (see derive_final_status)
        dispute_*: Dispute reason, timestamps and admin decision
        auto_confirmed_at: Set when the timeout answered for a silent party
        reminder_sent_at: Set when the reminder event was emitted

    Note:
        Confirmations are never deleted; they are the audit trail for
        every earning and every reversal.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    appointment = models.OneToOneField(
        "settlements.AppointmentRecord",
        on_delete=models.PROTECT,
        related_name="confirmation",
        help_text="Appointment being confirmed",
    )

    client_id = models.UUIDField(
        db_index=True,
        help_text="Client party of the appointment",
    )

    # ==========================================================================
    # Party Answers
    # ==========================================================================

    client_confirmation = models.CharField(
        max_length=10,
        choices=ConfirmationFlag.choices,
        default=ConfirmationFlag.UNSET,
        help_text="Client's answer",
    )

    client_confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the client answered",
    )

    professional_confirmation = models.CharField(
        max_length=10,
        choices=ConfirmationFlag.choices,
        default=ConfirmationFlag.UNSET,
        help_text="Professional's answer",
    )

    professional_confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the professional answered",
    )

    final_status = models.CharField(
        max_length=30,
        choices=ConfirmationStatus.choices,
        default=ConfirmationStatus.PENDING,
        db_index=True,
        help_text="Derived from both answers and the dispute resolution",
    )

    # ==========================================================================
    # Dispute
    # ==========================================================================

    dispute_reason = models.TextField(
        blank=True,
        default="",
        help_text="Reason given by the party that answered 'did not occur'",
    )

    dispute_created_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the confirmation became disputed",
    )

    dispute_resolved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When an admin resolved the dispute",
    )

    dispute_resolution = models.CharField(
        max_length=20,
        choices=DisputeResolution.choices,
        default=DisputeResolution.NONE,
        help_text="Admin decision",
    )

    resolution_notes = models.TextField(
        blank=True,
        default="",
        help_text="Admin notes recorded with the decision",
    )

    resolved_by = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Identifier of the admin who resolved the dispute",
    )

    # ==========================================================================
    # Timeout & Reminders
    # ==========================================================================

    auto_confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the timeout confirmed on behalf of a silent party",
    )

    reminder_sent_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the confirmation reminder was emitted",
    )

    objects = AppointmentConfirmationQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Appointment Confirmation"
        verbose_name_plural = "Appointment Confirmations"
        indexes = [
            models.Index(fields=["final_status", "reminder_sent_at"], name="confirmation_status_remind_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(final_status__in=ConfirmationStatus.values),
                name="confirmation_final_status_valid",
            ),
            models.CheckConstraint(
                condition=models.Q(client_confirmation__in=ConfirmationFlag.values)
                & models.Q(professional_confirmation__in=ConfirmationFlag.values),
                name="confirmation_flags_valid",
            ),
            models.CheckConstraint(
                condition=models.Q(dispute_resolution__in=DisputeResolution.values),
                name="confirmation_resolution_valid",
            ),
        ]

    def __str__(self) -> str:
        return f"AppointmentConfirmation({self.id}, {self.final_status})"

    def compute_final_status(self) -> ConfirmationStatus:
        """Status implied by the stored answers and resolution."""
        return derive_final_status(
            self.client_confirmation,
            self.professional_confirmation,
            self.dispute_resolution,
        )

    @property
    def professional_id(self):
        return self.appointment.professional_id

    @property
    def is_awaiting(self) -> bool:
        """Check if at least one party still has to answer."""
        return self.final_status in AWAITING_STATES
