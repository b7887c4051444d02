"""
Confirmation manager: the two-party confirmation state machine.

Every completed appointment gets one AppointmentConfirmation. The client
and the professional each answer once whether the session happened; the
final status is derived from the two answers. Both "yes" finalizes the
confirmation and materializes the earning. Any "no" opens a dispute that
an admin resolves.

A party that stays silent past SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS is
treated as having answered "yes" (same timeout for both sides). Confirmations
still awaiting an answer when their cycle reaches its cutoff are confirmed
the same way, so no earning misses its cycle's fee charge.

Usage:
    from settlements.services import ConfirmationManager

    confirmation = ConfirmationManager.create_confirmation(appointment_id)
    ConfirmationManager.confirm_as_client(confirmation.id, accepted=True)
    ConfirmationManager.confirm_as_professional(confirmation.id, accepted=True)

    ConfirmationManager.resolve_dispute(
        confirmation.id,
        DisputeAction.CONFIRM_CANCEL,
        notes="Client was not present",
        resolved_by="admin@example.com",
    )
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count
from django.utils import timezone

from core.exceptions import BaseApplicationError, ConflictError, ValidationError
from core.services import BaseService

from settlements.adapters import SignalBookingAdapter
from settlements.events import ConfirmationReminder, EventDispatcher
from settlements.exceptions import (
    AlreadyConfirmedError,
    AppointmentNotEligibleError,
    ConfirmationAlreadyExistsError,
    DisputeAlreadyResolvedError,
    InvalidAmountError,
    SettlementNotFoundError,
    StaleRecordError,
)
from settlements.models import (
    AppointmentConfirmation,
    AppointmentRecord,
    Earning,
    ProfessionalAccount,
)
from settlements.services.cycle_scheduler import CycleScheduler
from settlements.services.earnings_ledger import EarningsLedger
from settlements.state_machines import (
    AppointmentStatus,
    ConfirmationFlag,
    ConfirmationStatus,
    DisputeAction,
    DisputeResolution,
    EarningStatus,
)
from settlements.types import BatchSummary, SessionData

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from settlements.protocols import BookingCollaborator
    from settlements.types import AppointmentCompleted


# =============================================================================
# Constants
# =============================================================================

CLIENT = "client"
PROFESSIONAL = "professional"

# Final statuses that produce an earning
EARNING_STATUSES = (ConfirmationStatus.CONFIRMED, ConfirmationStatus.DENIED)


class ConfirmationManager(BaseService):
    """
    Owns AppointmentConfirmation and delegates earnings to EarningsLedger.

    Party answers are conditional updates on the answer still being unset,
    so a double submit from the same party fails with AlreadyConfirmedError
    instead of overwriting the first answer.
    """

    # Booking collaborator - can be injected for testing
    _booking_collaborator: BookingCollaborator | None = None

    @classmethod
    def get_booking_collaborator(cls) -> BookingCollaborator:
        """Get the booking collaborator."""
        return cls._booking_collaborator or SignalBookingAdapter()

    @classmethod
    def set_booking_collaborator(cls, collaborator: BookingCollaborator | None) -> None:
        """Set the booking collaborator (for testing)."""
        cls._booking_collaborator = collaborator

    # =========================================================================
    # Intake
    # =========================================================================

    @classmethod
    def record_completed_appointment(cls, event: AppointmentCompleted) -> AppointmentRecord:
        """
        Store or update the local record of a completed appointment.

        Once an earning exists the billing inputs are frozen and a repeated
        event leaves the record unchanged.

        Raises:
            InvalidAmountError: Non-positive effective hourly rate
        """
        rate = (
            event.adjusted_rate_cents
            if event.adjusted_rate_cents is not None
            else event.hourly_rate_cents
        )
        if rate <= 0:
            raise InvalidAmountError(
                "Hourly rate must be positive",
                details={"appointment_id": str(event.appointment_id), "rate_cents": rate},
            )

        if Earning.objects.filter(appointment_id=event.appointment_id).exists():
            cls.get_logger().warning(
                "Ignoring update for appointment with an earning",
                extra={"appointment_id": str(event.appointment_id)},
            )
            return AppointmentRecord.objects.get(pk=event.appointment_id)

        ProfessionalAccount.objects.get_or_create(pk=event.professional_id)
        appointment, created = AppointmentRecord.objects.update_or_create(
            pk=event.appointment_id,
            defaults={
                "professional_id": event.professional_id,
                "client_id": event.client_id,
                "start_time": event.start_time,
                "end_time": event.end_time,
                "rate_cents": event.hourly_rate_cents,
                "adjusted_rate_cents": event.adjusted_rate_cents,
                "status": AppointmentStatus.COMPLETED,
            },
        )
        cls.get_logger().info(
            "Appointment recorded" if created else "Appointment updated",
            extra={
                "appointment_id": str(appointment.id),
                "professional_id": str(event.professional_id),
            },
        )
        return appointment

    @classmethod
    def record_appointment_canceled(cls, appointment_id: uuid.UUID) -> AppointmentRecord:
        """
        Withdraw an appointment reported by the booking side.

        A canceled appointment gets no new confirmation and its open
        confirmation no longer accepts answers.
        """
        updated = AppointmentRecord.objects.filter(pk=appointment_id).update(
            status=AppointmentStatus.CANCELED,
            updated_at=timezone.now(),
        )
        if not updated:
            raise SettlementNotFoundError(
                f"Appointment {appointment_id} not found",
                details={"appointment_id": str(appointment_id)},
            )
        cls.get_logger().info(
            "Appointment canceled",
            extra={"appointment_id": str(appointment_id)},
        )
        return AppointmentRecord.objects.get(pk=appointment_id)

    # =========================================================================
    # Creation
    # =========================================================================

    @classmethod
    def create_confirmation(
        cls,
        appointment_id: uuid.UUID,
        now: datetime | None = None,
    ) -> AppointmentConfirmation:
        """
        Create the pending confirmation for a finished appointment.

        Raises:
            SettlementNotFoundError: Unknown appointment
            AppointmentNotEligibleError: Appointment canceled or not ended yet
            ConfirmationAlreadyExistsError: A confirmation already exists
        """
        now = now or timezone.now()
        appointment = cls._get_appointment(appointment_id)
        details = {"appointment_id": str(appointment_id)}

        if appointment.status != AppointmentStatus.COMPLETED:
            raise AppointmentNotEligibleError(
                "Appointment is not completed",
                details={**details, "status": appointment.status},
            )
        if appointment.end_time > now:
            raise AppointmentNotEligibleError(
                "Appointment has not ended yet",
                details={**details, "end_time": appointment.end_time.isoformat()},
            )

        try:
            with transaction.atomic():
                confirmation = AppointmentConfirmation.objects.create(
                    appointment=appointment,
                    client_id=appointment.client_id,
                )
        except IntegrityError:
            raise ConfirmationAlreadyExistsError(
                "Confirmation already exists for appointment",
                details=details,
            )

        cls.get_logger().info(
            "Confirmation created",
            extra={**details, "confirmation_id": str(confirmation.id)},
        )
        return confirmation

    @classmethod
    def ensure_confirmation_exists(
        cls,
        appointment_id: uuid.UUID,
        now: datetime | None = None,
    ) -> tuple[AppointmentConfirmation, bool]:
        """
        Return the appointment's confirmation, creating it if missing.

        Returns:
            (confirmation, created)
        """
        try:
            return cls.create_confirmation(appointment_id, now), True
        except ConfirmationAlreadyExistsError:
            return cls.get_confirmation_for_appointment(appointment_id), False

    # =========================================================================
    # Party Answers
    # =========================================================================

    @classmethod
    def confirm_as_client(
        cls,
        confirmation_id: uuid.UUID,
        accepted: bool,
        reason: str = "",
        now: datetime | None = None,
    ) -> AppointmentConfirmation:
        """
        Record the client's answer.

        Args:
            confirmation_id: Confirmation to answer
            accepted: True if the session happened as billed
            reason: Why the session did not happen (kept on the dispute)

        Raises:
            AlreadyConfirmedError: The client already answered
            AppointmentNotEligibleError: The appointment was canceled
        """
        return cls._record_answer(confirmation_id, CLIENT, accepted, reason, now)

    @classmethod
    def confirm_as_professional(
        cls,
        confirmation_id: uuid.UUID,
        accepted: bool,
        reason: str = "",
        now: datetime | None = None,
    ) -> AppointmentConfirmation:
        """Record the professional's answer. See confirm_as_client."""
        return cls._record_answer(confirmation_id, PROFESSIONAL, accepted, reason, now)

    @classmethod
    def _record_answer(
        cls,
        confirmation_id: uuid.UUID,
        party: str,
        accepted: bool,
        reason: str,
        now: datetime | None,
    ) -> AppointmentConfirmation:
        now = now or timezone.now()
        flag_field = f"{party}_confirmation"
        answered_field = f"{party}_confirmed_at"

        with transaction.atomic():
            confirmation = cls._get_confirmation_for_update(confirmation_id)
            if confirmation.appointment.status != AppointmentStatus.COMPLETED:
                raise AppointmentNotEligibleError(
                    "Appointment was canceled",
                    details={"confirmation_id": str(confirmation_id)},
                )

            changes: dict[str, Any] = {
                flag_field: ConfirmationFlag.TRUE if accepted else ConfirmationFlag.FALSE,
                answered_field: now,
                "updated_at": now,
            }
            if not accepted and reason:
                changes["dispute_reason"] = reason

            updated = AppointmentConfirmation.objects.filter(
                pk=confirmation_id,
                **{flag_field: ConfirmationFlag.UNSET},
            ).update(**changes)
            if not updated:
                raise AlreadyConfirmedError(
                    f"The {party} already answered this confirmation",
                    details={"confirmation_id": str(confirmation_id), "party": party},
                )

            for field_name, value in changes.items():
                setattr(confirmation, field_name, value)

            cls.get_logger().info(
                "Confirmation answered",
                extra={
                    "confirmation_id": str(confirmation_id),
                    "party": party,
                    "accepted": accepted,
                },
            )
            return cls._apply_final_status(confirmation, now)

    # =========================================================================
    # Timeout & Reminders
    # =========================================================================

    @classmethod
    def auto_confirm(
        cls,
        confirmation_id: uuid.UUID,
        now: datetime | None = None,
    ) -> AppointmentConfirmation:
        """
        Answer "yes" on behalf of every party that has not answered.

        Raises:
            StaleRecordError: The confirmation is no longer awaiting answers
        """
        now = now or timezone.now()

        with transaction.atomic():
            confirmation = cls._get_confirmation_for_update(confirmation_id)
            if not confirmation.is_awaiting:
                raise StaleRecordError(
                    "Confirmation is no longer awaiting answers",
                    details={
                        "confirmation_id": str(confirmation_id),
                        "final_status": confirmation.final_status,
                    },
                )

            silent = [
                party
                for party in (CLIENT, PROFESSIONAL)
                if getattr(confirmation, f"{party}_confirmation") == ConfirmationFlag.UNSET
            ]
            for party in silent:
                setattr(confirmation, f"{party}_confirmation", ConfirmationFlag.TRUE)
                setattr(confirmation, f"{party}_confirmed_at", now)
            confirmation.auto_confirmed_at = now
            confirmation.save()

            cls.get_logger().info(
                "Confirmation auto-confirmed",
                extra={"confirmation_id": str(confirmation_id), "parties": silent},
            )
            return cls._apply_final_status(confirmation, now)

    @classmethod
    def auto_confirm_expired(cls, now: datetime | None = None) -> BatchSummary:
        """Auto-confirm every awaiting confirmation past the timeout."""
        now = now or timezone.now()
        ended_before = now - timedelta(hours=settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS)
        expired_ids = list(
            AppointmentConfirmation.objects.expired(ended_before).values_list("id", flat=True)
        )
        return cls._auto_confirm_all(expired_ids, now)

    @classmethod
    def auto_confirm_past_cutoff(cls, now: datetime | None = None) -> BatchSummary:
        """
        Auto-confirm awaiting confirmations whose session's cycle reached its cutoff.

        Runs before fee charging so a session at the very end of a window
        is still charged with its own cycle, whatever the timeout.
        """
        now = now or timezone.now()
        boundary = CycleScheduler.cutoff_boundary(now)
        frozen_ids = list(
            AppointmentConfirmation.objects.awaiting()
            .filter(appointment__start_time__lt=boundary)
            .values_list("id", flat=True)
        )
        if frozen_ids:
            cls.get_logger().info(
                "Auto-confirming confirmations past cycle cutoff",
                extra={"count": len(frozen_ids), "boundary": boundary.isoformat()},
            )
        return cls._auto_confirm_all(frozen_ids, now)

    @classmethod
    def _auto_confirm_all(cls, confirmation_ids: list[uuid.UUID], now: datetime) -> BatchSummary:
        summary = BatchSummary()
        for confirmation_id in confirmation_ids:
            try:
                cls.auto_confirm(confirmation_id, now)
                summary.processed += 1
            except ConflictError:
                summary.skipped += 1
            except BaseApplicationError as e:
                cls.get_logger().error(
                    "Auto-confirm failed",
                    extra={"confirmation_id": str(confirmation_id), "error": str(e)},
                )
                summary.record_failure(f"confirmation {confirmation_id}: {e}")

        return summary

    @classmethod
    def send_due_reminders(cls, now: datetime | None = None) -> int:
        """
        Emit one ConfirmationReminder per awaiting confirmation past the delay.

        Returns:
            Number of reminders emitted
        """
        now = now or timezone.now()
        ended_before = now - timedelta(hours=settings.SETTLEMENT_REMINDER_AFTER_HOURS)
        sent = 0

        due = AppointmentConfirmation.objects.needing_reminder(ended_before).select_related(
            "appointment"
        )
        for confirmation in due:
            claimed = AppointmentConfirmation.objects.filter(
                pk=confirmation.pk,
                reminder_sent_at__isnull=True,
            ).update(reminder_sent_at=now, updated_at=now)
            if not claimed:
                continue

            EventDispatcher.emit(
                ConfirmationReminder(
                    confirmation_id=confirmation.id,
                    appointment_id=confirmation.appointment_id,
                    client_id=(
                        confirmation.client_id
                        if confirmation.client_confirmation == ConfirmationFlag.UNSET
                        else None
                    ),
                    professional_id=(
                        confirmation.appointment.professional_id
                        if confirmation.professional_confirmation == ConfirmationFlag.UNSET
                        else None
                    ),
                )
            )
            sent += 1

        if sent:
            cls.get_logger().info("Confirmation reminders sent", extra={"count": sent})
        return sent

    # =========================================================================
    # Disputes
    # =========================================================================

    @classmethod
    def resolve_dispute(
        cls,
        confirmation_id: uuid.UUID,
        action: str,
        notes: str = "",
        resolved_by: str = "",
        now: datetime | None = None,
    ) -> AppointmentConfirmation:
        """
        Apply an admin decision to a disputed confirmation.

        confirm_cancel: the session did not happen. Any earning is canceled
            (or disputed if its fee was already charged) and the booking
            collaborator is asked to restore the slot.
        deny: the session happened. The earning is created as if both
            parties had confirmed.

        Raises:
            ValidationError: Unknown action
            DisputeAlreadyResolvedError: The confirmation is not disputed
        """
        now = now or timezone.now()
        if action not in DisputeAction.values:
            raise ValidationError(
                f"Unknown dispute action '{action}'",
                error_code="INVALID_DISPUTE_ACTION",
                details={"action": action},
            )

        with transaction.atomic():
            confirmation = cls._get_confirmation_for_update(confirmation_id)
            if confirmation.final_status != ConfirmationStatus.DISPUTED:
                raise DisputeAlreadyResolvedError(
                    "Confirmation is not disputed",
                    details={
                        "confirmation_id": str(confirmation_id),
                        "final_status": confirmation.final_status,
                    },
                )

            confirmation.dispute_resolution = (
                DisputeResolution.ADMIN_CONFIRMED
                if action == DisputeAction.CONFIRM_CANCEL
                else DisputeResolution.ADMIN_DENIED
            )
            confirmation.dispute_resolved_at = now
            confirmation.resolution_notes = notes
            confirmation.resolved_by = resolved_by

            cls.get_logger().info(
                "Resolving dispute",
                extra={
                    "confirmation_id": str(confirmation_id),
                    "action": action,
                    "resolved_by": resolved_by,
                },
            )
            confirmation = cls._apply_final_status(confirmation, now)

            if action == DisputeAction.CONFIRM_CANCEL:
                cls._reverse_earning(confirmation.appointment_id)

        if action == DisputeAction.CONFIRM_CANCEL:
            start = confirmation.appointment.start_time.astimezone(dt_timezone.utc)
            cls.get_booking_collaborator().restore_slot(
                confirmation.appointment.professional_id,
                start.weekday(),
                start.time(),
            )

        return confirmation

    @classmethod
    def _reverse_earning(cls, appointment_id: uuid.UUID) -> None:
        earning = Earning.objects.filter(appointment_id=appointment_id).first()
        if earning is None:
            return
        if earning.status in (EarningStatus.PENDING_CONFIRMATION, EarningStatus.CONFIRMED):
            EarningsLedger.cancel_earning(earning.id)
        elif earning.status in (EarningStatus.CHARGED, EarningStatus.PAID):
            EarningsLedger.dispute_earning(earning.id)

    # =========================================================================
    # Status Derivation
    # =========================================================================

    @classmethod
    def _apply_final_status(
        cls,
        confirmation: AppointmentConfirmation,
        now: datetime,
    ) -> AppointmentConfirmation:
        """
        Store the derived status and act on newly reached statuses.

        Must run inside the transaction that changed the answers.
        """
        previous = confirmation.final_status
        confirmation.final_status = confirmation.compute_final_status()
        if (
            confirmation.final_status == ConfirmationStatus.DISPUTED
            and confirmation.dispute_created_at is None
        ):
            confirmation.dispute_created_at = now
        confirmation.save()

        if confirmation.final_status == previous:
            return confirmation

        cls.get_logger().info(
            "Confirmation status changed",
            extra={
                "confirmation_id": str(confirmation.id),
                "previous_status": previous,
                "final_status": confirmation.final_status,
            },
        )

        if confirmation.final_status in EARNING_STATUSES:
            EarningsLedger.materialize_earning(
                confirmation.appointment_id,
                SessionData.from_appointment(confirmation.appointment),
            )
        return confirmation

    # =========================================================================
    # Read Accessors
    # =========================================================================

    @classmethod
    def get_confirmation(cls, confirmation_id: uuid.UUID) -> AppointmentConfirmation:
        try:
            return AppointmentConfirmation.objects.select_related("appointment").get(
                pk=confirmation_id
            )
        except AppointmentConfirmation.DoesNotExist:
            raise SettlementNotFoundError(
                f"Confirmation {confirmation_id} not found",
                details={"confirmation_id": str(confirmation_id)},
            )

    @classmethod
    def get_confirmation_for_appointment(cls, appointment_id: uuid.UUID) -> AppointmentConfirmation:
        try:
            return AppointmentConfirmation.objects.select_related("appointment").get(
                appointment_id=appointment_id
            )
        except AppointmentConfirmation.DoesNotExist:
            raise SettlementNotFoundError(
                f"No confirmation for appointment {appointment_id}",
                details={"appointment_id": str(appointment_id)},
            )

    @classmethod
    def get_pending_confirmations(cls, user_id: uuid.UUID) -> QuerySet[AppointmentConfirmation]:
        """Confirmations waiting for an answer from the user, as client or professional."""
        return (
            AppointmentConfirmation.objects.pending_for_user(user_id)
            .select_related("appointment")
            .order_by("appointment__end_time")
        )

    @classmethod
    def get_disputed_confirmations(cls) -> QuerySet[AppointmentConfirmation]:
        """Disputes waiting for an admin, oldest first."""
        return (
            AppointmentConfirmation.objects.disputed()
            .select_related("appointment")
            .order_by("dispute_created_at")
        )

    @classmethod
    def get_confirmation_stats_for_cycle(cls, cycle_id: uuid.UUID) -> dict[str, Any]:
        """Confirmation counts by status for appointments starting in a cycle."""
        cycle = CycleScheduler.get_cycle(cycle_id)
        rows = (
            AppointmentConfirmation.objects.filter(
                appointment__start_time__gte=cycle.start_date,
                appointment__start_time__lt=cycle.end_date,
            )
            .values("final_status")
            .annotate(count=Count("id"))
            .order_by()
        )
        by_status = {status: 0 for status in ConfirmationStatus.values}
        for row in rows:
            by_status[row["final_status"]] = row["count"]
        return {
            "cycle_id": str(cycle.id),
            "identifier": cycle.identifier,
            "total": sum(by_status.values()),
            "by_status": by_status,
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @classmethod
    def _get_appointment(cls, appointment_id: uuid.UUID) -> AppointmentRecord:
        try:
            return AppointmentRecord.objects.get(pk=appointment_id)
        except AppointmentRecord.DoesNotExist:
            raise SettlementNotFoundError(
                f"Appointment {appointment_id} not found",
                details={"appointment_id": str(appointment_id)},
            )

    @classmethod
    def _get_confirmation_for_update(cls, confirmation_id: uuid.UUID) -> AppointmentConfirmation:
        try:
            return (
                AppointmentConfirmation.objects.select_for_update()
                .select_related("appointment")
                .get(pk=confirmation_id)
            )
        except AppointmentConfirmation.DoesNotExist:
            raise SettlementNotFoundError(
                f"Confirmation {confirmation_id} not found",
                details={"confirmation_id": str(confirmation_id)},
            )
