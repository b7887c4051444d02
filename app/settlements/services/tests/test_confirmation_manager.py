"""
Tests for ConfirmationManager.

Tests cover:
- Appointment intake from the booking collaborator
- Confirmation creation and eligibility
- Party answers, derived status and earning creation
- Timeout and cycle cutoff auto-confirm, reminders
- Admin dispute resolution (confirm_cancel / deny)
"""

import uuid
from datetime import datetime, time, timedelta, timezone as dt_timezone

import pytest

from core.exceptions import ValidationError
from settlements.events import ConfirmationReminder, settlement_event
from settlements.exceptions import (
    AlreadyConfirmedError,
    AppointmentNotEligibleError,
    ConfirmationAlreadyExistsError,
    DisputeAlreadyResolvedError,
    InvalidAmountError,
    SettlementNotFoundError,
)
from settlements.models import AppointmentConfirmation, AppointmentRecord, Earning
from settlements.services import ConfirmationManager
from settlements.state_machines import (
    AppointmentStatus,
    ConfirmationFlag,
    ConfirmationStatus,
    DisputeAction,
    DisputeResolution,
    EarningStatus,
)
from settlements.tests.factories import (
    AppointmentConfirmationFactory,
    AppointmentRecordFactory,
    EarningFactory,
    ProfessionalAccountFactory,
)
from settlements.types import AppointmentCompleted

# One day after the default appointment ended
AFTER_SESSION = datetime(2024, 1, 4, 12, 0, tzinfo=dt_timezone.utc)


def get_fresh_confirmation(confirmation_id) -> AppointmentConfirmation:
    return AppointmentConfirmation.objects.select_related("appointment").get(id=confirmation_id)


# =============================================================================
# Intake
# =============================================================================


class TestRecordCompletedAppointment:
    """Tests for ConfirmationManager.record_completed_appointment."""

    def _event(self, **overrides):
        values = {
            "appointment_id": uuid.uuid4(),
            "professional_id": uuid.uuid4(),
            "client_id": uuid.uuid4(),
            "start_time": datetime(2024, 1, 3, 10, 0, tzinfo=dt_timezone.utc),
            "end_time": datetime(2024, 1, 3, 11, 0, tzinfo=dt_timezone.utc),
            "hourly_rate_cents": 10000,
        }
        values.update(overrides)
        return AppointmentCompleted(**values)

    def test_creates_record_and_professional(self, db):
        """Should store the appointment and create the professional account."""
        event = self._event()

        appointment = ConfirmationManager.record_completed_appointment(event)

        assert appointment.id == event.appointment_id
        assert appointment.professional_id == event.professional_id
        assert appointment.status == AppointmentStatus.COMPLETED
        assert appointment.effective_rate_cents == 10000

    def test_repeated_event_updates_record(self, db):
        """Should upsert on the appointment id."""
        event = self._event()
        ConfirmationManager.record_completed_appointment(event)

        updated = self._event(appointment_id=event.appointment_id, professional_id=event.professional_id, adjusted_rate_cents=7500)
        appointment = ConfirmationManager.record_completed_appointment(updated)

        assert AppointmentRecord.objects.count() == 1
        assert appointment.effective_rate_cents == 7500

    def test_rejects_non_positive_rate(self, db):
        """Should raise InvalidAmountError for a zero effective rate."""
        with pytest.raises(InvalidAmountError):
            ConfirmationManager.record_completed_appointment(self._event(hourly_rate_cents=0))

    def test_rejects_end_before_start(self):
        """Should refuse an event whose end is not after its start."""
        with pytest.raises(ValueError):
            self._event(end_time=datetime(2024, 1, 3, 9, 0, tzinfo=dt_timezone.utc))

    def test_frozen_once_earning_exists(self, db):
        """Should not change billing inputs after the earning exists."""
        earning = EarningFactory()
        event = self._event(
            appointment_id=earning.appointment_id,
            professional_id=earning.professional_id,
            hourly_rate_cents=99999,
        )

        appointment = ConfirmationManager.record_completed_appointment(event)

        assert appointment.rate_cents == 10000

    def test_record_canceled(self, appointment):
        """Should mark the appointment canceled."""
        record = ConfirmationManager.record_appointment_canceled(appointment.id)

        assert record.status == AppointmentStatus.CANCELED

    def test_record_canceled_unknown(self, db):
        """Should raise SettlementNotFoundError for an unknown appointment."""
        with pytest.raises(SettlementNotFoundError):
            ConfirmationManager.record_appointment_canceled(uuid.uuid4())


# =============================================================================
# Creation
# =============================================================================


class TestCreateConfirmation:
    """Tests for ConfirmationManager.create_confirmation."""

    def test_creates_pending_confirmation(self, appointment):
        """Should create a pending confirmation with the client copied over."""
        confirmation = ConfirmationManager.create_confirmation(appointment.id, AFTER_SESSION)

        assert confirmation.final_status == ConfirmationStatus.PENDING
        assert confirmation.client_id == appointment.client_id
        assert confirmation.client_confirmation == ConfirmationFlag.UNSET
        assert confirmation.professional_confirmation == ConfirmationFlag.UNSET

    def test_second_create_raises(self, appointment):
        """Should raise ConfirmationAlreadyExistsError on a duplicate."""
        ConfirmationManager.create_confirmation(appointment.id, AFTER_SESSION)

        with pytest.raises(ConfirmationAlreadyExistsError):
            ConfirmationManager.create_confirmation(appointment.id, AFTER_SESSION)

    def test_not_ended_is_not_eligible(self, appointment):
        """Should refuse an appointment that has not ended yet."""
        with pytest.raises(AppointmentNotEligibleError):
            ConfirmationManager.create_confirmation(
                appointment.id,
                appointment.end_time - timedelta(minutes=1),
            )

    def test_canceled_is_not_eligible(self, db):
        """Should refuse a canceled appointment."""
        appointment = AppointmentRecordFactory(status=AppointmentStatus.CANCELED)

        with pytest.raises(AppointmentNotEligibleError):
            ConfirmationManager.create_confirmation(appointment.id, AFTER_SESSION)

    def test_unknown_appointment(self, db):
        """Should raise SettlementNotFoundError."""
        with pytest.raises(SettlementNotFoundError):
            ConfirmationManager.create_confirmation(uuid.uuid4(), AFTER_SESSION)

    def test_ensure_returns_existing(self, confirmation):
        """Should return the existing confirmation without creating another."""
        found, created = ConfirmationManager.ensure_confirmation_exists(
            confirmation.appointment_id, AFTER_SESSION
        )

        assert created is False
        assert found.id == confirmation.id


# =============================================================================
# Party answers
# =============================================================================


class TestPartyAnswers:
    """Tests for confirm_as_client and confirm_as_professional."""

    def test_client_first_records_client_confirmed(self, confirmation):
        """Should move to CLIENT_CONFIRMED after the client's yes."""
        result = ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)

        assert result.final_status == ConfirmationStatus.CLIENT_CONFIRMED
        assert result.client_confirmed_at == AFTER_SESSION
        assert not Earning.objects.exists()

    def test_professional_first_records_professional_confirmed(self, confirmation):
        """Should move to PROFESSIONAL_CONFIRMED after the professional's yes."""
        result = ConfirmationManager.confirm_as_professional(confirmation.id, accepted=True, now=AFTER_SESSION)

        assert result.final_status == ConfirmationStatus.PROFESSIONAL_CONFIRMED

    def test_both_yes_confirms_and_creates_earning(self, confirmation):
        """Should confirm and materialize exactly one earning."""
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)
        result = ConfirmationManager.confirm_as_professional(confirmation.id, accepted=True, now=AFTER_SESSION)

        assert result.final_status == ConfirmationStatus.CONFIRMED
        earnings = Earning.objects.filter(appointment_id=confirmation.appointment_id)
        assert earnings.count() == 1
        assert earnings.get().status == EarningStatus.CONFIRMED

    def test_any_no_opens_dispute(self, confirmation):
        """Should dispute on a "did not occur" answer and keep the reason."""
        result = ConfirmationManager.confirm_as_client(
            confirmation.id,
            accepted=False,
            reason="Professional did not show up",
            now=AFTER_SESSION,
        )

        assert result.final_status == ConfirmationStatus.DISPUTED
        assert result.dispute_reason == "Professional did not show up"
        assert result.dispute_created_at == AFTER_SESSION
        assert not Earning.objects.exists()

    def test_yes_after_no_stays_disputed(self, confirmation):
        """Should stay disputed when the other party confirms."""
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=False, now=AFTER_SESSION)
        result = ConfirmationManager.confirm_as_professional(confirmation.id, accepted=True, now=AFTER_SESSION)

        assert result.final_status == ConfirmationStatus.DISPUTED
        assert not Earning.objects.exists()

    def test_second_answer_from_same_party_raises(self, confirmation):
        """Should raise AlreadyConfirmedError and keep the first answer."""
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)

        with pytest.raises(AlreadyConfirmedError):
            ConfirmationManager.confirm_as_client(confirmation.id, accepted=False, now=AFTER_SESSION)

        assert get_fresh_confirmation(confirmation.id).client_confirmation == ConfirmationFlag.TRUE

    def test_canceled_appointment_rejects_answers(self, confirmation):
        """Should refuse answers once the appointment was canceled."""
        ConfirmationManager.record_appointment_canceled(confirmation.appointment_id)

        with pytest.raises(AppointmentNotEligibleError):
            ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)

    def test_unknown_confirmation(self, db):
        """Should raise SettlementNotFoundError."""
        with pytest.raises(SettlementNotFoundError):
            ConfirmationManager.confirm_as_client(uuid.uuid4(), accepted=True)


# =============================================================================
# Timeout & reminders
# =============================================================================


class TestTimeout:
    """Tests for auto_confirm_expired, auto_confirm_past_cutoff and send_due_reminders."""

    def test_silent_parties_are_auto_confirmed(self, confirmation, settings):
        """Should treat both silent parties as "yes" after the timeout."""
        settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = 72
        now = confirmation.appointment.end_time + timedelta(hours=72)

        summary = ConfirmationManager.auto_confirm_expired(now)

        assert summary.processed == 1
        fresh = get_fresh_confirmation(confirmation.id)
        assert fresh.final_status == ConfirmationStatus.CONFIRMED
        assert fresh.auto_confirmed_at == now
        assert Earning.objects.filter(appointment_id=confirmation.appointment_id).count() == 1

    def test_timeout_is_symmetric(self, confirmation, settings):
        """Should auto-confirm a silent professional exactly like a silent client."""
        settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = 72
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)

        ConfirmationManager.auto_confirm_expired(confirmation.appointment.end_time + timedelta(hours=72))

        fresh = get_fresh_confirmation(confirmation.id)
        assert fresh.professional_confirmation == ConfirmationFlag.TRUE
        assert fresh.client_confirmed_at == AFTER_SESSION
        assert fresh.final_status == ConfirmationStatus.CONFIRMED

    def test_not_expired_is_left_alone(self, confirmation, settings):
        """Should not auto-confirm before the timeout."""
        settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = 72

        summary = ConfirmationManager.auto_confirm_expired(
            confirmation.appointment.end_time + timedelta(hours=71)
        )

        assert summary.processed == 0
        assert get_fresh_confirmation(confirmation.id).final_status == ConfirmationStatus.PENDING

    def test_disputed_is_not_auto_confirmed(self, confirmation, settings):
        """Should leave disputes for the admin."""
        settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = 72
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=False, now=AFTER_SESSION)

        ConfirmationManager.auto_confirm_expired(confirmation.appointment.end_time + timedelta(days=30))

        assert get_fresh_confirmation(confirmation.id).final_status == ConfirmationStatus.DISPUTED

    def test_awaiting_past_cutoff_is_auto_confirmed(self, professional, settings):
        """Should confirm a silent late-Sunday session once its cycle reaches cutoff."""
        settings.SETTLEMENT_CONFIRMATION_TIMEOUT_HOURS = 72
        settings.SETTLEMENT_CYCLE_GRACE_DAYS = 2
        appointment = AppointmentRecordFactory(
            professional=professional,
            start_time=datetime(2024, 1, 7, 22, 0, tzinfo=dt_timezone.utc),
        )
        confirmation = AppointmentConfirmationFactory(appointment=appointment)
        cutoff = datetime(2024, 1, 10, 0, 0, tzinfo=dt_timezone.utc)

        before = ConfirmationManager.auto_confirm_past_cutoff(cutoff - timedelta(minutes=1))
        after = ConfirmationManager.auto_confirm_past_cutoff(cutoff)

        assert (before.processed, after.processed) == (0, 1)
        fresh = get_fresh_confirmation(confirmation.id)
        assert fresh.final_status == ConfirmationStatus.CONFIRMED
        assert fresh.auto_confirmed_at == cutoff
        assert Earning.objects.get(appointment_id=appointment.id).cycle.start_date == datetime(
            2024, 1, 1, tzinfo=dt_timezone.utc
        )

    def test_disputed_past_cutoff_is_left_alone(self, confirmation, settings):
        """Should never auto-confirm a dispute, even past cutoff."""
        settings.SETTLEMENT_CYCLE_GRACE_DAYS = 2
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=False, now=AFTER_SESSION)

        summary = ConfirmationManager.auto_confirm_past_cutoff(datetime(2024, 1, 20, tzinfo=dt_timezone.utc))

        assert summary.processed == 0
        assert get_fresh_confirmation(confirmation.id).final_status == ConfirmationStatus.DISPUTED

    def test_reminder_sent_once(self, confirmation, settings, mocker, django_capture_on_commit_callbacks):
        """Should emit one reminder naming only the silent parties."""
        settings.SETTLEMENT_REMINDER_AFTER_HOURS = 24
        ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)
        now = confirmation.appointment.end_time + timedelta(hours=25)
        receiver = mocker.Mock()
        settlement_event.connect(receiver, dispatch_uid="test-reminder")
        try:
            with django_capture_on_commit_callbacks(execute=True):
                first = ConfirmationManager.send_due_reminders(now)
                second = ConfirmationManager.send_due_reminders(now)
        finally:
            settlement_event.disconnect(dispatch_uid="test-reminder")

        assert (first, second) == (1, 0)
        event = receiver.call_args.kwargs["event"]
        assert isinstance(event, ConfirmationReminder)
        assert event.client_id is None
        assert event.professional_id == confirmation.appointment.professional_id


# =============================================================================
# Disputes
# =============================================================================


class TestResolveDispute:
    """Tests for ConfirmationManager.resolve_dispute."""

    @pytest.fixture
    def disputed(self, confirmation):
        ConfirmationManager.confirm_as_client(
            confirmation.id, accepted=False, reason="No show", now=AFTER_SESSION
        )
        return confirmation

    def test_confirm_cancel_restores_slot(self, disputed, fake_booking):
        """Should mark the cancellation confirmed and restore the slot."""
        result = ConfirmationManager.resolve_dispute(
            disputed.id,
            DisputeAction.CONFIRM_CANCEL,
            notes="Client was right",
            resolved_by="admin@example.com",
            now=AFTER_SESSION,
        )

        assert result.final_status == ConfirmationStatus.CONFIRMED_CANCELED
        assert result.dispute_resolution == DisputeResolution.ADMIN_CONFIRMED
        assert result.resolved_by == "admin@example.com"
        assert result.dispute_resolved_at == AFTER_SESSION
        assert not Earning.objects.exclude(status=EarningStatus.CANCELED).exists()
        # Wednesday 10:00 UTC
        fake_booking.restore_slot.assert_called_once_with(
            disputed.appointment.professional_id,
            2,
            time(10, 0),
        )

    def test_confirm_cancel_cancels_existing_earning(self, disputed, fake_booking):
        """Should cancel an earning that exists for the appointment."""
        earning = EarningFactory(
            appointment=disputed.appointment,
            professional=disputed.appointment.professional,
        )

        ConfirmationManager.resolve_dispute(disputed.id, DisputeAction.CONFIRM_CANCEL, now=AFTER_SESSION)

        assert Earning.objects.get(id=earning.id).status == EarningStatus.CANCELED

    def test_confirm_cancel_disputes_charged_earning(self, disputed, fake_booking):
        """Should record a reversal for an earning whose fee was charged."""
        earning = EarningFactory(
            appointment=disputed.appointment,
            professional=disputed.appointment.professional,
            status=EarningStatus.CHARGED,
        )

        ConfirmationManager.resolve_dispute(disputed.id, DisputeAction.CONFIRM_CANCEL, now=AFTER_SESSION)

        assert Earning.objects.get(id=earning.id).status == EarningStatus.DISPUTED

    def test_deny_creates_earning(self, disputed, fake_booking):
        """Should finalize as denied and materialize the earning."""
        result = ConfirmationManager.resolve_dispute(disputed.id, DisputeAction.DENY, now=AFTER_SESSION)

        assert result.final_status == ConfirmationStatus.DENIED
        assert result.dispute_resolution == DisputeResolution.ADMIN_DENIED
        earning = Earning.objects.get(appointment_id=disputed.appointment_id)
        assert earning.status == EarningStatus.CONFIRMED
        fake_booking.restore_slot.assert_not_called()

    def test_not_disputed_raises(self, confirmation, fake_booking):
        """Should raise DisputeAlreadyResolvedError for a pending confirmation."""
        with pytest.raises(DisputeAlreadyResolvedError):
            ConfirmationManager.resolve_dispute(confirmation.id, DisputeAction.DENY)

    def test_resolving_twice_raises(self, disputed, fake_booking):
        """Should refuse a second resolution."""
        ConfirmationManager.resolve_dispute(disputed.id, DisputeAction.DENY, now=AFTER_SESSION)

        with pytest.raises(DisputeAlreadyResolvedError):
            ConfirmationManager.resolve_dispute(disputed.id, DisputeAction.CONFIRM_CANCEL)

    def test_unknown_action_raises(self, disputed):
        """Should reject unknown actions as validation errors."""
        with pytest.raises(ValidationError):
            ConfirmationManager.resolve_dispute(disputed.id, "refund")


# =============================================================================
# Read accessors
# =============================================================================


class TestReadAccessors:
    """Tests for confirmation lookups."""

    def test_pending_for_client_and_professional(self, confirmation):
        """Should list a confirmation for each party until they answer."""
        client_id = confirmation.client_id
        professional_id = confirmation.appointment.professional_id

        assert list(ConfirmationManager.get_pending_confirmations(client_id)) == [confirmation]
        assert list(ConfirmationManager.get_pending_confirmations(professional_id)) == [confirmation]

        ConfirmationManager.confirm_as_client(confirmation.id, accepted=True, now=AFTER_SESSION)

        assert not ConfirmationManager.get_pending_confirmations(client_id).exists()
        assert ConfirmationManager.get_pending_confirmations(professional_id).exists()

    def test_disputed_list(self, db):
        """Should list disputed confirmations only."""
        disputed = AppointmentConfirmationFactory()
        AppointmentConfirmationFactory()
        ConfirmationManager.confirm_as_professional(disputed.id, accepted=False, now=AFTER_SESSION)

        assert list(ConfirmationManager.get_disputed_confirmations()) == [disputed]

    def test_stats_for_cycle(self, db):
        """Should count confirmations by status for the cycle's appointments."""
        from settlements.services import CycleScheduler

        professional = ProfessionalAccountFactory()
        first = AppointmentConfirmationFactory(appointment__professional=professional)
        AppointmentConfirmationFactory(appointment__professional=professional)
        ConfirmationManager.confirm_as_client(first.id, accepted=True, now=AFTER_SESSION)
        cycle = CycleScheduler.get_cycle_for_date(first.appointment.start_time)

        stats = ConfirmationManager.get_confirmation_stats_for_cycle(cycle.id)

        assert stats["total"] == 2
        assert stats["by_status"][ConfirmationStatus.PENDING] == 1
        assert stats["by_status"][ConfirmationStatus.CLIENT_CONFIRMED] == 1
