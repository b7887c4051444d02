"""
Pytest fixtures for settlement tests.

Fixtures provide records in the states the services expect, and a fake
payment gateway and booking collaborator injected into the services so no
test reaches Stripe.

Usage:
    def test_charge(fake_gateway, confirmed_earning, processing_cycle):
        FeeChargeProcessor.charge_cycle(confirmed_earning.professional_id, processing_cycle.id)
        fake_gateway.charge_fee.assert_called_once()
"""

import pytest

from settlements.services import ConfirmationManager, FeeChargeProcessor, PayoutProcessor
from settlements.state_machines import CycleStatus, FeeChargeStatus
from settlements.tests.factories import (
    FIRST_MONDAY,
    AppointmentConfirmationFactory,
    AppointmentRecordFactory,
    EarningFactory,
    FeeChargeFactory,
    PayoutCycleFactory,
    ProfessionalAccountFactory,
)
from settlements.types import ChargeResult, TransferResult


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture(autouse=True)
def reset_collaborators():
    """Remove injected collaborators after each test."""
    yield
    FeeChargeProcessor.set_gateway(None)
    PayoutProcessor.set_gateway(None)
    ConfirmationManager.set_booking_collaborator(None)


@pytest.fixture
def fake_gateway(mocker):
    """
    Payment gateway double injected into both processors.

    Charges and transfers succeed by default; set side_effect to simulate
    gateway errors.
    """
    gateway = mocker.Mock()
    gateway.charge_fee.side_effect = lambda **kwargs: ChargeResult(
        reference=f"pi_test_{kwargs['idempotency_key'][-8:]}",
        status="succeeded",
        amount_cents=kwargs["amount_cents"],
        currency=kwargs["currency"],
    )
    gateway.create_transfer.side_effect = lambda **kwargs: TransferResult(
        reference=f"tr_test_{kwargs['idempotency_key'][-8:]}",
        amount_cents=kwargs["amount_cents"],
        currency=kwargs["currency"],
        destination_account=kwargs["destination_account"],
    )
    FeeChargeProcessor.set_gateway(gateway)
    PayoutProcessor.set_gateway(gateway)
    return gateway


@pytest.fixture
def fake_booking(mocker):
    """Booking collaborator double injected into ConfirmationManager."""
    booking = mocker.Mock()
    ConfirmationManager.set_booking_collaborator(booking)
    return booking


# =============================================================================
# Records
# =============================================================================


@pytest.fixture
def professional(db):
    """Professional with a card on file and a Connect account."""
    return ProfessionalAccountFactory()


@pytest.fixture
def appointment(db, professional):
    """Completed one-hour appointment on Wednesday 2024-01-03."""
    return AppointmentRecordFactory(professional=professional)


@pytest.fixture
def confirmation(db, appointment):
    """Pending confirmation for the appointment."""
    return AppointmentConfirmationFactory(appointment=appointment)


@pytest.fixture
def open_cycle(db):
    """Cycle 2024-W01 in OPEN status."""
    return PayoutCycleFactory(start_date=FIRST_MONDAY)


@pytest.fixture
def processing_cycle(db):
    """Cycle 2024-W01 past its cutoff, in PROCESSING status."""
    return PayoutCycleFactory(start_date=FIRST_MONDAY, status=CycleStatus.PROCESSING)


@pytest.fixture
def confirmed_earning(db, professional, processing_cycle):
    """$100 gross / $20 fee / $80 net earning waiting for its fee charge."""
    return EarningFactory(professional=professional, cycle=processing_cycle)


@pytest.fixture
def settled_fee_charge(db, professional, processing_cycle):
    """Succeeded fee charge for the professional in the processing cycle."""
    return FeeChargeFactory(
        professional=professional,
        cycle=processing_cycle,
        status=FeeChargeStatus.SUCCEEDED,
        attempt_count=1,
        gateway_reference="pi_settled",
    )
