"""
Tests for PayoutProcessor.

Tests cover:
- Fee settlement precondition
- Aggregating charged earnings into one payout and transferring it
- Transfer failures (no automatic retry) and admin reprocessing
- Idempotency key reuse when a transfer has no known outcome
- Batch processing across professionals, failed cycles included, and cycle finalization
"""

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone

import pytest

from settlements.adapters import IdempotencyKeyGenerator
from settlements.events import PayoutCompleted, PayoutFailed, settlement_event
from settlements.exceptions import (
    FeesNotSettledError,
    GatewayUnavailableError,
    InvalidStateTransitionError,
    NoEarningsError,
    SettlementNotFoundError,
    StaleRecordError,
)
from settlements.models import Earning, Payout, PayoutCycle, ProfessionalAccount
from settlements.services import PayoutProcessor
from settlements.state_machines import CycleStatus, EarningStatus, FeeChargeStatus, PayoutStatus
from settlements.tests.factories import (
    EarningFactory,
    FeeChargeFactory,
    PayoutCycleFactory,
    PayoutFactory,
    ProfessionalAccountFactory,
)
from settlements.types import TransferResult

NOW = datetime(2024, 1, 11, 9, 0, tzinfo=dt_timezone.utc)


def get_fresh_payout(payout_id) -> Payout:
    return Payout.objects.get(id=payout_id)


def charged_pair(cycle, professional=None, earnings=1, **earning_kwargs):
    """Professional with a settled fee charge and CHARGED earnings in the cycle."""
    professional = professional or ProfessionalAccountFactory()
    fee_charge = FeeChargeFactory(
        professional=professional,
        cycle=cycle,
        status=FeeChargeStatus.SUCCEEDED,
        amount_cents=2000 * earnings,
    )
    for _ in range(earnings):
        EarningFactory(
            professional=professional,
            cycle=cycle,
            status=EarningStatus.CHARGED,
            fee_charge=fee_charge,
            **earning_kwargs,
        )
    return professional


@pytest.fixture
def charged_earning(professional, processing_cycle, settled_fee_charge):
    """CHARGED earning of the professional under the settled fee charge."""
    return EarningFactory(
        professional=professional,
        cycle=processing_cycle,
        status=EarningStatus.CHARGED,
        fee_charge=settled_fee_charge,
    )


# =============================================================================
# Processing
# =============================================================================


class TestProcessCycle:
    """Tests for PayoutProcessor.process_cycle."""

    def test_requires_settled_fee_charge(self, fake_gateway, confirmed_earning):
        """Should raise FeesNotSettledError while the fee charge is missing."""
        with pytest.raises(FeesNotSettledError):
            PayoutProcessor.process_cycle(confirmed_earning.professional_id, confirmed_earning.cycle_id, NOW)

        fake_gateway.create_transfer.assert_not_called()

    def test_pending_fee_charge_is_not_settled(self, fake_gateway, professional, processing_cycle):
        """Should refuse to pay out while the fee charge is still pending."""
        FeeChargeFactory(professional=professional, cycle=processing_cycle)

        with pytest.raises(FeesNotSettledError):
            PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

    def test_pays_net_total(self, fake_gateway, processing_cycle):
        """Should transfer the net sum of charged earnings and mark them paid."""
        professional = charged_pair(processing_cycle, earnings=2)

        result = PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

        assert result.success
        payout = result.data
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.gross_total_cents == 20000
        assert payout.fee_total_cents == 4000
        assert payout.net_total_cents == 16000
        assert payout.earnings_count == 2
        assert payout.transfer_reference.startswith("tr_test_")
        earnings = Earning.objects.filter(professional=professional)
        assert {earning.status for earning in earnings} == {EarningStatus.PAID}
        assert {earning.payout_id for earning in earnings} == {payout.id}

    def test_transfer_request(self, fake_gateway, charged_earning):
        """Should transfer to the Connect account with a per-attempt key."""
        result = PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        kwargs = fake_gateway.create_transfer.call_args.kwargs
        assert kwargs["destination_account"] == charged_earning.professional.stripe_account_id
        assert kwargs["amount_cents"] == 8000
        assert kwargs["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "payout_transfer", result.data.id, 1
        )

    def test_only_charged_earnings_are_paid(self, fake_gateway, charged_earning):
        """Should leave earnings in other states out of the payout."""
        late = EarningFactory(
            professional=charged_earning.professional,
            cycle=charged_earning.cycle,
            status=EarningStatus.CONFIRMED,
        )

        result = PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        assert result.data.earnings_count == 1
        assert Earning.objects.get(id=late.id).status == EarningStatus.CONFIRMED

    def test_completed_payout_is_noop(self, fake_gateway, charged_earning):
        """Should not transfer twice for the same pair."""
        args = (charged_earning.professional_id, charged_earning.cycle_id)
        first = PayoutProcessor.process_cycle(*args, NOW)

        second = PayoutProcessor.process_cycle(*args, NOW)

        assert second.success
        assert second.data.id == first.data.id
        assert fake_gateway.create_transfer.call_count == 1

    def test_processing_payout_is_stale(self, fake_gateway, professional, processing_cycle, settled_fee_charge):
        """Should refuse to start a payout another worker is transferring."""
        PayoutFactory(
            professional=professional,
            cycle=processing_cycle,
            fee_charge=settled_fee_charge,
            status=PayoutStatus.PROCESSING,
        )

        with pytest.raises(StaleRecordError):
            PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

    def test_no_charged_earnings(self, fake_gateway, professional, processing_cycle, settled_fee_charge):
        """Should raise NoEarningsError when nothing is left to pay."""
        with pytest.raises(NoEarningsError):
            PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

    def test_emits_payout_completed(self, fake_gateway, charged_earning, mocker, django_capture_on_commit_callbacks):
        """Should notify after the payout completes."""
        receiver = mocker.Mock()
        settlement_event.connect(receiver, dispatch_uid="test-payout-completed")
        try:
            with django_capture_on_commit_callbacks(execute=True):
                PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)
        finally:
            settlement_event.disconnect(dispatch_uid="test-payout-completed")

        events = [call.kwargs["event"] for call in receiver.call_args_list]
        completed = [event for event in events if isinstance(event, PayoutCompleted)]
        assert len(completed) == 1
        assert completed[0].net_total_cents == 8000


# =============================================================================
# Failures
# =============================================================================


class TestPayoutFailures:
    """Tests for failed transfers and admin reprocessing."""

    @pytest.fixture
    def failing_transfer(self, fake_gateway):
        fake_gateway.create_transfer.side_effect = GatewayUnavailableError("Stripe is unavailable")
        return fake_gateway

    def test_transfer_failure_marks_failed(self, failing_transfer, charged_earning):
        """Should fail the payout and keep the earnings charged."""
        result = PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        assert not result.success
        assert result.error_code == "PAYOUT_FAILED"
        payout = get_fresh_payout(result.data.id)
        assert payout.status == PayoutStatus.FAILED
        assert payout.failure_reason == "Stripe is unavailable"
        assert Earning.objects.get(id=charged_earning.id).status == EarningStatus.CHARGED

    def test_failed_payout_is_not_retried(self, failing_transfer, charged_earning):
        """Should report the earlier failure without another transfer."""
        args = (charged_earning.professional_id, charged_earning.cycle_id)
        PayoutProcessor.process_cycle(*args, NOW)

        result = PayoutProcessor.process_cycle(*args, NOW + timedelta(hours=1))

        assert result.error_code == "PAYOUT_FAILED"
        assert failing_transfer.create_transfer.call_count == 1

    def test_missing_connect_account(self, fake_gateway, processing_cycle):
        """Should fail without calling the gateway when no destination exists."""
        professional = charged_pair(processing_cycle, professional=ProfessionalAccountFactory(stripe_account_id=""))

        result = PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

        assert result.error_code == "PAYOUT_FAILED"
        fake_gateway.create_transfer.assert_not_called()

    def test_emits_payout_failed(self, failing_transfer, charged_earning, mocker, django_capture_on_commit_callbacks):
        """Should notify about the failed payout."""
        receiver = mocker.Mock()
        settlement_event.connect(receiver, dispatch_uid="test-payout-failed")
        try:
            with django_capture_on_commit_callbacks(execute=True):
                PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)
        finally:
            settlement_event.disconnect(dispatch_uid="test-payout-failed")

        events = [call.kwargs["event"] for call in receiver.call_args_list]
        assert any(isinstance(event, PayoutFailed) for event in events)

    def test_reprocess_after_unknown_outcome_reuses_key(self, failing_transfer, charged_earning):
        """Should retry a transfer that may have gone through with the same idempotency key."""
        first = PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)
        assert get_fresh_payout(first.data.id).idempotency_key
        failing_transfer.create_transfer.side_effect = None
        failing_transfer.create_transfer.return_value = TransferResult(
            reference="tr_reprocessed",
            amount_cents=8000,
            currency="usd",
            destination_account=charged_earning.professional.stripe_account_id,
        )

        result = PayoutProcessor.reprocess_payout(first.data.id, NOW + timedelta(days=1))

        assert result.success
        assert result.data.id == first.data.id
        assert result.data.attempt_count == 2
        assert result.data.idempotency_key == ""
        keys = [call.kwargs["idempotency_key"] for call in failing_transfer.create_transfer.call_args_list]
        assert keys == [IdempotencyKeyGenerator.generate("payout_transfer", first.data.id, 1)] * 2
        assert Earning.objects.get(id=charged_earning.id).status == EarningStatus.PAID

    def test_reprocess_after_known_failure_uses_new_key(self, fake_gateway, processing_cycle):
        """Should derive a fresh key once the previous attempt is known to have failed."""
        professional = charged_pair(processing_cycle, professional=ProfessionalAccountFactory(stripe_account_id=""))
        first = PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)
        assert get_fresh_payout(first.data.id).idempotency_key == ""
        ProfessionalAccount.objects.filter(id=professional.id).update(stripe_account_id="acct_fixed")

        result = PayoutProcessor.reprocess_payout(first.data.id, NOW + timedelta(days=1))

        assert result.success
        assert fake_gateway.create_transfer.call_args.kwargs["idempotency_key"] == (
            IdempotencyKeyGenerator.generate("payout_transfer", first.data.id, 2)
        )

    def test_reprocess_completed_payout_raises(self, fake_gateway, charged_earning):
        """Should only reprocess failed payouts."""
        result = PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        with pytest.raises(InvalidStateTransitionError):
            PayoutProcessor.reprocess_payout(result.data.id)

    def test_reprocess_unknown_payout(self, db):
        """Should raise SettlementNotFoundError."""
        with pytest.raises(SettlementNotFoundError):
            PayoutProcessor.reprocess_payout(uuid.uuid4())


# =============================================================================
# Batches
# =============================================================================


class TestProcessAllReadyCycles:
    """Tests for PayoutProcessor.process_all_ready_cycles."""

    def test_pays_every_settled_pair_and_closes_cycle(self, fake_gateway, processing_cycle):
        """Should pay each settled professional and close the finished cycle."""
        charged_pair(processing_cycle)
        charged_pair(processing_cycle)

        summary = PayoutProcessor.process_all_ready_cycles(NOW)

        assert summary.processed == 2
        assert summary.failed == 0
        assert Payout.objects.filter(status=PayoutStatus.COMPLETED).count() == 2
        assert PayoutCycle.objects.get(id=processing_cycle.id).status == CycleStatus.CLOSED

    def test_one_failure_does_not_stop_batch(self, fake_gateway, processing_cycle):
        """Should pay the other professionals and fail the cycle afterwards."""
        charged_pair(processing_cycle, professional=ProfessionalAccountFactory(stripe_account_id=""))
        charged_pair(processing_cycle)

        summary = PayoutProcessor.process_all_ready_cycles(NOW)

        assert summary.processed == 1
        assert summary.failed == 1
        assert "PAYOUT_FAILED" in summary.errors[0]
        assert PayoutCycle.objects.get(id=processing_cycle.id).status == CycleStatus.FAILED

    def test_unsettled_pair_keeps_cycle_processing(self, fake_gateway, processing_cycle):
        """Should skip pairs without a settled charge and keep the cycle open for them."""
        charged_pair(processing_cycle)
        EarningFactory(cycle=processing_cycle)

        summary = PayoutProcessor.process_all_ready_cycles(NOW)

        assert summary.processed == 1
        assert PayoutCycle.objects.get(id=processing_cycle.id).status == CycleStatus.PROCESSING

    def test_ignores_open_cycles(self, fake_gateway, open_cycle):
        """Should not pay out cycles before their cutoff."""
        charged_pair(open_cycle)

        summary = PayoutProcessor.process_all_ready_cycles(NOW)

        assert summary.processed == 0
        fake_gateway.create_transfer.assert_not_called()

    def test_pays_pair_settled_after_cycle_failed(self, fake_gateway, db):
        """Should pay a pair whose fee was settled after its cycle failed and keep the cycle failed."""
        failed_cycle = PayoutCycleFactory(status=CycleStatus.FAILED)
        professional = charged_pair(failed_cycle)

        summary = PayoutProcessor.process_all_ready_cycles(NOW)

        assert summary.processed == 1
        assert Payout.objects.get(professional=professional).status == PayoutStatus.COMPLETED
        assert set(Earning.objects.filter(professional=professional).values_list("status", flat=True)) == {
            EarningStatus.PAID
        }
        assert PayoutCycle.objects.get(id=failed_cycle.id).status == CycleStatus.FAILED

    def test_finished_pairs_are_not_paid_again(self, fake_gateway, processing_cycle):
        """Should skip pairs whose payout already completed or failed."""
        professional = charged_pair(processing_cycle, professional=ProfessionalAccountFactory(stripe_account_id=""))
        PayoutProcessor.process_cycle(professional.id, processing_cycle.id, NOW)

        summary = PayoutProcessor.process_all_ready_cycles(NOW + timedelta(days=1))

        assert summary.processed == summary.failed == 0
        assert PayoutCycle.objects.get(id=processing_cycle.id).status == CycleStatus.FAILED


# =============================================================================
# Read accessors
# =============================================================================


class TestReadAccessors:
    """Tests for payout lookups and summaries."""

    def test_get_unknown_payout(self, db):
        """Should raise SettlementNotFoundError."""
        with pytest.raises(SettlementNotFoundError):
            PayoutProcessor.get_payout(uuid.uuid4())

    def test_payouts_for_professional(self, fake_gateway, charged_earning):
        """Should filter payouts by status."""
        PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        completed = PayoutProcessor.get_payouts_for_professional(
            charged_earning.professional_id, status=PayoutStatus.COMPLETED
        )
        failed = PayoutProcessor.get_payouts_for_professional(
            charged_earning.professional_id, status=PayoutStatus.FAILED
        )

        assert completed.count() == 1
        assert failed.count() == 0

    def test_summary(self, fake_gateway, charged_earning):
        """Should report paid amounts for the cycle."""
        PayoutProcessor.process_cycle(charged_earning.professional_id, charged_earning.cycle_id, NOW)

        summary = PayoutProcessor.get_payout_summary(charged_earning.cycle_id)

        assert summary["paid_cents"] == 8000
        assert summary["failed_count"] == 0
