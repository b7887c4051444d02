"""
Tests for CycleScheduler.

Tests cover:
- Deterministic weekly windows (Monday 00:00 UTC, cutoff = end + grace)
- Cycle creation on first use
- Advancing open cycles past cutoff, including lost races
- Closing or failing processing cycles, never with outstanding earnings
"""

import uuid
from datetime import datetime, timedelta, timezone as dt_timezone

import pytest
from freezegun import freeze_time

from settlements.exceptions import SettlementNotFoundError, StaleRecordError
from settlements.models import PayoutCycle
from settlements.services import CycleScheduler
from settlements.state_machines import (
    CycleStatus,
    EarningStatus,
    FeeChargeStatus,
    PayoutStatus,
)
from settlements.tests.factories import (
    FIRST_MONDAY,
    EarningFactory,
    FeeChargeFactory,
    PayoutCycleFactory,
    PayoutFactory,
    ProfessionalAccountFactory,
)

WEDNESDAY = datetime(2024, 1, 3, 15, 30, tzinfo=dt_timezone.utc)


# =============================================================================
# Windows
# =============================================================================


class TestWindowFor:
    """Tests for CycleScheduler.window_for."""

    def test_window_starts_on_monday(self, settings):
        """Should start on the Monday 00:00 UTC at or before the moment."""
        settings.SETTLEMENT_CYCLE_GRACE_DAYS = 2

        window = CycleScheduler.window_for(WEDNESDAY)

        assert window.start == FIRST_MONDAY
        assert window.end == FIRST_MONDAY + timedelta(days=7)
        assert window.cutoff == FIRST_MONDAY + timedelta(days=9)

    def test_monday_midnight_belongs_to_new_window(self):
        """Should treat the window start as inclusive and the end as exclusive."""
        next_monday = FIRST_MONDAY + timedelta(days=7)

        assert CycleScheduler.window_for(next_monday).start == next_monday
        assert CycleScheduler.window_for(next_monday - timedelta(microseconds=1)).start == FIRST_MONDAY

    def test_uses_utc_date(self):
        """Should compute the window from the UTC date of an aware datetime."""
        # Sunday 23:00 in UTC-5 is Monday 04:00 UTC
        moment = datetime(2024, 1, 7, 23, 0, tzinfo=dt_timezone(timedelta(hours=-5)))

        assert CycleScheduler.window_for(moment).start == FIRST_MONDAY + timedelta(days=7)

    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            # W01 cutoff is Wednesday 2024-01-10 00:00
            (datetime(2024, 1, 9, 23, 59, tzinfo=dt_timezone.utc), FIRST_MONDAY),
            (datetime(2024, 1, 10, 0, 0, tzinfo=dt_timezone.utc), FIRST_MONDAY + timedelta(weeks=1)),
        ],
    )
    def test_cutoff_boundary(self, settings, now, expected):
        """Sessions before the boundary belong to cycles past their cutoff."""
        settings.SETTLEMENT_CYCLE_GRACE_DAYS = 2

        assert CycleScheduler.cutoff_boundary(now) == expected

    def test_window_contains(self):
        """Should report membership of moments in the window."""
        window = CycleScheduler.window_for(WEDNESDAY)

        assert window.contains(WEDNESDAY)
        assert not window.contains(window.end)


class TestGetCycleForDate:
    """Tests for CycleScheduler.get_cycle_for_date."""

    def test_creates_cycle_on_first_use(self, db):
        """Should create the cycle with the computed window."""
        cycle = CycleScheduler.get_cycle_for_date(WEDNESDAY)

        assert cycle.start_date == FIRST_MONDAY
        assert cycle.status == CycleStatus.OPEN
        assert cycle.identifier == "2024-W01"

    def test_returns_existing_cycle(self, db):
        """Should return the same cycle for every moment in the window."""
        first = CycleScheduler.get_cycle_for_date(WEDNESDAY)
        second = CycleScheduler.get_cycle_for_date(FIRST_MONDAY + timedelta(days=6, hours=23))

        assert first.id == second.id
        assert PayoutCycle.objects.count() == 1

    def test_returns_cycle_whatever_its_status(self, db):
        """Should return a processing cycle for late earnings."""
        PayoutCycleFactory(start_date=FIRST_MONDAY, status=CycleStatus.PROCESSING)

        cycle = CycleScheduler.get_cycle_for_date(WEDNESDAY)

        assert cycle.status == CycleStatus.PROCESSING

    @freeze_time("2024-01-10 12:00:00")
    def test_current_cycle_uses_now(self, db):
        """Should create the cycle covering the current time."""
        cycle = CycleScheduler.get_or_create_current_cycle()

        assert cycle.identifier == "2024-W02"
        assert cycle.is_open


# =============================================================================
# Transitions
# =============================================================================


class TestAdvanceDueCycles:
    """Tests for CycleScheduler.advance_due_cycles."""

    def test_advances_cycles_past_cutoff(self, open_cycle):
        """Should move an open cycle past its cutoff to PROCESSING."""
        advanced = CycleScheduler.advance_due_cycles(open_cycle.cutoff_date)

        assert [cycle.id for cycle in advanced] == [open_cycle.id]
        assert PayoutCycle.objects.get(id=open_cycle.id).status == CycleStatus.PROCESSING

    def test_leaves_cycles_before_cutoff(self, open_cycle):
        """Should not advance a cycle whose cutoff is still ahead."""
        advanced = CycleScheduler.advance_due_cycles(open_cycle.cutoff_date - timedelta(seconds=1))

        assert advanced == []
        assert PayoutCycle.objects.get(id=open_cycle.id).status == CycleStatus.OPEN

    def test_second_run_skips_advanced_cycle(self, open_cycle):
        """Should advance a cycle once when two runs race."""
        now = open_cycle.cutoff_date + timedelta(hours=1)

        first = CycleScheduler.advance_due_cycles(now)
        second = CycleScheduler.advance_due_cycles(now)

        assert len(first) == 1
        assert second == []

    def test_lost_race_is_skipped(self, open_cycle, mocker):
        """Should skip a cycle another run advanced between read and write."""
        now = open_cycle.cutoff_date + timedelta(hours=1)
        stale = PayoutCycle.objects.get(id=open_cycle.id)
        PayoutCycle.objects.filter(id=open_cycle.id).update(status=CycleStatus.PROCESSING)
        mocker.patch.object(
            PayoutCycle.objects,
            "due_for_advance",
            return_value=[stale],
        )

        assert CycleScheduler.advance_due_cycles(now) == []


class TestFinishCycle:
    """Tests for complete_cycle, fail_cycle and finalize_cycle."""

    def test_complete_processing_cycle(self, processing_cycle):
        """Should close a processing cycle and stamp processed_at."""
        cycle = CycleScheduler.complete_cycle(processing_cycle.id)

        assert cycle.status == CycleStatus.CLOSED
        assert cycle.processed_at is not None

    def test_complete_open_cycle_raises(self, open_cycle):
        """Should refuse to close a cycle that is not processing."""
        with pytest.raises(StaleRecordError):
            CycleScheduler.complete_cycle(open_cycle.id)

    def test_fail_records_reason(self, processing_cycle):
        """Should mark the cycle failed with the reason."""
        cycle = CycleScheduler.fail_cycle(processing_cycle.id, "card declined")

        assert cycle.status == CycleStatus.FAILED
        assert cycle.failure_reason == "card declined"

    def test_finalize_closes_when_every_pair_paid(self, professional, processing_cycle):
        """Should close the cycle when every professional has a completed payout."""
        EarningFactory(professional=professional, cycle=processing_cycle, status=EarningStatus.PAID)
        PayoutFactory(professional=professional, cycle=processing_cycle, status=PayoutStatus.COMPLETED)

        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.CLOSED

    def test_finalize_keeps_processing_with_remaining_work(self, professional, processing_cycle):
        """Should leave the cycle processing while a pair still waits for its charge."""
        EarningFactory(professional=professional, cycle=processing_cycle)

        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.PROCESSING

    def test_finalize_fails_when_only_failures_remain(self, processing_cycle):
        """Should fail the cycle when no pair has work left and one failed."""
        paid = ProfessionalAccountFactory()
        blocked = ProfessionalAccountFactory()
        EarningFactory(professional=paid, cycle=processing_cycle, status=EarningStatus.PAID)
        PayoutFactory(professional=paid, cycle=processing_cycle, status=PayoutStatus.COMPLETED)
        failed_charge = FeeChargeFactory(professional=blocked, cycle=processing_cycle, status=FeeChargeStatus.FAILED)
        EarningFactory(professional=blocked, cycle=processing_cycle, fee_charge=failed_charge)

        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.FAILED
        cycle = PayoutCycle.objects.get(id=processing_cycle.id)
        assert str(blocked.id) in cycle.failure_reason

    def test_finalize_keeps_processing_with_late_earning(self, professional, processing_cycle):
        """Should not close while a paid pair still has an earning confirmed after its charge."""
        EarningFactory(professional=professional, cycle=processing_cycle, status=EarningStatus.PAID)
        charge = FeeChargeFactory(professional=professional, cycle=processing_cycle, status=FeeChargeStatus.SUCCEEDED)
        PayoutFactory(
            professional=professional,
            cycle=processing_cycle,
            fee_charge=charge,
            status=PayoutStatus.COMPLETED,
        )
        EarningFactory(professional=professional, cycle=processing_cycle)

        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.PROCESSING

    def test_finalize_keeps_processing_with_charged_earning(self, professional, processing_cycle):
        """Should not close while an earning waits for its payout."""
        EarningFactory(professional=professional, cycle=processing_cycle, status=EarningStatus.CHARGED)

        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.PROCESSING

    def test_finalize_closes_empty_cycle(self, processing_cycle):
        """Should close a cycle without earnings."""
        assert CycleScheduler.finalize_cycle(processing_cycle.id) == CycleStatus.CLOSED

    def test_finalize_ignores_open_cycle(self, open_cycle):
        """Should not touch a cycle that is not processing."""
        assert CycleScheduler.finalize_cycle(open_cycle.id) == CycleStatus.OPEN


# =============================================================================
# Read accessors
# =============================================================================


class TestReadAccessors:
    """Tests for cycle lookups and stats."""

    def test_get_unknown_cycle_raises(self, db):
        """Should raise SettlementNotFoundError."""
        with pytest.raises(SettlementNotFoundError):
            CycleScheduler.get_cycle(uuid.uuid4())

    def test_list_cycles_most_recent_first(self, db):
        """Should order cycles by start date descending."""
        older = PayoutCycleFactory(start_date=FIRST_MONDAY)
        newer = PayoutCycleFactory(start_date=FIRST_MONDAY + timedelta(weeks=1))

        assert list(CycleScheduler.list_cycles()) == [newer, older]

    def test_cycle_stats(self, professional, processing_cycle):
        """Should report totals and counts by status."""
        EarningFactory(professional=professional, cycle=processing_cycle)
        EarningFactory(professional=professional, cycle=processing_cycle, status=EarningStatus.CANCELED)

        stats = CycleScheduler.get_cycle_stats(processing_cycle.id)

        assert stats["identifier"] == "2024-W01"
        assert stats["earnings"]["count"] == 1
        assert stats["earnings"]["gross_cents"] == 10000
        assert stats["earnings_by_status"] == {
            EarningStatus.CONFIRMED: 1,
            EarningStatus.CANCELED: 1,
        }
