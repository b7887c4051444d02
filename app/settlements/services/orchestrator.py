"""
Scheduled orchestrator: the single periodic entry point of the settlement core.

run_once() runs every step in order and collects failures into a
SettlementRunReport instead of aborting. A step that blows up entirely is
recorded as one error and the next step still runs.

Steps:
    a.  Invalidate expired saved cards, warn about cards expiring next month
    b.  Create confirmations for finished appointments
    c.  Auto-confirm expired confirmations and send reminders
    d.  Auto-confirm whatever is still awaiting in cycles past cutoff
    e.  Advance cycles past cutoff and send their per-professional summaries
    f.  Charge ready pairs (late earnings included), retry due charges
    g.  Pay out settled pairs and finalize cycles
    h.  Ensure the current cycle exists

Usage:
    from settlements.services import ScheduledOrchestrator

    report = ScheduledOrchestrator.run_once()
    if not report.success:
        ...  # report.errors
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import TYPE_CHECKING

from django.utils import timezone

from core.exceptions import BaseApplicationError, ConflictError
from core.services import BaseService

from settlements.models import AppointmentRecord, PayoutCycle
from settlements.services.confirmation_manager import ConfirmationManager
from settlements.services.cycle_scheduler import CycleScheduler
from settlements.services.earnings_ledger import EarningsLedger
from settlements.services.fee_charge_processor import FeeChargeProcessor
from settlements.services.payout_processor import PayoutProcessor
from settlements.types import SettlementRunReport

if TYPE_CHECKING:
    from collections.abc import Callable


class ScheduledOrchestrator(BaseService):
    """Drives one settlement pass over all components."""

    @classmethod
    def run_once(cls, now: datetime | None = None) -> SettlementRunReport:
        """
        Run one full settlement pass.

        Safe to run concurrently with another pass: every write below is a
        conditional update or guarded by a unique constraint, and lost races
        are counted as skipped.

        Args:
            now: Reference time for every step (defaults to timezone.now())

        Returns:
            SettlementRunReport with per-step counts and error messages
        """
        now = now or timezone.now()
        report = SettlementRunReport(started_at=now)
        started = time.monotonic()
        logger = cls.get_logger()

        logger.info("Settlement run started", extra={"now": now.isoformat()})

        cls._run_step(report, "check_payment_methods", lambda: cls._check_payment_methods(report, now))
        cls._run_step(report, "create_confirmations", lambda: cls._create_confirmations(report, now))
        cls._run_step(report, "auto_confirm", lambda: cls._auto_confirm(report, now))
        cls._run_step(
            report,
            "send_reminders",
            lambda: setattr(report, "reminders_sent", ConfirmationManager.send_due_reminders(now)),
        )
        cls._run_step(report, "auto_confirm_at_cutoff", lambda: cls._auto_confirm_at_cutoff(report, now))

        advanced: list[PayoutCycle] = []
        cls._run_step(report, "advance_cycles", lambda: cls._advance_cycles(report, advanced, now))
        cls._run_step(report, "send_cycle_summaries", lambda: cls._send_cycle_summaries(report, advanced))
        cls._run_step(
            report,
            "charge_fees",
            lambda: report.fee_charges.merge(FeeChargeProcessor.charge_ready_pairs(now)),
        )
        cls._run_step(
            report,
            "retry_fee_charges",
            lambda: report.fee_charges.merge(FeeChargeProcessor.retry_due_charges(now)),
        )
        cls._run_step(
            report,
            "process_payouts",
            lambda: report.payouts.merge(PayoutProcessor.process_all_ready_cycles(now)),
        )
        cls._run_step(
            report,
            "ensure_current_cycle",
            lambda: setattr(report, "current_cycle_id", CycleScheduler.get_or_create_current_cycle(now).id),
        )

        report.errors.extend(f"fee_charges: {error}" for error in report.fee_charges.errors)
        report.errors.extend(f"payouts: {error}" for error in report.payouts.errors)
        report.duration_ms = (time.monotonic() - started) * 1000

        log = logger.info if report.success else logger.warning
        log(
            "Settlement run finished",
            extra={
                "duration_ms": round(report.duration_ms, 2),
                "cards_invalidated": report.cards_invalidated,
                "card_expiry_warnings": report.card_expiry_warnings,
                "confirmations_created": report.confirmations_created,
                "confirmations_auto_confirmed": report.confirmations_auto_confirmed,
                "reminders_sent": report.reminders_sent,
                "cycles_advanced": report.cycles_advanced,
                "cycle_summaries_sent": report.cycle_summaries_sent,
                "fee_charges_processed": report.fee_charges.processed,
                "fee_charges_failed": report.fee_charges.failed,
                "payouts_processed": report.payouts.processed,
                "payouts_failed": report.payouts.failed,
                "error_count": len(report.errors),
            },
        )
        return report

    # =========================================================================
    # Steps
    # =========================================================================

    @classmethod
    def _run_step(cls, report: SettlementRunReport, step: str, func: Callable[[], object]) -> None:
        try:
            func()
        except Exception as e:
            cls.get_logger().exception(
                "Settlement step failed",
                extra={"step": step, "error": str(e)},
            )
            report.add_error(step, f"{type(e).__name__}: {e}")

    @classmethod
    def _create_confirmations(cls, report: SettlementRunReport, now: datetime) -> None:
        appointment_ids = list(
            AppointmentRecord.objects.awaiting_confirmation(now).values_list("id", flat=True)
        )
        for appointment_id in appointment_ids:
            try:
                ConfirmationManager.create_confirmation(appointment_id, now)
            except ConflictError:
                continue
            except BaseApplicationError as e:
                cls.get_logger().error(
                    "Could not create confirmation",
                    extra={"appointment_id": str(appointment_id), "error": str(e)},
                )
                report.add_error("create_confirmations", f"appointment {appointment_id}: {e}")
                continue
            report.confirmations_created += 1

    @classmethod
    def _check_payment_methods(cls, report: SettlementRunReport, now: datetime) -> None:
        check = FeeChargeProcessor.check_payment_methods(now)
        report.cards_invalidated = check.invalidated
        report.card_expiry_warnings = check.warned

    @classmethod
    def _auto_confirm(cls, report: SettlementRunReport, now: datetime) -> None:
        summary = ConfirmationManager.auto_confirm_expired(now)
        report.confirmations_auto_confirmed += summary.processed
        for error in summary.errors:
            report.add_error("auto_confirm", error)

    @classmethod
    def _auto_confirm_at_cutoff(cls, report: SettlementRunReport, now: datetime) -> None:
        summary = ConfirmationManager.auto_confirm_past_cutoff(now)
        report.confirmations_auto_confirmed += summary.processed
        for error in summary.errors:
            report.add_error("auto_confirm_at_cutoff", error)

    @classmethod
    def _advance_cycles(cls, report: SettlementRunReport, advanced: list[PayoutCycle], now: datetime) -> None:
        advanced.extend(CycleScheduler.advance_due_cycles(now))
        report.cycles_advanced = len(advanced)

    @classmethod
    def _send_cycle_summaries(cls, report: SettlementRunReport, advanced: list[PayoutCycle]) -> None:
        for cycle in advanced:
            try:
                report.cycle_summaries_sent += EarningsLedger.send_cycle_summaries(cycle.id)
            except BaseApplicationError as e:
                cls.get_logger().error(
                    "Could not send cycle summaries",
                    extra={"cycle_id": str(cycle.id), "error": str(e)},
                )
                report.add_error("send_cycle_summaries", f"cycle {cycle.identifier}: {e}")
