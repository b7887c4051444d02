"""
Settlement services.

This module provides:
- ConfirmationManager: Two-party appointment confirmations and disputes
- EarningsLedger: Earning creation, fee math and bulk status moves
- CycleScheduler: Weekly payout cycles and their lifecycle
- FeeChargeProcessor: Platform fee collection with retry and blocking
- PayoutProcessor: Net disbursement per professional and cycle
- ScheduledOrchestrator: The periodic driver (run_once)

Usage:
    from settlements.services import ConfirmationManager

    confirmation = ConfirmationManager.create_confirmation(appointment_id)
    ConfirmationManager.confirm_as_client(confirmation.id, accepted=True)

    # Periodic run (normally from the run_settlement_cycle Celery task)
    from settlements.services import ScheduledOrchestrator

    report = ScheduledOrchestrator.run_once()

    # Admin
    from settlements.services import FeeChargeProcessor, PayoutProcessor

    FeeChargeProcessor.waive_fee(fee_charge_id, waived_by="admin@example.com")
    PayoutProcessor.reprocess_payout(payout_id)
"""

from settlements.services.confirmation_manager import ConfirmationManager
from settlements.services.cycle_scheduler import CycleScheduler
from settlements.services.earnings_ledger import EarningsLedger
from settlements.services.fee_charge_processor import FeeChargeProcessor
from settlements.services.orchestrator import ScheduledOrchestrator
from settlements.services.payout_processor import PayoutProcessor

__all__ = [
    "ConfirmationManager",
    "CycleScheduler",
    "EarningsLedger",
    "FeeChargeProcessor",
    "PayoutProcessor",
    "ScheduledOrchestrator",
]
