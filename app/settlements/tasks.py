"""
Celery tasks for the settlement core.

Tasks:
- run_settlement_cycle: Periodic settlement pass (scheduled by celery-beat)
- charge_fee_for_pair: Charge the platform fee for one (professional, cycle)
- process_payout_for_pair: Pay out one (professional, cycle)
- reprocess_payout: Admin-triggered reprocessing of a failed payout
- retry_due_fee_charges: Run due fee charge retries outside the full pass

Gateway failures are recorded on the FeeCharge or Payout by the services,
so tasks only auto-retry on database connection errors.

Usage:
    from settlements.tasks import charge_fee_for_pair, run_settlement_cycle

    run_settlement_cycle.delay()
    charge_fee_for_pair.delay(str(professional_id), str(cycle_id))
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from celery import shared_task
from django.db import OperationalError

from core.exceptions import BaseApplicationError, ConflictError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_RETRY_ATTEMPTS = 3


def _parse_uuid(value: str | UUID) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(value)
    except ValueError:
        logger.error(f"Invalid UUID format: {value}")
        return None


# =============================================================================
# Periodic Task
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_RETRY_ATTEMPTS},
)
def run_settlement_cycle(self) -> dict[str, Any]:
    """
    Run one settlement pass.

    Overlapping runs are safe; see ScheduledOrchestrator.run_once().

    Returns:
        SettlementRunReport.to_dict()
    """
    from settlements.services import ScheduledOrchestrator

    logger.info(
        "Starting settlement cycle task",
        extra={"celery_retries": self.request.retries},
    )
    report = ScheduledOrchestrator.run_once()
    return report.to_dict()


@shared_task(bind=True)
def retry_due_fee_charges(self) -> dict[str, Any]:
    """
    Retry every fee charge whose next attempt is due.

    Returns:
        BatchSummary.to_dict()
    """
    from settlements.services import FeeChargeProcessor

    summary = FeeChargeProcessor.retry_due_charges()
    logger.info(
        "Fee charge retries complete",
        extra={"processed": summary.processed, "failed": summary.failed, "skipped": summary.skipped},
    )
    return summary.to_dict()


# =============================================================================
# Per-Pair Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": MAX_RETRY_ATTEMPTS},
    acks_late=True,
)
def charge_fee_for_pair(self, professional_id: str, cycle_id: str) -> dict[str, Any]:
    """
    Charge the platform fee for one professional and cycle.

    Returns:
        Dict with:
        - status: One of "charged", "failed", "skipped", "error", "invalid_id"
        - professional_id / cycle_id: The pair processed
        - fee_charge_id: The FeeCharge, when one exists
        - error / error_code: When not charged
    """
    from settlements.services import FeeChargeProcessor

    return _run_pair(
        "fee charge",
        FeeChargeProcessor.charge_cycle,
        professional_id,
        cycle_id,
        success_status="charged",
        id_key="fee_charge_id",
    )


@shared_task(
    bind=True,
    autoretry_for=(OperationalError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": MAX_RETRY_ATTEMPTS},
    acks_late=True,
)
def process_payout_for_pair(self, professional_id: str, cycle_id: str) -> dict[str, Any]:
    """
    Pay out one professional for one cycle.

    Returns:
        Same shape as charge_fee_for_pair with payout_id and status "paid"
    """
    from settlements.services import PayoutProcessor

    return _run_pair(
        "payout",
        PayoutProcessor.process_cycle,
        professional_id,
        cycle_id,
        success_status="paid",
        id_key="payout_id",
    )


@shared_task(bind=True, acks_late=True)
def reprocess_payout(self, payout_id: str) -> dict[str, Any]:
    """
    Reprocess a failed payout.

    Returns:
        Dict with status "paid", "failed", "error" or "invalid_id"
    """
    from settlements.services import PayoutProcessor

    payout_uuid = _parse_uuid(payout_id)
    if payout_uuid is None:
        return {"status": "invalid_id", "payout_id": str(payout_id)}

    try:
        result = PayoutProcessor.reprocess_payout(payout_uuid)
    except BaseApplicationError as e:
        logger.warning(
            "Payout reprocessing rejected",
            extra={"payout_id": str(payout_id), "error": str(e)},
        )
        return {"status": "error", "payout_id": str(payout_id), **e.to_dict()}

    response: dict[str, Any] = {
        "status": "paid" if result.success else "failed",
        "payout_id": str(payout_id),
    }
    if not result.success:
        response.update(error=result.error, error_code=result.error_code)
    return response


def _run_pair(
    label: str,
    operation: Any,
    professional_id: str,
    cycle_id: str,
    success_status: str,
    id_key: str,
) -> dict[str, Any]:
    response: dict[str, Any] = {
        "professional_id": str(professional_id),
        "cycle_id": str(cycle_id),
    }
    professional_uuid = _parse_uuid(professional_id)
    cycle_uuid = _parse_uuid(cycle_id)
    if professional_uuid is None or cycle_uuid is None:
        return {**response, "status": "invalid_id"}

    logger.info(f"Processing {label}", extra=response)

    try:
        result = operation(professional_uuid, cycle_uuid)
    except ConflictError as e:
        logger.info(f"Skipping {label}", extra={**response, "reason": str(e)})
        return {**response, "status": "skipped", **e.to_dict()}
    except BaseApplicationError as e:
        logger.error(f"{label.capitalize()} errored", extra={**response, "error": str(e)})
        return {**response, "status": "error", **e.to_dict()}

    if result.data is not None:
        response[id_key] = str(result.data.id)

    if result.success:
        return {**response, "status": success_status}

    logger.warning(
        f"{label.capitalize()} failed",
        extra={**response, "error": result.error, "error_code": result.error_code},
    )
    return {
        **response,
        "status": "failed",
        "error": result.error,
        "error_code": result.error_code,
    }
