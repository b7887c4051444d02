"""
Signal receivers for the settlements app.

- forward_settlement_event: logs every outbound settlement event and, when
  SETTLEMENT_NOTIFICATION_TASK is set, hands it to that Celery task
- invalidate_platform_fee_cache: drops the cached platform fee percent when
  the stored setting changes

Connected in SettlementsConfig.ready().
"""

from __future__ import annotations

import logging

from django.conf import settings
from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from settlements.events import SettlementEvent, settlement_event
from settlements.models import PLATFORM_FEE_PERCENT_KEY, PlatformSetting

logger = logging.getLogger(__name__)


@receiver(settlement_event, dispatch_uid="settlements.forward_settlement_event")
def forward_settlement_event(sender, event: SettlementEvent, **kwargs) -> None:
    """
    Log an event and forward it to the notification task.

    Delivery is fire-and-forget; the dispatcher logs a failure here
    without affecting the settlement step that emitted the event.
    """
    payload = event.to_payload()
    logger.info(f"Settlement event: {event.name}", extra=payload)

    task_name = settings.SETTLEMENT_NOTIFICATION_TASK
    if not task_name:
        return

    from config.celery import app as celery_app

    celery_app.send_task(task_name, kwargs=payload)


@receiver(post_save, sender=PlatformSetting, dispatch_uid="settlements.fee_cache_on_save")
@receiver(post_delete, sender=PlatformSetting, dispatch_uid="settlements.fee_cache_on_delete")
def invalidate_platform_fee_cache(sender, instance: PlatformSetting, **kwargs) -> None:
    if instance.key != PLATFORM_FEE_PERCENT_KEY:
        return

    from settlements.services import EarningsLedger

    EarningsLedger.invalidate_fee_cache()
    logger.info("Platform fee percent cache invalidated", extra={"value": instance.value})
