"""
Default booking collaborator.

The availability engine is a separate system; this adapter hands slot
restoration to it through the slot_restore_requested signal so the
settlement core never imports booking code.
"""

from __future__ import annotations

import logging
import uuid
from datetime import time

from settlements.events import slot_restore_requested

logger = logging.getLogger(__name__)


class SignalBookingAdapter:
    """BookingCollaborator that broadcasts slot restoration as a Django signal."""

    def restore_slot(
        self,
        professional_id: uuid.UUID,
        day_of_week: int,
        start_time: time,
    ) -> None:
        logger.info(
            "Requesting slot restoration",
            extra={
                "professional_id": str(professional_id),
                "day_of_week": day_of_week,
                "start_time": start_time.isoformat(),
            },
        )
        slot_restore_requested.send(
            sender=self.__class__,
            professional_id=professional_id,
            day_of_week=day_of_week,
            start_time=start_time,
        )
