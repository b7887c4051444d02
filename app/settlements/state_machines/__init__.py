"""
State machine enums for settlement models.
"""

from settlements.state_machines.states import (
    AWAITING_STATES,
    SETTLED_FEE_STATES,
    AppointmentStatus,
    ConfirmationFlag,
    ConfirmationStatus,
    CycleStatus,
    DisputeAction,
    DisputeResolution,
    EarningStatus,
    FeeChargeStatus,
    PayoutStatus,
)

__all__ = [
    "AWAITING_STATES",
    "SETTLED_FEE_STATES",
    "AppointmentStatus",
    "ConfirmationFlag",
    "ConfirmationStatus",
    "CycleStatus",
    "DisputeAction",
    "DisputeResolution",
    "EarningStatus",
    "FeeChargeStatus",
    "PayoutStatus",
]
