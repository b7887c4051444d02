"""
Settlement models.

Models:
    ProfessionalAccount: Billing side of a professional
    PlatformSetting: Slowly-changing platform configuration
    AppointmentRecord: Local projection of a completed appointment
    AppointmentConfirmation: Two-party confirmation per appointment
    PayoutCycle: Weekly settlement window
    Earning: Money owed for one appointment
    FeeCharge: Platform fee collected per (professional, cycle)
    Payout: Net disbursement per (professional, cycle)
"""

from settlements.models.appointment import AppointmentRecord
from settlements.models.confirmation import AppointmentConfirmation, derive_final_status
from settlements.models.cycle import PayoutCycle
from settlements.models.earning import Earning
from settlements.models.fee_charge import FeeCharge
from settlements.models.payout import Payout
from settlements.models.professional import (
    PLATFORM_FEE_PERCENT_KEY,
    PlatformSetting,
    ProfessionalAccount,
)

__all__ = [
    "PLATFORM_FEE_PERCENT_KEY",
    "AppointmentConfirmation",
    "AppointmentRecord",
    "Earning",
    "FeeCharge",
    "Payout",
    "PayoutCycle",
    "PlatformSetting",
    "ProfessionalAccount",
    "derive_final_status",
]
