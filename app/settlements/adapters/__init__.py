"""
Settlement adapters for external collaborators.

All outbound money movement goes through a PaymentGateway (StripeGateway
by default) and slot restoration through a BookingCollaborator
(SignalBookingAdapter by default). See settlements.protocols.

Usage:
    from settlements.adapters import IdempotencyKeyGenerator, StripeGateway

    key = IdempotencyKeyGenerator.generate("payout_transfer", payout.id, payout.attempt_count)
"""

from settlements.adapters.booking import SignalBookingAdapter
from settlements.adapters.stripe_gateway import (
    IdempotencyKeyGenerator,
    StripeGateway,
    backoff_delay,
)

__all__ = [
    "IdempotencyKeyGenerator",
    "SignalBookingAdapter",
    "StripeGateway",
    "backoff_delay",
]
