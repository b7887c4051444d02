"""
Protocol definitions (interfaces) for settlement collaborators.

The settlement core moves money and frees booking slots only through
these ports. Defaults live in settlements.adapters; services accept any
object with the same shape, so tests pass plain mocks.

Available Protocols:
    PaymentGateway: Fee charges and payout transfers
    BookingCollaborator: Slot restoration after a confirmed cancellation

Usage:
    from settlements.protocols import PaymentGateway
    from settlements.services import FeeChargeProcessor

    class FakeGateway:
        def charge_fee(self, **kwargs) -> ChargeResult: ...
        def create_transfer(self, **kwargs) -> TransferResult: ...

    FeeChargeProcessor.set_gateway(FakeGateway())

Note:
    - Gateway methods raise settlements.exceptions.GatewayError subclasses
    - @runtime_checkable allows isinstance() checks
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import uuid
    from datetime import time

    from settlements.types import ChargeResult, TransferResult


@runtime_checkable
class PaymentGateway(Protocol):
    """
    Protocol for the outbound payment gateway.

    Both calls must be idempotent for a given idempotency_key: repeating a
    call with the same key returns the first outcome and moves no money.
    """

    def charge_fee(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> ChargeResult:
        """
        Charge the platform fee to a professional's saved card, off-session.

        Args:
            customer_id: Gateway customer of the professional
            payment_method_id: Saved payment method to charge
            amount_cents: Fee amount in cents
            currency: ISO 4217 currency code
            idempotency_key: Key making the call safe to repeat
            metadata: Identifiers attached to the charge

        Returns:
            ChargeResult for the succeeded charge

        Raises:
            GatewayError: Declines and permanent errors (is_retryable False),
                timeouts and outages (is_retryable True)
        """
        ...

    def create_transfer(
        self,
        *,
        destination_account: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> TransferResult:
        """
        Transfer a payout to a professional's Connect account.

        Args:
            destination_account: Connect account ID
            amount_cents: Net amount in cents
            currency: ISO 4217 currency code
            idempotency_key: Key making the call safe to repeat
            metadata: Identifiers attached to the transfer

        Returns:
            TransferResult for the created transfer

        Raises:
            GatewayError: Any failure; payouts are never retried automatically
        """
        ...


@runtime_checkable
class BookingCollaborator(Protocol):
    """
    Protocol for the booking/availability engine.

    Example:
        class AvailabilityClient:
            def restore_slot(self, professional_id, day_of_week, start_time):
                ...
    """

    def restore_slot(
        self,
        professional_id: uuid.UUID,
        day_of_week: int,
        start_time: time,
    ) -> None:
        """
        Make a canceled session's slot bookable again.

        Args:
            professional_id: Professional owning the slot
            day_of_week: 0 = Monday ... 6 = Sunday
            start_time: Slot start time of day (UTC)
        """
        ...


__all__ = ["PaymentGateway", "BookingCollaborator"]
