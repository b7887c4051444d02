"""
Stripe implementation of the settlement payment gateway.

StripeGateway charges platform fees off-session to a professional's saved
card (PaymentIntent with confirm=True) and disburses payouts as Connect
Transfers. Every call carries an idempotency key and Stripe errors are
translated into settlement GatewayError subclasses.

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)

Usage:
    from settlements.adapters import IdempotencyKeyGenerator, StripeGateway

    result = StripeGateway().charge_fee(
        customer_id="cus_xxx",
        payment_method_id="pm_xxx",
        amount_cents=2000,
        currency="usd",
        idempotency_key=IdempotencyKeyGenerator.generate("fee_charge", fee_charge.id, 1),
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
import uuid
from typing import Any

import stripe
from django.conf import settings

from settlements.exceptions import (
    CardDeclinedError,
    GatewayRateLimitError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidGatewayRequestError,
    InvalidPayoutAccountError,
    PaymentMethodMissingError,
)
from settlements.types import ChargeResult, TransferResult

# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for gateway calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The same (operation, entity, attempt) always yields the same key. Callers
    store the key with the record before the gateway call and reuse it until
    an attempt has a known outcome, so a timeout or a worker crash never
    turns into a second charge.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="fee_charge",
            entity_id=fee_charge.id,
            attempt=2,
        )
        # Result: "fee_charge:550e8400-e29b-41d4-a716-446655440000:2:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        """
        Generate a deterministic idempotency key.

        Args:
            operation: The gateway operation (fee_charge, payout_transfer)
            entity_id: The domain entity ID
            attempt: Attempt number (default: 1)

        Returns:
            Formatted idempotency key string
        """
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Jitter spreads retries of many professionals' charges over time.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds before jitter (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # base=3600: attempt 0 -> 1h-1.25h, attempt 1 -> 2h-2.5h
        delay = backoff_delay(attempt=1, base=3600, max_delay=86400)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Stripe Gateway
# =============================================================================


class StripeGateway:
    """
    PaymentGateway backed by the Stripe API.

    Stateless; safe to share between Celery worker threads.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key and timeout."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Operations
    # =========================================================================

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
        Charge the platform fee off-session.

        Raises:
            PaymentMethodMissingError: No customer or card on file
            CardDeclinedError: Card was declined or needs authentication
            GatewayError: Any other Stripe failure
        """
        if not customer_id or not payment_method_id:
            raise PaymentMethodMissingError(
                "No payment method on file for fee charges",
                details={"customer_id": customer_id},
            )

        self._configure_stripe()
        logger = self.get_logger()

        log_context = {
            "operation": "charge_fee",
            "amount_cents": amount_cents,
            "currency": currency,
            "customer_id": customer_id,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                customer=customer_id,
                payment_method=payment_method_id,
                off_session=True,
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000

        if intent.status != "succeeded":
            # Off-session charges that need customer action count as declines
            logger.warning(
                "Stripe charge not completed",
                extra={
                    **log_context,
                    "payment_intent_id": intent.id,
                    "status": intent.status,
                    "duration_ms": duration_ms,
                },
            )
            raise CardDeclinedError(
                f"Charge ended in status '{intent.status}'",
                gateway_code=intent.status,
                details={"payment_intent_id": intent.id},
            )

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": duration_ms,
            },
        )

        return ChargeResult(
            reference=intent.id,
            status=intent.status,
            amount_cents=intent.amount,
            currency=intent.currency,
            raw_response=intent.to_dict(),
        )

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
        Create a transfer to a connected Stripe account.

        Raises:
            InvalidPayoutAccountError: Missing or unusable destination account
            GatewayError: Any other Stripe failure
        """
        if not destination_account:
            raise InvalidPayoutAccountError("No Connect account on file for payouts")

        self._configure_stripe()
        logger = self.get_logger()

        log_context = {
            "operation": "create_transfer",
            "amount_cents": amount_cents,
            "destination_account": destination_account,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            transfer = stripe.Transfer.create(
                amount=amount_cents,
                currency=currency,
                destination=destination_account,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "transfer_id": transfer.id,
                "duration_ms": duration_ms,
            },
        )

        return TransferResult(
            reference=transfer.id,
            amount_cents=transfer.amount,
            currency=transfer.currency,
            destination_account=transfer.destination,
            raw_response=transfer.to_dict(),
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to settlement gateway exceptions.

        Raises:
            CardDeclinedError: Card was declined
            InvalidPayoutAccountError: Invalid Connect account
            InvalidGatewayRequestError: Invalid request or authentication failure
            GatewayRateLimitError: Rate limited
            GatewayTimeoutError: Request timed out
            GatewayUnavailableError: Network failure or Stripe server error
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise CardDeclinedError(
                str(error.user_message or error),
                gateway_code=error.code,
                decline_code=decline_code,
            )

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if "account" in str(error).lower():
                raise InvalidPayoutAccountError(str(error), gateway_code=error.code)
            raise InvalidGatewayRequestError(str(error), gateway_code=error.code)

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise GatewayRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                gateway_code="rate_limit",
            )

        elif isinstance(error, stripe.APIConnectionError):
            if "timeout" in str(error).lower() or "timed out" in str(error).lower():
                logger.warning("Stripe request timed out", extra=log_context)
                raise GatewayTimeoutError(
                    "Stripe request timed out. Please retry.",
                    gateway_code="timeout",
                )
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to Stripe. Please retry.",
                gateway_code="api_connection_error",
            )

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Stripe service error. Please retry.",
                gateway_code="api_error",
            )

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise InvalidGatewayRequestError(
                "Stripe authentication failed",
                gateway_code="authentication_error",
            )

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise GatewayUnavailableError(
                f"Unexpected Stripe error: {error}",
                gateway_code="unknown_error",
            )
