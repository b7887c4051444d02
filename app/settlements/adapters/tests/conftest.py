"""
Pytest fixtures for Stripe gateway tests.

The Stripe resources the gateway touches (PaymentIntent, Transfer) are
patched at the module level of the stripe package; responses are plain
attribute bags exposing to_dict() like StripeObject does.
"""

from typing import Any
from unittest.mock import patch

import pytest


class StripeResponse:
    """Attribute bag standing in for a StripeObject response."""

    def __init__(self, **fields: Any):
        self._fields = fields
        for key, value in fields.items():
            setattr(self, key, value)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._fields)


@pytest.fixture
def mock_payment_intent():
    """Build a PaymentIntent response for a fee charge."""

    def _build(id: str = "pi_fee_default", status: str = "succeeded", amount: int = 2000) -> StripeResponse:
        return StripeResponse(id=id, object="payment_intent", status=status, amount=amount, currency="usd")

    return _build


@pytest.fixture
def mock_transfer():
    """Build a Transfer response for a payout."""

    def _build(id: str = "tr_payout_default", amount: int = 8000, destination: str = "acct_dest123") -> StripeResponse:
        return StripeResponse(id=id, object="transfer", amount=amount, currency="usd", destination=destination)

    return _build


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent):
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        yield mock


@pytest.fixture
def mock_stripe_transfer(mock_transfer):
    with patch("stripe.Transfer") as mock:
        mock.create.return_value = mock_transfer()
        yield mock


@pytest.fixture(autouse=True)
def mock_stripe_http_client():
    """Keep every gateway test off the network."""
    with patch("stripe.RequestsClient") as mock:
        yield mock
