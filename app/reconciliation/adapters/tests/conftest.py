"""
Pytest fixtures for provider adapter tests.

Sections:
    - Mock Stripe Objects
    - Mock Stripe Client Fixtures
    - NOWPayments HTTP Fixtures
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from unittest.mock import Mock, patch

import pytest
import requests

from reconciliation.adapters import PaymentSpec


# =============================================================================
# Mock Stripe Objects
# =============================================================================


@dataclass
class MockStripeObject:
    """Mock Stripe API object with to_dict support."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


@pytest.fixture
def mock_payment_intent():
    """Create a mock PaymentIntent response."""

    def _create(
        id: str = "pi_test123456",
        status: str = "requires_payment_method",
        amount: int = 4999,
        currency: str = "usd",
        client_secret: str = "pi_test123456_secret_abc123",
        amount_received: int = 0,
        metadata: dict | None = None,
        last_payment_error: dict | None = None,
    ) -> MockStripeObject:
        return MockStripeObject(
            {
                "id": id,
                "object": "payment_intent",
                "status": status,
                "amount": amount,
                "currency": currency,
                "client_secret": client_secret,
                "amount_received": amount_received,
                "metadata": metadata or {},
                "last_payment_error": last_payment_error,
            }
        )

    return _create


# =============================================================================
# Mock Stripe Client Fixtures
# =============================================================================


@pytest.fixture
def stripe_settings(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_WEBHOOK_SECRET = "whsec_test_123"
    return settings


@pytest.fixture
def mock_stripe_http_client():
    """Mock stripe.RequestsClient so configuration never opens sockets."""
    with patch("stripe.RequestsClient") as mock:
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_payment_intent, mock_stripe_http_client, stripe_settings):
    """Mock stripe.PaymentIntent API."""
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = mock_payment_intent()
        mock.retrieve.return_value = mock_payment_intent(status="processing")
        mock.cancel.return_value = mock_payment_intent(status="canceled")
        yield mock


@pytest.fixture
def mock_stripe_webhook(stripe_settings):
    """Mock stripe.Webhook API (signature always accepted)."""
    with patch("stripe.Webhook") as mock:
        yield mock


@pytest.fixture
def card_spec():
    return PaymentSpec(
        amount=Decimal("49.99"),
        currency="USD",
        user_id="42",
        idempotency_key="create_payment:order-1:1",
        order_id="order-1",
        description="Pro plan",
    )


# =============================================================================
# NOWPayments HTTP Fixtures
# =============================================================================


@pytest.fixture
def nowpayments_settings(settings):
    settings.NOWPAYMENTS_API_KEY = "np_key"
    settings.NOWPAYMENTS_IPN_SECRET = "ipn_secret"
    settings.NOWPAYMENTS_API_URL = "https://api.example.test/v1/"
    settings.NOWPAYMENTS_IPN_CALLBACK_URL = "https://app.example.test/webhooks/crypto"
    return settings


@pytest.fixture
def http_response():
    """Build a requests.Response-like mock."""

    def _create(status_code: int = 200, json_data: Any = None) -> Mock:
        response = Mock(spec=requests.Response)
        response.status_code = status_code
        response.ok = 200 <= status_code < 400
        if json_data is None:
            response.json.side_effect = ValueError("no json")
        else:
            response.json.return_value = json_data
        return response

    return _create


@pytest.fixture
def session():
    """requests.Session mock injected into NowPaymentsAdapter."""
    return Mock(spec=requests.Session)
