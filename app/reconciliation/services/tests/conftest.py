"""
Pytest fixtures for reconciliation service tests.

Sections:
    - Checkout Fixtures
    - Renewal Fixtures
    - Adapter Fixtures
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from commerce.tests.factories import (
    CouponRedemptionFactory,
    OrderFactory,
    OrderItemFactory,
    SubscriptionFactory,
)
from reconciliation.tests.factories import UnifiedPaymentFactory


# =============================================================================
# Checkout Fixtures
# =============================================================================


@pytest.fixture
def order(db):
    """PENDING_PAYMENT order for $49.99 with one monthly line and a reserved coupon."""
    order = OrderFactory(total_cents=4999)
    OrderItemFactory(order=order, price_cents=4999, base_price_cents=5999, auto_renew=True)
    CouponRedemptionFactory(order=order)
    return order


@pytest.fixture
def checkout_payment(order):
    """Card payment for the order, amount matching the total."""
    return UnifiedPaymentFactory(
        order_id=order.id,
        user_id=order.user_id,
        amount=Decimal("49.99"),
        currency="usd",
    )


# =============================================================================
# Renewal Fixtures
# =============================================================================


@pytest.fixture
def subscription(db):
    """Monthly auto-renewing subscription whose cycle ends 2026-03-31."""
    return SubscriptionFactory()


@pytest.fixture
def renewal_payment_factory(subscription):
    """Build renewal payments for the subscription's current cycle."""

    def _create(**kwargs):
        metadata = {
            "renewal": True,
            "subscription_id": str(subscription.id),
            "cycle_end_date": "2026-03-31",
            **kwargs.pop("metadata", {}),
        }
        return UnifiedPaymentFactory(
            user_id=subscription.user_id,
            metadata=metadata,
            **kwargs,
        )

    return _create


# =============================================================================
# Adapter Fixtures
# =============================================================================


@pytest.fixture
def adapter():
    """ProviderAdapter mock; event_metadata passes nothing through by default."""
    mock = Mock()
    mock.event_metadata.return_value = {}
    return mock


@pytest.fixture
def adapter_factory(adapter):
    return Mock(return_value=adapter)
