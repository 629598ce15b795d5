"""
Pytest fixtures shared by the reconciliation test packages.

Collaborators use the real commerce gateways (so fulfillment writes real
rows) with a mocked notifier and user directory.

Usage:
    def test_settlement(orchestrator, card_event, notifier):
        outcome = orchestrator.reconcile(card_event(payment, "succeeded"))
        notifier.notify_user.assert_called_once()
"""

import uuid
from unittest.mock import Mock

import pytest

from commerce.services import CouponService, OrderService, SubscriptionService
from reconciliation.adapters.base import ProviderEvent
from reconciliation.collaborators import Collaborators
from reconciliation.credits import CreditAllocationService, CreditLedger
from reconciliation.state_machines import PaymentProvider


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def notifier():
    """Notifier mock; assert on notify_user / notify_admins calls."""
    return Mock()


@pytest.fixture
def users():
    """User directory where every user exists."""
    directory = Mock()
    directory.exists.return_value = True
    return directory


@pytest.fixture
def collaborators(notifier, users):
    return Collaborators(
        orders=OrderService(),
        subscriptions=SubscriptionService(),
        coupons=CouponService(),
        users=users,
        notifier=notifier,
    )


@pytest.fixture
def schedule_retry():
    """Stand-in for queueing retry_failed_payment."""
    return Mock()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def ledger():
    return CreditLedger()


@pytest.fixture
def allocation(users, notifier, ledger):
    return CreditAllocationService(users, notifier, ledger=ledger)


@pytest.fixture
def failures(collaborators, schedule_retry):
    from reconciliation.services import PaymentFailureService

    return PaymentFailureService(collaborators, schedule_retry=schedule_retry)


@pytest.fixture
def orchestrator(collaborators, allocation, failures):
    from reconciliation.services import ReconciliationOrchestrator

    return ReconciliationOrchestrator(
        collaborators=collaborators,
        allocation=allocation,
        failures=failures,
    )


# =============================================================================
# Event Builders
# =============================================================================


@pytest.fixture
def card_event():
    """Build a Stripe-style event for a payment."""

    def build(payment, raw_status, event_id=None, event_type=None, metadata=None, payload=None):
        return ProviderEvent(
            provider=PaymentProvider.CARD,
            event_id=event_id or f"evt_{uuid.uuid4().hex}",
            event_type=event_type or f"payment_intent.{raw_status}",
            provider_payment_id=payment.provider_payment_id,
            raw_status=raw_status,
            metadata=metadata or {},
            payload=payload or {"id": payment.provider_payment_id, "status": raw_status},
        )

    return build


@pytest.fixture
def crypto_event():
    """Build a NOWPayments IPN event for a payment (event id derived from payload)."""

    def build(payment, raw_status, event_id="", metadata=None, **payload_fields):
        payload = {
            "payment_id": payment.provider_payment_id,
            "payment_status": raw_status,
            **payload_fields,
        }
        return ProviderEvent(
            provider=PaymentProvider.CRYPTO,
            event_id=event_id,
            event_type="payment_status",
            provider_payment_id=payment.provider_payment_id,
            raw_status=raw_status,
            metadata=metadata or {},
            payload=payload,
        )

    return build
