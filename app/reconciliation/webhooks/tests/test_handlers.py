"""
Tests for the provider event handler registry.

Tests cover:
- Registration of every card, crypto and synthetic event type
- Dispatch to the orchestrator
- Unknown event types are acknowledged
"""

from unittest.mock import Mock

import pytest

from reconciliation.adapters.base import ProviderEvent
from reconciliation.adapters.nowpayments_adapter import IPN_EVENT_TYPE
from reconciliation.outcomes import Applied
from reconciliation.services.orchestrator import CANCEL_EVENT_TYPE, SYNC_EVENT_TYPE
from reconciliation.state_machines import PaymentProvider, PaymentStatus
from reconciliation.tests.factories import UnifiedPaymentFactory
from reconciliation.webhooks import dispatch, register_handler
from reconciliation.webhooks.handlers import WEBHOOK_HANDLERS


def _event(provider=PaymentProvider.CARD, event_type="payment_intent.succeeded", raw_status="succeeded"):
    return ProviderEvent(
        provider=provider,
        event_id="evt_1",
        event_type=event_type,
        provider_payment_id="pi_1",
        raw_status=raw_status,
    )


class TestRegistry:
    @pytest.mark.parametrize(
        "provider,event_type",
        [
            (PaymentProvider.CARD, "payment_intent.succeeded"),
            (PaymentProvider.CARD, "payment_intent.processing"),
            (PaymentProvider.CARD, "payment_intent.requires_action"),
            (PaymentProvider.CARD, "payment_intent.payment_failed"),
            (PaymentProvider.CARD, "payment_intent.canceled"),
            (PaymentProvider.CRYPTO, IPN_EVENT_TYPE),
            (PaymentProvider.CARD, SYNC_EVENT_TYPE),
            (PaymentProvider.CRYPTO, SYNC_EVENT_TYPE),
            (PaymentProvider.CARD, CANCEL_EVENT_TYPE),
            (PaymentProvider.CRYPTO, CANCEL_EVENT_TYPE),
        ],
    )
    def test_registered(self, provider, event_type):
        assert (provider, event_type) in WEBHOOK_HANDLERS

    def test_register_handler(self):
        key = (PaymentProvider.CARD, "charge.dispute.created")

        @register_handler(*key)
        def handle_dispute(event, orchestrator):
            return "handled"

        try:
            assert dispatch(_event(event_type="charge.dispute.created"), orchestrator=Mock()) == "handled"
        finally:
            WEBHOOK_HANDLERS.pop(key)


class TestDispatch:
    def test_routes_to_orchestrator(self):
        orchestrator = Mock()
        event = _event()

        outcome = dispatch(event, orchestrator=orchestrator)

        orchestrator.reconcile.assert_called_once_with(event)
        assert outcome is orchestrator.reconcile.return_value

    @pytest.mark.parametrize("raw_status", ["partially_paid", "finished"])
    def test_ipn_routes_to_orchestrator(self, raw_status):
        orchestrator = Mock()

        dispatch(_event(PaymentProvider.CRYPTO, IPN_EVENT_TYPE, raw_status), orchestrator=orchestrator)

        orchestrator.reconcile.assert_called_once()

    def test_unknown_event_type(self):
        orchestrator = Mock()

        assert dispatch(_event(event_type="customer.created"), orchestrator=orchestrator) is None
        orchestrator.reconcile.assert_not_called()

    @pytest.mark.django_db
    def test_end_to_end_with_real_orchestrator(self, orchestrator):
        payment = UnifiedPaymentFactory(provider_payment_id="pi_1")

        outcome = dispatch(_event(raw_status="processing", event_type="payment_intent.processing"), orchestrator)

        assert isinstance(outcome, Applied)
        assert outcome.status == PaymentStatus.PROCESSING
        payment.refresh_from_db()
        assert payment.status == PaymentStatus.PROCESSING
