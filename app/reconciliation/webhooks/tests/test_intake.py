"""
Tests for webhook intake.

Tests cover:
- Verified events are queued
- IPNs without an event id get a body hash
- Already-processed events are acknowledged without queueing
- Verification and configuration errors
"""

import hashlib
import json
from unittest.mock import Mock

import pytest

from reconciliation.adapters import NowPaymentsAdapter
from reconciliation.adapters.base import ProviderEvent
from reconciliation.adapters.nowpayments_adapter import ipn_signature
from reconciliation.events import record_event
from reconciliation.exceptions import ProviderNotConfiguredError, WebhookVerificationError
from reconciliation.state_machines import PaymentProvider
from reconciliation.webhooks import receive_webhook


@pytest.fixture
def enqueue():
    return Mock()


@pytest.fixture
def card_adapter():
    adapter = Mock()
    adapter.verify_webhook.return_value = ProviderEvent(
        provider=PaymentProvider.CARD,
        event_id="evt_1",
        event_type="payment_intent.succeeded",
        provider_payment_id="pi_1",
        raw_status="succeeded",
    )
    return adapter


@pytest.mark.django_db
class TestReceiveWebhook:
    def test_queues_verified_event(self, card_adapter, enqueue):
        result = receive_webhook(
            PaymentProvider.CARD,
            b"{}",
            "t=1,v1=abc",
            adapter_factory=lambda provider: card_adapter,
            enqueue=enqueue,
        )

        assert result.success
        assert result.data == {
            "event_id": "evt_1",
            "event_type": "payment_intent.succeeded",
            "queued": True,
        }
        card_adapter.verify_webhook.assert_called_once_with(b"{}", "t=1,v1=abc")
        enqueue.assert_called_once()
        assert enqueue.call_args.args[0].event_id == "evt_1"

    def test_processed_event_not_queued(self, card_adapter, enqueue):
        record_event(PaymentProvider.CARD, "evt_1", "payment_intent.succeeded")

        result = receive_webhook(
            PaymentProvider.CARD,
            b"{}",
            "sig",
            adapter_factory=lambda provider: card_adapter,
            enqueue=enqueue,
        )

        assert result.success
        assert result.data["queued"] is False
        enqueue.assert_not_called()

    def test_ipn_event_id_is_body_hash(self, settings, enqueue):
        settings.NOWPAYMENTS_IPN_SECRET = "ipn_secret"
        payload = {"payment_id": 77, "payment_status": "finished"}
        body = json.dumps(payload).encode()

        result = receive_webhook(
            PaymentProvider.CRYPTO,
            body,
            ipn_signature(payload, "ipn_secret"),
            adapter_factory=lambda provider: NowPaymentsAdapter(),
            enqueue=enqueue,
        )

        assert result.data["event_id"] == hashlib.sha256(body).hexdigest()
        event = enqueue.call_args.args[0]
        assert event.provider_payment_id == "77"
        assert event.raw_status == "finished"

    def test_rejected_signature(self, card_adapter, enqueue):
        card_adapter.verify_webhook.side_effect = WebhookVerificationError("Invalid signature")

        result = receive_webhook(
            PaymentProvider.CARD,
            b"{}",
            "bad",
            adapter_factory=lambda provider: card_adapter,
            enqueue=enqueue,
        )

        assert not result.success
        assert result.error_code == "WEBHOOK_VERIFICATION_FAILED"
        enqueue.assert_not_called()

    def test_unconfigured_provider(self, enqueue):
        def factory(provider):
            raise ProviderNotConfiguredError(f"No adapter for {provider}")

        result = receive_webhook("paypal", b"{}", "sig", adapter_factory=factory, enqueue=enqueue)

        assert result.error_code == "PROVIDER_NOT_CONFIGURED"
        enqueue.assert_not_called()
