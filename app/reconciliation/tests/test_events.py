"""
Tests for the event ingestion gate.

Tests cover:
- Deterministic derived event ids
- First-seen vs duplicate receipts
- Duplicate insert leaves the surrounding transaction usable
- Same event id under different providers
"""

import pytest
from django.db import transaction

from reconciliation.events import derive_event_id, is_recorded, record_event
from reconciliation.models import PaymentEventReceipt
from reconciliation.state_machines import PaymentProvider


class TestDeriveEventId:
    def test_same_payload_same_id(self):
        a = derive_event_id({"payment_id": 1, "payment_status": "finished"})
        b = derive_event_id({"payment_status": "finished", "payment_id": 1})

        assert a == b
        assert len(a) == 64

    def test_different_payload_different_id(self):
        a = derive_event_id({"payment_id": 1, "payment_status": "waiting"})
        b = derive_event_id({"payment_id": 1, "payment_status": "finished"})

        assert a != b

    def test_bytes_and_str_agree(self):
        body = '{"payment_id":1}'

        assert derive_event_id(body) == derive_event_id(body.encode("utf-8"))


@pytest.mark.django_db
class TestRecordEvent:
    def test_first_delivery_is_recorded(self):
        assert record_event(PaymentProvider.CARD, "evt_1", "payment_intent.succeeded") is True
        assert is_recorded(PaymentProvider.CARD, "evt_1")

    def test_second_delivery_is_duplicate(self):
        record_event(PaymentProvider.CARD, "evt_1", "payment_intent.succeeded")

        assert record_event(PaymentProvider.CARD, "evt_1", "payment_intent.succeeded") is False
        assert PaymentEventReceipt.objects.filter(event_id="evt_1").count() == 1

    def test_same_id_different_provider_is_distinct(self):
        record_event(PaymentProvider.CARD, "shared", "x")

        assert record_event(PaymentProvider.CRYPTO, "shared", "y") is True

    def test_duplicate_keeps_transaction_usable(self):
        record_event(PaymentProvider.CRYPTO, "abc", "payment_status")

        with transaction.atomic():
            assert record_event(PaymentProvider.CRYPTO, "abc", "payment_status") is False
            # Would raise if the outer transaction were broken
            assert PaymentEventReceipt.objects.count() == 1

    def test_rolled_back_unit_leaves_no_receipt(self):
        with pytest.raises(RuntimeError):
            with transaction.atomic():
                record_event(PaymentProvider.CARD, "evt_rollback", "payment_intent.succeeded")
                raise RuntimeError("side effect failed")

        assert not is_recorded(PaymentProvider.CARD, "evt_rollback")
