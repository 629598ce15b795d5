"""
Tests for PaymentService.

Tests cover:
- Parameter validation
- Stored UnifiedPayment fields and correlation metadata
- Pending purchase rows for credit top-ups
- Provider error passthrough
- Idempotent replays answered with an already-stored payment
"""

from datetime import date
from decimal import Decimal

import pytest

from reconciliation.adapters.base import CreatedPayment
from reconciliation.credits import CreditTransaction
from reconciliation.exceptions import ProviderPermanentError
from reconciliation.models import UnifiedPayment
from reconciliation.services import CreatePaymentParams, PaymentService
from reconciliation.state_machines import (
    CreditTransactionStatus,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
)


@pytest.fixture
def service(adapter_factory, ledger):
    return PaymentService(adapter_factory=adapter_factory, ledger=ledger)


@pytest.fixture
def card_created():
    return CreatedPayment(
        provider_payment_id="pi_abc",
        status=PaymentStatus.REQUIRES_PAYMENT_METHOD,
        raw_status="requires_payment_method",
        client_secret="pi_abc_secret",
        amount_usd=Decimal("49.99"),
    )


@pytest.fixture
def crypto_created():
    return CreatedPayment(
        provider_payment_id="5077125051",
        status=PaymentStatus.PROCESSING,
        raw_status="waiting",
        metadata={"pay_address": "bc1qxyz", "pay_amount": 0.00081, "pay_currency": "btc"},
        amount_usd=Decimal("50.00"),
    )


# =============================================================================
# Validation
# =============================================================================


class TestValidation:
    @pytest.mark.parametrize(
        "overrides,error_code",
        [
            ({"amount": Decimal("0")}, "INVALID_AMOUNT"),
            ({"amount": "not-a-number"}, "INVALID_AMOUNT"),
            ({"provider": "paypal"}, "INVALID_PROVIDER"),
            ({"order_id": None}, "ORDER_REQUIRED"),
        ],
    )
    def test_rejected_before_provider_call(self, service, adapter, overrides, error_code):
        params = {
            "user_id": "42",
            "provider": PaymentProvider.CARD,
            "amount": Decimal("49.99"),
            "order_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
            **overrides,
        }

        result = service.create_payment(CreatePaymentParams(**params))

        assert result.error_code == error_code
        adapter.create_payment.assert_not_called()

    def test_unsupported_currency(self, service, adapter):
        adapter.supports_currency.return_value = False

        result = service.create_payment(
            CreatePaymentParams(
                user_id="42",
                provider=PaymentProvider.CRYPTO,
                amount=Decimal("50"),
                purpose=PaymentPurpose.CREDITS,
                pay_currency="doge",
            )
        )

        assert result.error_code == "UNSUPPORTED_CURRENCY"
        adapter.supports_currency.assert_called_once_with("doge")


# =============================================================================
# Creation
# =============================================================================


@pytest.mark.django_db
class TestCreatePayment:
    def test_checkout_payment(self, service, adapter, card_created):
        adapter.create_payment.return_value = card_created
        order_id = "7c9e6679-7425-40de-944b-e07fc1f90ae7"

        result = service.create_payment(
            CreatePaymentParams(
                user_id="42",
                provider=PaymentProvider.CARD,
                amount=Decimal("49.99"),
                currency="USD",
                order_id=order_id,
                idempotency_key="create_payment:order:1",
            )
        )

        assert result.success
        assert result.data.created is True
        assert result.data.client_secret == "pi_abc_secret"

        payment = result.data.payment
        assert payment.provider_payment_id == "pi_abc"
        assert payment.status == PaymentStatus.REQUIRES_PAYMENT_METHOD
        assert payment.provider_status == "requires_payment_method"
        assert payment.currency == "usd"
        assert str(payment.order_id) == order_id
        assert payment.metadata["purpose"] == PaymentPurpose.CHECKOUT
        assert payment.metadata["schema_version"] == 1

        spec = adapter.create_payment.call_args.args[0]
        assert spec.idempotency_key == "create_payment:order:1"
        assert spec.order_id == order_id

    def test_renewal_payment_carries_cycle(self, service, adapter, card_created):
        adapter.create_payment.return_value = card_created
        subscription_id = "9f3b5a8e-1f4c-4d0e-9a7e-3c2b1a0f9e8d"

        result = service.create_payment(
            CreatePaymentParams(
                user_id="42",
                provider=PaymentProvider.CARD,
                amount=Decimal("49.99"),
                subscription_id=subscription_id,
                cycle_end_date=date(2026, 3, 31),
                customer_id="cus_1",
                auto_renew=True,
            )
        )

        payment = result.data.payment
        assert payment.is_renewal
        assert str(payment.subscription_id) == subscription_id
        assert payment.metadata["cycle_end_date"] == "2026-03-31"

        spec = adapter.create_payment.call_args.args[0]
        assert spec.metadata["renewal"] is True
        assert spec.customer_id == "cus_1"

    def test_credit_top_up_creates_pending_row(self, service, adapter, crypto_created):
        adapter.create_payment.return_value = crypto_created

        result = service.create_payment(
            CreatePaymentParams(
                user_id="42",
                provider=PaymentProvider.CRYPTO,
                amount=Decimal("50.00"),
                pay_currency="btc",
                purpose=PaymentPurpose.CREDITS,
            )
        )

        payment = result.data.payment
        assert payment.metadata["pay_address"] == "bc1qxyz"
        assert payment.metadata["pay_amount"] == "0.00081"
        assert payment.amount_usd == Decimal("50.00")

        row = CreditTransaction.objects.get(id=payment.credit_transaction_id)
        assert row.status == CreditTransactionStatus.PENDING
        assert row.amount == Decimal("0")
        assert str(row.payment_id) == str(payment.id)

    def test_provider_error(self, service, adapter):
        adapter.create_payment.side_effect = ProviderPermanentError(
            "Your card was declined.",
            error_code="CARD_DECLINED",
        )

        result = service.create_payment(
            CreatePaymentParams(
                user_id="42",
                provider=PaymentProvider.CARD,
                amount=Decimal("49.99"),
                order_id="7c9e6679-7425-40de-944b-e07fc1f90ae7",
            )
        )

        assert result.error_code == "CARD_DECLINED"
        assert adapter.create_payment.call_count == 1
        assert not UnifiedPayment.objects.exists()

    def test_idempotent_replay(self, service, adapter, card_created):
        adapter.create_payment.return_value = card_created
        params = CreatePaymentParams(
            user_id="42",
            provider=PaymentProvider.CARD,
            amount=Decimal("49.99"),
            order_id="7c9e6679-7425-40de-944b-e07fc1f90ae7",
            idempotency_key="create_payment:order:1",
        )

        first = service.create_payment(params)
        second = service.create_payment(params)

        assert second.data.created is False
        assert second.data.payment.id == first.data.payment.id
        assert UnifiedPayment.objects.count() == 1
