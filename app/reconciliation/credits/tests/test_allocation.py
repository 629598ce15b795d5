"""
Tests for CreditAllocationService.

Tests cover:
- Paid-amount resolution (outcome amount, crypto ratio, card cents)
- Tolerance: 98% paid allocates, 80% paid is rejected
- Exactly-once: replays return the first result as a duplicate
- Pending purchase row is completed in place and linked to the payment
- Validation failures (user, amount bounds, unsettled status)
- Manual allocation by an admin
"""

import uuid
from decimal import Decimal

import pytest

from reconciliation.credits import CreditTransaction
from reconciliation.credits.services import resolve_paid_amount
from reconciliation.state_machines import (
    CreditTransactionStatus,
    PaymentPurpose,
    PaymentStatus,
)
from reconciliation.tests.factories import CreditTransactionFactory, CryptoPaymentFactory

SETTLED_98 = {"payment_status": "finished", "actually_paid": "0.0049", "pay_amount": "0.005"}
SETTLED_80 = {"payment_status": "finished", "actually_paid": "0.004", "pay_amount": "0.005"}


@pytest.fixture
def credit_payment(db):
    return CryptoPaymentFactory(
        purpose=PaymentPurpose.CREDITS,
        status=PaymentStatus.SUCCEEDED,
        amount_usd=Decimal("50.00"),
    )


class TestResolvePaidAmount:
    def test_prefers_usd_outcome_amount(self):
        paid = resolve_paid_amount(
            Decimal("50"),
            {"outcome_amount": "49.50", "outcome_currency": "USD", "actually_paid": "0.001", "pay_amount": "1"},
        )

        assert paid.paid_usd == Decimal("49.50")
        assert paid.source == "outcome_amount"

    def test_crypto_ratio(self):
        paid = resolve_paid_amount(Decimal("50"), SETTLED_98)

        assert paid.paid_usd == Decimal("49.00")
        assert paid.paid_ratio == Decimal("0.98")
        assert paid.source == "actually_paid_ratio"

    def test_card_amount_received(self):
        paid = resolve_paid_amount(Decimal("49.99"), {"amount_received": 4999, "currency": "usd"})

        assert paid.paid_usd == Decimal("49.99")
        assert paid.source == "amount_received"

    def test_falls_back_to_expected(self):
        paid = resolve_paid_amount(Decimal("50"), None)

        assert paid.paid_usd == Decimal("50")
        assert paid.paid_ratio is None
        assert paid.source == "expected"


@pytest.mark.django_db
class TestAllocate:
    def test_allocates_within_tolerance(self, allocation, credit_payment):
        result = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )

        assert result.success
        assert result.data.credit_amount == Decimal("50.00")
        assert result.data.balance_after == Decimal("50.00")
        assert result.data.duplicate is False

        row = CreditTransaction.objects.get(payment_id=credit_payment.id)
        assert row.status == CreditTransactionStatus.COMPLETED
        assert row.payment_completed
        assert row.metadata["allocationSource"] == "actually_paid_ratio"

        credit_payment.refresh_from_db()
        assert credit_payment.credit_transaction_id == row.id

    def test_rejects_underpayment(self, allocation, credit_payment):
        result = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_80
        )

        assert not result.success
        assert result.error_code == "INSUFFICIENT_PAYMENT"
        assert not CreditTransaction.objects.filter(payment_id=credit_payment.id).exists()

    def test_replay_returns_duplicate(self, allocation, credit_payment):
        first = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )
        second = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )

        assert second.success
        assert second.data.duplicate is True
        assert second.data.transaction_id == first.data.transaction_id
        assert allocation.get_balance(credit_payment.user_id) == Decimal("50.00")

    def test_completes_pending_row_in_place(self, allocation, ledger, credit_payment):
        pending = ledger.create_pending_transaction(credit_payment.user_id, str(credit_payment.id))

        result = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )

        assert result.data.transaction_id == str(pending.id)
        assert CreditTransaction.objects.filter(payment_id=credit_payment.id).count() == 1

    def test_balance_builds_on_existing_credits(self, allocation, credit_payment):
        CreditTransactionFactory(user_id=credit_payment.user_id, amount=Decimal("10.00"))

        result = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )

        assert result.data.balance_after == Decimal("60.00")

    def test_notifies_after_commit(self, allocation, notifier, credit_payment, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=True):
            allocation.allocate(
                credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
            )

        notifier.notify_user.assert_called_once()
        args = notifier.notify_user.call_args.args
        assert args[0] == credit_payment.user_id
        assert args[1] == "credits_allocated"

    def test_unsettled_provider_status(self, allocation, credit_payment):
        result = allocation.allocate(
            credit_payment.user_id,
            str(credit_payment.id),
            Decimal("50.00"),
            {"payment_status": "confirming"},
        )

        assert result.error_code == "PAYMENT_NOT_SETTLED"

    def test_unknown_user(self, allocation, users, credit_payment):
        users.exists.return_value = False

        result = allocation.allocate(credit_payment.user_id, str(credit_payment.id), Decimal("50.00"))

        assert result.error_code == "USER_NOT_FOUND"

    @pytest.mark.parametrize("amount", [None, "abc", Decimal("0"), Decimal("-5")])
    def test_invalid_amount(self, allocation, credit_payment, amount):
        result = allocation.allocate(credit_payment.user_id, str(credit_payment.id), amount)

        assert result.error_code == "INVALID_AMOUNT"

    def test_amount_over_limit(self, allocation, credit_payment, settings):
        settings.CREDIT_MAX_ALLOCATION = 100

        result = allocation.allocate(credit_payment.user_id, str(credit_payment.id), Decimal("150.00"))

        assert result.error_code == "AMOUNT_EXCEEDS_LIMIT"

    def test_pending_row_owned_by_other_user(self, allocation, ledger, credit_payment):
        ledger.create_pending_transaction("someone-else", str(credit_payment.id))

        result = allocation.allocate(
            credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98
        )

        assert result.error_code == "PAYMENT_USER_MISMATCH"


@pytest.mark.django_db
class TestManualAllocate:
    def test_credits_and_marks_payment_succeeded(self, allocation):
        payment = CryptoPaymentFactory(purpose=PaymentPurpose.CREDITS, status=PaymentStatus.FAILED)

        result = allocation.manual_allocate("admin-1", payment.user_id, str(payment.id), "40", "partial paid")

        assert result.success
        assert result.data.credit_amount == Decimal("40.00")
        payment.refresh_from_db()
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.status_reason == "manual_approved"
        row = CreditTransaction.objects.get(payment_id=payment.id)
        assert row.metadata["manualAllocation"] is True

    def test_duplicate_after_automatic_allocation(self, allocation, credit_payment):
        allocation.allocate(credit_payment.user_id, str(credit_payment.id), Decimal("50.00"), SETTLED_98)

        result = allocation.manual_allocate(
            "admin-1", credit_payment.user_id, str(credit_payment.id), "50", "again"
        )

        assert result.data.duplicate is True

    def test_user_mismatch(self, allocation, credit_payment):
        result = allocation.manual_allocate("admin-1", "other-user", str(credit_payment.id), "50", "x")

        assert result.error_code == "PAYMENT_USER_MISMATCH"

    def test_missing_payment(self, allocation):
        result = allocation.manual_allocate("admin-1", "u1", str(uuid.uuid4()), "50", "x")

        assert result.error_code == "PAYMENT_NOT_FOUND"


@pytest.mark.django_db
def test_get_pending_allocations(allocation, ledger, credit_payment):
    ledger.create_pending_transaction(credit_payment.user_id, str(credit_payment.id))
    CryptoPaymentFactory(purpose=PaymentPurpose.CREDITS, status=PaymentStatus.PROCESSING)

    pending = allocation.get_pending_allocations()

    assert [p.payment_id for p in pending] == [str(credit_payment.id)]
    assert pending[0].amount_usd == Decimal("50.00")
