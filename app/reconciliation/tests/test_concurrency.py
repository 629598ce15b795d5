"""
Concurrent delivery tests.

Two workers race on the same payment with real transactions and
separate database connections, the way two Celery workers would.

Tests cover:
- Concurrent allocate() calls credit a payment once
- The same IPN delivered to two workers applies once
- Two distinct settled events for one payment allocate once
"""

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from decimal import Decimal

import pytest
from django.db import connection

from reconciliation.credits import CreditLedger, CreditTransaction
from reconciliation.outcomes import Applied
from reconciliation.state_machines import (
    CreditTransactionStatus,
    CreditTransactionType,
    PaymentPurpose,
    PaymentStatus,
)
from reconciliation.tests.factories import CryptoPaymentFactory

SETTLED = {"payment_status": "finished", "actually_paid": "0.005", "pay_amount": "0.005"}


def run_concurrently(func, workers=2):
    """Run func once per worker, released together, and return the results."""
    barrier = threading.Barrier(workers)

    def worker():
        try:
            barrier.wait(timeout=5)
            return func()
        finally:
            connection.close()  # Each thread owns its connection

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(worker) for _ in range(workers)]
        return [future.result() for future in as_completed(futures)]


def purchase_rows(payment):
    return CreditTransaction.objects.filter(
        payment_id=payment.id,
        transaction_type=CreditTransactionType.PURCHASE,
    )


@pytest.mark.django_db(transaction=True)
class TestConcurrentAllocation:
    @pytest.fixture
    def credit_payment(self):
        return CryptoPaymentFactory(
            purpose=PaymentPurpose.CREDITS,
            status=PaymentStatus.SUCCEEDED,
            amount_usd=Decimal("50.00"),
        )

    def test_credits_once(self, allocation, credit_payment):
        results = run_concurrently(
            lambda: allocation.allocate(
                credit_payment.user_id, str(credit_payment.id), Decimal("50"), SETTLED
            )
        )

        assert all(result.success for result in results)
        assert sorted(result.data.duplicate for result in results) == [False, True]
        assert {result.data.transaction_id for result in results} == {str(purchase_rows(credit_payment).get().id)}
        assert {result.data.balance_after for result in results} == {Decimal("50.00")}
        assert CreditLedger().get_balance(credit_payment.user_id) == Decimal("50.00")

    def test_completes_shared_pending_row(self, allocation, ledger, credit_payment):
        pending = ledger.create_pending_transaction(credit_payment.user_id, str(credit_payment.id))

        run_concurrently(
            lambda: allocation.allocate(
                credit_payment.user_id, str(credit_payment.id), Decimal("50"), SETTLED
            )
        )

        row = purchase_rows(credit_payment).get()
        assert row.id == pending.id
        assert row.status == CreditTransactionStatus.COMPLETED
        assert row.amount == Decimal("50.00")
        credit_payment.refresh_from_db()
        assert credit_payment.credit_transaction_id == row.id


@pytest.mark.django_db(transaction=True)
class TestConcurrentReconcile:
    @pytest.fixture
    def credit_payment(self):
        return CryptoPaymentFactory(purpose=PaymentPurpose.CREDITS)

    def test_same_event_applies_once(self, orchestrator, crypto_event, credit_payment):
        event = crypto_event(credit_payment, "finished", actually_paid="0.005", pay_amount="0.005")

        outcomes = run_concurrently(lambda: orchestrator.reconcile(event))

        assert sorted(type(outcome).__name__ for outcome in outcomes) == ["Applied", "DuplicateIgnored"]
        applied = next(outcome for outcome in outcomes if isinstance(outcome, Applied))
        assert applied.effects == ("credits_allocated",)
        assert purchase_rows(credit_payment).count() == 1
        assert CreditLedger().get_balance(credit_payment.user_id) == Decimal("50.00")

    def test_distinct_events_allocate_once(self, orchestrator, crypto_event, credit_payment):
        events = iter(
            [
                crypto_event(credit_payment, "finished", event_id="ipn-a", actually_paid="0.005", pay_amount="0.005"),
                crypto_event(credit_payment, "finished", event_id="ipn-b", actually_paid="0.005", pay_amount="0.005"),
            ]
        )
        lock = threading.Lock()

        def deliver():
            with lock:
                event = next(events)
            return orchestrator.reconcile(event)

        outcomes = run_concurrently(deliver)

        assert all(isinstance(outcome, Applied) for outcome in outcomes)
        assert sorted(outcome.effects for outcome in outcomes) == [(), ("credits_allocated",)]
        assert purchase_rows(credit_payment).count() == 1
        assert CreditLedger().get_balance(credit_payment.user_id) == Decimal("50.00")

        credit_payment.refresh_from_db()
        assert credit_payment.status == PaymentStatus.SUCCEEDED
