"""
Tests for PaymentMonitoringService.

Tests cover:
- Which crypto payments are polled
- Summary counts for applied / unchanged / failed syncs
- Provider errors handed to the failure subsystem
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from reconciliation.exceptions import ProviderPermanentError
from reconciliation.models import PaymentFailureRecord, UnifiedPayment
from reconciliation.services import PaymentMonitoringService, ReconciliationOrchestrator
from reconciliation.state_machines import FailureType, PaymentPurpose, PaymentStatus
from reconciliation.tests.factories import CryptoPaymentFactory, UnifiedPaymentFactory


@pytest.fixture
def monitor(collaborators, allocation, failures, adapter_factory):
    orchestrator = ReconciliationOrchestrator(
        collaborators=collaborators,
        allocation=allocation,
        failures=failures,
        adapter_factory=adapter_factory,
    )
    return PaymentMonitoringService(orchestrator)


@pytest.mark.django_db
class TestOpenPayments:
    def test_only_recent_open_crypto_payments(self, monitor):
        open_payment = CryptoPaymentFactory()
        CryptoPaymentFactory(status=PaymentStatus.SUCCEEDED)
        CryptoPaymentFactory(status=PaymentStatus.EXPIRED)
        UnifiedPaymentFactory(status=PaymentStatus.PROCESSING)
        stale = CryptoPaymentFactory()
        UnifiedPayment.objects.filter(id=stale.id).update(created_at=timezone.now() - timedelta(days=8))

        assert list(monitor.open_payments()) == [open_payment]


@pytest.mark.django_db
class TestRun:
    def test_counts_outcomes(self, monitor, adapter):
        settled = CryptoPaymentFactory(purpose=PaymentPurpose.CREDITS, amount_usd=Decimal("50.00"))
        waiting = CryptoPaymentFactory()
        statuses = {
            settled.provider_payment_id: ("finished", {"payment_status": "finished", "actually_paid": "1", "pay_amount": "1"}),
            waiting.provider_payment_id: ("waiting", {"payment_status": "waiting"}),
        }
        adapter.get_status.side_effect = lambda provider_payment_id: statuses[provider_payment_id]

        summary = monitor.run()

        assert summary.checked == 2
        assert summary.applied == 1
        assert summary.unchanged == 1
        assert summary.failed == 0
        settled.refresh_from_db()
        assert settled.status == PaymentStatus.SUCCEEDED

    def test_provider_error_goes_to_failure_subsystem(self, monitor, adapter, schedule_retry):
        payment = CryptoPaymentFactory()
        adapter.get_status.side_effect = ProviderPermanentError("bad gateway")

        summary = monitor.run()

        assert summary.failed == 1
        assert summary.failed_payment_ids == [str(payment.id)]
        record = PaymentFailureRecord.objects.get(payment=payment)
        assert record.failure_type == FailureType.MONITORING_ERROR
        assert record.attempts == 1
        assert summary.to_dict()["failed"] == 1
