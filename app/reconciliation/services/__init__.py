"""
Reconciliation services.

This module provides:
- ReconciliationOrchestrator: Applies provider events to canonical payment state
- PaymentService: Starts provider payments
- PaymentFailureService: Classifies failures, schedules retries, escalates
- RenewalService: Settles subscription renewal payments
- RefundService: Credit refund request / review / processing
- PaymentMonitoringService: Polls open crypto payments

Usage:
    from reconciliation.services import ReconciliationOrchestrator

    outcome = ReconciliationOrchestrator().reconcile(event)

    # Start a payment
    from reconciliation.services import CreatePaymentParams, PaymentService

    result = PaymentService().create_payment(
        CreatePaymentParams(
            user_id="42",
            provider=PaymentProvider.CARD,
            amount=Decimal("49.99"),
            order_id=str(order.id),
        )
    )

    # Approve a refund
    from reconciliation.services import RefundService

    RefundService(Collaborators.default()).approve(refund_id, admin_id="7")
"""

from reconciliation.services.failure_service import (
    FAILURE_MESSAGES,
    HARD_DECLINE_CODES,
    PaymentFailureService,
    classify_decline,
)
from reconciliation.services.renewal_service import (
    RenewalFailure,
    RenewalService,
    RenewalSuccess,
    next_renewal_attempt,
)
from reconciliation.services.orchestrator import ReconciliationOrchestrator
from reconciliation.services.payment_service import (
    CreatePaymentParams,
    InitiatedPayment,
    PaymentService,
)
from reconciliation.services.refund_service import RefundService, request_provider_refund
from reconciliation.services.monitoring_service import (
    MonitorSummary,
    PaymentMonitoringService,
)

__all__ = [
    "FAILURE_MESSAGES",
    "HARD_DECLINE_CODES",
    "CreatePaymentParams",
    "InitiatedPayment",
    "MonitorSummary",
    "PaymentFailureService",
    "PaymentMonitoringService",
    "PaymentService",
    "ReconciliationOrchestrator",
    "RefundService",
    "RenewalFailure",
    "RenewalService",
    "RenewalSuccess",
    "classify_decline",
    "next_renewal_attempt",
    "request_provider_refund",
]
