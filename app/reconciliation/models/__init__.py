"""
Reconciliation domain models.

This module contains all reconciliation models:
- UnifiedPayment: Canonical payment record across providers
- PaymentEventReceipt: One row per processed provider event (idempotency)
- PaymentFailureRecord: Persisted retry state for a failed payment
- SubscriptionRenewal: Renewal-cycle lock for one billing period
- RefundRequest: User-initiated credit refund (django-fsm lifecycle)
- AdminTask: Durable queue of manual work for administrators
- CreditTransaction: Credit ledger row (defined in reconciliation.credits)
"""

from reconciliation.models.unified_payment import LINK_FIELDS, UnifiedPayment
from reconciliation.models.event_receipt import PaymentEventReceipt
from reconciliation.models.payment_failure import PaymentFailureRecord
from reconciliation.models.subscription_renewal import SubscriptionRenewal
from reconciliation.models.refund_request import OPEN_REFUND_STATES, RefundRequest
from reconciliation.models.admin_task import AdminTask
from reconciliation.credits.models import CreditTransaction

__all__ = [
    "LINK_FIELDS",
    "OPEN_REFUND_STATES",
    "AdminTask",
    "CreditTransaction",
    "PaymentEventReceipt",
    "PaymentFailureRecord",
    "RefundRequest",
    "SubscriptionRenewal",
    "UnifiedPayment",
]
