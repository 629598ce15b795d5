"""
Provider webhook handling.

Callbacks are verified by the provider adapter, queued as Celery tasks and
dispatched by (provider, event_type) to handlers that reconcile them.

Usage:
    from reconciliation.webhooks import receive_webhook

    result = receive_webhook(PaymentProvider.CRYPTO, body, headers["x-nowpayments-sig"])
"""

from reconciliation.webhooks.handlers import dispatch, register_handler
from reconciliation.webhooks.intake import receive_webhook

__all__ = [
    "dispatch",
    "receive_webhook",
    "register_handler",
]
