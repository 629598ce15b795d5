"""
Reconciliation app configuration.

This app owns the canonical payment lifecycle:
- Provider event ingestion and deduplication
- Status normalization and regression guarding
- Checkout, renewal and credit fulfillment
- Failure retry / escalation and the refund workflow
"""

from django.apps import AppConfig


class ReconciliationConfig(AppConfig):
    """Configuration for the reconciliation application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "reconciliation"
    verbose_name = "Payment Reconciliation"

    def ready(self):
        # Registers provider event handlers.
        from reconciliation.webhooks import handlers  # noqa: F401
