"""
Payment provider adapters.

All provider API calls go through these adapters so error translation,
timeouts, idempotency and logging stay consistent.

Usage:
    from reconciliation.adapters import get_adapter

    adapter = get_adapter(payment.provider)
    raw_status, payload = adapter.get_status(payment.provider_payment_id)
"""

from reconciliation.adapters.base import (
    CreatedPayment,
    PaymentSpec,
    ProviderAdapter,
    ProviderEvent,
)
from reconciliation.adapters.nowpayments_adapter import NowPaymentsAdapter
from reconciliation.adapters.stripe_adapter import StripeCardAdapter
from reconciliation.exceptions import ProviderNotConfiguredError
from reconciliation.state_machines import PaymentProvider

ADAPTERS: dict[str, type[ProviderAdapter]] = {
    PaymentProvider.CARD: StripeCardAdapter,
    PaymentProvider.CRYPTO: NowPaymentsAdapter,
}


def get_adapter(provider: str) -> ProviderAdapter:
    """
    Build the adapter for a provider kind.

    Raises:
        ProviderNotConfiguredError: Unknown provider
    """
    adapter_class = ADAPTERS.get(provider)
    if adapter_class is None:
        raise ProviderNotConfiguredError(
            f"No adapter for provider '{provider}'",
            provider=provider,
        )
    return adapter_class()


__all__ = [
    "ADAPTERS",
    "CreatedPayment",
    "NowPaymentsAdapter",
    "PaymentSpec",
    "ProviderAdapter",
    "ProviderEvent",
    "StripeCardAdapter",
    "get_adapter",
]
