"""
Provider adapter contract and shared data types.

Every provider integration implements ProviderAdapter. The rest of the
reconciliation core only ever sees these types, never provider SDK
objects or wire formats.

Types:
    PaymentSpec: What to charge (input to create_payment)
    CreatedPayment: What the provider answered
    ProviderEvent: A verified, parsed inbound event (webhook or sync)

Usage:
    from reconciliation.adapters import get_adapter

    adapter = get_adapter(PaymentProvider.CARD)
    created = adapter.create_payment(
        PaymentSpec(
            amount=Decimal("49.99"),
            currency="usd",
            user_id="42",
            idempotency_key="create_payment:order_123:1",
        )
    )
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime


logger = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class PaymentSpec:
    """
    Parameters for starting a payment with a provider.

    Attributes:
        amount: Amount in major units of `currency`
        currency: Price currency (ISO 4217, lowercase)
        user_id: Paying user
        idempotency_key: Reused on every retry of the same creation
        order_id: Order being paid, if any
        description: Shown to the payer where the provider supports it
        pay_currency: Crypto currency to pay in (crypto only)
        customer_id: Provider customer id (card only)
        auto_renew: Save the card for off-session renewals (card only)
        metadata: String key/values attached to the provider object
    """

    amount: Decimal
    currency: str
    user_id: str
    idempotency_key: str
    order_id: str | None = None
    description: str = ""
    pay_currency: str | None = None
    customer_id: str | None = None
    auto_renew: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.amount is None or Decimal(self.amount) <= 0:
            raise ValueError("amount must be positive")
        if not self.currency:
            raise ValueError("currency is required")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")
        self.amount = Decimal(self.amount)
        self.currency = self.currency.lower()


@dataclass
class CreatedPayment:
    """
    Provider answer to create_payment.

    Attributes:
        provider_payment_id: Provider's id for the attempt
        status: Canonical status (already normalized)
        raw_status: Provider's own status string
        payload: Full provider response (audit)
        client_secret: Card client-side confirmation secret
        metadata: Correlation fields to merge into UnifiedPayment.metadata
        amount_usd: USD value, when the price currency is usd
        expires_at: When an unpaid crypto invoice expires
    """

    provider_payment_id: str
    status: str
    raw_status: str
    payload: dict[str, Any] = field(default_factory=dict)
    client_secret: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    amount_usd: Decimal | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """
    A verified provider event, ready for reconciliation.

    Attributes:
        provider: PaymentProvider value
        event_id: Provider event id, or a derived payload hash
        event_type: Provider event type (registry key for handlers)
        provider_payment_id: Payment the event is about
        raw_status: Provider status carried by the event
        metadata: Correlation fields to merge into UnifiedPayment.metadata
        payload: The provider object the event carried (used for allocation)
    """

    provider: str
    event_id: str
    event_type: str
    provider_payment_id: str
    raw_status: str
    metadata: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form for Celery task arguments."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderEvent:
        return cls(
            provider=data["provider"],
            event_id=data["event_id"],
            event_type=data.get("event_type", ""),
            provider_payment_id=str(data["provider_payment_id"]),
            raw_status=data.get("raw_status", ""),
            metadata=dict(data.get("metadata") or {}),
            payload=dict(data.get("payload") or {}),
        )

    def with_event_id(self, event_id: str) -> ProviderEvent:
        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=self.event_type,
            provider_payment_id=self.provider_payment_id,
            raw_status=self.raw_status,
            metadata=self.metadata,
            payload=self.payload,
        )


# =============================================================================
# Adapter Contract
# =============================================================================


class ProviderAdapter(ABC):
    """
    Contract every payment provider integration implements.

    Adapters translate SDK / HTTP failures into ProviderError subclasses:
    ProviderTransientError for anything worth retrying, ProviderPermanentError
    otherwise. Callers wrap calls in reconciliation.retry.retry_call.
    """

    provider: str = ""

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @abstractmethod
    def create_payment(self, spec: PaymentSpec) -> CreatedPayment:
        """Start a payment attempt."""

    @abstractmethod
    def get_status(self, provider_payment_id: str) -> tuple[str, dict[str, Any]]:
        """
        Fetch the provider's current view of a payment.

        Returns:
            (raw_status, payload)
        """

    @abstractmethod
    def cancel(self, provider_payment_id: str) -> str:
        """Cancel an unfinished attempt. Returns the new raw status."""

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: str) -> ProviderEvent:
        """
        Verify an inbound webhook and parse it.

        Raises:
            WebhookVerificationError: Bad signature or unparseable body
        """

    @abstractmethod
    def event_metadata(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Correlation fields from a provider payment object."""

    def supports_currency(self, currency: str) -> bool:
        return True


__all__ = [
    "CreatedPayment",
    "PaymentSpec",
    "ProviderAdapter",
    "ProviderEvent",
]
