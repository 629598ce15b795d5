"""
Payment initiation.

Starts a payment attempt with a provider and records the canonical
UnifiedPayment for it. Credit top-ups also get their zero-amount pending
purchase row here, so the allocation later completes that row in place.

Usage:
    from reconciliation.services import CreatePaymentParams, PaymentService

    result = PaymentService().create_payment(
        CreatePaymentParams(
            user_id="42",
            provider=PaymentProvider.CRYPTO,
            amount=Decimal("50.00"),
            currency="usd",
            pay_currency="btc",
            purpose=PaymentPurpose.CREDITS,
        )
    )
    if result.success:
        print(result.data.payment.metadata["pay_address"])
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction

from core.services import BaseService, ServiceResult

from reconciliation.adapters import get_adapter
from reconciliation.adapters.base import PaymentSpec
from reconciliation.credits import CreditLedger
from reconciliation.exceptions import ProviderError
from reconciliation.metadata import PaymentMetadata
from reconciliation.models import UnifiedPayment
from reconciliation.retry import retry_call
from reconciliation.state_machines import PaymentProvider, PaymentPurpose

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import date
    from typing import Any

    from reconciliation.adapters.base import CreatedPayment, ProviderAdapter


logger = logging.getLogger(__name__)


# =============================================================================
# Parameter Types
# =============================================================================


@dataclass
class CreatePaymentParams:
    """
    Parameters for starting a payment.

    Attributes:
        user_id: Paying user
        provider: PaymentProvider value
        amount: Amount in major units of `currency`
        currency: Price currency (lowercase ISO 4217)
        purpose: Checkout or credit top-up
        order_id: Order being paid (checkout)
        pay_currency: Crypto currency to pay in (crypto only)
        amount_usd: USD value for credit allocation (defaults to amount for usd)
        description: Shown to the payer
        customer_id: Provider customer id (card only)
        auto_renew: Save the card for renewals (card only)
        subscription_id / cycle_end_date: Set for renewal charges
        price_cents / base_price_cents / discount_percent / term_months:
            Commercial snapshot stored on the payment
        idempotency_key: Reused across retries of the same request
        metadata: Extra provider metadata
    """

    user_id: str
    provider: str
    amount: Decimal
    currency: str = "usd"
    purpose: str = PaymentPurpose.CHECKOUT
    order_id: str | None = None
    pay_currency: str | None = None
    amount_usd: Decimal | None = None
    description: str = ""
    customer_id: str | None = None
    auto_renew: bool = False
    subscription_id: str | None = None
    cycle_end_date: date | None = None
    price_cents: int | None = None
    base_price_cents: int | None = None
    discount_percent: Decimal | None = None
    term_months: int | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] | None = None

    @property
    def is_renewal(self) -> bool:
        return bool(self.subscription_id and self.cycle_end_date)


@dataclass
class InitiatedPayment:
    payment: UnifiedPayment
    client_secret: str | None = None
    created: bool = True


class PaymentService(BaseService):
    """
    Starts provider payments and stores them as UnifiedPayments.

    Args:
        adapter_factory: provider -> ProviderAdapter
        ledger: Credit ledger (pending purchase rows for top-ups)
    """

    def __init__(
        self,
        adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
        ledger: CreditLedger | None = None,
    ) -> None:
        self.adapter_factory = adapter_factory
        self.ledger = ledger or CreditLedger()

    def create_payment(self, params: CreatePaymentParams) -> ServiceResult[InitiatedPayment]:
        """
        Start a payment attempt.

        Returns:
            ServiceResult with InitiatedPayment, or failure with
            INVALID_AMOUNT, INVALID_PROVIDER, UNSUPPORTED_CURRENCY,
            ORDER_REQUIRED or the provider's error code
        """
        log_context = {
            "user_id": params.user_id,
            "provider": params.provider,
            "purpose": params.purpose,
            "order_id": params.order_id,
        }

        invalid = self._validate(params)
        if invalid is not None:
            logger.warning(
                "Payment initiation rejected",
                extra={**log_context, "error_code": invalid.error_code},
            )
            return invalid

        adapter = self.adapter_factory(params.provider)
        if not adapter.supports_currency(params.pay_currency or params.currency):
            return ServiceResult.failure(
                f"Currency {params.pay_currency or params.currency} is not supported",
                error_code="UNSUPPORTED_CURRENCY",
            )

        idempotency_key = params.idempotency_key or (
            f"create_payment:{params.order_id or params.user_id}:{uuid.uuid4().hex}"
        )
        spec = PaymentSpec(
            amount=Decimal(params.amount),
            currency=params.currency,
            user_id=params.user_id,
            idempotency_key=idempotency_key,
            order_id=params.order_id,
            description=params.description,
            pay_currency=params.pay_currency,
            customer_id=params.customer_id,
            auto_renew=params.auto_renew,
            metadata={**self._correlation_metadata(params), **(params.metadata or {})},
        )

        try:
            created = retry_call(adapter.create_payment, spec)
        except ProviderError as e:
            logger.warning(
                "Provider rejected payment creation",
                extra={**log_context, "error_code": e.error_code, "error": str(e)},
            )
            return ServiceResult.from_exception(e)

        return ServiceResult.success(self._store(params, created))

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate(self, params: CreatePaymentParams) -> ServiceResult | None:
        try:
            amount = Decimal(str(params.amount))
        except (InvalidOperation, ValueError):
            amount = None
        if amount is None or amount <= 0:
            return ServiceResult.failure("Amount must be positive", error_code="INVALID_AMOUNT")
        if params.provider not in PaymentProvider.values:
            return ServiceResult.failure(
                f"Unknown provider {params.provider}",
                error_code="INVALID_PROVIDER",
            )
        if params.purpose == PaymentPurpose.CHECKOUT and not (params.order_id or params.is_renewal):
            return ServiceResult.failure(
                "Checkout payments require an order",
                error_code="ORDER_REQUIRED",
            )
        return None

    @staticmethod
    def _correlation_metadata(params: CreatePaymentParams) -> dict[str, Any]:
        metadata: dict[str, Any] = {"purpose": params.purpose}
        if params.is_renewal:
            metadata.update(
                {
                    "renewal": True,
                    "subscription_id": str(params.subscription_id),
                    "cycle_end_date": params.cycle_end_date.isoformat(),
                }
            )
        return metadata

    def _store(self, params: CreatePaymentParams, created: CreatedPayment) -> InitiatedPayment:
        metadata = PaymentMetadata.from_dict(
            {
                **self._correlation_metadata(params),
                **created.metadata,
            }
        ).to_dict()

        amount_usd = params.amount_usd or created.amount_usd
        try:
            with transaction.atomic():
                payment = UnifiedPayment.objects.create(
                    provider=params.provider,
                    provider_payment_id=created.provider_payment_id,
                    user_id=params.user_id,
                    status=created.status,
                    provider_status=(created.raw_status or "")[:50],
                    purpose=params.purpose,
                    order_id=params.order_id,
                    subscription_id=params.subscription_id if params.is_renewal else None,
                    amount=Decimal(params.amount),
                    currency=params.currency.lower(),
                    amount_usd=amount_usd,
                    price_cents=params.price_cents,
                    base_price_cents=params.base_price_cents,
                    discount_percent=params.discount_percent,
                    term_months=params.term_months,
                    auto_renew=params.auto_renew,
                    expires_at=created.expires_at,
                    metadata=metadata,
                )

                if params.purpose == PaymentPurpose.CREDITS:
                    row = self.ledger.create_pending_transaction(
                        params.user_id,
                        str(payment.id),
                        description=f"Credit purchase - {params.amount} {params.currency.upper()}",
                        metadata={"requestedUsd": str(amount_usd) if amount_usd is not None else None},
                    )
                    changed = payment.link(credit_transaction_id=row.id)
                    payment.save(update_fields=[*changed, "updated_at"])
        except IntegrityError:
            # The provider answered an idempotent replay with a payment we already stored.
            payment = UnifiedPayment.objects.get(
                provider=params.provider,
                provider_payment_id=created.provider_payment_id,
            )
            logger.info(
                "Payment already recorded",
                extra={"payment_id": str(payment.id), "provider_payment_id": created.provider_payment_id},
            )
            return InitiatedPayment(payment=payment, client_secret=created.client_secret, created=False)

        logger.info(
            "Payment initiated",
            extra={
                "payment_id": str(payment.id),
                "provider": payment.provider,
                "provider_payment_id": payment.provider_payment_id,
                "user_id": payment.user_id,
                "amount": str(payment.amount),
                "currency": payment.currency,
                "status": payment.status,
            },
        )
        return InitiatedPayment(payment=payment, client_secret=created.client_secret)


__all__ = ["CreatePaymentParams", "InitiatedPayment", "PaymentService"]
