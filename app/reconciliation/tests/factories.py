"""
Factory Boy factories for reconciliation test data.

Usage:
    from reconciliation.tests.factories import UnifiedPaymentFactory

    # Card checkout payment for $49.99
    payment = UnifiedPaymentFactory(order_id=order.id)

    # Crypto credit top-up
    payment = CryptoPaymentFactory(purpose=PaymentPurpose.CREDITS, amount_usd=Decimal("50.00"))
"""

import uuid
from datetime import date
from decimal import Decimal

import factory

from reconciliation.models import (
    AdminTask,
    CreditTransaction,
    PaymentFailureRecord,
    RefundRequest,
    SubscriptionRenewal,
    UnifiedPayment,
)
from reconciliation.state_machines import (
    AdminTaskType,
    CreditTransactionStatus,
    CreditTransactionType,
    FailureType,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    RefundReason,
    RenewalStatus,
)


class UserFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating auth User instances.

    Reconciliation refers to users by id only; tests pass str(user.pk).
    """

    class Meta:
        model = "auth.User"
        skip_postgeneration_save = True

    username = factory.Sequence(lambda n: f"payer{n}")
    email = factory.Sequence(lambda n: f"payer{n}@example.com")
    password = factory.PostGenerationMethodCall("set_password", "testpass123")
    is_active = True


class UnifiedPaymentFactory(factory.django.DjangoModelFactory):
    """
    Factory for creating UnifiedPayment instances.

    Default creates a PENDING card checkout payment for $49.99 USD.
    """

    class Meta:
        model = UnifiedPayment
        skip_postgeneration_save = True

    provider = PaymentProvider.CARD
    provider_payment_id = factory.Sequence(lambda n: f"pi_test_{n}_{uuid.uuid4().hex[:8]}")
    user_id = factory.Sequence(lambda n: str(5000 + n))
    status = PaymentStatus.PENDING
    purpose = PaymentPurpose.CHECKOUT
    amount = Decimal("49.99")
    currency = "usd"
    metadata = factory.LazyFunction(dict)


class CryptoPaymentFactory(UnifiedPaymentFactory):
    """Crypto invoice awaiting coins."""

    provider = PaymentProvider.CRYPTO
    provider_payment_id = factory.Sequence(lambda n: str(4_000_000 + n))
    status = PaymentStatus.PROCESSING
    provider_status = "waiting"
    amount = Decimal("50.00")
    amount_usd = Decimal("50.00")


class CreditTransactionFactory(factory.django.DjangoModelFactory):
    """
    Factory for completed ledger rows.

    Default is an admin adjustment of 100 credits on an empty balance.
    """

    class Meta:
        model = CreditTransaction
        skip_postgeneration_save = True

    user_id = factory.Sequence(lambda n: str(6000 + n))
    transaction_type = CreditTransactionType.ADMIN_ADJUSTMENT
    status = CreditTransactionStatus.COMPLETED
    amount = Decimal("100.00")
    balance_before = Decimal("0.00")
    balance_after = factory.LazyAttribute(lambda o: o.balance_before + o.amount)
    created_by = "test"


class PaymentFailureRecordFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = PaymentFailureRecord
        skip_postgeneration_save = True

    payment = factory.SubFactory(UnifiedPaymentFactory)
    failure_type = FailureType.NETWORK_ERROR
    attempts = 0


class SubscriptionRenewalFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = SubscriptionRenewal
        skip_postgeneration_save = True

    subscription_id = factory.LazyFunction(uuid.uuid4)
    cycle_end_date = date(2026, 3, 31)
    status = RenewalStatus.PROCESSING


class RefundRequestFactory(factory.django.DjangoModelFactory):
    """Default creates a PENDING refund of 25 credits."""

    class Meta:
        model = RefundRequest
        skip_postgeneration_save = True

    payment = factory.SubFactory(
        UnifiedPaymentFactory,
        status=PaymentStatus.SUCCEEDED,
        purpose=PaymentPurpose.CREDITS,
    )
    user_id = factory.LazyAttribute(lambda o: o.payment.user_id)
    amount = Decimal("25.00")
    reason = RefundReason.USER_REQUEST


class AdminTaskFactory(factory.django.DjangoModelFactory):
    class Meta:
        model = AdminTask
        skip_postgeneration_save = True

    task_type = AdminTaskType.MANUAL_FULFILLMENT
    title = factory.Sequence(lambda n: f"Admin task {n}")
