"""
Credit ledger and credit allocation services.

CreditLedger owns every write to CreditTransaction: balances are computed
under a per-user transaction-scoped advisory lock, so two writers for the
same user can never read the same balance_before.

CreditAllocationService turns a settled payment into credits exactly once.
It keeps two independent duplicate guards: a cache marker and the
paymentCompleted flag on the purchase row, re-checked after the lock is
taken. Either one short-circuits with the previously recorded result.

Usage:
    from reconciliation.credits.services import CreditAllocationService

    service = CreditAllocationService(users=directory, notifier=notifier)
    result = service.allocate(
        user_id="42",
        payment_id=str(payment.id),
        usd_amount=Decimal("50.00"),
        provider_payload={"payment_status": "finished", "actually_paid": "0.0049", "pay_amount": "0.005"},
    )

    if result.success:
        print(result.data.balance_after, result.data.duplicate)
    else:
        print(result.error_code)  # e.g. INSUFFICIENT_PAYMENT
"""

from __future__ import annotations

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.cache import caches
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.services import BaseService, ServiceResult

from reconciliation.credits.exceptions import InsufficientCredits, InvalidCreditAmount
from reconciliation.credits.models import PAYMENT_COMPLETED_KEY, CreditTransaction
from reconciliation.credits.types import (
    AllocationResult,
    PaidAmount,
    PendingAllocation,
    to_credits,
)
from reconciliation.locks import advisory_xact_lock, with_lock
from reconciliation.models import UnifiedPayment
from reconciliation.state_machines import (
    CreditTransactionStatus,
    CreditTransactionType,
    PaymentPurpose,
    PaymentStatus,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any

    from django.core.cache.backends.base import BaseCache

    from reconciliation.protocols import Notifier, UserDirectory


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

BALANCE_CACHE_KEY = "credit:balance:{user_id}"
BALANCE_CACHE_TTL = 300

COMPLETED_CACHE_KEY = "credit_allocation:completed:{payment_id}"
COMPLETED_CACHE_TTL = 60 * 60 * 24

DEFAULT_MAX_ALLOCATION = Decimal("10000")
DEFAULT_PAYMENT_TOLERANCE = Decimal("0.95")

# Provider payment statuses that mean the money has settled.
SETTLED_PROVIDER_STATUSES = frozenset(["finished", "succeeded", "settled"])

ALLOCATION_RATE = Decimal("1.00")


def _decimal_or_none(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def resolve_paid_amount(expected_usd: Decimal, payload: Mapping[str, Any] | None) -> PaidAmount:
    """
    Work out how much USD was actually received.

    Order of preference:
        1. outcome_amount when outcome_currency is usd
        2. actually_paid / pay_amount x price_amount (price_amount
           defaults to the expected USD amount)
        3. amount_received (card, smallest unit) when currency is usd
        4. the expected amount itself
    """
    payload = payload or {}

    outcome_amount = _decimal_or_none(payload.get("outcome_amount"))
    outcome_currency = str(payload.get("outcome_currency") or "").lower()
    if outcome_amount and outcome_amount > 0 and outcome_currency == "usd":
        return PaidAmount(
            paid_usd=outcome_amount,
            paid_ratio=outcome_amount / expected_usd,
            source="outcome_amount",
        )

    actually_paid = _decimal_or_none(payload.get("actually_paid"))
    pay_amount = _decimal_or_none(payload.get("pay_amount"))
    if actually_paid is not None and pay_amount and pay_amount > 0:
        price_amount = _decimal_or_none(payload.get("price_amount")) or expected_usd
        ratio = actually_paid / pay_amount
        return PaidAmount(
            paid_usd=price_amount * ratio,
            paid_ratio=ratio,
            source="actually_paid_ratio",
        )

    amount_received = _decimal_or_none(payload.get("amount_received"))
    card_currency = str(payload.get("currency") or "").lower()
    if amount_received is not None and card_currency == "usd":
        paid = amount_received / 100
        return PaidAmount(paid_usd=paid, paid_ratio=paid / expected_usd, source="amount_received")

    return PaidAmount(paid_usd=expected_usd, paid_ratio=None, source="expected")


# =============================================================================
# Credit Ledger
# =============================================================================


class CreditLedger(BaseService):
    """
    All writes to CreditTransaction go through this class.

    Key features:
    - Per-user transaction-scoped advisory lock around balance reads
    - balance_after = balance_before + amount on every row
    - Balance cache invalidated immediately and again on commit
    """

    def __init__(self, cache_backend: BaseCache | None = None) -> None:
        self.cache = cache_backend or caches["default"]

    # =========================================================================
    # Balance
    # =========================================================================

    def get_balance(self, user_id: str) -> Decimal:
        """Current balance, served from cache when available."""
        key = BALANCE_CACHE_KEY.format(user_id=user_id)
        cached = self.cache.get(key)
        if cached is not None:
            return Decimal(str(cached))

        balance = CreditTransaction.objects.balance_for(user_id)
        self.cache.set(key, str(balance), BALANCE_CACHE_TTL)
        return balance

    def invalidate_balance(self, user_id: str) -> None:
        key = BALANCE_CACHE_KEY.format(user_id=user_id)
        self.cache.delete(key)
        transaction.on_commit(lambda: self.cache.delete(key))

    # =========================================================================
    # Writes
    # =========================================================================

    def create_pending_transaction(
        self,
        user_id: str,
        payment_id: str,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """
        Create the zero-amount purchase row for a payment being initiated.

        Idempotent: returns the existing row when one is already there.
        """
        existing = CreditTransaction.objects.filter(
            payment_id=payment_id,
            transaction_type=CreditTransactionType.PURCHASE,
        ).first()
        if existing is not None:
            return existing

        try:
            with transaction.atomic():
                return CreditTransaction.objects.create(
                    user_id=user_id,
                    payment_id=payment_id,
                    transaction_type=CreditTransactionType.PURCHASE,
                    status=CreditTransactionStatus.PENDING,
                    description=description,
                    metadata={PAYMENT_COMPLETED_KEY: False, **(metadata or {})},
                    created_by="payment_initiation",
                )
        except IntegrityError:
            return CreditTransaction.objects.get(
                payment_id=payment_id,
                transaction_type=CreditTransactionType.PURCHASE,
            )

    def record_entry(
        self,
        user_id: str,
        transaction_type: str,
        amount: Decimal,
        *,
        payment_id: str | None = None,
        refund_id: str | None = None,
        related_transaction_id: str | None = None,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        created_by: str = "",
        allow_negative: bool = False,
    ) -> CreditTransaction:
        """
        Write one completed ledger row.

        Args:
            amount: Signed credits (negative debits the user)
            allow_negative: Permit the balance to go below zero

        Raises:
            InvalidCreditAmount: If amount is zero
            InsufficientCredits: If the balance would go negative
        """
        amount = to_credits(amount)
        if amount == 0:
            raise InvalidCreditAmount(
                "Ledger entries must move a non-zero amount",
                details={"user_id": user_id, "transaction_type": transaction_type},
            )

        with transaction.atomic():
            advisory_xact_lock(f"credits:{user_id}")
            balance_before = CreditTransaction.objects.balance_for(user_id)
            balance_after = balance_before + amount

            if balance_after < 0 and not allow_negative:
                raise InsufficientCredits(user_id, required=-amount, available=balance_before)

            entry = CreditTransaction.objects.create(
                user_id=user_id,
                transaction_type=transaction_type,
                status=CreditTransactionStatus.COMPLETED,
                amount=amount,
                balance_before=balance_before,
                balance_after=balance_after,
                payment_id=payment_id,
                refund_id=refund_id,
                related_transaction_id=related_transaction_id,
                description=description,
                metadata=metadata or {},
                created_by=created_by,
            )
            self.invalidate_balance(user_id)

        self.get_logger().info(
            "Credit ledger entry recorded",
            extra={
                "user_id": user_id,
                "transaction_id": str(entry.id),
                "transaction_type": transaction_type,
                "amount": str(amount),
                "balance_after": str(balance_after),
            },
        )
        return entry


# =============================================================================
# Credit Allocation
# =============================================================================


class CreditAllocationService(BaseService):
    """
    Exactly-once crediting of a user balance for a settled payment.

    Algorithm:
        1. Duplicate check (cache marker, then paymentCompleted row flag)
        2. Validate user, amount bounds, provider settlement, paid tolerance
        3. In one transaction under credits:{user_id}: complete the pending
           purchase row in place and link it to the payment
        4. On commit: invalidate balance cache, write marker, notify

    Expected failures come back as failed ServiceResults with one of:
        INVALID_AMOUNT, AMOUNT_EXCEEDS_LIMIT, USER_NOT_FOUND,
        PAYMENT_NOT_SETTLED, INSUFFICIENT_PAYMENT, PAYMENT_USER_MISMATCH,
        PAYMENT_NOT_FOUND
    Unexpected database errors propagate so the caller's transaction rolls
    back and the unit of work is retried.
    """

    def __init__(
        self,
        users: UserDirectory,
        notifier: Notifier,
        ledger: CreditLedger | None = None,
    ) -> None:
        self.users = users
        self.notifier = notifier
        self.ledger = ledger or CreditLedger()

    @property
    def cache(self) -> BaseCache:
        return self.ledger.cache

    @property
    def max_allocation(self) -> Decimal:
        return Decimal(str(getattr(settings, "CREDIT_MAX_ALLOCATION", DEFAULT_MAX_ALLOCATION)))

    @property
    def tolerance(self) -> Decimal:
        return Decimal(str(getattr(settings, "CREDIT_PAYMENT_TOLERANCE", DEFAULT_PAYMENT_TOLERANCE)))

    def get_balance(self, user_id: str) -> Decimal:
        return self.ledger.get_balance(user_id)

    def create_pending_transaction(self, user_id: str, payment_id: str, **kwargs) -> CreditTransaction:
        return self.ledger.create_pending_transaction(user_id, payment_id, **kwargs)

    # =========================================================================
    # Automatic Allocation
    # =========================================================================

    def allocate(
        self,
        user_id: str,
        payment_id: str,
        usd_amount: Decimal | str | None,
        provider_payload: Mapping[str, Any] | None = None,
    ) -> ServiceResult[AllocationResult]:
        """
        Credit a user for a settled payment.

        Args:
            user_id: User to credit
            payment_id: UnifiedPayment id
            usd_amount: Expected USD value of the payment
            provider_payload: Raw provider status payload (may be None)

        Returns:
            ServiceResult with AllocationResult; duplicate=True on replay
        """
        started = time.monotonic()
        log_context = {"user_id": user_id, "payment_id": str(payment_id)}
        self.get_logger().info("Starting credit allocation", extra=log_context)

        duplicate = self._find_completed(payment_id)
        if duplicate is not None:
            self.get_logger().info(
                "Duplicate credit allocation prevented",
                extra={**log_context, "transaction_id": duplicate.transaction_id},
            )
            return ServiceResult.success(duplicate)

        expected = _decimal_or_none(usd_amount)
        if expected is None or expected <= 0:
            return ServiceResult.failure(
                "Invalid requested USD amount for allocation",
                error_code="INVALID_AMOUNT",
            )
        credit_amount = to_credits(expected * ALLOCATION_RATE)

        invalid = self._validate(user_id, credit_amount)
        if invalid is not None:
            return invalid

        payload = dict(provider_payload or {})
        provider_status = payload.get("payment_status") or payload.get("status")
        if provider_status and str(provider_status).lower() not in SETTLED_PROVIDER_STATUSES:
            return ServiceResult.failure(
                f"Invalid payment status for allocation: {provider_status}",
                error_code="PAYMENT_NOT_SETTLED",
            )

        paid = resolve_paid_amount(expected, payload)
        if paid.paid_usd < expected * self.tolerance:
            self.get_logger().warning(
                "Payment below allocation tolerance",
                extra={
                    **log_context,
                    "expected_usd": str(expected),
                    "paid_usd": str(paid.paid_usd),
                    "source": paid.source,
                },
            )
            return ServiceResult.failure(
                "Payment amount below required invoice amount",
                error_code="INSUFFICIENT_PAYMENT",
            )

        metadata = {
            "requestedUsd": str(expected),
            "creditAllocationRate": str(ALLOCATION_RATE),
            "blockchainHash": payload.get("payin_hash"),
            "actuallyPaid": payload.get("actually_paid"),
            **paid.to_metadata(),
        }
        result = self._allocate_atomic(
            user_id=user_id,
            payment_id=payment_id,
            credit_amount=credit_amount,
            metadata=metadata,
            description=f"Payment completed - {credit_amount} credits",
            created_by="credit_allocation",
        )

        if result.success and not result.data.duplicate:
            self.get_logger().info(
                "Credits allocated",
                extra={
                    **log_context,
                    "transaction_id": result.data.transaction_id,
                    "credit_amount": str(credit_amount),
                    "balance_after": str(result.data.balance_after),
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )
        return result

    # =========================================================================
    # Manual Allocation (admin)
    # =========================================================================

    def manual_allocate(
        self,
        admin_id: str,
        user_id: str,
        payment_id: str,
        credit_amount: Decimal | str,
        reason: str,
    ) -> ServiceResult[AllocationResult]:
        """
        Admin override: credit a payment the automatic path rejected.

        Same invariants as allocate(). Also moves the payment to SUCCEEDED
        with status_reason manual_approved, under the payment's lock.
        """
        self.get_logger().info(
            "Manual credit allocation initiated",
            extra={
                "admin_id": admin_id,
                "user_id": user_id,
                "payment_id": str(payment_id),
                "credit_amount": str(credit_amount),
                "reason": reason,
            },
        )

        amount = _decimal_or_none(credit_amount)
        if amount is None or amount <= 0:
            return ServiceResult.failure("Invalid credit amount", error_code="INVALID_AMOUNT")
        amount = to_credits(amount)

        duplicate = self._find_completed(payment_id)
        if duplicate is not None:
            return ServiceResult.success(duplicate)

        invalid = self._validate(user_id, amount)
        if invalid is not None:
            return invalid

        payment = UnifiedPayment.objects.filter(id=payment_id).first()
        if payment is None:
            return ServiceResult.failure(
                f"Payment {payment_id} not found",
                error_code="PAYMENT_NOT_FOUND",
            )
        if payment.user_id != user_id:
            return ServiceResult.failure(
                "Payment does not belong to specified user",
                error_code="PAYMENT_USER_MISMATCH",
            )

        def allocate_locked() -> ServiceResult[AllocationResult]:
            with transaction.atomic():
                result = self._allocate_atomic(
                    user_id=user_id,
                    payment_id=payment_id,
                    credit_amount=amount,
                    metadata={
                        "manualAllocation": True,
                        "manualReason": reason,
                        "adminUserId": admin_id,
                        "paidUsd": str(amount),
                        "allocationSource": "manual",
                        "creditAllocationRate": str(ALLOCATION_RATE),
                    },
                    description=f"Manual allocation for payment {payment_id}: {reason}",
                    created_by=f"admin:{admin_id}",
                )
                if result.success and not result.data.duplicate:
                    UnifiedPayment.objects.filter(id=payment_id).update(
                        status=PaymentStatus.SUCCEEDED,
                        status_reason="manual_approved",
                        updated_at=timezone.now(),
                    )
                return result

        return with_lock(payment.lock_key, allocate_locked)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_pending_allocations(self, limit: int = 100) -> list[PendingAllocation]:
        """Settled credit payments whose purchase row is still pending."""
        settled_credit_payments = UnifiedPayment.objects.settled().filter(
            purpose=PaymentPurpose.CREDITS,
        )
        payments = {str(p.id): p for p in settled_credit_payments}
        rows = CreditTransaction.objects.filter(
            transaction_type=CreditTransactionType.PURCHASE,
            status=CreditTransactionStatus.PENDING,
            payment_id__in=list(payments),
        ).order_by("created_at")[:limit]

        return [
            PendingAllocation(
                payment_id=str(row.payment_id),
                user_id=row.user_id,
                transaction_id=str(row.id),
                amount_usd=payments[str(row.payment_id)].amount_usd,
            )
            for row in rows
        ]

    # =========================================================================
    # Internals
    # =========================================================================

    def _validate(self, user_id: str, credit_amount: Decimal) -> ServiceResult | None:
        if credit_amount <= 0:
            return ServiceResult.failure("Invalid credit amount", error_code="INVALID_AMOUNT")
        if credit_amount > self.max_allocation:
            return ServiceResult.failure(
                "Credit amount exceeds maximum limit",
                error_code="AMOUNT_EXCEEDS_LIMIT",
            )
        if not self.users.exists(user_id):
            return ServiceResult.failure("User not found", error_code="USER_NOT_FOUND")
        return None

    def _find_completed(self, payment_id: str) -> AllocationResult | None:
        cached = self.cache.get(COMPLETED_CACHE_KEY.format(payment_id=payment_id))
        if cached:
            return AllocationResult.from_cache(cached)

        row = (
            CreditTransaction.objects.allocated()
            .filter(payment_id=payment_id, transaction_type=CreditTransactionType.PURCHASE)
            .first()
        )
        if row is None:
            return None

        result = AllocationResult(
            transaction_id=str(row.id),
            credit_amount=row.amount,
            balance_after=row.balance_after,
            duplicate=True,
        )
        self.cache.set(
            COMPLETED_CACHE_KEY.format(payment_id=payment_id),
            result.to_cache(),
            COMPLETED_CACHE_TTL,
        )
        return result

    def _allocate_atomic(
        self,
        user_id: str,
        payment_id: str,
        credit_amount: Decimal,
        metadata: dict[str, Any],
        description: str,
        created_by: str,
    ) -> ServiceResult[AllocationResult]:
        with transaction.atomic():
            advisory_xact_lock(f"credits:{user_id}")

            row = (
                CreditTransaction.objects.select_for_update()
                .filter(payment_id=payment_id, transaction_type=CreditTransactionType.PURCHASE)
                .first()
            )
            if row is None:
                row = self.ledger.create_pending_transaction(user_id, payment_id)

            if row.payment_completed:
                # A concurrent caller committed first.
                return ServiceResult.success(
                    AllocationResult(
                        transaction_id=str(row.id),
                        credit_amount=row.amount,
                        balance_after=row.balance_after,
                        duplicate=True,
                    )
                )

            if row.user_id != user_id:
                return ServiceResult.failure(
                    "Payment does not belong to specified user",
                    error_code="PAYMENT_USER_MISMATCH",
                )

            balance_before = CreditTransaction.objects.balance_for(user_id)
            balance_after = balance_before + credit_amount

            row.amount = credit_amount
            row.balance_before = balance_before
            row.balance_after = balance_after
            row.status = CreditTransactionStatus.COMPLETED
            row.description = description
            row.created_by = row.created_by or created_by
            row.merge_metadata(
                {
                    **metadata,
                    PAYMENT_COMPLETED_KEY: True,
                    "completedAt": timezone.now().isoformat(),
                }
            )
            row.save()

            UnifiedPayment.objects.filter(
                id=payment_id,
                credit_transaction_id__isnull=True,
            ).update(credit_transaction_id=row.id, updated_at=timezone.now())

            result = AllocationResult(
                transaction_id=str(row.id),
                credit_amount=credit_amount,
                balance_after=balance_after,
            )

            self.ledger.invalidate_balance(user_id)
            transaction.on_commit(lambda: self._after_commit(user_id, payment_id, result))

        return ServiceResult.success(result)

    def _after_commit(self, user_id: str, payment_id: str, result: AllocationResult) -> None:
        self.cache.set(
            COMPLETED_CACHE_KEY.format(payment_id=payment_id),
            result.to_cache(),
            COMPLETED_CACHE_TTL,
        )
        self.notifier.notify_user(
            user_id,
            "credits_allocated",
            "Credits added",
            f"{result.credit_amount} credits were added to your balance.",
            {
                "payment_id": str(payment_id),
                "transaction_id": result.transaction_id,
                "credit_amount": str(result.credit_amount),
                "balance_after": str(result.balance_after),
            },
        )


__all__ = [
    "CreditAllocationService",
    "CreditLedger",
    "resolve_paid_amount",
]
