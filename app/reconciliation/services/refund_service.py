"""
Refund workflow for credit purchases.

A user asks for the credits of a settled payment back; an admin approves
or rejects. Approved refunds are processed compensating-transaction style:

    1. PROCESSING + negative refund_reversal ledger entry (one transaction)
    2. Provider-side refund trigger (an AdminTask flagged manual_required)
    3. COMPLETED

If step 2 fails, a positive refund_rollback entry referencing the reversal
restores the credits and the refund ends FAILED. Either way the ledger
nets out: a completed refund removes exactly `amount`, a failed one
removes nothing.

Usage:
    from reconciliation.services import RefundService

    service = RefundService(collaborators)
    result = service.request_refund(user_id, payment_id, Decimal("25.00"), RefundReason.USER_REQUEST)

    if result.success:
        service.approve(result.data.id, admin_id="7", notes="ok")
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from core.services import BaseService, ServiceResult

from reconciliation.credits import CreditLedger, InsufficientCredits
from reconciliation.credits.types import to_credits
from reconciliation.exceptions import LockAcquisitionError
from reconciliation.locks import with_lock
from reconciliation.models import (
    OPEN_REFUND_STATES,
    AdminTask,
    CreditTransaction,
    RefundRequest,
    UnifiedPayment,
)
from reconciliation.state_machines import (
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
    CreditTransactionType,
    PaymentStatus,
    RefundReason,
    RefundState,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from reconciliation.collaborators import Collaborators


logger = logging.getLogger(__name__)

DEFAULT_REFUND_WINDOW_DAYS = 30
DEFAULT_REFUND_MAX_AMOUNT = Decimal("10000")


def request_provider_refund(refund: RefundRequest) -> AdminTask:
    """
    Provider-side refund trigger.

    Refunds to cards and wallets are issued by an operator, so the trigger
    files a manual_required AdminTask. Re-running it for the same refund
    returns the task already filed.
    """
    existing = AdminTask.objects.filter(
        task_type=AdminTaskType.PAYMENT_REFUND,
        details__refund_id=str(refund.id),
    ).first()
    if existing is not None:
        return existing

    payment = refund.payment
    return AdminTask.objects.create(
        task_type=AdminTaskType.PAYMENT_REFUND,
        status=AdminTaskStatus.MANUAL_REQUIRED,
        priority=AdminTaskPriority.HIGH,
        title=f"Refund {refund.amount} {payment.currency.upper()} for payment {payment.provider_payment_id}",
        user_id=refund.user_id,
        payment=payment,
        details={
            "refund_id": str(refund.id),
            "amount": str(refund.amount),
            "provider": payment.provider,
            "provider_payment_id": payment.provider_payment_id,
            "reason": refund.reason,
        },
    )


class RefundService(BaseService):
    """
    Request, review and process credit refunds.

    Args:
        collaborators: Notifier is used
        ledger: Credit ledger for reversal / rollback entries
        provider_refund: Callable(refund) triggering the provider-side refund
    """

    def __init__(
        self,
        collaborators: Collaborators,
        ledger: CreditLedger | None = None,
        provider_refund: Callable[[RefundRequest], object] = request_provider_refund,
    ) -> None:
        self.collaborators = collaborators
        self.ledger = ledger or CreditLedger()
        self.provider_refund = provider_refund

    @property
    def window_days(self) -> int:
        return int(getattr(settings, "REFUND_WINDOW_DAYS", DEFAULT_REFUND_WINDOW_DAYS))

    @property
    def max_amount(self) -> Decimal:
        return Decimal(str(getattr(settings, "REFUND_MAX_AMOUNT", DEFAULT_REFUND_MAX_AMOUNT)))

    # =========================================================================
    # Request
    # =========================================================================

    def request_refund(
        self,
        user_id: str,
        payment_id: str,
        amount: Decimal | str,
        reason: str = RefundReason.USER_REQUEST,
        description: str = "",
    ) -> ServiceResult[RefundRequest]:
        """
        Validate and file a refund request.

        Returns:
            ServiceResult with the PENDING RefundRequest, or failure with
            INVALID_REASON, INVALID_AMOUNT, AMOUNT_EXCEEDS_LIMIT,
            PAYMENT_NOT_FOUND, PAYMENT_USER_MISMATCH, PAYMENT_NOT_SETTLED,
            REFUND_WINDOW_EXPIRED, PAYMENT_AMOUNT_UNKNOWN, AMOUNT_EXCEEDS_PAYMENT,
            INSUFFICIENT_CREDITS or REFUND_ALREADY_EXISTS
        """
        if reason not in RefundReason.values:
            return ServiceResult.failure(f"Unknown refund reason {reason}", error_code="INVALID_REASON")

        try:
            refund_amount = to_credits(amount)
        except (InvalidOperation, ValueError, TypeError):
            return ServiceResult.failure("Invalid refund amount", error_code="INVALID_AMOUNT")
        if refund_amount <= 0:
            return ServiceResult.failure("Refund amount must be positive", error_code="INVALID_AMOUNT")
        if refund_amount > self.max_amount:
            return ServiceResult.failure(
                "Refund amount exceeds maximum limit",
                error_code="AMOUNT_EXCEEDS_LIMIT",
            )

        payment = UnifiedPayment.objects.filter(id=payment_id).first()
        if payment is None:
            return ServiceResult.failure(f"Payment {payment_id} not found", error_code="PAYMENT_NOT_FOUND")
        if payment.user_id != user_id:
            return ServiceResult.failure(
                "Payment does not belong to this user",
                error_code="PAYMENT_USER_MISMATCH",
            )
        if payment.status != PaymentStatus.SUCCEEDED:
            return ServiceResult.failure(
                "Only settled payments can be refunded",
                error_code="PAYMENT_NOT_SETTLED",
            )
        if payment.created_at < timezone.now() - timedelta(days=self.window_days):
            return ServiceResult.failure(
                f"Refunds must be requested within {self.window_days} days",
                error_code="REFUND_WINDOW_EXPIRED",
            )

        original = payment.amount_usd
        if original is None and payment.currency.lower() == "usd":
            original = payment.amount
        if original is None:
            return ServiceResult.failure(
                f"USD value of {payment.currency} payment {payment.id} is unknown",
                error_code="PAYMENT_AMOUNT_UNKNOWN",
            )
        if refund_amount > original:
            return ServiceResult.failure(
                "Refund amount exceeds the original payment",
                error_code="AMOUNT_EXCEEDS_PAYMENT",
            )

        balance = self.ledger.get_balance(user_id)
        if balance < refund_amount:
            return ServiceResult.failure(
                f"Insufficient credits: balance {balance}, refund {refund_amount}",
                error_code="INSUFFICIENT_CREDITS",
            )

        if RefundRequest.objects.filter(payment=payment, state__in=OPEN_REFUND_STATES).exists():
            return ServiceResult.failure(
                "A refund already exists for this payment",
                error_code="REFUND_ALREADY_EXISTS",
            )

        try:
            with transaction.atomic():
                refund = RefundRequest.objects.create(
                    user_id=user_id,
                    payment=payment,
                    amount=refund_amount,
                    reason=reason,
                    description=description or "",
                )
        except IntegrityError:
            return ServiceResult.failure(
                "A refund already exists for this payment",
                error_code="REFUND_ALREADY_EXISTS",
            )

        self.get_logger().info(
            "Refund requested",
            extra={
                "refund_id": str(refund.id),
                "payment_id": str(payment.id),
                "user_id": user_id,
                "amount": str(refund_amount),
                "reason": reason,
            },
        )
        self.collaborators.notifier.notify_admins(
            "refund_requested",
            "Refund requested",
            f"User {user_id} requested a refund of {refund_amount} credits.",
            {"refund_id": str(refund.id), "payment_id": str(payment.id)},
        )
        return ServiceResult.success(refund)

    # =========================================================================
    # Review
    # =========================================================================

    def approve(self, refund_id: str, admin_id: str, notes: str = "") -> ServiceResult[RefundRequest]:
        """Approve a pending refund and process it straight away."""
        with transaction.atomic():
            refund = RefundRequest.objects.select_for_update().filter(id=refund_id).first()
            if refund is None:
                return ServiceResult.failure("Refund not found", error_code="REFUND_NOT_FOUND")
            try:
                refund.approve(admin_id=admin_id, notes=notes)
            except TransitionNotAllowed:
                return ServiceResult.failure(
                    f"Cannot approve refund in state {refund.state}",
                    error_code="INVALID_STATE_TRANSITION",
                )
            refund.save()

        self.get_logger().info(
            "Refund approved",
            extra={"refund_id": str(refund_id), "admin_id": admin_id},
        )
        return self.process_approved_refund(refund_id)

    def reject(self, refund_id: str, admin_id: str, reason: str) -> ServiceResult[RefundRequest]:
        with transaction.atomic():
            refund = RefundRequest.objects.select_for_update().filter(id=refund_id).first()
            if refund is None:
                return ServiceResult.failure("Refund not found", error_code="REFUND_NOT_FOUND")
            try:
                refund.reject(admin_id=admin_id, reason=reason)
            except TransitionNotAllowed:
                return ServiceResult.failure(
                    f"Cannot reject refund in state {refund.state}",
                    error_code="INVALID_STATE_TRANSITION",
                )
            refund.save()

        self.get_logger().info(
            "Refund rejected",
            extra={"refund_id": str(refund_id), "admin_id": admin_id, "reason": reason},
        )
        self.collaborators.notifier.notify_user(
            refund.user_id,
            "refund_rejected",
            "Refund request rejected",
            f"Your refund request was rejected: {reason}",
            {"refund_id": str(refund.id)},
        )
        return ServiceResult.success(refund)

    # =========================================================================
    # Processing
    # =========================================================================

    def process_approved_refund(self, refund_id: str) -> ServiceResult[RefundRequest]:
        """
        Run the compensating refund sequence under the refund:{id} lock.

        Re-running it for a refund whose reversal already exists finishes
        the refund without writing a second reversal.
        """
        try:
            return with_lock(f"refund:{refund_id}", self._process_locked, refund_id)
        except LockAcquisitionError as e:
            self.get_logger().warning(
                "Refund busy, processing deferred",
                extra={"refund_id": str(refund_id)},
            )
            return ServiceResult.from_exception(e)

    def _process_locked(self, refund_id: str) -> ServiceResult[RefundRequest]:
        logger = self.get_logger()

        try:
            with transaction.atomic():
                refund = (
                    RefundRequest.objects.select_for_update()
                    .select_related("payment")
                    .filter(id=refund_id)
                    .first()
                )
                if refund is None:
                    return ServiceResult.failure("Refund not found", error_code="REFUND_NOT_FOUND")
                if refund.state == RefundState.COMPLETED:
                    return ServiceResult.success(refund)
                if refund.state == RefundState.APPROVED:
                    refund.start_processing()
                elif refund.state != RefundState.PROCESSING:
                    return ServiceResult.failure(
                        f"Cannot process refund in state {refund.state}",
                        error_code="INVALID_STATE_TRANSITION",
                    )

                reversal = CreditTransaction.objects.filter(
                    refund_id=refund.id,
                    transaction_type=CreditTransactionType.REFUND_REVERSAL,
                ).first()
                if reversal is None:
                    reversal = self.ledger.record_entry(
                        refund.user_id,
                        CreditTransactionType.REFUND_REVERSAL,
                        -refund.amount,
                        payment_id=str(refund.payment_id),
                        refund_id=str(refund.id),
                        description=f"Refund reversal for payment {refund.payment_id}",
                        metadata={"refundReason": refund.reason},
                        created_by="refund_service",
                    )
                refund.reversal_transaction_id = reversal.id
                refund.save()
        except InsufficientCredits as e:
            logger.warning(
                "Refund exceeds current balance",
                extra={"refund_id": str(refund_id), "error": str(e)},
            )
            return self._fail_without_reversal(refund_id, "insufficient_credits")

        try:
            self.provider_refund(refund)
        except Exception as e:
            logger.exception(
                "Provider refund trigger failed",
                extra={"refund_id": str(refund.id), "payment_id": str(refund.payment_id)},
            )
            return self._roll_back(refund, reversal, str(e))

        with transaction.atomic():
            refund.complete()
            refund.save()

        logger.info(
            "Refund completed",
            extra={
                "refund_id": str(refund.id),
                "payment_id": str(refund.payment_id),
                "amount": str(refund.amount),
                "reversal_transaction_id": str(reversal.id),
            },
        )
        self.collaborators.notifier.notify_user(
            refund.user_id,
            "refund_completed",
            "Refund processed",
            f"Your refund of {refund.amount} credits has been processed.",
            {"refund_id": str(refund.id), "amount": str(refund.amount)},
        )
        return ServiceResult.success(refund)

    def _roll_back(
        self,
        refund: RefundRequest,
        reversal: CreditTransaction,
        reason: str,
    ) -> ServiceResult[RefundRequest]:
        with transaction.atomic():
            rollback = CreditTransaction.objects.filter(
                refund_id=refund.id,
                transaction_type=CreditTransactionType.REFUND_ROLLBACK,
            ).first()
            if rollback is None:
                rollback = self.ledger.record_entry(
                    refund.user_id,
                    CreditTransactionType.REFUND_ROLLBACK,
                    refund.amount,
                    payment_id=str(refund.payment_id),
                    refund_id=str(refund.id),
                    related_transaction_id=str(reversal.id),
                    description=f"Rollback of failed refund {refund.id}",
                    metadata={"failureReason": reason[:500]},
                    created_by="refund_service",
                )
            refund.rollback_transaction_id = rollback.id
            refund.fail(reason=reason)
            refund.save()

        self.collaborators.notifier.notify_user(
            refund.user_id,
            "refund_failed",
            "Refund could not be processed",
            "Your refund could not be processed. Your credits have been restored.",
            {"refund_id": str(refund.id)},
        )
        return ServiceResult.failure("Refund processing failed", error_code="REFUND_FAILED")

    def _fail_without_reversal(self, refund_id: str, reason: str) -> ServiceResult[RefundRequest]:
        with transaction.atomic():
            refund = RefundRequest.objects.select_for_update().get(id=refund_id)
            if refund.state == RefundState.APPROVED:
                refund.start_processing()
            refund.fail(reason=reason)
            refund.save()

        self.collaborators.notifier.notify_user(
            refund.user_id,
            "refund_failed",
            "Refund could not be processed",
            "Your refund could not be processed because your credit balance is too low.",
            {"refund_id": str(refund.id)},
        )
        return ServiceResult.failure(
            "Insufficient credits for refund",
            error_code="INSUFFICIENT_CREDITS",
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_user_refunds(self, user_id: str) -> list[RefundRequest]:
        return list(
            RefundRequest.objects.filter(user_id=user_id)
            .select_related("payment")
            .order_by("-created_at")
        )

    def get_pending_refunds(self, limit: int = 100) -> list[RefundRequest]:
        return list(
            RefundRequest.objects.filter(state=RefundState.PENDING)
            .select_related("payment")
            .order_by("created_at")[:limit]
        )


__all__ = ["RefundService", "request_provider_refund"]
