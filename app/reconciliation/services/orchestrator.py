"""
Reconciliation orchestrator: the single entry point for provider events.

Every webhook, IPN and polled status sync becomes a ProviderEvent and is
reconciled here as one unit of work:

    1. Resolve the UnifiedPayment by (provider, provider_payment_id)
    2. Take the per-resource advisory lock (order:{id} or payment:{id})
    3. In one transaction:
       a. Record the event receipt (duplicate -> DuplicateIgnored)
       b. Re-read the payment FOR UPDATE
       c. Normalize the raw status; regression -> RegressionIgnored
       d. Write status, provider status and merged metadata
       e. Run the side effects of the transition (settlement or failure)
    4. Release the lock

Any unexpected exception rolls the whole transaction back (receipt
included), so a redelivered event is processed from scratch.

Usage:
    from reconciliation.services import ReconciliationOrchestrator

    orchestrator = ReconciliationOrchestrator()
    outcome = orchestrator.reconcile(event)

    if isinstance(outcome, Failed) and outcome.retryable:
        raise self.retry()
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.db import transaction

from commerce.models import OrderStatus
from core.services import BaseService

from reconciliation.adapters import get_adapter
from reconciliation.adapters.base import ProviderEvent
from reconciliation.collaborators import Collaborators
from reconciliation.credits import CreditAllocationService
from reconciliation.credits.services import resolve_paid_amount
from reconciliation.events import derive_event_id, record_event
from reconciliation.exceptions import LockAcquisitionError
from reconciliation.locks import with_lock
from reconciliation.metadata import PaymentMetadata
from reconciliation.models import AdminTask, UnifiedPayment
from reconciliation.normalizer import normalize, should_apply
from reconciliation.outcomes import (
    Applied,
    DuplicateIgnored,
    Failed,
    ReconciliationOutcome,
    RegressionIgnored,
)
from reconciliation.retry import retry_call
from reconciliation.services.failure_service import PaymentFailureService
from reconciliation.services.renewal_service import RenewalService
from reconciliation.state_machines import (
    FAILURE_PAYMENT_STATUSES,
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from reconciliation.adapters.base import ProviderAdapter
    from reconciliation.protocols import OrderSnapshot


logger = logging.getLogger(__name__)

SYNC_EVENT_TYPE = "status_sync"
CANCEL_EVENT_TYPE = "cancel"

ALREADY_FULFILLED_ORDER_STATUSES = frozenset([OrderStatus.IN_PROCESS, OrderStatus.COMPLETED])


class ReconciliationOrchestrator(BaseService):
    """
    Applies provider events to canonical payment state.

    Args:
        collaborators: Order / subscription / coupon / user / notifier gateways
        allocation: Credit allocation service
        failures: Failure & retry subsystem
        renewals: Renewal settlement service
        adapter_factory: provider -> ProviderAdapter (for status syncs)
    """

    def __init__(
        self,
        collaborators: Collaborators | None = None,
        allocation: CreditAllocationService | None = None,
        failures: PaymentFailureService | None = None,
        renewals: RenewalService | None = None,
        adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
    ) -> None:
        self.collaborators = collaborators or Collaborators.default()
        self.allocation = allocation or CreditAllocationService(
            self.collaborators.users,
            self.collaborators.notifier,
        )
        self.failures = failures or PaymentFailureService(self.collaborators)
        self.renewals = renewals or RenewalService(self.collaborators)
        self.adapter_factory = adapter_factory

    # =========================================================================
    # Entry Points
    # =========================================================================

    def reconcile(self, event: ProviderEvent) -> ReconciliationOutcome:
        """
        Reconcile one provider event.

        Returns:
            Applied, DuplicateIgnored, RegressionIgnored or Failed. Never
            raises for expected conditions.
        """
        log_context = {
            "provider": event.provider,
            "provider_payment_id": event.provider_payment_id,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "raw_status": event.raw_status,
        }

        payment = UnifiedPayment.objects.for_provider_id(
            event.provider,
            event.provider_payment_id,
        ).first()
        if payment is None:
            logger.warning("Event for unknown payment", extra=log_context)
            return Failed(
                "payment_not_found",
                details={"provider_payment_id": event.provider_payment_id},
            )

        if not event.event_id:
            event = event.with_event_id(derive_event_id(event.payload))

        try:
            outcome = with_lock(payment.lock_key, self._apply, payment.id, event)
        except LockAcquisitionError:
            logger.warning(
                "Payment busy, event deferred",
                extra={**log_context, "lock_key": payment.lock_key},
            )
            return Failed("lock_unavailable", retryable=True, payment_id=str(payment.id))
        except Exception as e:
            logger.exception(
                "Reconciliation failed",
                extra={**log_context, "payment_id": str(payment.id)},
            )
            return Failed(
                "system_error",
                retryable=True,
                payment_id=str(payment.id),
                details={"error": str(e), "error_type": type(e).__name__},
            )

        logger.info(
            "Event reconciled",
            extra={**log_context, "payment_id": str(payment.id), "outcome": type(outcome).__name__},
        )
        return outcome

    def sync_payment(self, payment: UnifiedPayment) -> ReconciliationOutcome:
        """
        Pull the provider's current status and reconcile it.

        The synthetic event id is sync:{payment_id}:{raw_status}, so polling
        the same status twice is a duplicate.

        Raises:
            ProviderError: If the provider could not be reached after
                bounded retries (callers feed this to the failure subsystem)
        """
        adapter = self.adapter_factory(payment.provider)
        raw_status, payload = retry_call(adapter.get_status, payment.provider_payment_id)

        event = ProviderEvent(
            provider=payment.provider,
            event_id=f"sync:{payment.id}:{raw_status}",
            event_type=SYNC_EVENT_TYPE,
            provider_payment_id=payment.provider_payment_id,
            raw_status=raw_status,
            metadata=adapter.event_metadata(payload),
            payload=payload,
        )
        return self.reconcile(event)

    def cancel_payment(self, payment: UnifiedPayment) -> ReconciliationOutcome:
        """
        Cancel an unfinished attempt with the provider and reconcile the answer.

        A payment that already settled is left alone; the regression guard
        would discard the cancellation anyway.
        """
        if payment.is_settled:
            return RegressionIgnored(str(payment.id), payment.status, PaymentStatus.CANCELED)

        adapter = self.adapter_factory(payment.provider)
        raw_status = retry_call(adapter.cancel, payment.provider_payment_id)

        event = ProviderEvent(
            provider=payment.provider,
            event_id=f"cancel:{payment.id}:{raw_status}",
            event_type=CANCEL_EVENT_TYPE,
            provider_payment_id=payment.provider_payment_id,
            raw_status=raw_status,
        )
        return self.reconcile(event)

    # =========================================================================
    # Unit of Work
    # =========================================================================

    def _apply(self, payment_id, event: ProviderEvent) -> ReconciliationOutcome:
        with transaction.atomic():
            payment = UnifiedPayment.objects.select_for_update().get(pk=payment_id)

            if not record_event(
                event.provider,
                event.event_id,
                event.event_type,
                order_id=payment.order_id,
                payment_id=payment.id,
            ):
                return DuplicateIgnored(str(payment.id), event.event_id)

            previous = payment.status
            incoming, _ = normalize(event.provider, event.raw_status)

            if not should_apply(previous, incoming):
                logger.info(
                    "Status regression ignored",
                    extra={
                        "payment_id": str(payment.id),
                        "event_id": event.event_id,
                        "current_status": previous,
                        "incoming_status": incoming,
                        "raw_status": event.raw_status,
                    },
                )
                return RegressionIgnored(str(payment.id), previous, incoming)

            payment.status = incoming
            payment.provider_status = (event.raw_status or "")[:50]
            if event.metadata:
                payment.merge_metadata(PaymentMetadata.from_dict(event.metadata).to_dict())
            payment.save(update_fields=["status", "provider_status", "metadata", "updated_at"])

            effects: list[str] = []
            if incoming != previous:
                if incoming == PaymentStatus.SUCCEEDED:
                    effects = self._on_settled(payment, event)
                elif incoming in FAILURE_PAYMENT_STATUSES:
                    effects = self._on_failed(payment, event)

        return Applied(
            payment_id=str(payment.id),
            previous_status=previous,
            status=incoming,
            effects=tuple(effects),
        )

    # =========================================================================
    # Settlement
    # =========================================================================

    def _on_settled(self, payment: UnifiedPayment, event: ProviderEvent) -> list[str]:
        self.failures.mark_resolved(payment)

        if payment.is_renewal:
            return self._settle_renewal(payment)
        if payment.purpose == PaymentPurpose.CREDITS:
            return self._settle_credits(payment, event)
        return self._settle_checkout(payment, event)

    def _settle_checkout(self, payment: UnifiedPayment, event: ProviderEvent) -> list[str]:
        """
        Fulfill the order a checkout payment paid for.

        The order must still be awaiting payment and the currency must
        match. Card captures must equal the order total exactly; crypto
        invoices must reach it within the payment tolerance.
        """
        if not payment.order_id:
            logger.warning("Settled checkout payment has no order", extra={"payment_id": str(payment.id)})
            return ["order_missing"]

        order_id = str(payment.order_id)
        orders = self.collaborators.orders
        coupons = self.collaborators.coupons
        log_context = {"payment_id": str(payment.id), "order_id": order_id}

        order = orders.get_order_with_items(order_id)
        if order is None:
            self._admin_task(
                payment,
                AdminTaskType.MANUAL_FULFILLMENT,
                f"Settled payment references missing order {order_id}",
                {"order_id": order_id, "reason": "order_not_found"},
                priority=AdminTaskPriority.HIGH,
            )
            return ["order_missing"]

        if order.status in ALREADY_FULFILLED_ORDER_STATUSES:
            logger.info("Order already fulfilled", extra={**log_context, "order_status": order.status})
            return ["order_already_fulfilled"]

        if order.status != OrderStatus.PENDING_PAYMENT:
            self._admin_task(
                payment,
                AdminTaskType.MANUAL_FULFILLMENT,
                f"Payment settled for order {order_id} in status {order.status}",
                {"order_id": order_id, "order_status": order.status, "reason": "order_not_payable"},
                priority=AdminTaskPriority.HIGH,
            )
            return ["order_not_payable"]

        if not self._amount_matches(payment, order, event):
            logger.warning(
                "Payment amount does not match order",
                extra={
                    **log_context,
                    "payment_amount_cents": payment.amount_cents,
                    "payment_currency": payment.currency,
                    "order_total_cents": order.total_cents,
                    "order_currency": order.currency,
                },
            )
            orders.update_order_status(order_id, OrderStatus.CANCELED, "payment_amount_mismatch")
            coupons.void_redemption_for_order(order_id, "payment_amount_mismatch")
            self.collaborators.notifier.notify_admins(
                "payment_amount_mismatch",
                "Payment amount mismatch",
                f"Payment {payment.id} does not match order {order_id}; the order was canceled.",
                {
                    "payment_id": str(payment.id),
                    "order_id": order_id,
                    "payment_amount_cents": payment.amount_cents,
                    "order_total_cents": order.total_cents,
                },
            )
            return ["order_canceled_amount_mismatch"]

        effects = []
        failed_items = []
        created = []
        for item in order.items:
            if self.collaborators.subscriptions.exists_for_order_item(item.id):
                continue
            try:
                with transaction.atomic():
                    subscription_id = self.collaborators.subscriptions.create_subscription(
                        order.user_id,
                        order.id,
                        item,
                        str(payment.id),
                    )
            except Exception:
                logger.exception(
                    "Subscription creation failed",
                    extra={**log_context, "order_item_id": item.id},
                )
                failed_items.append(item.id)
                continue
            created.append((item.id, subscription_id))

        if created:
            effects.append("subscriptions_created")
        if len(order.items) == 1 and len(created) == 1:
            item_id, subscription_id = created[0]
            changed = payment.link(order_item_id=item_id, subscription_id=subscription_id)
            if changed:
                payment.save(update_fields=[*changed, "updated_at"])

        if not orders.has_payment_items(str(payment.id)):
            orders.create_payment_items(str(payment.id), order)
            effects.append("payment_items_created")

        if coupons.finalize_redemption_for_order(order_id):
            effects.append("coupon_finalized")

        if failed_items:
            orders.update_order_status(order_id, OrderStatus.IN_PROCESS, "subscription_create_failed")
            self._admin_task(
                payment,
                AdminTaskType.MANUAL_FULFILLMENT,
                f"Create subscriptions for order {order_id}",
                {"order_id": order_id, "order_item_ids": failed_items, "reason": "subscription_create_failed"},
                priority=AdminTaskPriority.HIGH,
            )
            effects.append("subscription_create_failed")
        else:
            orders.update_order_status(order_id, OrderStatus.IN_PROCESS, "payment_succeeded")
        effects.append("order_in_process")

        self.collaborators.notifier.notify_user(
            payment.user_id,
            "payment_succeeded",
            "Payment received",
            "Your payment was received and your order is being processed.",
            {"payment_id": str(payment.id), "order_id": order_id},
        )
        return effects

    def _settle_renewal(self, payment: UnifiedPayment) -> list[str]:
        result = self.renewals.complete_renewal(payment)
        if result.success:
            return ["renewal_duplicate" if result.data.duplicate else "renewal_completed"]

        self._admin_task(
            payment,
            AdminTaskType.MANUAL_FULFILLMENT,
            f"Settled renewal payment {payment.id} could not be applied",
            {"error_code": result.error_code, "error": result.error, "renewal": True},
            priority=AdminTaskPriority.HIGH,
        )
        return ["renewal_unresolved"]

    def _settle_credits(self, payment: UnifiedPayment, event: ProviderEvent) -> list[str]:
        expected_usd = payment.amount_usd
        if expected_usd is None and payment.currency.lower() == "usd":
            expected_usd = payment.amount

        result = self.allocation.allocate(
            payment.user_id,
            str(payment.id),
            expected_usd,
            event.payload,
        )
        if result.success:
            return ["credits_duplicate" if result.data.duplicate else "credits_allocated"]

        self._admin_task(
            payment,
            AdminTaskType.MANUAL_CREDIT_REVIEW,
            f"Review credit allocation for payment {payment.id}",
            {
                "error_code": result.error_code,
                "error": result.error,
                "expected_usd": str(expected_usd) if expected_usd is not None else None,
            },
            priority=AdminTaskPriority.HIGH,
        )
        effects = ["credit_review_required"]

        if result.error_code == "INSUFFICIENT_PAYMENT":
            action = self.failures.handle_failure(payment, payment.status, "insufficient payment received")
            effects.append(f"failure_{action}")
        return effects

    # =========================================================================
    # Failure
    # =========================================================================

    def _on_failed(self, payment: UnifiedPayment, event: ProviderEvent) -> list[str]:
        if payment.is_renewal:
            result = self.renewals.fail_renewal(payment)
            if not result.success:
                return [f"renewal_{(result.error_code or 'error').lower()}"]
            effects = ["renewal_failed"]
            if not result.data.auto_renew:
                effects.append("auto_renew_disabled")
            return effects

        reason = payment.typed_metadata.failure_reason or event.raw_status
        action = self.failures.handle_failure(payment, payment.status, reason)
        return [f"failure_{action}"]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _amount_matches(self, payment: UnifiedPayment, order: OrderSnapshot, event: ProviderEvent) -> bool:
        if payment.currency.lower() != (order.currency or "").lower():
            return False

        total_cents = int(order.total_cents)
        if payment.provider == PaymentProvider.CRYPTO:
            paid = resolve_paid_amount(Decimal(payment.amount), event.payload)
            received_cents = (paid.paid_usd * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            return received_cents >= (total_cents * self.allocation.tolerance).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )

        # Captured amount, or the charged amount when none was reported.
        received = payment.typed_metadata.amount_received_cents
        charged = received if received is not None else payment.amount_cents
        return charged == total_cents

    @staticmethod
    def _admin_task(
        payment: UnifiedPayment,
        task_type: str,
        title: str,
        details: dict,
        priority: str = AdminTaskPriority.MEDIUM,
    ) -> AdminTask:
        return AdminTask.objects.create(
            task_type=task_type,
            status=AdminTaskStatus.PENDING,
            priority=priority,
            title=title[:200],
            user_id=payment.user_id,
            payment=payment,
            details={
                **details,
                "payment_id": str(payment.id),
                "amount": str(Decimal(payment.amount)),
                "currency": payment.currency,
            },
        )


__all__ = ["CANCEL_EVENT_TYPE", "ReconciliationOrchestrator", "SYNC_EVENT_TYPE"]
