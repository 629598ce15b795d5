"""
Subscription renewal settlement.

A renewal payment carries `renewal: true` plus the subscription id and the
end date of the billing cycle it pays for. Each (subscription, cycle end)
pair owns one SubscriptionRenewal row; its unique constraint is the
renewal-cycle lock, so a cycle is extended at most once however many
payments or events reference it.

Success:
    next cycle end = cycle end + term_months, subscription dates moved
    forward, cycle marked succeeded, manual fulfillment task, notification

Failure (card declines):
    hard decline             auto-renew off immediately, no retry
    soft decline + renewing  next attempt from the billing anchor
                             (cycle end + SUBSCRIPTION_RENEWAL_RETRY_DAYS)
    no attempt left          auto-renew off

Usage:
    from reconciliation.services import RenewalService

    renewals = RenewalService(collaborators)
    result = renewals.complete_renewal(payment)
    if result.success and not result.data.duplicate:
        print(result.data.next_cycle_end_date)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from datetime import timezone as dt_timezone
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from commerce.services import add_months
from core.services import BaseService, ServiceResult

from reconciliation.models import AdminTask, SubscriptionRenewal, UnifiedPayment
from reconciliation.services.failure_service import classify_decline
from reconciliation.state_machines import (
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
    DeclineKind,
    RenewalStatus,
)

if TYPE_CHECKING:
    from reconciliation.collaborators import Collaborators
    from reconciliation.protocols import SubscriptionSnapshot


logger = logging.getLogger(__name__)

DEFAULT_RETRY_DAYS = (1, 3, 5)


def billing_anchor(day: date) -> datetime:
    """Midnight UTC of a calendar day."""
    return datetime.combine(day, time.min, tzinfo=dt_timezone.utc)


def next_renewal_attempt(
    cycle_end_date: date,
    now: datetime,
    retry_days: tuple[int, ...] | list[int] | None = None,
) -> datetime | None:
    """
    First retry slot after `now`, or None when the schedule is used up.

    Slots are midnight UTC of cycle_end_date + each offset in retry_days.
    """
    if retry_days is None:
        retry_days = getattr(settings, "SUBSCRIPTION_RENEWAL_RETRY_DAYS", DEFAULT_RETRY_DAYS)
    for offset in sorted(retry_days):
        candidate = billing_anchor(cycle_end_date + timedelta(days=offset))
        if candidate > now:
            return candidate
    return None


@dataclass(frozen=True)
class RenewalSuccess:
    renewal_id: str
    subscription_id: str
    cycle_end_date: date
    next_cycle_end_date: date
    duplicate: bool = False


@dataclass(frozen=True)
class RenewalFailure:
    renewal_id: str
    subscription_id: str
    decline_kind: str
    decline_code: str | None
    next_attempt_at: datetime | None
    auto_renew: bool


class RenewalService(BaseService):
    """
    Settles renewal payments against their subscription cycle.

    Called by the orchestrator inside its unit of work, so every write here
    commits or rolls back together with the payment status change.
    """

    def __init__(self, collaborators: Collaborators) -> None:
        self.collaborators = collaborators

    # =========================================================================
    # Cycle Resolution
    # =========================================================================

    def subscription_id_for(self, payment: UnifiedPayment) -> str | None:
        meta = payment.typed_metadata
        if meta.subscription_id:
            return meta.subscription_id
        return str(payment.subscription_id) if payment.subscription_id else None

    def resolve_cycle_end(
        self,
        payment: UnifiedPayment,
        subscription: SubscriptionSnapshot,
    ) -> date | None:
        """
        End date of the cycle a renewal payment pays for.

        Order: payment metadata cycle_end_date, subscription end_date,
        term_start_date + term_months.

        The end_date fallback is refused (None) when another payment renewed
        the subscription after this one was created: end_date then already
        points at the following cycle.
        """
        cycle_end = payment.typed_metadata.cycle_end_date
        if cycle_end:
            return cycle_end
        if subscription.end_date:
            if self._renewed_since(payment, subscription):
                logger.warning(
                    "Renewal payment predates the latest renewal; cycle is ambiguous",
                    extra={
                        "payment_id": str(payment.id),
                        "subscription_id": subscription.id,
                        "end_date": subscription.end_date.isoformat(),
                    },
                )
                return None
            return subscription.end_date
        if subscription.term_start_date and subscription.term_months:
            return add_months(subscription.term_start_date, subscription.term_months)
        return None

    def acquire_cycle(
        self,
        subscription_id: str,
        cycle_end_date: date,
        payment_id: str,
    ) -> tuple[SubscriptionRenewal, bool]:
        """
        Take the renewal-cycle lock row, creating it on first use.

        Returns:
            (locked row, created)
        """
        try:
            with transaction.atomic():
                renewal, created = SubscriptionRenewal.objects.get_or_create(
                    subscription_id=subscription_id,
                    cycle_end_date=cycle_end_date,
                    defaults={
                        "status": RenewalStatus.PROCESSING,
                        "payment_id": payment_id,
                    },
                )
        except IntegrityError:
            created = False

        renewal = SubscriptionRenewal.objects.select_for_update().get(
            subscription_id=subscription_id,
            cycle_end_date=cycle_end_date,
        )
        return renewal, created

    # =========================================================================
    # Success
    # =========================================================================

    def complete_renewal(self, payment: UnifiedPayment) -> ServiceResult[RenewalSuccess]:
        """
        Extend the subscription by one term for a settled renewal payment.

        Returns:
            ServiceResult with RenewalSuccess (duplicate=True when the cycle
            was already renewed), or failure with SUBSCRIPTION_NOT_FOUND /
            CYCLE_UNRESOLVED
        """
        context = self._load(payment)
        if not context.success:
            return context
        subscription, cycle_end = context.data

        renewal, _ = self.acquire_cycle(subscription.id, cycle_end, str(payment.id))
        if renewal.status == RenewalStatus.SUCCEEDED:
            logger.info(
                "Renewal cycle already settled",
                extra={
                    "subscription_id": subscription.id,
                    "cycle_end_date": cycle_end.isoformat(),
                    "payment_id": str(payment.id),
                    "settled_by": str(renewal.payment_id),
                },
            )
            return ServiceResult.success(
                RenewalSuccess(
                    renewal_id=str(renewal.id),
                    subscription_id=subscription.id,
                    cycle_end_date=cycle_end,
                    next_cycle_end_date=renewal.next_cycle_end_date,
                    duplicate=True,
                )
            )

        term_months = subscription.term_months or payment.term_months or 1
        next_cycle_end = add_months(cycle_end, term_months)
        next_billing_at = billing_anchor(next_cycle_end) if subscription.auto_renew else None

        self.collaborators.subscriptions.update_subscription_dates(
            subscription.id,
            start_date=cycle_end,
            end_date=next_cycle_end,
            next_billing_at=next_billing_at,
            status_reason="renewal_succeeded",
        )

        renewal.status = RenewalStatus.SUCCEEDED
        renewal.payment_id = payment.id
        renewal.next_cycle_end_date = next_cycle_end
        renewal.failure_reason = ""
        renewal.save()

        changed = payment.link(subscription_id=subscription.id)
        if changed:
            payment.save(update_fields=[*changed, "updated_at"])

        AdminTask.objects.create(
            task_type=AdminTaskType.MANUAL_FULFILLMENT,
            status=AdminTaskStatus.PENDING,
            priority=AdminTaskPriority.MEDIUM,
            title=f"Provision renewal of subscription {subscription.id}",
            user_id=payment.user_id,
            payment=payment,
            details={
                "subscription_id": subscription.id,
                "cycle_end_date": cycle_end.isoformat(),
                "next_cycle_end_date": next_cycle_end.isoformat(),
                "renewal": True,
            },
        )

        self.collaborators.notifier.notify_user(
            payment.user_id,
            "subscription_renewed",
            "Subscription renewed",
            f"Your subscription has been renewed until {next_cycle_end.isoformat()}.",
            {
                "subscription_id": subscription.id,
                "payment_id": str(payment.id),
                "next_cycle_end_date": next_cycle_end.isoformat(),
            },
        )

        logger.info(
            "Subscription renewed",
            extra={
                "subscription_id": subscription.id,
                "payment_id": str(payment.id),
                "cycle_end_date": cycle_end.isoformat(),
                "next_cycle_end_date": next_cycle_end.isoformat(),
            },
        )
        return ServiceResult.success(
            RenewalSuccess(
                renewal_id=str(renewal.id),
                subscription_id=subscription.id,
                cycle_end_date=cycle_end,
                next_cycle_end_date=next_cycle_end,
            )
        )

    # =========================================================================
    # Failure
    # =========================================================================

    def fail_renewal(self, payment: UnifiedPayment) -> ServiceResult[RenewalFailure]:
        """
        Record a failed renewal attempt and decide whether another follows.

        A cycle that was already renewed by another payment is left alone.
        """
        context = self._load(payment)
        if not context.success:
            return context
        subscription, cycle_end = context.data

        renewal, _ = self.acquire_cycle(subscription.id, cycle_end, str(payment.id))
        if renewal.status == RenewalStatus.SUCCEEDED:
            logger.info(
                "Ignoring failure for settled renewal cycle",
                extra={"subscription_id": subscription.id, "payment_id": str(payment.id)},
            )
            return ServiceResult.failure(
                "Renewal cycle already settled",
                error_code="CYCLE_ALREADY_RENEWED",
            )

        meta = payment.typed_metadata
        decline_code = meta.decline_code
        kind = classify_decline(decline_code)

        next_attempt_at = None
        if kind == DeclineKind.SOFT and subscription.auto_renew:
            next_attempt_at = next_renewal_attempt(cycle_end, timezone.now())

        if next_attempt_at is not None:
            self.collaborators.subscriptions.set_auto_renew(
                subscription.id,
                True,
                next_billing_at=next_attempt_at,
                status_reason="renewal_payment_failed",
            )
        else:
            reason = "renewal_hard_decline" if kind == DeclineKind.HARD else "renewal_retries_exhausted"
            self.collaborators.subscriptions.set_auto_renew(
                subscription.id,
                False,
                status_reason=reason,
            )

        renewal.status = RenewalStatus.FAILED
        renewal.payment_id = payment.id
        renewal.failure_reason = (decline_code or payment.status)[:100]
        renewal.save()

        if next_attempt_at is not None:
            message = (
                "We could not charge your card for your subscription renewal. "
                f"We will try again on {next_attempt_at.date().isoformat()}."
            )
        else:
            message = (
                "We could not charge your card for your subscription renewal. "
                "Automatic renewal has been turned off; please update your payment method."
            )
        self.collaborators.notifier.notify_user(
            payment.user_id,
            "renewal_failed",
            "Subscription renewal failed",
            message,
            {
                "subscription_id": subscription.id,
                "payment_id": str(payment.id),
                "decline_code": decline_code,
                "decline_kind": kind,
                "next_attempt_at": next_attempt_at.isoformat() if next_attempt_at else None,
            },
        )

        logger.warning(
            "Subscription renewal failed",
            extra={
                "subscription_id": subscription.id,
                "payment_id": str(payment.id),
                "decline_code": decline_code,
                "decline_kind": kind,
                "next_attempt_at": next_attempt_at.isoformat() if next_attempt_at else None,
            },
        )
        return ServiceResult.success(
            RenewalFailure(
                renewal_id=str(renewal.id),
                subscription_id=subscription.id,
                decline_kind=kind,
                decline_code=decline_code,
                next_attempt_at=next_attempt_at,
                auto_renew=next_attempt_at is not None,
            )
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _renewed_since(payment: UnifiedPayment, subscription: SubscriptionSnapshot) -> bool:
        return (
            SubscriptionRenewal.objects.filter(
                subscription_id=subscription.id,
                status=RenewalStatus.SUCCEEDED,
                next_cycle_end_date=subscription.end_date,
                updated_at__gte=payment.created_at,
            )
            .exclude(payment_id=payment.id)
            .exists()
        )

    def _load(self, payment: UnifiedPayment) -> ServiceResult:
        subscription_id = self.subscription_id_for(payment)
        subscription = (
            self.collaborators.subscriptions.get_subscription(subscription_id)
            if subscription_id
            else None
        )
        if subscription is None:
            logger.error(
                "Renewal payment references unknown subscription",
                extra={"payment_id": str(payment.id), "subscription_id": subscription_id},
            )
            return ServiceResult.failure(
                f"Subscription {subscription_id} not found",
                error_code="SUBSCRIPTION_NOT_FOUND",
            )

        cycle_end = self.resolve_cycle_end(payment, subscription)
        if cycle_end is None:
            logger.error(
                "Cannot resolve renewal cycle",
                extra={"payment_id": str(payment.id), "subscription_id": subscription.id},
            )
            return ServiceResult.failure(
                "Renewal cycle end date could not be resolved",
                error_code="CYCLE_UNRESOLVED",
            )
        return ServiceResult.success((subscription, cycle_end))


__all__ = [
    "RenewalFailure",
    "RenewalService",
    "RenewalSuccess",
    "billing_anchor",
    "next_renewal_attempt",
]
