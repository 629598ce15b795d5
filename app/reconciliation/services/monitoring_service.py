"""
Crypto payment monitor.

IPNs can be lost or arrive late, so every few minutes the monitor polls
NOWPayments for each crypto payment that is still open and reconciles
what it finds. Invoices past their expiry that the provider still reports
as waiting are left to the provider; only provider statuses move state.

A sync that cannot reach the provider is handed to the failure subsystem
as a monitoring error, which schedules a retry or escalates.

Usage:
    from reconciliation.services import PaymentMonitoringService

    summary = PaymentMonitoringService(orchestrator).run()
    # MonitorSummary(checked=12, applied=3, failed=1, ...)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import BaseService

from reconciliation.exceptions import ProviderError
from reconciliation.models import UnifiedPayment
from reconciliation.outcomes import Applied, Failed
from reconciliation.state_machines import PaymentProvider

if TYPE_CHECKING:
    from reconciliation.services.failure_service import PaymentFailureService
    from reconciliation.services.orchestrator import ReconciliationOrchestrator


logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 7
DEFAULT_BATCH_SIZE = 200


@dataclass
class MonitorSummary:
    checked: int = 0
    applied: int = 0
    unchanged: int = 0
    failed: int = 0
    failed_payment_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "applied": self.applied,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "failed_payment_ids": self.failed_payment_ids,
        }


class PaymentMonitoringService(BaseService):
    """
    Polls open crypto payments.

    Args:
        orchestrator: Reconciles each polled status
        failures: Receives provider errors (defaults to the orchestrator's)
    """

    def __init__(
        self,
        orchestrator: ReconciliationOrchestrator,
        failures: PaymentFailureService | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.failures = failures or orchestrator.failures

    @property
    def max_age_days(self) -> int:
        return int(getattr(settings, "CRYPTO_MONITOR_MAX_AGE_DAYS", DEFAULT_MAX_AGE_DAYS))

    def open_payments(self, limit: int = DEFAULT_BATCH_SIZE):
        cutoff = timezone.now() - timedelta(days=self.max_age_days)
        return (
            UnifiedPayment.objects.non_terminal()
            .filter(provider=PaymentProvider.CRYPTO, created_at__gte=cutoff)
            .order_by("created_at")[:limit]
        )

    def run(self, limit: int = DEFAULT_BATCH_SIZE) -> MonitorSummary:
        summary = MonitorSummary()

        for payment in self.open_payments(limit):
            summary.checked += 1
            try:
                outcome = self.orchestrator.sync_payment(payment)
            except ProviderError as e:
                logger.warning(
                    "Crypto payment status check failed",
                    extra={"payment_id": str(payment.id), "error": str(e)},
                )
                self.failures.handle_failure(payment, payment.status, f"monitoring error: {e}")
                summary.failed += 1
                summary.failed_payment_ids.append(str(payment.id))
                continue

            if isinstance(outcome, Applied) and outcome.previous_status != outcome.status:
                summary.applied += 1
            elif isinstance(outcome, Failed):
                summary.failed += 1
                summary.failed_payment_ids.append(str(payment.id))
            else:
                summary.unchanged += 1

        logger.info("Crypto payment monitor run finished", extra=summary.to_dict())
        return summary


__all__ = ["MonitorSummary", "PaymentMonitoringService"]
