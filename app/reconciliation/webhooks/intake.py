"""
Webhook intake.

Verifies an inbound provider callback and queues it for reconciliation.
Nothing here touches payment state: a delivery that fails verification is
rejected without side effects, and a verified one is handed to the
process_provider_event task, whose unit of work does the dedupe.

Usage:
    from reconciliation.webhooks import receive_webhook

    result = receive_webhook(
        PaymentProvider.CARD,
        request.body,
        request.headers.get("Stripe-Signature", ""),
    )
    status = 200 if result.success else 400
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from core.services import ServiceResult

from reconciliation.adapters import get_adapter
from reconciliation.events import derive_event_id, is_recorded
from reconciliation.exceptions import ProviderNotConfiguredError, WebhookVerificationError

if TYPE_CHECKING:
    from collections.abc import Callable
    from typing import Any

    from reconciliation.adapters.base import ProviderAdapter, ProviderEvent


logger = logging.getLogger(__name__)


def _enqueue(event: ProviderEvent) -> None:
    from reconciliation.tasks import process_provider_event

    process_provider_event.delay(event.to_dict())


def receive_webhook(
    provider: str,
    raw_body: bytes,
    signature: str,
    adapter_factory: Callable[[str], ProviderAdapter] = get_adapter,
    enqueue: Callable[[ProviderEvent], None] = _enqueue,
) -> ServiceResult[dict[str, Any]]:
    """
    Verify and queue one provider callback.

    Events without a provider event id (NOWPayments IPNs) get a sha256 of
    the raw body, so a redelivered IPN maps to the same receipt.

    Returns:
        ServiceResult with {"event_id", "event_type", "queued"}, or failure
        with WEBHOOK_VERIFICATION_FAILED / PROVIDER_NOT_CONFIGURED
    """
    try:
        adapter = adapter_factory(provider)
        event = adapter.verify_webhook(raw_body, signature)
    except WebhookVerificationError as e:
        logger.warning(
            "Webhook rejected",
            extra={"provider": provider, "error": str(e), "error_code": e.error_code},
        )
        return ServiceResult.from_exception(e)
    except ProviderNotConfiguredError as e:
        logger.error(
            "Webhook received for unconfigured provider",
            extra={"provider": provider, "error": str(e)},
        )
        return ServiceResult.from_exception(e)

    if not event.event_id:
        event = event.with_event_id(derive_event_id(raw_body))

    if is_recorded(event.provider, event.event_id):
        logger.info(
            "Webhook already processed",
            extra={"provider": provider, "event_id": event.event_id},
        )
        return ServiceResult.success(
            {"event_id": event.event_id, "event_type": event.event_type, "queued": False}
        )

    enqueue(event)
    logger.info(
        "Webhook queued",
        extra={
            "provider": provider,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "provider_payment_id": event.provider_payment_id,
        },
    )
    return ServiceResult.success(
        {"event_id": event.event_id, "event_type": event.event_type, "queued": True}
    )


__all__ = ["receive_webhook"]
