"""
Provider event handlers.

A registry keyed by (provider, event_type). Every handler turns a verified
ProviderEvent into a reconciliation unit of work; unknown event types are
logged and acknowledged so providers stop redelivering them.

Usage:
    from reconciliation.webhooks.handlers import dispatch, register_handler

    @register_handler(PaymentProvider.CARD, "charge.dispute.created")
    def handle_dispute(event: ProviderEvent, orchestrator) -> ReconciliationOutcome:
        ...

    outcome = dispatch(event)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

from reconciliation.adapters.nowpayments_adapter import IPN_EVENT_TYPE
from reconciliation.services.orchestrator import (
    CANCEL_EVENT_TYPE,
    SYNC_EVENT_TYPE,
    ReconciliationOrchestrator,
)
from reconciliation.state_machines import PaymentProvider

if TYPE_CHECKING:
    from reconciliation.adapters.base import ProviderEvent
    from reconciliation.outcomes import ReconciliationOutcome

    Handler = Callable[[ProviderEvent, ReconciliationOrchestrator], ReconciliationOutcome]


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


WEBHOOK_HANDLERS: dict[tuple[str, str], Handler] = {}


def register_handler(provider: str, event_type: str) -> Callable:
    """
    Decorator to register a provider event handler.

    Args:
        provider: PaymentProvider value
        event_type: Provider event type (e.g., "payment_intent.succeeded")
    """

    def decorator(func: Handler) -> Handler:
        WEBHOOK_HANDLERS[(provider, event_type)] = func
        logger.debug(f"Registered handler for {provider}:{event_type}")
        return func

    return decorator


def dispatch(
    event: ProviderEvent,
    orchestrator: ReconciliationOrchestrator | None = None,
) -> ReconciliationOutcome | None:
    """
    Route an event to its handler.

    Returns:
        The handler's outcome, or None when no handler is registered
    """
    handler = WEBHOOK_HANDLERS.get((event.provider, event.event_type))
    if handler is None:
        logger.info(
            f"No handler registered for event type: {event.event_type}",
            extra={"provider": event.provider, "event_id": event.event_id},
        )
        return None

    logger.info(
        f"Dispatching {event.event_type} to handler",
        extra={"provider": event.provider, "event_id": event.event_id},
    )
    return handler(event, orchestrator or ReconciliationOrchestrator())


# =============================================================================
# Card (Stripe) Handlers
# =============================================================================


@register_handler(PaymentProvider.CARD, "payment_intent.succeeded")
@register_handler(PaymentProvider.CARD, "payment_intent.processing")
@register_handler(PaymentProvider.CARD, "payment_intent.requires_action")
@register_handler(PaymentProvider.CARD, "payment_intent.payment_failed")
@register_handler(PaymentProvider.CARD, "payment_intent.canceled")
def handle_payment_intent_event(
    event: ProviderEvent,
    orchestrator: ReconciliationOrchestrator,
) -> ReconciliationOutcome:
    """
    PaymentIntent lifecycle events.

    The adapter already mapped payment_failed events to a failure status
    and pulled decline details into the event metadata.
    """
    if event.event_type == "payment_intent.payment_failed":
        logger.info(
            "Card payment failed",
            extra={
                "provider_payment_id": event.provider_payment_id,
                "decline_code": event.metadata.get("decline_code"),
            },
        )
    return orchestrator.reconcile(event)


# =============================================================================
# Crypto (NOWPayments) Handlers
# =============================================================================


@register_handler(PaymentProvider.CRYPTO, IPN_EVENT_TYPE)
def handle_payment_status_ipn(
    event: ProviderEvent,
    orchestrator: ReconciliationOrchestrator,
) -> ReconciliationOutcome:
    """NOWPayments IPN: one callback per invoice status change."""
    if event.raw_status == "partially_paid":
        logger.warning(
            "Crypto invoice partially paid",
            extra={
                "provider_payment_id": event.provider_payment_id,
                "actually_paid": event.metadata.get("actually_paid"),
                "pay_amount": event.metadata.get("pay_amount"),
            },
        )
    return orchestrator.reconcile(event)


# =============================================================================
# Synthetic Events
# =============================================================================


@register_handler(PaymentProvider.CARD, SYNC_EVENT_TYPE)
@register_handler(PaymentProvider.CRYPTO, SYNC_EVENT_TYPE)
@register_handler(PaymentProvider.CARD, CANCEL_EVENT_TYPE)
@register_handler(PaymentProvider.CRYPTO, CANCEL_EVENT_TYPE)
def handle_synthetic_event(
    event: ProviderEvent,
    orchestrator: ReconciliationOrchestrator,
) -> ReconciliationOutcome:
    """Status syncs and cancellations queued for redelivery."""
    return orchestrator.reconcile(event)


__all__ = ["WEBHOOK_HANDLERS", "dispatch", "register_handler"]
