"""
Card provider adapter backed by Stripe PaymentIntents.

All Stripe calls for the card provider go through this adapter so error
translation, timeouts, idempotency and logging are consistent.

Features:
- Configurable timeouts and SDK-level network retries
- Stripe errors translated to ProviderError subclasses (retryable or not)
- Structured logging with timing metrics
- Idempotency keys on every creation

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: SDK network retries (default: 2)

Usage:
    from reconciliation.adapters.stripe_adapter import StripeCardAdapter

    adapter = StripeCardAdapter()
    created = adapter.create_payment(spec)
    raw_status, payload = adapter.get_status(created.provider_payment_id)
"""

from __future__ import annotations

import json
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe
from django.conf import settings

from reconciliation.adapters.base import (
    CreatedPayment,
    PaymentSpec,
    ProviderAdapter,
    ProviderEvent,
)
from reconciliation.exceptions import (
    ProviderNotConfiguredError,
    ProviderPermanentError,
    ProviderTransientError,
    WebhookVerificationError,
)
from reconciliation.normalizer import canonical_status
from reconciliation.state_machines import PaymentProvider

SUPPORTED_CURRENCIES = frozenset(["usd", "gbp", "cad", "eur"])

# PaymentIntent metadata keys copied into UnifiedPayment.metadata.
CORRELATION_KEYS = ("renewal", "subscription_id", "cycle_end_date")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _stringify_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    """Stripe metadata values must be strings."""
    result = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, bool):
            result[key] = "true" if value else "false"
        elif isinstance(value, str):
            result[key] = value
        else:
            result[key] = json.dumps(value, default=str) if isinstance(value, (dict, list)) else str(value)
    return result


class StripeCardAdapter(ProviderAdapter):
    """
    ProviderAdapter for card payments.

    Usage:
        adapter = StripeCardAdapter()
        event = adapter.verify_webhook(request_body, stripe_signature_header)
    """

    provider = PaymentProvider.CARD

    # =========================================================================
    # Configuration
    # =========================================================================

    def _configure_stripe(self) -> None:
        api_key = getattr(settings, "STRIPE_SECRET_KEY", "")
        if not api_key:
            raise ProviderNotConfiguredError(
                "STRIPE_SECRET_KEY is not configured",
                provider=self.provider,
            )
        stripe.api_key = api_key
        stripe.max_network_retries = int(getattr(settings, "STRIPE_MAX_RETRIES", 2))
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def supports_currency(self, currency: str) -> bool:
        return (currency or "").lower() in SUPPORTED_CURRENCIES

    # =========================================================================
    # Core Operations
    # =========================================================================

    def create_payment(self, spec: PaymentSpec) -> CreatedPayment:
        """
        Create a PaymentIntent.

        Raises:
            ProviderPermanentError: Unsupported currency, invalid request, card error
            ProviderTransientError: Network, rate limit or Stripe 5xx
        """
        if not self.supports_currency(spec.currency):
            raise ProviderPermanentError(
                f"Currency {spec.currency} is not supported for card payments",
                error_code="UNSUPPORTED_CURRENCY",
                provider=self.provider,
            )

        self._configure_stripe()
        logger = self.get_logger()

        log_context = {
            "operation": "create_payment_intent",
            "amount": str(spec.amount),
            "currency": spec.currency,
            "order_id": spec.order_id,
            "idempotency_key": spec.idempotency_key,
        }
        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        metadata = _stringify_metadata(
            {"userId": spec.user_id, "orderId": spec.order_id or "", **spec.metadata}
        )
        params: dict[str, Any] = {
            "amount": to_minor_units(spec.amount),
            "currency": spec.currency,
            "description": spec.description,
            "metadata": metadata,
            "payment_method_types": ["card"],
        }
        if spec.customer_id:
            params["customer"] = spec.customer_id
        if spec.auto_renew:
            params["setup_future_usage"] = "off_session"

        try:
            intent = stripe.PaymentIntent.create(
                **params,
                idempotency_key=spec.idempotency_key,
            )
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )

        payload = intent.to_dict()
        return CreatedPayment(
            provider_payment_id=intent.id,
            status=canonical_status(self.provider, intent.status),
            raw_status=intent.status,
            payload=payload,
            client_secret=intent.client_secret,
            metadata=self.event_metadata(payload),
            amount_usd=spec.amount if spec.currency == "usd" else None,
        )

    def get_status(self, provider_payment_id: str) -> tuple[str, dict[str, Any]]:
        self._configure_stripe()
        log_context = {
            "operation": "retrieve_payment_intent",
            "payment_intent_id": provider_payment_id,
        }
        start_time = time.time()

        try:
            intent = stripe.PaymentIntent.retrieve(provider_payment_id)
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        self.get_logger().debug(
            "Stripe operation completed",
            extra={**log_context, "status": intent.status},
        )
        return intent.status, intent.to_dict()

    def cancel(self, provider_payment_id: str) -> str:
        self._configure_stripe()
        log_context = {
            "operation": "cancel_payment_intent",
            "payment_intent_id": provider_payment_id,
        }
        start_time = time.time()

        try:
            intent = stripe.PaymentIntent.cancel(provider_payment_id)
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        self.get_logger().info("PaymentIntent canceled", extra=log_context)
        return intent.status

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook(self, raw_body: bytes, signature: str) -> ProviderEvent:
        """
        Verify the Stripe-Signature header and parse the event.

        payment_intent.payment_failed carries status requires_payment_method
        on the intent; it is reported as raw status payment_failed so the
        normalizer maps it to FAILED.
        """
        secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        if not secret:
            raise ProviderNotConfiguredError(
                "STRIPE_WEBHOOK_SECRET is not configured",
                provider=self.provider,
            )

        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
            data = json.loads(raw_body)
        except stripe.SignatureVerificationError as e:
            raise WebhookVerificationError(
                "Invalid webhook signature",
                provider=self.provider,
                provider_code="signature_verification_failed",
                details={"error": str(e)},
            ) from e
        except ValueError as e:
            raise WebhookVerificationError(
                "Malformed webhook payload",
                provider=self.provider,
                details={"error": str(e)},
            ) from e

        event_type = data.get("type", "")
        obj = (data.get("data") or {}).get("object") or {}

        if event_type == "payment_intent.payment_failed":
            raw_status = "payment_failed"
        else:
            raw_status = obj.get("status", "")

        provider_payment_id = obj.get("id", "")
        if obj.get("object") != "payment_intent" and obj.get("payment_intent"):
            provider_payment_id = obj["payment_intent"]

        return ProviderEvent(
            provider=self.provider,
            event_id=data.get("id", ""),
            event_type=event_type,
            provider_payment_id=provider_payment_id,
            raw_status=raw_status,
            metadata=self.event_metadata(obj),
            payload=obj,
        )

    def event_metadata(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Decline details, captured amount and renewal correlation fields."""
        result: dict[str, Any] = {}
        intent_metadata = payload.get("metadata") or {}
        for key in CORRELATION_KEYS:
            if intent_metadata.get(key) not in (None, ""):
                result[key] = intent_metadata[key]

        error = payload.get("last_payment_error") or {}
        if error.get("decline_code") or error.get("code"):
            result["decline_code"] = error.get("decline_code") or error.get("code")
        if error.get("message"):
            result["failure_reason"] = error["message"]

        if payload.get("amount_received"):
            result["amount_received_cents"] = payload["amount_received"]
        return result

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _handle_stripe_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to ProviderError subclasses.

        Raises:
            ProviderPermanentError: Card error or invalid request
            ProviderNotConfiguredError: Authentication failure
            ProviderTransientError: Rate limit, connection, Stripe 5xx, unknown
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None) or getattr(error, "code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise ProviderPermanentError(
                str(error.user_message or error),
                error_code="CARD_DECLINED",
                provider=self.provider,
                provider_code=error.code,
                decline_code=decline_code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise ProviderPermanentError(
                str(error),
                provider=self.provider,
                provider_code=error.code,
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise ProviderNotConfiguredError(
                "Stripe authentication failed",
                provider=self.provider,
                provider_code="authentication_error",
            ) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise ProviderTransientError(
                "Stripe rate limit exceeded. Please retry.",
                provider=self.provider,
                provider_code="rate_limit",
            ) from error

        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            logger.error("Stripe unavailable", extra=log_context, exc_info=True)
            raise ProviderTransientError(
                "Stripe service unavailable. Please retry.",
                provider=self.provider,
                provider_code="api_unavailable",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise ProviderTransientError(
            f"Unexpected Stripe error: {error}",
            provider=self.provider,
            provider_code="unknown_error",
        ) from error


__all__ = ["SUPPORTED_CURRENCIES", "StripeCardAdapter", "to_minor_units"]
