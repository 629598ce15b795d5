"""
Crypto provider adapter backed by the NOWPayments REST API.

Crypto payments are invoices: the user sends coins to a deposit address
and NOWPayments reports progress through IPN callbacks (delayed, possibly
out of order) and through GET /payment/{id}, which the monitor polls.

Configuration (via settings):
- NOWPAYMENTS_API_KEY: API key (x-api-key header)
- NOWPAYMENTS_IPN_SECRET: Secret for IPN HMAC-SHA512 signatures
- NOWPAYMENTS_API_URL: Base URL (default: https://api.nowpayments.io/v1)
- NOWPAYMENTS_IPN_CALLBACK_URL: Where NOWPayments should send IPNs
- NOWPAYMENTS_TIMEOUT_SECONDS: HTTP timeout (default: 15)
- CRYPTO_PAYMENT_EXPIRY_MINUTES: Invoice lifetime (default: 30)

Usage:
    from reconciliation.adapters.nowpayments_adapter import NowPaymentsAdapter

    adapter = NowPaymentsAdapter()
    if adapter.is_currency_supported("btc"):
        created = adapter.create_payment(spec)
        print(created.metadata["pay_address"])
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any

import requests
from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

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
from reconciliation.state_machines import PaymentProvider, PaymentStatus

DEFAULT_API_URL = "https://api.nowpayments.io/v1"
DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_EXPIRY_MINUTES = 30

IPN_EVENT_TYPE = "payment_status"

CURRENCIES_CACHE_KEY = "nowpayments:currencies"
CURRENCIES_CACHE_TTL = 60 * 60

# Invoice fields copied into UnifiedPayment.metadata.
CORRELATION_KEYS = (
    "pay_address",
    "pay_currency",
    "pay_amount",
    "actually_paid",
    "price_amount",
    "outcome_amount",
    "outcome_currency",
    "payin_hash",
)


def ipn_signature(payload: dict[str, Any], secret: str) -> str:
    """HMAC-SHA512 hex digest over the key-sorted compact JSON payload."""
    message = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()


class NowPaymentsAdapter(ProviderAdapter):
    """
    ProviderAdapter for crypto invoices.

    Args:
        session: requests.Session to use (injected in tests)
    """

    provider = PaymentProvider.CRYPTO

    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()

    # =========================================================================
    # Configuration
    # =========================================================================

    @property
    def base_url(self) -> str:
        return getattr(settings, "NOWPAYMENTS_API_URL", DEFAULT_API_URL).rstrip("/")

    @property
    def timeout(self) -> float:
        return float(getattr(settings, "NOWPAYMENTS_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS))

    def _headers(self) -> dict[str, str]:
        api_key = getattr(settings, "NOWPAYMENTS_API_KEY", "")
        if not api_key:
            raise ProviderNotConfiguredError(
                "NOWPAYMENTS_API_KEY is not configured",
                provider=self.provider,
            )
        return {"x-api-key": api_key, "Content-Type": "application/json"}

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """
        Perform one API call and translate failures.

        Raises:
            ProviderTransientError: Timeout, connection error, 429 or 5xx
            ProviderPermanentError: Any other non-2xx answer
        """
        url = f"{self.base_url}{path}"
        headers = self._headers()
        logger = self.get_logger()
        log_context = {"operation": f"{method} {path}"}
        start_time = time.time()

        try:
            response = self.session.request(
                method,
                url,
                params=params,
                data=json.dumps(body, default=str) if body is not None else None,
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            logger.warning(
                "NOWPayments unreachable",
                extra={**log_context, "error": str(e)},
            )
            raise ProviderTransientError(
                f"Could not reach NOWPayments: {e}",
                provider=self.provider,
                provider_code="network_error",
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning(
                "NOWPayments unavailable",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise ProviderTransientError(
                data.get("message") if isinstance(data, dict) and data.get("message")
                else f"HTTP {response.status_code}",
                provider=self.provider,
                provider_code=str(response.status_code),
            )

        if not response.ok:
            logger.error(
                "NOWPayments rejected request",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise ProviderPermanentError(
                data.get("message") if isinstance(data, dict) and data.get("message")
                else f"HTTP {response.status_code}",
                provider=self.provider,
                provider_code=str(response.status_code),
                details={"response": data},
            )

        logger.debug(
            "NOWPayments call completed",
            extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return data

    # =========================================================================
    # Core Operations
    # =========================================================================

    def create_payment(self, spec: PaymentSpec) -> CreatedPayment:
        if not spec.pay_currency:
            raise ProviderPermanentError(
                "pay_currency is required for crypto payments",
                error_code="PAY_CURRENCY_REQUIRED",
                provider=self.provider,
            )

        body = {
            "price_amount": str(spec.amount),
            "price_currency": spec.currency,
            "pay_currency": spec.pay_currency.lower(),
            "order_id": spec.order_id or spec.idempotency_key,
            "order_description": spec.description,
        }
        callback_url = getattr(settings, "NOWPAYMENTS_IPN_CALLBACK_URL", "")
        if callback_url:
            body["ipn_callback_url"] = callback_url

        data = self._request("POST", "/payment", body=body)
        raw_status = data.get("payment_status", "waiting")
        expiry_minutes = int(getattr(settings, "CRYPTO_PAYMENT_EXPIRY_MINUTES", DEFAULT_EXPIRY_MINUTES))

        self.get_logger().info(
            "NOWPayments invoice created",
            extra={
                "provider_payment_id": data.get("payment_id"),
                "order_id": spec.order_id,
                "pay_currency": spec.pay_currency,
                "status": raw_status,
            },
        )

        return CreatedPayment(
            provider_payment_id=str(data["payment_id"]),
            status=canonical_status(self.provider, raw_status),
            raw_status=raw_status,
            payload=data,
            metadata=self.event_metadata(data),
            amount_usd=spec.amount if spec.currency == "usd" else None,
            expires_at=timezone.now() + timedelta(minutes=expiry_minutes),
        )

    def get_status(self, provider_payment_id: str) -> tuple[str, dict[str, Any]]:
        data = self._request("GET", f"/payment/{provider_payment_id}")
        return data.get("payment_status", ""), data

    def cancel(self, provider_payment_id: str) -> str:
        """
        NOWPayments has no cancel endpoint; unpaid invoices lapse on their
        own. Reports the canonical expired status without calling the API.
        """
        self.get_logger().info(
            "Crypto invoice left to expire",
            extra={"provider_payment_id": provider_payment_id},
        )
        return PaymentStatus.EXPIRED

    # =========================================================================
    # Crypto-only Queries
    # =========================================================================

    def get_min_amount(self, currency_from: str, currency_to: str = "usd") -> Decimal:
        data = self._request(
            "GET",
            "/min-amount",
            params={"currency_from": currency_from.lower(), "currency_to": currency_to.lower()},
        )
        return Decimal(str(data.get("min_amount", "0")))

    def get_estimate(self, amount: Decimal, currency_from: str, currency_to: str) -> Decimal:
        data = self._request(
            "GET",
            "/estimate",
            params={
                "amount": str(amount),
                "currency_from": currency_from.lower(),
                "currency_to": currency_to.lower(),
            },
        )
        return Decimal(str(data.get("estimated_amount", "0")))

    def get_currencies(self) -> list[str]:
        """Lowercase tickers accepted by the account, cached for an hour."""
        tickers = cache.get(CURRENCIES_CACHE_KEY)
        if tickers is None:
            data = self._request("GET", "/currencies")
            currencies = data.get("currencies", []) if isinstance(data, dict) else data
            tickers = sorted(
                {
                    (c.get("ticker", "") if isinstance(c, dict) else str(c)).lower()
                    for c in currencies
                }
            )
            cache.set(CURRENCIES_CACHE_KEY, tickers, timeout=CURRENCIES_CACHE_TTL)
        return tickers

    def is_currency_supported(self, currency: str) -> bool:
        return (currency or "").lower() in self.get_currencies()

    def supports_currency(self, currency: str) -> bool:
        return self.is_currency_supported(currency)

    # =========================================================================
    # Webhooks (IPN)
    # =========================================================================

    def verify_webhook(self, raw_body: bytes, signature: str) -> ProviderEvent:
        """
        Verify the x-nowpayments-sig header and parse the IPN.

        IPNs carry no event id; the intake assigns a payload hash.
        """
        secret = getattr(settings, "NOWPAYMENTS_IPN_SECRET", "")
        if not secret:
            raise ProviderNotConfiguredError(
                "NOWPAYMENTS_IPN_SECRET is not configured",
                provider=self.provider,
            )
        if not signature:
            raise WebhookVerificationError("Missing webhook signature", provider=self.provider)

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookVerificationError(
                "Malformed webhook payload",
                provider=self.provider,
                details={"error": str(e)},
            ) from e
        if not isinstance(payload, dict):
            raise WebhookVerificationError("Malformed webhook payload", provider=self.provider)

        expected = ipn_signature(payload, secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookVerificationError(
                "Invalid webhook signature",
                provider=self.provider,
                provider_code="signature_verification_failed",
            )

        if payload.get("payment_id") in (None, ""):
            raise WebhookVerificationError(
                "IPN payload has no payment_id",
                provider=self.provider,
            )

        return ProviderEvent(
            provider=self.provider,
            event_id="",
            event_type=IPN_EVENT_TYPE,
            provider_payment_id=str(payload["payment_id"]),
            raw_status=payload.get("payment_status", ""),
            metadata=self.event_metadata(payload),
            payload=payload,
        )

    def event_metadata(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            key: payload[key]
            for key in CORRELATION_KEYS
            if payload.get(key) not in (None, "")
        }


__all__ = ["IPN_EVENT_TYPE", "NowPaymentsAdapter", "ipn_signature"]
