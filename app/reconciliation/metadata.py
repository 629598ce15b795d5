"""
Typed view over the UnifiedPayment metadata bag.

Provider correlation fields travel in UnifiedPayment.metadata, a JSON
object that is merged across updates. Recognized keys are parsed into
typed attributes at the boundary; unrecognized keys are carried through
untouched so newer writers never lose data to older readers.

Schema version 1 keys:
    renewal (bool)              Payment renews an existing subscription
    subscription_id (str)       Subscription being renewed
    cycle_end_date (date)       End date of the billing cycle being paid
    pay_address (str)           Crypto deposit address
    pay_currency (str)          Crypto currency the user pays in
    pay_amount (Decimal)        Crypto amount requested
    actually_paid (Decimal)     Crypto amount received
    price_amount (Decimal)      Invoice price in price_currency
    outcome_amount (Decimal)    Settled amount in outcome_currency
    outcome_currency (str)      Settlement currency
    payin_hash (str)            On-chain transaction hash
    decline_code (str)          Card decline code
    failure_reason (str)        Free-text failure reason from the provider
    amount_received_cents (int) Card amount captured, smallest unit

Usage:
    from reconciliation.metadata import PaymentMetadata

    meta = PaymentMetadata.from_dict(payment.metadata)
    if meta.renewal:
        renew(meta.subscription_id, meta.cycle_end_date)

    payment.merge_metadata(PaymentMetadata(pay_address="bc1q...").to_dict())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
SCHEMA_VERSION_KEY = "schema_version"

_TRUE_STRINGS = frozenset(["true", "1", "yes", "on"])


def _to_bool(value: Any) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in _TRUE_STRINGS


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("Dropping non-numeric metadata value", extra={"value": value})
        return None


def _to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        logger.warning("Dropping non-integer metadata value", extra={"value": value})
        return None


def _to_date(value: Any) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        logger.warning("Dropping unparseable metadata date", extra={"value": value})
        return None


def _to_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


_PARSERS = {
    "renewal": _to_bool,
    "subscription_id": _to_str,
    "cycle_end_date": _to_date,
    "pay_address": _to_str,
    "pay_currency": _to_str,
    "pay_amount": _to_decimal,
    "actually_paid": _to_decimal,
    "price_amount": _to_decimal,
    "outcome_amount": _to_decimal,
    "outcome_currency": _to_str,
    "payin_hash": _to_str,
    "decline_code": _to_str,
    "failure_reason": _to_str,
    "amount_received_cents": _to_int,
}


@dataclass(frozen=True)
class PaymentMetadata:
    """Recognized metadata keys plus an untouched pass-through remainder."""

    renewal: bool | None = None
    subscription_id: str | None = None
    cycle_end_date: date | None = None
    pay_address: str | None = None
    pay_currency: str | None = None
    pay_amount: Decimal | None = None
    actually_paid: Decimal | None = None
    price_amount: Decimal | None = None
    outcome_amount: Decimal | None = None
    outcome_currency: str | None = None
    payin_hash: str | None = None
    decline_code: str | None = None
    failure_reason: str | None = None
    amount_received_cents: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def known_keys(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls) if f.name != "extra")

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> PaymentMetadata:
        """Parse a raw metadata dict; unknown keys land in `extra`."""
        raw = dict(raw or {})
        known = {}
        extra = {}
        for key, value in raw.items():
            parser = _PARSERS.get(key)
            if parser is None:
                if key != SCHEMA_VERSION_KEY:
                    extra[key] = value
                continue
            known[key] = parser(value)
        return cls(extra=extra, **known)

    def to_dict(self) -> dict[str, Any]:
        """
        JSON-safe dict for merging into UnifiedPayment.metadata.

        None-valued known keys are omitted so a merge never erases them.
        """
        result: dict[str, Any] = dict(self.extra)
        for key in self.known_keys():
            value = getattr(self, key)
            if value is None:
                continue
            if isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, date):
                value = value.isoformat()
            result[key] = value
        result[SCHEMA_VERSION_KEY] = SCHEMA_VERSION
        return result

    @property
    def is_renewal(self) -> bool:
        return bool(self.renewal)


__all__ = ["SCHEMA_VERSION", "PaymentMetadata"]
