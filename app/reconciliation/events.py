"""
Event ingestion gate.

Every provider event passes through record_event() before it is allowed
to change anything. The receipt insert runs inside a savepoint so a
duplicate (IntegrityError on the unique constraint) rolls back only the
insert and leaves the surrounding unit of work usable.

Usage:
    from reconciliation.events import derive_event_id, record_event

    event_id = event.event_id or derive_event_id(raw_body)

    with transaction.atomic():
        if not record_event(PaymentProvider.CRYPTO, event_id, "payment.finished"):
            return DuplicateIgnored(payment_id, event_id)
        apply_side_effects()
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import TYPE_CHECKING

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from reconciliation.models import PaymentEventReceipt

if TYPE_CHECKING:
    from collections.abc import Mapping
    from typing import Any


logger = logging.getLogger(__name__)


def derive_event_id(raw_payload: bytes | str | Mapping[str, Any]) -> str:
    """
    Deterministic event id for providers that do not send one.

    Raw bodies are hashed as received. Parsed payloads are hashed as
    key-sorted compact JSON, so the same payload always yields the same id.
    """
    if isinstance(raw_payload, bytes):
        data = raw_payload
    elif isinstance(raw_payload, str):
        data = raw_payload.encode("utf-8")
    else:
        data = json.dumps(
            raw_payload,
            sort_keys=True,
            separators=(",", ":"),
            cls=DjangoJSONEncoder,
        ).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def record_event(
    provider: str,
    event_id: str,
    event_type: str,
    order_id: str | None = None,
    payment_id: str | None = None,
) -> bool:
    """
    Insert the receipt for an event.

    Returns:
        True if this is the first time the event is seen,
        False if a receipt already exists
    """
    try:
        with transaction.atomic():
            PaymentEventReceipt.objects.create(
                provider=provider,
                event_id=event_id,
                event_type=event_type or "",
                order_id=order_id,
                payment_id=payment_id,
            )
    except IntegrityError:
        logger.info(
            "Duplicate provider event",
            extra={"provider": provider, "event_id": event_id, "event_type": event_type},
        )
        return False
    return True


def is_recorded(provider: str, event_id: str) -> bool:
    return PaymentEventReceipt.objects.filter(provider=provider, event_id=event_id).exists()


__all__ = ["derive_event_id", "is_recorded", "record_event"]
