"""
Data types for credit ledger operations.

Types:
    AllocationResult: Outcome of crediting a settled payment
    PendingAllocation: A settled payment whose credits are not yet allocated
    PaidAmount: How much USD was actually received for a payment

Usage:
    result = allocation_service.allocate(user_id, payment_id, Decimal("50.00"), payload)
    if result.success and not result.data.duplicate:
        print(result.data.balance_after)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

CREDIT_QUANTUM = Decimal("0.01")


def to_credits(value: Any) -> Decimal:
    """Round a USD amount to credits (2 places, half up). 1 credit = 1 USD."""
    return Decimal(str(value)).quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class AllocationResult:
    """
    Attributes:
        transaction_id: Ledger row holding the allocation
        credit_amount: Credits added
        balance_after: User balance right after this allocation
        duplicate: True when a previous allocation was returned unchanged
    """

    transaction_id: str
    credit_amount: Decimal
    balance_after: Decimal
    duplicate: bool = False

    def to_cache(self) -> dict[str, str]:
        return {
            "transaction_id": self.transaction_id,
            "credit_amount": str(self.credit_amount),
            "balance_after": str(self.balance_after),
        }

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> AllocationResult:
        return cls(
            transaction_id=str(data["transaction_id"]),
            credit_amount=Decimal(str(data["credit_amount"])),
            balance_after=Decimal(str(data["balance_after"])),
            duplicate=True,
        )


@dataclass(frozen=True)
class PaidAmount:
    """
    Attributes:
        paid_usd: USD actually received
        paid_ratio: paid_usd / expected, when expected is known
        source: outcome_amount, actually_paid_ratio or expected
    """

    paid_usd: Decimal
    paid_ratio: Decimal | None
    source: str

    def to_metadata(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "paidUsd": str(data["paid_usd"]),
            "paidRatio": str(data["paid_ratio"]) if data["paid_ratio"] is not None else None,
            "allocationSource": data["source"],
        }


@dataclass(frozen=True)
class PendingAllocation:
    payment_id: str
    user_id: str
    transaction_id: str
    amount_usd: Decimal | None
