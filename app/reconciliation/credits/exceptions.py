"""
Credit-ledger exceptions.

Exception Hierarchy:
    CreditError (base)
    ├── InsufficientCredits - Balance would go negative
    └── InvalidCreditAmount - Amount outside allowed bounds

Usage:
    from reconciliation.credits.exceptions import InsufficientCredits

    if balance < amount:
        raise InsufficientCredits(user_id, required=amount, available=balance)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError

if TYPE_CHECKING:
    from decimal import Decimal


class CreditError(BaseApplicationError):
    """Base exception for credit ledger operations."""

    default_error_code: str = "CREDIT_ERROR"


class InsufficientCredits(CreditError):
    """
    Raised when a debit would take a user's balance below zero.

    Attributes:
        user_id: User whose balance was checked
        required: Credits the operation needed
        available: Credits the user had
    """

    default_error_code: str = "INSUFFICIENT_CREDITS"

    def __init__(self, user_id: str, required: Decimal, available: Decimal):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"User {user_id} has {available} credits, {required} required",
            details={
                "user_id": user_id,
                "required": str(required),
                "available": str(available),
            },
        )


class InvalidCreditAmount(CreditError):
    default_error_code: str = "INVALID_CREDIT_AMOUNT"


__all__ = ["CreditError", "InsufficientCredits", "InvalidCreditAmount"]
