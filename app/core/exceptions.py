"""
Base exception classes shared by the domain apps.

Exception Hierarchy:
    BaseApplicationError (base)
    └── ConflictError - Lock contention and disallowed state transitions

Domain trees hang off these: reconciliation.exceptions.PaymentError and
reconciliation.credits.exceptions.CreditError.

Usage:
    from core.exceptions import BaseApplicationError

    class PaymentError(BaseApplicationError):
        default_error_code = "PAYMENT_ERROR"

    raise PaymentError("Payment not found", details={"payment_id": str(payment_id)})

Note:
    Raise these for conditions a caller cannot branch on in advance.
    Expected business outcomes are returned as core.services.ServiceResult.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Root of every application error.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code, copied onto ServiceResult.error_code
            by ServiceResult.from_exception
        details: Ids, amounts and states useful in logs and admin tasks
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


class ConflictError(BaseApplicationError):
    """The operation conflicts with the current state of a resource."""

    default_error_code: str = "CONFLICT"
