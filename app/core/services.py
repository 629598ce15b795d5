"""
Service layer building blocks.

- ServiceResult: Outcome of an operation whose failures are expected
  (validation, business rules), returned instead of raised
- BaseService: Base class giving every service a class-named logger

Exceptions stay reserved for conditions callers do not branch on
(database errors, provider outages, bugs).

Usage:
    from core.services import BaseService, ServiceResult

    class RefundService(BaseService):
        def reject(self, refund_id: str, reason: str) -> ServiceResult[RefundRequest]:
            refund = RefundRequest.objects.filter(id=refund_id).first()
            if refund is None:
                return ServiceResult.failure("Refund not found", error_code="REFUND_NOT_FOUND")
            ...
            self.get_logger().info("Refund rejected", extra={"refund_id": refund_id})
            return ServiceResult.success(refund)

    result = RefundService(collaborators).reject(refund_id, "duplicate request")
    if not result:
        logger.warning(result.error, extra={"error_code": result.error_code})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Success/failure wrapper for service operations.

    Attributes:
        success: Whether the operation succeeded
        data: Result data when successful
        error: Human-readable message when failed
        error_code: Machine-readable code callers branch on
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: str | None = None) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    @classmethod
    def from_exception(cls, exc: Exception, error_code: str | None = None) -> ServiceResult[T]:
        """
        Failed result carrying an exception's message.

        The code defaults to the exception's own error_code for application
        errors, otherwise to its upper-cased class name.
        """
        code = error_code or getattr(exc, "error_code", None) or exc.__class__.__name__.upper()
        return cls(
            success=False,
            error=getattr(exc, "message", None) or str(exc),
            error_code=code,
        )

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """
    Base class for services.

    Services hold only configuration and the collaborators passed to their
    constructor, so tests build them with fakes instead of patching modules.
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")
