"""
State machine enums for reconciliation models.

Usage:
    from reconciliation.state_machines import PaymentStatus, RefundState
"""

from reconciliation.state_machines.states import (
    FAILURE_PAYMENT_STATUSES,
    RETRYABLE_FAILURE_TYPES,
    TERMINAL_PAYMENT_STATUSES,
    AdminTaskPriority,
    AdminTaskStatus,
    AdminTaskType,
    CreditTransactionStatus,
    CreditTransactionType,
    DeclineKind,
    FailureAction,
    FailureType,
    PaymentProvider,
    PaymentPurpose,
    PaymentStatus,
    RefundReason,
    RefundState,
    RenewalStatus,
)

__all__ = [
    "FAILURE_PAYMENT_STATUSES",
    "RETRYABLE_FAILURE_TYPES",
    "TERMINAL_PAYMENT_STATUSES",
    "AdminTaskPriority",
    "AdminTaskStatus",
    "AdminTaskType",
    "CreditTransactionStatus",
    "CreditTransactionType",
    "DeclineKind",
    "FailureAction",
    "FailureType",
    "PaymentProvider",
    "PaymentPurpose",
    "PaymentStatus",
    "RefundReason",
    "RefundState",
    "RenewalStatus",
]
