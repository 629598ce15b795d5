"""
Credits - single-entry credit ledger and exactly-once allocation.

Users buy credits (1 credit = 1 USD) with settled payments and lose them
again through refunds. Every movement is one CreditTransaction row with
balance_before / balance_after recorded under a per-user lock.

Public API:
    Models:
        CreditTransaction - One signed movement of credits

    Services:
        CreditLedger - Balance reads and ledger writes
        CreditAllocationService - Settled payment -> credits, exactly once

    Types:
        AllocationResult - Result of an allocation (duplicate flag on replay)
        PaidAmount - USD actually received for a payment
        PendingAllocation - Settled payment still waiting for its credits

    Exceptions:
        CreditError - Base exception for credit operations
        InsufficientCredits - Balance would go negative
        InvalidCreditAmount - Zero or malformed amount

Usage:
    from reconciliation.credits import CreditLedger, InsufficientCredits

    ledger = CreditLedger()
    try:
        ledger.record_entry(user_id, CreditTransactionType.REFUND_REVERSAL, Decimal("-25.00"))
    except InsufficientCredits as e:
        print(f"Need {e.required}, have {e.available}")
"""

from .exceptions import CreditError, InsufficientCredits, InvalidCreditAmount
from .models import CreditTransaction
from .services import CreditAllocationService, CreditLedger
from .types import AllocationResult, PaidAmount, PendingAllocation

__all__ = [
    # Models
    "CreditTransaction",
    # Services
    "CreditAllocationService",
    "CreditLedger",
    # Types
    "AllocationResult",
    "PaidAmount",
    "PendingAllocation",
    # Exceptions
    "CreditError",
    "InsufficientCredits",
    "InvalidCreditAmount",
]
