"""
Credit ledger model.

A single-entry ledger of user credit movements. A user's balance is the
sum of the amounts of their COMPLETED rows; every row records the balance
before and after it so the history can be audited line by line.

Usage:
    from reconciliation.credits.models import CreditTransaction

    CreditTransaction.objects.balance_for("42")  # Decimal("150.00")
"""

from __future__ import annotations

from decimal import Decimal

from django.db import models
from django.db.models import F, Q, Sum
from django.db.models.functions import Coalesce

from core.models import BaseModel
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

from reconciliation.state_machines import (
    CreditTransactionStatus,
    CreditTransactionType,
)

PAYMENT_COMPLETED_KEY = "paymentCompleted"


class CreditTransactionQuerySet(models.QuerySet):
    def completed(self):
        return self.filter(status=CreditTransactionStatus.COMPLETED)

    def allocated(self):
        """Purchase rows whose payment has been credited."""
        return self.filter(**{f"metadata__{PAYMENT_COMPLETED_KEY}": True})

    def balance_for(self, user_id: str) -> Decimal:
        result = self.completed().filter(user_id=user_id).aggregate(
            total=Coalesce(
                Sum("amount"),
                Decimal("0"),
                output_field=models.DecimalField(max_digits=14, decimal_places=2),
            )
        )
        return result["total"]


class CreditTransaction(UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    One movement of user credits.

    Fields:
        user_id: Owner of the balance
        transaction_type: purchase, refund_reversal, refund_rollback, admin_adjustment
        amount: Signed credits (positive adds, negative removes)
        balance_before / balance_after: Balance around this row
        status: PENDING rows do not count toward the balance
        payment_id: UnifiedPayment this row belongs to
        refund_id: RefundRequest this row belongs to
        related_transaction_id: Row this one compensates (rollback -> reversal)
        description: Human-readable description
        created_by: Service or admin that wrote the row
        metadata: paymentCompleted flag plus allocation audit fields

    Constraints:
        - balance_after = balance_before + amount
        - one purchase row per payment
        - one reversal and one rollback row per refund

    Note:
        A purchase row is created PENDING with amount 0 when the payment
        starts, and is completed in place when the payment settles. After
        that, amount and balances are never rewritten.
    """

    # ==========================================================================
    # Owner & Type
    # ==========================================================================

    user_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="User whose balance this row changes",
    )

    transaction_type = models.CharField(
        max_length=30,
        choices=CreditTransactionType.choices,
        db_index=True,
    )

    status = models.CharField(
        max_length=20,
        choices=CreditTransactionStatus.choices,
        default=CreditTransactionStatus.COMPLETED,
        db_index=True,
    )

    # ==========================================================================
    # Amounts
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0"),
        help_text="Signed credit amount",
    )

    balance_before = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal("0"),
    )

    balance_after = models.DecimalField(
        max_digits=14,
        decimal_places=2,
        default=Decimal("0"),
    )

    # ==========================================================================
    # References
    # ==========================================================================

    payment_id = models.UUIDField(null=True, blank=True, db_index=True)
    refund_id = models.UUIDField(null=True, blank=True, db_index=True)
    related_transaction_id = models.UUIDField(null=True, blank=True)

    description = models.TextField(blank=True, default="")

    created_by = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="Identifier of service/admin that created this row",
    )

    objects = CreditTransactionQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["user_id", "status"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(balance_after=F("balance_before") + F("amount")),
                name="credit_transaction_balance_consistent",
            ),
            models.UniqueConstraint(
                fields=["payment_id"],
                condition=Q(transaction_type=CreditTransactionType.PURCHASE),
                name="unique_purchase_per_payment",
            ),
            models.UniqueConstraint(
                fields=["refund_id", "transaction_type"],
                condition=Q(refund_id__isnull=False),
                name="unique_refund_entry_per_type",
            ),
        ]

    def __str__(self) -> str:
        return f"CreditTransaction({self.transaction_type}, {self.amount}, {self.status})"

    @property
    def payment_completed(self) -> bool:
        return bool(self.get_meta(PAYMENT_COMPLETED_KEY, False))
