"""
RefundRequest model for user-initiated credit refunds.

A RefundRequest asks for credits bought with a settled payment to be
returned. An admin approves or rejects it; an approved request is
processed compensating-transaction style (credit reversal first, then the
provider-side trigger, with an explicit rollback entry on failure).

Usage:
    from reconciliation.models import RefundRequest

    refund = RefundRequest.objects.create(
        user_id="42",
        payment=payment,
        amount=Decimal("25.00"),
        reason=RefundReason.USER_REQUEST,
    )

    refund.approve(admin_id="7", notes="Confirmed with user")
    refund.save()

    refund.start_processing()
    refund.save()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from reconciliation.state_machines import RefundReason, RefundState

OPEN_REFUND_STATES = (
    RefundState.PENDING,
    RefundState.APPROVED,
    RefundState.PROCESSING,
    RefundState.COMPLETED,
)


class RefundRequest(UUIDPrimaryKeyMixin, BaseModel):
    """
    A request to refund the credits of one settled payment.

    State Flow:
        PENDING -> APPROVED -> PROCESSING -> COMPLETED
        PENDING -> APPROVED -> PROCESSING -> FAILED
        PENDING -> REJECTED

    Fields:
        user_id: Requesting user (must own the payment)
        payment: Settled UnifiedPayment being refunded
        amount: Credits to refund (1 credit = 1 USD)
        reason: RefundReason category
        description: Free-text explanation from the user
        state: Current FSM state
        reviewed_by / reviewed_at / admin_notes: The single review decision
        rejection_reason: Why the request was rejected
        reversal_transaction_id: Ledger row that reversed the credits
        rollback_transaction_id: Ledger row that restored them on failure
        processed_at: When processing finished (either way)
        failure_reason: Why processing failed

    Note:
        At most one non-rejected, non-failed refund may exist per payment
        (partial unique constraint).
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    user_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="User who requested the refund",
    )

    payment = models.ForeignKey(
        "reconciliation.UnifiedPayment",
        on_delete=models.PROTECT,
        related_name="refund_requests",
        help_text="Payment being refunded",
    )

    # ==========================================================================
    # Request Details
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Credits to refund",
    )

    reason = models.CharField(
        max_length=30,
        choices=RefundReason.choices,
        default=RefundReason.USER_REQUEST,
    )

    description = models.TextField(blank=True, default="")

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=RefundState.PENDING,
        choices=RefundState.choices,
        db_index=True,
        help_text="Current state of the refund request (managed by FSM)",
    )

    # ==========================================================================
    # Review
    # ==========================================================================

    reviewed_by = models.CharField(max_length=64, blank=True, default="")
    reviewed_at = models.DateTimeField(null=True, blank=True)
    admin_notes = models.TextField(blank=True, default="")
    rejection_reason = models.TextField(blank=True, default="")

    # ==========================================================================
    # Ledger Linkage
    # ==========================================================================

    reversal_transaction_id = models.UUIDField(null=True, blank=True)
    rollback_transaction_id = models.UUIDField(null=True, blank=True)

    # ==========================================================================
    # Processing Outcome
    # ==========================================================================

    processed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True, default="")

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund Request"
        verbose_name_plural = "Refund Requests"
        indexes = [
            models.Index(fields=["state", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount__gt=0),
                name="refund_request_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["payment"],
                condition=models.Q(state__in=OPEN_REFUND_STATES),
                name="unique_open_refund_per_payment",
            ),
        ]

    def __str__(self) -> str:
        return f"RefundRequest({self.id}, {self.state}, {self.amount})"

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(field=state, source=RefundState.PENDING, target=RefundState.APPROVED)
    def approve(self, admin_id: str, notes: str = ""):
        """
        Record the approval decision.

        Transition: PENDING -> APPROVED
        """
        self.reviewed_by = admin_id
        self.reviewed_at = timezone.now()
        self.admin_notes = notes or ""

    @transition(field=state, source=RefundState.PENDING, target=RefundState.REJECTED)
    def reject(self, admin_id: str, reason: str):
        """
        Record the rejection decision.

        Transition: PENDING -> REJECTED
        """
        self.reviewed_by = admin_id
        self.reviewed_at = timezone.now()
        self.rejection_reason = reason

    @transition(field=state, source=RefundState.APPROVED, target=RefundState.PROCESSING)
    def start_processing(self):
        pass

    @transition(field=state, source=RefundState.PROCESSING, target=RefundState.COMPLETED)
    def complete(self):
        self.processed_at = timezone.now()

    @transition(field=state, source=RefundState.PROCESSING, target=RefundState.FAILED)
    def fail(self, reason: str | None = None):
        """
        Mark processing as failed.

        Transition: PROCESSING -> FAILED
        """
        self.processed_at = timezone.now()
        if reason:
            self.failure_reason = reason

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_decided(self) -> bool:
        return self.state != RefundState.PENDING

    @property
    def is_final(self) -> bool:
        return self.state in (RefundState.COMPLETED, RefundState.FAILED, RefundState.REJECTED)
