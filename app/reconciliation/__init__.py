"""
Reconciliation app: canonical payments, settlement and credits.

This app handles:
- Provider status normalization (card via Stripe, crypto via NOWPayments)
- Idempotent event ingestion (event receipts)
- Per-order / per-payment advisory locking
- Reconciliation of provider events into one canonical payment lifecycle
- Exactly-once credit allocation (reconciliation.credits)
- Failure classification, retry scheduling and renewal declines
- Compensating refund workflow

Related apps:
    - commerce: Default order, subscription and coupon collaborators
    - core: Base models, exceptions and ServiceResult

Usage:
    from reconciliation.services import ReconciliationOrchestrator
    from reconciliation.adapters.base import ProviderEvent

    orchestrator = ReconciliationOrchestrator()
    outcome = orchestrator.reconcile(event)
"""
