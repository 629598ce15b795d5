"""
Outcome type returned by the reconciliation orchestrator.

Callers branch on the variant instead of catching exceptions:

    outcome = orchestrator.reconcile(event)
    if isinstance(outcome, Failed) and outcome.retryable:
        raise self.retry(countdown=30)

Variants:
    Applied: The event changed (or re-confirmed) canonical state
    DuplicateIgnored: The event id was already processed
    RegressionIgnored: The event was older than the stored state
    Failed: The unit of work did not complete
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from typing import Any


@dataclass(frozen=True)
class Applied:
    payment_id: str
    previous_status: str
    status: str
    effects: tuple[str, ...] = field(default_factory=tuple)

    ok = True


@dataclass(frozen=True)
class DuplicateIgnored:
    payment_id: str | None
    event_id: str

    ok = True


@dataclass(frozen=True)
class RegressionIgnored:
    payment_id: str
    current_status: str
    incoming_status: str

    ok = True


@dataclass(frozen=True)
class Failed:
    reason: str
    retryable: bool = False
    payment_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    ok = False


ReconciliationOutcome = Union[Applied, DuplicateIgnored, RegressionIgnored, Failed]


def describe(outcome: ReconciliationOutcome) -> dict[str, Any]:
    """Flat dict form for task results and log lines."""
    data = {"outcome": type(outcome).__name__}
    for name, value in vars(outcome).items():
        data[name] = list(value) if isinstance(value, tuple) else value
    return data


__all__ = [
    "Applied",
    "DuplicateIgnored",
    "Failed",
    "ReconciliationOutcome",
    "RegressionIgnored",
    "describe",
]
