"""
Status types and transition tables for the bid workflow.

Every status column holds the ``value`` of one of the enums below. A
transition is legal only if the table lists it, and it is written with a
conditional UPDATE against the status the caller observed, so two requests
racing on the same row cannot both win.
"""
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import InvalidTransition


class BidStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"


class BidderRole(str, Enum):
    constructor = "constructor"
    supplier = "supplier"
    architect = "architect"


class ProjectStatus(str, Enum):
    active = "active"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


class MaterialRequestStatus(str, Enum):
    active = "active"
    awarded = "awarded"
    completed = "completed"
    cancelled = "cancelled"


class ReviewStatus(str, Enum):
    pending_review = "pending_review"
    approved = "approved"
    rejected = "rejected"


class PaymentStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


# Legacy rows may carry an empty status; they are open for bidding.
BIDDABLE_STATUSES: FrozenSet[str] = frozenset({"active", ""})

BID_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    BidStatus.pending.value: frozenset({BidStatus.accepted.value, BidStatus.rejected.value}),
    BidStatus.accepted.value: frozenset(),
    BidStatus.rejected.value: frozenset(),
}

REVIEW_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    ReviewStatus.pending_review.value: frozenset({ReviewStatus.approved.value, ReviewStatus.rejected.value}),
    ReviewStatus.approved.value: frozenset(),
    ReviewStatus.rejected.value: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    PaymentStatus.pending.value: frozenset({PaymentStatus.processing.value, PaymentStatus.completed.value}),
    PaymentStatus.processing.value: frozenset({
        PaymentStatus.completed.value,
        PaymentStatus.failed.value,
        PaymentStatus.refunded.value,
    }),
    PaymentStatus.completed.value: frozenset(),
    PaymentStatus.failed.value: frozenset(),
    PaymentStatus.refunded.value: frozenset(),
}

PROGRESS_CEILING = Decimal("100")


def is_biddable(status: Optional[str]) -> bool:
    return (status or "") in BIDDABLE_STATUSES


def assert_transition(
    entity: str,
    table: Mapping[str, FrozenSet[str]],
    current: str,
    target: str,
    message: Optional[str] = None,
) -> None:
    if target not in table.get(current, frozenset()):
        raise InvalidTransition(entity, current, target, message)


def compare_and_swap(
    db: Session,
    model,
    entity_id: uuid.UUID,
    *,
    entity: str,
    expected: Iterable[str],
    target: str,
    field: str = "status",
    values: Optional[dict] = None,
    message: Optional[str] = None,
) -> None:
    """
    Move ``model.<field>`` to ``target`` only if it still holds one of ``expected``.

    Raises InvalidTransition when the row was changed underneath us.
    """
    expected = list(expected)
    column = getattr(model, field)
    stmt = (
        update(model)
        .where(model.id == entity_id, column.in_(expected))
        .values({field: target, **(values or {})})
        .execution_options(synchronize_session="evaluate")
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        raise InvalidTransition(entity, "/".join(expected) or "''", target, message)


def accumulate_progress(current: Optional[Decimal], increment: Optional[Decimal]) -> Decimal:
    """Additive project progress, clamped to [0, 100]; overflow is discarded."""
    total = Decimal(current or 0) + Decimal(increment or 0)
    return max(Decimal("0"), min(total, PROGRESS_CEILING))
