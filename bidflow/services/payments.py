"""
Payment ledger.

Payments come into existence as a side effect of an approval or a bid
acceptance (``record_settlement_payment``), or through the direct path
where an owner pays against a bid they already accepted
(``create_direct_payment``). Status moves only along PAYMENT_TRANSITIONS.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..models.models import Bid, Payment, ProgressUpdate, Project
from ..schemas.payments import PaymentCreate
from .audit import create_audit_log
from .errors import Conflict, Forbidden, NotFound, ValidationError
from .notifications import NotificationOutbox, payment_notice
from .state import (
    PAYMENT_TRANSITIONS,
    BidStatus,
    PaymentStatus,
    ReviewStatus,
    assert_transition,
    compare_and_swap,
)


logger = structlog.get_logger(__name__)

# Money not yet settled; both count toward totalPending
OUTSTANDING_STATUSES = (PaymentStatus.pending.value, PaymentStatus.processing.value)


def record_settlement_payment(
    db: Session,
    *,
    payer_id: uuid.UUID,
    payee_id: uuid.UUID,
    amount: Decimal,
    bid_id: Optional[uuid.UUID] = None,
    project_id: Optional[uuid.UUID] = None,
    material_request_id: Optional[uuid.UUID] = None,
    progress_update_id: Optional[uuid.UUID] = None,
    design_submission_id: Optional[uuid.UUID] = None,
    payment_method: str = "bank_transfer",
    payment_notes: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
) -> Payment:
    """
    Stage a pending payment inside the caller's unit of work.

    Exactly one source must be given: a progress update, a design
    submission, or (for material requests and direct payments) the bid.
    """
    if progress_update_id and design_submission_id:
        raise ValueError("A payment settles either a progress update or a design submission, not both")
    if not (progress_update_id or design_submission_id or bid_id):
        raise ValueError("A payment needs a progress update, design submission or bid as its source")

    payment = Payment(
        project_id=project_id,
        material_request_id=material_request_id,
        progress_update_id=progress_update_id,
        design_submission_id=design_submission_id,
        bid_id=bid_id,
        payer_id=payer_id,
        payee_id=payee_id,
        amount=Decimal(amount or 0),
        payment_method=payment_method or "bank_transfer",
        payment_status=PaymentStatus.pending.value,
        payment_notes=payment_notes,
        created_at=datetime.utcnow(),
    )
    db.add(payment)
    db.flush()
    create_audit_log(
        db,
        entity_type="payment",
        entity_id=payment.id,
        action="CREATE",
        actor_id=actor_id,
        changes_json={"payment_status": {"before": None, "after": payment.payment_status}},
        context={
            "source": payment.source_type,
            "amount": payment.amount,
            "payer_id": payer_id,
            "payee_id": payee_id,
        },
    )
    return payment


def create_direct_payment(db: Session, outbox: NotificationOutbox, payload: PaymentCreate) -> Payment:
    """Owner-initiated payment against an already accepted bid."""
    with unit_of_work(db):
        query = db.query(Bid).filter(Bid.id == payload.bid_id, Bid.status == BidStatus.accepted.value)
        if payload.project_id:
            query = query.filter(Bid.project_id == payload.project_id)
        else:
            query = query.filter(Bid.material_request_id == payload.material_request_id)
        bid = query.first()
        if not bid:
            raise NotFound("Bid not found or not accepted")

        offer = bid.offer
        if offer is None or offer.user_id != payload.payer_id:
            raise Forbidden("You do not have permission to make payment for this bid")
        if bid.bidder_user_id != payload.payee_id:
            raise ValidationError("Payee must be the bidder")

        if payload.progress_update_id:
            update = db.query(ProgressUpdate).filter(
                ProgressUpdate.id == payload.progress_update_id,
                ProgressUpdate.bid_id == bid.id,
                ProgressUpdate.status == ReviewStatus.approved.value,
            ).first()
            if not update:
                raise ValidationError("Progress update not found or not approved")
            already_paid = db.query(Payment.id).filter(Payment.progress_update_id == update.id).first()
            if already_paid:
                raise Conflict("A payment already exists for this progress update")

        payment = record_settlement_payment(
            db,
            payer_id=payload.payer_id,
            payee_id=payload.payee_id,
            amount=payload.amount,
            bid_id=bid.id,
            project_id=payload.project_id,
            material_request_id=payload.material_request_id,
            progress_update_id=payload.progress_update_id,
            payment_method=payload.payment_method,
            payment_notes=payload.payment_notes,
            actor_id=payload.payer_id,
        )
        notice = payment_notice(
            kind="payment_initiated",
            payee_id=payment.payee_id,
            payment_id=payment.id,
            amount=payment.amount,
        )

    outbox.extend([notice])
    logger.info("payment_created", payment_id=str(payment.id), bid_id=str(bid.id), amount=str(payload.amount))
    return payment


def update_payment_status(
    db: Session,
    outbox: NotificationOutbox,
    payment_id: uuid.UUID,
    status: str,
    transaction_reference: Optional[str] = None,
) -> Payment:
    try:
        target = PaymentStatus(status)
    except ValueError:
        raise ValidationError("Invalid payment status")

    effects = []
    with unit_of_work(db):
        payment = get_payment(db, payment_id)
        previous = payment.payment_status
        assert_transition(
            "payment", PAYMENT_TRANSITIONS, previous, target.value,
            message=f"Cannot move a {previous} payment to {target.value}",
        )
        values: Dict[str, object] = {}
        if transaction_reference:
            values["transaction_reference"] = transaction_reference
        if target is PaymentStatus.completed:
            values["transaction_date"] = datetime.utcnow()
        compare_and_swap(
            db, Payment, payment.id,
            entity="payment",
            field="payment_status",
            expected=[previous],
            target=target.value,
            values=values,
            message="Payment status changed concurrently",
        )
        create_audit_log(
            db,
            entity_type="payment",
            entity_id=payment.id,
            action="STATUS",
            changes_json={"payment_status": {"before": previous, "after": target.value}},
            context={"transaction_reference": transaction_reference} if transaction_reference else None,
        )
        if target is PaymentStatus.completed:
            effects.append(
                payment_notice(
                    kind="payment_completed",
                    payee_id=payment.payee_id,
                    payment_id=payment.id,
                    amount=payment.amount,
                )
            )

    outbox.extend(effects)
    logger.info("payment_status_changed", payment_id=str(payment_id), before=previous, after=target.value)
    return payment


def get_payment(db: Session, payment_id: uuid.UUID) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise NotFound("Payment not found")
    return payment


def list_payments(
    db: Session,
    *,
    project_id: Optional[uuid.UUID] = None,
    payer_id: Optional[uuid.UUID] = None,
    payee_id: Optional[uuid.UUID] = None,
    party_id: Optional[uuid.UUID] = None,
) -> List[Payment]:
    query = db.query(Payment)
    if project_id:
        query = query.filter(Payment.project_id == project_id)
    if payer_id:
        query = query.filter(Payment.payer_id == payer_id)
    if payee_id:
        query = query.filter(Payment.payee_id == payee_id)
    if party_id:
        query = query.filter(or_(Payment.payer_id == party_id, Payment.payee_id == party_id))
    return query.order_by(Payment.created_at.desc()).all()


def summarize(payments: Iterable[Payment]) -> Dict[str, Decimal]:
    total_paid = Decimal("0")
    total_pending = Decimal("0")
    for p in payments:
        if p.payment_status == PaymentStatus.completed.value:
            total_paid += Decimal(p.amount or 0)
        elif p.payment_status in OUTSTANDING_STATUSES:
            total_pending += Decimal(p.amount or 0)
    return {"total_paid": total_paid, "total_pending": total_pending}


def item_title(payment: Payment) -> Optional[str]:
    if payment.project_id and payment.project is not None:
        return payment.project.title
    if payment.material_request_id and payment.material_request is not None:
        return payment.material_request.title
    return None


def require_project(db: Session, project_id: uuid.UUID) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFound("Project not found")
    return project
