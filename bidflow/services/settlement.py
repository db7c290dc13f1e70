"""
Settlement orchestrator: the cascade that follows a bid's acceptance.

Runs inside the bid ledger's unit of work. Any error here aborts the whole
acceptance, including the bid's own status change.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy.orm import Session

from ..models.models import Bid, MaterialRequest, Project
from .audit import create_audit_log
from .errors import NotFound, ValidationError
from .notifications import NotificationRequest, payment_notice
from .payments import record_settlement_payment
from .state import (
    BIDDABLE_STATUSES,
    MaterialRequestStatus,
    ProjectStatus,
    compare_and_swap,
)


logger = structlog.get_logger(__name__)


def settle_accepted_bid(
    db: Session,
    bid: Bid,
    actor_id: Optional[uuid.UUID] = None,
) -> List[NotificationRequest]:
    """Apply the acceptance cascade for ``bid`` and return the notices it produces."""
    if bid.project_id:
        return _award_project(db, bid, actor_id)
    if bid.material_request_id:
        return _award_material_request(db, bid, actor_id)
    raise ValidationError("Bid is not linked to a project or material request")


def _award_project(db: Session, bid: Bid, actor_id: Optional[uuid.UUID]) -> List[NotificationRequest]:
    project = db.query(Project).filter(Project.id == bid.project_id).first()
    if not project:
        raise NotFound("Project not found")
    before = project.status
    compare_and_swap(
        db, Project, project.id,
        entity="project",
        expected=BIDDABLE_STATUSES,
        target=ProjectStatus.in_progress.value,
        values={"awarded_bid_id": bid.id},
        message="Project has already been awarded",
    )
    create_audit_log(
        db,
        entity_type="project",
        entity_id=project.id,
        action="AWARD",
        actor_id=actor_id,
        changes_json={
            "status": {"before": before, "after": ProjectStatus.in_progress.value},
            "awarded_bid_id": {"before": None, "after": bid.id},
        },
        context={"bid_id": bid.id},
    )
    logger.info("settlement_applied", offer_type="project", project_id=str(project.id), bid_id=str(bid.id))
    # Architect and constructor payments flow through design and progress reviews
    return []


def _award_material_request(db: Session, bid: Bid, actor_id: Optional[uuid.UUID]) -> List[NotificationRequest]:
    request = db.query(MaterialRequest).filter(MaterialRequest.id == bid.material_request_id).first()
    if not request:
        raise NotFound("Material request not found")
    before = request.status
    compare_and_swap(
        db, MaterialRequest, request.id,
        entity="material_request",
        expected=BIDDABLE_STATUSES,
        target=MaterialRequestStatus.awarded.value,
        message="Material request has already been awarded",
    )
    create_audit_log(
        db,
        entity_type="material_request",
        entity_id=request.id,
        action="AWARD",
        actor_id=actor_id,
        changes_json={"status": {"before": before, "after": MaterialRequestStatus.awarded.value}},
        context={"bid_id": bid.id},
    )

    payment = record_settlement_payment(
        db,
        payer_id=request.user_id,
        payee_id=bid.bidder_user_id,
        amount=bid.bid_amount,
        bid_id=bid.id,
        material_request_id=request.id,
        payment_method="bank_transfer",
        actor_id=actor_id,
    )
    logger.info(
        "settlement_applied",
        offer_type="material_request",
        material_request_id=str(request.id),
        bid_id=str(bid.id),
        payment_id=str(payment.id),
    )
    return [
        payment_notice(
            kind="payment_created",
            payee_id=payment.payee_id,
            payment_id=payment.id,
            amount=payment.amount,
            item_title=request.title,
        )
    ]
