"""
Bid ledger: submission, accept/reject and withdrawal of bids.

A bid targets exactly one offer (a project or a material request). The
owner's accept/reject decision is a one-shot transition out of ``pending``;
accepting hands the bid to the settlement orchestrator inside the same
unit of work.
"""
import uuid
from datetime import datetime
from typing import List, Optional, Tuple, Union

import structlog
from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..models.models import Bid, MaterialRequest, Project, User
from ..schemas.bids import BidCreate
from .audit import create_audit_log
from .errors import Conflict, DuplicateBid, Forbidden, ForbiddenSelfBid, NotFound, ValidationError
from .notifications import NotificationOutbox, bid_decision_notice, new_bid_notice
from .settlement import settle_accepted_bid
from .state import BID_TRANSITIONS, BidStatus, assert_transition, compare_and_swap, is_biddable


logger = structlog.get_logger(__name__)

Offer = Union[Project, MaterialRequest]


def _offer_label(bid_or_payload) -> str:
    return "Project" if bid_or_payload.project_id else "Material request"


def load_offer(
    db: Session,
    project_id: Optional[uuid.UUID],
    material_request_id: Optional[uuid.UUID],
) -> Optional[Offer]:
    if project_id:
        return db.query(Project).filter(Project.id == project_id).first()
    if material_request_id:
        return db.query(MaterialRequest).filter(MaterialRequest.id == material_request_id).first()
    return None


def get_bid(db: Session, bid_id: uuid.UUID) -> Bid:
    bid = db.query(Bid).filter(Bid.id == bid_id).first()
    if not bid:
        raise NotFound("Bid not found")
    return bid


def submit_bid(db: Session, outbox: NotificationOutbox, payload: BidCreate) -> Bid:
    """
    Place a pending bid on a project or material request.

    Preconditions are checked in order (offer exists, offer open for
    bidding, bidder is not the owner, bidder exists, no earlier bid by the
    same bidder) and each one fails with its own error before anything is written.
    """
    label = _offer_label(payload)
    with unit_of_work(db):
        offer = load_offer(db, payload.project_id, payload.material_request_id)
        if offer is None:
            raise NotFound(f"{label} not found")
        if not is_biddable(offer.status):
            raise Conflict(f"{label} is not open for bidding")
        if offer.user_id == payload.bidder_user_id:
            raise ForbiddenSelfBid(f"You cannot bid on your own {label.lower()}")
        bidder = db.query(User).filter(User.id == payload.bidder_user_id).first()
        if not bidder:
            raise ValidationError("Bidder not found")

        existing = db.query(Bid.id).filter(Bid.bidder_user_id == payload.bidder_user_id)
        if payload.project_id:
            existing = existing.filter(Bid.project_id == payload.project_id)
        else:
            existing = existing.filter(Bid.material_request_id == payload.material_request_id)
        if existing.first():
            raise DuplicateBid(f"You have already submitted a bid for this {label.lower()}")

        bid = Bid(
            bidder_user_id=payload.bidder_user_id,
            bidder_role=payload.bidder_role.value,
            project_id=payload.project_id,
            material_request_id=payload.material_request_id,
            bid_amount=payload.bid_amount,
            proposed_timeline=payload.proposed_timeline.strip(),
            description=payload.description.strip(),
            status=BidStatus.pending.value,
            submitted_at=datetime.utcnow(),
        )
        db.add(bid)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent request won the unique (bidder, offer) slot
            raise DuplicateBid(f"You have already submitted a bid for this {label.lower()}")

        create_audit_log(
            db,
            entity_type="bid",
            entity_id=bid.id,
            action="CREATE",
            actor_id=payload.bidder_user_id,
            changes_json={"status": {"before": None, "after": bid.status}},
            context={
                "project_id": payload.project_id,
                "material_request_id": payload.material_request_id,
                "bid_amount": payload.bid_amount,
            },
        )
        notice = new_bid_notice(
            owner_id=offer.user_id,
            bid_id=bid.id,
            bidder_name=bidder.display_name,
            offer_title=offer.title,
            amount=bid.bid_amount,
        )

    outbox.extend([notice])
    logger.info(
        "bid_submitted",
        bid_id=str(bid.id),
        bidder_user_id=str(payload.bidder_user_id),
        offer_type=bid.bid_type,
        amount=str(payload.bid_amount),
    )
    return bid


def update_bid_status(
    db: Session,
    outbox: NotificationOutbox,
    bid_id: uuid.UUID,
    status: str,
    acted_by: Optional[uuid.UUID] = None,
) -> Bid:
    """
    Accept or reject a pending bid.

    The write only succeeds against a row that is still ``pending``; a
    repeated or concurrent decision raises Conflict and changes nothing.
    Acceptance settles the offer in the same transaction.
    """
    try:
        target = BidStatus(status)
    except ValueError:
        target = None
    if target not in (BidStatus.accepted, BidStatus.rejected):
        raise ValidationError("Status must be either accepted or rejected")

    with unit_of_work(db):
        bid = get_bid(db, bid_id)
        offer = bid.offer
        if offer is None:
            raise NotFound(f"{_offer_label(bid)} not found")
        if acted_by is not None and offer.user_id != acted_by:
            raise Forbidden("You do not have permission to respond to this bid")

        previous = bid.status
        assert_transition(
            "bid", BID_TRANSITIONS, previous, target.value,
            message=f"Bid has already been {previous}",
        )
        compare_and_swap(
            db, Bid, bid.id,
            entity="bid",
            expected=[BidStatus.pending.value],
            target=target.value,
            values={"responded_at": datetime.utcnow()},
            message="Bid has already been responded to",
        )
        create_audit_log(
            db,
            entity_type="bid",
            entity_id=bid.id,
            action="ACCEPT" if target is BidStatus.accepted else "REJECT",
            actor_id=acted_by,
            changes_json={"status": {"before": previous, "after": target.value}},
        )

        effects = [
            bid_decision_notice(
                bidder_id=bid.bidder_user_id,
                bid_id=bid.id,
                offer_title=offer.title,
                amount=bid.bid_amount,
                accepted=target is BidStatus.accepted,
            )
        ]
        if target is BidStatus.accepted:
            effects.extend(settle_accepted_bid(db, bid, actor_id=acted_by))

    outbox.extend(effects)
    logger.info("bid_status_changed", bid_id=str(bid_id), before=previous, after=target.value)
    return bid


def withdraw_bid(db: Session, bid_id: uuid.UUID, bidder_id: Optional[uuid.UUID] = None) -> None:
    """Delete a bid the owner has not responded to yet."""
    message = "Cannot withdraw a bid that has already been responded to"
    with unit_of_work(db):
        bid = get_bid(db, bid_id)
        if bidder_id is not None and bid.bidder_user_id != bidder_id:
            raise Forbidden("You can only withdraw your own bids")
        if bid.status != BidStatus.pending.value:
            raise Conflict(message)

        result = db.execute(
            delete(Bid)
            .where(Bid.id == bid.id, Bid.status == BidStatus.pending.value)
            .execution_options(synchronize_session="evaluate")
        )
        if result.rowcount != 1:
            raise Conflict(message)
        create_audit_log(
            db,
            entity_type="bid",
            entity_id=bid_id,
            action="WITHDRAW",
            actor_id=bidder_id,
            changes_json={"status": {"before": BidStatus.pending.value, "after": None}},
        )
    logger.info("bid_withdrawn", bid_id=str(bid_id))


def list_bids(
    db: Session,
    *,
    project_id: Optional[uuid.UUID] = None,
    material_request_id: Optional[uuid.UUID] = None,
    bidder_id: Optional[uuid.UUID] = None,
    owner_id: Optional[uuid.UUID] = None,
) -> List[Bid]:
    query = db.query(Bid)
    if project_id:
        query = query.filter(Bid.project_id == project_id)
    if material_request_id:
        query = query.filter(Bid.material_request_id == material_request_id)
    if bidder_id:
        query = query.filter(Bid.bidder_user_id == bidder_id)
    if owner_id:
        query = (
            query.outerjoin(Project, Bid.project_id == Project.id)
            .outerjoin(MaterialRequest, Bid.material_request_id == MaterialRequest.id)
            .filter(or_(Project.user_id == owner_id, MaterialRequest.user_id == owner_id))
        )
    return query.order_by(Bid.submitted_at.desc()).all()


def require_offer(db: Session, kind: str, offer_id: uuid.UUID) -> Tuple[Offer, str]:
    if kind == "project":
        offer = load_offer(db, offer_id, None)
        label = "Project"
    else:
        offer = load_offer(db, None, offer_id)
        label = "Material request"
    if offer is None:
        raise NotFound(f"{label} not found")
    return offer, label
