import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.bids import BidCreate, BidStatusUpdate
from ..services import bids as ledger
from ..services.notifications import NotificationOutbox
from .serializers import bid_to_dict, schedule_notifications


router = APIRouter(prefix="/bids", tags=["bids"])


def _bid_list(items):
    return {"success": True, "count": len(items), "bids": [bid_to_dict(b) for b in items]}


@router.post("", status_code=201)
def create_bid(payload: BidCreate, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    outbox = NotificationOutbox()
    bid = ledger.submit_bid(db, outbox, payload)
    schedule_notifications(background_tasks, db, outbox)
    return {"success": True, "message": "Bid submitted successfully", "bid": bid_to_dict(bid)}


@router.get("")
def list_all_bids(db: Session = Depends(get_db)):
    return _bid_list(ledger.list_bids(db))


@router.get("/project/{project_id}")
def list_project_bids(project_id: uuid.UUID, db: Session = Depends(get_db)):
    ledger.require_offer(db, "project", project_id)
    return _bid_list(ledger.list_bids(db, project_id=project_id))


@router.get("/material-request/{material_request_id}")
def list_material_request_bids(material_request_id: uuid.UUID, db: Session = Depends(get_db)):
    ledger.require_offer(db, "material_request", material_request_id)
    return _bid_list(ledger.list_bids(db, material_request_id=material_request_id))


@router.get("/customer/{user_id}")
def list_received_bids(user_id: uuid.UUID, db: Session = Depends(get_db)):
    """Bids placed on any project or material request owned by ``user_id``."""
    return _bid_list(ledger.list_bids(db, owner_id=user_id))


@router.get("/bidder/{bidder_id}")
def list_placed_bids(bidder_id: uuid.UUID, db: Session = Depends(get_db)):
    return _bid_list(ledger.list_bids(db, bidder_id=bidder_id))


@router.get("/{bid_id}")
def get_bid(bid_id: uuid.UUID, db: Session = Depends(get_db)):
    return {"success": True, "bid": bid_to_dict(ledger.get_bid(db, bid_id))}


@router.put("/{bid_id}/status")
def update_bid_status(
    bid_id: uuid.UUID,
    payload: BidStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    outbox = NotificationOutbox()
    bid = ledger.update_bid_status(db, outbox, bid_id, payload.status, acted_by=payload.acted_by)
    schedule_notifications(background_tasks, db, outbox)
    return {"success": True, "message": f"Bid {payload.status} successfully", "bid": bid_to_dict(bid)}


@router.delete("/{bid_id}")
def withdraw_bid(
    bid_id: uuid.UUID,
    bidder_id: Optional[uuid.UUID] = Query(None, alias="bidderId"),
    db: Session = Depends(get_db),
):
    ledger.withdraw_bid(db, bid_id, bidder_id=bidder_id)
    return {"success": True, "message": "Bid withdrawn successfully"}
