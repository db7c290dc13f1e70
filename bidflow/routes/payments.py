import uuid
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.payments import PaymentCreate, PaymentStatusUpdate
from ..services import payments as ledger
from ..services.notifications import NotificationOutbox
from .serializers import payment_to_dict, schedule_notifications


router = APIRouter(prefix="/payments", tags=["payments"])


def _with_totals(payments):
    totals = ledger.summarize(payments)
    return {
        "success": True,
        "count": len(payments),
        "totalPaid": float(totals["total_paid"]),
        "totalPending": float(totals["total_pending"]),
        "payments": [payment_to_dict(p) for p in payments],
    }


@router.post("", status_code=201)
def create_payment(payload: PaymentCreate, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    outbox = NotificationOutbox()
    payment = ledger.create_direct_payment(db, outbox, payload)
    schedule_notifications(background_tasks, db, outbox)
    return {"success": True, "message": "Payment created successfully", "payment": payment_to_dict(payment)}


@router.put("/{payment_id}/status")
def update_payment_status(
    payment_id: uuid.UUID,
    payload: PaymentStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    outbox = NotificationOutbox()
    payment = ledger.update_payment_status(
        db, outbox, payment_id, payload.payment_status.value,
        transaction_reference=payload.transaction_reference,
    )
    schedule_notifications(background_tasks, db, outbox)
    return {"success": True, "message": "Payment status updated successfully", "payment": payment_to_dict(payment)}


@router.get("/project/{project_id}")
def list_project_payments(project_id: uuid.UUID, db: Session = Depends(get_db)):
    ledger.require_project(db, project_id)
    return _with_totals(ledger.list_payments(db, project_id=project_id))


@router.get("/user/{user_id}")
def list_user_payments(
    user_id: uuid.UUID,
    type: Optional[Literal["sent", "received"]] = Query(None),
    db: Session = Depends(get_db),
):
    """Payments a user sent, received, or (without ``type``) either."""
    if type == "sent":
        payments = ledger.list_payments(db, payer_id=user_id)
    elif type == "received":
        payments = ledger.list_payments(db, payee_id=user_id)
    else:
        payments = ledger.list_payments(db, party_id=user_id)
    return {"success": True, "count": len(payments), "payments": [payment_to_dict(p) for p in payments]}


@router.get("/client/{client_id}")
def list_client_payments(client_id: uuid.UUID, db: Session = Depends(get_db)):
    return _with_totals(ledger.list_payments(db, payer_id=client_id))


@router.get("/{payment_id}")
def get_payment(payment_id: uuid.UUID, db: Session = Depends(get_db)):
    return {"success": True, "payment": payment_to_dict(ledger.get_payment(db, payment_id))}
