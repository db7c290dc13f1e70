import uuid
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.reviews import DesignSubmissionCreate, ReviewDecision
from ..services import designs as tracker
from ..services.notifications import NotificationOutbox
from ..storage.local_provider import get_storage
from ..storage.provider import StorageProvider
from .progress import incoming
from .serializers import design_file_to_dict, design_to_dict, schedule_notifications


router = APIRouter(prefix="/designs", tags=["designs"])


@router.post("", status_code=201)
def submit_design(
    background_tasks: BackgroundTasks,
    project_id: Optional[str] = Form(None, alias="projectId"),
    bid_id: Optional[str] = Form(None, alias="bidId"),
    architect_id: Optional[str] = Form(None, alias="architectId"),
    client_id: Optional[str] = Form(None, alias="clientId"),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    payment_amount: Optional[str] = Form(None, alias="paymentAmount"),
    files: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    payload = DesignSubmissionCreate.model_validate({
        "projectId": project_id,
        "bidId": bid_id,
        "architectId": architect_id,
        "clientId": client_id or None,
        "title": title,
        "description": description,
        "paymentAmount": payment_amount,
    })
    outbox = NotificationOutbox()
    design = tracker.submit_design(db, outbox, payload, incoming(files), storage)
    schedule_notifications(background_tasks, db, outbox)
    return {
        "success": True,
        "message": "Design submitted successfully",
        "submission": design_to_dict(design, storage),
    }


@router.get("/architect/{architect_id}")
def list_architect_designs(architect_id: uuid.UUID, db: Session = Depends(get_db)):
    designs = tracker.list_architect_designs(db, architect_id)
    return {
        "success": True,
        "count": len(designs),
        "submissions": [design_to_dict(d, with_files=False) for d in designs],
    }


@router.get("/project/{project_id}")
def get_project_design(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    design = tracker.get_project_design(db, project_id)
    if design is None:
        return {"success": True, "submission": None, "message": "No design submission found for this project"}
    return {"success": True, "submission": design_to_dict(design, storage)}


@router.get("/{design_id}/files")
def list_design_files(
    design_id: uuid.UUID,
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    files = tracker.list_design_files(db, design_id)
    return {"success": True, "count": len(files), "files": [design_file_to_dict(f, storage) for f in files]}


@router.put("/{design_id}/review")
def review_design(
    design_id: uuid.UUID,
    payload: ReviewDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    outbox = NotificationOutbox()
    design = tracker.review_design(db, outbox, design_id, payload)
    schedule_notifications(background_tasks, db, outbox)
    return {
        "success": True,
        "message": f"Design {payload.status} successfully",
        "submission": design_to_dict(design, with_files=False),
    }
