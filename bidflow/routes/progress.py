import uuid
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from ..db import get_db
from ..schemas.reviews import ProgressUpdateCreate, ReviewDecision
from ..services import progress as tracker
from ..services.notifications import NotificationOutbox
from ..storage.local_provider import get_storage
from ..storage.provider import IncomingFile, StorageProvider
from .serializers import photo_to_dict, progress_to_dict, schedule_notifications


router = APIRouter(prefix="/progress", tags=["progress"])


def incoming(files: Optional[List[UploadFile]]) -> List[IncomingFile]:
    return [
        IncomingFile(filename=f.filename or "upload", content_type=f.content_type, stream=f.file)
        for f in (files or [])
        if f is not None and f.filename
    ]


@router.post("", status_code=201)
def submit_progress(
    background_tasks: BackgroundTasks,
    project_id: Optional[str] = Form(None, alias="projectId"),
    bid_id: Optional[str] = Form(None, alias="bidId"),
    submitted_by: Optional[str] = Form(None, alias="submittedBy"),
    description: Optional[str] = Form(None),
    milestone_name: Optional[str] = Form(None, alias="milestoneName"),
    progress_percentage: Optional[str] = Form("0", alias="progressPercentage"),
    payment_amount: Optional[str] = Form("0", alias="paymentAmount"),
    photos: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    payload = ProgressUpdateCreate.model_validate({
        "projectId": project_id,
        "bidId": bid_id,
        "submittedBy": submitted_by,
        "description": description,
        "milestoneName": milestone_name,
        "progressPercentage": progress_percentage or "0",
        "paymentAmount": payment_amount or "0",
    })
    outbox = NotificationOutbox()
    update = tracker.submit_progress_update(db, outbox, payload, incoming(photos), storage)
    schedule_notifications(background_tasks, db, outbox)
    return {
        "success": True,
        "message": "Progress update submitted successfully",
        "progressUpdate": progress_to_dict(update, storage),
    }


@router.get("/project/{project_id}")
def list_project_progress(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    updates = tracker.list_project_updates(db, project_id)
    return {
        "success": True,
        "count": len(updates),
        "progressUpdates": [progress_to_dict(u, storage) for u in updates],
    }


@router.get("/{update_id}")
def get_progress(
    update_id: uuid.UUID,
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    update = tracker.get_progress_update(db, update_id)
    return {"success": True, "progressUpdate": progress_to_dict(update, storage)}


@router.put("/{update_id}/review")
def review_progress(
    update_id: uuid.UUID,
    payload: ReviewDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    outbox = NotificationOutbox()
    update = tracker.review_progress_update(db, outbox, update_id, payload)
    schedule_notifications(background_tasks, db, outbox)
    return {
        "success": True,
        "message": f"Progress update {payload.status} successfully",
        "progressUpdate": progress_to_dict(update, with_photos=False),
    }


@router.post("/{update_id}/photos")
def upload_progress_photos(
    update_id: uuid.UUID,
    photos: List[UploadFile] = File(...),
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
):
    added = tracker.add_progress_photos(db, update_id, incoming(photos), storage)
    return {
        "success": True,
        "message": "Photos uploaded successfully",
        "photos": [photo_to_dict(p, storage) for p in added],
    }
