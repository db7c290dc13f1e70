"""Wire representations of workflow entities (camelCase, money as float)."""
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from ..models.models import Bid, DesignFile, DesignSubmission, Payment, ProgressPhoto, ProgressUpdate
from ..services.notifications import NotificationOutbox, deliver_notifications
from ..services.payments import item_title
from ..storage.provider import StorageProvider


def _money(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _id(value) -> Optional[str]:
    return str(value) if value else None


def schedule_notifications(background_tasks: BackgroundTasks, db: Session, outbox: NotificationOutbox) -> None:
    """Hand the committed request's notifications to a post-response task."""
    pending = outbox.drain()
    if pending:
        background_tasks.add_task(deliver_notifications, db.get_bind(), pending)


def bid_to_dict(b: Bid) -> Dict[str, Any]:
    bidder = b.bidder
    offer = b.offer
    return {
        "id": str(b.id),
        "bidderUserId": str(b.bidder_user_id),
        "bidderRole": b.bidder_role,
        "projectId": _id(b.project_id),
        "materialRequestId": _id(b.material_request_id),
        "bidAmount": _money(b.bid_amount),
        "proposedTimeline": b.proposed_timeline,
        "description": b.description,
        "status": b.status,
        "submittedAt": _iso(b.submitted_at),
        "respondedAt": _iso(b.responded_at),
        "bidType": b.bid_type,
        "itemTitle": offer.title if offer is not None else None,
        "bidderName": bidder.display_name if bidder is not None else None,
        "bidderEmail": bidder.email if bidder is not None else None,
    }


def photo_to_dict(p: ProgressPhoto, storage: Optional[StorageProvider] = None) -> Dict[str, Any]:
    return {
        "id": str(p.id),
        "progressUpdateId": str(p.progress_update_id),
        "fileName": p.file_name,
        "filePath": p.file_path,
        "fileSize": p.file_size,
        "mimeType": p.mime_type,
        "url": storage.get_download_url(p.file_path) if storage else None,
        "uploadedAt": _iso(p.uploaded_at),
    }


def progress_to_dict(u: ProgressUpdate, storage: Optional[StorageProvider] = None, with_photos: bool = True) -> Dict[str, Any]:
    d = {
        "id": str(u.id),
        "projectId": str(u.project_id),
        "bidId": str(u.bid_id),
        "submittedBy": str(u.submitted_by),
        "submitterName": u.submitter.display_name if u.submitter is not None else None,
        "description": u.description,
        "milestoneName": u.milestone_name,
        "progressPercentage": _money(u.progress_percentage),
        "paymentAmount": _money(u.payment_amount),
        "status": u.status,
        "reviewedBy": _id(u.reviewed_by),
        "reviewedAt": _iso(u.reviewed_at),
        "reviewComments": u.review_comments,
        "submittedAt": _iso(u.submitted_at),
    }
    if with_photos:
        d["photos"] = [photo_to_dict(p, storage) for p in u.photos]
    return d


def design_file_to_dict(f: DesignFile, storage: Optional[StorageProvider] = None) -> Dict[str, Any]:
    return {
        "id": str(f.id),
        "designSubmissionId": str(f.design_submission_id),
        "fileName": f.file_name,
        "filePath": f.file_path,
        "fileType": f.file_type,
        "fileSize": f.file_size,
        "url": storage.get_download_url(f.file_path) if storage else None,
        "uploadedAt": _iso(f.uploaded_at),
    }


def design_to_dict(d: DesignSubmission, storage: Optional[StorageProvider] = None, with_files: bool = True) -> Dict[str, Any]:
    out = {
        "id": str(d.id),
        "projectId": str(d.project_id),
        "projectTitle": d.project.title if d.project is not None else None,
        "bidId": str(d.bid_id),
        "architectId": str(d.architect_id),
        "clientId": str(d.client_id),
        "title": d.title,
        "description": d.description,
        "paymentAmount": _money(d.payment_amount),
        "status": d.status,
        "reviewedBy": _id(d.reviewed_by),
        "reviewedAt": _iso(d.reviewed_at),
        "reviewComments": d.review_comments,
        "submittedAt": _iso(d.submitted_at),
    }
    if with_files:
        out["files"] = [design_file_to_dict(f, storage) for f in d.files]
    return out


def payment_to_dict(p: Payment) -> Dict[str, Any]:
    return {
        "id": str(p.id),
        "projectId": _id(p.project_id),
        "materialRequestId": _id(p.material_request_id),
        "progressUpdateId": _id(p.progress_update_id),
        "designSubmissionId": _id(p.design_submission_id),
        "bidId": _id(p.bid_id),
        "payerId": str(p.payer_id),
        "payeeId": str(p.payee_id),
        "payerName": p.payer.display_name if p.payer is not None else None,
        "payeeName": p.payee.display_name if p.payee is not None else None,
        "amount": _money(p.amount),
        "paymentMethod": p.payment_method,
        "paymentStatus": p.payment_status,
        "paymentNotes": p.payment_notes,
        "transactionReference": p.transaction_reference,
        "transactionDate": _iso(p.transaction_date),
        "createdAt": _iso(p.created_at),
        "itemTitle": item_title(p),
        "sourceType": p.source_type,
    }
