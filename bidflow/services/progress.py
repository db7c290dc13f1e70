"""
Progress tracker.

The accepted bidder on a project reports milestones; the project owner
reviews them. Approval adds the update's percentage to the project's
overall progress (capped at 100) and books the milestone payment in the
same transaction.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..models.models import Bid, ProgressPhoto, ProgressUpdate, Project
from ..schemas.reviews import ProgressUpdateCreate, ReviewDecision
from ..storage.provider import IncomingFile, StorageProvider
from .attachments import attachment_batch
from .audit import create_audit_log
from .errors import Forbidden, NotFound, NotFoundOrForbidden
from .notifications import NotificationOutbox, progress_notice
from .payments import record_settlement_payment
from .state import (
    REVIEW_TRANSITIONS,
    BidStatus,
    ReviewStatus,
    accumulate_progress,
    assert_transition,
    compare_and_swap,
)


logger = structlog.get_logger(__name__)

DEFAULT_MILESTONE = "Progress Update"


def get_progress_update(db: Session, update_id: uuid.UUID) -> ProgressUpdate:
    update = db.query(ProgressUpdate).filter(ProgressUpdate.id == update_id).first()
    if not update:
        raise NotFound("Progress update not found")
    return update


def list_project_updates(db: Session, project_id: uuid.UUID) -> List[ProgressUpdate]:
    return (
        db.query(ProgressUpdate)
        .filter(ProgressUpdate.project_id == project_id)
        .order_by(ProgressUpdate.submitted_at.desc())
        .all()
    )


def _attach_photos(db: Session, batch, update: ProgressUpdate, files: Sequence[IncomingFile]) -> List[ProgressPhoto]:
    photos = []
    for stored in batch.store(files, "progress", update.project_id):
        photo = ProgressPhoto(
            progress_update_id=update.id,
            file_path=stored.key,
            file_name=stored.file_name,
            file_size=stored.size,
            mime_type=stored.content_type,
            uploaded_at=datetime.utcnow(),
        )
        db.add(photo)
        photos.append(photo)
    return photos


def submit_progress_update(
    db: Session,
    outbox: NotificationOutbox,
    payload: ProgressUpdateCreate,
    files: Optional[Sequence[IncomingFile]],
    storage: StorageProvider,
) -> ProgressUpdate:
    """Record a milestone reported by the project's accepted bidder."""
    with attachment_batch(storage) as batch, unit_of_work(db):
        bid = db.query(Bid).filter(
            Bid.id == payload.bid_id,
            Bid.project_id == payload.project_id,
            Bid.bidder_user_id == payload.submitted_by,
            Bid.status == BidStatus.accepted.value,
        ).first()
        if not bid:
            raise NotFoundOrForbidden("No accepted bid found for this project")
        project = bid.project

        update = ProgressUpdate(
            project_id=payload.project_id,
            bid_id=payload.bid_id,
            submitted_by=payload.submitted_by,
            description=payload.description.strip(),
            milestone_name=(payload.milestone_name or "").strip() or DEFAULT_MILESTONE,
            progress_percentage=payload.progress_percentage,
            payment_amount=payload.payment_amount,
            status=ReviewStatus.pending_review.value,
            submitted_at=datetime.utcnow(),
        )
        db.add(update)
        db.flush()
        photos = _attach_photos(db, batch, update, files)
        create_audit_log(
            db,
            entity_type="progress_update",
            entity_id=update.id,
            action="CREATE",
            actor_id=payload.submitted_by,
            changes_json={"status": {"before": None, "after": update.status}},
            context={
                "bid_id": payload.bid_id,
                "progress_percentage": payload.progress_percentage,
                "photos": len(photos),
            },
        )
        notice = progress_notice(
            kind="progress_update",
            user_id=project.user_id,
            progress_update_id=update.id,
            milestone_name=update.milestone_name,
            project_title=project.title,
            progress_percentage=update.progress_percentage,
        )

    outbox.extend([notice])
    logger.info(
        "progress_submitted",
        progress_update_id=str(update.id),
        project_id=str(payload.project_id),
        photos=len(photos),
    )
    return update


def add_progress_photos(
    db: Session,
    update_id: uuid.UUID,
    files: Sequence[IncomingFile],
    storage: StorageProvider,
) -> List[ProgressPhoto]:
    with attachment_batch(storage) as batch, unit_of_work(db):
        update = get_progress_update(db, update_id)
        photos = _attach_photos(db, batch, update, files)
    logger.info("progress_photos_added", progress_update_id=str(update_id), photos=len(photos))
    return photos


def review_progress_update(
    db: Session,
    outbox: NotificationOutbox,
    update_id: uuid.UUID,
    decision: ReviewDecision,
) -> ProgressUpdate:
    """
    Approve or reject a pending progress update.

    Only the project owner may review, and only once. On approval the
    project's progress is advanced under a row lock and a pending payment
    from owner to bidder is created for the milestone amount.
    """
    target = ReviewStatus(decision.status)
    with unit_of_work(db):
        update = get_progress_update(db, update_id)
        project = db.query(Project).filter(Project.id == update.project_id).with_for_update().first()
        if not project:
            raise NotFound("Project not found")
        if project.user_id != decision.reviewed_by:
            raise Forbidden("Only the project owner can review progress updates")

        previous = update.status
        assert_transition(
            "progress_update", REVIEW_TRANSITIONS, previous, target.value,
            message=f"Progress update has already been {previous}",
        )
        compare_and_swap(
            db, ProgressUpdate, update.id,
            entity="progress_update",
            expected=[ReviewStatus.pending_review.value],
            target=target.value,
            values={
                "reviewed_by": decision.reviewed_by,
                "reviewed_at": datetime.utcnow(),
                "review_comments": decision.review_comments,
            },
            message="Progress update has already been reviewed",
        )
        create_audit_log(
            db,
            entity_type="progress_update",
            entity_id=update.id,
            action="APPROVE" if target is ReviewStatus.approved else "REJECT",
            actor_id=decision.reviewed_by,
            changes_json={"status": {"before": previous, "after": target.value}},
            context={"review_comments": decision.review_comments} if decision.review_comments else None,
        )

        payment = None
        if target is ReviewStatus.approved:
            before_progress = Decimal(project.overall_progress or 0)
            project.overall_progress = accumulate_progress(before_progress, update.progress_percentage)
            create_audit_log(
                db,
                entity_type="project",
                entity_id=project.id,
                action="PROGRESS",
                actor_id=decision.reviewed_by,
                changes_json={"overall_progress": {"before": before_progress, "after": project.overall_progress}},
                context={"progress_update_id": update.id},
            )
            payment = record_settlement_payment(
                db,
                payer_id=project.user_id,
                payee_id=update.submitted_by,
                amount=update.payment_amount,
                bid_id=update.bid_id,
                project_id=project.id,
                progress_update_id=update.id,
                payment_notes=f"Payment for milestone: {update.milestone_name}",
                actor_id=decision.reviewed_by,
            )

        notice = progress_notice(
            kind="progress_approved" if target is ReviewStatus.approved else "progress_rejected",
            user_id=update.submitted_by,
            progress_update_id=update.id,
            milestone_name=update.milestone_name,
            project_title=project.title,
            review_comments=decision.review_comments,
        )

    outbox.extend([notice])
    logger.info(
        "progress_reviewed",
        progress_update_id=str(update_id),
        status=target.value,
        overall_progress=str(project.overall_progress),
        payment_id=str(payment.id) if payment else None,
    )
    return update
