"""
Design tracker: architect submissions against an accepted project bid and
the owner's review of them.
"""
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import unit_of_work
from ..models.models import Bid, DesignFile, DesignSubmission, Project
from ..schemas.reviews import DesignSubmissionCreate, ReviewDecision
from ..storage.provider import IncomingFile, StorageProvider
from .attachments import attachment_batch
from .audit import create_audit_log
from .errors import DuplicateSubmission, Forbidden, NotFound, NotFoundOrForbidden
from .notifications import NotificationOutbox, design_notice
from .payments import record_settlement_payment
from .state import (
    REVIEW_TRANSITIONS,
    BidderRole,
    BidStatus,
    ReviewStatus,
    assert_transition,
    compare_and_swap,
)


logger = structlog.get_logger(__name__)

DUPLICATE_MESSAGE = "Design already submitted for this project"


def get_design(db: Session, design_id: uuid.UUID) -> DesignSubmission:
    design = db.query(DesignSubmission).filter(DesignSubmission.id == design_id).first()
    if not design:
        raise NotFound("Design submission not found")
    return design


def get_project_design(db: Session, project_id: uuid.UUID) -> Optional[DesignSubmission]:
    """Latest submission for a project, if any."""
    return (
        db.query(DesignSubmission)
        .filter(DesignSubmission.project_id == project_id)
        .order_by(DesignSubmission.submitted_at.desc())
        .first()
    )


def list_architect_designs(db: Session, architect_id: uuid.UUID) -> List[DesignSubmission]:
    return (
        db.query(DesignSubmission)
        .filter(DesignSubmission.architect_id == architect_id)
        .order_by(DesignSubmission.submitted_at.desc())
        .all()
    )


def list_design_files(db: Session, design_id: uuid.UUID) -> List[DesignFile]:
    get_design(db, design_id)
    return (
        db.query(DesignFile)
        .filter(DesignFile.design_submission_id == design_id)
        .order_by(DesignFile.uploaded_at)
        .all()
    )


def submit_design(
    db: Session,
    outbox: NotificationOutbox,
    payload: DesignSubmissionCreate,
    files: Optional[Sequence[IncomingFile]],
    storage: StorageProvider,
) -> DesignSubmission:
    with attachment_batch(storage) as batch, unit_of_work(db):
        bid = db.query(Bid).filter(
            Bid.id == payload.bid_id,
            Bid.project_id == payload.project_id,
            Bid.bidder_user_id == payload.architect_id,
            Bid.bidder_role == BidderRole.architect.value,
            Bid.status == BidStatus.accepted.value,
        ).first()
        if not bid:
            raise NotFoundOrForbidden("No accepted architect bid found for this project")
        project: Project = bid.project

        existing = db.query(DesignSubmission.id).filter(
            DesignSubmission.project_id == payload.project_id,
            DesignSubmission.bid_id == payload.bid_id,
        ).first()
        if existing:
            raise DuplicateSubmission(DUPLICATE_MESSAGE)

        design = DesignSubmission(
            project_id=payload.project_id,
            bid_id=payload.bid_id,
            architect_id=payload.architect_id,
            client_id=project.user_id,
            title=payload.title.strip(),
            description=payload.description,
            payment_amount=payload.payment_amount,
            status=ReviewStatus.pending_review.value,
            submitted_at=datetime.utcnow(),
        )
        db.add(design)
        try:
            db.flush()
        except IntegrityError:
            raise DuplicateSubmission(DUPLICATE_MESSAGE)

        for stored in batch.store(files, "designs", payload.project_id):
            db.add(DesignFile(
                design_submission_id=design.id,
                file_path=stored.key,
                file_name=stored.file_name,
                file_type=stored.content_type,
                file_size=stored.size,
                uploaded_at=datetime.utcnow(),
            ))
        create_audit_log(
            db,
            entity_type="design_submission",
            entity_id=design.id,
            action="CREATE",
            actor_id=payload.architect_id,
            changes_json={"status": {"before": None, "after": design.status}},
            context={"bid_id": payload.bid_id, "files": len(batch.stored)},
        )
        notice = design_notice(
            kind="design_submitted",
            user_id=project.user_id,
            design_id=design.id,
            design_title=design.title,
            project_title=project.title,
        )

    outbox.extend([notice])
    logger.info("design_submitted", design_id=str(design.id), project_id=str(payload.project_id))
    return design


def review_design(
    db: Session,
    outbox: NotificationOutbox,
    design_id: uuid.UUID,
    decision: ReviewDecision,
) -> DesignSubmission:
    """
    Approve or reject a pending design.

    The reviewer must own the project; the stored client id is not
    consulted. Approval books a pending payment to the architect.
    """
    target = ReviewStatus(decision.status)
    with unit_of_work(db):
        design = get_design(db, design_id)
        project = db.query(Project).filter(Project.id == design.project_id).first()
        if not project:
            raise NotFound("Project not found")
        if project.user_id != decision.reviewed_by:
            raise Forbidden("Only the project owner can review this design")

        previous = design.status
        assert_transition(
            "design_submission", REVIEW_TRANSITIONS, previous, target.value,
            message=f"Design has already been {previous}",
        )
        compare_and_swap(
            db, DesignSubmission, design.id,
            entity="design_submission",
            expected=[ReviewStatus.pending_review.value],
            target=target.value,
            values={
                "reviewed_by": decision.reviewed_by,
                "reviewed_at": datetime.utcnow(),
                "review_comments": decision.review_comments,
            },
            message="Design has already been reviewed",
        )
        create_audit_log(
            db,
            entity_type="design_submission",
            entity_id=design.id,
            action="APPROVE" if target is ReviewStatus.approved else "REJECT",
            actor_id=decision.reviewed_by,
            changes_json={"status": {"before": previous, "after": target.value}},
            context={"review_comments": decision.review_comments} if decision.review_comments else None,
        )

        payment = None
        if target is ReviewStatus.approved:
            payment = record_settlement_payment(
                db,
                payer_id=project.user_id,
                payee_id=design.architect_id,
                amount=design.payment_amount,
                bid_id=design.bid_id,
                project_id=project.id,
                design_submission_id=design.id,
                payment_notes=f"Payment for design: {design.title}",
                actor_id=decision.reviewed_by,
            )

        notice = design_notice(
            kind="design_approved" if target is ReviewStatus.approved else "design_rejected",
            user_id=design.architect_id,
            design_id=design.id,
            design_title=design.title,
            project_title=project.title,
            review_comments=decision.review_comments,
        )

    outbox.extend([notice])
    logger.info(
        "design_reviewed",
        design_id=str(design_id),
        status=target.value,
        payment_id=str(payment.id) if payment else None,
    )
    return design
