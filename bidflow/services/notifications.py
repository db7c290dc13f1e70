"""
Notification outbox and delivery.

Workflow services never write notifications themselves: they build
``NotificationRequest`` objects, and only once their unit of work has
committed are those requests handed to the request's ``NotificationOutbox``.
The outbox is drained after the response by ``deliver_notifications``,
which persists and fans out each request on its own session. A failing
delivery is logged and skipped; it can never undo the transition it
describes.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..config import settings
from ..models.models import Notification
from .errors import NotFound
from .notification_hub import hub


logger = structlog.get_logger(__name__)


@dataclass
class NotificationRequest:
    user_id: uuid.UUID
    type: str
    title: str
    message: str
    related_id: Optional[str] = None
    related_type: Optional[str] = None
    priority: str = "normal"
    action_url: Optional[str] = None


@dataclass
class NotificationOutbox:
    """Per-request queue of notifications waiting for their transaction to commit."""

    _pending: List[NotificationRequest] = field(default_factory=list)

    def extend(self, requests: Iterable[NotificationRequest]) -> None:
        self._pending.extend(r for r in requests if r is not None and r.user_id)

    @property
    def pending(self) -> List[NotificationRequest]:
        return list(self._pending)

    def drain(self) -> List[NotificationRequest]:
        drained, self._pending = self._pending, []
        return drained


def format_amount(amount: Optional[Decimal]) -> str:
    return f"{settings.currency_symbol}{Decimal(amount or 0):,.2f}"


def notification_to_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": str(n.id),
        "userId": str(n.user_id),
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "relatedId": n.related_id,
        "relatedType": n.related_type,
        "priority": n.priority,
        "actionUrl": n.action_url,
        "isRead": bool(n.is_read),
        "createdAt": n.created_at.isoformat() if n.created_at else None,
    }


def create_notification(db: Session, request: NotificationRequest) -> Notification:
    notification = Notification(
        user_id=request.user_id,
        type=request.type,
        title=request.title,
        message=request.message,
        related_id=request.related_id,
        related_type=request.related_type,
        priority=request.priority or "normal",
        action_url=request.action_url,
        is_read=False,
        created_at=datetime.utcnow(),
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def _persist(bind, request: NotificationRequest) -> Dict[str, Any]:
    with Session(bind=bind) as db:
        return notification_to_dict(create_notification(db, request))


async def deliver_notifications(bind, requests: List[NotificationRequest]) -> int:
    """
    Persist and fan out queued notifications.

    Database work runs in the threadpool; only the websocket fan-out
    stays on the event loop.

    Args:
        bind: Engine (or connection) the workflow session was bound to
        requests: Drained outbox contents

    Returns:
        Number of notifications persisted
    """
    delivered = 0
    for request in requests:
        try:
            payload = await run_in_threadpool(_persist, bind, request)
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                user_id=str(request.user_id),
                type=request.type,
                related_id=request.related_id,
                error=str(e),
            )
            continue
        delivered += 1
        if not settings.notification_fanout:
            continue
        try:
            await hub.send_to_user(
                str(request.user_id),
                "new-notification",
                {"userId": str(request.user_id), "notification": payload},
            )
        except Exception as e:
            logger.warning(
                "notification_fanout_failed",
                user_id=str(request.user_id),
                type=request.type,
                error=str(e),
            )
    return delivered


# ----- Templates -----

def new_bid_notice(*, owner_id, bid_id, bidder_name: str, offer_title: str, amount) -> NotificationRequest:
    return NotificationRequest(
        user_id=owner_id,
        type="new_bid",
        title="New Bid Received",
        message=f'{bidder_name} submitted a bid for "{offer_title}". Amount: {format_amount(amount)}',
        related_id=str(bid_id),
        related_type="bid",
        action_url=f"/bids/{bid_id}",
    )


def bid_decision_notice(*, bidder_id, bid_id, offer_title: str, amount, accepted: bool) -> NotificationRequest:
    if accepted:
        return NotificationRequest(
            user_id=bidder_id,
            type="bid_accepted",
            title="Bid Accepted",
            message=f'Your bid for "{offer_title}" has been accepted! Amount: {format_amount(amount)}',
            related_id=str(bid_id),
            related_type="bid",
            priority="high",
            action_url=f"/bids/{bid_id}",
        )
    return NotificationRequest(
        user_id=bidder_id,
        type="bid_rejected",
        title="Bid Not Selected",
        message=f'Your bid for "{offer_title}" was not selected. Amount: {format_amount(amount)}',
        related_id=str(bid_id),
        related_type="bid",
        action_url=f"/bids/{bid_id}",
    )


def payment_notice(*, kind: str, payee_id, payment_id, amount, item_title: Optional[str] = None) -> NotificationRequest:
    if kind == "payment_created":
        title = "Payment Created"
        message = f"A payment of {format_amount(amount)}"
        message += f' for "{item_title}"' if item_title else ""
        message += " is pending"
        priority = "normal"
    elif kind == "payment_initiated":
        title = "Payment Initiated"
        message = f"Client has initiated a payment of {format_amount(amount)}"
        priority = "normal"
    elif kind == "payment_completed":
        title = "Payment Received"
        message = f"Payment of {format_amount(amount)} has been completed"
        priority = "high"
    else:
        raise ValueError(f"Unknown payment notification: {kind}")
    return NotificationRequest(
        user_id=payee_id,
        type=kind,
        title=title,
        message=message,
        related_id=str(payment_id),
        related_type="payment",
        priority=priority,
        action_url=f"/payments/{payment_id}",
    )


def progress_notice(
    *,
    kind: str,
    user_id,
    progress_update_id,
    milestone_name: str,
    project_title: Optional[str] = None,
    progress_percentage=None,
    review_comments: Optional[str] = None,
) -> NotificationRequest:
    if kind == "progress_update":
        title = "New Progress Update"
        message = (
            f'Constructor submitted a progress update for "{project_title}": '
            f"{milestone_name} ({Decimal(progress_percentage or 0).normalize():f}%)"
        )
    elif kind == "progress_approved":
        title = "Progress Update Approved"
        message = f'Your progress update "{milestone_name}" has been approved!'
    elif kind == "progress_rejected":
        title = "Progress Update Rejected"
        message = f'Your progress update "{milestone_name}" was rejected.'
        if review_comments:
            message += f" Reason: {review_comments}"
    else:
        raise ValueError(f"Unknown progress notification: {kind}")
    return NotificationRequest(
        user_id=user_id,
        type=kind,
        title=title,
        message=message,
        related_id=str(progress_update_id),
        related_type="progress_update",
        action_url=f"/progress/{progress_update_id}",
    )


def design_notice(
    *,
    kind: str,
    user_id,
    design_id,
    design_title: str,
    project_title: Optional[str] = None,
    review_comments: Optional[str] = None,
) -> NotificationRequest:
    if kind == "design_submitted":
        title = "New Design Submission"
        message = f'Architect submitted "{design_title}" for "{project_title}"'
    elif kind == "design_approved":
        title = "Design Approved"
        message = f'Your design "{design_title}" has been approved!'
    elif kind == "design_rejected":
        title = "Design Rejected"
        message = f'Your design "{design_title}" was rejected.'
        if review_comments:
            message += f" Reason: {review_comments}"
    else:
        raise ValueError(f"Unknown design notification: {kind}")
    return NotificationRequest(
        user_id=user_id,
        type=kind,
        title=title,
        message=message,
        related_id=str(design_id),
        related_type="design_submission",
        action_url=f"/designs/{design_id}",
    )


# ----- Read model -----

def list_notifications(db: Session, user_id: uuid.UUID, unread_only: bool = False, limit: int = 50) -> List[Notification]:
    query = db.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query.order_by(Notification.created_at.desc()).limit(limit).all()


def unread_count(db: Session, user_id: uuid.UUID) -> int:
    return db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.is_read.is_(False),
    ).count()


def _get_notification(db: Session, notification_id: uuid.UUID) -> Notification:
    notification = db.query(Notification).filter(Notification.id == notification_id).first()
    if not notification:
        raise NotFound("Notification not found")
    return notification


def mark_read(db: Session, notification_id: uuid.UUID) -> Notification:
    notification = _get_notification(db, notification_id)
    notification.is_read = True
    db.commit()
    return notification


def mark_all_read(db: Session, user_id: uuid.UUID) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def delete_notification(db: Session, notification_id: uuid.UUID) -> None:
    notification = _get_notification(db, notification_id)
    db.delete(notification)
    db.commit()
