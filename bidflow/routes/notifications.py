import uuid

import structlog
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from ..db import get_db
from ..services import notifications as inbox
from ..services.notification_hub import hub


router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = structlog.get_logger(__name__)


@router.get("/user/{user_id}")
def list_user_notifications(
    user_id: uuid.UUID,
    unread_only: bool = Query(False, alias="unreadOnly"),
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """
    List a user's notifications, newest first.
    ``unreadCount`` is always the total unread, independent of ``limit``.
    """
    notifications = inbox.list_notifications(db, user_id, unread_only=unread_only, limit=limit)
    return {
        "success": True,
        "notifications": [inbox.notification_to_dict(n) for n in notifications],
        "unreadCount": inbox.unread_count(db, user_id),
        "total": len(notifications),
    }


@router.put("/user/{user_id}/read-all")
def mark_all_read(user_id: uuid.UUID, db: Session = Depends(get_db)):
    updated = inbox.mark_all_read(db, user_id)
    return {"success": True, "message": "All notifications marked as read", "updatedCount": updated}


@router.put("/{notification_id}/read")
def mark_read(notification_id: uuid.UUID, db: Session = Depends(get_db)):
    inbox.mark_read(db, notification_id)
    return {"success": True, "message": "Notification marked as read"}


@router.delete("/{notification_id}")
def delete_notification(notification_id: uuid.UUID, db: Session = Depends(get_db)):
    inbox.delete_notification(db, notification_id)
    return {"success": True, "message": "Notification deleted successfully"}


@router.websocket("/ws/{user_id}")
async def ws_notifications(websocket: WebSocket, user_id: uuid.UUID, db: Session = Depends(get_db)):
    key = str(user_id)
    await websocket.accept()
    await hub.connect(key, websocket)
    await websocket.send_json({"event": "unread_count", "data": {"unreadCount": inbox.unread_count(db, user_id)}})
    try:
        while True:
            data = await websocket.receive_text()
            # Accept keep-alives or simple pings; ignore content for now
            if data and data.strip().lower() in {"ping", "keepalive"}:
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("notification_socket_closed", user_id=key)
    finally:
        await hub.disconnect(key, websocket)
