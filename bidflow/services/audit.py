"""
Audit trail for workflow transitions.

Entries are written inside the caller's unit of work (flushed, never
committed here) so an audit row exists exactly when its transition does.
Each row carries a SHA-256 digest of its canonical content keyed by
``AUDIT_SECRET``; ``verify_integrity`` recomputes it.
"""
import hashlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AuditLog


def _jsonable(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


def _digest(entry: Dict[str, Any], secret: str) -> str:
    canonical = {k: v for k, v in entry.items() if v is not None}
    payload = json.dumps(canonical, sort_keys=True, default=str)
    return hashlib.sha256(f"{payload}:{secret}".encode()).hexdigest()


def _canonical(log: AuditLog) -> Dict[str, Any]:
    return {
        "entity_type": log.entity_type,
        "entity_id": str(log.entity_id),
        "action": log.action,
        "actor_id": str(log.actor_id) if log.actor_id else None,
        "source": log.source,
        "timestamp_utc": log.timestamp_utc.replace(tzinfo=None).isoformat(),
        "changes": log.changes_json,
        "context": log.context,
    }


def create_audit_log(
    db: Session,
    entity_type: str,
    entity_id: uuid.UUID,
    action: str,
    actor_id: Optional[uuid.UUID] = None,
    source: Optional[str] = None,
    changes_json: Optional[Dict] = None,
    context: Optional[Dict] = None,
    integrity_secret: Optional[str] = None
) -> AuditLog:
    """
    Stage an append-only audit entry.

    Args:
        db: Session of the surrounding unit of work
        entity_type: bid|project|material_request|progress_update|design_submission|payment
        entity_id: Entity ID
        action: CREATE|ACCEPT|REJECT|WITHDRAW|APPROVE|AWARD|PROGRESS|STATUS
        actor_id: User who performed the action, when known
        source: api|system (defaults to api)
        changes_json: Before/after diff, ``{field: {"before": .., "after": ..}}``
        context: Related ids and amounts
        integrity_secret: Overrides AUDIT_SECRET

    Returns:
        The flushed AuditLog row
    """
    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        source=source or "api",
        changes_json=_jsonable(changes_json),
        timestamp_utc=datetime.utcnow().replace(tzinfo=None),
        context=_jsonable(context),
    )
    secret = settings.audit_secret if integrity_secret is None else integrity_secret
    if secret:
        log.integrity_hash = _digest(_canonical(log), secret)

    db.add(log)
    db.flush()
    return log


def verify_integrity(log: AuditLog, integrity_secret: Optional[str] = None) -> bool:
    """True when the stored digest still matches the row's content."""
    secret = settings.audit_secret if integrity_secret is None else integrity_secret
    if not secret or not log.integrity_hash:
        return False
    return _digest(_canonical(log), secret) == log.integrity_hash


def get_audit_logs(
    db: Session,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0
) -> List[AuditLog]:
    """Newest first."""
    query = db.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    return query.order_by(AuditLog.timestamp_utc.desc()).limit(limit).offset(offset).all()
