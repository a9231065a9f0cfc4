"""
Transition events and watchers.

Events are written as AuditEvent rows inside the caller's transaction, so an
event exists exactly when its change was committed. Delivery is somebody
else's job: consumers poll pending_events() and stamp what they sent.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ot_lifecycle.actor import Actor
from ot_lifecycle.database import utcnow
from ot_lifecycle.models.audit import AuditEvent, AuditEventType
from ot_lifecycle.models.domain import WorkOrder, WorkOrderWatcher

logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    event_type: str,
    entity_type: str,
    entity_id: Any,
    work_order_id: Optional[int] = None,
    user_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    """Add an event to the session. The caller commits."""
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=str(entity_id),
        work_order_id=work_order_id,
        user_id=user_id,
        payload_json=payload or {},
    )
    db.add(event)
    return event


def pending_events(db: Session, limit: int = 100) -> List[AuditEvent]:
    return db.query(AuditEvent).filter(
        AuditEvent.delivered_at.is_(None)
    ).order_by(AuditEvent.id).limit(limit).all()


def mark_delivered(db: Session, event_ids: List[int]) -> int:
    if not event_ids:
        return 0
    count = db.query(AuditEvent).filter(
        AuditEvent.id.in_(event_ids),
        AuditEvent.delivered_at.is_(None),
    ).update({AuditEvent.delivered_at: utcnow()}, synchronize_session=False)
    db.commit()
    return count


def watcher_ids(db: Session, work_order_id: int) -> List[int]:
    rows = db.query(WorkOrderWatcher.user_id).filter(
        WorkOrderWatcher.work_order_id == work_order_id
    ).order_by(WorkOrderWatcher.id).all()
    return [user_id for (user_id,) in rows]


def _is_watching(db: Session, work_order_id: int, user_id: int) -> bool:
    return db.query(WorkOrderWatcher.id).filter(
        WorkOrderWatcher.work_order_id == work_order_id,
        WorkOrderWatcher.user_id == user_id,
    ).first() is not None


def follow(db: Session, work_order: WorkOrder, actor: Actor) -> bool:
    """Start watching a work order. Returns False if already watching."""
    work_order_id = work_order.id
    if _is_watching(db, work_order_id, actor.user_id):
        return False

    db.add(WorkOrderWatcher(work_order_id=work_order_id, user_id=actor.user_id))
    record_event(
        db,
        AuditEventType.WORK_ORDER_FOLLOWED,
        entity_type="WorkOrder",
        entity_id=work_order_id,
        work_order_id=work_order_id,
        user_id=actor.user_id,
    )
    try:
        db.commit()
    except IntegrityError:
        # A concurrent follow won the unique constraint
        db.rollback()
        return False
    logger.info(f"User {actor.user_id} now follows work order {work_order_id}")
    return True


def unfollow(db: Session, work_order: WorkOrder, actor: Actor) -> bool:
    """Stop watching a work order. Returns False if not watching."""
    removed = db.query(WorkOrderWatcher).filter(
        WorkOrderWatcher.work_order_id == work_order.id,
        WorkOrderWatcher.user_id == actor.user_id,
    ).delete(synchronize_session=False)
    if not removed:
        return False

    record_event(
        db,
        AuditEventType.WORK_ORDER_UNFOLLOWED,
        entity_type="WorkOrder",
        entity_id=work_order.id,
        work_order_id=work_order.id,
        user_id=actor.user_id,
    )
    db.commit()
    db.expire(work_order, ["watchers"])
    logger.info(f"User {actor.user_id} unfollowed work order {work_order.id}")
    return True
