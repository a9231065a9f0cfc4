"""
Transition event log.

Every lifecycle transition and every refused close appends a row here in the
same transaction as the change. Rows double as an outbox for the notification
subsystem: a downstream consumer reads undelivered events and stamps them.
"""
from sqlalchemy import Column, DateTime, Integer, JSON, String

from ot_lifecycle.database import Base, utcnow


class AuditEvent(Base):
    """
    Immutable event for reconstructing what happened to a work order.

    Invariants:
    - Append-only; only delivered_at is ever written after insert
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g. "work_order.started"
    entity_type = Column(String, nullable=False)  # e.g. "WorkOrder", "DowntimeLog"
    entity_id = Column(String, nullable=False, index=True)
    work_order_id = Column(Integer, nullable=True, index=True)
    user_id = Column(Integer, nullable=True)  # Nullable for system events
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    payload_json = Column(JSON, nullable=True)
    delivered_at = Column(DateTime, nullable=True)


class AuditEventType:
    """Enumeration of event types."""
    WORK_ORDER_CREATED = "work_order.created"
    WORK_ORDER_ASSIGNED = "work_order.assigned"
    WORK_ORDER_STARTED = "work_order.started"
    WORK_ORDER_WAITING = "work_order.waiting"
    WORK_ORDER_RESUMED = "work_order.resumed"
    WORK_ORDER_CLOSED = "work_order.closed"
    WORK_ORDER_CANCELLED = "work_order.cancelled"

    DOWNTIME_STARTED = "downtime.started"
    RETURN_TO_PRODUCTION_CONFIRMED = "work_order.return_to_production_confirmed"

    WORK_LOG_ADDED = "work_log.added"

    WORK_ORDER_FOLLOWED = "work_order.followed"
    WORK_ORDER_UNFOLLOWED = "work_order.unfollowed"

    # Refusals
    CLOSE_REFUSED_RETURN_TO_PRODUCTION = "work_order.close_refused_return_to_production"
