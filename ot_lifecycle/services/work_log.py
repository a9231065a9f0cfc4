"""Append-only activity ledger for work orders."""
import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from ot_lifecycle.actor import Actor
from ot_lifecycle.models.audit import AuditEventType
from ot_lifecycle.models.domain import WorkLog, WorkOrder
from ot_lifecycle.models.enums import WorkLogActivity, WorkOrderStatus, coerce_member
from ot_lifecycle.services.errors import InvalidStateError, WorkOrderValidationError
from ot_lifecycle.services.events import record_event
from ot_lifecycle.services.sla import round_half_up
from ot_lifecycle.services.waiting import parse_timestamp

logger = logging.getLogger(__name__)


class WorkLogLedger:
    """Adds and reads activity entries. There is no update or delete."""

    def __init__(self, db: Session):
        self.db = db

    def add_entry(
        self,
        work_order: WorkOrder,
        activity_type: Any,
        description: str,
        actor: Actor,
        started_at: Any,
        ended_at: Any = None,
        actual_minutes: Optional[int] = None,
        performed_by_id: Optional[int] = None,
    ) -> WorkLog:
        """
        Append an activity entry.

        When ended_at is given and actual_minutes is not, the minutes are
        derived from the interval.
        """
        if work_order.status == WorkOrderStatus.CANCELLED:
            raise InvalidStateError(
                f"Cannot log work on cancelled work order {work_order.id}",
                current_status=work_order.status.value,
            )

        errors = []
        activity = None
        try:
            activity = coerce_member(WorkLogActivity, activity_type)
        except (ValueError, KeyError, TypeError):
            errors.append({"field": "activity_type", "message": "unknown activity type"})

        text = description.strip() if isinstance(description, str) else ""
        if not text:
            errors.append({"field": "description", "message": "is required"})

        start = end = None
        try:
            start = parse_timestamp(started_at)
        except (TypeError, ValueError):
            errors.append({"field": "started_at", "message": "is not a valid timestamp"})
        if ended_at is not None:
            try:
                end = parse_timestamp(ended_at)
            except (TypeError, ValueError):
                errors.append({"field": "ended_at", "message": "is not a valid timestamp"})
        if start is not None and end is not None and end < start:
            errors.append({"field": "ended_at", "message": "must not be before started_at"})

        if actual_minutes is not None and (
            isinstance(actual_minutes, bool) or not isinstance(actual_minutes, int) or actual_minutes <= 0
        ):
            errors.append({"field": "actual_minutes", "message": "must be a positive integer"})

        if errors:
            raise WorkOrderValidationError("Invalid work log entry", errors=errors)

        if actual_minutes is None and end is not None:
            actual_minutes = round_half_up((end - start).total_seconds() / 60)

        entry = WorkLog(
            work_order_id=work_order.id,
            activity_type=activity,
            description=text,
            performed_by_id=performed_by_id or actor.user_id,
            started_at=start,
            ended_at=end,
            actual_minutes=actual_minutes,
        )
        self.db.add(entry)
        self.db.flush()

        record_event(
            self.db,
            AuditEventType.WORK_LOG_ADDED,
            entity_type="WorkLog",
            entity_id=entry.id,
            work_order_id=work_order.id,
            user_id=actor.user_id,
            payload={"activity_type": activity.value, "actual_minutes": actual_minutes},
        )
        self.db.commit()
        self.db.refresh(entry)

        logger.info(f"Logged {activity.value} on work order {work_order.id} ({actual_minutes or 0} min)")
        return entry

    def list_entries(self, work_order: WorkOrder) -> List[WorkLog]:
        return self.db.query(WorkLog).filter(
            WorkLog.work_order_id == work_order.id
        ).order_by(WorkLog.started_at, WorkLog.id).all()

    def total_minutes(self, work_order: WorkOrder) -> int:
        """Logged activity minutes plus the minutes reported at close."""
        logged = sum(entry.actual_minutes or 0 for entry in self.list_entries(work_order))
        return logged + (work_order.actual_minutes or 0)

    @staticmethod
    def minutes_by_activity(entries: List[WorkLog]) -> dict:
        totals = {}
        for entry in entries:
            key = entry.activity_type.value
            totals[key] = totals.get(key, 0) + (entry.actual_minutes or 0)
        return totals
