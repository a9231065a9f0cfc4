"""
Downtime ledger and the return-to-production gate.

Downtime intervals are append-only. Closing one records how long the machine
was down; it never changes the work order status by itself.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import exists, update
from sqlalchemy.orm import Session

from ot_lifecycle.models.domain import DowntimeLog, WorkOrder
from ot_lifecycle.models.enums import DowntimeCategory, ReturnToProductionBlocker
from ot_lifecycle.services.errors import InvalidStateError, NotFoundError, TransitionConflictError
from ot_lifecycle.services.sla import round_half_up


def open_downtime_exists(work_order_id: int):
    """SQL criterion: the work order has an open downtime interval."""
    return exists().where(
        DowntimeLog.work_order_id == work_order_id,
        DowntimeLog.ended_at.is_(None),
    )


def find_open_log(db: Session, work_order_id: int) -> Optional[DowntimeLog]:
    return db.query(DowntimeLog).filter(
        DowntimeLog.work_order_id == work_order_id,
        DowntimeLog.ended_at.is_(None),
    ).order_by(DowntimeLog.started_at.desc(), DowntimeLog.id.desc()).first()


def start_log(
    db: Session,
    work_order: WorkOrder,
    started_at: datetime,
    category: DowntimeCategory = DowntimeCategory.UNPLANNED,
) -> DowntimeLog:
    """Open a downtime interval. Refuses a second open interval."""
    current = find_open_log(db, work_order.id)
    if current is not None:
        raise InvalidStateError(
            f"Work order {work_order.id} already has open downtime log {current.id}",
            current_status=work_order.status.value,
            open_downtime_log_id=current.id,
        )

    log = DowntimeLog(
        work_order_id=work_order.id,
        machine_id=work_order.machine_id,
        category=category,
        started_at=started_at,
    )
    db.add(log)
    db.flush()
    return log


def close_log(
    db: Session,
    log: DowntimeLog,
    ended_at: datetime,
    returned_by_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> DowntimeLog:
    """
    Close an interval and compute total_minutes, rounded half up.

    The write only matches a row that is still open, so two actors cannot
    both close the same interval.
    """
    if not log.is_open:
        raise InvalidStateError(
            f"Downtime log {log.id} is already closed",
            downtime_log_id=log.id,
        )
    if ended_at < log.started_at:
        ended_at = log.started_at

    total_minutes = round_half_up((ended_at - log.started_at).total_seconds() / 60)
    result = db.execute(
        update(DowntimeLog)
        .where(DowntimeLog.id == log.id, DowntimeLog.ended_at.is_(None))
        .values(
            ended_at=ended_at,
            total_minutes=total_minutes,
            returned_by_id=returned_by_id,
            return_notes=notes,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise TransitionConflictError(
            f"Downtime log {log.id} was closed by someone else",
            downtime_log_id=log.id,
        )
    db.expire(log)
    return log


def resolve_log_to_close(db: Session, work_order: WorkOrder, downtime_log_id: Optional[int]) -> Optional[DowntimeLog]:
    """
    Pick the interval a return-to-production confirmation closes.

    With an explicit id the log must belong to the work order and be open;
    without one the most recent open log is used (None if there is none).
    """
    if downtime_log_id is None:
        return find_open_log(db, work_order.id)

    log = db.query(DowntimeLog).filter(
        DowntimeLog.id == downtime_log_id,
        DowntimeLog.work_order_id == work_order.id,
    ).first()
    if log is None:
        raise NotFoundError(
            f"Downtime log {downtime_log_id} not found on work order {work_order.id}",
            downtime_log_id=downtime_log_id,
        )
    if not log.is_open:
        raise InvalidStateError(
            f"Downtime log {log.id} is already closed",
            current_status=work_order.status.value,
            downtime_log_id=log.id,
        )
    return log


def return_to_production_blockers(work_order: WorkOrder, open_log: Optional[DowntimeLog]) -> List[ReturnToProductionBlocker]:
    """
    What still prevents closing a work order flagged for return to production.

    Empty when the order is not flagged, or when it is confirmed and no
    downtime interval is open.
    """
    if not work_order.requires_return_to_production:
        return []

    blockers = []
    if open_log is not None:
        blockers.append(ReturnToProductionBlocker.OPEN_DOWNTIME)
    if not work_order.return_to_production_confirmed:
        blockers.append(ReturnToProductionBlocker.NOT_CONFIRMED)
    return blockers


def total_downtime_minutes(work_order: WorkOrder) -> int:
    return sum(log.total_minutes or 0 for log in work_order.downtime_logs)
