"""
State machine for corrective work orders.

All lifecycle transitions MUST go through here. Each one is a single
transaction: the row is read (and locked where the database supports it),
guards are checked, and the write is a compare-and-swap on the status that was
read. If another actor got there first the write matches no row and the
transition is refused with a conflict instead of being applied twice.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ot_lifecycle.actor import CAN_ASSIGN, CAN_CANCEL, Actor
from ot_lifecycle.database import retry_transient, utcnow
from ot_lifecycle.models.audit import AuditEventType
from ot_lifecycle.models.domain import DowntimeLog, FailureOccurrence, SolutionApplied, WorkOrder
from ot_lifecycle.models.enums import (
    CLOSABLE_STATUSES,
    DowntimeCategory,
    Priority,
    ReturnToProductionBlocker,
    WorkOrderStatus,
    normalize_priority,
)
from ot_lifecycle.services import downtime
from ot_lifecycle.services.errors import (
    ForbiddenError,
    InvalidStateError,
    NotAssignedError,
    NotFoundError,
    ReturnToProductionRequiredError,
    TransitionConflictError,
    WorkOrderError,
    WorkOrderValidationError,
)
from ot_lifecycle.services.events import record_event, watcher_ids
from ot_lifecycle.services.guided_close import ClosePayload, derive_title, parse_close_payload
from ot_lifecycle.services.sla import SlaPolicy, SlaSnapshot, sla_for_work_order
from ot_lifecycle.services.waiting import validate_waiting
from ot_lifecycle.services.work_log import WorkLogLedger

logger = logging.getLogger(__name__)


@dataclass
class WorkOrderDetail:
    """Read-time projection behind the detail view."""
    work_order: WorkOrder
    sla: SlaSnapshot
    open_downtime_log: Optional[DowntimeLog]
    close_blockers: List[ReturnToProductionBlocker]
    total_logged_minutes: int
    total_downtime_minutes: int
    watcher_ids: List[int]

    @property
    def can_close(self) -> bool:
        return self.work_order.status in CLOSABLE_STATUSES and not self.close_blockers


class StateMachine:
    """Enforces work-order transitions and their guards."""

    def __init__(self, db: Session, policy: Optional[SlaPolicy] = None, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.policy = policy or SlaPolicy.from_settings()
        self.clock = clock

    # ==========================================================================
    # Loading
    # ==========================================================================

    def get_work_order(self, work_order_id: int, actor: Actor) -> WorkOrder:
        """Fetch a work order visible to the actor."""
        work_order = retry_transient(
            self.db,
            lambda: self.db.query(WorkOrder).filter(WorkOrder.id == work_order_id).first(),
        )
        return self._visible(work_order, work_order_id, actor)

    def _lock(self, work_order_id: int, actor: Actor) -> WorkOrder:
        """Re-read the row for update at the start of a transition."""
        work_order = retry_transient(
            self.db,
            lambda: self.db.query(WorkOrder).filter(
                WorkOrder.id == work_order_id
            ).populate_existing().with_for_update().first(),
        )
        return self._visible(work_order, work_order_id, actor)

    @staticmethod
    def _visible(work_order: Optional[WorkOrder], work_order_id: int, actor: Actor) -> WorkOrder:
        if work_order is None or work_order.company_id != actor.company_id:
            raise NotFoundError(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        return work_order

    # ==========================================================================
    # Transaction plumbing
    # ==========================================================================

    @contextmanager
    def _transition(self, operation: str, work_order_id: Any):
        try:
            yield
        except WorkOrderError as e:
            self.db.rollback()
            logger.warning(f"Refused {operation} on work order {work_order_id}: {e.kind} - {e.message}")
            raise
        except Exception:
            self.db.rollback()
            raise

    def _compare_and_set(
        self,
        work_order: WorkOrder,
        expected_status: WorkOrderStatus,
        values: Dict[str, Any],
        extra_criteria: Iterable = (),
    ) -> None:
        """Write `values` only if the row still has `expected_status` (and extra_criteria)."""
        values = dict(values, updated_at=self.clock())
        result = self.db.execute(
            update(WorkOrder)
            .where(WorkOrder.id == work_order.id, WorkOrder.status_in([expected_status]), *extra_criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransitionConflictError(
                f"Work order {work_order.id} changed while the transition was being applied; reload and retry",
                current_status=expected_status.value,
            )
        self.db.expire(work_order)

    @staticmethod
    def _require_status(work_order: WorkOrder, allowed, action: str) -> None:
        if work_order.status not in allowed:
            raise InvalidStateError(
                f"Cannot {action} work order {work_order.id} in {work_order.status.value} status",
                current_status=work_order.status.value,
            )

    def _require_open(self, work_order: WorkOrder, action: str) -> None:
        if work_order.is_terminal:
            raise InvalidStateError(
                f"Cannot {action} work order {work_order.id}: it is {work_order.status.value}",
                current_status=work_order.status.value,
            )

    # ==========================================================================
    # Intake
    # ==========================================================================

    def create_work_order(
        self,
        actor: Actor,
        title: str,
        priority: Union[str, Priority, None] = None,
        machine_id: Optional[int] = None,
        component_id: Optional[int] = None,
        description: Optional[str] = None,
        failure_occurrence_ids: Iterable[int] = (),
        scheduled_date: Optional[datetime] = None,
        qa_required: bool = False,
    ) -> WorkOrder:
        """
        Create a work order in PENDING, unassigned.

        requires_return_to_production is set when any linked (non-observation)
        failure caused downtime or is safety related. A failure that caused
        downtime also opens a downtime interval right away.
        """
        with self._transition("create", "(new)"):
            if not title or not title.strip():
                raise WorkOrderValidationError(
                    "Title is required", errors=[{"field": "title", "message": "is required"}]
                )

            ids = list(dict.fromkeys(failure_occurrence_ids))
            occurrences = []
            if ids:
                occurrences = self.db.query(FailureOccurrence).filter(
                    FailureOccurrence.id.in_(ids),
                    FailureOccurrence.company_id == actor.company_id,
                ).all()
                missing = sorted(set(ids) - {fo.id for fo in occurrences})
                if missing:
                    raise NotFoundError(f"Failure occurrences not found: {missing}", failure_occurrence_ids=missing)

            if priority is None:
                ranked = sorted((fo.priority for fo in occurrences if fo.priority), key=lambda p: p.rank)
                resolved_priority = ranked[0] if ranked else Priority.P3
            else:
                try:
                    resolved_priority = normalize_priority(priority)
                except ValueError as e:
                    raise WorkOrderValidationError(str(e), errors=[{"field": "priority", "message": str(e)}])

            relevant = [fo for fo in occurrences if not fo.is_observation]
            caused_downtime = any(fo.caused_downtime for fo in relevant)
            requires_return = caused_downtime or any(fo.is_safety_related for fo in relevant)

            now = self.clock()
            work_order = WorkOrder(
                company_id=actor.company_id,
                title=title.strip(),
                description=description,
                priority=resolved_priority,
                status=WorkOrderStatus.PENDING,
                machine_id=machine_id,
                component_id=component_id,
                created_by_id=actor.user_id,
                created_at=now,
                updated_at=now,
                scheduled_date=scheduled_date,
                qa_required=qa_required,
                requires_return_to_production=requires_return,
                return_to_production_confirmed=False,
                failure_occurrences=occurrences,
            )
            self.db.add(work_order)
            self.db.flush()

            if caused_downtime:
                downtime.start_log(self.db, work_order, started_at=now)

            record_event(
                self.db,
                AuditEventType.WORK_ORDER_CREATED,
                entity_type="WorkOrder",
                entity_id=work_order.id,
                work_order_id=work_order.id,
                user_id=actor.user_id,
                payload={
                    "priority": resolved_priority.value,
                    "machine_id": machine_id,
                    "failure_occurrence_ids": [fo.id for fo in occurrences],
                    "requires_return_to_production": requires_return,
                },
            )
            self.db.commit()
            self.db.refresh(work_order)

        logger.info(f"Created work order {work_order.id} ({work_order.priority.value})")
        return work_order

    # ==========================================================================
    # Transitions
    # ==========================================================================

    def assign(self, work_order_id: int, assignee_id: int, actor: Actor) -> WorkOrder:
        """Set the assignee. Does not change status."""
        with self._transition("assign", work_order_id):
            if not actor.can(CAN_ASSIGN):
                raise ForbiddenError(f"User {actor.user_id} may not assign work orders", capability=CAN_ASSIGN)

            work_order = self._lock(work_order_id, actor)
            self._require_open(work_order, "assign")

            previous = work_order.assigned_to_id
            self._compare_and_set(
                work_order,
                expected_status=work_order.status,
                values={"assigned_to_id": assignee_id, "assigned_at": self.clock()},
            )
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_ASSIGNED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={"assigned_to_id": assignee_id, "previous_assigned_to_id": previous},
            )
            self.db.commit()

        logger.info(f"Assigned work order {work_order_id} to user {assignee_id}")
        return work_order

    def start_work_order(self, work_order_id: int, actor: Actor) -> WorkOrder:
        """PENDING → IN_PROGRESS. Requires an assignee; started_date is written once."""
        with self._transition("start", work_order_id):
            work_order = self._lock(work_order_id, actor)
            self._require_status(work_order, (WorkOrderStatus.PENDING,), "start")
            if work_order.assigned_to_id is None:
                raise NotAssignedError(
                    f"Work order {work_order_id} has no assignee; assign it before starting",
                    current_status=work_order.status.value,
                )

            now = self.clock()
            self._compare_and_set(
                work_order,
                expected_status=WorkOrderStatus.PENDING,
                values={
                    "status": WorkOrderStatus.IN_PROGRESS,
                    "started_date": func.coalesce(WorkOrder.started_date, now),
                },
                extra_criteria=(WorkOrder.assigned_to_id.isnot(None),),
            )
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_STARTED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
            )
            self.db.commit()

        logger.info(f"Started work order {work_order_id}")
        return work_order

    def enter_waiting(self, work_order_id: int, reason: Any, description: Any, eta: Any, actor: Actor) -> WorkOrder:
        """IN_PROGRESS → WAITING, with reason, description (>= 10 chars) and a future ETA."""
        with self._transition("enter_waiting", work_order_id):
            request = validate_waiting(reason, description, eta, now=self.clock())

            work_order = self._lock(work_order_id, actor)
            self._require_status(work_order, (WorkOrderStatus.IN_PROGRESS,), "put on hold")

            self._compare_and_set(
                work_order,
                expected_status=WorkOrderStatus.IN_PROGRESS,
                values={
                    "status": WorkOrderStatus.WAITING,
                    "waiting_reason": request.reason,
                    "waiting_description": request.description,
                    "waiting_eta": request.eta,
                },
            )
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_WAITING,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={"reason": request.reason.value, "eta": request.eta.isoformat()},
            )
            self.db.commit()

        logger.info(f"Work order {work_order_id} waiting on {request.reason.value} until {request.eta}")
        return work_order

    def resume(self, work_order_id: int, actor: Actor) -> WorkOrder:
        """WAITING → IN_PROGRESS. Waiting fields stay as history; open downtime is untouched."""
        with self._transition("resume", work_order_id):
            work_order = self._lock(work_order_id, actor)
            self._require_status(work_order, (WorkOrderStatus.WAITING,), "resume")

            self._compare_and_set(
                work_order,
                expected_status=WorkOrderStatus.WAITING,
                values={"status": WorkOrderStatus.IN_PROGRESS},
            )
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_RESUMED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
            )
            self.db.commit()

        logger.info(f"Resumed work order {work_order_id}")
        return work_order

    def open_downtime(
        self,
        work_order_id: int,
        actor: Actor,
        category: DowntimeCategory = DowntimeCategory.UNPLANNED,
    ) -> DowntimeLog:
        """
        Start a downtime interval on an open work order.

        Only one interval may be open at a time. Opening one means production
        has to be confirmed again before the order can close.
        """
        with self._transition("open_downtime", work_order_id):
            work_order = self._lock(work_order_id, actor)
            self._require_open(work_order, "record downtime on")

            log = downtime.start_log(self.db, work_order, started_at=self.clock(), category=category)
            self._compare_and_set(
                work_order,
                expected_status=work_order.status,
                values={
                    "requires_return_to_production": True,
                    "return_to_production_confirmed": False,
                    "return_to_production_confirmed_at": None,
                    "return_to_production_confirmed_by_id": None,
                },
            )
            record_event(
                self.db,
                AuditEventType.DOWNTIME_STARTED,
                entity_type="DowntimeLog",
                entity_id=log.id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={"category": category.value, "machine_id": log.machine_id},
            )
            self.db.commit()
            self.db.refresh(log)

        logger.info(f"Opened downtime log {log.id} on work order {work_order_id}")
        return log

    def confirm_return_to_production(
        self,
        work_order_id: int,
        actor: Actor,
        downtime_log_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> WorkOrder:
        """
        Confirm the equipment is producing again.

        Closes the given (or most recent) open downtime interval and sets
        return_to_production_confirmed. Does not resume a WAITING order.
        """
        with self._transition("confirm_return_to_production", work_order_id):
            work_order = self._lock(work_order_id, actor)
            self._require_open(work_order, "confirm return to production on")

            log = downtime.resolve_log_to_close(self.db, work_order, downtime_log_id)
            pending_confirmation = (
                work_order.requires_return_to_production and not work_order.return_to_production_confirmed
            )
            if log is None and not pending_confirmation:
                raise InvalidStateError(
                    f"Work order {work_order_id} has no open downtime and nothing to confirm",
                    current_status=work_order.status.value,
                )

            now = self.clock()
            if log is not None:
                downtime.close_log(self.db, log, ended_at=now, returned_by_id=actor.user_id, notes=notes)

            self._compare_and_set(
                work_order,
                expected_status=work_order.status,
                values={
                    "return_to_production_confirmed": True,
                    "return_to_production_confirmed_at": now,
                    "return_to_production_confirmed_by_id": actor.user_id,
                },
            )
            record_event(
                self.db,
                AuditEventType.RETURN_TO_PRODUCTION_CONFIRMED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={
                    "downtime_log_id": log.id if log else None,
                    "total_minutes": log.total_minutes if log else None,
                    "notes": notes,
                },
            )
            self.db.commit()

        logger.info(f"Return to production confirmed on work order {work_order_id}")
        return work_order

    def close_work_order(
        self,
        work_order_id: int,
        payload: Union[ClosePayload, Mapping[str, Any]],
        actor: Actor,
    ) -> WorkOrder:
        """
        IN_PROGRESS/WAITING → CLOSED with a guided-close payload.

        Refusal order:
        - INVALID_STATE when the status does not allow closing
        - RETURN_TO_PRODUCTION_REQUIRED while the order is flagged and either a
          downtime interval is open or production is not confirmed
        - VALIDATION when the payload is malformed
        """
        with self._transition("close", work_order_id):
            work_order = self._lock(work_order_id, actor)
            self._require_status(work_order, CLOSABLE_STATUSES, "close")

            open_log = downtime.find_open_log(self.db, work_order.id)
            blockers = downtime.return_to_production_blockers(work_order, open_log)
            if blockers:
                self._refuse_close(work_order, blockers, open_log, actor)

            data = parse_close_payload(payload)
            now = self.clock()
            expected_status = work_order.status
            failure_ids = [fo.id for fo in work_order.failure_occurrences]

            qa_status = work_order.qa_status
            if work_order.qa_required and qa_status == "APPROVED":
                qa_status = "RETURNED_TO_PRODUCTION"

            guards = []
            if work_order.requires_return_to_production:
                guards = [
                    WorkOrder.return_to_production_confirmed.is_(True),
                    ~downtime.open_downtime_exists(work_order.id),
                ]

            title = derive_title(data)
            self._compare_and_set(
                work_order,
                expected_status=expected_status,
                values={
                    "status": WorkOrderStatus.CLOSED,
                    "completed_date": now,
                    "closed_title": title,
                    "closing_mode": data.closing_mode,
                    "diagnosis_notes": data.diagnosis,
                    "work_performed_notes": data.solution,
                    "result_notes": data.outcome.value,
                    "root_cause": data.confirmed_cause or data.diagnosis,
                    "confirmed_cause": data.confirmed_cause,
                    "solution": data.solution,
                    "fix_type": data.fix_type,
                    "actual_minutes": data.actual_minutes,
                    "closed_by_id": actor.user_id,
                    "assigned_to_id": func.coalesce(WorkOrder.assigned_to_id, actor.user_id),
                    "qa_status": qa_status,
                },
                extra_criteria=guards,
            )

            self.db.add(SolutionApplied(
                work_order_id=work_order_id,
                failure_occurrence_id=failure_ids[0] if failure_ids else None,
                company_id=actor.company_id,
                machine_id=work_order.machine_id,
                title=title,
                diagnosis=data.diagnosis,
                solution=data.solution,
                outcome=data.outcome,
                fix_type=data.fix_type,
                final_component_id=data.final_component_id,
                final_subcomponent_id=data.final_subcomponent_id,
                confirmed_cause=data.confirmed_cause,
                effectiveness=data.effectiveness,
                notes=data.notes,
                actual_minutes=data.actual_minutes,
                performed_by_id=actor.user_id,
                performed_at=now,
            ))
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_CLOSED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={
                    "outcome": data.outcome.value,
                    "fix_type": data.fix_type.value,
                    "closing_mode": data.closing_mode.value,
                    "failure_occurrence_ids": failure_ids,
                    "actual_minutes": data.actual_minutes,
                },
            )
            self.db.commit()

        logger.info(f"Closed work order {work_order_id} ({data.outcome.value}, {data.closing_mode.value})")
        return work_order

    def _refuse_close(self, work_order: WorkOrder, blockers, open_log: Optional[DowntimeLog], actor: Actor):
        """Record the refusal on its own commit, then raise RETURN_TO_PRODUCTION_REQUIRED."""
        blocker_values = [b.value for b in blockers]
        open_log_id = open_log.id if open_log else None
        work_order_id = work_order.id
        status = work_order.status.value

        self.db.rollback()
        record_event(
            self.db,
            AuditEventType.CLOSE_REFUSED_RETURN_TO_PRODUCTION,
            entity_type="WorkOrder",
            entity_id=work_order_id,
            work_order_id=work_order_id,
            user_id=actor.user_id,
            payload={"blockers": blocker_values, "open_downtime_log_id": open_log_id},
        )
        self.db.commit()

        if ReturnToProductionBlocker.OPEN_DOWNTIME in blockers:
            message = "Downtime is still open; confirm return to production to close it before closing the work order"
        else:
            message = "Return to production has not been confirmed for this work order"
        raise ReturnToProductionRequiredError(
            message,
            blockers=blocker_values,
            open_downtime_log_id=open_log_id,
            current_status=status,
        )

    def cancel(self, work_order_id: int, reason: str, actor: Actor) -> WorkOrder:
        """Administrative override: any non-terminal status → CANCELLED."""
        with self._transition("cancel", work_order_id):
            if not actor.can(CAN_CANCEL):
                raise ForbiddenError(f"User {actor.user_id} may not cancel work orders", capability=CAN_CANCEL)
            if not reason or not reason.strip():
                raise WorkOrderValidationError(
                    "A cancellation reason is required", errors=[{"field": "reason", "message": "is required"}]
                )

            work_order = self._lock(work_order_id, actor)
            self._require_open(work_order, "cancel")

            previous = work_order.status
            self._compare_and_set(
                work_order,
                expected_status=previous,
                values={
                    "status": WorkOrderStatus.CANCELLED,
                    "cancelled_at": self.clock(),
                    "cancellation_reason": reason.strip(),
                },
            )
            record_event(
                self.db,
                AuditEventType.WORK_ORDER_CANCELLED,
                entity_type="WorkOrder",
                entity_id=work_order_id,
                work_order_id=work_order_id,
                user_id=actor.user_id,
                payload={"reason": reason.strip(), "previous_status": previous.value},
            )
            self.db.commit()

        logger.info(f"Cancelled work order {work_order_id}: {reason}")
        return work_order

    # ==========================================================================
    # Read side
    # ==========================================================================

    def get_detail(self, work_order_id: int, actor: Actor, now: Optional[datetime] = None) -> WorkOrderDetail:
        """Work order plus everything the detail view derives from it at `now`."""
        work_order = self.get_work_order(work_order_id, actor)
        now = now or self.clock()
        open_log = downtime.find_open_log(self.db, work_order.id)
        return WorkOrderDetail(
            work_order=work_order,
            sla=sla_for_work_order(work_order, now, self.policy),
            open_downtime_log=open_log,
            close_blockers=downtime.return_to_production_blockers(work_order, open_log),
            total_logged_minutes=WorkLogLedger(self.db).total_minutes(work_order),
            total_downtime_minutes=downtime.total_downtime_minutes(work_order),
            watcher_ids=watcher_ids(self.db, work_order.id),
        )
