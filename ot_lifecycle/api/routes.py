"""API routes for the corrective work-order lifecycle."""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, status
from sqlalchemy.orm import Session

from ot_lifecycle.actor import Actor
from ot_lifecycle.database import get_db
from ot_lifecycle.services import events
from ot_lifecycle.services.dispatcher import DispatcherAggregator, DispatcherCard
from ot_lifecycle.services.guided_close import find_prior_solutions
from ot_lifecycle.services.state_machine import StateMachine, WorkOrderDetail
from ot_lifecycle.services.work_log import WorkLogLedger
from ot_lifecycle.api.schemas import (
    AssignRequest,
    CancelRequest,
    DispatcherBucket,
    DispatcherCardResponse,
    DispatcherResponse,
    DowntimeLogResponse,
    DowntimeOpenRequest,
    ErrorResponse,
    PriorSolutionResponse,
    ReturnToProductionRequest,
    SlaResponse,
    WaitingRequestBody,
    WatchResponse,
    WorkLogCreate,
    WorkLogListResponse,
    WorkLogResponse,
    WorkOrderCreate,
    WorkOrderDetailResponse,
    WorkOrderResponse,
)

router = APIRouter()

REFUSALS = {
    403: {"model": ErrorResponse, "description": "Actor lacks the required capability"},
    404: {"model": ErrorResponse, "description": "Unknown work order, or outside the actor's company"},
    409: {"model": ErrorResponse, "description": "Transition refused in the current state"},
    422: {"model": ErrorResponse, "description": "Invalid payload"},
}


def get_actor(
    x_user_id: int = Header(...),
    x_company_id: int = Header(...),
    x_user_capabilities: str = Header(""),
) -> Actor:
    """The identity proxy in front of this service resolves the user and sets these headers."""
    capabilities = frozenset(c.strip() for c in x_user_capabilities.split(",") if c.strip())
    return Actor(user_id=x_user_id, company_id=x_company_id, capabilities=capabilities)


def _detail_response(detail: WorkOrderDetail) -> WorkOrderDetailResponse:
    return WorkOrderDetailResponse(
        work_order=WorkOrderResponse.model_validate(detail.work_order),
        sla=SlaResponse.model_validate(detail.sla),
        open_downtime_log=(
            DowntimeLogResponse.model_validate(detail.open_downtime_log) if detail.open_downtime_log else None
        ),
        close_blockers=[b.value for b in detail.close_blockers],
        can_close=detail.can_close,
        total_logged_minutes=detail.total_logged_minutes,
        total_downtime_minutes=detail.total_downtime_minutes,
        watcher_ids=detail.watcher_ids,
    )


def _card_response(card: DispatcherCard) -> DispatcherCardResponse:
    wo = card.work_order
    return DispatcherCardResponse(
        id=wo.id,
        title=wo.title,
        priority=wo.priority,
        status=wo.status,
        machine_id=wo.machine_id,
        component_id=wo.component_id,
        assigned_to_id=wo.assigned_to_id,
        created_at=wo.created_at,
        started_date=wo.started_date,
        sla_due_at=card.sla.due_at,
        sla_hours_remaining=card.sla.hours_remaining,
        sla_status=card.sla.status,
        is_overdue=card.sla.overdue,
        overdue_hours=card.sla.overdue_hours,
        waiting_reason=wo.waiting_reason,
        waiting_description=wo.waiting_description,
        waiting_eta=wo.waiting_eta,
        eta_overdue=card.eta_overdue,
        eta_overdue_hours=card.eta_overdue_hours,
        requires_return_to_production=wo.requires_return_to_production,
        has_open_downtime=card.has_open_downtime,
    )


def _bucket(cards: List[DispatcherCard]) -> DispatcherBucket:
    return DispatcherBucket(items=[_card_response(c) for c in cards], count=len(cards))


# Work order endpoints
@router.post("/work-orders", response_model=WorkOrderResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def create_work_order(data: WorkOrderCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Create a work order in PENDING, optionally linked to failure occurrences."""
    sm = StateMachine(db)
    return sm.create_work_order(
        actor,
        title=data.title,
        priority=data.priority,
        machine_id=data.machine_id,
        component_id=data.component_id,
        description=data.description,
        failure_occurrence_ids=data.failure_occurrence_ids,
        scheduled_date=data.scheduled_date,
        qa_required=data.qa_required,
    )


@router.get("/work-orders/{work_order_id}", response_model=WorkOrderDetailResponse, responses=REFUSALS)
def get_work_order(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Work order with its SLA projection, open downtime and close blockers."""
    return _detail_response(StateMachine(db).get_detail(work_order_id, actor))


@router.post("/work-orders/{work_order_id}/assign", response_model=WorkOrderResponse, responses=REFUSALS)
def assign_work_order(
    work_order_id: int, data: AssignRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    return StateMachine(db).assign(work_order_id, data.assigned_to_id, actor)


@router.post("/work-orders/{work_order_id}/start", response_model=WorkOrderResponse, responses=REFUSALS)
def start_work_order(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """
    PENDING → IN_PROGRESS.

    WILL REFUSE if:
    - the work order is not PENDING (INVALID_STATE)
    - nobody is assigned (NOT_ASSIGNED)
    """
    return StateMachine(db).start_work_order(work_order_id, actor)


@router.post("/work-orders/{work_order_id}/waiting", response_model=WorkOrderResponse, responses=REFUSALS)
def enter_waiting(
    work_order_id: int, data: WaitingRequestBody, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    """Put an IN_PROGRESS work order on hold with a reason, description and future ETA."""
    return StateMachine(db).enter_waiting(work_order_id, data.reason, data.description, data.eta, actor)


@router.post("/work-orders/{work_order_id}/resume", response_model=WorkOrderResponse, responses=REFUSALS)
def resume_work_order(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    return StateMachine(db).resume(work_order_id, actor)


@router.post("/work-orders/{work_order_id}/return-to-production", response_model=WorkOrderResponse, responses=REFUSALS)
def confirm_return_to_production(
    work_order_id: int,
    data: Optional[ReturnToProductionRequest] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Confirm the equipment is producing again; closes the open downtime interval."""
    data = data or ReturnToProductionRequest()
    return StateMachine(db).confirm_return_to_production(
        work_order_id, actor, downtime_log_id=data.downtime_log_id, notes=data.notes
    )


@router.post("/work-orders/{work_order_id}/close", response_model=WorkOrderResponse, responses=REFUSALS)
def close_work_order(
    work_order_id: int,
    payload: Dict[str, Any] = Body(...),
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Guided close.

    WILL REFUSE if:
    - the work order is not IN_PROGRESS or WAITING (INVALID_STATE)
    - return to production is pending (RETURN_TO_PRODUCTION_REQUIRED, with blockers)
    - the payload is invalid (VALIDATION, with field errors)
    """
    return StateMachine(db).close_work_order(work_order_id, payload, actor)


@router.post("/work-orders/{work_order_id}/cancel", response_model=WorkOrderResponse, responses=REFUSALS)
def cancel_work_order(
    work_order_id: int, data: CancelRequest, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    return StateMachine(db).cancel(work_order_id, data.reason, actor)


@router.post(
    "/work-orders/{work_order_id}/downtime",
    response_model=DowntimeLogResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def open_downtime(
    work_order_id: int,
    data: Optional[DowntimeOpenRequest] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Start a downtime interval. Return to production must then be confirmed again."""
    data = data or DowntimeOpenRequest()
    return StateMachine(db).open_downtime(work_order_id, actor, category=data.category)


# Work log endpoints
@router.get("/work-orders/{work_order_id}/work-logs", response_model=WorkLogListResponse, responses=REFUSALS)
def list_work_logs(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    work_order = StateMachine(db).get_work_order(work_order_id, actor)
    ledger = WorkLogLedger(db)
    entries = ledger.list_entries(work_order)
    return WorkLogListResponse(
        items=[WorkLogResponse.model_validate(e) for e in entries],
        total_minutes=ledger.total_minutes(work_order),
        minutes_by_activity=WorkLogLedger.minutes_by_activity(entries),
    )


@router.post(
    "/work-orders/{work_order_id}/work-logs",
    response_model=WorkLogResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def add_work_log(
    work_order_id: int, data: WorkLogCreate, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)
):
    work_order = StateMachine(db).get_work_order(work_order_id, actor)
    return WorkLogLedger(db).add_entry(
        work_order,
        activity_type=data.activity_type,
        description=data.description,
        actor=actor,
        started_at=data.started_at,
        ended_at=data.ended_at,
        actual_minutes=data.actual_minutes,
        performed_by_id=data.performed_by_id,
    )


@router.get(
    "/work-orders/{work_order_id}/previous-solutions",
    response_model=List[PriorSolutionResponse],
    responses=REFUSALS,
)
def previous_solutions(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    """Solutions from other closed work orders on the same machine. Suggestions only."""
    work_order = StateMachine(db).get_work_order(work_order_id, actor)
    return find_prior_solutions(db, work_order)


# Watchers
@router.post("/work-orders/{work_order_id}/watchers", response_model=WatchResponse, responses=REFUSALS)
def follow_work_order(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    work_order = StateMachine(db).get_work_order(work_order_id, actor)
    changed = events.follow(db, work_order, actor)
    return WatchResponse(work_order_id=work_order_id, following=True, changed=changed)


@router.delete("/work-orders/{work_order_id}/watchers", response_model=WatchResponse, responses=REFUSALS)
def unfollow_work_order(work_order_id: int, actor: Actor = Depends(get_actor), db: Session = Depends(get_db)):
    work_order = StateMachine(db).get_work_order(work_order_id, actor)
    changed = events.unfollow(db, work_order, actor)
    return WatchResponse(work_order_id=work_order_id, following=False, changed=changed)


# Dispatcher board
@router.get("/dispatcher", response_model=DispatcherResponse)
def get_dispatcher_view(
    machine_id: Optional[int] = None,
    actor: Actor = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """
    Open work orders of the actor's company in four lanes, plus counters.
    Recomputed from stored state on every call.
    """
    view = DispatcherAggregator(db).get_dispatcher_view(actor.company_id, machine_id=machine_id)
    summary = view.summary
    return DispatcherResponse(
        buckets={
            "entrantes": _bucket(view.entrantes),
            "a_planificar": _bucket(view.a_planificar),
            "en_ejecucion": {
                "in_progress": _bucket(view.in_progress),
                "waiting": _bucket(view.waiting),
                "waiting_with_overdue_eta": summary.total_overdue_eta,
            },
        },
        summary={
            "total_entrantes": summary.total_entrantes,
            "total_a_planificar": summary.total_a_planificar,
            "total_en_ejecucion": summary.total_en_ejecucion,
            "total_in_progress": summary.total_in_progress,
            "total_waiting": summary.total_waiting,
            "sla_breached": summary.sla_breached,
            "sla_at_risk": summary.sla_at_risk,
            "total_overdue_eta": summary.total_overdue_eta,
        },
        generated_at=view.generated_at,
    )
