"""
Dispatcher board aggregation.

Splits the open work orders of a company into the four planning lanes and
counts what needs attention. Read-only: a slightly stale snapshot is fine.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session, selectinload

from ot_lifecycle.database import retry_transient, utcnow
from ot_lifecycle.models.domain import WorkOrder
from ot_lifecycle.models.enums import OPEN_STATUSES, SlaStatus, WorkOrderStatus
from ot_lifecycle.services.sla import SlaPolicy, SlaSnapshot, compute_sla, round_half_up

logger = logging.getLogger(__name__)

ENTRANTES = "entrantes"
A_PLANIFICAR = "aPlanificar"
IN_PROGRESS = "inProgress"
WAITING = "waiting"


@dataclass
class DispatcherCard:
    work_order: WorkOrder
    sla: SlaSnapshot
    has_open_downtime: bool
    eta_overdue: bool = False
    eta_overdue_hours: int = 0


@dataclass
class DispatcherSummary:
    total_entrantes: int = 0
    total_a_planificar: int = 0
    total_in_progress: int = 0
    total_waiting: int = 0
    sla_breached: int = 0
    sla_at_risk: int = 0
    total_overdue_eta: int = 0

    @property
    def total_en_ejecucion(self) -> int:
        return self.total_in_progress + self.total_waiting

    @property
    def total(self) -> int:
        return self.total_entrantes + self.total_a_planificar + self.total_en_ejecucion


@dataclass
class DispatcherView:
    entrantes: List[DispatcherCard] = field(default_factory=list)
    a_planificar: List[DispatcherCard] = field(default_factory=list)
    in_progress: List[DispatcherCard] = field(default_factory=list)
    waiting: List[DispatcherCard] = field(default_factory=list)
    summary: DispatcherSummary = field(default_factory=DispatcherSummary)
    generated_at: Optional[datetime] = None


def lane_for(work_order: WorkOrder) -> Optional[str]:
    """The lane a work order belongs to, or None for terminal orders."""
    if work_order.status == WorkOrderStatus.PENDING:
        return ENTRANTES if work_order.assigned_to_id is None else A_PLANIFICAR
    if work_order.status == WorkOrderStatus.IN_PROGRESS:
        return IN_PROGRESS
    if work_order.status == WorkOrderStatus.WAITING:
        return WAITING
    return None


def _by_priority_then_age(card: DispatcherCard):
    return (card.work_order.priority.rank, card.work_order.created_at, card.work_order.id)


def _by_priority_then_start(card: DispatcherCard):
    wo = card.work_order
    return (wo.priority.rank, wo.started_date or wo.created_at, wo.id)


def _by_eta(card: DispatcherCard):
    wo = card.work_order
    # Orders missing an ETA sort last
    return (wo.waiting_eta is None, wo.waiting_eta or datetime.max, wo.priority.rank, wo.id)


def build_view(work_orders: Iterable[WorkOrder], now: datetime, policy: SlaPolicy) -> DispatcherView:
    """
    Partition work orders into lanes and compute the summary counters.

    Pure over its inputs; terminal orders are skipped.
    """
    view = DispatcherView(generated_at=now)
    lanes = {
        ENTRANTES: view.entrantes,
        A_PLANIFICAR: view.a_planificar,
        IN_PROGRESS: view.in_progress,
        WAITING: view.waiting,
    }

    for wo in work_orders:
        lane = lane_for(wo)
        if lane is None:
            continue

        card = DispatcherCard(
            work_order=wo,
            sla=compute_sla(wo.priority, wo.created_at, now, policy),
            has_open_downtime=wo.open_downtime_log is not None,
        )
        if lane == WAITING and wo.waiting_eta is not None and wo.waiting_eta < now:
            card.eta_overdue = True
            card.eta_overdue_hours = round_half_up((now - wo.waiting_eta).total_seconds() / 3600)

        lanes[lane].append(card)

        if card.sla.status == SlaStatus.BREACHED:
            view.summary.sla_breached += 1
        elif card.sla.status == SlaStatus.AT_RISK:
            view.summary.sla_at_risk += 1
        if card.eta_overdue:
            view.summary.total_overdue_eta += 1

    view.entrantes.sort(key=_by_priority_then_age)
    view.a_planificar.sort(key=_by_priority_then_age)
    view.in_progress.sort(key=_by_priority_then_start)
    view.waiting.sort(key=_by_eta)

    view.summary.total_entrantes = len(view.entrantes)
    view.summary.total_a_planificar = len(view.a_planificar)
    view.summary.total_in_progress = len(view.in_progress)
    view.summary.total_waiting = len(view.waiting)
    return view


class DispatcherAggregator:
    """Loads the open work orders in scope and builds the board."""

    def __init__(self, db: Session, policy: Optional[SlaPolicy] = None):
        self.db = db
        self.policy = policy or SlaPolicy.from_settings()

    def open_work_orders(self, company_id: int, machine_id: Optional[int] = None) -> List[WorkOrder]:
        def query():
            q = self.db.query(WorkOrder).options(selectinload(WorkOrder.downtime_logs)).filter(
                WorkOrder.company_id == company_id,
                WorkOrder.status_in(OPEN_STATUSES),
            )
            if machine_id is not None:
                q = q.filter(WorkOrder.machine_id == machine_id)
            return q.all()

        return retry_transient(self.db, query)

    def get_dispatcher_view(
        self,
        company_id: int,
        machine_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> DispatcherView:
        now = now or utcnow()
        view = build_view(self.open_work_orders(company_id, machine_id), now, self.policy)
        logger.debug(
            f"Dispatcher view for company {company_id} (machine {machine_id}): "
            f"{view.summary.total} open, {view.summary.sla_breached} breached"
        )
        return view
