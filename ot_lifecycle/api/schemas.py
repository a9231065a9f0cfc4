"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ot_lifecycle.models.enums import (
    ClosingMode,
    DowntimeCategory,
    FixType,
    Outcome,
    Priority,
    SlaStatus,
    WaitingReason,
    WorkLogActivity,
    WorkOrderStatus,
)


# Requests. Transition payloads are loose; the services validate them and
# report every field error in one VALIDATION response.
class WorkOrderCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    priority: Optional[str] = None  # P1..P4 or URGENT/HIGH/MEDIUM/LOW
    description: Optional[str] = None
    machine_id: Optional[int] = None
    component_id: Optional[int] = None
    failure_occurrence_ids: List[int] = []
    scheduled_date: Optional[datetime] = None
    qa_required: bool = False


class AssignRequest(BaseModel):
    assigned_to_id: int


class WaitingRequestBody(BaseModel):
    reason: Optional[str] = None
    description: Optional[str] = None
    eta: Optional[str] = None


class ReturnToProductionRequest(BaseModel):
    downtime_log_id: Optional[int] = None
    notes: Optional[str] = Field(None, max_length=2000)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class DowntimeOpenRequest(BaseModel):
    category: DowntimeCategory = DowntimeCategory.UNPLANNED


class WorkLogCreate(BaseModel):
    activity_type: Optional[str] = None
    description: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    actual_minutes: Optional[int] = None
    performed_by_id: Optional[int] = None


# Responses
class WorkOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    title: str
    description: Optional[str]
    priority: Priority
    status: WorkOrderStatus
    machine_id: Optional[int]
    component_id: Optional[int]
    assigned_to_id: Optional[int]
    created_at: datetime
    updated_at: datetime
    scheduled_date: Optional[datetime]
    started_date: Optional[datetime]
    completed_date: Optional[datetime]
    waiting_reason: Optional[WaitingReason]
    waiting_description: Optional[str]
    waiting_eta: Optional[datetime]
    requires_return_to_production: bool
    return_to_production_confirmed: bool
    return_to_production_confirmed_at: Optional[datetime]
    closed_title: Optional[str]
    diagnosis_notes: Optional[str]
    work_performed_notes: Optional[str]
    result_notes: Optional[str]
    root_cause: Optional[str]
    confirmed_cause: Optional[str]
    fix_type: Optional[FixType]
    closing_mode: Optional[ClosingMode]
    actual_minutes: Optional[int]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]


class DowntimeLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    work_order_id: int
    machine_id: Optional[int]
    category: DowntimeCategory
    started_at: datetime
    ended_at: Optional[datetime]
    total_minutes: Optional[int]
    return_notes: Optional[str]


class WorkLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    work_order_id: int
    activity_type: WorkLogActivity
    description: str
    performed_by_id: int
    started_at: datetime
    ended_at: Optional[datetime]
    actual_minutes: Optional[int]
    created_at: datetime


class WorkLogListResponse(BaseModel):
    items: List[WorkLogResponse]
    total_minutes: int
    minutes_by_activity: dict


class SlaResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    due_at: datetime
    hours_remaining: int
    status: SlaStatus
    overdue: bool
    overdue_hours: int


class WorkOrderDetailResponse(BaseModel):
    work_order: WorkOrderResponse
    sla: SlaResponse
    open_downtime_log: Optional[DowntimeLogResponse]
    close_blockers: List[str]
    can_close: bool
    total_logged_minutes: int
    total_downtime_minutes: int
    watcher_ids: List[int]


class PriorSolutionResponse(BaseModel):
    """A read-only suggestion for the close form."""
    model_config = ConfigDict(from_attributes=True)

    solution_id: int
    work_order_id: int
    title: str
    diagnosis: str
    solution: str
    fix_type: FixType
    outcome: Outcome
    effectiveness: Optional[int]
    final_component_id: Optional[int]
    final_subcomponent_id: Optional[int]
    performed_at: datetime


class WatchResponse(BaseModel):
    work_order_id: int
    following: bool
    changed: bool


# Dispatcher board. Field names go out in camelCase for the board client.
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DispatcherCardResponse(CamelModel):
    id: int
    title: str
    priority: Priority
    status: WorkOrderStatus
    machine_id: Optional[int]
    component_id: Optional[int]
    assigned_to_id: Optional[int]
    created_at: datetime
    started_date: Optional[datetime]
    sla_due_at: datetime
    sla_hours_remaining: int
    sla_status: SlaStatus
    is_overdue: bool
    overdue_hours: int
    waiting_reason: Optional[WaitingReason] = None
    waiting_description: Optional[str] = None
    waiting_eta: Optional[datetime] = None
    eta_overdue: bool = False
    eta_overdue_hours: int = 0
    requires_return_to_production: bool
    has_open_downtime: bool


class DispatcherBucket(CamelModel):
    items: List[DispatcherCardResponse]
    count: int


class EnEjecucionBucket(CamelModel):
    in_progress: DispatcherBucket
    waiting: DispatcherBucket
    waiting_with_overdue_eta: int = Field(..., alias="waitingWithOverdueETA")


class DispatcherBuckets(CamelModel):
    entrantes: DispatcherBucket
    a_planificar: DispatcherBucket
    en_ejecucion: EnEjecucionBucket


class DispatcherSummaryResponse(CamelModel):
    total_entrantes: int
    total_a_planificar: int = Field(..., alias="totalAPlanificar")
    total_en_ejecucion: int
    total_in_progress: int
    total_waiting: int
    sla_breached: int
    sla_at_risk: int
    total_overdue_eta: int = Field(..., alias="totalOverdueETA")


class DispatcherResponse(CamelModel):
    buckets: DispatcherBuckets
    summary: DispatcherSummaryResponse
    generated_at: datetime


class ErrorResponse(BaseModel):
    """Body of every refused request."""
    error: str
    message: str
    details: dict = {}
