"""
Guided close: the closure payload contract and prior-solution suggestions.

Both closing modes share one payload. The mode only decides which optional
fields the form asks for; the server validates the same shape either way.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ot_lifecycle.config import get_settings
from ot_lifecycle.models.domain import SolutionApplied, WorkOrder
from ot_lifecycle.models.enums import ClosingMode, FixType, Outcome, WorkOrderStatus, coerce_member
from ot_lifecycle.services.errors import WorkOrderValidationError


class ClosePayload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    # MINIMUM
    title: Optional[str] = Field(None, max_length=150)
    diagnosis: str = Field(..., min_length=10, max_length=2000)
    solution: str = Field(..., min_length=10, max_length=5000)
    outcome: Outcome
    fix_type: FixType = FixType.DEFINITIVE
    actual_minutes: Optional[int] = Field(None, gt=0)
    closing_mode: ClosingMode = ClosingMode.MINIMUM

    # PROFESSIONAL
    final_component_id: Optional[int] = Field(None, gt=0)
    final_subcomponent_id: Optional[int] = Field(None, gt=0)
    confirmed_cause: Optional[str] = Field(None, max_length=255)
    effectiveness: Optional[int] = Field(None, ge=1, le=5)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("outcome", mode="before")
    @classmethod
    def accept_outcome_names(cls, v):
        return _coerce_or_passthrough(Outcome, v)

    @field_validator("fix_type", mode="before")
    @classmethod
    def accept_fix_type_names(cls, v):
        if v is None:
            return FixType.DEFINITIVE
        return _coerce_or_passthrough(FixType, v)

    @field_validator("closing_mode", mode="before")
    @classmethod
    def accept_mode_case(cls, v):
        if v is None:
            return ClosingMode.MINIMUM
        return v.upper() if isinstance(v, str) else v

    @field_validator("title", "confirmed_cause", "notes", mode="before")
    @classmethod
    def blank_is_missing(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


def _coerce_or_passthrough(enum_cls, value):
    # Let pydantic report the error for values that match nothing
    try:
        return coerce_member(enum_cls, value)
    except (ValueError, KeyError, TypeError):
        return value


def parse_close_payload(payload: Union[ClosePayload, Mapping[str, Any]]) -> ClosePayload:
    """Validate a raw payload, turning pydantic errors into a VALIDATION refusal."""
    if isinstance(payload, ClosePayload):
        return payload
    if not isinstance(payload, Mapping):
        raise WorkOrderValidationError("Close payload must be an object")
    try:
        return ClosePayload.model_validate(dict(payload))
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise WorkOrderValidationError("Invalid close payload", errors=errors)


def derive_title(payload: ClosePayload, max_length: Optional[int] = None) -> str:
    """
    Display title for the closed work order.

    The user's title when given, otherwise the solution cut to max_length.
    The solution text itself is stored untouched.
    """
    if payload.title:
        return payload.title
    max_length = max_length or get_settings().close_title_max_length
    return payload.solution[:max_length]


@dataclass(frozen=True)
class PriorSolution:
    """A suggestion the user may copy into the close form. Never applied automatically."""
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


def find_prior_solutions(db: Session, work_order: WorkOrder, limit: Optional[int] = None) -> List[PriorSolution]:
    """
    Solutions applied to other closed work orders on the same machine, or
    against one of the failure occurrences this work order is linked to.

    When the work order names a component, solutions whose final component
    matches come first. Read-only.
    """
    limit = limit or get_settings().prior_solution_limit
    matches = []
    if work_order.machine_id is not None:
        matches.append(SolutionApplied.machine_id == work_order.machine_id)
    failure_ids = [fo.id for fo in work_order.failure_occurrences]
    if failure_ids:
        matches.append(SolutionApplied.failure_occurrence_id.in_(failure_ids))
    if not matches:
        return []

    rows = db.query(SolutionApplied).join(WorkOrder, SolutionApplied.work_order_id == WorkOrder.id).filter(
        SolutionApplied.company_id == work_order.company_id,
        or_(*matches),
        SolutionApplied.work_order_id != work_order.id,
        WorkOrder.status_in([WorkOrderStatus.CLOSED]),
    ).order_by(SolutionApplied.performed_at.desc(), SolutionApplied.id.desc()).all()

    if work_order.component_id is not None:
        # Stable sort keeps recency within each group
        rows.sort(key=lambda s: s.final_component_id != work_order.component_id)

    return [
        PriorSolution(
            solution_id=s.id,
            work_order_id=s.work_order_id,
            title=s.title,
            diagnosis=s.diagnosis,
            solution=s.solution,
            fix_type=s.fix_type,
            outcome=s.outcome,
            effectiveness=s.effectiveness,
            final_component_id=s.final_component_id,
            final_subcomponent_id=s.final_subcomponent_id,
            performed_at=s.performed_at,
        )
        for s in rows[:limit]
    ]
