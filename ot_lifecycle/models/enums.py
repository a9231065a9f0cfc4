"""Enums for the work-order lifecycle - these define the valid values for states and classifications."""
from enum import Enum
from typing import Iterable, List, Union


class WorkOrderStatus(str, Enum):
    """Lifecycle states. CLOSED and CANCELLED are terminal."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING = "WAITING"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (WorkOrderStatus.PENDING, WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.WAITING)
TERMINAL_STATUSES = (WorkOrderStatus.CLOSED, WorkOrderStatus.CANCELLED)
CLOSABLE_STATUSES = (WorkOrderStatus.IN_PROGRESS, WorkOrderStatus.WAITING)


class Priority(str, Enum):
    """Four priority tiers, P1 being the most urgent."""
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    P4 = "P4"

    @property
    def rank(self) -> int:
        return int(self.value[1])


class WaitingReason(str, Enum):
    SPARE_PART = "SPARE_PART"
    VENDOR = "VENDOR"
    PRODUCTION = "PRODUCTION"
    APPROVAL = "APPROVAL"
    RESOURCES = "RESOURCES"
    OTHER = "OTHER"


class Outcome(str, Enum):
    """Close outcome. Values are the literals already persisted by the platform."""
    WORKED = "FUNCIONÓ"
    PARTIAL = "PARCIAL"
    DID_NOT_WORK = "NO_FUNCIONÓ"


class FixType(str, Enum):
    PATCH = "PARCHE"
    DEFINITIVE = "DEFINITIVA"


class ClosingMode(str, Enum):
    MINIMUM = "MINIMUM"
    PROFESSIONAL = "PROFESSIONAL"


class WorkLogActivity(str, Enum):
    EXECUTION = "EXECUTION"
    DIAGNOSIS = "DIAGNOSIS"
    WAITING = "WAITING"
    TRAVEL = "TRAVEL"
    DOCUMENTATION = "DOCUMENTATION"
    INSPECTION = "INSPECTION"
    PARTS_PICKUP = "PARTS_PICKUP"
    OTHER = "OTHER"


class DowntimeCategory(str, Enum):
    UNPLANNED = "UNPLANNED"
    PLANNED = "PLANNED"


class SlaStatus(str, Enum):
    OK = "OK"
    AT_RISK = "AT_RISK"
    BREACHED = "BREACHED"


class ReturnToProductionBlocker(str, Enum):
    """Why a close is blocked; each one needs a different user action."""
    OPEN_DOWNTIME = "OPEN_DOWNTIME"
    NOT_CONFIRMED = "NOT_CONFIRMED"


# Boundary mapping for the vocabularies found in existing persisted data.
# Only canonical members travel through the services.
LEGACY_PRIORITIES = {
    "URGENT": Priority.P1,
    "HIGH": Priority.P2,
    "MEDIUM": Priority.P3,
    "LOW": Priority.P4,
}

LEGACY_STATUSES = {
    "INCOMING": WorkOrderStatus.PENDING,
    "SCHEDULED": WorkOrderStatus.PENDING,
    "ON_HOLD": WorkOrderStatus.WAITING,
    "COMPLETED": WorkOrderStatus.CLOSED,
}


def normalize_priority(value: Union[str, Priority]) -> Priority:
    """Map any accepted spelling (P1, p1, URGENT, urgent, ...) to a Priority."""
    if isinstance(value, Priority):
        return value
    key = str(value).strip().upper()
    if key in LEGACY_PRIORITIES:
        return LEGACY_PRIORITIES[key]
    try:
        return Priority(key)
    except ValueError:
        raise ValueError(f"Unknown priority: {value!r}")


def normalize_status(value: Union[str, WorkOrderStatus]) -> WorkOrderStatus:
    """Map any accepted spelling (in_progress, COMPLETED, ...) to a WorkOrderStatus."""
    if isinstance(value, WorkOrderStatus):
        return value
    key = str(value).strip().upper()
    if key in LEGACY_STATUSES:
        return LEGACY_STATUSES[key]
    try:
        return WorkOrderStatus(key)
    except ValueError:
        raise ValueError(f"Unknown work order status: {value!r}")


def status_spellings(statuses: Iterable[WorkOrderStatus]) -> List[str]:
    """Every stored spelling of the given statuses, legacy ones included, for SQL filters."""
    wanted = set(statuses)
    spellings = [s.value for s in wanted]
    spellings += [legacy for legacy, status in LEGACY_STATUSES.items() if status in wanted]
    return sorted(set(spellings) | {s.lower() for s in spellings})


def coerce_member(enum_cls, value):
    """Accept an enum value or a member name (e.g. 'WORKED' for Outcome.WORKED)."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str) and value in enum_cls.__members__:
        return enum_cls[value]
    return enum_cls(value)
