"""
SLA projection for work orders.

Everything here is a pure function of (priority, created_at, now, policy).
Nothing is persisted: "now" moves, so the projection is recomputed on every read.
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from ot_lifecycle.config import Settings, get_settings
from ot_lifecycle.models.enums import Priority, SlaStatus, WorkOrderStatus


def round_half_up(value: float) -> int:
    """Round .5 towards +infinity, so -2.5 -> -2 and 2.5 -> 3."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class SlaPolicy:
    """Hours to resolve per priority tier, plus the AT_RISK share of the window."""
    hours: Dict[Priority, float]
    at_risk_fraction: float = 0.25

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SlaPolicy":
        settings = settings or get_settings()
        return cls(
            hours={
                Priority.P1: settings.sla_hours_p1,
                Priority.P2: settings.sla_hours_p2,
                Priority.P3: settings.sla_hours_p3,
                Priority.P4: settings.sla_hours_p4,
            },
            at_risk_fraction=settings.sla_at_risk_fraction,
        )

    def window(self, priority: Priority) -> timedelta:
        return timedelta(hours=self.hours[priority])


@dataclass(frozen=True)
class SlaSnapshot:
    due_at: datetime
    hours_remaining: int
    status: SlaStatus

    @property
    def overdue(self) -> bool:
        return self.status == SlaStatus.BREACHED

    @property
    def overdue_hours(self) -> int:
        return max(0, -self.hours_remaining)


def compute_sla(priority: Priority, created_at: datetime, now: datetime, policy: SlaPolicy) -> SlaSnapshot:
    """
    Project the SLA of a work order at `now`.

    - BREACHED once now is past the due time
    - AT_RISK when the time left is within at_risk_fraction of the window
    - OK otherwise
    """
    window = policy.window(priority)
    due_at = created_at + window
    remaining = due_at - now

    if now > due_at:
        status = SlaStatus.BREACHED
    elif remaining <= window * policy.at_risk_fraction:
        status = SlaStatus.AT_RISK
    else:
        status = SlaStatus.OK

    return SlaSnapshot(
        due_at=due_at,
        hours_remaining=round_half_up(remaining.total_seconds() / 3600),
        status=status,
    )


def sla_for_work_order(work_order, now: datetime, policy: SlaPolicy) -> SlaSnapshot:
    """SLA of a work order; closed orders are frozen at their completion time."""
    reference = now
    if work_order.status == WorkOrderStatus.CLOSED and work_order.completed_date is not None:
        reference = work_order.completed_date
    return compute_sla(work_order.priority, work_order.created_at, reference, policy)
