"""Domain models - work orders and the ledgers hanging off them."""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    UniqueConstraint,
    type_coerce,
)
from sqlalchemy.orm import relationship

from ot_lifecycle.database import Base, utcnow
from ot_lifecycle.models.enums import (
    TERMINAL_STATUSES,
    ClosingMode,
    DowntimeCategory,
    FixType,
    Outcome,
    Priority,
    WaitingReason,
    WorkLogActivity,
    WorkOrderStatus,
    normalize_priority,
    normalize_status,
    status_spellings,
)


def _literal_values(enum_cls):
    # Persist enum values (FUNCIONÓ, PARCHE, ...) rather than member names
    return [member.value for member in enum_cls]


class LegacyEnum(TypeDecorator):
    """
    Enum stored as its value. Reads also accept the legacy spellings found in
    existing rows (URGENT, INCOMING, ...) and hand back the canonical member.
    """
    impl = String
    cache_ok = True

    def __init__(self, normalize, length=32):
        super().__init__(length)
        self.normalize = normalize
        self.length = length

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.normalize(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.normalize(value)


work_order_failure_occurrences = Table(
    "work_order_failure_occurrences",
    Base.metadata,
    Column("work_order_id", Integer, ForeignKey("work_orders.id"), primary_key=True),
    Column("failure_occurrence_id", Integer, ForeignKey("failure_occurrences.id"), primary_key=True),
)


class FailureOccurrence(Base):
    """
    A fault report. Owned by the failure-reporting module; the lifecycle only
    reads its flags to initialise requires_return_to_production.
    """
    __tablename__ = "failure_occurrences"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, nullable=False, index=True)
    machine_id = Column(Integer, nullable=True)
    title = Column(String, nullable=False)
    priority = Column(LegacyEnum(normalize_priority), nullable=True)
    caused_downtime = Column(Boolean, nullable=False, default=False)
    is_safety_related = Column(Boolean, nullable=False, default=False)
    is_observation = Column(Boolean, nullable=False, default=False)
    reported_at = Column(DateTime, nullable=False, default=utcnow)


class WorkOrder(Base):
    """
    A corrective work order: PENDING → IN_PROGRESS ⇄ WAITING → CLOSED, or CANCELLED.

    Invariants enforced in the service layer:
    - started_date is written once, on PENDING → IN_PROGRESS
    - completed_date is written once, on entry into CLOSED
    - waiting_* fields are only populated by entering WAITING and are kept on resume
    - CLOSED requires return to production when the order is flagged for it
    """
    __tablename__ = "work_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    company_id = Column(Integer, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(LegacyEnum(normalize_priority), nullable=False, default=Priority.P3)
    status = Column(LegacyEnum(normalize_status), nullable=False, default=WorkOrderStatus.PENDING, index=True)

    # Weak references into other modules
    machine_id = Column(Integer, nullable=True, index=True)
    component_id = Column(Integer, nullable=True)
    assigned_to_id = Column(Integer, nullable=True)
    assigned_at = Column(DateTime, nullable=True)
    created_by_id = Column(Integer, nullable=True)

    qa_required = Column(Boolean, nullable=False, default=False)
    qa_status = Column(String, nullable=True)

    # Scheduling
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    scheduled_date = Column(DateTime, nullable=True)
    started_date = Column(DateTime, nullable=True)
    completed_date = Column(DateTime, nullable=True)

    # Waiting sub-state
    waiting_reason = Column(SQLEnum(WaitingReason), nullable=True)
    waiting_description = Column(Text, nullable=True)
    waiting_eta = Column(DateTime, nullable=True)

    # Downtime governance
    requires_return_to_production = Column(Boolean, nullable=False, default=False)
    return_to_production_confirmed = Column(Boolean, nullable=False, default=False)
    return_to_production_confirmed_at = Column(DateTime, nullable=True)
    return_to_production_confirmed_by_id = Column(Integer, nullable=True)

    # Closure
    closed_title = Column(String, nullable=True)
    diagnosis_notes = Column(Text, nullable=True)
    work_performed_notes = Column(Text, nullable=True)
    result_notes = Column(String, nullable=True)
    root_cause = Column(Text, nullable=True)
    confirmed_cause = Column(String(255), nullable=True)
    solution = Column(Text, nullable=True)
    fix_type = Column(SQLEnum(FixType, values_callable=_literal_values), nullable=True)
    closing_mode = Column(SQLEnum(ClosingMode), nullable=True)
    actual_minutes = Column(Integer, nullable=True)
    closed_by_id = Column(Integer, nullable=True)

    # Administrative override
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Relationships
    failure_occurrences = relationship("FailureOccurrence", secondary=work_order_failure_occurrences)
    downtime_logs = relationship(
        "DowntimeLog", back_populates="work_order", cascade="all, delete-orphan",
        order_by="DowntimeLog.started_at"
    )
    work_logs = relationship(
        "WorkLog", back_populates="work_order", cascade="all, delete-orphan",
        order_by="WorkLog.started_at"
    )
    solutions = relationship("SolutionApplied", back_populates="work_order", cascade="all, delete-orphan")
    watchers = relationship("WorkOrderWatcher", back_populates="work_order", cascade="all, delete-orphan")

    @property
    def open_downtime_log(self):
        """The open downtime interval, if any (at most one is allowed)."""
        for log in reversed(self.downtime_logs):
            if log.ended_at is None:
                return log
        return None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def status_in(cls, statuses):
        """SQL filter on status that also matches rows still holding a legacy spelling."""
        return type_coerce(cls.status, String).in_(status_spellings(statuses))


class DowntimeLog(Base):
    """
    An interval during which the machine is not producing.

    Invariants:
    - ended_at is null while open; total_minutes is written when it closes
    - at most one open log per work order (checked before opening one)
    """
    __tablename__ = "downtime_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, index=True)
    machine_id = Column(Integer, nullable=True)
    category = Column(SQLEnum(DowntimeCategory), nullable=False, default=DowntimeCategory.UNPLANNED)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    total_minutes = Column(Integer, nullable=True)
    return_notes = Column(Text, nullable=True)
    returned_by_id = Column(Integer, nullable=True)

    work_order = relationship("WorkOrder", back_populates="downtime_logs")

    @property
    def is_open(self) -> bool:
        return self.ended_at is None


class WorkLog(Base):
    """Timed activity entry. Append-only: there is no update path."""
    __tablename__ = "work_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, index=True)
    activity_type = Column(SQLEnum(WorkLogActivity), nullable=False)
    description = Column(Text, nullable=False)
    performed_by_id = Column(Integer, nullable=False)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    actual_minutes = Column(Integer, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    work_order = relationship("WorkOrder", back_populates="work_logs")


class SolutionApplied(Base):
    """What was done to close a work order; source of prior-solution suggestions."""
    __tablename__ = "solutions_applied"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, index=True)
    failure_occurrence_id = Column(Integer, ForeignKey("failure_occurrences.id"), nullable=True)
    company_id = Column(Integer, nullable=False, index=True)
    machine_id = Column(Integer, nullable=True, index=True)

    title = Column(String, nullable=False)
    diagnosis = Column(Text, nullable=False)
    solution = Column(Text, nullable=False)
    outcome = Column(SQLEnum(Outcome, values_callable=_literal_values), nullable=False)
    fix_type = Column(SQLEnum(FixType, values_callable=_literal_values), nullable=False)

    final_component_id = Column(Integer, nullable=True)
    final_subcomponent_id = Column(Integer, nullable=True)
    confirmed_cause = Column(String(255), nullable=True)
    effectiveness = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    actual_minutes = Column(Integer, nullable=True)

    performed_by_id = Column(Integer, nullable=False)
    performed_at = Column(DateTime, nullable=False, default=utcnow)

    work_order = relationship("WorkOrder", back_populates="solutions")


class WorkOrderWatcher(Base):
    """A user following a work order for notifications."""
    __tablename__ = "work_order_watchers"
    __table_args__ = (UniqueConstraint("work_order_id", "user_id", name="uq_watcher_user"),)

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("work_orders.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    work_order = relationship("WorkOrder", back_populates="watchers")
