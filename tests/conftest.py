"""Pytest configuration and shared fixtures."""
import os

# Keep the application module from creating a database file on import
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ot_lifecycle.actor import CAN_ASSIGN, CAN_CANCEL, Actor
from ot_lifecycle.database import Base, get_db
from ot_lifecycle.models.audit import AuditEvent  # noqa: F401
from ot_lifecycle.models.domain import FailureOccurrence
from ot_lifecycle.models.enums import Priority
from ot_lifecycle.services.sla import SlaPolicy
from ot_lifecycle.services.state_machine import StateMachine

T0 = datetime(2026, 3, 2, 8, 0, 0)

CLOSE_PAYLOAD = {
    "diagnosis": "Rodamiento del motor principal desgastado",
    "solution": "Se reemplazó el rodamiento SKF 6205 y se lubricó el eje",
    "outcome": "FUNCIONÓ",
    "fix_type": "DEFINITIVA",
    "actual_minutes": 45,
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # StaticPool so the TestClient's worker thread sees the same database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def close_payload():
    """A valid MINIMUM close payload."""
    return dict(CLOSE_PAYLOAD)


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def policy():
    return SlaPolicy(
        hours={Priority.P1: 4, Priority.P2: 24, Priority.P3: 72, Priority.P4: 168},
        at_risk_fraction=0.25,
    )


@pytest.fixture
def sm(db_session, policy, clock):
    return StateMachine(db_session, policy=policy, clock=clock)


@pytest.fixture
def supervisor():
    """Can assign and cancel."""
    return Actor(user_id=1, company_id=10, capabilities=frozenset({CAN_ASSIGN, CAN_CANCEL}))


@pytest.fixture
def technician():
    return Actor(user_id=2, company_id=10)


@pytest.fixture
def outsider():
    """A user from another company."""
    return Actor(user_id=99, company_id=20, capabilities=frozenset({CAN_ASSIGN, CAN_CANCEL}))


@pytest.fixture
def downtime_failure(db_session):
    """A fault report that stopped the line."""
    failure = FailureOccurrence(
        company_id=10,
        machine_id=7,
        title="Motor principal detenido",
        priority=Priority.P1,
        caused_downtime=True,
    )
    db_session.add(failure)
    db_session.commit()
    db_session.refresh(failure)
    return failure


@pytest.fixture
def pending_work_order(sm, supervisor):
    """A work order in PENDING with nobody assigned."""
    return sm.create_work_order(supervisor, title="Ruido en reductor", priority="P2", machine_id=7)


@pytest.fixture
def in_progress_work_order(sm, supervisor, technician, pending_work_order):
    """A work order assigned to the technician and started."""
    sm.assign(pending_work_order.id, technician.user_id, supervisor)
    return sm.start_work_order(pending_work_order.id, technician)


@pytest.fixture
def client(db_session):
    """HTTP client bound to the per-test database."""
    from ot_lifecycle.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
