"""Pytest configuration and shared fixtures."""
import os

# Keep the application's module-level engine off the working directory
os.environ.setdefault("REQUESTFLOW_DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from requestflow.config import Settings
from requestflow.database import Base
from requestflow.models import audit, domain  # noqa: F401
from requestflow.models.enums import Priority, Role, WorkOrderPriority
from requestflow.services.engine import RequestEngine
from requestflow.services.identity import Actor
from requestflow.services.notifications import NotificationEmitter


class FrozenClock:
    """Clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    """Collects every delivered event."""

    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def sql_engine():
    # In-memory SQLite shared across threads, so TestClient can use it too
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sql_engine):
    return sessionmaker(bind=sql_engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh in-memory database for each test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def engine(db_session, settings, clock, sink):
    return RequestEngine(db_session, settings=settings, clock=clock, emitter=NotificationEmitter([sink]))


@pytest.fixture
def citizen():
    return Actor("citizen-1", Role.CITIZEN)


@pytest.fixture
def other_citizen():
    return Actor("citizen-2", Role.CITIZEN)


@pytest.fixture
def clerk():
    return Actor("clerk-1", Role.CLERK, "roads")


@pytest.fixture
def supervisor():
    return Actor("supervisor-1", Role.SUPERVISOR, "roads")


@pytest.fixture
def agent():
    return Actor("agent-1", Role.FIELD_AGENT, "roads")


@pytest.fixture
def other_agent():
    return Actor("agent-2", Role.FIELD_AGENT, "roads")


@pytest.fixture
def submitted_request(engine, citizen):
    """A citizen's pothole report, just submitted."""
    return engine.create_request(
        citizen,
        title="Pothole on Elm Street",
        priority=Priority.HIGH,
        category="roads",
        department_id="roads",
    )


@pytest.fixture
def triaged_request(engine, submitted_request, clerk):
    return engine.triage(submitted_request.id, clerk, submitted_request.version)


@pytest.fixture
def dispatched_request(engine, triaged_request, supervisor, clerk, agent):
    """
    Assigned to agent-1 with an open work order, and IN_PROGRESS.

    Returns (request, work_order).
    """
    engine.assign(
        triaged_request.id,
        agent.actor_id,
        supervisor,
        triaged_request.version,
        reason="Nearest crew",
        assignee_role=Role.FIELD_AGENT,
        work_order_priority=WorkOrderPriority.HIGH,
    )
    request = engine.start_work(triaged_request.id, clerk, triaged_request.version)
    work_order = engine.work_orders.open_orders(request.id)[0]
    return request, work_order


@pytest.fixture
def resolved_request(engine, dispatched_request, agent):
    request, _ = dispatched_request
    return engine.resolve(request.id, agent, request.version, notes="Patched")
