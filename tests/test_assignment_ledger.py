"""
Tests for the assignment ledger.

These tests prove:
- A request has at most one active assignment
- request.assigned_to always matches the active ledger entry
- Concurrent assigns with the same expected version cannot both win
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from requestflow.database import Base
from requestflow.models.domain import AssignmentRecord, ServiceRequest
from requestflow.models.enums import Role, WorkOrderStatus
from requestflow.services.engine import RequestEngine
from requestflow.services.errors import (
    AlreadyTerminal,
    ConcurrencyConflict,
    Forbidden,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.notifications import NotificationEmitter


def active_records(db_session, request_id):
    return db_session.query(AssignmentRecord).filter(
        AssignmentRecord.request_id == request_id,
        AssignmentRecord.is_active.is_(True),
    ).all()


class TestSingleActiveAssignment:
    """At most one active record per request."""

    def test_assign_then_read_back(self, engine, triaged_request, supervisor):
        """
        INVARIANT: after assign(r, u) succeeds, get_request(r).assigned_to == u.
        """
        record = engine.assign(triaged_request.id, "clerk-7", supervisor, 2, reason="Permit desk")

        assert engine.get_request(triaged_request.id).assigned_to == "clerk-7"
        assert engine.list_active_assignment(triaged_request.id).id == record.id
        assert record.assigned_from is None
        assert record.assigned_by == supervisor.actor_id
        assert triaged_request.version == 3

    def test_reassign_deactivates_previous(self, engine, db_session, triaged_request, supervisor, clock):
        """
        INVARIANT: the previous active record is deactivated in the same
        transaction that inserts the new one.
        """
        first = engine.assign(triaged_request.id, "clerk-7", supervisor, 2)
        clock.advance(hours=1)
        second = engine.reassign(triaged_request.id, "clerk-8", supervisor, 3, reason="clerk-7 on leave")

        assert [r.id for r in active_records(db_session, triaged_request.id)] == [second.id]
        assert first.is_active is False
        assert first.completed_at == clock.now
        assert second.assigned_from == "clerk-7"
        assert triaged_request.assigned_to == "clerk-8"
        assert [r.id for r in engine.assignment_history(triaged_request.id)] == [first.id, second.id]

    def test_reassign_requires_reason(self, engine, triaged_request, supervisor):
        engine.assign(triaged_request.id, "clerk-7", supervisor, 2)
        with pytest.raises(ValidationFailed):
            engine.reassign(triaged_request.id, "clerk-8", supervisor, 3, reason="")

    def test_reassign_requires_existing_assignment(self, engine, triaged_request, supervisor):
        with pytest.raises(ValidationFailed):
            engine.reassign(triaged_request.id, "clerk-8", supervisor, 2, reason="Rebalancing")

    def test_same_assignee_is_rejected(self, engine, triaged_request, supervisor):
        engine.assign(triaged_request.id, "clerk-7", supervisor, 2)
        with pytest.raises(ValidationFailed):
            engine.assign(triaged_request.id, "clerk-7", supervisor, 3)
        assert triaged_request.version == 3

    def test_cross_department_assignment_is_rejected(self, engine, triaged_request, supervisor):
        with pytest.raises(ValidationFailed):
            engine.assign(triaged_request.id, "clerk-9", supervisor, 2, assignee_department_id="parks")
        assert engine.list_active_assignment(triaged_request.id) is None

    def test_only_supervisors_assign(self, engine, triaged_request, clerk):
        with pytest.raises(Forbidden):
            engine.assign(triaged_request.id, "clerk-7", clerk, 2)
        assert triaged_request.assigned_to is None

    def test_terminal_request_cannot_be_assigned(self, engine, resolved_request, supervisor):
        with pytest.raises(AlreadyTerminal):
            engine.assign(resolved_request.id, "agent-3", supervisor, resolved_request.version)

    def test_terminal_transition_closes_active_record(self, engine, db_session, resolved_request):
        """Resolution ends the assignment but keeps attribution on the request."""
        assert active_records(db_session, resolved_request.id) == []
        assert resolved_request.assigned_to == "agent-1"
        history = engine.assignment_history(resolved_request.id)
        assert len(history) == 1
        assert history[0].completed_at == resolved_request.closed_at

    def test_stale_version_wins_over_role(self, engine, triaged_request, clerk):
        """Version is checked before the role, as for lifecycle transitions."""
        with pytest.raises(ConcurrencyConflict):
            engine.assign(triaged_request.id, "clerk-7", clerk, 1)


class TestReopenedAssignment:
    """
    INVARIANT: a reopened request has an active record matching assigned_to.
    """

    def test_reopen_reinstates_active_record(self, engine, db_session, resolved_request, citizen, agent):
        engine.reopen(resolved_request.id, citizen, resolved_request.version, reason="Hole is back")

        active = active_records(db_session, resolved_request.id)
        assert len(active) == 1
        assert active[0].assigned_to == agent.actor_id == resolved_request.assigned_to
        assert active[0].reason == "reopened"
        assert active[0].assigned_from is None

    def test_reopened_request_can_be_reassigned(self, engine, db_session, resolved_request, citizen, supervisor, other_agent):
        engine.reopen(resolved_request.id, citizen, resolved_request.version)

        record = engine.reassign(
            resolved_request.id, other_agent.actor_id, supervisor, resolved_request.version,
            reason="Original agent on leave", assignee_role=Role.FIELD_AGENT,
        )

        assert record.assigned_from == "agent-1"
        assert resolved_request.assigned_to == other_agent.actor_id
        assert [r.assigned_to for r in active_records(db_session, resolved_request.id)] == [other_agent.actor_id]

    def test_resolving_again_closes_reinstated_record(self, engine, db_session, resolved_request, citizen, agent):
        engine.reopen(resolved_request.id, citizen, resolved_request.version)
        engine.resolve(resolved_request.id, agent, resolved_request.version)

        assert active_records(db_session, resolved_request.id) == []
        assert len(engine.assignment_history(resolved_request.id)) == 2


class TestWorkloadScore:
    """Workload scores are persisted, never computed by the ledger."""

    def test_explicit_score_is_stored(self, engine, triaged_request, supervisor):
        record = engine.assign(triaged_request.id, "clerk-7", supervisor, 2, workload_score=0.35)
        assert record.workload_score == 0.35

    def test_capacity_planner_supplies_missing_score(self, db_session, settings, clock, triaged_request, supervisor):
        calls = []

        def planner(assignee_id, request):
            calls.append((assignee_id, request.id))
            return 0.8

        engine = RequestEngine(
            db_session, settings=settings, clock=clock,
            emitter=NotificationEmitter([]), capacity_planner=planner,
        )
        record = engine.assign(triaged_request.id, "clerk-7", supervisor, 2)

        assert record.workload_score == 0.8
        assert calls == [("clerk-7", triaged_request.id)]


class TestFieldAgentAssignment:
    """Assigning a field agent opens a work order for them."""

    def test_field_agent_gets_work_order(self, engine, triaged_request, supervisor, agent):
        record = engine.assign(triaged_request.id, agent.actor_id, supervisor, 2, assignee_role=Role.FIELD_AGENT)

        orders = engine.work_orders.open_orders(triaged_request.id)
        assert len(orders) == 1
        assert orders[0].assigned_agent_id == agent.actor_id
        assert orders[0].assignment_id == record.id
        assert orders[0].supervisor_id == supervisor.actor_id
        assert orders[0].status == WorkOrderStatus.ASSIGNED

    def test_reassign_cancels_previous_work_order(self, engine, dispatched_request, supervisor, other_agent):
        request, first_order = dispatched_request

        engine.reassign(
            request.id, other_agent.actor_id, supervisor, request.version,
            reason="Crew swap", assignee_role=Role.FIELD_AGENT,
        )

        assert first_order.status == WorkOrderStatus.CANCELLED
        orders = engine.work_orders.open_orders(request.id)
        assert [o.assigned_agent_id for o in orders] == [other_agent.actor_id]


class TestConcurrentAssignment:
    """Scenario B: two supervisors race on the same version."""

    def test_only_one_concurrent_assign_wins(self, tmp_path, settings, clock):
        sql_engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
        Base.metadata.create_all(sql_engine)
        Session = sessionmaker(bind=sql_engine, autocommit=False, autoflush=False)
        session_a, session_b = Session(), Session()
        engine_a = RequestEngine(session_a, settings=settings, clock=clock, emitter=NotificationEmitter([]))
        engine_b = RequestEngine(session_b, settings=settings, clock=clock, emitter=NotificationEmitter([]))

        citizen = Actor("citizen-1", Role.CITIZEN)
        clerk = Actor("clerk-1", Role.CLERK)
        sup_a = Actor("supervisor-1", Role.SUPERVISOR)
        sup_b = Actor("supervisor-2", Role.SUPERVISOR)

        request = engine_a.create_request(citizen, title="Fallen tree")
        engine_a.triage(request.id, clerk, 1)

        # Both supervisors read version 2
        assert engine_b.get_request(request.id).version == 2

        engine_a.assign(request.id, "clerk-7", sup_a, 2)
        with pytest.raises(ConcurrencyConflict):
            engine_b.assign(request.id, "clerk-8", sup_b, 2)

        session_a.close()
        session_b.close()

        check = Session()
        try:
            stored = check.get(ServiceRequest, request.id)
            assert stored.version == 3
            assert stored.assigned_to == "clerk-7"
            active = active_records(check, request.id)
            assert [r.assigned_to for r in active] == ["clerk-7"]
            assert check.query(AssignmentRecord).count() == 1
        finally:
            check.close()
            sql_engine.dispose()
