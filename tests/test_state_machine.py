"""
Tests that prove the lifecycle invariants.

Each test verifies one rule of the request lifecycle.
"""
from datetime import timedelta

import pytest

from requestflow.models.enums import Priority, RequestStatus, Role
from requestflow.services.errors import (
    AlreadyTerminal,
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    ValidationFailed,
)
from requestflow.services.state_machine import ALLOWED_TRANSITIONS, is_allowed, is_terminal


class TestTransitionTable:
    """The permission table is a pure lookup."""

    def test_lookup_matches_table(self):
        assert is_allowed(RequestStatus.SUBMITTED, RequestStatus.TRIAGED, Role.CLERK)
        assert not is_allowed(RequestStatus.SUBMITTED, RequestStatus.TRIAGED, Role.CITIZEN)
        assert not is_allowed(RequestStatus.CLOSED, RequestStatus.IN_PROGRESS, Role.SUPERVISOR)

    def test_only_resolved_can_be_reopened(self):
        """
        INVARIANT: RESOLVED is the only terminal status with an outgoing edge
        back into the working lifecycle.
        """
        reopen_edges = [
            (f, t) for (f, t) in ALLOWED_TRANSITIONS
            if is_terminal(f) and not is_terminal(t)
        ]
        assert reopen_edges == [(RequestStatus.RESOLVED, RequestStatus.IN_PROGRESS)]

    def test_cancel_is_citizen_early_and_supervisor_late(self):
        for status in (RequestStatus.DRAFT, RequestStatus.SUBMITTED):
            assert ALLOWED_TRANSITIONS[(status, RequestStatus.CANCELLED)] == {Role.CITIZEN}
        for status in (RequestStatus.TRIAGED, RequestStatus.IN_REVIEW, RequestStatus.APPROVED, RequestStatus.IN_PROGRESS):
            assert ALLOWED_TRANSITIONS[(status, RequestStatus.CANCELLED)] == {Role.SUPERVISOR}


class TestIntake:
    """Creating requests."""

    def test_created_request_is_submitted_with_code(self, engine, citizen):
        request = engine.create_request(citizen, title="Broken streetlight", category="lighting")

        assert request.status == RequestStatus.SUBMITTED
        assert request.code == f"REQ-2026-{request.id:06d}"
        assert request.version == 1
        assert request.created_by == citizen.actor_id
        assert request.closed_at is None

    def test_draft_then_submit(self, engine, citizen):
        request = engine.create_request(citizen, title="Graffiti", submit=False)
        assert request.status == RequestStatus.DRAFT

        engine.submit(request.id, citizen, 1)
        assert request.status == RequestStatus.SUBMITTED
        assert request.version == 2

    def test_field_agent_cannot_create_requests(self, engine, agent):
        with pytest.raises(Forbidden):
            engine.create_request(agent, title="Anything")

    def test_blank_title_is_rejected(self, engine, citizen):
        with pytest.raises(ValidationFailed):
            engine.create_request(citizen, title="   ")

    def test_code_is_immutable(self, submitted_request):
        """
        INVARIANT: a request's code never changes once assigned.
        """
        with pytest.raises(ValueError) as exc_info:
            submitted_request.code = "REQ-2026-999999"
        assert "IMMUTABILITY VIOLATION" in str(exc_info.value)


class TestVersioning:
    """Optimistic concurrency on the request row."""

    def test_each_accepted_command_bumps_version_by_one(self, engine, submitted_request, clerk, supervisor):
        """
        INVARIANT: every accepted mutation increments version by exactly 1.
        """
        versions = [submitted_request.version]
        engine.triage(submitted_request.id, clerk, versions[-1])
        versions.append(submitted_request.version)
        engine.send_to_review(submitted_request.id, clerk, versions[-1])
        versions.append(submitted_request.version)
        engine.approve(submitted_request.id, supervisor, versions[-1])
        versions.append(submitted_request.version)
        engine.attach(submitted_request.id, clerk, versions[-1], "blob://photos/elm-1.jpg")
        versions.append(submitted_request.version)

        assert versions == [1, 2, 3, 4, 5]

    def test_stale_version_is_refused_without_change(self, engine, submitted_request, clerk):
        """
        INVARIANT: a command with a stale expected_version fails and changes nothing.
        """
        engine.triage(submitted_request.id, clerk, 1)

        with pytest.raises(ConcurrencyConflict) as exc_info:
            engine.send_to_review(submitted_request.id, clerk, 1)

        assert exc_info.value.context["current_version"] == 2
        request = engine.get_request(submitted_request.id)
        assert request.status == RequestStatus.TRIAGED
        assert request.version == 2


class TestSlaAndScenarios:
    """End-to-end lifecycle scenarios."""

    def test_urgent_sla_is_24_hours_from_triage(self, engine, citizen, clerk, clock):
        """
        Scenario A: URGENT request moved SUBMITTED -> TRIAGED -> IN_PROGRESS;
        sla_due_at equals triaged_at + 24h.
        """
        request = engine.create_request(citizen, title="Gas smell", priority=Priority.URGENT)
        engine.triage(request.id, clerk, request.version)
        triaged_at = request.triaged_at

        clock.advance(hours=3)
        engine.start_work(request.id, clerk, request.version)

        assert request.status == RequestStatus.IN_PROGRESS
        assert request.sla_due_at == triaged_at + timedelta(hours=24)

    def test_triage_can_reprioritize(self, engine, submitted_request, clerk, clock):
        engine.triage(submitted_request.id, clerk, 1, priority=Priority.LOW)
        engine.start_work(submitted_request.id, clerk, 2)

        assert submitted_request.priority == Priority.LOW
        assert submitted_request.sla_due_at == submitted_request.triaged_at + timedelta(days=14)

    def test_clerk_cannot_cancel_approved_request(self, engine, submitted_request, clerk, supervisor):
        """
        Scenario E: cancelling an APPROVED request as a CLERK is Forbidden.
        """
        engine.triage(submitted_request.id, clerk, 1)
        engine.send_to_review(submitted_request.id, clerk, 2)
        engine.approve(submitted_request.id, supervisor, 3)

        with pytest.raises(Forbidden):
            engine.cancel(submitted_request.id, clerk, 4)

        assert engine.get_request(submitted_request.id).status == RequestStatus.APPROVED

    def test_supervisor_can_cancel_approved_request(self, engine, submitted_request, clerk, supervisor):
        engine.triage(submitted_request.id, clerk, 1)
        engine.send_to_review(submitted_request.id, clerk, 2)
        engine.approve(submitted_request.id, supervisor, 3)

        engine.cancel(submitted_request.id, supervisor, 4, reason="Duplicate of REQ-2026-000007")
        assert submitted_request.status == RequestStatus.CANCELLED

    def test_citizen_cancels_only_their_own_request(self, engine, submitted_request, citizen, other_citizen):
        with pytest.raises(Forbidden):
            engine.cancel(submitted_request.id, other_citizen, 1)

        engine.cancel(submitted_request.id, citizen, 1)
        assert submitted_request.status == RequestStatus.CANCELLED

    def test_edge_not_in_table_is_invalid(self, engine, submitted_request, supervisor):
        with pytest.raises(InvalidTransition):
            engine.approve(submitted_request.id, supervisor, 1)

    def test_rejection_needs_reason(self, engine, submitted_request, clerk):
        with pytest.raises(ValidationFailed):
            engine.reject(submitted_request.id, clerk, 1, reason="  ")

        engine.reject(submitted_request.id, clerk, 1, reason="Not a city asset")
        assert submitted_request.status == RequestStatus.REJECTED


class TestTerminalStates:
    """closed_at, terminal refusals and the reopen window."""

    def test_closed_at_set_exactly_while_terminal(self, engine, resolved_request, citizen, clock):
        """
        INVARIANT: closed_at is set iff status is terminal.
        """
        assert resolved_request.status == RequestStatus.RESOLVED
        assert resolved_request.closed_at == clock.now
        assert resolved_request.reopen_until == clock.now + timedelta(days=14)

        clock.advance(days=2)
        engine.reopen(resolved_request.id, citizen, resolved_request.version, reason="Hole is back")

        assert resolved_request.status == RequestStatus.IN_PROGRESS
        assert resolved_request.closed_at is None
        assert resolved_request.reopen_until is None

    def test_close_keeps_resolution_time(self, engine, resolved_request, citizen, clock):
        resolved_at = resolved_request.closed_at
        clock.advance(days=1)

        engine.close(resolved_request.id, citizen, resolved_request.version)

        assert resolved_request.status == RequestStatus.CLOSED
        assert resolved_request.closed_at == resolved_at

    def test_closed_request_refuses_everything(self, engine, resolved_request, citizen, supervisor):
        engine.close(resolved_request.id, citizen, resolved_request.version)

        with pytest.raises(AlreadyTerminal):
            engine.reopen(resolved_request.id, citizen, resolved_request.version)
        with pytest.raises(AlreadyTerminal):
            engine.cancel(resolved_request.id, supervisor, resolved_request.version)

    def test_reopen_after_window_is_refused(self, engine, resolved_request, citizen, clock):
        clock.advance(days=15)

        with pytest.raises(AlreadyTerminal):
            engine.reopen(resolved_request.id, citizen, resolved_request.version)
        assert resolved_request.status == RequestStatus.RESOLVED

    def test_reopen_is_for_the_requester_only(self, engine, resolved_request, other_citizen, supervisor):
        with pytest.raises(Forbidden):
            engine.reopen(resolved_request.id, other_citizen, resolved_request.version)
        with pytest.raises(Forbidden):
            engine.reopen(resolved_request.id, supervisor, resolved_request.version)

    def test_start_work_cannot_reopen(self, engine, resolved_request, citizen):
        with pytest.raises(InvalidTransition):
            engine.start_work(resolved_request.id, citizen, resolved_request.version)

    def test_rejected_request_has_no_reopen_window(self, engine, submitted_request, clerk, citizen):
        engine.reject(submitted_request.id, clerk, 1, reason="Private property")

        assert submitted_request.reopen_until is None
        with pytest.raises(AlreadyTerminal):
            engine.reopen(submitted_request.id, citizen, 2)


class TestBreach:
    """Breach is computed on read, never stored."""

    def test_request_breaches_after_its_window(self, engine, dispatched_request, clock):
        request, _ = dispatched_request
        assert not engine.is_breached(request.id)

        clock.advance(hours=73)

        assert engine.is_breached(request.id)
        assert [r.id for r in engine.list_breached()] == [request.id]
        assert engine.list_breached(department_id="parks") == []

    def test_resolved_request_is_not_breached(self, engine, resolved_request, clock):
        clock.advance(days=30)
        assert not engine.is_breached(resolved_request.id)
        assert engine.list_breached() == []

    def test_available_transitions_follow_role(self, engine, submitted_request, clerk, citizen):
        assert engine.available_transitions(submitted_request.id, clerk) == [
            RequestStatus.TRIAGED,
            RequestStatus.REJECTED,
        ]
        assert engine.available_transitions(submitted_request.id, citizen) == [RequestStatus.CANCELLED]
