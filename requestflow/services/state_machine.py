"""
State machine that enforces the service request lifecycle.

This is the core enforcement mechanism - every status change MUST go through here.
Permissions are a pure lookup table keyed by (from, to); nothing else decides
whether an edge is allowed.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from requestflow.clock import Clock, utcnow
from requestflow.config import Settings, get_settings
from requestflow.models.audit import AuditEventType
from requestflow.models.domain import ServiceRequest
from requestflow.models.enums import TERMINAL_STATUSES, Priority, RequestStatus, Role
from requestflow.services.errors import AlreadyTerminal, Forbidden, InvalidTransition
from requestflow.services.identity import Actor
from requestflow.services.request_store import RequestStore

logger = logging.getLogger(__name__)

S = RequestStatus

ALLOWED_TRANSITIONS: Dict[Tuple[RequestStatus, RequestStatus], FrozenSet[Role]] = {
    # Intake
    (S.DRAFT, S.SUBMITTED): frozenset({Role.CITIZEN, Role.CLERK}),
    (S.SUBMITTED, S.TRIAGED): frozenset({Role.CLERK, Role.SUPERVISOR}),
    (S.TRIAGED, S.IN_REVIEW): frozenset({Role.CLERK, Role.SUPERVISOR}),
    (S.IN_REVIEW, S.APPROVED): frozenset({Role.SUPERVISOR}),

    # Work starts after approval, or straight after triage for routine requests
    (S.APPROVED, S.IN_PROGRESS): frozenset({Role.CLERK, Role.SUPERVISOR, Role.FIELD_AGENT}),
    (S.TRIAGED, S.IN_PROGRESS): frozenset({Role.CLERK, Role.SUPERVISOR}),

    (S.IN_PROGRESS, S.RESOLVED): frozenset({Role.FIELD_AGENT, Role.SUPERVISOR}),

    (S.SUBMITTED, S.REJECTED): frozenset({Role.CLERK, Role.SUPERVISOR}),
    (S.TRIAGED, S.REJECTED): frozenset({Role.CLERK, Role.SUPERVISOR}),
    (S.IN_REVIEW, S.REJECTED): frozenset({Role.SUPERVISOR}),
    (S.APPROVED, S.REJECTED): frozenset({Role.SUPERVISOR}),
    (S.IN_PROGRESS, S.REJECTED): frozenset({Role.SUPERVISOR}),

    (S.RESOLVED, S.CLOSED): frozenset({Role.CITIZEN, Role.CLERK, Role.SUPERVISOR}),
    (S.REJECTED, S.CLOSED): frozenset({Role.CLERK, Role.SUPERVISOR}),

    # Citizen reopen, only inside the reopen window
    (S.RESOLVED, S.IN_PROGRESS): frozenset({Role.CITIZEN}),

    (S.DRAFT, S.CANCELLED): frozenset({Role.CITIZEN}),
    (S.SUBMITTED, S.CANCELLED): frozenset({Role.CITIZEN}),
    (S.TRIAGED, S.CANCELLED): frozenset({Role.SUPERVISOR}),
    (S.IN_REVIEW, S.CANCELLED): frozenset({Role.SUPERVISOR}),
    (S.APPROVED, S.CANCELLED): frozenset({Role.SUPERVISOR}),
    (S.IN_PROGRESS, S.CANCELLED): frozenset({Role.SUPERVISOR}),
}


def is_allowed(from_status: RequestStatus, to_status: RequestStatus, role: Role) -> bool:
    """Pure table lookup: may `role` move a request from `from_status` to `to_status`?"""
    return role in ALLOWED_TRANSITIONS.get((from_status, to_status), frozenset())


def is_terminal(status: RequestStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_breached(request: ServiceRequest, now: datetime) -> bool:
    """
    Read-side breach check. Never stored, so it can never go stale.

    A request is breached when its SLA deadline has passed and it is still open.
    """
    if request.sla_due_at is None:
        return False
    return now > request.sla_due_at and not is_terminal(request.status)


def sla_due_at(priority: Priority, triaged_at: datetime, windows: Dict[str, timedelta]) -> datetime:
    """SLA deadline = triage time + the priority's window."""
    return triaged_at + windows[Priority(priority).value]


class LifecycleStateMachine:
    """Validates and applies status transitions on a ServiceRequest."""

    def __init__(self, store: RequestStore, settings: Optional[Settings] = None, clock: Clock = None):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock or store.clock or utcnow

    def check_transition(
        self,
        request: ServiceRequest,
        target: RequestStatus,
        actor: Actor,
        expected_version: int,
        expected_from: Optional[Iterable[RequestStatus]] = None,
    ) -> None:
        """
        Raise the first rule the transition breaks.

        Order of checks:
        1. expected_version matches (ConcurrencyConflict)
        2. a terminal request only leaves through its own edges (AlreadyTerminal)
        3. the edge exists, and belongs to the command (InvalidTransition)
        4. the role may take the edge (Forbidden)
        5. citizens act only on their own requests, agents only on theirs (Forbidden)
        6. a reopen arrives before reopen_until (AlreadyTerminal)
        """
        self.store.check_version(request, expected_version)

        current = request.status
        edge = (current, target)

        if is_terminal(current) and edge not in ALLOWED_TRANSITIONS:
            raise AlreadyTerminal(
                f"REFUSAL: Request {request.code} is already {current.value}.",
                request_id=request.id,
                status=current.value,
                target=target.value,
            )

        if edge not in ALLOWED_TRANSITIONS or (expected_from is not None and current not in set(expected_from)):
            raise InvalidTransition(
                f"REFUSAL: Cannot move request {request.code} from {current.value} to {target.value}.",
                request_id=request.id,
                status=current.value,
                target=target.value,
            )

        if not is_allowed(current, target, actor.role):
            allowed = sorted(role.value for role in ALLOWED_TRANSITIONS[edge])
            raise Forbidden(
                f"REFUSAL: Role {actor.role.value} may not move a request from "
                f"{current.value} to {target.value}. Allowed roles: {', '.join(allowed)}.",
                request_id=request.id,
                role=actor.role.value,
                allowed_roles=allowed,
            )

        if actor.role == Role.CITIZEN and actor.actor_id != request.created_by:
            raise Forbidden(
                "REFUSAL: Citizens may only act on their own requests.",
                request_id=request.id,
                role=actor.role.value,
            )

        if actor.role == Role.FIELD_AGENT and actor.actor_id != request.assigned_to:
            raise Forbidden(
                "REFUSAL: Only the assigned field agent may act on this request.",
                request_id=request.id,
                role=actor.role.value,
            )

        if edge == (S.RESOLVED, S.IN_PROGRESS):
            now = self.clock()
            if request.reopen_until is None or now > request.reopen_until:
                raise AlreadyTerminal(
                    f"REFUSAL: The reopen window for request {request.code} has closed.",
                    request_id=request.id,
                    reopen_until=request.reopen_until.isoformat() if request.reopen_until else None,
                )

    def transition(
        self,
        request: ServiceRequest,
        target: RequestStatus,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
        expected_from: Optional[Iterable[RequestStatus]] = None,
    ) -> ServiceRequest:
        """
        Validate and apply one transition.

        Side effects on success:
        - version increments by exactly one
        - entering TRIAGED stamps triaged_at
        - first entry into IN_PROGRESS fixes sla_due_at from triaged_at and priority
        - entering a terminal status sets closed_at (once) and, for RESOLVED, reopen_until
        - leaving a terminal status (reopen) clears closed_at and reopen_until
        """
        self.check_transition(request, target, actor, expected_version, expected_from)

        now = self.clock()
        from_status = request.status
        request.status = target

        if target == S.TRIAGED:
            request.triaged_at = now

        if target == S.IN_PROGRESS and request.sla_due_at is None:
            request.sla_due_at = sla_due_at(
                request.priority, request.triaged_at or now, self.settings.sla_windows()
            )

        if is_terminal(target):
            if request.closed_at is None:
                request.closed_at = now
            if target == S.RESOLVED:
                request.reopen_until = request.closed_at + self.settings.reopen_window
        elif is_terminal(from_status):
            request.closed_at = None
            request.reopen_until = None

        self.store.bump(request)
        self.store.audit(
            AuditEventType.REQUEST_STATUS_CHANGED,
            "ServiceRequest",
            request.id,
            actor.actor_id,
            {
                "from": from_status.value,
                "to": target.value,
                "role": actor.role.value,
                "reason": reason,
                "version": request.version,
            },
        )
        logger.info(
            "Request %s moved %s -> %s by %s (%s)",
            request.code, from_status.value, target.value, actor.actor_id, actor.role.value,
        )
        return request

    def available_transitions(self, request: ServiceRequest, actor: Actor) -> List[RequestStatus]:
        """Targets the actor could move the request to right now, ignoring version."""
        targets = []
        for (from_status, to_status) in ALLOWED_TRANSITIONS:
            if from_status != request.status:
                continue
            try:
                self.check_transition(request, to_status, actor, request.version)
            except (AlreadyTerminal, Forbidden, InvalidTransition):
                continue
            targets.append(to_status)
        return targets
