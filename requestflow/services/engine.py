"""
Request engine - the command and query surface used by the API layer.

Each command runs in one transaction: validate against current state and the
actor's role, mutate, audit, commit. Notification events are emitted only
after commit. Refused transitions are audited in a follow-up transaction so a
refusal is never silent.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from requestflow.clock import Clock, utcnow
from requestflow.config import Settings, get_settings
from requestflow.models.audit import AuditEventType
from requestflow.models.domain import (
    AssignmentRecord,
    FieldWorkOrder,
    PerformanceGoal,
    QualityReview,
    ServiceRequest,
    TimeTrackingEntry,
)
from requestflow.models.enums import (
    Priority,
    RequestStatus,
    Role,
    TimeType,
    WorkOrderPriority,
    WorkOrderStatus,
)
from requestflow.services.assignment_ledger import AssignmentLedger
from requestflow.services.errors import (
    Forbidden,
    StorageUnavailable,
    TransitionRefused,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.notifications import EventType, NotificationEmitter, NotificationEvent
from requestflow.services.quality import PerformanceRollup, Period, QualityAggregator, Scores
from requestflow.services.request_store import RequestStore
from requestflow.services.state_machine import LifecycleStateMachine, is_breached, is_terminal
from requestflow.services.work_orders import WorkOrderMachine

logger = logging.getLogger(__name__)

S = RequestStatus

# Supplies a workload score for (assignee_id, request); the engine only persists it
CapacityPlanner = Callable[[str, ServiceRequest], float]


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RequestEngine:
    """Unified facade over the store, state machine, ledger, work orders and aggregator."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        emitter: Optional[NotificationEmitter] = None,
        capacity_planner: Optional[CapacityPlanner] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = RequestStore(db, clock)
        self.state_machine = LifecycleStateMachine(self.store, self.settings, clock)
        self.ledger = AssignmentLedger(self.store)
        self.work_orders = WorkOrderMachine(self.store)
        self.quality = QualityAggregator(self.store, self.settings)
        self.emitter = emitter or NotificationEmitter()
        self.capacity_planner = capacity_planner

    # Intake

    def create_request(
        self,
        actor: Actor,
        title: str,
        priority: Priority = Priority.MEDIUM,
        category: Optional[str] = None,
        description: Optional[str] = None,
        department_id: Optional[str] = None,
        submit: bool = True,
    ) -> ServiceRequest:
        """Citizens (or clerks on their behalf) open a request in DRAFT or SUBMITTED."""
        if actor.role not in (Role.CITIZEN, Role.CLERK):
            raise Forbidden(
                f"REFUSAL: Role {actor.role.value} may not create service requests.",
                role=actor.role.value,
            )
        with self.store.unit_of_work():
            request = self.store.create(
                title=title,
                created_by=actor.actor_id,
                priority=Priority(priority),
                category=category,
                description=description,
                department_id=department_id,
                submit=submit,
            )
            event = self._event(EventType.REQUEST_CREATED, request, {"status": request.status.value, "code": request.code})
        self.emitter.emit(event)
        return request

    # Lifecycle commands

    def submit(self, request_id: int, actor: Actor, expected_version: int) -> ServiceRequest:
        return self._transition(request_id, S.SUBMITTED, actor, expected_version)

    def triage(
        self,
        request_id: int,
        actor: Actor,
        expected_version: int,
        priority: Optional[Priority] = None,
        department_id: Optional[str] = None,
    ) -> ServiceRequest:
        """Accept a submitted request, optionally fixing its priority and department."""

        def classify(request: ServiceRequest) -> None:
            if priority is not None:
                request.priority = Priority(priority)
            if department_id is not None:
                request.department_id = department_id

        return self._transition(request_id, S.TRIAGED, actor, expected_version, before=classify)

    def send_to_review(self, request_id: int, actor: Actor, expected_version: int) -> ServiceRequest:
        return self._transition(request_id, S.IN_REVIEW, actor, expected_version)

    def approve(self, request_id: int, actor: Actor, expected_version: int) -> ServiceRequest:
        return self._transition(request_id, S.APPROVED, actor, expected_version)

    def start_work(self, request_id: int, actor: Actor, expected_version: int) -> ServiceRequest:
        return self._transition(
            request_id, S.IN_PROGRESS, actor, expected_version,
            expected_from=(S.TRIAGED, S.APPROVED),
        )

    def resolve(self, request_id: int, actor: Actor, expected_version: int, notes: Optional[str] = None) -> ServiceRequest:
        return self._transition(request_id, S.RESOLVED, actor, expected_version, reason=notes)

    def reject(self, request_id: int, actor: Actor, expected_version: int, reason: str) -> ServiceRequest:
        if not reason or not reason.strip():
            raise ValidationFailed("A rejection needs a reason", field="reason")
        return self._transition(request_id, S.REJECTED, actor, expected_version, reason=reason)

    def close(self, request_id: int, actor: Actor, expected_version: int) -> ServiceRequest:
        return self._transition(request_id, S.CLOSED, actor, expected_version)

    def cancel(self, request_id: int, actor: Actor, expected_version: int, reason: Optional[str] = None) -> ServiceRequest:
        return self._transition(request_id, S.CANCELLED, actor, expected_version, reason=reason)

    def reopen(self, request_id: int, actor: Actor, expected_version: int, reason: Optional[str] = None) -> ServiceRequest:
        """Citizen reopen of a RESOLVED request inside its reopen window."""
        return self._transition(
            request_id, S.IN_PROGRESS, actor, expected_version,
            reason=reason, expected_from=(S.RESOLVED,),
        )

    def attach(self, request_id: int, actor: Actor, expected_version: int, blob_ref: str) -> ServiceRequest:
        """Store an opaque blob-store reference on the request."""
        with self.store.unit_of_work():
            request = self.store.get(request_id)
            self.store.check_version(request, expected_version)
            if actor.role == Role.CITIZEN and actor.actor_id != request.created_by:
                raise Forbidden("REFUSAL: Citizens may only attach files to their own requests.", request_id=request_id)
            if actor.role == Role.FIELD_AGENT and actor.actor_id != request.assigned_to:
                raise Forbidden(
                    "REFUSAL: Field agents may only attach files to requests assigned to them.",
                    request_id=request_id,
                )
            self.store.add_attachment(request, blob_ref, actor.actor_id)
            event = self._event(EventType.ATTACHMENT_ADDED, request, {"blob_ref": blob_ref, "version": request.version})
        self.emitter.emit(event)
        return request

    # Assignment

    def assign(
        self,
        request_id: int,
        assignee_id: str,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
        workload_score: Optional[float] = None,
        assignee_role: Role = Role.CLERK,
        assignee_department_id: Optional[str] = None,
        work_order_priority: WorkOrderPriority = WorkOrderPriority.NORMAL,
    ) -> AssignmentRecord:
        """
        Route a request to a staff member.

        Ledger insert, request.assigned_to and (for field agents) the new work
        order commit together. Open work orders of the previous assignee are
        cancelled in the same transaction.
        """
        return self._assign(
            request_id, assignee_id, actor, expected_version, reason, workload_score,
            assignee_role, assignee_department_id, work_order_priority, require_existing=False,
        )

    def reassign(
        self,
        request_id: int,
        assignee_id: str,
        actor: Actor,
        expected_version: int,
        reason: str,
        workload_score: Optional[float] = None,
        assignee_role: Role = Role.CLERK,
        assignee_department_id: Optional[str] = None,
        work_order_priority: WorkOrderPriority = WorkOrderPriority.NORMAL,
    ) -> AssignmentRecord:
        """Move an assigned request to someone else. A reason is mandatory."""
        if not reason or not reason.strip():
            raise ValidationFailed("A reassignment needs a reason", field="reason")
        return self._assign(
            request_id, assignee_id, actor, expected_version, reason, workload_score,
            assignee_role, assignee_department_id, work_order_priority, require_existing=True,
        )

    # Field work

    def depart(self, work_order_id: int, actor: Actor) -> FieldWorkOrder:
        return self._work_order_command(work_order_id, lambda wo: self.work_orders.depart(wo, actor))

    def check_in(
        self,
        work_order_id: int,
        actor: Actor,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
        start_immediately: bool = False,
    ) -> FieldWorkOrder:
        return self._work_order_command(
            work_order_id,
            lambda wo: self.work_orders.check_in(wo, actor, gps_lat, gps_lng, start_immediately),
        )

    def start_on_site_work(self, work_order_id: int, actor: Actor) -> FieldWorkOrder:
        return self._work_order_command(work_order_id, lambda wo: self.work_orders.start_work(wo, actor))

    def check_out(
        self,
        work_order_id: int,
        actor: Actor,
        completion_notes: Optional[str] = None,
        follow_up_required: bool = False,
    ) -> FieldWorkOrder:
        """
        Complete the work order. When it was the request's last open work order
        and the request is IN_PROGRESS, the request is resolved in the same transaction.
        """
        events = []
        with self.store.unit_of_work():
            work_order = self.work_orders.get(work_order_id)
            self.work_orders.check_out(work_order, actor, completion_notes, follow_up_required)
            events.append(self._work_order_event(work_order))

            request = self.store.get(work_order.request_id)
            if not self.work_orders.open_orders(request.id) and request.status == S.IN_PROGRESS:
                self._apply_transition(
                    request, S.RESOLVED, actor, request.version,
                    reason=f"Work order {work_order.id} completed", events=events,
                )
            else:
                logger.info(
                    "Work order %s completed; request %s stays %s",
                    work_order.id, request.code, request.status.value,
                )
        self.emitter.emit_all(events)
        return work_order

    def cancel_work_order(self, work_order_id: int, actor: Actor, reason: Optional[str] = None) -> FieldWorkOrder:
        return self._work_order_command(work_order_id, lambda wo: self.work_orders.cancel(wo, actor, reason))

    def start_segment(
        self,
        work_order_id: int,
        actor: Actor,
        time_type: TimeType,
        notes: Optional[str] = None,
    ) -> TimeTrackingEntry:
        with self.store.unit_of_work():
            work_order = self.work_orders.get(work_order_id)
            entry = self.work_orders.start_segment(work_order, actor, time_type, notes)
        return entry

    def end_segment(self, entry_id: int, actor: Actor, notes: Optional[str] = None) -> TimeTrackingEntry:
        with self.store.unit_of_work():
            entry = self.work_orders.end_segment(entry_id, actor, notes)
        return entry

    # Quality and goals

    def record_review(
        self,
        request_id: int,
        actor: Actor,
        scores: Scores,
        improvement_suggestions: Optional[str] = None,
        follow_up_requested: bool = False,
    ) -> QualityReview:
        with self.store.unit_of_work():
            request = self.store.get(request_id)
            review = self.quality.record_review(
                request, scores, actor, improvement_suggestions, follow_up_requested
            )
            event = self._review_event(review, request)
        self.emitter.emit(event)
        return review

    def update_review(
        self,
        review_id: int,
        actor: Actor,
        scores: Scores,
        follow_up_requested: Optional[bool] = None,
    ) -> QualityReview:
        with self.store.unit_of_work():
            review = self.quality.update_review(review_id, scores, actor, follow_up_requested)
            request = self.store.get(review.request_id)
            event = self._review_event(review, request)
        self.emitter.emit(event)
        return review

    def set_goal(
        self,
        actor: Actor,
        user_id: str,
        title: str,
        target_value: float,
        due_date: datetime,
        description: Optional[str] = None,
        unit: str = "count",
        current_value: float = 0.0,
    ) -> PerformanceGoal:
        with self.store.unit_of_work():
            goal = self.quality.set_goal(
                actor, user_id, title, target_value, due_date, description, unit, current_value
            )
            event = self._goal_event(goal)
        self.emitter.emit(event)
        return goal

    def update_goal_progress(self, goal_id: int, actor: Actor, latest_value: float) -> PerformanceGoal:
        with self.store.unit_of_work():
            goal = self.quality.update_goal_progress(goal_id, latest_value, actor)
            event = self._goal_event(goal)
        self.emitter.emit(event)
        return goal

    def cancel_goal(self, goal_id: int, actor: Actor) -> PerformanceGoal:
        with self.store.unit_of_work():
            goal = self.quality.cancel_goal(goal_id, actor)
            event = self._goal_event(goal)
        self.emitter.emit(event)
        return goal

    # Queries (read-only)

    def get_request(self, request_id: int) -> ServiceRequest:
        return self.store.get(request_id)

    def list_active_assignment(self, request_id: int) -> Optional[AssignmentRecord]:
        self.store.get(request_id)
        return self.ledger.active_record(request_id)

    def assignment_history(self, request_id: int) -> List[AssignmentRecord]:
        self.store.get(request_id)
        return self.ledger.history(request_id)

    def get_work_order(self, work_order_id: int) -> FieldWorkOrder:
        return self.work_orders.get(work_order_id)

    def is_breached(self, request_id: int) -> bool:
        return is_breached(self.store.get(request_id), self.clock())

    def list_breached(self, department_id: Optional[str] = None) -> List[ServiceRequest]:
        """Open requests whose SLA deadline has passed, oldest deadline first."""
        query = self.store.db.query(ServiceRequest).filter(
            ServiceRequest.sla_due_at.isnot(None),
            ServiceRequest.sla_due_at < self.clock(),
        )
        if department_id is not None:
            query = query.filter(ServiceRequest.department_id == department_id)
        return [r for r in query.order_by(ServiceRequest.sla_due_at).all() if is_breached(r, self.clock())]

    def available_transitions(self, request_id: int, actor: Actor) -> List[RequestStatus]:
        return self.state_machine.available_transitions(self.store.get(request_id), actor)

    def rollup_period(self, user_id: str, period: Period) -> PerformanceRollup:
        return self.quality.rollup_period(user_id, period)

    def time_summary(self, agent_id: str, start: datetime, end: datetime) -> dict:
        return self.work_orders.time_summary(agent_id, start, end)

    # Internals

    def _transition(
        self,
        request_id: int,
        target: RequestStatus,
        actor: Actor,
        expected_version: int,
        reason: Optional[str] = None,
        expected_from=None,
        before: Optional[Callable[[ServiceRequest], None]] = None,
    ) -> ServiceRequest:
        events = []
        try:
            with self.store.unit_of_work():
                request = self.store.get(request_id)
                self._apply_transition(
                    request, target, actor, expected_version, reason, events, expected_from, before
                )
        except TransitionRefused as exc:
            self._audit_refusal(request_id, target.value, actor, exc)
            raise
        self.emitter.emit_all(events)
        return request

    def _apply_transition(
        self,
        request: ServiceRequest,
        target: RequestStatus,
        actor: Actor,
        expected_version: int,
        reason: Optional[str],
        events: list,
        expected_from=None,
        before: Optional[Callable[[ServiceRequest], None]] = None,
    ) -> None:
        from_status = request.status
        self.state_machine.check_transition(request, target, actor, expected_version, expected_from)
        if before is not None:
            before(request)
        self.state_machine.transition(request, target, actor, expected_version, reason, expected_from)

        if is_terminal(target):
            self.ledger.deactivate_active(request.id, actor.actor_id, f"request {target.value.lower()}")
            for work_order in self.work_orders.cancel_open(
                request.id, actor.actor_id, f"request {target.value.lower()}"
            ):
                events.append(self._work_order_event(work_order))
        elif is_terminal(from_status) and request.assigned_to is not None:
            record = self.ledger.reinstate(request, actor.actor_id, "reopened")
            events.append(self._event(EventType.ASSIGNED, request, {
                "assignment_id": record.id,
                "assigned_from": None,
                "assigned_to": record.assigned_to,
                "assigned_by": actor.actor_id,
                "reason": record.reason,
                "version": request.version,
            }))

        events.append(self._event(EventType.STATUS_CHANGED, request, {
            "from": from_status.value,
            "to": target.value,
            "actor_id": actor.actor_id,
            "reason": reason,
            "version": request.version,
            "assigned_to": request.assigned_to,
            "closed_at": _iso(request.closed_at),
            "sla_due_at": _iso(request.sla_due_at),
        }))

    def _assign(
        self,
        request_id: int,
        assignee_id: str,
        actor: Actor,
        expected_version: int,
        reason: Optional[str],
        workload_score: Optional[float],
        assignee_role: Role,
        assignee_department_id: Optional[str],
        work_order_priority: WorkOrderPriority,
        require_existing: bool,
    ) -> AssignmentRecord:
        events = []
        try:
            with self.store.unit_of_work():
                request = self.store.get(request_id)
                if require_existing and self.ledger.active_record(request_id) is None:
                    raise ValidationFailed(
                        f"Request {request.code} has no active assignment to reassign",
                        request_id=request_id,
                    )
                if workload_score is None and self.capacity_planner is not None:
                    workload_score = self.capacity_planner(assignee_id, request)

                record = self.ledger.assign(
                    request, assignee_id, actor, expected_version, reason, workload_score, assignee_department_id
                )
                events.append(self._event(EventType.ASSIGNED, request, {
                    "assignment_id": record.id,
                    "assigned_from": record.assigned_from,
                    "assigned_to": record.assigned_to,
                    "assigned_by": record.assigned_by,
                    "reason": reason,
                    "version": request.version,
                }))
                for work_order in self.work_orders.cancel_open(request.id, actor.actor_id, "reassigned"):
                    events.append(self._work_order_event(work_order))
                if Role(assignee_role) == Role.FIELD_AGENT:
                    work_order = self.work_orders.open_for_assignment(
                        request, record, actor.actor_id, WorkOrderPriority(work_order_priority)
                    )
                    events.append(self._work_order_event(work_order))
        except TransitionRefused as exc:
            self._audit_refusal(request_id, "ASSIGN", actor, exc)
            raise
        self.emitter.emit_all(events)
        return record

    def _work_order_command(self, work_order_id: int, command: Callable[[FieldWorkOrder], FieldWorkOrder]) -> FieldWorkOrder:
        with self.store.unit_of_work():
            work_order = command(self.work_orders.get(work_order_id))
            event = self._work_order_event(work_order)
        self.emitter.emit(event)
        return work_order

    def _work_order_event(self, work_order: FieldWorkOrder) -> NotificationEvent:
        payload = {
            "work_order_id": work_order.id,
            "status": work_order.status.value,
            "agent_id": work_order.assigned_agent_id,
        }
        if work_order.status == WorkOrderStatus.COMPLETED:
            payload["actual_duration"] = work_order.actual_duration
        return NotificationEvent(EventType.WORK_ORDER_UPDATED, work_order.request_id, self.clock(), payload)

    def _event(self, event_type: EventType, request: ServiceRequest, payload: dict) -> NotificationEvent:
        return NotificationEvent(event_type, request.id, self.clock(), payload)

    def _review_event(self, review: QualityReview, request: ServiceRequest) -> NotificationEvent:
        return self._event(EventType.REVIEW_RECORDED, request, {
            "review_id": review.id,
            "overall_score": review.overall_score,
            "follow_up_required": review.follow_up_required,
            "assigned_to": request.assigned_to,
            "closed_at": _iso(request.closed_at),
        })

    def _goal_event(self, goal: PerformanceGoal) -> NotificationEvent:
        return NotificationEvent(EventType.GOAL_UPDATED, None, self.clock(), {
            "goal_id": goal.id,
            "user_id": goal.user_id,
            "status": goal.status.value,
            "current_value": goal.current_value,
            "target_value": goal.target_value,
        })

    def _audit_refusal(self, request_id: int, action: str, actor: Actor, exc: TransitionRefused) -> None:
        """Refusal must not be silent: record it after the failed transaction rolled back."""
        logger.warning("Refused %s on request %s by %s: %s", action, request_id, actor.actor_id, exc.message)
        try:
            with self.store.unit_of_work():
                self.store.audit(
                    AuditEventType.TRANSITION_REFUSED,
                    "ServiceRequest",
                    request_id,
                    actor.actor_id,
                    {
                        "action": action,
                        "role": actor.role.value,
                        "error": exc.code,
                        "message": exc.message,
                    },
                )
        except StorageUnavailable:
            logger.exception("Could not audit refused transition on request %s", request_id)
