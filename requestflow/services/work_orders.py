"""
Field work-order sub-machine and agent time tracking.

A work order tracks one field agent's on-site execution of an assignment:
ASSIGNED -> EN_ROUTE -> ON_SITE -> IN_PROGRESS -> COMPLETED, with CANCELLED
reachable from any non-terminal state. It never moves backwards.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from requestflow.clock import to_naive_utc
from requestflow.models.audit import AuditEventType
from requestflow.models.domain import AssignmentRecord, FieldWorkOrder, ServiceRequest, TimeTrackingEntry
from requestflow.models.enums import Role, TimeType, WorkOrderPriority, WorkOrderStatus
from requestflow.services.errors import (
    AlreadyTerminal,
    ConcurrencyConflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    OpenSegmentConflict,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.request_store import RequestStore

logger = logging.getLogger(__name__)

W = WorkOrderStatus

TERMINAL_WORK_ORDER_STATUSES = frozenset({W.COMPLETED, W.CANCELLED})

WORK_ORDER_TRANSITIONS: Dict[WorkOrderStatus, FrozenSet[WorkOrderStatus]] = {
    W.ASSIGNED: frozenset({W.EN_ROUTE, W.ON_SITE, W.IN_PROGRESS, W.CANCELLED}),
    W.EN_ROUTE: frozenset({W.ON_SITE, W.IN_PROGRESS, W.CANCELLED}),
    W.ON_SITE: frozenset({W.IN_PROGRESS, W.COMPLETED, W.CANCELLED}),
    W.IN_PROGRESS: frozenset({W.COMPLETED, W.CANCELLED}),
    W.COMPLETED: frozenset(),
    W.CANCELLED: frozenset(),
}

# Time types that count as productive in the time summary
PRODUCTIVE_TIME_TYPES = frozenset({TimeType.WORK, TimeType.SETUP, TimeType.DOCUMENTATION})


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed, floored."""
    return int((end - start).total_seconds() // 60)


class WorkOrderMachine:
    """Drives FieldWorkOrder status and the agent time segments logged against it."""

    def __init__(self, store: RequestStore):
        self.store = store
        self.db = store.db

    def get(self, work_order_id: int) -> FieldWorkOrder:
        work_order = self.db.get(FieldWorkOrder, work_order_id)
        if work_order is None:
            raise NotFound(f"Work order {work_order_id} not found", work_order_id=work_order_id)
        return work_order

    def open_orders(self, request_id: int) -> List[FieldWorkOrder]:
        return self.db.query(FieldWorkOrder).filter(
            FieldWorkOrder.request_id == request_id,
            FieldWorkOrder.status.notin_(list(TERMINAL_WORK_ORDER_STATUSES)),
        ).order_by(FieldWorkOrder.id).all()

    def open_for_assignment(
        self,
        request: ServiceRequest,
        assignment: AssignmentRecord,
        supervisor_id: str,
        priority: WorkOrderPriority = WorkOrderPriority.NORMAL,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
    ) -> FieldWorkOrder:
        """Create the work order that goes with a new assignment to a field agent."""
        work_order = FieldWorkOrder(
            request_id=request.id,
            assignment_id=assignment.id,
            assigned_agent_id=assignment.assigned_to,
            supervisor_id=supervisor_id,
            status=W.ASSIGNED,
            priority=priority,
            gps_lat=gps_lat,
            gps_lng=gps_lng,
            created_at=self.store.clock(),
        )
        self.db.add(work_order)
        self.db.flush()
        self.store.audit(
            AuditEventType.WORK_ORDER_CREATED,
            "FieldWorkOrder",
            work_order.id,
            supervisor_id,
            {"request_id": request.id, "agent_id": work_order.assigned_agent_id, "priority": priority.value},
        )
        return work_order

    def depart(self, work_order: FieldWorkOrder, actor: Actor) -> FieldWorkOrder:
        """Agent is on the way: ASSIGNED -> EN_ROUTE."""
        self._check_actor(work_order, actor)
        self._move(work_order, W.EN_ROUTE, actor)
        return work_order

    def check_in(
        self,
        work_order: FieldWorkOrder,
        actor: Actor,
        gps_lat: Optional[float] = None,
        gps_lng: Optional[float] = None,
        start_immediately: bool = False,
    ) -> FieldWorkOrder:
        """
        Arrive on site. Valid only from ASSIGNED or EN_ROUTE.

        Moves to ON_SITE, or straight to IN_PROGRESS when work starts immediately.
        """
        self._check_actor(work_order, actor)
        if work_order.status not in (W.ASSIGNED, W.EN_ROUTE):
            self._refuse(work_order, "check in", (W.ASSIGNED, W.EN_ROUTE))

        work_order.check_in_time = self.store.clock()
        if gps_lat is not None:
            work_order.gps_lat = gps_lat
        if gps_lng is not None:
            work_order.gps_lng = gps_lng
        self._move(work_order, W.IN_PROGRESS if start_immediately else W.ON_SITE, actor)
        return work_order

    def start_work(self, work_order: FieldWorkOrder, actor: Actor) -> FieldWorkOrder:
        """ON_SITE -> IN_PROGRESS."""
        self._check_actor(work_order, actor)
        if work_order.status != W.ON_SITE:
            self._refuse(work_order, "start work", (W.ON_SITE,))
        self._move(work_order, W.IN_PROGRESS, actor)
        return work_order

    def check_out(
        self,
        work_order: FieldWorkOrder,
        actor: Actor,
        completion_notes: Optional[str] = None,
        follow_up_required: bool = False,
    ) -> FieldWorkOrder:
        """
        Leave the site with the job done. Valid only from ON_SITE or IN_PROGRESS.

        Computes actual_duration (minutes) and closes the work order's open time segment.
        """
        self._check_actor(work_order, actor)
        if work_order.status not in (W.ON_SITE, W.IN_PROGRESS):
            self._refuse(work_order, "check out", (W.ON_SITE, W.IN_PROGRESS))

        now = self.store.clock()
        if work_order.check_in_time is None or now < work_order.check_in_time:
            raise ValidationFailed(
                "Check-out time cannot precede check-in time",
                work_order_id=work_order.id,
            )

        work_order.check_out_time = now
        work_order.actual_duration = minutes_between(work_order.check_in_time, now)
        work_order.completion_notes = completion_notes
        work_order.follow_up_required = follow_up_required
        work_order.completed_at = now

        open_entry = self.db.query(TimeTrackingEntry).filter(
            TimeTrackingEntry.work_order_id == work_order.id,
            TimeTrackingEntry.end_time.is_(None),
        ).first()
        if open_entry is not None:
            self._close_segment(open_entry, now, actor)

        self._move(work_order, W.COMPLETED, actor, {"actual_duration": work_order.actual_duration})
        return work_order

    def cancel(self, work_order: FieldWorkOrder, actor: Actor, reason: Optional[str] = None) -> FieldWorkOrder:
        """Cancel from any non-terminal state. Supervisors only."""
        if actor.role != Role.SUPERVISOR:
            raise Forbidden(
                "REFUSAL: Only a SUPERVISOR may cancel a work order.",
                work_order_id=work_order.id,
                role=actor.role.value,
            )
        self._move(work_order, W.CANCELLED, actor, {"reason": reason})
        return work_order

    def cancel_open(self, request_id: int, user_id: Optional[str], reason: str) -> List[FieldWorkOrder]:
        """System cancellation of every open work order of a request."""
        cancelled = []
        for work_order in self.open_orders(request_id):
            self._apply(work_order, W.CANCELLED, user_id, {"reason": reason})
            cancelled.append(work_order)
        return cancelled

    # Time tracking

    def start_segment(
        self,
        work_order: FieldWorkOrder,
        actor: Actor,
        time_type: TimeType,
        notes: Optional[str] = None,
    ) -> TimeTrackingEntry:
        """
        Open a time segment for the agent.

        Invariant: an agent never has two open segments. Checked per agent, and
        backed by a partial unique index so a racing writer also loses.
        """
        if actor.role != Role.FIELD_AGENT or actor.actor_id != work_order.assigned_agent_id:
            raise Forbidden(
                "REFUSAL: Only the assigned field agent may log time on this work order.",
                work_order_id=work_order.id,
            )
        if work_order.status in TERMINAL_WORK_ORDER_STATUSES:
            raise AlreadyTerminal(
                f"REFUSAL: Work order {work_order.id} is {work_order.status.value}.",
                work_order_id=work_order.id,
                status=work_order.status.value,
            )

        open_entry = self.open_segment(actor.actor_id)
        if open_entry is not None:
            raise OpenSegmentConflict(
                f"REFUSAL: Agent {actor.actor_id} already has an open {open_entry.time_type.value} segment.",
                agent_id=actor.actor_id,
                open_segment_id=open_entry.id,
            )

        entry = TimeTrackingEntry(
            work_order_id=work_order.id,
            agent_id=actor.actor_id,
            time_type=TimeType(time_type),
            start_time=self.store.clock(),
            notes=notes,
        )
        self.db.add(entry)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise OpenSegmentConflict(
                f"REFUSAL: Agent {actor.actor_id} opened another segment concurrently.",
                agent_id=actor.actor_id,
            ) from exc

        self.store.audit(
            AuditEventType.TIME_SEGMENT_STARTED,
            "TimeTrackingEntry",
            entry.id,
            actor.actor_id,
            {"work_order_id": work_order.id, "time_type": entry.time_type.value},
        )
        return entry

    def end_segment(self, entry_id: int, actor: Actor, notes: Optional[str] = None) -> TimeTrackingEntry:
        entry = self.db.get(TimeTrackingEntry, entry_id)
        if entry is None:
            raise NotFound(f"Time tracking entry {entry_id} not found", entry_id=entry_id)
        if entry.agent_id != actor.actor_id:
            raise Forbidden("REFUSAL: Agents may only end their own segments.", entry_id=entry_id)
        if entry.end_time is not None:
            raise ValidationFailed("Time tracking segment already ended", entry_id=entry_id)
        if notes:
            entry.notes = notes
        self._close_segment(entry, self.store.clock(), actor)
        return entry

    def open_segment(self, agent_id: str) -> Optional[TimeTrackingEntry]:
        return self.db.query(TimeTrackingEntry).filter(
            TimeTrackingEntry.agent_id == agent_id,
            TimeTrackingEntry.end_time.is_(None),
        ).first()

    def time_summary(self, agent_id: str, start: datetime, end: datetime) -> dict:
        """
        Minutes logged by an agent in [start, end), by type and by work order.

        productivity is the share of logged minutes spent on productive time types.
        """
        start, end = to_naive_utc(start), to_naive_utc(end)
        entries = self.db.query(TimeTrackingEntry).filter(
            TimeTrackingEntry.agent_id == agent_id,
            TimeTrackingEntry.start_time >= start,
            TimeTrackingEntry.start_time < end,
            TimeTrackingEntry.end_time.isnot(None),
        ).all()

        by_type = defaultdict(int)
        by_work_order = defaultdict(int)
        for entry in entries:
            by_type[entry.time_type.value] += entry.duration_minutes or 0
            by_work_order[entry.work_order_id] += entry.duration_minutes or 0

        total = sum(by_type.values())
        productive = sum(by_type.get(t.value, 0) for t in PRODUCTIVE_TIME_TYPES)
        return {
            "agent_id": agent_id,
            "total_minutes": total,
            "by_type": dict(by_type),
            "by_work_order": dict(by_work_order),
            "productivity": round(productive / total, 4) if total else None,
        }

    # Internals

    def _check_actor(self, work_order: FieldWorkOrder, actor: Actor) -> None:
        if actor.role == Role.SUPERVISOR:
            return
        if actor.role != Role.FIELD_AGENT or actor.actor_id != work_order.assigned_agent_id:
            raise Forbidden(
                "REFUSAL: Only the assigned field agent or a SUPERVISOR may update this work order.",
                work_order_id=work_order.id,
                role=actor.role.value,
            )

    def _refuse(self, work_order: FieldWorkOrder, action: str, valid_from) -> None:
        if work_order.status in TERMINAL_WORK_ORDER_STATUSES:
            raise AlreadyTerminal(
                f"REFUSAL: Work order {work_order.id} is already {work_order.status.value}.",
                work_order_id=work_order.id,
                status=work_order.status.value,
            )
        raise InvalidTransition(
            f"REFUSAL: Cannot {action} while work order is {work_order.status.value}. "
            f"Valid from: {', '.join(s.value for s in valid_from)}.",
            work_order_id=work_order.id,
            status=work_order.status.value,
        )

    def _move(self, work_order: FieldWorkOrder, target: WorkOrderStatus, actor: Actor, extra: dict = None) -> None:
        if work_order.status in TERMINAL_WORK_ORDER_STATUSES:
            raise AlreadyTerminal(
                f"REFUSAL: Work order {work_order.id} is already {work_order.status.value}.",
                work_order_id=work_order.id,
                status=work_order.status.value,
            )
        if target not in WORK_ORDER_TRANSITIONS[work_order.status]:
            raise InvalidTransition(
                f"REFUSAL: Work order {work_order.id} cannot move from "
                f"{work_order.status.value} to {target.value}.",
                work_order_id=work_order.id,
                status=work_order.status.value,
                target=target.value,
            )
        self._apply(work_order, target, actor.actor_id, extra)

    def _apply(self, work_order: FieldWorkOrder, target: WorkOrderStatus, user_id: Optional[str], extra: dict = None) -> None:
        from_status = work_order.status
        work_order.status = target
        if target == W.CANCELLED:
            now = self.store.clock()
            open_entry = self.db.query(TimeTrackingEntry).filter(
                TimeTrackingEntry.work_order_id == work_order.id,
                TimeTrackingEntry.end_time.is_(None),
            ).first()
            if open_entry is not None:
                open_entry.end_time = now
                open_entry.duration_minutes = minutes_between(open_entry.start_time, now)
        try:
            self.db.flush()
        except StaleDataError as exc:
            raise ConcurrencyConflict(
                f"Work order {work_order.id} was updated concurrently. Re-read and retry.",
                work_order_id=work_order.id,
            ) from exc
        self.store.audit(
            AuditEventType.WORK_ORDER_STATUS_CHANGED,
            "FieldWorkOrder",
            work_order.id,
            user_id,
            {"request_id": work_order.request_id, "from": from_status.value, "to": target.value, **(extra or {})},
        )
        logger.info("Work order %s moved %s -> %s", work_order.id, from_status.value, target.value)

    def _close_segment(self, entry: TimeTrackingEntry, now: datetime, actor: Actor) -> None:
        entry.end_time = now
        entry.duration_minutes = minutes_between(entry.start_time, now)
        self.store.audit(
            AuditEventType.TIME_SEGMENT_ENDED,
            "TimeTrackingEntry",
            entry.id,
            actor.actor_id,
            {"work_order_id": entry.work_order_id, "duration_minutes": entry.duration_minutes},
        )
