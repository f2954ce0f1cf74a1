"""
Assignment ledger - append-only history of who is working a request.

The ledger is the source of truth for assignment; ServiceRequest.assigned_to
is a write-through projection updated in the same transaction.
"""
import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from requestflow.models.audit import AuditEventType
from requestflow.models.domain import AssignmentRecord, ServiceRequest
from requestflow.models.enums import Role
from requestflow.services.errors import (
    AlreadyTerminal,
    ConcurrencyConflict,
    Forbidden,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.request_store import RequestStore
from requestflow.services.state_machine import is_terminal

logger = logging.getLogger(__name__)


class AssignmentLedger:
    """Routes requests to staff and keeps the reassignment audit trail."""

    def __init__(self, store: RequestStore):
        self.store = store
        self.db = store.db

    def active_record(self, request_id: int) -> Optional[AssignmentRecord]:
        return self.db.query(AssignmentRecord).filter(
            AssignmentRecord.request_id == request_id,
            AssignmentRecord.is_active.is_(True),
        ).first()

    def history(self, request_id: int) -> List[AssignmentRecord]:
        return self.db.query(AssignmentRecord).filter(
            AssignmentRecord.request_id == request_id
        ).order_by(AssignmentRecord.id).all()

    def assign(
        self,
        request: ServiceRequest,
        assignee_id: str,
        assigned_by: Actor,
        expected_version: int,
        reason: Optional[str] = None,
        workload_score: Optional[float] = None,
        assignee_department_id: Optional[str] = None,
    ) -> AssignmentRecord:
        """
        Make `assignee_id` the single active assignee of `request`.

        Invariants:
        - expected_version is checked first, then the SUPERVISOR role
        - The prior active record (if any) is deactivated in the same transaction
        - request.assigned_to always matches the active record
        - workload_score is persisted as given; the ledger never computes it
        """
        self.store.check_version(request, expected_version)

        if assigned_by.role != Role.SUPERVISOR:
            raise Forbidden(
                f"REFUSAL: Role {assigned_by.role.value} may not assign requests. SUPERVISOR required.",
                request_id=request.id,
                role=assigned_by.role.value,
            )

        if is_terminal(request.status):
            raise AlreadyTerminal(
                f"REFUSAL: Request {request.code} is {request.status.value} and cannot be assigned.",
                request_id=request.id,
                status=request.status.value,
            )

        if not assignee_id:
            raise ValidationFailed("An assignee is required", field="assignee_id")

        if (
            assignee_department_id is not None
            and request.department_id is not None
            and assignee_department_id != request.department_id
        ):
            raise ValidationFailed(
                "Cannot assign a request to a user from a different department",
                field="assignee_id",
                request_department_id=request.department_id,
                assignee_department_id=assignee_department_id,
            )

        previous = self.active_record(request.id)
        if previous is not None and previous.assigned_to == assignee_id:
            raise ValidationFailed(
                f"Request {request.code} is already assigned to {assignee_id}",
                field="assignee_id",
            )

        now = self.store.clock()
        code = request.code

        # Request row first: a concurrent writer loses here on the version check
        request.assigned_to = assignee_id
        self.store.bump(request)
        self.db.flush()

        if previous is not None:
            self._deactivate(previous, now, assigned_by.actor_id, "superseded")
            self.db.flush()

        record = AssignmentRecord(
            request_id=request.id,
            assigned_from=previous.assigned_to if previous is not None else None,
            assigned_to=assignee_id,
            assigned_by=assigned_by.actor_id,
            reason=reason,
            workload_score=workload_score,
            is_active=True,
            created_at=now,
        )
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Request {code} was assigned concurrently. Re-read and retry.",
                request_id=request.id,
            ) from exc

        self.store.audit(
            AuditEventType.ASSIGNMENT_CREATED,
            "AssignmentRecord",
            record.id,
            assigned_by.actor_id,
            {
                "request_id": request.id,
                "assigned_from": record.assigned_from,
                "assigned_to": assignee_id,
                "reason": reason,
                "workload_score": workload_score,
            },
        )
        logger.info(
            "Request %s assigned to %s by %s (from %s)",
            code, assignee_id, assigned_by.actor_id, record.assigned_from,
        )
        return record

    def reinstate(self, request: ServiceRequest, user_id: str, reason: str) -> AssignmentRecord:
        """
        Re-open the ledger for request.assigned_to when a request leaves a terminal status.

        The caller owns the version bump; this only appends the active record.
        """
        code = request.code
        last = self.db.query(AssignmentRecord).filter(
            AssignmentRecord.request_id == request.id,
            AssignmentRecord.assigned_to == request.assigned_to,
        ).order_by(AssignmentRecord.id.desc()).first()

        record = AssignmentRecord(
            request_id=request.id,
            assigned_from=None,
            assigned_to=request.assigned_to,
            assigned_by=user_id,
            reason=reason,
            workload_score=last.workload_score if last is not None else None,
            is_active=True,
            created_at=self.store.clock(),
        )
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConcurrencyConflict(
                f"Request {code} was assigned concurrently. Re-read and retry.",
                request_id=request.id,
            ) from exc

        self.store.audit(
            AuditEventType.ASSIGNMENT_CREATED,
            "AssignmentRecord",
            record.id,
            user_id,
            {
                "request_id": request.id,
                "assigned_from": None,
                "assigned_to": record.assigned_to,
                "reason": reason,
                "workload_score": record.workload_score,
            },
        )
        logger.info("Request %s reopened; assignment to %s reinstated", code, record.assigned_to)
        return record

    def deactivate_active(self, request_id: int, user_id: Optional[str], cause: str) -> Optional[AssignmentRecord]:
        """Close out the active record when the request reaches a terminal status."""
        record = self.active_record(request_id)
        if record is None:
            return None
        self._deactivate(record, self.store.clock(), user_id, cause)
        return record

    def _deactivate(self, record: AssignmentRecord, now, user_id: Optional[str], cause: str) -> None:
        record.is_active = False
        record.completed_at = now
        self.store.audit(
            AuditEventType.ASSIGNMENT_DEACTIVATED,
            "AssignmentRecord",
            record.id,
            user_id,
            {"request_id": record.request_id, "assigned_to": record.assigned_to, "cause": cause},
        )
