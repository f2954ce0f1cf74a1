"""
Request store - durable record of service requests and their versioned state.

Every mutation goes through unit_of_work(), which is the single place where
storage failures are mapped onto the engine's error taxonomy.
"""
import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from requestflow.clock import Clock, utcnow
from requestflow.models.audit import AuditEvent, AuditEventType
from requestflow.models.domain import ServiceRequest
from requestflow.models.enums import Priority, RequestStatus
from requestflow.services.errors import (
    ConcurrencyConflict,
    EngineError,
    NotFound,
    StorageUnavailable,
    ValidationFailed,
)

logger = logging.getLogger(__name__)


class RequestStore:
    """Owns ServiceRequest rows; everything else refers to them by id."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    @contextmanager
    def unit_of_work(self):
        """
        Commit on success, roll back on any failure.

        - Engine errors propagate unchanged
        - A lost optimistic-concurrency race becomes ConcurrencyConflict
        - Any other storage failure becomes StorageUnavailable
        """
        try:
            yield self.db
            self.db.commit()
        except EngineError:
            self.db.rollback()
            raise
        except StaleDataError as exc:
            self.db.rollback()
            logger.warning("Optimistic lock lost: %s", exc)
            raise ConcurrencyConflict(
                "The record was modified by another writer. Re-read and retry."
            ) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Storage transaction aborted: %s", exc)
            raise StorageUnavailable("Storage is unavailable. The command is safe to retry.") from exc

    def get(self, request_id: int) -> ServiceRequest:
        request = self.db.get(ServiceRequest, request_id)
        if request is None:
            raise NotFound(f"Service request {request_id} not found", request_id=request_id)
        return request

    def find_by_code(self, code: str) -> Optional[ServiceRequest]:
        return self.db.query(ServiceRequest).filter(ServiceRequest.code == code).first()

    def create(
        self,
        title: str,
        created_by: str,
        priority: Priority = Priority.MEDIUM,
        category: Optional[str] = None,
        description: Optional[str] = None,
        department_id: Optional[str] = None,
        submit: bool = True,
    ) -> ServiceRequest:
        """Intake a new request in DRAFT or SUBMITTED and give it its permanent code."""
        if not title or not title.strip():
            raise ValidationFailed("A service request needs a title", field="title")

        now = self.clock()
        request = ServiceRequest(
            title=title.strip(),
            description=description,
            category=category,
            priority=priority,
            status=RequestStatus.SUBMITTED if submit else RequestStatus.DRAFT,
            created_by=created_by,
            department_id=department_id,
            attachment_refs=[],
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(request)
        self.db.flush()  # Assigns the id the code is derived from

        request.code = f"REQ-{now.year}-{request.id:06d}"
        self.audit(
            AuditEventType.REQUEST_CREATED,
            "ServiceRequest",
            request.id,
            created_by,
            {"code": request.code, "status": request.status.value, "priority": request.priority.value},
        )
        return request

    def check_version(self, request: ServiceRequest, expected_version: int) -> None:
        """Refuse the write if the caller saw an older version than the current one."""
        if expected_version is None or request.version != expected_version:
            raise ConcurrencyConflict(
                f"Stale version for request {request.id}: expected {expected_version}, "
                f"current is {request.version}",
                request_id=request.id,
                expected_version=expected_version,
                current_version=request.version,
            )

    def bump(self, request: ServiceRequest) -> None:
        """Record one accepted mutation. Called exactly once per command."""
        request.version = request.version + 1
        request.updated_at = self.clock()

    def add_attachment(self, request: ServiceRequest, blob_ref: str, user_id: str) -> None:
        if not blob_ref:
            raise ValidationFailed("Attachment reference is empty", field="blob_ref")
        # Reassign so the JSON column is flagged dirty
        request.attachment_refs = list(request.attachment_refs or []) + [blob_ref]
        self.bump(request)
        self.audit(
            AuditEventType.REQUEST_ATTACHMENT_ADDED,
            "ServiceRequest",
            request.id,
            user_id,
            {"blob_ref": blob_ref},
        )

    def audit(self, event_type: str, entity_type: str, entity_id, user_id: Optional[str], payload: dict) -> AuditEvent:
        """Append an audit event to the current transaction."""
        event = AuditEvent(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=str(entity_id),
            user_id=user_id,
            created_at=self.clock(),
            payload_json=payload,
        )
        self.db.add(event)
        return event
