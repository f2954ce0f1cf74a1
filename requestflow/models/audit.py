"""
Internal audit logging model - NOT a user-facing domain object.

This model exists to provide immutable, append-only audit trails
for every accepted command and every refused transition.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON

from requestflow.clock import utcnow
from requestflow.database import Base


class AuditEvent(Base):
    """
    Immutable audit event for reconstructing who did what to a request.

    Invariants:
    - Once written, never edited or deleted
    - Append-only
    - Written in the same transaction as the mutation it describes
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "request_status_changed"
    entity_type = Column(String, nullable=False)  # e.g., "ServiceRequest", "FieldWorkOrder"
    entity_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)  # Nullable for system events
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    payload_json = Column(JSON, nullable=True)


# Event type constants for consistency
class AuditEventType:
    """Enumeration of audit event types."""
    # Request lifecycle
    REQUEST_CREATED = "request_created"
    REQUEST_STATUS_CHANGED = "request_status_changed"
    REQUEST_ATTACHMENT_ADDED = "request_attachment_added"

    # Assignment ledger
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_DEACTIVATED = "assignment_deactivated"

    # Field work
    WORK_ORDER_CREATED = "work_order_created"
    WORK_ORDER_STATUS_CHANGED = "work_order_status_changed"
    TIME_SEGMENT_STARTED = "time_segment_started"
    TIME_SEGMENT_ENDED = "time_segment_ended"

    # Quality and goals
    REVIEW_RECORDED = "review_recorded"
    REVIEW_UPDATED = "review_updated"
    GOAL_SET = "goal_set"
    GOAL_EVALUATED = "goal_evaluated"

    # Refusal events
    TRANSITION_REFUSED = "transition_refused"
