"""Domain models - service requests and the records that hang off them."""
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import relationship, validates

from requestflow.clock import utcnow
from requestflow.database import Base
from requestflow.models.enums import (
    GoalStatus,
    Priority,
    RequestStatus,
    ReviewStatus,
    TimeType,
    WorkOrderPriority,
    WorkOrderStatus,
)


class ServiceRequest(Base):
    """
    The unit of work, owned by the request store.

    Invariants enforced here:
    - code is immutable once assigned
    - version guards every UPDATE (optimistic concurrency)
    """
    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(32), unique=True, nullable=True)
    title = Column(String(200), nullable=False)
    description = Column(String, nullable=True)
    category = Column(String(100), nullable=True)
    priority = Column(SQLEnum(Priority), nullable=False, default=Priority.MEDIUM)
    status = Column(SQLEnum(RequestStatus), nullable=False, default=RequestStatus.DRAFT, index=True)

    created_by = Column(String, nullable=False)  # Citizen (or clerk on their behalf)
    assigned_to = Column(String, nullable=True, index=True)  # Projection of the assignment ledger
    department_id = Column(String, nullable=True, index=True)

    # Opaque blob-store references, never bytes
    attachment_refs = Column(JSON, nullable=False, default=list)

    version = Column(Integer, nullable=False, default=1)

    triaged_at = Column(DateTime, nullable=True)
    sla_due_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    reopen_until = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    # The engine bumps version itself; the ORM adds WHERE version = :loaded to each UPDATE
    __mapper_args__ = {"version_id_col": version, "version_id_generator": False}

    @validates("code")
    def _guard_code(self, key, value):
        if self.code is not None and value != self.code:
            raise ValueError(
                f"IMMUTABILITY VIOLATION: request code {self.code} cannot be changed"
            )
        return value


class AssignmentRecord(Base):
    """
    One entry per assignment event. Append-only except for deactivation.

    Invariants:
    - At most one active record per request (also backed by a partial unique index)
    - assigned_from is the previous active assignee, or None
    """
    __tablename__ = "assignment_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    assigned_from = Column(String, nullable=True)
    assigned_to = Column(String, nullable=False, index=True)
    assigned_by = Column(String, nullable=False)
    reason = Column(String, nullable=True)
    workload_score = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_assignment_records_active_request",
            "request_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class FieldWorkOrder(Base):
    """
    Field execution for one active assignment to a field agent.

    Invariants:
    - check_out_time >= check_in_time when both are set
    - status only moves forward; COMPLETED and CANCELLED are terminal
    """
    __tablename__ = "field_work_orders"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    assignment_id = Column(Integer, ForeignKey("assignment_records.id"), nullable=True)
    assigned_agent_id = Column(String, nullable=False, index=True)
    supervisor_id = Column(String, nullable=True)
    status = Column(SQLEnum(WorkOrderStatus), nullable=False, default=WorkOrderStatus.ASSIGNED)
    priority = Column(SQLEnum(WorkOrderPriority), nullable=False, default=WorkOrderPriority.NORMAL)

    gps_lat = Column(Float, nullable=True)
    gps_lng = Column(Float, nullable=True)

    check_in_time = Column(DateTime, nullable=True)
    check_out_time = Column(DateTime, nullable=True)
    actual_duration = Column(Integer, nullable=True)  # Minutes
    completion_notes = Column(String, nullable=True)
    follow_up_required = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    time_entries = relationship("TimeTrackingEntry", back_populates="work_order", order_by="TimeTrackingEntry.start_time")


class TimeTrackingEntry(Base):
    """
    A [start_time, end_time) segment an agent logs against a work order.

    Invariant: an agent has at most one open segment (end_time IS NULL).
    """
    __tablename__ = "time_tracking_entries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    work_order_id = Column(Integer, ForeignKey("field_work_orders.id"), nullable=False, index=True)
    agent_id = Column(String, nullable=False, index=True)
    time_type = Column(SQLEnum(TimeType), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    notes = Column(String, nullable=True)

    work_order = relationship("FieldWorkOrder", back_populates="time_entries")

    __table_args__ = (
        Index(
            "uq_time_tracking_open_segment_per_agent",
            "agent_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
    )


# Order matters only for display; the overall score is their plain mean
SUB_SCORE_FIELDS = (
    "quality_score",
    "communication_score",
    "technical_accuracy_score",
    "timeliness_score",
    "citizen_satisfaction_score",
)


class QualityReview(Base):
    """
    Supervisor scoring of a closed request.

    Invariant: overall_score is derived from the five sub-scores on every read.
    """
    __tablename__ = "quality_reviews"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("service_requests.id"), nullable=False, index=True)
    reviewer_id = Column(String, nullable=False)

    quality_score = Column(Float, nullable=False)
    communication_score = Column(Float, nullable=False)
    technical_accuracy_score = Column(Float, nullable=False)
    timeliness_score = Column(Float, nullable=False)
    citizen_satisfaction_score = Column(Float, nullable=False)

    review_status = Column(SQLEnum(ReviewStatus), nullable=False, default=ReviewStatus.COMPLETED)
    follow_up_requested = Column(Boolean, nullable=False, default=False)  # Explicit reviewer request
    follow_up_required = Column(Boolean, nullable=False, default=False)
    improvement_suggestions = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("request_id", "reviewer_id", name="uq_quality_reviews_request_reviewer"),
    )

    @hybrid_property
    def overall_score(self):
        return (
            self.quality_score
            + self.communication_score
            + self.technical_accuracy_score
            + self.timeliness_score
            + self.citizen_satisfaction_score
        ) / len(SUB_SCORE_FIELDS)


class PerformanceGoal(Base):
    """
    Supervisor-set target for a staff member.

    Invariants:
    - ACHIEVED only when current_value >= target_value
    - MISSED only once due_date has passed with the target unmet
    """
    __tablename__ = "performance_goals"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    supervisor_id = Column(String, nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(String, nullable=True)
    unit = Column(String(32), nullable=False, default="count")
    target_value = Column(Float, nullable=False)
    current_value = Column(Float, nullable=False, default=0.0)
    due_date = Column(DateTime, nullable=False)
    status = Column(SQLEnum(GoalStatus), nullable=False, default=GoalStatus.ACTIVE)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class StaffPerformance(Base):
    """
    Rollup of one staff member's terminal requests and reviews for one period.

    Rebuilt from history on every refresh, so it never drifts from its inputs.
    """
    __tablename__ = "staff_performance"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(String, nullable=False, index=True)
    period_label = Column(String(32), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)

    completed_count = Column(Integer, nullable=False, default=0)
    avg_handling_hours = Column(Float, nullable=True)
    avg_quality_score = Column(Float, nullable=True)
    sla_compliance_rate = Column(Float, nullable=True)
    reassignment_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "period_label", name="uq_staff_performance_user_period"),
    )
