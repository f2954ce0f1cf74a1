"""Pydantic schemas for request/response validation."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from requestflow.models.enums import (
    GoalStatus,
    Priority,
    RequestStatus,
    ReviewStatus,
    Role,
    TimeType,
    WorkOrderPriority,
    WorkOrderStatus,
)


# Service request schemas
class RequestCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    department_id: Optional[str] = None
    submit: bool = True


class RequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    title: str
    description: Optional[str]
    category: Optional[str]
    priority: Priority
    status: RequestStatus
    created_by: str
    assigned_to: Optional[str]
    department_id: Optional[str]
    attachment_refs: List[str]
    version: int
    triaged_at: Optional[datetime]
    sla_due_at: Optional[datetime]
    closed_at: Optional[datetime]
    reopen_until: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class VersionedCommand(BaseModel):
    """Every mutating command carries the version the caller last saw."""
    expected_version: int = Field(..., ge=1)
    reason: Optional[str] = Field(None, max_length=500)


class TriageCommand(VersionedCommand):
    priority: Optional[Priority] = None
    department_id: Optional[str] = None


class AttachmentCreate(VersionedCommand):
    blob_ref: str = Field(..., min_length=1)


class BreachStatus(BaseModel):
    request_id: int
    breached: bool


# Assignment schemas
class AssignCommand(VersionedCommand):
    assignee_id: str = Field(..., min_length=1)
    assignee_role: Role = Role.CLERK
    assignee_department_id: Optional[str] = None
    workload_score: Optional[float] = None
    work_order_priority: WorkOrderPriority = WorkOrderPriority.NORMAL


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    assigned_from: Optional[str]
    assigned_to: str
    assigned_by: str
    reason: Optional[str]
    workload_score: Optional[float]
    is_active: bool
    created_at: datetime
    completed_at: Optional[datetime]


# Field work schemas
class CheckInCommand(BaseModel):
    gps_lat: Optional[float] = Field(None, ge=-90, le=90)
    gps_lng: Optional[float] = Field(None, ge=-180, le=180)
    start_immediately: bool = False


class CheckOutCommand(BaseModel):
    completion_notes: Optional[str] = None
    follow_up_required: bool = False


class WorkOrderCancel(BaseModel):
    reason: Optional[str] = None


class WorkOrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    assignment_id: Optional[int]
    assigned_agent_id: str
    supervisor_id: Optional[str]
    status: WorkOrderStatus
    priority: WorkOrderPriority
    gps_lat: Optional[float]
    gps_lng: Optional[float]
    check_in_time: Optional[datetime]
    check_out_time: Optional[datetime]
    actual_duration: Optional[int]
    completion_notes: Optional[str]
    follow_up_required: bool
    created_at: datetime
    completed_at: Optional[datetime]


class SegmentStart(BaseModel):
    time_type: TimeType
    notes: Optional[str] = None


class SegmentEnd(BaseModel):
    notes: Optional[str] = None


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    work_order_id: int
    agent_id: str
    time_type: TimeType
    start_time: datetime
    end_time: Optional[datetime]
    duration_minutes: Optional[int]
    notes: Optional[str]


class TimeSummary(BaseModel):
    agent_id: str
    total_minutes: int
    by_type: Dict[str, int]
    by_work_order: Dict[int, int]
    productivity: Optional[float]


# Quality schemas
class ReviewScores(BaseModel):
    quality_score: float = Field(..., ge=0, le=10)
    communication_score: float = Field(..., ge=0, le=10)
    technical_accuracy_score: float = Field(..., ge=0, le=10)
    timeliness_score: float = Field(..., ge=0, le=10)
    citizen_satisfaction_score: float = Field(..., ge=0, le=10)


class ReviewCreate(ReviewScores):
    improvement_suggestions: Optional[str] = None
    follow_up_requested: bool = False


class ReviewUpdate(ReviewScores):
    follow_up_requested: Optional[bool] = None


class ReviewResponse(ReviewScores):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    reviewer_id: str
    overall_score: float
    review_status: ReviewStatus
    follow_up_requested: bool
    follow_up_required: bool
    improvement_suggestions: Optional[str]
    created_at: datetime
    updated_at: datetime


# Goal schemas
class GoalCreate(BaseModel):
    user_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    unit: str = "count"
    target_value: float = Field(..., ge=0)
    current_value: float = 0.0
    due_date: datetime


class GoalProgress(BaseModel):
    latest_value: float


class GoalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    supervisor_id: str
    title: str
    description: Optional[str]
    unit: str
    target_value: float
    current_value: float
    due_date: datetime
    status: GoalStatus
    created_at: datetime
    updated_at: datetime


class RollupResponse(BaseModel):
    """Aggregates for one staff member in one period."""
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    period_label: str
    completed_count: int
    avg_handling_hours: Optional[float]
    avg_quality_score: Optional[float]
    sla_compliance_rate: Optional[float]
    reassignment_count: int


# Error response
class RefusalResponse(BaseModel):
    """Response body when a command is refused."""
    code: str
    message: str
