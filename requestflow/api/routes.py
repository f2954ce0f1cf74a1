"""API routes for the service request lifecycle."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from requestflow.api.schemas import (
    AssignCommand,
    AssignmentResponse,
    AttachmentCreate,
    BreachStatus,
    CheckInCommand,
    CheckOutCommand,
    GoalCreate,
    GoalProgress,
    GoalResponse,
    RefusalResponse,
    RequestCreate,
    RequestResponse,
    ReviewCreate,
    ReviewScores,
    ReviewResponse,
    ReviewUpdate,
    RollupResponse,
    SegmentEnd,
    SegmentStart,
    TimeEntryResponse,
    TimeSummary,
    TriageCommand,
    VersionedCommand,
    WorkOrderCancel,
    WorkOrderResponse,
)
from requestflow.database import SessionLocal, get_db
from requestflow.models.enums import RequestStatus, Role
from requestflow.services.engine import RequestEngine
from requestflow.services.errors import (
    AlreadyTerminal,
    ConcurrencyConflict,
    EngineError,
    Forbidden,
    InvalidTransition,
    NotFound,
    OpenSegmentConflict,
    StorageUnavailable,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.notifications import LoggingSink, NotificationEmitter
from requestflow.services.quality import Period, RollupRefresher

router = APIRouter()

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    Forbidden: status.HTTP_403_FORBIDDEN,
    ValidationFailed: 422,
    InvalidTransition: status.HTTP_409_CONFLICT,
    AlreadyTerminal: status.HTTP_409_CONFLICT,
    ConcurrencyConflict: status.HTTP_409_CONFLICT,
    OpenSegmentConflict: status.HTTP_409_CONFLICT,
    StorageUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}

REFUSALS = {
    403: {"model": RefusalResponse, "description": "Refusal - role may not perform this command"},
    409: {"model": RefusalResponse, "description": "Refusal - invalid transition, terminal state or stale version"},
}

_emitter = NotificationEmitter([LoggingSink(), RollupRefresher(SessionLocal)])


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Render an engine refusal or failure with its structured context."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


def get_emitter() -> NotificationEmitter:
    return _emitter


def get_engine(db: Session = Depends(get_db), emitter: NotificationEmitter = Depends(get_emitter)) -> RequestEngine:
    return RequestEngine(db, emitter=emitter)


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: Role = Header(...),
    x_department_id: Optional[str] = Header(None),
) -> Actor:
    """Identity is authenticated upstream; the headers are trusted as given."""
    return Actor(actor_id=x_actor_id, role=x_actor_role, department_id=x_department_id)


# Service request endpoints
@router.post("/requests", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
def create_request(
    data: RequestCreate,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Open a service request in DRAFT, or SUBMITTED when submit is true."""
    return engine.create_request(
        actor,
        title=data.title,
        priority=data.priority,
        category=data.category,
        description=data.description,
        department_id=data.department_id,
        submit=data.submit,
    )


@router.get("/requests/breached", response_model=List[RequestResponse])
def list_breached(department_id: Optional[str] = None, engine: RequestEngine = Depends(get_engine)):
    """Open requests past their SLA deadline. Computed on read."""
    return engine.list_breached(department_id)


@router.get("/requests/{request_id}", response_model=RequestResponse)
def get_request(request_id: int, engine: RequestEngine = Depends(get_engine)):
    return engine.get_request(request_id)


@router.get("/requests/{request_id}/transitions", response_model=List[RequestStatus])
def available_transitions(
    request_id: int,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Statuses the acting user could move the request to right now."""
    return engine.available_transitions(request_id, actor)


@router.get("/requests/{request_id}/breached", response_model=BreachStatus)
def is_breached(request_id: int, engine: RequestEngine = Depends(get_engine)):
    return BreachStatus(request_id=request_id, breached=engine.is_breached(request_id))


@router.post("/requests/{request_id}/submit", response_model=RequestResponse, responses=REFUSALS)
def submit_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.submit(request_id, actor, command.expected_version)


@router.post("/requests/{request_id}/triage", response_model=RequestResponse, responses=REFUSALS)
def triage_request(
    request_id: int,
    command: TriageCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Accept a submitted request. Starts the SLA clock."""
    return engine.triage(
        request_id, actor, command.expected_version,
        priority=command.priority, department_id=command.department_id,
    )


@router.post("/requests/{request_id}/send-to-review", response_model=RequestResponse, responses=REFUSALS)
def send_to_review(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.send_to_review(request_id, actor, command.expected_version)


@router.post("/requests/{request_id}/approve", response_model=RequestResponse, responses=REFUSALS)
def approve_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.approve(request_id, actor, command.expected_version)


@router.post("/requests/{request_id}/start", response_model=RequestResponse, responses=REFUSALS)
def start_work(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.start_work(request_id, actor, command.expected_version)


@router.post("/requests/{request_id}/resolve", response_model=RequestResponse, responses=REFUSALS)
def resolve_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.resolve(request_id, actor, command.expected_version, command.reason)


@router.post("/requests/{request_id}/reject", response_model=RequestResponse, responses=REFUSALS)
def reject_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Rejection requires a reason."""
    return engine.reject(request_id, actor, command.expected_version, command.reason)


@router.post("/requests/{request_id}/close", response_model=RequestResponse, responses=REFUSALS)
def close_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.close(request_id, actor, command.expected_version)


@router.post("/requests/{request_id}/cancel", response_model=RequestResponse, responses=REFUSALS)
def cancel_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.cancel(request_id, actor, command.expected_version, command.reason)


@router.post("/requests/{request_id}/reopen", response_model=RequestResponse, responses=REFUSALS)
def reopen_request(
    request_id: int,
    command: VersionedCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """
    Citizen reopen of a resolved request.

    WILL REFUSE once the reopen window has passed.
    """
    return engine.reopen(request_id, actor, command.expected_version, command.reason)


@router.post("/requests/{request_id}/attachments", response_model=RequestResponse)
def add_attachment(
    request_id: int,
    data: AttachmentCreate,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.attach(request_id, actor, data.expected_version, data.blob_ref)


# Assignment endpoints
@router.post(
    "/requests/{request_id}/assignments",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def assign_request(
    request_id: int,
    command: AssignCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """
    Assign the request. Supervisors only.

    Assigning a field agent also opens a work order for them.
    """
    return engine.assign(
        request_id,
        command.assignee_id,
        actor,
        command.expected_version,
        reason=command.reason,
        workload_score=command.workload_score,
        assignee_role=command.assignee_role,
        assignee_department_id=command.assignee_department_id,
        work_order_priority=command.work_order_priority,
    )


@router.post(
    "/requests/{request_id}/reassign",
    response_model=AssignmentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def reassign_request(
    request_id: int,
    command: AssignCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Move the request to another assignee. Reason is required."""
    return engine.reassign(
        request_id,
        command.assignee_id,
        actor,
        command.expected_version,
        reason=command.reason,
        workload_score=command.workload_score,
        assignee_role=command.assignee_role,
        assignee_department_id=command.assignee_department_id,
        work_order_priority=command.work_order_priority,
    )


@router.get("/requests/{request_id}/assignments", response_model=List[AssignmentResponse])
def assignment_history(request_id: int, engine: RequestEngine = Depends(get_engine)):
    return engine.assignment_history(request_id)


@router.get("/requests/{request_id}/assignments/active", response_model=AssignmentResponse)
def active_assignment(request_id: int, engine: RequestEngine = Depends(get_engine)):
    record = engine.list_active_assignment(request_id)
    if not record:
        raise HTTPException(status_code=404, detail="Request has no active assignment")
    return record


# Work order endpoints
@router.get("/work-orders/{work_order_id}", response_model=WorkOrderResponse)
def get_work_order(work_order_id: int, engine: RequestEngine = Depends(get_engine)):
    return engine.get_work_order(work_order_id)


@router.post("/work-orders/{work_order_id}/depart", response_model=WorkOrderResponse, responses=REFUSALS)
def depart(work_order_id: int, actor: Actor = Depends(get_actor), engine: RequestEngine = Depends(get_engine)):
    return engine.depart(work_order_id, actor)


@router.post("/work-orders/{work_order_id}/check-in", response_model=WorkOrderResponse, responses=REFUSALS)
def check_in(
    work_order_id: int,
    command: CheckInCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.check_in(
        work_order_id, actor, command.gps_lat, command.gps_lng, command.start_immediately
    )


@router.post("/work-orders/{work_order_id}/start", response_model=WorkOrderResponse, responses=REFUSALS)
def start_on_site_work(
    work_order_id: int,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.start_on_site_work(work_order_id, actor)


@router.post("/work-orders/{work_order_id}/check-out", response_model=WorkOrderResponse, responses=REFUSALS)
def check_out(
    work_order_id: int,
    command: CheckOutCommand,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """
    Complete the work order.

    Side effect: resolves the request when this was its last open work order.
    """
    return engine.check_out(
        work_order_id, actor, command.completion_notes, command.follow_up_required
    )


@router.post("/work-orders/{work_order_id}/cancel", response_model=WorkOrderResponse, responses=REFUSALS)
def cancel_work_order(
    work_order_id: int,
    command: WorkOrderCancel,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.cancel_work_order(work_order_id, actor, command.reason)


@router.post(
    "/work-orders/{work_order_id}/time-segments",
    response_model=TimeEntryResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def start_segment(
    work_order_id: int,
    data: SegmentStart,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """WILL REFUSE if the agent already has an open segment."""
    return engine.start_segment(work_order_id, actor, data.time_type, data.notes)


@router.post("/time-segments/{entry_id}/end", response_model=TimeEntryResponse, responses=REFUSALS)
def end_segment(
    entry_id: int,
    data: SegmentEnd,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.end_segment(entry_id, actor, data.notes)


@router.get("/agents/{agent_id}/time-summary", response_model=TimeSummary)
def time_summary(
    agent_id: str,
    start: datetime,
    end: datetime,
    engine: RequestEngine = Depends(get_engine),
):
    return engine.time_summary(agent_id, start, end)


# Quality endpoints
@router.post(
    "/requests/{request_id}/reviews",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
    responses=REFUSALS,
)
def record_review(
    request_id: int,
    data: ReviewCreate,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """Score a closed request. Supervisors only."""
    return engine.record_review(
        request_id,
        actor,
        data.model_dump(include=set(ReviewScores.model_fields)),
        improvement_suggestions=data.improvement_suggestions,
        follow_up_requested=data.follow_up_requested,
    )


@router.put("/reviews/{review_id}", response_model=ReviewResponse, responses=REFUSALS)
def update_review(
    review_id: int,
    data: ReviewUpdate,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    return engine.update_review(
        review_id,
        actor,
        data.model_dump(include=set(ReviewScores.model_fields)),
        follow_up_requested=data.follow_up_requested,
    )


@router.post("/goals", response_model=GoalResponse, status_code=status.HTTP_201_CREATED, responses=REFUSALS)
def set_goal(data: GoalCreate, actor: Actor = Depends(get_actor), engine: RequestEngine = Depends(get_engine)):
    return engine.set_goal(
        actor,
        data.user_id,
        data.title,
        data.target_value,
        data.due_date,
        description=data.description,
        unit=data.unit,
        current_value=data.current_value,
    )


@router.post("/goals/{goal_id}/progress", response_model=GoalResponse, responses=REFUSALS)
def update_goal_progress(
    goal_id: int,
    data: GoalProgress,
    actor: Actor = Depends(get_actor),
    engine: RequestEngine = Depends(get_engine),
):
    """ACHIEVED and MISSED are decided by evaluation, never by the caller."""
    return engine.update_goal_progress(goal_id, actor, data.latest_value)


@router.post("/goals/{goal_id}/cancel", response_model=GoalResponse, responses=REFUSALS)
def cancel_goal(goal_id: int, actor: Actor = Depends(get_actor), engine: RequestEngine = Depends(get_engine)):
    return engine.cancel_goal(goal_id, actor)


@router.get("/staff/{user_id}/performance", response_model=RollupResponse)
def staff_performance(
    user_id: str,
    year: int = Query(..., ge=2000),
    month: Optional[int] = Query(None, ge=1, le=12),
    quarter: Optional[int] = Query(None, ge=1, le=4),
    engine: RequestEngine = Depends(get_engine),
):
    """
    Rollup for a month or a quarter, recomputed from history.
    Exactly one of month or quarter must be given.
    """
    if (month is None) == (quarter is None):
        raise HTTPException(status_code=422, detail="Give exactly one of month or quarter")
    period = Period.month(year, month) if month is not None else Period.quarter(year, quarter)
    return engine.rollup_period(user_id, period)
