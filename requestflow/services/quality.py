"""
Quality & performance aggregator.

Scores closed requests, tracks supervisor-set goals, and rolls both up per
staff member per period. Every aggregate is recomputed from stored history,
so running it twice with no new data gives the same answer.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from statistics import mean
from typing import Callable, Mapping, Optional, Sequence, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from requestflow.clock import Clock, to_naive_utc, utcnow
from requestflow.config import Settings, get_settings
from requestflow.models.audit import AuditEventType
from requestflow.models.domain import (
    SUB_SCORE_FIELDS,
    AssignmentRecord,
    PerformanceGoal,
    QualityReview,
    ServiceRequest,
    StaffPerformance,
)
from requestflow.models.enums import (
    TERMINAL_STATUSES,
    GoalStatus,
    RequestStatus,
    ReviewStatus,
    Role,
)
from requestflow.services.errors import (
    AlreadyTerminal,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from requestflow.services.identity import Actor
from requestflow.services.notifications import EventType, NotificationEvent
from requestflow.services.request_store import RequestStore
from requestflow.services.state_machine import is_terminal

logger = logging.getLogger(__name__)

Scores = Union[Sequence[float], Mapping[str, float]]

COMPLETED_STATUSES = frozenset({RequestStatus.RESOLVED, RequestStatus.CLOSED})


@dataclass(frozen=True)
class Period:
    """Half-open [start, end) reporting window with a stable label."""
    start: datetime
    end: datetime
    label: str

    @classmethod
    def month(cls, year: int, month: int) -> "Period":
        start = datetime(year, month, 1)
        end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
        return cls(start, end, f"{year:04d}-{month:02d}")

    @classmethod
    def quarter(cls, year: int, quarter: int) -> "Period":
        if quarter not in (1, 2, 3, 4):
            raise ValidationFailed("Quarter must be 1-4", field="quarter")
        first_month = 3 * (quarter - 1) + 1
        start = datetime(year, first_month, 1)
        end = datetime(year + 1, 1, 1) if quarter == 4 else datetime(year, first_month + 3, 1)
        return cls(start, end, f"{year:04d}-Q{quarter}")

    @classmethod
    def month_of(cls, moment: datetime) -> "Period":
        return cls.month(moment.year, moment.month)

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment < self.end


@dataclass(frozen=True)
class PerformanceRollup:
    """Aggregates for one staff member in one period."""
    user_id: str
    period_label: str
    completed_count: int
    avg_handling_hours: Optional[float]
    avg_quality_score: Optional[float]
    sla_compliance_rate: Optional[float]
    reassignment_count: int


def overall_score(scores: Sequence[float]) -> float:
    """Arithmetic mean of the five sub-scores."""
    return sum(scores) / len(scores)


def compute_goal_status(
    status: GoalStatus,
    target_value: float,
    current_value: float,
    due_date: datetime,
    now: datetime,
) -> GoalStatus:
    """
    Deterministic goal status.

    - CANCELLED stays CANCELLED
    - ACHIEVED iff current_value >= target_value
    - MISSED iff the due date has passed with the target unmet
    - otherwise ACTIVE
    """
    if status == GoalStatus.CANCELLED:
        return GoalStatus.CANCELLED
    if current_value >= target_value:
        return GoalStatus.ACHIEVED
    if now > due_date:
        return GoalStatus.MISSED
    return GoalStatus.ACTIVE


def evaluate_goal(goal: PerformanceGoal, latest_value: float, now: datetime) -> GoalStatus:
    """Record the latest value and recompute status. target_value is never touched."""
    goal.current_value = latest_value
    goal.status = compute_goal_status(goal.status, goal.target_value, latest_value, goal.due_date, now)
    goal.updated_at = now
    return goal.status


def _round(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 2)


class QualityAggregator:
    """Quality reviews, performance goals, and per-period staff rollups."""

    def __init__(self, store: RequestStore, settings: Optional[Settings] = None):
        self.store = store
        self.db = store.db
        self.settings = settings or get_settings()

    # Reviews

    def record_review(
        self,
        request: ServiceRequest,
        scores: Scores,
        reviewer: Actor,
        improvement_suggestions: Optional[str] = None,
        follow_up_requested: bool = False,
    ) -> QualityReview:
        """
        Score a terminal request.

        follow_up_required is set when the reviewer asks for it or when the
        overall score falls below the configured threshold.
        """
        self._require_supervisor(reviewer, "review requests")
        if not is_terminal(request.status):
            raise InvalidTransition(
                f"REFUSAL: Request {request.code} is {request.status.value}; only closed requests can be reviewed.",
                request_id=request.id,
                status=request.status.value,
            )

        values = self._normalize_scores(scores)
        code = request.code
        if self._existing_review(request.id, reviewer.actor_id) is not None:
            raise ValidationFailed(
                f"Reviewer {reviewer.actor_id} already reviewed request {code}",
                request_id=request.id,
            )

        review = QualityReview(
            request_id=request.id,
            reviewer_id=reviewer.actor_id,
            review_status=ReviewStatus.COMPLETED,
            improvement_suggestions=improvement_suggestions,
            created_at=self.store.clock(),
            updated_at=self.store.clock(),
            **dict(zip(SUB_SCORE_FIELDS, values)),
        )
        review.follow_up_requested = follow_up_requested
        review.follow_up_required = follow_up_requested or self._below_threshold(values)
        self.db.add(review)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ValidationFailed(
                f"Reviewer {reviewer.actor_id} already reviewed request {code}",
                request_id=request.id,
            ) from exc

        self.store.audit(
            AuditEventType.REVIEW_RECORDED,
            "QualityReview",
            review.id,
            reviewer.actor_id,
            {
                "request_id": request.id,
                "overall_score": review.overall_score,
                "follow_up_required": review.follow_up_required,
            },
        )
        return review

    def update_review(
        self,
        review_id: int,
        scores: Scores,
        reviewer: Actor,
        follow_up_requested: Optional[bool] = None,
    ) -> QualityReview:
        """
        Replace the sub-scores; overall score and follow-up are recomputed.

        An explicit follow-up request survives the edit unless the reviewer
        withdraws it by passing follow_up_requested=False.
        """
        self._require_supervisor(reviewer, "edit reviews")
        review = self.db.get(QualityReview, review_id)
        if review is None:
            raise NotFound(f"Quality review {review_id} not found", review_id=review_id)
        if review.review_status == ReviewStatus.ARCHIVED:
            raise AlreadyTerminal(f"REFUSAL: Review {review_id} is archived.", review_id=review_id)

        values = self._normalize_scores(scores)
        for name, value in zip(SUB_SCORE_FIELDS, values):
            setattr(review, name, value)
        if follow_up_requested is not None:
            review.follow_up_requested = follow_up_requested
        review.follow_up_required = bool(review.follow_up_requested) or self._below_threshold(values)
        review.updated_at = self.store.clock()

        self.store.audit(
            AuditEventType.REVIEW_UPDATED,
            "QualityReview",
            review.id,
            reviewer.actor_id,
            {"request_id": review.request_id, "overall_score": review.overall_score},
        )
        return review

    # Goals

    def set_goal(
        self,
        supervisor: Actor,
        user_id: str,
        title: str,
        target_value: float,
        due_date: datetime,
        description: Optional[str] = None,
        unit: str = "count",
        current_value: float = 0.0,
    ) -> PerformanceGoal:
        """Create an ACTIVE goal; its status is evaluated immediately."""
        self._require_supervisor(supervisor, "set goals")
        if not title or not title.strip():
            raise ValidationFailed("A goal needs a title", field="title")
        if target_value is None or target_value < 0:
            raise ValidationFailed("target_value must be a non-negative number", field="target_value")
        if due_date is None:
            raise ValidationFailed("A goal needs a due date", field="due_date")
        due_date = to_naive_utc(due_date)

        now = self.store.clock()
        goal = PerformanceGoal(
            user_id=user_id,
            supervisor_id=supervisor.actor_id,
            title=title.strip(),
            description=description,
            unit=unit,
            target_value=target_value,
            current_value=current_value,
            due_date=due_date,
            status=GoalStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        evaluate_goal(goal, current_value, now)
        self.db.add(goal)
        self.db.flush()

        self.store.audit(
            AuditEventType.GOAL_SET,
            "PerformanceGoal",
            goal.id,
            supervisor.actor_id,
            {"user_id": user_id, "target_value": target_value, "due_date": due_date.isoformat()},
        )
        return goal

    def get_goal(self, goal_id: int) -> PerformanceGoal:
        goal = self.db.get(PerformanceGoal, goal_id)
        if goal is None:
            raise NotFound(f"Performance goal {goal_id} not found", goal_id=goal_id)
        return goal

    def update_goal_progress(self, goal_id: int, latest_value: float, actor: Actor) -> PerformanceGoal:
        """Store progress and let evaluation decide ACHIEVED / MISSED."""
        self._require_supervisor(actor, "update goals")
        goal = self.get_goal(goal_id)
        if goal.status == GoalStatus.CANCELLED:
            raise AlreadyTerminal(f"REFUSAL: Goal {goal_id} is cancelled.", goal_id=goal_id)

        previous = goal.status
        evaluate_goal(goal, latest_value, self.store.clock())
        self.store.audit(
            AuditEventType.GOAL_EVALUATED,
            "PerformanceGoal",
            goal.id,
            actor.actor_id,
            {"from": previous.value, "to": goal.status.value, "current_value": latest_value},
        )
        return goal

    def cancel_goal(self, goal_id: int, actor: Actor) -> PerformanceGoal:
        """CANCELLED is the only status a client may set directly."""
        self._require_supervisor(actor, "cancel goals")
        goal = self.get_goal(goal_id)
        if goal.status == GoalStatus.CANCELLED:
            raise AlreadyTerminal(f"REFUSAL: Goal {goal_id} is already cancelled.", goal_id=goal_id)
        previous = goal.status
        goal.status = GoalStatus.CANCELLED
        goal.updated_at = self.store.clock()
        self.store.audit(
            AuditEventType.GOAL_EVALUATED,
            "PerformanceGoal",
            goal.id,
            actor.actor_id,
            {"from": previous.value, "to": GoalStatus.CANCELLED.value},
        )
        return goal

    # Rollups

    def rollup_period(self, user_id: str, period: Period) -> PerformanceRollup:
        """
        Recompute a staff member's aggregates for a period from stored history.

        Pure read: attributes terminal requests whose closed_at falls in the
        period to the staff member they were assigned to when they closed.
        """
        closed = self.db.query(ServiceRequest).filter(
            ServiceRequest.assigned_to == user_id,
            ServiceRequest.status.in_(list(TERMINAL_STATUSES)),
            ServiceRequest.closed_at >= period.start,
            ServiceRequest.closed_at < period.end,
        ).order_by(ServiceRequest.id).all()

        completed = [r for r in closed if r.status in COMPLETED_STATUSES]

        handling_hours = [
            (r.closed_at - r.created_at).total_seconds() / 3600 for r in completed
        ]
        on_time = [r for r in completed if r.sla_due_at is None or r.closed_at <= r.sla_due_at]

        scores = []
        if closed:
            reviews = self.db.query(QualityReview).filter(
                QualityReview.request_id.in_([r.id for r in closed]),
                QualityReview.review_status != ReviewStatus.ARCHIVED,
            ).order_by(QualityReview.id).all()
            scores = [review.overall_score for review in reviews]

        reassignment_count = self.db.query(AssignmentRecord).filter(
            AssignmentRecord.assigned_from == user_id,
            AssignmentRecord.created_at >= period.start,
            AssignmentRecord.created_at < period.end,
        ).count()

        return PerformanceRollup(
            user_id=user_id,
            period_label=period.label,
            completed_count=len(completed),
            avg_handling_hours=_round(mean(handling_hours)) if handling_hours else None,
            avg_quality_score=_round(mean(scores)) if scores else None,
            sla_compliance_rate=_round(100.0 * len(on_time) / len(completed)) if completed else None,
            reassignment_count=reassignment_count,
        )

    def refresh_rollup(self, user_id: str, period: Period) -> StaffPerformance:
        """Persist rollup_period() into StaffPerformance (upsert on user + period)."""
        rollup = self.rollup_period(user_id, period)
        row = self.db.query(StaffPerformance).filter(
            StaffPerformance.user_id == user_id,
            StaffPerformance.period_label == period.label,
        ).first()
        if row is None:
            row = StaffPerformance(user_id=user_id, period_label=period.label)
            self.db.add(row)

        row.period_start = period.start
        row.period_end = period.end
        for key, value in asdict(rollup).items():
            if key not in ("user_id", "period_label"):
                setattr(row, key, value)
        return row

    # Internals

    def _require_supervisor(self, actor: Actor, action: str) -> None:
        if actor.role != Role.SUPERVISOR:
            raise Forbidden(
                f"REFUSAL: Only a SUPERVISOR may {action}.",
                role=actor.role.value,
            )

    def _normalize_scores(self, scores: Scores) -> list:
        if isinstance(scores, Mapping):
            missing = [name for name in SUB_SCORE_FIELDS if name not in scores]
            if missing:
                raise ValidationFailed(f"Missing sub-scores: {', '.join(missing)}", missing=missing)
            values = [scores[name] for name in SUB_SCORE_FIELDS]
        else:
            values = list(scores)

        if len(values) != len(SUB_SCORE_FIELDS):
            raise ValidationFailed(
                f"Expected {len(SUB_SCORE_FIELDS)} sub-scores, got {len(values)}",
                field="scores",
            )
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 10:
                raise ValidationFailed(f"Sub-scores must be numbers from 0 to 10, got {value!r}", field="scores")
        return [float(v) for v in values]

    def _below_threshold(self, values: Sequence[float]) -> bool:
        return overall_score(values) < self.settings.review_follow_up_threshold

    def _existing_review(self, request_id: int, reviewer_id: str) -> Optional[QualityReview]:
        return self.db.query(QualityReview).filter(
            QualityReview.request_id == request_id,
            QualityReview.reviewer_id == reviewer_id,
        ).first()


class RollupRefresher:
    """
    Notification sink that keeps StaffPerformance current.

    Runs outside the command's transaction with its own session, so a failure
    here never touches the command that emitted the event.
    """

    REFRESH_ON = frozenset({EventType.STATUS_CHANGED, EventType.REVIEW_RECORDED})

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    def deliver(self, event: NotificationEvent) -> None:
        if event.event_type not in self.REFRESH_ON:
            return
        if event.event_type == EventType.STATUS_CHANGED and event.payload.get("to") not in {
            s.value for s in TERMINAL_STATUSES
        }:
            return
        user_id = event.payload.get("assigned_to")
        if not user_id:
            return

        db = self.session_factory()
        try:
            store = RequestStore(db, self.clock)
            with store.unit_of_work():
                closed_at = event.payload.get("closed_at")
                moment = datetime.fromisoformat(closed_at) if closed_at else event.timestamp
                period = Period.month_of(moment)
                QualityAggregator(store, self.settings).refresh_rollup(user_id, period)
        finally:
            db.close()
