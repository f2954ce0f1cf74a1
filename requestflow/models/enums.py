"""Enums for the request lifecycle engine - valid values for states, roles and categories."""
from enum import Enum


class RequestStatus(str, Enum):
    """Lifecycle of a service request from intake to closure."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    TRIAGED = "TRIAGED"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"
    CLOSED = "CLOSED"
    CANCELLED = "CANCELLED"


# closed_at is set exactly while a request sits in one of these
TERMINAL_STATUSES = frozenset({
    RequestStatus.RESOLVED,
    RequestStatus.CLOSED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class Role(str, Enum):
    """Roles supplied by the identity provider."""
    CITIZEN = "CITIZEN"
    CLERK = "CLERK"
    FIELD_AGENT = "FIELD_AGENT"
    SUPERVISOR = "SUPERVISOR"


class WorkOrderStatus(str, Enum):
    """Field execution states. Only moves forward."""
    ASSIGNED = "ASSIGNED"
    EN_ROUTE = "EN_ROUTE"
    ON_SITE = "ON_SITE"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class WorkOrderPriority(str, Enum):
    EMERGENCY = "EMERGENCY"
    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"


class TimeType(str, Enum):
    """Kinds of time an agent can log against a work order."""
    TRAVEL = "TRAVEL"
    SETUP = "SETUP"
    WORK = "WORK"
    DOCUMENTATION = "DOCUMENTATION"
    BREAK = "BREAK"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class GoalStatus(str, Enum):
    """ACHIEVED and MISSED are computed by goal evaluation, never set by a client."""
    ACTIVE = "ACTIVE"
    ACHIEVED = "ACHIEVED"
    MISSED = "MISSED"
    CANCELLED = "CANCELLED"
