"""
Notification emitter - fire-and-forget fan-out of engine events.

Events are emitted only after the transaction that produced them commits.
A failing sink is logged and skipped; it never rolls back or fails a command.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    REQUEST_CREATED = "REQUEST_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    ASSIGNED = "ASSIGNED"
    ATTACHMENT_ADDED = "ATTACHMENT_ADDED"
    WORK_ORDER_UPDATED = "WORK_ORDER_UPDATED"
    REVIEW_RECORDED = "REVIEW_RECORDED"
    GOAL_UPDATED = "GOAL_UPDATED"


@dataclass(frozen=True)
class NotificationEvent:
    """What a sink receives. Consumers must treat redelivery as a no-op."""
    event_type: EventType
    request_id: Optional[int]
    timestamp: datetime
    payload: dict = field(default_factory=dict)


class NotificationSink(Protocol):
    def deliver(self, event: NotificationEvent) -> None:
        ...


class LoggingSink:
    """Default sink: writes every event to the log."""

    def deliver(self, event: NotificationEvent) -> None:
        logger.info(
            "event=%s request=%s payload=%s",
            event.event_type.value, event.request_id, event.payload,
        )


class NotificationEmitter:
    """Delivers events to every registered sink, best effort."""

    def __init__(self, sinks: Optional[Iterable[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else [LoggingSink()]

    def register(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def emit(self, event: NotificationEvent) -> None:
        for sink in self.sinks:
            try:
                sink.deliver(event)
            except Exception:
                logger.exception(
                    "Notification sink %s failed for %s on request %s",
                    type(sink).__name__, event.event_type.value, event.request_id,
                )

    def emit_all(self, events: Iterable[NotificationEvent]) -> None:
        for event in events:
            self.emit(event)
