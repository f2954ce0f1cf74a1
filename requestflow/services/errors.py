"""
Typed errors returned by every command.

A refusal is NOT a crash - it's the engine enforcing its rules. Each error
carries a message plus the structured context the caller needs to render it.
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.context}


class TransitionRefused(EngineError):
    """A business-rule refusal. These are audited."""


class InvalidTransition(TransitionRefused):
    """The (from, to) edge is not in the transition table."""
    code = "INVALID_TRANSITION"


class Forbidden(TransitionRefused):
    """The acting role lacks permission for the edge or command."""
    code = "FORBIDDEN"


class AlreadyTerminal(TransitionRefused):
    """The entity is in a terminal state that does not allow this move."""
    code = "ALREADY_TERMINAL"


class ConcurrencyConflict(EngineError):
    """Stale expected version or a lost race. Re-read and retry."""
    code = "CONCURRENCY_CONFLICT"


class OpenSegmentConflict(EngineError):
    """The agent already has an open time-tracking segment."""
    code = "OPEN_SEGMENT_CONFLICT"


class NotFound(EngineError):
    code = "NOT_FOUND"


class ValidationFailed(EngineError):
    """Malformed command payload."""
    code = "VALIDATION_FAILED"


class StorageUnavailable(EngineError):
    """The storage layer aborted the transaction. Safe to retry."""
    code = "STORAGE_UNAVAILABLE"
