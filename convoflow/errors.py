"""
Exception hierarchy of the flow engine.

Services raise these; the HTTP layer maps them to status codes in
``convoflow.main`` and the session drive loop decides which of them pause a
session.
"""

from typing import Any, Dict, List, Optional


class FlowEngineError(Exception):
    code = "INTERNAL"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []


class FlowValidationError(FlowEngineError):
    """Malformed flow graph. Raised before anything is written."""

    code = "VALIDATION"


class ConflictError(FlowEngineError):
    """A uniqueness invariant would be violated; existing rows are left untouched."""

    code = "CONFLICT"


class NotFoundError(FlowEngineError):
    code = "NOT_FOUND"


class FlowNotFoundError(NotFoundError):
    pass


class AssignmentNotFoundError(NotFoundError):
    pass


class SessionNotFoundError(NotFoundError):
    pass


class ExpiredSessionError(FlowEngineError):
    """The session is in a terminal status and can no longer be driven."""

    code = "EXPIRED"


class SessionBusyError(FlowEngineError):
    """Another worker holds the session's execution lease."""

    code = "BUSY"


class TransientExternalError(FlowEngineError):
    """Network failure or timeout talking to something outside the engine. Retryable."""

    code = "TRANSIENT"


class FatalNodeError(FlowEngineError):
    """A step failed for good. The step is recorded as failed and the session pauses."""

    code = "NODE_FAILED"

    def __init__(self, message: str, node_id: Optional[str] = None, attempts: int = 1, **kwargs):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.attempts = attempts


class FlowError(FatalNodeError):
    """No outgoing edge could be taken from a branching node."""

    code = "NO_BRANCH"
