"""
Fleet error taxonomy.

Every failure the manager surfaces is a FleetError subclass carrying a
stable ``code`` so service front ends can map it into the response
envelope without string matching.
"""

from typing import Optional


class FleetError(Exception):
    """Base class for all fleet manager failures."""

    code = "ERR_FLEET"

    def __init__(self, message: str, *, subject: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.subject = subject

    def to_dict(self):
        return {"code": self.code, "message": self.message, "subject": self.subject}


class NotFound(FleetError):
    code = "ERR_NOT_FOUND"


class TemplateNotFound(FleetError):
    code = "ERR_TEMPLATE_NOT_FOUND"


class InvalidTransition(FleetError):
    """Raised when a (state, event) pair has no edge in the lifecycle table."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, message: str, *, subject: Optional[str] = None,
                 state: Optional[str] = None, event: Optional[str] = None):
        super().__init__(message, subject=subject)
        self.state = state
        self.event = event


class InsufficientCapacity(FleetError):
    code = "ERR_INSUFFICIENT_CAPACITY"


class InvalidPoolSize(FleetError):
    code = "ERR_INVALID_POOL_SIZE"


class PoolExhausted(FleetError):
    code = "ERR_POOL_EXHAUSTED"


class DrainTimeout(FleetError):
    """Drain bound exceeded. Triggers forced escalation, never reaches callers."""

    code = "ERR_DRAIN_TIMEOUT"


class PersistenceFailure(FleetError):
    """Archival write failed. Degraded to a warning on termination."""

    code = "ERR_PERSISTENCE"
