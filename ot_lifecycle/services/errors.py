"""
Typed refusals raised by the lifecycle services.

A refusal is the system working correctly: every one is reported to the
caller synchronously and none is retried.
"""
from typing import Any, Dict, List, Optional


class WorkOrderError(Exception):
    """Base class. `kind` is the stable code callers switch on."""
    kind = "ERROR"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class WorkOrderValidationError(WorkOrderError):
    """Malformed or missing input. Recoverable by re-prompting the user."""
    kind = "VALIDATION"

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None, **details: Any):
        self.errors = errors or []
        super().__init__(message, errors=self.errors, **details)


class InvalidStateError(WorkOrderError):
    """The current status does not permit the transition."""
    kind = "INVALID_STATE"

    def __init__(self, message: str, current_status: Optional[str] = None, **details: Any):
        self.current_status = current_status
        super().__init__(message, current_status=current_status, **details)


class NotAssignedError(InvalidStateError):
    kind = "NOT_ASSIGNED"


class ReturnToProductionRequiredError(InvalidStateError):
    """
    Close refused because the equipment has not been confirmed back in production.

    `blockers` tells the caller which screen to send the user to: an open
    downtime log has to be closed, the confirmation flag has to be set, or both.
    """
    kind = "RETURN_TO_PRODUCTION_REQUIRED"

    def __init__(self, message: str, blockers: List[str], open_downtime_log_id: Optional[int] = None, **details: Any):
        self.blockers = blockers
        self.open_downtime_log_id = open_downtime_log_id
        super().__init__(message, blockers=blockers, open_downtime_log_id=open_downtime_log_id, **details)


class TransitionConflictError(InvalidStateError):
    """Another actor changed the work order between our read and our write."""
    kind = "CONFLICT"


class NotFoundError(WorkOrderError):
    """Unknown id, or an id outside the caller's company."""
    kind = "NOT_FOUND"


class ForbiddenError(WorkOrderError):
    """The actor lacks the capability the operation needs."""
    kind = "FORBIDDEN"
