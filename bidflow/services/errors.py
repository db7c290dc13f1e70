"""
Workflow error taxonomy.

Every error carries the HTTP status it answers with; the app factory turns
them into the standard ``{success: false, message}`` envelope.
"""
from typing import Any, Dict, List, Optional


class WorkflowError(Exception):
    status_code = 500
    default_message = "Workflow error"

    def __init__(self, message: Optional[str] = None, *, errors: Optional[List[Dict[str, Any]]] = None):
        self.message = message or self.default_message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(WorkflowError):
    status_code = 400
    default_message = "Validation failed"


class NotFound(WorkflowError):
    status_code = 404
    default_message = "Not found"


class NotFoundOrForbidden(NotFound):
    """The caller holds no qualifying relationship; indistinguishable from absence."""


class Forbidden(WorkflowError):
    status_code = 403
    default_message = "Forbidden"


class ForbiddenSelfBid(Forbidden):
    default_message = "You cannot bid on your own listing"


class Conflict(WorkflowError):
    status_code = 409
    default_message = "Conflict"


class DuplicateBid(Conflict):
    status_code = 400


class DuplicateSubmission(Conflict):
    status_code = 400


class InvalidTransition(Conflict):
    def __init__(self, entity: str, from_state: str, to_state: str, message: Optional[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'")


class DependencyFailure(WorkflowError):
    status_code = 500
    default_message = "A dependency failed"
