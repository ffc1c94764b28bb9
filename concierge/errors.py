"""Exception hierarchy for the orchestration layer.

Low-level clients never raise these past their own boundary; they resolve to
tagged results instead. Route handlers translate them into HTTP responses.
"""

from typing import Optional

from fastapi.exceptions import RequestValidationError


class ConciergeError(Exception):
    """Base class for application errors."""


class NotFoundError(ConciergeError):
    """A service request, provider or cached call does not exist."""


class InvalidTransitionError(ConciergeError):
    """A status change that the lifecycle does not allow."""

    def __init__(self, request_id: str, current: str, target: str):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(f"Request {request_id}: cannot move from {current} to {target}")


class VendorError(ConciergeError):
    """An outbound call to a third-party API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, transient: bool = False):
        self.status_code = status_code
        self.transient = transient
        super().__init__(message)


class WorkflowEngineUnavailableError(ConciergeError):
    """Workflow engine delegation is required but the engine is unhealthy."""


class PersistenceError(ConciergeError):
    """A database write during reconciliation failed."""


def invalid_field(field: str, message: str) -> RequestValidationError:
    """A 422 for a request field, in the same shape as body validation errors."""
    return RequestValidationError([{"loc": ("body", *field.split(".")), "msg": message, "type": "value_error"}])
