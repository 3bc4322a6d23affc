# ==== WORKFLOW ERROR HIERARCHY ==== #

"""
Exception hierarchy for the approval workflow engine.

Every error raised by the engine derives from ``WorkflowError`` and carries
a stable ``code`` and the HTTP ``status_code`` the API layer maps it to.
``retryable`` tells callers whether repeating the same call can succeed.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""

    code = "WORKFLOW_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Serialize error for API responses and structured logs."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "retryable": self.retryable,
        }


class ValidationError(WorkflowError):
    """Malformed input: bad step graph, unknown enum value, bad payload."""

    code = "VALIDATION_ERROR"
    status_code = 400


class PermissionDenied(WorkflowError):
    """Actor is not allowed to perform the action."""

    code = "PERMISSION_DENIED"
    status_code = 403


class RequestNotFound(WorkflowError):
    """No request exists with the given id."""

    code = "REQUEST_NOT_FOUND"
    status_code = 404

    def __init__(self, request_id: str):
        super().__init__(f"Workflow request {request_id} not found", request_id=request_id)
        self.request_id = request_id


class DelegateSettingNotFound(WorkflowError):
    """User has no proxy approver in force."""

    code = "DELEGATE_SETTING_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"No active proxy approver for {user_id}", user_id=user_id)
        self.user_id = user_id


class InvalidStepState(WorkflowError):
    """
    Action does not fit the current request or step state.

    ``request`` carries the current (unchanged) request so callers can
    show it. ``duplicate`` is set when the very same action was already
    applied, which the HTTP layer answers with 200 instead of 409.
    """

    code = "INVALID_STEP_STATE"
    status_code = 409

    def __init__(self, message: str, request: Optional[Any] = None, duplicate: bool = False):
        super().__init__(message, duplicate=duplicate)
        self.request = request
        self.duplicate = duplicate


class VersionConflict(WorkflowError):
    """Compare-and-swap lost against a concurrent writer."""

    code = "VERSION_CONFLICT"
    status_code = 409
    retryable = True

    def __init__(self, request_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Request {request_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            request_id=request_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.request_id = request_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PersistenceError(WorkflowError):
    """Request store failed or timed out; nothing was committed."""

    code = "PERSISTENCE_ERROR"
    status_code = 503
    retryable = True


class NotificationError(WorkflowError):
    """Notification delivery failed. Logged only, never surfaced to actors."""

    code = "NOTIFICATION_ERROR"
    status_code = 502
    retryable = True
