"""
Review workflow exception hierarchy.

Every service and engine module raises these types; the review blueprint
registers one handler per type and gets consistent HTTP status codes.

Usage:
    from reportflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Report", resource_id="r-42")
    raise ValidationError("comment is required to reject", details={"comment": "required"})
"""


class NotFoundError(Exception):
    """Raised when a report, workflow or step id does not resolve.

    Args:
        resource: Human-readable entity name (e.g. "Report", "ApprovalStep").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | int | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when an action is missing a required parameter or carries a malformed one.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation, shown verbatim to the actor.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when the actor is neither the step's assignee nor an administrator."""

    def __init__(self, user_id: str, action: str, reason: str | None = None) -> None:
        msg = f"User {user_id} is not allowed to '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.user_id = user_id
        self.action = action
        self.reason = reason


class InvalidTransitionError(Exception):
    """Raised when an action targets a step that is not current, or an unknown rollback target."""

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.action = action
        self.current_status = current_status
        self.reason = reason


class WorkflowTerminalError(InvalidTransitionError):
    """Raised on any mutating action against an approved, rejected or cancelled workflow.

    The workflow's final state is immutable; callers should show it instead
    of retrying.
    """

    def __init__(self, workflow_id: str, status: str, action: str) -> None:
        super().__init__(action, status, f"workflow {workflow_id} is already {status}")
        self.workflow_id = workflow_id
        self.status = status


class ConflictError(Exception):
    """Raised when the stored workflow version no longer matches the version the caller read.

    Maps to HTTP 409. The caller must re-read and retry; nothing is merged.

    Args:
        resource: Model name.
        resource_id: Id of the contended row.
        expected_version: Version the caller supplied.
        actual_version: Version found in the store, when known.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"{resource} id={resource_id} was modified concurrently (expected version {expected_version}"
        if actual_version is not None:
            msg += f", found {actual_version}"
        msg += "); reload and retry"
        super().__init__(msg)


WORKFLOW_ERRORS = (
    ValidationError,
    NotFoundError,
    PermissionDenied,
    InvalidTransitionError,
    ConflictError,
)
