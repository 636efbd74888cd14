"""
Service-layer exception hierarchy.

Every service raises these types; blueprints register handlers against
them once (``app.blueprints.register_error_handlers``) and get the same
HTTP status codes and error envelope everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Workspace", resource_id=workspace_id)
    raise ValidationError("Comment body is required", details={"body": "empty"})
"""


class NotFoundError(Exception):
    """Raised when a workspace, definition, slide, thread or record is missing.

    Args:
        resource: Human-readable entity name (e.g. "Workspace", "Comment").
        resource_id: The id that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is rejected before any write takes place.

    Covers empty derived identity keys, comment bodies that are empty or
    too long, unknown bucket types, malformed cursors and bad follow-up
    fields. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised when a user mutates a record they do not own. Maps to HTTP 403."""

    def __init__(self, action: str, resource: str, resource_id: str | None = None) -> None:
        self.action = action
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"Not allowed to {action} {resource} id={resource_id}")


class ConflictExhaustedError(Exception):
    """Raised when optimistic retries on a unique value run out.

    The request failed as a whole and nothing was written; the caller may
    safely retry the operation later. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that kept colliding.
        attempts: How many inserts were tried.
    """

    def __init__(self, resource: str, field: str, attempts: int) -> None:
        self.resource = resource
        self.field = field
        self.attempts = attempts
        super().__init__(
            f"Could not allocate a unique {field} for {resource} after {attempts} attempts"
        )


class StoreUnavailableError(Exception):
    """Raised when the database times out or drops the connection.

    Wraps ``sqlalchemy.exc.OperationalError`` so blueprints can answer 503
    with ``retryable: true`` without leaking driver messages.
    """

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Store unavailable during {operation}")
