"""
Service-layer exception hierarchy.

Services raise these types; blueprints register one handler per type and
get consistent HTTP status codes everywhere.

Usage:
    from testhub.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Suite", resource_id=42)
    raise ValidationError("A failure reason is required", details={"failure_reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist for the current user.

    Used for BOTH genuinely missing records AND rows owned by another user,
    so that a 404 never confirms that someone else's record exists.

    Args:
        resource: Human-readable model/entity name (e.g. "Suite", "TestExecution").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails a business rule in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a rule, e.g. an invalid state transition,
    a missing failure reason or a disallowed file type.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StorageError(Exception):
    """Raised when the object store rejects or fails an operation.

    Maps to HTTP 502.
    """


class IntegrationError(Exception):
    """Raised when an external issue tracker cannot be reached or refuses a call.

    Maps to HTTP 502.
    """


class PersistenceError(Exception):
    """Raised when a multi-row write had to be rolled back.

    The session is rolled back before this is raised, so prior state is intact.
    Maps to HTTP 500.
    """
