"""
Platform-wide exception hierarchy.

Services raise these; the application factory registers one handler per
type so every blueprint gets the same HTTP status and JSON shape.

Usage:
    from agencyops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist or is outside the caller's scope.

    Used for BOTH genuinely missing records AND records the caller may not
    see. A 403 would confirm the record exists; a 404 does not.

    Args:
        resource: Human-readable entity name (e.g. "Task", "ClientRequest").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
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
    """Raised when input fails business-rule validation in the service layer.

    The message is user-correctable and surfaced verbatim. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(ValidationError):
    """Raised when a target status is not reachable from the current status."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        self.entity = entity
        self.current_status = current
        self.target_status = target
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            details={"status": current, "target_status": target},
        )


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class AuthorizationError(Exception):
    """Raised when the caller's role gate fails.

    The public message never says which gate failed; ``reason`` is for logs only.
    Maps to HTTP 403.
    """

    public_message = "Not permitted"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(self.public_message)


class StaleStateError(Exception):
    """Raised when a compare-and-set finds the record no longer in the expected state.

    Covers double submission of the same transition and two actors racing on
    one record. Maps to HTTP 409; the client should re-fetch and retry.
    """

    def __init__(self, entity: str, entity_id: int | str, expected: str | None = None,
                 actual: str | None = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        msg = f"{entity} {entity_id} was modified concurrently"
        if actual is not None:
            msg = f"{entity} {entity_id} is already '{actual}'"
        super().__init__(msg + "; reload and try again")


class TokenError(Exception):
    """Base class for activation-token lifecycle failures."""

    message = "Activation token error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class TokenInvalidError(TokenError):
    """No activation token matches. Maps to HTTP 404."""

    message = "Activation link is invalid"


class TokenExpiredError(TokenError):
    """Activation token exists but has expired. Maps to HTTP 410."""

    message = "Activation link has expired; ask for a new one"


class TokenAlreadyUsedError(TokenError):
    """Activation token was already consumed or superseded. Maps to HTTP 409."""

    message = "Activation link was already used; ask for a new one"


class DependencyFailure(Exception):
    """Raised when the blob store, notifier or crypto backend is unavailable.

    Maps to HTTP 503.

    Args:
        dependency: Short name of the failing collaborator ("vault", "blob_store", …).
    """

    def __init__(self, dependency: str, message: str | None = None) -> None:
        self.dependency = dependency
        super().__init__(message or f"{dependency} is unavailable; try again later")
