"""
Platform-wide exception hierarchy.

Services raise these types; the application factory registers one handler
per type so every blueprint gets the same HTTP status codes and error
envelope.

Usage:
    from signflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Document", resource_id=42)
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Document", "SignatureRecord").
        resource_id: The key that was looked up. Included in logs and response.
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
    """Raised when input is malformed or violates a business rule.

    Maps to HTTP 400. No state is mutated when this is raised.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ForbiddenError(Exception):
    """Raised when the actor is not the designated signer/owner for the action.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, actor_id: int | None = None) -> None:
        self.actor_id = actor_id
        super().__init__(message)


class InvalidStateError(Exception):
    """Raised when an action is attempted against a record or document whose
    current status does not permit it (e.g. signing an already-signed record).

    Maps to HTTP 409.

    Args:
        resource: Entity name.
        current_status: Status at the time the action was attempted.
        action: The attempted action.
    """

    def __init__(self, resource: str, current_status: str, action: str, reason: str | None = None) -> None:
        self.resource = resource
        self.current_status = current_status
        self.action = action
        self.reason = reason
        msg = f"Cannot '{action}' {resource} (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictError(Exception):
    """Raised when an operation would violate a unique constraint.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class GatewayError(Exception):
    """Raised when the external signing provider call failed.

    Recoverable: local state is never corrupted by a gateway failure, and a
    later manual resync reconciles once the provider is reachable again.
    Maps to HTTP 502 when it reaches a blueprint.
    """

    def __init__(self, operation: str, error: str | None = None, status_code: int | None = None) -> None:
        self.operation = operation
        self.error = error
        self.status_code = status_code
        msg = f"Signing provider call '{operation}' failed"
        if error:
            msg += f": {error}"
        super().__init__(msg)


class UnauthorizedError(Exception):
    """Raised when an inbound provider event fails the authenticity check.

    Maps to HTTP 401. The event is never processed, not even partially.
    """
