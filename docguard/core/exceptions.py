"""
Service-layer exception hierarchy.

Services raise these types; the app-level error handlers registered in
``docguard.create_app`` translate them to JSON responses once, so every
blueprint gets the same HTTP status codes.

Usage:
    from docguard.core.exceptions import NotFoundError, ForbiddenError

    raise NotFoundError(resource="Document", resource_id=42)
    raise ForbiddenError(required="DOCUMENT_EDIT", reason="missing_capability")
"""


class NotFoundError(Exception):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable model name (e.g. "Document", "Role").
        resource_id: The key that was looked up. Logged, not returned to clients.
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
    """Raised when well-formed input violates a business rule.

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


# ═══════════════════════════════════════════════════════════════
# Authorization outcomes
# ═══════════════════════════════════════════════════════════════

class AuthorizationError(Exception):
    """Base class for every "may not" outcome.

    Subclasses are expected failures. They are always mapped to a 4xx
    response and never surface as a crash.
    """


class UnauthenticatedError(AuthorizationError):
    """No usable identity on the request (missing, invalid or expired token,
    or the user was deactivated). Maps to HTTP 401."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class ForbiddenError(AuthorizationError):
    """The principal is known but lacks the right to perform the action.

    Maps to HTTP 403. ``required`` holds the exact capability, permission or
    level that was missing; it is logged server side and never echoed in the
    response body. ``reason`` is one of ``missing_capability``,
    ``missing_permission``, ``missing_role``, ``role_level`` or
    ``unknown_requirement``.
    """

    def __init__(
        self,
        required: str | None = None,
        reason: str = "missing_capability",
        message: str = "Insufficient permissions",
    ) -> None:
        self.required = required
        self.reason = reason
        super().__init__(message)


class SystemRoleProtectedError(ForbiddenError):
    """Attempt to delete or rename a built-in role."""

    def __init__(self, role_name: str) -> None:
        super().__init__(
            required=role_name,
            reason="system_role",
            message="System roles cannot be modified",
        )


class StaleTransitionError(Exception):
    """A workflow transition lost a race or was computed from a stale status.

    Distinct from authorization failure: the caller was allowed, but the
    document moved underneath them. Maps to HTTP 409.
    """

    def __init__(self, document_id: int, expected: str | None, actual: str | None) -> None:
        self.document_id = document_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Document {document_id} status changed (expected {expected!r}, found {actual!r})"
        )
