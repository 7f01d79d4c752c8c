"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register one handler per type and
map them onto HTTP status codes:

    NotFoundError        -> 404
    ValidationError      -> 422
    ConflictError        -> 409
    GraphIntegrityError  -> 409  (stage definitions only, never at runtime)
    PermissionDenied     -> 403
    ProgressionError     -> 500  (opaque; carries a reference code)

Usage:
    from jobflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Job", resource_id=42)
    raise ValidationError("Invalid response", details={"response_value": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for both genuinely missing records and cross-tenant lookups, so a
    caller cannot probe for the existence of another tenant's rows.

    Args:
        resource: Human-readable model name (e.g. "Job", "Stage").
        resource_id: The PK that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional scope that was enforced. For debug logging only.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value, or remove
    a row that live data still points at.

    Args:
        resource: Model name.
        field: The unique (or referencing) field.
        value: The conflicting value.
        message: Overrides the default "already exists" message.
    """

    def __init__(
        self, resource: str, field: str, value: str | None = None, message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class GraphIntegrityError(Exception):
    """Raised when a stage or transition definition would corrupt the stage graph.

    Covers self-loops, cycles reachable purely through automatic
    transitions, and graphs deeper than the configured traversal bound.
    Only raised while editing definitions.

    Args:
        message: Explanation of the violated rule.
        path: Stage ids forming the offending path, when one was found.
    """

    def __init__(self, message: str, path: list[int] | None = None) -> None:
        self.path = path or []
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when an actor lacks the permission required for an action."""

    def __init__(self, actor_id: int | None, action: str) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"Actor {actor_id} is not permitted to {action}")


class ProgressionError(Exception):
    """Raised when a stage move fails inside its transaction.

    The message carries no internal detail; the cause is logged and
    stored on the failure audit record under the same ``reference`` code.
    """

    def __init__(self, reference: str, job_id: int | None = None) -> None:
        self.reference = reference
        self.job_id = job_id
        super().__init__(f"Stage progression failed (reference {reference})")
