"""Standardised API error responses.

Every error body has the same shape::

    {"error": "<message>", "code": "<E.* constant>", "details": {...}}

``details`` is omitted when empty.

Usage
-----
    from jobflow.utils.errors import api_error, service_error, E

    return api_error(E.VALIDATION_REQUIRED, "question_id is required")
    return service_error(exc)   # any jobflow.core.exceptions error
"""

from __future__ import annotations

from flask import jsonify

from jobflow.core.exceptions import (
    ConflictError,
    GraphIntegrityError,
    NotFoundError,
    PermissionDenied,
    ProgressionError,
    ValidationError,
)


class E:
    """Machine-readable error codes.

    ERR_ codes are generic request/resource errors, STAGE_ codes come
    from the stage engine.
    """

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # 400: missing / malformed input
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # 400: unparseable parameter
    VALIDATION_RESPONSE = "ERR_VALIDATION_RESPONSE"   # 422: rejected by a business rule
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    FORBIDDEN = "ERR_FORBIDDEN"
    INTERNAL = "ERR_INTERNAL"

    GRAPH_INTEGRITY = "STAGE_GRAPH_INTEGRITY"
    PROGRESSION_FAILED = "STAGE_PROGRESSION_FAILED"


_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RESPONSE: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
    E.GRAPH_INTEGRITY: 409,
    E.PROGRESSION_FAILED: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Build ``(jsonify(body), status)`` for a Flask view.

    ``status`` defaults to the code's entry in ``_DEFAULT_STATUS``, then 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


def service_error(exc: Exception):
    """Translate a service-layer exception into an error response.

    Raises TypeError for exceptions that are not service errors; callers
    handle those as internal errors.
    """
    if isinstance(exc, NotFoundError):
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")
    if isinstance(exc, ValidationError):
        return api_error(E.VALIDATION_RESPONSE, str(exc), details=exc.details)
    if isinstance(exc, GraphIntegrityError):
        return api_error(E.GRAPH_INTEGRITY, str(exc), details={"path": exc.path})
    if isinstance(exc, ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(exc), details={"field": exc.field})
    if isinstance(exc, PermissionDenied):
        return api_error(E.FORBIDDEN, f"Not permitted to {exc.action}")
    if isinstance(exc, ProgressionError):
        # Only the reference leaves the service; the cause is in the logs
        return api_error(E.PROGRESSION_FAILED, str(exc), details={"reference": exc.reference})
    raise TypeError(f"{type(exc).__name__} is not a service error")
