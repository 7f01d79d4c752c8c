"""
Job Progression Platform
Blueprint registry and shared view helpers.
"""

import logging

from flask import g, request
from werkzeug.exceptions import HTTPException

from jobflow.core.exceptions import (
    ConflictError,
    GraphIntegrityError,
    NotFoundError,
    PermissionDenied,
    ProgressionError,
    ValidationError,
)
from jobflow.utils.errors import E, api_error, service_error

logger = logging.getLogger(__name__)

SERVICE_ERRORS = (
    NotFoundError,
    ValidationError,
    ConflictError,
    GraphIntegrityError,
    PermissionDenied,
    ProgressionError,
)


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  - max items (default 200, capped at max_limit)
        offset - starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def current_tenant_id() -> int | None:
    """Tenant resolved by the request context middleware."""
    return getattr(g, "tenant_id", None)


def current_actor_id() -> int | None:
    """Actor resolved by the request context middleware."""
    return getattr(g, "actor_id", None)


def register_error_handlers(bp):
    """Map service exceptions onto JSON error responses for one blueprint."""

    for exc_class in SERVICE_ERRORS:
        bp.register_error_handler(exc_class, _handle_service_error)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return {"error": error.description}, error.code
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp


def _handle_service_error(error: Exception):
    if isinstance(error, PermissionDenied):
        logger.warning("Permission denied actor_id=%s action=%s", error.actor_id, error.action,
                       extra={"actor_id": error.actor_id, "tenant_id": current_tenant_id()})
    return service_error(error)
