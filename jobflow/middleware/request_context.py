"""
Request context middleware - resolves the calling tenant and actor.

Identity is established upstream (gateway / auth service); this service
only reads the ids it is handed:

  1. X-Tenant-ID / X-Actor-ID headers
  2. tenant_id / actor_id query string parameters
  3. tenant_id / actor_id keys of a JSON body

The resolved values land on ``g.tenant_id`` and ``g.actor_id`` (None when
absent). A tenant id that does not parse, or names an unknown or inactive
tenant, is rejected before the view runs.
"""

import logging

from flask import g, request

from jobflow.models import db
from jobflow.models.auth import Tenant
from jobflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

CONTEXT_SKIP_PREFIXES = (
    "/api/v1/health",
)


def _raw_value(header: str, key: str):
    value = request.headers.get(header)
    if value:
        return value
    value = request.args.get(key)
    if value:
        return value
    if request.is_json:
        body = request.get_json(silent=True)
        if isinstance(body, dict):
            return body.get(key)
    return None


def _as_int(value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(value)
    return int(value)


def init_request_context(app):
    """Register the tenant/actor resolution hook."""

    @app.before_request
    def _request_context():
        g.tenant_id = None
        g.actor_id = None

        if not request.path.startswith("/api/v1/"):
            return None
        for prefix in CONTEXT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        try:
            tenant_id = _as_int(_raw_value("X-Tenant-ID", "tenant_id"))
            actor_id = _as_int(_raw_value("X-Actor-ID", "actor_id"))
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "tenant_id and actor_id must be integers")

        if tenant_id is not None:
            tenant = db.session.get(Tenant, tenant_id)
            if tenant is None or not tenant.is_active:
                logger.warning("Request for unknown or inactive tenant %s", tenant_id,
                               extra={"tenant_id": tenant_id, "path": request.path})
                return api_error(E.FORBIDDEN, "Tenant not found or inactive")

        g.tenant_id = tenant_id
        g.actor_id = actor_id
        return None
