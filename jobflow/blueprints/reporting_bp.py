"""
Reporting blueprint: stage performance and SLA violations.

Endpoints:
    GET /api/v1/reports/stage-performance   - ?date_from=&date_to= (YYYY-MM-DD or ISO datetime)
    GET /api/v1/reports/sla-violations      - open tasks past their template SLA

Both are pull queries; nothing here writes.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from jobflow.blueprints import current_tenant_id, register_error_handlers
from jobflow.services import stage_reporting
from jobflow.utils.errors import E, api_error
from jobflow.utils.helpers import parse_date_param

logger = logging.getLogger(__name__)

reporting_bp = Blueprint("reporting", __name__, url_prefix="/api/v1/reports")
register_error_handlers(reporting_bp)


@reporting_bp.route("/stage-performance", methods=["GET"])
def stage_performance():
    """Per-stage performance figures for the calling tenant."""
    tenant_id = current_tenant_id()
    if tenant_id is None:
        return api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    try:
        date_from = parse_date_param(request.args.get("date_from"))
        date_to = parse_date_param(request.args.get("date_to"), end_of_day=True)
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc))
    if date_from and date_to and date_from > date_to:
        return api_error(E.VALIDATION_INVALID, "date_from must not be after date_to")

    report = stage_reporting.get_stage_performance_report(tenant_id, date_from, date_to)
    return jsonify({
        "tenant_id": tenant_id,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
        "stages": report,
    }), 200


@reporting_bp.route("/sla-violations", methods=["GET"])
def sla_violations():
    """SLA scan, scoped to the calling tenant when one is given."""
    violations = stage_reporting.check_sla_violations(current_tenant_id())
    return jsonify({"items": violations, "total": len(violations)}), 200
