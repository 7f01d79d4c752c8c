"""
Job progression blueprint.

Endpoints:
    POST /api/v1/jobs/<job_id>/start                 - enter the initial stage
    POST /api/v1/jobs/<job_id>/responses             - answer a question
    POST /api/v1/jobs/<job_id>/stage-override        - admin move to any stage
    GET  /api/v1/jobs/<job_id>/current-questions     - open questions of the current stage
    GET  /api/v1/jobs/<job_id>/audit-history         - stage audit trail (paginated)
    GET  /api/v1/jobs/<job_id>/performance-metrics   - per-stage visit metrics

Tenant and actor come from the request context middleware (g.tenant_id,
g.actor_id). Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from jobflow.blueprints import (
    current_actor_id,
    current_tenant_id,
    paginate_query,
    register_error_handlers,
)
from jobflow.services import progression_service, stage_audit
from jobflow.services.permission import check_permission
from jobflow.services.question_store import get_current_questions
from jobflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

progression_bp = Blueprint("progression", __name__, url_prefix="/api/v1")
register_error_handlers(progression_bp)


# ═════════════════════════════════════════════════════════════════════════
# Progression commands
# ═════════════════════════════════════════════════════════════════════════


@progression_bp.route("/jobs/<int:job_id>/start", methods=["POST"])
def start_job(job_id):
    """Place the job in the first stage of its workflow (idempotent).

    Returns: {"job", "started", "tasks_created"} - 201 when the job was
    started by this call, 200 when it already had a stage.
    """
    result = progression_service.start_job(
        job_id, actor_id=current_actor_id(), tenant_id=current_tenant_id(),
    )
    return jsonify(result), 201 if result["started"] else 200


@progression_bp.route("/jobs/<int:job_id>/responses", methods=["POST"])
def submit_response(job_id):
    """Record an answer and advance the job when a transition fires.

    Body: {question_id, response_value, source?, metadata?}
    Returns: submission outcome (200).
    """
    data = request.get_json(silent=True) or {}
    question_id = data.get("question_id")
    if not isinstance(question_id, int) or isinstance(question_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "question_id is required and must be an integer")
    if "response_value" not in data:
        return api_error(E.VALIDATION_REQUIRED, "response_value is required")
    metadata = data.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return api_error(E.VALIDATION_INVALID, "metadata must be an object")

    result = progression_service.submit_response(
        job_id,
        question_id,
        data["response_value"],
        actor_id=current_actor_id(),
        tenant_id=current_tenant_id(),
        source=data.get("source") or "web_app",
        metadata=metadata,
    )
    return jsonify(result.to_dict()), 200


@progression_bp.route("/jobs/<int:job_id>/stage-override", methods=["POST"])
def override_stage(job_id):
    """Move the job to any stage of its workflow, bypassing questions.

    Body: {target_stage_id, reason}
    Requires the actor to hold the ``stage_override`` permission.
    """
    data = request.get_json(silent=True) or {}
    target_stage_id = data.get("target_stage_id")
    if not isinstance(target_stage_id, int) or isinstance(target_stage_id, bool):
        return api_error(E.VALIDATION_REQUIRED, "target_stage_id is required and must be an integer")

    tenant_id = current_tenant_id()
    actor_id = current_actor_id()
    check_permission(tenant_id, actor_id, "stage_override")

    result = progression_service.override_stage(
        job_id,
        target_stage_id,
        reason=data.get("reason") or "",
        actor_id=actor_id,
        tenant_id=tenant_id,
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════
# Progression reads
# ═════════════════════════════════════════════════════════════════════════


@progression_bp.route("/jobs/<int:job_id>/current-questions", methods=["GET"])
def current_questions(job_id):
    job = progression_service.get_job(job_id, current_tenant_id())
    return jsonify(get_current_questions(job)), 200


@progression_bp.route("/jobs/<int:job_id>/audit-history", methods=["GET"])
def audit_history(job_id):
    """Audit records for a job, oldest first.

    Query params: limit, offset
    """
    job = progression_service.get_job(job_id, current_tenant_id())
    items, total = paginate_query(stage_audit.audit_query(job.id))
    return jsonify({"items": [r.to_dict() for r in items], "total": total}), 200


@progression_bp.route("/jobs/<int:job_id>/performance-metrics", methods=["GET"])
def performance_metrics(job_id):
    job = progression_service.get_job(job_id, current_tenant_id())
    metrics = stage_audit.list_stage_metrics(job.id)
    return jsonify({"items": [m.to_dict() for m in metrics], "total": len(metrics)}), 200
