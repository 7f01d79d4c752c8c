"""
Job task blueprint: tasks generated on stage entry.

Endpoints:
    GET   /api/v1/jobs/<job_id>/tasks             - list (optional ?status=)
    PATCH /api/v1/jobs/<job_id>/tasks/<task_id>   - status / notes / subtasks / uploads
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from jobflow.blueprints import current_actor_id, current_tenant_id, register_error_handlers
from jobflow.services import job_task_service
from jobflow.services.permission import check_permission

logger = logging.getLogger(__name__)

job_task_bp = Blueprint("job_task", __name__, url_prefix="/api/v1")
register_error_handlers(job_task_bp)


@job_task_bp.route("/jobs/<int:job_id>/tasks", methods=["GET"])
def list_tasks(job_id):
    tasks = job_task_service.list_job_tasks(
        job_id, current_tenant_id(), status=request.args.get("status"),
    )
    return jsonify({"items": [t.to_dict() for t in tasks], "total": len(tasks)}), 200


@job_task_bp.route("/jobs/<int:job_id>/tasks/<int:task_id>", methods=["PATCH"])
def update_task(job_id, task_id):
    """Update a job task.

    Body: {status?, notes?, subtasks?, subtask_updates?: [{index, completed}],
           add_upload_urls?: [url]}
    Requires the ``task_update`` permission.
    """
    tenant_id = current_tenant_id()
    check_permission(tenant_id, current_actor_id(), "task_update")
    task = job_task_service.update_job_task(
        job_id, task_id, request.get_json(silent=True) or {}, tenant_id,
    )
    return jsonify(task.to_dict()), 200
