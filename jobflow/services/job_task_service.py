"""Job task service - reads and updates tasks created by stage entry.

Rules:
  - tenant scoping goes through the owning job.
  - db.session.commit() happens only in service modules.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from jobflow.core.exceptions import NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.progression import (
    JOB_TASK_STATUSES,
    JobTask,
    validate_job_task_transition,
)
from jobflow.services.progression_service import get_job
from jobflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def list_job_tasks(job_id: int, tenant_id: int | None = None, status: str | None = None) -> list[JobTask]:
    get_job(job_id, tenant_id)
    stmt = select(JobTask).where(JobTask.job_id == job_id)
    if status:
        stmt = stmt.where(JobTask.status == status)
    return list(db.session.execute(stmt.order_by(JobTask.created_at, JobTask.id)).scalars())


def get_job_task(job_id: int, task_id: int, tenant_id: int | None = None) -> JobTask:
    get_job(job_id, tenant_id)
    task = db.session.get(JobTask, task_id)
    if task is None or task.job_id != job_id:
        raise NotFoundError(resource="JobTask", resource_id=task_id, tenant_id=tenant_id)
    return task


def update_job_task(job_id: int, task_id: int, data: dict, tenant_id: int | None = None) -> JobTask:
    """Update status, notes, subtask completion or attached uploads.

    ``subtasks`` may be a full list, or ``{"index": i, "completed": bool}``
    toggles under ``subtask_updates``.

    Raises:
        NotFoundError: job or task missing / outside tenant.
        ValidationError: unknown status, illegal status change, bad subtask index.
    """
    task = get_job_task(job_id, task_id, tenant_id)

    new_status = data.get("status")
    if new_status is not None and new_status != task.status:
        if new_status not in JOB_TASK_STATUSES:
            raise ValidationError(
                f"Unknown task status {new_status!r}",
                details={"status": f"must be one of: {', '.join(sorted(JOB_TASK_STATUSES))}"},
            )
        if not validate_job_task_transition(task.status, new_status):
            raise ValidationError(
                f"Cannot move task from {task.status} to {new_status}",
                details={"status": f"{task.status} → {new_status} is not allowed"},
            )
        old_status = task.status
        task.status = new_status
        task.completed_at = utcnow() if new_status == "completed" else None
        logger.info("JobTask %s %s → %s", task.id, old_status, new_status,
                    extra={"job_id": job_id, "tenant_id": tenant_id})

    if "notes" in data:
        task.notes = data["notes"]

    if "subtasks" in data:
        if not isinstance(data["subtasks"], list):
            raise ValidationError("subtasks must be a list", details={"subtasks": "must be a list"})
        task.subtasks = data["subtasks"]

    toggles = data.get("subtask_updates") or []
    if toggles:
        items = [dict(item) for item in (task.subtasks or [])]
        for toggle in toggles:
            index = toggle.get("index")
            if not isinstance(index, int) or not 0 <= index < len(items):
                raise ValidationError(
                    "Invalid subtask index",
                    details={"subtask_updates": f"index {index!r} out of range"},
                )
            items[index]["completed"] = bool(toggle.get("completed", True))
        task.subtasks = items

    for url in data.get("add_upload_urls") or []:
        task.upload_urls = [*(task.upload_urls or []), url]

    db.session.commit()
    return task
