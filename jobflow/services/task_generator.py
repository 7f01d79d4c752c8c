"""Task generator - turns a stage's task templates into job tasks.

Each template is instantiated inside its own savepoint. A failing
template is logged and contributes zero tasks; it never aborts the stage
move that triggered it. Every entry into a stage creates a fresh set of
tasks, so a job that comes back to a stage gets new ones.

Assignment rules (``auto_assign_to``):
    creator          the actor who triggered the stage move
    foreman / lead   the job's lead, else the actor
    admin            the earliest-created privileged user of the job's tenant, else the actor
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from jobflow.models import db
from jobflow.models.auth import PRIVILEGED_ROLES, User
from jobflow.models.job import Job
from jobflow.models.progression import JobTask
from jobflow.models.workflow import Stage, TaskTemplate
from jobflow.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def resolve_assignee(job: Job, rule: str | None, actor_id: int | None) -> int | None:
    if rule in ("foreman", "lead"):
        return job.lead_user_id or actor_id
    if rule == "admin":
        admin_id = db.session.execute(
            select(User.id)
            .where(User.tenant_id == job.tenant_id, User.role.in_(PRIVILEGED_ROLES), User.is_active.is_(True))
            .order_by(User.created_at, User.id)
            .limit(1)
        ).scalar_one_or_none()
        return admin_id or actor_id
    return actor_id


def _copy_subtasks(subtasks) -> list[dict]:
    items = []
    for sub in subtasks or []:
        if isinstance(sub, dict):
            items.append({**sub, "completed": False})
        else:
            items.append({"title": str(sub), "completed": False})
    return items


def build_task(job: Job, stage: Stage, template: TaskTemplate, actor_id: int | None) -> JobTask:
    offset = template.due_date_offset_hours or 0
    return JobTask(
        job_id=job.id,
        template_id=template.id,
        stage_id=stage.id,
        title=template.title,
        description=template.description,
        subtasks=_copy_subtasks(template.subtasks),
        status="pending",
        priority=template.priority or "normal",
        assigned_to_id=resolve_assignee(job, template.auto_assign_to, actor_id),
        due_date=utcnow() + timedelta(hours=offset) if offset > 0 else None,
    )


def instantiate_tasks_for_stage(job: Job, stage: Stage, actor_id: int | None = None) -> int:
    """Create one task per active template of ``stage``. Returns the count created."""
    templates = db.session.execute(
        select(TaskTemplate)
        .where(TaskTemplate.stage_id == stage.id, TaskTemplate.is_active.is_(True))
        .order_by(TaskTemplate.id)
    ).scalars().all()

    created = 0
    for template in templates:
        try:
            with db.session.begin_nested():
                db.session.add(build_task(job, stage, template, actor_id))
            created += 1
        except Exception:
            logger.exception(
                "Task creation failed job_id=%s template_id=%s", job.id, template.id,
                extra={"tenant_id": job.tenant_id, "job_id": job.id, "stage_id": stage.id},
            )

    if created:
        logger.info(
            "Created %d task(s) job_id=%s stage_id=%s", created, job.id, stage.id,
            extra={"tenant_id": job.tenant_id, "job_id": job.id, "stage_id": stage.id},
        )
    return created
