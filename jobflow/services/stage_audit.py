"""Audit & metrics recorder for stage movements.

Writers here only ``flush``; the progression service owns the
transaction. The exception is ``record_failure``, which runs after a
rollback and commits its own row so the failure survives.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.progression import (
    OPEN_TASK_STATUSES,
    TRIGGER_SOURCES,
    JobTask,
    Response,
    StageAuditRecord,
    StagePerformanceMetric,
)
from jobflow.models.workflow import Stage
from jobflow.utils.helpers import as_utc, hours_between, utcnow

logger = logging.getLogger(__name__)


# ── Audit trail ───────────────────────────────────────────────────────────────


def write_stage_audit(
    *,
    job: Job,
    from_stage_id: int | None,
    to_stage_id: int | None,
    from_status: str | None,
    to_status: str | None,
    trigger_source: str,
    actor_id: int | None = None,
    details: dict | None = None,
    question_id: int | None = None,
    response: Response | None = None,
    duration_hours: float | None = None,
) -> StageAuditRecord:
    """Append a single audit row. Uses ``flush`` so callers keep transaction control."""
    if trigger_source not in TRIGGER_SOURCES:
        raise ValueError(f"Unknown trigger source {trigger_source!r}")
    record = StageAuditRecord(
        job_id=job.id,
        from_stage_id=from_stage_id,
        to_stage_id=to_stage_id,
        from_status=from_status,
        to_status=to_status,
        trigger_source=trigger_source,
        triggered_by_id=actor_id,
        trigger_details=details or {},
        question_id=question_id,
        response_id=response.id if response is not None else None,
        response_value=response.response_value if response is not None else None,
        duration_in_previous_stage_hours=duration_hours,
    )
    db.session.add(record)
    db.session.flush()
    return record


def record_failure(
    *,
    job_id: int,
    from_stage_id: int | None,
    from_status: str | None,
    trigger_source: str,
    actor_id: int | None,
    error: BaseException,
    reference: str,
    question_id: int | None = None,
    response_value: str | None = None,
) -> StageAuditRecord:
    """Persist a diagnostic audit row for a failed stage move and commit it.

    Call only after the failed unit of work has been rolled back.
    """
    record = StageAuditRecord(
        job_id=job_id,
        from_stage_id=from_stage_id,
        to_stage_id=None,
        from_status=from_status,
        to_status=None,
        trigger_source="error",
        triggered_by_id=actor_id,
        trigger_details={
            "error": f"{type(error).__name__}: {error}",
            "reference": reference,
            "attempted_trigger": trigger_source,
        },
        question_id=question_id,
        response_value=response_value,
    )
    db.session.add(record)
    db.session.commit()
    return record


def audit_query(job_id: int):
    """Query over a job's audit history, oldest first (for pagination)."""
    return (
        StageAuditRecord.query
        .filter(StageAuditRecord.job_id == job_id)
        .order_by(StageAuditRecord.created_at, StageAuditRecord.id)
    )


# ── Stage performance metrics ─────────────────────────────────────────────────


def open_stage_metric(job_id: int, stage_id: int, entered_at) -> StagePerformanceMetric:
    metric = StagePerformanceMetric(job_id=job_id, stage_id=stage_id, entered_at=entered_at)
    db.session.add(metric)
    db.session.flush()
    return metric


def _task_counts(job_id: int, stage_id: int, now) -> tuple[int, int]:
    tasks = db.session.execute(
        select(JobTask).where(JobTask.job_id == job_id, JobTask.stage_id == stage_id)
    ).scalars()
    completed = overdue = 0
    for task in tasks:
        if task.status == "completed":
            completed += 1
        elif task.status == "overdue" or (
            task.status in OPEN_TASK_STATUSES
            and task.due_date is not None
            and as_utc(task.due_date) < now
        ):
            overdue += 1
    return completed, overdue


def close_stage_metric(
    job: Job,
    stage: Stage,
    exited_at,
    next_stage: Stage | None,
) -> StagePerformanceMetric:
    """Close the open metric row for ``job`` in ``stage``.

    A job placed in its stage before metrics were tracked gets a row
    opened from ``job.stage_entered_at`` on the spot.
    """
    metric = db.session.execute(
        select(StagePerformanceMetric)
        .where(
            StagePerformanceMetric.job_id == job.id,
            StagePerformanceMetric.stage_id == stage.id,
            StagePerformanceMetric.exited_at.is_(None),
        )
        .order_by(StagePerformanceMetric.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if metric is None:
        metric = open_stage_metric(job.id, stage.id, job.stage_entered_at or exited_at)

    completed, overdue = _task_counts(job.id, stage.id, as_utc(exited_at))
    metric.exited_at = exited_at
    metric.duration_hours = hours_between(metric.entered_at, exited_at)
    metric.tasks_completed = completed
    metric.tasks_overdue = overdue
    metric.conversion_successful = (
        next_stage is not None
        and next_stage.position > stage.position
        and next_stage.maps_to_status != "cancelled"
    )
    db.session.flush()
    return metric


def list_stage_metrics(job_id: int) -> list[StagePerformanceMetric]:
    return list(
        db.session.execute(
            select(StagePerformanceMetric)
            .where(StagePerformanceMetric.job_id == job_id)
            .order_by(StagePerformanceMetric.entered_at, StagePerformanceMetric.id)
        ).scalars()
    )
