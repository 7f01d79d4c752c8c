"""Stage reporting - performance report and SLA violation scan.

Both are pull queries over recorded metrics and tasks; nothing here
writes to the database.

Performance report, per stage of the tenant's resolved set (position order):
    total_entries          visits that started inside the window
    completed_visits       of those, visits that have been left again
    avg_duration_hours     mean of closed visit durations
    median_duration_hours  median of closed visit durations
    avg_tasks_completed    mean tasks completed per closed visit
    avg_tasks_overdue      mean tasks overdue per closed visit
    task_completion_rate   completed / created tasks for the stage
    conversion_rate        share of closed visits that moved forward

SLA scan: open tasks whose template carries ``sla_hours`` and whose
``created_at + sla_hours`` has passed, most overdue first.
"""

from __future__ import annotations

import logging
import statistics
from datetime import timedelta

from flask import current_app
from sqlalchemy import select

from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.progression import OPEN_TASK_STATUSES, JobTask, StagePerformanceMetric
from jobflow.models.workflow import TaskTemplate
from jobflow.services import stage_graph
from jobflow.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_DEFAULT_SEVERITY_THRESHOLDS = ((48, "critical"), (24, "high"), (8, "medium"))


def _mean(values: list) -> float | None:
    return round(statistics.fmean(values), 2) if values else None


def _median(values: list) -> float | None:
    return round(statistics.median(values), 2) if values else None


# ── Performance report ────────────────────────────────────────────────────────


def get_stage_performance_report(tenant_id: int, date_from=None, date_to=None) -> list[dict]:
    """Per-stage performance figures for one tenant.

    Args:
        tenant_id: Tenant whose jobs are measured.
        date_from: Optional lower bound on visit ``entered_at`` (inclusive).
        date_to:   Optional upper bound on visit ``entered_at`` (inclusive).
    """
    stages = stage_graph.list_stages(tenant_id, include_inactive=True)

    metric_stmt = (
        select(StagePerformanceMetric)
        .join(Job, Job.id == StagePerformanceMetric.job_id)
        .where(Job.tenant_id == tenant_id)
    )
    task_stmt = (
        select(JobTask.stage_id, JobTask.status)
        .join(Job, Job.id == JobTask.job_id)
        .where(Job.tenant_id == tenant_id)
    )
    if date_from is not None:
        metric_stmt = metric_stmt.where(StagePerformanceMetric.entered_at >= date_from)
        task_stmt = task_stmt.where(JobTask.created_at >= date_from)
    if date_to is not None:
        metric_stmt = metric_stmt.where(StagePerformanceMetric.entered_at <= date_to)
        task_stmt = task_stmt.where(JobTask.created_at <= date_to)

    visits_by_stage: dict[int, list[StagePerformanceMetric]] = {}
    for metric in db.session.execute(metric_stmt).scalars():
        visits_by_stage.setdefault(metric.stage_id, []).append(metric)

    tasks_by_stage: dict[int, list[str]] = {}
    for stage_id, status in db.session.execute(task_stmt).all():
        tasks_by_stage.setdefault(stage_id, []).append(status)

    report = []
    for stage in stages:
        visits = visits_by_stage.get(stage.id, [])
        closed = [v for v in visits if v.exited_at is not None]
        durations = [v.duration_hours for v in closed if v.duration_hours is not None]
        statuses = tasks_by_stage.get(stage.id, [])
        report.append({
            "stage_id": stage.id,
            "stage_name": stage.name,
            "position": stage.position,
            "total_entries": len(visits),
            "completed_visits": len(closed),
            "avg_duration_hours": _mean(durations),
            "median_duration_hours": _median(durations),
            "avg_tasks_completed": _mean([v.tasks_completed or 0 for v in closed]),
            "avg_tasks_overdue": _mean([v.tasks_overdue or 0 for v in closed]),
            "task_completion_rate": (
                round(statuses.count("completed") / len(statuses), 4) if statuses else None
            ),
            "conversion_rate": (
                round(sum(1 for v in closed if v.conversion_successful) / len(closed), 4)
                if closed else None
            ),
        })
    return report


# ── SLA violations ────────────────────────────────────────────────────────────


def sla_severity(hours_overdue: float, thresholds=None) -> str:
    """Bucket hours past SLA: > 48 critical, > 24 high, > 8 medium, else low."""
    for limit, label in thresholds or _DEFAULT_SEVERITY_THRESHOLDS:
        if hours_overdue > limit:
            return label
    return "low"


def check_sla_violations(tenant_id: int | None = None, now=None) -> list[dict]:
    """Open tasks past their template's SLA, most overdue first."""
    now = as_utc(now) if now is not None else utcnow()
    thresholds = current_app.config.get("SLA_SEVERITY_THRESHOLDS", _DEFAULT_SEVERITY_THRESHOLDS)

    stmt = (
        select(JobTask, TaskTemplate.sla_hours, Job)
        .join(TaskTemplate, TaskTemplate.id == JobTask.template_id)
        .join(Job, Job.id == JobTask.job_id)
        .where(
            JobTask.status.in_(OPEN_TASK_STATUSES),
            TaskTemplate.sla_hours.is_not(None),
        )
    )
    if tenant_id is not None:
        stmt = stmt.where(Job.tenant_id == tenant_id)

    violations = []
    for task, sla_hours, job in db.session.execute(stmt).all():
        created = as_utc(task.created_at)
        if created + timedelta(hours=sla_hours) >= now:
            continue
        hours_overdue = round((now - created).total_seconds() / 3600.0 - sla_hours, 2)
        violations.append({
            "task_id": task.id,
            "job_id": job.id,
            "job_title": job.title,
            "tenant_id": job.tenant_id,
            "title": task.title,
            "status": task.status,
            "assigned_to_id": task.assigned_to_id,
            "sla_hours": sla_hours,
            "created_at": created.isoformat(),
            "hours_overdue": hours_overdue,
            "severity": sla_severity(hours_overdue, thresholds),
        })

    violations.sort(key=lambda v: v["hours_overdue"], reverse=True)
    if violations:
        logger.info("SLA scan found %d violation(s) tenant_id=%s", len(violations), tenant_id,
                    extra={"tenant_id": tenant_id})
    return violations
