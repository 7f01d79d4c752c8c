"""Job state updater - moves a job's stage pointer.

``apply_transition`` performs the whole bookkeeping of one stage move:
close the metric for the stage being left, move the pointer, derive the
job status, open a metric for the new stage and append the audit record.
It flushes only; the caller commits or rolls back.
"""

from __future__ import annotations

import logging

from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.progression import Response, StageAuditRecord
from jobflow.models.workflow import Stage
from jobflow.services import stage_audit
from jobflow.utils.helpers import hours_between, utcnow

logger = logging.getLogger(__name__)


def apply_transition(
    job: Job,
    from_stage: Stage | None,
    to_stage: Stage,
    *,
    actor_id: int | None,
    trigger_source: str,
    details: dict | None = None,
    question_id: int | None = None,
    response: Response | None = None,
) -> StageAuditRecord:
    now = utcnow()
    from_status = job.status
    duration = None
    if from_stage is not None and job.stage_entered_at is not None:
        duration = hours_between(job.stage_entered_at, now)

    if from_stage is not None:
        stage_audit.close_stage_metric(job, from_stage, now, to_stage)

    job.current_stage_id = to_stage.id
    job.stage_entered_at = now
    job.status = to_stage.maps_to_status
    db.session.flush()

    stage_audit.open_stage_metric(job.id, to_stage.id, now)
    record = stage_audit.write_stage_audit(
        job=job,
        from_stage_id=from_stage.id if from_stage is not None else None,
        to_stage_id=to_stage.id,
        from_status=from_status,
        to_status=to_stage.maps_to_status,
        trigger_source=trigger_source,
        actor_id=actor_id,
        details=details,
        question_id=question_id,
        response=response,
        duration_hours=duration,
    )
    logger.info(
        "Job %s moved %s→%s via %s",
        job.id, from_stage.id if from_stage is not None else None, to_stage.id, trigger_source,
        extra={"tenant_id": job.tenant_id, "job_id": job.id, "stage_id": to_stage.id},
    )
    return record
