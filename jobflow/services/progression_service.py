"""Job stage progression - the end-to-end submission and override paths.

submit_response(job_id, question_id, value, ...)
    validate → enter initial stage if needed → upsert response →
    (question not on current stage → "recorded") → skip check →
    evaluate transitions → "no_transition" | move job + create tasks →
    "transitioned"

override_stage(job_id, target_stage_id, reason, ...)
    move the job to any stage of its resolved set, bypassing questions
    and transitions; audited as "admin_override". Permission is checked
    by the caller (see services/permission.py).

start_job(job_id, ...)
    idempotent entry into the initial stage.

Transactions:
  - one unit of work per call, committed here and nowhere else
  - NotFoundError / ValidationError roll back and propagate unchanged
  - any other failure rolls back everything (including the response),
    commits a failure audit record and raises ProgressionError carrying
    the same reference code
  - calls for the same job are serialised (process lock + row lock)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass

from flask import current_app
from sqlalchemy import select

from jobflow.core.exceptions import NotFoundError, ProgressionError, ValidationError
from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.workflow import Question, Stage
from jobflow.services import stage_audit, stage_graph
from jobflow.services.job_locks import job_lock
from jobflow.services.job_state import apply_transition
from jobflow.services.response_recorder import record_response, validate_response
from jobflow.services.skip_evaluator import should_skip
from jobflow.services.task_generator import instantiate_tasks_for_stage
from jobflow.services.transition_evaluator import evaluate

logger = logging.getLogger(__name__)

OUTCOME_RECORDED = "recorded"
OUTCOME_SKIPPED = "skipped"
OUTCOME_NO_TRANSITION = "no_transition"
OUTCOME_TRANSITIONED = "transitioned"


@dataclass
class SubmissionResult:
    outcome: str
    job_id: int
    response_id: int
    current_stage_id: int | None
    from_stage_id: int | None = None
    to_stage_id: int | None = None
    transition_id: int | None = None
    tasks_created: int = 0
    audit_id: int | None = None
    duration_hours: float | None = None

    @property
    def stage_progressed(self) -> bool:
        return self.outcome == OUTCOME_TRANSITIONED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stage_progressed"] = self.stage_progressed
        return data


# ── Helpers ──────────────────────────────────────────────────────────────────


def _load_job_for_update(job_id: int, tenant_id: int | None) -> Job:
    """Lock the job row and re-read it, bypassing the identity map."""
    stmt = (
        select(Job)
        .where(Job.id == job_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if tenant_id is not None:
        stmt = stmt.where(Job.tenant_id == tenant_id)
    job = db.session.execute(stmt).scalar_one_or_none()
    if job is None:
        raise NotFoundError(resource="Job", resource_id=job_id, tenant_id=tenant_id)
    return job


def get_job(job_id: int, tenant_id: int | None = None) -> Job:
    if tenant_id is None:
        job = db.session.get(Job, job_id)
    else:
        job = Job.query_for_tenant(tenant_id).filter_by(id=job_id).first()
    if job is None:
        raise NotFoundError(resource="Job", resource_id=job_id, tenant_id=tenant_id)
    return job


def _tasks_enabled() -> bool:
    return bool(current_app.config.get("AUTO_CREATE_TASKS", True))


def _create_tasks(job: Job, stage: Stage, actor_id: int | None) -> int:
    if not _tasks_enabled():
        return 0
    return instantiate_tasks_for_stage(job, stage, actor_id)


def _enter_initial_stage(job: Job, actor_id: int | None) -> tuple[Stage, int]:
    stage = stage_graph.get_initial_stage(job.tenant_id)
    if stage is None:
        raise ValidationError(
            "No workflow stages are configured",
            details={"stage": "seed the default stages or define tenant stages first"},
        )
    apply_transition(
        job, None, stage,
        actor_id=actor_id,
        trigger_source="system",
        details={"reason": "initial_stage"},
    )
    return stage, _create_tasks(job, stage, actor_id)


def _fail(
    job_id: int,
    exc: Exception,
    *,
    trigger_source: str,
    actor_id: int | None,
    question_id: int | None = None,
    response_value: str | None = None,
) -> ProgressionError:
    """Roll back, persist a failure audit record, and build the opaque error."""
    db.session.rollback()
    reference = uuid.uuid4().hex[:12]
    logger.error(
        "Stage progression failed job_id=%s reference=%s: %s", job_id, reference, exc,
        exc_info=exc,
        extra={"job_id": job_id, "reference": reference},
    )
    try:
        job = db.session.get(Job, job_id)
        if job is not None:
            stage_audit.record_failure(
                job_id=job.id,
                from_stage_id=job.current_stage_id,
                from_status=job.status,
                trigger_source=trigger_source,
                actor_id=actor_id,
                error=exc,
                reference=reference,
                question_id=question_id,
                response_value=response_value,
            )
    except Exception:
        db.session.rollback()
        logger.exception(
            "Could not persist failure audit record job_id=%s reference=%s", job_id, reference,
            extra={"job_id": job_id, "reference": reference},
        )
    return ProgressionError(reference, job_id=job_id)


# ═════════════════════════════════════════════════════════════════════════════
# Submission path
# ═════════════════════════════════════════════════════════════════════════════


def submit_response(
    job_id: int,
    question_id: int,
    value,
    *,
    actor_id: int | None = None,
    tenant_id: int | None = None,
    source: str = "web_app",
    metadata: dict | None = None,
) -> SubmissionResult:
    """Record an answer and advance the job if it fires a transition.

    Raises:
        NotFoundError: unknown job, or question outside the job's stage set.
        ValidationError: the value does not fit the question's type.
        ProgressionError: the stage move failed; nothing was persisted
            except the failure audit record.
    """
    with job_lock(job_id):
        try:
            job = _load_job_for_update(job_id, tenant_id)
            question = db.session.get(Question, question_id)
            if question is None or question.stage.tenant_id != stage_graph.resolve_scope(job.tenant_id):
                raise NotFoundError(resource="Question", resource_id=question_id, tenant_id=job.tenant_id)
            validate_response(question, value)

            if job.current_stage_id is None:
                _enter_initial_stage(job, actor_id)

            response = record_response(
                job, question, value, actor_id=actor_id, source=source, metadata=metadata,
            )
            result = SubmissionResult(
                outcome=OUTCOME_RECORDED,
                job_id=job.id,
                response_id=response.id,
                current_stage_id=job.current_stage_id,
            )

            if question.stage_id != job.current_stage_id:
                # answered ahead of or behind the current stage: stored only
                pass
            elif should_skip(job, question):
                result.outcome = OUTCOME_SKIPPED
            else:
                current = db.session.get(Stage, job.current_stage_id)
                transition = evaluate(current, response.response_value, question)
                if transition is None:
                    result.outcome = OUTCOME_NO_TRANSITION
                else:
                    target = db.session.get(Stage, transition.to_stage_id)
                    record = apply_transition(
                        job, current, target,
                        actor_id=actor_id,
                        trigger_source="question_response",
                        details={
                            "source": source,
                            "metadata": metadata or {},
                            "transition_id": transition.id,
                            "action": transition.action,
                        },
                        question_id=question.id,
                        response=response,
                    )
                    result.outcome = OUTCOME_TRANSITIONED
                    result.from_stage_id = current.id
                    result.to_stage_id = target.id
                    result.transition_id = transition.id
                    result.audit_id = record.id
                    result.duration_hours = record.duration_in_previous_stage_hours
                    result.current_stage_id = target.id
                    result.tasks_created = _create_tasks(job, target, actor_id)

            db.session.commit()
        except (NotFoundError, ValidationError):
            db.session.rollback()
            raise
        except Exception as exc:
            raise _fail(
                job_id, exc,
                trigger_source="question_response",
                actor_id=actor_id,
                question_id=question_id,
                response_value=None if value is None else str(value),
            ) from exc

    logger.info(
        "Response processed job_id=%s question_id=%s outcome=%s",
        job_id, question_id, result.outcome,
        extra={"tenant_id": tenant_id, "job_id": job_id, "stage_id": result.current_stage_id},
    )
    return result


# ═════════════════════════════════════════════════════════════════════════════
# Admin override path
# ═════════════════════════════════════════════════════════════════════════════


def override_stage(
    job_id: int,
    target_stage_id: int,
    *,
    reason: str,
    actor_id: int | None = None,
    tenant_id: int | None = None,
) -> dict:
    """Move a job to any stage of its resolved set, bypassing evaluation.

    Returns:
        {"job": ..., "audit": ..., "tasks_created": n}

    Raises:
        ValidationError: empty reason.
        NotFoundError: unknown job, or target outside the job's stage set.
        ProgressionError: the move failed inside its transaction.
    """
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("An override reason is required", details={"reason": "required"})

    with job_lock(job_id):
        try:
            job = _load_job_for_update(job_id, tenant_id)
            target = stage_graph.get_stage(target_stage_id, job.tenant_id)
            current = db.session.get(Stage, job.current_stage_id) if job.current_stage_id else None
            record = apply_transition(
                job, current, target,
                actor_id=actor_id,
                trigger_source="admin_override",
                details={"reason": reason},
            )
            tasks_created = _create_tasks(job, target, actor_id)
            db.session.commit()
        except (NotFoundError, ValidationError):
            db.session.rollback()
            raise
        except Exception as exc:
            raise _fail(job_id, exc, trigger_source="admin_override", actor_id=actor_id) from exc

    logger.warning(
        "Stage override job_id=%s → stage %s by actor %s", job_id, target_stage_id, actor_id,
        extra={"tenant_id": tenant_id, "job_id": job_id, "stage_id": target_stage_id},
    )
    return {"job": job.to_dict(), "audit": record.to_dict(), "tasks_created": tasks_created}


# ═════════════════════════════════════════════════════════════════════════════
# Initial entry
# ═════════════════════════════════════════════════════════════════════════════


def start_job(job_id: int, *, actor_id: int | None = None, tenant_id: int | None = None) -> dict:
    """Place a job in its initial stage. No-op when it already has a stage.

    Returns:
        {"job": ..., "started": bool, "tasks_created": n}
    """
    with job_lock(job_id):
        try:
            job = _load_job_for_update(job_id, tenant_id)
            if job.current_stage_id is not None:
                db.session.commit()  # releases the row lock
                return {"job": job.to_dict(), "started": False, "tasks_created": 0}
            _, tasks_created = _enter_initial_stage(job, actor_id)
            db.session.commit()
        except (NotFoundError, ValidationError):
            db.session.rollback()
            raise
        except Exception as exc:
            raise _fail(job_id, exc, trigger_source="system", actor_id=actor_id) from exc

    logger.info("Job %s started in stage %s", job_id, job.current_stage_id,
                extra={"tenant_id": tenant_id, "job_id": job_id, "stage_id": job.current_stage_id})
    return {"job": job.to_dict(), "started": True, "tasks_created": tasks_created}
