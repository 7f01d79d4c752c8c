"""Question & task template store.

Definitions are written against a stage the caller's tenant owns
(tenant_id None = the global set). Reads go through the tenant's resolved
stage set.

Rules:
  - tenant_id is always an explicit parameter (never from g).
  - db.session.commit() happens only in service modules.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from jobflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.progression import Response
from jobflow.models.workflow import (
    ASSIGNEE_RULES,
    RESPONSE_TYPES,
    TASK_PRIORITIES,
    TASK_TYPES,
    Question,
    Stage,
    TaskTemplate,
    Transition,
)
from jobflow.services import stage_graph
from jobflow.services.skip_evaluator import should_skip

logger = logging.getLogger(__name__)


# ── Questions ─────────────────────────────────────────────────────────────────

# Phase-one positions used while reordering; clear of any real position
_REORDER_OFFSET = 10000


def _validate_question_fields(data: dict) -> None:
    errors = {}
    if not (data.get("text") or "").strip():
        errors["text"] = "text is required"
    rtype = data.get("response_type", "yes_no")
    if rtype not in RESPONSE_TYPES:
        errors["response_type"] = f"must be one of: {', '.join(sorted(RESPONSE_TYPES))}"
    options = data.get("response_options")
    if rtype == "multiple_choice" and not options:
        errors["response_options"] = "multiple_choice questions need response_options"
    if options is not None and not isinstance(options, list):
        errors["response_options"] = "must be a list"
    skip = data.get("skip_conditions")
    if skip is not None and not isinstance(skip, dict):
        errors["skip_conditions"] = "must be an object"
    position = data.get("position")
    if position is not None and (not isinstance(position, int) or isinstance(position, bool) or position < 1):
        errors["position"] = "position must be a positive integer"
    if errors:
        raise ValidationError("Invalid question definition", details=errors)


def _taken_positions(stage_id: int, exclude_id: int | None = None) -> set[int]:
    stmt = select(Question.position).where(Question.stage_id == stage_id)
    if exclude_id is not None:
        stmt = stmt.where(Question.id != exclude_id)
    return set(db.session.execute(stmt).scalars())


def create_question(stage_id: int, tenant_id: int | None, data: dict, *, commit: bool = True) -> Question:
    """Attach a question to a stage.

    Raises:
        NotFoundError: stage not owned by the tenant.
        ValidationError: missing text, unknown response type, bad options.
        ConflictError: position already taken on this stage.
    """
    stage = stage_graph.get_owned_stage(stage_id, tenant_id)
    _validate_question_fields(data)

    taken = _taken_positions(stage.id)
    position = data.get("position")
    if position is None:
        position = max(taken, default=0) + 1
    elif position in taken:
        raise ConflictError("Question", "position", str(position))

    question = Question(
        stage_id=stage.id,
        text=data["text"].strip(),
        response_type=data.get("response_type", "yes_no"),
        response_options=data.get("response_options"),
        position=position,
        is_required=bool(data.get("is_required", True)),
        skip_conditions=data.get("skip_conditions"),
        help_text=data.get("help_text"),
    )
    db.session.add(question)
    db.session.flush()
    if commit:
        db.session.commit()
        logger.info("Question created id=%s stage_id=%s", question.id, stage.id,
                    extra={"tenant_id": tenant_id, "stage_id": stage.id})
    return question


def _owned_question(question_id: int, tenant_id: int | None) -> Question:
    question = db.session.get(Question, question_id)
    if question is None or question.stage.tenant_id != tenant_id:
        raise NotFoundError(resource="Question", resource_id=question_id, tenant_id=tenant_id)
    return question


_QUESTION_FIELDS = (
    "text", "response_type", "response_options", "position",
    "is_required", "skip_conditions", "help_text",
)


def update_question(question_id: int, tenant_id: int | None, data: dict) -> Question:
    """Update a question in place. It stays on its stage.

    Raises:
        NotFoundError: question not on a stage the tenant owns.
        ValidationError: the merged definition is invalid.
        ConflictError: new position already taken on the stage.
    """
    question = _owned_question(question_id, tenant_id)
    merged = {field: getattr(question, field) for field in _QUESTION_FIELDS}
    merged.update({k: v for k, v in data.items() if k in _QUESTION_FIELDS})
    _validate_question_fields(merged)
    if merged["position"] is None:
        merged["position"] = question.position
    if merged["position"] in _taken_positions(question.stage_id, exclude_id=question.id):
        raise ConflictError("Question", "position", str(merged["position"]))

    merged["text"] = merged["text"].strip()
    merged["is_required"] = bool(merged["is_required"])
    for field, value in merged.items():
        setattr(question, field, value)
    db.session.commit()
    logger.info("Question updated id=%s stage_id=%s", question.id, question.stage_id,
                extra={"tenant_id": tenant_id, "stage_id": question.stage_id})
    return question


def delete_question(question_id: int, tenant_id: int | None) -> dict:
    """Delete a question with the transitions bound to it and its recorded responses.

    Returns:
        {"question_id": id, "transitions": n}
    """
    question = _owned_question(question_id, tenant_id)
    stage_id = question.stage_id
    bound = list(
        db.session.execute(
            select(Transition).where(Transition.question_id == question.id)
        ).scalars()
    )
    for transition in bound:
        db.session.delete(transition)
    db.session.flush()
    db.session.delete(question)
    db.session.commit()
    logger.info("Question deleted id=%s stage_id=%s transitions=%d", question_id, stage_id, len(bound),
                extra={"tenant_id": tenant_id, "stage_id": stage_id})
    return {"question_id": question_id, "transitions": len(bound)}


def reorder_questions(stage_id: int, tenant_id: int | None, question_ids: list) -> list[Question]:
    """Renumber a stage's questions 1..n in the order of ``question_ids``.

    Runs in two phases so no intermediate state breaks the per-stage
    position uniqueness: every question is first parked at
    ``_REORDER_OFFSET + i``, then moved to its final position.

    Raises:
        NotFoundError: stage not owned by the tenant.
        ValidationError: ``question_ids`` is not exactly the stage's questions.
    """
    stage = stage_graph.get_owned_stage(stage_id, tenant_id)
    questions = {q.id: q for q in list_questions(stage.id)}

    if (
        not isinstance(question_ids, list) or not question_ids
        or not all(isinstance(q, int) and not isinstance(q, bool) for q in question_ids)
    ):
        raise ValidationError("question_ids must be a non-empty list of ids",
                              details={"question_ids": "required"})
    if len(set(question_ids)) != len(question_ids) or set(question_ids) != set(questions):
        raise ValidationError(
            "question_ids must list every question of the stage exactly once",
            details={
                "missing": sorted(set(questions) - set(question_ids)),
                "unknown": sorted(set(question_ids) - set(questions)),
            },
        )

    try:
        for i, qid in enumerate(question_ids, start=1):
            questions[qid].position = _REORDER_OFFSET + i
        db.session.flush()
        for i, qid in enumerate(question_ids, start=1):
            questions[qid].position = i
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Questions reordered stage_id=%s order=%s", stage.id, question_ids,
                extra={"tenant_id": tenant_id, "stage_id": stage.id})
    return [questions[qid] for qid in question_ids]


def list_questions(stage_id: int) -> list[Question]:
    return list(
        db.session.execute(
            select(Question).where(Question.stage_id == stage_id).order_by(Question.position)
        ).scalars()
    )


def get_current_questions(job: Job) -> dict:
    """Unanswered, non-skipped questions of the job's current stage.

    A job that has not entered a stage yet is shown the initial stage's
    questions; the job itself is not moved.
    """
    if job.current_stage_id is not None:
        stage = db.session.get(Stage, job.current_stage_id)
    else:
        stage = stage_graph.get_initial_stage(job.tenant_id)
    if stage is None:
        return {"job_id": job.id, "stage": None, "questions": []}

    answered = set(
        db.session.execute(
            select(Response.question_id).where(Response.job_id == job.id)
        ).scalars()
    )
    pending = [
        q for q in list_questions(stage.id)
        if q.id not in answered and not should_skip(job, q)
    ]
    return {
        "job_id": job.id,
        "stage": stage.to_dict(),
        "questions": [q.to_dict() for q in pending],
    }


# ── Task templates ────────────────────────────────────────────────────────────


def create_task_template(stage_id: int, tenant_id: int | None, data: dict, *, commit: bool = True) -> TaskTemplate:
    """Attach a task template to a stage.

    Raises:
        NotFoundError: stage not owned by the tenant.
        ValidationError: missing title, unknown type/priority/assignee rule,
            negative offsets.
    """
    stage = stage_graph.get_owned_stage(stage_id, tenant_id)

    errors = {}
    title = (data.get("title") or "").strip()
    if not title:
        errors["title"] = "title is required"
    task_type = data.get("task_type", "checklist")
    if task_type not in TASK_TYPES:
        errors["task_type"] = f"must be one of: {', '.join(sorted(TASK_TYPES))}"
    priority = data.get("priority", "normal")
    if priority not in TASK_PRIORITIES:
        errors["priority"] = f"must be one of: {', '.join(sorted(TASK_PRIORITIES))}"
    assignee = data.get("auto_assign_to", "creator")
    if assignee not in ASSIGNEE_RULES:
        errors["auto_assign_to"] = f"must be one of: {', '.join(sorted(ASSIGNEE_RULES))}"
    offset = data.get("due_date_offset_hours", 0) or 0
    if not isinstance(offset, int) or offset < 0:
        errors["due_date_offset_hours"] = "must be a non-negative integer"
    sla = data.get("sla_hours")
    if sla is not None and (not isinstance(sla, int) or sla <= 0):
        errors["sla_hours"] = "must be a positive integer"
    if errors:
        raise ValidationError("Invalid task template", details=errors)

    template = TaskTemplate(
        stage_id=stage.id,
        task_type=task_type,
        title=title,
        description=data.get("description"),
        subtasks=list(data.get("subtasks") or []),
        upload_required=bool(data.get("upload_required", False)),
        due_date_offset_hours=offset,
        sla_hours=sla,
        priority=priority,
        auto_assign_to=assignee,
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(template)
    db.session.flush()
    if commit:
        db.session.commit()
        logger.info("Task template created id=%s stage_id=%s", template.id, stage.id,
                    extra={"tenant_id": tenant_id, "stage_id": stage.id})
    return template
