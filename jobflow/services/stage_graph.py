"""Stage graph store - stage sets, transitions and graph integrity.

Resolution rule: a tenant that owns at least one active stage uses only
its own stages; every other tenant uses the global set (tenant_id NULL).
The two sets are never merged.

Integrity rules enforced when definitions are written:
  - a transition may not point at its own source stage
  - both ends of a transition belong to the same stage set
  - no cycle may be reachable purely through automatic transitions;
    checked with a bounded iterative DFS over an adjacency list

Rules:
  - tenant_id is always an explicit parameter (never from g).
  - db.session.commit() happens only in service modules.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import func, or_, select

from jobflow.core.exceptions import (
    ConflictError,
    GraphIntegrityError,
    NotFoundError,
    ValidationError,
)
from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.workflow import (
    JOB_STATUSES,
    STAGE_KINDS,
    Question,
    Stage,
    TaskTemplate,
    Transition,
)
from jobflow.services.conditions import validate_condition

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 50


# ── Stage set resolution ──────────────────────────────────────────────────────


def tenant_has_own_stages(tenant_id: int | None) -> bool:
    if tenant_id is None:
        return False
    found = db.session.execute(
        select(Stage.id).where(Stage.tenant_id == tenant_id, Stage.is_active.is_(True)).limit(1)
    ).first()
    return found is not None


def resolve_scope(tenant_id: int | None) -> int | None:
    """Return the tenant_id whose stages apply (None = global defaults)."""
    return tenant_id if tenant_has_own_stages(tenant_id) else None


def _scope_filter(scope: int | None):
    return Stage.tenant_id.is_(None) if scope is None else Stage.tenant_id == scope


def list_stages(tenant_id: int | None, include_inactive: bool = False) -> list[Stage]:
    """Return the resolved stage set ordered by position."""
    stmt = select(Stage).where(_scope_filter(resolve_scope(tenant_id)))
    if not include_inactive:
        stmt = stmt.where(Stage.is_active.is_(True))
    return list(db.session.execute(stmt.order_by(Stage.position)).scalars())


def get_initial_stage(tenant_id: int | None) -> Stage | None:
    """Lowest-position active stage of the resolved set."""
    stages = list_stages(tenant_id)
    return stages[0] if stages else None


def get_stage(stage_id: int, tenant_id: int | None = None) -> Stage:
    """Fetch a stage that belongs to the tenant's resolved stage set.

    Raises:
        NotFoundError: missing, or outside the resolved set.
    """
    stage = db.session.get(Stage, stage_id)
    if stage is None or stage.tenant_id != resolve_scope(tenant_id):
        raise NotFoundError(resource="Stage", resource_id=stage_id, tenant_id=tenant_id)
    return stage


def get_owned_stage(stage_id: int, tenant_id: int | None) -> Stage:
    """Fetch a stage from the tenant's own set (tenant_id None = global) for editing.

    Raises:
        NotFoundError: missing, or owned by another set.
    """
    stage = db.session.get(Stage, stage_id)
    if stage is None or stage.tenant_id != tenant_id:
        raise NotFoundError(resource="Stage", resource_id=stage_id, tenant_id=tenant_id)
    return stage


def outgoing_transitions(stage_id: int) -> list[Transition]:
    """Transitions leaving ``stage_id`` in declaration order."""
    return list(
        db.session.execute(
            select(Transition)
            .where(Transition.from_stage_id == stage_id)
            .order_by(Transition.id)
        ).scalars()
    )


# ── Stage definitions ─────────────────────────────────────────────────────────


def _validate_stage_fields(data: dict) -> None:
    errors = {}
    if not (data.get("name") or "").strip():
        errors["name"] = "name is required"
    position = data.get("position")
    if not isinstance(position, int) or isinstance(position, bool) or position < 1:
        errors["position"] = "position must be a positive integer"
    status = data.get("maps_to_status", "planning")
    if status not in JOB_STATUSES:
        errors["maps_to_status"] = f"must be one of: {', '.join(sorted(JOB_STATUSES))}"
    kind = data.get("kind", "standard")
    if kind not in STAGE_KINDS:
        errors["kind"] = f"must be one of: {', '.join(sorted(STAGE_KINDS))}"
    min_h = data.get("min_duration_hours", 0) or 0
    max_h = data.get("max_duration_hours")
    if max_h is not None and max_h <= min_h:
        errors["max_duration_hours"] = "must be greater than min_duration_hours"
    if errors:
        raise ValidationError("Invalid stage definition", details=errors)


def create_stage(tenant_id: int | None, data: dict, *, commit: bool = True) -> Stage:
    """Create a stage in the tenant's own set (tenant_id None = global).

    Raises:
        ValidationError: missing name, bad position/status/kind/durations.
        ConflictError: position already used in that set.
    """
    _validate_stage_fields(data)
    clash = db.session.execute(
        select(Stage.id).where(_scope_filter(tenant_id), Stage.position == data["position"])
    ).first()
    if clash is not None:
        raise ConflictError("Stage", "position", str(data["position"]))

    stage = Stage(
        tenant_id=tenant_id,
        name=data["name"].strip(),
        description=data.get("description"),
        position=data["position"],
        maps_to_status=data.get("maps_to_status", "planning"),
        kind=data.get("kind", "standard"),
        min_duration_hours=data.get("min_duration_hours", 0) or 0,
        max_duration_hours=data.get("max_duration_hours"),
        requires_approval=bool(data.get("requires_approval", False)),
        is_active=bool(data.get("is_active", True)),
    )
    db.session.add(stage)
    db.session.flush()
    if commit:
        db.session.commit()
        logger.info(
            "Stage created id=%s tenant_id=%s position=%s",
            stage.id, tenant_id, stage.position,
            extra={"tenant_id": tenant_id, "stage_id": stage.id},
        )
    return stage


_STAGE_FIELDS = (
    "name", "description", "position", "maps_to_status", "kind",
    "min_duration_hours", "max_duration_hours", "requires_approval", "is_active",
)


def update_stage(stage_id: int, tenant_id: int | None, data: dict) -> Stage:
    """Update the editable fields of a stage the tenant owns.

    Fields missing from ``data`` keep their current value.

    Raises:
        NotFoundError: stage not owned by the tenant.
        ValidationError: the merged definition is invalid.
        ConflictError: new position already used in that set.
    """
    stage = get_owned_stage(stage_id, tenant_id)
    merged = {field: getattr(stage, field) for field in _STAGE_FIELDS}
    merged.update({k: v for k, v in data.items() if k in _STAGE_FIELDS})
    _validate_stage_fields(merged)

    if merged["position"] != stage.position:
        clash = db.session.execute(
            select(Stage.id).where(
                _scope_filter(tenant_id), Stage.position == merged["position"], Stage.id != stage.id,
            )
        ).first()
        if clash is not None:
            raise ConflictError("Stage", "position", str(merged["position"]))

    stage.name = merged["name"].strip()
    stage.description = merged["description"]
    stage.position = merged["position"]
    stage.maps_to_status = merged["maps_to_status"]
    stage.kind = merged["kind"]
    stage.min_duration_hours = merged["min_duration_hours"] or 0
    stage.max_duration_hours = merged["max_duration_hours"]
    stage.requires_approval = bool(merged["requires_approval"])
    stage.is_active = bool(merged["is_active"])
    db.session.commit()
    logger.info(
        "Stage updated id=%s tenant_id=%s fields=%s", stage.id, tenant_id, sorted(data),
        extra={"tenant_id": tenant_id, "stage_id": stage.id},
    )
    return stage


def delete_stage(stage_id: int, tenant_id: int | None) -> dict:
    """Delete a stage with its questions, task templates and every transition touching it.

    Audit records and generated tasks are kept with their stage references
    cleared by the foreign keys; the stage's metric rows go with it.

    Returns:
        {"stage_id": id, "transitions": n}

    Raises:
        NotFoundError: stage not owned by the tenant.
        ConflictError: jobs are currently in the stage.
    """
    stage = get_owned_stage(stage_id, tenant_id)
    occupied = db.session.execute(
        select(func.count(Job.id)).where(Job.current_stage_id == stage.id)
    ).scalar()
    if occupied:
        raise ConflictError(
            "Stage", "current_stage_id", str(stage.id),
            message=f"{occupied} job(s) are currently in stage {stage.id}; move them first",
        )

    edges = list(
        db.session.execute(
            select(Transition).where(
                or_(Transition.from_stage_id == stage.id, Transition.to_stage_id == stage.id)
            )
        ).scalars()
    )
    for edge in edges:
        db.session.delete(edge)
    db.session.flush()
    db.session.delete(stage)
    db.session.commit()
    logger.info(
        "Stage deleted id=%s tenant_id=%s transitions=%d", stage_id, tenant_id, len(edges),
        extra={"tenant_id": tenant_id, "stage_id": stage_id},
    )
    return {"stage_id": stage_id, "transitions": len(edges)}


# ── Transition definitions & integrity ────────────────────────────────────────


def build_automatic_adjacency(
    scope: int | None, exclude_transition_id: int | None = None,
) -> dict[int, list[int]]:
    """Adjacency list of automatic edges inside one stage set."""
    stmt = (
        select(Transition.from_stage_id, Transition.to_stage_id)
        .join(Stage, Stage.id == Transition.from_stage_id)
        .where(Transition.is_automatic.is_(True), _scope_filter(scope))
    )
    if exclude_transition_id is not None:
        stmt = stmt.where(Transition.id != exclude_transition_id)
    adjacency: dict[int, list[int]] = {}
    for from_id, to_id in db.session.execute(stmt.order_by(Transition.id)).all():
        adjacency.setdefault(from_id, []).append(to_id)
    return adjacency


def find_path(
    adjacency: dict[int, list[int]],
    start: int,
    target: int,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> list[int] | None:
    """Return a path ``start → … → target`` over ``adjacency``, or None.

    Iterative DFS with an explicit stack and visited set. Raises
    GraphIntegrityError when a branch is deeper than ``max_depth``.
    """
    visited: set[int] = set()
    stack: list[tuple[int, list[int]]] = [(start, [start])]

    while stack:
        current, path = stack.pop()
        if current == target:
            return path
        if current in visited:
            continue
        visited.add(current)
        if len(path) > max_depth:
            raise GraphIntegrityError(
                f"Stage graph exceeds maximum depth of {max_depth}", path=path,
            )
        for nxt in reversed(adjacency.get(current, [])):
            if nxt not in visited:
                stack.append((nxt, path + [nxt]))

    return None


def check_no_automatic_cycle(
    from_stage_id: int,
    to_stage_id: int,
    scope: int | None,
    exclude_transition_id: int | None = None,
) -> None:
    """Raise GraphIntegrityError if an automatic edge from → to would close a cycle.

    ``exclude_transition_id`` leaves an edge that is being rewritten out
    of the graph.
    """
    if from_stage_id == to_stage_id:
        raise GraphIntegrityError("A transition cannot target its own stage", path=[from_stage_id])
    max_depth = current_app.config.get("STAGE_GRAPH_MAX_DEPTH", DEFAULT_MAX_DEPTH)
    adjacency = build_automatic_adjacency(scope, exclude_transition_id)
    path = find_path(adjacency, to_stage_id, from_stage_id, max_depth)
    if path is not None:
        raise GraphIntegrityError(
            "Transition would create a cycle of automatic transitions",
            path=[from_stage_id] + path,
        )


def _check_transition(tenant_id: int | None, values: dict, transition_id: int | None = None) -> None:
    """Validate a full transition definition against the tenant's own set."""
    from_id = values["from_stage_id"]
    to_id = values["to_stage_id"]
    if from_id == to_id:
        raise GraphIntegrityError("A transition cannot target its own stage", path=[from_id])

    source = db.session.get(Stage, from_id)
    target = db.session.get(Stage, to_id)
    if source is None or source.tenant_id != tenant_id:
        raise NotFoundError(resource="Stage", resource_id=from_id, tenant_id=tenant_id)
    if target is None or target.tenant_id != tenant_id:
        raise NotFoundError(resource="Stage", resource_id=to_id, tenant_id=tenant_id)

    if not values["trigger_response"] and not values["condition"]:
        raise ValidationError(
            "A transition needs a trigger_response or a condition",
            details={"trigger_response": "required when no condition is given"},
        )

    question_id = values["question_id"]
    if question_id is not None:
        question = db.session.get(Question, question_id)
        if question is None:
            raise NotFoundError(resource="Question", resource_id=question_id)
        if question.stage_id != source.id:
            raise ValidationError(
                "question_id must belong to the source stage",
                details={"question_id": f"question {question_id} is not on stage {source.id}"},
            )

    stmt = select(Transition.id).where(
        Transition.from_stage_id == from_id,
        Transition.to_stage_id == to_id,
        Transition.trigger_response == values["trigger_response"],
    )
    if transition_id is not None:
        stmt = stmt.where(Transition.id != transition_id)
    if db.session.execute(stmt).first() is not None:
        raise ConflictError("Transition", "trigger_response", values["trigger_response"])

    if values["is_automatic"]:
        check_no_automatic_cycle(from_id, to_id, tenant_id, exclude_transition_id=transition_id)


def create_transition(tenant_id: int | None, data: dict, *, commit: bool = True) -> Transition:
    """Create a transition between two stages of the same set.

    Raises:
        ValidationError: missing trigger and condition, bad condition,
            question not on the source stage, stages in different sets.
        NotFoundError: unknown stage or question.
        ConflictError: duplicate (from, to, trigger_response).
        GraphIntegrityError: self-loop or automatic cycle.
    """
    from_id = data.get("from_stage_id")
    to_id = data.get("to_stage_id")
    if from_id is None or to_id is None:
        raise ValidationError(
            "from_stage_id and to_stage_id are required",
            details={"from_stage_id": "required", "to_stage_id": "required"},
        )

    values = {
        "from_stage_id": from_id,
        "to_stage_id": to_id,
        "trigger_response": (data.get("trigger_response") or "").strip(),
        "condition": validate_condition(data.get("condition")),
        "question_id": data.get("question_id"),
        "is_automatic": bool(data.get("is_automatic", True)),
    }
    _check_transition(tenant_id, values)

    transition = Transition(
        **values,
        action=data.get("action"),
        requires_admin_override=bool(data.get("requires_admin_override", False)),
    )
    db.session.add(transition)
    db.session.flush()
    if commit:
        db.session.commit()
        logger.info(
            "Transition created id=%s %s→%s automatic=%s",
            transition.id, from_id, to_id, transition.is_automatic,
            extra={"tenant_id": tenant_id, "stage_id": from_id},
        )
    return transition


def _owned_transition(transition_id: int, tenant_id: int | None) -> Transition:
    transition = db.session.get(Transition, transition_id)
    if transition is None or transition.from_stage.tenant_id != tenant_id:
        raise NotFoundError(resource="Transition", resource_id=transition_id, tenant_id=tenant_id)
    return transition


def update_transition(transition_id: int, tenant_id: int | None, data: dict) -> Transition:
    """Rewrite a transition. The source stage is fixed; everything else may change.

    The merged edge goes through the same checks as a new one, so turning
    an edge automatic or pointing an automatic edge elsewhere is rejected
    when it would close an automatic cycle.

    Raises:
        NotFoundError: transition, target stage or question not found.
        ValidationError: bad condition, question not on the source stage,
            attempt to move the source stage.
        ConflictError: duplicate (from, to, trigger_response).
        GraphIntegrityError: self-loop or automatic cycle.
    """
    transition = _owned_transition(transition_id, tenant_id)
    if "from_stage_id" in data and data["from_stage_id"] != transition.from_stage_id:
        raise ValidationError(
            "The source stage of a transition cannot be changed",
            details={"from_stage_id": "delete the transition and create a new one"},
        )

    values = {
        "from_stage_id": transition.from_stage_id,
        "to_stage_id": data.get("to_stage_id", transition.to_stage_id),
        "trigger_response": (
            (data.get("trigger_response") or "").strip()
            if "trigger_response" in data else transition.trigger_response
        ),
        "condition": (
            validate_condition(data.get("condition"))
            if "condition" in data else transition.condition
        ),
        "question_id": data.get("question_id", transition.question_id),
        "is_automatic": bool(data.get("is_automatic", transition.is_automatic)),
    }
    _check_transition(tenant_id, values, transition_id=transition.id)

    for field, value in values.items():
        setattr(transition, field, value)
    if "action" in data:
        transition.action = data["action"]
    if "requires_admin_override" in data:
        transition.requires_admin_override = bool(data["requires_admin_override"])
    db.session.commit()
    logger.info(
        "Transition updated id=%s %s→%s automatic=%s",
        transition.id, transition.from_stage_id, transition.to_stage_id, transition.is_automatic,
        extra={"tenant_id": tenant_id, "stage_id": transition.from_stage_id},
    )
    return transition


def delete_transition(transition_id: int, tenant_id: int | None) -> None:
    transition = _owned_transition(transition_id, tenant_id)
    from_id = transition.from_stage_id
    db.session.delete(transition)
    db.session.commit()
    logger.info(
        "Transition deleted id=%s", transition_id,
        extra={"tenant_id": tenant_id, "stage_id": from_id},
    )


# ── Tenant customisation ──────────────────────────────────────────────────────


def _children(model, stage_column, stage_id: int, order_column) -> list:
    return list(
        db.session.execute(
            select(model).where(stage_column == stage_id).order_by(order_column)
        ).scalars()
    )


def copy_global_stages_to_tenant(tenant_id: int) -> dict:
    """Copy the global workflow (stages, questions, templates, transitions) to a tenant.

    Ids are remapped, including question references inside transitions
    and skip conditions. The tenant must not already own stages.

    Returns:
        {"stages": n, "questions": n, "task_templates": n, "transitions": n}

    Raises:
        ConflictError: the tenant already has its own stages.
    """
    if tenant_has_own_stages(tenant_id):
        raise ConflictError("Stage", "tenant_id", str(tenant_id))

    globals_ = list(
        db.session.execute(
            select(Stage).where(Stage.tenant_id.is_(None)).order_by(Stage.position)
        ).scalars()
    )
    stage_map: dict[int, int] = {}
    question_map: dict[int, int] = {}
    copied_questions: list[Question] = []
    counts = {"stages": 0, "questions": 0, "task_templates": 0, "transitions": 0}

    for src in globals_:
        stage = Stage(
            tenant_id=tenant_id,
            name=src.name,
            description=src.description,
            position=src.position,
            maps_to_status=src.maps_to_status,
            kind=src.kind,
            min_duration_hours=src.min_duration_hours,
            max_duration_hours=src.max_duration_hours,
            requires_approval=src.requires_approval,
            is_active=src.is_active,
        )
        db.session.add(stage)
        db.session.flush()
        stage_map[src.id] = stage.id
        counts["stages"] += 1

        for q in _children(Question, Question.stage_id, src.id, Question.position):
            clone = Question(
                stage_id=stage.id,
                text=q.text,
                response_type=q.response_type,
                response_options=q.response_options,
                position=q.position,
                is_required=q.is_required,
                skip_conditions=q.skip_conditions,
                help_text=q.help_text,
            )
            db.session.add(clone)
            db.session.flush()
            question_map[q.id] = clone.id
            copied_questions.append(clone)
            counts["questions"] += 1

        for tpl in _children(TaskTemplate, TaskTemplate.stage_id, src.id, TaskTemplate.id):
            db.session.add(TaskTemplate(
                stage_id=stage.id,
                task_type=tpl.task_type,
                title=tpl.title,
                description=tpl.description,
                subtasks=list(tpl.subtasks or []),
                upload_required=tpl.upload_required,
                due_date_offset_hours=tpl.due_date_offset_hours,
                sla_hours=tpl.sla_hours,
                priority=tpl.priority,
                auto_assign_to=tpl.auto_assign_to,
                is_active=tpl.is_active,
            ))
            counts["task_templates"] += 1

    # Skip conditions may reference questions on other stages
    for clone in copied_questions:
        conditions = clone.skip_conditions or {}
        previous = conditions.get("previous_responses")
        if previous:
            clone.skip_conditions = {
                **conditions,
                "previous_responses": [
                    {**cond, "question_id": question_map.get(cond.get("question_id"), cond.get("question_id"))}
                    for cond in previous
                ],
            }

    for src in globals_:
        for tr in outgoing_transitions(src.id):
            db.session.add(Transition(
                from_stage_id=stage_map[tr.from_stage_id],
                to_stage_id=stage_map[tr.to_stage_id],
                trigger_response=tr.trigger_response,
                condition=tr.condition,
                question_id=question_map.get(tr.question_id) if tr.question_id else None,
                action=tr.action,
                is_automatic=tr.is_automatic,
                requires_admin_override=tr.requires_admin_override,
            ))
            counts["transitions"] += 1

    db.session.commit()
    logger.info(
        "Copied global workflow to tenant_id=%s: %s", tenant_id, counts,
        extra={"tenant_id": tenant_id},
    )
    return counts
