"""
Stage configuration blueprint: workflow definitions per tenant.

Endpoints:
    GET  /api/v1/stages                          - resolved stage set of the tenant
    GET  /api/v1/stages/<stage_id>               - one stage with questions, templates, transitions
    POST /api/v1/stages                          - create a tenant stage
    POST /api/v1/stages/transitions              - create a transition (graph integrity checked)
    POST /api/v1/stages/<stage_id>/questions     - attach a question
    POST /api/v1/stages/<stage_id>/task-templates - attach a task template
    POST /api/v1/stages/copy-global              - copy the global workflow into the tenant
    PUT  /api/v1/stages/<stage_id>               - update a stage
    DELETE /api/v1/stages/<stage_id>             - delete a stage (409 while jobs are in it)
    PUT  /api/v1/stages/transitions/<id>         - update a transition (graph integrity re-checked)
    DELETE /api/v1/stages/transitions/<id>       - delete a transition
    PUT  /api/v1/stages/questions/<id>           - update a question
    DELETE /api/v1/stages/questions/<id>         - delete a question and its bound transitions
    POST /api/v1/stages/<stage_id>/questions/reorder - renumber a stage's questions

Writes go to the calling tenant's own stage set and need the
``workflow_edit`` permission. The global set is maintained through the
``flask seed-default-stages`` command.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from jobflow.blueprints import current_actor_id, current_tenant_id, register_error_handlers
from jobflow.services import question_store, stage_graph
from jobflow.services.permission import check_permission
from jobflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

stage_config_bp = Blueprint("stage_config", __name__, url_prefix="/api/v1")
register_error_handlers(stage_config_bp)


def _editor_tenant() -> tuple[int | None, tuple | None]:
    """Tenant whose definitions are being edited, after the permission check."""
    tenant_id = current_tenant_id()
    if tenant_id is None:
        return None, api_error(E.VALIDATION_REQUIRED, "tenant_id is required")
    check_permission(tenant_id, current_actor_id(), "workflow_edit")
    return tenant_id, None


# ═════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════


@stage_config_bp.route("/stages", methods=["GET"])
def list_stages():
    """Stages of the tenant's resolved set in position order.

    Query params: include_inactive (bool), include_children (bool)
    """
    tenant_id = current_tenant_id()
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    include_children = request.args.get("include_children", "false").lower() == "true"
    stages = stage_graph.list_stages(tenant_id, include_inactive=include_inactive)
    return jsonify({
        "scope": "global" if stage_graph.resolve_scope(tenant_id) is None else "tenant",
        "items": [s.to_dict(include_children=include_children) for s in stages],
        "total": len(stages),
    }), 200


@stage_config_bp.route("/stages/<int:stage_id>", methods=["GET"])
def get_stage(stage_id):
    stage = stage_graph.get_stage(stage_id, current_tenant_id())
    return jsonify(stage.to_dict(include_children=True)), 200


# ═════════════════════════════════════════════════════════════════════════
# Definition writes
# ═════════════════════════════════════════════════════════════════════════


@stage_config_bp.route("/stages", methods=["POST"])
def create_stage():
    """Create a stage in the tenant's own set.

    Body: {name, position, description?, maps_to_status?, kind?,
           min_duration_hours?, max_duration_hours?, requires_approval?}
    """
    tenant_id, err = _editor_tenant()
    if err:
        return err
    stage = stage_graph.create_stage(tenant_id, request.get_json(silent=True) or {})
    return jsonify(stage.to_dict()), 201


@stage_config_bp.route("/stages/transitions", methods=["POST"])
def create_transition():
    """Create a transition between two of the tenant's stages.

    Body: {from_stage_id, to_stage_id, trigger_response?, condition?,
           question_id?, action?, is_automatic?, requires_admin_override?}
    Returns 409 STAGE_GRAPH_INTEGRITY with the offending path when the
    edge would close a cycle of automatic transitions.
    """
    tenant_id, err = _editor_tenant()
    if err:
        return err
    transition = stage_graph.create_transition(tenant_id, request.get_json(silent=True) or {})
    return jsonify(transition.to_dict()), 201


@stage_config_bp.route("/stages/<int:stage_id>/questions", methods=["POST"])
def create_question(stage_id):
    """Body: {text, response_type?, response_options?, position?, is_required?,
    skip_conditions?, help_text?}"""
    tenant_id, err = _editor_tenant()
    if err:
        return err
    question = question_store.create_question(stage_id, tenant_id, request.get_json(silent=True) or {})
    return jsonify(question.to_dict()), 201


@stage_config_bp.route("/stages/<int:stage_id>/task-templates", methods=["POST"])
def create_task_template(stage_id):
    tenant_id, err = _editor_tenant()
    if err:
        return err
    template = question_store.create_task_template(stage_id, tenant_id, request.get_json(silent=True) or {})
    return jsonify(template.to_dict()), 201


@stage_config_bp.route("/stages/copy-global", methods=["POST"])
def copy_global():
    """Give the tenant an editable copy of the global workflow.

    Returns: counts of copied stages, questions, templates, transitions (201).
    """
    tenant_id, err = _editor_tenant()
    if err:
        return err
    counts = stage_graph.copy_global_stages_to_tenant(tenant_id)
    return jsonify(counts), 201


# ═════════════════════════════════════════════════════════════════════════
# Definition edits
# ═════════════════════════════════════════════════════════════════════════


@stage_config_bp.route("/stages/<int:stage_id>", methods=["PUT"])
def update_stage(stage_id):
    """Partial update; fields left out keep their value."""
    tenant_id, err = _editor_tenant()
    if err:
        return err
    stage = stage_graph.update_stage(stage_id, tenant_id, request.get_json(silent=True) or {})
    return jsonify(stage.to_dict()), 200


@stage_config_bp.route("/stages/<int:stage_id>", methods=["DELETE"])
def delete_stage(stage_id):
    """Refused with 409 while jobs sit in the stage."""
    tenant_id, err = _editor_tenant()
    if err:
        return err
    return jsonify(stage_graph.delete_stage(stage_id, tenant_id)), 200


@stage_config_bp.route("/stages/transitions/<int:transition_id>", methods=["PUT"])
def update_transition(transition_id):
    """Body: any of {to_stage_id, trigger_response, condition, question_id,
    action, is_automatic, requires_admin_override}"""
    tenant_id, err = _editor_tenant()
    if err:
        return err
    transition = stage_graph.update_transition(transition_id, tenant_id, request.get_json(silent=True) or {})
    return jsonify(transition.to_dict()), 200


@stage_config_bp.route("/stages/transitions/<int:transition_id>", methods=["DELETE"])
def delete_transition(transition_id):
    tenant_id, err = _editor_tenant()
    if err:
        return err
    stage_graph.delete_transition(transition_id, tenant_id)
    return "", 204


@stage_config_bp.route("/stages/questions/<int:question_id>", methods=["PUT"])
def update_question(question_id):
    tenant_id, err = _editor_tenant()
    if err:
        return err
    question = question_store.update_question(question_id, tenant_id, request.get_json(silent=True) or {})
    return jsonify(question.to_dict()), 200


@stage_config_bp.route("/stages/questions/<int:question_id>", methods=["DELETE"])
def delete_question(question_id):
    tenant_id, err = _editor_tenant()
    if err:
        return err
    return jsonify(question_store.delete_question(question_id, tenant_id)), 200


@stage_config_bp.route("/stages/<int:stage_id>/questions/reorder", methods=["POST"])
def reorder_questions(stage_id):
    """Body: {question_ids: [...]} listing every question of the stage in its new order."""
    tenant_id, err = _editor_tenant()
    if err:
        return err
    data = request.get_json(silent=True) or {}
    questions = question_store.reorder_questions(stage_id, tenant_id, data.get("question_ids"))
    return jsonify({"items": [q.to_dict() for q in questions], "total": len(questions)}), 200
