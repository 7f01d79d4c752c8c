"""
End-to-end tests for job stage progression.

Covers:
    1. Initial stage entry (start_job, implicit entry on first answer)
    2. Forward progression with audit, metrics and task generation
    3. No-match and skip outcomes leave the job untouched
    4. Numeric threshold progression (85 → no_transition, 92 → transitioned)
    5. Idempotent resubmission and case/whitespace-insensitive matching
    6. Admin override (non-adjacent, backwards, re-entry)
    7. Atomicity: a failed audit write rolls back the whole move
    8. Tenant scoping, per-job locking and concurrent submissions
"""

import threading
import time

import pytest

from jobflow.core.exceptions import NotFoundError, ProgressionError, ValidationError
from jobflow.models import db
from jobflow.models.auth import Tenant
from jobflow.models.job import Job
from jobflow.models.progression import JobTask, Response, StageAuditRecord, StagePerformanceMetric
from jobflow.models.workflow import Question
from jobflow.services import progression_service, stage_audit, stage_graph
from jobflow.services.job_locks import job_lock


def _audits(job_id, trigger_source=None):
    q = StageAuditRecord.query.filter_by(job_id=job_id)
    if trigger_source:
        q = q.filter_by(trigger_source=trigger_source)
    return q.order_by(StageAuditRecord.id).all()


def _reload(job_id):
    db.session.expire_all()
    return db.session.get(Job, job_id)


# ═════════════════════════════════════════════════════════════════════════════
# 1. INITIAL ENTRY
# ═════════════════════════════════════════════════════════════════════════════


def test_start_job_enters_initial_stage(job, users, workflow):
    result = progression_service.start_job(job.id, actor_id=users.owner)

    assert result["started"] is True
    assert result["tasks_created"] == 1
    job = _reload(job.id)
    assert job.current_stage_id == workflow.lead
    assert job.status == "planning"
    assert job.stage_entered_at is not None

    audit, = _audits(job.id)
    assert audit.trigger_source == "system"
    assert audit.from_stage_id is None
    assert audit.to_stage_id == workflow.lead
    assert audit.trigger_details == {"reason": "initial_stage"}

    metric = StagePerformanceMetric.query.filter_by(job_id=job.id).one()
    assert metric.stage_id == workflow.lead
    assert metric.exited_at is None


def test_start_job_is_idempotent(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)
    again = progression_service.start_job(job.id, actor_id=users.owner)

    assert again["started"] is False
    assert again["tasks_created"] == 0
    assert len(_audits(job.id)) == 1
    assert JobTask.query.filter_by(job_id=job.id).count() == 1


def test_start_job_without_stages_is_rejected(job):
    with pytest.raises(ValidationError):
        progression_service.start_job(job.id)
    assert _reload(job.id).current_stage_id is None


def test_first_answer_enters_initial_stage_implicitly(job, users, workflow):
    result = progression_service.submit_response(
        job.id, workflow.q_qualified, "Yes", actor_id=users.owner,
    )

    assert result.outcome == "transitioned"
    sources = [a.trigger_source for a in _audits(job.id)]
    assert sources == ["system", "question_response"]


# ═════════════════════════════════════════════════════════════════════════════
# 2. FORWARD PROGRESSION
# ═════════════════════════════════════════════════════════════════════════════


def test_forward_progression(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)

    result = progression_service.submit_response(
        job.id, workflow.q_qualified, "Yes", actor_id=users.owner,
        source="mobile_app", metadata={"device": "ios"},
    )

    assert result.outcome == "transitioned"
    assert result.stage_progressed is True
    assert result.from_stage_id == workflow.lead
    assert result.to_stage_id == workflow.quote
    assert result.transition_id == workflow.lead_to_quote
    assert result.tasks_created == 1

    job = _reload(job.id)
    assert job.current_stage_id == workflow.quote
    assert job.status == "planning"

    audit = db.session.get(StageAuditRecord, result.audit_id)
    assert audit.trigger_source == "question_response"
    assert audit.from_stage_id == workflow.lead
    assert audit.to_stage_id == workflow.quote
    assert audit.question_id == workflow.q_qualified
    assert audit.response_id == result.response_id
    assert audit.response_value == "Yes"
    assert audit.triggered_by_id == users.owner
    assert audit.trigger_details["source"] == "mobile_app"
    assert audit.trigger_details["metadata"] == {"device": "ios"}
    assert audit.duration_in_previous_stage_hours is not None

    lead_metric = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.lead).one()
    assert lead_metric.exited_at is not None
    assert lead_metric.duration_hours >= 0
    assert lead_metric.conversion_successful is True
    quote_metric = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.quote).one()
    assert quote_metric.exited_at is None

    quote_task = JobTask.query.filter_by(job_id=job.id, stage_id=workflow.quote).one()
    assert quote_task.assigned_to_id == users.foreman


def test_result_serialises(job, users, workflow):
    result = progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)
    data = result.to_dict()
    assert data["outcome"] == "transitioned"
    assert data["stage_progressed"] is True
    assert data["current_stage_id"] == workflow.quote


def test_manual_transition_fires_and_carries_action(job, users, workflow):
    result = progression_service.submit_response(job.id, workflow.q_qualified, "No", actor_id=users.owner)

    assert result.to_stage_id == workflow.handover
    job = _reload(job.id)
    assert job.status == "completed"
    audit = db.session.get(StageAuditRecord, result.audit_id)
    assert audit.trigger_details["action"] == "close_as_unqualified"
    metric = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.lead).one()
    # skipping ahead still counts as forward movement
    assert metric.conversion_successful is True


# ═════════════════════════════════════════════════════════════════════════════
# 3. NO MATCH / SKIP / OTHER STAGE
# ═════════════════════════════════════════════════════════════════════════════


def test_no_matching_transition_leaves_job_untouched(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)
    before = _reload(job.id)
    entered_at, audit_count = before.stage_entered_at, len(_audits(job.id))
    metric_count = StagePerformanceMetric.query.filter_by(job_id=job.id).count()

    result = progression_service.submit_response(job.id, workflow.q_value, "125000", actor_id=users.owner)

    assert result.outcome == "no_transition"
    assert result.stage_progressed is False
    assert result.audit_id is None
    job = _reload(job.id)
    assert job.current_stage_id == workflow.lead
    assert job.stage_entered_at == entered_at
    assert len(_audits(job.id)) == audit_count
    assert StagePerformanceMetric.query.filter_by(job_id=job.id).count() == metric_count
    assert Response.query.filter_by(job_id=job.id, question_id=workflow.q_value).one().response_value == "125000"


def test_skipped_question_records_but_never_transitions(job, users, workflow):
    qualified = db.session.get(Question, workflow.q_qualified)
    qualified.skip_conditions = {"job_types": ["warranty"]}
    db.session.get(Job, job.id).job_type = "warranty"
    db.session.commit()

    result = progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)

    assert result.outcome == "skipped"
    assert _reload(job.id).current_stage_id == workflow.lead
    assert Response.query.filter_by(job_id=job.id).count() == 1


def test_answer_to_question_of_another_stage_is_only_recorded(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)

    result = progression_service.submit_response(job.id, workflow.q_quote_sent, "Yes", actor_id=users.owner)

    assert result.outcome == "recorded"
    assert _reload(job.id).current_stage_id == workflow.lead


def test_invalid_value_is_rejected_without_trace(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)
    audit_count = len(_audits(job.id))

    with pytest.raises(ValidationError) as exc:
        progression_service.submit_response(job.id, workflow.q_qualified, "perhaps", actor_id=users.owner)

    assert "response_value" in exc.value.details
    assert Response.query.filter_by(job_id=job.id).count() == 0
    assert len(_audits(job.id)) == audit_count


def test_unknown_job_and_question_are_not_found(job, workflow):
    with pytest.raises(NotFoundError):
        progression_service.submit_response(9999, workflow.q_qualified, "Yes")
    with pytest.raises(NotFoundError):
        progression_service.submit_response(job.id, 9999, "Yes")


# ═════════════════════════════════════════════════════════════════════════════
# 4. NUMERIC THRESHOLD
# ═════════════════════════════════════════════════════════════════════════════


def test_numeric_threshold_progression(job, users, workflow):
    progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)
    progression_service.submit_response(job.id, workflow.q_quote_sent, "Yes", actor_id=users.owner)
    assert _reload(job.id).current_stage_id == workflow.build

    low = progression_service.submit_response(job.id, workflow.q_progress, "85", actor_id=users.foreman)
    assert low.outcome == "no_transition"
    assert _reload(job.id).current_stage_id == workflow.build

    high = progression_service.submit_response(job.id, workflow.q_progress, "92", actor_id=users.foreman)
    assert high.outcome == "transitioned"
    assert high.to_stage_id == workflow.handover
    job = _reload(job.id)
    assert job.status == "completed"
    assert Response.query.filter_by(job_id=job.id, question_id=workflow.q_progress).one().response_value == "92"


# ═════════════════════════════════════════════════════════════════════════════
# 5. IDEMPOTENCE & NORMALISATION
# ═════════════════════════════════════════════════════════════════════════════


def test_double_submit_creates_one_response_and_one_move(job, users, workflow):
    first = progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)
    second = progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)

    assert first.outcome == "transitioned"
    assert second.outcome == "recorded"
    assert second.response_id == first.response_id
    assert Response.query.filter_by(job_id=job.id, question_id=workflow.q_qualified).count() == 1
    assert len(_audits(job.id, "question_response")) == 1
    assert _reload(job.id).current_stage_id == workflow.quote


def test_matching_ignores_case_and_whitespace(job, users, workflow):
    result = progression_service.submit_response(job.id, workflow.q_qualified, "  yEs ", actor_id=users.owner)
    assert result.outcome == "transitioned"
    assert Response.query.filter_by(job_id=job.id).one().response_value == "Yes"


def test_text_trigger_matches_ignoring_case(job, users, workflow):
    decision = Question(stage_id=workflow.quote, text="Client decision?", response_type="text", position=2)
    db.session.add(decision)
    db.session.commit()
    stage_graph.create_transition(None, {
        "from_stage_id": workflow.quote, "to_stage_id": workflow.build,
        "trigger_response": "Approved", "question_id": decision.id,
    })
    progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)

    result = progression_service.submit_response(job.id, decision.id, "  APPROVED  ", actor_id=users.owner)

    assert result.outcome == "transitioned"
    assert result.to_stage_id == workflow.build


# ═════════════════════════════════════════════════════════════════════════════
# 6. ADMIN OVERRIDE
# ═════════════════════════════════════════════════════════════════════════════


def test_override_across_non_adjacent_stages(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)

    result = progression_service.override_stage(
        job.id, workflow.build, reason="Client signed on site", actor_id=users.owner,
    )

    assert result["job"]["current_stage_id"] == workflow.build
    assert result["job"]["status"] == "active"
    assert result["tasks_created"] == 0
    audit = result["audit"]
    assert audit["trigger_source"] == "admin_override"
    assert audit["from_stage_id"] == workflow.lead
    assert audit["to_stage_id"] == workflow.build
    assert audit["trigger_details"] == {"reason": "Client signed on site"}
    assert audit["triggered_by_id"] == users.owner


def test_override_backwards_marks_visit_unconverted(job, users, workflow):
    progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)
    progression_service.override_stage(job.id, workflow.lead, reason="Re-qualify", actor_id=users.owner)

    metric = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.quote).one()
    assert metric.conversion_successful is False
    assert _reload(job.id).current_stage_id == workflow.lead


def test_override_requires_reason(job, users, workflow):
    with pytest.raises(ValidationError):
        progression_service.override_stage(job.id, workflow.build, reason="  ", actor_id=users.owner)


def test_override_into_current_stage_restarts_the_visit(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)

    result = progression_service.override_stage(job.id, workflow.lead, reason="Restart", actor_id=users.owner)

    assert result["job"]["current_stage_id"] == workflow.lead
    assert result["tasks_created"] == 1
    assert result["audit"]["from_stage_id"] == workflow.lead
    assert result["audit"]["to_stage_id"] == workflow.lead
    metrics = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.lead).order_by(
        StagePerformanceMetric.id
    ).all()
    assert len(metrics) == 2
    assert metrics[0].exited_at is not None
    assert metrics[0].conversion_successful is False
    assert metrics[1].exited_at is None
    assert JobTask.query.filter_by(job_id=job.id, template_id=workflow.t_lead).count() == 2


def test_returning_to_a_stage_creates_new_tasks(job, users, workflow):
    progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)
    progression_service.override_stage(job.id, workflow.lead, reason="Re-qualify", actor_id=users.owner)

    result = progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)

    assert result.outcome == "transitioned"
    assert result.to_stage_id == workflow.quote
    assert result.tasks_created == 1
    assert JobTask.query.filter_by(job_id=job.id, template_id=workflow.t_quote).count() == 2


def test_override_target_outside_stage_set_is_not_found(job, users, workflow):
    other = Tenant(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()
    foreign = stage_graph.create_stage(other.id, {"name": "Theirs", "position": 1})

    with pytest.raises(NotFoundError):
        progression_service.override_stage(job.id, foreign.id, reason="x", actor_id=users.owner)


# ═════════════════════════════════════════════════════════════════════════════
# 7. ATOMICITY
# ═════════════════════════════════════════════════════════════════════════════


def test_failed_audit_write_rolls_back_everything(job, users, workflow, monkeypatch):
    progression_service.start_job(job.id, actor_id=users.owner)
    tasks_before = JobTask.query.filter_by(job_id=job.id).count()

    def _broken_audit(**kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(stage_audit, "write_stage_audit", _broken_audit)

    with pytest.raises(ProgressionError) as exc:
        progression_service.submit_response(job.id, workflow.q_qualified, "Yes", actor_id=users.owner)

    job = _reload(job.id)
    assert job.current_stage_id == workflow.lead
    assert Response.query.filter_by(job_id=job.id).count() == 0
    assert JobTask.query.filter_by(job_id=job.id).count() == tasks_before
    lead_metric = StagePerformanceMetric.query.filter_by(job_id=job.id, stage_id=workflow.lead).one()
    assert lead_metric.exited_at is None

    failure, = _audits(job.id, "error")
    assert failure.to_stage_id is None
    assert failure.to_status is None
    assert failure.from_stage_id == workflow.lead
    assert failure.trigger_details["reference"] == exc.value.reference
    assert failure.trigger_details["attempted_trigger"] == "question_response"
    assert "audit store unavailable" in failure.trigger_details["error"]
    # the caller-facing message carries only the reference
    assert "audit store" not in str(exc.value)


def test_failed_override_is_audited(job, users, workflow, monkeypatch):
    progression_service.start_job(job.id, actor_id=users.owner)

    def _broken_audit(**kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(stage_audit, "write_stage_audit", _broken_audit)

    with pytest.raises(ProgressionError):
        progression_service.override_stage(job.id, workflow.build, reason="jump", actor_id=users.owner)

    assert _reload(job.id).current_stage_id == workflow.lead
    failure, = _audits(job.id, "error")
    assert failure.trigger_details["attempted_trigger"] == "admin_override"


# ═════════════════════════════════════════════════════════════════════════════
# 8. SCOPING & LOCKING
# ═════════════════════════════════════════════════════════════════════════════


def test_job_of_another_tenant_is_not_found(job, workflow):
    other = Tenant(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()

    with pytest.raises(NotFoundError):
        progression_service.submit_response(job.id, workflow.q_qualified, "Yes", tenant_id=other.id)
    with pytest.raises(NotFoundError):
        progression_service.get_job(job.id, other.id)


def test_question_outside_resolved_set_is_not_found(job, default_tenant, workflow):
    stage_graph.copy_global_stages_to_tenant(default_tenant.id)

    # the tenant now runs on its own copy; global questions no longer apply
    with pytest.raises(NotFoundError):
        progression_service.submit_response(job.id, workflow.q_qualified, "Yes")


@pytest.mark.unit
def test_job_lock_serialises_same_job():
    events = []

    def _worker(name):
        with job_lock(42):
            events.append(f"{name}-in")
            time.sleep(0.05)
            events.append(f"{name}-out")

    threads = [threading.Thread(target=_worker, args=(n,)) for n in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # no interleaving: every "in" is directly followed by its own "out"
    assert events[0][0] == events[1][0]
    assert events[2][0] == events[3][0]


def test_concurrent_submissions_move_the_job_once(app, job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)
    job_id = job.id
    start, done = threading.Barrier(2), threading.Barrier(2)
    outcomes, errors = [], []

    def _worker():
        with app.app_context():
            start.wait()
            try:
                result = progression_service.submit_response(
                    job_id, workflow.q_qualified, "Yes", actor_id=users.owner,
                )
                outcomes.append(result.outcome)
            except Exception as exc:
                errors.append(exc)
            # leave the context only once both submissions have committed
            done.wait()

    threads = [threading.Thread(target=_worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sorted(outcomes) == ["recorded", "transitioned"]
    assert _reload(job_id).current_stage_id == workflow.quote
    moves = _audits(job_id, "question_response")
    assert len(moves) == 1
    assert moves[0].to_stage_id == workflow.quote
    assert Response.query.filter_by(job_id=job_id, question_id=workflow.q_qualified).count() == 1
