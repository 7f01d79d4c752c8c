"""
HTTP tests for the progression, stage configuration, job task, reporting
and health blueprints.

Covers:
    1. Request context (tenant / actor headers, unknown tenant)
    2. Progression endpoints (start, responses, override, reads)
    3. Stage configuration endpoints (permissions, graph integrity → 409, edits)
    4. Job task endpoints
    5. Reporting and health endpoints
"""

import pytest

from jobflow.models import db
from jobflow.models.progression import JobTask
from jobflow.services import stage_audit

pytestmark = pytest.mark.integration

BASE = "/api/v1"


@pytest.fixture()
def owner_headers(default_tenant, users):
    return {"X-Tenant-ID": str(default_tenant.id), "X-Actor-ID": str(users.owner)}


@pytest.fixture()
def member_headers(default_tenant, users):
    return {"X-Tenant-ID": str(default_tenant.id), "X-Actor-ID": str(users.member)}


# ═════════════════════════════════════════════════════════════════════════════
# 1. REQUEST CONTEXT
# ═════════════════════════════════════════════════════════════════════════════


def test_unknown_tenant_is_forbidden(client, job):
    res = client.get(f"{BASE}/jobs/{job.id}/current-questions", headers={"X-Tenant-ID": "9999"})
    assert res.status_code == 403
    assert res.get_json()["code"] == "ERR_FORBIDDEN"


def test_malformed_tenant_header_is_rejected(client, job):
    res = client.get(f"{BASE}/jobs/{job.id}/current-questions", headers={"X-Tenant-ID": "abc"})
    assert res.status_code == 400


def test_tenant_from_query_string(client, job, workflow, default_tenant):
    res = client.get(f"{BASE}/jobs/{job.id}/current-questions?tenant_id={default_tenant.id}")
    assert res.status_code == 200


def test_request_id_header_is_echoed(client):
    res = client.get(f"{BASE}/health/ready", headers={"X-Request-ID": "abc123"})
    assert res.headers["X-Request-ID"] == "abc123"
    assert "X-Request-Duration-Ms" in res.headers


# ═════════════════════════════════════════════════════════════════════════════
# 2. PROGRESSION
# ═════════════════════════════════════════════════════════════════════════════


def test_start_then_answer(client, job, workflow, owner_headers):
    res = client.post(f"{BASE}/jobs/{job.id}/start", headers=owner_headers)
    assert res.status_code == 201
    assert res.get_json()["job"]["current_stage_id"] == workflow.lead

    res = client.post(f"{BASE}/jobs/{job.id}/start", headers=owner_headers)
    assert res.status_code == 200
    assert res.get_json()["started"] is False

    res = client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_qualified, "response_value": "yes"},
        headers=owner_headers,
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["outcome"] == "transitioned"
    assert body["to_stage_id"] == workflow.quote
    assert body["tasks_created"] == 1


def test_current_questions_do_not_move_job(client, job, workflow, owner_headers):
    res = client.get(f"{BASE}/jobs/{job.id}/current-questions", headers=owner_headers)
    assert res.status_code == 200
    body = res.get_json()
    assert body["stage"]["id"] == workflow.lead
    assert [q["id"] for q in body["questions"]] == [workflow.q_qualified, workflow.q_value]

    client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_value, "response_value": "5000"},
        headers=owner_headers,
    )
    body = client.get(f"{BASE}/jobs/{job.id}/current-questions", headers=owner_headers).get_json()
    assert [q["id"] for q in body["questions"]] == [workflow.q_qualified]


def test_response_validation_errors(client, job, workflow, owner_headers):
    res = client.post(f"{BASE}/jobs/{job.id}/responses", json={"response_value": "Yes"}, headers=owner_headers)
    assert res.status_code == 400

    res = client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_value, "response_value": "lots"},
        headers=owner_headers,
    )
    assert res.status_code == 422
    assert "response_value" in res.get_json()["details"]


def test_unknown_job_is_404(client, workflow, owner_headers):
    res = client.post(
        f"{BASE}/jobs/9999/responses",
        json={"question_id": workflow.q_qualified, "response_value": "Yes"},
        headers=owner_headers,
    )
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_override_needs_permission(client, job, workflow, member_headers, owner_headers):
    payload = {"target_stage_id": workflow.build, "reason": "Signed on site"}
    res = client.post(f"{BASE}/jobs/{job.id}/stage-override", json=payload, headers=member_headers)
    assert res.status_code == 403

    res = client.post(f"{BASE}/jobs/{job.id}/stage-override", json=payload, headers=owner_headers)
    assert res.status_code == 200
    body = res.get_json()
    assert body["job"]["current_stage_id"] == workflow.build
    assert body["audit"]["trigger_source"] == "admin_override"


def test_override_without_reason_is_422(client, job, workflow, owner_headers):
    res = client.post(
        f"{BASE}/jobs/{job.id}/stage-override",
        json={"target_stage_id": workflow.build},
        headers=owner_headers,
    )
    assert res.status_code == 422


def test_progression_failure_returns_reference(client, job, workflow, owner_headers, monkeypatch):
    client.post(f"{BASE}/jobs/{job.id}/start", headers=owner_headers)

    def _broken_audit(**kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(stage_audit, "write_stage_audit", _broken_audit)
    res = client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_qualified, "response_value": "Yes"},
        headers=owner_headers,
    )
    assert res.status_code == 500
    body = res.get_json()
    assert body["code"] == "STAGE_PROGRESSION_FAILED"
    assert body["details"]["reference"]
    assert "secret" not in body["error"]


def test_audit_history_and_metrics(client, job, workflow, owner_headers):
    client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_qualified, "response_value": "Yes"},
        headers=owner_headers,
    )

    res = client.get(f"{BASE}/jobs/{job.id}/audit-history", headers=owner_headers)
    assert res.status_code == 200
    body = res.get_json()
    assert body["total"] == 2
    assert [r["trigger_source"] for r in body["items"]] == ["system", "question_response"]

    res = client.get(f"{BASE}/jobs/{job.id}/audit-history?limit=1&offset=1", headers=owner_headers)
    assert [r["trigger_source"] for r in res.get_json()["items"]] == ["question_response"]

    res = client.get(f"{BASE}/jobs/{job.id}/performance-metrics", headers=owner_headers)
    items = res.get_json()["items"]
    assert [m["stage_id"] for m in items] == [workflow.lead, workflow.quote]
    assert items[0]["exited_at"] is not None


def test_non_json_body_is_415(client, job, owner_headers):
    res = client.post(
        f"{BASE}/jobs/{job.id}/responses", data="question_id=1", headers=owner_headers,
        content_type="text/plain",
    )
    assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════════
# 3. STAGE CONFIGURATION
# ═════════════════════════════════════════════════════════════════════════════


def test_list_stages_reports_scope(client, workflow, owner_headers):
    res = client.get(f"{BASE}/stages?include_children=true", headers=owner_headers)
    body = res.get_json()
    assert body["scope"] == "global"
    assert body["total"] == 4
    assert len(body["items"][0]["questions"]) == 2


def test_stage_definitions_need_workflow_edit(client, member_headers):
    res = client.post(f"{BASE}/stages", json={"name": "Survey", "position": 1}, headers=member_headers)
    assert res.status_code == 403


def test_definition_endpoints_need_tenant(client, users):
    res = client.post(
        f"{BASE}/stages", json={"name": "Survey", "position": 1}, headers={"X-Actor-ID": str(users.owner)},
    )
    assert res.status_code == 400


def test_build_tenant_workflow_and_reject_cycle(client, owner_headers):
    ids = []
    for pos, name in enumerate(("Survey", "Design", "Install"), start=1):
        res = client.post(f"{BASE}/stages", json={"name": name, "position": pos}, headers=owner_headers)
        assert res.status_code == 201
        ids.append(res.get_json()["id"])
    a, b, c = ids

    res = client.post(
        f"{BASE}/stages/{a}/questions",
        json={"text": "Survey done?", "response_type": "yes_no"},
        headers=owner_headers,
    )
    assert res.status_code == 201
    question_id = res.get_json()["id"]

    for src, dst, extra in ((a, b, {"question_id": question_id}), (b, c, {})):
        res = client.post(
            f"{BASE}/stages/transitions",
            json={"from_stage_id": src, "to_stage_id": dst, "trigger_response": "Yes", **extra},
            headers=owner_headers,
        )
        assert res.status_code == 201

    res = client.post(
        f"{BASE}/stages/transitions",
        json={"from_stage_id": c, "to_stage_id": a, "trigger_response": "Yes"},
        headers=owner_headers,
    )
    assert res.status_code == 409
    body = res.get_json()
    assert body["code"] == "STAGE_GRAPH_INTEGRITY"
    assert body["details"]["path"] == [c, a, b, c]

    res = client.get(f"{BASE}/stages", headers=owner_headers)
    assert res.get_json()["scope"] == "tenant"


def test_duplicate_stage_position_is_409(client, owner_headers):
    client.post(f"{BASE}/stages", json={"name": "A", "position": 1}, headers=owner_headers)
    res = client.post(f"{BASE}/stages", json={"name": "B", "position": 1}, headers=owner_headers)
    assert res.status_code == 409


def test_task_template_endpoint(client, owner_headers):
    stage_id = client.post(
        f"{BASE}/stages", json={"name": "Survey", "position": 1}, headers=owner_headers,
    ).get_json()["id"]
    res = client.post(
        f"{BASE}/stages/{stage_id}/task-templates",
        json={"title": "Book surveyor", "task_type": "scheduling", "sla_hours": 24},
        headers=owner_headers,
    )
    assert res.status_code == 201
    assert res.get_json()["sla_hours"] == 24

    res = client.post(
        f"{BASE}/stages/{stage_id}/task-templates",
        json={"title": "Bad", "priority": "whenever"},
        headers=owner_headers,
    )
    assert res.status_code == 422


def test_copy_global_endpoint(client, workflow, owner_headers):
    res = client.post(f"{BASE}/stages/copy-global", headers=owner_headers)
    assert res.status_code == 201
    assert res.get_json()["stages"] == 4

    res = client.post(f"{BASE}/stages/copy-global", headers=owner_headers)
    assert res.status_code == 409


def test_edit_tenant_workflow(client, owner_headers, member_headers):
    ids = [
        client.post(f"{BASE}/stages", json={"name": name, "position": pos}, headers=owner_headers).get_json()["id"]
        for pos, name in enumerate(("Survey", "Design", "Install"), start=1)
    ]
    a, b, c = ids

    res = client.put(f"{BASE}/stages/{a}", json={"name": "Site survey"}, headers=owner_headers)
    assert res.status_code == 200
    assert res.get_json()["name"] == "Site survey"
    res = client.put(f"{BASE}/stages/{a}", json={"name": "Nope"}, headers=member_headers)
    assert res.status_code == 403

    q1, q2 = (
        client.post(f"{BASE}/stages/{a}/questions", json={"text": text}, headers=owner_headers).get_json()["id"]
        for text in ("Access arranged?", "Survey done?")
    )
    res = client.post(
        f"{BASE}/stages/{a}/questions/reorder", json={"question_ids": [q2, q1]}, headers=owner_headers,
    )
    assert res.status_code == 200
    assert [(q["id"], q["position"]) for q in res.get_json()["items"]] == [(q2, 1), (q1, 2)]
    res = client.post(f"{BASE}/stages/{a}/questions/reorder", json={"question_ids": [q2]}, headers=owner_headers)
    assert res.status_code == 422

    res = client.put(f"{BASE}/stages/questions/{q1}", json={"help_text": "Keys from client"}, headers=owner_headers)
    assert res.status_code == 200
    assert res.get_json()["help_text"] == "Keys from client"

    edges = []
    for src, dst in ((a, b), (b, c)):
        res = client.post(
            f"{BASE}/stages/transitions",
            json={"from_stage_id": src, "to_stage_id": dst, "trigger_response": "Yes"},
            headers=owner_headers,
        )
        edges.append(res.get_json()["id"])
    back = client.post(
        f"{BASE}/stages/transitions",
        json={"from_stage_id": c, "to_stage_id": a, "trigger_response": "Redo", "is_automatic": False},
        headers=owner_headers,
    ).get_json()["id"]

    res = client.put(f"{BASE}/stages/transitions/{back}", json={"is_automatic": True}, headers=owner_headers)
    assert res.status_code == 409
    assert res.get_json()["details"]["path"] == [c, a, b, c]

    res = client.delete(f"{BASE}/stages/transitions/{edges[1]}", headers=owner_headers)
    assert res.status_code == 204
    res = client.put(f"{BASE}/stages/transitions/{back}", json={"is_automatic": True}, headers=owner_headers)
    assert res.status_code == 200

    res = client.delete(f"{BASE}/stages/questions/{q2}", headers=owner_headers)
    assert res.status_code == 200
    res = client.delete(f"{BASE}/stages/{b}", headers=owner_headers)
    assert res.status_code == 200
    assert res.get_json() == {"stage_id": b, "transitions": 1}
    res = client.get(f"{BASE}/stages/{b}", headers=owner_headers)
    assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# 4. JOB TASKS
# ═════════════════════════════════════════════════════════════════════════════


def test_task_list_and_update(client, job, workflow, member_headers, owner_headers):
    client.post(f"{BASE}/jobs/{job.id}/start", headers=owner_headers)

    res = client.get(f"{BASE}/jobs/{job.id}/tasks", headers=member_headers)
    tasks = res.get_json()["items"]
    assert len(tasks) == 1
    task_id = tasks[0]["id"]

    res = client.patch(
        f"{BASE}/jobs/{job.id}/tasks/{task_id}",
        json={"status": "completed", "subtask_updates": [{"index": 0, "completed": True}], "notes": "ok"},
        headers=member_headers,
    )
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "completed"
    assert body["subtasks"][0]["completed"] is True
    assert body["subtasks"][1]["completed"] is False
    assert db.session.get(JobTask, task_id).completed_at is not None

    res = client.patch(
        f"{BASE}/jobs/{job.id}/tasks/{task_id}", json={"status": "cancelled"}, headers=member_headers,
    )
    assert res.status_code == 422


def test_client_role_cannot_update_tasks(client, job, workflow, default_tenant, users, owner_headers):
    client.post(f"{BASE}/jobs/{job.id}/start", headers=owner_headers)
    task_id = JobTask.query.filter_by(job_id=job.id).first().id
    res = client.patch(
        f"{BASE}/jobs/{job.id}/tasks/{task_id}",
        json={"status": "in_progress"},
        headers={"X-Tenant-ID": str(default_tenant.id), "X-Actor-ID": str(users.client)},
    )
    assert res.status_code == 403


# ═════════════════════════════════════════════════════════════════════════════
# 5. REPORTING & HEALTH
# ═════════════════════════════════════════════════════════════════════════════


def test_stage_performance_endpoint(client, job, workflow, owner_headers):
    client.post(
        f"{BASE}/jobs/{job.id}/responses",
        json={"question_id": workflow.q_qualified, "response_value": "Yes"},
        headers=owner_headers,
    )
    res = client.get(f"{BASE}/reports/stage-performance", headers=owner_headers)
    assert res.status_code == 200
    lead = res.get_json()["stages"][0]
    assert lead["stage_id"] == workflow.lead
    assert lead["total_entries"] == 1
    assert lead["conversion_rate"] == 1.0


def test_stage_performance_rejects_bad_dates(client, owner_headers):
    res = client.get(f"{BASE}/reports/stage-performance?date_from=yesterday", headers=owner_headers)
    assert res.status_code == 400
    res = client.get(
        f"{BASE}/reports/stage-performance?date_from=2024-05-01&date_to=2024-04-01", headers=owner_headers,
    )
    assert res.status_code == 400


def test_sla_violations_endpoint(client, owner_headers):
    res = client.get(f"{BASE}/reports/sla-violations", headers=owner_headers)
    assert res.status_code == 200
    assert res.get_json() == {"items": [], "total": 0}


def test_health_endpoints(client, workflow):
    assert client.get(f"{BASE}/health/ready").status_code == 200
    res = client.get(f"{BASE}/health/live")
    assert res.status_code == 200
    body = res.get_json()
    assert body["status"] == "healthy"
    assert body["checks"]["global_workflow"]["stages"] == 4


def test_unknown_route_is_json_404(client):
    res = client.get(f"{BASE}/nope")
    assert res.status_code == 404
    assert res.get_json()["error"] == "Not found"
