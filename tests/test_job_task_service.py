"""
Tests for job task updates.

Covers:
    1. Status changes (completed_at, re-open, illegal moves)
    2. Subtask toggles and upload URLs
    3. Tenant scoping
"""

import pytest

from jobflow.core.exceptions import NotFoundError, ValidationError
from jobflow.models import db
from jobflow.models.auth import Tenant
from jobflow.models.progression import JobTask
from jobflow.services import progression_service
from jobflow.services.job_task_service import list_job_tasks, update_job_task


@pytest.fixture()
def task(job, users, workflow):
    progression_service.start_job(job.id, actor_id=users.owner)
    return JobTask.query.filter_by(job_id=job.id).one()


# ═════════════════════════════════════════════════════════════════════════════
# 1. STATUS
# ═════════════════════════════════════════════════════════════════════════════


def test_complete_then_reopen(job, task):
    updated = update_job_task(job.id, task.id, {"status": "completed"})
    assert updated.completed_at is not None

    reopened = update_job_task(job.id, task.id, {"status": "in_progress"})
    assert reopened.status == "in_progress"
    assert reopened.completed_at is None


def test_unknown_and_illegal_status(job, task):
    with pytest.raises(ValidationError) as exc:
        update_job_task(job.id, task.id, {"status": "archived"})
    assert "status" in exc.value.details

    update_job_task(job.id, task.id, {"status": "cancelled"})
    with pytest.raises(ValidationError):
        update_job_task(job.id, task.id, {"status": "pending"})


def test_list_filters_by_status(job, task):
    assert list_job_tasks(job.id, status="pending") == [task]
    assert list_job_tasks(job.id, status="completed") == []


# ═════════════════════════════════════════════════════════════════════════════
# 2. SUBTASKS & UPLOADS
# ═════════════════════════════════════════════════════════════════════════════


def test_subtask_toggle_and_uploads(job, task):
    updated = update_job_task(job.id, task.id, {
        "subtask_updates": [{"index": 1, "completed": True}],
        "add_upload_urls": ["https://files.example.com/a.jpg"],
        "notes": "budget confirmed by phone",
    })
    assert [s["completed"] for s in updated.subtasks] == [False, True]
    assert updated.upload_urls == ["https://files.example.com/a.jpg"]
    assert updated.notes == "budget confirmed by phone"


def test_subtask_index_out_of_range(job, task):
    with pytest.raises(ValidationError):
        update_job_task(job.id, task.id, {"subtask_updates": [{"index": 5, "completed": True}]})
    assert all(not s["completed"] for s in db.session.get(JobTask, task.id).subtasks)


# ═════════════════════════════════════════════════════════════════════════════
# 3. TENANT SCOPE
# ═════════════════════════════════════════════════════════════════════════════


def test_task_hidden_from_other_tenant(job, task):
    other = Tenant(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()

    with pytest.raises(NotFoundError):
        update_job_task(job.id, task.id, {"status": "completed"}, tenant_id=other.id)
