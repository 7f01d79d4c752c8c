"""
Job Progression Platform
Runtime progression models - what happens to a job as it moves.

Models:
    - Response:                the single current answer to a question for a job
    - JobTask:                 a task instantiated from a TaskTemplate on stage entry
    - StageAuditRecord:        immutable, append-only stage movement history
    - StagePerformanceMetric:  one row per (job, stage visit) with duration data

Lifecycle states:
    JobTask:  pending → in_progress → completed  |  overdue  |  cancelled

StageAuditRecord rows are never updated or deleted; the ORM refuses both.
Failure records (trigger_source="error") are the only rows whose
``to_stage_id`` / ``to_status`` may be NULL.
"""

from datetime import datetime, timezone

from sqlalchemy import event

from jobflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

RESPONSE_SOURCES = {"web_app", "mobile_app", "sms", "email", "client_portal"}

JOB_TASK_STATUSES = {"pending", "in_progress", "completed", "overdue", "cancelled"}

OPEN_TASK_STATUSES = frozenset({"pending", "in_progress", "overdue"})

TRIGGER_SOURCES = {"question_response", "admin_override", "system", "client_action", "error"}

JOB_TASK_TRANSITIONS = {
    "pending":      ["in_progress", "completed", "overdue", "cancelled"],
    "in_progress":  ["completed", "overdue", "cancelled", "pending"],
    "overdue":      ["in_progress", "completed", "cancelled"],
    "completed":    ["in_progress"],   # re-open
    "cancelled":    [],
}


def validate_job_task_transition(old_status, new_status):
    """Return True if JobTask status transition is valid."""
    return new_status in JOB_TASK_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. Response
# ═════════════════════════════════════════════════════════════════════════════


class Response(db.Model):
    """Current answer to ``question`` for ``job``; resubmission overwrites it."""

    __tablename__ = "job_responses"
    __table_args__ = (
        db.UniqueConstraint("job_id", "question_id", name="uq_response_job_question"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    question_id = db.Column(
        db.Integer, db.ForeignKey("stage_questions.id", ondelete="CASCADE"), nullable=False,
    )
    response_value = db.Column(db.Text, nullable=False)
    response_metadata = db.Column(db.JSON, default=dict)
    responded_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    response_source = db.Column(db.String(20), default="web_app")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "question_id": self.question_id,
            "response_value": self.response_value,
            "response_metadata": self.response_metadata or {},
            "responded_by_id": self.responded_by_id,
            "response_source": self.response_source,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 2. JobTask
# ═════════════════════════════════════════════════════════════════════════════


class JobTask(db.Model):
    """Work item created from a TaskTemplate when a job enters a stage.

    Tasks outlive the stage that created them; leaving the stage never
    deletes or cancels them.
    """

    __tablename__ = "job_tasks"
    __table_args__ = (
        db.Index("idx_job_task_job_template", "job_id", "template_id"),
        db.Index("idx_job_task_status", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("task_templates.id", ondelete="SET NULL"), nullable=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="SET NULL"), nullable=True,
    )
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    subtasks = db.Column(db.JSON, default=list, comment='[{"title": "...", "completed": false}]')
    status = db.Column(db.String(20), nullable=False, default="pending")
    priority = db.Column(db.String(10), default="normal")
    assigned_to_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    due_date = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    upload_urls = db.Column(db.JSON, default=list)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    template = db.relationship("TaskTemplate", foreign_keys=[template_id])

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "template_id": self.template_id,
            "stage_id": self.stage_id,
            "title": self.title,
            "description": self.description,
            "subtasks": self.subtasks or [],
            "status": self.status,
            "priority": self.priority,
            "assigned_to_id": self.assigned_to_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "upload_urls": self.upload_urls or [],
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<JobTask {self.id}: {self.title} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. StageAuditRecord
# ═════════════════════════════════════════════════════════════════════════════


class StageAuditRecord(db.Model):
    """
    Immutable history of stage movements for a job.

    One row per transition, override, initial entry, or failed attempt.
    ``trigger_details`` carries the source-specific payload: response
    metadata for question responses, ``{"reason": ...}`` for overrides,
    ``{"error": ..., "reference": ...}`` for failures.
    """

    __tablename__ = "stage_audit_records"
    __table_args__ = (
        db.Index("idx_stage_audit_job_ts", "job_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="SET NULL"), nullable=True,
    )
    to_stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="SET NULL"), nullable=True,
    )
    from_status = db.Column(db.String(20), nullable=True)
    to_status = db.Column(db.String(20), nullable=True)
    trigger_source = db.Column(db.String(30), nullable=False)
    triggered_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    trigger_details = db.Column(db.JSON, default=dict)
    question_id = db.Column(
        db.Integer, db.ForeignKey("stage_questions.id", ondelete="SET NULL"), nullable=True,
    )
    response_id = db.Column(
        db.Integer, db.ForeignKey("job_responses.id", ondelete="SET NULL"), nullable=True,
    )
    response_value = db.Column(db.Text, nullable=True)
    duration_in_previous_stage_hours = db.Column(db.Float, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "trigger_source": self.trigger_source,
            "triggered_by_id": self.triggered_by_id,
            "trigger_details": self.trigger_details or {},
            "question_id": self.question_id,
            "response_id": self.response_id,
            "response_value": self.response_value,
            "duration_in_previous_stage_hours": self.duration_in_previous_stage_hours,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (
            f"<StageAuditRecord {self.id}: job={self.job_id} "
            f"{self.from_stage_id}→{self.to_stage_id} via {self.trigger_source}>"
        )


@event.listens_for(StageAuditRecord, "before_update")
def _refuse_audit_update(mapper, connection, target):
    raise ValueError(f"StageAuditRecord {target.id} is immutable")


@event.listens_for(StageAuditRecord, "before_delete")
def _refuse_audit_delete(mapper, connection, target):
    raise ValueError(f"StageAuditRecord {target.id} cannot be deleted")


# ═════════════════════════════════════════════════════════════════════════════
# 4. StagePerformanceMetric
# ═════════════════════════════════════════════════════════════════════════════


class StagePerformanceMetric(db.Model):
    """
    One visit of a job to a stage.

    Opened on entry (``exited_at`` NULL); closed on exit with the
    duration, task counts and whether the job moved forward.
    """

    __tablename__ = "stage_performance_metrics"
    __table_args__ = (
        db.Index("idx_stage_metric_job_stage", "job_id", "stage_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(
        db.Integer, db.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    entered_at = db.Column(db.DateTime(timezone=True), nullable=False)
    exited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_hours = db.Column(db.Float, nullable=True)
    tasks_completed = db.Column(db.Integer, default=0)
    tasks_overdue = db.Column(db.Integer, default=0)
    conversion_successful = db.Column(db.Boolean, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "job_id": self.job_id,
            "stage_id": self.stage_id,
            "entered_at": self.entered_at.isoformat() if self.entered_at else None,
            "exited_at": self.exited_at.isoformat() if self.exited_at else None,
            "duration_hours": self.duration_hours,
            "tasks_completed": self.tasks_completed,
            "tasks_overdue": self.tasks_overdue,
            "conversion_successful": self.conversion_successful,
        }
