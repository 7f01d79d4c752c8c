"""
Job Progression Platform
Workflow definition models - the configurable stage graph.

Models:
    - Stage:         one node of a tenant's (or the global) job workflow
    - Transition:    directed edge between two stages, fired by a response
    - Question:      prompt attached to a stage; answers drive transitions
    - TaskTemplate:  blueprint for the tasks created when a stage is entered

Architecture:
    Tenant ──1:N──▶ Stage        (tenant_id NULL = global default set)
    Stage  ──1:N──▶ Transition   (from_stage → to_stage)
    Stage  ──1:N──▶ Question
    Stage  ──1:N──▶ TaskTemplate

A tenant that owns at least one stage uses only its own stages; otherwise
it uses the global set. The two are never merged.
"""

from datetime import datetime, timezone

from jobflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"planning", "active", "on_hold", "completed", "cancelled"}

TERMINAL_STATUSES = frozenset({"completed", "cancelled"})

STAGE_KINDS = {"standard", "milestone", "approval"}

RESPONSE_TYPES = {"yes_no", "text", "number", "date", "file_upload", "multiple_choice"}

TASK_TYPES = {
    "reminder", "checklist", "documentation",
    "communication", "approval", "scheduling",
}

TASK_PRIORITIES = {"low", "normal", "high", "urgent"}

ASSIGNEE_RULES = {"creator", "foreman", "lead", "admin"}


# ═════════════════════════════════════════════════════════════════════════════
# 1. Stage
# ═════════════════════════════════════════════════════════════════════════════


class Stage(db.Model):
    """
    A named step in a job's lifecycle.

    ``position`` is the ordinal within the stage set; the lowest position
    is the initial stage. Stages whose ``maps_to_status`` is completed or
    cancelled are terminal.
    """

    __tablename__ = "stages"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "position", name="uq_stage_tenant_position"),
        db.CheckConstraint(
            "max_duration_hours IS NULL OR max_duration_hours > min_duration_hours",
            name="ck_stage_duration_window",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL = global default stage",
    )
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    position = db.Column(db.Integer, nullable=False)
    maps_to_status = db.Column(db.String(20), nullable=False, default="planning")
    kind = db.Column(db.String(20), nullable=False, default="standard")
    min_duration_hours = db.Column(db.Integer, default=0)
    max_duration_hours = db.Column(db.Integer, nullable=True)
    requires_approval = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    questions = db.relationship(
        "Question", backref="stage", lazy="select",
        cascade="all, delete-orphan", order_by="Question.position",
    )
    task_templates = db.relationship(
        "TaskTemplate", backref="stage", lazy="select",
        cascade="all, delete-orphan", order_by="TaskTemplate.id",
    )
    outgoing = db.relationship(
        "Transition", foreign_keys="Transition.from_stage_id",
        backref="from_stage", lazy="select", cascade="all, delete-orphan",
        order_by="Transition.id",
    )

    @property
    def is_terminal(self) -> bool:
        return self.maps_to_status in TERMINAL_STATUSES

    def to_dict(self, include_children=False):
        result = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "position": self.position,
            "maps_to_status": self.maps_to_status,
            "kind": self.kind,
            "min_duration_hours": self.min_duration_hours,
            "max_duration_hours": self.max_duration_hours,
            "requires_approval": self.requires_approval,
            "is_active": self.is_active,
            "is_terminal": self.is_terminal,
        }
        if include_children:
            result["questions"] = [q.to_dict() for q in self.questions]
            result["task_templates"] = [t.to_dict() for t in self.task_templates]
            result["transitions"] = [t.to_dict() for t in self.outgoing]
        return result

    def __repr__(self):
        return f"<Stage {self.id}: {self.position}. {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. Transition
# ═════════════════════════════════════════════════════════════════════════════


class Transition(db.Model):
    """
    Directed edge ``from_stage → to_stage``.

    Fires when a response equals ``trigger_response`` (case-insensitive,
    trimmed) or satisfies ``condition`` (e.g. ``>=90``). When
    ``question_id`` is set, only responses to that question are considered.
    """

    __tablename__ = "stage_transitions"
    __table_args__ = (
        db.UniqueConstraint(
            "from_stage_id", "to_stage_id", "trigger_response",
            name="uq_transition_trigger",
        ),
        db.CheckConstraint("from_stage_id <> to_stage_id", name="ck_transition_no_self_loop"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    to_stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False,
    )
    trigger_response = db.Column(db.String(255), nullable=False, default="")
    condition = db.Column(db.String(50), nullable=True, comment="e.g. >=90, <10, =yes")
    question_id = db.Column(
        db.Integer, db.ForeignKey("stage_questions.id", ondelete="CASCADE"), nullable=True,
    )
    action = db.Column(db.String(100), nullable=True, comment="optional label, e.g. close_as_unqualified")
    is_automatic = db.Column(db.Boolean, default=True)
    requires_admin_override = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    to_stage = db.relationship("Stage", foreign_keys=[to_stage_id])

    def to_dict(self):
        return {
            "id": self.id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "trigger_response": self.trigger_response,
            "condition": self.condition,
            "question_id": self.question_id,
            "action": self.action,
            "is_automatic": self.is_automatic,
            "requires_admin_override": self.requires_admin_override,
        }

    def __repr__(self):
        return f"<Transition {self.id}: {self.from_stage_id}→{self.to_stage_id} on {self.trigger_response!r}>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. Question
# ═════════════════════════════════════════════════════════════════════════════


class Question(db.Model):
    """
    A prompt shown while a job sits in ``stage``.

    ``skip_conditions`` JSON shape::

        {"job_types": ["maintenance"],
         "previous_responses": [{"question_id": 7, "response_value": "No"}]}
    """

    __tablename__ = "stage_questions"
    __table_args__ = (
        db.UniqueConstraint("stage_id", "position", name="uq_question_stage_position"),
    )

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    text = db.Column(db.Text, nullable=False)
    response_type = db.Column(db.String(20), nullable=False, default="yes_no")
    response_options = db.Column(db.JSON, nullable=True)
    position = db.Column(db.Integer, nullable=False, default=1)
    is_required = db.Column(db.Boolean, default=True)
    skip_conditions = db.Column(db.JSON, nullable=True)
    help_text = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "text": self.text,
            "response_type": self.response_type,
            "response_options": self.response_options,
            "position": self.position,
            "is_required": self.is_required,
            "skip_conditions": self.skip_conditions,
            "help_text": self.help_text,
        }

    def __repr__(self):
        return f"<Question {self.id}: stage={self.stage_id} #{self.position}>"


# ═════════════════════════════════════════════════════════════════════════════
# 4. TaskTemplate
# ═════════════════════════════════════════════════════════════════════════════


class TaskTemplate(db.Model):
    """Blueprint for a JobTask created whenever a job enters ``stage``."""

    __tablename__ = "task_templates"

    id = db.Column(db.Integer, primary_key=True)
    stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    task_type = db.Column(db.String(30), nullable=False, default="checklist")
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    subtasks = db.Column(db.JSON, default=list, comment='[{"title": "...", "required": true}]')
    upload_required = db.Column(db.Boolean, default=False)
    due_date_offset_hours = db.Column(db.Integer, default=0)
    sla_hours = db.Column(db.Integer, nullable=True)
    priority = db.Column(db.String(10), default="normal")
    auto_assign_to = db.Column(db.String(20), default="creator")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "stage_id": self.stage_id,
            "task_type": self.task_type,
            "title": self.title,
            "description": self.description,
            "subtasks": self.subtasks or [],
            "upload_required": self.upload_required,
            "due_date_offset_hours": self.due_date_offset_hours,
            "sla_hours": self.sla_hours,
            "priority": self.priority,
            "auto_assign_to": self.auto_assign_to,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<TaskTemplate {self.id}: {self.title}>"
