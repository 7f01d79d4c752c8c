"""
Job model.

Jobs are owned by the wider job-tracking application; the stage engine
owns only three fields on them:

    current_stage_id   pointer into the job's resolved stage set
    stage_entered_at   when the current stage was entered
    status             derived from the current stage's maps_to_status

Every other column is read-only from the engine's point of view.
"""

from datetime import datetime, timezone

from jobflow.models import db


class Job(db.Model):
    __tablename__ = "jobs"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    title = db.Column(db.String(255), nullable=False)
    job_type = db.Column(db.String(50), default="standard")
    lead_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Foreman / job lead; target of 'foreman' task assignment",
    )
    created_by_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )

    # ── Engine-owned progression fields ──────────────────────────────────
    current_stage_id = db.Column(
        db.Integer, db.ForeignKey("stages.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    stage_entered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    status = db.Column(db.String(20), default="planning")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    current_stage = db.relationship("Stage", foreign_keys=[current_stage_id])

    @classmethod
    def query_for_tenant(cls, tenant_id):
        return cls.query.filter_by(tenant_id=tenant_id)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "job_type": self.job_type,
            "lead_user_id": self.lead_user_id,
            "created_by_id": self.created_by_id,
            "current_stage_id": self.current_stage_id,
            "current_stage_name": self.current_stage.name if self.current_stage else None,
            "stage_entered_at": self.stage_entered_at.isoformat() if self.stage_entered_at else None,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Job {self.id}: {self.title} stage={self.current_stage_id}>"
