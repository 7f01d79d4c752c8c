"""
Identity models: tenants and their users.

Sign-in, invitations and role management belong to the identity service
upstream. The stage engine keeps a thin local copy holding just what it
reads: the tenant boundary, the actor id, and the role used for "admin"
task assignment and permission checks.
"""

from datetime import datetime, timezone

from jobflow.models import db

# Picked for "admin" task assignment; also the roles allowed to override stages
PRIVILEGED_ROLES = frozenset({"owner", "admin", "site_admin"})


class Tenant(db.Model):
    """A contractor business; owns jobs and, optionally, its own stage set."""

    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    members = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "slug": self.slug, "name": self.name, "is_active": self.is_active}

    def __repr__(self):
        return f"<Tenant {self.slug}>"


class User(db.Model):
    """Actor as seen by the engine: who answered, who overrode, who gets a task."""

    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    email = db.Column(db.String(200), nullable=False)
    name = db.Column(db.String(200))
    role = db.Column(db.String(30), default="member", nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    tenant = db.relationship("Tenant", back_populates="members")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<User {self.id} {self.role}>"
