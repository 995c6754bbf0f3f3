"""
Party models — tenants, users, project_members.

Authentication mechanics live outside this core; these tables only carry
who a user is and which role they hold on a project, which is all the
permission collaborator needs to decide signing eligibility.
"""

from datetime import datetime, timezone

from tracker.models import db


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════

class Tenant(db.Model):
    __tablename__ = "tenants"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    users = db.relationship("User", back_populates="tenant", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════

class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    email = db.Column(db.String(200), nullable=False)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Composite unique: same email can exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
    )

    # Relationships
    tenant = db.relationship("Tenant", back_populates="users")
    project_memberships = db.relationship(
        "ProjectMember", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="ProjectMember.user_id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ═══════════════════════════════════════════════════════════════
# 3. PROJECT_MEMBERS
# ═══════════════════════════════════════════════════════════════

class ProjectMember(db.Model):
    __tablename__ = "project_members"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_in_project = db.Column(
        db.String(50), nullable=False, default="viewer",
        comment="admin | supplier_pm | customer_pm | contributor | viewer",
    )
    joined_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        db.Index("ix_project_members_project", "project_id"),
        db.Index("ix_project_members_user", "user_id"),
    )

    # Relationships
    user = db.relationship("User", back_populates="project_memberships", foreign_keys=[user_id])

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "role_in_project": self.role_in_project,
            "joined_at": self.joined_at.isoformat() if self.joined_at else None,
            "user": self.user.to_dict() if self.user else None,
        }
