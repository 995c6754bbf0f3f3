"""
TenantModel — Abstract base class for tenant-scoped models.

Adds:
  - tenant_id FK column with index
  - query_for_tenant(tenant_id) classmethod
"""

from tracker.models import db


class TenantModel(db.Model):
    """Abstract base for tenant-scoped tables."""
    __abstract__ = True

    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_tenant(cls, tenant_id):
        """Return a query filtered by tenant_id."""
        return cls.query.filter_by(tenant_id=tenant_id)


class ProjectScopedModel(TenantModel):
    """Abstract base for tables that also belong to a single project."""
    __abstract__ = True

    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def query_for_project(cls, tenant_id, project_id):
        """Return a query filtered by tenant and project."""
        return cls.query.filter_by(tenant_id=tenant_id, project_id=project_id)
