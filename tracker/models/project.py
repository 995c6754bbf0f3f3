"""Project domain model: the scope every work item and approval lives in."""

from datetime import datetime, timezone

from tracker.models import db
from tracker.models.base import TenantModel


class Project(TenantModel):
    """A delivery engagement between a supplier and a customer."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    supplier_name = db.Column(db.String(200), nullable=True, comment="Providing party")
    customer_name = db.Column(db.String(200), nullable=True, comment="Receiving party")
    status = db.Column(db.String(30), nullable=False, default="active")
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "supplier_name": self.supplier_name,
            "customer_name": self.customer_name,
            "status": self.status,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.code}>"
