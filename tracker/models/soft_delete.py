"""
Soft Delete Mixin.

Work items are referenced by billing and approval records, so they are
marked deleted instead of being physically removed.

Usage:
    class WorkItem(SoftDeleteMixin, ProjectScopedModel):
        ...

    item.soft_delete()
    WorkItem.query_active().all()
"""

from datetime import datetime, timezone

from tracker.models import db


class SoftDeleteMixin:
    """Mixin that adds soft delete support to any SQLAlchemy model."""

    deleted_at = db.Column(db.DateTime, nullable=True, default=None, index=True)

    def soft_delete(self):
        """Mark this record as deleted."""
        self.deleted_at = datetime.now(timezone.utc)

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @classmethod
    def query_active(cls):
        """Return a query that excludes soft-deleted records."""
        return cls.query.filter(cls.deleted_at.is_(None))
