"""
Work-item hierarchy — single ``work_items`` table with a ``kind`` discriminant.

Milestone → Deliverable → Task (tasks nest to arbitrary depth). The nesting
rule is expressed once in ``ALLOWED_PARENT_KINDS`` and enforced by
``hierarchy_service``; nothing else writes ``parent_id``.

Stored vs derived:
    - Task and deliverable ``progress``/``status`` are stored.
    - Milestone status and progress are NEVER stored. ``status`` stays NULL
      on milestone rows and ``progress`` is ignored; the aggregation engine
      folds the deliverable set into a ``MilestoneView`` on every read.

Work-breakdown numbering (``wbs``):
    Root milestones are numbered 1..n per project by ``sort_order``; every
    child path is ``<parent wbs>.<position + 1>``. Recomputed by the
    hierarchy service whenever a sibling list changes.
"""

from datetime import datetime, timezone
from enum import Enum

from tracker.models import db
from tracker.models.base import ProjectScopedModel
from tracker.models.soft_delete import SoftDeleteMixin


class ItemKind(str, Enum):
    MILESTONE = "milestone"
    DELIVERABLE = "deliverable"
    TASK = "task"


class DeliverableStatus(str, Enum):
    """Deliverable lifecycle value (stored on deliverable rows)."""
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    SUBMITTED_FOR_REVIEW = "submitted_for_review"
    RETURNED_FOR_MORE_WORK = "returned_for_more_work"
    REVIEW_COMPLETE = "review_complete"
    DELIVERED = "delivered"


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


# ── Constants ─────────────────────────────────────────────────────────────────

# kind -> kinds its parent may have (None = root)
ALLOWED_PARENT_KINDS = {
    ItemKind.MILESTONE.value: frozenset({None}),
    ItemKind.DELIVERABLE.value: frozenset({ItemKind.MILESTONE.value}),
    ItemKind.TASK.value: frozenset({ItemKind.DELIVERABLE.value, ItemKind.TASK.value}),
}

ITEM_REF_PREFIX = {
    ItemKind.MILESTONE.value: "MS",
    ItemKind.DELIVERABLE.value: "DEL",
    ItemKind.TASK.value: "TSK",
}

DELIVERABLE_TRANSITIONS = {
    "draft":                  ["in_progress"],
    "in_progress":            ["draft", "submitted_for_review"],
    "submitted_for_review":   ["returned_for_more_work", "review_complete"],
    "returned_for_more_work": ["submitted_for_review", "in_progress"],
    "review_complete":        ["delivered"],
    "delivered":              [],       # terminal: reopening is not supported
}

# Statuses in which progress and dates are frozen
LOCKED_DELIVERABLE_STATUSES = frozenset({
    DeliverableStatus.SUBMITTED_FOR_REVIEW.value,
    DeliverableStatus.REVIEW_COMPLETE.value,
    DeliverableStatus.DELIVERED.value,
})

EDITABLE_FIELDS = frozenset({
    "name", "description", "start_date", "end_date", "progress",
    "estimate_component_id", "billable", "is_billed", "is_received",
    "purchase_order",
})


def validate_deliverable_transition(old_status, new_status):
    """Return True if the deliverable status transition is valid."""
    return new_status in DELIVERABLE_TRANSITIONS.get(old_status, [])


def is_valid_parent_kind(kind, parent_kind):
    """Return True if an item of ``kind`` may sit under a parent of ``parent_kind``."""
    return parent_kind in ALLOWED_PARENT_KINDS.get(kind, frozenset())


def task_status_for_progress(progress):
    if not progress:
        return TaskStatus.NOT_STARTED.value
    if progress >= 100:
        return TaskStatus.COMPLETE.value
    return TaskStatus.IN_PROGRESS.value


def format_item_ref(kind, number):
    return f"{ITEM_REF_PREFIX[kind]}-{number:03d}"


class WorkItem(SoftDeleteMixin, ProjectScopedModel):
    """A node in the Milestone / Deliverable / Task hierarchy."""

    __tablename__ = "work_items"

    id = db.Column(db.Integer, primary_key=True)

    kind = db.Column(db.String(20), nullable=False, comment="milestone | deliverable | task")
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("work_items.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="NULL only for milestones",
    )
    item_ref = db.Column(db.String(20), nullable=False, comment="MS-001 / DEL-001 / TSK-001")
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Schedule
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    duration_days = db.Column(db.Integer, nullable=True, comment="Inclusive day count of start..end")

    # Progress / status (leaves only; milestone values are derived)
    progress = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.String(30), nullable=True,
        comment="DeliverableStatus for deliverables, TaskStatus for tasks, NULL for milestones",
    )

    # Ordering
    sort_order = db.Column(db.Integer, nullable=False, default=0)
    wbs = db.Column(db.String(50), nullable=True, comment="Work-breakdown path e.g. 1.2.3")

    # Commercial links (consumed by the billing collaborator, never computed here)
    estimate_component_id = db.Column(db.Integer, nullable=True)
    billable = db.Column(db.Numeric(12, 2), nullable=True)
    is_billed = db.Column(db.Boolean, nullable=False, default=False)
    is_received = db.Column(db.Boolean, nullable=False, default=False)
    purchase_order = db.Column(db.String(100), nullable=True)

    # Milestone baseline (committed scope)
    baseline_start_date = db.Column(db.Date, nullable=True)
    baseline_end_date = db.Column(db.Date, nullable=True)
    baseline_billable = db.Column(db.Numeric(12, 2), nullable=True)
    baseline_locked = db.Column(db.Boolean, nullable=False, default=False)
    current_baseline_version = db.Column(db.Integer, nullable=False, default=0)
    baseline_breached = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="A deliverable ends after the committed milestone end date",
    )
    baseline_breach_reason = db.Column(db.Text, nullable=True)
    baseline_breached_at = db.Column(db.DateTime(timezone=True), nullable=True)
    baseline_breached_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Deliverable review trail
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

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

    # Optimistic concurrency counter, bumped on every UPDATE
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("project_id", "item_ref", name="uq_work_items_project_ref"),
        db.Index("ix_work_items_parent_order", "project_id", "parent_id", "sort_order"),
        db.Index("ix_work_items_project_kind", "project_id", "kind"),
    )

    @property
    def is_milestone(self):
        return self.kind == ItemKind.MILESTONE.value

    @property
    def is_deliverable(self):
        return self.kind == ItemKind.DELIVERABLE.value

    @property
    def is_task(self):
        return self.kind == ItemKind.TASK.value

    @property
    def is_locked(self):
        """Deliverable whose progress and dates are frozen by the review cycle."""
        return self.is_deliverable and self.status in LOCKED_DELIVERABLE_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "kind": self.kind,
            "parent_id": self.parent_id,
            "item_ref": self.item_ref,
            "name": self.name,
            "description": self.description,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "duration_days": self.duration_days,
            "progress": None if self.is_milestone else self.progress,
            "status": self.status,
            "sort_order": self.sort_order,
            "wbs": self.wbs,
            "estimate_component_id": self.estimate_component_id,
            "billable": float(self.billable) if self.billable is not None else None,
            "is_billed": self.is_billed,
            "is_received": self.is_received,
            "purchase_order": self.purchase_order,
            "baseline_start_date": self.baseline_start_date.isoformat() if self.baseline_start_date else None,
            "baseline_end_date": self.baseline_end_date.isoformat() if self.baseline_end_date else None,
            "baseline_billable": float(self.baseline_billable) if self.baseline_billable is not None else None,
            "baseline_locked": self.baseline_locked,
            "current_baseline_version": self.current_baseline_version,
            "baseline_breached": self.baseline_breached,
            "baseline_breach_reason": self.baseline_breach_reason,
            "baseline_breached_at": self.baseline_breached_at.isoformat() if self.baseline_breached_at else None,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "rejection_reason": self.rejection_reason,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "delivered_by": self.delivered_by,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<WorkItem {self.id}: {self.kind} {self.item_ref} wbs={self.wbs}>"
