"""
Variation (change request) domain models.

Models:
    - Variation: the change request header (VAR-001, ...).
    - VariationMilestone: per-milestone schedule / value delta.
    - VariationDeliverable: add / modify / remove operations on deliverables.

Lifecycle:
    draft → submitted → awaiting_customer | awaiting_supplier → approved → applied
    draft | submitted | awaiting_* → rejected → draft (reset for rework)

``approved`` is the state between dual-signature completion and the
hierarchy/baseline changes being written. Both happen in one transaction,
so ``approved`` is only observed when that transaction failed and
``apply_variation`` has to be retried.
"""

import json
from datetime import datetime, timezone
from enum import Enum

from tracker.models import db
from tracker.models.base import ProjectScopedModel


class VariationStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    AWAITING_CUSTOMER = "awaiting_customer"
    AWAITING_SUPPLIER = "awaiting_supplier"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"


VARIATION_TYPES = frozenset({
    "scope_extension",
    "scope_reduction",
    "time_extension",
    "cost_adjustment",
    "combined",
})

CHANGE_TYPES = frozenset({"add", "modify", "remove"})

VARIATION_TRANSITIONS = {
    "draft":             ["submitted", "rejected"],
    "submitted":         ["awaiting_customer", "awaiting_supplier", "approved", "rejected"],
    "awaiting_customer": ["approved", "rejected"],
    "awaiting_supplier": ["approved", "rejected"],
    "approved":          ["applied"],
    "applied":           [],
    "rejected":          ["draft"],
}

# Statuses in which the variation is still in front of the signatories
REJECTABLE_STATUSES = frozenset({"draft", "submitted", "awaiting_customer", "awaiting_supplier"})

# Submitted but not yet applied: at most one of these per milestone
IN_FLIGHT_STATUSES = frozenset({"submitted", "awaiting_customer", "awaiting_supplier", "approved"})

# Nobody has signed yet, so the variation can still be discarded
DELETABLE_STATUSES = frozenset({"draft", "submitted", "rejected"})


def validate_variation_transition(old_status, new_status):
    """Return True if the Variation status transition is valid."""
    return new_status in VARIATION_TRANSITIONS.get(old_status, [])


class Variation(ProjectScopedModel):
    __tablename__ = "variations"

    id = db.Column(db.Integer, primary_key=True)
    variation_ref = db.Column(db.String(20), nullable=False, comment="VAR-001, sequential per project")
    title = db.Column(db.String(255), nullable=False)
    variation_type = db.Column(db.String(30), nullable=False, default="combined")
    status = db.Column(db.String(30), nullable=False, default=VariationStatus.DRAFT.value)
    reason = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=True)

    total_cost_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_days_impact = db.Column(db.Integer, nullable=False, default=0)
    certificate_number = db.Column(db.String(50), nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)

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

    milestones = db.relationship(
        "VariationMilestone", back_populates="variation",
        cascade="all, delete-orphan", order_by="VariationMilestone.id",
    )
    deliverables = db.relationship(
        "VariationDeliverable", back_populates="variation",
        cascade="all, delete-orphan", order_by="VariationDeliverable.id",
    )

    __table_args__ = (
        db.UniqueConstraint("project_id", "variation_ref", name="uq_variations_project_ref"),
    )

    def to_dict(self, include_children=True) -> dict:
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "variation_ref": self.variation_ref,
            "title": self.title,
            "variation_type": self.variation_type,
            "status": self.status,
            "reason": self.reason,
            "description": self.description,
            "total_cost_impact": float(self.total_cost_impact or 0),
            "total_days_impact": self.total_days_impact,
            "certificate_number": self.certificate_number,
            "rejection_reason": self.rejection_reason,
            "created_by": self.created_by,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_children:
            d["milestones"] = [m.to_dict() for m in self.milestones]
            d["deliverables"] = [c.to_dict() for c in self.deliverables]
        return d

    def __repr__(self):
        return f"<Variation {self.variation_ref} {self.status}>"


class VariationMilestone(db.Model):
    """Schedule / value delta for one affected milestone."""

    __tablename__ = "variation_milestones"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="RESTRICT"), nullable=False,
    )

    # Values captured at submit time for impact calculation
    original_start_date = db.Column(db.Date, nullable=True)
    original_end_date = db.Column(db.Date, nullable=True)
    original_billable = db.Column(db.Numeric(12, 2), nullable=True)

    new_start_date = db.Column(db.Date, nullable=True)
    new_end_date = db.Column(db.Date, nullable=True)
    new_billable = db.Column(db.Numeric(12, 2), nullable=True)

    cost_impact = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    days_impact = db.Column(db.Integer, nullable=False, default=0)

    version_before = db.Column(db.Integer, nullable=True)
    version_after = db.Column(db.Integer, nullable=True)

    variation = db.relationship("Variation", back_populates="milestones")

    __table_args__ = (
        db.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "original_start_date": self.original_start_date.isoformat() if self.original_start_date else None,
            "original_end_date": self.original_end_date.isoformat() if self.original_end_date else None,
            "original_billable": float(self.original_billable) if self.original_billable is not None else None,
            "new_start_date": self.new_start_date.isoformat() if self.new_start_date else None,
            "new_end_date": self.new_end_date.isoformat() if self.new_end_date else None,
            "new_billable": float(self.new_billable) if self.new_billable is not None else None,
            "cost_impact": float(self.cost_impact or 0),
            "days_impact": self.days_impact,
            "version_before": self.version_before,
            "version_after": self.version_after,
        }


class VariationDeliverable(db.Model):
    """A declared add / modify / remove operation on a deliverable."""

    __tablename__ = "variation_deliverables"

    id = db.Column(db.Integer, primary_key=True)
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    change_type = db.Column(db.String(10), nullable=False, comment="add | modify | remove")
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="RESTRICT"), nullable=False,
        comment="Milestone that receives (add) or owns (modify/remove) the deliverable",
    )
    deliverable_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="SET NULL"), nullable=True,
        comment="Target for modify/remove; filled with the new id after an add is applied",
    )
    new_data_json = db.Column(db.Text, nullable=True, comment="JSON attrs for add / modify")
    removal_reason = db.Column(db.Text, nullable=True)
    applied = db.Column(db.Boolean, nullable=False, default=False)

    variation = db.relationship("Variation", back_populates="deliverables")

    @property
    def new_data(self) -> dict:
        return json.loads(self.new_data_json or "{}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "change_type": self.change_type,
            "milestone_id": self.milestone_id,
            "deliverable_id": self.deliverable_id,
            "new_data": self.new_data,
            "removal_reason": self.removal_reason,
            "applied": self.applied,
        }
