"""
BaselineVersion — immutable snapshot of a milestone's committed scope.

Created exactly once per completed baseline-commitment signature record or
applied variation, never updated afterwards. ``version_number`` is strictly
increasing per milestone (enforced by a unique constraint and by the
services always writing ``current_baseline_version + 1``).
"""

import json
from datetime import datetime, timezone

from tracker.models import db
from tracker.models.base import ProjectScopedModel

BASELINE_SOURCES = frozenset({"baseline_commitment", "variation"})


class BaselineVersion(ProjectScopedModel):
    __tablename__ = "baseline_versions"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    version_number = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(30), nullable=False, comment="baseline_commitment | variation")
    signature_record_id = db.Column(
        db.Integer, db.ForeignKey("signature_records.id", ondelete="SET NULL"), nullable=True,
    )
    variation_id = db.Column(
        db.Integer, db.ForeignKey("variations.id", ondelete="SET NULL"), nullable=True,
    )

    # Snapshot
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    billable = db.Column(db.Numeric(12, 2), nullable=True)
    deliverable_ids_json = db.Column(db.Text, nullable=False, default="[]")

    supplier_signer_name = db.Column(db.String(255), nullable=True)
    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_signer_name = db.Column(db.String(255), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("milestone_id", "version_number", name="uq_baseline_milestone_version"),
    )

    @property
    def deliverable_ids(self) -> list[int]:
        return json.loads(self.deliverable_ids_json or "[]")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "version_number": self.version_number,
            "source": self.source,
            "signature_record_id": self.signature_record_id,
            "variation_id": self.variation_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "billable": float(self.billable) if self.billable is not None else None,
            "deliverable_ids": self.deliverable_ids,
            "supplier_signer_name": self.supplier_signer_name,
            "customer_signer_name": self.customer_signer_name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<BaselineVersion milestone={self.milestone_id} v{self.version_number}>"
