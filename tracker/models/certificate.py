"""
MilestoneCertificate — acceptance certificate raised once a milestone is Completed.

One certificate per milestone. Status mirrors the signature record:
Draft → PendingCustomerSignature / PendingSupplierSignature → Signed.
``ready_to_bill`` flips on completion and is what the billing collaborator
watches; no money is computed here.
"""

from datetime import datetime, timezone
from enum import Enum

from tracker.models import db
from tracker.models.base import ProjectScopedModel


class CertificateStatus(str, Enum):
    DRAFT = "draft"
    PENDING_SUPPLIER_SIGNATURE = "pending_supplier_signature"
    PENDING_CUSTOMER_SIGNATURE = "pending_customer_signature"
    SIGNED = "signed"


class MilestoneCertificate(ProjectScopedModel):
    __tablename__ = "milestone_certificates"

    id = db.Column(db.Integer, primary_key=True)
    milestone_id = db.Column(
        db.Integer, db.ForeignKey("work_items.id", ondelete="RESTRICT"),
        nullable=False, unique=True,
    )
    certificate_number = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(40), nullable=False, default=CertificateStatus.DRAFT.value)
    ready_to_bill = db.Column(db.Boolean, nullable=False, default=False)
    billable = db.Column(db.Numeric(12, 2), nullable=True, comment="Milestone billable at generation")
    signature_record_id = db.Column(
        db.Integer, db.ForeignKey("signature_records.id", ondelete="SET NULL"), nullable=True,
    )
    generated_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    generated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "milestone_id": self.milestone_id,
            "certificate_number": self.certificate_number,
            "status": self.status,
            "ready_to_bill": self.ready_to_bill,
            "billable": float(self.billable) if self.billable is not None else None,
            "signature_record_id": self.signature_record_id,
            "generated_by": self.generated_by,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
            "signed_at": self.signed_at.isoformat() if self.signed_at else None,
        }

    def __repr__(self):
        return f"<MilestoneCertificate {self.certificate_number} {self.status}>"
