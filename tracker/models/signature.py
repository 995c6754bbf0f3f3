"""
Dual-party signature ledger — SignatureRecord model.

One record per approval round of an approvable entity. Polymorphic FK
pattern: ``entity_kind`` + ``entity_id`` identify the thing being approved
(deliverable, milestone baseline, milestone certificate or variation).

Business rules:
    - Two named slots: supplier (providing party) and customer (receiving
      party). A slot is signed once its ``*_signed_at`` is set.
    - The record is complete iff both slots are signed. Completion is
      monotonic: no code path clears a signed slot. A new approval round
      for the same entity gets a new record with the next ``sequence``.
    - Signer names are snapshotted so the trail stays readable if the User
      row is later removed.
    - ``version`` is an optimistic-concurrency counter; a conditional UPDATE
      against a stale version raises ``StaleDataError`` at flush.
"""

from datetime import datetime, timezone
from enum import Enum

from tracker.models import db
from tracker.models.base import ProjectScopedModel
from tracker.utils.helpers import as_utc


class EntityKind(str, Enum):
    DELIVERABLE = "deliverable"
    MILESTONE_BASELINE = "milestone_baseline"
    MILESTONE_CERTIFICATE = "milestone_certificate"
    VARIATION = "variation"


class Party(str, Enum):
    """Counterparty whose sign-off is required."""
    SUPPLIER = "supplier"   # providing party
    CUSTOMER = "customer"   # receiving party

    @property
    def other(self) -> "Party":
        return Party.CUSTOMER if self is Party.SUPPLIER else Party.SUPPLIER


class SignatureStage(str, Enum):
    UNSIGNED = "unsigned"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETE = "complete"


class SignatureRecord(ProjectScopedModel):
    """Two-slot approval ledger for one approval round of one entity."""

    __tablename__ = "signature_records"

    id = db.Column(db.Integer, primary_key=True)

    entity_kind = db.Column(
        db.String(40), nullable=False,
        comment="deliverable | milestone_baseline | milestone_certificate | variation",
    )
    entity_id = db.Column(db.Integer, nullable=False)
    sequence = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Approval round for this entity, 1-based",
    )

    # Supplier (providing party) slot
    supplier_signer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    supplier_signer_name = db.Column(db.String(255), nullable=True)
    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Customer (receiving party) slot
    customer_signer_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    customer_signer_name = db.Column(db.String(255), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.UniqueConstraint("entity_kind", "entity_id", "sequence", name="uq_signature_entity_seq"),
        db.Index("ix_signature_entity", "entity_kind", "entity_id"),
        db.Index("ix_signature_project_open", "project_id", "completed_at", "cancelled_at"),
    )

    # ── Slot access ──────────────────────────────────────────────────────

    def signed_at(self, party):
        return getattr(self, f"{Party(party).value}_signed_at")

    def signer_id(self, party):
        return getattr(self, f"{Party(party).value}_signer_id")

    def signer_name(self, party):
        return getattr(self, f"{Party(party).value}_signer_name")

    def is_signed(self, party) -> bool:
        return self.signed_at(party) is not None

    def fill_slot(self, party, signer_id, signer_name, at=None):
        """Record a signature. Callers check ``is_signed`` first."""
        prefix = Party(party).value
        setattr(self, f"{prefix}_signer_id", signer_id)
        setattr(self, f"{prefix}_signer_name", signer_name)
        setattr(self, f"{prefix}_signed_at", at or datetime.now(timezone.utc))

    @property
    def is_complete(self) -> bool:
        return self.is_signed(Party.SUPPLIER) and self.is_signed(Party.CUSTOMER)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def is_open(self) -> bool:
        return not self.is_complete and not self.is_cancelled

    @property
    def stage(self) -> SignatureStage:
        signed = [p for p in Party if self.is_signed(p)]
        if len(signed) == 2:
            return SignatureStage.COMPLETE
        if signed:
            return SignatureStage.PARTIALLY_SIGNED
        return SignatureStage.UNSIGNED

    @property
    def signed_party(self):
        """The one signed party while PartiallySigned, else None."""
        if self.stage is not SignatureStage.PARTIALLY_SIGNED:
            return None
        return Party.SUPPLIER if self.is_signed(Party.SUPPLIER) else Party.CUSTOMER

    @property
    def missing_parties(self) -> list:
        return [p for p in Party if not self.is_signed(p)]

    @property
    def last_activity_at(self):
        stamps = [as_utc(s) for s in (self.supplier_signed_at, self.customer_signed_at) if s]
        return max(stamps) if stamps else as_utc(self.created_at)

    @property
    def completion_key(self) -> str:
        """Idempotency key carried by the ``completed`` event."""
        return f"{self.entity_kind}:{self.entity_id}:{self.sequence}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "sequence": self.sequence,
            "stage": self.stage.value,
            "signed_party": self.signed_party.value if self.signed_party else None,
            "is_complete": self.is_complete,
            "supplier": {
                "signer_id": self.supplier_signer_id,
                "signer_name": self.supplier_signer_name,
                "signed_at": self.supplier_signed_at.isoformat() if self.supplier_signed_at else None,
            },
            "customer": {
                "signer_id": self.customer_signer_id,
                "signer_name": self.customer_signer_name,
                "signed_at": self.customer_signed_at.isoformat() if self.customer_signed_at else None,
            },
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<SignatureRecord #{self.id} {self.entity_kind}/{self.entity_id} seq={self.sequence} {self.stage.value}>"
