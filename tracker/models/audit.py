"""
Delivery Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for structural and
      signature events.

The audit-logging collaborator subscribes to the event bus
(``tracker.services.events``) and calls ``write_audit`` for every
``item_created``, ``item_moved``, ``item_reordered``, ``signed`` and
``completed`` event.
"""

import json
from datetime import datetime, timezone

from tracker.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ACTIONS = {
    # Hierarchy
    "item.created",
    "item.moved",
    "item.reordered",
    # Signature workflow
    "signature.signed",
    "signature.completed",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action. ``diff_json`` carries the event payload.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_project", "project_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer,
        db.ForeignKey("tenants.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(40), nullable=False,
        comment="work_item | deliverable | milestone_baseline | milestone_certificate | variation",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    action = db.Column(db.String(60), nullable=False, comment="item.moved | signature.completed | …")
    actor_user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    idempotency_key = db.Column(
        db.String(120), nullable=True, unique=True,
        comment="Set for completion events so a replay cannot log twice",
    )

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        return json.loads(self.diff_json or "{}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    tenant_id: int | None = None,
    project_id: int | None = None,
    actor_user_id: int | None = None,
    idempotency_key: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        tenant_id=tenant_id,
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        idempotency_key=idempotency_key,
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
