"""
Audit-logging collaborator.

Subscribes to the event bus and appends one AuditLog row per structural or
signature event. Runs after the publishing transaction committed, in its
own short transaction; a failed write is logged and rolled back without
affecting the operation that published the event.
"""

import logging

from sqlalchemy.exc import IntegrityError

from tracker.models import db
from tracker.models.audit import write_audit
from tracker.services import events

logger = logging.getLogger(__name__)

_ACTIONS = {
    "item_created": "item.created",
    "item_moved": "item.moved",
    "item_reordered": "item.reordered",
    "signed": "signature.signed",
    "completed": "signature.completed",
}


def _record(event: str, payload: dict) -> None:
    if event in ("signed", "completed"):
        entity_type = payload.get("entity_kind")
        entity_id = payload.get("entity_id")
        actor = payload.get("signer_id")
    else:
        entity_type = "work_item"
        entity_id = payload.get("item_id") or payload.get("parent_id") or "root"
        actor = payload.get("actor_id")

    try:
        write_audit(
            entity_type=entity_type,
            entity_id=entity_id,
            action=_ACTIONS[event],
            tenant_id=payload.get("tenant_id"),
            project_id=payload.get("project_id"),
            actor_user_id=actor,
            idempotency_key=payload.get("idempotency_key"),
            diff=payload,
        )
        db.session.commit()
    except IntegrityError:
        # Completion already logged under the same idempotency key
        db.session.rollback()
        logger.info(
            "Duplicate audit entry skipped",
            extra={"event_type": event, "entity_kind": entity_type, "entity_id": entity_id},
        )
    except Exception:
        db.session.rollback()
        logger.exception("Audit write failed", extra={"event_type": event})


def register_audit_subscribers() -> None:
    for event in _ACTIONS:
        events.subscribe(event, _record)


def unregister_audit_subscribers() -> None:
    for event in _ACTIONS:
        events.unsubscribe(event, _record)
