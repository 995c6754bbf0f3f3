"""
Deliverable review and sign-off workflow.

    draft → in_progress            (progress edit, see hierarchy_service)
    in_progress | returned_for_more_work → submitted_for_review   submit_for_review
    submitted_for_review → returned_for_more_work                  return_for_more_work
    submitted_for_review → review_complete                         accept_review
    review_complete → delivered                                    both parties sign
    review_complete → review_complete (fresh record)               reset_signatures

accept_review opens the deliverable's signature record. When the second
party signs, the engine calls ``_on_complete`` inside the signing
transaction: status becomes delivered and progress is forced to 100
whatever value was stored before. Delivered is terminal.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import select

from tracker.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from tracker.models import db
from tracker.models.signature import EntityKind
from tracker.models.work_item import (
    DeliverableStatus,
    WorkItem,
    validate_deliverable_transition,
)
from tracker.services import locks, permission_service, signature_engine

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
    "draft": "Not Started",
    "in_progress": "In Progress",
    "submitted_for_review": "Submitted for Review",
    "returned_for_more_work": "Returned for More Work",
    "review_complete": "Review Complete",
    "delivered": "Delivered",
}


def status_label(status: str | None) -> str:
    return _STATUS_LABELS.get(status or "draft", status or "")


# ── Loading ──────────────────────────────────────────────────────────────────


def get_deliverable(deliverable_id: int, *, refresh: bool = False, tenant_id: int | None = None) -> WorkItem:
    item = db.session.get(WorkItem, deliverable_id, populate_existing=refresh)
    if (
        item is None
        or item.is_deleted
        or not item.is_deliverable
        or (tenant_id is not None and item.tenant_id != tenant_id)
    ):
        raise NotFoundError(resource="Deliverable", resource_id=deliverable_id, tenant_id=tenant_id)
    return item


def _subtree_keys(deliverable: WorkItem) -> list:
    return [locks.subtree_key(deliverable.parent_id)]


def _transition(deliverable: WorkItem, new_status: str, action: str) -> None:
    if not validate_deliverable_transition(deliverable.status, new_status):
        raise InvalidTransitionError(
            f"Cannot {action} deliverable {deliverable.item_ref} while it is "
            f"{status_label(deliverable.status)}.",
            details={"status": deliverable.status, "target_status": new_status},
        )
    deliverable.status = new_status


# ── Lifecycle ────────────────────────────────────────────────────────────────


def submit_for_review(deliverable_id: int, user_id: int, *, role=None) -> WorkItem:
    """Send an in-progress (or returned) deliverable to the customer for review."""
    d = get_deliverable(deliverable_id)
    role = permission_service.resolve_role(user_id, d.project_id, role)
    permission_service.require(role, "deliverable.submit", user_id=user_id)

    with locks.hold(*_subtree_keys(d)):
        d = get_deliverable(deliverable_id, refresh=True)
        if d.status == DeliverableStatus.DRAFT.value:
            raise InvalidTransitionError(
                f"Deliverable {d.item_ref} has not been started. Record some progress before submitting it for review.",
                details={"status": d.status},
            )
        _transition(d, DeliverableStatus.SUBMITTED_FOR_REVIEW.value, "submit")
        d.submitted_at = datetime.now(timezone.utc)
        d.submitted_by = user_id
        d.rejection_reason = None
        db.session.commit()

    logger.info(
        "Deliverable submitted for review",
        extra={"tenant_id": d.tenant_id, "project_id": d.project_id, "deliverable_id": d.id},
    )
    return d


def return_for_more_work(deliverable_id: int, user_id: int, reason: str, *, role=None) -> WorkItem:
    """Reviewer sends the deliverable back to the supplier with a reason."""
    if not (reason or "").strip():
        raise ValidationError(
            "A reason is required when returning a deliverable for more work.",
            details={"reason": "required"},
        )
    d = get_deliverable(deliverable_id)
    role = permission_service.resolve_role(user_id, d.project_id, role)
    permission_service.require(role, "deliverable.review", user_id=user_id)

    with locks.hold(*_subtree_keys(d)):
        d = get_deliverable(deliverable_id, refresh=True)
        _transition(d, DeliverableStatus.RETURNED_FOR_MORE_WORK.value, "return")
        d.reviewed_at = datetime.now(timezone.utc)
        d.reviewed_by = user_id
        d.rejection_reason = reason.strip()
        db.session.commit()

    logger.info(
        "Deliverable returned for more work",
        extra={"tenant_id": d.tenant_id, "project_id": d.project_id, "deliverable_id": d.id},
    )
    return d


def accept_review(deliverable_id: int, user_id: int, *, role=None) -> WorkItem:
    """Reviewer accepts the deliverable; both parties may now sign it off."""
    d = get_deliverable(deliverable_id)
    role = permission_service.resolve_role(user_id, d.project_id, role)
    permission_service.require(role, "deliverable.review", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.DELIVERABLE.value, deliverable_id), *_subtree_keys(d)):
        d = get_deliverable(deliverable_id, refresh=True)
        try:
            _transition(d, DeliverableStatus.REVIEW_COMPLETE.value, "complete the review of")
            d.reviewed_at = datetime.now(timezone.utc)
            d.reviewed_by = user_id
            signature_engine.open_record(
                EntityKind.DELIVERABLE, d.id, tenant_id=d.tenant_id, project_id=d.project_id,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Deliverable review complete",
        extra={"tenant_id": d.tenant_id, "project_id": d.project_id, "deliverable_id": d.id},
    )
    return d


def sign_deliverable(deliverable_id: int, party, user_id: int, *, role=None, expected_version=None):
    return signature_engine.sign(
        EntityKind.DELIVERABLE, deliverable_id, party, user_id,
        role=role, expected_version=expected_version,
    )


def reset_signatures(deliverable_id: int, user_id: int, *, role=None) -> WorkItem:
    """Discard a partial sign-off and start a fresh round (admin only).

    The deliverable stays review_complete. A delivered deliverable keeps its
    completed record.
    """
    d = get_deliverable(deliverable_id)
    role = permission_service.resolve_role(user_id, d.project_id, role)
    permission_service.require(role, "deliverable.reset_signatures", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.DELIVERABLE.value, deliverable_id), *_subtree_keys(d)):
        d = get_deliverable(deliverable_id, refresh=True)
        if d.status != DeliverableStatus.REVIEW_COMPLETE.value:
            raise InvalidTransitionError(
                f"Cannot reset the signatures of deliverable {d.item_ref} while it is "
                f"{status_label(d.status)}.",
                details={"status": d.status},
            )
        try:
            signature_engine.cancel_record(EntityKind.DELIVERABLE, d.id, "Signatures reset")
            record = signature_engine.open_record(
                EntityKind.DELIVERABLE, d.id, tenant_id=d.tenant_id, project_id=d.project_id,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Deliverable signatures reset",
        extra={"tenant_id": d.tenant_id, "project_id": d.project_id, "deliverable_id": d.id,
               "sequence": record.sequence, "actor_id": user_id},
    )
    return d


def submitted_for_review(tenant_id: int, project_id: int) -> list[WorkItem]:
    """Deliverables waiting on a reviewer, oldest submission first."""
    return list(db.session.execute(
        select(WorkItem)
        .where(
            WorkItem.tenant_id == tenant_id,
            WorkItem.project_id == project_id,
            WorkItem.kind == "deliverable",
            WorkItem.status == DeliverableStatus.SUBMITTED_FOR_REVIEW.value,
            WorkItem.deleted_at.is_(None),
        )
        .order_by(WorkItem.submitted_at, WorkItem.id)
    ).scalars())


# ── Signature strategy ───────────────────────────────────────────────────────


def _check_can_sign(d: WorkItem) -> None:
    if d.status != DeliverableStatus.REVIEW_COMPLETE.value:
        raise InvalidTransitionError(
            f"Deliverable {d.item_ref} must be Review Complete before it can be signed off "
            f"(currently {status_label(d.status)}).",
            details={"status": d.status},
        )


def _on_complete(d: WorkItem, record, party) -> None:
    _transition(d, DeliverableStatus.DELIVERED.value, "deliver")
    d.progress = 100
    d.delivered_at = record.completed_at
    d.delivered_by = record.signer_id(party)


signature_engine.register_spec(signature_engine.SignatureSpec(
    kind=EntityKind.DELIVERABLE,
    label="deliverable",
    required_action="sign_deliverable",
    load=lambda entity_id, refresh=False: get_deliverable(entity_id, refresh=refresh),
    scope=lambda d: (d.tenant_id, d.project_id),
    describe=lambda d: f"{d.item_ref} {d.name}",
    check_can_sign=_check_can_sign,
    on_complete=_on_complete,
    lock_keys=_subtree_keys,
))
