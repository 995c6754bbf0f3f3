"""
Milestone baseline commitment.

A milestone's committed scope (dates, billable value, deliverable set) is
agreed by both parties through a ``milestone_baseline`` signature record.
Completion writes an immutable BaselineVersion with the next version number
and locks the baseline. After that the committed scope only changes through
an applied variation, which writes the following version itself via
``write_baseline_version``.

A baselined milestone is flagged as breached while any of its deliverables
ends after the committed end date. ``sync_breach`` raises and clears the
flag from the hierarchy store and variation application; the flag can also
be set by hand with a reason.
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from tracker.core.exceptions import InvalidTransitionError, NotFoundError, TypeConstraintError
from tracker.models import db
from tracker.models.baseline import BaselineVersion
from tracker.models.signature import EntityKind, Party
from tracker.models.work_item import WorkItem
from tracker.services import locks, permission_service, signature_engine
from tracker.services.aggregation import deliverables_of
from tracker.utils.helpers import parse_date_strict

logger = logging.getLogger(__name__)


def get_milestone(milestone_id: int, *, refresh: bool = False, tenant_id: int | None = None) -> WorkItem:
    item = db.session.get(WorkItem, milestone_id, populate_existing=refresh)
    if item is None or item.is_deleted or (tenant_id is not None and item.tenant_id != tenant_id):
        raise NotFoundError(resource="Milestone", resource_id=milestone_id, tenant_id=tenant_id)
    if not item.is_milestone:
        raise TypeConstraintError(
            f"{item.item_ref} is a {item.kind}; only milestones carry a baseline.",
            details={"item_id": item.id, "kind": item.kind},
        )
    return item


def write_baseline_version(
    milestone: WorkItem,
    *,
    source: str,
    record=None,
    variation_id: int | None = None,
    start_date=None,
    end_date=None,
    billable=None,
    deliverable_ids: list[int] | None = None,
) -> BaselineVersion:
    """Append version ``current + 1`` and move the milestone's baseline fields.

    Schedule values default to the milestone's current ones. Flushes only.
    """
    number = (milestone.current_baseline_version or 0) + 1
    if deliverable_ids is None:
        deliverable_ids = [d.id for d in deliverables_of(milestone.id)]

    version = BaselineVersion(
        tenant_id=milestone.tenant_id,
        project_id=milestone.project_id,
        milestone_id=milestone.id,
        version_number=number,
        source=source,
        signature_record_id=record.id if record is not None else None,
        variation_id=variation_id,
        start_date=start_date if start_date is not None else milestone.start_date,
        end_date=end_date if end_date is not None else milestone.end_date,
        billable=billable if billable is not None else milestone.billable,
        deliverable_ids_json=json.dumps(sorted(deliverable_ids)),
    )
    if record is not None:
        version.supplier_signer_name = record.signer_name(Party.SUPPLIER)
        version.supplier_signed_at = record.signed_at(Party.SUPPLIER)
        version.customer_signer_name = record.signer_name(Party.CUSTOMER)
        version.customer_signed_at = record.signed_at(Party.CUSTOMER)
    db.session.add(version)

    milestone.baseline_start_date = version.start_date
    milestone.baseline_end_date = version.end_date
    milestone.baseline_billable = version.billable
    milestone.baseline_locked = True
    milestone.current_baseline_version = number
    db.session.flush()

    logger.info(
        "Baseline version written",
        extra={"tenant_id": milestone.tenant_id, "project_id": milestone.project_id,
               "milestone_id": milestone.id, "version": number, "source": source},
    )
    return version


def request_commitment(milestone_id: int, user_id: int, *, role=None):
    """Open the baseline signature record for an unlocked milestone."""
    m = get_milestone(milestone_id)
    role = permission_service.resolve_role(user_id, m.project_id, role)
    permission_service.require(role, "baseline.request", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.MILESTONE_BASELINE.value, m.id), locks.subtree_key(m.id)):
        m = get_milestone(milestone_id, refresh=True)
        _check_can_sign(m)
        try:
            record = signature_engine.open_record(
                EntityKind.MILESTONE_BASELINE, m.id, tenant_id=m.tenant_id, project_id=m.project_id,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return record


def sign_baseline(milestone_id: int, party, user_id: int, *, role=None, expected_version=None):
    return signature_engine.sign(
        EntityKind.MILESTONE_BASELINE, milestone_id, party, user_id,
        role=role, expected_version=expected_version,
    )


def list_versions(milestone_id: int) -> list[BaselineVersion]:
    get_milestone(milestone_id)
    return list(db.session.execute(
        select(BaselineVersion)
        .where(BaselineVersion.milestone_id == milestone_id)
        .order_by(BaselineVersion.version_number)
    ).scalars())


def current_version(milestone_id: int) -> BaselineVersion | None:
    latest = db.session.execute(
        select(func.max(BaselineVersion.version_number)).where(BaselineVersion.milestone_id == milestone_id)
    ).scalar()
    if latest is None:
        return None
    return db.session.execute(
        select(BaselineVersion).where(
            BaselineVersion.milestone_id == milestone_id,
            BaselineVersion.version_number == latest,
        )
    ).scalar_one()


# ── Baseline breach ──────────────────────────────────────────────────────────


def committed_end_date(m: WorkItem):
    return m.baseline_end_date or m.end_date


def late_deliverables(m: WorkItem) -> list[WorkItem]:
    """Active deliverables whose end date falls after the milestone's committed end."""
    end = committed_end_date(m)
    if end is None:
        return []
    return [d for d in deliverables_of(m.id) if d.end_date is not None and d.end_date > end]


def check_deliverable_date_breach(milestone_id: int, proposed_date) -> dict:
    """Would a deliverable ending on ``proposed_date`` run past the milestone? Read-only."""
    m = get_milestone(milestone_id)
    proposed = parse_date_strict(proposed_date, "proposed_date")
    end = committed_end_date(m)
    return {
        "milestone_id": m.id,
        "would_breach": bool(proposed and end and proposed > end),
        "is_baselined": m.baseline_locked,
        "milestone_end_date": end.isoformat() if end else None,
        "proposed_date": proposed.isoformat() if proposed else None,
    }


def mark_breach(m: WorkItem, breached: bool, *, reason: str | None = None, breached_by: int | None = None) -> None:
    """Set or clear the breach fields. Flushes only."""
    m.baseline_breached = breached
    if breached:
        m.baseline_breach_reason = reason
        m.baseline_breached_at = datetime.now(timezone.utc)
        m.baseline_breached_by = breached_by
    else:
        m.baseline_breach_reason = None
        m.baseline_breached_at = None
        m.baseline_breached_by = None
    db.session.flush()


def sync_breach(m: WorkItem, *, actor_id: int | None = None) -> bool:
    """Flag a baselined milestone with late deliverables, clear it once none are late.

    Flushes only. Returns the resulting flag.
    """
    if not m.baseline_locked:
        return m.baseline_breached
    late = late_deliverables(m)
    if late and not m.baseline_breached:
        mark_breach(
            m, True,
            reason=f"{late[0].item_ref} ends {late[0].end_date.isoformat()}, after the committed "
                   f"end date {committed_end_date(m).isoformat()}.",
            breached_by=actor_id,
        )
        logger.warning(
            "Baseline breached",
            extra={"tenant_id": m.tenant_id, "project_id": m.project_id, "milestone_id": m.id,
                   "item_id": late[0].id},
        )
    elif not late and m.baseline_breached:
        mark_breach(m, False)
        logger.info("Baseline breach cleared", extra={"milestone_id": m.id})
    return m.baseline_breached


def set_baseline_breach(
    milestone_id: int,
    breached: bool,
    *,
    reason: str | None = None,
    breached_by: int | None = None,
    tenant_id: int | None = None,
) -> WorkItem:
    m = get_milestone(milestone_id, tenant_id=tenant_id)
    with locks.hold(locks.subtree_key(m.id)):
        m = get_milestone(milestone_id, refresh=True)
        try:
            mark_breach(m, breached, reason=reason, breached_by=breached_by)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    return m


def check_and_clear_breach(milestone_id: int, *, tenant_id: int | None = None) -> bool:
    """Clear the breach flag when no deliverable ends late any more. Returns True if cleared."""
    m = get_milestone(milestone_id, tenant_id=tenant_id)
    if not m.baseline_breached:
        return False
    with locks.hold(locks.subtree_key(m.id)):
        m = get_milestone(milestone_id, refresh=True)
        if not m.baseline_breached or late_deliverables(m):
            return False
        try:
            mark_breach(m, False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    logger.info("Baseline breach cleared", extra={"milestone_id": m.id})
    return True


# ── Signature strategy ───────────────────────────────────────────────────────


def _check_can_sign(m: WorkItem) -> None:
    if m.baseline_locked:
        raise InvalidTransitionError(
            f"Milestone {m.item_ref} already has a committed baseline (version "
            f"{m.current_baseline_version}). Raise a variation to change it.",
            details={"current_baseline_version": m.current_baseline_version},
        )


def _on_complete(m: WorkItem, record, party) -> None:
    write_baseline_version(m, source="baseline_commitment", record=record)
    sync_breach(m)


signature_engine.register_spec(signature_engine.SignatureSpec(
    kind=EntityKind.MILESTONE_BASELINE,
    label="baseline",
    required_action="sign_baseline",
    load=lambda entity_id, refresh=False: get_milestone(entity_id, refresh=refresh),
    scope=lambda m: (m.tenant_id, m.project_id),
    describe=lambda m: f"{m.item_ref} {m.name} baseline",
    check_can_sign=_check_can_sign,
    on_complete=_on_complete,
    lock_keys=lambda m: [locks.subtree_key(m.id)],
))
