"""
Variations (change requests) against committed milestone baselines.

    create_variation  → draft (milestone deltas + deliverable operations)
    update_variation  → draft only
    submit_variation  → submitted: originals snapshotted, impacts computed,
                        signature record opened
    sign_variation    → awaiting_customer / awaiting_supplier → approved →
                        applied
    reject_variation  → rejected (before approval), record cancelled
    reset_to_draft    → rejected back to draft for rework
    delete_variation  → draft, submitted or rejected only (nobody has signed)

A milestone carries at most one in-flight variation (submitted through
approved); create and submit raise VariationPendingError otherwise.

Completion runs inside the signing transaction. The approved variation
writes BaselineVersion N+1 for every affected milestone, then applies its
deliverable add/modify/remove operations through the hierarchy store, then
becomes applied with a ``<VAR-ref>-CERT`` certificate number. Any failure
rolls the whole transaction back, signature included, so a half-applied
variation is never visible. ``apply_variation`` is the idempotent retry for
a variation left in ``approved``.
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from tracker.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    VariationPendingError,
)
from tracker.models import db
from tracker.models.signature import EntityKind, Party
from tracker.models.variation import (
    CHANGE_TYPES,
    DELETABLE_STATUSES,
    IN_FLIGHT_STATUSES,
    REJECTABLE_STATUSES,
    VARIATION_TYPES,
    Variation,
    VariationDeliverable,
    VariationMilestone,
    VariationStatus,
    validate_variation_transition,
)
from tracker.models.work_item import EDITABLE_FIELDS, DeliverableStatus, WorkItem
from tracker.services import events, hierarchy_service, locks, permission_service, signature_engine
from tracker.services.aggregation import deliverables_of
from tracker.services.baseline_service import get_milestone, sync_breach, write_baseline_version
from tracker.utils.helpers import parse_date_strict

logger = logging.getLogger(__name__)

_AWAITING = frozenset({
    VariationStatus.SUBMITTED.value,
    VariationStatus.AWAITING_CUSTOMER.value,
    VariationStatus.AWAITING_SUPPLIER.value,
})


# ── Loading ──────────────────────────────────────────────────────────────────


def get_variation(variation_id: int, *, tenant_id: int | None = None, refresh: bool = False) -> Variation:
    v = db.session.get(Variation, variation_id, populate_existing=refresh)
    if v is None or (tenant_id is not None and v.tenant_id != tenant_id):
        raise NotFoundError(resource="Variation", resource_id=variation_id, tenant_id=tenant_id)
    return v


def list_variations(tenant_id: int, project_id: int, status: str | None = None) -> list[Variation]:
    stmt = select(Variation).where(Variation.tenant_id == tenant_id, Variation.project_id == project_id)
    if status:
        stmt = stmt.where(Variation.status == status)
    return list(db.session.execute(stmt.order_by(Variation.id)).scalars())


def _next_ref(project_id: int) -> str:
    refs = db.session.execute(
        select(Variation.variation_ref).where(Variation.project_id == project_id)
    ).scalars()
    highest = 0
    for ref in refs:
        suffix = ref.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"VAR-{highest + 1:03d}"


def _set_status(v: Variation, new_status: str) -> None:
    if not validate_variation_transition(v.status, new_status):
        raise InvalidTransitionError(
            f"Variation {v.variation_ref} cannot move from {v.status} to {new_status}.",
            details={"status": v.status, "target_status": new_status},
        )
    v.status = new_status


def _touched_milestone_ids(v: Variation) -> list[int]:
    ids = {vm.milestone_id for vm in v.milestones}
    ids.update(vd.milestone_id for vd in v.deliverables)
    return sorted(ids)


# ── Payload validation ───────────────────────────────────────────────────────


def _project_milestone(project_id: int, milestone_id) -> WorkItem:
    m = get_milestone(milestone_id)
    if m.project_id != project_id:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)
    return m


def _parse_amount(value, field):
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"{field} must be a number.", details={field: value})


def _build_milestone_rows(project_id: int, rows: list) -> list[VariationMilestone]:
    built = []
    seen = set()
    for row in rows or []:
        m = _project_milestone(project_id, row.get("milestone_id"))
        if m.id in seen:
            raise ValidationError(
                f"Milestone {m.item_ref} is listed twice in this variation.",
                details={"milestone_id": m.id},
            )
        seen.add(m.id)
        start = parse_date_strict(row.get("new_start_date"), "new_start_date")
        end = parse_date_strict(row.get("new_end_date"), "new_end_date")
        if start and end and end < start:
            raise ValidationError(
                f"New end date for {m.item_ref} cannot be before its new start date.",
                details={"milestone_id": m.id},
            )
        hierarchy_service.check_item_changes(
            m.kind, {"start_date": start or m.start_date, "end_date": end or m.end_date}, target=m,
        )
        built.append(VariationMilestone(
            milestone_id=m.id,
            new_start_date=start,
            new_end_date=end,
            new_billable=_parse_amount(row.get("new_billable"), "new_billable"),
        ))
    return built


def _build_deliverable_rows(project_id: int, rows: list) -> list[VariationDeliverable]:
    built = []
    for row in rows or []:
        change_type = row.get("change_type")
        if change_type not in CHANGE_TYPES:
            raise ValidationError(
                f"Invalid change_type '{change_type}'. Must be one of: add, modify, remove.",
                details={"change_type": change_type},
            )
        m = _project_milestone(project_id, row.get("milestone_id"))
        data = row.get("data") or {}

        unknown = set(data) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Field(s) not allowed in a deliverable change: {', '.join(sorted(unknown))}.",
                details={f: "not allowed" for f in sorted(unknown)},
            )

        deliverable_id = None
        if change_type == "add":
            if not (data.get("name") or "").strip():
                raise ValidationError("A new deliverable needs a name.", details={"name": "required"})
            hierarchy_service.check_item_changes("deliverable", data)
        else:
            d = hierarchy_service.get_item(row.get("deliverable_id")) if row.get("deliverable_id") else None
            if d is None or not d.is_deliverable or d.parent_id != m.id:
                raise ValidationError(
                    f"A {change_type} change needs a deliverable of milestone {m.item_ref}.",
                    details={"deliverable_id": row.get("deliverable_id")},
                )
            if change_type == "remove" and d.status == DeliverableStatus.DELIVERED.value:
                raise ValidationError(
                    f"{d.item_ref} has been delivered and cannot be removed.",
                    details={"deliverable_id": d.id},
                )
            if change_type == "modify" and not data:
                raise ValidationError(
                    f"The modify change for {d.item_ref} does not change anything.",
                    details={"data": "required"},
                )
            if change_type == "modify":
                hierarchy_service.check_item_changes(d.kind, data, target=d)
            deliverable_id = d.id

        built.append(VariationDeliverable(
            change_type=change_type,
            milestone_id=m.id,
            deliverable_id=deliverable_id,
            new_data_json=json.dumps(data, default=str) if data else None,
            removal_reason=row.get("removal_reason") if change_type == "remove" else None,
        ))
    return built


def _apply_header(v: Variation, data: dict) -> None:
    if "title" in data or v.title is None:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required.", details={"title": "required"})
        v.title = title
    if "variation_type" in data:
        vtype = data.get("variation_type") or "combined"
        if vtype not in VARIATION_TYPES:
            raise ValidationError(
                f"Invalid variation_type '{vtype}'. Must be one of: {', '.join(sorted(VARIATION_TYPES))}.",
                details={"variation_type": vtype},
            )
        v.variation_type = vtype
    for field in ("reason", "description"):
        if field in data:
            setattr(v, field, data.get(field))


# ── Lifecycle ────────────────────────────────────────────────────────────────


def create_variation(tenant_id: int, project_id: int, user_id: int, data: dict, *, role=None) -> Variation:
    """Create a draft variation.

    ``data``: title, variation_type, reason, description,
    milestones: [{milestone_id, new_start_date, new_end_date, new_billable}],
    deliverables: [{change_type, milestone_id, deliverable_id, data, removal_reason}].
    """
    role = permission_service.resolve_role(user_id, project_id, role)
    permission_service.require(role, "variation.create", user_id=user_id)

    v = Variation(tenant_id=tenant_id, project_id=project_id, created_by=user_id,
                  status=VariationStatus.DRAFT.value)
    try:
        _apply_header(v, data)
        v.milestones = _build_milestone_rows(project_id, data.get("milestones"))
        v.deliverables = _build_deliverable_rows(project_id, data.get("deliverables"))
        _ensure_no_pending(_touched_milestone_ids(v))
        v.variation_ref = _next_ref(project_id)
        db.session.add(v)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Variation created",
        extra={"tenant_id": tenant_id, "project_id": project_id,
               "variation_id": v.id, "variation_ref": v.variation_ref},
    )
    return v


def update_variation(variation_id: int, user_id: int, data: dict, *, tenant_id: int | None = None, role=None) -> Variation:
    v = get_variation(variation_id, tenant_id=tenant_id)
    role = permission_service.resolve_role(user_id, v.project_id, role)
    permission_service.require(role, "variation.create", user_id=user_id)
    if v.status != VariationStatus.DRAFT.value:
        raise InvalidTransitionError(
            f"Variation {v.variation_ref} is {v.status}; only draft variations can be edited.",
            details={"status": v.status},
        )
    try:
        _apply_header(v, data)
        if "milestones" in data:
            v.milestones = _build_milestone_rows(v.project_id, data.get("milestones"))
        if "deliverables" in data:
            v.deliverables = _build_deliverable_rows(v.project_id, data.get("deliverables"))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return v


def _compute_impacts(v: Variation) -> None:
    """Snapshot original milestone values and derive cost/day impacts."""
    listed = {vm.milestone_id for vm in v.milestones}
    for milestone_id in sorted({vd.milestone_id for vd in v.deliverables} - listed):
        v.milestones.append(VariationMilestone(milestone_id=milestone_id))

    total_cost = Decimal("0")
    total_days = 0
    for vm in v.milestones:
        m = get_milestone(vm.milestone_id)
        vm.original_start_date = m.start_date
        vm.original_end_date = m.end_date
        vm.original_billable = m.billable

        cost = Decimal("0")
        if vm.new_billable is not None:
            cost = Decimal(vm.new_billable) - Decimal(m.billable or 0)
        days = 0
        if vm.new_end_date and m.end_date:
            days = (vm.new_end_date - m.end_date).days
        vm.cost_impact = cost
        vm.days_impact = days
        total_cost += cost
        total_days += days

    v.total_cost_impact = total_cost
    v.total_days_impact = total_days


def _clear_impacts(v: Variation) -> None:
    """Undo _compute_impacts: drop the rows it appended and forget the snapshots."""
    v.milestones = [
        vm for vm in v.milestones
        if vm.new_start_date is not None or vm.new_end_date is not None or vm.new_billable is not None
    ]
    for vm in v.milestones:
        vm.original_start_date = None
        vm.original_end_date = None
        vm.original_billable = None
        vm.cost_impact = 0
        vm.days_impact = 0
    v.total_cost_impact = 0
    v.total_days_impact = 0


def submit_variation(variation_id: int, user_id: int, *, tenant_id: int | None = None, role=None) -> Variation:
    """Freeze the draft, compute impacts and open the signature record."""
    v = get_variation(variation_id, tenant_id=tenant_id)
    role = permission_service.resolve_role(user_id, v.project_id, role)
    permission_service.require(role, "variation.submit", user_id=user_id)

    keys = [locks.record_key(EntityKind.VARIATION.value, v.id)]
    keys.extend(locks.subtree_key(mid) for mid in _touched_milestone_ids(v))

    with locks.hold(*keys):
        v = get_variation(variation_id, refresh=True)
        if not v.milestones and not v.deliverables:
            raise ValidationError(
                f"Variation {v.variation_ref} has no milestone or deliverable changes to submit.",
            )
        _ensure_no_pending(_touched_milestone_ids(v), exclude_variation_id=v.id)
        try:
            _set_status(v, VariationStatus.SUBMITTED.value)
            _compute_impacts(v)
            v.submitted_by = user_id
            v.submitted_at = datetime.now(timezone.utc)
            db.session.flush()
            signature_engine.open_record(
                EntityKind.VARIATION, v.id, tenant_id=v.tenant_id, project_id=v.project_id,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Variation submitted",
        extra={"tenant_id": v.tenant_id, "project_id": v.project_id, "variation_id": v.id,
               "cost_impact": str(v.total_cost_impact), "days_impact": v.total_days_impact},
    )
    return v


def reject_variation(variation_id: int, user_id: int, reason: str, *, tenant_id: int | None = None, role=None) -> Variation:
    if not (reason or "").strip():
        raise ValidationError("A reason is required to reject a variation.", details={"reason": "required"})
    v = get_variation(variation_id, tenant_id=tenant_id)
    role = permission_service.resolve_role(user_id, v.project_id, role)
    permission_service.require(role, "variation.reject", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.VARIATION.value, v.id)):
        v = get_variation(variation_id, refresh=True)
        if v.status not in REJECTABLE_STATUSES:
            raise InvalidTransitionError(
                f"Variation {v.variation_ref} is {v.status} and can no longer be rejected.",
                details={"status": v.status},
            )
        try:
            _set_status(v, VariationStatus.REJECTED.value)
            v.rejection_reason = reason.strip()
            v.rejected_by = user_id
            v.rejected_at = datetime.now(timezone.utc)
            signature_engine.cancel_record(EntityKind.VARIATION, v.id, f"Rejected: {v.rejection_reason}")
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info("Variation rejected", extra={"variation_id": v.id, "project_id": v.project_id})
    return v


def reset_to_draft(variation_id: int, user_id: int, *, tenant_id: int | None = None, role=None) -> Variation:
    """Reopen a rejected variation for rework. Impacts are recomputed on the next submit."""
    v = get_variation(variation_id, tenant_id=tenant_id)
    role = permission_service.resolve_role(user_id, v.project_id, role)
    permission_service.require(role, "variation.create", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.VARIATION.value, v.id)):
        v = get_variation(variation_id, refresh=True)
        if v.status != VariationStatus.REJECTED.value:
            raise InvalidTransitionError(
                f"Variation {v.variation_ref} is {v.status}; only rejected variations can be reset to draft.",
                details={"status": v.status},
            )
        try:
            _set_status(v, VariationStatus.DRAFT.value)
            v.rejection_reason = None
            v.rejected_by = None
            v.rejected_at = None
            v.submitted_by = None
            v.submitted_at = None
            _clear_impacts(v)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info("Variation reset to draft", extra={"variation_id": v.id, "project_id": v.project_id})
    return v


def delete_variation(variation_id: int, user_id: int, *, tenant_id: int | None = None, role=None) -> None:
    """Hard-delete a variation nobody has signed (draft, submitted or rejected)."""
    v = get_variation(variation_id, tenant_id=tenant_id)
    role = permission_service.resolve_role(user_id, v.project_id, role)
    permission_service.require(role, "variation.create", user_id=user_id)

    with locks.hold(locks.record_key(EntityKind.VARIATION.value, v.id)):
        v = get_variation(variation_id, refresh=True)
        if v.status not in DELETABLE_STATUSES:
            raise InvalidTransitionError(
                f"Variation {v.variation_ref} is {v.status}. Only draft, submitted or rejected "
                "variations can be deleted.",
                details={"status": v.status},
            )
        ref, project_id = v.variation_ref, v.project_id
        try:
            signature_engine.cancel_record(EntityKind.VARIATION, v.id, "Variation deleted")
            db.session.delete(v)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Variation deleted",
        extra={"variation_id": variation_id, "variation_ref": ref, "project_id": project_id, "actor_id": user_id},
    )


def has_pending_variation(milestone_id: int, *, exclude_variation_id: int | None = None) -> bool:
    """True while a submitted, not yet applied variation touches the milestone."""
    stmt = (
        select(VariationMilestone.id)
        .join(Variation, Variation.id == VariationMilestone.variation_id)
        .where(
            VariationMilestone.milestone_id == milestone_id,
            Variation.status.in_(IN_FLIGHT_STATUSES),
        )
    )
    if exclude_variation_id is not None:
        stmt = stmt.where(Variation.id != exclude_variation_id)
    return db.session.execute(stmt.limit(1)).first() is not None


def _ensure_no_pending(milestone_ids, *, exclude_variation_id: int | None = None) -> None:
    for milestone_id in sorted(set(milestone_ids)):
        if has_pending_variation(milestone_id, exclude_variation_id=exclude_variation_id):
            m = get_milestone(milestone_id)
            raise VariationPendingError(
                f"Milestone {m.item_ref} already has a variation awaiting approval. "
                "Wait for it to be applied or rejected first.",
                details={"milestone_id": milestone_id},
            )


def sign_variation(variation_id: int, party, user_id: int, *, role=None, expected_version=None):
    record = signature_engine.sign(
        EntityKind.VARIATION, variation_id, party, user_id,
        role=role, expected_version=expected_version,
    )
    if record.is_complete:
        _publish_added_items(get_variation(variation_id), actor_id=user_id)
    return record


def apply_variation(variation_id: int, *, tenant_id: int | None = None, actor_id: int | None = None) -> Variation:
    """Apply an approved variation. Already-applied variations are returned as-is."""
    v = get_variation(variation_id, tenant_id=tenant_id)
    keys = [locks.record_key(EntityKind.VARIATION.value, v.id)]
    keys.extend(locks.subtree_key(mid) for mid in _touched_milestone_ids(v))

    with locks.hold(*keys):
        v = get_variation(variation_id, refresh=True)
        if v.status == VariationStatus.APPLIED.value:
            return v
        if v.status != VariationStatus.APPROVED.value:
            raise InvalidTransitionError(
                f"Variation {v.variation_ref} is {v.status}; only approved variations can be applied.",
                details={"status": v.status},
            )
        record = signature_engine.get_record(EntityKind.VARIATION, v.id)
        try:
            _apply(v, record)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    _publish_added_items(v, actor_id=actor_id)
    return v


# ── Application (flush-only) ─────────────────────────────────────────────────


def _apply(v: Variation, record) -> None:
    versions = {}
    for vm in v.milestones:
        m = get_milestone(vm.milestone_id)
        vm.version_before = m.current_baseline_version
        start = vm.new_start_date or m.start_date
        end = vm.new_end_date or m.end_date
        billable = vm.new_billable if vm.new_billable is not None else m.billable
        versions[m.id] = write_baseline_version(
            m,
            source="variation",
            record=record,
            variation_id=v.id,
            start_date=start,
            end_date=end,
            billable=billable,
        )
        vm.version_after = m.current_baseline_version
        hierarchy_service.apply_item_changes(m, {
            "start_date": start,
            "end_date": end,
            "billable": billable,
        })

    for vd in v.deliverables:
        milestone = get_milestone(vd.milestone_id)
        if vd.change_type == "add":
            item = hierarchy_service.add_item(
                v.tenant_id, v.project_id, "deliverable", milestone, vd.new_data,
            )
            vd.deliverable_id = item.id
        elif vd.change_type == "modify":
            hierarchy_service.apply_item_changes(hierarchy_service.get_item(vd.deliverable_id), vd.new_data)
        else:
            hierarchy_service.remove_item(hierarchy_service.get_item(vd.deliverable_id))
        vd.applied = True

    # Snapshots reflect the deliverable set after the operations above
    for milestone_id, version in versions.items():
        version.deliverable_ids_json = json.dumps(sorted(d.id for d in deliverables_of(milestone_id)))

    for milestone_id in _touched_milestone_ids(v):
        sync_breach(get_milestone(milestone_id))

    _set_status(v, VariationStatus.APPLIED.value)
    v.applied_at = datetime.now(timezone.utc)
    v.certificate_number = f"{v.variation_ref}-CERT"
    db.session.flush()
    logger.info(
        "Variation applied",
        extra={"tenant_id": v.tenant_id, "project_id": v.project_id, "variation_id": v.id,
               "milestones": sorted(versions)},
    )


def _publish_added_items(v: Variation, *, actor_id: int | None = None) -> None:
    if v.status != VariationStatus.APPLIED.value:
        return
    for vd in v.deliverables:
        if vd.change_type != "add" or vd.deliverable_id is None:
            continue
        item = db.session.get(WorkItem, vd.deliverable_id)
        events.publish("item_created", {
            "tenant_id": item.tenant_id,
            "project_id": item.project_id,
            "item_id": item.id,
            "item_ref": item.item_ref,
            "kind": item.kind,
            "parent_id": item.parent_id,
            "wbs": item.wbs,
            "actor_id": actor_id,
            "variation_id": v.id,
        })


# ── Signature strategy ───────────────────────────────────────────────────────


def _check_can_sign(v: Variation) -> None:
    if v.status not in _AWAITING:
        raise InvalidTransitionError(
            f"Variation {v.variation_ref} is {v.status}; only submitted variations can be signed.",
            details={"status": v.status},
        )


def _on_signed(v: Variation, record, party) -> None:
    if record.is_complete:
        return
    if Party(party) is Party.SUPPLIER:
        _set_status(v, VariationStatus.AWAITING_CUSTOMER.value)
    else:
        _set_status(v, VariationStatus.AWAITING_SUPPLIER.value)


def _on_complete(v: Variation, record, party) -> None:
    _set_status(v, VariationStatus.APPROVED.value)
    v.approved_at = record.completed_at
    _apply(v, record)


signature_engine.register_spec(signature_engine.SignatureSpec(
    kind=EntityKind.VARIATION,
    label="variation",
    required_action="approve_variation",
    load=lambda entity_id, refresh=False: get_variation(entity_id, refresh=refresh),
    scope=lambda v: (v.tenant_id, v.project_id),
    describe=lambda v: f"{v.variation_ref} {v.title}",
    check_can_sign=_check_can_sign,
    on_signed=_on_signed,
    on_complete=_on_complete,
    lock_keys=lambda v: [locks.subtree_key(mid) for mid in _touched_milestone_ids(v)],
))
