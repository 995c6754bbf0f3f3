"""
Hierarchy store — structural operations on the work-item tree.

Owns every write to ``parent_id``, ``kind``, ``sort_order`` and ``wbs``.
The nesting rule (Milestone → Deliverable → Task, tasks to any depth) is
enforced here and nowhere else.

Transaction contract:
    - Public operations (create_item, update_item, move, reorder, promote,
      demote, delete_item) are one unit of work each: they take the
      per-subtree locks they need, commit once, roll back on any error and
      publish their structural event after the commit.
    - ``add_item``, ``apply_item_changes`` and ``remove_item`` are the
      flush-only building blocks. Callers that compose a larger transaction
      (variation apply) use them and own the commit.

WBS numbering:
    Root milestones are 1..n per project; children are ``<parent>.<n>``.
    Every operation that changes a sibling list renumbers that list and the
    subtrees below it in the same transaction.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from tracker.core.exceptions import (
    InvalidTransitionError,
    NoValidParentError,
    NotFoundError,
    PromotionBlockedError,
    StaleVersionError,
    TypeConstraintError,
    ValidationError,
)
from tracker.models import db
from tracker.models.baseline import BaselineVersion
from tracker.models.certificate import MilestoneCertificate
from tracker.models.signature import SignatureRecord
from tracker.models.variation import VariationDeliverable, VariationMilestone
from tracker.models.work_item import (
    EDITABLE_FIELDS,
    ITEM_REF_PREFIX,
    DeliverableStatus,
    ItemKind,
    WorkItem,
    format_item_ref,
    is_valid_parent_kind,
    task_status_for_progress,
)
from tracker.services import baseline_service, events, locks
from tracker.services.aggregation import build_view
from tracker.utils.helpers import inclusive_days, parse_date_strict, round_half_up

logger = logging.getLogger(__name__)

_KIND_LABELS = {
    ItemKind.MILESTONE.value: "milestone",
    ItemKind.DELIVERABLE.value: "deliverable",
    ItemKind.TASK.value: "task",
}

_SCHEDULE_FIELDS = frozenset({"start_date", "end_date", "progress"})


# ═════════════════════════════════════════════════════════════════════════════
# Lookups
# ═════════════════════════════════════════════════════════════════════════════


def get_item(item_id: int, *, tenant_id: int | None = None, refresh: bool = False) -> WorkItem:
    """Return an active work item or raise NotFoundError."""
    item = db.session.get(WorkItem, item_id, populate_existing=refresh)
    if item is None or item.is_deleted or (tenant_id is not None and item.tenant_id != tenant_id):
        raise NotFoundError(resource="WorkItem", resource_id=item_id, tenant_id=tenant_id)
    return item


def active_children(project_id: int, parent_id: int | None) -> list[WorkItem]:
    """Direct, non-deleted children in sibling order. ``parent_id=None`` → root milestones."""
    parent_clause = WorkItem.parent_id.is_(None) if parent_id is None else WorkItem.parent_id == parent_id
    return list(db.session.execute(
        select(WorkItem)
        .where(
            WorkItem.project_id == project_id,
            parent_clause,
            WorkItem.deleted_at.is_(None),
        )
        .order_by(WorkItem.sort_order, WorkItem.id)
    ).scalars())


def children_of(item_id: int) -> list[WorkItem]:
    item = get_item(item_id)
    return active_children(item.project_id, item.id)


def descendants_of(item: WorkItem) -> list[WorkItem]:
    """All active descendants, breadth first."""
    found = []
    frontier = [item]
    while frontier:
        node = frontier.pop(0)
        kids = active_children(node.project_id, node.id)
        found.extend(kids)
        frontier.extend(kids)
    return found


def root_milestone_of(item: WorkItem) -> WorkItem:
    node = item
    while node.parent_id is not None:
        node = db.session.get(WorkItem, node.parent_id)
    return node


def owning_deliverable(item: WorkItem | None) -> WorkItem | None:
    """Nearest deliverable at or above ``item`` (None above deliverable level)."""
    node = item
    while node is not None and not node.is_deliverable:
        if node.parent_id is None:
            return None
        node = db.session.get(WorkItem, node.parent_id)
    return node


def get_tree(tenant_id: int, project_id: int) -> list[dict]:
    """Nested read model of the project's hierarchy with computed milestone figures."""
    items = db.session.execute(
        select(WorkItem)
        .where(
            WorkItem.tenant_id == tenant_id,
            WorkItem.project_id == project_id,
            WorkItem.deleted_at.is_(None),
        )
        .order_by(WorkItem.sort_order, WorkItem.id)
    ).scalars().all()

    by_parent: dict[int | None, list[WorkItem]] = {}
    for item in items:
        by_parent.setdefault(item.parent_id, []).append(item)

    def _node(item: WorkItem) -> dict:
        kids = by_parent.get(item.id, [])
        if item.is_milestone:
            d = build_view(item, [k for k in kids if k.is_deliverable]).to_dict()
        else:
            d = item.to_dict()
        d["children"] = [_node(k) for k in kids]
        return d

    return [_node(m) for m in by_parent.get(None, [])]


# ═════════════════════════════════════════════════════════════════════════════
# Private helpers
# ═════════════════════════════════════════════════════════════════════════════


def _kind_value(kind) -> str:
    try:
        return ItemKind(kind).value
    except ValueError:
        raise ValidationError(
            f"Unknown item kind '{kind}'. Must be one of: milestone, deliverable, task.",
            details={"kind": kind},
        )


def _check_parent(kind: str, parent: WorkItem | None) -> None:
    parent_kind = parent.kind if parent is not None else None
    if is_valid_parent_kind(kind, parent_kind):
        return
    if kind == ItemKind.MILESTONE.value:
        msg = "A milestone is always top-level; it cannot be placed under another item."
    elif kind == ItemKind.DELIVERABLE.value:
        msg = "A deliverable must sit directly under a milestone."
    else:
        msg = "A task must sit under a deliverable or another task."
    raise TypeConstraintError(
        msg,
        details={"kind": kind, "parent_kind": parent_kind, "parent_id": parent.id if parent else None},
    )


def _check_same_project(item_project_id: int, parent: WorkItem | None) -> None:
    if parent is not None and parent.project_id != item_project_id:
        raise NotFoundError(resource="WorkItem", resource_id=parent.id)


def _next_item_ref(project_id: int, kind: str) -> str:
    prefix = ITEM_REF_PREFIX[kind]
    refs = db.session.execute(
        select(WorkItem.item_ref).where(
            WorkItem.project_id == project_id,
            WorkItem.item_ref.like(f"{prefix}-%"),
        )
    ).scalars()
    highest = 0
    for ref in refs:
        suffix = ref.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return format_item_ref(kind, highest + 1)


def _renumber(project_id: int, parent: WorkItem | None, ordered: list[WorkItem] | None = None) -> None:
    """Assign sort_order/wbs to a sibling list and every subtree below it."""
    siblings = ordered if ordered is not None else active_children(
        project_id, parent.id if parent is not None else None,
    )
    prefix = f"{parent.wbs}." if parent is not None else ""
    for idx, node in enumerate(siblings):
        wbs = f"{prefix}{idx + 1}"
        if node.sort_order != idx:
            node.sort_order = idx
        if node.wbs != wbs:
            node.wbs = wbs
        _renumber(project_id, node)


def _place(item: WorkItem, parent: WorkItem | None, position: int | None) -> None:
    """Insert ``item`` into its parent's sibling list at ``position`` and renumber."""
    siblings = [
        s for s in active_children(item.project_id, parent.id if parent is not None else None)
        if s.id != item.id
    ]
    if position is None or position >= len(siblings):
        siblings.append(item)
    else:
        siblings.insert(max(int(position), 0), item)
    _renumber(item.project_id, parent, siblings)


def _location_keys(project_id: int, parent: WorkItem | None) -> list[tuple]:
    """Locks covering a sibling list: its root subtree, or the whole root level."""
    if parent is not None:
        return [locks.subtree_key(root_milestone_of(parent).id)]
    keys = [locks.roots_key(project_id)]
    keys.extend(locks.subtree_key(m.id) for m in active_children(project_id, None))
    return keys


def _ensure_not_under_locked_deliverable(node: WorkItem | None) -> None:
    deliverable = owning_deliverable(node)
    if deliverable is not None and deliverable.is_locked:
        raise InvalidTransitionError(
            f"Deliverable {deliverable.item_ref} is {deliverable.status.replace('_', ' ')}; "
            "its tasks cannot be changed until it is returned for more work.",
            details={"deliverable_id": deliverable.id, "status": deliverable.status},
        )


def _has_approval_history(item: WorkItem) -> bool:
    """True once the item is referenced by any approval or baseline record."""
    checks = [
        select(func.count(SignatureRecord.id)).where(SignatureRecord.entity_id == item.id,
                                                     SignatureRecord.entity_kind.in_(
                                                         ["deliverable", "milestone_baseline"])),
        select(func.count(BaselineVersion.id)).where(BaselineVersion.milestone_id == item.id),
        select(func.count(MilestoneCertificate.id)).where(MilestoneCertificate.milestone_id == item.id),
        select(func.count(VariationMilestone.id)).where(VariationMilestone.milestone_id == item.id),
        select(func.count(VariationDeliverable.id)).where(VariationDeliverable.deliverable_id == item.id),
    ]
    return any(db.session.execute(q).scalar() for q in checks)


def _ensure_kind_change_allowed(item: WorkItem) -> None:
    if item.is_locked:
        raise TypeConstraintError(
            f"Deliverable {item.item_ref} is in review and cannot change type.",
            details={"item_id": item.id, "status": item.status},
        )
    if _has_approval_history(item):
        raise TypeConstraintError(
            f"{item.item_ref} has sign-off, baseline or variation history and cannot change type.",
            details={"item_id": item.id},
        )


def _retype(item: WorkItem, new_kind: str) -> None:
    """Change kind, issue a fresh reference and map status/progress across."""
    old_kind = item.kind
    item.kind = new_kind
    item.item_ref = _next_item_ref(item.project_id, new_kind)
    if new_kind == ItemKind.MILESTONE.value:
        item.status = None
    elif new_kind == ItemKind.DELIVERABLE.value:
        item.status = (
            DeliverableStatus.IN_PROGRESS.value if item.progress else DeliverableStatus.DRAFT.value
        )
    else:
        item.status = task_status_for_progress(item.progress)
    logger.debug("Retyped %s: %s -> %s", item.item_ref, old_kind, new_kind)


def _set_deliverable_progress(deliverable: WorkItem, progress: int) -> None:
    deliverable.progress = progress
    if progress > 0 and deliverable.status == DeliverableStatus.DRAFT.value:
        deliverable.status = DeliverableStatus.IN_PROGRESS.value
    elif progress == 0 and deliverable.status == DeliverableStatus.IN_PROGRESS.value:
        deliverable.status = DeliverableStatus.DRAFT.value


def _rollup_progress(start: WorkItem | None) -> None:
    """Recompute stored progress from children, walking up to the deliverable."""
    node = start
    while node is not None and not node.is_milestone:
        kids = active_children(node.project_id, node.id)
        if kids:
            value = round_half_up(sum(k.progress or 0 for k in kids) / len(kids))
            if node.is_deliverable:
                if not node.is_locked:
                    _set_deliverable_progress(node, value)
                return
            node.progress = value
            node.status = task_status_for_progress(value)
        elif node.is_deliverable:
            return
        node = db.session.get(WorkItem, node.parent_id) if node.parent_id else None


def _parse_progress(value) -> int:
    try:
        progress = int(value)
    except (TypeError, ValueError):
        raise ValidationError("Progress must be a whole number between 0 and 100.", details={"progress": value})
    if not 0 <= progress <= 100:
        raise ValidationError("Progress must be between 0 and 100.", details={"progress": value})
    return progress


def _parse_amount(value, field):
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number.", details={field: value})


def _apply_attrs(item: WorkItem, attrs: dict) -> None:
    """Copy editable attributes onto ``item`` after validating them."""
    unknown = set(attrs) - EDITABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Field(s) not editable here: {', '.join(sorted(unknown))}. "
            "Use move, reorder, promote or demote for structural changes.",
            details={f: "not editable" for f in sorted(unknown)},
        )

    if item.is_locked and _SCHEDULE_FIELDS & set(attrs):
        raise InvalidTransitionError(
            f"Deliverable {item.item_ref} is {item.status.replace('_', ' ')}; "
            "progress and dates are frozen until it is returned for more work.",
            details={"status": item.status},
        )

    if "name" in attrs:
        name = (attrs.get("name") or "").strip()
        if not name:
            raise ValidationError("Name is required.", details={"name": "required"})
        item.name = name
    if "description" in attrs:
        item.description = attrs.get("description")

    if "start_date" in attrs:
        item.start_date = parse_date_strict(attrs.get("start_date"), "start_date")
    if "end_date" in attrs:
        item.end_date = parse_date_strict(attrs.get("end_date"), "end_date")
    if item.start_date and item.end_date and item.end_date < item.start_date:
        raise ValidationError("End date cannot be before start date.", details={"end_date": "before start_date"})
    item.duration_days = inclusive_days(item.start_date, item.end_date)

    if "estimate_component_id" in attrs:
        item.estimate_component_id = attrs.get("estimate_component_id")
    if "billable" in attrs:
        item.billable = _parse_amount(attrs.get("billable"), "billable")
    for flag in ("is_billed", "is_received"):
        if flag in attrs:
            setattr(item, flag, bool(attrs.get(flag)))
    if "purchase_order" in attrs:
        item.purchase_order = attrs.get("purchase_order")

    if "progress" in attrs:
        if item.is_milestone:
            raise ValidationError(
                "Milestone progress is computed from its deliverables and cannot be set directly.",
                details={"progress": "computed"},
            )
        progress = _parse_progress(attrs.get("progress"))
        if item.id is not None and active_children(item.project_id, item.id):
            raise ValidationError(
                f"{item.item_ref} has tasks; its progress is rolled up from them.",
                details={"progress": "rolled up"},
            )
        if item.is_deliverable:
            _set_deliverable_progress(item, progress)
        else:
            item.progress = progress
            item.status = task_status_for_progress(progress)


def _stale_error(item_label: str) -> StaleVersionError:
    return StaleVersionError(
        f"{item_label} was changed by someone else while you were editing. Reload and try again.",
    )


def _commit_or_stale(item_label: str) -> None:
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        raise _stale_error(item_label)


def _event_payload(item: WorkItem, **extra) -> dict:
    payload = {
        "tenant_id": item.tenant_id,
        "project_id": item.project_id,
        "item_id": item.id,
        "item_ref": item.item_ref,
        "kind": item.kind,
        "parent_id": item.parent_id,
        "wbs": item.wbs,
    }
    payload.update(extra)
    return payload


# ═════════════════════════════════════════════════════════════════════════════
# Flush-only building blocks
# ═════════════════════════════════════════════════════════════════════════════


def add_item(
    tenant_id: int,
    project_id: int,
    kind,
    parent: WorkItem | None,
    attrs: dict | None = None,
    *,
    position: int | None = None,
) -> WorkItem:
    """Create and place a work item. Flushes; the caller commits."""
    kind = _kind_value(kind)
    attrs = dict(attrs or {})
    _check_parent(kind, parent)
    _check_same_project(project_id, parent)
    if kind == ItemKind.TASK.value:
        _ensure_not_under_locked_deliverable(parent)
    if not (attrs.get("name") or "").strip():
        raise ValidationError("Name is required.", details={"name": "required"})

    item = WorkItem(
        tenant_id=tenant_id,
        project_id=project_id,
        kind=kind,
        parent_id=parent.id if parent is not None else None,
        item_ref=_next_item_ref(project_id, kind),
        name=attrs["name"].strip(),
        progress=0,
        sort_order=0,
    )
    if kind == ItemKind.DELIVERABLE.value:
        item.status = DeliverableStatus.DRAFT.value
    elif kind == ItemKind.TASK.value:
        item.status = task_status_for_progress(0)
    _apply_attrs(item, attrs)

    db.session.add(item)
    db.session.flush()
    _place(item, parent, position)
    if kind == ItemKind.TASK.value:
        _rollup_progress(parent)
    db.session.flush()
    return item


def apply_item_changes(item: WorkItem, attrs: dict) -> WorkItem:
    """Validate and apply attribute edits, then roll progress up. Flushes only."""
    if item.is_task:
        _ensure_not_under_locked_deliverable(item)
    _apply_attrs(item, attrs)
    if "progress" in attrs and item.is_task:
        _rollup_progress(db.session.get(WorkItem, item.parent_id))
    db.session.flush()
    return item


def check_item_changes(kind, attrs: dict, *, target: WorkItem | None = None) -> None:
    """Validate ``attrs`` as add_item / apply_item_changes would, without writing.

    The edits land on a detached copy of ``target`` (or of a fresh item of
    ``kind``) that never joins the session.
    """
    kind = _kind_value(kind)
    scratch = WorkItem(kind=kind, progress=0)
    if target is not None:
        for field in ("id", "project_id", "item_ref", "status", "start_date", "end_date", "progress"):
            setattr(scratch, field, getattr(target, field))
    elif kind == ItemKind.DELIVERABLE.value:
        scratch.status = DeliverableStatus.DRAFT.value
    elif kind == ItemKind.TASK.value:
        scratch.status = task_status_for_progress(0)
    _apply_attrs(scratch, attrs)


def remove_item(item: WorkItem) -> list[WorkItem]:
    """Soft-delete ``item`` and its subtree, renumber and roll up. Flushes only."""
    subtree = [item] + descendants_of(item)
    delivered = [n for n in subtree if n.is_deliverable and n.status == DeliverableStatus.DELIVERED.value]
    if delivered:
        raise ValidationError(
            f"{delivered[0].item_ref} has been delivered and cannot be deleted.",
            details={"item_id": delivered[0].id},
        )
    if item.is_milestone and db.session.execute(
        select(func.count(MilestoneCertificate.id)).where(MilestoneCertificate.milestone_id == item.id)
    ).scalar():
        raise ValidationError(f"Milestone {item.item_ref} has an acceptance certificate and cannot be deleted.")
    if item.is_task:
        _ensure_not_under_locked_deliverable(item)

    parent = db.session.get(WorkItem, item.parent_id) if item.parent_id else None
    for node in subtree:
        node.soft_delete()
    db.session.flush()
    _renumber(item.project_id, parent)
    if item.is_task:
        _rollup_progress(parent)
    db.session.flush()
    return subtree


# ═════════════════════════════════════════════════════════════════════════════
# Public operations
# ═════════════════════════════════════════════════════════════════════════════


def create_item(
    tenant_id: int,
    project_id: int,
    kind,
    parent_id: int | None = None,
    attrs: dict | None = None,
    *,
    position: int | None = None,
    actor_id: int | None = None,
) -> WorkItem:
    """Create a work item under ``parent_id`` (None for a milestone).

    Raises:
        TypeConstraintError: parent kind violates Milestone → Deliverable → Task.
        NotFoundError: unknown parent, or parent in another tenant/project.
        ValidationError: missing name or malformed attributes.
    """
    kind = _kind_value(kind)
    parent = get_item(parent_id, tenant_id=tenant_id) if parent_id is not None else None
    _check_parent(kind, parent)
    _check_same_project(project_id, parent)

    with locks.hold(*_location_keys(project_id, parent)):
        try:
            if parent is not None:
                parent = get_item(parent.id, refresh=True)
            item = add_item(tenant_id, project_id, kind, parent, attrs, position=position)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "Work item created",
        extra={"tenant_id": tenant_id, "project_id": project_id, "item_id": item.id,
               "kind": kind, "wbs": item.wbs},
    )
    events.publish("item_created", _event_payload(item, actor_id=actor_id))
    return item


def update_item(
    item_id: int,
    attrs: dict,
    *,
    tenant_id: int | None = None,
    expected_version: int | None = None,
    actor_id: int | None = None,
) -> WorkItem:
    """Edit non-structural attributes (name, dates, progress, billing flags)."""
    item = get_item(item_id, tenant_id=tenant_id)

    with locks.hold(locks.subtree_key(root_milestone_of(item).id)):
        item = get_item(item_id, refresh=True)
        if expected_version is not None and item.version != expected_version:
            raise StaleVersionError(
                f"{item.item_ref} has changed since you loaded it (version {item.version}, "
                f"you had {expected_version}). Reload and try again.",
            )
        try:
            apply_item_changes(item, attrs)
            if item.is_deliverable and "end_date" in attrs:
                baseline_service.sync_breach(get_item(item.parent_id), actor_id=actor_id)
        except StaleDataError:
            db.session.rollback()
            raise _stale_error(item.item_ref)
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale(item.item_ref)

    logger.info("Work item updated", extra={"item_id": item.id, "fields": sorted(attrs)})
    return item


def move(
    item_id: int,
    new_parent_id: int | None,
    position: int | None = None,
    *,
    tenant_id: int | None = None,
    expected_version: int | None = None,
    actor_id: int | None = None,
) -> WorkItem:
    """Reparent and/or reposition an item together with its whole subtree.

    Raises:
        TypeConstraintError: the new parent's kind is not allowed for this
            item, or the new parent is the item itself or one of its
            descendants.
        StaleVersionError: ``expected_version`` no longer matches, or the
            item was moved concurrently.
    """
    item = get_item(item_id, tenant_id=tenant_id)
    new_parent = get_item(new_parent_id, tenant_id=tenant_id) if new_parent_id is not None else None
    _check_parent(item.kind, new_parent)
    _check_same_project(item.project_id, new_parent)
    if new_parent is not None and (
        new_parent.id == item.id or new_parent.id in {d.id for d in descendants_of(item)}
    ):
        raise TypeConstraintError(
            f"Cannot move {item.item_ref} under itself or one of its own descendants.",
            details={"item_id": item.id, "new_parent_id": new_parent.id},
        )

    old_parent = db.session.get(WorkItem, item.parent_id) if item.parent_id else None
    keys = _location_keys(item.project_id, old_parent) + _location_keys(item.project_id, new_parent)

    with locks.hold(*keys):
        item = get_item(item_id, refresh=True)
        if expected_version is not None and item.version != expected_version:
            raise StaleVersionError(
                f"{item.item_ref} has changed since you loaded it. Reload and try again.",
                details={"current_version": item.version, "expected_version": expected_version},
            )
        if item.parent_id != (old_parent.id if old_parent is not None else None):
            raise StaleVersionError(f"{item.item_ref} was moved by someone else. Reload and try again.")
        if new_parent is not None:
            new_parent = get_item(new_parent.id, refresh=True)

        try:
            if item.is_task:
                _ensure_not_under_locked_deliverable(item)
                _ensure_not_under_locked_deliverable(new_parent)
            from_parent_id = item.parent_id
            from_wbs = item.wbs
            item.parent_id = new_parent.id if new_parent is not None else None
            db.session.flush()
            if from_parent_id != item.parent_id:
                _renumber(item.project_id, old_parent)
            _place(item, new_parent, position)
            if item.is_task:
                _rollup_progress(old_parent)
                _rollup_progress(new_parent)
            db.session.flush()
        except StaleDataError:
            db.session.rollback()
            raise _stale_error(item.item_ref)
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale(item.item_ref)

    logger.info(
        "Work item moved",
        extra={"item_id": item.id, "from_parent_id": from_parent_id,
               "to_parent_id": item.parent_id, "wbs": item.wbs},
    )
    events.publish("item_moved", _event_payload(
        item, from_parent_id=from_parent_id, from_wbs=from_wbs, actor_id=actor_id,
    ))
    return item


def reorder(
    tenant_id: int,
    project_id: int,
    parent_id: int | None,
    ordered_child_ids: list[int],
    *,
    actor_id: int | None = None,
) -> None:
    """Set the sibling order of ``parent_id``'s children (None → root milestones).

    ``ordered_child_ids`` must list every active child exactly once.
    """
    parent = get_item(parent_id, tenant_id=tenant_id) if parent_id is not None else None
    if parent is not None and parent.project_id != project_id:
        raise NotFoundError(resource="WorkItem", resource_id=parent_id)

    with locks.hold(*_location_keys(project_id, parent)):
        children = active_children(project_id, parent_id)
        current_ids = [c.id for c in children]
        try:
            requested = [int(i) for i in ordered_child_ids]
        except (TypeError, ValueError):
            raise ValidationError(
                "ordered_ids must be a list of integer item ids.",
                details={"ordered_ids": "invalid"},
            )
        if len(requested) != len(set(requested)) or set(requested) != set(current_ids):
            raise ValidationError(
                "Reorder must list every child exactly once.",
                details={"expected_ids": sorted(current_ids), "received_ids": requested},
            )
        by_id = {c.id: c for c in children}
        try:
            if parent is not None:
                parent = get_item(parent.id, refresh=True)
            _renumber(project_id, parent, [by_id[i] for i in requested])
            db.session.flush()
        except StaleDataError:
            db.session.rollback()
            raise _stale_error("The item list")
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale("The item list")

    logger.info(
        "Work items reordered",
        extra={"tenant_id": tenant_id, "project_id": project_id, "parent_id": parent_id},
    )
    events.publish("item_reordered", {
        "tenant_id": tenant_id,
        "project_id": project_id,
        "parent_id": parent_id,
        "ordered_child_ids": requested,
        "actor_id": actor_id,
    })


def promote(item_id: int, *, tenant_id: int | None = None, actor_id: int | None = None) -> WorkItem:
    """Move an item one level up the hierarchy.

    - task under a task        → sibling of that task (still a task)
    - task under a deliverable → deliverable under the same milestone
    - deliverable              → top-level milestone; blocked while it has tasks
    - milestone                → TypeConstraintError
    """
    item = get_item(item_id, tenant_id=tenant_id)
    if item.is_milestone:
        raise TypeConstraintError(f"{item.item_ref} is already a top-level milestone and cannot be promoted.")

    parent = db.session.get(WorkItem, item.parent_id)
    grandparent = db.session.get(WorkItem, parent.parent_id) if parent.parent_id else None
    keys = _location_keys(item.project_id, parent) + _location_keys(item.project_id, grandparent)

    with locks.hold(*keys):
        item = get_item(item_id, refresh=True)
        try:
            if item.is_deliverable:
                if active_children(item.project_id, item.id):
                    raise PromotionBlockedError(
                        f"Deliverable {item.item_ref} still has tasks. Move or delete its tasks "
                        "before promoting it to a milestone.",
                        details={"item_id": item.id},
                    )
                _ensure_kind_change_allowed(item)
                _retype(item, ItemKind.MILESTONE.value)
                new_parent = None
            elif parent.is_deliverable:
                _ensure_not_under_locked_deliverable(parent)
                _ensure_kind_change_allowed(item)
                _retype(item, ItemKind.DELIVERABLE.value)
                new_parent = grandparent
            else:
                _ensure_not_under_locked_deliverable(item)
                new_parent = grandparent

            item.parent_id = new_parent.id if new_parent is not None else None
            db.session.flush()
            _renumber(item.project_id, parent)
            _place(item, new_parent, parent.sort_order + 1)
            _rollup_progress(parent)
            _rollup_progress(item)
            if item.is_task:
                _rollup_progress(new_parent)
            db.session.flush()
        except StaleDataError:
            db.session.rollback()
            raise _stale_error(item.item_ref)
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale(item.item_ref)

    logger.info("Work item promoted", extra={"item_id": item.id, "kind": item.kind, "wbs": item.wbs})
    events.publish("item_moved", _event_payload(
        item, from_parent_id=parent.id, operation="promote", actor_id=actor_id,
    ))
    return item


def _preceding_sibling(item: WorkItem, kind: str) -> WorkItem | None:
    siblings = active_children(item.project_id, item.parent_id)
    before = [s for s in siblings if s.sort_order < item.sort_order and s.kind == kind]
    return before[-1] if before else None


def demote(item_id: int, *, tenant_id: int | None = None, actor_id: int | None = None) -> WorkItem:
    """Move an item one level down, under its preceding sibling.

    - milestone   → last deliverable of the preceding milestone; its own
                    deliverables become tasks
    - deliverable → last task of the preceding deliverable
    - task        → last subtask of the preceding task

    Raises NoValidParentError when there is no preceding sibling. A milestone whose
    deliverables still have tasks raises PromotionBlockedError.
    """
    item = get_item(item_id, tenant_id=tenant_id)
    target = _preceding_sibling(item, item.kind)
    if target is None:
        raise NoValidParentError(
            f"{item.item_ref} is the first {_KIND_LABELS[item.kind]} in its list; there is no "
            f"preceding {_KIND_LABELS[item.kind]} to place it under.",
            details={"item_id": item.id},
        )

    parent = db.session.get(WorkItem, item.parent_id) if item.parent_id else None
    keys = _location_keys(item.project_id, parent) + _location_keys(item.project_id, target)

    with locks.hold(*keys):
        item = get_item(item_id, refresh=True)
        target = get_item(target.id, refresh=True)
        try:
            if item.is_milestone:
                _ensure_kind_change_allowed(item)
                view = build_view(item, [
                    k for k in active_children(item.project_id, item.id) if k.is_deliverable
                ])
                kids = active_children(item.project_id, item.id)
                for kid in kids:
                    if active_children(item.project_id, kid.id):
                        raise PromotionBlockedError(
                            f"Deliverable {kid.item_ref} under {item.item_ref} still has tasks. "
                            "Move or delete its tasks before demoting the milestone.",
                            details={"item_id": item.id, "blocking_item_id": kid.id},
                        )
                    _ensure_kind_change_allowed(kid)
                item.progress = view.progress
                _retype(item, ItemKind.DELIVERABLE.value)
                for kid in kids:
                    _retype(kid, ItemKind.TASK.value)
            elif item.is_deliverable:
                _ensure_kind_change_allowed(item)
                _ensure_not_under_locked_deliverable(target)
                _retype(item, ItemKind.TASK.value)
            else:
                _ensure_not_under_locked_deliverable(item)

            item.parent_id = target.id
            db.session.flush()
            _renumber(item.project_id, parent)
            _place(item, target, None)
            _rollup_progress(item)
            _rollup_progress(target)
            if item.is_task:
                _rollup_progress(parent)
            db.session.flush()
        except StaleDataError:
            db.session.rollback()
            raise _stale_error(item.item_ref)
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale(item.item_ref)

    logger.info("Work item demoted", extra={"item_id": item.id, "kind": item.kind, "wbs": item.wbs})
    events.publish("item_moved", _event_payload(
        item, from_parent_id=parent.id if parent is not None else None,
        operation="demote", actor_id=actor_id,
    ))
    return item


def delete_item(item_id: int, *, tenant_id: int | None = None, actor_id: int | None = None) -> int:
    """Soft-delete an item and its subtree. Returns the number of rows deleted."""
    item = get_item(item_id, tenant_id=tenant_id)
    parent = db.session.get(WorkItem, item.parent_id) if item.parent_id else None

    with locks.hold(*_location_keys(item.project_id, parent)):
        item = get_item(item_id, refresh=True)
        try:
            removed = remove_item(item)
            if item.is_deliverable:
                baseline_service.sync_breach(parent, actor_id=actor_id)
        except StaleDataError:
            db.session.rollback()
            raise _stale_error(item.item_ref)
        except Exception:
            db.session.rollback()
            raise
        _commit_or_stale(item.item_ref)

    logger.info(
        "Work item deleted",
        extra={"item_id": item_id, "subtree_size": len(removed), "actor_id": actor_id},
    )
    return len(removed)
