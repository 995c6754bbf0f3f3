"""
Workflow aggregator — "what is waiting on me?"

``pending_for`` gathers every action a user can take right now in a
project, across all approval kinds, and returns it oldest first. It never
writes.

Categories:
    deliverable_signoff    open deliverable signature records
    baseline_commitment    open milestone baseline records
    certificate_signoff    open acceptance-certificate records
    variation_approval     open variation records
    deliverable_review     deliverables submitted for review
    <registered>           collaborator sources (timesheets, expenses, ...)

Every category is evaluated on its own. When one fails, it is logged at
WARNING and left out; the others are still returned.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from flask import current_app, has_app_context

from tracker.core.exceptions import NotFoundError
from tracker.models import db
from tracker.models.signature import EntityKind
from tracker.services import deliverable_service, permission_service, signature_engine
from tracker.utils.helpers import as_utc

logger = logging.getLogger(__name__)

_DEFAULT_URGENCY_DAYS = {"critical": 7, "high": 5, "medium": 3}

SIGNATURE_CATEGORIES = {
    EntityKind.DELIVERABLE.value: "deliverable_signoff",
    EntityKind.MILESTONE_BASELINE.value: "baseline_commitment",
    EntityKind.MILESTONE_CERTIFICATE.value: "certificate_signoff",
    EntityKind.VARIATION.value: "variation_approval",
}

REVIEW_CATEGORY = "deliverable_review"


@dataclass(frozen=True)
class PendingItem:
    entity_kind: str
    entity_id: int
    required_action: str
    required_party: str | None
    category: str
    title: str
    since: datetime
    days_pending: int
    urgency: str
    project_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "required_action": self.required_action,
            "required_party": self.required_party,
            "category": self.category,
            "title": self.title,
            "since": self.since.isoformat() if self.since else None,
            "days_pending": self.days_pending,
            "urgency": self.urgency,
            "project_id": self.project_id,
        }


# ── Collaborator sources ─────────────────────────────────────────────────────

# category -> callable(tenant_id, project_id, user_id, role) -> iterable of dicts
_sources: dict[str, object] = {}


def register_source(category: str, fn) -> None:
    """Plug in an external pending-work source (e.g. submitted timesheets).

    ``fn`` returns dicts with at least entity_kind, entity_id,
    required_action, title and since.
    """
    if category in SIGNATURE_CATEGORIES.values() or category == REVIEW_CATEGORY:
        raise ValueError(f"Category '{category}' is built in")
    _sources[category] = fn


def unregister_source(category: str) -> None:
    _sources.pop(category, None)


def clear_sources() -> None:
    _sources.clear()


# ── Urgency ──────────────────────────────────────────────────────────────────


def _thresholds() -> dict:
    if has_app_context():
        return current_app.config.get("WORKFLOW_URGENCY_DAYS", _DEFAULT_URGENCY_DAYS)
    return _DEFAULT_URGENCY_DAYS


def urgency_for(days_pending: int, thresholds: dict | None = None) -> str:
    t = thresholds or _thresholds()
    if days_pending >= t["critical"]:
        return "critical"
    if days_pending >= t["high"]:
        return "high"
    if days_pending >= t["medium"]:
        return "medium"
    return "low"


def _item(now, thresholds, *, since, **fields) -> PendingItem:
    since = as_utc(since) or now
    days = max((now - since).days, 0)
    return PendingItem(since=since, days_pending=days, urgency=urgency_for(days, thresholds), **fields)


# ── Category collectors ──────────────────────────────────────────────────────


def _signature_items(records, user_id, role, now, thresholds, project_id) -> list[PendingItem]:
    items = []
    for record in records:
        spec = signature_engine.get_spec(record.entity_kind)
        party = next(
            (
                p for p in record.missing_parties
                if permission_service.is_eligible_signer(role, record.entity_kind, p)
                and record.signer_id(p.other) != user_id
            ),
            None,
        )
        if party is None:
            continue
        try:
            entity = spec.load(record.entity_id)
        except NotFoundError:
            continue
        items.append(_item(
            now, thresholds,
            since=record.last_activity_at,
            entity_kind=record.entity_kind,
            entity_id=record.entity_id,
            required_action=spec.required_action,
            required_party=party.value,
            category=SIGNATURE_CATEGORIES[record.entity_kind],
            title=spec.describe(entity),
            project_id=project_id,
        ))
    return items


def _review_items(tenant_id, project_id, role, now, thresholds) -> list[PendingItem]:
    if not permission_service.can(role, "deliverable.review"):
        return []
    return [
        _item(
            now, thresholds,
            since=d.submitted_at,
            entity_kind=EntityKind.DELIVERABLE.value,
            entity_id=d.id,
            required_action="review_deliverable",
            required_party="customer",
            category=REVIEW_CATEGORY,
            title=f"{d.item_ref} {d.name}",
            project_id=project_id,
        )
        for d in deliverable_service.submitted_for_review(tenant_id, project_id)
    ]


def _source_items(category, fn, tenant_id, project_id, user_id, role, now, thresholds) -> list[PendingItem]:
    items = []
    for row in fn(tenant_id, project_id, user_id, role) or []:
        items.append(_item(
            now, thresholds,
            since=row.get("since"),
            entity_kind=row["entity_kind"],
            entity_id=row["entity_id"],
            required_action=row["required_action"],
            required_party=row.get("required_party"),
            category=category,
            title=row.get("title") or "",
            project_id=project_id,
        ))
    return items


# ── Public API ───────────────────────────────────────────────────────────────


def pending_for(tenant_id: int, project_id: int, user_id: int, role=None, *, now=None) -> list[PendingItem]:
    """Everything ``user_id`` (acting as ``role``) can act on now, oldest first."""
    role = permission_service.resolve_role(user_id, project_id, role)
    now = as_utc(now) or datetime.now(timezone.utc)
    thresholds = _thresholds()

    by_kind = {kind: [] for kind in SIGNATURE_CATEGORIES}
    collectors = []
    try:
        for record in signature_engine.open_records(tenant_id, project_id):
            by_kind.setdefault(record.entity_kind, []).append(record)
    except Exception:
        logger.warning(
            "Pending signature records unavailable",
            extra={"tenant_id": tenant_id, "project_id": project_id},
            exc_info=True,
        )
        db.session.rollback()
        by_kind = {}

    for kind, records in by_kind.items():
        collectors.append((
            SIGNATURE_CATEGORIES.get(kind, kind),
            lambda records=records: _signature_items(records, user_id, role, now, thresholds, project_id),
        ))
    collectors.append((REVIEW_CATEGORY, lambda: _review_items(tenant_id, project_id, role, now, thresholds)))
    for category, fn in list(_sources.items()):
        collectors.append((
            category,
            lambda category=category, fn=fn: _source_items(
                category, fn, tenant_id, project_id, user_id, role, now, thresholds,
            ),
        ))

    results: list[PendingItem] = []
    for category, collect in collectors:
        try:
            results.extend(collect())
        except Exception:
            logger.warning(
                "Pending-work category failed; omitted from results",
                extra={"tenant_id": tenant_id, "project_id": project_id, "category": category},
                exc_info=True,
            )
            db.session.rollback()

    results.sort(key=lambda i: (i.since, i.entity_kind, i.entity_id))
    return results


def pending_counts(tenant_id: int, project_id: int, user_id: int, role=None, *, now=None) -> dict:
    items = pending_for(tenant_id, project_id, user_id, role, now=now)
    by_category: dict[str, int] = {}
    by_urgency = {"critical": 0, "high": 0, "medium": 0, "low": 0}
    for item in items:
        by_category[item.category] = by_category.get(item.category, 0) + 1
        by_urgency[item.urgency] = by_urgency.get(item.urgency, 0) + 1
    return {"total": len(items), "by_category": by_category, "by_urgency": by_urgency}
