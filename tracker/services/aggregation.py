"""
Aggregation engine — computed milestone status and progress.

Milestone status and progress are folded from the milestone's direct,
non-deleted deliverables on every call. Nothing is cached and nothing is
written back to the milestone row, so the values cannot drift from the
deliverables they summarise.

Status:
    no deliverables                               → not_started
    every deliverable delivered                   → completed
    every deliverable draft / without progress    → not_started
    anything else                                 → in_progress

Progress:
    mean of the deliverables' stored progress, rounded half-up; 0 when the
    milestone has no deliverables.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from sqlalchemy import select

from tracker.core.exceptions import NotFoundError, TypeConstraintError
from tracker.models import db
from tracker.models.work_item import DeliverableStatus, ItemKind, WorkItem
from tracker.utils.helpers import round_half_up


class MilestoneStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


_NOT_STARTED_STATUSES = frozenset({None, "", DeliverableStatus.DRAFT.value})


@dataclass(frozen=True)
class MilestoneView:
    """Read model: a stored milestone plus its derived status and progress.

    Never persisted. Build a fresh one whenever the figures are needed.
    """
    milestone: WorkItem
    status: MilestoneStatus
    progress: int
    deliverable_count: int
    delivered_count: int

    @property
    def is_completed(self) -> bool:
        return self.status is MilestoneStatus.COMPLETED

    def to_dict(self) -> dict:
        d = self.milestone.to_dict()
        d.update({
            "status": self.status.value,
            "progress": self.progress,
            "deliverable_count": self.deliverable_count,
            "delivered_count": self.delivered_count,
        })
        return d


# ── Pure folds ───────────────────────────────────────────────────────────────


def _not_started(deliverable) -> bool:
    return deliverable.status in _NOT_STARTED_STATUSES or not deliverable.progress


def status_from_deliverables(deliverables: Iterable) -> MilestoneStatus:
    deliverables = list(deliverables)
    if not deliverables:
        return MilestoneStatus.NOT_STARTED
    if all(d.status == DeliverableStatus.DELIVERED.value for d in deliverables):
        return MilestoneStatus.COMPLETED
    if all(_not_started(d) for d in deliverables):
        return MilestoneStatus.NOT_STARTED
    return MilestoneStatus.IN_PROGRESS


def progress_from_deliverables(deliverables: Iterable) -> int:
    values = [d.progress or 0 for d in deliverables]
    if not values:
        return 0
    return round_half_up(sum(values) / len(values))


# ── Store-backed entry points ────────────────────────────────────────────────


def _load_milestone(milestone_id: int) -> WorkItem:
    milestone = db.session.get(WorkItem, milestone_id)
    if milestone is None or milestone.is_deleted:
        raise NotFoundError(resource="Milestone", resource_id=milestone_id)
    if not milestone.is_milestone:
        raise TypeConstraintError(
            f"{milestone.item_ref} is a {milestone.kind}; status and progress are only computed for milestones.",
        )
    return milestone


def deliverables_of(milestone_id: int) -> list[WorkItem]:
    """Direct, non-deleted deliverables of a milestone in WBS order."""
    return list(db.session.execute(
        select(WorkItem)
        .where(
            WorkItem.parent_id == milestone_id,
            WorkItem.kind == ItemKind.DELIVERABLE.value,
            WorkItem.deleted_at.is_(None),
        )
        .order_by(WorkItem.sort_order, WorkItem.id)
    ).scalars())


def compute_status(milestone_id: int) -> MilestoneStatus:
    _load_milestone(milestone_id)
    return status_from_deliverables(deliverables_of(milestone_id))


def compute_progress(milestone_id: int) -> int:
    _load_milestone(milestone_id)
    return progress_from_deliverables(deliverables_of(milestone_id))


def build_view(milestone: WorkItem, deliverables: list) -> MilestoneView:
    return MilestoneView(
        milestone=milestone,
        status=status_from_deliverables(deliverables),
        progress=progress_from_deliverables(deliverables),
        deliverable_count=len(deliverables),
        delivered_count=sum(1 for d in deliverables if d.status == DeliverableStatus.DELIVERED.value),
    )


def milestone_view(milestone_id: int) -> MilestoneView:
    milestone = _load_milestone(milestone_id)
    return build_view(milestone, deliverables_of(milestone_id))


def project_milestones(tenant_id: int, project_id: int) -> list[MilestoneView]:
    """Views for every active milestone of a project, in WBS order."""
    items = db.session.execute(
        select(WorkItem)
        .where(
            WorkItem.tenant_id == tenant_id,
            WorkItem.project_id == project_id,
            WorkItem.kind.in_([ItemKind.MILESTONE.value, ItemKind.DELIVERABLE.value]),
            WorkItem.deleted_at.is_(None),
        )
        .order_by(WorkItem.sort_order, WorkItem.id)
    ).scalars().all()

    by_parent: dict[int, list] = {}
    for item in items:
        if item.is_deliverable:
            by_parent.setdefault(item.parent_id, []).append(item)
    return [
        build_view(m, by_parent.get(m.id, []))
        for m in items if m.is_milestone
    ]
