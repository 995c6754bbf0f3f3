"""
Tests: hierarchy store — nesting rule, WBS numbering, move / reorder /
promote / demote, soft delete and the structural events.
"""

from contextlib import contextmanager

import pytest
from sqlalchemy import update

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
from tracker.models.audit import AuditLog
from tracker.models.work_item import WorkItem
from tracker.services import events, hierarchy_service, locks


@pytest.fixture()
def captured():
    seen = []

    def _handler(event, payload):
        seen.append((event, payload))

    for name in ("item_created", "item_moved", "item_reordered"):
        events.subscribe(name, _handler)
    yield seen
    for name in ("item_created", "item_moved", "item_reordered"):
        events.unsubscribe(name, _handler)


# ── Nesting rule ─────────────────────────────────────────────────────────────


def test_create_full_chain_assigns_refs_and_wbs(make_item):
    ms = make_item("milestone", name="Build")
    d = make_item("deliverable", ms, name="Interfaces")
    t = make_item("task", d, name="Mapping")
    sub = make_item("task", t, name="Field list")

    assert (ms.item_ref, d.item_ref, t.item_ref, sub.item_ref) == ("MS-001", "DEL-001", "TSK-001", "TSK-002")
    assert (ms.wbs, d.wbs, t.wbs, sub.wbs) == ("1", "1.1", "1.1.1", "1.1.1.1")
    assert d.status == "draft"
    assert t.status == "not_started"


def test_deliverable_at_root_is_rejected(project):
    with pytest.raises(TypeConstraintError):
        hierarchy_service.create_item(project.tenant_id, project.id, "deliverable", None, {"name": "Loose"})


def test_task_directly_under_milestone_is_rejected(project, make_item):
    ms = make_item("milestone")
    with pytest.raises(TypeConstraintError):
        hierarchy_service.create_item(project.tenant_id, project.id, "task", ms.id, {"name": "Bad"})


def test_milestone_under_anything_is_rejected(project, make_item):
    ms = make_item("milestone")
    with pytest.raises(TypeConstraintError):
        hierarchy_service.create_item(project.tenant_id, project.id, "milestone", ms.id, {"name": "Nested"})


def test_unknown_kind_and_missing_name(project):
    with pytest.raises(ValidationError):
        hierarchy_service.create_item(project.tenant_id, project.id, "epic", None, {"name": "X"})
    with pytest.raises(ValidationError):
        hierarchy_service.create_item(project.tenant_id, project.id, "milestone", None, {"name": "  "})


def test_parent_from_another_tenant_is_not_found(project, make_item):
    ms = make_item("milestone")
    with pytest.raises(NotFoundError):
        hierarchy_service.create_item(project.tenant_id + 1, project.id, "deliverable", ms.id, {"name": "X"})


def test_create_publishes_item_created(make_item, captured):
    ms = make_item("milestone")
    assert captured[-1][0] == "item_created"
    assert captured[-1][1]["item_id"] == ms.id
    assert AuditLog.query.filter_by(action="item.created", entity_id=str(ms.id)).count() == 1


# ── Attributes ───────────────────────────────────────────────────────────────


def test_update_dates_sets_inclusive_duration(make_item):
    ms = make_item("milestone")
    item = hierarchy_service.update_item(ms.id, {"start_date": "2026-01-01", "end_date": "2026-01-10"})
    assert item.duration_days == 10


def test_end_before_start_is_rejected(make_item):
    ms = make_item("milestone")
    with pytest.raises(ValidationError):
        hierarchy_service.update_item(ms.id, {"start_date": "2026-02-01", "end_date": "2026-01-01"})


def test_milestone_progress_cannot_be_set(make_item):
    ms = make_item("milestone")
    with pytest.raises(ValidationError):
        hierarchy_service.update_item(ms.id, {"progress": 50})


def test_structural_fields_are_not_editable(make_item):
    ms = make_item("milestone")
    with pytest.raises(ValidationError):
        hierarchy_service.update_item(ms.id, {"parent_id": None, "kind": "task"})


@pytest.mark.parametrize("value", [-1, 101, "lots"])
def test_progress_out_of_range(make_item, value):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    with pytest.raises(ValidationError):
        hierarchy_service.update_item(d.id, {"progress": value})


def test_progress_moves_deliverable_between_draft_and_in_progress(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    assert hierarchy_service.update_item(d.id, {"progress": 10}).status == "in_progress"
    assert hierarchy_service.update_item(d.id, {"progress": 0}).status == "draft"


def test_task_progress_rolls_up_to_deliverable(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    t1 = make_item("task", d)
    t2 = make_item("task", d)
    hierarchy_service.update_item(t1.id, {"progress": 100})
    hierarchy_service.update_item(t2.id, {"progress": 51})

    d = hierarchy_service.get_item(d.id, refresh=True)
    assert d.progress == 76  # 75.5 rounds half-up
    assert d.status == "in_progress"
    with pytest.raises(ValidationError):
        hierarchy_service.update_item(d.id, {"progress": 10})


def test_expected_version_mismatch_is_stale(make_item):
    ms = make_item("milestone")
    with pytest.raises(StaleVersionError):
        hierarchy_service.update_item(ms.id, {"name": "Renamed"}, expected_version=ms.version + 5)


def test_locked_deliverable_freezes_schedule(make_item, supplier):
    from tracker.services import deliverable_service

    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    hierarchy_service.update_item(d.id, {"progress": 50})
    deliverable_service.submit_for_review(d.id, supplier.id)

    with pytest.raises(InvalidTransitionError):
        hierarchy_service.update_item(d.id, {"progress": 60})
    with pytest.raises(InvalidTransitionError):
        hierarchy_service.create_item(ms.tenant_id, ms.project_id, "task", d.id, {"name": "Late task"})
    # non-schedule fields stay editable
    assert hierarchy_service.update_item(d.id, {"description": "Final"}).description == "Final"


# ── Move / reorder ───────────────────────────────────────────────────────────


def test_move_deliverable_carries_subtree_and_renumbers(make_item, captured):
    m1 = make_item("milestone", name="M1")
    m2 = make_item("milestone", name="M2")
    d1 = make_item("deliverable", m1, name="D1")
    d2 = make_item("deliverable", m1, name="D2")
    t = make_item("task", d1, name="T")

    moved = hierarchy_service.move(d1.id, m2.id)
    assert moved.parent_id == m2.id
    assert moved.wbs == "2.1"
    assert hierarchy_service.get_item(t.id).wbs == "2.1.1"
    assert hierarchy_service.get_item(d2.id).wbs == "1.1"

    event, payload = captured[-1]
    assert event == "item_moved"
    assert payload["from_parent_id"] == m1.id
    assert payload["from_wbs"] == "1.1"


def test_move_into_own_descendant_is_rejected(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    t = make_item("task", d)
    child = make_item("task", t)
    with pytest.raises(TypeConstraintError):
        hierarchy_service.move(t.id, child.id)


def test_move_to_wrong_kind_parent_is_rejected(make_item):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    d = make_item("deliverable", m1)
    with pytest.raises(TypeConstraintError):
        hierarchy_service.move(m2.id, d.id)


def test_move_with_position(make_item):
    ms = make_item("milestone")
    a = make_item("deliverable", ms, name="A")
    b = make_item("deliverable", ms, name="B")
    c = make_item("deliverable", ms, name="C")
    hierarchy_service.move(c.id, ms.id, 0)
    order = [i.id for i in hierarchy_service.active_children(ms.project_id, ms.id)]
    assert order == [c.id, a.id, b.id]


def test_reorder_root_milestones(project, make_item, captured):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    d = make_item("deliverable", m2)
    hierarchy_service.reorder(project.tenant_id, project.id, None, [m2.id, m1.id])

    assert hierarchy_service.get_item(m2.id).wbs == "1"
    assert hierarchy_service.get_item(d.id).wbs == "1.1"
    assert hierarchy_service.get_item(m1.id).wbs == "2"
    assert captured[-1][0] == "item_reordered"
    assert AuditLog.query.filter_by(action="item.reordered", entity_id="root").count() == 1


def test_reorder_must_list_every_child_once(project, make_item):
    ms = make_item("milestone")
    a = make_item("deliverable", ms)
    make_item("deliverable", ms)
    with pytest.raises(ValidationError):
        hierarchy_service.reorder(project.tenant_id, project.id, ms.id, [a.id])
    with pytest.raises(ValidationError):
        hierarchy_service.reorder(project.tenant_id, project.id, ms.id, [a.id, a.id])


@pytest.mark.parametrize("ordered", [["first", "second"], None, [None]])
def test_reorder_with_non_integer_ids_is_a_validation_error(project, make_item, ordered):
    ms = make_item("milestone")
    make_item("deliverable", ms)
    with pytest.raises(ValidationError):
        hierarchy_service.reorder(project.tenant_id, project.id, ms.id, ordered)


def test_move_with_stale_expected_version(make_item):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    d = make_item("deliverable", m1)
    loaded = d.version
    hierarchy_service.update_item(d.id, {"description": "edited elsewhere"})

    with pytest.raises(StaleVersionError):
        hierarchy_service.move(d.id, m2.id, expected_version=loaded)
    assert hierarchy_service.get_item(d.id, refresh=True).parent_id == m1.id


def test_move_racing_another_move_is_stale(make_item, monkeypatch):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    m3 = make_item("milestone")
    d = make_item("deliverable", m1)
    real_hold = locks.hold

    @contextmanager
    def _rival_moves_first(*keys):
        with real_hold(*keys):
            db.session.execute(
                update(WorkItem.__table__)
                .where(WorkItem.__table__.c.id == d.id)
                .values(parent_id=m3.id, version=WorkItem.__table__.c.version + 1)
            )
            yield

    monkeypatch.setattr(locks, "hold", _rival_moves_first)
    with pytest.raises(StaleVersionError):
        hierarchy_service.move(d.id, m2.id)
    monkeypatch.undo()

    assert hierarchy_service.active_children(m2.project_id, m2.id) == []


def test_reorder_racing_a_sibling_edit_is_stale(project, make_item, monkeypatch):
    ms = make_item("milestone")
    a = make_item("deliverable", ms)
    b = make_item("deliverable", ms)
    real_renumber = hierarchy_service._renumber

    def _sibling_edited_concurrently(project_id, parent, ordered=None):
        db.session.execute(
            update(WorkItem.__table__)
            .where(WorkItem.__table__.c.id == a.id)
            .values(version=WorkItem.__table__.c.version + 1)
        )
        real_renumber(project_id, parent, ordered)

    monkeypatch.setattr(hierarchy_service, "_renumber", _sibling_edited_concurrently)
    with pytest.raises(StaleVersionError):
        hierarchy_service.reorder(project.tenant_id, project.id, ms.id, [b.id, a.id])
    monkeypatch.undo()

    order = [i.id for i in hierarchy_service.active_children(project.id, ms.id)]
    assert order == [a.id, b.id]


# ── Promote / demote ─────────────────────────────────────────────────────────


def test_promote_task_under_deliverable_becomes_deliverable(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    t = make_item("task", d)
    hierarchy_service.update_item(t.id, {"progress": 30})

    promoted = hierarchy_service.promote(t.id)
    assert promoted.kind == "deliverable"
    assert promoted.parent_id == ms.id
    assert promoted.item_ref.startswith("DEL-")
    assert promoted.status == "in_progress"
    assert promoted.wbs == "1.2"


def test_promote_deliverable_with_tasks_is_blocked(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    make_item("task", d)
    with pytest.raises(PromotionBlockedError):
        hierarchy_service.promote(d.id)


def test_promote_bare_deliverable_becomes_milestone(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    promoted = hierarchy_service.promote(d.id)
    assert promoted.kind == "milestone"
    assert promoted.parent_id is None
    assert promoted.status is None
    assert promoted.wbs == "2"


def test_promote_milestone_is_rejected(make_item):
    ms = make_item("milestone")
    with pytest.raises(TypeConstraintError):
        hierarchy_service.promote(ms.id)


def test_demote_first_sibling_has_no_parent(make_item):
    ms = make_item("milestone")
    with pytest.raises(NoValidParentError):
        hierarchy_service.demote(ms.id)


def test_demote_deliverable_under_preceding_deliverable(make_item):
    ms = make_item("milestone")
    d1 = make_item("deliverable", ms)
    d2 = make_item("deliverable", ms)
    demoted = hierarchy_service.demote(d2.id)
    assert demoted.kind == "task"
    assert demoted.parent_id == d1.id
    assert demoted.wbs == "1.1.1"


def test_demote_milestone_retypes_its_deliverables(make_item):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    d = make_item("deliverable", m2)
    demoted = hierarchy_service.demote(m2.id)

    assert demoted.kind == "deliverable"
    assert demoted.parent_id == m1.id
    child = hierarchy_service.get_item(d.id)
    assert child.kind == "task"
    assert child.wbs == "1.1.1"


def test_demote_milestone_whose_deliverables_have_tasks_is_blocked(make_item):
    m1 = make_item("milestone")
    m2 = make_item("milestone")
    d = make_item("deliverable", m2)
    t = make_item("task", d)

    with pytest.raises(PromotionBlockedError):
        hierarchy_service.demote(m2.id)
    assert hierarchy_service.get_item(m2.id).kind == "milestone"
    assert hierarchy_service.get_item(d.id).kind == "deliverable"
    assert hierarchy_service.get_item(t.id).parent_id == d.id
    assert hierarchy_service.active_children(m1.project_id, m1.id) == []


def test_kind_change_blocked_by_approval_history(make_item, supplier):
    from tracker.services import baseline_service

    m1 = make_item("milestone")
    m2 = make_item("milestone")
    baseline_service.request_commitment(m2.id, supplier.id)
    with pytest.raises(TypeConstraintError):
        hierarchy_service.demote(m2.id)
    assert hierarchy_service.get_item(m1.id).kind == "milestone"


# ── Delete ───────────────────────────────────────────────────────────────────


def test_delete_soft_deletes_subtree_and_renumbers(make_item):
    ms = make_item("milestone")
    d1 = make_item("deliverable", ms)
    d2 = make_item("deliverable", ms)
    make_item("task", d1)

    assert hierarchy_service.delete_item(d1.id) == 2
    with pytest.raises(NotFoundError):
        hierarchy_service.get_item(d1.id)
    assert hierarchy_service.get_item(d2.id).wbs == "1.1"


def test_hard_delete_of_a_milestone_removes_its_subtree(project, make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    t = make_item("task", d)
    make_item("task", t)
    keep = make_item("milestone")

    db.session.execute(db.delete(WorkItem).where(WorkItem.id == ms.id))
    db.session.commit()

    remaining = db.session.execute(
        db.select(WorkItem.id).where(WorkItem.project_id == project.id)
    ).scalars().all()
    assert remaining == [keep.id]


def test_schema_can_be_dropped_with_nested_items(app, make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    make_item("task", d)

    db.drop_all()
    db.create_all()
    assert db.session.execute(db.select(WorkItem.id)).scalars().all() == []


def test_delivered_deliverable_cannot_be_deleted(make_item, deliver):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    deliver(d)
    with pytest.raises(ValidationError):
        hierarchy_service.delete_item(ms.id)


# ── Tree ─────────────────────────────────────────────────────────────────────


def test_tree_carries_computed_milestone_figures(project, make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    make_item("task", d)
    hierarchy_service.update_item(d.id, {"description": "x"})

    tree = hierarchy_service.get_tree(project.tenant_id, project.id)
    assert len(tree) == 1
    assert tree[0]["status"] == "not_started"
    assert tree[0]["progress"] == 0
    assert tree[0]["children"][0]["children"][0]["kind"] == "task"
