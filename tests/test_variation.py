"""
Tests: variations — draft validation, impact calculation, dual approval and
all-or-nothing application to the baseline and the hierarchy.
"""

from datetime import date
from decimal import Decimal

import pytest

from tracker.core.exceptions import (
    InvalidTransitionError,
    NotEligibleError,
    NotFoundError,
    ValidationError,
    VariationPendingError,
)
from tracker.models.audit import AuditLog
from tracker.models.signature import EntityKind
from tracker.services import (
    aggregation,
    baseline_service,
    hierarchy_service,
    signature_engine,
    variation_service,
)


@pytest.fixture()
def committed(make_item, supplier, customer):
    """Milestone with two deliverables and a committed baseline (version 1)."""
    ms = make_item(
        "milestone", name="Data migration",
        start_date="2026-05-01", end_date="2026-06-30", billable="40000",
    )
    d1 = make_item("deliverable", ms, name="Load programs")
    d2 = make_item("deliverable", ms, name="Reconciliation")
    baseline_service.request_commitment(ms.id, supplier.id)
    baseline_service.sign_baseline(ms.id, "supplier", supplier.id)
    baseline_service.sign_baseline(ms.id, "customer", customer.id)
    return ms, d1, d2


def _raise_and_approve(project, user_id, data, supplier, customer):
    v = variation_service.create_variation(project.tenant_id, project.id, user_id, data)
    variation_service.submit_variation(v.id, user_id)
    variation_service.sign_variation(v.id, "supplier", supplier.id)
    variation_service.sign_variation(v.id, "customer", customer.id)
    return variation_service.get_variation(v.id, refresh=True)


# ── Drafting ─────────────────────────────────────────────────────────────────


def test_create_assigns_sequential_refs(project, committed, supplier):
    ms, _, _ = committed
    data = {"title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}]}
    v1 = variation_service.create_variation(project.tenant_id, project.id, supplier.id, data)
    v2 = variation_service.create_variation(project.tenant_id, project.id, supplier.id, data)
    assert (v1.variation_ref, v2.variation_ref) == ("VAR-001", "VAR-002")
    assert v1.status == "draft"


def test_create_requires_title_and_valid_payload(project, committed, supplier):
    ms, d1, _ = committed
    create = lambda data: variation_service.create_variation(project.tenant_id, project.id, supplier.id, data)  # noqa: E731

    with pytest.raises(ValidationError):
        create({"title": ""})
    with pytest.raises(ValidationError):
        create({"title": "X", "variation_type": "scope_creep"})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [{"change_type": "rename", "milestone_id": ms.id}]})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [{"change_type": "add", "milestone_id": ms.id, "data": {}}]})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [
            {"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d1.id, "data": {"kind": "task"}},
        ]})
    with pytest.raises(ValidationError):
        create({"title": "X", "milestones": [
            {"milestone_id": ms.id, "new_start_date": "2026-08-01", "new_end_date": "2026-07-01"},
        ]})
    with pytest.raises(NotFoundError):
        create({"title": "X", "milestones": [{"milestone_id": 9999}]})
    assert variation_service.list_variations(project.tenant_id, project.id) == []


def test_remove_of_delivered_deliverable_is_rejected(project, committed, deliver, supplier):
    ms, d1, _ = committed
    deliver(d1)
    with pytest.raises(ValidationError):
        variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
            "title": "Drop",
            "deliverables": [{"change_type": "remove", "milestone_id": ms.id, "deliverable_id": d1.id}],
        })


def test_bad_change_values_are_rejected_at_create(project, committed, make_item, supplier):
    ms, d1, d2 = committed
    make_item("task", d2, name="Reconcile ledgers")
    create = lambda data: variation_service.create_variation(project.tenant_id, project.id, supplier.id, data)  # noqa: E731

    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [
            {"change_type": "add", "milestone_id": ms.id, "data": {"name": "X", "progress": 500}},
        ]})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [
            {"change_type": "add", "milestone_id": ms.id,
             "data": {"name": "X", "start_date": "2026-06-10", "end_date": "2026-06-01"}},
        ]})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [
            {"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d1.id,
             "data": {"end_date": "next tuesday"}},
        ]})
    with pytest.raises(ValidationError):
        create({"title": "X", "deliverables": [
            {"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d2.id, "data": {"progress": 40}},
        ]})
    with pytest.raises(ValidationError):
        create({"title": "X", "milestones": [{"milestone_id": ms.id, "new_start_date": "2026-08-01"}]})
    assert variation_service.list_variations(project.tenant_id, project.id) == []


def test_bad_change_values_are_rejected_on_update(project, committed, supplier):
    ms, d1, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {"title": "Rework"})
    with pytest.raises(ValidationError):
        variation_service.update_variation(v.id, supplier.id, {"deliverables": [
            {"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d1.id, "data": {"progress": -5}},
        ]})
    assert variation_service.get_variation(v.id, refresh=True).deliverables == []


def test_create_is_role_checked(project, committed, contributor):
    with pytest.raises(NotEligibleError):
        variation_service.create_variation(project.tenant_id, project.id, contributor.id, {"title": "X"})


def test_only_drafts_can_be_edited(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    v = variation_service.update_variation(v.id, supplier.id, {"title": "Extend go-live", "reason": "Late data"})
    assert v.title == "Extend go-live"

    variation_service.submit_variation(v.id, supplier.id)
    with pytest.raises(InvalidTransitionError):
        variation_service.update_variation(v.id, supplier.id, {"title": "Again"})


def test_empty_variation_cannot_be_submitted(project, supplier):
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {"title": "Nothing"})
    with pytest.raises(ValidationError):
        variation_service.submit_variation(v.id, supplier.id)


# ── Impacts ──────────────────────────────────────────────────────────────────


def test_submit_snapshots_originals_and_computes_impacts(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend and uplift",
        "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-10", "new_billable": "45500.50"}],
    })
    v = variation_service.submit_variation(v.id, supplier.id)

    assert v.status == "submitted"
    vm = v.milestones[0]
    assert vm.original_end_date == date(2026, 6, 30)
    assert vm.original_billable == Decimal("40000")
    assert vm.days_impact == 10
    assert vm.cost_impact == Decimal("5500.50")
    assert v.total_days_impact == 10
    assert v.total_cost_impact == Decimal("5500.50")
    assert signature_engine.get_record(EntityKind.VARIATION, v.id).is_open


def test_deliverable_only_variation_lists_the_milestone(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extra report",
        "deliverables": [{"change_type": "add", "milestone_id": ms.id, "data": {"name": "Audit report"}}],
    })
    v = variation_service.submit_variation(v.id, supplier.id)
    assert [vm.milestone_id for vm in v.milestones] == [ms.id]
    assert v.total_cost_impact == 0


# ── Approval and application ─────────────────────────────────────────────────


def test_status_follows_first_signature(project, committed, supplier, customer):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.sign_variation(v.id, "customer", customer.id)
    assert variation_service.get_variation(v.id).status == "awaiting_supplier"


def test_signing_draft_is_rejected(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    with pytest.raises(InvalidTransitionError):
        variation_service.sign_variation(v.id, "supplier", supplier.id)


def test_approved_variation_applies_everything(project, committed, supplier, customer):
    ms, d1, d2 = committed
    v = _raise_and_approve(project, supplier.id, {
        "title": "Rescope",
        "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-31", "new_billable": "42000"}],
        "deliverables": [
            {"change_type": "add", "milestone_id": ms.id, "data": {"name": "Archive plan"}},
            {"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d1.id,
             "data": {"name": "Load programs (wave 2)"}},
            {"change_type": "remove", "milestone_id": ms.id, "deliverable_id": d2.id,
             "removal_reason": "Customer owns reconciliation"},
        ],
    }, supplier, customer)

    assert v.status == "applied"
    assert v.certificate_number == f"{v.variation_ref}-CERT"
    assert v.approved_at is not None and v.applied_at is not None
    assert all(vd.applied for vd in v.deliverables)

    m = baseline_service.get_milestone(ms.id, refresh=True)
    assert m.current_baseline_version == 2
    assert m.end_date == date(2026, 7, 31)
    assert m.baseline_end_date == date(2026, 7, 31)
    assert m.baseline_billable == Decimal("42000")

    names = sorted(d.name for d in aggregation.deliverables_of(ms.id))
    assert names == ["Archive plan", "Load programs (wave 2)"]

    version = baseline_service.current_version(ms.id)
    assert version.source == "variation"
    assert version.variation_id == v.id
    assert sorted(version.deliverable_ids) == sorted(d.id for d in aggregation.deliverables_of(ms.id))

    vm = v.milestones[0]
    assert (vm.version_before, vm.version_after) == (1, 2)

    added = next(vd for vd in v.deliverables if vd.change_type == "add")
    assert AuditLog.query.filter_by(action="item.created", entity_id=str(added.deliverable_id)).count() == 1


def test_baseline_two_to_three_is_atomic(project, committed, supplier, customer, monkeypatch):
    ms, _, _ = committed
    _raise_and_approve(project, supplier.id, {
        "title": "First extension",
        "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    }, supplier, customer)
    assert baseline_service.get_milestone(ms.id, refresh=True).current_baseline_version == 2

    data = {
        "title": "Add training",
        "deliverables": [{"change_type": "add", "milestone_id": ms.id, "data": {"name": "Training pack"}}],
    }
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, data)
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.sign_variation(v.id, "supplier", supplier.id)

    real_add_item = hierarchy_service.add_item

    def _failing_add_item(*args, **kwargs):
        raise RuntimeError("hierarchy store unavailable")

    monkeypatch.setattr(hierarchy_service, "add_item", _failing_add_item)
    with pytest.raises(RuntimeError):
        variation_service.sign_variation(v.id, "customer", customer.id)

    # neither the baseline version nor the deliverable nor the signature survived
    m = baseline_service.get_milestone(ms.id, refresh=True)
    assert m.current_baseline_version == 2
    assert [b.version_number for b in baseline_service.list_versions(ms.id)] == [1, 2]
    assert "Training pack" not in [d.name for d in aggregation.deliverables_of(ms.id)]
    record = signature_engine.get_record(EntityKind.VARIATION, v.id, refresh=True)
    assert record.customer_signed_at is None
    assert variation_service.get_variation(v.id, refresh=True).status == "awaiting_customer"

    monkeypatch.setattr(hierarchy_service, "add_item", real_add_item)
    variation_service.sign_variation(v.id, "customer", customer.id)

    m = baseline_service.get_milestone(ms.id, refresh=True)
    assert m.current_baseline_version == 3
    assert "Training pack" in [d.name for d in aggregation.deliverables_of(ms.id)]
    assert variation_service.get_variation(v.id, refresh=True).status == "applied"


def test_apply_is_idempotent(project, committed, supplier, customer):
    ms, _, _ = committed
    v = _raise_and_approve(project, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    }, supplier, customer)
    again = variation_service.apply_variation(v.id)
    assert again.status == "applied"
    assert baseline_service.get_milestone(ms.id, refresh=True).current_baseline_version == 2


def test_apply_requires_approval(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    with pytest.raises(InvalidTransitionError):
        variation_service.apply_variation(v.id)


# ── Rejection ────────────────────────────────────────────────────────────────


def test_reject_cancels_open_record(project, committed, supplier, customer):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.sign_variation(v.id, "supplier", supplier.id)

    with pytest.raises(ValidationError):
        variation_service.reject_variation(v.id, customer.id, "")
    v = variation_service.reject_variation(v.id, customer.id, "Not funded")

    assert v.status == "rejected"
    assert v.rejection_reason == "Not funded"
    record = signature_engine.get_record(EntityKind.VARIATION, v.id)
    assert record.is_cancelled
    assert signature_engine.open_records(project.tenant_id, project.id, "variation") == []
    with pytest.raises(InvalidTransitionError):
        variation_service.sign_variation(v.id, "customer", customer.id)


def test_applied_variation_cannot_be_rejected(project, committed, supplier, customer):
    ms, _, _ = committed
    v = _raise_and_approve(project, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    }, supplier, customer)
    with pytest.raises(InvalidTransitionError):
        variation_service.reject_variation(v.id, customer.id, "Changed my mind")


def test_rejected_variation_can_be_reset_and_resubmitted(project, committed, supplier, customer):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.reject_variation(v.id, customer.id, "Not funded")

    v = variation_service.reset_to_draft(v.id, supplier.id)
    assert v.status == "draft"
    assert v.rejection_reason is None
    assert v.submitted_at is None
    assert v.total_days_impact == 0
    assert [vm.original_end_date for vm in v.milestones] == [None]

    variation_service.update_variation(v.id, supplier.id, {
        "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-05"}],
    })
    v = variation_service.submit_variation(v.id, supplier.id)
    assert v.total_days_impact == 5
    record = signature_engine.get_record(EntityKind.VARIATION, v.id)
    assert record.sequence == 2
    assert record.is_open


def test_only_rejected_variations_can_be_reset(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    with pytest.raises(InvalidTransitionError):
        variation_service.reset_to_draft(v.id, supplier.id)


def test_reset_drops_milestone_rows_added_at_submit(project, committed, supplier, customer):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extra report",
        "deliverables": [{"change_type": "add", "milestone_id": ms.id, "data": {"name": "Audit report"}}],
    })
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.reject_variation(v.id, customer.id, "Out of scope")
    v = variation_service.reset_to_draft(v.id, supplier.id)
    assert v.milestones == []
    assert len(v.deliverables) == 1


# ── Deletion ─────────────────────────────────────────────────────────────────


def test_draft_variation_can_be_deleted(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    variation_service.delete_variation(v.id, supplier.id)
    with pytest.raises(NotFoundError):
        variation_service.get_variation(v.id)
    assert variation_service.list_variations(project.tenant_id, project.id) == []


def test_deleting_submitted_variation_cancels_its_record(project, committed, supplier):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.delete_variation(v.id, supplier.id)

    assert signature_engine.get_record(EntityKind.VARIATION, v.id).is_cancelled
    assert signature_engine.open_records(project.tenant_id, project.id, "variation") == []
    assert not variation_service.has_pending_variation(ms.id)


def test_signed_variation_cannot_be_deleted(project, committed, supplier, contributor):
    ms, _, _ = committed
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    })
    with pytest.raises(NotEligibleError):
        variation_service.delete_variation(v.id, contributor.id)

    variation_service.submit_variation(v.id, supplier.id)
    variation_service.sign_variation(v.id, "supplier", supplier.id)
    with pytest.raises(InvalidTransitionError):
        variation_service.delete_variation(v.id, supplier.id)
    assert variation_service.get_variation(v.id).status == "awaiting_customer"


# ── One variation in flight per milestone ────────────────────────────────────


def test_second_variation_waits_for_the_first(project, committed, supplier, customer):
    ms, d1, _ = committed
    extend = {"title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}]}
    first = variation_service.create_variation(project.tenant_id, project.id, supplier.id, extend)
    second = variation_service.create_variation(project.tenant_id, project.id, supplier.id, extend)
    assert not variation_service.has_pending_variation(ms.id)

    variation_service.submit_variation(first.id, supplier.id)
    assert variation_service.has_pending_variation(ms.id)
    assert not variation_service.has_pending_variation(ms.id, exclude_variation_id=first.id)

    with pytest.raises(VariationPendingError):
        variation_service.submit_variation(second.id, supplier.id)
    with pytest.raises(VariationPendingError):
        variation_service.create_variation(project.tenant_id, project.id, supplier.id, {
            "title": "Rename",
            "deliverables": [{"change_type": "modify", "milestone_id": ms.id, "deliverable_id": d1.id,
                              "data": {"name": "Load programs v2"}}],
        })
    assert variation_service.get_variation(second.id, refresh=True).status == "draft"

    variation_service.sign_variation(first.id, "supplier", supplier.id)
    variation_service.sign_variation(first.id, "customer", customer.id)
    assert not variation_service.has_pending_variation(ms.id)
    assert variation_service.submit_variation(second.id, supplier.id).status == "submitted"


def test_rejection_frees_the_milestone(project, committed, supplier, customer):
    ms, _, _ = committed
    extend = {"title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}]}
    v = variation_service.create_variation(project.tenant_id, project.id, supplier.id, extend)
    variation_service.submit_variation(v.id, supplier.id)
    variation_service.reject_variation(v.id, customer.id, "Not funded")
    assert not variation_service.has_pending_variation(ms.id)
    variation_service.create_variation(project.tenant_id, project.id, supplier.id, extend)


# ── Baseline breach ──────────────────────────────────────────────────────────


def test_applied_extension_clears_the_breach(project, committed, supplier, customer):
    ms, d1, _ = committed
    hierarchy_service.update_item(d1.id, {"end_date": "2026-07-10"})
    assert baseline_service.get_milestone(ms.id, refresh=True).baseline_breached

    _raise_and_approve(project, supplier.id, {
        "title": "Extend", "milestones": [{"milestone_id": ms.id, "new_end_date": "2026-07-15"}],
    }, supplier, customer)
    m = baseline_service.get_milestone(ms.id, refresh=True)
    assert m.baseline_end_date == date(2026, 7, 15)
    assert not m.baseline_breached
    assert m.baseline_breach_reason is None
