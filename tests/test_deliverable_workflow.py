"""Tests: deliverable review cycle and sign-off."""

import pytest

from tracker.core.exceptions import InvalidTransitionError, NotEligibleError, NotFoundError, ValidationError
from tracker.models.signature import EntityKind, SignatureStage
from tracker.services import deliverable_service, hierarchy_service, signature_engine


@pytest.fixture()
def started(make_item):
    ms = make_item("milestone")
    d = make_item("deliverable", ms, name="Test strategy")
    return hierarchy_service.update_item(d.id, {"progress": 40})


def test_submit_requires_some_progress(make_item, supplier):
    ms = make_item("milestone")
    d = make_item("deliverable", ms)
    with pytest.raises(InvalidTransitionError):
        deliverable_service.submit_for_review(d.id, supplier.id)


def test_submit_then_accept_opens_signature_record(started, supplier, customer):
    d = deliverable_service.submit_for_review(started.id, supplier.id)
    assert d.status == "submitted_for_review"
    assert d.submitted_by == supplier.id

    d = deliverable_service.accept_review(started.id, customer.id)
    assert d.status == "review_complete"
    record = signature_engine.get_record(EntityKind.DELIVERABLE, d.id)
    assert record is not None and record.is_open


def test_return_requires_reason_and_allows_resubmit(started, supplier, customer):
    deliverable_service.submit_for_review(started.id, supplier.id)
    with pytest.raises(ValidationError):
        deliverable_service.return_for_more_work(started.id, customer.id, "  ")

    d = deliverable_service.return_for_more_work(started.id, customer.id, "Missing test data")
    assert d.status == "returned_for_more_work"
    assert d.rejection_reason == "Missing test data"

    # returned deliverables are editable again
    hierarchy_service.update_item(d.id, {"progress": 70})
    d = deliverable_service.submit_for_review(started.id, supplier.id)
    assert d.status == "submitted_for_review"
    assert d.rejection_reason is None


def test_review_actions_are_role_checked(started, supplier, contributor, viewer):
    with pytest.raises(NotEligibleError):
        deliverable_service.submit_for_review(started.id, viewer.id)
    deliverable_service.submit_for_review(started.id, contributor.id)
    with pytest.raises(NotEligibleError):
        deliverable_service.accept_review(started.id, supplier.id)


def test_accept_only_from_submitted(started, customer):
    with pytest.raises(InvalidTransitionError):
        deliverable_service.accept_review(started.id, customer.id)


def test_delivered_is_terminal(started, deliver, supplier):
    d = deliver(started)
    assert d.status == "delivered"
    with pytest.raises(InvalidTransitionError):
        deliverable_service.submit_for_review(d.id, supplier.id)


def test_delivered_progress_is_100_even_from_lower_value(started, deliver):
    assert started.progress == 40
    assert deliver(started).progress == 100


def test_admin_can_reset_a_partial_sign_off(started, supplier, customer, admin):
    deliverable_service.submit_for_review(started.id, supplier.id)
    deliverable_service.accept_review(started.id, customer.id)
    deliverable_service.sign_deliverable(started.id, "supplier", supplier.id)

    with pytest.raises(NotEligibleError):
        deliverable_service.reset_signatures(started.id, supplier.id)

    d = deliverable_service.reset_signatures(started.id, admin.id)
    assert d.status == "review_complete"
    first, second = signature_engine.history(EntityKind.DELIVERABLE, d.id)
    assert first.is_cancelled
    assert first.cancel_reason == "Signatures reset"
    assert second.sequence == first.sequence + 1
    assert second.stage is SignatureStage.UNSIGNED

    deliverable_service.sign_deliverable(d.id, "supplier", supplier.id)
    deliverable_service.sign_deliverable(d.id, "customer", customer.id)
    assert deliverable_service.get_deliverable(d.id).status == "delivered"


def test_reset_needs_review_complete(started, deliver, supplier, admin):
    with pytest.raises(InvalidTransitionError):
        deliverable_service.reset_signatures(started.id, admin.id)
    d = deliver(started)
    with pytest.raises(InvalidTransitionError):
        deliverable_service.reset_signatures(d.id, admin.id)
    assert signature_engine.get_record(EntityKind.DELIVERABLE, d.id).is_complete


def test_submitted_for_review_listing(project, make_item, supplier):
    ms = make_item("milestone")
    a = make_item("deliverable", ms, name="A")
    b = make_item("deliverable", ms, name="B")
    for d in (b, a):
        hierarchy_service.update_item(d.id, {"progress": 10})
        deliverable_service.submit_for_review(d.id, supplier.id)

    listed = deliverable_service.submitted_for_review(project.tenant_id, project.id)
    assert [d.id for d in listed] == [b.id, a.id]


def test_get_deliverable_rejects_other_kinds(make_item):
    ms = make_item("milestone")
    with pytest.raises(NotFoundError):
        deliverable_service.get_deliverable(ms.id)


def test_status_label():
    assert deliverable_service.status_label("review_complete") == "Review Complete"
    assert deliverable_service.status_label(None) == "Not Started"
