"""
Tests: HTTP surface — blueprints, error mapping and end-to-end flows.
"""

import pytest

from tracker.services import hierarchy_service


def _url(project, path=""):
    return f"/api/v1/projects/{project.id}{path}"


@pytest.fixture()
def tree(client, project, supplier):
    """Milestone → two deliverables, created over HTTP."""
    r = client.post(_url(project, "/items"), json={
        "user_id": supplier.id, "kind": "milestone", "name": "Blueprint",
        "start_date": "2026-02-02", "end_date": "2026-03-27", "billable": 18000,
    })
    assert r.status_code == 201, r.get_json()
    ms = r.get_json()
    deliverables = []
    for name in ("Process design", "Fit-gap"):
        r = client.post(_url(project, "/items"), json={
            "user_id": supplier.id, "kind": "deliverable", "parent_id": ms["id"], "name": name,
        })
        assert r.status_code == 201, r.get_json()
        deliverables.append(r.get_json())
    return ms, deliverables


def _deliver_over_http(client, project, deliverable_id, supplier, customer):
    client.patch(_url(project, f"/items/{deliverable_id}"), json={"user_id": supplier.id, "progress": 80})
    assert client.post(_url(project, f"/deliverables/{deliverable_id}/submit"),
                       json={"user_id": supplier.id}).status_code == 200
    assert client.post(_url(project, f"/deliverables/{deliverable_id}/accept"),
                       json={"user_id": customer.id}).status_code == 200
    for party, user in (("supplier", supplier), ("customer", customer)):
        r = client.post(_url(project, f"/deliverables/{deliverable_id}/sign"),
                        json={"user_id": user.id, "party": party})
        assert r.status_code == 200, r.get_json()
    return r.get_json()


# ── Health ───────────────────────────────────────────────────────────────────


def test_health_endpoints(client):
    assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
    r = client.get("/api/v1/health/live")
    assert r.status_code == 200
    assert r.get_json()["checks"]["database"]["status"] == "ok"


# ── Structure ────────────────────────────────────────────────────────────────


def test_create_and_read_tree(client, project, tree):
    ms, deliverables = tree
    assert ms["item_ref"] == "MS-001"
    assert [d["wbs"] for d in deliverables] == ["1.1", "1.2"]

    r = client.get(_url(project, "/tree"))
    assert r.status_code == 200
    body = r.get_json()
    assert body["total"] == 1
    root = body["items"][0]
    assert root["status"] == "not_started"
    assert root["progress"] == 0
    assert [c["name"] for c in root["children"]] == ["Process design", "Fit-gap"]


def test_milestone_status_follows_deliverables(client, project, tree, supplier):
    ms, (d1, d2) = tree
    client.patch(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id, "progress": 100})
    client.patch(_url(project, f"/items/{d2['id']}"), json={"user_id": supplier.id, "progress": 50})

    body = client.get(_url(project, f"/milestones/{ms['id']}/status")).get_json()
    assert body == {
        "milestone_id": ms["id"], "status": "in_progress", "progress": 75,
        "deliverable_count": 2, "delivered_count": 0,
    }


def test_structure_errors(client, project, tree, supplier, viewer):
    ms, (d1, _) = tree

    r = client.post(_url(project, "/items"), json={"kind": "milestone", "name": "No user"})
    assert r.status_code == 422
    assert r.get_json()["details"] == {"user_id": "required"}

    r = client.post(_url(project, "/items"), json={"user_id": viewer.id, "kind": "milestone", "name": "X"})
    assert r.status_code == 403
    assert r.get_json()["code"] == "ERR_NOT_ELIGIBLE"

    r = client.post(_url(project, "/items"), json={
        "user_id": supplier.id, "kind": "milestone", "parent_id": ms["id"], "name": "Nested",
    })
    assert r.status_code == 422

    r = client.patch(_url(project, f"/items/{ms['id']}"), json={"user_id": supplier.id, "progress": 10})
    assert r.status_code == 422

    r = client.get(_url(project, "/milestones/9999/status"))
    assert r.status_code == 404
    assert r.get_json()["code"] == "ERR_NOT_FOUND"


def test_move_and_delete(client, project, tree, supplier):
    ms, (d1, d2) = tree
    r = client.post(_url(project, "/items"), json={"user_id": supplier.id, "kind": "milestone", "name": "Build"})
    other = r.get_json()

    r = client.post(_url(project, f"/items/{d2['id']}/move"),
                    json={"user_id": supplier.id, "new_parent_id": other["id"]})
    assert r.status_code == 200
    assert r.get_json()["wbs"] == "2.1"

    r = client.delete(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id})
    assert r.status_code == 200
    assert r.get_json()["deleted"] == 1
    assert hierarchy_service.active_children(project.id, ms["id"]) == []


# ── Approvals ────────────────────────────────────────────────────────────────


def test_deliverable_signoff_flow(client, project, tree, supplier, customer):
    _, (d1, _) = tree
    body = _deliver_over_http(client, project, d1["id"], supplier, customer)
    assert body["deliverable"]["status"] == "delivered"
    assert body["deliverable"]["progress"] == 100
    assert body["signature"]["stage"] == "complete"

    r = client.get(_url(project, f"/deliverables/{d1['id']}/signatures"))
    assert r.get_json()["total"] == 1


def test_signing_errors(client, project, tree, supplier, customer):
    _, (d1, _) = tree
    client.patch(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id, "progress": 80})
    client.post(_url(project, f"/deliverables/{d1['id']}/submit"), json={"user_id": supplier.id})
    client.post(_url(project, f"/deliverables/{d1['id']}/accept"), json={"user_id": customer.id})

    r = client.post(_url(project, f"/deliverables/{d1['id']}/sign"),
                    json={"user_id": supplier.id, "party": "customer"})
    assert r.status_code == 403
    assert r.get_json()["code"] == "ERR_NOT_ELIGIBLE"

    client.post(_url(project, f"/deliverables/{d1['id']}/sign"), json={"user_id": supplier.id, "party": "supplier"})
    r = client.post(_url(project, f"/deliverables/{d1['id']}/sign"),
                    json={"user_id": supplier.id, "party": "supplier"})
    assert r.status_code == 409
    assert r.get_json()["code"] == "ERR_ALREADY_SIGNED"

    r = client.post(_url(project, f"/deliverables/{d1['id']}/sign"), json={"user_id": customer.id})
    assert r.status_code == 422


def test_baseline_and_certificate_flow(client, project, tree, supplier, customer):
    ms, deliverables = tree
    r = client.post(_url(project, f"/milestones/{ms['id']}/baseline/request"), json={"user_id": supplier.id})
    assert r.status_code == 201
    for party, user in (("supplier", supplier), ("customer", customer)):
        r = client.post(_url(project, f"/milestones/{ms['id']}/baseline/sign"),
                        json={"user_id": user.id, "party": party})
    assert r.get_json()["baseline"]["version_number"] == 1

    r = client.post(_url(project, f"/milestones/{ms['id']}/certificate"), json={"user_id": supplier.id})
    assert r.status_code == 422
    assert r.get_json()["code"] == "ERR_CERTIFICATE_NOT_READY"

    for d in deliverables:
        _deliver_over_http(client, project, d["id"], supplier, customer)
    assert client.get(_url(project, f"/milestones/{ms['id']}/certificate/can-generate")).get_json()["can_generate"]

    r = client.post(_url(project, f"/milestones/{ms['id']}/certificate"), json={"user_id": supplier.id})
    assert r.status_code == 201
    for party, user in (("supplier", supplier), ("customer", customer)):
        r = client.post(_url(project, f"/milestones/{ms['id']}/certificate/sign"),
                        json={"user_id": user.id, "party": party})
    cert = r.get_json()["certificate"]
    assert cert["status"] == "signed"
    assert cert["ready_to_bill"] is True


def test_reset_signatures_endpoint(client, project, tree, supplier, customer, admin):
    _, (d1, _) = tree
    client.patch(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id, "progress": 80})
    client.post(_url(project, f"/deliverables/{d1['id']}/submit"), json={"user_id": supplier.id})
    client.post(_url(project, f"/deliverables/{d1['id']}/accept"), json={"user_id": customer.id})
    client.post(_url(project, f"/deliverables/{d1['id']}/sign"), json={"user_id": supplier.id, "party": "supplier"})

    r = client.post(_url(project, f"/deliverables/{d1['id']}/reset-signatures"), json={"user_id": supplier.id})
    assert r.status_code == 403
    assert r.get_json()["code"] == "ERR_NOT_ELIGIBLE"

    r = client.post(_url(project, f"/deliverables/{d1['id']}/reset-signatures"), json={"user_id": admin.id})
    assert r.status_code == 200, r.get_json()
    assert r.get_json()["signature"]["stage"] == "unsigned"
    assert r.get_json()["signature"]["sequence"] == 2


def test_baseline_breach_endpoints(client, project, tree, supplier, customer, viewer):
    ms, (d1, _) = tree
    client.post(_url(project, f"/milestones/{ms['id']}/baseline/request"), json={"user_id": supplier.id})
    for party, user in (("supplier", supplier), ("customer", customer)):
        client.post(_url(project, f"/milestones/{ms['id']}/baseline/sign"), json={"user_id": user.id, "party": party})

    r = client.get(_url(project, f"/milestones/{ms['id']}/baseline/breach-check?date=2026-04-01"))
    assert r.get_json()["would_breach"] is True
    assert r.get_json()["is_baselined"] is True
    assert client.get(_url(project, f"/milestones/{ms['id']}/baseline/breach-check")).status_code == 422

    r = client.post(_url(project, f"/milestones/{ms['id']}/baseline/breach"),
                    json={"user_id": viewer.id, "breached": True})
    assert r.status_code == 403

    r = client.post(_url(project, f"/milestones/{ms['id']}/baseline/breach"),
                    json={"user_id": customer.id, "breached": True, "reason": "Late sign-off of design"})
    assert r.status_code == 200
    assert r.get_json()["baseline_breached"] is True

    r = client.post(_url(project, f"/milestones/{ms['id']}/baseline/breach/clear"), json={"user_id": supplier.id})
    assert r.get_json()["cleared"] is True
    assert r.get_json()["milestone"]["baseline_breached"] is False

    client.patch(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id, "end_date": "2026-04-03"})
    milestone = client.get(_url(project, "/tree")).get_json()["items"][0]
    assert milestone["baseline_breached"] is True


# ── Variations ───────────────────────────────────────────────────────────────


def test_variation_flow(client, project, tree, supplier, customer):
    ms, _ = tree
    for party, user in (("supplier", supplier), ("customer", customer)):
        client.post(_url(project, f"/milestones/{ms['id']}/baseline/request"), json={"user_id": supplier.id})
        client.post(_url(project, f"/milestones/{ms['id']}/baseline/sign"),
                    json={"user_id": user.id, "party": party})

    r = client.post(_url(project, "/variations"), json={
        "user_id": supplier.id, "title": "Extra workshop", "variation_type": "scope_extension",
        "milestones": [{"milestone_id": ms["id"], "new_billable": 20000}],
        "deliverables": [{"change_type": "add", "milestone_id": ms["id"], "data": {"name": "Workshop"}}],
    })
    assert r.status_code == 201, r.get_json()
    v = r.get_json()
    assert v["variation_ref"] == "VAR-001"

    r = client.post(_url(project, f"/variations/{v['id']}/submit"), json={"user_id": supplier.id})
    assert r.get_json()["total_cost_impact"] == 2000.0
    assert r.get_json()["signature"]["stage"] == "unsigned"

    client.post(_url(project, f"/variations/{v['id']}/sign"), json={"user_id": supplier.id, "party": "supplier"})
    r = client.post(_url(project, f"/variations/{v['id']}/sign"),
                    json={"user_id": customer.id, "party": "customer"})
    body = r.get_json()
    assert body["status"] == "applied"
    assert body["certificate_number"] == "VAR-001-CERT"
    assert body["milestones"][0]["version_after"] == 2

    listed = client.get(_url(project, "/variations?status=applied")).get_json()
    assert listed["total"] == 1
    assert client.get(_url(project, "/variations?status=bogus")).status_code == 422

    tree_body = client.get(_url(project, "/tree")).get_json()
    assert "Workshop" in [c["name"] for c in tree_body["items"][0]["children"]]


def test_variation_reject(client, project, tree, supplier, customer):
    ms, _ = tree
    r = client.post(_url(project, "/variations"), json={
        "user_id": supplier.id, "title": "Slip", "milestones": [{"milestone_id": ms["id"], "new_end_date": "2026-04-10"}],
    })
    v = r.get_json()
    client.post(_url(project, f"/variations/{v['id']}/submit"), json={"user_id": supplier.id})
    r = client.post(_url(project, f"/variations/{v['id']}/reject"), json={"user_id": customer.id})
    assert r.status_code == 422
    r = client.post(_url(project, f"/variations/{v['id']}/reject"), json={"user_id": customer.id, "reason": "No"})
    assert r.get_json()["status"] == "rejected"


def test_variation_apply_is_role_checked(client, project, tree, supplier, contributor, viewer):
    ms, _ = tree
    r = client.post(_url(project, "/variations"), json={
        "user_id": supplier.id, "title": "Slip", "milestones": [{"milestone_id": ms["id"], "new_end_date": "2026-04-10"}],
    })
    v = r.get_json()
    for user in (viewer, contributor):
        r = client.post(_url(project, f"/variations/{v['id']}/apply"), json={"user_id": user.id})
        assert r.status_code == 403
        assert r.get_json()["code"] == "ERR_NOT_ELIGIBLE"
    assert client.get(_url(project, f"/variations/{v['id']}")).get_json()["status"] == "draft"


def test_variation_reset_and_delete(client, project, tree, supplier, customer):
    ms, _ = tree
    r = client.post(_url(project, "/variations"), json={
        "user_id": supplier.id, "title": "Slip", "milestones": [{"milestone_id": ms["id"], "new_end_date": "2026-04-10"}],
    })
    v = r.get_json()
    client.post(_url(project, f"/variations/{v['id']}/submit"), json={"user_id": supplier.id})

    r = client.post(_url(project, "/variations"), json={
        "user_id": supplier.id, "title": "Slip again",
        "milestones": [{"milestone_id": ms["id"], "new_end_date": "2026-04-20"}],
    })
    assert r.status_code == 409
    assert r.get_json()["code"] == "ERR_VARIATION_PENDING"

    client.post(_url(project, f"/variations/{v['id']}/reject"), json={"user_id": customer.id, "reason": "No"})
    r = client.post(_url(project, f"/variations/{v['id']}/reset"), json={"user_id": supplier.id})
    assert r.status_code == 200
    assert r.get_json()["status"] == "draft"

    r = client.delete(_url(project, f"/variations/{v['id']}"), json={"user_id": supplier.id})
    assert r.get_json() == {"deleted": v["id"]}
    assert client.get(_url(project, f"/variations/{v['id']}")).status_code == 404


# ── Pending ──────────────────────────────────────────────────────────────────


def test_pending_endpoints(client, project, tree, supplier, customer):
    _, (d1, _) = tree
    client.patch(_url(project, f"/items/{d1['id']}"), json={"user_id": supplier.id, "progress": 80})
    client.post(_url(project, f"/deliverables/{d1['id']}/submit"), json={"user_id": supplier.id})

    r = client.get(_url(project, f"/pending?user_id={customer.id}"))
    assert r.status_code == 200
    body = r.get_json()
    assert body["total"] == 1
    assert body["items"][0]["required_action"] == "review_deliverable"
    assert body["items"][0]["urgency"] == "low"

    assert client.get(_url(project, f"/pending?user_id={supplier.id}")).get_json()["total"] == 0

    counts = client.get(_url(project, f"/pending/counts?user_id={customer.id}")).get_json()
    assert counts["by_category"] == {"deliverable_review": 1}

    assert client.get(_url(project, "/pending")).status_code == 422
    assert client.get("/api/v1/projects/9999/pending?user_id=1").status_code == 404
