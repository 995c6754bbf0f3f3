"""
Approval Blueprint — deliverable review, baseline commitment, certificates.

Endpoints (all under /api/v1/projects/<project_id>):
    Deliverables
        POST /deliverables/<id>/submit          {user_id}
        POST /deliverables/<id>/return          {user_id, reason}
        POST /deliverables/<id>/accept          {user_id}
        POST /deliverables/<id>/sign            {user_id, party, expected_version?}
        GET  /deliverables/<id>/signatures
        POST /deliverables/<id>/reset-signatures {user_id}   admin only
    Baselines
        POST /milestones/<id>/baseline/request  {user_id}
        POST /milestones/<id>/baseline/sign     {user_id, party, expected_version?}
        GET  /milestones/<id>/baseline/versions
        GET  /milestones/<id>/baseline/breach-check?date=
        POST /milestones/<id>/baseline/breach          {user_id, breached, reason?}
        POST /milestones/<id>/baseline/breach/clear    {user_id}
    Certificates
        GET  /milestones/<id>/certificate/can-generate
        POST /milestones/<id>/certificate       {user_id}
        POST /milestones/<id>/certificate/sign  {user_id, party, expected_version?}
        GET  /milestones/<id>/certificate

Signing returns the signature record plus the approved entity. Business
rules (eligibility, already signed, stale version) surface as the mapped
TrackerError status codes.
"""

import logging

from flask import Blueprint, jsonify, request

from tracker.blueprints import (
    acting_user,
    ensure_in_project,
    load_project,
    optional_int,
    request_data,
    require_action,
)
from tracker.core.exceptions import ValidationError
from tracker.models import db
from tracker.models.signature import EntityKind
from tracker.models.work_item import WorkItem
from tracker.services import (
    baseline_service,
    certificate_service,
    deliverable_service,
    signature_engine,
)
from tracker.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval", __name__, url_prefix="/api/v1/projects/<int:project_id>")
register_error_handlers(approval_bp)


def _work_item(project, item_id: int, label: str) -> WorkItem:
    return ensure_in_project(db.session.get(WorkItem, item_id), project, label)


def _party(data: dict) -> str:
    party = (data.get("party") or "").strip()
    if not party:
        raise ValidationError("party is required ('supplier' or 'customer').", details={"party": "required"})
    return party


# ── Deliverables ─────────────────────────────────────────────────────────────


@approval_bp.route("/deliverables/<int:deliverable_id>/submit", methods=["POST"])
def submit_deliverable(project_id, deliverable_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, deliverable_id, "Deliverable")
    d = deliverable_service.submit_for_review(deliverable_id, user_id)
    return jsonify(d.to_dict()), 200


@approval_bp.route("/deliverables/<int:deliverable_id>/return", methods=["POST"])
def return_deliverable(project_id, deliverable_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _work_item(project, deliverable_id, "Deliverable")
    d = deliverable_service.return_for_more_work(deliverable_id, user_id, data.get("reason"))
    return jsonify(d.to_dict()), 200


@approval_bp.route("/deliverables/<int:deliverable_id>/accept", methods=["POST"])
def accept_deliverable(project_id, deliverable_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, deliverable_id, "Deliverable")
    d = deliverable_service.accept_review(deliverable_id, user_id)
    record = signature_engine.get_record(EntityKind.DELIVERABLE, d.id)
    return jsonify({"deliverable": d.to_dict(), "signature": record.to_dict() if record else None}), 200


@approval_bp.route("/deliverables/<int:deliverable_id>/sign", methods=["POST"])
def sign_deliverable(project_id, deliverable_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _work_item(project, deliverable_id, "Deliverable")
    record = deliverable_service.sign_deliverable(
        deliverable_id, _party(data), user_id,
        expected_version=optional_int(data, "expected_version"),
    )
    d = deliverable_service.get_deliverable(deliverable_id)
    return jsonify({"signature": record.to_dict(), "deliverable": d.to_dict()}), 200


@approval_bp.route("/deliverables/<int:deliverable_id>/signatures", methods=["GET"])
def deliverable_signatures(project_id, deliverable_id):
    project = load_project(project_id)
    _work_item(project, deliverable_id, "Deliverable")
    records = signature_engine.history(EntityKind.DELIVERABLE, deliverable_id)
    return jsonify({"items": [r.to_dict() for r in records], "total": len(records)}), 200


@approval_bp.route("/deliverables/<int:deliverable_id>/reset-signatures", methods=["POST"])
def reset_deliverable_signatures(project_id, deliverable_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, deliverable_id, "Deliverable")
    d = deliverable_service.reset_signatures(deliverable_id, user_id)
    record = signature_engine.get_record(EntityKind.DELIVERABLE, d.id)
    return jsonify({"deliverable": d.to_dict(), "signature": record.to_dict() if record else None}), 200


# ── Baselines ────────────────────────────────────────────────────────────────


@approval_bp.route("/milestones/<int:milestone_id>/baseline/request", methods=["POST"])
def request_baseline(project_id, milestone_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, milestone_id, "Milestone")
    record = baseline_service.request_commitment(milestone_id, user_id)
    return jsonify(record.to_dict()), 201


@approval_bp.route("/milestones/<int:milestone_id>/baseline/sign", methods=["POST"])
def sign_baseline(project_id, milestone_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _work_item(project, milestone_id, "Milestone")
    record = baseline_service.sign_baseline(
        milestone_id, _party(data), user_id,
        expected_version=optional_int(data, "expected_version"),
    )
    current = baseline_service.current_version(milestone_id)
    return jsonify({
        "signature": record.to_dict(),
        "baseline": current.to_dict() if current else None,
    }), 200


@approval_bp.route("/milestones/<int:milestone_id>/baseline/versions", methods=["GET"])
def baseline_versions(project_id, milestone_id):
    project = load_project(project_id)
    _work_item(project, milestone_id, "Milestone")
    versions = baseline_service.list_versions(milestone_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)}), 200


@approval_bp.route("/milestones/<int:milestone_id>/baseline/breach-check", methods=["GET"])
def baseline_breach_check(project_id, milestone_id):
    project = load_project(project_id)
    _work_item(project, milestone_id, "Milestone")
    proposed = request.args.get("date")
    if not proposed:
        raise ValidationError("date is required.", details={"date": "required"})
    return jsonify(baseline_service.check_deliverable_date_breach(milestone_id, proposed)), 200


@approval_bp.route("/milestones/<int:milestone_id>/baseline/breach", methods=["POST"])
def set_baseline_breach(project_id, milestone_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _work_item(project, milestone_id, "Milestone")
    require_action(project, user_id, "baseline.breach")
    if "breached" not in data:
        raise ValidationError("breached is required (true or false).", details={"breached": "required"})
    m = baseline_service.set_baseline_breach(
        milestone_id, bool(data.get("breached")),
        reason=data.get("reason"), breached_by=user_id, tenant_id=project.tenant_id,
    )
    return jsonify(m.to_dict()), 200


@approval_bp.route("/milestones/<int:milestone_id>/baseline/breach/clear", methods=["POST"])
def clear_baseline_breach(project_id, milestone_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, milestone_id, "Milestone")
    require_action(project, user_id, "baseline.breach")
    cleared = baseline_service.check_and_clear_breach(milestone_id, tenant_id=project.tenant_id)
    m = baseline_service.get_milestone(milestone_id)
    return jsonify({"cleared": cleared, "milestone": m.to_dict()}), 200


# ── Certificates ─────────────────────────────────────────────────────────────


@approval_bp.route("/milestones/<int:milestone_id>/certificate/can-generate", methods=["GET"])
def can_generate(project_id, milestone_id):
    project = load_project(project_id)
    _work_item(project, milestone_id, "Milestone")
    return jsonify({
        "milestone_id": milestone_id,
        "can_generate": certificate_service.can_generate_certificate(milestone_id),
    }), 200


@approval_bp.route("/milestones/<int:milestone_id>/certificate", methods=["POST"])
def generate_certificate(project_id, milestone_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _work_item(project, milestone_id, "Milestone")
    cert = certificate_service.generate_certificate(milestone_id, user_id)
    return jsonify(cert.to_dict()), 201


@approval_bp.route("/milestones/<int:milestone_id>/certificate/sign", methods=["POST"])
def sign_certificate(project_id, milestone_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _work_item(project, milestone_id, "Milestone")
    record = certificate_service.sign_certificate(
        milestone_id, _party(data), user_id,
        expected_version=optional_int(data, "expected_version"),
    )
    cert = certificate_service.get_certificate(milestone_id)
    return jsonify({"signature": record.to_dict(), "certificate": cert.to_dict()}), 200


@approval_bp.route("/milestones/<int:milestone_id>/certificate", methods=["GET"])
def get_certificate(project_id, milestone_id):
    project = load_project(project_id)
    _work_item(project, milestone_id, "Milestone")
    cert = certificate_service.get_certificate(milestone_id)
    record = signature_engine.get_record(EntityKind.MILESTONE_CERTIFICATE, cert.id)
    body = cert.to_dict()
    body["signature"] = record.to_dict() if record else None
    return jsonify(body), 200
