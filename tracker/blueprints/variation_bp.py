"""
Variation Blueprint — change requests against committed baselines.

Endpoints (all under /api/v1/projects/<project_id>/variations):
    POST   /                       create (draft)    {user_id, title, variation_type, milestones, deliverables}
    GET    /?status=               list
    GET    /<id>                   detail with milestone + deliverable changes
    PATCH  /<id>                   edit a draft
    POST   /<id>/submit            {user_id}
    POST   /<id>/reject            {user_id, reason}
    POST   /<id>/sign              {user_id, party, expected_version?}
    POST   /<id>/apply             {user_id}   retry for an approved, unapplied variation
    POST   /<id>/reset             {user_id}   rejected → draft
    DELETE /<id>                   {user_id}   draft, submitted or rejected only
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
from tracker.models.signature import EntityKind
from tracker.models.variation import VariationStatus
from tracker.services import signature_engine, variation_service
from tracker.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

variation_bp = Blueprint(
    "variation", __name__, url_prefix="/api/v1/projects/<int:project_id>/variations",
)
register_error_handlers(variation_bp)

_VALID_STATUSES = frozenset(s.value for s in VariationStatus)


def _variation_in(project, variation_id: int):
    return ensure_in_project(
        variation_service.get_variation(variation_id, tenant_id=project.tenant_id), project, "Variation",
    )


def _with_signature(v) -> dict:
    body = v.to_dict()
    record = signature_engine.get_record(EntityKind.VARIATION, v.id)
    body["signature"] = record.to_dict() if record else None
    return body


@variation_bp.route("", methods=["POST"])
def create_variation(project_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    v = variation_service.create_variation(project.tenant_id, project.id, user_id, data)
    return jsonify(v.to_dict()), 201


@variation_bp.route("", methods=["GET"])
def list_variations(project_id):
    project = load_project(project_id)
    status = request.args.get("status") or None
    if status and status not in _VALID_STATUSES:
        raise ValidationError(
            f"Unknown status filter '{status}'.", details={"valid_statuses": sorted(_VALID_STATUSES)},
        )
    items = variation_service.list_variations(project.tenant_id, project.id, status)
    return jsonify({"items": [v.to_dict(include_children=False) for v in items], "total": len(items)}), 200


@variation_bp.route("/<int:variation_id>", methods=["GET"])
def get_variation(project_id, variation_id):
    project = load_project(project_id)
    return jsonify(_with_signature(_variation_in(project, variation_id))), 200


@variation_bp.route("/<int:variation_id>", methods=["PATCH"])
def update_variation(project_id, variation_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _variation_in(project, variation_id)
    v = variation_service.update_variation(variation_id, user_id, data, tenant_id=project.tenant_id)
    return jsonify(v.to_dict()), 200


@variation_bp.route("/<int:variation_id>/submit", methods=["POST"])
def submit_variation(project_id, variation_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _variation_in(project, variation_id)
    v = variation_service.submit_variation(variation_id, user_id, tenant_id=project.tenant_id)
    return jsonify(_with_signature(v)), 200


@variation_bp.route("/<int:variation_id>/reject", methods=["POST"])
def reject_variation(project_id, variation_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _variation_in(project, variation_id)
    v = variation_service.reject_variation(
        variation_id, user_id, data.get("reason"), tenant_id=project.tenant_id,
    )
    return jsonify(v.to_dict()), 200


@variation_bp.route("/<int:variation_id>/sign", methods=["POST"])
def sign_variation(project_id, variation_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    _variation_in(project, variation_id)
    party = (data.get("party") or "").strip()
    if not party:
        raise ValidationError("party is required ('supplier' or 'customer').", details={"party": "required"})
    variation_service.sign_variation(
        variation_id, party, user_id, expected_version=optional_int(data, "expected_version"),
    )
    return jsonify(_with_signature(variation_service.get_variation(variation_id))), 200


@variation_bp.route("/<int:variation_id>/apply", methods=["POST"])
def apply_variation(project_id, variation_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _variation_in(project, variation_id)
    require_action(project, user_id, "variation.apply")
    v = variation_service.apply_variation(variation_id, tenant_id=project.tenant_id, actor_id=user_id)
    return jsonify(v.to_dict()), 200


@variation_bp.route("/<int:variation_id>/reset", methods=["POST"])
def reset_variation(project_id, variation_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _variation_in(project, variation_id)
    v = variation_service.reset_to_draft(variation_id, user_id, tenant_id=project.tenant_id)
    return jsonify(v.to_dict()), 200


@variation_bp.route("/<int:variation_id>", methods=["DELETE"])
def delete_variation(project_id, variation_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    _variation_in(project, variation_id)
    variation_service.delete_variation(variation_id, user_id, tenant_id=project.tenant_id)
    return jsonify({"deleted": variation_id}), 200
