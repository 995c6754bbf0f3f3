"""
Structure Blueprint — work-item hierarchy and computed milestone figures.

Endpoints (all under /api/v1/projects/<project_id>):
    GET    /tree                          nested hierarchy with milestone status/progress
    GET    /milestones                    milestone views in WBS order
    GET    /milestones/<id>/status        computed status + progress of one milestone
    POST   /items                         create   {user_id, kind, parent_id?, position?, ...attrs}
    PATCH  /items/<id>                    update   {user_id, expected_version?, ...attrs}
    DELETE /items/<id>?user_id=           soft-delete the item and its subtree
    POST   /items/<id>/move               {user_id, new_parent_id, position?, expected_version?}
    POST   /items/reorder                 {user_id, parent_id, ordered_ids}
    POST   /items/<id>/promote            {user_id}
    POST   /items/<id>/demote             {user_id}

Layer contract:
    - Blueprint: parse input, resolve project + role, call service.
    - NO db.session writes here; hierarchy_service owns every transaction.
"""

import logging

from flask import Blueprint, jsonify

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
from tracker.models.work_item import WorkItem
from tracker.services import aggregation, hierarchy_service
from tracker.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

structure_bp = Blueprint("structure", __name__, url_prefix="/api/v1/projects/<int:project_id>")
register_error_handlers(structure_bp)

_NON_ATTR_FIELDS = frozenset({"user_id", "kind", "parent_id", "position", "expected_version"})


def _item_in(project, item_id: int) -> WorkItem:
    return ensure_in_project(db.session.get(WorkItem, item_id), project, "WorkItem")


def _attrs(data: dict) -> dict:
    return {k: v for k, v in data.items() if k not in _NON_ATTR_FIELDS}


# ── Reads ────────────────────────────────────────────────────────────────────


@structure_bp.route("/tree", methods=["GET"])
def get_tree(project_id):
    project = load_project(project_id)
    tree = hierarchy_service.get_tree(project.tenant_id, project.id)
    return jsonify({"items": tree, "total": len(tree)}), 200


@structure_bp.route("/milestones", methods=["GET"])
def list_milestones(project_id):
    project = load_project(project_id)
    views = aggregation.project_milestones(project.tenant_id, project.id)
    return jsonify({"items": [v.to_dict() for v in views], "total": len(views)}), 200


@structure_bp.route("/milestones/<int:milestone_id>/status", methods=["GET"])
def milestone_status(project_id, milestone_id):
    project = load_project(project_id)
    _item_in(project, milestone_id)
    view = aggregation.milestone_view(milestone_id)
    return jsonify({
        "milestone_id": milestone_id,
        "status": view.status.value,
        "progress": view.progress,
        "deliverable_count": view.deliverable_count,
        "delivered_count": view.delivered_count,
    }), 200


# ── Writes ───────────────────────────────────────────────────────────────────


@structure_bp.route("/items", methods=["POST"])
def create_item(project_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    require_action(project, user_id, "structure.edit")

    kind = (data.get("kind") or "").strip()
    if not kind:
        raise ValidationError("kind is required.", details={"kind": "required"})

    item = hierarchy_service.create_item(
        project.tenant_id,
        project.id,
        kind,
        optional_int(data, "parent_id"),
        _attrs(data),
        position=optional_int(data, "position"),
        actor_id=user_id,
    )
    return jsonify(item.to_dict()), 201


@structure_bp.route("/items/<int:item_id>", methods=["PATCH"])
def update_item(project_id, item_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    require_action(project, user_id, "structure.edit")
    _item_in(project, item_id)

    attrs = _attrs(data)
    if not attrs:
        raise ValidationError("Nothing to update.")
    item = hierarchy_service.update_item(
        item_id, attrs,
        tenant_id=project.tenant_id,
        expected_version=optional_int(data, "expected_version"),
        actor_id=user_id,
    )
    return jsonify(item.to_dict()), 200


@structure_bp.route("/items/<int:item_id>", methods=["DELETE"])
def delete_item(project_id, item_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    require_action(project, user_id, "structure.edit")
    _item_in(project, item_id)

    removed = hierarchy_service.delete_item(item_id, tenant_id=project.tenant_id, actor_id=user_id)
    return jsonify({"deleted": removed}), 200


@structure_bp.route("/items/<int:item_id>/move", methods=["POST"])
def move_item(project_id, item_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    require_action(project, user_id, "structure.edit")
    _item_in(project, item_id)

    item = hierarchy_service.move(
        item_id,
        optional_int(data, "new_parent_id"),
        optional_int(data, "position"),
        tenant_id=project.tenant_id,
        expected_version=optional_int(data, "expected_version"),
        actor_id=user_id,
    )
    return jsonify(item.to_dict()), 200


@structure_bp.route("/items/reorder", methods=["POST"])
def reorder_items(project_id):
    project = load_project(project_id)
    data = request_data()
    user_id = acting_user(data)
    require_action(project, user_id, "structure.edit")

    ordered = data.get("ordered_ids")
    if not isinstance(ordered, list):
        raise ValidationError("ordered_ids must be a list of item ids.", details={"ordered_ids": "required"})
    try:
        ordered = [int(i) for i in ordered]
    except (TypeError, ValueError):
        raise ValidationError("ordered_ids must contain integers only.", details={"ordered_ids": "invalid"})

    parent_id = optional_int(data, "parent_id")
    hierarchy_service.reorder(project.tenant_id, project.id, parent_id, ordered, actor_id=user_id)
    children = hierarchy_service.active_children(project.id, parent_id)
    return jsonify({"items": [c.to_dict() for c in children]}), 200


@structure_bp.route("/items/<int:item_id>/promote", methods=["POST"])
def promote_item(project_id, item_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    require_action(project, user_id, "structure.edit")
    _item_in(project, item_id)

    item = hierarchy_service.promote(item_id, tenant_id=project.tenant_id, actor_id=user_id)
    return jsonify(item.to_dict()), 200


@structure_bp.route("/items/<int:item_id>/demote", methods=["POST"])
def demote_item(project_id, item_id):
    project = load_project(project_id)
    user_id = acting_user(request_data())
    require_action(project, user_id, "structure.edit")
    _item_in(project, item_id)

    item = hierarchy_service.demote(item_id, tenant_id=project.tenant_id, actor_id=user_id)
    return jsonify(item.to_dict()), 200
