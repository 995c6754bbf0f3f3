"""
Workflow Blueprint — pending actions for one user in one project.

Endpoints:
    GET /api/v1/projects/<project_id>/pending?user_id=
    GET /api/v1/projects/<project_id>/pending/counts?user_id=
"""

from flask import Blueprint, jsonify

from tracker.blueprints import acting_user, load_project
from tracker.services import workflow_service
from tracker.utils.errors import register_error_handlers

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/projects/<int:project_id>/pending")
register_error_handlers(workflow_bp)


@workflow_bp.route("", methods=["GET"])
def pending(project_id):
    project = load_project(project_id)
    user_id = acting_user()
    items = workflow_service.pending_for(project.tenant_id, project.id, user_id)
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@workflow_bp.route("/counts", methods=["GET"])
def pending_counts(project_id):
    project = load_project(project_id)
    user_id = acting_user()
    return jsonify(workflow_service.pending_counts(project.tenant_id, project.id, user_id)), 200
