"""
Delivery Tracker
Blueprint registry and shared request helpers.

Every route is project-scoped (``/api/v1/projects/<project_id>/...``). The
acting user is passed explicitly as ``user_id`` in the JSON body or query
string; the project membership supplies the role.
"""

from flask import request

from tracker.core.exceptions import NotFoundError, ValidationError
from tracker.models import db
from tracker.models.project import Project
from tracker.services import permission_service


def request_data() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def load_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def acting_user(data: dict | None = None) -> int:
    """``user_id`` from the body, falling back to the query string."""
    raw = (data or {}).get("user_id", request.args.get("user_id"))
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError("user_id is required.", details={"user_id": "required"})


def require_action(project: Project, user_id: int, action: str) -> str | None:
    role = permission_service.role_for(user_id, project.id)
    permission_service.require(role, action, user_id=user_id)
    return role


def ensure_in_project(obj, project: Project, label: str):
    if obj is None or obj.project_id != project.id:
        raise NotFoundError(resource=label, resource_id=getattr(obj, "id", None))
    return obj


def optional_int(data: dict, field: str) -> int | None:
    value = data.get(field)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.", details={field: value})
