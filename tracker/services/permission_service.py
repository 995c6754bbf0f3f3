"""
Permission collaborator — project roles and signing eligibility.

Roles are held per project in ``project_members.role_in_project``. The
signature engine calls ``is_eligible_signer`` synchronously before it
accepts any ``sign()``; lifecycle services call ``require`` for the
non-signing actions (submit, review, raise a variation, ...).

Evaluation is deny-by-default: an unknown role, a user without a membership
or a kind/party pair missing from the matrix is never eligible.
"""

import logging
from enum import Enum

from sqlalchemy import select

from tracker.core.exceptions import NotEligibleError
from tracker.models import db
from tracker.models.auth import ProjectMember
from tracker.models.signature import EntityKind, Party

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    SUPPLIER_PM = "supplier_pm"
    CUSTOMER_PM = "customer_pm"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"

ROLE_LABELS = {
    "admin": "Admin",
    "supplier_pm": "Supplier PM",
    "customer_pm": "Customer PM",
    "contributor": "Contributor",
    "viewer": "Viewer",
}

_SUPPLIER_SIGNERS = frozenset({Role.SUPPLIER_PM.value, Role.ADMIN.value})
_CUSTOMER_SIGNERS = frozenset({Role.CUSTOMER_PM.value, Role.ADMIN.value})

# entity kind -> party -> roles allowed to fill that slot
SIGNING_MATRIX = {
    kind.value: {
        Party.SUPPLIER.value: _SUPPLIER_SIGNERS,
        Party.CUSTOMER.value: _CUSTOMER_SIGNERS,
    }
    for kind in EntityKind
}

# action -> roles allowed to perform it
ACTION_MATRIX = {
    "structure.edit":        frozenset({"admin", "supplier_pm", "contributor"}),
    "deliverable.submit":    frozenset({"admin", "supplier_pm", "contributor"}),
    "deliverable.review":    frozenset({"admin", "customer_pm"}),
    "deliverable.reset_signatures": frozenset({"admin"}),
    "baseline.request":      frozenset({"admin", "supplier_pm", "customer_pm"}),
    "baseline.breach":       frozenset({"admin", "supplier_pm", "customer_pm"}),
    "certificate.generate":  frozenset({"admin", "supplier_pm", "customer_pm"}),
    "variation.create":      frozenset({"admin", "supplier_pm", "customer_pm"}),
    "variation.submit":      frozenset({"admin", "supplier_pm", "customer_pm"}),
    "variation.reject":      frozenset({"admin", "supplier_pm", "customer_pm"}),
    "variation.apply":       frozenset({"admin", "supplier_pm", "customer_pm"}),
}


def _value(member):
    return member.value if isinstance(member, Enum) else member


def role_for(user_id: int | None, project_id: int) -> str | None:
    """Return the user's role on the project, or None without a membership."""
    if user_id is None:
        return None
    return db.session.execute(
        select(ProjectMember.role_in_project).where(
            ProjectMember.project_id == project_id,
            ProjectMember.user_id == user_id,
        )
    ).scalar_one_or_none()


def is_eligible_signer(role, entity_kind, party) -> bool:
    """True when ``role`` may fill the ``party`` slot for ``entity_kind``."""
    allowed = SIGNING_MATRIX.get(_value(entity_kind), {}).get(_value(party), frozenset())
    return _value(role) in allowed


def eligible_parties(role, entity_kind) -> list[Party]:
    return [p for p in Party if is_eligible_signer(role, entity_kind, p)]


def can(role, action: str) -> bool:
    return _value(role) in ACTION_MATRIX.get(action, frozenset())


def require(role, action: str, *, user_id: int | None = None) -> None:
    """Raise NotEligibleError unless ``role`` may perform ``action``."""
    if can(role, action):
        return
    logger.info(
        "Action denied",
        extra={"action": action, "role": _value(role), "user_id": user_id},
    )
    label = ROLE_LABELS.get(_value(role), "A user without a project role")
    allowed = ", ".join(ROLE_LABELS[r] for r in sorted(ACTION_MATRIX.get(action, ())))
    raise NotEligibleError(
        f"{label} cannot perform '{action}'. Allowed roles: {allowed or 'none'}.",
        details={"action": action, "role": _value(role)},
    )


def resolve_role(user_id: int | None, project_id: int, role=None) -> str | None:
    """Explicit role wins; otherwise look it up from the project membership."""
    if role is not None:
        return _value(role)
    return role_for(user_id, project_id)
