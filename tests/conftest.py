"""
Shared pytest fixtures for the Delivery Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / project: pre-created scope rows
    - supplier / customer / admin / contributor / viewer: project members
    - make_item: hierarchy factory going through hierarchy_service
"""

import pytest

from tracker import create_app
from tracker.models import db as _db
from tracker.models.auth import ProjectMember, Tenant, User
from tracker.models.project import Project
from tracker.services import events, hierarchy_service, workflow_service
from tracker.services.audit_trail import register_audit_subscribers


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Ids are reused after the tables are recreated, so completion keys
        # delivered by an earlier test must not suppress this test's events.
        events.reset()
        register_audit_subscribers()
        workflow_service.clear_sources()
        yield
        workflow_service.clear_sources()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Scope fixtures ───────────────────────────────────────────────────────


def make_user(tenant, email, role=None, project=None, full_name=None):
    """Create a user and, when ``project`` is given, a membership with ``role``."""
    user = User(tenant_id=tenant.id, email=email, full_name=full_name or email.split("@")[0].title())
    _db.session.add(user)
    _db.session.flush()
    if project is not None:
        _db.session.add(ProjectMember(project_id=project.id, user_id=user.id, role_in_project=role))
    _db.session.commit()
    return user


@pytest.fixture()
def tenant():
    t = Tenant(name="Acme Delivery", slug="acme")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def project(tenant):
    p = Project(
        tenant_id=tenant.id, code="PRJ-1", name="ERP Rollout",
        supplier_name="Acme Consulting", customer_name="Globex",
    )
    _db.session.add(p)
    _db.session.commit()
    return p


@pytest.fixture()
def supplier(tenant, project):
    return make_user(tenant, "sam@acme.test", "supplier_pm", project, full_name="Sam Supplier")


@pytest.fixture()
def customer(tenant, project):
    return make_user(tenant, "cara@globex.test", "customer_pm", project, full_name="Cara Customer")


@pytest.fixture()
def admin(tenant, project):
    return make_user(tenant, "ada@acme.test", "admin", project, full_name="Ada Admin")


@pytest.fixture()
def contributor(tenant, project):
    return make_user(tenant, "con@acme.test", "contributor", project)


@pytest.fixture()
def viewer(tenant, project):
    return make_user(tenant, "vic@globex.test", "viewer", project)


@pytest.fixture()
def make_item(project):
    """Factory: ``make_item("deliverable", parent, name=..., **attrs)``."""

    def _make(kind, parent=None, name=None, **attrs):
        attrs["name"] = name or f"{kind.title()} item"
        return hierarchy_service.create_item(
            project.tenant_id, project.id, kind,
            parent.id if parent is not None else None, attrs,
        )

    return _make


# ── Workflow helpers ─────────────────────────────────────────────────────


@pytest.fixture()
def deliver(supplier, customer):
    """Drive a deliverable all the way to Delivered through the real workflow."""
    from tracker.services import deliverable_service

    def _deliver(deliverable):
        if deliverable.status == "draft":
            hierarchy_service.update_item(deliverable.id, {"progress": 60})
        deliverable_service.submit_for_review(deliverable.id, supplier.id)
        deliverable_service.accept_review(deliverable.id, customer.id)
        deliverable_service.sign_deliverable(deliverable.id, "supplier", supplier.id)
        deliverable_service.sign_deliverable(deliverable.id, "customer", customer.id)
        return deliverable_service.get_deliverable(deliverable.id)

    return _deliver


@pytest.fixture()
def make_member(tenant, project):
    """Factory: ``make_member(email, role=None)``; no role means no membership."""

    def _make(email, role=None, full_name=None):
        return make_user(tenant, email, role, project if role else None, full_name=full_name)

    return _make
