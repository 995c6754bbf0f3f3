"""
Delivery Tracker
Flask Application Factory.

Usage:
    from tracker import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, request
from flask_migrate import Migrate

from tracker.config import config
from tracker.models import db
from tracker.middleware.logging_config import configure_logging
from tracker.middleware.timing import init_request_timing

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())
    os.makedirs(app.instance_path, exist_ok=True)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from tracker.models import auth as _auth_models               # noqa: F401
    from tracker.models import project as _project_models         # noqa: F401
    from tracker.models import work_item as _work_item_models     # noqa: F401
    from tracker.models import signature as _signature_models     # noqa: F401
    from tracker.models import variation as _variation_models     # noqa: F401
    from tracker.models import baseline as _baseline_models       # noqa: F401
    from tracker.models import certificate as _certificate_models  # noqa: F401
    from tracker.models import audit as _audit_models             # noqa: F401

    # ── Signature kinds register themselves on import ────────────────────
    from tracker.services import deliverable_service   # noqa: F401
    from tracker.services import baseline_service      # noqa: F401
    from tracker.services import certificate_service   # noqa: F401
    from tracker.services import variation_service     # noqa: F401

    # ── Auto-create tables in development/testing (CREATE IF NOT EXISTS) ─
    if config_name != "production":
        with app.app_context():
            db.create_all()

    # ── Event subscribers ────────────────────────────────────────────────
    from tracker.services.audit_trail import register_audit_subscribers
    register_audit_subscribers()

    # ── Blueprints ───────────────────────────────────────────────────────
    from tracker.blueprints.health_bp import health_bp
    from tracker.blueprints.structure_bp import structure_bp
    from tracker.blueprints.approval_bp import approval_bp
    from tracker.blueprints.variation_bp import variation_bp
    from tracker.blueprints.workflow_bp import workflow_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(structure_bp)
    app.register_blueprint(approval_bp)
    app.register_blueprint(variation_bp)
    app.register_blueprint(workflow_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Delivery Tracker"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    return app
