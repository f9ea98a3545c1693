"""
Kasah QMS
Flask Application Factory.

Usage:
    from qms import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

import click
from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from qms.config import config
from qms.core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StaleObjectError,
    ValidationError,
)
from qms.middleware.jwt_auth import init_jwt_middleware
from qms.middleware.logging_config import configure_logging
from qms.middleware.tenant_context import init_tenant_context
from qms.models import db
from qms.services import cache_service
from qms.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, login is limited per route
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def _register_error_handlers(app):
    @app.errorhandler(NotFoundError)
    def _not_found_error(e):
        logger.info("Not found: %s", e)
        return api_error(E.NOT_FOUND, f"{e.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation_error(e):
        return api_error(E.RULE_VIOLATION, str(e), details=e.details or None)

    @app.errorhandler(ConflictError)
    def _conflict_error(e):
        return api_error(E.CONFLICT_DUPLICATE, str(e))

    @app.errorhandler(StaleObjectError)
    def _stale_error(e):
        return api_error(
            E.CONFLICT_STALE,
            f"{e.resource} was modified by another request. Reload and try again.",
        )

    @app.errorhandler(AuthorizationError)
    def _authorization_error(e):
        return api_error(E.FORBIDDEN, e.message)

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def _register_cli(app):
    @app.cli.command("seed-roles")
    @click.argument("tenant_id", type=int)
    def seed_roles_cmd(tenant_id):
        """Seed the standard QMS roles for a tenant."""
        from qms.services.user_service import seed_standard_roles
        roles = seed_standard_roles(tenant_id)
        click.echo(f"Seeded {len(roles)} roles for tenant {tenant_id}.")

    @app.cli.command("mark-overdue-tasks")
    def mark_overdue_cmd():
        """Persist the overdue status on past-due tasks."""
        from qms.services.task_service import mark_overdue_tasks
        count = mark_overdue_tasks()
        click.echo(f"Marked {count} task(s) overdue.")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
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
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Auth chain: JWT → tenant context ─────────────────────────────────
    init_jwt_middleware(app)
    init_tenant_context(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from qms.models import audit as _audit_models               # noqa: F401
    from qms.models import auth as _auth_models                 # noqa: F401
    from qms.models import capa as _capa_models                 # noqa: F401
    from qms.models import delegation as _delegation_models     # noqa: F401
    from qms.models import document as _document_models         # noqa: F401
    from qms.models import notification as _notification_models  # noqa: F401
    from qms.models import task as _task_models                 # noqa: F401

    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from qms.blueprints.auth_bp import auth_bp
    from qms.blueprints.capa_bp import capa_bp
    from qms.blueprints.delegations_bp import delegations_bp
    from qms.blueprints.documents_bp import documents_bp
    from qms.blueprints.tasks_bp import tasks_bp
    from qms.blueprints.users_bp import users_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(capa_bp)
    app.register_blueprint(tasks_bp)
    app.register_blueprint(delegations_bp)
    app.register_blueprint(users_bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Kasah QMS", "cache": cache_service.backend_name()}

    _register_error_handlers(app)
    _register_cli(app)

    return app
