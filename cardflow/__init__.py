"""
Cardflow Core
Flask Application Factory.

Usage:
    from cardflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from cardflow.config import config
from cardflow.middleware.logging_config import configure_logging
from cardflow.middleware.rate_limiter import init_rate_limits
from cardflow.middleware.timing import init_request_timing
from cardflow.models import db
from cardflow.services.scheduler_service import SchedulerService
from cardflow.services.task_queue import task_queue
from cardflow.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine  # noqa: E402


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
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("RATELIMIT_STORAGE_URI", "memory://"),
)

# Imported for their registration side effects
_MODEL_MODULES = (
    "cardflow.models.account",
    "cardflow.models.board",
    "cardflow.models.card",
    "cardflow.models.collaboration",
    "cardflow.models.event",
    "cardflow.models.notification",
    "cardflow.models.webhook",
    "cardflow.models.scheduling",
)
_TASK_MODULES = (
    "cardflow.services.notification_router",
    "cardflow.services.webhook_dispatcher",
)


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
    app.config.from_object(config[config_name])
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

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    for module in _MODEL_MODULES:
        importlib.import_module(module)

    with app.app_context():
        db.create_all()
        app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from cardflow.blueprints.cards_bp import cards_bp
    from cardflow.blueprints.notifications_bp import notifications_bp
    from cardflow.blueprints.scheduler_bp import scheduler_bp
    from cardflow.blueprints.webhooks_bp import webhooks_bp

    app.register_blueprint(cards_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(scheduler_bp)

    register_error_handlers(app)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Cardflow Core"}

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Fan-out task queue (import task modules to register them) ────────
    task_queue.init_app(app)
    for module in _TASK_MODULES:
        importlib.import_module(module)

    # ── Scheduler initialization (import jobs to register them) ──────────
    importlib.import_module("cardflow.services.scheduled_jobs")
    SchedulerService.init_app(app)
    SchedulerService.start()

    return app
