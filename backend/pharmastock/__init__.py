# backend/pharmastock/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None, scan_session_store=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.lots import lots_bp
    from .routes.movements import movements_bp
    from .routes.fulfillment import fulfillment_bp
    from .routes.offline_sync import sync_bp
    from .routes.scans import scans_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(lots_bp)
    app.register_blueprint(movements_bp)
    app.register_blueprint(fulfillment_bp)
    app.register_blueprint(sync_bp)
    app.register_blueprint(scans_bp)

    # Two-scan sessions (in-memory unless a store is injected)
    from .services.scan_session_service import init_scan_sessions
    init_scan_sessions(app, scan_session_store)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
