# backend/billsync/__init__.py
from flask import Flask

from .config import Config
from .extensions import EXTENSION_KEY, db, migrate
from .serialization import BillsyncJSONProvider


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.json = BillsyncJSONProvider(app)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # One service graph per app: store, caches, debouncer, sync manager
    from .services.container import build_services
    app.extensions[EXTENSION_KEY] = build_services(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.bills import bills_bp
    from .routes.products import products_bp
    from .routes.sync import sync_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(bills_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(sync_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
