# backend/marketcore/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate
from .logging_setup import setup_logging


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    # Overrides must land before extensions read the config
    if config_overrides:
        app.config.update(config_overrides)

    setup_logging(app.config["LOG_LEVEL"], app.config["LOG_FORMAT"])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # External collaborators; tests swap these for fakes
    from .services.bank_gateway import BankGateway
    from .services.notification_service import LoggingNotifier
    app.extensions["bank_gateway"] = BankGateway.from_config(app.config)
    app.extensions["notifier"] = LoggingNotifier()

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.balances import balances_bp
    from .routes.commissions import commissions_bp
    from .routes.bank_admin import bank_admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(balances_bp)
    app.register_blueprint(commissions_bp)
    app.register_blueprint(bank_admin_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
