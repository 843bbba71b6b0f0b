# backend/dairy/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_object=Config, *, geocoder=None, notifier=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.integrations import init_integrations
    init_integrations(app, geocoder=geocoder, notifier=notifier)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.products import products_bp, addresses_bp
    from .routes.subscriptions import subscriptions_bp
    from .routes.orders import orders_bp
    from .routes.agent import agent_bp
    from .routes.admin import admin_bp
    from .routes.billing import billing_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(addresses_bp)
    app.register_blueprint(subscriptions_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(agent_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(billing_bp)

    from .errors import register_error_handlers
    register_error_handlers(app)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:19006",
            "http://127.0.0.1:19006",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
