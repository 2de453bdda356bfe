# backend/chowline/__init__.py
import logging

from flask import Flask, jsonify, request

from .config import Config, DEFAULT_SECRET_KEY, engine_options_for
from .errors import ChowlineError, ConfigurationError
from .extensions import db, migrate


def validate_config(config) -> None:
    """
    Refuse to start production with unsafe settings.

    Raises ConfigurationError for a default SECRET_KEY, a missing CRON_SECRET
    or a disabled throttle.
    """
    if config.get("APP_ENV") != "production":
        return
    if not config.get("SECRET_KEY") or config.get("SECRET_KEY") == DEFAULT_SECRET_KEY:
        raise ConfigurationError("SECRET_KEY must be set in production")
    if not config.get("CRON_SECRET"):
        raise ConfigurationError("CRON_SECRET must be set in production")
    if not config.get("RATE_LIMIT_ENABLED"):
        raise ConfigurationError("RATE_LIMIT_ENABLED cannot be disabled in production")


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    validate_config(app.config)

    app.config.setdefault(
        "SQLALCHEMY_ENGINE_OPTIONS",
        engine_options_for(app.config["SQLALCHEMY_DATABASE_URI"], app.config["DB_TIMEOUT_SECONDS"]),
    )
    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.orders import orders_bp
    from .routes.restaurant import restaurant_bp
    from .routes.admin import admin_bp
    from .routes.cron import cron_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(restaurant_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(cron_bp)

    @app.errorhandler(ChowlineError)
    def handle_domain_error(e: ChowlineError):
        from .decorators import error_response
        return error_response(e)

    @app.errorhandler(500)
    def handle_internal_error(e):
        return jsonify({"error": "Internal server error"}), 500

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin and origin in app.config.get("CORS_ALLOWED_ORIGINS", ()):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
