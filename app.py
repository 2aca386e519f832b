"""
Tutor Portal API: Flask Web Application

JSON backend for the tutoring portal: user approval, lessons and content,
student progress, tutor rosters, parent invitations and Stripe billing.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Flask, Response

import database
from auth import login_manager
from blueprints import register_blueprints
from errors import register_error_handlers
from extensions import Services, init_services, limiter

CORS_METHODS = "GET, POST, PUT, DELETE, OPTIONS"
CORS_HEADERS = "Content-Type, Authorization, Stripe-Signature"


def create_app(test_config: dict[str, Any] | None = None, services: Services | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import config_by_name
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Register database teardown
    database.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    login_manager.init_app(app)

    # Blob storage and identity-provider clients
    init_services(app, services)

    register_error_handlers(app)
    register_blueprints(app)

    # CORS for the single-page frontend
    @app.after_request
    def set_cors_headers(response: Response) -> Response:
        response.headers["Access-Control-Allow-Origin"] = app.config.get("CORS_ALLOW_ORIGIN", "*")
        response.headers["Access-Control-Allow-Methods"] = CORS_METHODS
        response.headers["Access-Control-Allow-Headers"] = CORS_HEADERS
        return response

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if not app.debug and not app.config.get("TESTING"):
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
