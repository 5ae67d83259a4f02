"""
Flask application factory for DMARC Analyser.

Creates and configures the Flask application, registers all blueprints,
and initialises extensions (SQLAlchemy, Flask-Login, Flask-WTF).
"""

from __future__ import annotations

import logging
import sys

from flask import Flask, Response, jsonify
from flask_login import LoginManager
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from dmarc_analyser.config import Config

# ---------------------------------------------------------------------------
# Extension instances (created here, initialised in create_app)
# ---------------------------------------------------------------------------
db: SQLAlchemy = SQLAlchemy()
login_manager: LoginManager = LoginManager()
csrf: CSRFProtect = CSRFProtect()

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure root logger for the application.

    Logging is sent to stdout so any WSGI host or container runtime
    captures it without file handlers.

    Format: timestamp  level  logger-name  message

    Args:
        debug: When True, sets the root level to DEBUG.  Otherwise INFO.
    """
    level = logging.DEBUG if debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)-8s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
    )

    root_logger = logging.getLogger()
    # create_app() runs once per test; don't stack handlers.
    if not root_logger.handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)


def _register_error_handlers(app: Flask) -> None:
    """Render every HTTP error as ``{"error": "..."}`` JSON."""

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc: HTTPException):
        message = exc.description if exc.code in (400, 413) else exc.name
        if exc.code == 401:
            message = "Unauthorized"
        elif exc.code == 403:
            message = "Insufficient permissions"
        return jsonify({"error": message}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logger.exception("Unhandled error: %s", exc)
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500


def create_app(config_object: object = Config) -> Flask:
    """Application factory.

    Args:
        config_object: Configuration class or object to load settings from.

    Returns:
        A fully configured Flask application instance.
    """
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(debug=app.debug)

    hops = app.config.get("PROXY_FIX_HOPS") or 0
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops)
        logger.info("ProxyFix enabled for %d trusted proxy hop(s)", hops)

    # ------------------------------------------------------------------
    # Initialise extensions
    # ------------------------------------------------------------------
    db.init_app(app)

    with app.app_context():
        from sqlalchemy import event

        if db.engine.dialect.name == "sqlite":

            @event.listens_for(db.engine, "connect")
            def _set_sqlite_pragma(dbapi_conn, connection_record):  # noqa: ARG001
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.unauthorized_handler
    def _unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    # ------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------
    from dmarc_analyser.alerts import bp as alerts_bp
    from dmarc_analyser.api import bp as api_bp
    from dmarc_analyser.auth import bp as auth_bp
    from dmarc_analyser.billing import bp as billing_bp
    from dmarc_analyser.domains import bp as domains_bp
    from dmarc_analyser.gmail import bp as gmail_bp
    from dmarc_analyser.orgs import bp as orgs_bp
    from dmarc_analyser.reports import bp as reports_bp
    from dmarc_analyser.senders import bp as senders_bp
    from dmarc_analyser.sources import bp as sources_bp

    # All blueprints are JSON APIs; session cookies are SameSite=Lax and
    # API keys are bearer tokens, so CSRF tokens are not used.
    for blueprint in (
        auth_bp,
        orgs_bp,
        domains_bp,
        reports_bp,
        sources_bp,
        senders_bp,
        alerts_bp,
        billing_bp,
        gmail_bp,
        api_bp,
    ):
        app.register_blueprint(blueprint)
        csrf.exempt(blueprint)

    _register_error_handlers(app)

    # ------------------------------------------------------------------
    # Security headers
    # Applied to every response from this application.
    # ------------------------------------------------------------------

    @app.after_request
    def set_security_headers(response: Response) -> Response:
        """Attach security-related HTTP response headers.

        Headers applied:
        - X-Content-Type-Options: Prevents MIME-type sniffing.
        - X-Frame-Options: Blocks clickjacking by forbidding iframe embedding.
        - Referrer-Policy: Do not leak full URLs (invitation tokens) cross-site.
        - Content-Security-Policy: JSON responses never load sub-resources.
        """
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

    return app
