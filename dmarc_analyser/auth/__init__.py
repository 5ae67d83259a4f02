"""
Authentication blueprint: registration, session login/logout, password reset.

Also registers the Flask-Login user_loader callback.
"""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("auth", __name__, url_prefix="/api/auth")

# Import routes after bp is defined to avoid circular imports.
from dmarc_analyser.auth import routes  # noqa: E402, F401
