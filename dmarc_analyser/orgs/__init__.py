"""
Organizations blueprint - organizations, members, invitations, audit log,
API keys, webhooks, scheduled reports and the AI integration.
"""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("orgs", __name__, url_prefix="/api")

from dmarc_analyser.orgs import routes, settings_routes  # noqa: E402, F401
