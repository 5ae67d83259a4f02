"""
Domains blueprint - domain CRUD, ownership verification, DNS checks,
statistics, tags, the organization dashboard, policy and AI recommendations
and CSV export.
"""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("domains", __name__, url_prefix="/api")

from dmarc_analyser.domains import routes, tag_routes  # noqa: E402, F401
