"""API blueprint - health, search, public DNS tools and the API-key ``/api/v1`` endpoints."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("api", __name__, url_prefix="/api")

from dmarc_analyser.api import routes, v1  # noqa: E402, F401
