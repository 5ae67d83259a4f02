"""Reports blueprint - aggregate and forensic report upload and browsing."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("reports", __name__, url_prefix="/api")

from dmarc_analyser.reports import routes  # noqa: E402, F401
