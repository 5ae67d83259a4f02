"""Sources blueprint - sending IPs observed per domain, enrichment and matching."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("sources", __name__, url_prefix="/api")

from dmarc_analyser.sources import routes  # noqa: E402, F401
