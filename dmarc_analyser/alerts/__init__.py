"""Alerts blueprint - organization alerts and alert rules."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("alerts", __name__, url_prefix="/api")

from dmarc_analyser.alerts import routes  # noqa: E402, F401
