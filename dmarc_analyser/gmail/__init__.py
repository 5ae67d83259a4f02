"""Gmail blueprint - OAuth connection and mailbox sync of DMARC reports."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("gmail", __name__, url_prefix="/api")

from dmarc_analyser.gmail import routes  # noqa: E402, F401
