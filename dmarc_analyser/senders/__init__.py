"""
Known senders blueprint - the sender catalogue and SPF include resolution.
"""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("senders", __name__, url_prefix="/api")

from dmarc_analyser.senders import routes  # noqa: E402, F401
