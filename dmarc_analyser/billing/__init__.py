"""Billing blueprint - subscription status, Stripe Checkout/Portal and webhooks."""

from __future__ import annotations

from flask import Blueprint

bp: Blueprint = Blueprint("billing", __name__, url_prefix="/api")

from dmarc_analyser.billing import routes  # noqa: E402, F401
