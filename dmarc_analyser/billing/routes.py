"""
Billing routes.

Org-scoped endpoints report subscription state and open Stripe Checkout or
the customer portal; ``/api/billing/webhook`` receives Stripe events.
"""

from __future__ import annotations

import json
import logging

import stripe
from flask import current_app, jsonify, request
from flask_login import current_user

from dmarc_analyser.billing import bp
from dmarc_analyser.billing.service import (
    BillingError,
    check_billing_access,
    create_checkout_session,
    create_portal_session,
    get_billing_info,
    handle_event,
    has_stripe_prices,
    is_saas_mode,
)
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.roles import has_permission
from dmarc_analyser.utils.tenant import get_current_org, get_current_role

logger = logging.getLogger(__name__)

_MANAGE_MESSAGE = "Only owners and admins can manage billing"


@bp.route("/orgs/<slug>/billing")
@org_required()
def billing_info(slug):
    org = get_current_org()
    can_manage = has_permission(get_current_role(), "manage_billing")
    if not is_saas_mode():
        return jsonify({"mode": "self-hosted", "canManageBilling": can_manage})
    return jsonify({"mode": "saas", "canManageBilling": can_manage, **get_billing_info(org)})


@bp.route("/orgs/<slug>/billing/access")
@org_required()
def billing_access(slug):
    access = check_billing_access(get_current_org())
    return jsonify(
        {
            "allowed": access["allowed"],
            "reason": access.get("reason"),
            "status": access["status"],
        }
    )


@bp.route("/orgs/<slug>/billing/checkout", methods=["POST"])
@org_required("manage_billing", message=_MANAGE_MESSAGE)
def billing_checkout(slug):
    if not is_saas_mode():
        return jsonify({"error": "Billing is not enabled in self-hosted mode"}), 400
    if not has_stripe_prices():
        return jsonify({"error": "Stripe prices are not configured"}), 500

    try:
        url = create_checkout_session(get_current_org(), fallback_email=current_user.email)
    except BillingError as exc:
        return jsonify({"error": str(exc)}), 500
    return jsonify({"url": url})


@bp.route("/orgs/<slug>/billing/portal", methods=["POST"])
@org_required("manage_billing", message=_MANAGE_MESSAGE)
def billing_portal(slug):
    if not is_saas_mode():
        return jsonify({"error": "Billing is not enabled in self-hosted mode"}), 400
    org = get_current_org()
    if not org.stripe_customer_id:
        return jsonify({"error": "No billing account found. Please subscribe first."}), 400

    try:
        url = create_portal_session(org)
    except BillingError as exc:
        return jsonify({"error": str(exc)}), 500
    return jsonify({"url": url})


@bp.route("/billing/webhook", methods=["POST"])
def stripe_webhook():
    """Verify the Stripe signature and apply the event."""
    if not is_saas_mode():
        return jsonify({"error": "Webhooks not enabled in self-hosted mode"}), 400

    payload = request.get_data(as_text=True)
    signature = request.headers.get("Stripe-Signature")
    if not signature:
        return jsonify({"error": "No signature provided"}), 400

    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    try:
        stripe.Webhook.construct_event(payload, signature, secret)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        return jsonify({"error": "Invalid signature"}), 400

    handle_event(json.loads(payload))
    return jsonify({"received": True})
