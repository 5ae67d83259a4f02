"""
Tests for billing: trial and subscription access rules, Stripe webhook
events, and the billing routes in self-hosted and SaaS mode.

Stripe is never contacted; SDK calls are patched.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from conftest import ORG_SLUG
from dmarc_analyser.billing.service import (
    check_billing_access,
    get_billing_info,
    handle_event,
    monthly_price,
    trial_days_remaining,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
_BASE = f"/api/orgs/{ORG_SLUG}/billing"


@pytest.fixture
def saas(app):
    """Switch the app into SaaS mode."""
    app.config.update(
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_123",
        STRIPE_BASE_PRICE_ID="price_base",
        STRIPE_DOMAIN_PRICE_ID="price_domain",
    )
    return app


# ---------------------------------------------------------------------------
# Access rules
# ---------------------------------------------------------------------------


def test_self_hosted_always_allowed(db, org):
    org.subscription_status = "canceled"
    assert check_billing_access(org) == {"allowed": True, "status": "active"}


def test_trial_access(saas, db, org):
    org.subscription_status = "trialing"
    org.trial_ends_at = NOW + timedelta(days=3, hours=1)
    assert check_billing_access(org, NOW)["allowed"] is True
    assert trial_days_remaining(org, NOW) == 4

    org.trial_ends_at = NOW - timedelta(seconds=1)
    access = check_billing_access(org, NOW)
    assert access["allowed"] is False
    assert access["reason"] == "trial_expired"


@pytest.mark.parametrize(
    "status, allowed, reason",
    [
        ("active", True, None),
        ("past_due", True, None),
        ("canceled", False, "subscription_canceled"),
        ("unpaid", False, "payment_failed"),
    ],
)
def test_subscription_access(saas, db, org, status, allowed, reason):
    org.subscription_status = status
    access = check_billing_access(org, NOW)
    assert access["allowed"] is allowed
    assert access.get("reason") == reason


def test_monthly_price():
    assert monthly_price(0) == 10
    assert monthly_price(4) == 22


def test_billing_info_counts_domains(saas, db, org, domain):
    org.subscription_status = "trialing"
    org.trial_ends_at = NOW + timedelta(days=5)
    info = get_billing_info(org, NOW)

    assert info["domainCount"] == 1
    assert info["monthlyPrice"] == 13
    assert info["trialDaysRemaining"] == 5
    assert info["trialExpiringSoon"] is True


# ---------------------------------------------------------------------------
# Stripe events
# ---------------------------------------------------------------------------


def _event(event_type: str, **obj) -> dict:
    return {"type": event_type, "data": {"object": obj}}


def test_checkout_completed_activates(db, org):
    org.stripe_customer_id = "cus_1"
    org.subscription_status = "trialing"
    db.session.commit()

    handle_event(_event("checkout.session.completed", customer="cus_1", subscription="sub_1"))

    assert org.subscription_status == "active"
    assert org.stripe_subscription_id == "sub_1"


def test_subscription_updated_maps_status_and_period(db, org):
    org.stripe_subscription_id = "sub_1"
    db.session.commit()

    handle_event(
        _event("customer.subscription.updated", id="sub_1", status="incomplete_expired", current_period_end=1717200000)
    )

    assert org.subscription_status == "canceled"
    assert org.current_period_end.replace(tzinfo=timezone.utc) == datetime(2024, 6, 1, tzinfo=timezone.utc)


def test_invoice_events(db, org):
    org.stripe_customer_id = "cus_1"
    db.session.commit()

    handle_event(_event("invoice.payment_failed", customer="cus_1"))
    assert org.subscription_status == "past_due"
    handle_event(_event("invoice.payment_succeeded", customer="cus_1"))
    assert org.subscription_status == "active"


def test_subscription_deleted(db, org):
    org.stripe_subscription_id = "sub_9"
    db.session.commit()
    handle_event(_event("customer.subscription.deleted", id="sub_9"))
    assert org.subscription_status == "canceled"


def test_unknown_customer_is_ignored(db, org):
    handle_event(_event("invoice.payment_failed", customer="cus_unknown"))
    assert org.subscription_status == "active"


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def test_billing_self_hosted(auth_client):
    assert auth_client.get(_BASE).get_json() == {"mode": "self-hosted", "canManageBilling": True}
    response = auth_client.post(f"{_BASE}/checkout")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Billing is not enabled in self-hosted mode"


def test_billing_saas_info(saas, auth_client, domain):
    body = auth_client.get(_BASE).get_json()
    assert body["mode"] == "saas"
    assert body["currency"] == "GBP"
    assert body["domainCount"] == 1


def test_checkout_creates_customer_then_session(saas, auth_client, org):
    with patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_new")) as mock_customer, patch(
        "stripe.checkout.Session.create", return_value=SimpleNamespace(url="https://checkout.stripe.test/s")
    ) as mock_session:
        response = auth_client.post(f"{_BASE}/checkout")

    assert response.get_json() == {"url": "https://checkout.stripe.test/s"}
    mock_customer.assert_called_once()
    line_items = mock_session.call_args.kwargs["line_items"]
    assert line_items[1] == {"price": "price_domain", "quantity": 1}
    assert org.stripe_customer_id == "cus_new"


def test_portal_requires_customer(saas, auth_client):
    response = auth_client.post(f"{_BASE}/portal")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No billing account found. Please subscribe first."


def test_webhook_rejects_bad_signature(saas, client):
    response = client.post(
        "/api/billing/webhook",
        data=json.dumps(_event("invoice.payment_failed", customer="cus_1")),
        headers={"Stripe-Signature": "t=1,v1=bad"},
        content_type="application/json",
    )
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid signature"


def test_webhook_applies_verified_event(saas, client, db, org):
    org.stripe_customer_id = "cus_1"
    db.session.commit()
    payload = json.dumps(_event("invoice.payment_failed", customer="cus_1"))

    with patch("stripe.Webhook.construct_event", return_value={}) as mock_construct:
        response = client.post(
            "/api/billing/webhook",
            data=payload,
            headers={"Stripe-Signature": "t=1,v1=ok"},
            content_type="application/json",
        )

    assert response.get_json() == {"received": True}
    assert mock_construct.call_args.args == (payload, "t=1,v1=ok", "whsec_123")
    assert org.subscription_status == "past_due"


def test_webhook_requires_signature_header(saas, client):
    response = client.post("/api/billing/webhook", data="{}", content_type="application/json")
    assert response.get_json()["error"] == "No signature provided"
