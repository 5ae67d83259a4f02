"""
Subscription state and Stripe calls.

Billing is only enforced in SaaS mode, i.e. when ``STRIPE_SECRET_KEY`` is
configured.  Self-hosted installs always have access.

Pricing is a flat base fee plus a per-domain fee; new organizations start
on a 14-day trial.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import stripe
from flask import current_app

from dmarc_analyser import db
from dmarc_analyser.models import Domain, Organization, as_utc

logger = logging.getLogger(__name__)

TRIAL_DAYS = 14
BASE_PRICE_GBP = 10
PER_DOMAIN_PRICE_GBP = 3
EXPIRING_SOON_DAYS = 7

SUBSCRIPTION_STATUSES: tuple[str, ...] = ("trialing", "active", "past_due", "canceled", "unpaid")

# Stripe subscription status -> our subscription_status
STRIPE_STATUS_MAP: dict[str, str] = {
    "active": "active",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "unpaid",
    "trialing": "trialing",
    "incomplete": "unpaid",
    "incomplete_expired": "canceled",
    "paused": "canceled",
}

# check_billing_access() reason -> message shown when a paid action is refused
BLOCKED_MESSAGES: dict[str, str] = {
    "trial_expired": "Your trial has expired. Please subscribe to continue adding domains.",
    "subscription_canceled": "Your subscription has been canceled. Please resubscribe to continue.",
    "payment_failed": "Your payment has failed. Please update your payment method.",
}


class BillingError(Exception):
    """Raised when a Stripe session cannot be created."""


# ---------------------------------------------------------------------------
# Mode and pricing
# ---------------------------------------------------------------------------


def is_saas_mode() -> bool:
    return bool(current_app.config.get("STRIPE_SECRET_KEY"))


def has_stripe_prices() -> bool:
    config = current_app.config
    return bool(config.get("STRIPE_BASE_PRICE_ID") and config.get("STRIPE_DOMAIN_PRICE_ID"))


def monthly_price(domain_count: int) -> int:
    return BASE_PRICE_GBP + PER_DOMAIN_PRICE_GBP * domain_count


def trial_end_from(now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(days=TRIAL_DAYS)


def _configure_stripe() -> None:
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


# ---------------------------------------------------------------------------
# Access and status
# ---------------------------------------------------------------------------


def trial_days_remaining(org: Organization, now: datetime | None = None) -> int:
    """Whole days left in the trial, rounded up; 0 when not trialing."""
    trial_end = as_utc(org.trial_ends_at)
    if org.subscription_status != "trialing" or trial_end is None:
        return 0
    now = now or datetime.now(timezone.utc)
    remaining = (trial_end - now).total_seconds() / 86400
    return max(0, math.ceil(remaining))


def is_trial_expiring_soon(org: Organization, now: datetime | None = None) -> bool:
    days = trial_days_remaining(org, now)
    return 0 < days <= EXPIRING_SOON_DAYS


def check_billing_access(org: Organization, now: datetime | None = None) -> dict[str, Any]:
    """Decide whether *org* may use paid features.

    Returns:
        ``{"allowed", "status"}`` plus ``reason`` when blocked and the
        relevant period end (``trialEndsAt`` / ``currentPeriodEnd``).
    """
    if not is_saas_mode():
        return {"allowed": True, "status": "active"}

    now = now or datetime.now(timezone.utc)
    status = org.subscription_status
    trial_end = as_utc(org.trial_ends_at)
    period_end = as_utc(org.current_period_end)

    if status == "trialing":
        if trial_end is not None and trial_end < now:
            return {
                "allowed": False,
                "reason": "trial_expired",
                "status": status,
                "trialEndsAt": trial_end.isoformat(),
            }
        return {
            "allowed": True,
            "status": status,
            "trialEndsAt": trial_end.isoformat() if trial_end else None,
        }

    if status in ("active", "past_due"):
        return {
            "allowed": True,
            "status": status,
            "currentPeriodEnd": period_end.isoformat() if period_end else None,
        }

    return {
        "allowed": False,
        "reason": "payment_failed" if status == "unpaid" else "subscription_canceled",
        "status": status,
    }


def domain_count(org: Organization) -> int:
    return db.session.execute(
        db.select(db.func.count(Domain.id)).where(Domain.organization_id == org.id)
    ).scalar_one()


def get_billing_info(org: Organization, now: datetime | None = None) -> dict[str, Any]:
    count = domain_count(org)
    trial_end = as_utc(org.trial_ends_at)
    period_end = as_utc(org.current_period_end)
    return {
        "status": org.subscription_status,
        "trialEndsAt": trial_end.isoformat() if trial_end else None,
        "trialDaysRemaining": trial_days_remaining(org, now),
        "trialExpiringSoon": is_trial_expiring_soon(org, now),
        "currentPeriodEnd": period_end.isoformat() if period_end else None,
        "domainCount": count,
        "monthlyPrice": monthly_price(count),
        "currency": "GBP",
        "hasStripeSubscription": bool(org.stripe_subscription_id),
        "stripeCustomerId": org.stripe_customer_id,
    }


def update_subscription_status(
    org: Organization, status: str, current_period_end: datetime | None = None
) -> None:
    org.subscription_status = status
    if current_period_end is not None:
        org.current_period_end = current_period_end
    db.session.commit()
    logger.info("Organization %s subscription status -> %s", org.slug, status)


def set_stripe_ids(org: Organization, customer_id: str, subscription_id: str) -> None:
    """Attach Stripe ids after checkout and mark the subscription active."""
    org.stripe_customer_id = customer_id
    org.stripe_subscription_id = subscription_id
    org.subscription_status = "active"
    db.session.commit()


def org_by_customer(customer_id: str) -> Organization | None:
    return db.session.execute(
        db.select(Organization).where(Organization.stripe_customer_id == customer_id)
    ).scalar_one_or_none()


def org_by_subscription(subscription_id: str) -> Organization | None:
    return db.session.execute(
        db.select(Organization).where(Organization.stripe_subscription_id == subscription_id)
    ).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Stripe sessions
# ---------------------------------------------------------------------------


def _billing_url(org: Organization) -> str:
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return f"{base}/orgs/{org.slug}/settings/billing"


def create_checkout_session(org: Organization, fallback_email: str | None = None) -> str:
    """Create a subscription checkout session and return its URL.

    Creates the Stripe customer on first use.

    Raises:
        BillingError: When Stripe rejects a call.
    """
    _configure_stripe()
    config = current_app.config
    quantity = max(1, domain_count(org))

    try:
        if not org.stripe_customer_id:
            customer = stripe.Customer.create(
                email=org.billing_email or fallback_email,
                name=org.name,
                metadata={"organizationId": str(org.id), "organizationSlug": org.slug},
            )
            org.stripe_customer_id = customer.id
            db.session.commit()

        session = stripe.checkout.Session.create(
            customer=org.stripe_customer_id,
            mode="subscription",
            line_items=[
                {"price": config["STRIPE_BASE_PRICE_ID"], "quantity": 1},
                {"price": config["STRIPE_DOMAIN_PRICE_ID"], "quantity": quantity},
            ],
            subscription_data={
                "metadata": {"organizationId": str(org.id), "organizationSlug": org.slug}
            },
            success_url=f"{_billing_url(org)}?success=true",
            cancel_url=f"{_billing_url(org)}?canceled=true",
            allow_promotion_codes=True,
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout failed for %s: %s", org.slug, exc)
        raise BillingError("Failed to create checkout session") from exc
    return session.url


def create_portal_session(org: Organization) -> str:
    """Create a customer-portal session for an existing Stripe customer."""
    _configure_stripe()
    try:
        session = stripe.billing_portal.Session.create(
            customer=org.stripe_customer_id,
            return_url=_billing_url(org),
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe portal failed for %s: %s", org.slug, exc)
        raise BillingError("Failed to create portal session") from exc
    return session.url


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def handle_event(event: dict[str, Any]) -> None:
    """Apply one verified Stripe event to the matching organization."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        customer_id, subscription_id = obj.get("customer"), obj.get("subscription")
        if not customer_id or not subscription_id:
            logger.error("Checkout session without customer or subscription id")
            return
        org = org_by_customer(customer_id)
        if org is None:
            logger.error("No organization for Stripe customer %s", customer_id)
            return
        set_stripe_ids(org, customer_id, subscription_id)
        logger.info("Subscription activated for org %s", org.slug)

    elif event_type == "customer.subscription.updated":
        org = org_by_subscription(obj.get("id", ""))
        if org is None:
            logger.error("No organization for subscription %s", obj.get("id"))
            return
        status = STRIPE_STATUS_MAP.get(obj.get("status", ""), "active")
        update_subscription_status(org, status, _timestamp(obj.get("current_period_end")))

    elif event_type == "customer.subscription.deleted":
        org = org_by_subscription(obj.get("id", ""))
        if org is None:
            logger.error("No organization for subscription %s", obj.get("id"))
            return
        update_subscription_status(org, "canceled")

    elif event_type in ("invoice.payment_failed", "invoice.payment_succeeded"):
        customer_id = obj.get("customer")
        if not customer_id:
            return
        org = org_by_customer(customer_id)
        if org is None:
            logger.error("No organization for customer %s", customer_id)
            return
        if event_type == "invoice.payment_failed":
            update_subscription_status(org, "past_due")
        else:
            update_subscription_status(org, "active")

    else:
        logger.info("Unhandled Stripe event type: %s", event_type)
