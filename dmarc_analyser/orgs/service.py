"""
Organization creation and serialisation helpers shared by the auth and
organization blueprints.
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.billing.service import trial_end_from
from dmarc_analyser.models import Invitation, OrgMember, Organization, User, as_utc

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9-]+$")
INVITATION_DAYS = 7

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lowercase *name* and collapse every other character run to a hyphen."""
    slug = _NON_SLUG_CHARS.sub("-", (name or "").lower()).strip("-")
    return slug[:80] or "org"


def slug_exists(slug: str) -> bool:
    return db.session.execute(
        db.select(Organization.id).where(Organization.slug == slug)
    ).first() is not None


def unique_slug(name: str) -> str:
    """Return a free slug derived from *name*, suffixing ``-2``, ``-3``... on collision."""
    base = slugify(name)
    candidate = base
    suffix = 2
    while slug_exists(candidate):
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def create_organization(name: str, owner: User, slug: str | None = None) -> Organization:
    """Create an organization on a fresh trial with *owner* as its owner.

    The caller commits.
    """
    org = Organization(
        name=name,
        slug=slug or unique_slug(name),
        created_by=owner.id,
        billing_email=owner.email,
        subscription_status="trialing",
        trial_ends_at=trial_end_from(),
    )
    db.session.add(org)
    db.session.flush()
    db.session.add(OrgMember(organization_id=org.id, user_id=owner.id, role="owner"))
    logger.info("Organization created: slug=%s owner=%s", org.slug, owner.id)
    return org


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def org_dict(org: Organization, role: str | None = None) -> dict[str, Any]:
    data = {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "billingEmail": org.billing_email,
        "dataRetentionDays": org.data_retention_days,
        "timezone": org.timezone,
        "subscriptionStatus": org.subscription_status,
        "trialEndsAt": _iso(org.trial_ends_at),
        "createdAt": _iso(org.created_at),
    }
    if role is not None:
        data["role"] = role
    return data


def user_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "createdAt": _iso(user.created_at),
    }


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


def generate_invitation_token() -> str:
    """32 random bytes as hex."""
    return secrets.token_hex(32)


def invitation_expiry(now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) + timedelta(days=INVITATION_DAYS)


def is_invitation_expired(invitation: Invitation, now: datetime | None = None) -> bool:
    return as_utc(invitation.expires_at) < (now or datetime.now(timezone.utc))


def owner_count(organization_id: int) -> int:
    return db.session.execute(
        db.select(db.func.count(OrgMember.id)).where(
            OrgMember.organization_id == organization_id, OrgMember.role == "owner"
        )
    ).scalar_one()
