"""
Tenant context helpers.

Resolves an organization from its URL slug together with the current
user's membership, and stores both on ``flask.g`` for the request.
"""

from __future__ import annotations

import logging

from flask import g
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.models import Domain, OrgMember, Organization

logger = logging.getLogger(__name__)


def get_membership(org_slug: str) -> tuple[Organization, OrgMember] | None:
    """Return ``(organization, membership)`` for the current user, or None.

    None is returned both when the organization does not exist and when the
    user is not a member, so callers can answer 404 without leaking which.
    """
    if not current_user.is_authenticated:
        return None
    row = db.session.execute(
        db.select(Organization, OrgMember)
        .join(OrgMember, OrgMember.organization_id == Organization.id)
        .where(Organization.slug == org_slug, OrgMember.user_id == current_user.id)
    ).first()
    if row is None:
        return None
    return row[0], row[1]


def get_current_org() -> Organization | None:
    """Get current organization from Flask g."""
    return getattr(g, "current_org", None)


def get_current_membership() -> OrgMember | None:
    """Get the current user's membership in the current organization."""
    return getattr(g, "current_membership", None)


def get_current_role() -> str | None:
    """Return the current user's role in the current organization."""
    membership = get_current_membership()
    return membership.role if membership else None


def get_org_domain(domain_id: int) -> Domain | None:
    """Return *domain_id* if it belongs to the current organization."""
    org = get_current_org()
    if org is None:
        return None
    domain = db.session.get(Domain, domain_id)
    if domain is None or domain.organization_id != org.id:
        return None
    return domain
