"""
Organization access decorators.

Usage:
    @bp.route("/orgs/<slug>/webhooks", methods=["POST"])
    @org_required("manage_webhooks")
    def create_webhook(slug):
        org = get_current_org()
        ...

``org_required`` answers 401 for anonymous callers, 404 when the
organization is missing or the user is not a member, and 403 when the
member's role lacks the named permission.
"""

from __future__ import annotations

from functools import wraps
from typing import Callable

from flask import g, jsonify
from flask_login import current_user

from dmarc_analyser.utils.roles import has_permission
from dmarc_analyser.utils.tenant import get_membership


def api_login_required(f: Callable) -> Callable:
    """Return JSON 401 instead of redirecting to a login page."""

    @wraps(f)
    def decorated(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated


def org_required(permission: str | None = None, *, message: str | None = None) -> Callable:
    """Resolve ``<slug>`` to the current organization and check *permission*.

    Args:
        permission: Name from ``roles.PERMISSIONS``; None allows any member.
        message: Custom 403 error text.
    """

    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated(*args, **kwargs):
            if not current_user.is_authenticated:
                return jsonify({"error": "Unauthorized"}), 401
            resolved = get_membership(kwargs.get("slug", ""))
            if resolved is None:
                return jsonify({"error": "Organization not found"}), 404
            org, membership = resolved
            if permission is not None and not has_permission(membership.role, permission):
                return jsonify({"error": message or "Insufficient permissions"}), 403
            g.current_org = org
            g.current_membership = membership
            return f(*args, **kwargs)

        return decorated

    return decorator
