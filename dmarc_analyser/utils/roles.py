"""
Organization roles and the permissions attached to them.

Roles are strictly ordered: owner > admin > member > viewer.  A user may
only manage (change or remove) a member whose role ranks strictly below
their own, and may only assign roles strictly below their own.
"""

from __future__ import annotations

from typing import Final

ROLES: Final[tuple[str, ...]] = ("owner", "admin", "member", "viewer")

ROLE_RANK: Final[dict[str, int]] = {
    "owner": 4,
    "admin": 3,
    "member": 2,
    "viewer": 1,
}

_ADMINS: Final[frozenset[str]] = frozenset({"owner", "admin"})

# permission name -> roles granted it
PERMISSIONS: Final[dict[str, frozenset[str]]] = {
    "invite": _ADMINS,
    "remove": _ADMINS,
    "change_roles": _ADMINS,
    "view_audit_logs": _ADMINS,
    "export_data": _ADMINS,
    "manage_settings": _ADMINS,
    "manage_webhooks": _ADMINS,
    "manage_api_keys": _ADMINS,
    "manage_alert_rules": _ADMINS,
    "manage_gmail": _ADMINS,
    "manage_billing": _ADMINS,
    "manage_domains": frozenset({"owner", "admin", "member"}),
    "bulk_import_domains": _ADMINS,
    "delete_domains": _ADMINS,
    "delete_org": frozenset({"owner"}),
}


def has_permission(role: str, permission: str) -> bool:
    """Return True if *role* is granted *permission*.

    Raises:
        KeyError: For an unknown permission name.
    """
    return role in PERMISSIONS[permission]


def can_manage_role(actor_role: str, target_role: str) -> bool:
    """Return True if *actor_role* may change or remove a *target_role* member."""
    return ROLE_RANK.get(actor_role, 0) > ROLE_RANK.get(target_role, 0)


def can_assign_role(actor_role: str, new_role: str) -> bool:
    """Return True if *actor_role* may grant *new_role* to someone."""
    if new_role not in ROLE_RANK:
        return False
    return ROLE_RANK.get(actor_role, 0) > ROLE_RANK[new_role]


def permissions_for(role: str) -> dict[str, bool]:
    """Return the full permission map for *role* (used by the API for UI hints)."""
    return {name: role in roles for name, roles in PERMISSIONS.items()}
