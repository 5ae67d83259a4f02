"""
Organization, membership, invitation and audit-log routes.

Members may only manage (change or remove) members ranked strictly below
them and may only grant roles strictly below their own.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from flask import current_app, jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.alerts.scheduled import is_valid_timezone
from dmarc_analyser.models import AuditLog, Invitation, OrgMember, Organization, User, as_utc
from dmarc_analyser.orgs import bp
from dmarc_analyser.orgs.service import (
    SLUG_RE,
    create_organization,
    generate_invitation_token,
    invitation_expiry,
    is_invitation_expired,
    org_dict,
    owner_count,
    slug_exists,
    user_dict,
)
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import api_login_required, org_required
from dmarc_analyser.utils.dates import parse_iso_datetime
from dmarc_analyser.utils.email import render_simple_email, send_email
from dmarc_analyser.utils.pagination import paginate
from dmarc_analyser.utils.roles import ROLES, can_assign_role, can_manage_role, permissions_for
from dmarc_analyser.utils.tenant import get_current_membership, get_current_org

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MIN_RETENTION_DAYS = 30
MAX_RETENTION_DAYS = 3650


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@bp.route("/orgs", methods=["GET"])
@api_login_required
def list_orgs():
    rows = db.session.execute(
        db.select(Organization, OrgMember.role)
        .join(OrgMember, OrgMember.organization_id == Organization.id)
        .where(OrgMember.user_id == current_user.id)
        .order_by(Organization.name)
    ).all()
    return jsonify([org_dict(org, role) for org, role in rows])


@bp.route("/orgs", methods=["POST"])
@api_login_required
def create_org():
    """Create an organization with the caller as owner."""
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    slug = (data.get("slug") or "").strip()
    if not name or not slug:
        return jsonify({"error": "Name and slug are required"}), 400
    if not SLUG_RE.match(slug):
        return jsonify({"error": "Slug must only contain lowercase letters, numbers, and hyphens"}), 400
    if slug_exists(slug):
        return jsonify({"error": "An organization with this URL already exists"}), 400

    org = create_organization(name, current_user, slug=slug)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="organization.create",
        entity_type="organization",
        entity_id=org.id,
        new_value={"name": org.name, "slug": org.slug},
    )
    return jsonify(org_dict(org, "owner")), 201


@bp.route("/orgs/<slug>", methods=["GET"])
@org_required()
def get_org(slug):
    org = get_current_org()
    membership = get_current_membership()
    return jsonify({**org_dict(org, membership.role), "permissions": permissions_for(membership.role)})


@bp.route("/orgs/<slug>", methods=["PATCH"])
@org_required("manage_settings")
def update_org(slug):
    """Update organization settings (name, timezone, billing email, retention)."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}

    if "name" in data and (not isinstance(data["name"], str) or not data["name"].strip()):
        return jsonify({"error": "Invalid name format"}), 400
    if "dataRetentionDays" in data:
        days = data["dataRetentionDays"]
        if not isinstance(days, int) or isinstance(days, bool) or not MIN_RETENTION_DAYS <= days <= MAX_RETENTION_DAYS:
            return jsonify({"error": "Data retention must be between 30 and 3650 days"}), 400
    if "timezone" in data:
        if not isinstance(data["timezone"], str) or not is_valid_timezone(data["timezone"]):
            return jsonify({"error": "Invalid timezone"}), 400
    if data.get("billingEmail") and not _EMAIL_RE.match(str(data["billingEmail"])):
        return jsonify({"error": "Invalid email address"}), 400

    old_value = {
        "name": org.name,
        "timezone": org.timezone,
        "dataRetentionDays": org.data_retention_days,
        "billingEmail": org.billing_email,
    }
    if "name" in data:
        org.name = data["name"].strip()
    if "timezone" in data:
        org.timezone = data["timezone"]
    if "dataRetentionDays" in data:
        org.data_retention_days = data["dataRetentionDays"]
    if "billingEmail" in data:
        org.billing_email = data["billingEmail"] or None
    db.session.commit()

    log_audit(
        organization_id=org.id,
        action="organization.settings.update",
        entity_type="organization",
        entity_id=org.id,
        old_value=old_value,
        new_value={
            "name": org.name,
            "timezone": org.timezone,
            "dataRetentionDays": org.data_retention_days,
            "billingEmail": org.billing_email,
        },
    )
    return jsonify(org_dict(org, get_current_membership().role))


@bp.route("/orgs/<slug>", methods=["DELETE"])
@org_required("delete_org", message="Only owners can delete organizations")
def delete_org(slug):
    org = get_current_org()
    # Written before the delete; the entry cascades away with the org.
    log_audit(
        organization_id=org.id,
        action="organization.delete",
        entity_type="organization",
        entity_id=org.id,
        old_value={"name": org.name, "slug": org.slug},
    )
    logger.info("Organization deleted: slug=%s by user=%s", org.slug, current_user.id)
    db.session.delete(org)
    db.session.commit()
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def _member_dict(member: OrgMember) -> dict[str, Any]:
    inviter = db.session.get(User, member.invited_by) if member.invited_by else None
    return {
        "id": member.id,
        "userId": member.user_id,
        "role": member.role,
        "joinedAt": _iso(member.joined_at),
        "user": user_dict(member.user),
        "invitedBy": {"name": inviter.name, "email": inviter.email} if inviter else None,
    }


def _org_member(member_id: int) -> OrgMember | None:
    member = db.session.get(OrgMember, member_id)
    if member is None or member.organization_id != get_current_org().id:
        return None
    return member


@bp.route("/orgs/<slug>/members", methods=["GET"])
@org_required()
def list_members(slug):
    members = db.session.execute(
        db.select(OrgMember)
        .where(OrgMember.organization_id == get_current_org().id)
        .order_by(OrgMember.joined_at)
    ).scalars()
    return jsonify([_member_dict(m) for m in members])


@bp.route("/orgs/<slug>/members/<int:member_id>", methods=["PATCH"])
@org_required("change_roles")
def update_member(slug, member_id):
    """Change a member's role within the rank rules."""
    actor = get_current_membership()
    data = request.get_json(silent=True) or {}
    new_role = data.get("role")
    if new_role not in ROLES:
        return jsonify({"error": "Invalid role"}), 400

    member = _org_member(member_id)
    if member is None:
        return jsonify({"error": "Member not found"}), 404
    if member.user_id == current_user.id:
        return jsonify({"error": "You cannot change your own role"}), 403
    if not can_manage_role(actor.role, member.role):
        return jsonify({"error": "You cannot manage members with equal or higher roles"}), 403
    if not can_assign_role(actor.role, new_role):
        return jsonify({"error": "You cannot assign roles equal to or higher than your own"}), 403

    old_role = member.role
    member.role = new_role
    db.session.commit()
    log_audit(
        organization_id=member.organization_id,
        action="member.role_changed",
        entity_type="member",
        entity_id=member.user_id,
        old_value={"role": old_role},
        new_value={"role": new_role},
    )
    return jsonify({"success": True, "member": _member_dict(member)})


@bp.route("/orgs/<slug>/members/<int:member_id>", methods=["DELETE"])
@org_required("remove")
def remove_member(slug, member_id):
    actor = get_current_membership()
    member = _org_member(member_id)
    if member is None:
        return jsonify({"error": "Member not found"}), 404
    if member.user_id == current_user.id:
        return jsonify({"error": "Use the leave organization feature to remove yourself"}), 403
    if member.role == "owner" and owner_count(member.organization_id) <= 1:
        return jsonify({"error": "Cannot remove the organization owner. Transfer ownership first."}), 403
    if not can_manage_role(actor.role, member.role):
        return jsonify({"error": "You cannot remove members with equal or higher roles"}), 403

    old_value = {"role": member.role, "userId": member.user_id}
    org_id = member.organization_id
    user_id = member.user_id
    db.session.delete(member)
    db.session.commit()
    log_audit(
        organization_id=org_id,
        action="member.removed",
        entity_type="member",
        entity_id=user_id,
        old_value=old_value,
    )
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/membership", methods=["DELETE"])
@org_required()
def leave_org(slug):
    """Leave the organization; the last owner cannot leave."""
    membership = get_current_membership()
    if membership.role == "owner" and owner_count(membership.organization_id) <= 1:
        return jsonify({"error": "The last owner cannot leave the organization"}), 403
    org_id = membership.organization_id
    db.session.delete(membership)
    db.session.commit()
    log_audit(
        organization_id=org_id,
        action="member.left",
        entity_type="member",
        entity_id=current_user.id,
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


def _invitation_dict(invitation: Invitation, now: datetime | None = None) -> dict[str, Any]:
    inviter = db.session.get(User, invitation.invited_by) if invitation.invited_by else None
    return {
        "id": invitation.id,
        "email": invitation.email,
        "role": invitation.role,
        "expiresAt": _iso(invitation.expires_at),
        "acceptedAt": _iso(invitation.accepted_at),
        "createdAt": _iso(invitation.created_at),
        "isExpired": is_invitation_expired(invitation, now),
        "invitedBy": {"name": inviter.name, "email": inviter.email} if inviter else None,
    }


def _invite_url(token: str) -> str:
    return f"{current_app.config['APP_BASE_URL'].rstrip('/')}/invite/{token}"


def _send_invitation_email(invitation: Invitation, org: Organization) -> bool:
    inviter = current_user.name or current_user.email
    html, text = render_simple_email(
        f"You're invited to join {org.name}",
        [
            f"{inviter} has invited you to join {org.name} on DMARC Analyser as {invitation.role}.",
            "This invitation expires in 7 days.",
        ],
        link=("Accept invitation", _invite_url(invitation.token)),
    )
    return send_email(invitation.email, f"Invitation to join {org.name}", html, text)


@bp.route("/orgs/<slug>/invitations", methods=["GET"])
@org_required("invite")
def list_invitations(slug):
    now = datetime.now(timezone.utc)
    invitations = db.session.execute(
        db.select(Invitation)
        .where(Invitation.organization_id == get_current_org().id, Invitation.accepted_at.is_(None))
        .order_by(Invitation.created_at.desc())
    ).scalars()
    return jsonify([_invitation_dict(i, now) for i in invitations])


@bp.route("/orgs/<slug>/invitations", methods=["POST"])
@org_required("invite", message="You do not have permission to invite members")
def create_invitation(slug):
    """Invite an email address with a role below the inviter's."""
    org = get_current_org()
    actor = get_current_membership()
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    role = data.get("role")

    if not email or not role:
        return jsonify({"error": "Email and role are required"}), 400
    if role not in ROLES:
        return jsonify({"error": "Invalid role"}), 400
    if not _EMAIL_RE.match(email):
        return jsonify({"error": "Invalid email address"}), 400
    if not can_assign_role(actor.role, role):
        return jsonify({"error": "You cannot invite members with roles equal to or higher than your own"}), 403

    existing_member = db.session.execute(
        db.select(OrgMember.id)
        .join(User, User.id == OrgMember.user_id)
        .where(OrgMember.organization_id == org.id, db.func.lower(User.email) == email)
    ).first()
    if existing_member is not None:
        return jsonify({"error": "This user is already a member of the organization"}), 400

    pending = db.session.execute(
        db.select(Invitation).where(
            Invitation.organization_id == org.id,
            Invitation.email == email,
            Invitation.accepted_at.is_(None),
        )
    ).scalars().first()
    if pending is not None:
        if not is_invitation_expired(pending):
            return jsonify({"error": "An invitation has already been sent to this email address"}), 400
        db.session.delete(pending)
        db.session.flush()

    invitation = Invitation(
        organization_id=org.id,
        email=email,
        role=role,
        token=generate_invitation_token(),
        invited_by=current_user.id,
        expires_at=invitation_expiry(),
    )
    db.session.add(invitation)
    db.session.commit()

    sent = _send_invitation_email(invitation, org)
    log_audit(
        organization_id=org.id,
        action="invitation.created",
        entity_type="invitation",
        entity_id=invitation.id,
        new_value={"email": email, "role": role},
    )
    logger.info("Invitation created: org=%s email=%r emailed=%s", org.slug, email, sent)
    return jsonify(
        {**_invitation_dict(invitation), "inviteUrl": _invite_url(invitation.token), "emailSent": sent}
    ), 201


def _org_invitation(invitation_id: int) -> Invitation | None:
    invitation = db.session.get(Invitation, invitation_id)
    if invitation is None or invitation.organization_id != get_current_org().id:
        return None
    return invitation


@bp.route("/orgs/<slug>/invitations/<int:invitation_id>", methods=["DELETE"])
@org_required("invite", message="You do not have permission to cancel invitations")
def delete_invitation(slug, invitation_id):
    invitation = _org_invitation(invitation_id)
    if invitation is None:
        return jsonify({"error": "Invitation not found"}), 404
    old_value = {"email": invitation.email, "role": invitation.role}
    db.session.delete(invitation)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="invitation.cancelled",
        entity_type="invitation",
        entity_id=invitation_id,
        old_value=old_value,
    )
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/invitations/<int:invitation_id>/resend", methods=["POST"])
@org_required("invite", message="You do not have permission to resend invitations")
def resend_invitation(slug, invitation_id):
    """Issue a fresh token and expiry, then email the invitation again."""
    org = get_current_org()
    invitation = _org_invitation(invitation_id)
    if invitation is None:
        return jsonify({"error": "Invitation not found"}), 404
    if invitation.accepted_at is not None:
        return jsonify({"error": "Cannot resend an already accepted invitation"}), 400

    invitation.token = generate_invitation_token()
    invitation.expires_at = invitation_expiry()
    db.session.commit()
    sent = _send_invitation_email(invitation, org)
    log_audit(
        organization_id=org.id,
        action="invitation.resent",
        entity_type="invitation",
        entity_id=invitation.id,
        new_value={"email": invitation.email},
    )
    return jsonify({**_invitation_dict(invitation), "inviteUrl": _invite_url(invitation.token), "emailSent": sent})


def _invitation_by_token(token: str) -> tuple[Invitation | None, tuple | None]:
    """Return ``(invitation, None)`` or ``(None, error_response)``."""
    invitation = db.session.execute(
        db.select(Invitation).where(Invitation.token == token)
    ).scalar_one_or_none()
    if invitation is None:
        return None, (jsonify({"error": "Invalid invitation"}), 404)
    if invitation.accepted_at is not None:
        return None, (jsonify({"error": "Invitation already accepted"}), 400)
    if is_invitation_expired(invitation):
        return None, (jsonify({"error": "Invitation expired"}), 400)
    return invitation, None


@bp.route("/invitations/<token>", methods=["GET"])
def get_invitation(token):
    """Public details of a pending invitation."""
    invitation, error = _invitation_by_token(token)
    if error:
        return error
    org = invitation.organization
    return jsonify(
        {
            "email": invitation.email,
            "role": invitation.role,
            "expiresAt": _iso(invitation.expires_at),
            "organization": {"name": org.name, "slug": org.slug},
        }
    )


@bp.route("/invitations/<token>/accept", methods=["POST"])
@api_login_required
def accept_invitation(token):
    invitation, error = _invitation_by_token(token)
    if error:
        return error
    if current_user.email.lower() != invitation.email.lower():
        return jsonify(
            {
                "error": "This invitation was sent to a different email address",
                "invitedEmail": invitation.email,
            }
        ), 403

    already = db.session.execute(
        db.select(OrgMember.id).where(
            OrgMember.organization_id == invitation.organization_id,
            OrgMember.user_id == current_user.id,
        )
    ).first()
    if already is not None:
        return jsonify({"error": "You are already a member of this organization"}), 400

    db.session.add(
        OrgMember(
            organization_id=invitation.organization_id,
            user_id=current_user.id,
            role=invitation.role,
            invited_by=invitation.invited_by,
        )
    )
    invitation.accepted_at = datetime.now(timezone.utc)
    db.session.commit()
    log_audit(
        organization_id=invitation.organization_id,
        action="member.joined",
        entity_type="member",
        entity_id=current_user.id,
        new_value={"role": invitation.role, "email": invitation.email},
    )
    org = invitation.organization
    return jsonify({"success": True, "organization": org_dict(org, invitation.role)})


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def _audit_dict(entry: AuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "oldValue": json.loads(entry.old_value) if entry.old_value else None,
        "newValue": json.loads(entry.new_value) if entry.new_value else None,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "createdAt": _iso(entry.created_at),
        "user": user_dict(entry.user) if entry.user else None,
    }


@bp.route("/orgs/<slug>/audit-logs", methods=["GET"])
@org_required("view_audit_logs")
def list_audit_logs(slug):
    """Paginated audit log, filterable by action, entityType, userId and date range."""
    query = db.select(AuditLog).where(AuditLog.organization_id == get_current_org().id)

    action = request.args.get("action")
    if action:
        query = query.where(AuditLog.action == action)
    entity_type = request.args.get("entityType")
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    user_id = request.args.get("userId", type=int)
    if user_id:
        query = query.where(AuditLog.user_id == user_id)
    try:
        from_date = parse_iso_datetime(request.args.get("fromDate"))
        to_date = parse_iso_datetime(request.args.get("toDate"))
    except ValueError:
        return jsonify({"error": "Invalid date"}), 400
    if from_date:
        query = query.where(AuditLog.created_at >= from_date)
    if to_date:
        query = query.where(AuditLog.created_at <= to_date)

    entries, pagination = paginate(query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()))
    return jsonify({"logs": [_audit_dict(e) for e in entries], "pagination": pagination})
