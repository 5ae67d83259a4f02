"""
Route tests for organizations, members, invitations and the audit log.

Every route is scoped by organization slug; non-members get 404 and
members without the permission get 403.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import ORG_SLUG, login
from dmarc_analyser.models import AuditLog, Invitation, OrgMember, Organization, User


@pytest.fixture
def member_client(app, add_member):
    """A client logged in as a plain member of acme."""
    add_member("member@example.com", "member")
    client = app.test_client()
    assert login(client, "member@example.com").status_code == 200
    return client


@pytest.fixture
def admin_client(app, add_member):
    add_member("admin@example.com", "admin")
    client = app.test_client()
    assert login(client, "admin@example.com").status_code == 200
    return client


def _membership(db, org, email):
    return db.session.execute(
        db.select(OrgMember).join(User, User.id == OrgMember.user_id).where(
            OrgMember.organization_id == org.id, User.email == email
        )
    ).scalar_one()


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


def test_list_orgs(auth_client):
    body = auth_client.get("/api/orgs").get_json()
    assert [o["slug"] for o in body] == [ORG_SLUG]
    assert body[0]["role"] == "owner"


def test_create_org(auth_client, db):
    response = auth_client.post("/api/orgs", json={"name": "Beta Corp", "slug": "beta-corp"})

    assert response.status_code == 201
    assert response.get_json()["role"] == "owner"
    assert db.session.execute(db.select(AuditLog).where(AuditLog.action == "organization.create")).scalar_one()


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"name": "X"}, "Name and slug are required"),
        ({"name": "X", "slug": "Bad Slug"}, "Slug must only contain lowercase letters, numbers, and hyphens"),
        ({"name": "X", "slug": ORG_SLUG}, "An organization with this URL already exists"),
    ],
)
def test_create_org_validation(auth_client, payload, message):
    response = auth_client.post("/api/orgs", json=payload)
    assert response.status_code == 400
    assert response.get_json()["error"] == message


def test_get_org_includes_permissions(auth_client):
    body = auth_client.get(f"/api/orgs/{ORG_SLUG}").get_json()
    assert body["name"] == "Acme"
    assert body["permissions"]["manage_billing"] is True


def test_org_routes_require_login(client):
    assert client.get(f"/api/orgs/{ORG_SLUG}").status_code == 401


def test_non_member_gets_404(app, db):
    outsider = User(email="outsider@example.com", name="Out")
    outsider.set_password("testpass123")
    db.session.add(outsider)
    db.session.commit()

    client = app.test_client()
    login(client, "outsider@example.com")
    response = client.get(f"/api/orgs/{ORG_SLUG}")
    assert response.status_code == 404
    assert response.get_json()["error"] == "Organization not found"


def test_update_org_settings(auth_client, org):
    response = auth_client.patch(
        f"/api/orgs/{ORG_SLUG}",
        json={"name": "Acme Inc", "timezone": "Europe/London", "dataRetentionDays": 90},
    )

    assert response.status_code == 200
    assert org.name == "Acme Inc"
    assert org.timezone == "Europe/London"
    assert org.data_retention_days == 90


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"dataRetentionDays": 10}, "Data retention must be between 30 and 3650 days"),
        ({"timezone": "Mars/Olympus"}, "Invalid timezone"),
        ({"billingEmail": "not-an-email"}, "Invalid email address"),
        ({"name": "  "}, "Invalid name format"),
    ],
)
def test_update_org_validation(auth_client, payload, message):
    response = auth_client.patch(f"/api/orgs/{ORG_SLUG}", json=payload)
    assert response.status_code == 400
    assert response.get_json()["error"] == message


def test_member_cannot_update_settings(member_client):
    response = member_client.patch(f"/api/orgs/{ORG_SLUG}", json={"name": "Hijacked"})
    assert response.status_code == 403


def test_only_owner_can_delete_org(admin_client, auth_client, db):
    response = admin_client.delete(f"/api/orgs/{ORG_SLUG}")
    assert response.status_code == 403
    assert response.get_json()["error"] == "Only owners can delete organizations"

    assert auth_client.delete(f"/api/orgs/{ORG_SLUG}").get_json() == {"success": True}
    assert db.session.execute(db.select(Organization).where(Organization.slug == ORG_SLUG)).first() is None


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def test_list_members(auth_client, add_member):
    add_member("viewer@example.com", "viewer")
    body = auth_client.get(f"/api/orgs/{ORG_SLUG}/members").get_json()
    assert sorted(m["role"] for m in body) == ["owner", "viewer"]


def test_owner_changes_member_role(auth_client, db, org, add_member):
    add_member("m@example.com", "member")
    member = _membership(db, org, "m@example.com")

    response = auth_client.patch(f"/api/orgs/{ORG_SLUG}/members/{member.id}", json={"role": "admin"})
    assert response.status_code == 200
    assert response.get_json()["member"]["role"] == "admin"


def test_admin_cannot_promote_to_admin(admin_client, db, org, add_member):
    add_member("m@example.com", "member")
    member = _membership(db, org, "m@example.com")

    response = admin_client.patch(f"/api/orgs/{ORG_SLUG}/members/{member.id}", json={"role": "admin"})
    assert response.status_code == 403
    assert response.get_json()["error"] == "You cannot assign roles equal to or higher than your own"


def test_cannot_change_own_role(auth_client, db, org):
    own = _membership(db, org, "owner@example.com")
    response = auth_client.patch(f"/api/orgs/{ORG_SLUG}/members/{own.id}", json={"role": "viewer"})
    assert response.status_code == 403


def test_admin_cannot_remove_owner(admin_client, db, org):
    own = _membership(db, org, "owner@example.com")
    response = admin_client.delete(f"/api/orgs/{ORG_SLUG}/members/{own.id}")
    assert response.status_code == 403
    assert response.get_json()["error"] == "Cannot remove the organization owner. Transfer ownership first."


def test_remove_member(auth_client, db, org, add_member):
    add_member("m@example.com", "member")
    member = _membership(db, org, "m@example.com")

    assert auth_client.delete(f"/api/orgs/{ORG_SLUG}/members/{member.id}").status_code == 200
    assert db.session.get(OrgMember, member.id) is None


def test_last_owner_cannot_leave(auth_client):
    response = auth_client.delete(f"/api/orgs/{ORG_SLUG}/membership")
    assert response.status_code == 403
    assert response.get_json()["error"] == "The last owner cannot leave the organization"


def test_member_can_leave(member_client):
    assert member_client.delete(f"/api/orgs/{ORG_SLUG}/membership").status_code == 200
    assert member_client.get(f"/api/orgs/{ORG_SLUG}").status_code == 404


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


def _invite(client, email="new@example.com", role="member"):
    with patch("dmarc_analyser.orgs.routes.send_email", return_value=False):
        return client.post(f"/api/orgs/{ORG_SLUG}/invitations", json={"email": email, "role": role})


def test_create_invitation(auth_client, db):
    response = _invite(auth_client)

    assert response.status_code == 201
    body = response.get_json()
    assert body["email"] == "new@example.com"
    assert body["inviteUrl"].startswith("http://testserver/invite/")
    assert body["emailSent"] is False
    invitation = db.session.execute(db.select(Invitation)).scalar_one()
    assert len(invitation.token) == 64


def test_duplicate_pending_invitation_rejected(auth_client):
    _invite(auth_client)
    response = _invite(auth_client)
    assert response.status_code == 400
    assert response.get_json()["error"] == "An invitation has already been sent to this email address"


def test_invite_existing_member_rejected(auth_client):
    response = _invite(auth_client, email="owner@example.com")
    assert response.get_json()["error"] == "This user is already a member of the organization"


def test_admin_cannot_invite_admin(admin_client):
    response = _invite(admin_client, role="admin")
    assert response.status_code == 403


def test_member_cannot_invite(member_client):
    response = _invite(member_client)
    assert response.status_code == 403
    assert response.get_json()["error"] == "You do not have permission to invite members"


def test_accept_invitation(app, auth_client, db):
    invited = _invite(auth_client, email="joiner@example.com")
    assert invited.status_code == 201
    invitation = db.session.execute(db.select(Invitation)).scalar_one()

    public = app.test_client().get(f"/api/invitations/{invitation.token}").get_json()
    assert public["organization"]["slug"] == ORG_SLUG

    joiner = app.test_client()
    joiner.post("/api/auth/register", json={"email": "joiner@example.com", "password": "longpassword"})
    response = joiner.post(f"/api/invitations/{invitation.token}/accept")

    assert response.status_code == 200
    assert response.get_json()["organization"]["role"] == "member"
    assert joiner.get(f"/api/orgs/{ORG_SLUG}").status_code == 200


def test_accept_invitation_wrong_email(auth_client, db):
    _invite(auth_client, email="someone@example.com")
    invitation = db.session.execute(db.select(Invitation)).scalar_one()

    response = auth_client.post(f"/api/invitations/{invitation.token}/accept")
    assert response.status_code == 403
    assert response.get_json()["invitedEmail"] == "someone@example.com"


def test_expired_invitation(app, auth_client, db):
    _invite(auth_client)
    invitation = db.session.execute(db.select(Invitation)).scalar_one()
    invitation.expires_at = datetime.now(timezone.utc) - timedelta(days=1)
    db.session.commit()

    response = app.test_client().get(f"/api/invitations/{invitation.token}")
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invitation expired"


def test_resend_invitation_rotates_token(auth_client, db):
    _invite(auth_client)
    invitation = db.session.execute(db.select(Invitation)).scalar_one()
    old_token = invitation.token

    with patch("dmarc_analyser.orgs.routes.send_email", return_value=True):
        response = auth_client.post(f"/api/orgs/{ORG_SLUG}/invitations/{invitation.id}/resend")

    assert response.status_code == 200
    assert response.get_json()["emailSent"] is True
    assert invitation.token != old_token


def test_cancel_invitation(auth_client, db):
    _invite(auth_client)
    invitation = db.session.execute(db.select(Invitation)).scalar_one()

    assert auth_client.delete(f"/api/orgs/{ORG_SLUG}/invitations/{invitation.id}").status_code == 200
    assert db.session.execute(db.select(Invitation)).first() is None


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


def test_audit_log_lists_and_filters(auth_client):
    auth_client.patch(f"/api/orgs/{ORG_SLUG}", json={"timezone": "UTC"})
    _invite(auth_client)

    body = auth_client.get(f"/api/orgs/{ORG_SLUG}/audit-logs").get_json()
    actions = [entry["action"] for entry in body["logs"]]
    assert "organization.settings.update" in actions
    assert "invitation.created" in actions
    assert body["pagination"]["total"] == len(actions)

    filtered = auth_client.get(f"/api/orgs/{ORG_SLUG}/audit-logs?action=invitation.created").get_json()
    assert [e["action"] for e in filtered["logs"]] == ["invitation.created"]
    assert filtered["logs"][0]["user"]["email"] == "owner@example.com"


def test_audit_log_requires_admin(member_client):
    assert member_client.get(f"/api/orgs/{ORG_SLUG}/audit-logs").status_code == 403


def test_audit_log_rejects_bad_date(auth_client):
    response = auth_client.get(f"/api/orgs/{ORG_SLUG}/audit-logs?fromDate=yesterday")
    assert response.status_code == 400
