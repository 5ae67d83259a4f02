"""
Route tests for the authentication blueprint.

Covers registration (with its personal organization), login / logout,
the current-user endpoint and the password reset flow.
"""

from __future__ import annotations

from unittest.mock import patch

from conftest import OWNER_EMAIL, PASSWORD, login
from dmarc_analyser.models import OrgMember, Organization
from dmarc_analyser.utils.roles import can_assign_role, can_manage_role, has_permission, permissions_for


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


def test_role_permissions():
    assert has_permission("owner", "delete_org") is True
    assert has_permission("admin", "delete_org") is False
    assert has_permission("member", "manage_domains") is True
    assert has_permission("member", "invite") is False
    assert has_permission("viewer", "manage_domains") is False
    assert permissions_for("admin")["manage_webhooks"] is True


def test_role_hierarchy():
    assert can_manage_role("owner", "admin") is True
    assert can_manage_role("admin", "admin") is False
    assert can_assign_role("admin", "member") is True
    assert can_assign_role("admin", "owner") is False
    assert can_assign_role("owner", "superuser") is False


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_creates_user_and_personal_org(client, db):
    response = client.post(
        "/api/auth/register",
        json={"email": "New@Example.org", "password": "longpassword", "name": "Dana"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["user"]["email"] == "new@example.org"
    assert body["organization"]["name"] == "Dana's Organization"
    assert body["organization"]["role"] == "owner"
    assert body["organization"]["subscriptionStatus"] == "trialing"

    org = db.session.execute(
        db.select(Organization).where(Organization.slug == body["organization"]["slug"])
    ).scalar_one()
    member = db.session.execute(db.select(OrgMember).where(OrgMember.organization_id == org.id)).scalar_one()
    assert member.role == "owner"

    # The new session is logged in
    assert client.get("/api/auth/me").status_code == 200


def test_register_duplicate_email(client):
    response = client.post("/api/auth/register", json={"email": OWNER_EMAIL.upper(), "password": "longpassword"})
    assert response.status_code == 409
    assert response.get_json()["error"] == "An account with this email already exists"


def test_register_validates_password_length(client):
    response = client.post("/api/auth/register", json={"email": "x@example.org", "password": "short"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Password must be at least 8 characters."


def test_register_org_name_falls_back_to_email_prefix(client):
    response = client.post("/api/auth/register", json={"email": "pat@example.org", "password": "longpassword"})
    assert response.get_json()["organization"]["name"] == "pat's Organization"


# ---------------------------------------------------------------------------
# Login / logout / me
# ---------------------------------------------------------------------------


def test_login_success(client):
    response = login(client)
    assert response.status_code == 200
    assert response.get_json()["user"]["email"] == OWNER_EMAIL


def test_login_wrong_password(client):
    response = login(client, password="wrongpassword")
    assert response.status_code == 401
    assert response.get_json()["error"] == "Invalid email or password"


def test_login_missing_fields(client):
    response = client.post("/api/auth/login", json={"email": OWNER_EMAIL})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Password is required."


def test_login_rate_limited(client):
    for _ in range(10):
        login(client, password="wrongpassword")
    response = login(client)
    assert response.status_code == 429


def test_login_rate_limit_ignores_forwarded_header(client):
    for n in range(10):
        client.post(
            "/api/auth/login",
            json={"email": OWNER_EMAIL, "password": "wrongpassword"},
            headers={"X-Forwarded-For": f"198.51.100.{n}"},
        )
    response = client.post(
        "/api/auth/login",
        json={"email": OWNER_EMAIL, "password": PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.99"},
    )
    assert response.status_code == 429


def test_me_requires_login(client):
    response = client.get("/api/auth/me")
    assert response.status_code == 401
    assert response.get_json()["error"] == "Unauthorized"


def test_me_lists_memberships_with_permissions(auth_client):
    body = auth_client.get("/api/auth/me").get_json()

    assert body["user"]["email"] == OWNER_EMAIL
    assert len(body["memberships"]) == 1
    membership = body["memberships"][0]
    assert membership["slug"] == "acme"
    assert membership["role"] == "owner"
    assert membership["permissions"]["delete_org"] is True


def test_logout_ends_session(auth_client):
    assert auth_client.post("/api/auth/logout").get_json() == {"success": True}
    assert auth_client.get("/api/auth/me").status_code == 401


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def _request_reset_token(client) -> str:
    with patch("dmarc_analyser.auth.routes.send_email", return_value=True) as mock_send:
        response = client.post("/api/auth/forgot-password", json={"email": OWNER_EMAIL})
    assert response.status_code == 200
    text_body = mock_send.call_args.args[3]
    return text_body.split("token=", 1)[1].strip()


def test_forgot_password_does_not_reveal_unknown_email(client):
    with patch("dmarc_analyser.auth.routes.send_email") as mock_send:
        response = client.post("/api/auth/forgot-password", json={"email": "nobody@example.org"})

    assert response.status_code == 200
    assert "If an account exists" in response.get_json()["message"]
    mock_send.assert_not_called()


def test_reset_password_flow(client):
    token = _request_reset_token(client)

    response = client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new-pass"})
    assert response.status_code == 200

    assert login(client, password=PASSWORD).status_code == 401
    assert login(client, password="brand-new-pass").status_code == 200


def test_reset_password_rejects_tampered_token(client):
    response = client.post("/api/auth/reset-password", json={"token": "not-a-token", "password": "brand-new-pass"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Invalid reset link."
