"""
Routes for the authentication blueprint.

Handles registration, login / logout, the current-user endpoint and the
password reset flow, and registers the Flask-Login user_loader.
"""

from __future__ import annotations

import logging

from flask import current_app, jsonify
from flask_login import current_user, login_user, logout_user
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from dmarc_analyser import db, login_manager
from dmarc_analyser.auth import bp
from dmarc_analyser.auth.forms import (
    ForgotPasswordForm,
    LoginForm,
    RegisterForm,
    ResetPasswordForm,
    first_error,
)
from dmarc_analyser.models import OrgMember, Organization, User
from dmarc_analyser.orgs.service import create_organization, org_dict, user_dict
from dmarc_analyser.utils.audit import client_ip
from dmarc_analyser.utils.auth import api_login_required
from dmarc_analyser.utils.email import render_simple_email, send_email
from dmarc_analyser.utils.rate_limit import is_rate_limited, request_ip, reset_rate_limit
from dmarc_analyser.utils.roles import permissions_for

logger = logging.getLogger(__name__)

_RESET_SALT = "password-reset"
_RESET_MAX_AGE = 3600

_LOGIN_LIMIT = 10
_REGISTER_LIMIT = 5
_WINDOW_SECONDS = 300


# ---------------------------------------------------------------------------
# Flask-Login user loader
# ---------------------------------------------------------------------------


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    """Load a User by primary key; returns None if not found or inactive."""
    try:
        uid = int(user_id)
    except (ValueError, TypeError):
        return None
    user = db.session.get(User, uid)
    if user is None or not user.is_active:
        return None
    return user


def _user_by_email(email: str) -> User | None:
    return db.session.execute(
        db.select(User).where(db.func.lower(User.email) == email.strip().lower())
    ).scalars().first()


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------


@bp.route("/register", methods=["POST"])
def register():
    """Create an account and its personal organization."""
    if is_rate_limited("register", request_ip(), limit=_REGISTER_LIMIT, window=_WINDOW_SECONDS):
        return jsonify({"error": "Too many registration attempts. Please try again later."}), 429

    form = RegisterForm(meta={"csrf": False})
    if not form.validate():
        return jsonify({"error": first_error(form)}), 400

    email = form.email.data.strip().lower()
    if _user_by_email(email) is not None:
        return jsonify({"error": "An account with this email already exists"}), 409

    name = (form.name.data or "").strip() or None
    user = User(email=email, name=name)
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.flush()

    org_name = f"{name}'s Organization" if name else f"{email.split('@')[0]}'s Organization"
    org = create_organization(org_name, user)
    db.session.commit()

    login_user(user, remember=False)
    logger.info("User registered: email=%r org=%s ip=%s", email, org.slug, client_ip())
    return jsonify({"user": user_dict(user), "organization": org_dict(org, "owner")}), 201


@bp.route("/login", methods=["POST"])
def login():
    """Authenticate submitted credentials and start a session."""
    ip = request_ip()
    if is_rate_limited("login", ip, limit=_LOGIN_LIMIT, window=_WINDOW_SECONDS):
        logger.warning("Login rate limit hit: ip=%s", ip)
        return jsonify({"error": "Too many login attempts. Please try again later."}), 429

    form = LoginForm(meta={"csrf": False})
    if not form.validate():
        return jsonify({"error": first_error(form)}), 400

    # Log the email only - never log the password.
    submitted_email = form.email.data or ""
    user = _user_by_email(submitted_email)
    if user is None or not user.is_active or not user.check_password(form.password.data):
        logger.warning("Login failed: email=%r ip=%s", submitted_email, ip)
        return jsonify({"error": "Invalid email or password"}), 401

    login_user(user, remember=False)
    reset_rate_limit("login", ip)
    logger.info("Login successful: email=%r ip=%s", submitted_email, ip)
    return jsonify({"user": user_dict(user)})


@bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        logger.info("Logout: user=%s", current_user.id)
    logout_user()
    return jsonify({"success": True})


@bp.route("/me", methods=["GET"])
@api_login_required
def me():
    """Return the logged-in user and every organization they belong to."""
    rows = db.session.execute(
        db.select(Organization, OrgMember.role)
        .join(OrgMember, OrgMember.organization_id == Organization.id)
        .where(OrgMember.user_id == current_user.id)
        .order_by(Organization.name)
    ).all()
    return jsonify(
        {
            "user": user_dict(current_user),
            "memberships": [
                {**org_dict(org, role), "permissions": permissions_for(role)} for org, role in rows
            ],
        }
    )


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def _get_reset_serializer() -> URLSafeTimedSerializer:
    """Get the timed serializer for password reset tokens."""
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"])


@bp.route("/forgot-password", methods=["POST"])
def forgot_password():
    """Email a reset link when the account exists; the answer never says whether it does."""
    generic = {"message": "If an account exists for that email, a reset link has been sent."}
    if is_rate_limited("forgot_password", request_ip(), limit=_REGISTER_LIMIT, window=_WINDOW_SECONDS):
        return jsonify(generic)

    form = ForgotPasswordForm(meta={"csrf": False})
    if not form.validate():
        return jsonify(generic)

    user = _user_by_email(form.email.data)
    if user is not None and user.is_active:
        token = _get_reset_serializer().dumps({"uid": user.id}, salt=_RESET_SALT)
        reset_url = f"{current_app.config['APP_BASE_URL'].rstrip('/')}/reset-password?token={token}"
        html, text = render_simple_email(
            "Reset your password",
            [
                "We received a request to reset the password for your account.",
                "This link expires in 1 hour. If you did not request it, ignore this email.",
            ],
            link=("Reset password", reset_url),
        )
        sent = send_email(user.email, "Password Reset - DMARC Analyser", html, text)
        logger.info("Password reset requested: user=%s sent=%s", user.id, sent)
    else:
        logger.info("Password reset requested for unknown email")
    return jsonify(generic)


@bp.route("/reset-password", methods=["POST"])
def reset_password():
    """Validate the signed token and set a new password."""
    form = ResetPasswordForm(meta={"csrf": False})
    if not form.validate():
        return jsonify({"error": first_error(form)}), 400

    try:
        data = _get_reset_serializer().loads(form.token.data, salt=_RESET_SALT, max_age=_RESET_MAX_AGE)
    except SignatureExpired:
        return jsonify({"error": "This reset link has expired. Please request a new one."}), 400
    except BadSignature:
        return jsonify({"error": "Invalid reset link."}), 400

    user = db.session.get(User, data.get("uid")) if isinstance(data, dict) else None
    if user is None or not user.is_active:
        return jsonify({"error": "Invalid reset link."}), 400

    user.set_password(form.password.data)
    db.session.commit()
    logger.info("Password reset completed: user=%s", user.id)
    return jsonify({"success": True})
