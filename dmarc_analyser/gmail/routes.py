"""
Gmail routes: list, connect, OAuth callback, update, disconnect and sync.

The OAuth ``state`` parameter is signed with itsdangerous and carries the
organization and user ids; it expires after ten minutes.
"""

from __future__ import annotations

import logging

from flask import current_app, jsonify, redirect, request
from flask_login import current_user
from itsdangerous import BadSignature, URLSafeTimedSerializer

from dmarc_analyser import db
from dmarc_analyser.gmail import bp
from dmarc_analyser.gmail.client import (
    GmailError,
    build_auth_url,
    exchange_code,
    fetch_user_email,
    is_configured,
    store_tokens,
)
from dmarc_analyser.gmail.sync import start_sync, sync_account
from dmarc_analyser.models import GmailAccount, OrgMember, Organization
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import api_login_required, org_required
from dmarc_analyser.utils.roles import has_permission
from dmarc_analyser.utils.tenant import get_current_org

logger = logging.getLogger(__name__)

_STATE_SALT = "gmail-oauth-state"
_STATE_MAX_AGE = 600


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=_STATE_SALT)


def _account_dict(account: GmailAccount) -> dict:
    return {
        "id": account.id,
        "email": account.email,
        "syncEnabled": account.sync_enabled,
        "syncStatus": account.sync_status,
        "syncProgress": account.get_sync_progress(),
        "syncStartedAt": account.sync_started_at.isoformat() if account.sync_started_at else None,
        "lastSyncAt": account.last_sync_at.isoformat() if account.last_sync_at else None,
        "lastError": account.last_error,
        "createdAt": account.created_at.isoformat() if account.created_at else None,
    }


def _org_account(account_id: int) -> GmailAccount | None:
    account = db.session.get(GmailAccount, account_id)
    if account is None or account.organization_id != get_current_org().id:
        return None
    return account


def _settings_redirect(slug: str, query: str):
    base = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    return redirect(f"{base}/orgs/{slug}/settings/gmail?{query}")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/gmail")
@org_required()
def list_accounts(slug):
    accounts = db.session.execute(
        db.select(GmailAccount)
        .where(GmailAccount.organization_id == get_current_org().id)
        .order_by(GmailAccount.created_at)
    ).scalars()
    return jsonify([_account_dict(a) for a in accounts])


@bp.route("/orgs/<slug>/gmail/connect", methods=["POST"])
@org_required("manage_gmail")
def connect(slug):
    """Return the Google consent URL for connecting a mailbox."""
    if not is_configured():
        return jsonify({"error": "Gmail OAuth is not configured"}), 500
    org = get_current_org()
    state = _serializer().dumps({"org": org.id, "slug": org.slug, "user": current_user.id})
    return jsonify({"url": build_auth_url(state)})


@bp.route("/gmail/callback")
@api_login_required
def oauth_callback():
    """Finish the OAuth flow and redirect back to the Gmail settings page."""
    try:
        state = _serializer().loads(request.args.get("state", ""), max_age=_STATE_MAX_AGE)
    except BadSignature:
        return jsonify({"error": "Invalid or expired state"}), 400

    slug = state["slug"]
    if request.args.get("error"):
        return _settings_redirect(slug, f"error={request.args['error']}")
    code = request.args.get("code")
    if not code:
        return _settings_redirect(slug, "error=missing_params")
    if state["user"] != current_user.id:
        return _settings_redirect(slug, "error=invalid_state")

    membership = db.session.execute(
        db.select(OrgMember).where(
            OrgMember.organization_id == state["org"], OrgMember.user_id == current_user.id
        )
    ).scalar_one_or_none()
    if membership is None or not has_permission(membership.role, "manage_gmail"):
        return _settings_redirect(slug, "error=unauthorized")

    try:
        tokens = exchange_code(code)
        email = fetch_user_email(tokens["access_token"])
    except GmailError as exc:
        logger.warning("Gmail OAuth callback failed: %s", exc)
        return _settings_redirect(slug, "error=gmail_callback_failed")
    if not email:
        return _settings_redirect(slug, "error=no_email")

    account = db.session.execute(
        db.select(GmailAccount).where(
            GmailAccount.organization_id == state["org"], GmailAccount.email == email
        )
    ).scalar_one_or_none()
    created = account is None
    if created:
        account = GmailAccount(organization_id=state["org"], email=email)
        db.session.add(account)
    store_tokens(account, tokens)
    account.sync_enabled = True
    db.session.commit()

    log_audit(
        organization_id=state["org"],
        action="gmail.connect" if created else "gmail.reconnect",
        entity_type="gmail_account",
        entity_id=account.id,
        new_value={"email": email},
    )
    org = db.session.get(Organization, state["org"])
    return _settings_redirect(org.slug if org else slug, "success=true")


@bp.route("/orgs/<slug>/gmail/<int:account_id>", methods=["PATCH"])
@org_required("manage_gmail")
def update_account(slug, account_id):
    account = _org_account(account_id)
    if account is None:
        return jsonify({"error": "Account not found"}), 404
    data = request.get_json(silent=True) or {}
    if isinstance(data.get("syncEnabled"), bool):
        account.sync_enabled = data["syncEnabled"]
    if data.get("resetLastSync") is True:
        account.last_sync_at = None
    db.session.commit()
    log_audit(
        organization_id=account.organization_id,
        action="gmail.update",
        entity_type="gmail_account",
        entity_id=account.id,
        new_value={"syncEnabled": account.sync_enabled},
    )
    return jsonify(_account_dict(account))


@bp.route("/orgs/<slug>/gmail/<int:account_id>", methods=["DELETE"])
@org_required("manage_gmail")
def delete_account(slug, account_id):
    account = _org_account(account_id)
    if account is None:
        return jsonify({"error": "Account not found"}), 404
    email = account.email
    db.session.delete(account)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="gmail.disconnect",
        entity_type="gmail_account",
        entity_id=account_id,
        old_value={"email": email},
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/gmail/<int:account_id>/sync", methods=["POST"])
@org_required("manage_gmail")
def trigger_sync(slug, account_id):
    account = _org_account(account_id)
    if account is None:
        return jsonify({"error": "Account not found"}), 404
    if not start_sync(account):
        return jsonify({"error": "A sync is already in progress"}), 409
    data = request.get_json(silent=True) or {}
    result = sync_account(account, full_sync=bool(data.get("fullSync")))
    return jsonify({**result, "account": _account_dict(account)})


@bp.route("/orgs/<slug>/gmail/<int:account_id>/sync/cancel", methods=["POST"])
@org_required("manage_gmail")
def cancel_sync(slug, account_id):
    account = _org_account(account_id)
    if account is None:
        return jsonify({"error": "Account not found"}), 404
    account.sync_status = "idle"
    account.sync_progress = None
    db.session.commit()
    return jsonify({"success": True})
