"""
Gmail API client for fetching DMARC aggregate reports.

Uses the OAuth2 authorization-code flow with offline access, so each
connected mailbox carries a refresh token.  Tokens are stored encrypted on
:class:`GmailAccount` and refreshed five minutes before they expire.
"""

from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import requests
from flask import current_app

from dmarc_analyser import db
from dmarc_analyser.models import GmailAccount, as_utc
from dmarc_analyser.reports.parser import REPORT_EXTENSIONS
from dmarc_analyser.utils.crypto import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_TOKEN_URL = "https://oauth2.googleapis.com/token"
_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
_GMAIL_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
_TIMEOUT = 15

SCOPES = (
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/userinfo.email",
)
_REPORT_MIME_TYPES = (
    "application/xml",
    "text/xml",
    "application/zip",
    "application/gzip",
    "application/x-gzip",
)
_REFRESH_MARGIN = timedelta(minutes=5)
_SEARCH_RETRIES = 3


class GmailError(Exception):
    """Raised when an OAuth or Gmail API call fails."""


# ---------------------------------------------------------------------------
# Internal HTTP helper
# ---------------------------------------------------------------------------


def _request(method: str, url: str, *, token: str | None = None, **kwargs: Any) -> requests.Response:
    headers = kwargs.pop("headers", {})
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    try:
        return requests.request(method, url, headers=headers, timeout=_TIMEOUT, **kwargs)
    except requests.RequestException as exc:
        raise GmailError(f"Gmail request failed: {exc}") from exc


def _json_or_error(response: requests.Response, message: str) -> dict[str, Any]:
    if not response.ok:
        detail = ""
        try:
            body = response.json()
            detail = body.get("error_description") or (body.get("error") or {}).get("message", "")
        except (ValueError, AttributeError):
            pass
        logger.warning("%s (HTTP %s) %s", message, response.status_code, detail)
        raise GmailError(detail or message)
    try:
        return response.json()
    except ValueError as exc:
        raise GmailError(f"{message}: invalid JSON") from exc


# ---------------------------------------------------------------------------
# OAuth2
# ---------------------------------------------------------------------------


def is_configured() -> bool:
    config = current_app.config
    return bool(config.get("GMAIL_CLIENT_ID") and config.get("GMAIL_CLIENT_SECRET"))


def redirect_uri() -> str:
    config = current_app.config
    return config.get("GMAIL_REDIRECT_URI") or (
        config.get("APP_BASE_URL", "").rstrip("/") + "/api/gmail/callback"
    )


def build_auth_url(state: str) -> str:
    """Return the Google consent URL for an offline-access grant."""
    params = {
        "client_id": current_app.config["GMAIL_CLIENT_ID"],
        "redirect_uri": redirect_uri(),
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    return f"{_AUTH_URL}?{urlencode(params)}"


def _token_request(form: dict[str, str], message: str) -> dict[str, Any]:
    config = current_app.config
    form = {
        "client_id": config["GMAIL_CLIENT_ID"],
        "client_secret": config["GMAIL_CLIENT_SECRET"],
        **form,
    }
    data = _json_or_error(_request("POST", _TOKEN_URL, data=form), message)
    if "access_token" not in data:
        raise GmailError(message)
    expires_in = int(data.get("expires_in", 3600))
    return {
        "access_token": data["access_token"],
        "refresh_token": data.get("refresh_token"),
        "expires_at": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }


def exchange_code(code: str) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Returns:
        ``{"access_token", "refresh_token", "expires_at"}``.
    """
    return _token_request(
        {"code": code, "grant_type": "authorization_code", "redirect_uri": redirect_uri()},
        "Failed to exchange code for tokens",
    )


def refresh_access_token(refresh_token: str) -> dict[str, Any]:
    return _token_request(
        {"refresh_token": refresh_token, "grant_type": "refresh_token"},
        "Failed to refresh token",
    )


def fetch_user_email(access_token: str) -> str | None:
    data = _json_or_error(
        _request("GET", _USERINFO_URL, token=access_token), "Failed to fetch Google profile"
    )
    return data.get("email")


def store_tokens(account: GmailAccount, tokens: dict[str, Any]) -> None:
    """Encrypt and save tokens on *account* (refresh token only when issued)."""
    account.access_token = encrypt_secret(tokens["access_token"])
    if tokens.get("refresh_token"):
        account.refresh_token = encrypt_secret(tokens["refresh_token"])
    account.token_expires_at = tokens["expires_at"]


def valid_access_token(account: GmailAccount, now: datetime | None = None) -> str:
    """Return a usable access token, refreshing it when close to expiry.

    Raises:
        GmailError: When the account has no usable tokens or refresh fails.
    """
    now = now or datetime.now(timezone.utc)
    access = decrypt_secret(account.access_token)
    refresh = decrypt_secret(account.refresh_token)
    if not access or not refresh:
        raise GmailError("Gmail account not properly configured")

    expires_at = as_utc(account.token_expires_at)
    if expires_at is not None and expires_at > now + _REFRESH_MARGIN:
        return access

    tokens = refresh_access_token(refresh)
    store_tokens(account, tokens)
    db.session.commit()
    logger.debug("Refreshed Gmail access token for %s", account.email)
    return tokens["access_token"]


# ---------------------------------------------------------------------------
# Gmail API operations
# ---------------------------------------------------------------------------


def build_search_query(domains: list[str], search_all: bool = False) -> str:
    """Gmail search for report mails; inbox only unless *search_all*."""
    query = "has:attachment" if search_all else "in:inbox has:attachment"
    if domains:
        query += " (" + " OR ".join(f'subject:"{d}"' for d in domains) + ")"
    else:
        query += ' (subject:dmarc OR subject:"report domain")'
    return query


def search_messages(
    token: str,
    query: str,
    page_token: str | None = None,
    max_results: int = 100,
) -> tuple[list[str], str | None]:
    """Return ``(message_ids, next_page_token)``.

    Rate-limited (HTTP 429) searches are retried with a 2s then 4s pause.
    """
    params: dict[str, Any] = {"q": query, "maxResults": max_results}
    if page_token:
        params["pageToken"] = page_token

    for attempt in range(_SEARCH_RETRIES):
        if attempt:
            time.sleep(2 ** attempt)
        response = _request("GET", f"{_GMAIL_BASE}/messages", token=token, params=params)
        if response.status_code == 429:
            logger.warning("Gmail search rate limited (attempt %d)", attempt + 1)
            continue
        data = _json_or_error(response, "Failed to search Gmail")
        ids = [m["id"] for m in data.get("messages", []) if "id" in m]
        return ids, data.get("nextPageToken")
    raise GmailError("Gmail rate limited")


def get_message(token: str, message_id: str) -> dict[str, Any]:
    return _json_or_error(
        _request("GET", f"{_GMAIL_BASE}/messages/{message_id}", token=token, params={"format": "full"}),
        "Failed to get message",
    )


def get_attachment(token: str, message_id: str, attachment_id: str) -> bytes:
    """Download and base64url-decode one attachment."""
    data = _json_or_error(
        _request("GET", f"{_GMAIL_BASE}/messages/{message_id}/attachments/{attachment_id}", token=token),
        "Failed to get attachment",
    )
    encoded = data.get("data", "")
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def report_parts(message: dict[str, Any]) -> list[dict[str, Any]]:
    """Return the MIME parts of *message* that may hold an aggregate report."""
    found: list[dict[str, Any]] = []

    def walk(part: dict[str, Any]) -> None:
        mime = (part.get("mimeType") or "").lower()
        filename = (part.get("filename") or "").lower()
        if mime in _REPORT_MIME_TYPES or filename.endswith(REPORT_EXTENSIONS):
            found.append(part)
        for child in part.get("parts") or []:
            walk(child)

    for part in (message.get("payload") or {}).get("parts") or []:
        walk(part)
    return found


def ensure_label(token: str, name: str) -> str:
    """Create label *name*, or return the id of the existing one."""
    response = _request(
        "POST",
        f"{_GMAIL_BASE}/labels",
        token=token,
        json={"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"},
    )
    if response.status_code == 409:
        labels = _json_or_error(_request("GET", f"{_GMAIL_BASE}/labels", token=token), "Failed to list labels")
        for label in labels.get("labels", []):
            if label.get("name") == name:
                return label["id"]
        raise GmailError(f"Failed to create label: {name}")
    return _json_or_error(response, "Failed to create label")["id"]


def archive_message(token: str, message_id: str, label_id: str | None = None) -> None:
    """Remove *message_id* from the inbox and optionally apply *label_id*."""
    body: dict[str, list[str]] = {"removeLabelIds": ["INBOX"]}
    if label_id:
        body["addLabelIds"] = [label_id]
    response = _request("POST", f"{_GMAIL_BASE}/messages/{message_id}/modify", token=token, json=body)
    if not response.ok:
        logger.warning("Could not archive Gmail message %s (HTTP %s)", message_id, response.status_code)
