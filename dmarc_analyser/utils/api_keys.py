"""
API key generation and verification.

Keys look like ``dmarc_`` + 32 alphanumerics.  Only the SHA-256 hex digest
and the first 8 characters are stored; the full key is shown once.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Callable

from flask import g, jsonify, request

from dmarc_analyser import db
from dmarc_analyser.models import ApiKey, as_utc

logger = logging.getLogger(__name__)

KEY_PREFIX = "dmarc_"
_KEY_ALPHABET = string.ascii_letters + string.digits
_KEY_LENGTH = 32

API_KEY_SCOPES: tuple[str, ...] = (
    "read:domains",
    "read:reports",
    "read:sources",
    "write:domains",
)

EXPIRY_OPTIONS: dict[str, int | None] = {
    "never": None,
    "30days": 30,
    "90days": 90,
    "1year": 365,
}


def generate_api_key() -> str:
    """Return a new random API key."""
    return KEY_PREFIX + "".join(secrets.choice(_KEY_ALPHABET) for _ in range(_KEY_LENGTH))


def hash_api_key(key: str) -> str:
    """Return the SHA-256 hex digest stored for *key*."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def key_prefix(key: str) -> str:
    """Return the display prefix for *key*."""
    return key[:8]


def expiry_from_option(option: str, now: datetime | None = None) -> datetime | None:
    """Translate an expiry option to an absolute timestamp.

    Raises:
        ValueError: For an unknown option.
    """
    if option not in EXPIRY_OPTIONS:
        raise ValueError(f"Invalid expiry: {option}")
    days = EXPIRY_OPTIONS[option]
    if days is None:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(days=days)


def verify_api_key(key: str) -> ApiKey | None:
    """Return the active ApiKey for *key*, or None if unknown or expired."""
    if not key.startswith(KEY_PREFIX):
        return None
    api_key = db.session.execute(
        db.select(ApiKey).where(ApiKey.key_hash == hash_api_key(key))
    ).scalar_one_or_none()
    if api_key is None:
        return None
    expires_at = as_utc(api_key.expires_at)
    if expires_at is not None and expires_at < datetime.now(timezone.utc):
        return None
    api_key.last_used_at = datetime.now(timezone.utc)
    db.session.commit()
    return api_key


def api_key_required(scope: str) -> Callable:
    """Authenticate ``Authorization: Bearer dmarc_...`` and require *scope*.

    The verified key is stored on ``g.api_key``.
    """

    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated(*args, **kwargs):
            header = request.headers.get("Authorization", "")
            if not header.startswith("Bearer "):
                return jsonify({"error": "Missing API key"}), 401
            api_key = verify_api_key(header[len("Bearer "):].strip())
            if api_key is None:
                return jsonify({"error": "Invalid or expired API key"}), 401
            if scope not in api_key.get_scopes():
                logger.info("API key %s lacks scope %s", api_key.key_prefix, scope)
                return jsonify({"error": f"API key lacks required scope: {scope}"}), 403
            g.api_key = api_key
            return f(*args, **kwargs)

        return decorated

    return decorator
