"""
Encryption of third-party secrets at rest (AES-256-GCM).

Ciphertexts are stored as ``v1:<base64(nonce || ciphertext+tag)>``.  The
key is derived with SHA-256 from ``ENCRYPTION_KEY`` (or ``SECRET_KEY``
when unset), so rotating either invalidates stored secrets.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from flask import current_app

logger = logging.getLogger(__name__)

_PREFIX = "v1:"
_NONCE_BYTES = 12


def _key() -> bytes:
    material = current_app.config.get("ENCRYPTION_KEY") or current_app.config["SECRET_KEY"]
    return hashlib.sha256(material.encode("utf-8")).digest()


def encrypt_secret(plaintext: str) -> str:
    """Encrypt *plaintext* and return the storable token."""
    nonce = os.urandom(_NONCE_BYTES)
    sealed = AESGCM(_key()).encrypt(nonce, plaintext.encode("utf-8"), None)
    return _PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt_secret(token: str | None) -> str | None:
    """Decrypt a token produced by :func:`encrypt_secret`.

    Returns None for an empty token or one that fails authentication (for
    example after a key rotation); the failure is logged.
    """
    if not token:
        return None
    if not token.startswith(_PREFIX):
        logger.warning("Stored secret has unknown format; ignoring it")
        return None
    try:
        raw = base64.b64decode(token[len(_PREFIX):])
        nonce, sealed = raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]
        return AESGCM(_key()).decrypt(nonce, sealed, None).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        logger.warning("Failed to decrypt stored secret: %s", type(exc).__name__)
        return None


def mask_secret(value: str | None) -> str | None:
    """Return ``••••abcd`` style masking for display."""
    if not value:
        return None
    return "•" * 8 + value[-4:]
