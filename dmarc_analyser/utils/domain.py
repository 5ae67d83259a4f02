"""Domain name validation and verification tokens."""

from __future__ import annotations

import re
import secrets

_DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)+$"
)

VERIFICATION_PREFIX = "_dmarc-verify"


def normalize_domain(value: str) -> str:
    """Lowercase, trim, and strip a trailing dot."""
    return value.strip().lower().rstrip(".")


def is_valid_domain(value: str) -> bool:
    """Return True if *value* looks like a hostname with at least one dot."""
    return bool(value) and len(value) <= 253 and bool(_DOMAIN_RE.match(value))


def generate_verification_token() -> str:
    """Return a new ``dmarc-verify-<hex>`` token for TXT verification."""
    return f"dmarc-verify-{secrets.token_hex(16)}"


def verification_host(domain: str) -> str:
    """Return the DNS name the verification TXT record must live at."""
    return f"{VERIFICATION_PREFIX}.{domain}"
