"""
DMARC, SPF and DKIM record lookups.

Each lookup filters the TXT strings at the relevant name by their version
prefix.  DKIM selector probing fans out over a small thread pool; there is
no caching and no retry beyond what the resolver does itself.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from dmarc_analyser.checker.resolver import ResolverSettings, get_txt_records, load_settings

logger = logging.getLogger(__name__)

# Selectors used by the major mailbox providers and ESPs.
COMMON_DKIM_SELECTORS: list[str] = [
    "google",
    "default",
    "selector1",
    "selector2",
    "k1",
    "dkim",
    "mail",
    "s1",
    "s2",
    "email",
    "smtp",
    "mx",
    "zoho",
    "mailjet",
    "postmark",
    "amazonses",
    "sendgrid",
    "mailgun",
]

_MAX_WORKERS = 8


def get_dmarc_records(domain: str, settings: ResolverSettings | None = None) -> list[str]:
    """Return every ``v=DMARC1`` TXT string at ``_dmarc.<domain>``."""
    return [
        r for r in get_txt_records(f"_dmarc.{domain}", settings) if r.startswith("v=DMARC1")
    ]


def get_dmarc_record(domain: str, settings: ResolverSettings | None = None) -> str | None:
    """Return the DMARC record for *domain*, or None."""
    records = get_dmarc_records(domain, settings)
    return records[0] if records else None


def get_spf_records(domain: str, settings: ResolverSettings | None = None) -> list[str]:
    """Return every ``v=spf1`` TXT string at *domain*."""
    return [r for r in get_txt_records(domain, settings) if r.startswith("v=spf1")]


def get_spf_record(domain: str, settings: ResolverSettings | None = None) -> str | None:
    """Return the SPF record for *domain*, or None."""
    records = get_spf_records(domain, settings)
    return records[0] if records else None


def get_dkim_record(
    domain: str, selector: str, settings: ResolverSettings | None = None
) -> str | None:
    """Return the DKIM key record at ``<selector>._domainkey.<domain>``, or None.

    All TXT strings at the name are concatenated; the result counts as a key
    when it carries ``p=`` or ``v=DKIM1``.
    """
    flat = "".join(get_txt_records(f"{selector}._domainkey.{domain}", settings))
    if "p=" in flat or "v=DKIM1" in flat:
        return flat
    return None


def scan_dkim_selectors(
    domain: str,
    selectors: list[str] | None = None,
    settings: ResolverSettings | None = None,
) -> list[dict[str, Any]]:
    """Look up several DKIM selectors in parallel.

    Args:
        domain: Domain to scan.
        selectors: Selectors to try; defaults to COMMON_DKIM_SELECTORS.
        settings: Resolver settings (read from the app config if omitted;
            threads receive them explicitly).

    Returns:
        One ``{"selector", "record", "valid"}`` dict per selector, in the
        order given.
    """
    selectors = selectors if selectors is not None else COMMON_DKIM_SELECTORS
    if settings is None:
        settings = load_settings()

    def _check_selector(selector: str) -> dict[str, Any]:
        record = get_dkim_record(domain, selector, settings)
        return {"selector": selector, "record": record, "valid": record is not None}

    if not selectors:
        return []
    with ThreadPoolExecutor(max_workers=min(_MAX_WORKERS, len(selectors))) as executor:
        results = list(executor.map(_check_selector, selectors))

    found = sum(1 for r in results if r["valid"])
    logger.debug("DKIM scan for %s: %d/%d selectors found", domain, found, len(selectors))
    return results
