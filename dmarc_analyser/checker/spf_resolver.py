"""
Recursive SPF include resolution.

Expands an SPF include (e.g. ``_spf.google.com``) into the flat list of
ip4/ip6 ranges it authorises, following nested includes.  Used to fill a
known sender's IP ranges from its published SPF record.

Limits follow RFC 7208: at most 10 DNS lookups in total, and a recursion
depth of 5.  A visited set stops include cycles.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from dmarc_analyser.checker.resolver import ResolverSettings, query_dns

logger = logging.getLogger(__name__)

MAX_DNS_LOOKUPS = 10
MAX_RECURSION_DEPTH = 5

_QUALIFIER_RE = re.compile(r"^[+\-~?]")


@dataclass
class SpfResolution:
    """Result of resolving one SPF include."""

    ip_ranges: list[str] = field(default_factory=list)
    includes: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"ipRanges": self.ip_ranges, "includes": self.includes, "errors": self.errors}


def extract_spf_terms(txt: str) -> tuple[list[str], list[str], list[str]]:
    """Return ``(ip4, ip6, includes)`` from an SPF record.

    Bare addresses get a host prefix length (/32 or /128).
    """
    ip4: list[str] = []
    ip6: list[str] = []
    includes: list[str] = []
    if not txt.lower().startswith("v=spf1"):
        return ip4, ip6, includes

    for term in txt.split():
        term = _QUALIFIER_RE.sub("", term)
        if term.startswith("ip4:"):
            value = term[4:]
            ip4.append(value if "/" in value else f"{value}/32")
        elif term.startswith("ip6:"):
            value = term[4:]
            ip6.append(value if "/" in value else f"{value}/128")
        elif term.startswith("include:"):
            includes.append(term[8:])
    return ip4, ip6, includes


def _resolve_domain(
    domain: str,
    depth: int,
    lookups: list[int],
    visited: set[str],
    settings: ResolverSettings | None,
) -> SpfResolution:
    result = SpfResolution()

    key = domain.lower()
    if key in visited:
        return result
    visited.add(key)

    if depth > MAX_RECURSION_DEPTH:
        result.errors.append(f"Max recursion depth reached at {domain}")
        return result

    if lookups[0] >= MAX_DNS_LOOKUPS:
        result.errors.append(f"Max DNS lookups ({MAX_DNS_LOOKUPS}) exceeded")
        return result

    lookups[0] += 1
    dns_result = query_dns(domain, "TXT", settings)
    if not dns_result["success"]:
        result.errors.append(f"Failed to resolve {domain}: {dns_result['error_message']}")
        return result

    spf_record = next(
        (txt for txt in dns_result["records"] if txt.lower().startswith("v=spf1")), None
    )
    if spf_record is None:
        result.errors.append(f"No SPF record found for {domain}")
        return result

    ip4, ip6, includes = extract_spf_terms(spf_record)
    result.ip_ranges.extend(ip4)
    result.ip_ranges.extend(ip6)
    result.includes = list(includes)

    for include in includes:
        nested = _resolve_domain(include, depth + 1, lookups, visited, settings)
        result.ip_ranges.extend(nested.ip_ranges)
        result.errors.extend(nested.errors)

    return result


def resolve_spf_include(spf_include: str, settings: ResolverSettings | None = None) -> SpfResolution:
    """Resolve an SPF include into every IP range it authorises.

    Args:
        spf_include: ``_spf.google.com`` or ``include:_spf.google.com``.
        settings: Optional resolver settings.

    Returns:
        SpfResolution with de-duplicated ranges (first-seen order), the
        direct includes, and any errors hit along the way.
    """
    domain = spf_include.strip()
    if domain.lower().startswith("include:"):
        domain = domain[8:]
    if not domain:
        return SpfResolution(errors=["No domain provided"])

    result = _resolve_domain(domain, 0, [0], set(), settings)
    result.ip_ranges = list(dict.fromkeys(result.ip_ranges))
    logger.info(
        "Resolved SPF include %s: %d ranges, %d errors",
        domain,
        len(result.ip_ranges),
        len(result.errors),
    )
    return result


def validate_spf_include(spf_include: str, settings: ResolverSettings | None = None) -> tuple[bool, str | None]:
    """Return ``(valid, first_error)``; valid unless nothing resolved at all."""
    result = resolve_spf_include(spf_include, settings)
    if result.errors and not result.ip_ranges:
        return False, result.errors[0]
    return True, None
