"""
DNS resolver wrapper.

Provides thread-safe DNS resolution with configurable nameservers,
timeouts and retries, mapping NXDOMAIN, SERVFAIL, timeouts and other
resolver failures to a uniform result dict instead of exceptions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import dns.exception
import dns.resolver
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

_DEFAULT_NAMESERVERS = ["1.1.1.1", "8.8.8.8"]


@dataclass(frozen=True)
class ResolverSettings:
    """Resolver configuration, passed explicitly into worker threads."""

    nameservers: list[str] = field(default_factory=lambda: list(_DEFAULT_NAMESERVERS))
    timeout_seconds: float = 5.0
    retries: int = 2


def load_settings() -> ResolverSettings:
    """Build ResolverSettings from the Flask config (defaults outside an app)."""
    if not has_app_context():
        return ResolverSettings()
    config = current_app.config
    return ResolverSettings(
        nameservers=list(config.get("DNS_NAMESERVERS") or _DEFAULT_NAMESERVERS),
        timeout_seconds=float(config.get("DNS_TIMEOUT", 5.0)),
        retries=int(config.get("DNS_RETRIES", 2)),
    )


def create_resolver(settings: ResolverSettings) -> dns.resolver.Resolver:
    """Create a fresh dns.resolver.Resolver configured from *settings*.

    A new instance is created every time to ensure thread safety.

    Args:
        settings: ResolverSettings instance containing resolver config.

    Returns:
        A configured dns.resolver.Resolver instance.
    """
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = settings.nameservers or list(_DEFAULT_NAMESERVERS)
    resolver.timeout = float(settings.timeout_seconds)
    resolver.lifetime = float(settings.timeout_seconds * max(settings.retries, 1))
    resolver.retry_servfail = True
    return resolver


def _failure(error_type: str, message: str) -> dict[str, Any]:
    return {
        "success": False,
        "records": [],
        "error_type": error_type,
        "error_message": message,
    }


def query_dns(
    domain: str,
    rdtype: str,
    settings: ResolverSettings | None = None,
) -> dict[str, Any]:
    """Execute a DNS query with robust error handling.

    Args:
        domain: The domain name to query.
        rdtype: DNS record type string (e.g. "TXT", "PTR").
        settings: Optional ResolverSettings; read from the app config if
            not provided.  Worker threads must pass it explicitly.

    Returns:
        A dict with keys:
            success (bool): Whether the query returned records.
            records (list[str]): The resolved record strings.
            error_type (str|None): NXDOMAIN, NO_ANSWER, TIMEOUT or DNS_ERROR.
            error_message (str|None): Human-readable error description.
    """
    if settings is None:
        settings = load_settings()

    resolver = create_resolver(settings)

    try:
        answer = resolver.resolve(domain, rdtype)
        records: list[str] = []
        for rdata in answer:
            # TXT records come as multiple byte strings that need joining
            if rdtype.upper() == "TXT":
                records.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
            else:
                records.append(rdata.to_text())

        logger.debug("DNS query %s/%s returned %d records", domain, rdtype, len(records))
        return {
            "success": True,
            "records": records,
            "error_type": None,
            "error_message": None,
        }

    except dns.resolver.NXDOMAIN:
        logger.info("NXDOMAIN for %s/%s", domain, rdtype)
        return _failure("NXDOMAIN", f"Domain {domain} does not exist (NXDOMAIN)")

    except dns.resolver.NoAnswer:
        logger.info("NoAnswer for %s/%s", domain, rdtype)
        return _failure("NO_ANSWER", f"No {rdtype} records found for {domain}")

    except dns.resolver.NoNameservers:
        logger.warning("NoNameservers for %s/%s", domain, rdtype)
        return _failure(
            "DNS_ERROR", f"No nameservers available for {domain} (SERVFAIL or all failed)"
        )

    except dns.resolver.LifetimeTimeout:
        logger.warning("Timeout for %s/%s", domain, rdtype)
        return _failure("TIMEOUT", f"DNS query timed out for {domain}/{rdtype}")

    except dns.exception.DNSException as exc:
        logger.error("DNSException for %s/%s: %s", domain, rdtype, exc)
        return _failure("DNS_ERROR", f"DNS error for {domain}/{rdtype}: {exc}")


def get_txt_records(name: str, settings: ResolverSettings | None = None) -> list[str]:
    """Return the TXT strings at *name* (empty list on any failure)."""
    return query_dns(name, "TXT", settings)["records"]
