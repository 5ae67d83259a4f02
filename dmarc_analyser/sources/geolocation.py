"""
Source IP enrichment.

Looks up country, region, city, ASN and network owner with the free
ip-api.com JSON endpoint, plus the PTR hostname through the shared DNS
resolver.  Private and reserved addresses are never sent to the API.

ip-api.com allows 45 requests per minute without a key, so enrichment
works in batches of 10 with a short delay between requests.  A source the
API cannot resolve is retried after a day.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import dns.exception
import dns.reversename
import requests
from flask import current_app

from dmarc_analyser import db
from dmarc_analyser.checker.resolver import query_dns
from dmarc_analyser.models import Source

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# GeoIP API configuration
# ---------------------------------------------------------------------------

_GEOIP_API_URL = (
    "http://ip-api.com/json/{ip}"
    "?fields=status,country,countryCode,region,regionName,city,isp,org,as,query"
)
_GEOIP_TIMEOUT_SECONDS = 10
_AS_PREFIX_RE = re.compile(r"^AS\d+\s*")

BATCH_SIZE = 10
PRIVATE_NETWORK_LABEL = "Private network"
# A source whose lookup failed leaves the pending set for this long.
RETRY_AFTER = timedelta(hours=24)


def _is_private_ip(ip_address: str) -> bool:
    """Return True for private, reserved, loopback or link-local addresses."""
    try:
        addr = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return addr.is_private or addr.is_reserved or addr.is_loopback or addr.is_link_local


def lookup_ip(ip_address: str) -> dict[str, Any] | None:
    """Query ip-api.com for *ip_address*.

    Returns:
        The decoded response when ``status`` is ``success``, else None.
    """
    try:
        response = requests.get(
            _GEOIP_API_URL.format(ip=ip_address), timeout=_GEOIP_TIMEOUT_SECONDS
        )
    except requests.RequestException as exc:
        logger.warning("GeoIP lookup failed for %s: %s", ip_address, exc)
        return None
    if not response.ok:
        logger.warning("GeoIP lookup for %s returned HTTP %s", ip_address, response.status_code)
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    if data.get("status") != "success":
        logger.info("GeoIP lookup for %s unsuccessful: %s", ip_address, data.get("message"))
        return None
    return data


def reverse_hostname(ip_address: str) -> str | None:
    """Return the first PTR name for *ip_address* without the trailing dot."""
    try:
        name = dns.reversename.from_address(ip_address)
    except (dns.exception.SyntaxError, ValueError):
        return None
    result = query_dns(name.to_text(), "PTR")
    if not result["success"] or not result["records"]:
        return None
    return result["records"][0].rstrip(".")


def apply_geo(source: Source, data: dict[str, Any]) -> None:
    """Copy an ip-api.com response onto *source*."""
    as_field = data.get("as") or ""
    source.country = data.get("countryCode")
    source.city = data.get("city")
    source.region = data.get("regionName")
    source.organization = data.get("org") or data.get("isp")
    source.asn = as_field.split(" ")[0] if as_field else None
    source.asn_org = _AS_PREFIX_RE.sub("", as_field) if as_field else None


def _needs_enrichment(now: datetime):
    return db.and_(
        Source.country.is_(None),
        Source.organization.is_(None),
        db.or_(
            Source.enrichment_attempted_at.is_(None),
            Source.enrichment_attempted_at < now - RETRY_AFTER,
        ),
    )


def pending_count(domain_id: int, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    return db.session.execute(
        db.select(db.func.count(Source.id)).where(Source.domain_id == domain_id, _needs_enrichment(now))
    ).scalar_one()


def enrich_sources(
    domain_id: int,
    source_id: int | None = None,
    delay: float | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Enrich one source, or the next batch of sources missing geo data.

    Private addresses are labelled locally so they leave the pending set.
    Every lookup stamps ``enrichment_attempted_at``, so sources the API
    cannot resolve are skipped for ``RETRY_AFTER`` instead of filling
    every batch.

    Returns:
        ``{"enriched", "errors", "remaining", "hasMore", "message"}``.
    """
    if delay is None:
        delay = float(current_app.config.get("IP_ENRICH_DELAY_SECONDS", 0.1))
    now = now or datetime.now(timezone.utc)

    query = db.select(Source).where(Source.domain_id == domain_id)
    if source_id is not None:
        query = query.where(Source.id == source_id)
    else:
        query = query.where(_needs_enrichment(now)).order_by(Source.id).limit(BATCH_SIZE)
    batch = db.session.execute(query).scalars().all()

    if not batch:
        return {"enriched": 0, "remaining": 0, "message": "All sources already enriched"}

    enriched = 0
    errors: list[str] = []
    for index, source in enumerate(batch):
        if not source.hostname:
            source.hostname = reverse_hostname(source.source_ip)

        if _is_private_ip(source.source_ip):
            source.organization = PRIVATE_NETWORK_LABEL
            enriched += 1
            continue

        source.enrichment_attempted_at = now
        data = lookup_ip(source.source_ip)
        if data is None:
            errors.append(source.source_ip)
        else:
            apply_geo(source, data)
            enriched += 1

        if delay and index < len(batch) - 1:
            time.sleep(delay)

    db.session.commit()
    remaining = pending_count(domain_id, now)
    logger.info(
        "Enriched %d/%d sources for domain %s (errors=%d remaining=%d)",
        enriched,
        len(batch),
        domain_id,
        len(errors),
        remaining,
    )
    return {
        "enriched": enriched,
        "errors": len(errors),
        "remaining": remaining,
        "hasMore": remaining > 0,
        "message": (
            f"Enriched {enriched} source{'s' if enriched > 1 else ''}"
            if enriched
            else "No sources could be enriched"
        ),
    }
