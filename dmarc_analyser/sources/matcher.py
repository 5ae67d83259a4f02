"""
Match observed sources to known senders.

A source matches a sender when its IP lies in one of the sender's CIDR
ranges.  Failing that, any DKIM signing domain seen for the source IP on
the same domain may equal one of the sender's DKIM domains or be a
subdomain of it.  Global senders and the organization's own senders are
both considered; IP matches take priority over DKIM matches.

``spf_matches`` pairs the terms of a published SPF record with senders the
same way, by include name or address range.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.models import DkimResult, KnownSender, Record, Report, Source

logger = logging.getLogger(__name__)


def ip_in_range(ip: str, cidr: str) -> bool:
    """Return True if *ip* is inside *cidr*; malformed input never matches."""
    try:
        return ipaddress.ip_address(ip) in ipaddress.ip_network(cidr, strict=False)
    except (TypeError, ValueError):
        return False


def dkim_domain_matches(dkim_domain: str, known_domains: list[str]) -> bool:
    """Exact or subdomain match, case-insensitive."""
    candidate = dkim_domain.lower()
    for known in known_domains:
        known = known.lower()
        if candidate == known or candidate.endswith("." + known):
            return True
    return False


def candidate_senders(organization_id: int) -> list[KnownSender]:
    return list(
        db.session.execute(
            db.select(KnownSender)
            .where(
                db.or_(
                    KnownSender.is_global.is_(True),
                    KnownSender.organization_id == organization_id,
                )
            )
            .order_by(KnownSender.id)
        ).scalars()
    )


def match_by_ip(ip: str, senders: list[KnownSender]) -> KnownSender | None:
    for sender in senders:
        if any(ip_in_range(ip, cidr) for cidr in sender.get_ip_ranges()):
            return sender
    return None


def match_by_dkim(dkim_domain: str, senders: list[KnownSender]) -> KnownSender | None:
    for sender in senders:
        domains = sender.get_dkim_domains()
        if domains and dkim_domain_matches(dkim_domain, domains):
            return sender
    return None


def dkim_domains_for_source(source: Source) -> list[str]:
    """Distinct DKIM signing domains seen for the source IP on its domain."""
    return list(
        db.session.execute(
            db.select(DkimResult.domain)
            .join(Record, DkimResult.record_id == Record.id)
            .join(Report, Record.report_id == Report.id)
            .where(Report.domain_id == source.domain_id, Record.source_ip == source.source_ip)
            .distinct()
        ).scalars()
    )


def match_source(source: Source, senders: list[KnownSender]) -> KnownSender | None:
    """Return the known sender for *source*, trying IP ranges before DKIM domains."""
    sender = match_by_ip(source.source_ip, senders)
    if sender is not None:
        return sender
    for dkim_domain in dkim_domains_for_source(source):
        sender = match_by_dkim(dkim_domain, senders)
        if sender is not None:
            return sender
    return None


def auto_match_domain_sources(domain_id: int, organization_id: int) -> dict[str, Any]:
    """Link every unmatched source of a domain to a known sender where possible.

    Returns:
        ``{"matched", "total"}`` where total counts all sources of the domain.
    """
    sources = db.session.execute(
        db.select(Source).where(Source.domain_id == domain_id)
    ).scalars().all()
    senders = candidate_senders(organization_id)

    matched = 0
    for source in sources:
        if source.known_sender_id:
            continue
        sender = match_source(source, senders)
        if sender is None:
            continue
        source.known_sender_id = sender.id
        source.is_known_sender = True
        matched += 1
        logger.debug("Source %s matched known sender %s", source.source_ip, sender.name)

    db.session.commit()
    logger.info("Auto-matched %d of %d sources for domain %s", matched, len(sources), domain_id)
    return {"matched": matched, "total": len(sources)}


# ---------------------------------------------------------------------------
# SPF record matching
# ---------------------------------------------------------------------------

_SPF_MECHANISM_ORDER = ("include", "ip4", "ip6")


def _include_matches(include: str, sender_include: str) -> bool:
    sender_include = sender_include.lower()
    if sender_include.startswith("include:"):
        sender_include = sender_include[len("include:"):]
    return include in sender_include or sender_include in include


def spf_matches(spf_record: str | None, senders: list[KnownSender]) -> list[dict[str, Any]]:
    """Pair every include, ip4 and ip6 term of *spf_record* with a known sender.

    Includes match when either name contains the other; address terms match
    when their network address lies in one of the sender's ranges.

    Returns:
        ``[{"type", "value", "sender"}]`` with includes first, then ip4, then
        ip6 terms, each in record order.  ``sender`` is None when unmatched.
    """
    if not spf_record:
        return []
    terms: list[tuple[str, str]] = []
    for term in spf_record.split()[1:]:
        kind, sep, value = term.lstrip("+-~?").partition(":")
        kind = kind.lower()
        if sep and value and kind in _SPF_MECHANISM_ORDER:
            terms.append((kind, value.lower() if kind == "include" else value))
    terms.sort(key=lambda t: _SPF_MECHANISM_ORDER.index(t[0]))

    matches = []
    for kind, value in terms:
        if kind == "include":
            sender = next(
                (s for s in senders if s.spf_include and _include_matches(value, s.spf_include)), None
            )
        else:
            sender = match_by_ip(value.split("/")[0], senders)
        matches.append({"type": kind, "value": value, "sender": sender})
    return matches
