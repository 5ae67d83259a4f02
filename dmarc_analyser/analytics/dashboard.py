"""
Organization-wide dashboard figures.

Both views sum the records of every domain in the organization, bucketed by
report ``date_range_begin`` like the per-domain timeline.  Source
classification shares come from the ``sources`` table (last seen within the
window); sources that were never classified count as potential threats.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import Domain, DomainTag, DomainTagAssignment, Record, Report, Source, as_utc

logger = logging.getLogger(__name__)

TOP_SOURCES = 10
TOP_COUNTRIES = 10


def _percent(part: int, total: int) -> int:
    """Whole percentage rounded half-up; 0 when *total* is 0."""
    if total <= 0:
        return 0
    return math.floor(part / total * 100 + 0.5)


def _org_domains(organization_id: int) -> list[Domain]:
    return list(
        db.session.execute(
            db.select(Domain).where(Domain.organization_id == organization_id).order_by(Domain.domain)
        ).scalars()
    )


def _records_since(domain_ids: list[int], since: datetime):
    return db.session.execute(
        db.select(
            Report.domain_id,
            Report.date_range_begin,
            Record.source_ip,
            Record.count,
            Record.dmarc_dkim,
            Record.dmarc_spf,
        )
        .join(Report, Record.report_id == Report.id)
        .where(Report.domain_id.in_(domain_ids), Report.date_range_begin >= since)
    ).all()


def tags_by_domain(domain_ids: list[int]) -> dict[int, list[dict[str, Any]]]:
    """``{domain_id: [{"id", "name", "color"}, ...]}`` sorted by tag name."""
    if not domain_ids:
        return {}
    rows = db.session.execute(
        db.select(DomainTagAssignment.domain_id, DomainTag)
        .join(DomainTag, DomainTagAssignment.tag_id == DomainTag.id)
        .where(DomainTagAssignment.domain_id.in_(domain_ids))
        .order_by(DomainTag.name)
    ).all()
    tags: dict[int, list[dict[str, Any]]] = {}
    for domain_id, tag in rows:
        tags.setdefault(domain_id, []).append({"id": tag.id, "name": tag.name, "color": tag.color})
    return tags


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


def org_timeline(organization_id: int, days: int = 30, now: datetime | None = None) -> dict[str, Any]:
    """Daily and per-domain message totals over the last *days* days.

    Returns:
        ``{"daily": [...], "byDomain": [...], "summary": {...}}``.  ``daily``
        is sorted by date and ``byDomain`` by volume, largest first.
    """
    now = now or datetime.now(timezone.utc)
    domains = _org_domains(organization_id)
    names = {d.id: d.domain for d in domains}

    daily: dict[str, dict[str, Any]] = {}
    by_domain: dict[int, dict[str, Any]] = {}
    total = passed_total = 0
    rows = _records_since(list(names), now - timedelta(days=days)) if names else []
    for domain_id, begin, _source_ip, count, dkim, spf in rows:
        passed = dkim == "pass" or spf == "pass"
        key = as_utc(begin).strftime("%Y-%m-%d")
        day = daily.setdefault(key, {"date": key, "total": 0, "passed": 0, "failed": 0})
        entry = by_domain.setdefault(
            domain_id,
            {"domainId": domain_id, "domain": names[domain_id], "total": 0, "passed": 0, "failed": 0},
        )
        for bucket in (day, entry):
            bucket["total"] += count
            bucket["passed" if passed else "failed"] += count
        total += count
        if passed:
            passed_total += count

    ranked = sorted(by_domain.values(), key=lambda d: d["total"], reverse=True)
    return {
        "daily": [daily[k] for k in sorted(daily)],
        "byDomain": [{**d, "passRate": _percent(d["passed"], d["total"])} for d in ranked],
        "summary": {
            "totalMessages": total,
            "passedMessages": passed_total,
            "failedMessages": total - passed_total,
            "passRate": pass_rate(passed_total, total),
        },
    }


# ---------------------------------------------------------------------------
# Domain overview
# ---------------------------------------------------------------------------


def _empty_overview() -> dict[str, Any]:
    return {
        "domains": [],
        "summary": {
            "activeDomains": 0,
            "inactiveDomains": 0,
            "totalMessages7d": 0,
            "passedMessages7d": 0,
            "failedMessages7d": 0,
            "passRate7d": 0,
            "dmarcCapablePercent": 0,
            "forwardedPercent": 0,
            "threatPercent": 0,
        },
        "topSources": [],
        "threatsByCountry": [],
    }


def org_domain_overview(organization_id: int, now: datetime | None = None) -> dict[str, Any]:
    """Seven-day volume per domain, source mix, top senders and threat countries."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=7)
    domains = _org_domains(organization_id)
    if not domains:
        return _empty_overview()
    domain_ids = [d.id for d in domains]

    sources = db.session.execute(
        db.select(Source)
        .where(Source.domain_id.in_(domain_ids), Source.last_seen >= since)
        .order_by(Source.total_messages.desc())
    ).scalars().all()

    mix = {"legitimate": 0, "forwarded": 0, "threat": 0}
    countries: dict[str, int] = {}
    owner_by_ip: dict[str, str] = {}
    for source in sources:
        if source.organization:
            owner_by_ip[source.source_ip] = source.organization
        kind = "legitimate" if source.source_type == "known_sender" else source.source_type
        if kind in ("legitimate", "forwarded"):
            mix[kind] += source.total_messages
            continue
        # suspicious and unclassified
        mix["threat"] += source.total_messages
        if source.country:
            countries[source.country] = countries.get(source.country, 0) + source.total_messages

    per_domain: dict[int, dict[str, int]] = {}
    senders: dict[str, dict[str, int]] = {}
    for domain_id, _begin, source_ip, count, dkim, spf in _records_since(domain_ids, since):
        passed = dkim == "pass" or spf == "pass"
        stats = per_domain.setdefault(domain_id, {"total": 0, "passed": 0})
        stats["total"] += count
        stats["passed"] += count if passed else 0

        sender = senders.setdefault(
            owner_by_ip.get(source_ip, "Unknown"), {"total": 0, "passed": 0, "spf": 0, "dkim": 0}
        )
        sender["total"] += count
        sender["passed"] += count if passed else 0
        sender["spf"] += count if spf == "pass" else 0
        sender["dkim"] += count if dkim == "pass" else 0

    tags = tags_by_domain(domain_ids)
    max_volume = max([s["total"] for s in per_domain.values()] + [1])
    rows = []
    for domain in domains:
        stats = per_domain.get(domain.id, {"total": 0, "passed": 0})
        rows.append(
            {
                "id": domain.id,
                "domain": domain.domain,
                "displayName": domain.display_name,
                "verifiedAt": as_utc(domain.verified_at).isoformat() if domain.verified_at else None,
                "hasActivity": stats["total"] > 0,
                "totalMessages": stats["total"],
                "passedMessages": stats["passed"],
                "failedMessages": stats["total"] - stats["passed"],
                "passRate": _percent(stats["passed"], stats["total"]),
                "volumePercent": _percent(stats["total"], max_volume),
                "tags": tags.get(domain.id, []),
            }
        )
    rows.sort(key=lambda r: r["totalMessages"], reverse=True)

    total = sum(s["total"] for s in per_domain.values())
    passed = sum(s["passed"] for s in per_domain.values())
    mixed = sum(mix.values())
    active = sum(1 for r in rows if r["hasActivity"])
    top = sorted(senders.items(), key=lambda item: item[1]["total"], reverse=True)[:TOP_SOURCES]
    threats = sorted(countries.items(), key=lambda item: item[1], reverse=True)[:TOP_COUNTRIES]

    return {
        "domains": rows,
        "summary": {
            "activeDomains": active,
            "inactiveDomains": len(rows) - active,
            "totalMessages7d": total,
            "passedMessages7d": passed,
            "failedMessages7d": total - passed,
            "passRate7d": _percent(passed, total),
            "dmarcCapablePercent": _percent(mix["legitimate"], mixed),
            "forwardedPercent": _percent(mix["forwarded"], mixed),
            "threatPercent": _percent(mix["threat"], mixed),
        },
        "topSources": [
            {
                "organization": name,
                "totalMessages": s["total"],
                "dmarcPercent": _percent(s["passed"], s["total"]),
                "spfPercent": _percent(s["spf"], s["total"]),
                "dkimPercent": _percent(s["dkim"], s["total"]),
            }
            for name, s in top
        ],
        "threatsByCountry": [{"country": c, "messages": m} for c, m in threats],
    }
