"""
Health, global search and the public DNS lookup tools.

The DNS tools need no login but are rate limited per client IP.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import jsonify, request

from dmarc_analyser import db
from dmarc_analyser.api import bp
from dmarc_analyser.checker.resolver import query_dns
from dmarc_analyser.models import Domain, Report, Source
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.domain import is_valid_domain
from dmarc_analyser.utils.rate_limit import is_rate_limited, request_ip
from dmarc_analyser.utils.tenant import get_current_org

logger = logging.getLogger(__name__)

_SEARCH_LIMIT = 5
_DNS_LOOKUP_LIMIT = 30
_DNS_LOOKUP_WINDOW = 60

# lookup type -> (name template, record test)
_LOOKUP_TYPES = {
    "dmarc": ("_dmarc.{domain}", lambda r: r.startswith("v=DMARC1")),
    "spf": ("{domain}", lambda r: r.startswith("v=spf1")),
    "dkim": ("{selector}._domainkey.{domain}", lambda r: r.startswith("v=DKIM1") or "k=rsa" in r or "p=" in r),
}


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@bp.route("/health")
def health():
    """Public health-check endpoint -- no authentication required."""
    return jsonify(
        {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "DMARC Analyser",
        }
    )


def _lookup_rate_limited() -> bool:
    return is_rate_limited("dns_lookup", request_ip(), limit=_DNS_LOOKUP_LIMIT, window=_DNS_LOOKUP_WINDOW)


def _requested_domain() -> tuple[str | None, tuple | None]:
    domain = request.args.get("domain", "").strip().lower()
    if not domain:
        return None, (jsonify({"error": "Domain is required"}), 400)
    if not is_valid_domain(domain):
        return None, (jsonify({"error": "Invalid domain format"}), 400)
    return domain, None


@bp.route("/dns/dmarc")
def dns_dmarc():
    """Return the published DMARC record of ``?domain=`` or null."""
    if _lookup_rate_limited():
        return jsonify({"error": "Too many requests. Please try again later."}), 429
    domain, error_response = _requested_domain()
    if error_response:
        return error_response

    result = query_dns(f"_dmarc.{domain}", "TXT")
    if not result["success"] and result["error_type"] not in ("NXDOMAIN", "NO_ANSWER"):
        logger.warning("DMARC lookup failed for %s: %s", domain, result["error_message"])
        return jsonify({"error": "DNS lookup failed"}), 502
    record = next((r for r in result["records"] if r.startswith("v=DMARC1")), None)
    return jsonify({"record": record})


@bp.route("/dns/lookup")
def dns_lookup():
    """Look up a DMARC, SPF or DKIM (``?selector=``) record."""
    if _lookup_rate_limited():
        return jsonify({"error": "Too many requests. Please try again later."}), 429
    domain, error_response = _requested_domain()
    if error_response:
        return error_response

    lookup_type = request.args.get("type", "")
    if lookup_type not in _LOOKUP_TYPES:
        return jsonify({"error": "Invalid type. Must be dmarc, spf, or dkim"}), 400
    selector = request.args.get("selector", "").strip()
    if lookup_type == "dkim" and not selector:
        return jsonify({"error": "Selector is required for DKIM lookups"}), 400

    template, matches = _LOOKUP_TYPES[lookup_type]
    name = template.format(domain=domain, selector=selector)
    result = query_dns(name, "TXT")
    if not result["success"]:
        if result["error_type"] in ("NXDOMAIN", "NO_ANSWER"):
            return jsonify(
                {
                    "domain": name,
                    "record": None,
                    "allRecords": [],
                    "found": False,
                    "error": f"No {lookup_type.upper()} record found for {name}",
                }
            )
        logger.warning("DNS lookup failed for %s: %s", name, result["error_message"])
        return jsonify({"error": "DNS lookup failed. Please try again."}), 502

    record = next((r for r in result["records"] if matches(r)), None)
    return jsonify(
        {"domain": name, "record": record, "allRecords": result["records"], "found": record is not None}
    )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/search")
@org_required()
def search(slug):
    """Search domains, sources (IP, hostname, organization) and reports.

    Queries shorter than two characters return no results.  At most five
    hits per kind are returned.
    """
    query = request.args.get("q", "").strip()
    if len(query) < 2:
        return jsonify({"results": []})

    org = get_current_org()
    pattern = f"%{query}%"
    results = []

    domains = db.session.execute(
        db.select(Domain)
        .where(
            Domain.organization_id == org.id,
            db.or_(Domain.domain.ilike(pattern), Domain.display_name.ilike(pattern)),
        )
        .order_by(Domain.domain)
        .limit(_SEARCH_LIMIT)
    ).scalars()
    for domain in domains:
        results.append(
            {
                "type": "domain",
                "id": domain.id,
                "title": domain.domain,
                "subtitle": domain.display_name or "Domain",
                "url": f"/orgs/{org.slug}/domains/{domain.id}",
            }
        )

    sources = db.session.execute(
        db.select(Source, Domain.domain)
        .join(Domain, Source.domain_id == Domain.id)
        .where(
            Domain.organization_id == org.id,
            db.or_(
                Source.source_ip.ilike(pattern),
                Source.hostname.ilike(pattern),
                Source.organization.ilike(pattern),
            ),
        )
        .order_by(Source.total_messages.desc())
        .limit(_SEARCH_LIMIT)
    ).all()
    for source, domain_name in sources:
        results.append(
            {
                "type": "source",
                "id": source.id,
                "title": source.source_ip,
                "subtitle": source.organization or domain_name,
                "url": f"/orgs/{org.slug}/domains/{source.domain_id}/sources",
            }
        )

    reports = db.session.execute(
        db.select(Report, Domain.domain)
        .join(Domain, Report.domain_id == Domain.id)
        .where(
            Domain.organization_id == org.id,
            db.or_(Report.org_name.ilike(pattern), Report.report_id.ilike(pattern)),
        )
        .order_by(Report.date_range_begin.desc())
        .limit(_SEARCH_LIMIT)
    ).all()
    for report, domain_name in reports:
        results.append(
            {
                "type": "report",
                "id": report.id,
                "title": report.org_name,
                "subtitle": f"{domain_name} - {report.date_range_begin:%Y-%m-%d}",
                "url": f"/orgs/{org.slug}/domains/{report.domain_id}/reports/{report.id}",
            }
        )

    return jsonify({"results": results})
