"""
Source routes, nested under ``/api/orgs/<slug>/domains/<domain_id>/sources``,
plus the SPF record to known-sender matching.

Members may classify, enrich and match sources; viewers may only read.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from flask import jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import KnownSender, Record, Report, Source
from dmarc_analyser.sources import bp
from dmarc_analyser.sources.geolocation import enrich_sources
from dmarc_analyser.sources.matcher import (
    auto_match_domain_sources,
    candidate_senders,
    match_source,
    spf_matches,
)
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.pagination import paginate
from dmarc_analyser.utils.tenant import get_current_org, get_org_domain

logger = logging.getLogger(__name__)

SOURCE_TYPES: tuple[str, ...] = ("legitimate", "known_sender", "suspicious", "forwarded", "unknown")

_SORT_COLUMNS = {
    "messages": Source.total_messages,
    "lastSeen": Source.last_seen,
    "firstSeen": Source.first_seen,
    "ip": Source.source_ip,
    "failures": Source.fail_count,
}


def known_sender_summary(sender: KnownSender | None) -> dict[str, Any] | None:
    if sender is None:
        return None
    return {
        "id": sender.id,
        "name": sender.name,
        "logoUrl": sender.logo_url,
        "category": sender.category,
        "website": sender.website,
        "isGlobal": sender.is_global,
    }


def source_dict(source: Source) -> dict[str, Any]:
    return {
        "id": source.id,
        "domainId": source.domain_id,
        "sourceIp": source.source_ip,
        "hostname": source.hostname,
        "country": source.country,
        "city": source.city,
        "region": source.region,
        "asn": source.asn,
        "asnOrg": source.asn_org,
        "organization": source.organization,
        "isKnownSender": source.is_known_sender,
        "knownSenderId": source.known_sender_id,
        "knownSender": known_sender_summary(source.known_sender),
        "sourceType": source.source_type,
        "notes": source.notes,
        "classifiedAt": source.classified_at.isoformat() if source.classified_at else None,
        "totalMessages": source.total_messages,
        "passedMessages": source.pass_count,
        "failedMessages": source.fail_count,
        "passRate": pass_rate(source.pass_count, source.total_messages),
        "firstSeen": source.first_seen.isoformat() if source.first_seen else None,
        "lastSeen": source.last_seen.isoformat() if source.last_seen else None,
    }


def _domain_source(domain_id: int, source_id: int) -> Source | None:
    source = db.session.get(Source, source_id)
    if source is None or source.domain_id != domain_id:
        return None
    return source


# ---------------------------------------------------------------------------
# Listing and detail
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources")
@org_required()
def list_sources(slug, domain_id):
    """List sources with ``?type=``, ``?sort=``, ``?order=`` and paging."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404

    query = db.select(Source).where(Source.domain_id == domain.id)
    source_type = request.args.get("type", "").strip()
    if source_type:
        if source_type not in SOURCE_TYPES:
            return jsonify({"error": "Invalid source type"}), 400
        query = query.where(Source.source_type == source_type)

    column = _SORT_COLUMNS.get(request.args.get("sort", "messages"), Source.total_messages)
    order = column.asc() if request.args.get("order") == "asc" else column.desc()
    items, meta = paginate(query.order_by(order, Source.id))
    return jsonify({"sources": [source_dict(s) for s in items], "pagination": meta})


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/<int:source_id>")
@org_required()
def get_source(slug, domain_id, source_id):
    domain = get_org_domain(domain_id)
    source = _domain_source(domain_id, source_id) if domain else None
    if source is None:
        return jsonify({"error": "Source not found"}), 404
    return jsonify(source_dict(source))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/<int:source_id>", methods=["PATCH"])
@org_required("manage_domains")
def update_source(slug, domain_id, source_id):
    """Classify a source: ``sourceType``, ``notes`` and ``knownSenderId``."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    source = _domain_source(domain_id, source_id)
    if source is None:
        return jsonify({"error": "Source not found"}), 404

    data = request.get_json(silent=True) or {}
    old = {"sourceType": source.source_type, "knownSenderId": source.known_sender_id}

    if "sourceType" in data:
        if data["sourceType"] not in SOURCE_TYPES:
            return jsonify({"error": "Invalid source type"}), 400
        source.source_type = data["sourceType"]
        source.classified_by = current_user.id
        source.classified_at = datetime.now(timezone.utc)

    if "knownSenderId" in data:
        sender_id = data["knownSenderId"]
        if sender_id is None:
            source.known_sender_id = None
            source.is_known_sender = False
        else:
            sender = db.session.get(KnownSender, sender_id)
            org = get_current_org()
            if sender is None or not (sender.is_global or sender.organization_id == org.id):
                return jsonify({"error": "Known sender not found"}), 404
            source.known_sender_id = sender.id
            source.is_known_sender = True

    if "notes" in data:
        source.notes = data["notes"] or None

    db.session.commit()
    log_audit(
        organization_id=domain.organization_id,
        action="source.classify",
        entity_type="source",
        entity_id=source.id,
        old_value=old,
        new_value={"sourceType": source.source_type, "knownSenderId": source.known_sender_id},
    )
    return jsonify(source_dict(source))


# ---------------------------------------------------------------------------
# Enrichment and matching
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/enrich", methods=["POST"])
@org_required("manage_domains")
def enrich(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    data = request.get_json(silent=True) or {}
    return jsonify(enrich_sources(domain.id, source_id=data.get("sourceId")))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/match", methods=["POST"])
@org_required("manage_domains")
def match(slug, domain_id):
    """Match one source (``sourceId``) or every unmatched source of the domain."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    org = get_current_org()
    data = request.get_json(silent=True) or {}

    source_id = data.get("sourceId")
    if source_id is None:
        return jsonify(auto_match_domain_sources(domain.id, org.id))

    source = _domain_source(domain.id, source_id)
    if source is None:
        return jsonify({"error": "Source not found"}), 404
    sender = match_source(source, candidate_senders(org.id))
    if sender is not None:
        source.known_sender_id = sender.id
        source.is_known_sender = True
        db.session.commit()
    return jsonify(
        {"matched": int(sender is not None), "total": 1, "sender": known_sender_summary(sender)}
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/countries")
@org_required()
def countries(slug, domain_id):
    """Sources seen in the last ``?days=`` (default 30) grouped by country."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    if domain.verified_at is None:
        return jsonify({"error": "Domain not verified"}), 403

    days = request.args.get("days", 30, type=int)
    since = datetime.now(timezone.utc) - timedelta(days=days)
    rows = db.session.execute(
        db.select(
            Source.country,
            db.func.count(Source.id),
            db.func.coalesce(db.func.sum(Source.total_messages), 0),
            db.func.coalesce(db.func.sum(Source.pass_count), 0),
            db.func.coalesce(db.func.sum(Source.fail_count), 0),
        )
        .where(Source.domain_id == domain.id, Source.last_seen >= since)
        .group_by(Source.country)
        .order_by(db.func.sum(Source.total_messages).desc())
    ).all()

    keys = ("sourceCount", "totalMessages", "passedMessages", "failedMessages")
    by_country = []
    unknown = None
    totals = dict.fromkeys(keys, 0)
    for country, *values in rows:
        entry = {key: int(value) for key, value in zip(keys, values)}
        if country is None:
            unknown = entry
            continue
        by_country.append({"country": country, **entry})
        for key in keys:
            totals[key] += entry[key]

    return jsonify(
        {"countries": by_country, "totals": totals, "unknownStats": unknown, "period": f"{days} days"}
    )


@bp.route("/orgs/<slug>/domains/<int:domain_id>/sources/<int:source_id>/reports")
@org_required()
def source_reports(slug, domain_id, source_id):
    """The 50 most recent reports that contain records from the source IP."""
    domain = get_org_domain(domain_id)
    source = _domain_source(domain_id, source_id) if domain else None
    if source is None:
        return jsonify({"error": "Source not found"}), 404

    passed_expr = db.case(
        (db.or_(Record.dmarc_dkim == "pass", Record.dmarc_spf == "pass"), Record.count), else_=0
    )
    rows = db.session.execute(
        db.select(
            Report,
            db.func.count(Record.id),
            db.func.coalesce(db.func.sum(Record.count), 0),
            db.func.coalesce(db.func.sum(passed_expr), 0),
        )
        .join(Record, Record.report_id == Report.id)
        .where(Report.domain_id == domain.id, Record.source_ip == source.source_ip)
        .group_by(Report.id)
        .order_by(Report.date_range_begin.desc())
        .limit(50)
    ).all()

    reports = [
        {
            "id": report.id,
            "reportId": report.report_id,
            "orgName": report.org_name,
            "email": report.email,
            "dateRangeBegin": report.date_range_begin.isoformat(),
            "dateRangeEnd": report.date_range_end.isoformat(),
            "policyDomain": report.policy_domain,
            "recordCount": record_count,
            "totalMessages": int(total),
            "passedMessages": int(passed),
            "failedMessages": int(total) - int(passed),
            "passRate": pass_rate(int(passed), int(total)),
        }
        for report, record_count, total, passed in rows
    ]
    return jsonify(
        {
            "source": source_dict(source),
            "knownSender": known_sender_summary(source.known_sender),
            "reports": reports,
        }
    )


@bp.route("/orgs/<slug>/domains/<int:domain_id>/spf-matches")
@org_required()
def spf_record_matches(slug, domain_id):
    """Known senders behind the includes and addresses of the stored SPF record."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    matches = spf_matches(domain.spf_record, candidate_senders(domain.organization_id))
    return jsonify(
        {"matches": [{**m, "sender": known_sender_summary(m["sender"])} for m in matches]}
    )
