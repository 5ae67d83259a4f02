"""
Programmatic ``/api/v1`` endpoints authenticated by organization API keys.

Usage:
    curl -H "Authorization: Bearer dmarc_..." https://host/api/v1/domains
"""

from __future__ import annotations

import logging

from flask import g, jsonify, request

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import domain_summary
from dmarc_analyser.api import bp
from dmarc_analyser.billing.service import BLOCKED_MESSAGES, check_billing_access
from dmarc_analyser.domains.service import domain_dict, find_domain, new_domain
from dmarc_analyser.models import Domain, Report, Source
from dmarc_analyser.reports.routes import report_dict
from dmarc_analyser.sources.routes import source_dict
from dmarc_analyser.utils.api_keys import api_key_required
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.domain import is_valid_domain, normalize_domain
from dmarc_analyser.utils.pagination import paginate

logger = logging.getLogger(__name__)


def _key_domain(domain_id: int) -> Domain | None:
    domain = db.session.get(Domain, domain_id)
    if domain is None or domain.organization_id != g.api_key.organization_id:
        return None
    return domain


@bp.route("/v1/domains")
@api_key_required("read:domains")
def v1_domains():
    domains = db.session.execute(
        db.select(Domain)
        .where(Domain.organization_id == g.api_key.organization_id)
        .order_by(Domain.domain)
    ).scalars().all()
    return jsonify({"domains": [{**domain_dict(d), "stats": domain_summary(d.id)} for d in domains]})


@bp.route("/v1/domains/<int:domain_id>")
@api_key_required("read:domains")
def v1_domain(domain_id: int):
    domain = _key_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    return jsonify({**domain_dict(domain), "stats": domain_summary(domain.id)})


@bp.route("/v1/domains", methods=["POST"])
@api_key_required("write:domains")
def v1_create_domain():
    org = g.api_key.organization
    data = request.get_json(silent=True) or {}
    name = normalize_domain(data.get("domain") or "")
    if not name:
        return jsonify({"error": "Domain is required"}), 400
    if not is_valid_domain(name):
        return jsonify({"error": "Invalid domain format"}), 400

    access = check_billing_access(org)
    if not access["allowed"]:
        message = BLOCKED_MESSAGES.get(access.get("reason"), "Billing issue detected")
        return jsonify({"error": message, "billingReason": access.get("reason")}), 402
    if find_domain(org.id, name) is not None:
        return jsonify({"error": "This domain is already added to your organization"}), 400

    domain = new_domain(org.id, name, data.get("displayName"))
    db.session.commit()
    logger.info("Domain added via API key %s: %s", g.api_key.key_prefix, name)
    log_audit(
        organization_id=org.id,
        action="domain.create",
        entity_type="domain",
        entity_id=domain.id,
        new_value={"domain": domain.domain, "apiKey": g.api_key.key_prefix},
    )
    return jsonify(domain_dict(domain)), 201


@bp.route("/v1/domains/<int:domain_id>/reports")
@api_key_required("read:reports")
def v1_reports(domain_id: int):
    domain = _key_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    items, meta = paginate(
        db.select(Report).where(Report.domain_id == domain.id).order_by(Report.date_range_begin.desc())
    )
    return jsonify({"reports": [report_dict(r) for r in items], "pagination": meta})


@bp.route("/v1/domains/<int:domain_id>/sources")
@api_key_required("read:sources")
def v1_sources(domain_id: int):
    domain = _key_domain(domain_id)
    if domain is None:
        return jsonify({"error": "Domain not found"}), 404
    items, meta = paginate(
        db.select(Source).where(Source.domain_id == domain.id).order_by(Source.total_messages.desc(), Source.id)
    )
    return jsonify({"sources": [source_dict(s) for s in items], "pagination": meta})
