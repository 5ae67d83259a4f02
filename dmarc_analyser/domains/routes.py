"""
Domain routes, all under ``/api/orgs/<slug>/domains``.

Any member may read.  Owners, admins and members manage domains; bulk
import and deletion are limited to owners and admins.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import Response, jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.analytics.dashboard import org_domain_overview, org_timeline, tags_by_domain
from dmarc_analyser.analytics.export import export_domain
from dmarc_analyser.analytics.policy import policy_recommendation
from dmarc_analyser.analytics.stats import domain_stats, domain_summary, pass_rate, timeline
from dmarc_analyser.billing.service import BLOCKED_MESSAGES, check_billing_access
from dmarc_analyser.checker.lookups import (
    COMMON_DKIM_SELECTORS,
    get_dmarc_record,
    get_spf_record,
    scan_dkim_selectors,
)
from dmarc_analyser.checker.validation import analyze_record
from dmarc_analyser.domains import bp
from dmarc_analyser.domains.service import (
    MAX_BULK_DOMAINS,
    DnsLookupError,
    VerificationError,
    domain_dict,
    find_domain,
    new_domain,
    refresh_dns,
    verify_domain,
)
from dmarc_analyser.integrations import gemini
from dmarc_analyser.models import Domain, Subdomain
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.dates import parse_iso_datetime
from dmarc_analyser.utils.domain import is_valid_domain, normalize_domain
from dmarc_analyser.utils.roles import has_permission
from dmarc_analyser.utils.tenant import get_current_org, get_current_role, get_org_domain

logger = logging.getLogger(__name__)

_ADMIN_MESSAGE = "Only owners and admins can perform this action"
_STATUS_SELECTORS = 8
_SUBDOMAIN_POLICIES = ("none", "quarantine", "reject")


def _not_found():
    return jsonify({"error": "Domain not found"}), 404


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains")
@org_required()
def list_domains(slug):
    """Every domain of the organization with its 30-day summary."""
    org = get_current_org()
    domains = db.session.execute(
        db.select(Domain).where(Domain.organization_id == org.id).order_by(Domain.domain)
    ).scalars().all()
    now = datetime.now(timezone.utc)
    tags = tags_by_domain([d.id for d in domains])
    return jsonify(
        {
            "domains": [
                {**domain_dict(d), "stats": domain_summary(d.id, now), "tags": tags.get(d.id, [])}
                for d in domains
            ]
        }
    )


@bp.route("/orgs/<slug>/domains", methods=["POST"])
@org_required("manage_domains")
def create_domain(slug):
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = normalize_domain(data.get("domain") or "")
    if not name:
        return jsonify({"error": "Domain is required"}), 400
    if not is_valid_domain(name):
        return jsonify({"error": "Invalid domain format"}), 400

    access = check_billing_access(org)
    if not access["allowed"]:
        return (
            jsonify(
                {
                    "error": BLOCKED_MESSAGES.get(access.get("reason"), "Billing issue detected"),
                    "billingReason": access.get("reason"),
                }
            ),
            402,
        )

    if find_domain(org.id, name) is not None:
        return jsonify({"error": "This domain is already added to your organization"}), 400

    domain = new_domain(org.id, name, data.get("displayName"))
    db.session.commit()
    logger.info("Domain added: %s (org=%s)", domain.domain, org.slug)
    log_audit(
        organization_id=org.id,
        action="domain.create",
        entity_type="domain",
        entity_id=domain.id,
        new_value={"domain": domain.domain, "displayName": domain.display_name},
    )
    return jsonify(domain_dict(domain)), 201


@bp.route("/orgs/<slug>/domains/bulk", methods=["POST"])
@org_required("bulk_import_domains", message=_ADMIN_MESSAGE)
def bulk_create(slug):
    """Add up to 100 domains; existing ones are skipped, invalid ones reported."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    names = data.get("domains")
    if not isinstance(names, list) or not names:
        return jsonify({"error": "No domains provided"}), 400
    if len(names) > MAX_BULK_DOMAINS:
        return jsonify({"error": f"Maximum {MAX_BULK_DOMAINS} domains per bulk import"}), 400

    access = check_billing_access(org)
    if not access["allowed"]:
        return (
            jsonify(
                {
                    "error": BLOCKED_MESSAGES.get(access.get("reason"), "Billing issue detected"),
                    "billingReason": access.get("reason"),
                }
            ),
            402,
        )

    created: list[str] = []
    skipped: list[str] = []
    errors: list[str] = []
    seen: set[str] = set()
    for raw in names:
        name = normalize_domain(raw) if isinstance(raw, str) else ""
        if not name or not is_valid_domain(name):
            errors.append(f"Invalid domain: {raw}")
            continue
        if name in seen or find_domain(org.id, name) is not None:
            skipped.append(name)
            continue
        seen.add(name)
        new_domain(org.id, name)
        created.append(name)
    db.session.commit()

    if created:
        log_audit(
            organization_id=org.id,
            action="domain.bulk_create",
            entity_type="domain",
            new_value={"domains": created},
        )
    return jsonify(
        {
            "success": True,
            "created": len(created),
            "skipped": len(skipped),
            "errors": errors,
            "domains": created,
            "message": f"Created {len(created)} domain(s), skipped {len(skipped)} existing",
        }
    )


@bp.route("/orgs/<slug>/domains/<int:domain_id>")
@org_required()
def get_domain(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    return jsonify({**domain_dict(domain), "stats": domain_summary(domain.id)})


@bp.route("/orgs/<slug>/domains/<int:domain_id>", methods=["PATCH"])
@org_required("manage_domains")
def update_domain(slug, domain_id):
    """Update ``displayName`` and ``isActive``."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    data = request.get_json(silent=True) or {}
    old = {"displayName": domain.display_name, "isActive": domain.is_active}
    if "displayName" in data:
        domain.display_name = (data["displayName"] or "").strip() or None
    if "isActive" in data:
        if not isinstance(data["isActive"], bool):
            return jsonify({"error": "isActive must be a boolean"}), 400
        domain.is_active = data["isActive"]
    db.session.commit()

    log_audit(
        organization_id=domain.organization_id,
        action="domain.update",
        entity_type="domain",
        entity_id=domain.id,
        old_value=old,
        new_value={"displayName": domain.display_name, "isActive": domain.is_active},
    )
    return jsonify(domain_dict(domain))


@bp.route("/orgs/<slug>/domains/<int:domain_id>", methods=["DELETE"])
@org_required("delete_domains", message=_ADMIN_MESSAGE)
def delete_domain(slug, domain_id):
    """Delete the domain and, by cascade, its reports and sources."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    org_id, name = domain.organization_id, domain.domain
    db.session.delete(domain)
    db.session.commit()
    logger.info("Domain deleted: %s (org=%s)", name, org_id)
    log_audit(
        organization_id=org_id,
        action="domain.delete",
        entity_type="domain",
        entity_id=domain_id,
        old_value={"domain": name},
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Verification and DNS
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/verify", methods=["POST"])
@org_required("manage_domains")
def verify(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    try:
        verify_domain(domain, current_user.id)
    except VerificationError as exc:
        return jsonify({"error": str(exc)}), 400

    log_audit(
        organization_id=domain.organization_id,
        action="domain.verify",
        entity_type="domain",
        entity_id=domain.id,
        new_value={"verifiedAt": domain.verified_at.isoformat()},
    )
    return jsonify({"success": True, "domain": domain_dict(domain)})


@bp.route("/orgs/<slug>/domains/<int:domain_id>/dns-status")
@org_required()
def dns_status(slug, domain_id):
    """Live SPF and DMARC lookup with analysis, plus a short DKIM scan."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    spf = analyze_record("spf", get_spf_record(domain.domain))
    dmarc = analyze_record("dmarc", get_dmarc_record(domain.domain))
    scanned = scan_dkim_selectors(domain.domain, COMMON_DKIM_SELECTORS[:_STATUS_SELECTORS])
    found = [p["selector"] for p in scanned if p["valid"]]
    return jsonify(
        {
            "domain": domain.domain,
            "spf": spf,
            "dmarc": dmarc,
            "dkim": {"valid": bool(found), "selectors": found},
        }
    )


@bp.route("/orgs/<slug>/domains/<int:domain_id>/dns-refresh", methods=["POST"])
@org_required("manage_domains")
def dns_refresh(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    try:
        return jsonify(refresh_dns(domain))
    except DnsLookupError as exc:
        return jsonify({"error": f"DNS lookup failed: {exc}"}), 502


@bp.route("/orgs/<slug>/domains/<int:domain_id>/dkim")
@org_required()
def dkim(slug, domain_id):
    """Query every common selector and analyse the keys that were found."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    scanned = scan_dkim_selectors(domain.domain)
    found = [
        {"selector": p["selector"], **analyze_record("dkim", p["record"])}
        for p in scanned
        if p["valid"]
    ]
    return jsonify(
        {
            "domain": domain.domain,
            "selectors": found,
            "checked": len(scanned),
            "checkedAt": datetime.now(timezone.utc).isoformat(),
        }
    )


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/stats")
@org_required()
def org_domain_stats(slug):
    """Seven-day overview of every domain in the organization."""
    return jsonify(org_domain_overview(get_current_org().id))


@bp.route("/orgs/<slug>/dashboard/timeline")
@org_required()
def dashboard_timeline(slug):
    days = request.args.get("days", 30, type=int)
    if days < 1:
        return jsonify({"error": "days must be positive"}), 400
    return jsonify(org_timeline(get_current_org().id, days=days))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/stats")
@org_required()
def stats(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    return jsonify(domain_stats(domain.id, domain.organization_id))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/timeline")
@org_required()
def domain_timeline(slug, domain_id):
    """Daily totals for ``?days=`` (default 30) or ``?startDate=&endDate=``."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    try:
        start = parse_iso_datetime(request.args.get("startDate"))
        end = parse_iso_datetime(request.args.get("endDate"))
    except ValueError:
        return jsonify({"error": "Invalid date format"}), 400
    days = request.args.get("days", 30, type=int)
    if days < 1:
        return jsonify({"error": "days must be positive"}), 400
    return jsonify(timeline(domain.id, days=days, start=start, end=end))


def _subdomain_dict(s: Subdomain) -> dict:
    return {
        "id": s.id,
        "subdomain": s.subdomain,
        "policyOverride": s.policy_override,
        "messageCount": s.message_count,
        "passCount": s.pass_count,
        "failCount": s.fail_count,
        "passRate": pass_rate(s.pass_count, s.message_count),
        "firstSeen": s.first_seen.isoformat() if s.first_seen else None,
        "lastSeen": s.last_seen.isoformat() if s.last_seen else None,
    }


@bp.route("/orgs/<slug>/domains/<int:domain_id>/subdomains")
@org_required()
def subdomains(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    rows = db.session.execute(
        db.select(Subdomain)
        .where(Subdomain.domain_id == domain.id)
        .order_by(Subdomain.message_count.desc(), Subdomain.subdomain)
    ).scalars().all()
    return jsonify({"subdomains": [_subdomain_dict(s) for s in rows]})


@bp.route("/orgs/<slug>/domains/<int:domain_id>/subdomains/<int:subdomain_id>", methods=["PATCH"])
@org_required("manage_domains")
def update_subdomain(slug, domain_id, subdomain_id):
    """Set ``policyOverride`` to none, quarantine, reject or null."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    subdomain = db.session.get(Subdomain, subdomain_id)
    if subdomain is None or subdomain.domain_id != domain.id:
        return jsonify({"error": "Subdomain not found"}), 404

    data = request.get_json(silent=True) or {}
    override = data.get("policyOverride")
    if override is not None and override not in _SUBDOMAIN_POLICIES:
        return (
            jsonify({"error": "Invalid policy override value. Must be one of: none, quarantine, reject, or null"}),
            400,
        )
    subdomain.policy_override = override
    db.session.commit()
    return jsonify(_subdomain_dict(subdomain))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/export")
@org_required("export_data")
def export(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    try:
        date_from = parse_iso_datetime(request.args.get("dateFrom"))
        date_to = parse_iso_datetime(request.args.get("dateTo"))
        filename, content = export_domain(domain, request.args.get("type", "reports"), date_from, date_to)
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    log_audit(
        organization_id=domain.organization_id,
        action="domain.export",
        entity_type="domain",
        entity_id=domain.id,
        new_value={"type": request.args.get("type", "reports")},
    )
    return Response(
        content,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/domains/<int:domain_id>/policy-recommendation")
@org_required()
def policy(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()
    return jsonify(policy_recommendation(domain))


@bp.route("/orgs/<slug>/domains/<int:domain_id>/ai-recommendation")
@org_required()
def ai_recommendation(slug, domain_id):
    """Return the cached AI recommendation, or whether one can be generated."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    integration = gemini.get_integration(domain.organization_id)
    if integration is None or not integration.gemini_api_key:
        return jsonify({"available": False, "reason": "not_configured"})
    if not integration.is_enabled:
        return jsonify({"available": False, "reason": "disabled"})

    now = datetime.now(timezone.utc)
    context_hash = gemini.hash_context(gemini.build_context(domain, now))
    cached = gemini.get_cached(domain.id, context_hash, now)
    if cached is not None:
        return jsonify({"available": True, "recommendation": cached, "source": "cache"})

    limit = gemini.check_rate_limit(integration, now)
    cooldown = gemini.cooldown_ends_at(domain.id, now)
    return jsonify(
        {
            "available": True,
            "recommendation": None,
            "source": "none",
            "canGenerate": limit.allowed and cooldown is None and has_permission(get_current_role(), "manage_domains"),
            "rateLimitRemaining": limit.remaining,
            "rateLimitResetAt": limit.reset_at.isoformat() if limit.reset_at else None,
            "cooldownEndsAt": cooldown.isoformat() if cooldown else None,
        }
    )


@bp.route("/orgs/<slug>/domains/<int:domain_id>/ai-recommendation", methods=["POST"])
@org_required("manage_domains")
def generate_ai_recommendation(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _not_found()

    integration = gemini.get_integration(domain.organization_id)
    api_key = gemini.api_key_for(integration)
    if not api_key:
        return jsonify({"error": "AI not configured"}), 400
    if not integration.is_enabled:
        return jsonify({"error": "AI is disabled"}), 400

    now = datetime.now(timezone.utc)
    cooldown = gemini.cooldown_ends_at(domain.id, now)
    if cooldown is not None:
        return jsonify({"error": "Cooldown active", "cooldownEndsAt": cooldown.isoformat()}), 429
    limit = gemini.check_rate_limit(integration, now)
    if not limit.allowed:
        reset_at = limit.reset_at.isoformat() if limit.reset_at else None
        return jsonify({"error": "Daily limit reached", "resetAt": reset_at}), 429

    context = gemini.build_context(domain, now)
    try:
        recommendation = gemini.call_gemini(api_key, context)
    except gemini.AiError as exc:
        gemini.record_error(integration, str(exc))
        logger.warning("AI recommendation failed for %s: %s", domain.domain, exc)
        return jsonify({"error": str(exc)}), 500

    gemini.record_usage(integration, now)
    gemini.store_cached(domain.id, recommendation, gemini.hash_context(context), now)
    return jsonify(
        {
            "recommendation": {
                **recommendation,
                "cached": False,
                "generatedAt": now.isoformat(),
                "expiresAt": (now + gemini.CACHE_TTL).isoformat(),
            },
            "source": "generated",
        }
    )
