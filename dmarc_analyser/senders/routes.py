"""
Known sender routes.

Every member sees the global catalogue plus their organization's own
entries.  Only owners and admins add, edit, delete or SPF-resolve the
organization's entries; global entries are read-only.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from datetime import datetime, timezone
from typing import Any

from flask import jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.checker.spf_resolver import resolve_spf_include
from dmarc_analyser.models import KnownSender
from dmarc_analyser.senders import bp
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import api_login_required, org_required
from dmarc_analyser.utils.tenant import get_current_org

logger = logging.getLogger(__name__)

_EDITABLE = ("name", "description", "category", "logoUrl", "website", "spfInclude")
_COLUMNS = {
    "name": "name",
    "description": "description",
    "category": "category",
    "logoUrl": "logo_url",
    "website": "website",
    "spfInclude": "spf_include",
}


def sender_dict(sender: KnownSender) -> dict[str, Any]:
    return {
        "id": sender.id,
        "name": sender.name,
        "description": sender.description,
        "category": sender.category,
        "logoUrl": sender.logo_url,
        "website": sender.website,
        "ipRanges": sender.get_ip_ranges(),
        "dkimDomains": sender.get_dkim_domains(),
        "spfInclude": sender.spf_include,
        "spfResolvedAt": sender.spf_resolved_at.isoformat() if sender.spf_resolved_at else None,
        "isGlobal": sender.is_global,
        "organizationId": sender.organization_id,
    }


def _clean_ranges(value: Any) -> tuple[list[str] | None, str | None]:
    """Validate a list of CIDRs; bare addresses become host networks."""
    if value is None:
        return [], None
    if not isinstance(value, list):
        return None, "ipRanges must be an array"
    ranges = []
    for item in value:
        try:
            ranges.append(str(ipaddress.ip_network(str(item).strip(), strict=False)))
        except ValueError:
            return None, f"Invalid IP range: {item}"
    return ranges, None


def _clean_domains(value: Any) -> tuple[list[str] | None, str | None]:
    if value is None:
        return [], None
    if not isinstance(value, list) or not all(isinstance(d, str) for d in value):
        return None, "dkimDomains must be an array of strings"
    return [d.strip().lower() for d in value if d.strip()], None


def _org_sender(sender_id: int) -> tuple[KnownSender | None, tuple | None]:
    """Return the sender if the current organization owns it, else an error response."""
    sender = db.session.get(KnownSender, sender_id)
    org = get_current_org()
    if sender is None or not (sender.is_global or sender.organization_id == org.id):
        return None, (jsonify({"error": "Known sender not found"}), 404)
    if sender.is_global:
        return None, (jsonify({"error": "Cannot modify this known sender"}), 403)
    return sender, None


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/known-senders")
@org_required()
def list_senders(slug):
    org = get_current_org()
    senders = db.session.execute(
        db.select(KnownSender)
        .where(db.or_(KnownSender.is_global.is_(True), KnownSender.organization_id == org.id))
        .order_by(KnownSender.is_global.desc(), KnownSender.name)
    ).scalars().all()
    return jsonify(
        {
            "global": [sender_dict(s) for s in senders if s.is_global],
            "organization": [sender_dict(s) for s in senders if not s.is_global],
        }
    )


@bp.route("/orgs/<slug>/known-senders", methods=["POST"])
@org_required("manage_settings")
def create_sender(slug):
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    category = (data.get("category") or "").strip()
    if not name or not category:
        return jsonify({"error": "Name and category are required"}), 400

    ranges, error = _clean_ranges(data.get("ipRanges"))
    if error:
        return jsonify({"error": error}), 400
    dkim_domains, error = _clean_domains(data.get("dkimDomains"))
    if error:
        return jsonify({"error": error}), 400

    sender = KnownSender(
        name=name,
        category=category,
        description=data.get("description") or None,
        logo_url=data.get("logoUrl") or None,
        website=data.get("website") or None,
        spf_include=(data.get("spfInclude") or "").strip() or None,
        ip_ranges=json.dumps(ranges),
        dkim_domains=json.dumps(dkim_domains),
        is_global=False,
        organization_id=org.id,
        created_by=current_user.id,
    )
    db.session.add(sender)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="known_sender.create",
        entity_type="known_sender",
        entity_id=sender.id,
        new_value={"name": sender.name, "category": sender.category},
    )
    return jsonify(sender_dict(sender)), 201


@bp.route("/orgs/<slug>/known-senders/<int:sender_id>", methods=["PATCH"])
@org_required("manage_settings")
def update_sender(slug, sender_id):
    sender, error_response = _org_sender(sender_id)
    if error_response:
        return error_response

    data = request.get_json(silent=True) or {}
    for key in _EDITABLE:
        if key in data:
            value = data[key]
            if key in ("name", "category") and not (value or "").strip():
                return jsonify({"error": f"{key} cannot be empty"}), 400
            setattr(sender, _COLUMNS[key], (value or "").strip() or None)

    if "ipRanges" in data:
        ranges, error = _clean_ranges(data["ipRanges"])
        if error:
            return jsonify({"error": error}), 400
        sender.ip_ranges = json.dumps(ranges)
    if "dkimDomains" in data:
        dkim_domains, error = _clean_domains(data["dkimDomains"])
        if error:
            return jsonify({"error": error}), 400
        sender.dkim_domains = json.dumps(dkim_domains)

    db.session.commit()
    log_audit(
        organization_id=sender.organization_id,
        action="known_sender.update",
        entity_type="known_sender",
        entity_id=sender.id,
        new_value={k: data[k] for k in data if k in _EDITABLE},
    )
    return jsonify(sender_dict(sender))


@bp.route("/orgs/<slug>/known-senders/<int:sender_id>", methods=["DELETE"])
@org_required("manage_settings")
def delete_sender(slug, sender_id):
    sender, error_response = _org_sender(sender_id)
    if error_response:
        return error_response
    org_id, name = sender.organization_id, sender.name
    db.session.delete(sender)
    db.session.commit()
    log_audit(
        organization_id=org_id,
        action="known_sender.delete",
        entity_type="known_sender",
        entity_id=sender_id,
        old_value={"name": name},
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# SPF resolution
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/known-senders/<int:sender_id>/resolve-spf", methods=["POST"])
@org_required("manage_settings")
def resolve_spf(slug, sender_id):
    """Replace the sender's IP ranges with those its SPF include authorises."""
    sender, error_response = _org_sender(sender_id)
    if error_response:
        return error_response
    if not sender.spf_include:
        return jsonify({"error": "No SPF include configured for this sender"}), 400

    result = resolve_spf_include(sender.spf_include)
    if result.errors and not result.ip_ranges:
        return jsonify({"error": result.errors[0], "errors": result.errors}), 400

    sender.ip_ranges = json.dumps(result.ip_ranges)
    sender.spf_resolved_at = datetime.now(timezone.utc)
    db.session.commit()
    logger.info("Resolved SPF for sender %s: %d ranges", sender.id, len(result.ip_ranges))
    return jsonify({"sender": sender_dict(sender), "resolved": result.to_dict()})


@bp.route("/spf/preview", methods=["POST"])
@api_login_required
def preview_spf():
    """Resolve an include without saving anything."""
    data = request.get_json(silent=True) or {}
    include = (data.get("include") or data.get("spfInclude") or "").strip()
    if not include:
        return jsonify({"error": "SPF include domain is required"}), 400
    result = resolve_spf_include(include)
    return jsonify({"spfInclude": include, **result.to_dict(), "success": bool(result.ip_ranges)})
