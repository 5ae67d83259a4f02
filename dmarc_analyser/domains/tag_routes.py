"""
Domain tag routes: the organization's tag list under ``/api/orgs/<slug>/tags``
and the tags attached to one domain under ``.../domains/<id>/tags``.

Any member may read; owners, admins and members manage tags.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from flask import jsonify, request

from dmarc_analyser import db
from dmarc_analyser.analytics.dashboard import tags_by_domain
from dmarc_analyser.domains import bp
from dmarc_analyser.models import DomainTag, DomainTagAssignment
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.tenant import get_current_org, get_org_domain

logger = logging.getLogger(__name__)

MAX_TAG_NAME = 50
DEFAULT_TAG_COLOR = "#6b7280"
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def tag_dict(tag: DomainTag) -> dict[str, Any]:
    return {"id": tag.id, "name": tag.name, "color": tag.color}


def _org_tag(tag_id: Any) -> DomainTag | None:
    if not isinstance(tag_id, int) or isinstance(tag_id, bool):
        return None
    tag = db.session.get(DomainTag, tag_id)
    if tag is None or tag.organization_id != get_current_org().id:
        return None
    return tag


def _name_taken(organization_id: int, name: str, exclude_id: int | None = None) -> bool:
    query = db.select(DomainTag.id).where(DomainTag.organization_id == organization_id, DomainTag.name == name)
    if exclude_id is not None:
        query = query.where(DomainTag.id != exclude_id)
    return db.session.execute(query).first() is not None


# ---------------------------------------------------------------------------
# Organization tags
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/tags")
@org_required()
def list_tags(slug):
    org = get_current_org()
    tags = db.session.execute(
        db.select(DomainTag).where(DomainTag.organization_id == org.id).order_by(DomainTag.name)
    ).scalars()
    return jsonify({"tags": [tag_dict(t) for t in tags]})


@bp.route("/orgs/<slug>/tags", methods=["POST"])
@org_required("manage_domains")
def create_tag(slug):
    """Create a tag; an invalid or missing ``color`` falls back to grey."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        return jsonify({"error": "Tag name is required"}), 400
    name = name.strip()
    if len(name) > MAX_TAG_NAME:
        return jsonify({"error": f"Tag name must be {MAX_TAG_NAME} characters or less"}), 400
    color = data.get("color")
    if not isinstance(color, str) or not _COLOR_RE.match(color):
        color = DEFAULT_TAG_COLOR
    if _name_taken(org.id, name):
        return jsonify({"error": "A tag with this name already exists"}), 409

    tag = DomainTag(organization_id=org.id, name=name, color=color)
    db.session.add(tag)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="tag.create",
        entity_type="tag",
        entity_id=tag.id,
        new_value=tag_dict(tag),
    )
    return jsonify(tag_dict(tag)), 201


@bp.route("/orgs/<slug>/tags/<int:tag_id>", methods=["PATCH"])
@org_required("manage_domains")
def update_tag(slug, tag_id):
    tag = _org_tag(tag_id)
    if tag is None:
        return jsonify({"error": "Tag not found"}), 404

    data = request.get_json(silent=True) or {}
    changes: dict[str, str] = {}
    name = data.get("name")
    if isinstance(name, str) and name.strip():
        name = name.strip()
        if len(name) > MAX_TAG_NAME:
            return jsonify({"error": f"Tag name must be {MAX_TAG_NAME} characters or less"}), 400
        if _name_taken(tag.organization_id, name, exclude_id=tag.id):
            return jsonify({"error": "A tag with this name already exists"}), 409
        changes["name"] = name
    color = data.get("color")
    if isinstance(color, str) and _COLOR_RE.match(color):
        changes["color"] = color
    if not changes:
        return jsonify({"error": "No valid fields to update"}), 400

    old = tag_dict(tag)
    for field, value in changes.items():
        setattr(tag, field, value)
    db.session.commit()
    log_audit(
        organization_id=tag.organization_id,
        action="tag.update",
        entity_type="tag",
        entity_id=tag.id,
        old_value=old,
        new_value=tag_dict(tag),
    )
    return jsonify(tag_dict(tag))


@bp.route("/orgs/<slug>/tags/<int:tag_id>", methods=["DELETE"])
@org_required("manage_domains")
def delete_tag(slug, tag_id):
    """Delete a tag; its domain assignments go with it."""
    tag = _org_tag(tag_id)
    if tag is None:
        return jsonify({"error": "Tag not found"}), 404
    org_id, old = tag.organization_id, tag_dict(tag)
    db.session.execute(db.delete(DomainTagAssignment).where(DomainTagAssignment.tag_id == tag.id))
    db.session.delete(tag)
    db.session.commit()
    log_audit(organization_id=org_id, action="tag.delete", entity_type="tag", entity_id=tag_id, old_value=old)
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Domain assignments
# ---------------------------------------------------------------------------


def _domain_not_found():
    return jsonify({"error": "Domain not found"}), 404


@bp.route("/orgs/<slug>/domains/<int:domain_id>/tags")
@org_required()
def domain_tags(slug, domain_id):
    domain = get_org_domain(domain_id)
    if domain is None:
        return _domain_not_found()
    return jsonify({"tags": tags_by_domain([domain.id]).get(domain.id, [])})


@bp.route("/orgs/<slug>/domains/<int:domain_id>/tags", methods=["POST"])
@org_required("manage_domains")
def add_domain_tag(slug, domain_id):
    """Attach one tag (``{"tagId": ...}``) to the domain."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _domain_not_found()
    data = request.get_json(silent=True) or {}
    if data.get("tagId") is None:
        return jsonify({"error": "Tag ID is required"}), 400
    tag = _org_tag(data["tagId"])
    if tag is None:
        return jsonify({"error": "Tag not found"}), 404

    existing = db.session.execute(
        db.select(DomainTagAssignment.id).where(
            DomainTagAssignment.domain_id == domain.id, DomainTagAssignment.tag_id == tag.id
        )
    ).first()
    if existing is not None:
        return jsonify({"error": "Tag already assigned to this domain"}), 409

    db.session.add(DomainTagAssignment(domain_id=domain.id, tag_id=tag.id))
    db.session.commit()
    logger.info("Tag %r added to %s", tag.name, domain.domain)
    return jsonify({"success": True}), 201


@bp.route("/orgs/<slug>/domains/<int:domain_id>/tags", methods=["PUT"])
@org_required("manage_domains")
def replace_domain_tags(slug, domain_id):
    """Replace every tag of the domain with ``tagIds``."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _domain_not_found()
    data = request.get_json(silent=True) or {}
    tag_ids = data.get("tagIds")
    if not isinstance(tag_ids, list):
        return jsonify({"error": "tagIds must be an array"}), 400

    tags = [_org_tag(tag_id) for tag_id in dict.fromkeys(tag_ids)]
    if any(tag is None for tag in tags):
        return jsonify({"error": "One or more tags not found"}), 400

    db.session.execute(db.delete(DomainTagAssignment).where(DomainTagAssignment.domain_id == domain.id))
    for tag in tags:
        db.session.add(DomainTagAssignment(domain_id=domain.id, tag_id=tag.id))
    db.session.commit()
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/domains/<int:domain_id>/tags", methods=["DELETE"])
@org_required("manage_domains")
def remove_domain_tag(slug, domain_id):
    """Detach ``?tagId=`` from the domain; detaching an unassigned tag is a no-op."""
    domain = get_org_domain(domain_id)
    if domain is None:
        return _domain_not_found()
    tag_id = request.args.get("tagId", type=int)
    if tag_id is None:
        return jsonify({"error": "Tag ID is required"}), 400
    db.session.execute(
        db.delete(DomainTagAssignment).where(
            DomainTagAssignment.domain_id == domain.id, DomainTagAssignment.tag_id == tag_id
        )
    )
    db.session.commit()
    return jsonify({"success": True})
