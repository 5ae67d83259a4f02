"""
Alert and alert-rule routes.

Any member may read and dismiss alerts.  Deleting alerts needs domain
management rights; alert rules need ``manage_alert_rules``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from flask import jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.alerts import bp
from dmarc_analyser.alerts.service import ALERT_TYPES, SEVERITIES
from dmarc_analyser.models import Alert, AlertRule
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.pagination import paginate
from dmarc_analyser.utils.roles import has_permission
from dmarc_analyser.utils.tenant import get_current_org, get_current_role, get_org_domain

logger = logging.getLogger(__name__)

BULK_ACTIONS: tuple[str, ...] = ("read", "dismiss", "delete")


def alert_dict(alert: Alert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "domainId": alert.domain_id,
        "domain": alert.domain.domain if alert.domain else None,
        "type": alert.type,
        "severity": alert.severity,
        "title": alert.title,
        "message": alert.message,
        "metadata": alert.get_metadata(),
        "isRead": alert.is_read,
        "readAt": alert.read_at.isoformat() if alert.read_at else None,
        "isDismissed": alert.is_dismissed,
        "emailSent": alert.email_sent,
        "webhookSent": alert.webhook_sent,
        "createdAt": alert.created_at.isoformat() if alert.created_at else None,
    }


def _rule_dict(rule: AlertRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "name": rule.name,
        "type": rule.type,
        "domainId": rule.domain_id,
        "isEnabled": rule.is_enabled,
        "threshold": rule.get_threshold(),
        "notifyEmail": rule.notify_email,
        "notifyWebhook": rule.notify_webhook,
        "createdAt": rule.created_at.isoformat() if rule.created_at else None,
        "updatedAt": rule.updated_at.isoformat() if rule.updated_at else None,
    }


def _org_alert(alert_id: int) -> Alert | None:
    alert = db.session.get(Alert, alert_id)
    if alert is None or alert.organization_id != get_current_org().id:
        return None
    return alert


def _org_rule(rule_id: int) -> AlertRule | None:
    rule = db.session.get(AlertRule, rule_id)
    if rule is None or rule.organization_id != get_current_org().id:
        return None
    return rule


def _mark_read(alert: Alert, now: datetime) -> None:
    if not alert.is_read:
        alert.is_read = True
        alert.read_by = current_user.id
        alert.read_at = now


def _unread_count(organization_id: int) -> int:
    return db.session.execute(
        db.select(db.func.count(Alert.id)).where(
            Alert.organization_id == organization_id,
            Alert.is_read.is_(False),
            Alert.is_dismissed.is_(False),
        )
    ).scalar_one()


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@bp.route("/orgs/<slug>/alerts")
@org_required()
def list_alerts(slug):
    """Alerts newest first.

    Query args: ``unread=true``, ``severity``, ``type``, ``domainId`` and
    ``includeDismissed=true``.
    """
    org = get_current_org()
    query = db.select(Alert).where(Alert.organization_id == org.id)

    if request.args.get("includeDismissed") != "true":
        query = query.where(Alert.is_dismissed.is_(False))
    if request.args.get("unread") == "true":
        query = query.where(Alert.is_read.is_(False))
    severity = request.args.get("severity")
    if severity:
        if severity not in SEVERITIES:
            return jsonify({"error": "Invalid severity"}), 400
        query = query.where(Alert.severity == severity)
    alert_type = request.args.get("type")
    if alert_type:
        query = query.where(Alert.type == alert_type)
    domain_id = request.args.get("domainId", type=int)
    if domain_id is not None:
        query = query.where(Alert.domain_id == domain_id)

    items, meta = paginate(query.order_by(Alert.created_at.desc(), Alert.id.desc()))
    return jsonify(
        {
            "alerts": [alert_dict(a) for a in items],
            "unreadCount": _unread_count(org.id),
            "pagination": meta,
        }
    )


@bp.route("/orgs/<slug>/alerts/<int:alert_id>", methods=["PATCH"])
@org_required()
def update_alert(slug, alert_id):
    """Mark an alert read/unread (``isRead``) or dismissed (``isDismissed``)."""
    alert = _org_alert(alert_id)
    if alert is None:
        return jsonify({"error": "Alert not found"}), 404
    data = request.get_json(silent=True) or {}
    now = datetime.now(timezone.utc)

    if data.get("isRead") is True:
        _mark_read(alert, now)
    elif data.get("isRead") is False:
        alert.is_read = False
        alert.read_by = None
        alert.read_at = None
    if isinstance(data.get("isDismissed"), bool):
        alert.is_dismissed = data["isDismissed"]
        if alert.is_dismissed:
            _mark_read(alert, now)

    db.session.commit()
    return jsonify(alert_dict(alert))


@bp.route("/orgs/<slug>/alerts/<int:alert_id>", methods=["DELETE"])
@org_required("manage_domains")
def delete_alert(slug, alert_id):
    alert = _org_alert(alert_id)
    if alert is None:
        return jsonify({"error": "Alert not found"}), 404
    db.session.delete(alert)
    db.session.commit()
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/alerts/bulk", methods=["POST"])
@org_required()
def bulk_alerts(slug):
    """Apply ``action`` (read, dismiss or delete) to the alert ``ids``."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    action = data.get("action")
    ids = data.get("ids")
    if action not in BULK_ACTIONS:
        return jsonify({"error": "Invalid action. Must be: read, dismiss, or delete"}), 400
    if not isinstance(ids, list) or not ids or not all(isinstance(i, int) for i in ids):
        return jsonify({"error": "ids must be a non-empty list of alert ids"}), 400
    if action == "delete" and not has_permission(get_current_role(), "manage_domains"):
        return jsonify({"error": "Insufficient permissions"}), 403

    alerts = db.session.execute(
        db.select(Alert).where(Alert.organization_id == org.id, Alert.id.in_(ids))
    ).scalars().all()
    now = datetime.now(timezone.utc)
    for alert in alerts:
        if action == "delete":
            db.session.delete(alert)
        elif action == "dismiss":
            alert.is_dismissed = True
            _mark_read(alert, now)
        else:
            _mark_read(alert, now)
    db.session.commit()
    return jsonify({"success": True, "updated": len(alerts)})


@bp.route("/orgs/<slug>/alerts/read-all", methods=["POST"])
@org_required()
def read_all_alerts(slug):
    org = get_current_org()
    alerts = db.session.execute(
        db.select(Alert).where(Alert.organization_id == org.id, Alert.is_read.is_(False))
    ).scalars().all()
    now = datetime.now(timezone.utc)
    for alert in alerts:
        _mark_read(alert, now)
    db.session.commit()
    return jsonify({"success": True, "updated": len(alerts)})


# ---------------------------------------------------------------------------
# Alert rules
# ---------------------------------------------------------------------------


def _apply_rule_fields(rule: AlertRule, data: dict[str, Any]) -> str | None:
    """Copy validated fields from *data* onto *rule*; returns an error message."""
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return "Name is required"
        rule.name = name
    if "type" in data:
        if data["type"] not in ALERT_TYPES:
            return "Invalid alert type"
        rule.type = data["type"]
    if "domainId" in data:
        domain_id = data["domainId"]
        if domain_id is not None and (not isinstance(domain_id, int) or get_org_domain(domain_id) is None):
            return "Domain not found"
        rule.domain_id = domain_id
    if "threshold" in data:
        threshold = data["threshold"]
        if threshold is not None and not isinstance(threshold, dict):
            return "threshold must be an object"
        rule.threshold = json.dumps(threshold) if threshold else None
    for key, attr in (("isEnabled", "is_enabled"), ("notifyEmail", "notify_email"), ("notifyWebhook", "notify_webhook")):
        if key in data:
            setattr(rule, attr, bool(data[key]))
    return None


@bp.route("/orgs/<slug>/alert-rules")
@org_required()
def list_alert_rules(slug):
    rules = db.session.execute(
        db.select(AlertRule)
        .where(AlertRule.organization_id == get_current_org().id)
        .order_by(AlertRule.created_at)
    ).scalars()
    return jsonify([_rule_dict(r) for r in rules])


@bp.route("/orgs/<slug>/alert-rules", methods=["POST"])
@org_required("manage_alert_rules")
def create_alert_rule(slug):
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    if not (data.get("name") or "").strip() or not data.get("type"):
        return jsonify({"error": "Name and type are required"}), 400

    rule = AlertRule(organization_id=org.id, created_by=current_user.id, name="", type="")
    error = _apply_rule_fields(rule, data)
    if error:
        return jsonify({"error": error}), 400
    db.session.add(rule)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="alert_rule.create",
        entity_type="alert_rule",
        entity_id=rule.id,
        new_value={"name": rule.name, "type": rule.type},
    )
    return jsonify(_rule_dict(rule)), 201


@bp.route("/orgs/<slug>/alert-rules/<int:rule_id>", methods=["PATCH"])
@org_required("manage_alert_rules")
def update_alert_rule(slug, rule_id):
    rule = _org_rule(rule_id)
    if rule is None:
        return jsonify({"error": "Alert rule not found"}), 404
    old = _rule_dict(rule)
    error = _apply_rule_fields(rule, request.get_json(silent=True) or {})
    if error:
        db.session.rollback()
        return jsonify({"error": error}), 400
    db.session.commit()
    log_audit(
        organization_id=rule.organization_id,
        action="alert_rule.update",
        entity_type="alert_rule",
        entity_id=rule.id,
        old_value=old,
        new_value=_rule_dict(rule),
    )
    return jsonify(_rule_dict(rule))


@bp.route("/orgs/<slug>/alert-rules/<int:rule_id>", methods=["DELETE"])
@org_required("manage_alert_rules")
def delete_alert_rule(slug, rule_id):
    rule = _org_rule(rule_id)
    if rule is None:
        return jsonify({"error": "Alert rule not found"}), 404
    snapshot = {"name": rule.name, "type": rule.type}
    db.session.delete(rule)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="alert_rule.delete",
        entity_type="alert_rule",
        entity_id=rule_id,
        old_value=snapshot,
    )
    return jsonify({"success": True})
