"""
Organization settings routes: API keys, webhooks, scheduled reports and the
Gemini AI integration.
"""

from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from flask import jsonify, request
from flask_login import current_user

from dmarc_analyser import db
from dmarc_analyser.alerts.scheduled import (
    FREQUENCIES,
    calculate_next_run_at,
    invalid_recipients,
    is_valid_timezone,
    schedule_description,
    send_scheduled_report,
)
from dmarc_analyser.alerts.webhooks import (
    MAX_FAILURES,
    WEBHOOK_EVENTS,
    WEBHOOK_TYPES,
    build_test_payload,
    send_webhook,
)
from dmarc_analyser.integrations import gemini
from dmarc_analyser.models import ApiKey, AiIntegration, Domain, ScheduledReport, Webhook, as_utc
from dmarc_analyser.orgs import bp
from dmarc_analyser.utils.api_keys import (
    API_KEY_SCOPES,
    EXPIRY_OPTIONS,
    expiry_from_option,
    generate_api_key,
    hash_api_key,
    key_prefix,
)
from dmarc_analyser.utils.audit import log_audit
from dmarc_analyser.utils.auth import org_required
from dmarc_analyser.utils.crypto import encrypt_secret, mask_secret
from dmarc_analyser.utils.tenant import get_current_org

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _owned(model, object_id: int):
    obj = db.session.get(model, object_id)
    if obj is None or obj.organization_id != get_current_org().id:
        return None
    return obj


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def _api_key_dict(api_key: ApiKey) -> dict[str, Any]:
    return {
        "id": api_key.id,
        "name": api_key.name,
        "keyPrefix": api_key.key_prefix,
        "scopes": api_key.get_scopes(),
        "expiresAt": _iso(api_key.expires_at),
        "lastUsedAt": _iso(api_key.last_used_at),
        "createdAt": _iso(api_key.created_at),
    }


@bp.route("/orgs/<slug>/api-keys", methods=["GET"])
@org_required("manage_api_keys", message="Organization not found or insufficient permissions")
def list_api_keys(slug):
    keys = db.session.execute(
        db.select(ApiKey)
        .where(ApiKey.organization_id == get_current_org().id)
        .order_by(ApiKey.created_at.desc())
    ).scalars()
    return jsonify([_api_key_dict(k) for k in keys])


@bp.route("/orgs/<slug>/api-keys", methods=["POST"])
@org_required("manage_api_keys", message="Organization not found or insufficient permissions")
def create_api_key(slug):
    """Create a key; the plaintext is returned in this response only."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    scopes = data.get("scopes")
    if not name or not isinstance(scopes, list) or not scopes:
        return jsonify({"error": "Name and scopes are required"}), 400
    unknown = [s for s in scopes if s not in API_KEY_SCOPES]
    if unknown:
        return jsonify({"error": f"Invalid scopes: {', '.join(map(str, unknown))}"}), 400
    expiry = data.get("expiresIn", "never")
    if expiry not in EXPIRY_OPTIONS:
        return jsonify({"error": "Invalid expiry. Must be: never, 30days, 90days, or 1year"}), 400

    plaintext = generate_api_key()
    api_key = ApiKey(
        organization_id=org.id,
        name=name,
        key_prefix=key_prefix(plaintext),
        key_hash=hash_api_key(plaintext),
        scopes=json.dumps(sorted(set(scopes))),
        expires_at=expiry_from_option(expiry),
        created_by=current_user.id,
    )
    db.session.add(api_key)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="api_key.create",
        entity_type="api_key",
        entity_id=api_key.id,
        new_value={"name": name, "scopes": api_key.get_scopes(), "expiresIn": expiry},
    )
    return jsonify({**_api_key_dict(api_key), "key": plaintext}), 201


@bp.route("/orgs/<slug>/api-keys/<int:key_id>", methods=["DELETE"])
@org_required("manage_api_keys", message="Organization not found or insufficient permissions")
def delete_api_key(slug, key_id):
    api_key = _owned(ApiKey, key_id)
    if api_key is None:
        return jsonify({"error": "API key not found"}), 404
    old_value = {"name": api_key.name, "keyPrefix": api_key.key_prefix}
    db.session.delete(api_key)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="api_key.delete",
        entity_type="api_key",
        entity_id=key_id,
        old_value=old_value,
    )
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def _webhook_dict(webhook: Webhook) -> dict[str, Any]:
    return {
        "id": webhook.id,
        "name": webhook.name,
        "url": webhook.url,
        "type": webhook.type,
        "events": webhook.get_events(),
        "hasSecret": bool(webhook.secret),
        "secret": mask_secret(webhook.secret),
        "isActive": webhook.is_active,
        "failureCount": webhook.failure_count,
        "maxFailures": MAX_FAILURES,
        "lastTriggeredAt": _iso(webhook.last_triggered_at),
        "createdAt": _iso(webhook.created_at),
    }


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _validate_events(events: Any) -> str | None:
    if not isinstance(events, list) or not events:
        return "Events must be a non-empty array"
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown:
        return f"Invalid events: {', '.join(map(str, unknown))}"
    return None


@bp.route("/orgs/<slug>/webhooks", methods=["GET"])
@org_required("manage_webhooks")
def list_webhooks(slug):
    webhooks = db.session.execute(
        db.select(Webhook)
        .where(Webhook.organization_id == get_current_org().id)
        .order_by(Webhook.created_at.desc())
    ).scalars()
    return jsonify([_webhook_dict(w) for w in webhooks])


@bp.route("/orgs/<slug>/webhooks", methods=["POST"])
@org_required("manage_webhooks", message="You do not have permission to create webhooks")
def create_webhook(slug):
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    webhook_type = data.get("type")
    url = data.get("url")
    events = data.get("events")

    if not name or not webhook_type or not url or events is None:
        return jsonify({"error": "Missing required fields: name, type, url, events"}), 400
    if webhook_type not in WEBHOOK_TYPES:
        return jsonify({"error": "Invalid webhook type. Must be: slack, discord, teams, or custom"}), 400
    if not _is_http_url(url):
        return jsonify({"error": "Invalid URL format"}), 400
    error = _validate_events(events)
    if error:
        return jsonify({"error": error}), 400

    secret = data.get("secret") or None
    if webhook_type == "custom" and not secret:
        secret = secrets.token_hex(32)

    webhook = Webhook(
        organization_id=org.id,
        name=name,
        url=url,
        type=webhook_type,
        secret=secret,
        events=json.dumps(events),
        is_active=bool(data.get("isActive", True)),
        created_by=current_user.id,
    )
    db.session.add(webhook)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="webhook.create",
        entity_type="webhook",
        entity_id=webhook.id,
        new_value={"name": name, "type": webhook_type, "events": events},
    )
    body = _webhook_dict(webhook)
    if webhook_type == "custom":
        # Full secret is returned once so the receiver can verify signatures.
        body["secret"] = secret
    return jsonify(body), 201


@bp.route("/orgs/<slug>/webhooks/<int:webhook_id>", methods=["PATCH"])
@org_required("manage_webhooks", message="You do not have permission to update webhooks")
def update_webhook(slug, webhook_id):
    webhook = _owned(Webhook, webhook_id)
    if webhook is None:
        return jsonify({"error": "Webhook not found"}), 404
    data = request.get_json(silent=True) or {}

    if "url" in data and not _is_http_url(data["url"]):
        return jsonify({"error": "Invalid URL format"}), 400
    if "events" in data:
        error = _validate_events(data["events"])
        if error:
            return jsonify({"error": error}), 400
    if "type" in data and data["type"] not in WEBHOOK_TYPES:
        return jsonify({"error": "Invalid webhook type. Must be: slack, discord, teams, or custom"}), 400

    old_value = _webhook_dict(webhook)
    if data.get("name"):
        webhook.name = data["name"].strip()
    if "url" in data:
        webhook.url = data["url"]
    if "type" in data:
        webhook.type = data["type"]
    if "events" in data:
        webhook.events = json.dumps(data["events"])
    if "secret" in data:
        webhook.secret = data["secret"] or None
    if "isActive" in data:
        webhook.is_active = bool(data["isActive"])
        if webhook.is_active:
            webhook.failure_count = 0
    db.session.commit()
    log_audit(
        organization_id=webhook.organization_id,
        action="webhook.update",
        entity_type="webhook",
        entity_id=webhook.id,
        old_value=old_value,
        new_value=_webhook_dict(webhook),
    )
    return jsonify(_webhook_dict(webhook))


@bp.route("/orgs/<slug>/webhooks/<int:webhook_id>", methods=["DELETE"])
@org_required("manage_webhooks", message="You do not have permission to delete webhooks")
def delete_webhook(slug, webhook_id):
    webhook = _owned(Webhook, webhook_id)
    if webhook is None:
        return jsonify({"error": "Webhook not found"}), 404
    old_value = {"name": webhook.name, "type": webhook.type, "url": webhook.url}
    db.session.delete(webhook)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="webhook.delete",
        entity_type="webhook",
        entity_id=webhook_id,
        old_value=old_value,
    )
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/webhooks/<int:webhook_id>/test", methods=["POST"])
@org_required("manage_webhooks", message="You do not have permission to test webhooks")
def send_webhook_test(slug, webhook_id):
    """Send a sample payload; the result does not count towards failure_count."""
    webhook = _owned(Webhook, webhook_id)
    if webhook is None:
        return jsonify({"error": "Webhook not found"}), 404
    ok, error = send_webhook(webhook.type, webhook.url, build_test_payload(), webhook.secret)
    if ok:
        webhook.last_triggered_at = datetime.now(timezone.utc)
        db.session.commit()
        return jsonify({"success": True, "message": "Test webhook sent successfully"})
    return jsonify({"success": False, "error": error or "Failed to send webhook"}), 400


# ---------------------------------------------------------------------------
# Scheduled reports
# ---------------------------------------------------------------------------


def _scheduled_dict(report: ScheduledReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "name": report.name,
        "frequency": report.frequency,
        "dayOfWeek": report.day_of_week,
        "dayOfMonth": report.day_of_month,
        "hour": report.hour,
        "timezone": report.timezone,
        "recipients": report.get_recipients(),
        "domainIds": report.get_domain_ids(),
        "includeCharts": report.include_charts,
        "isActive": report.is_active,
        "schedule": schedule_description(report),
        "lastSentAt": _iso(report.last_sent_at),
        "nextRunAt": _iso(report.next_run_at),
        "createdAt": _iso(report.created_at),
    }


def _validate_schedule(values: dict[str, Any]) -> str | None:
    """Validate merged schedule fields; returns an error message or None."""
    if values["frequency"] not in FREQUENCIES:
        return "Invalid frequency. Must be daily, weekly, or monthly"
    recipients = values["recipients"]
    if not isinstance(recipients, list):
        return "Invalid recipients format"
    if not recipients:
        return "Recipients must be a non-empty array"
    bad = invalid_recipients(recipients)
    if bad:
        return f"Invalid email addresses: {', '.join(map(str, bad))}"
    hour = values["hour"]
    if not isinstance(hour, int) or isinstance(hour, bool) or not 0 <= hour <= 23:
        return "Hour must be between 0 and 23"
    if values["frequency"] == "weekly":
        dow = values["day_of_week"]
        if not isinstance(dow, int) or isinstance(dow, bool) or not 0 <= dow <= 6:
            return "Day of week is required for weekly reports"
    if values["frequency"] == "monthly":
        dom = values["day_of_month"]
        if not isinstance(dom, int) or isinstance(dom, bool) or not 1 <= dom <= 31:
            return "Day of month is required for monthly reports"
    if not isinstance(values["timezone"], str) or not is_valid_timezone(values["timezone"]):
        return "Invalid timezone"
    domain_ids = values["domain_ids"]
    if not isinstance(domain_ids, list) or not all(isinstance(i, int) for i in domain_ids):
        return "Invalid domainIds"
    if domain_ids:
        owned = db.session.execute(
            db.select(db.func.count(Domain.id)).where(
                Domain.id.in_(domain_ids), Domain.organization_id == get_current_org().id
            )
        ).scalar_one()
        if owned != len(set(domain_ids)):
            return "Domain not found"
    return None


_FIELD_MAP = {
    "frequency": "frequency",
    "dayOfWeek": "day_of_week",
    "dayOfMonth": "day_of_month",
    "hour": "hour",
    "timezone": "timezone",
    "recipients": "recipients",
    "domainIds": "domain_ids",
}


@bp.route("/orgs/<slug>/scheduled-reports", methods=["GET"])
@org_required()
def list_scheduled_reports(slug):
    reports = db.session.execute(
        db.select(ScheduledReport)
        .where(ScheduledReport.organization_id == get_current_org().id)
        .order_by(ScheduledReport.created_at.desc())
    ).scalars()
    return jsonify([_scheduled_dict(r) for r in reports])


@bp.route("/orgs/<slug>/scheduled-reports", methods=["POST"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def create_scheduled_report(slug):
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name or not data.get("frequency") or data.get("recipients") is None:
        return jsonify({"error": "Name, frequency, and recipients are required"}), 400

    values = {
        "frequency": data.get("frequency"),
        "day_of_week": data.get("dayOfWeek"),
        "day_of_month": data.get("dayOfMonth"),
        "hour": data.get("hour", 9),
        "timezone": data.get("timezone") or org.timezone or "UTC",
        "recipients": data.get("recipients"),
        "domain_ids": data.get("domainIds") or [],
    }
    error = _validate_schedule(values)
    if error:
        return jsonify({"error": error}), 400

    report = ScheduledReport(
        organization_id=org.id,
        name=name,
        frequency=values["frequency"],
        day_of_week=values["day_of_week"] if values["frequency"] == "weekly" else None,
        day_of_month=values["day_of_month"] if values["frequency"] == "monthly" else None,
        hour=values["hour"],
        timezone=values["timezone"],
        recipients=json.dumps(values["recipients"]),
        domain_ids=json.dumps(values["domain_ids"]) if values["domain_ids"] else None,
        include_charts=bool(data.get("includeCharts", True)),
        is_active=bool(data.get("isActive", True)),
        created_by=current_user.id,
    )
    report.next_run_at = calculate_next_run_at(
        report.frequency, report.hour, report.day_of_week, report.day_of_month, report.timezone
    )
    db.session.add(report)
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="scheduled_report.create",
        entity_type="scheduled_report",
        entity_id=report.id,
        new_value={"name": name, "frequency": report.frequency},
    )
    return jsonify(_scheduled_dict(report)), 201


@bp.route("/orgs/<slug>/scheduled-reports/<int:report_id>", methods=["GET"])
@org_required()
def get_scheduled_report(slug, report_id):
    report = _owned(ScheduledReport, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    return jsonify(_scheduled_dict(report))


@bp.route("/orgs/<slug>/scheduled-reports/<int:report_id>", methods=["PATCH"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def update_scheduled_report(slug, report_id):
    """Update a schedule; next_run_at is recomputed when timing fields change."""
    report = _owned(ScheduledReport, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    data = request.get_json(silent=True) or {}

    values = {
        "frequency": report.frequency,
        "day_of_week": report.day_of_week,
        "day_of_month": report.day_of_month,
        "hour": report.hour,
        "timezone": report.timezone,
        "recipients": report.get_recipients(),
        "domain_ids": report.get_domain_ids(),
    }
    for key, attr in _FIELD_MAP.items():
        if key in data:
            values[attr] = data[key] if key != "domainIds" else (data[key] or [])
    error = _validate_schedule(values)
    if error:
        return jsonify({"error": error}), 400

    timing_changed = any(
        key in data for key in ("frequency", "dayOfWeek", "dayOfMonth", "hour", "timezone")
    )
    if data.get("name"):
        report.name = data["name"].strip()
    report.frequency = values["frequency"]
    report.day_of_week = values["day_of_week"] if report.frequency == "weekly" else None
    report.day_of_month = values["day_of_month"] if report.frequency == "monthly" else None
    report.hour = values["hour"]
    report.timezone = values["timezone"]
    report.recipients = json.dumps(values["recipients"])
    report.domain_ids = json.dumps(values["domain_ids"]) if values["domain_ids"] else None
    if "includeCharts" in data:
        report.include_charts = bool(data["includeCharts"])
    if "isActive" in data:
        report.is_active = bool(data["isActive"])
    if timing_changed or report.next_run_at is None:
        report.next_run_at = calculate_next_run_at(
            report.frequency, report.hour, report.day_of_week, report.day_of_month, report.timezone
        )
    db.session.commit()
    log_audit(
        organization_id=report.organization_id,
        action="scheduled_report.update",
        entity_type="scheduled_report",
        entity_id=report.id,
        new_value={k: v for k, v in data.items() if k != "recipients"},
    )
    return jsonify(_scheduled_dict(report))


@bp.route("/orgs/<slug>/scheduled-reports/<int:report_id>", methods=["DELETE"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def delete_scheduled_report(slug, report_id):
    report = _owned(ScheduledReport, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    name = report.name
    db.session.delete(report)
    db.session.commit()
    log_audit(
        organization_id=get_current_org().id,
        action="scheduled_report.delete",
        entity_type="scheduled_report",
        entity_id=report_id,
        old_value={"name": name},
    )
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/scheduled-reports/<int:report_id>/test", methods=["POST"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def send_test_scheduled_report(slug, report_id):
    """Send the report now without waiting for its schedule."""
    report = _owned(ScheduledReport, report_id)
    if report is None:
        return jsonify({"error": "Report not found"}), 404
    sent = send_scheduled_report(report)
    if not sent:
        return jsonify({"success": False, "error": "Email could not be sent"}), 502
    return jsonify({"success": True, "report": _scheduled_dict(report)})


# ---------------------------------------------------------------------------
# AI integration (Gemini)
# ---------------------------------------------------------------------------


def _integration_status(integration: AiIntegration | None) -> dict[str, Any]:
    if integration is None:
        return {
            "configured": False,
            "isEnabled": False,
            "hasApiKey": False,
            "usageCount24h": 0,
            "dailyLimit": gemini.DAILY_LIMIT,
        }
    now = datetime.now(timezone.utc)
    resets_in = None
    reset_at = as_utc(integration.usage_reset_at)
    if reset_at is not None:
        ends = reset_at + gemini.USAGE_WINDOW
        if ends > now:
            resets_in = int((ends - now).total_seconds()) + 1
    return {
        "configured": True,
        "isEnabled": integration.is_enabled,
        "hasApiKey": bool(integration.gemini_api_key),
        "apiKey": mask_secret(gemini.api_key_for(integration)),
        "lastUsedAt": _iso(integration.last_used_at),
        "usageCount24h": integration.usage_count_24h,
        "usageResetsIn": resets_in,
        "dailyLimit": gemini.DAILY_LIMIT,
        "lastError": integration.last_error,
    }


@bp.route("/orgs/<slug>/ai-integration", methods=["GET"])
@org_required()
def get_ai_integration(slug):
    return jsonify(_integration_status(gemini.get_integration(get_current_org().id)))


@bp.route("/orgs/<slug>/ai-integration", methods=["PUT"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def save_ai_integration(slug):
    """Create or update the Gemini key (stored encrypted) and the enabled flag."""
    org = get_current_org()
    data = request.get_json(silent=True) or {}
    api_key = data.get("apiKey")
    if api_key is not None:
        error = gemini.is_valid_key_format(api_key)
        if error:
            return jsonify({"error": error}), 400

    integration = gemini.get_integration(org.id)
    if integration is None:
        integration = AiIntegration(organization_id=org.id, usage_count_24h=0)
        db.session.add(integration)
    if api_key is not None:
        integration.gemini_api_key = encrypt_secret(api_key)
        integration.last_error = None
    if "isEnabled" in data:
        integration.is_enabled = bool(data["isEnabled"])
    db.session.commit()
    log_audit(
        organization_id=org.id,
        action="ai_integration.update",
        entity_type="ai_integration",
        entity_id=integration.id,
        new_value={"apiKeyChanged": api_key is not None, "isEnabled": integration.is_enabled},
    )
    return jsonify({"success": True, **_integration_status(integration)})


@bp.route("/orgs/<slug>/ai-integration", methods=["DELETE"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def delete_ai_integration(slug):
    org = get_current_org()
    integration = gemini.get_integration(org.id)
    if integration is not None:
        integration.gemini_api_key = None
        integration.last_error = None
        db.session.commit()
        log_audit(
            organization_id=org.id,
            action="ai_integration.delete",
            entity_type="ai_integration",
            entity_id=integration.id,
        )
    return jsonify({"success": True})


@bp.route("/orgs/<slug>/ai-integration/test", methods=["POST"])
@org_required("manage_settings", message="Organization not found or insufficient permissions")
def check_ai_integration(slug):
    integration = gemini.get_integration(get_current_org().id)
    api_key = gemini.api_key_for(integration)
    if not api_key:
        return jsonify({"error": "No API key configured"}), 400

    ok, error, status = gemini.check_api_key(api_key)
    if not ok:
        gemini.record_error(integration, error or "API key validation failed")
        return jsonify({"success": False, "error": error, "status": status}), 400
    integration.last_error = None
    db.session.commit()
    return jsonify({"success": True, "message": "API key is valid"})
