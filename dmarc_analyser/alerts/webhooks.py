"""
Outbound webhook delivery.

Four payload formats are supported:
  slack:   attachment with Block Kit header/section/context blocks
  discord: single embed
  teams:   legacy Office 365 MessageCard
  custom:  the raw event envelope, HMAC-SHA256 signed when a secret is set

Delivery is synchronous with a 10 second timeout and no retry.  Each
attempt updates the webhook row: success resets ``failure_count``, a
failure increments it and the webhook is deactivated at 10 consecutive
failures.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any

import requests

from dmarc_analyser import db
from dmarc_analyser.models import Webhook

logger = logging.getLogger(__name__)

WEBHOOK_TYPES: tuple[str, ...] = ("slack", "discord", "teams", "custom")
WEBHOOK_EVENTS: tuple[str, ...] = (
    "alert.created",
    "report.imported",
    "report.received",
    "source.new",
    "domain.verified",
    "dns.changed",
    "compliance.drop",
    "*",
)

MAX_FAILURES = 10
_TIMEOUT = 10
_USER_AGENT = "DMARC-Analyzer-Webhook/1.0"

_SLACK_COLORS = {"critical": "#DC2626", "warning": "#F59E0B", "info": "#3B82F6"}
_DISCORD_COLORS = {"critical": 14423100, "warning": 16098851, "info": 3901635}
_TEAMS_COLORS = {"critical": "DC2626", "warning": "F59E0B", "info": "3B82F6"}


def build_payload(event: str, organization_id: int | str, data: dict[str, Any]) -> dict[str, Any]:
    """Return the event envelope shared by every format."""
    return {
        "event": event,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "organizationId": organization_id,
        "data": data,
    }


def sign_payload(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 of *body* keyed with *secret*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def event_title(event: str, data: dict[str, Any]) -> str:
    titles = {
        "alert.created": f"Alert: {data.get('title') or 'New Alert'}",
        "report.received": "New DMARC Report Received",
        "source.new": "New Email Source Detected",
        "domain.verified": "Domain Verified",
        "compliance.drop": "Compliance Drop Detected",
    }
    return titles.get(event, f"DMARC Event: {event}")


def event_fields(event: str, data: dict[str, Any]) -> list[tuple[str, str]]:
    """Return ``(label, value)`` pairs describing the event."""
    fields: list[tuple[str, str]] = []
    if data.get("domain"):
        fields.append(("Domain", str(data["domain"])))
    severity = data.get("severity")
    if severity:
        fields.append(("Severity", str(severity).upper()))

    if event == "alert.created":
        if data.get("type"):
            fields.append(("Type", str(data["type"])))
    elif event == "report.received":
        if data.get("reportId"):
            fields.append(("Report ID", str(data["reportId"])))
        if data.get("orgName"):
            fields.append(("Reporter", str(data["orgName"])))
        if data.get("messageCount"):
            fields.append(("Messages", str(data["messageCount"])))
    elif event == "source.new":
        if data.get("sourceIp"):
            fields.append(("IP Address", str(data["sourceIp"])))
        if data.get("organization"):
            fields.append(("Organization", str(data["organization"])))
        if data.get("country"):
            fields.append(("Location", str(data["country"])))
    elif event == "compliance.drop":
        if data.get("passRate") is not None:
            fields.append(("Pass Rate", f"{data['passRate']}%"))
        if data.get("previousRate") is not None:
            fields.append(("Previous", f"{data['previousRate']}%"))
    return fields


def format_slack(payload: dict[str, Any]) -> dict[str, Any]:
    event, data = payload["event"], payload["data"]
    now = datetime.now(timezone.utc)
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": event_title(event, data)}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*{label}:*\n{value}"}
                for label, value in event_fields(event, data)
            ],
        },
        {
            "type": "context",
            "elements": [
                {
                    "type": "mrkdwn",
                    "text": f"<!date^{int(now.timestamp())}^{{date_num}} at {{time_secs}}|{now.isoformat()}>",
                }
            ],
        },
    ]
    return {
        "attachments": [
            {"color": _SLACK_COLORS.get(data.get("severity"), "#0066CC"), "blocks": blocks}
        ]
    }


def format_discord(payload: dict[str, Any]) -> dict[str, Any]:
    event, data = payload["event"], payload["data"]
    return {
        "embeds": [
            {
                "title": event_title(event, data),
                "description": data.get("message") or data.get("description"),
                "color": _DISCORD_COLORS.get(data.get("severity"), 3447003),
                "fields": [
                    {"name": label, "value": value, "inline": True}
                    for label, value in event_fields(event, data)
                ],
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "footer": {"text": "DMARC Analyser"},
            }
        ]
    }


def format_teams(payload: dict[str, Any]) -> dict[str, Any]:
    event, data = payload["event"], payload["data"]
    title = event_title(event, data)
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "summary": title,
        "themeColor": _TEAMS_COLORS.get(data.get("severity"), "0066CC"),
        "title": title,
        "text": data.get("message") or data.get("description"),
        "sections": [
            {"facts": [{"name": label, "value": value} for label, value in event_fields(event, data)]}
        ],
    }


_FORMATTERS = {"slack": format_slack, "discord": format_discord, "teams": format_teams}


def format_payload(webhook_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Render *payload* for *webhook_type*; unknown types get the raw envelope."""
    formatter = _FORMATTERS.get(webhook_type)
    return formatter(payload) if formatter else payload


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


def send_webhook(
    webhook_type: str, url: str, payload: dict[str, Any], secret: str | None = None
) -> tuple[bool, str | None]:
    """POST one payload.

    Returns:
        ``(True, None)`` on a 2xx response, otherwise ``(False, error)``.
    """
    body = json.dumps(format_payload(webhook_type, payload)).encode("utf-8")
    headers = {"Content-Type": "application/json", "User-Agent": _USER_AGENT}
    if webhook_type == "custom" and secret:
        headers["X-Webhook-Signature"] = sign_payload(body, secret)
        headers["X-Webhook-Timestamp"] = str(int(time.time() * 1000))

    try:
        response = requests.post(url, data=body, headers=headers, timeout=_TIMEOUT)
    except requests.RequestException as exc:
        logger.warning("Webhook delivery failed: url=%s error=%s", url, exc)
        return False, str(exc) or "Failed to send webhook"

    if not response.ok:
        return False, f"HTTP {response.status_code}: {response.text[:200]}"
    return True, None


def build_test_payload() -> dict[str, Any]:
    return build_payload(
        "webhook.test",
        "test",
        {
            "message": "This is a test webhook from DMARC Analyser",
            "severity": "info",
            "domain": "example.com",
            "type": "test",
        },
    )


def deliver(webhook: Webhook, event: str, data: dict[str, Any]) -> bool:
    """Send *event* to *webhook* and record the outcome on the row.

    The caller commits.
    """
    payload = build_payload(event, webhook.organization_id, data)
    ok, error = send_webhook(webhook.type, webhook.url, payload, webhook.secret)
    if ok:
        webhook.last_triggered_at = datetime.now(timezone.utc)
        webhook.failure_count = 0
        logger.info("Webhook %s delivered event=%s", webhook.id, event)
        return True

    webhook.failure_count = (webhook.failure_count or 0) + 1
    logger.warning(
        "Webhook %s failed event=%s failures=%d error=%s",
        webhook.id,
        event,
        webhook.failure_count,
        error,
    )
    if webhook.failure_count >= MAX_FAILURES:
        webhook.is_active = False
        logger.warning("Webhook %s disabled after %d failures", webhook.id, webhook.failure_count)
    return False


def trigger_webhooks(organization_id: int, event: str, data: dict[str, Any]) -> int:
    """Deliver *event* to every active webhook of the organization subscribed to it.

    Returns:
        Number of successful deliveries.
    """
    webhooks = db.session.execute(
        db.select(Webhook).where(
            Webhook.organization_id == organization_id,
            Webhook.is_active.is_(True),
        )
    ).scalars().all()

    delivered = 0
    for webhook in webhooks:
        events = webhook.get_events()
        if event not in events and "*" not in events:
            continue
        if deliver(webhook, event, data):
            delivered += 1
    if webhooks:
        db.session.commit()
    return delivered
