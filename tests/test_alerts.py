"""
Tests for alert generation, outbound webhook delivery and the alert and
alert-rule routes.

Outbound HTTP and email are always patched.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import ORG_SLUG, aggregate_xml, login
from dmarc_analyser.alerts.service import (
    check_pass_rate_drop,
    create_alert,
    create_dns_change_alert,
    process_report_imported,
    report_pass_rate,
)
from dmarc_analyser.alerts.webhooks import (
    MAX_FAILURES,
    build_payload,
    format_discord,
    format_payload,
    format_slack,
    format_teams,
    send_webhook,
    sign_payload,
    trigger_webhooks,
)
from dmarc_analyser.models import Alert, AlertRule, Report, Webhook
from dmarc_analyser.reports.importer import import_report

_ALERTS = f"/api/orgs/{ORG_SLUG}/alerts"
_RULES = f"/api/orgs/{ORG_SLUG}/alert-rules"


def _response(status: int = 200, text: str = "ok") -> MagicMock:
    response = MagicMock(status_code=status, text=text)
    response.ok = 200 <= status < 300
    return response


def _webhook(db, org, **kwargs):
    values = {"name": "Hook", "url": "https://hooks.example.com/x", "type": "custom", "events": '["*"]'}
    values.update(kwargs)
    webhook = Webhook(organization_id=org.id, **values)
    db.session.add(webhook)
    db.session.commit()
    return webhook


def _alert(db, org, **kwargs):
    values = {"type": "new_source", "severity": "info", "title": "New source", "message": "m"}
    values.update(kwargs)
    alert = Alert(organization_id=org.id, **values)
    db.session.add(alert)
    db.session.commit()
    return alert


# ---------------------------------------------------------------------------
# Alert generation
# ---------------------------------------------------------------------------


def test_create_alert_emails_members_when_rule_enabled(db, org, domain):
    db.session.add(AlertRule(organization_id=org.id, name="DNS", type="dns_change", notify_email=True))
    db.session.commit()

    with patch("dmarc_analyser.alerts.service.send_email", return_value=True) as mock_send:
        alert = create_alert(
            organization_id=org.id,
            domain_id=domain.id,
            alert_type="dns_change",
            severity="warning",
            title="SPF record changed",
            message="Changed.",
        )

    assert alert.email_sent is True
    recipients, subject = mock_send.call_args.args[:2]
    assert recipients == ["owner@example.com"]
    assert subject == "[WARNING] SPF record changed"


def test_create_alert_without_rule_sends_no_email(db, org):
    with patch("dmarc_analyser.alerts.service.send_email") as mock_send:
        alert = create_alert(
            organization_id=org.id, alert_type="new_source", severity="info", title="t", message="m"
        )
    mock_send.assert_not_called()
    assert alert.email_sent is False


def test_domain_scoped_rule_ignores_other_domains(db, org, domain):
    db.session.add(AlertRule(organization_id=org.id, name="Scoped", type="dns_change", domain_id=domain.id))
    db.session.commit()

    with patch("dmarc_analyser.alerts.service.send_email") as mock_send:
        create_alert(organization_id=org.id, alert_type="dns_change", severity="info", title="t", message="m")
    mock_send.assert_not_called()


def test_create_alert_marks_webhook_sent(db, org):
    with patch("dmarc_analyser.alerts.service.trigger_webhooks", return_value=1) as mock_trigger:
        alert = create_alert(
            organization_id=org.id, alert_type="new_source", severity="info", title="t", message="m"
        )
    assert alert.webhook_sent is True
    assert mock_trigger.call_args.args[1] == "alert.created"


def test_report_pass_rate_uses_best_mechanism(db, domain):
    result = import_report(
        domain,
        xml=aggregate_xml(
            rows=[("192.0.2.1", 6, "pass", "fail", "example.com"), ("192.0.2.2", 4, "fail", "fail", "example.com")]
        ),
    )
    assert report_pass_rate(db.session.get(Report, result.report_id)) == 60.0


@pytest.mark.parametrize("current, severity", [(85.0, "info"), (80.0, "warning"), (60.0, "critical")])
def test_pass_rate_drop_severity(db, org, domain, current, severity):
    db.session.add(AlertRule(organization_id=org.id, name="Drop", type="pass_rate_drop", notify_email=False))
    db.session.commit()

    alert = check_pass_rate_drop(org.id, domain, current, 95.0)
    assert alert.severity == severity
    assert alert.get_metadata()["previousPassRate"] == 95.0


def test_pass_rate_drop_respects_threshold_and_rule(db, org, domain):
    assert check_pass_rate_drop(org.id, domain, 50.0, 95.0) is None

    db.session.add(
        AlertRule(organization_id=org.id, name="Drop", type="pass_rate_drop", threshold='{"dropPercent": 25}')
    )
    db.session.commit()
    assert check_pass_rate_drop(org.id, domain, 80.0, 95.0) is None


def test_process_report_imported_detects_drop(db, org, domain):
    db.session.add(AlertRule(organization_id=org.id, name="Drop", type="pass_rate_drop", notify_email=False))
    db.session.commit()
    import_report(domain, xml=aggregate_xml(rows=[("192.0.2.1", 10, "pass", "pass", "example.com")]))
    result = import_report(
        domain,
        xml=aggregate_xml(
            report_id="rpt-2",
            begin=1704153600,
            end=1704239999,
            rows=[("192.0.2.1", 10, "fail", "fail", "example.com")],
        ),
    )

    drops = db.session.execute(db.select(Alert).where(Alert.type == "pass_rate_drop")).scalars().all()
    assert len(drops) == 1
    assert drops[0].severity == "critical"
    assert drops[0].title == "Pass rate dropped by 100.0%"

    summary = process_report_imported(domain, db.session.get(Report, result.report_id))
    assert summary["passRate"] == 0.0


def test_dns_change_alert_wording(db, org, domain):
    added = create_dns_change_alert(org.id, domain, "SPF", None, "v=spf1 -all")
    assert added.title == "SPF record added"
    assert added.severity == "warning"

    removed = create_dns_change_alert(org.id, domain, "DMARC", "v=DMARC1; p=none", None)
    assert removed.title == "DMARC record removed"
    assert removed.severity == "critical"
    assert removed.message.endswith("The record has been removed.")


# ---------------------------------------------------------------------------
# Webhook formatting and delivery
# ---------------------------------------------------------------------------


def test_sign_payload_is_hmac_sha256():
    expected = hmac.new(b"secret", b"{}", hashlib.sha256).hexdigest()
    assert sign_payload(b"{}", "secret") == expected


def test_formatters_share_fields():
    data = {
        "title": "SPF changed",
        "severity": "critical",
        "domain": "example.com",
        "type": "dns_change",
        "message": "m",
    }
    payload = build_payload("alert.created", 1, data)

    slack = format_slack(payload)["attachments"][0]
    assert slack["color"] == "#DC2626"
    assert slack["blocks"][0]["text"]["text"] == "Alert: SPF changed"
    assert {"type": "mrkdwn", "text": "*Severity:*\nCRITICAL"} in slack["blocks"][1]["fields"]

    embed = format_discord(payload)["embeds"][0]
    assert embed["color"] == 14423100
    assert {"name": "Type", "value": "dns_change", "inline": True} in embed["fields"]

    card = format_teams(payload)
    assert card["@type"] == "MessageCard"
    assert card["themeColor"] == "DC2626"
    assert card["sections"][0]["facts"][0] == {"name": "Domain", "value": "example.com"}

    assert format_payload("custom", payload) is payload


def test_send_custom_webhook_signs_body():
    payload = build_payload("report.imported", 1, {"domain": "example.com"})
    with patch("dmarc_analyser.alerts.webhooks.requests.post", return_value=_response()) as mock_post:
        assert send_webhook("custom", "https://hooks.example.com/x", payload, "s3cret") == (True, None)

    kwargs = mock_post.call_args.kwargs
    assert kwargs["headers"]["X-Webhook-Signature"] == sign_payload(kwargs["data"], "s3cret")
    assert json.loads(kwargs["data"])["event"] == "report.imported"
    assert kwargs["timeout"] == 10


def test_send_webhook_reports_http_and_network_errors():
    payload = build_payload("report.imported", 1, {})
    with patch("dmarc_analyser.alerts.webhooks.requests.post", return_value=_response(500, "boom")):
        assert send_webhook("slack", "https://hooks.example.com/x", payload) == (False, "HTTP 500: boom")
    with patch(
        "dmarc_analyser.alerts.webhooks.requests.post", side_effect=requests.ConnectionError("refused")
    ):
        assert send_webhook("slack", "https://hooks.example.com/x", payload) == (False, "refused")


def test_trigger_filters_by_event(db, org):
    _webhook(db, org, name="All")
    _webhook(db, org, name="DNS only", events='["dns.changed"]')
    _webhook(db, org, name="Inactive", is_active=False)

    with patch("dmarc_analyser.alerts.webhooks.requests.post", return_value=_response()) as mock_post:
        assert trigger_webhooks(org.id, "report.imported", {}) == 1
        assert trigger_webhooks(org.id, "dns.changed", {}) == 2
    assert mock_post.call_count == 3


def test_trigger_counts_failures_and_disables(db, org):
    webhook = _webhook(db, org, failure_count=MAX_FAILURES - 2)

    with patch("dmarc_analyser.alerts.webhooks.requests.post", return_value=_response(503)):
        trigger_webhooks(org.id, "report.imported", {})
        assert webhook.failure_count == MAX_FAILURES - 1
        assert webhook.is_active is True
        trigger_webhooks(org.id, "report.imported", {})

    assert webhook.failure_count == MAX_FAILURES
    assert webhook.is_active is False


def test_successful_delivery_resets_failures(db, org):
    webhook = _webhook(db, org, failure_count=4)
    with patch("dmarc_analyser.alerts.webhooks.requests.post", return_value=_response()):
        trigger_webhooks(org.id, "report.imported", {})
    assert webhook.failure_count == 0
    assert webhook.last_triggered_at is not None


# ---------------------------------------------------------------------------
# Alert routes
# ---------------------------------------------------------------------------


@pytest.fixture
def member_client(app, add_member):
    add_member("member@example.com", "member")
    client = app.test_client()
    assert login(client, "member@example.com").status_code == 200
    return client


@pytest.fixture
def viewer_client(app, add_member):
    add_member("viewer@example.com", "viewer")
    client = app.test_client()
    assert login(client, "viewer@example.com").status_code == 200
    return client


def test_list_alerts_filters_and_counts(auth_client, db, org, domain):
    _alert(db, org, severity="critical", domain_id=domain.id)
    _alert(db, org, is_read=True)
    _alert(db, org, is_dismissed=True)

    body = auth_client.get(_ALERTS).get_json()
    assert len(body["alerts"]) == 2
    assert body["unreadCount"] == 1
    assert body["alerts"][1]["domain"] == "example.com"

    assert len(auth_client.get(f"{_ALERTS}?includeDismissed=true").get_json()["alerts"]) == 3
    assert len(auth_client.get(f"{_ALERTS}?unread=true").get_json()["alerts"]) == 1
    assert auth_client.get(f"{_ALERTS}?severity=critical").get_json()["alerts"][0]["severity"] == "critical"
    assert auth_client.get(f"{_ALERTS}?severity=urgent").status_code == 400


def test_viewer_can_read_and_dismiss(viewer_client, db, org):
    alert = _alert(db, org)

    body = viewer_client.patch(f"{_ALERTS}/{alert.id}", json={"isDismissed": True}).get_json()
    assert body["isDismissed"] is True
    assert body["isRead"] is True
    assert body["readAt"] is not None

    body = viewer_client.patch(f"{_ALERTS}/{alert.id}", json={"isRead": False}).get_json()
    assert body["isRead"] is False


def test_delete_alert_needs_domain_rights(viewer_client, member_client, db, org):
    alert = _alert(db, org)
    assert viewer_client.delete(f"{_ALERTS}/{alert.id}").status_code == 403
    assert member_client.delete(f"{_ALERTS}/{alert.id}").get_json() == {"success": True}
    assert member_client.delete(f"{_ALERTS}/{alert.id}").status_code == 404


def test_bulk_actions(auth_client, viewer_client, db, org):
    first, second = _alert(db, org), _alert(db, org)
    ids = [first.id, second.id]

    assert auth_client.post(f"{_ALERTS}/bulk", json={"action": "archive", "ids": ids}).status_code == 400
    assert auth_client.post(f"{_ALERTS}/bulk", json={"action": "read", "ids": []}).status_code == 400
    assert viewer_client.post(f"{_ALERTS}/bulk", json={"action": "delete", "ids": ids}).status_code == 403

    assert viewer_client.post(f"{_ALERTS}/bulk", json={"action": "dismiss", "ids": ids}).get_json() == {
        "success": True,
        "updated": 2,
    }
    assert first.is_dismissed is True
    assert auth_client.post(f"{_ALERTS}/bulk", json={"action": "delete", "ids": ids}).get_json()["updated"] == 2


def test_read_all(auth_client, db, org):
    _alert(db, org)
    _alert(db, org)
    assert auth_client.post(f"{_ALERTS}/read-all").get_json() == {"success": True, "updated": 2}
    assert auth_client.get(_ALERTS).get_json()["unreadCount"] == 0


# ---------------------------------------------------------------------------
# Alert rule routes
# ---------------------------------------------------------------------------


def test_alert_rule_crud(auth_client, domain):
    response = auth_client.post(
        _RULES,
        json={"name": "Drop", "type": "pass_rate_drop", "domainId": domain.id, "threshold": {"dropPercent": 20}},
    )
    rule = response.get_json()
    assert response.status_code == 201
    assert rule["threshold"] == {"dropPercent": 20}
    assert rule["isEnabled"] is True

    updated = auth_client.patch(f"{_RULES}/{rule['id']}", json={"isEnabled": False}).get_json()
    assert updated["isEnabled"] is False
    assert [r["id"] for r in auth_client.get(_RULES).get_json()] == [rule["id"]]

    assert auth_client.delete(f"{_RULES}/{rule['id']}").get_json() == {"success": True}
    assert auth_client.get(_RULES).get_json() == []


@pytest.mark.parametrize(
    "payload, error",
    [
        ({"type": "dns_change"}, "Name and type are required"),
        ({"name": "X", "type": "weather"}, "Invalid alert type"),
        ({"name": "X", "type": "dns_change", "domainId": 9999}, "Domain not found"),
        ({"name": "X", "type": "dns_change", "threshold": 5}, "threshold must be an object"),
    ],
)
def test_alert_rule_validation(auth_client, payload, error):
    response = auth_client.post(_RULES, json=payload)
    assert response.status_code == 400
    assert response.get_json()["error"] == error


def test_member_cannot_manage_rules(member_client):
    assert member_client.get(_RULES).status_code == 200
    assert member_client.post(_RULES, json={"name": "X", "type": "dns_change"}).status_code == 403
