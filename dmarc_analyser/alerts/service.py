"""
Alert generation.

Alerts are rows on the organization.  Creating one emails every member
when an enabled rule for the alert type asks for email (org-wide rules, or
rules scoped to the same domain), then fires the ``alert.created`` webhook.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.alerts.webhooks import trigger_webhooks
from dmarc_analyser.models import Alert, AlertRule, Domain, OrgMember, Report, Source, User
from dmarc_analyser.utils.email import render_simple_email, send_email

logger = logging.getLogger(__name__)

ALERT_TYPES: tuple[str, ...] = (
    "pass_rate_drop",
    "new_source",
    "dns_change",
    "dkim_failure",
    "spf_failure",
    "policy_change",
)
SEVERITIES: tuple[str, ...] = ("info", "warning", "critical")

DEFAULT_DROP_PERCENT = 10
MAX_NEW_SOURCE_ALERTS = 5


def _matching_email_rule(organization_id: int, alert_type: str, domain_id: int | None) -> AlertRule | None:
    rules = db.session.execute(
        db.select(AlertRule).where(
            AlertRule.organization_id == organization_id,
            AlertRule.type == alert_type,
            AlertRule.is_enabled.is_(True),
            AlertRule.notify_email.is_(True),
        )
    ).scalars().all()
    for rule in rules:
        if rule.domain_id is None or (domain_id is not None and rule.domain_id == domain_id):
            return rule
    return None


def _member_emails(organization_id: int) -> list[str]:
    rows = db.session.execute(
        db.select(User.email)
        .join(OrgMember, OrgMember.user_id == User.id)
        .where(OrgMember.organization_id == organization_id)
    ).scalars().all()
    return [email for email in rows if email]


def create_alert(
    *,
    organization_id: int,
    alert_type: str,
    severity: str,
    title: str,
    message: str,
    domain_id: int | None = None,
    metadata: dict[str, Any] | None = None,
) -> Alert:
    """Persist an alert, notify by email when a rule asks for it, fire webhooks.

    Returns:
        The committed Alert.
    """
    alert = Alert(
        organization_id=organization_id,
        domain_id=domain_id,
        type=alert_type,
        severity=severity,
        title=title,
        message=message,
        alert_metadata=json.dumps(metadata, default=str) if metadata is not None else None,
    )
    db.session.add(alert)
    db.session.commit()
    logger.info(
        "Alert created: id=%s org=%s type=%s severity=%s", alert.id, organization_id, alert_type, severity
    )

    domain_name = None
    if domain_id is not None:
        domain = db.session.get(Domain, domain_id)
        domain_name = domain.domain if domain else None

    if _matching_email_rule(organization_id, alert_type, domain_id) is not None:
        recipients = _member_emails(organization_id)
        if recipients:
            paragraphs = [message]
            if domain_name:
                paragraphs.insert(0, f"Domain: {domain_name}")
            paragraphs.append(f"Severity: {severity}")
            html, text = render_simple_email(title, paragraphs)
            if send_email(recipients, f"[{severity.upper()}] {title}", html, text):
                alert.email_sent = True
                db.session.commit()

    delivered = trigger_webhooks(
        organization_id,
        "alert.created",
        {
            "alertId": alert.id,
            "title": title,
            "message": message,
            "severity": severity,
            "type": alert_type,
            "domain": domain_name,
        },
    )
    if delivered:
        alert.webhook_sent = True
        db.session.commit()
    return alert


# ---------------------------------------------------------------------------
# Pass-rate drop
# ---------------------------------------------------------------------------


def report_pass_rate(report: Report) -> float:
    """Pass rate of one report: the larger of DKIM-pass and SPF-pass counts over total.

    An empty report counts as 100%.
    """
    total = dkim_pass = spf_pass = 0
    for record in report.records:
        total += record.count
        if record.dmarc_dkim == "pass":
            dkim_pass += record.count
        if record.dmarc_spf == "pass":
            spf_pass += record.count
    if total == 0:
        return 100.0
    return max(dkim_pass, spf_pass) / total * 100


def recent_pass_rates(domain_id: int) -> tuple[float, float]:
    """Return ``(current, previous)`` pass rates of the two latest reports."""
    latest = db.session.execute(
        db.select(Report)
        .where(Report.domain_id == domain_id)
        .order_by(Report.date_range_end.desc())
        .limit(2)
    ).scalars().all()
    if len(latest) < 2:
        return 100.0, 100.0
    return report_pass_rate(latest[0]), report_pass_rate(latest[1])


def check_pass_rate_drop(
    organization_id: int, domain: Domain, current: float, previous: float
) -> Alert | None:
    """Raise a ``pass_rate_drop`` alert when the drop meets the rule threshold."""
    rule = db.session.execute(
        db.select(AlertRule).where(
            AlertRule.organization_id == organization_id,
            AlertRule.type == "pass_rate_drop",
            AlertRule.is_enabled.is_(True),
        )
    ).scalars().first()
    if rule is None:
        return None

    threshold = rule.get_threshold().get("dropPercent") or DEFAULT_DROP_PERCENT
    drop = previous - current
    if drop < threshold:
        return None

    if drop >= 30:
        severity = "critical"
    elif drop >= 15:
        severity = "warning"
    else:
        severity = "info"

    return create_alert(
        organization_id=organization_id,
        domain_id=domain.id,
        alert_type="pass_rate_drop",
        severity=severity,
        title=f"Pass rate dropped by {drop:.1f}%",
        message=(
            f"The DMARC pass rate for {domain.domain} dropped from {previous:.1f}% "
            f"to {current:.1f}%, a decrease of {drop:.1f} percentage points."
        ),
        metadata={"currentPassRate": current, "previousPassRate": previous, "dropPercent": drop},
    )


# ---------------------------------------------------------------------------
# New sources
# ---------------------------------------------------------------------------


def create_new_source_alert(organization_id: int, domain: Domain, source: Source) -> Alert:
    info = " • ".join(p for p in (source.hostname, source.organization, source.country) if p)
    return create_alert(
        organization_id=organization_id,
        domain_id=domain.id,
        alert_type="new_source",
        severity="info",
        title="New email source detected",
        message=(
            f"A new IP address ({source.source_ip}) has been detected sending email as "
            f"{domain.domain}. Source info: {info or source.source_ip}. "
            "Review and classify this source."
        ),
        metadata={
            "sourceIp": source.source_ip,
            "hostname": source.hostname,
            "organization": source.organization,
            "country": source.country,
        },
    )


def check_new_sources(organization_id: int, domain: Domain, report: Report) -> int:
    """Alert on sources first seen within *report*'s date range (at most 5 alerts).

    Returns:
        The number of new sources found.
    """
    new_sources = db.session.execute(
        db.select(Source)
        .where(Source.domain_id == domain.id, Source.first_seen >= report.date_range_begin)
        .order_by(Source.id)
    ).scalars().all()
    for source in new_sources[:MAX_NEW_SOURCE_ALERTS]:
        create_new_source_alert(organization_id, domain, source)
    return len(new_sources)


# ---------------------------------------------------------------------------
# DNS changes
# ---------------------------------------------------------------------------


def create_dns_change_alert(
    organization_id: int,
    domain: Domain,
    record_type: str,
    old_value: str | None,
    new_value: str | None,
) -> Alert:
    """Alert that *record_type* (SPF, DKIM or DMARC) was added, changed or removed."""
    if not old_value:
        change = "added"
    elif not new_value:
        change = "removed"
    else:
        change = "changed"

    message = f"The {record_type} record for {domain.domain} has been {change}."
    if old_value:
        message += f" Previous: {old_value}"
    message += f" New: {new_value}" if new_value else " The record has been removed."

    return create_alert(
        organization_id=organization_id,
        domain_id=domain.id,
        alert_type="dns_change",
        severity="warning" if new_value else "critical",
        title=f"{record_type} record {change}",
        message=message,
        metadata={"recordType": record_type, "oldValue": old_value, "newValue": new_value},
    )


def process_report_imported(domain: Domain, report: Report) -> dict[str, Any]:
    """Run post-import checks for a freshly imported report.

    Returns:
        ``{"alertsCreated", "passRate"}``.
    """
    organization_id = domain.organization_id
    alerts_created = 0

    current, previous = recent_pass_rates(domain.id)
    if previous > 0 and current < previous:
        if check_pass_rate_drop(organization_id, domain, current, previous) is not None:
            alerts_created += 1

    new_sources = check_new_sources(organization_id, domain, report)
    alerts_created += min(new_sources, MAX_NEW_SOURCE_ALERTS)

    trigger_webhooks(
        organization_id,
        "report.imported",
        {
            "reportId": report.report_id,
            "domainId": domain.id,
            "domain": domain.domain,
            "orgName": report.org_name,
            "messageCount": sum(r.count for r in report.records),
            "passRate": current,
        },
    )
    return {"alertsCreated": alerts_created, "passRate": current}
