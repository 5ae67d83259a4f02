"""
Scheduled summary reports.

A schedule fires at ``hour`` in its own IANA timezone, every day, every
week on ``day_of_week`` (0 = Sunday) or every month on ``day_of_month``.
Months shorter than ``day_of_month`` are skipped.  The job runner calls
``send_due_reports`` which emails an HTML summary of the previous period and
advances ``next_run_at``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import Domain, Record, Report, ScheduledReport, Source
from dmarc_analyser.utils.email import render_simple_email, send_email

logger = logging.getLogger(__name__)

FREQUENCIES: tuple[str, ...] = ("daily", "weekly", "monthly")
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def is_valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def _add_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def calculate_next_run_at(
    frequency: str,
    hour: int,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    tz_name: str = "UTC",
    now: datetime | None = None,
) -> datetime:
    """Return the next UTC instant strictly after *now* matching the schedule."""
    tz = _zone(tz_name)
    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)

    if frequency == "weekly" and day_of_week is not None:
        # Python weekday(): Monday=0; schedules use Sunday=0.
        current = (now.weekday() + 1) % 7
        days_until = (day_of_week - current) % 7
        candidate += timedelta(days=days_until)
        if candidate <= now:
            candidate += timedelta(days=7)
    elif frequency == "monthly" and day_of_month is not None:
        year, month = now.year, now.month
        while True:
            try:
                candidate = candidate.replace(year=year, month=month, day=day_of_month)
            except ValueError:
                candidate = None
            if candidate is not None and candidate > now:
                break
            year, month = _add_month(year, month)
            candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0, day=1)
    else:
        if candidate <= now:
            candidate += timedelta(days=1)

    return candidate.astimezone(timezone.utc)


def schedule_description(report: ScheduledReport) -> str:
    display_hour = report.hour % 12 or 12
    time_str = f"{display_hour}:00 {'PM' if report.hour >= 12 else 'AM'} {report.timezone}"
    if report.frequency == "weekly" and report.day_of_week is not None:
        return f"Weekly on {DAY_NAMES[report.day_of_week]} at {time_str}"
    if report.frequency == "monthly" and report.day_of_month is not None:
        day = report.day_of_month
        suffix = "th" if 11 <= day % 100 <= 13 else {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
        return f"Monthly on the {day}{suffix} at {time_str}"
    return f"Daily at {time_str}"


def invalid_recipients(recipients: list[str]) -> list[str]:
    return [email for email in recipients if not isinstance(email, str) or not _EMAIL_RE.match(email)]


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def period_for(frequency: str, now: datetime) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` covering the last full period ending at midnight UTC."""
    end = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == "weekly":
        start = end - timedelta(days=7)
    elif frequency == "monthly":
        year, month = (end.year - 1, 12) if end.month == 1 else (end.year, end.month - 1)
        try:
            start = end.replace(year=year, month=month)
        except ValueError:
            start = end.replace(year=year, month=month, day=28)
    else:
        start = end - timedelta(days=1)
    return start, end


def report_summary(report: ScheduledReport, start: datetime, end: datetime) -> dict[str, Any]:
    """Aggregate messages, pass rate and new sources over the period."""
    query = db.select(Domain).where(Domain.organization_id == report.organization_id)
    selected = report.get_domain_ids()
    if selected:
        query = query.where(Domain.id.in_(selected))
    domains = db.session.execute(query.order_by(Domain.domain)).scalars().all()
    domain_ids = [d.id for d in domains]

    summary: dict[str, Any] = {
        "domains": [d.domain for d in domains],
        "totalMessages": 0,
        "passed": 0,
        "failedMessages": 0,
        "passRate": 100,
        "newSources": 0,
    }
    if not domain_ids:
        summary["passRate"] = 0
        return summary

    rows = db.session.execute(
        db.select(Record.count, Record.dmarc_dkim, Record.dmarc_spf)
        .join(Report, Record.report_id == Report.id)
        .where(
            Report.domain_id.in_(domain_ids),
            Report.date_range_end >= start,
            Report.date_range_begin <= end,
        )
    ).all()
    total = sum(count for count, _, _ in rows)
    passed = sum(count for count, dkim, spf in rows if dkim == "pass" or spf == "pass")
    summary["totalMessages"] = total
    summary["passed"] = passed
    summary["failedMessages"] = total - passed
    if total:
        summary["passRate"] = pass_rate(passed, total)

    summary["newSources"] = db.session.execute(
        db.select(db.func.count(Source.id)).where(
            Source.domain_id.in_(domain_ids),
            Source.first_seen >= start,
            Source.first_seen <= end,
        )
    ).scalar_one()
    return summary


def render_summary_email(report: ScheduledReport, summary: dict[str, Any], start: datetime, end: datetime) -> tuple[str, str]:
    period = f"{start:%Y-%m-%d} to {end:%Y-%m-%d}"
    paragraphs = [
        f"Period: {period}",
        f"Domains: {', '.join(summary['domains']) or 'none'}",
        f"Total messages: {summary['totalMessages']:,}",
        f"DMARC pass rate: {summary['passRate']}%",
        f"Failed messages: {summary['failedMessages']:,}",
        f"New sending sources: {summary['newSources']}",
    ]
    base_url = current_app.config["APP_BASE_URL"].rstrip("/")
    slug = report.organization.slug if report.organization else ""
    return render_simple_email(
        report.name,
        paragraphs,
        link=("Open dashboard", f"{base_url}/orgs/{slug}"),
    )


def send_scheduled_report(report: ScheduledReport, now: datetime | None = None) -> bool:
    """Email *report* for its last period and advance its schedule.

    Returns:
        True if the mail provider accepted the message.
    """
    now = now or datetime.now(timezone.utc)
    recipients = report.get_recipients()
    if not recipients:
        logger.info("Scheduled report %s has no recipients", report.id)
        return False

    start, end = period_for(report.frequency, now)
    summary = report_summary(report, start, end)
    html, text = render_summary_email(report, summary, start, end)
    sent = send_email(recipients, f"{report.name} - DMARC summary", html, text)

    if sent:
        report.last_sent_at = now
    report.next_run_at = calculate_next_run_at(
        report.frequency, report.hour, report.day_of_week, report.day_of_month, report.timezone, now
    )
    db.session.commit()
    logger.info(
        "Scheduled report %s processed: sent=%s recipients=%d next=%s",
        report.id,
        sent,
        len(recipients),
        report.next_run_at,
    )
    return sent


def send_due_reports(now: datetime | None = None) -> dict[str, int]:
    """Process every active schedule whose next_run_at has passed."""
    now = now or datetime.now(timezone.utc)
    due = db.session.execute(
        db.select(ScheduledReport).where(
            ScheduledReport.is_active.is_(True),
            ScheduledReport.next_run_at.is_not(None),
            ScheduledReport.next_run_at <= now,
        )
    ).scalars().all()

    sent = failed = 0
    for report in due:
        try:
            if send_scheduled_report(report, now):
                sent += 1
            else:
                failed += 1
        except Exception:
            db.session.rollback()
            failed += 1
            logger.exception("Scheduled report %s failed", report.id)
    return {"due": len(due), "sent": sent, "failed": failed}
