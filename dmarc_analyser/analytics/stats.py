"""
Domain statistics and daily timelines.

Records are fetched joined to their report and summed in Python; a record
passes DMARC when either aligned DKIM or aligned SPF passed.  Records are
bucketed by their report's ``date_range_begin``.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.models import GmailAccount, Record, Report, as_utc

logger = logging.getLogger(__name__)

STALE_SYNC_AFTER = timedelta(minutes=30)


def pass_rate(passed: int, total: int) -> float:
    """Percentage rounded half-up to one decimal; 0 when *total* is 0."""
    if total <= 0:
        return 0
    return math.floor(passed / total * 1000 + 0.5) / 10


def _record_rows(domain_id: int, start: datetime | None = None, end: datetime | None = None):
    query = (
        db.select(
            Report.date_range_begin,
            Record.count,
            Record.disposition,
            Record.dmarc_dkim,
            Record.dmarc_spf,
        )
        .join(Report, Record.report_id == Report.id)
        .where(Report.domain_id == domain_id)
    )
    if start is not None:
        query = query.where(Report.date_range_begin >= start)
    if end is not None:
        query = query.where(Report.date_range_begin <= end)
    return db.session.execute(query).all()


def reset_stale_sync(organization_id: int, now: datetime | None = None) -> bool:
    """Return True if a Gmail sync is running for the org.

    A sync flagged as running for more than 30 minutes is reset to idle.
    """
    now = now or datetime.now(timezone.utc)
    account = db.session.execute(
        db.select(GmailAccount).where(
            GmailAccount.organization_id == organization_id,
            GmailAccount.sync_status == "syncing",
        )
    ).scalars().first()
    if account is None:
        return False

    started = as_utc(account.sync_started_at)
    if started is not None and now - started > STALE_SYNC_AFTER:
        logger.warning("Resetting stale Gmail sync for account %s (started %s)", account.id, started)
        account.sync_status = "idle"
        account.sync_progress = None
        db.session.commit()
        return False
    return True


def domain_stats(domain_id: int, organization_id: int, now: datetime | None = None) -> dict[str, Any]:
    """30-day and all-time report, message and pass-rate totals for a domain."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=30)

    reports_all = db.session.execute(
        db.select(db.func.count(Report.id)).where(Report.domain_id == domain_id)
    ).scalar_one()
    reports_30d = db.session.execute(
        db.select(db.func.count(Report.id)).where(
            Report.domain_id == domain_id, Report.date_range_begin >= since
        )
    ).scalar_one()

    total_all = passed_all = total_30d = passed_30d = 0
    for begin, count, _disposition, dkim, spf in _record_rows(domain_id):
        passed = dkim == "pass" or spf == "pass"
        total_all += count
        if passed:
            passed_all += count
        if as_utc(begin) >= since:
            total_30d += count
            if passed:
                passed_30d += count

    return {
        "reportsLast30Days": reports_30d,
        "reportsAllTime": reports_all,
        "totalMessages": total_30d,
        "totalMessagesAllTime": total_all,
        "passedMessages": passed_30d,
        "passedMessagesAllTime": passed_all,
        "passRate": pass_rate(passed_30d, total_30d),
        "passRateAllTime": pass_rate(passed_all, total_all),
        "isSyncing": reset_stale_sync(organization_id, now),
    }


def timeline(
    domain_id: int,
    *,
    days: int = 30,
    start: datetime | None = None,
    end: datetime | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Daily totals between *start* and *end* (default: the last *days* days).

    Returns:
        ``{"daily": [...], "disposition": {...}, "authentication": {...},
        "summary": {...}}`` with ``daily`` sorted by date.
    """
    now = now or datetime.now(timezone.utc)
    if start is None or end is None:
        start, end = now - timedelta(days=days), now

    daily: dict[str, dict[str, Any]] = {}
    disposition = {"none": 0, "quarantine": 0, "reject": 0}
    authentication = {"dkimPass": 0, "dkimFail": 0, "spfPass": 0, "spfFail": 0}
    total = passed_total = failed_total = 0

    for begin, count, record_disposition, dkim, spf in _record_rows(domain_id, start, end):
        key = as_utc(begin).strftime("%Y-%m-%d")
        day = daily.setdefault(
            key,
            {"date": key, "total": 0, "passed": 0, "failed": 0, "none": 0, "quarantine": 0, "reject": 0},
        )
        passed = dkim == "pass" or spf == "pass"
        day["total"] += count
        day["passed" if passed else "failed"] += count

        if record_disposition in disposition:
            day[record_disposition] += count
            disposition[record_disposition] += count

        if dkim == "pass":
            authentication["dkimPass"] += count
        elif dkim == "fail":
            authentication["dkimFail"] += count
        if spf == "pass":
            authentication["spfPass"] += count
        elif spf == "fail":
            authentication["spfFail"] += count

        total += count
        if passed:
            passed_total += count
        else:
            failed_total += count

    return {
        "daily": [daily[k] for k in sorted(daily)],
        "disposition": disposition,
        "authentication": authentication,
        "summary": {
            "totalMessages": total,
            "passedMessages": passed_total,
            "failedMessages": failed_total,
            "passRate": pass_rate(passed_total, total),
        },
    }


def domain_summary(domain_id: int, now: datetime | None = None) -> dict[str, Any]:
    """Compact 30-day summary used by domain listings and scheduled reports."""
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=30)
    total = passed = 0
    for _begin, count, _disposition, dkim, spf in _record_rows(domain_id, since):
        total += count
        if dkim == "pass" or spf == "pass":
            passed += count
    return {"totalMessages": total, "passedMessages": passed, "passRate": pass_rate(passed, total)}
