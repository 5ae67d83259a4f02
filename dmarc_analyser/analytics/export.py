"""
CSV export of reports, sources and daily timelines for one domain.

Each export type has a fixed header row.  Dates are written as ISO 8601
UTC; a missing value is an empty cell.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import Domain, Record, Report, Source, as_utc

logger = logging.getLogger(__name__)

EXPORT_TYPES: tuple[str, ...] = ("reports", "sources", "timeline")

REPORT_COLUMNS = [
    "Report ID",
    "Org Name",
    "Domain",
    "Date Range Start",
    "Date Range End",
    "Source IP",
    "Source Count",
    "SPF Result",
    "DKIM Result",
    "DMARC Disposition",
    "Policy Override",
]
SOURCE_COLUMNS = [
    "Source IP",
    "Hostname",
    "Country",
    "City",
    "ASN",
    "Org Name",
    "Total Messages",
    "Pass Count",
    "Fail Count",
    "First Seen",
    "Last Seen",
    "Classification",
]
TIMELINE_COLUMNS = ["Date", "Total Messages", "Passed", "Failed", "Pass Rate", "Unique Sources"]


def _iso(value: datetime | None) -> str:
    value = as_utc(value)
    return value.isoformat() if value else ""


# Spreadsheets evaluate text cells starting with these as formulas.
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, str) and value.startswith(_FORMULA_PREFIXES):
        return "'" + value
    return value


def to_csv(header: list[str], rows: Iterable[list[Any]]) -> str:
    """Render *header* and *rows* as CSV text.

    ``None`` becomes an empty cell and text that a spreadsheet would run as
    a formula is prefixed with a single quote.  Numbers are written as is.
    """
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(header)
    for row in rows:
        writer.writerow([_cell(value) for value in row])
    content = output.getvalue()
    output.close()
    return content


# ---------------------------------------------------------------------------
# Row builders
# ---------------------------------------------------------------------------


def report_rows(domain: Domain, date_from: datetime | None = None, date_to: datetime | None = None) -> list[list[Any]]:
    """One row per record of every report in range."""
    query = (
        db.select(Report, Record)
        .join(Record, Record.report_id == Report.id)
        .where(Report.domain_id == domain.id)
        .order_by(Report.date_range_begin, Record.id)
    )
    if date_from is not None:
        query = query.where(Report.date_range_begin >= date_from)
    if date_to is not None:
        query = query.where(Report.date_range_end <= date_to)

    rows = []
    for report, record in db.session.execute(query).all():
        override = record.get_policy_override_reason()
        rows.append(
            [
                report.report_id,
                report.org_name,
                domain.domain,
                _iso(report.date_range_begin),
                _iso(report.date_range_end),
                record.source_ip,
                record.count,
                record.dmarc_spf or "none",
                record.dmarc_dkim or "none",
                record.disposition or "none",
                json.dumps(override) if override else "",
            ]
        )
    return rows


def source_rows(domain: Domain, date_from: datetime | None = None, date_to: datetime | None = None) -> list[list[Any]]:
    query = db.select(Source).where(Source.domain_id == domain.id).order_by(Source.total_messages)
    if date_from is not None:
        query = query.where(Source.first_seen >= date_from)
    if date_to is not None:
        query = query.where(Source.last_seen <= date_to)
    return [
        [
            source.source_ip,
            source.hostname,
            source.country,
            source.city,
            source.asn,
            source.organization,
            source.total_messages,
            source.pass_count,
            source.fail_count,
            _iso(source.first_seen),
            _iso(source.last_seen),
            source.source_type,
        ]
        for source in db.session.execute(query).scalars()
    ]


def timeline_rows(domain: Domain, date_from: datetime | None = None, date_to: datetime | None = None) -> list[list[Any]]:
    """One row per report day with totals and the number of distinct source IPs."""
    query = (
        db.select(Report.date_range_begin, Record.source_ip, Record.count, Record.dmarc_dkim, Record.dmarc_spf)
        .join(Report, Record.report_id == Report.id)
        .where(Report.domain_id == domain.id)
    )
    if date_from is not None:
        query = query.where(Report.date_range_begin >= date_from)
    if date_to is not None:
        query = query.where(Report.date_range_end <= date_to)

    days: dict[str, dict[str, Any]] = {}
    for begin, source_ip, count, dkim, spf in db.session.execute(query).all():
        key = as_utc(begin).strftime("%Y-%m-%d")
        day = days.setdefault(key, {"total": 0, "passed": 0, "failed": 0, "sources": set()})
        day["total"] += count
        day["sources"].add(source_ip)
        if dkim == "pass" or spf == "pass":
            day["passed"] += count
        else:
            day["failed"] += count

    return [
        [
            key,
            day["total"],
            day["passed"],
            day["failed"],
            pass_rate(day["passed"], day["total"]),
            len(day["sources"]),
        ]
        for key, day in sorted(days.items())
    ]


_BUILDERS = {
    "reports": (REPORT_COLUMNS, report_rows),
    "sources": (SOURCE_COLUMNS, source_rows),
    "timeline": (TIMELINE_COLUMNS, timeline_rows),
}


def export_domain(
    domain: Domain,
    export_type: str,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Build one export.

    Returns:
        ``(filename, csv_text)`` where filename is
        ``<domain>-<type>-<YYYY-MM-DD>.csv``.

    Raises:
        ValueError: For an unknown *export_type*.
    """
    if export_type not in _BUILDERS:
        raise ValueError("Invalid export type. Must be: reports, sources, or timeline")
    header, builder = _BUILDERS[export_type]
    rows = builder(domain, date_from, date_to)
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    logger.info("Export %s for %s: %d rows", export_type, domain.domain, len(rows))
    return f"{domain.domain}-{export_type}-{stamp}.csv", to_csv(header, rows)
