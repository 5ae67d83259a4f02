"""
Persist parsed DMARC reports.

``import_report`` stores one aggregate report with its records and auth
results, rolls the counts up into Source and Subdomain rows, and then runs
the post-import alert checks.  Duplicates are detected on
``(report_id, org_name)``: first with a lookup, then by the unique
constraint when two imports race.

``import_forensic_report`` stores one ARF failure report.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import IntegrityError

from dmarc_analyser import db
from dmarc_analyser.models import (
    DkimResult,
    Domain,
    ForensicReport,
    Record,
    Report,
    Source,
    SpfResult,
    Subdomain,
)
from dmarc_analyser.reports.forensic import parse_forensic_report
from dmarc_analyser.reports.parser import ReportParseError, parse_dmarc_attachment, parse_dmarc_report

logger = logging.getLogger(__name__)


@dataclass
class ImportResult:
    """Outcome of importing one report."""

    success: bool
    report_id: int | None = None
    skipped: bool = False
    skip_reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.report_id is not None:
            result["reportId"] = self.report_id
        if self.skipped:
            result["skipped"] = True
            result["skipReason"] = self.skip_reason
        if self.error:
            result["error"] = self.error
        return result


def extract_subdomain(header_from: str | None, domain: str) -> str | None:
    """Return *header_from* lower-cased when it is a strict subdomain of *domain*."""
    if not header_from:
        return None
    header_from = header_from.strip().lower()
    domain = domain.strip().lower()
    if header_from != domain and header_from.endswith("." + domain):
        return header_from
    return None


def _tally(counts: dict[str, list[int]], key: str, count: int, passed: bool) -> None:
    entry = counts.setdefault(key, [0, 0, 0])
    entry[0] += count
    entry[1 if passed else 2] += count


def _upsert_source(domain_id: int, ip: str, counts: list[int], begin, end) -> None:
    source = db.session.execute(
        db.select(Source).where(Source.domain_id == domain_id, Source.source_ip == ip)
    ).scalar_one_or_none()
    if source is None:
        source = Source(
            domain_id=domain_id,
            source_ip=ip,
            total_messages=0,
            pass_count=0,
            fail_count=0,
            first_seen=begin,
        )
        db.session.add(source)
    total, passed, failed = counts
    source.total_messages = (source.total_messages or 0) + total
    source.pass_count = (source.pass_count or 0) + passed
    source.fail_count = (source.fail_count or 0) + failed
    source.last_seen = end


def _upsert_subdomain(domain_id: int, name: str, counts: list[int], begin, end) -> None:
    subdomain = db.session.execute(
        db.select(Subdomain).where(Subdomain.domain_id == domain_id, Subdomain.subdomain == name)
    ).scalar_one_or_none()
    if subdomain is None:
        subdomain = Subdomain(
            domain_id=domain_id,
            subdomain=name,
            message_count=0,
            pass_count=0,
            fail_count=0,
            first_seen=begin,
        )
        db.session.add(subdomain)
    total, passed, failed = counts
    subdomain.message_count = (subdomain.message_count or 0) + total
    subdomain.pass_count = (subdomain.pass_count or 0) + passed
    subdomain.fail_count = (subdomain.fail_count or 0) + failed
    subdomain.last_seen = end


def store_report(domain: Domain, parsed: dict[str, Any], gmail_message_id: str | None = None) -> ImportResult:
    """Store an already-parsed aggregate report for *domain*.

    Does not run alert checks; see :func:`import_report`.
    """
    metadata = parsed["metadata"]
    policy = parsed["policy"]

    existing = db.session.execute(
        db.select(Report.id).where(
            Report.report_id == metadata["report_id"],
            Report.org_name == metadata["org_name"],
        )
    ).scalar_one_or_none()
    if existing is not None:
        return ImportResult(
            success=True, report_id=existing, skipped=True, skip_reason="Report already imported"
        )

    if policy["domain"].lower() != domain.domain.lower():
        return ImportResult(
            success=False,
            error=f"Report domain mismatch: expected {domain.domain}, got {policy['domain']}",
        )

    begin = metadata["date_range_begin"]
    end = metadata["date_range_end"]
    report = Report(
        domain_id=domain.id,
        report_id=metadata["report_id"],
        org_name=metadata["org_name"],
        email=metadata.get("email"),
        extra_contact_info=metadata.get("extra_contact_info"),
        date_range_begin=begin,
        date_range_end=end,
        policy_domain=policy["domain"],
        policy_adkim=policy.get("adkim"),
        policy_aspf=policy.get("aspf"),
        policy_p=policy["p"],
        policy_sp=policy.get("sp"),
        policy_pct=policy.get("pct"),
        raw_xml=parsed.get("raw_xml"),
        gmail_message_id=gmail_message_id,
    )
    db.session.add(report)

    # ip or subdomain -> [total, passed, failed]
    source_counts: dict[str, list[int]] = {}
    subdomain_counts: dict[str, list[int]] = {}

    for row in parsed["records"]:
        override = row.get("policy_override_reason")
        record = Record(
            source_ip=row["source_ip"],
            count=row["count"],
            disposition=row["disposition"],
            dmarc_dkim=row.get("dmarc_dkim"),
            dmarc_spf=row.get("dmarc_spf"),
            header_from=row.get("header_from"),
            envelope_from=row.get("envelope_from"),
            envelope_to=row.get("envelope_to"),
            policy_override_reason=json.dumps(override) if override else None,
        )
        for dkim in row.get("dkim_results", []):
            record.dkim_results.append(
                DkimResult(
                    domain=dkim["domain"],
                    selector=dkim.get("selector"),
                    result=dkim["result"],
                    human_result=dkim.get("human_result"),
                )
            )
        for spf in row.get("spf_results", []):
            record.spf_results.append(
                SpfResult(domain=spf["domain"], scope=spf.get("scope") or "mfrom", result=spf["result"])
            )
        report.records.append(record)

        _tally(source_counts, record.source_ip, record.count, record.passed)
        subdomain = extract_subdomain(record.header_from, domain.domain)
        if subdomain:
            _tally(subdomain_counts, subdomain, record.count, record.passed)

    # The report is flushed at commit so a racing duplicate fails there.
    with db.session.no_autoflush:
        for ip, counts in source_counts.items():
            _upsert_source(domain.id, ip, counts, begin, end)
        for name, counts in subdomain_counts.items():
            _upsert_subdomain(domain.id, name, counts, begin, end)

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(
            "Duplicate report skipped: report_id=%r org=%r", metadata["report_id"], metadata["org_name"]
        )
        return ImportResult(success=True, skipped=True, skip_reason="Report already imported")

    logger.info(
        "Imported report id=%s report_id=%r org=%r domain=%s records=%d",
        report.id,
        report.report_id,
        report.org_name,
        domain.domain,
        len(report.records),
    )
    return ImportResult(success=True, report_id=report.id)


def import_report(
    domain: Domain,
    *,
    xml: str | None = None,
    filename: str | None = None,
    data: bytes | None = None,
    gmail_message_id: str | None = None,
) -> ImportResult:
    """Parse and import one aggregate report, then run alert checks.

    Pass either *xml* or the raw attachment (*filename* and *data*).
    Parse errors are returned in the result rather than raised.
    """
    try:
        if xml is not None:
            parsed = parse_dmarc_report(xml)
        else:
            parsed = parse_dmarc_attachment(filename or "", data or b"")
    except ReportParseError as exc:
        logger.warning("Report parse failed for %s: %s", domain.domain, exc)
        return ImportResult(success=False, error=str(exc))

    result = store_report(domain, parsed, gmail_message_id)
    if result.success and not result.skipped:
        from dmarc_analyser.alerts.service import process_report_imported

        report = db.session.get(Report, result.report_id)
        try:
            process_report_imported(domain, report)
        except Exception:
            db.session.rollback()
            logger.exception("Post-import checks failed for report %s", result.report_id)
    return result


def import_forensic_report(
    domain: Domain, data: bytes, gmail_message_id: str | None = None
) -> ImportResult:
    """Parse and store one ARF failure report for *domain*."""
    try:
        parsed = parse_forensic_report(data)
    except ReportParseError as exc:
        logger.warning("Forensic parse failed for %s: %s", domain.domain, exc)
        return ImportResult(success=False, error=str(exc))

    if gmail_message_id:
        existing = db.session.execute(
            db.select(ForensicReport.id).where(
                ForensicReport.domain_id == domain.id,
                ForensicReport.gmail_message_id == gmail_message_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            return ImportResult(
                success=True, report_id=existing, skipped=True, skip_reason="Report already imported"
            )

    auth_results = parsed.pop("auth_results")
    report = ForensicReport(
        domain_id=domain.id,
        gmail_message_id=gmail_message_id,
        auth_results=json.dumps(auth_results) if auth_results else None,
        **parsed,
    )
    db.session.add(report)
    db.session.commit()
    logger.info(
        "Imported forensic report id=%s domain=%s source_ip=%s", report.id, domain.domain, report.source_ip
    )
    return ImportResult(success=True, report_id=report.id)
