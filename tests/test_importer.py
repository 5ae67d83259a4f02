"""
Tests for dmarc_analyser/reports/importer.py

Covers report storage, duplicate detection, domain mismatch, the Source
and Subdomain roll-ups and the post-import new-source alerts.
"""

from __future__ import annotations

from conftest import ARF_REPORT, aggregate_xml
from dmarc_analyser.models import Alert, ForensicReport, Report, Source, Subdomain
from dmarc_analyser.reports.importer import extract_subdomain, import_forensic_report, import_report


def test_extract_subdomain():
    assert extract_subdomain("Mail.Example.com", "example.com") == "mail.example.com"
    assert extract_subdomain("example.com", "example.com") is None
    assert extract_subdomain("notexample.com", "example.com") is None
    assert extract_subdomain(None, "example.com") is None


def test_import_stores_report_and_records(db, domain):
    result = import_report(domain, xml=aggregate_xml())

    assert result.success is True
    assert result.skipped is False
    report = db.session.get(Report, result.report_id)
    assert report.domain_id == domain.id
    assert report.policy_p == "none"
    assert len(report.records) == 2
    assert {r.source_ip for r in report.records} == {"192.0.2.1", "198.51.100.7"}
    assert report.records[0].dkim_results[0].selector == "google"


def test_import_rolls_up_sources_and_subdomains(db, domain):
    import_report(domain, xml=aggregate_xml())
    import_report(
        domain,
        xml=aggregate_xml(report_id="rpt-2", rows=[("192.0.2.1", 5, "fail", "pass", "example.com")]),
    )

    source = db.session.execute(
        db.select(Source).where(Source.domain_id == domain.id, Source.source_ip == "192.0.2.1")
    ).scalar_one()
    assert source.total_messages == 15
    assert source.pass_count == 15
    assert source.fail_count == 0

    subdomain = db.session.execute(db.select(Subdomain).where(Subdomain.domain_id == domain.id)).scalar_one()
    assert subdomain.subdomain == "mail.example.com"
    assert subdomain.message_count == 3
    assert subdomain.fail_count == 3


def test_import_skips_duplicates(db, domain):
    first = import_report(domain, xml=aggregate_xml())
    second = import_report(domain, xml=aggregate_xml())

    assert second.success is True
    assert second.skipped is True
    assert second.skip_reason == "Report already imported"
    assert second.report_id == first.report_id
    assert db.session.execute(db.select(db.func.count(Report.id))).scalar_one() == 1


def test_import_rejects_domain_mismatch(db, domain):
    result = import_report(domain, xml=aggregate_xml(policy_domain="other.org"))

    assert result.success is False
    assert result.error == "Report domain mismatch: expected example.com, got other.org"
    assert result.to_dict() == {"success": False, "error": result.error}


def test_import_returns_parse_errors(domain):
    result = import_report(domain, filename="broken.gz", data=b"garbage")
    assert result.success is False
    assert "Unsupported or corrupt attachment" in result.error


def test_import_creates_new_source_alerts(db, domain):
    import_report(domain, xml=aggregate_xml())

    alerts = db.session.execute(
        db.select(Alert).where(Alert.domain_id == domain.id, Alert.type == "new_source")
    ).scalars().all()
    assert len(alerts) == 2
    assert alerts[0].title == "New email source detected"


def test_import_forensic_report(db, domain):
    result = import_forensic_report(domain, ARF_REPORT, gmail_message_id="gm-1")
    assert result.success is True

    stored = db.session.get(ForensicReport, result.report_id)
    assert stored.source_ip == "203.0.113.9"
    assert stored.gmail_message_id == "gm-1"

    again = import_forensic_report(domain, ARF_REPORT, gmail_message_id="gm-1")
    assert again.skipped is True
