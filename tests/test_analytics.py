"""
Tests for dmarc_analyser/analytics: pass rates, stats, timelines, CSV
export and the policy recommendation rules.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import aggregate_xml
from dmarc_analyser.analytics.export import export_domain, to_csv
from dmarc_analyser.analytics.policy import (
    PolicyMetrics,
    parse_policy,
    policy_recommendation,
    recommend_policy,
)
from dmarc_analyser.analytics.stats import domain_stats, domain_summary, pass_rate, timeline
from dmarc_analyser.reports.importer import import_report

NOW = datetime(2024, 1, 10, tzinfo=timezone.utc)


@pytest.fixture
def imported(domain):
    """example.com with one report: 10 passing and 3 failing messages on 2024-01-01."""
    result = import_report(domain, xml=aggregate_xml())
    assert result.success
    return domain


# ---------------------------------------------------------------------------
# Pass rate
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "passed, total, expected",
    [(0, 0, 0), (10, 13, 76.9), (1, 3, 33.3), (2, 3, 66.7), (1, 8, 12.5), (5, 5, 100.0)],
)
def test_pass_rate_rounds_half_up(passed, total, expected):
    assert pass_rate(passed, total) == expected


# ---------------------------------------------------------------------------
# Stats and timeline
# ---------------------------------------------------------------------------


def test_domain_stats(imported, org):
    stats = domain_stats(imported.id, org.id, now=NOW)

    assert stats["reportsLast30Days"] == 1
    assert stats["reportsAllTime"] == 1
    assert stats["totalMessages"] == 13
    assert stats["passedMessages"] == 10
    assert stats["passRate"] == 76.9
    assert stats["isSyncing"] is False


def test_domain_stats_excludes_old_reports_from_30_day_window(imported, org):
    later = datetime(2024, 3, 1, tzinfo=timezone.utc)
    stats = domain_stats(imported.id, org.id, now=later)

    assert stats["reportsLast30Days"] == 0
    assert stats["totalMessages"] == 0
    assert stats["totalMessagesAllTime"] == 13
    assert stats["passRateAllTime"] == 76.9


def test_timeline_groups_by_report_day(imported):
    result = timeline(imported.id, days=30, now=NOW)

    assert result["daily"] == [
        {"date": "2024-01-01", "total": 13, "passed": 10, "failed": 3, "none": 13, "quarantine": 0, "reject": 0}
    ]
    assert result["authentication"] == {"dkimPass": 10, "dkimFail": 3, "spfPass": 10, "spfFail": 3}
    assert result["summary"]["failedMessages"] == 3


def test_domain_summary(imported):
    assert domain_summary(imported.id, now=NOW) == {"totalMessages": 13, "passedMessages": 10, "passRate": 76.9}


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def test_export_reports_csv(imported):
    filename, content = export_domain(imported, "reports", now=NOW)

    assert filename == "example.com-reports-2024-01-10.csv"
    lines = content.splitlines()
    assert lines[0].startswith("Report ID,Org Name,Domain,Date Range Start")
    assert len(lines) == 3
    assert lines[1].startswith("rpt-1,google.com,example.com,2024-01-01T00:00:00+00:00")


def test_export_timeline_counts_unique_sources(imported):
    _, content = export_domain(imported, "timeline", now=NOW)
    assert content.splitlines()[1] == "2024-01-01,13,10,3,76.9,2"


def test_export_rejects_unknown_type(imported):
    with pytest.raises(ValueError, match="Invalid export type"):
        export_domain(imported, "everything")


def test_export_neutralises_formula_cells(domain):
    import_report(domain, xml=aggregate_xml(report_id="@SUM(A1:A9)", org_name="=HYPERLINK(1)"))

    _, content = export_domain(domain, "reports", now=NOW)

    assert content.splitlines()[1].startswith("'@SUM(A1:A9),'=HYPERLINK(1),example.com,")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("=1+2", "'=1+2"),
        ("+cmd", "'+cmd"),
        ("-2+3", "'-2+3"),
        ("@A1", "'@A1"),
        ("mail.example.com", "mail.example.com"),
        (-5, "-5"),
    ],
)
def test_to_csv_cells(value, expected):
    assert to_csv(["Value"], [[value]]).splitlines()[1] == expected


# ---------------------------------------------------------------------------
# Policy recommendation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "record, expected",
    [
        ("v=DMARC1; p=reject", "reject"),
        ("v=DMARC1; p=QUARANTINE", "quarantine"),
        ("v=DMARC1; p=bogus", "none"),
        (None, "none"),
    ],
)
def test_parse_policy(record, expected):
    assert parse_policy(record) == expected


def test_recommend_upgrade_from_none():
    result = recommend_policy(
        PolicyMetrics(
            current_policy="none",
            pass_rate=97,
            pass_rate_7d=96,
            pass_rate_30d=97,
            total_messages=1000,
            unique_sources=4,
            known_sources=4,
            unknown_sources=0,
            days_monitored=40,
        )
    )

    assert result["recommendedPolicy"] == "quarantine"
    assert result["confidence"] == 99
    assert result["readyToUpgrade"] is True
    assert result["blockers"] == []
    assert "1,000 messages analyzed" in result["achievements"]


def test_recommend_quarantine_to_reject_requires_no_unknown_sources():
    metrics = PolicyMetrics(
        current_policy="quarantine",
        pass_rate_7d=99,
        pass_rate_30d=99,
        total_messages=5000,
        unique_sources=3,
        known_sources=2,
        unknown_sources=1,
        days_monitored=60,
    )
    result = recommend_policy(metrics)

    assert result["recommendedPolicy"] == "quarantine"
    assert result["confidence"] == 70
    assert "1 unknown source(s) need classification" in result["blockers"]
    assert result["readyToUpgrade"] is False


def test_recommend_relaxing_reject_when_pass_rate_drops():
    result = recommend_policy(
        PolicyMetrics(current_policy="reject", pass_rate_7d=70, pass_rate_30d=85, total_messages=500, days_monitored=90)
    )

    assert result["recommendedPolicy"] == "quarantine"
    assert "Pass rate has dropped - consider relaxing policy temporarily" in result["blockers"]
    assert "Recent pass rate declining (7-day: 70%)" in result["blockers"]


def test_recommend_low_pass_rate_on_quarantine_suggests_none():
    result = recommend_policy(
        PolicyMetrics(current_policy="quarantine", pass_rate_7d=60, pass_rate_30d=62.5, days_monitored=10)
    )

    assert result["recommendedPolicy"] == "none"
    assert result["confidence"] == 40
    assert "Pass rate too low: 62.5%" in result["blockers"]
    assert "Consider reverting to p=none to investigate issues" in result["blockers"]


def test_policy_recommendation_without_reports(domain):
    result = policy_recommendation(domain, now=NOW)

    assert result["recommendedPolicy"] == "none"
    assert result["blockers"] == ["No DMARC reports received yet"]


def test_policy_recommendation_from_stored_reports(imported):
    result = policy_recommendation(imported, now=NOW)

    assert result["currentPolicy"] == "none"
    assert result["daysMonitored"] == 9
    assert result["totalMessages"] == 13
    assert result["unknownSources"] == 2
    assert "Need at least 30 days of data (currently 9)" in result["blockers"]
    assert result["readyToUpgrade"] is False
