"""
Tests for the organization dashboard: the cross-domain timeline and the
seven-day domain overview, through the service and the routes.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import ORG_SLUG, aggregate_xml
from dmarc_analyser.analytics.dashboard import org_domain_overview, org_timeline
from dmarc_analyser.models import Domain, DomainTag, DomainTagAssignment, Source
from dmarc_analyser.reports.importer import import_report

NOW = datetime(2024, 1, 5, tzinfo=timezone.utc)


def _add_domain(db, org, name):
    d = Domain(organization_id=org.id, domain=name, verification_token=f"tok-{name}")
    db.session.add(d)
    db.session.commit()
    return d


def _classify(db, ip, **fields):
    source = db.session.execute(db.select(Source).where(Source.source_ip == ip)).scalar_one()
    for name, value in fields.items():
        setattr(source, name, value)
    db.session.commit()


@pytest.fixture
def portfolio(db, org, domain):
    """example.com (13 messages), example.org (5) and a quiet, tagged quiet.net."""
    import_report(domain, xml=aggregate_xml())
    other = _add_domain(db, org, "example.org")
    import_report(
        other,
        xml=aggregate_xml(
            report_id="rpt-2", policy_domain="example.org", rows=[("203.0.113.9", 5, "pass", "fail", "example.org")]
        ),
    )
    quiet = _add_domain(db, org, "quiet.net")
    tag = DomainTag(organization_id=org.id, name="Parked", color="#ff0000")
    db.session.add(tag)
    db.session.flush()
    db.session.add(DomainTagAssignment(domain_id=quiet.id, tag_id=tag.id))
    db.session.commit()

    _classify(db, "192.0.2.1", source_type="legitimate", organization="Google", country="US")
    _classify(db, "198.51.100.7", source_type="suspicious", country="RU")
    return org


# ---------------------------------------------------------------------------
# Timeline
# ---------------------------------------------------------------------------


def test_org_timeline_sums_every_domain(portfolio):
    result = org_timeline(portfolio.id, now=NOW)

    assert result["daily"] == [{"date": "2024-01-01", "total": 18, "passed": 15, "failed": 3}]
    assert [(d["domain"], d["total"], d["passRate"]) for d in result["byDomain"]] == [
        ("example.com", 13, 77),
        ("example.org", 5, 100),
    ]
    assert result["summary"] == {
        "totalMessages": 18,
        "passedMessages": 15,
        "failedMessages": 3,
        "passRate": 83.3,
    }


def test_org_timeline_window_and_empty_org(db, portfolio):
    assert org_timeline(portfolio.id, days=2, now=NOW)["daily"] == []

    result = org_timeline(9999, now=NOW)
    assert result["byDomain"] == []
    assert result["summary"]["passRate"] == 0


# ---------------------------------------------------------------------------
# Domain overview
# ---------------------------------------------------------------------------


def test_overview_domains_sorted_by_volume_with_tags(portfolio):
    domains = org_domain_overview(portfolio.id, now=NOW)["domains"]

    assert [(d["domain"], d["totalMessages"], d["volumePercent"]) for d in domains] == [
        ("example.com", 13, 100),
        ("example.org", 5, 38),
        ("quiet.net", 0, 0),
    ]
    assert domains[0]["passRate"] == 77
    assert domains[2]["hasActivity"] is False
    assert domains[2]["tags"][0]["name"] == "Parked"


def test_overview_summary_and_source_mix(portfolio):
    result = org_domain_overview(portfolio.id, now=NOW)

    assert result["summary"] == {
        "activeDomains": 2,
        "inactiveDomains": 1,
        "totalMessages7d": 18,
        "passedMessages7d": 15,
        "failedMessages7d": 3,
        "passRate7d": 83,
        "dmarcCapablePercent": 56,
        "forwardedPercent": 0,
        "threatPercent": 44,
    }
    assert result["threatsByCountry"] == [{"country": "RU", "messages": 3}]
    assert result["topSources"] == [
        {"organization": "Google", "totalMessages": 10, "dmarcPercent": 100, "spfPercent": 100, "dkimPercent": 100},
        {"organization": "Unknown", "totalMessages": 8, "dmarcPercent": 63, "spfPercent": 0, "dkimPercent": 63},
    ]


def test_overview_ignores_old_activity(portfolio):
    result = org_domain_overview(portfolio.id, now=NOW + timedelta(days=30))

    assert result["summary"]["activeDomains"] == 0
    assert result["summary"]["totalMessages7d"] == 0
    assert result["topSources"] == []


def test_overview_empty_org(db):
    result = org_domain_overview(9999, now=NOW)
    assert result["domains"] == []
    assert result["summary"]["activeDomains"] == 0


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def test_dashboard_routes(auth_client, domain):
    begin = int((datetime.now(timezone.utc) - timedelta(days=2)).timestamp())
    import_report(domain, xml=aggregate_xml(begin=begin, end=begin + 86399))

    timeline = auth_client.get(f"/api/orgs/{ORG_SLUG}/dashboard/timeline?days=7").get_json()
    assert timeline["summary"]["totalMessages"] == 13
    assert auth_client.get(f"/api/orgs/{ORG_SLUG}/dashboard/timeline?days=0").status_code == 400

    overview = auth_client.get(f"/api/orgs/{ORG_SLUG}/domains/stats").get_json()
    assert overview["domains"][0]["domain"] == "example.com"
    assert overview["summary"]["totalMessages7d"] == 13


def test_dashboard_requires_membership(client):
    assert client.get(f"/api/orgs/{ORG_SLUG}/dashboard/timeline").status_code == 401
