"""
Tests for sources: known-sender matching, IP enrichment, the source routes
and the known-sender catalogue routes.

ip-api.com and DNS are always patched.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import ORG_SLUG, aggregate_xml, login
from dmarc_analyser.checker.spf_resolver import SpfResolution
from dmarc_analyser.models import AuditLog, KnownSender, Organization, Source
from dmarc_analyser.reports.importer import import_report
from dmarc_analyser.sources.geolocation import BATCH_SIZE, PRIVATE_NETWORK_LABEL, apply_geo, enrich_sources
from dmarc_analyser.sources.matcher import (
    auto_match_domain_sources,
    candidate_senders,
    dkim_domain_matches,
    ip_in_range,
    match_source,
    spf_matches,
)

_SENDERS = f"/api/orgs/{ORG_SLUG}/known-senders"
NOW = datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

_GEO = {
    "status": "success",
    "countryCode": "US",
    "regionName": "California",
    "city": "Mountain View",
    "isp": "Google LLC",
    "org": "Google Workspace",
    "as": "AS15169 Google LLC",
}


def _sender(db, name="Google Workspace", ranges=(), dkim=(), org=None, spf_include=None):
    sender = KnownSender(
        name=name,
        category="email",
        ip_ranges=json.dumps(list(ranges)),
        dkim_domains=json.dumps(list(dkim)),
        is_global=org is None,
        organization_id=org.id if org else None,
        spf_include=spf_include,
    )
    db.session.add(sender)
    db.session.commit()
    return sender


def _source(db, domain, ip, **kwargs):
    source = Source(domain_id=domain.id, source_ip=ip, **kwargs)
    db.session.add(source)
    db.session.commit()
    return source


def _sources_url(domain, suffix=""):
    return f"/api/orgs/{ORG_SLUG}/domains/{domain.id}/sources{suffix}"


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


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "ip, cidr, expected",
    [
        ("192.0.2.10", "192.0.2.0/24", True),
        ("192.0.3.10", "192.0.2.0/24", False),
        ("2001:db8::5", "2001:db8::/32", True),
        ("192.0.2.10", "2001:db8::/32", False),
        ("not-an-ip", "192.0.2.0/24", False),
        ("192.0.2.10", "garbage", False),
    ],
)
def test_ip_in_range(ip, cidr, expected):
    assert ip_in_range(ip, cidr) is expected


def test_dkim_domain_matches_exact_and_subdomain():
    assert dkim_domain_matches("Google.com", ["google.com"])
    assert dkim_domain_matches("mail.google.com", ["google.com"])
    assert not dkim_domain_matches("notgoogle.com", ["google.com"])


def test_candidates_include_global_and_own_only(db, org):
    other = Organization(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()
    _sender(db, "Global")
    _sender(db, "Mine", org=org)
    _sender(db, "Theirs", org=other)

    assert [s.name for s in candidate_senders(org.id)] == ["Global", "Mine"]


def test_ip_match_takes_priority_over_dkim(db, domain):
    import_report(domain, xml=aggregate_xml())
    by_dkim = _sender(db, "By DKIM", dkim=["example.com"])
    by_ip = _sender(db, "By IP", ranges=["192.0.2.0/24"])
    source = db.session.execute(db.select(Source).where(Source.source_ip == "192.0.2.1")).scalar_one()

    assert match_source(source, [by_dkim, by_ip]) is by_ip


def test_dkim_match_uses_signing_domains_from_reports(db, domain):
    import_report(domain, xml=aggregate_xml())
    sender = _sender(db, "Signer", dkim=["example.com"])
    source = db.session.execute(db.select(Source).where(Source.source_ip == "198.51.100.7")).scalar_one()

    assert match_source(source, [sender]) is sender


def test_auto_match_skips_already_matched(db, org, domain):
    sender = _sender(db, ranges=["192.0.2.0/24", "198.51.100.0/24"])
    _source(db, domain, "192.0.2.1")
    _source(db, domain, "198.51.100.7", known_sender_id=sender.id, is_known_sender=True)
    _source(db, domain, "185.199.108.153")

    assert auto_match_domain_sources(domain.id, org.id) == {"matched": 1, "total": 3}


def test_spf_matches_pairs_terms_with_senders(db):
    google = _sender(
        db, ranges=["35.190.0.0/16", "2001:4860:4000::/36"], spf_include="_spf.google.com"
    )
    record = "v=spf1 ip4:35.190.247.0/24 include:_SPF.Google.com -ip4:192.0.2.1 ip6:2001:4860:4000::/36 ~all"

    matches = spf_matches(record, [google])

    assert [(m["type"], m["value"]) for m in matches] == [
        ("include", "_spf.google.com"),
        ("ip4", "35.190.247.0/24"),
        ("ip4", "192.0.2.1"),
        ("ip6", "2001:4860:4000::/36"),
    ]
    assert [m["sender"] for m in matches] == [google, google, None, google]
    assert spf_matches(None, [google]) == []


def test_spf_matches_route(auth_client, db, org, domain):
    _sender(db, spf_include="_spf.google.com")
    other_org = Organization(name="Other", slug="other")
    db.session.add(other_org)
    db.session.commit()
    _sender(db, name="Private relay", org=other_org, spf_include="google.com")

    response = auth_client.get(f"/api/orgs/{ORG_SLUG}/domains/{domain.id}/spf-matches")

    assert response.status_code == 200
    (match,) = response.get_json()["matches"]
    assert match["type"] == "include"
    assert match["value"] == "_spf.google.com"
    assert match["sender"]["name"] == "Google Workspace"
    assert auth_client.get(f"/api/orgs/{ORG_SLUG}/domains/999/spf-matches").status_code == 404


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


def test_apply_geo_splits_as_field(db, domain):
    source = Source(domain_id=domain.id, source_ip="8.8.8.8")
    apply_geo(source, _GEO)

    assert source.country == "US"
    assert source.region == "California"
    assert source.organization == "Google Workspace"
    assert source.asn == "AS15169"
    assert source.asn_org == "Google LLC"


def test_enrich_labels_private_addresses_locally(db, domain):
    _source(db, domain, "10.1.2.3")
    with patch("dmarc_analyser.sources.geolocation.lookup_ip") as mock_lookup, patch(
        "dmarc_analyser.sources.geolocation.reverse_hostname", return_value=None
    ):
        result = enrich_sources(domain.id)

    mock_lookup.assert_not_called()
    assert result["enriched"] == 1
    assert result["remaining"] == 0
    source = db.session.execute(db.select(Source)).scalar_one()
    assert source.organization == PRIVATE_NETWORK_LABEL


def test_enrich_counts_errors_and_skips_failed(db, domain):
    _source(db, domain, "8.8.8.8")
    _source(db, domain, "185.199.108.153")
    with patch(
        "dmarc_analyser.sources.geolocation.lookup_ip", side_effect=[_GEO, None]
    ), patch("dmarc_analyser.sources.geolocation.reverse_hostname", return_value="dns.google"):
        result = enrich_sources(domain.id, now=NOW)

    assert result["enriched"] == 1
    assert result["errors"] == 1
    assert result["remaining"] == 0
    assert result["hasMore"] is False
    assert result["message"] == "Enriched 1 source"
    failed = db.session.execute(db.select(Source).where(Source.source_ip == "185.199.108.153")).scalar_one()
    assert failed.country is None
    assert failed.enrichment_attempted_at is not None


def test_failing_sources_do_not_starve_later_ones(db, domain):
    for n in range(BATCH_SIZE + 2):
        _source(db, domain, f"185.199.109.{n + 1}")
    _source(db, domain, "8.8.8.8")
    _source(db, domain, "1.1.1.1")

    def _lookup(ip):
        return _GEO if ip in ("8.8.8.8", "1.1.1.1") else None

    with patch("dmarc_analyser.sources.geolocation.lookup_ip", side_effect=_lookup) as mock_lookup, patch(
        "dmarc_analyser.sources.geolocation.reverse_hostname", return_value=None
    ):
        first = enrich_sources(domain.id, now=NOW)
        second = enrich_sources(domain.id, now=NOW)
        third = enrich_sources(domain.id, now=NOW)

    assert (first["enriched"], first["errors"], first["hasMore"]) == (0, BATCH_SIZE, True)
    assert (second["enriched"], second["errors"], second["hasMore"]) == (2, 2, False)
    assert third["message"] == "All sources already enriched"
    assert mock_lookup.call_count == BATCH_SIZE + 4
    good = db.session.execute(db.select(Source).where(Source.country.is_not(None))).scalars().all()
    assert sorted(s.source_ip for s in good) == ["1.1.1.1", "8.8.8.8"]


def test_failed_source_is_retried_after_a_day(db, domain):
    _source(db, domain, "185.199.108.153", enrichment_attempted_at=NOW - timedelta(hours=2))
    assert enrich_sources(domain.id, now=NOW)["message"] == "All sources already enriched"

    with patch("dmarc_analyser.sources.geolocation.lookup_ip", return_value=_GEO), patch(
        "dmarc_analyser.sources.geolocation.reverse_hostname", return_value=None
    ):
        result = enrich_sources(domain.id, now=NOW + timedelta(days=1))

    assert result["enriched"] == 1
    assert db.session.execute(db.select(Source)).scalar_one().country == "US"


def test_enrich_with_nothing_pending(db, domain):
    _source(db, domain, "8.8.8.8", country="US", organization="Google")
    assert enrich_sources(domain.id)["message"] == "All sources already enriched"


# ---------------------------------------------------------------------------
# Source routes
# ---------------------------------------------------------------------------


def test_list_sources_sorted_and_filtered(auth_client, db, domain):
    _source(db, domain, "192.0.2.1", total_messages=5, pass_count=5)
    _source(db, domain, "192.0.2.2", total_messages=50, pass_count=10, fail_count=40, source_type="suspicious")

    body = auth_client.get(_sources_url(domain)).get_json()
    assert [s["sourceIp"] for s in body["sources"]] == ["192.0.2.2", "192.0.2.1"]
    assert body["sources"][0]["passRate"] == 20.0
    assert body["pagination"]["total"] == 2

    body = auth_client.get(_sources_url(domain, "?type=suspicious")).get_json()
    assert len(body["sources"]) == 1
    assert auth_client.get(_sources_url(domain, "?type=bogus")).status_code == 400


def test_classify_source(auth_client, db, org, domain):
    source = _source(db, domain, "192.0.2.1")
    sender = _sender(db, org=org)

    response = auth_client.patch(
        _sources_url(domain, f"/{source.id}"),
        json={"sourceType": "legitimate", "notes": "Office relay", "knownSenderId": sender.id},
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["sourceType"] == "legitimate"
    assert body["knownSender"]["name"] == "Google Workspace"
    assert body["classifiedAt"] is not None
    audit = db.session.execute(db.select(AuditLog).where(AuditLog.action == "source.classify")).scalar_one()
    assert json.loads(audit.new_value)["sourceType"] == "legitimate"


def test_classify_rejects_bad_type_and_viewer(auth_client, viewer_client, db, domain):
    source = _source(db, domain, "192.0.2.1")
    url = _sources_url(domain, f"/{source.id}")

    assert auth_client.patch(url, json={"sourceType": "friendly"}).status_code == 400
    assert viewer_client.patch(url, json={"sourceType": "legitimate"}).status_code == 403


def test_match_route_single_and_bulk(member_client, db, domain):
    sender = _sender(db, ranges=["192.0.2.0/24"])
    source = _source(db, domain, "192.0.2.1")
    _source(db, domain, "203.0.113.1")

    body = member_client.post(_sources_url(domain, "/match"), json={"sourceId": source.id}).get_json()
    assert body["matched"] == 1
    assert body["sender"]["id"] == sender.id

    body = member_client.post(_sources_url(domain, "/match"), json={}).get_json()
    assert body == {"matched": 0, "total": 2}


def test_countries_groups_recent_sources(auth_client, db, domain):
    now = datetime.now(timezone.utc)
    _source(db, domain, "192.0.2.1", country="GB", total_messages=10, pass_count=8, fail_count=2, last_seen=now)
    _source(db, domain, "192.0.2.2", country="GB", total_messages=5, pass_count=5, last_seen=now)
    _source(db, domain, "192.0.2.3", total_messages=3, fail_count=3, last_seen=now)

    body = auth_client.get(_sources_url(domain, "/countries")).get_json()
    assert body["countries"] == [
        {"country": "GB", "sourceCount": 2, "totalMessages": 15, "passedMessages": 13, "failedMessages": 2}
    ]
    assert body["unknownStats"]["totalMessages"] == 3
    assert body["totals"]["sourceCount"] == 2
    assert body["period"] == "30 days"


def test_source_reports_lists_matching_reports(auth_client, db, domain):
    import_report(domain, xml=aggregate_xml())
    source = db.session.execute(db.select(Source).where(Source.source_ip == "198.51.100.7")).scalar_one()

    body = auth_client.get(_sources_url(domain, f"/{source.id}/reports")).get_json()
    assert body["source"]["sourceIp"] == "198.51.100.7"
    assert len(body["reports"]) == 1
    assert body["reports"][0]["totalMessages"] == 3
    assert body["reports"][0]["passRate"] == 0.0


# ---------------------------------------------------------------------------
# Known sender routes
# ---------------------------------------------------------------------------


def test_list_splits_global_and_org(auth_client, db, org):
    _sender(db, "Global One")
    _sender(db, "Our Relay", org=org)

    body = auth_client.get(_SENDERS).get_json()
    assert [s["name"] for s in body["global"]] == ["Global One"]
    assert [s["name"] for s in body["organization"]] == ["Our Relay"]


def test_create_sender_normalises_ranges(auth_client, db):
    response = auth_client.post(
        _SENDERS,
        json={
            "name": "Relay",
            "category": "infrastructure",
            "ipRanges": ["192.0.2.7", "198.51.100.0/24"],
            "dkimDomains": [" Relay.Example "],
        },
    )

    body = response.get_json()
    assert response.status_code == 201
    assert body["ipRanges"] == ["192.0.2.7/32", "198.51.100.0/24"]
    assert body["dkimDomains"] == ["relay.example"]
    assert body["isGlobal"] is False


@pytest.mark.parametrize(
    "payload, error",
    [
        ({"category": "email"}, "Name and category are required"),
        ({"name": "X", "category": "email", "ipRanges": "192.0.2.0/24"}, "ipRanges must be an array"),
        ({"name": "X", "category": "email", "ipRanges": ["300.1.1.1"]}, "Invalid IP range: 300.1.1.1"),
        ({"name": "X", "category": "email", "dkimDomains": [1]}, "dkimDomains must be an array of strings"),
    ],
)
def test_create_sender_validation(auth_client, payload, error):
    response = auth_client.post(_SENDERS, json=payload)
    assert response.status_code == 400
    assert response.get_json()["error"] == error


def test_member_cannot_create_sender(member_client):
    assert member_client.post(_SENDERS, json={"name": "X", "category": "email"}).status_code == 403


def test_global_senders_are_read_only(auth_client, db):
    sender = _sender(db, "Global One")

    response = auth_client.patch(f"{_SENDERS}/{sender.id}", json={"name": "Renamed"})
    assert response.status_code == 403
    assert auth_client.delete(f"{_SENDERS}/{sender.id}").status_code == 403


def test_update_and_delete_sender(auth_client, db, org):
    sender = _sender(db, "Relay", org=org)

    body = auth_client.patch(f"{_SENDERS}/{sender.id}", json={"website": "https://relay.example"}).get_json()
    assert body["website"] == "https://relay.example"
    assert auth_client.patch(f"{_SENDERS}/{sender.id}", json={"name": " "}).status_code == 400

    assert auth_client.delete(f"{_SENDERS}/{sender.id}").get_json() == {"success": True}
    assert db.session.get(KnownSender, sender.id) is None


def test_resolve_spf_replaces_ranges(auth_client, db, org):
    sender = _sender(db, "Relay", org=org, ranges=["10.0.0.0/8"], spf_include="_spf.relay.example")
    resolution = SpfResolution(ip_ranges=["192.0.2.0/24"], includes=[], errors=[])

    with patch("dmarc_analyser.senders.routes.resolve_spf_include", return_value=resolution):
        body = auth_client.post(f"{_SENDERS}/{sender.id}/resolve-spf").get_json()

    assert body["sender"]["ipRanges"] == ["192.0.2.0/24"]
    assert body["sender"]["spfResolvedAt"] is not None
    assert body["resolved"]["ipRanges"] == ["192.0.2.0/24"]


def test_resolve_spf_failures(auth_client, db, org):
    no_include = _sender(db, "Bare", org=org)
    assert auth_client.post(f"{_SENDERS}/{no_include.id}/resolve-spf").status_code == 400

    sender = _sender(db, "Relay", org=org, spf_include="missing.example")
    failed = SpfResolution(errors=["No SPF record found for missing.example"])
    with patch("dmarc_analyser.senders.routes.resolve_spf_include", return_value=failed):
        response = auth_client.post(f"{_SENDERS}/{sender.id}/resolve-spf")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No SPF record found for missing.example"


def test_spf_preview(auth_client):
    resolution = SpfResolution(ip_ranges=["192.0.2.0/24"], includes=["b.example"])
    with patch("dmarc_analyser.senders.routes.resolve_spf_include", return_value=resolution):
        body = auth_client.post("/api/spf/preview", json={"include": "a.example"}).get_json()

    assert body["success"] is True
    assert body["spfInclude"] == "a.example"
    assert body["includes"] == ["b.example"]
    assert auth_client.post("/api/spf/preview", json={}).status_code == 400
