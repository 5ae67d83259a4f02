"""
Tests for the health check, the public DNS tools, organization search and
the API-key authenticated /api/v1 endpoints.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from werkzeug.middleware.proxy_fix import ProxyFix

from conftest import ORG_SLUG, TestConfig, aggregate_xml
from dmarc_analyser import create_app
from dmarc_analyser.models import ApiKey, Domain, Organization, Source
from dmarc_analyser.reports.importer import import_report
from dmarc_analyser.utils.api_keys import generate_api_key, hash_api_key, key_prefix

_QUERY = "dmarc_analyser.api.routes.query_dns"


def _dns_ok(*records: str) -> dict:
    return {"success": True, "records": list(records), "error_type": None, "error_message": None}


def _dns_fail(error_type: str, message: str = "failed") -> dict:
    return {"success": False, "records": [], "error_type": error_type, "error_message": message}


def test_health(client):
    body = client.get("/api/health").get_json()
    assert body["status"] == "ok"
    assert body["service"] == "DMARC Analyser"


# ---------------------------------------------------------------------------
# Public DNS tools
# ---------------------------------------------------------------------------


def test_dns_dmarc_returns_record(client):
    with patch(_QUERY, return_value=_dns_ok("unrelated", "v=DMARC1; p=reject")) as mock_query:
        body = client.get("/api/dns/dmarc?domain=Example.COM").get_json()

    assert body == {"record": "v=DMARC1; p=reject"}
    mock_query.assert_called_once_with("_dmarc.example.com", "TXT")


def test_dns_dmarc_missing_and_failed(client):
    with patch(_QUERY, return_value=_dns_fail("NXDOMAIN")):
        assert client.get("/api/dns/dmarc?domain=example.com").get_json() == {"record": None}
    with patch(_QUERY, return_value=_dns_fail("TIMEOUT")):
        assert client.get("/api/dns/dmarc?domain=example.com").status_code == 502


@pytest.mark.parametrize(
    "query, error",
    [
        ("", "Domain is required"),
        ("domain=not_a_domain", "Invalid domain format"),
        ("domain=example.com&type=mx", "Invalid type. Must be dmarc, spf, or dkim"),
        ("domain=example.com&type=dkim", "Selector is required for DKIM lookups"),
    ],
)
def test_dns_lookup_validation(client, query, error):
    response = client.get(f"/api/dns/lookup?{query}")
    assert response.status_code == 400
    assert response.get_json()["error"] == error


def test_dns_lookup_dkim(client):
    with patch(_QUERY, return_value=_dns_ok("v=DKIM1; k=rsa; p=MIGf")) as mock_query:
        body = client.get("/api/dns/lookup?domain=example.com&type=dkim&selector=google").get_json()

    mock_query.assert_called_once_with("google._domainkey.example.com", "TXT")
    assert body["found"] is True
    assert body["domain"] == "google._domainkey.example.com"


def test_dns_lookup_spf_not_found(client):
    with patch(_QUERY, return_value=_dns_ok("google-site-verification=abc")):
        body = client.get("/api/dns/lookup?domain=example.com&type=spf").get_json()
    assert body["found"] is False
    assert body["allRecords"] == ["google-site-verification=abc"]

    with patch(_QUERY, return_value=_dns_fail("NO_ANSWER")):
        body = client.get("/api/dns/lookup?domain=example.com&type=spf").get_json()
    assert body["error"] == "No SPF record found for example.com"


def test_dns_tools_are_rate_limited_per_ip(client):
    with patch(_QUERY, return_value=_dns_ok()):
        for _ in range(30):
            assert client.get("/api/dns/dmarc?domain=example.com").status_code == 200
        assert client.get("/api/dns/dmarc?domain=example.com").status_code == 429
        other_ip = client.get("/api/dns/dmarc?domain=example.com", environ_base={"REMOTE_ADDR": "203.0.113.1"})
    assert other_ip.status_code == 200


def test_dns_rate_limit_ignores_forwarded_header(client):
    with patch(_QUERY, return_value=_dns_ok()):
        statuses = [
            client.get(
                "/api/dns/dmarc?domain=example.com",
                headers={"X-Forwarded-For": f"198.51.100.{n}", "X-Real-IP": f"198.51.100.{n}"},
            ).status_code
            for n in range(40)
        ]
    assert statuses[:30] == [200] * 30
    assert set(statuses[30:]) == {429}


def test_proxy_fix_only_when_configured(app):
    class ProxiedConfig(TestConfig):
        PROXY_FIX_HOPS = 1

    assert not isinstance(app.wsgi_app, ProxyFix)
    proxied = create_app(ProxiedConfig)
    assert isinstance(proxied.wsgi_app, ProxyFix)

    proxied_client = proxied.test_client()
    with patch(_QUERY, return_value=_dns_ok()):
        for _ in range(30):
            proxied_client.get("/api/dns/dmarc?domain=example.com", headers={"X-Forwarded-For": "203.0.113.5"})
        blocked = proxied_client.get("/api/dns/dmarc?domain=example.com", headers={"X-Forwarded-For": "203.0.113.5"})
        other = proxied_client.get("/api/dns/dmarc?domain=example.com", headers={"X-Forwarded-For": "203.0.113.6"})
    assert blocked.status_code == 429
    assert other.status_code == 200


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def test_search_finds_domains_sources_and_reports(auth_client, db, domain):
    import_report(domain, xml=aggregate_xml(org_name="example-reporter.net"))
    source = db.session.execute(db.select(Source).where(Source.source_ip == "192.0.2.1")).scalar_one()
    source.organization = "Example Hosting"
    db.session.commit()

    results = auth_client.get(f"/api/orgs/{ORG_SLUG}/search?q=example").get_json()["results"]
    kinds = [r["type"] for r in results]
    assert kinds == ["domain", "source", "report"]
    assert results[1]["subtitle"] == "Example Hosting"
    assert results[2]["subtitle"] == "example.com - 2024-01-01"


def test_search_short_query_and_org_scope(auth_client, db):
    other = Organization(name="Other", slug="other")
    db.session.add(other)
    db.session.flush()
    db.session.add(Domain(organization_id=other.id, domain="secret.example", verification_token="t"))
    db.session.commit()

    assert auth_client.get(f"/api/orgs/{ORG_SLUG}/search?q=s").get_json() == {"results": []}
    assert auth_client.get(f"/api/orgs/{ORG_SLUG}/search?q=secret").get_json() == {"results": []}


# ---------------------------------------------------------------------------
# API v1
# ---------------------------------------------------------------------------


@pytest.fixture
def make_key(db, org):
    """Factory: store an API key with *scopes* and return the plaintext key."""

    def _make(scopes, expires_at=None, organization=None):
        key = generate_api_key()
        db.session.add(
            ApiKey(
                organization_id=(organization or org).id,
                name="CI",
                key_prefix=key_prefix(key),
                key_hash=hash_api_key(key),
                scopes=json.dumps(scopes),
                expires_at=expires_at,
            )
        )
        db.session.commit()
        return key

    return _make


def _bearer(key: str) -> dict:
    return {"Authorization": f"Bearer {key}"}


def test_v1_requires_valid_key(client, make_key):
    assert client.get("/api/v1/domains").get_json() == {"error": "Missing API key"}
    assert client.get("/api/v1/domains", headers=_bearer("dmarc_" + "x" * 32)).status_code == 401

    expired = make_key(["read:domains"], expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    assert client.get("/api/v1/domains", headers=_bearer(expired)).status_code == 401


def test_v1_enforces_scope(client, make_key):
    key = make_key(["read:reports"])
    response = client.get("/api/v1/domains", headers=_bearer(key))
    assert response.status_code == 403
    assert response.get_json()["error"] == "API key lacks required scope: read:domains"


def test_v1_lists_domains_with_stats(client, db, domain, make_key):
    key = make_key(["read:domains"])
    import_report(domain, xml=aggregate_xml())

    body = client.get("/api/v1/domains", headers=_bearer(key)).get_json()
    assert [d["domain"] for d in body["domains"]] == ["example.com"]
    assert "stats" in body["domains"][0]

    stored = db.session.execute(db.select(ApiKey)).scalar_one()
    assert stored.last_used_at is not None


def test_v1_is_scoped_to_key_organization(client, db, domain, make_key):
    other = Organization(name="Other", slug="other")
    db.session.add(other)
    db.session.commit()
    key = make_key(["read:domains", "read:reports", "read:sources"], organization=other)

    assert client.get(f"/api/v1/domains/{domain.id}", headers=_bearer(key)).status_code == 404
    assert client.get(f"/api/v1/domains/{domain.id}/reports", headers=_bearer(key)).status_code == 404
    assert client.get(f"/api/v1/domains/{domain.id}/sources", headers=_bearer(key)).status_code == 404


def test_v1_reports_and_sources(client, domain, make_key):
    key = make_key(["read:reports", "read:sources"])
    import_report(domain, xml=aggregate_xml())

    reports = client.get(f"/api/v1/domains/{domain.id}/reports", headers=_bearer(key)).get_json()
    assert reports["reports"][0]["reportId"] == "rpt-1"
    assert reports["pagination"]["total"] == 1

    sources = client.get(f"/api/v1/domains/{domain.id}/sources", headers=_bearer(key)).get_json()
    assert [s["sourceIp"] for s in sources["sources"]] == ["192.0.2.1", "198.51.100.7"]


def test_v1_create_domain(client, db, org, domain, make_key):
    key = make_key(["write:domains"])

    response = client.post("/api/v1/domains", json={"domain": "New.Example.org"}, headers=_bearer(key))
    assert response.status_code == 201
    assert response.get_json()["domain"] == "new.example.org"

    duplicate = client.post("/api/v1/domains", json={"domain": "example.com"}, headers=_bearer(key))
    assert duplicate.status_code == 400
    invalid = client.post("/api/v1/domains", json={"domain": "nope"}, headers=_bearer(key))
    assert invalid.get_json()["error"] == "Invalid domain format"
