"""
Shared pytest fixtures for the DMARC Analyser test suite.

All fixtures use an in-memory SQLite database so tests are fully
isolated and require no external services or real DNS lookups.

The seeded organization ``acme`` is owned by ``owner@example.com``;
``auth_client`` is logged in as that owner.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from flask import g

from dmarc_analyser import create_app
from dmarc_analyser import db as _db
from dmarc_analyser.config import Config
from dmarc_analyser.models import Domain, OrgMember, Organization, User
from dmarc_analyser.utils.rate_limit import clear_all_rate_limits

OWNER_EMAIL = "owner@example.com"
PASSWORD = "testpass123"
ORG_SLUG = "acme"


# ---------------------------------------------------------------------------
# Test configuration
# ---------------------------------------------------------------------------


class TestConfig(Config):
    """Minimal Flask config for automated testing."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS: dict = {}
    WTF_CSRF_ENABLED = False
    SECRET_KEY = "test-secret-key-not-for-production"
    ENCRYPTION_KEY = "test-encryption-key"
    APP_BASE_URL = "http://testserver"
    # NOTE: Do NOT set SERVER_NAME here; it causes 404s in the test client
    # because all routes would need the Host header to match exactly.
    LOGIN_DISABLED = False
    STRIPE_SECRET_KEY = None
    STRIPE_WEBHOOK_SECRET = None
    MAIL_API_URL = None
    GMAIL_CLIENT_ID = "test-client-id"
    GMAIL_CLIENT_SECRET = "test-client-secret"
    GMAIL_REDIRECT_URI = "http://testserver/api/gmail/callback"
    IP_ENRICH_DELAY_SECONDS = 0.0


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="function")
def app():
    """Create a Flask application instance backed by an in-memory database.

    A fresh database is created for every test function and torn down
    after the function completes, guaranteeing full isolation.
    """
    clear_all_rate_limits()
    flask_app = create_app(TestConfig)

    @flask_app.before_request
    def _reset_request_globals():
        # Requests reuse the fixture app context, so g outlives a request.
        for name in ("_login_user", "current_org", "current_membership", "api_key"):
            g.pop(name, None)

    with flask_app.app_context():
        _db.create_all()

        owner = User(email=OWNER_EMAIL, name="Owner")
        owner.set_password(PASSWORD)
        _db.session.add(owner)
        _db.session.flush()

        org = Organization(name="Acme", slug=ORG_SLUG, created_by=owner.id, subscription_status="active")
        _db.session.add(org)
        _db.session.flush()
        _db.session.add(OrgMember(organization_id=org.id, user_id=owner.id, role="owner"))
        _db.session.commit()

        yield flask_app

        _db.session.remove()
        _db.drop_all()
    clear_all_rate_limits()


@pytest.fixture(scope="function")
def client(app):
    """Return a Flask test client (unauthenticated)."""
    return app.test_client()


def login(client, email: str = OWNER_EMAIL, password: str = PASSWORD):
    """POST the login body and return the response."""
    return client.post("/api/auth/login", json={"email": email, "password": password})


@pytest.fixture(scope="function")
def auth_client(client):
    """Return a Flask test client logged in as the acme owner."""
    response = login(client)
    assert response.status_code == 200
    return client


@pytest.fixture(scope="function")
def db(app):
    """Yield the SQLAlchemy db object within an active application context."""
    with app.app_context():
        yield _db


@pytest.fixture(scope="function")
def org(db):
    return db.session.execute(db.select(Organization).where(Organization.slug == ORG_SLUG)).scalar_one()


@pytest.fixture(scope="function")
def owner(db):
    return db.session.execute(db.select(User).where(User.email == OWNER_EMAIL)).scalar_one()


@pytest.fixture(scope="function")
def add_member(db, org):
    """Factory: create a user with *role* in acme and return it."""

    def _add(email: str, role: str = "member") -> User:
        user = User(email=email, name=email.split("@")[0])
        user.set_password(PASSWORD)
        db.session.add(user)
        db.session.flush()
        db.session.add(OrgMember(organization_id=org.id, user_id=user.id, role=role))
        db.session.commit()
        return user

    return _add


@pytest.fixture(scope="function")
def domain(db, org):
    """A verified acme domain."""
    d = Domain(
        organization_id=org.id,
        domain="example.com",
        verification_token="dmarc-verify-0123456789abcdef0123456789abcdef",
        verification_method="dns_txt",
        verified_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        dmarc_record="v=DMARC1; p=none; rua=mailto:dmarc@example.com",
        spf_record="v=spf1 include:_spf.google.com ~all",
    )
    db.session.add(d)
    db.session.commit()
    return d


# ---------------------------------------------------------------------------
# Sample report builders
# ---------------------------------------------------------------------------


def aggregate_xml(
    *,
    report_id: str = "rpt-1",
    org_name: str = "google.com",
    policy_domain: str = "example.com",
    begin: int = 1704067200,
    end: int = 1704153599,
    rows: list[tuple[str, int, str, str, str]] | None = None,
) -> str:
    """Build a DMARC aggregate report.

    *rows* are ``(source_ip, count, dkim, spf, header_from)`` tuples.
    """
    if rows is None:
        rows = [
            ("192.0.2.1", 10, "pass", "pass", "example.com"),
            ("198.51.100.7", 3, "fail", "fail", "mail.example.com"),
        ]
    records = "".join(
        f"""
  <record>
    <row>
      <source_ip>{ip}</source_ip>
      <count>{count}</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>{dkim}</dkim>
        <spf>{spf}</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>{header_from}</header_from>
    </identifiers>
    <auth_results>
      <dkim><domain>{policy_domain}</domain><selector>google</selector><result>{dkim}</result></dkim>
      <spf><domain>{policy_domain}</domain><result>{spf}</result></spf>
    </auth_results>
  </record>"""
        for ip, count, dkim, spf, header_from in rows
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>{org_name}</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <report_id>{report_id}</report_id>
    <date_range>
      <begin>{begin}</begin>
      <end>{end}</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>{policy_domain}</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>none</p>
    <sp>none</sp>
    <pct>100</pct>
  </policy_published>{records}
</feedback>
"""


ARF_REPORT = b"""\
From: "Yahoo Reporter" <dmarc@yahoo.com>
To: ruf@example.com
Subject: FW: Suspicious message
Message-ID: <arf-1@yahoo.com>
MIME-Version: 1.0
Content-Type: multipart/report; report-type=feedback-report; boundary="XYZ"

--XYZ
Content-Type: text/plain

This is an authentication failure report.

--XYZ
Content-Type: message/feedback-report

Feedback-Type: auth-failure
User-Agent: Yahoo!-Mail-Feedback/2.0
Version: 1
Original-Mail-From: <bounce@example.com>
Original-Rcpt-To: <user@yahoo.com>
Arrival-Date: Mon, 01 Jan 2024 12:00:00 +0000
Source-IP: 203.0.113.9
Reported-Domain: example.com
Auth-Failure: dmarc
Authentication-Results: mx.yahoo.com; dkim=fail header.d=example.com; spf=softfail smtp.mailfrom=example.com
DKIM-Domain: example.com
DKIM-Selector: s1

--XYZ
Content-Type: text/rfc822-headers

From: ceo@example.com
Subject: Invoice overdue
Message-ID: <orig-1@example.com>
Date: Mon, 01 Jan 2024 11:59:00 +0000

--XYZ--
"""
