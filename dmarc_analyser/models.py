"""
SQLAlchemy models for DMARC Analyser.

Tenancy:      User, Organization, OrgMember, Invitation
Reports:      Domain, Subdomain, DomainTag, DomainTagAssignment, Report,
              Record, DkimResult, SpfResult, ForensicReport
Senders:      Source, KnownSender
Alerting:     Alert, AlertRule, Webhook, ScheduledReport
Admin:        AuditLog, ApiKey
Integrations: GmailAccount, AiIntegration, AiRecommendationCache
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from dmarc_analyser import db

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return the current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# User
# ---------------------------------------------------------------------------


class User(UserMixin, db.Model):
    """Application user with hashed password storage."""

    __tablename__ = "users"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True, autoincrement=True)
    email: db.Mapped[str] = db.mapped_column(db.String(255), unique=True, nullable=False)
    name: db.Mapped[str | None] = db.mapped_column(db.String(200), nullable=True)
    password_hash: db.Mapped[str] = db.mapped_column(db.String(256), nullable=False)
    is_active: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    memberships: db.Mapped[list[OrgMember]] = db.relationship(
        "OrgMember",
        foreign_keys="OrgMember.user_id",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )

    # ------------------------------------------------------------------
    # Password helpers
    # ------------------------------------------------------------------

    def set_password(self, password: str) -> None:
        """Hash *password* and store the result."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        """Return True if *password* matches the stored hash."""
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"


# ---------------------------------------------------------------------------
# Organization
# ---------------------------------------------------------------------------


class Organization(db.Model):
    """A tenant.  Every domain, alert and integration belongs to exactly one."""

    __tablename__ = "organizations"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    slug: db.Mapped[str] = db.mapped_column(db.String(100), unique=True, nullable=False)
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    billing_email: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    data_retention_days: db.Mapped[int] = db.mapped_column(db.Integer, default=365, nullable=False)
    timezone: db.Mapped[str] = db.mapped_column(db.String(64), default="UTC", nullable=False)

    # Billing state, written by the Stripe webhook handler.
    subscription_status: db.Mapped[str] = db.mapped_column(
        db.String(20), default="trialing", nullable=False
    )  # trialing/active/past_due/canceled/unpaid
    trial_ends_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    current_period_end: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    stripe_customer_id: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    stripe_subscription_id: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)

    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    members: db.Mapped[list[OrgMember]] = db.relationship(
        "OrgMember", back_populates="organization", cascade="all, delete-orphan", lazy="dynamic"
    )
    domains: db.Mapped[list[Domain]] = db.relationship(
        "Domain", back_populates="organization", cascade="all, delete-orphan", lazy="dynamic"
    )

    def __repr__(self) -> str:
        return f"<Organization id={self.id} slug={self.slug!r}>"


# ---------------------------------------------------------------------------
# OrgMember
# ---------------------------------------------------------------------------


class OrgMember(db.Model):
    """Membership of a user in an organization, with a role."""

    __tablename__ = "org_members"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role: db.Mapped[str] = db.mapped_column(db.String(20), default="member", nullable=False)
    invited_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    joined_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    organization: db.Mapped[Organization] = db.relationship("Organization", back_populates="members")
    user: db.Mapped[User] = db.relationship(
        "User", foreign_keys=[user_id], back_populates="memberships"
    )

    def __repr__(self) -> str:
        return f"<OrgMember org={self.organization_id} user={self.user_id} role={self.role!r}>"


# ---------------------------------------------------------------------------
# Invitation
# ---------------------------------------------------------------------------


class Invitation(db.Model):
    """Pending invitation for an email address to join an organization."""

    __tablename__ = "invitations"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    role: db.Mapped[str] = db.mapped_column(db.String(20), default="member", nullable=False)
    token: db.Mapped[str] = db.mapped_column(db.String(128), unique=True, nullable=False)
    invited_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    expires_at: db.Mapped[datetime] = db.mapped_column(db.DateTime(timezone=True), nullable=False)
    accepted_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    organization: db.Mapped[Organization] = db.relationship("Organization")

    def __repr__(self) -> str:
        return f"<Invitation id={self.id} email={self.email!r} org={self.organization_id}>"


# ---------------------------------------------------------------------------
# Domain
# ---------------------------------------------------------------------------


class Domain(db.Model):
    """A domain whose DMARC reports an organization monitors."""

    __tablename__ = "domains"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "domain", name="uq_domain_org_domain"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    display_name: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    verification_token: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    verification_method: db.Mapped[str] = db.mapped_column(
        db.String(20), default="dns_txt", nullable=False
    )
    verified_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    verified_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    dmarc_record: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    spf_record: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    last_dns_check: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    is_active: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------
    organization: db.Mapped[Organization] = db.relationship("Organization", back_populates="domains")
    reports: db.Mapped[list[Report]] = db.relationship(
        "Report",
        back_populates="domain",
        cascade="all, delete-orphan",
        lazy="dynamic",
        order_by="Report.date_range_begin.desc()",
    )
    sources: db.Mapped[list[Source]] = db.relationship(
        "Source", back_populates="domain", cascade="all, delete-orphan", lazy="dynamic"
    )
    subdomains: db.Mapped[list[Subdomain]] = db.relationship(
        "Subdomain", back_populates="domain", cascade="all, delete-orphan", lazy="dynamic"
    )
    forensic_reports: db.Mapped[list[ForensicReport]] = db.relationship(
        "ForensicReport", back_populates="domain", cascade="all, delete-orphan", lazy="dynamic"
    )

    def __repr__(self) -> str:
        return f"<Domain id={self.id} domain={self.domain!r} org={self.organization_id}>"


# ---------------------------------------------------------------------------
# Subdomain
# ---------------------------------------------------------------------------


class Subdomain(db.Model):
    """Rolled-up counts for a header_from subdomain seen in reports."""

    __tablename__ = "subdomains"
    __table_args__ = (
        db.UniqueConstraint("domain_id", "subdomain", name="uq_subdomain_domain"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=False
    )
    subdomain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    # Intended policy for this subdomain (none/quarantine/reject); informational.
    policy_override: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)
    message_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    pass_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    fail_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    first_seen: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    last_seen: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)

    domain: db.Mapped[Domain] = db.relationship("Domain", back_populates="subdomains")

    def __repr__(self) -> str:
        return f"<Subdomain id={self.id} subdomain={self.subdomain!r}>"


# ---------------------------------------------------------------------------
# Domain tags
# ---------------------------------------------------------------------------


class DomainTag(db.Model):
    """An organization-wide label that members attach to domains."""

    __tablename__ = "domain_tags"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "name", name="uq_domain_tag_org_name"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: db.Mapped[str] = db.mapped_column(db.String(50), nullable=False)
    color: db.Mapped[str] = db.mapped_column(db.String(7), default="#6b7280", nullable=False)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<DomainTag id={self.id} name={self.name!r} org={self.organization_id}>"


class DomainTagAssignment(db.Model):
    __tablename__ = "domain_tag_assignments"
    __table_args__ = (
        db.UniqueConstraint("domain_id", "tag_id", name="uq_domain_tag_assignment"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tag_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domain_tags.id", ondelete="CASCADE"), nullable=False
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Report (aggregate, RFC 7489)
# ---------------------------------------------------------------------------


class Report(db.Model):
    """DMARC aggregate report received for a domain."""

    __tablename__ = "reports"
    __table_args__ = (
        db.UniqueConstraint("report_id", "org_name", name="uq_report_id_org"),
        db.Index("ix_reports_domain_begin", "domain_id", "date_range_begin"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=False
    )
    report_id: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    org_name: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    email: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    extra_contact_info: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    date_range_begin: db.Mapped[datetime] = db.mapped_column(db.DateTime(timezone=True), nullable=False)
    date_range_end: db.Mapped[datetime] = db.mapped_column(db.DateTime(timezone=True), nullable=False)

    # <policy_published>
    policy_domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    policy_adkim: db.Mapped[str | None] = db.mapped_column(db.String(1), nullable=True)
    policy_aspf: db.Mapped[str | None] = db.mapped_column(db.String(1), nullable=True)
    policy_p: db.Mapped[str] = db.mapped_column(db.String(20), nullable=False)
    policy_sp: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)
    policy_pct: db.Mapped[int | None] = db.mapped_column(db.Integer, nullable=True)

    raw_xml: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    gmail_message_id: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    imported_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    domain: db.Mapped[Domain] = db.relationship("Domain", back_populates="reports")
    records: db.Mapped[list[Record]] = db.relationship(
        "Record", back_populates="report", cascade="all, delete-orphan", lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<Report id={self.id} report_id={self.report_id!r}"
            f" org={self.org_name!r} domain={self.policy_domain!r}>"
        )


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


class Record(db.Model):
    """One <record> row of an aggregate report (a source IP and its results)."""

    __tablename__ = "records"
    __table_args__ = (
        db.Index("ix_records_report", "report_id"),
        db.Index("ix_records_source_ip", "source_ip"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    report_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("reports.id", ondelete="CASCADE"), nullable=False
    )
    source_ip: db.Mapped[str] = db.mapped_column(db.String(45), nullable=False)
    count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    disposition: db.Mapped[str] = db.mapped_column(db.String(20), default="none", nullable=False)
    dmarc_dkim: db.Mapped[str | None] = db.mapped_column(db.String(10), nullable=True)  # pass/fail
    dmarc_spf: db.Mapped[str | None] = db.mapped_column(db.String(10), nullable=True)  # pass/fail
    header_from: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    envelope_from: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    envelope_to: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    policy_override_reason: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON

    report: db.Mapped[Report] = db.relationship("Report", back_populates="records")
    dkim_results: db.Mapped[list[DkimResult]] = db.relationship(
        "DkimResult", back_populates="record", cascade="all, delete-orphan", lazy="selectin"
    )
    spf_results: db.Mapped[list[SpfResult]] = db.relationship(
        "SpfResult", back_populates="record", cascade="all, delete-orphan", lazy="selectin"
    )

    @property
    def passed(self) -> bool:
        """DMARC pass: either aligned DKIM or aligned SPF passed."""
        return self.dmarc_dkim == "pass" or self.dmarc_spf == "pass"

    def get_policy_override_reason(self) -> list:
        """Deserialise policy_override_reason."""
        return _load_json(self.policy_override_reason, default=[])

    def __repr__(self) -> str:
        return f"<Record id={self.id} ip={self.source_ip!r} count={self.count}>"


class DkimResult(db.Model):
    """<auth_results><dkim> entry for a record."""

    __tablename__ = "dkim_results"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    record_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    selector: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    result: db.Mapped[str] = db.mapped_column(db.String(20), nullable=False)
    human_result: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)

    record: db.Mapped[Record] = db.relationship("Record", back_populates="dkim_results")


class SpfResult(db.Model):
    """<auth_results><spf> entry for a record."""

    __tablename__ = "spf_results"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    record_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    domain: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    scope: db.Mapped[str] = db.mapped_column(db.String(10), default="mfrom", nullable=False)
    result: db.Mapped[str] = db.mapped_column(db.String(20), nullable=False)

    record: db.Mapped[Record] = db.relationship("Record", back_populates="spf_results")


# ---------------------------------------------------------------------------
# ForensicReport (RFC 6591 / ARF)
# ---------------------------------------------------------------------------


class ForensicReport(db.Model):
    """Per-message failure report."""

    __tablename__ = "forensic_reports"
    __table_args__ = (
        db.Index("ix_forensic_domain_arrival", "domain_id", "arrival_date"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=False
    )

    # ARF (RFC 5965) machine-readable part
    report_id: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    feedback_type: db.Mapped[str | None] = db.mapped_column(
        db.String(20), nullable=True
    )  # auth-failure/fraud/abuse/not-spam/virus/other
    reporter_org_name: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    user_agent: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    version: db.Mapped[str | None] = db.mapped_column(db.String(10), nullable=True)
    original_mail_from: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    original_rcpt_to: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    arrival_date: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    source_ip: db.Mapped[str | None] = db.mapped_column(db.String(45), nullable=True)
    auth_failure: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    auth_results: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON
    delivery_result: db.Mapped[str | None] = db.mapped_column(db.String(50), nullable=True)
    reported_domain: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)

    dkim_domain: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    dkim_selector: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    dkim_result: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)
    spf_domain: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    spf_result: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)

    # Original message headers (may contain PII)
    subject: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    message_id: db.Mapped[str | None] = db.mapped_column(db.String(500), nullable=True)

    raw_content: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    gmail_message_id: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    domain: db.Mapped[Domain] = db.relationship("Domain", back_populates="forensic_reports")

    def get_auth_results(self) -> list:
        """Deserialise auth_results."""
        return _load_json(self.auth_results, default=[])

    def __repr__(self) -> str:
        return f"<ForensicReport id={self.id} domain_id={self.domain_id} ip={self.source_ip!r}>"


# ---------------------------------------------------------------------------
# KnownSender
# ---------------------------------------------------------------------------


class KnownSender(db.Model):
    """Catalogue entry for a legitimate sending service.

    Global entries (``is_global=True``) are seeded at install time and visible
    to every organization; organizations may add their own.
    """

    __tablename__ = "known_senders"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    description: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    category: db.Mapped[str | None] = db.mapped_column(db.String(50), nullable=True)
    logo_url: db.Mapped[str | None] = db.mapped_column(db.String(500), nullable=True)
    website: db.Mapped[str | None] = db.mapped_column(db.String(500), nullable=True)
    ip_ranges: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list of CIDRs
    dkim_domains: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    spf_include: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    spf_resolved_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    is_global: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    organization_id: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True
    )
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def get_ip_ranges(self) -> list[str]:
        """Deserialise ip_ranges."""
        return _load_json(self.ip_ranges, default=[])

    def get_dkim_domains(self) -> list[str]:
        """Deserialise dkim_domains."""
        return _load_json(self.dkim_domains, default=[])

    def __repr__(self) -> str:
        return f"<KnownSender id={self.id} name={self.name!r} global={self.is_global}>"


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


class Source(db.Model):
    """A sending IP observed for a domain, with rolled-up message counts."""

    __tablename__ = "sources"
    __table_args__ = (
        db.UniqueConstraint("domain_id", "source_ip", name="uq_source_domain_ip"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=False
    )
    source_ip: db.Mapped[str] = db.mapped_column(db.String(45), nullable=False)
    hostname: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)

    # Geolocation / network ownership (ip-api.com)
    country: db.Mapped[str | None] = db.mapped_column(db.String(2), nullable=True)
    city: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    region: db.Mapped[str | None] = db.mapped_column(db.String(100), nullable=True)
    asn: db.Mapped[str | None] = db.mapped_column(db.String(20), nullable=True)
    asn_org: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    organization: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    # Last ip-api.com attempt, successful or not; failed sources wait
    # a day before they are retried.
    enrichment_attempted_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )

    # Classification
    is_known_sender: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    known_sender_id: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("known_senders.id", ondelete="SET NULL"), nullable=True
    )
    source_type: db.Mapped[str] = db.mapped_column(
        db.String(20), default="unknown", nullable=False
    )  # legitimate/known_sender/suspicious/forwarded/unknown
    notes: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    classified_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    classified_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )

    # Counters
    total_messages: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    pass_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    fail_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    first_seen: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    last_seen: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)

    domain: db.Mapped[Domain] = db.relationship("Domain", back_populates="sources")
    known_sender: db.Mapped[KnownSender | None] = db.relationship("KnownSender")

    def __repr__(self) -> str:
        return f"<Source id={self.id} ip={self.source_ip!r} type={self.source_type!r}>"


# ---------------------------------------------------------------------------
# Alert / AlertRule
# ---------------------------------------------------------------------------


class Alert(db.Model):
    """A notification raised for an organization (optionally a domain)."""

    __tablename__ = "alerts"
    __table_args__ = (
        db.Index("ix_alerts_org_created", "organization_id", "created_at"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    domain_id: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=True
    )
    type: db.Mapped[str] = db.mapped_column(db.String(30), nullable=False)
    severity: db.Mapped[str] = db.mapped_column(db.String(10), default="info", nullable=False)
    title: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    message: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)
    alert_metadata: db.Mapped[str | None] = db.mapped_column("metadata", db.Text, nullable=True)  # JSON
    is_read: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    read_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    read_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    is_dismissed: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    email_sent: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    webhook_sent: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    domain: db.Mapped[Domain | None] = db.relationship("Domain")

    def get_metadata(self) -> dict:
        """Deserialise the metadata column."""
        return _load_json(self.alert_metadata)

    def __repr__(self) -> str:
        return f"<Alert id={self.id} type={self.type!r} severity={self.severity!r}>"


class AlertRule(db.Model):
    """Enables an alert type and controls its thresholds and notifications."""

    __tablename__ = "alert_rules"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    domain_id: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), nullable=True
    )
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    type: db.Mapped[str] = db.mapped_column(db.String(30), nullable=False)
    is_enabled: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    threshold: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON
    notify_email: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    notify_webhook: db.Mapped[bool] = db.mapped_column(db.Boolean, default=False, nullable=False)
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def get_threshold(self) -> dict:
        """Deserialise threshold."""
        return _load_json(self.threshold)

    def __repr__(self) -> str:
        return f"<AlertRule id={self.id} type={self.type!r} enabled={self.is_enabled}>"


# ---------------------------------------------------------------------------
# AuditLog
# ---------------------------------------------------------------------------


class AuditLog(db.Model):
    """Record of a mutating action performed inside an organization."""

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_org_created", "organization_id", "created_at"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    action: db.Mapped[str] = db.mapped_column(db.String(100), nullable=False)
    entity_type: db.Mapped[str] = db.mapped_column(db.String(50), nullable=False)
    entity_id: db.Mapped[str | None] = db.mapped_column(db.String(64), nullable=True)
    old_value: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON
    new_value: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON
    ip_address: db.Mapped[str | None] = db.mapped_column(db.String(64), nullable=True)
    user_agent: db.Mapped[str | None] = db.mapped_column(db.String(500), nullable=True)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    user: db.Mapped[User | None] = db.relationship("User")

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} action={self.action!r}>"


# ---------------------------------------------------------------------------
# ApiKey
# ---------------------------------------------------------------------------


class ApiKey(db.Model):
    """Hashed API key for programmatic read access to an organization."""

    __tablename__ = "api_keys"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    key_prefix: db.Mapped[str] = db.mapped_column(db.String(16), nullable=False)
    key_hash: db.Mapped[str] = db.mapped_column(db.String(64), unique=True, nullable=False)
    scopes: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    expires_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    last_used_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    organization: db.Mapped[Organization] = db.relationship("Organization")

    def get_scopes(self) -> list[str]:
        """Deserialise scopes."""
        return _load_json(self.scopes, default=[])

    def __repr__(self) -> str:
        return f"<ApiKey id={self.id} prefix={self.key_prefix!r}>"


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


class Webhook(db.Model):
    """Outbound notification endpoint (Slack, Discord, Teams or custom JSON)."""

    __tablename__ = "webhooks"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    url: db.Mapped[str] = db.mapped_column(db.String(1000), nullable=False)
    type: db.Mapped[str] = db.mapped_column(db.String(20), default="custom", nullable=False)
    secret: db.Mapped[str | None] = db.mapped_column(db.String(255), nullable=True)
    events: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list
    is_active: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    last_triggered_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    failure_count: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def get_events(self) -> list[str]:
        """Deserialise events."""
        return _load_json(self.events, default=[])

    def __repr__(self) -> str:
        return f"<Webhook id={self.id} type={self.type!r} active={self.is_active}>"


# ---------------------------------------------------------------------------
# ScheduledReport
# ---------------------------------------------------------------------------


class ScheduledReport(db.Model):
    """Recurring summary email of DMARC statistics."""

    __tablename__ = "scheduled_reports"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    name: db.Mapped[str] = db.mapped_column(db.String(200), nullable=False)
    frequency: db.Mapped[str] = db.mapped_column(db.String(10), nullable=False)  # daily/weekly/monthly
    day_of_week: db.Mapped[int | None] = db.mapped_column(db.Integer, nullable=True)  # 0=Sunday
    day_of_month: db.Mapped[int | None] = db.mapped_column(db.Integer, nullable=True)
    hour: db.Mapped[int] = db.mapped_column(db.Integer, default=9, nullable=False)
    timezone: db.Mapped[str] = db.mapped_column(db.String(64), default="UTC", nullable=False)
    recipients: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)  # JSON list
    domain_ids: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON list, null=all
    include_charts: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    is_active: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    last_sent_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    next_run_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    created_by: db.Mapped[int | None] = db.mapped_column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    organization: db.Mapped[Organization] = db.relationship("Organization")

    def get_recipients(self) -> list[str]:
        """Deserialise recipients."""
        return _load_json(self.recipients, default=[])

    def get_domain_ids(self) -> list[int]:
        """Deserialise domain_ids (empty list means every domain)."""
        return _load_json(self.domain_ids, default=[])

    def __repr__(self) -> str:
        return f"<ScheduledReport id={self.id} frequency={self.frequency!r}>"


# ---------------------------------------------------------------------------
# GmailAccount
# ---------------------------------------------------------------------------


class GmailAccount(db.Model):
    """Mailbox polled for DMARC report attachments.

    Tokens are stored encrypted (see dmarc_analyser.utils.crypto).
    """

    __tablename__ = "gmail_accounts"
    __table_args__ = (
        db.UniqueConstraint("organization_id", "email", name="uq_gmail_org_email"),
    )

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    email: db.Mapped[str] = db.mapped_column(db.String(255), nullable=False)
    access_token: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    refresh_token: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    token_expires_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    sync_enabled: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    sync_status: db.Mapped[str] = db.mapped_column(
        db.String(10), default="idle", nullable=False
    )  # idle/syncing/error
    sync_progress: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # JSON
    sync_started_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    last_sync_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    last_error: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )

    organization: db.Mapped[Organization] = db.relationship("Organization")

    def get_sync_progress(self) -> dict:
        """Deserialise sync_progress."""
        return _load_json(self.sync_progress)

    def __repr__(self) -> str:
        return f"<GmailAccount id={self.id} email={self.email!r} status={self.sync_status!r}>"


# ---------------------------------------------------------------------------
# AiIntegration / AiRecommendationCache
# ---------------------------------------------------------------------------


class AiIntegration(db.Model):
    """Per-organization Gemini configuration and daily usage counter."""

    __tablename__ = "ai_integrations"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    organization_id: db.Mapped[int] = db.mapped_column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    gemini_api_key: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)  # encrypted
    is_enabled: db.Mapped[bool] = db.mapped_column(db.Boolean, default=True, nullable=False)
    usage_count_24h: db.Mapped[int] = db.mapped_column(db.Integer, default=0, nullable=False)
    usage_reset_at: db.Mapped[datetime | None] = db.mapped_column(
        db.DateTime(timezone=True), nullable=True
    )
    last_error: db.Mapped[str | None] = db.mapped_column(db.Text, nullable=True)
    last_used_at: db.Mapped[datetime | None] = db.mapped_column(db.DateTime(timezone=True), nullable=True)
    created_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<AiIntegration org={self.organization_id} enabled={self.is_enabled}>"


class AiRecommendationCache(db.Model):
    """Latest generated AI recommendation for a domain."""

    __tablename__ = "ai_recommendation_cache"

    id: db.Mapped[int] = db.mapped_column(db.Integer, primary_key=True)
    domain_id: db.Mapped[int] = db.mapped_column(
        db.Integer, db.ForeignKey("domains.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    input_hash: db.Mapped[str] = db.mapped_column(db.String(64), nullable=False)
    recommendation: db.Mapped[str] = db.mapped_column(db.Text, nullable=False)  # JSON
    generated_at: db.Mapped[datetime] = db.mapped_column(
        db.DateTime(timezone=True), default=_utcnow, nullable=False
    )
    expires_at: db.Mapped[datetime] = db.mapped_column(db.DateTime(timezone=True), nullable=False)

    def get_recommendation(self) -> dict:
        """Deserialise recommendation."""
        return _load_json(self.recommendation)

    def __repr__(self) -> str:
        return f"<AiRecommendationCache domain_id={self.domain_id}>"


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _load_json(value: str | None, *, default: object = None) -> object:
    """Safely deserialise a JSON string, returning *default* on any error."""
    if default is None:
        default = {}
    if not value:
        return default
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on round-trip, so values read back from the database
    may be naive even though they were stored as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
