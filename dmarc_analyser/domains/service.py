"""
Domain lifecycle: creation, TXT ownership verification and DNS refresh.

``refresh_dns`` is shared by the dns-refresh route and the scheduled DNS
check; both raise ``dns_change`` alerts when a stored record differs from
what DNS returns now.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.alerts.service import create_dns_change_alert
from dmarc_analyser.alerts.webhooks import trigger_webhooks
from dmarc_analyser.checker.resolver import ResolverSettings, load_settings, query_dns
from dmarc_analyser.models import Domain, as_utc
from dmarc_analyser.utils.domain import generate_verification_token, verification_host

logger = logging.getLogger(__name__)

MAX_BULK_DOMAINS = 100

# Resolver answers that mean the record is genuinely absent.
_ABSENT_ERRORS = ("NXDOMAIN", "NO_ANSWER")


class VerificationError(Exception):
    """Domain ownership could not be confirmed; the message is user-facing."""


class DnsLookupError(Exception):
    """DNS did not answer (timeout, SERVFAIL); stored records stay as they are."""


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def domain_dict(domain: Domain) -> dict[str, Any]:
    return {
        "id": domain.id,
        "domain": domain.domain,
        "displayName": domain.display_name,
        "verificationToken": domain.verification_token,
        "verificationMethod": domain.verification_method,
        "verificationHost": verification_host(domain.domain),
        "verifiedAt": _iso(domain.verified_at),
        "isVerified": domain.verified_at is not None,
        "dmarcRecord": domain.dmarc_record,
        "spfRecord": domain.spf_record,
        "lastDnsCheck": _iso(domain.last_dns_check),
        "isActive": domain.is_active,
        "createdAt": _iso(domain.created_at),
    }


def find_domain(organization_id: int, name: str) -> Domain | None:
    return db.session.execute(
        db.select(Domain).where(Domain.organization_id == organization_id, Domain.domain == name)
    ).scalar_one_or_none()


def new_domain(organization_id: int, name: str, display_name: str | None = None) -> Domain:
    """Add an unverified domain with a fresh verification token.  The caller commits."""
    domain = Domain(
        organization_id=organization_id,
        domain=name,
        display_name=display_name or None,
        verification_token=generate_verification_token(),
        verification_method="dns_txt",
    )
    db.session.add(domain)
    return domain


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_domain(domain: Domain, user_id: int | None, now: datetime | None = None) -> None:
    """Check the ``_dmarc-verify`` TXT record and mark *domain* verified.

    Raises:
        VerificationError: With the message to show the user.
    """
    if domain.verified_at is not None:
        raise VerificationError("Domain is already verified")
    if not domain.verification_token:
        raise VerificationError("No verification token found")

    host = verification_host(domain.domain)
    result = query_dns(host, "TXT")
    if not result["success"]:
        if result["error_type"] in ("NXDOMAIN", "NO_ANSWER"):
            raise VerificationError(
                f"No TXT record found at {host}. Please add the DNS record and try again."
            )
        raise VerificationError("Verification failed. Please try again.")

    records = result["records"]
    if domain.verification_token not in records:
        found = ", ".join(records) if records else "no records"
        raise VerificationError(
            f'Verification failed. Expected TXT record "{domain.verification_token}" at {host} but found: {found}'
        )

    now = now or datetime.now(timezone.utc)
    domain.verified_at = now
    domain.verified_by = user_id
    try:
        current = fetch_auth_records(domain.domain)
    except DnsLookupError as exc:
        # The scheduled check picks the records up on its first run.
        logger.warning("Record fetch after verifying %s failed: %s", domain.domain, exc)
    else:
        domain.dmarc_record = current["DMARC"]
        domain.spf_record = current["SPF"]
        domain.last_dns_check = now
    db.session.commit()
    logger.info("Domain verified: %s (org=%s)", domain.domain, domain.organization_id)

    trigger_webhooks(
        domain.organization_id,
        "domain.verified",
        {"domainId": domain.id, "domain": domain.domain, "verifiedAt": now.isoformat()},
    )


# ---------------------------------------------------------------------------
# DNS refresh
# ---------------------------------------------------------------------------


def _fetch_txt_record(name: str, prefix: str, settings: ResolverSettings | None) -> str | None:
    result = query_dns(name, "TXT", settings)
    if not result["success"]:
        if result["error_type"] in _ABSENT_ERRORS:
            return None
        raise DnsLookupError(result["error_message"])
    matches = [r for r in result["records"] if r.startswith(prefix)]
    return matches[0] if matches else None


def fetch_auth_records(name: str, settings: ResolverSettings | None = None) -> dict[str, str | None]:
    """Return ``{"DMARC": ..., "SPF": ...}`` for *name*.

    A record is None only when DNS says it does not exist.

    Raises:
        DnsLookupError: When the resolver failed for either name.
    """
    settings = settings or load_settings()
    return {
        "DMARC": _fetch_txt_record(f"_dmarc.{name}", "v=DMARC1", settings),
        "SPF": _fetch_txt_record(name, "v=spf1", settings),
    }


def refresh_dns(
    domain: Domain,
    settings: ResolverSettings | None = None,
    now: datetime | None = None,
    *,
    alert: bool = True,
) -> dict[str, Any]:
    """Re-fetch DMARC and SPF, store them and alert on changes.

    Returns:
        ``{"dmarc": {record, changed, previous}, "spf": {...}, "checkedAt"}``.

    Raises:
        DnsLookupError: When DNS could not answer.  Nothing is stored and
            no alert is raised.
    """
    now = now or datetime.now(timezone.utc)
    current = fetch_auth_records(domain.domain, settings)
    previous = {"DMARC": domain.dmarc_record, "SPF": domain.spf_record}
    first_fetch = domain.last_dns_check is None

    domain.dmarc_record = current["DMARC"]
    domain.spf_record = current["SPF"]
    domain.last_dns_check = now
    db.session.commit()

    changes = {kind: previous[kind] != current[kind] for kind in current}
    if alert:
        for kind, changed in changes.items():
            # Finding a record on the first fetch is not a change.
            if not changed or (previous[kind] is None and first_fetch):
                continue
            create_dns_change_alert(domain.organization_id, domain, kind, previous[kind], current[kind])
            trigger_webhooks(
                domain.organization_id,
                "dns.changed",
                {
                    "domainId": domain.id,
                    "domain": domain.domain,
                    "recordType": kind,
                    "oldValue": previous[kind],
                    "newValue": current[kind],
                },
            )

    return {
        "dmarc": {"record": current["DMARC"], "changed": changes["DMARC"], "previous": previous["DMARC"]},
        "spf": {"record": current["SPF"], "changed": changes["SPF"], "previous": previous["SPF"]},
        "checkedAt": now.isoformat(),
    }


def check_all_domains(now: datetime | None = None) -> dict[str, int]:
    """Refresh DNS for every active verified domain (scheduled job)."""
    settings = load_settings()
    domains = db.session.execute(
        db.select(Domain)
        .where(Domain.is_active.is_(True), Domain.verified_at.is_not(None))
        .order_by(Domain.id)
    ).scalars().all()

    checked = changed = failed = 0
    for domain in domains:
        try:
            result = refresh_dns(domain, settings, now)
        except DnsLookupError as exc:
            failed += 1
            logger.warning("DNS check skipped for %s: %s", domain.domain, exc)
            continue
        except Exception:
            db.session.rollback()
            failed += 1
            logger.exception("DNS check failed for %s", domain.domain)
            continue
        checked += 1
        if result["dmarc"]["changed"] or result["spf"]["changed"]:
            changed += 1
    logger.info("DNS check: %d checked, %d changed, %d failed", checked, changed, failed)
    return {"checked": checked, "changed": changed, "failed": failed}
