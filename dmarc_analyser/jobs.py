"""
Background jobs run by ``run_jobs.py``.

Each job runs inside an application context and returns a small dict of
counts for logging.  A failure in one domain or account is logged and the
job moves on.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from dmarc_analyser import db
from dmarc_analyser.alerts.scheduled import send_due_reports
from dmarc_analyser.domains.service import check_all_domains
from dmarc_analyser.gmail.sync import sync_all_accounts
from dmarc_analyser.models import Domain, ForensicReport, Organization, Report
from dmarc_analyser.sources.geolocation import enrich_sources, pending_count

logger = logging.getLogger(__name__)

# Batches per domain in one enrich run; ip-api.com allows 45 requests a minute.
MAX_ENRICH_BATCHES = 4


def apply_retention(now: datetime | None = None) -> dict[str, int]:
    """Delete aggregate and forensic reports older than each org's retention window."""
    now = now or datetime.now(timezone.utc)
    reports_deleted = forensic_deleted = 0

    orgs = db.session.execute(db.select(Organization).order_by(Organization.id)).scalars().all()
    for org in orgs:
        cutoff = now - timedelta(days=org.data_retention_days)
        domain_ids = db.select(Domain.id).where(Domain.organization_id == org.id)

        old_reports = db.session.execute(
            db.select(Report).where(Report.domain_id.in_(domain_ids), Report.date_range_end < cutoff)
        ).scalars().all()
        for report in old_reports:
            db.session.delete(report)

        old_forensic = db.session.execute(
            db.select(ForensicReport).where(
                ForensicReport.domain_id.in_(domain_ids),
                db.func.coalesce(ForensicReport.arrival_date, ForensicReport.created_at) < cutoff,
            )
        ).scalars().all()
        for forensic in old_forensic:
            db.session.delete(forensic)

        db.session.commit()
        if old_reports or old_forensic:
            logger.info(
                "Retention for %s (%d days): %d reports, %d forensic reports deleted",
                org.slug,
                org.data_retention_days,
                len(old_reports),
                len(old_forensic),
            )
        reports_deleted += len(old_reports)
        forensic_deleted += len(old_forensic)

    return {"reports": reports_deleted, "forensic": forensic_deleted}


def enrich_all_sources(max_batches: int = MAX_ENRICH_BATCHES) -> dict[str, int]:
    """Geolocate pending sources of every active domain."""
    domain_ids = db.session.execute(
        db.select(Domain.id).where(Domain.is_active.is_(True)).order_by(Domain.id)
    ).scalars().all()

    enriched = errors = 0
    for domain_id in domain_ids:
        for _ in range(max_batches):
            if not pending_count(domain_id):
                break
            result = enrich_sources(domain_id)
            enriched += result["enriched"]
            errors += result.get("errors", 0)
            if not result.get("hasMore"):
                break
    return {"domains": len(domain_ids), "enriched": enriched, "errors": errors}


JOBS: dict[str, Callable[[], dict[str, Any]]] = {
    "dns-check": check_all_domains,
    "gmail-sync": sync_all_accounts,
    "scheduled-reports": send_due_reports,
    "enrich": enrich_all_sources,
    "retention": apply_retention,
}


def run_job(name: str) -> dict[str, Any]:
    """Run one job by name.

    Raises:
        KeyError: For an unknown job name.
    """
    job = JOBS[name]
    logger.info("Job %s started", name)
    result = job()
    logger.info("Job %s finished: %s", name, result)
    return result


def run_all() -> dict[str, Any]:
    """Run every job in order; a failing job does not stop the others."""
    results: dict[str, Any] = {}
    for name in JOBS:
        try:
            results[name] = run_job(name)
        except Exception:
            db.session.rollback()
            logger.exception("Job %s failed", name)
            results[name] = {"error": True}
    return results
