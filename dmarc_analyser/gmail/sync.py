"""
Mailbox sync: import DMARC aggregate reports from a connected Gmail account.

Each processed message is archived out of the inbox and labelled
``DMARC-Processed`` so the next inbox-only sync does not see it again.
Progress is written to ``GmailAccount.sync_progress`` after every page;
setting ``sync_status`` away from ``syncing`` cancels a running sync at the
next page boundary.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import reset_stale_sync
from dmarc_analyser.gmail.client import (
    GmailError,
    archive_message,
    build_search_query,
    ensure_label,
    get_attachment,
    get_message,
    report_parts,
    search_messages,
    valid_access_token,
)
from dmarc_analyser.models import Domain, GmailAccount
from dmarc_analyser.reports.importer import import_report
from dmarc_analyser.reports.parser import ReportParseError, parse_dmarc_attachment

logger = logging.getLogger(__name__)

PROCESSED_LABEL = "DMARC-Processed"
MAX_EMAILS_PER_SYNC = 2000


def _set_progress(account: GmailAccount, result: dict[str, Any], **extra: Any) -> None:
    account.sync_progress = json.dumps(
        {
            "emailsProcessed": result["emailsProcessed"],
            "reportsFound": result["reportsFound"],
            "errors": len(result["errors"]),
            **extra,
        }
    )
    db.session.commit()


def _is_cancelled(account: GmailAccount) -> bool:
    db.session.refresh(account)
    return account.sync_status != "syncing"


def start_sync(account: GmailAccount, now: datetime | None = None) -> bool:
    """Flag *account* as syncing; False if another sync is already running."""
    now = now or datetime.now(timezone.utc)
    if reset_stale_sync(account.organization_id, now):
        return False
    account.sync_status = "syncing"
    account.sync_started_at = now
    account.last_error = None
    account.sync_progress = json.dumps(
        {"emailsProcessed": 0, "reportsFound": 0, "errors": 0, "startedAt": now.isoformat()}
    )
    db.session.commit()
    return True


def _import_message(token: str, message_id: str, domains: dict[str, Domain], result: dict[str, Any]) -> int:
    """Import every report attachment of one message; returns reports imported."""
    message = get_message(token, message_id)
    imported = 0
    for part in report_parts(message):
        attachment_id = (part.get("body") or {}).get("attachmentId")
        if not attachment_id:
            continue
        filename = part.get("filename") or "report.xml"
        try:
            data = get_attachment(token, message_id, attachment_id)
            parsed = parse_dmarc_attachment(filename, data)
        except (GmailError, ReportParseError) as exc:
            result["errors"].append(f"Attachment error: {exc}")
            continue

        domain = domains.get(parsed["policy"]["domain"].lower())
        if domain is None:
            continue
        outcome = import_report(domain, xml=parsed["raw_xml"], gmail_message_id=message_id)
        if outcome.success:
            imported += 1
        elif outcome.error:
            result["errors"].append(f"Report import failed: {outcome.error}")
    return imported


def sync_account(account: GmailAccount, full_sync: bool = False) -> dict[str, Any]:
    """Run one sync of *account*, which must already be flagged as syncing.

    Args:
        account: The mailbox to read.
        full_sync: Search all mail, including archived messages.

    Returns:
        ``{"emailsProcessed", "reportsFound", "errors"}``.
    """
    result: dict[str, Any] = {"emailsProcessed": 0, "reportsFound": 0, "errors": []}
    logger.info("Gmail sync started for %s (full=%s)", account.email, full_sync)

    try:
        token = valid_access_token(account)
        domains = {
            d.domain.lower(): d
            for d in db.session.execute(
                db.select(Domain).where(Domain.organization_id == account.organization_id)
            ).scalars()
        }
        if not domains:
            logger.info("Gmail sync skipped: organization %s has no domains", account.organization_id)
        else:
            label_id = ensure_label(token, PROCESSED_LABEL)
            query = build_search_query(sorted(domains), search_all=full_sync)
            page_token = None
            while True:
                message_ids, page_token = search_messages(token, query, page_token)
                for message_id in message_ids:
                    try:
                        result["reportsFound"] += _import_message(token, message_id, domains, result)
                    except GmailError as exc:
                        result["errors"].append(f"Message error: {exc}")
                    result["emailsProcessed"] += 1
                    try:
                        archive_message(token, message_id, label_id)
                    except GmailError as exc:
                        logger.warning("Could not archive Gmail message %s: %s", message_id, exc)
                        result["errors"].append(f"Archive error: {exc}")

                if _is_cancelled(account):
                    logger.info("Gmail sync cancelled for %s", account.email)
                    return result
                _set_progress(account, result, lastBatchAt=datetime.now(timezone.utc).isoformat())

                if not page_token:
                    break
                if result["emailsProcessed"] >= MAX_EMAILS_PER_SYNC:
                    logger.info("Gmail sync reached %d emails; stopping this cycle", MAX_EMAILS_PER_SYNC)
                    break
    except GmailError as exc:
        db.session.rollback()
        account.sync_status = "error"
        account.last_error = str(exc)
        db.session.commit()
        logger.warning("Gmail sync failed for %s: %s", account.email, exc)
        result["errors"].append(str(exc))
        return result

    account.sync_status = "idle"
    account.last_sync_at = datetime.now(timezone.utc)
    account.last_error = "; ".join(result["errors"][:5]) or None
    _set_progress(account, result)
    logger.info(
        "Gmail sync finished for %s: %d emails, %d reports, %d errors",
        account.email,
        result["emailsProcessed"],
        result["reportsFound"],
        len(result["errors"]),
    )
    return result


def sync_all_accounts(now: datetime | None = None) -> dict[str, int]:
    """Sync every enabled account that is not already syncing."""
    accounts = db.session.execute(
        db.select(GmailAccount).where(GmailAccount.sync_enabled.is_(True)).order_by(GmailAccount.id)
    ).scalars().all()
    synced = reports = 0
    for account in accounts:
        if not start_sync(account, now):
            logger.info("Skipping %s: sync already in progress", account.email)
            continue
        outcome = sync_account(account)
        synced += 1
        reports += outcome["reportsFound"]
    return {"accounts": synced, "reports": reports}
