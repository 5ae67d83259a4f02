"""
DMARC forensic (failure) report parser.

Reads ARF messages (RFC 5965 / RFC 6591): a multipart/report whose
``message/feedback-report`` part carries ``Name: value`` fields, followed
by the original message or its headers.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from email import policy
from email.message import Message
from email.parser import BytesParser, HeaderParser
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from dmarc_analyser.reports.parser import ReportParseError

logger = logging.getLogger(__name__)

_FEEDBACK_TYPES = ("auth-failure", "fraud", "abuse", "not-spam", "virus", "other")
_DKIM_RESULTS = ("none", "pass", "fail", "policy", "neutral", "temperror", "permerror")
_SPF_RESULTS = ("none", "pass", "fail", "softfail", "neutral", "temperror", "permerror")

_AUTH_RESULT_RE = re.compile(r"\b(dkim|spf)=(\w+)", re.IGNORECASE)


def parse_forensic_report(data: bytes) -> dict[str, Any]:
    """Parse an ARF failure report.

    Args:
        data: The raw RFC 5322 message.

    Returns:
        Dict keyed like the ForensicReport columns (``feedback_type``,
        ``source_ip``, ``arrival_date``, ``dkim_domain`` ...).

    Raises:
        ReportParseError: If no ``message/feedback-report`` part exists.
    """
    message = BytesParser(policy=policy.compat32).parsebytes(data)

    feedback_part: Message | None = None
    original_headers: Message | None = None
    for part in message.walk():
        content_type = part.get_content_type()
        if content_type == "message/feedback-report":
            feedback_part = part
        elif content_type in ("message/rfc822", "text/rfc822-headers") and original_headers is None:
            original_headers = _original_headers(part)

    if feedback_part is None:
        raise ReportParseError("Not an ARF report: missing message/feedback-report part")

    fields = _feedback_fields(feedback_part)

    original_from = fields.get("original-mail-from")
    original_rcpt = fields.get("original-rcpt-to")
    auth_results = _auth_results(fields.get("authentication-results"))

    result: dict[str, Any] = {
        "feedback_type": _enum(fields.get("feedback-type"), _FEEDBACK_TYPES) or "auth-failure",
        "user_agent": fields.get("user-agent"),
        "version": fields.get("version"),
        "report_id": message.get("Message-ID"),
        "reporter_org_name": parseaddr(message.get("From", ""))[0] or None,
        "original_mail_from": _strip_angle(original_from),
        "original_rcpt_to": _strip_angle(original_rcpt),
        "arrival_date": _date(fields.get("arrival-date")),
        "source_ip": fields.get("source-ip"),
        "auth_failure": fields.get("auth-failure"),
        "delivery_result": fields.get("delivery-result"),
        "reported_domain": fields.get("reported-domain"),
        "dkim_domain": fields.get("dkim-domain"),
        "dkim_selector": fields.get("dkim-selector"),
        "dkim_result": _enum(auth_results.get("dkim"), _DKIM_RESULTS),
        "spf_domain": fields.get("spf-dns") or fields.get("reported-domain"),
        "spf_result": _enum(auth_results.get("spf"), _SPF_RESULTS),
        "auth_results": [
            {"method": method, "result": value} for method, value in auth_results.items()
        ],
        "subject": None,
        "message_id": None,
        "raw_content": data.decode("utf-8", errors="replace"),
    }

    if original_headers is not None:
        result["subject"] = original_headers.get("Subject")
        result["message_id"] = original_headers.get("Message-ID")
        if result["arrival_date"] is None:
            result["arrival_date"] = _date(original_headers.get("Date"))

    return result


def _feedback_fields(part: Message) -> dict[str, str]:
    """Return the lower-cased ``Name: value`` fields of the feedback part."""
    payload = part.get_payload()
    if isinstance(payload, list):
        # Parsed as a sequence of header blocks
        fields: dict[str, str] = {}
        for block in payload:
            for name, value in block.items():
                fields.setdefault(name.lower(), str(value).strip())
        return fields

    text = payload if isinstance(payload, str) else ""
    parsed = HeaderParser().parsestr(text.lstrip())
    return {name.lower(): str(value).strip() for name, value in parsed.items()}


def _original_headers(part: Message) -> Message | None:
    payload = part.get_payload()
    if isinstance(payload, list) and payload:
        return payload[0]
    if isinstance(payload, str):
        return HeaderParser().parsestr(payload.lstrip())
    return None


def _auth_results(value: str | None) -> dict[str, str]:
    if not value:
        return {}
    return {method.lower(): result.lower() for method, result in _AUTH_RESULT_RE.findall(value)}


def _strip_angle(value: str | None) -> str | None:
    if not value:
        return None
    return value.strip().strip("<>") or None


def _enum(value: str | None, allowed: tuple[str, ...]) -> str | None:
    if not value:
        return None
    value = value.strip().lower()
    return value if value in allowed else None


def _date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Unparseable ARF date: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
