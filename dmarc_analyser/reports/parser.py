"""
DMARC aggregate report parser (RFC 7489 appendix C).

Supports ZIP-compressed, GZ-compressed, and plain XML reports.  Values
outside the schema's enumerations are normalised (alignment to None,
disposition and auth results to ``none``) rather than rejected.
"""

from __future__ import annotations

import gzip
import io
import logging
import time
import xml.etree.ElementTree as ET
import zipfile
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_POLICIES = ("none", "quarantine", "reject")
_DKIM_RESULTS = ("none", "pass", "fail", "policy", "neutral", "temperror", "permerror")
_SPF_RESULTS = ("none", "pass", "fail", "softfail", "neutral", "temperror", "permerror")

REPORT_EXTENSIONS = (".xml", ".zip", ".gz")


class ReportParseError(ValueError):
    """Raised when an attachment is not a usable DMARC aggregate report."""


def parse_dmarc_attachment(filename: str, data: bytes) -> dict[str, Any]:
    """Parse a DMARC aggregate report attachment.

    Accepts ZIP, GZ, or raw XML.

    Args:
        filename: Original attachment filename (used to detect format).
        data: Raw bytes of the attachment.

    Returns:
        Normalised report dict (see :func:`parse_dmarc_report`).

    Raises:
        ReportParseError: If the archive cannot be opened or the XML is not
            a DMARC aggregate report.
    """
    xml_bytes = _decompress(filename.lower(), data)
    if xml_bytes is None:
        raise ReportParseError(f"Unsupported or corrupt attachment: {filename}")
    return parse_dmarc_report(xml_bytes.decode("utf-8", errors="replace"))


# ---------------------------------------------------------------------------
# Decompression
# ---------------------------------------------------------------------------


def _decompress(filename: str, data: bytes) -> bytes | None:
    """Return raw XML bytes from the (possibly compressed) attachment."""
    if filename.endswith(".zip"):
        return _unzip(data)
    if filename.endswith(".gz"):
        try:
            return gzip.decompress(data)
        except (OSError, EOFError) as exc:
            logger.warning("GZ decompression failed: %s", exc)
            return None
    if filename.endswith(".xml"):
        return data
    # Unknown extension: try ZIP, then GZ, then treat as raw XML
    result = _unzip(data)
    if result is not None:
        return result
    try:
        return gzip.decompress(data)
    except (OSError, EOFError):
        return data


def _unzip(data: bytes) -> bytes | None:
    """Extract the first XML-like file from a ZIP archive."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = zf.namelist()
            for name in names:
                if name.lower().endswith((".xml", ".dmarc")):
                    return zf.read(name)
            if names:
                return zf.read(names[0])
    except (zipfile.BadZipFile, OSError) as exc:
        logger.debug("ZIP extraction failed: %s", exc)
    return None


# ---------------------------------------------------------------------------
# XML parsing
# ---------------------------------------------------------------------------


def parse_dmarc_report(xml: str) -> dict[str, Any]:
    """Parse DMARC aggregate XML into a normalised dict.

    Returns:
        ``{"metadata": {...}, "policy": {...}, "records": [...], "raw_xml": str}``.
        Metadata carries org_name, email, extra_contact_info, report_id,
        date_range_begin and date_range_end (aware UTC datetimes).

    Raises:
        ReportParseError: On malformed XML or a missing required section.
    """
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as exc:
        raise ReportParseError(f"Invalid XML: {exc}") from exc

    feedback = root if _local(root.tag) == "feedback" else _find(root, "feedback")
    if feedback is None:
        raise ReportParseError("Invalid DMARC report: missing feedback element")

    # ------------------------------------------------------------------
    # report_metadata
    # ------------------------------------------------------------------
    meta = _find(feedback, "report_metadata")
    if meta is None:
        raise ReportParseError("Invalid DMARC report: missing report_metadata")

    date_range = _find(meta, "date_range")
    if date_range is None:
        raise ReportParseError("Invalid DMARC report: missing date_range")

    metadata = {
        "org_name": _text(meta, "org_name") or "Unknown",
        "email": _text(meta, "email") or "",
        "extra_contact_info": _text(meta, "extra_contact_info"),
        "report_id": _text(meta, "report_id") or f"unknown-{int(time.time() * 1000)}",
        "date_range_begin": _timestamp(_text(date_range, "begin")),
        "date_range_end": _timestamp(_text(date_range, "end")),
    }

    # ------------------------------------------------------------------
    # policy_published
    # ------------------------------------------------------------------
    published = _find(feedback, "policy_published")
    if published is None:
        raise ReportParseError("Invalid DMARC report: missing policy_published")

    policy = {
        "domain": _text(published, "domain") or "",
        "adkim": _alignment(_text(published, "adkim")),
        "aspf": _alignment(_text(published, "aspf")),
        "p": _enum(_text(published, "p"), _POLICIES),
        "sp": _enum(_text(published, "sp"), _POLICIES),
        "pct": _int(_text(published, "pct")),
    }

    # ------------------------------------------------------------------
    # record[]
    # ------------------------------------------------------------------
    records = [
        parsed
        for parsed in (_parse_record(r) for r in _findall(feedback, "record"))
        if parsed is not None
    ]

    return {"metadata": metadata, "policy": policy, "records": records, "raw_xml": xml}


def _parse_record(record: ET.Element) -> dict[str, Any] | None:
    row = _find(record, "row")
    if row is None:
        return None

    policy_eval = _find(row, "policy_evaluated")
    identifiers = _find(record, "identifiers")
    auth_results = _find(record, "auth_results")

    override_reasons = [
        {"type": _text(reason, "type") or "unknown", "comment": _text(reason, "comment")}
        for reason in _findall(policy_eval, "reason")
    ]

    dkim_results = [
        {
            "domain": _text(d, "domain") or "",
            "selector": _text(d, "selector"),
            "result": _enum(_text(d, "result"), _DKIM_RESULTS) or "none",
            "human_result": _text(d, "human_result"),
        }
        for d in _findall(auth_results, "dkim")
    ]
    spf_results = [
        {
            "domain": _text(s, "domain") or "",
            "scope": _text(s, "scope"),
            "result": _enum(_text(s, "result"), _SPF_RESULTS) or "none",
        }
        for s in _findall(auth_results, "spf")
    ]

    disposition = _enum(_text(policy_eval, "disposition"), ("quarantine", "reject")) or "none"

    return {
        "source_ip": _text(row, "source_ip") or "",
        "count": _int(_text(row, "count")) or 0,
        "disposition": disposition,
        "dmarc_dkim": _enum(_text(policy_eval, "dkim"), ("pass", "fail")),
        "dmarc_spf": _enum(_text(policy_eval, "spf"), ("pass", "fail")),
        "policy_override_reason": override_reasons or None,
        "header_from": _text(identifiers, "header_from"),
        "envelope_from": _text(identifiers, "envelope_from"),
        "envelope_to": _text(identifiers, "envelope_to"),
        "dkim_results": dkim_results,
        "spf_results": spf_results,
    }


# ---------------------------------------------------------------------------
# Element helpers
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    """Strip an XML namespace (``{urn:...}feedback`` -> ``feedback``)."""
    return tag.rsplit("}", 1)[-1]


def _find(element: ET.Element | None, tag: str) -> ET.Element | None:
    if element is None:
        return None
    for child in element:
        if _local(child.tag) == tag:
            return child
    return None


def _findall(element: ET.Element | None, tag: str) -> list[ET.Element]:
    if element is None:
        return []
    return [child for child in element if _local(child.tag) == tag]


def _text(element: ET.Element | None, tag: str) -> str | None:
    """Return stripped text of a child element, or None."""
    child = _find(element, tag)
    if child is None or child.text is None:
        return None
    return child.text.strip() or None


def _int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _enum(value: str | None, allowed: tuple[str, ...]) -> str | None:
    if value is None:
        return None
    value = value.lower()
    return value if value in allowed else None


def _alignment(value: str | None) -> str | None:
    return _enum(value, ("r", "s"))


def _timestamp(value: str | None) -> datetime:
    return datetime.fromtimestamp(_int(value) or 0, tz=timezone.utc)
