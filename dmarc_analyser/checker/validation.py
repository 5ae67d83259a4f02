"""
DMARC, SPF and DKIM record parsing and validation.

Pure functions over record strings; nothing here touches DNS.  Each
``validate_*`` returns a list of ``{"severity", "message", "field"}``
issues where severity is error, warning or info.
"""

from __future__ import annotations

from typing import Any

_POLICIES = ("none", "quarantine", "reject")
_ALL_TERMS = {"all": "neutral", "-all": "fail", "~all": "softfail", "+all": "pass", "?all": "neutral"}
_LOOKUP_MECHANISMS = ("a", "mx", "ptr", "exists")

SPF_LOOKUP_LIMIT = 10


def _issue(severity: str, message: str, field: str | None = None) -> dict[str, Any]:
    issue: dict[str, Any] = {"severity": severity, "message": message}
    if field is not None:
        issue["field"] = field
    return issue


def _parse_tags(record: str) -> dict[str, str]:
    """Split ``k=v; k=v`` into a dict (first ``=`` only, so base64 survives)."""
    tags: dict[str, str] = {}
    for part in record.split(";"):
        part = part.strip()
        if not part:
            continue
        key, _, value = part.partition("=")
        tags[key.strip()] = value.strip()
    return tags


def _parse_int(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _split_uris(value: str) -> list[str]:
    return [u.replace("mailto:", "").strip() for u in value.split(",") if u.strip()]


# ---------------------------------------------------------------------------
# DMARC
# ---------------------------------------------------------------------------


def parse_dmarc_record(record: str | None) -> dict[str, Any] | None:
    """Parse a DMARC TXT record.

    Returns:
        Dict with version, policy, subdomainPolicy, percentage, ruaEmails,
        rufEmails, dkimAlignment, spfAlignment, reportFormat,
        reportInterval and rawRecord; or None when the record does not
        start with ``v=DMARC1``.
    """
    if not record or not record.startswith("v=DMARC1"):
        return None

    tags = _parse_tags(record)
    return {
        "version": tags.get("v"),
        "policy": tags.get("p") or None,
        "subdomainPolicy": tags.get("sp") or None,
        "percentage": _parse_int(tags.get("pct")),
        "ruaEmails": _split_uris(tags["rua"]) if "rua" in tags else [],
        "rufEmails": _split_uris(tags["ruf"]) if "ruf" in tags else [],
        "dkimAlignment": tags.get("adkim"),
        "spfAlignment": tags.get("aspf"),
        "reportFormat": tags.get("fo"),
        "reportInterval": _parse_int(tags.get("ri")),
        "rawRecord": record,
    }


def validate_dmarc_record(record: str | None) -> list[dict[str, Any]]:
    """Return validation issues for a DMARC record."""
    parsed = parse_dmarc_record(record)
    if parsed is None:
        return [_issue("error", "Invalid DMARC record. Must start with v=DMARC1")]

    issues: list[dict[str, Any]] = []
    policy = parsed["policy"]
    if not policy:
        issues.append(_issue("error", "Missing required policy (p=) tag", "p"))
    elif policy == "none":
        issues.append(
            _issue(
                "warning",
                'Policy is set to "none" - emails are not being quarantined or rejected',
                "p",
            )
        )

    if not parsed["ruaEmails"]:
        issues.append(
            _issue(
                "warning",
                "No aggregate report email (rua) specified - you will not receive DMARC reports",
                "rua",
            )
        )

    pct = parsed["percentage"]
    if pct and pct < 100:
        issues.append(
            _issue(
                "info",
                f"Policy applies to only {pct}% of emails. Consider 100% for full protection.",
                "pct",
            )
        )

    if parsed["dkimAlignment"] == "s":
        issues.append(_issue("info", "DKIM alignment is set to strict mode", "adkim"))
    if parsed["spfAlignment"] == "s":
        issues.append(_issue("info", "SPF alignment is set to strict mode", "aspf"))

    return issues


# ---------------------------------------------------------------------------
# SPF
# ---------------------------------------------------------------------------


def parse_spf_record(record: str | None) -> dict[str, Any] | None:
    """Parse an SPF TXT record into mechanisms, includes and ip ranges.

    Returns None when the record does not start with ``v=spf1``.
    """
    if not record or not record.startswith("v=spf1"):
        return None

    parsed: dict[str, Any] = {
        "version": "spf1",
        "mechanisms": [],
        "qualifier": "",
        "hasAll": False,
        "includes": [],
        "ipv4": [],
        "ipv6": [],
        "rawRecord": record,
    }

    for term in record.split()[1:]:
        if term in _ALL_TERMS:
            parsed["hasAll"] = True
            parsed["qualifier"] = _ALL_TERMS[term]
            parsed["mechanisms"].append(term)
        elif term.startswith("include:"):
            parsed["includes"].append(term[len("include:"):])
            parsed["mechanisms"].append(term)
        elif term.startswith("ip4:"):
            parsed["ipv4"].append(term[4:])
            parsed["mechanisms"].append(term)
        elif term.startswith("ip6:"):
            parsed["ipv6"].append(term[4:])
            parsed["mechanisms"].append(term)
        elif term.lstrip("+-~?").startswith(_LOOKUP_MECHANISMS):
            parsed["mechanisms"].append(term)

    return parsed


def count_spf_lookups(parsed: dict[str, Any]) -> int:
    """Count DNS-querying terms: includes plus a/mx/ptr/exists mechanisms."""
    lookups = len(parsed["includes"])
    for mechanism in parsed["mechanisms"]:
        if mechanism in _ALL_TERMS or mechanism.startswith(("include:", "ip4:", "ip6:")):
            continue
        if mechanism.lstrip("+-~?").startswith(_LOOKUP_MECHANISMS):
            lookups += 1
    return lookups


def validate_spf_record(record: str | None) -> list[dict[str, Any]]:
    """Return validation issues for an SPF record."""
    parsed = parse_spf_record(record)
    if parsed is None:
        return [_issue("error", "Invalid SPF record. Must start with v=spf1")]

    issues: list[dict[str, Any]] = []
    if not parsed["hasAll"]:
        issues.append(
            _issue(
                "warning",
                'SPF record does not end with an "all" mechanism. '
                "This may allow unauthorized senders.",
            )
        )
    elif parsed["qualifier"] in ("pass", "neutral"):
        issues.append(
            _issue(
                "warning",
                'SPF record ends with "+all" or "?all" which allows all senders. '
                'Consider using "-all" (hard fail) or "~all" (soft fail).',
            )
        )

    lookups = count_spf_lookups(parsed)
    if lookups > SPF_LOOKUP_LIMIT:
        issues.append(
            _issue(
                "error",
                f"SPF record exceeds 10 DNS lookup limit (currently {lookups}). "
                "This will cause SPF validation to fail.",
            )
        )
    elif lookups > 7:
        issues.append(
            _issue(
                "warning",
                f"SPF record has {lookups} DNS lookups (limit is 10). "
                "Consider reducing to avoid hitting the limit.",
            )
        )

    includes = len(parsed["includes"])
    if includes > 5:
        issues.append(
            _issue(
                "info",
                f"SPF record has {includes} include mechanisms. "
                "Consider consolidating to reduce DNS lookups.",
            )
        )

    return issues


# ---------------------------------------------------------------------------
# DKIM
# ---------------------------------------------------------------------------


def parse_dkim_record(record: str | None) -> dict[str, Any] | None:
    """Parse a DKIM key record (``v=DKIM1; k=rsa; p=...``)."""
    if not record:
        return None

    tags = _parse_tags(record)
    return {
        "version": tags.get("v"),
        "keyType": tags.get("k"),
        "publicKey": tags.get("p") or None,
        "hashAlgorithms": tags["h"].split(":") if "h" in tags else None,
        "serviceTypes": tags["s"].split(":") if "s" in tags else None,
        "flags": tags.get("t"),
        "notes": tags.get("n"),
        "rawRecord": record,
    }


def validate_dkim_record(record: str | None) -> list[dict[str, Any]]:
    """Return validation issues for a DKIM key record."""
    parsed = parse_dkim_record(record)
    if parsed is None:
        return [_issue("error", "Invalid DKIM record")]

    issues: list[dict[str, Any]] = []
    public_key = parsed["publicKey"]
    if not public_key:
        issues.append(_issue("error", "Missing public key (p=) in DKIM record", "p"))
    elif len(public_key) < 200:
        issues.append(
            _issue("warning", "Public key seems short. Ensure it is a valid RSA or Ed25519 key.", "p")
        )

    key_type = parsed["keyType"]
    if key_type and key_type not in ("rsa", "ed25519"):
        issues.append(
            _issue(
                "warning",
                f'Unknown key type: {key_type}. Common types are "rsa" or "ed25519".',
                "k",
            )
        )

    if parsed["flags"] and "y" in parsed["flags"]:
        issues.append(
            _issue(
                "warning",
                "DKIM record is in testing mode (t=y). Remove this flag when ready for production.",
                "t",
            )
        )

    if not parsed["version"]:
        issues.append(_issue("info", "DKIM version tag (v=) is optional but recommended", "v"))

    return issues


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


def get_recommendations(record_type: str, record: str | None) -> list[str]:
    """Return plain-language next steps for a DMARC, SPF or DKIM record.

    Args:
        record_type: ``dmarc``, ``spf`` or ``dkim``.
        record: The record text, or None when no record exists.
    """
    recommendations: list[str] = []

    if not record:
        if record_type == "dmarc":
            recommendations.append(
                "No DMARC record found. Consider adding one to protect your domain from email spoofing."
            )
            recommendations.append(
                "Start with a monitoring policy: v=DMARC1; p=none; rua=mailto:dmarc@yourdomain.com"
            )
        elif record_type == "spf":
            recommendations.append(
                "No SPF record found. Add an SPF record to specify which servers can send email for your domain."
            )
            recommendations.append("Example: v=spf1 include:_spf.google.com ~all")
        elif record_type == "dkim":
            recommendations.append(
                "No DKIM record found for this selector. Ensure you are using the correct selector."
            )
            recommendations.append("DKIM records are added by your email service provider.")
        return recommendations

    if record_type == "dmarc":
        parsed = parse_dmarc_record(record)
        if parsed and parsed["policy"] == "none":
            recommendations.append(
                "Your DMARC policy is in monitoring mode. Once you have verified SPF and DKIM "
                "are working correctly, consider moving to p=quarantine or p=reject."
            )
            recommendations.append(
                "Monitor your aggregate reports (rua) for at least 2-4 weeks before tightening the policy."
            )
        if not parsed or not parsed["rufEmails"]:
            recommendations.append(
                "Consider adding forensic reporting (ruf=) to receive samples of failed messages."
            )
    elif record_type == "spf":
        parsed = parse_spf_record(record)
        if not parsed or parsed["qualifier"] != "fail":
            recommendations.append(
                'Consider using "-all" instead of "~all" for stronger protection once you have '
                "verified all legitimate senders are included."
            )
    elif record_type == "dkim":
        parsed = parse_dkim_record(record)
        if parsed and parsed["flags"] and "y" in parsed["flags"]:
            recommendations.append(
                'Your DKIM key is in testing mode. Remove "t=y" when ready for production.'
            )

    return recommendations


def analyze_record(record_type: str, record: str | None) -> dict[str, Any]:
    """Bundle parse, validation and recommendations for one record."""
    parsers = {
        "dmarc": (parse_dmarc_record, validate_dmarc_record),
        "spf": (parse_spf_record, validate_spf_record),
        "dkim": (parse_dkim_record, validate_dkim_record),
    }
    parse, validate = parsers[record_type]
    issues = validate(record) if record else []
    return {
        "record": record,
        "parsed": parse(record) if record else None,
        "valid": bool(record) and not any(i["severity"] == "error" for i in issues),
        "issues": issues,
        "recommendations": get_recommendations(record_type, record),
    }
