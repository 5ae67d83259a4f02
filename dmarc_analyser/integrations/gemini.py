"""
Gemini-backed DMARC policy recommendations.

Each organization stores its own Gemini API key (encrypted at rest).  Usage
is bounded three ways:

  - 100 generations per organization per rolling 24 hours
  - a 5 minute cooldown per domain after each generation
  - results are cached per domain for 24 hours and reused while the
    hashed input context is unchanged

The model is asked for a JSON object; the reply is normalized so callers
always receive every key with a valid value.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import requests
from flask import current_app

from dmarc_analyser import db
from dmarc_analyser.analytics.policy import POLICIES, collect_policy_metrics
from dmarc_analyser.models import AiIntegration, AiRecommendationCache, Domain, Source, as_utc
from dmarc_analyser.utils.crypto import decrypt_secret

logger = logging.getLogger(__name__)

DAILY_LIMIT = 100
CACHE_TTL = timedelta(hours=24)
COOLDOWN = timedelta(minutes=5)
USAGE_WINDOW = timedelta(hours=24)

_API_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
_TIMEOUT = 30
_JSON_RE = re.compile(r"\{[\s\S]*\}")
_MAX_ITEMS = 5


class AiError(Exception):
    """Gemini request failed or returned an unusable response."""


@dataclass
class DmarcContext:
    """Inputs sent to the model (and hashed for caching)."""

    domain: str
    dmarc_record: str | None
    spf_record: str | None
    current_policy: str
    pass_rate_7d: float = 0
    pass_rate_30d: float = 0
    pass_rate_all: float = 0
    total_messages: int = 0
    days_monitored: int = 0
    sources: dict[str, int] = field(
        default_factory=lambda: {"legitimate": 0, "unknown": 0, "suspicious": 0, "forwarded": 0}
    )


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    reset_at: datetime | None
    used_today: int


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


def build_context(domain: Domain, now: datetime | None = None) -> DmarcContext:
    """Collect pass rates, monitoring age and source classification counts."""
    metrics = collect_policy_metrics(domain, now)
    context = DmarcContext(
        domain=domain.domain,
        dmarc_record=domain.dmarc_record,
        spf_record=domain.spf_record,
        current_policy=metrics.current_policy,
    )
    if not metrics.has_reports:
        return context

    context.pass_rate_7d = metrics.pass_rate_7d
    context.pass_rate_30d = metrics.pass_rate_30d
    context.pass_rate_all = metrics.pass_rate
    context.total_messages = metrics.total_messages
    context.days_monitored = metrics.days_monitored

    rows = db.session.execute(
        db.select(Source.source_type, Source.known_sender_id).where(Source.domain_id == domain.id)
    ).all()
    for source_type, known_sender_id in rows:
        if source_type == "legitimate" or known_sender_id:
            context.sources["legitimate"] += 1
        elif source_type in ("suspicious", "forwarded"):
            context.sources[source_type] += 1
        else:
            context.sources["unknown"] += 1
    return context


def hash_context(context: DmarcContext) -> str:
    """SHA-256 over the parts of the context that should invalidate the cache.

    Pass rate is rounded to a whole percent and message volume to the
    nearest hundred below, so small drifts reuse the cached answer.
    """
    normalized = json.dumps(
        {
            "domain": context.domain,
            "dmarcRecord": context.dmarc_record,
            "spfRecord": context.spf_record,
            "passRate30Days": int(context.pass_rate_30d + 0.5),
            "totalMessages": context.total_messages // 100 * 100,
            "sources": context.sources,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def build_prompt(context: DmarcContext) -> str:
    sources = context.sources
    return f"""You are an expert email security consultant specialising in DMARC, SPF, and DKIM. Analyse this domain's email authentication posture and provide actionable insights.

## Domain: {context.domain}

## Current DNS Configuration:
- DMARC Record: {context.dmarc_record or "Not configured"}
- SPF Record: {context.spf_record or "Not configured"}
- Current DMARC Policy: p={context.current_policy}

## Email Authentication Metrics:
- Monitoring Duration: {context.days_monitored} days
- Total Messages Analysed: {context.total_messages:,}
- Pass Rate (last 7 days): {context.pass_rate_7d:.1f}%
- Pass Rate (last 30 days): {context.pass_rate_30d:.1f}%
- Pass Rate (all time): {context.pass_rate_all:.1f}%

## Sending Sources:
- Legitimate (verified): {sources["legitimate"]}
- Unknown (unclassified): {sources["unknown"]}
- Suspicious: {sources["suspicious"]}
- Forwarded: {sources["forwarded"]}

## Your Analysis Should Include:

1. **Summary**: A one-line headline summarising the domain's current state
2. **Detailed Analysis**: Explain what the data tells us about this domain's email security
3. **DNS Record Review**: Comment on the SPF and DMARC configuration if provided
4. **Policy Recommendation**: Whether to stay, upgrade, or (rarely) downgrade
5. **Specific Risks**: What could go wrong, be specific to this domain's situation
6. **Actionable Next Steps**: Prioritised actions the domain owner should take

IMPORTANT GUIDELINES:
- NEVER recommend downgrading from 'reject' unless pass rates are critically low (<70%) for 14+ days
- Unknown sources are a key blocker - they MUST be classified before policy upgrades
- Consider forwarding issues (mailing lists, auto-forwards break DMARC)
- If the SPF record looks misconfigured or overly permissive, mention it
- Be specific and actionable, not generic

Respond in this exact JSON format:
{{
  "summary": "<One compelling sentence about the domain's email security status>",
  "recommendedPolicy": "none" | "quarantine" | "reject",
  "confidence": <0-100>,
  "reasoning": "<3-4 sentences explaining your analysis and recommendation>",
  "dnsInsights": "<1-2 sentences about SPF/DMARC record quality, or null if not applicable>",
  "risks": ["<specific risk 1>", "<specific risk 2>"],
  "nextSteps": ["<prioritised action 1>", "<prioritised action 2>", "<action 3>"],
  "readyToUpgrade": <boolean>
}}

Policy upgrade thresholds:
- none -> quarantine: 95%+ pass rate, 14+ days monitoring, <5 unknown sources
- quarantine -> reject: 98%+ pass rate, 30+ days monitoring, 0 unknown sources, 500+ messages"""


# ---------------------------------------------------------------------------
# API call and response parsing
# ---------------------------------------------------------------------------


def _int_or_none(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def parse_response(data: dict[str, Any]) -> dict[str, Any]:
    """Extract and normalize the recommendation from a generateContent reply.

    Raises:
        AiError: When no JSON object can be recovered.
    """
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        text = None
    if not text:
        logger.warning("Gemini returned an empty response")
        raise AiError("Failed to parse AI response")

    match = _JSON_RE.search(text)
    if not match:
        logger.warning("No JSON object in Gemini response: %.200s", text)
        raise AiError("Failed to parse AI response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        logger.warning("Invalid JSON in Gemini response: %s", exc)
        raise AiError("Failed to parse AI response") from exc
    if not isinstance(parsed, dict):
        raise AiError("Failed to parse AI response")

    insights = parsed.get("dnsInsights")
    if not isinstance(insights, str) or not insights.strip() or insights.strip().lower() == "null":
        insights = None

    confidence = _int_or_none(parsed.get("confidence")) or 50
    policy = parsed.get("recommendedPolicy")
    risks = parsed.get("risks")
    steps = parsed.get("nextSteps")

    return {
        "summary": str(parsed.get("summary") or "Email authentication analysis complete"),
        "recommendedPolicy": policy if policy in POLICIES else "none",
        "confidence": min(100, max(0, confidence)),
        "reasoning": str(parsed.get("reasoning") or "Unable to generate reasoning"),
        "dnsInsights": insights,
        "risks": [str(r) for r in risks[:_MAX_ITEMS]] if isinstance(risks, list) else [],
        "nextSteps": [str(s) for s in steps[:_MAX_ITEMS]] if isinstance(steps, list) else [],
        "readyToUpgrade": bool(parsed.get("readyToUpgrade")),
    }


def _post(api_key: str, prompt: str, *, temperature: float, max_tokens: int) -> requests.Response:
    model = current_app.config.get("GEMINI_MODEL", "gemini-2.0-flash")
    try:
        return requests.post(
            _API_URL.format(model=model),
            params={"key": api_key},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
            },
            timeout=_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.warning("Gemini request failed: %s", exc)
        raise AiError("AI generation failed") from exc


def call_gemini(api_key: str, context: DmarcContext) -> dict[str, Any]:
    """Ask Gemini for a recommendation.

    Raises:
        AiError: On HTTP failure or an unparseable reply.
    """
    response = _post(api_key, build_prompt(context), temperature=0.3, max_tokens=1024)
    if not response.ok:
        logger.warning("Gemini API error %s: %.200s", response.status_code, response.text)
        raise AiError(f"Gemini API error: {response.status_code}")
    try:
        data = response.json()
    except ValueError as exc:
        raise AiError("Failed to parse AI response") from exc
    return parse_response(data)


def check_api_key(api_key: str) -> tuple[bool, str | None, int | None]:
    """Send a minimal prompt to confirm *api_key* works.

    Returns:
        ``(ok, error_message, http_status)``.
    """
    try:
        response = _post(
            api_key,
            'Say "Connection successful" in exactly 2 words.',
            temperature=0,
            max_tokens=10,
        )
    except AiError as exc:
        return False, str(exc), None
    if response.ok:
        return True, None, response.status_code

    message = "API key validation failed"
    try:
        message = response.json().get("error", {}).get("message") or message
    except (ValueError, AttributeError):
        pass
    return False, message, response.status_code


def is_valid_key_format(api_key: Any) -> str | None:
    """Return an error message for a malformed key, or None."""
    if not isinstance(api_key, str) or len(api_key) < 20:
        return "Invalid API key format"
    if not api_key.startswith("AIza"):
        return "Invalid Gemini API key format"
    return None


# ---------------------------------------------------------------------------
# Usage limits and cache
# ---------------------------------------------------------------------------


def get_integration(organization_id: int) -> AiIntegration | None:
    return db.session.execute(
        db.select(AiIntegration).where(AiIntegration.organization_id == organization_id)
    ).scalar_one_or_none()


def api_key_for(integration: AiIntegration | None) -> str | None:
    if integration is None:
        return None
    return decrypt_secret(integration.gemini_api_key)


def check_rate_limit(integration: AiIntegration | None, now: datetime | None = None) -> RateLimitStatus:
    """Return the org's remaining daily budget, starting a new window when due."""
    if integration is None or not integration.gemini_api_key:
        return RateLimitStatus(False, 0, None, 0)

    now = now or datetime.now(timezone.utc)
    reset_at = as_utc(integration.usage_reset_at)
    if reset_at is None or reset_at < now - USAGE_WINDOW:
        integration.usage_count_24h = 0
        integration.usage_reset_at = now
        db.session.commit()
        return RateLimitStatus(True, DAILY_LIMIT, now + USAGE_WINDOW, 0)

    remaining = DAILY_LIMIT - integration.usage_count_24h
    return RateLimitStatus(remaining > 0, max(0, remaining), reset_at + USAGE_WINDOW, integration.usage_count_24h)


def record_usage(integration: AiIntegration, now: datetime | None = None) -> None:
    integration.usage_count_24h = (integration.usage_count_24h or 0) + 1
    integration.last_used_at = now or datetime.now(timezone.utc)
    integration.last_error = None
    db.session.commit()


def record_error(integration: AiIntegration, message: str) -> None:
    integration.last_error = message
    db.session.commit()


def _cache_row(domain_id: int) -> AiRecommendationCache | None:
    return db.session.execute(
        db.select(AiRecommendationCache).where(AiRecommendationCache.domain_id == domain_id)
    ).scalar_one_or_none()


def cooldown_ends_at(domain_id: int, now: datetime | None = None) -> datetime | None:
    """Return when the domain's cooldown ends, or None if it is not cooling down."""
    row = _cache_row(domain_id)
    if row is None:
        return None
    now = now or datetime.now(timezone.utc)
    ends = as_utc(row.generated_at) + COOLDOWN
    return ends if now < ends else None


def get_cached(domain_id: int, context_hash: str, now: datetime | None = None) -> dict[str, Any] | None:
    """Return the cached recommendation if unexpired and computed from the same context."""
    row = _cache_row(domain_id)
    now = now or datetime.now(timezone.utc)
    if row is None or as_utc(row.expires_at) < now or row.input_hash != context_hash:
        return None
    return {
        **row.get_recommendation(),
        "cached": True,
        "generatedAt": as_utc(row.generated_at).isoformat(),
        "expiresAt": as_utc(row.expires_at).isoformat(),
    }


def store_cached(
    domain_id: int, recommendation: dict[str, Any], context_hash: str, now: datetime | None = None
) -> AiRecommendationCache:
    now = now or datetime.now(timezone.utc)
    row = _cache_row(domain_id)
    if row is None:
        row = AiRecommendationCache(domain_id=domain_id)
        db.session.add(row)
    row.recommendation = json.dumps(recommendation)
    row.input_hash = context_hash
    row.generated_at = now
    row.expires_at = now + CACHE_TTL
    db.session.commit()
    return row
