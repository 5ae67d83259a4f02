"""
DMARC policy recommendation.

``recommend_policy`` is a pure rule evaluator over :class:`PolicyMetrics`;
``collect_policy_metrics`` builds those metrics from the stored reports and
sources of a domain.

Upgrade thresholds:
  none -> quarantine   30-day pass rate >= 95, 7-day >= 90, 14+ days,
                       100+ messages, at most 5 unknown sources
  quarantine -> reject 30-day pass rate >= 98, 7-day >= 95, 30+ days,
                       500+ messages, no unknown sources
  reject               kept while the 30-day pass rate stays >= 95
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from dmarc_analyser import db
from dmarc_analyser.analytics.stats import pass_rate
from dmarc_analyser.models import Domain, Record, Report, Source, as_utc

POLICIES: tuple[str, ...] = ("none", "quarantine", "reject")
_POLICY_RANK = {"none": 0, "quarantine": 1, "reject": 2}
_POLICY_RE = re.compile(r"p=(\w+)")


@dataclass
class PolicyMetrics:
    """Aggregate inputs to the recommendation rules."""

    current_policy: str
    pass_rate: float = 0
    pass_rate_7d: float = 0
    pass_rate_30d: float = 0
    total_messages: int = 0
    unique_sources: int = 0
    known_sources: int = 0
    unknown_sources: int = 0
    days_monitored: int = 0
    has_reports: bool = True


def parse_policy(dmarc_record: str | None) -> str:
    """Return the ``p=`` policy of a DMARC record; anything unrecognised is ``none``."""
    if not dmarc_record:
        return "none"
    match = _POLICY_RE.search(dmarc_record)
    if not match:
        return "none"
    policy = match.group(1).lower()
    return policy if policy in POLICIES else "none"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _pct(value: float) -> str:
    return f"{value:g}"


def recommend_policy(m: PolicyMetrics) -> dict[str, Any]:
    """Evaluate the recommendation rules.

    Returns:
        Dict with currentPolicy, recommendedPolicy, confidence, passRate,
        passRate7Days, passRate30Days, totalMessages, uniqueSources,
        knownSources, unknownSources, daysMonitored, readyToUpgrade,
        blockers and achievements.
    """
    if not m.has_reports:
        return {
            "currentPolicy": m.current_policy,
            "recommendedPolicy": "none",
            "confidence": 0,
            "passRate": 0,
            "passRate7Days": 0,
            "passRate30Days": 0,
            "totalMessages": 0,
            "uniqueSources": 0,
            "knownSources": 0,
            "unknownSources": 0,
            "daysMonitored": 0,
            "readyToUpgrade": False,
            "blockers": ["No DMARC reports received yet"],
            "achievements": [],
        }

    blockers: list[str] = []
    achievements: list[str] = []
    pr30, pr7 = m.pass_rate_30d, m.pass_rate_7d

    if m.days_monitored >= 30:
        achievements.append(f"{m.days_monitored} days of monitoring data")
    else:
        blockers.append(f"Need at least 30 days of data (currently {m.days_monitored})")

    if m.total_messages >= 100:
        achievements.append(f"{m.total_messages:,} messages analyzed")
    else:
        blockers.append(f"Need more message volume (currently {m.total_messages})")

    if pr30 >= 95:
        achievements.append(f"Excellent 30-day pass rate: {_pct(pr30)}%")
    elif pr30 >= 80:
        blockers.append(f"Pass rate should be above 95% (currently {_pct(pr30)}%)")
    else:
        blockers.append(f"Pass rate too low: {_pct(pr30)}%")

    if pr7 >= 95:
        achievements.append(f"Consistent recent performance: {_pct(pr7)}% (7 days)")
    elif pr7 < pr30 - 5:
        blockers.append(f"Recent pass rate declining (7-day: {_pct(pr7)}%)")

    if m.unknown_sources == 0:
        achievements.append("All sources identified")
    elif m.unknown_sources <= 3:
        blockers.append(f"{m.unknown_sources} unknown source(s) need classification")
    else:
        blockers.append(f"{m.unknown_sources} unknown sources need investigation")

    current = m.current_policy
    recommended = current
    confidence = 0

    if current == "none":
        if (
            pr30 >= 95
            and pr7 >= 90
            and m.days_monitored >= 14
            and m.total_messages >= 100
            and m.unknown_sources <= 5
        ):
            recommended = "quarantine"
            known_share = (m.known_sources / m.unique_sources) * 20 if m.unique_sources else 0
            confidence = min(
                100,
                _round_half_up(
                    pr30 * 0.4
                    + (30 if m.days_monitored >= 30 else m.days_monitored)
                    + min(m.total_messages / 100, 20)
                    + known_share
                ),
            )
        else:
            recommended = "none"
            confidence = 50
    elif current == "quarantine":
        if (
            pr30 >= 98
            and pr7 >= 95
            and m.days_monitored >= 30
            and m.total_messages >= 500
            and m.unknown_sources == 0
        ):
            recommended = "reject"
            confidence = min(
                100,
                _round_half_up(
                    pr30 * 0.5
                    + (30 if m.days_monitored >= 60 else m.days_monitored / 2)
                    + min(m.total_messages / 500, 20)
                ),
            )
        elif pr30 >= 95 and m.days_monitored >= 14:
            recommended = "quarantine"
            confidence = 70
        else:
            recommended = "quarantine" if pr30 >= 80 else "none"
            confidence = 40
            if pr30 < 80:
                blockers.append("Consider reverting to p=none to investigate issues")
    elif current == "reject":
        if pr30 >= 95:
            recommended = "reject"
            confidence = 95
            achievements.append("Reject policy working effectively")
        else:
            recommended = "quarantine"
            confidence = 60
            blockers.append("Pass rate has dropped - consider relaxing policy temporarily")

    ready = (
        not blockers
        and current in ("none", "quarantine")
        and _POLICY_RANK[recommended] > _POLICY_RANK[current]
    )

    return {
        "currentPolicy": current,
        "recommendedPolicy": recommended,
        "confidence": confidence,
        "passRate": m.pass_rate,
        "passRate7Days": pr7,
        "passRate30Days": pr30,
        "totalMessages": m.total_messages,
        "uniqueSources": m.unique_sources,
        "knownSources": m.known_sources,
        "unknownSources": m.unknown_sources,
        "daysMonitored": m.days_monitored,
        "readyToUpgrade": ready,
        "blockers": blockers,
        "achievements": achievements,
    }


def collect_policy_metrics(domain: Domain, now: datetime | None = None) -> PolicyMetrics:
    """Gather pass rates, source counts and monitoring age for *domain*."""
    now = now or datetime.now(timezone.utc)
    current = parse_policy(domain.dmarc_record)

    oldest = db.session.execute(
        db.select(db.func.min(Report.date_range_begin)).where(Report.domain_id == domain.id)
    ).scalar_one_or_none()
    if oldest is None:
        return PolicyMetrics(current_policy=current, has_reports=False)

    days_monitored = (now - as_utc(oldest)) // timedelta(days=1)
    since_7 = now - timedelta(days=7)
    since_30 = now - timedelta(days=30)

    rows = db.session.execute(
        db.select(Report.date_range_begin, Record.count, Record.dmarc_dkim, Record.dmarc_spf)
        .join(Report, Record.report_id == Report.id)
        .where(Report.domain_id == domain.id)
    ).all()

    totals = {"all": [0, 0], "30": [0, 0], "7": [0, 0]}
    for begin, count, dkim, spf in rows:
        passed = count if (dkim == "pass" or spf == "pass") else 0
        begin = as_utc(begin)
        buckets = ["all"]
        if begin >= since_30:
            buckets.append("30")
        if begin >= since_7:
            buckets.append("7")
        for bucket in buckets:
            totals[bucket][0] += count
            totals[bucket][1] += passed

    sources = db.session.execute(
        db.select(Source.source_type, Source.known_sender_id).where(Source.domain_id == domain.id)
    ).all()
    known = sum(1 for kind, sender in sources if kind == "legitimate" or sender)
    unknown = sum(1 for kind, sender in sources if kind == "unknown" and not sender)

    return PolicyMetrics(
        current_policy=current,
        pass_rate=pass_rate(totals["all"][1], totals["all"][0]),
        pass_rate_7d=pass_rate(totals["7"][1], totals["7"][0]),
        pass_rate_30d=pass_rate(totals["30"][1], totals["30"][0]),
        total_messages=totals["all"][0],
        unique_sources=len(sources),
        known_sources=known,
        unknown_sources=unknown,
        days_monitored=days_monitored,
    )


def policy_recommendation(domain: Domain, now: datetime | None = None) -> dict[str, Any]:
    """Return the recommendation payload for *domain*."""
    return recommend_policy(collect_policy_metrics(domain, now))
