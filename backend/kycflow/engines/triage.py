"""Risk Triage — deterministic coverage/keyword scorer and route banding.

Scoring:
- +15 per critical topic with missing coverage
- +8 per topic with partial coverage
- +10 per distinct high-risk keyword across all topic content
- capped at 100

Route bands: [0,30] fast, [31,60] crosscheck, [61,80] escalate, [81,100] human_gate.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from kycflow.engines.topics import extract_high_risk_keywords
from kycflow.models.review import RiskBreakdown, RoutePath, TopicSection, TriageResult

MAX_RISK_SCORE = 100


class TriagePolicy(BaseModel):
    """Scoring weights and band upper bounds (inclusive)."""

    critical_topics: list[str] = Field(default_factory=lambda: [
        "client_identity", "source_of_wealth", "beneficial_ownership", "sanctions_pep",
    ])
    missing_critical_points: int = 15
    partial_points: int = 8
    keyword_points: int = 10
    fast_max: int = 30
    crosscheck_max: int = 60
    escalate_max: int = 80


DEFAULT_POLICY = TriagePolicy()

_BAND_REASONS: dict[str, str] = {
    "fast": "Low risk -> Fast path",
    "crosscheck": "Medium risk -> Cross-check path",
    "escalate": "High risk -> Escalate path",
    "human_gate": "Critical risk -> Human gate required",
}


def route_for_score(score: int, policy: TriagePolicy = DEFAULT_POLICY) -> RoutePath:
    if score <= policy.fast_max:
        return "fast"
    if score <= policy.crosscheck_max:
        return "crosscheck"
    if score <= policy.escalate_max:
        return "escalate"
    return "human_gate"


def triage_risk(sections: list[TopicSection], policy: TriagePolicy = DEFAULT_POLICY) -> TriageResult:
    """Score topic sections and pick a route path."""
    coverage_points = 0
    reasons: list[str] = []

    for section in sections:
        if section.coverage == "missing" and section.topic_id in policy.critical_topics:
            coverage_points += policy.missing_critical_points
            reasons.append(f"Missing critical topic: {section.topic_id}")
        elif section.coverage == "partial":
            coverage_points += policy.partial_points
            reasons.append(f"Partial coverage: {section.topic_id}")

    keywords = extract_high_risk_keywords(" ".join(s.content for s in sections))
    keyword_points = len(keywords) * policy.keyword_points
    if keywords:
        reasons.append(f"High-risk keywords detected: {', '.join(keywords)}")

    score = min(coverage_points + keyword_points, MAX_RISK_SCORE)
    route = route_for_score(score, policy)
    reasons.append(_BAND_REASONS[route])

    return TriageResult(
        risk_score=score,
        route_path=route,
        reasons=reasons,
        breakdown=RiskBreakdown(
            coverage_points=coverage_points,
            keyword_points=keyword_points,
            total_points=score,
        ),
    )
