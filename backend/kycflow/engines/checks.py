"""Parallel Check Executor — route-conditioned risk checks run concurrently.

Checks:
- conflict_sweep: contradicting risk statements across topics (not on the fast path)
- gap_collector: topics without complete coverage (always)
- policy_flags_check: policy keyword flags (escalate / human_gate only)

Results are joined before returning; trace events are emitted in check order
so the trace does not depend on completion order.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from kycflow.models.review import (
    Conflict,
    CoverageGap,
    ExecutionResult,
    Issue,
    RoutePath,
    TopicSection,
    TraceEvent,
)

logger = logging.getLogger(__name__)

POLICY_VIOLATIONS: list[tuple[str, str]] = [
    ("sanctions", "SANCTIONS_EXPOSURE"),
    ("pep", "PEP_DETECTED"),
    ("shell company", "SHELL_COMPANY_RISK"),
    ("cash intensive", "CASH_INTENSIVE_BUSINESS"),
    ("high risk jurisdiction", "HIGH_RISK_JURISDICTION"),
]

POLICY_FLAG_PATHS: frozenset[str] = frozenset({"escalate", "human_gate"})


async def run_conflict_sweep(sections: list[TopicSection]) -> list[Conflict]:
    risk_topics = [s for s in sections if "risk" in s.content.lower()]
    if len(risk_topics) <= 1:
        return []
    has_high = any("high risk" in s.content.lower() for s in risk_topics)
    has_low = any("low risk" in s.content.lower() for s in risk_topics)
    if not (has_high and has_low):
        return []
    return [Conflict(
        topic_ids=[s.topic_id for s in risk_topics],
        description="Contradicting risk assessments found across topics",
        severity="high",
        evidence_refs=[ref for s in risk_topics for ref in s.evidence_refs[:1]],
    )]


async def run_gap_collector(sections: list[TopicSection]) -> list[CoverageGap]:
    return [
        CoverageGap(
            topic_id=s.topic_id,
            status=s.coverage,
            reason="No information found in documents" if s.coverage == "missing"
            else "Insufficient detail provided",
        )
        for s in sections
        if s.coverage != "complete"
    ]


async def run_policy_flags_check(sections: list[TopicSection]) -> list[str]:
    content = " ".join(s.content for s in sections).lower()
    return [flag for keyword, flag in POLICY_VIOLATIONS if keyword in content]


async def execute_parallel_checks(sections: list[TopicSection], route_path: RoutePath) -> ExecutionResult:
    """Run the subset of checks selected by the route path and join results."""
    started = datetime.now(timezone.utc)

    plan: list[tuple[str, Any, str | None]] = [
        ("conflict_sweep", run_conflict_sweep,
         None if route_path != "fast" else "Fast path - skip conflict check"),
        ("gap_collector", run_gap_collector, None),
        ("policy_flags_check", run_policy_flags_check,
         None if route_path in POLICY_FLAG_PATHS else "Not escalate/human_gate path"),
    ]
    selected = [(name, fn) for name, fn, skip_reason in plan if skip_reason is None]
    outputs = await asyncio.gather(*(fn(sections) for _, fn in selected))
    by_name = dict(zip((name for name, _ in selected), outputs))

    result = ExecutionResult()
    for name, _, skip_reason in plan:
        if skip_reason is not None:
            result.events.append(TraceEvent.record(name, "skipped", reason=skip_reason))
            continue
        found = by_name[name]
        if name == "conflict_sweep":
            result.conflicts = found
            decision, summary = f"Found {len(found)} conflicts", f"{len(found)} conflicts detected"
        elif name == "gap_collector":
            result.coverage_gaps = found
            decision, summary = f"Found {len(found)} coverage gaps", f"{len(found)} gaps identified"
        else:
            result.policy_flags = found
            decision, summary = f"Found {len(found)} policy flags", f"{len(found)} flags raised"
        result.events.append(TraceEvent.record(
            name, "executed", started=started, decision=decision, outputs_summary=summary,
        ))

    logger.debug(
        "Parallel checks on %s path: %d conflicts, %d gaps, %d flags",
        route_path, len(result.conflicts), len(result.coverage_gaps), len(result.policy_flags),
    )
    return result


def collect_issues(
    risk_issues: list[Issue],
    conflicts: list[Conflict],
    coverage_gaps: list[CoverageGap],
    policy_flags: list[str],
) -> list[Issue]:
    """Flatten findings into reviewer issues.

    Order: risk issues, coverage gaps, conflicts, policy flags.
    """
    issues = list(risk_issues)
    for gap in coverage_gaps:
        missing = gap.status == "missing"
        issues.append(Issue(
            id=f"gap-{gap.topic_id}",
            category="coverage",
            severity="FAIL" if missing else "WARNING",
            title=f"{'Missing' if missing else 'Incomplete'} KYC Topic: {gap.topic_id}",
            detail=gap.reason,
            source="gap_collector",
        ))
    for idx, conflict in enumerate(conflicts):
        issues.append(Issue(
            id=f"conflict-{idx}",
            category="conflict",
            severity="FAIL",
            title="Contradicting Information Detected",
            detail=conflict.description,
            source="conflict_sweep",
            evidence=[ref.snippet for ref in conflict.evidence_refs],
        ))
    for flag in policy_flags:
        issues.append(Issue(
            id=f"flag-{flag}",
            category="policy",
            severity="WARNING",
            title=f"Policy Flag: {flag}",
            detail=f"This case has been flagged for: {flag.replace('_', ' ').lower()}",
            source="policy_flags_check",
        ))
    return issues
