"""Review models: documents, topics, findings, trace, graph state, run results.

GraphState is the transient, rehydratable execution context of one run.
It is serialized into RunCheckpoint.graph_state on pause and rebuilt with
GraphState.model_validate() on resume.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

Coverage = Literal["complete", "partial", "missing"]
RoutePath = Literal["fast", "crosscheck", "escalate", "human_gate"]
TraceStatus = Literal["executed", "skipped", "waiting", "failed"]
IssueSeverity = Literal["FAIL", "WARNING", "INFO"]
SignalSeverity = Literal["HIGH", "MEDIUM", "LOW"]
NextAction = Literal[
    "skip",
    "rerun_batch_review",
    "section_review",
    "ask_human_for_scope",
    "tighten_policy",
]
HumanDecisionValue = Literal["approve", "reject", "approve_edd", "request_docs"]
RunStatus = Literal[
    "completed",       # Finalized, findings attached
    "waiting_human",   # Paused at a gate; checkpoint or resume token issued
    "terminated",      # Human rejected at the review gate
    "degraded",        # Internal error; empty findings, failed trace event
    "not_found",       # Resume target missing
    "invalid_state",   # Resume target not resumable / decision mismatch
]


def to_iso(dt: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: str) -> datetime:
    """Inverse of to_iso(). Accepts the Z suffix on older interpreters too."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class ReviewDocument(BaseModel):
    """An uploaded document, already converted to plain text."""

    doc_id: str = Field(default_factory=lambda: str(uuid4()))
    filename: str
    text: str
    doc_type_hint: str = "other"


class EvidenceRef(BaseModel):
    doc_name: str
    page_or_section: str | None = None
    snippet: str


class TopicSection(BaseModel):
    """A classified slice of document content with a coverage rating."""

    topic_id: str
    title: str
    content: str = ""
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)
    coverage: Coverage = "missing"


class ExtractedTopic(BaseModel):
    """Compact topic projection for response consumers."""

    topic_id: str
    title: str
    summary: str
    evidence: list[EvidenceRef] = Field(default_factory=list)
    coverage: Coverage


class Conflict(BaseModel):
    topic_ids: list[str]
    description: str
    severity: Literal["high", "medium", "low"] = "medium"
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)


class CoverageGap(BaseModel):
    topic_id: str
    status: Literal["partial", "missing"]
    reason: str


class RiskBreakdown(BaseModel):
    coverage_points: int = 0
    keyword_points: int = 0
    total_points: int = 0


class TriageResult(BaseModel):
    risk_score: int = Field(ge=0, le=100)
    route_path: RoutePath
    reasons: list[str] = Field(default_factory=list)
    breakdown: RiskBreakdown = Field(default_factory=RiskBreakdown)


class RiskSignal(BaseModel):
    """A single risk indicator produced by a risk-signal analyzer."""

    category: str = "kyc_risk"
    severity: SignalSeverity
    title: str
    detail: str = ""
    evidence: list[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    signals: list[RiskSignal] = Field(default_factory=list)
    requires_human_review: bool = False
    source: Literal["llm", "fallback", "degraded"] = "fallback"
    execution_path: list[str] = Field(default_factory=list)


class Issue(BaseModel):
    """A finding surfaced to the reviewer."""

    id: str
    category: str
    severity: IssueSeverity
    title: str
    detail: str = ""
    source: str = ""   # Producing node: "risk_assessment", "gap_collector", ...
    evidence: list[str] = Field(default_factory=list)


class TraceEvent(BaseModel):
    """One node execution in a run. Append-only, emission-ordered."""

    node: str
    status: TraceStatus
    decision: str | None = None
    reason: str | None = None
    started_at: str
    ended_at: str
    duration_ms: int = 0
    outputs_summary: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def record(
        cls,
        node: str,
        status: TraceStatus,
        started: datetime | None = None,
        **kwargs: Any,
    ) -> TraceEvent:
        ended = datetime.now(timezone.utc)
        started = started or ended
        return cls(
            node=node,
            status=status,
            started_at=to_iso(started),
            ended_at=to_iso(ended),
            duration_ms=max(0, int((ended - started).total_seconds() * 1000)),
            **kwargs,
        )


class FeatureFlags(BaseModel):
    reflection: bool = False
    negotiation: bool = False
    memory: bool = False
    remote_skills: bool = False


class ReflectionState(BaseModel):
    enabled: bool = False
    replan_count: int = Field(default=0, ge=0)
    last_should_replan: bool | None = None
    last_confidence: float | None = None
    last_new_plan: list[str] = Field(default_factory=list)


class HumanDecision(BaseModel):
    gate_id: str = "human_review"
    decision: HumanDecisionValue
    comment: str | None = None
    signer: str | None = None


class ExecutionResult(BaseModel):
    """Joined output of the parallel checks."""

    conflicts: list[Conflict] = Field(default_factory=list)
    coverage_gaps: list[CoverageGap] = Field(default_factory=list)
    policy_flags: list[str] = Field(default_factory=list)
    events: list[TraceEvent] = Field(default_factory=list)


class GraphState(BaseModel):
    """Transient execution context for one run."""

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    documents: list[ReviewDocument] = Field(default_factory=list)
    dirty_topics: list[str] = Field(default_factory=list)

    # Derived by the pipeline
    topic_sections: list[TopicSection] = Field(default_factory=list)
    triage: TriageResult | None = None
    conflicts: list[Conflict] = Field(default_factory=list)
    coverage_gaps: list[CoverageGap] = Field(default_factory=list)
    policy_flags: list[str] = Field(default_factory=list)
    risk_assessment: RiskAssessment | None = None
    issues: list[Issue] = Field(default_factory=list)   # Risk-signal issues only
    requires_human_review: bool = False

    # Human interaction
    human_decision: HumanDecision | None = None
    execution_terminated: bool = False
    human_gate_count: int = 0        # Second (scope) gate, max one per run

    # Reflection / routing
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    reflection: ReflectionState = Field(default_factory=ReflectionState)
    next_action: NextAction | None = None
    checks_rerun: bool = False

    trace: list[TraceEvent] = Field(default_factory=list)

    @property
    def risk_score(self) -> int:
        return self.triage.risk_score if self.triage else 0

    @property
    def route_path(self) -> RoutePath:
        return self.triage.route_path if self.triage else "fast"


class GraphInfo(BaseModel):
    graph_id: str
    version: str
    checksum: str


class ReviewSummary(BaseModel):
    path: RoutePath = "fast"
    risk_score: int = 0
    risk_breakdown: RiskBreakdown | None = None
    coverage_missing_count: int = 0
    conflict_count: int = 0


class ReviewTrace(BaseModel):
    events: list[TraceEvent] = Field(default_factory=list)
    summary: ReviewSummary = Field(default_factory=ReviewSummary)
    degraded: bool = False
    graph: GraphInfo | None = None
    graph_definition: dict[str, Any] | None = None
    graph_diff: dict[str, Any] | None = None


class HumanGatePrompt(BaseModel):
    required: bool = True
    gate_id: str
    prompt: str
    options: list[str] = Field(default_factory=list)


class RunResult(BaseModel):
    """Response of Orchestrator.start()/resume()."""

    status: RunStatus
    run_id: str | None = None
    issues: list[Issue] = Field(default_factory=list)
    topic_sections: list[TopicSection] = Field(default_factory=list)
    extracted_topics: list[ExtractedTopic] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    coverage_gaps: list[CoverageGap] = Field(default_factory=list)
    trace: ReviewTrace | None = None

    # waiting_human
    paused_at_node: str | None = None
    reason: str | None = None
    checkpoint_metadata: dict[str, Any] | None = None
    human_gate: HumanGatePrompt | None = None
    resume_token: str | None = None

    message: str = ""
