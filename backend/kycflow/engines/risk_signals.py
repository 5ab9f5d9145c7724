"""Risk-Signal Assessment — primary analyzer with a deterministic fallback.

The primary analyzer is an LLM (structured output via instructor). When it is
unavailable, fails, or returns nothing, the pattern classifier runs instead
(if enabled) and aggregates every matched high-risk pattern into a single
HIGH-severity signal, so high-risk documents always reach the human gate.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from pydantic import BaseModel, Field

from kycflow.config import Settings
from kycflow.models.review import Issue, ReviewDocument, RiskAssessment, RiskSignal, TopicSection

logger = logging.getLogger(__name__)


class RiskAnalyzer(Protocol):
    """Capability: produce risk signals for a document set."""

    async def analyze(
        self, documents: list[ReviewDocument], sections: list[TopicSection]
    ) -> list[RiskSignal]: ...


# === Primary: LLM analyzer ===


class RiskSignalReport(BaseModel):
    """Structured output contract for the LLM analyzer."""

    signals: list[RiskSignal] = Field(default_factory=list)


RISK_ANALYSIS_SYSTEM = (
    "You are a KYC compliance analyst. Identify concrete risk indicators in the "
    "client documents: PEP status, sanctions exposure, undisclosed beneficial "
    "ownership, offshore structures, money-laundering typologies, tax evasion, "
    "adverse media. Use severity HIGH only for indicators that require a human "
    "compliance decision. Quote short evidence snippets verbatim. Return an empty "
    "list when the documents contain no risk indicators."
)

MAX_DOC_CHARS = 6000


class LLMRiskAnalyzer:
    """Risk analysis through the LLM layer's structured-output path."""

    def __init__(self, llm, model_tier: str = "sonnet") -> None:
        self.llm = llm
        self.model_tier = model_tier

    async def analyze(
        self, documents: list[ReviewDocument], sections: list[TopicSection]
    ) -> list[RiskSignal]:
        parts = [f"## {doc.filename}\n{doc.text[:MAX_DOC_CHARS]}" for doc in documents]
        coverage = ", ".join(f"{s.topic_id}={s.coverage}" for s in sections)
        messages = [{
            "role": "user",
            "content": f"Topic coverage: {coverage}\n\n" + "\n\n".join(parts),
        }]
        report, meta = await self.llm.complete_structured(
            messages=messages,
            model_tier=self.model_tier,
            response_model=RiskSignalReport,
            system=RISK_ANALYSIS_SYSTEM,
        )
        logger.debug("LLM risk analysis: %d signals (%s)", len(report.signals), meta.model_version)
        return report.signals


# === Fallback: pattern classifier ===


class RiskPattern(BaseModel):
    pattern: str
    category: str
    title: str
    keyword: str


HIGH_RISK_PATTERNS: list[RiskPattern] = [
    RiskPattern(
        pattern=r"\b(confirmed?|declares?|has|holding|current|former|affiliated with).{0,80}"
                r"(politically\s+exposed\s+person|\bpep\b status)",
        category="pep", title="Politically Exposed Person (PEP) Detected",
        keyword="politically exposed person",
    ),
    RiskPattern(
        pattern=r"\b(sanction(s|ed)?|ofac|watchlist).{0,30}"
                r"(detected|flagged|exposure|list|entity|connection|relationship)",
        category="sanctions", title="Sanctions Exposure Detected", keyword="sanctions",
    ),
    RiskPattern(
        pattern=r"(beneficial owner|UBO).{0,60}"
                r"(unknown|undisclosed|refuse|concealed|unverifiable|to be determined|not provided)",
        category="ubo", title="Ultimate Beneficial Ownership Unknown or Concealed", keyword="UBO",
    ),
    RiskPattern(
        pattern=r"\b(offshore|bvi|british virgin islands|cayman|cyprus|panama).{0,60}"
                r"(jurisdiction|holding|structure|entity|shell|account)",
        category="kyc_risk", title="High-Risk Offshore Jurisdiction Exposure", keyword="offshore",
    ),
    RiskPattern(
        pattern=r"\b(layering|structuring|shell company).{0,30}(detected|pattern|concern|indicator|typology)",
        category="aml", title="Money Laundering Typology Indicators (Layering/Structuring)",
        keyword="layering",
    ),
    RiskPattern(
        pattern=r"\b(cash[-\s]?intensive|large cash|cash deposit).{0,40}(business|deposits?|concern|pattern|risk)",
        category="aml", title="Cash-Intensive Business Model (Placement Risk)", keyword="cash-intensive",
    ),
    RiskPattern(
        pattern=r"\b(tornado\s?cash|chip\s?mixer|crypto.{0,20}(mixer|tumbler)|privacy coin|monero).{0,30}"
                r"(usage|detected|transaction|service)",
        category="aml", title="Cryptocurrency Mixing/Tumbler Services Usage", keyword="crypto mixer",
    ),
    RiskPattern(
        pattern=r"\b(tax evasion|unreported income|undeclared|income discrepancy).{0,30}"
                r"(detected|indicator|concern|violation)",
        category="tax_evasion", title="Tax Evasion Indicators Detected", keyword="tax evasion",
    ),
    RiskPattern(
        pattern=r"\b(adverse media|reputational risk|regulatory investigation).{0,30}"
                r"(identified|ongoing|flagged|detected)",
        category="kyc_risk", title="Adverse Media or Regulatory Investigation", keyword="adverse media",
    ),
    RiskPattern(
        pattern=r"\b(suspicious activity|SAR|financial crime).{0,30}(report|detected|indicator|flagged|concern)",
        category="aml", title="Suspicious Activity Indicators", keyword="suspicious activity",
    ),
]

MAX_SNIPPETS = 3
SNIPPET_CHARS = 160


class PatternRiskAnalyzer:
    """Deterministic high-risk pattern matcher."""

    def __init__(self, patterns: list[RiskPattern] | None = None) -> None:
        self.patterns = patterns or HIGH_RISK_PATTERNS
        self._compiled = [re.compile(p.pattern, re.IGNORECASE) for p in self.patterns]

    def classify(self, documents: list[ReviewDocument]) -> list[RiskSignal]:
        text = "\n\n".join(doc.text for doc in documents)
        matched = [
            (pattern, m)
            for pattern, regex in zip(self.patterns, self._compiled)
            if (m := regex.search(text))
        ]
        if not matched:
            return []

        evidence = []
        for pattern, m in matched[:MAX_SNIPPETS]:
            start, end = max(0, m.start() - 60), min(len(text), m.start() + 100)
            snippet = re.sub(r"\s+", " ", text[start:end].strip())
            evidence.append(f'[{pattern.title[:40]}...] "{snippet[:SNIPPET_CHARS]}"')

        categories = ", ".join(p.category for p, _ in matched)
        keywords = "; ".join(p.keyword for p, _ in matched)
        return [RiskSignal(
            category="kyc_risk",
            severity="HIGH",
            title="Critical KYC Risk Indicators Detected",
            detail=(
                f"Pattern classifier flagged {len(matched)} high-risk pattern(s): {categories}. "
                f"Patterns matched: {keywords}."
            ),
            evidence=evidence,
        )]

    async def analyze(
        self, documents: list[ReviewDocument], sections: list[TopicSection]
    ) -> list[RiskSignal]:
        return self.classify(documents)


# === Assessment ===


class RiskAssessor:
    """Primary/fallback orchestration. Never raises on analyzer failure."""

    def __init__(
        self,
        primary: RiskAnalyzer | None = None,
        fallback: PatternRiskAnalyzer | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    async def assess(
        self, documents: list[ReviewDocument], sections: list[TopicSection]
    ) -> RiskAssessment:
        path: list[str] = []
        if self.primary is not None:
            try:
                signals = await self.primary.analyze(documents, sections)
                if signals:
                    return RiskAssessment(
                        signals=signals,
                        requires_human_review=any(s.severity == "HIGH" for s in signals),
                        source="llm",
                        execution_path=["primary_success"],
                    )
                path.append("primary_empty")
            except Exception as e:
                logger.warning("Primary risk analyzer failed: %s", e)
                path.append(f"primary_failed:{type(e).__name__}")
        else:
            path.append("primary_unavailable")

        if self.fallback is not None:
            signals = self.fallback.classify(documents)
            if signals:
                path.append(f"fallback_triggered:{len(signals)}")
                return RiskAssessment(
                    signals=signals,
                    requires_human_review=True,
                    source="fallback",
                    execution_path=path,
                )
            path.append("fallback_no_match")
            if "primary_empty" in path:
                return RiskAssessment(source="llm", execution_path=path)
            return RiskAssessment(source="fallback", execution_path=path)

        path.append("fallback_disabled")
        source = "llm" if "primary_empty" in path else "degraded"
        return RiskAssessment(source=source, execution_path=path)


def signals_to_issues(assessment: RiskAssessment) -> list[Issue]:
    """HIGH signals become FAIL issues; everything else is a WARNING."""
    return [
        Issue(
            id=f"kyc-risk-{idx}",
            category=signal.category,
            severity="FAIL" if signal.severity == "HIGH" else "WARNING",
            title=signal.title,
            detail=signal.detail,
            source="risk_assessment",
            evidence=signal.evidence,
        )
        for idx, signal in enumerate(assessment.signals)
    ]


def create_risk_assessor(config: Settings, llm=None) -> RiskAssessor:
    """Build the assessor selected by configuration."""
    primary = None
    if config.risk_analyzer == "llm":
        if llm is None:
            from kycflow.llm.layer import LLMLayer
            llm = LLMLayer()
        primary = LLMRiskAnalyzer(llm)
    fallback = PatternRiskAnalyzer() if config.risk_fallback_enabled else None
    return RiskAssessor(primary=primary, fallback=fallback)
