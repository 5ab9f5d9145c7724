"""Tests for risk-signal assessment: LLM primary, pattern fallback."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from unittest.mock import AsyncMock

import pytest
from kycflow.config import Settings
from kycflow.engines.risk_signals import (
    LLMRiskAnalyzer,
    PatternRiskAnalyzer,
    RiskAssessor,
    RiskSignalReport,
    create_risk_assessor,
    signals_to_issues,
)
from kycflow.llm.mock_layer import MockLLMLayer
from kycflow.models.review import ReviewDocument, RiskAssessment, RiskSignal

PEP_TEXT = "The applicant confirmed politically exposed person status during onboarding."
OFFSHORE_TEXT = "Funds are routed through a BVI holding structure with nominee directors."


def _docs(*texts: str) -> list[ReviewDocument]:
    return [ReviewDocument(filename=f"doc{i}.txt", text=t) for i, t in enumerate(texts)]


class TestPatternRiskAnalyzer:
    def test_no_match_returns_empty(self):
        assert PatternRiskAnalyzer().classify(_docs("Salary income from employment, verified.")) == []

    def test_matches_aggregate_into_one_high_signal(self):
        signals = PatternRiskAnalyzer().classify(_docs(PEP_TEXT, OFFSHORE_TEXT))
        assert len(signals) == 1
        signal = signals[0]
        assert signal.severity == "HIGH"
        assert signal.category == "kyc_risk"
        assert "2 high-risk pattern(s)" in signal.detail
        assert "pep" in signal.detail and "offshore" in signal.detail
        assert len(signal.evidence) == 2
        print("  PASS: matches_aggregate_into_one_high_signal")

    def test_case_insensitive(self):
        assert PatternRiskAnalyzer().classify(_docs("UBO identity REMAINS UNKNOWN after review"))

    @pytest.mark.asyncio
    async def test_analyze_delegates_to_classify(self):
        signals = await PatternRiskAnalyzer().analyze(_docs(PEP_TEXT), [])
        assert len(signals) == 1


class TestRiskAssessor:
    @pytest.mark.asyncio
    async def test_primary_success(self):
        primary = AsyncMock()
        primary.analyze.return_value = [RiskSignal(severity="MEDIUM", title="Adverse media")]
        assessment = await RiskAssessor(primary=primary, fallback=PatternRiskAnalyzer()).assess(_docs(PEP_TEXT), [])
        assert assessment.source == "llm"
        assert assessment.requires_human_review is False
        assert assessment.execution_path == ["primary_success"]

    @pytest.mark.asyncio
    async def test_primary_failure_uses_fallback(self):
        primary = AsyncMock()
        primary.analyze.side_effect = RuntimeError("API down")
        assessment = await RiskAssessor(primary=primary, fallback=PatternRiskAnalyzer()).assess(_docs(PEP_TEXT), [])
        assert assessment.source == "fallback"
        assert assessment.requires_human_review is True
        assert assessment.execution_path == ["primary_failed:RuntimeError", "fallback_triggered:1"]

    @pytest.mark.asyncio
    async def test_primary_empty_and_no_pattern_is_clean(self):
        primary = AsyncMock()
        primary.analyze.return_value = []
        assessment = await RiskAssessor(primary=primary, fallback=PatternRiskAnalyzer()).assess(
            _docs("Nothing notable here at all."), [],
        )
        assert assessment.source == "llm"
        assert assessment.signals == []
        assert assessment.execution_path == ["primary_empty", "fallback_no_match"]

    @pytest.mark.asyncio
    async def test_fallback_only_no_match(self):
        assessment = await RiskAssessor(fallback=PatternRiskAnalyzer()).assess(_docs("Plain text."), [])
        assert assessment.source == "fallback"
        assert assessment.execution_path == ["primary_unavailable", "fallback_no_match"]

    @pytest.mark.asyncio
    async def test_nothing_available_is_degraded(self):
        primary = AsyncMock()
        primary.analyze.side_effect = TimeoutError()
        assessment = await RiskAssessor(primary=primary).assess(_docs(PEP_TEXT), [])
        assert assessment.source == "degraded"
        assert assessment.requires_human_review is False
        assert assessment.execution_path[-1] == "fallback_disabled"


class TestLLMRiskAnalyzer:
    @pytest.mark.asyncio
    async def test_structured_call(self):
        report = RiskSignalReport(signals=[
            RiskSignal(category="pep", severity="HIGH", title="PEP", evidence=["deputy minister"]),
        ])
        llm = MockLLMLayer({"sonnet:RiskSignalReport": report})
        signals = await LLMRiskAnalyzer(llm).analyze(_docs(PEP_TEXT), [])
        assert signals[0].category == "pep"
        call = llm.call_log[0]
        assert call["method"] == "complete_structured"
        assert call["response_model"] == "RiskSignalReport"
        assert "doc0.txt" in call["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_through_assessor(self):
        llm = MockLLMLayer({"sonnet:RiskSignalReport": RuntimeError("rate limited")})
        assessor = RiskAssessor(primary=LLMRiskAnalyzer(llm), fallback=PatternRiskAnalyzer())
        assessment = await assessor.assess(_docs(PEP_TEXT), [])
        assert assessment.source == "fallback"


class TestSignalsToIssues:
    def test_high_becomes_fail(self):
        issues = signals_to_issues(RiskAssessment(signals=[
            RiskSignal(category="sanctions", severity="HIGH", title="Sanctions"),
            RiskSignal(category="aml", severity="LOW", title="Cash"),
        ]))
        assert [(i.id, i.severity, i.source) for i in issues] == [
            ("kyc-risk-0", "FAIL", "risk_assessment"),
            ("kyc-risk-1", "WARNING", "risk_assessment"),
        ]


class TestCreateRiskAssessor:
    def test_pattern_config(self):
        assessor = create_risk_assessor(Settings(risk_analyzer="pattern", risk_fallback_enabled=True))
        assert assessor.primary is None
        assert isinstance(assessor.fallback, PatternRiskAnalyzer)

    def test_llm_config_uses_given_layer(self):
        llm = MockLLMLayer()
        assessor = create_risk_assessor(Settings(risk_analyzer="llm", risk_fallback_enabled=False), llm=llm)
        assert isinstance(assessor.primary, LLMRiskAnalyzer)
        assert assessor.primary.llm is llm
        assert assessor.fallback is None
