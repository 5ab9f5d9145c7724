"""Tests for LLMLayer (cost, circuit breaker, retry) and MockLLMLayer."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from kycflow.engines.risk_signals import RiskSignalReport
from kycflow.llm.layer import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    LLMLayer,
    LLMResponse,
    call_with_retry,
)
from kycflow.llm.mock_layer import MockLLMLayer


def _connection_error() -> anthropic.APIConnectionError:
    return anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


def _bare_layer() -> LLMLayer:
    # Skip __init__ so no client is constructed
    return LLMLayer.__new__(LLMLayer)


# === LLMResponse / cost ===


def test_llm_response_defaults():
    r = LLMResponse()
    assert r.model_version == ""
    assert r.input_tokens == 0
    assert r.cost == 0.0
    assert r.timestamp is not None
    print("  PASS: llm_response_defaults")


def test_estimate_cost():
    layer = _bare_layer()
    assert layer.estimate_cost("sonnet", 1_000_000, 0) == 3.0
    assert layer.estimate_cost("sonnet", 0, 1_000_000) == 15.0
    assert layer.estimate_cost("haiku", 1_000_000, 1_000_000) == 4.8
    assert layer.estimate_cost("haiku", 0, 0) == 0.0


# === CircuitBreaker ===


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=2, reset_timeout=60.0)
        cb.record_failure()
        assert cb.state == CircuitBreaker.CLOSED
        cb.record_failure()
        assert cb.state == CircuitBreaker.OPEN
        assert cb.allow_request() is False

    def test_half_open_after_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, reset_timeout=0.0)
        cb.record_failure()
        assert cb.state == CircuitBreaker.HALF_OPEN
        assert cb.allow_request() is True

    def test_success_resets(self):
        cb = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
        cb.record_failure()
        cb.record_success()
        assert cb.state == CircuitBreaker.CLOSED


# === Retry ===


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        factory = AsyncMock(side_effect=[_connection_error(), "ok"])
        result = await call_with_retry(factory, max_retries=2, base_delay=0.0)
        assert result == "ok"
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        factory = AsyncMock(side_effect=_connection_error())
        with pytest.raises(anthropic.APIConnectionError):
            await call_with_retry(factory, max_retries=1, base_delay=0.0)
        assert factory.call_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        cb = CircuitBreaker(failure_threshold=5)
        factory = AsyncMock(side_effect=ValueError("bad request"))
        with pytest.raises(ValueError):
            await call_with_retry(factory, max_retries=3, base_delay=0.0, circuit_breaker=cb)
        assert factory.call_count == 1
        assert cb.failures == 1

    @pytest.mark.asyncio
    async def test_open_breaker_short_circuits(self):
        cb = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
        cb.record_failure()
        factory = AsyncMock(return_value="never")
        with pytest.raises(CircuitBreakerOpenError):
            await call_with_retry(factory, circuit_breaker=cb)
        factory.assert_not_called()


# === complete_text against a stubbed client ===


@pytest.mark.asyncio
async def test_complete_text_extracts_first_text_block():
    layer = _bare_layer()
    layer.circuit_breaker = CircuitBreaker()
    layer.raw_client = MagicMock()
    layer.raw_client.messages.create = AsyncMock(return_value=SimpleNamespace(
        content=[SimpleNamespace(type="tool_use"), SimpleNamespace(type="text", text='{"should_replan": false}')],
        usage=SimpleNamespace(input_tokens=200, output_tokens=20),
        model="claude-haiku-4-5-20251001",
        stop_reason="end_turn",
    ))

    text, meta = await layer.complete_text([{"role": "user", "content": "hi"}], model_tier="haiku", system="sys")
    assert text == '{"should_replan": false}'
    assert meta.input_tokens == 200
    assert meta.model_version == "claude-haiku-4-5-20251001"
    assert meta.cost == layer.estimate_cost("haiku", 200, 20)
    assert layer.raw_client.messages.create.call_args[1]["system"] == "sys"


# === MockLLMLayer ===


class TestMockLLMLayer:
    @pytest.mark.asyncio
    async def test_text_default_and_configured(self):
        mock = MockLLMLayer({"haiku:text": "configured"})
        text, meta = await mock.complete_text([], model_tier="haiku")
        assert text == "configured"
        assert meta.model_version == "mock-haiku"
        default, _ = await mock.complete_text([], model_tier="sonnet")
        assert default == "Mock response"
        assert [c["model_tier"] for c in mock.call_log] == ["haiku", "sonnet"]

    @pytest.mark.asyncio
    async def test_structured_falls_back_to_empty_model(self):
        mock = MockLLMLayer()
        result, _ = await mock.complete_structured([], model_tier="sonnet", response_model=RiskSignalReport)
        assert isinstance(result, RiskSignalReport)
        assert mock.call_log[0]["response_model"] == "RiskSignalReport"

    @pytest.mark.asyncio
    async def test_exception_values_are_raised(self):
        mock = MockLLMLayer({"haiku:text": RuntimeError("provider down")})
        with pytest.raises(RuntimeError, match="provider down"):
            await mock.complete_text([], model_tier="haiku")
