"""Reflection providers — text generation behind the Reflection Engine.

Two implementations of the same capability:
- MockReflectionProvider: deterministic, no external dependency (default)
- ClaudeReflectionProvider: Anthropic call through the LLM layer

The provider is chosen once at startup by create_reflection_provider() and
injected into the ReflectionEngine.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from kycflow.config import Settings

logger = logging.getLogger(__name__)


class ReflectionProvider(Protocol):
    name: str

    async def run(self, payload: dict[str, Any], prompt: str) -> str:
        """Return raw model text for the reflection prompt."""
        ...


_TEST_MODE_OUTPUTS: dict[str, dict[str, Any]] = {
    "rerun": {
        "should_replan": True,
        "reason": "[TEST] Forcing rerun",
        "new_plan": ["rerun_batch_review"],
        "confidence": 0.9,
    },
    "human": {
        "should_replan": False,
        "reason": "[TEST] Forcing human gate",
        "new_plan": ["ask_human_for_scope"],
        "confidence": 0.8,
    },
    "section": {
        "should_replan": False,
        "reason": "[TEST] Forcing section review",
        "new_plan": ["switch_to_section_review"],
        "confidence": 0.7,
    },
}


class MockReflectionProvider:
    """Deterministic provider.

    test_mode ("rerun" | "human" | "section") forces a specific plan so
    routing branches can be exercised end to end.
    """

    name = "mock"

    def __init__(self, test_mode: str = "") -> None:
        self.test_mode = test_mode
        self.calls: list[dict[str, Any]] = []

    async def run(self, payload: dict[str, Any], prompt: str) -> str:
        self.calls.append(payload)
        if self.test_mode in _TEST_MODE_OUTPUTS:
            return json.dumps(_TEST_MODE_OUTPUTS[self.test_mode])

        if payload.get("replan_count", 0) >= 1:
            out = {
                "should_replan": False,
                "reason": "Replan limit reached; require human scope decision.",
                "new_plan": ["ask_human_for_scope"],
                "confidence": 0.8,
            }
        elif payload.get("issues_count", 0) > 0:
            out = {
                "should_replan": False,
                "reason": "Issues detected; continuing with current plan.",
                "new_plan": ["skip"],
                "confidence": 0.7,
            }
        else:
            out = {
                "should_replan": False,
                "reason": "Review proceeding normally; no replan needed.",
                "new_plan": ["skip"],
                "confidence": 0.75,
            }
        return json.dumps(out)


class ClaudeReflectionProvider:
    """Claude-backed provider. Errors propagate; the engine owns the fallback."""

    name = "claude"

    MAX_TOKENS = 512
    TEMPERATURE = 0.3

    def __init__(self, llm, model_tier: str = "sonnet") -> None:
        self.llm = llm
        self.model_tier = model_tier

    async def run(self, payload: dict[str, Any], prompt: str) -> str:
        text, meta = await self.llm.complete_text(
            messages=[{"role": "user", "content": prompt}],
            model_tier=self.model_tier,
            max_tokens=self.MAX_TOKENS,
            temperature=self.TEMPERATURE,
        )
        logger.debug("Reflection call: %d in / %d out tokens", meta.input_tokens, meta.output_tokens)
        return text


def create_reflection_provider(config: Settings, llm=None) -> ReflectionProvider:
    """Build the provider named by configuration.

    "claude" without an API key degrades to the mock provider.
    """
    if config.reflection_provider == "claude":
        if not config.anthropic_api_key:
            logger.warning("reflection_provider=claude but ANTHROPIC_API_KEY not set; using mock provider")
            return MockReflectionProvider(test_mode=config.reflection_test_mode)
        if llm is None:
            from kycflow.llm.layer import LLMLayer
            llm = LLMLayer(api_key=config.anthropic_api_key)
        return ClaudeReflectionProvider(llm)
    return MockReflectionProvider(test_mode=config.reflection_test_mode)
