"""Offline stand-in for LLMLayer, used by tests and the deterministic providers."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from kycflow.config import ModelTier
from kycflow.llm.layer import LLMResponse

Canned = BaseModel | str | Exception


class MockLLMLayer:
    """Answers from a table of canned responses and records every call.

    Keys are "<tier>:<ResponseModel>" for structured calls and "<tier>:text"
    for text calls:

        MockLLMLayer({
            "sonnet:RiskSignalReport": RiskSignalReport(signals=[...]),
            "sonnet:text": '{"should_replan": false, "reason": "ok", "new_plan": [], "confidence": 0.9}',
        })

    An Exception value is raised in place of a response. Unknown structured
    keys yield an empty instance of the response model; unknown text keys
    yield "Mock response".
    """

    def __init__(self, responses: dict[str, Canned] | None = None) -> None:
        self.responses: dict[str, Canned] = dict(responses or {})
        self.call_log: list[dict[str, Any]] = []

    def _answer(self, key: str) -> Canned | None:
        canned = self.responses.get(key)
        if isinstance(canned, Exception):
            raise canned
        return canned

    @staticmethod
    def _meta(model_tier: ModelTier) -> LLMResponse:
        return LLMResponse(
            model_version=f"mock-{model_tier}", input_tokens=100, output_tokens=50, stop_reason="end_turn",
        )

    async def complete_structured(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        response_model: type[BaseModel],
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> tuple[BaseModel, LLMResponse]:
        name = response_model.__name__
        self.call_log.append(dict(
            method="complete_structured", model_tier=model_tier, response_model=name,
            messages=messages, system=system,
        ))
        answer = self._answer(f"{model_tier}:{name}")
        return (answer if answer is not None else response_model()), self._meta(model_tier)

    async def complete_text(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> tuple[str, LLMResponse]:
        self.call_log.append(dict(
            method="complete_text", model_tier=model_tier, messages=messages,
            system=system, max_tokens=max_tokens, temperature=temperature,
        ))
        answer = self._answer(f"{model_tier}:text")
        return (answer if answer is not None else "Mock response"), self._meta(model_tier)
