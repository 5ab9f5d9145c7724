"""LLM Layer: the single gateway to Anthropic for the review pipeline.

Two call shapes are needed here:
- complete_structured: risk-signal analysis, validated into a Pydantic model by Instructor
- complete_text: reflection, where the provider returns raw JSON text we validate ourselves

Both go through call_with_retry(), which owns the retry policy and the shared
circuit breaker. Cost is estimated per call from the token usage.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

import anthropic
import instructor
from pydantic import BaseModel

from kycflow.config import MODEL_MAP, ModelTier, settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# USD per million tokens
PRICING: dict[str, tuple[float, float]] = {
    "sonnet": (3.0, 15.0),
    "haiku": (0.80, 4.0),
}

TRANSIENT_ERRORS = (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError)


@dataclass
class LLMResponse:
    """Call metadata returned next to every result."""

    model_version: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    cost: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class CircuitBreakerOpenError(Exception):
    """The breaker is open; the call was not attempted."""


class CircuitBreaker:
    """closed -> open after `failure_threshold` consecutive failures -> half_open after `reset_timeout`.

    A half-open breaker lets the next call through as a probe; its outcome
    closes or re-opens the breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failures = 0
        self._clock = clock
        self._opened_at: float | None = None

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        self.failures = 0
        self._opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.failures >= self.failure_threshold:
            if self._opened_at is None:
                logger.warning("Circuit breaker opened after %d consecutive failures", self.failures)
            self._opened_at = self._clock()


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    circuit_breaker: CircuitBreaker | None = None,
) -> T:
    """Await call(), retrying transient Anthropic errors with exponential backoff.

    `call` must build a fresh coroutine on every invocation. Non-transient
    errors are raised on the first occurrence. Every failure counts against
    the breaker.
    """
    if circuit_breaker is not None and not circuit_breaker.allow_request():
        raise CircuitBreakerOpenError("Anthropic calls are suspended while the circuit breaker is open")

    attempt = 0
    while True:
        try:
            result = await call()
        except TRANSIENT_ERRORS as e:
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            if attempt == max_retries:
                raise
            delay = min(max_delay, base_delay * 2 ** attempt)
            attempt += 1
            logger.warning("Transient %s from Anthropic (try %d of %d), sleeping %.1fs",
                           type(e).__name__, attempt, max_retries + 1, delay)
            await asyncio.sleep(delay)
        except Exception:
            if circuit_breaker is not None:
                circuit_breaker.record_failure()
            raise
        else:
            if circuit_breaker is not None:
                circuit_breaker.record_success()
            return result


class LLMLayer:
    """AsyncAnthropic client plus an Instructor wrapper sharing one breaker."""

    def __init__(self, api_key: str | None = None) -> None:
        self.raw_client = anthropic.AsyncAnthropic(api_key=api_key or settings.anthropic_api_key)
        self.client = instructor.from_anthropic(self.raw_client)
        self.circuit_breaker = CircuitBreaker()

    @staticmethod
    def _request(
        messages: list[dict],
        model_tier: ModelTier,
        system: str | None,
        max_tokens: int | None,
        temperature: float | None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": MODEL_MAP[model_tier],
            "messages": messages,
            "max_tokens": max_tokens or settings.default_max_tokens,
            "temperature": settings.default_temperature if temperature is None else temperature,
        }
        if system:
            request["system"] = system
        return request

    async def complete_structured(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        response_model: type[BaseModel],
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> tuple[BaseModel, LLMResponse]:
        request = self._request(messages, model_tier, system, max_tokens, temperature)
        # Instructor re-asks on validation failure; transport retries are ours
        request.update(response_model=response_model, max_retries=settings.default_max_retries)

        parsed, completion = await call_with_retry(
            lambda: self.client.messages.create_with_completion(**request),
            circuit_breaker=self.circuit_breaker,
        )
        return parsed, self._metadata(completion, model_tier)

    async def complete_text(
        self,
        messages: list[dict],
        model_tier: ModelTier,
        system: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> tuple[str, LLMResponse]:
        request = self._request(messages, model_tier, system, max_tokens, temperature)
        message = await call_with_retry(
            lambda: self.raw_client.messages.create(**request),
            circuit_breaker=self.circuit_breaker,
        )
        texts = [block.text for block in message.content if block.type == "text"]
        return (texts[0] if texts else ""), self._metadata(message, model_tier)

    def _metadata(self, message: Any, model_tier: ModelTier) -> LLMResponse:
        tokens_in = getattr(message.usage, "input_tokens", 0)
        tokens_out = getattr(message.usage, "output_tokens", 0)
        return LLMResponse(
            model_version=message.model,
            input_tokens=tokens_in,
            output_tokens=tokens_out,
            stop_reason=message.stop_reason or "",
            cost=self.estimate_cost(model_tier, tokens_in, tokens_out),
        )

    @staticmethod
    def estimate_cost(model_tier: ModelTier, input_tokens: int, output_tokens: int) -> float:
        price_in, price_out = PRICING[model_tier]
        return round((input_tokens * price_in + output_tokens * price_out) / 1_000_000, 6)
