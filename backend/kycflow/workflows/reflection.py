"""Reflection Engine — bounded self-correction over the recent trace.

States:
- idle: reflection feature flag off, passthrough
- active: summarize, ask the provider, validate, update routing state

At most one replan per run: once replan_count >= 1 the provider is not called
and the next action is forced to ask_human_for_scope. Provider exceptions,
timeouts, malformed JSON and schema violations all resolve to a no-replan
decision. Every call appends exactly one trace event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, StrictBool, ValidationError

from kycflow.engines.checks import collect_issues
from kycflow.llm.reflection_provider import ReflectionProvider
from kycflow.models.review import GraphState, NextAction, TraceEvent

logger = logging.getLogger(__name__)

PlanAction = Literal[
    "skip",
    "rerun_batch_review",
    "switch_to_section_review",
    "ask_human_for_scope",
    "tighten_policy",
]

MAX_REPLANS = 1
RECENT_TRACE_EVENTS = 12
DIRTY_QUEUE_SAMPLE = 8
ISSUES_SAMPLE = 6

NODE_ID = "reflect_and_replan"


class ReflectionOutput(BaseModel):
    """Strict output contract for reflection providers."""

    should_replan: StrictBool
    reason: str = Field(min_length=1, max_length=240)
    new_plan: list[PlanAction] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


def default_no_replan(reason: str, confidence: float = 0.6) -> ReflectionOutput:
    return ReflectionOutput(should_replan=False, reason=reason, new_plan=["skip"], confidence=confidence)


REFLECTION_PROMPT = """\
You are a workflow self-reflection controller for a governed banking document review agent.

You will be given a compact JSON payload containing:
- recent trace events
- dirty queue summary
- issues summary
- current next action
- replan count

Task:
Decide whether the agent should re-plan the next step.

Rules:
- Output MUST be valid JSON only (no markdown).
- Use this exact schema:
  {{
    "should_replan": boolean,
    "reason": string,
    "new_plan": ["skip"|"rerun_batch_review"|"switch_to_section_review"|"ask_human_for_scope"|"tighten_policy"],
    "confidence": number (0..1)
  }}
- If replan_count >= 1, you must NOT propose further replans. Set should_replan=false and new_plan=["ask_human_for_scope"].
- Keep reason concise and non-emotional.
- Prefer "ask_human_for_scope" if there is repeated conflict, rejection, or ambiguity.

Payload:
{payload}
"""


def summarize_for_reflection(state: GraphState) -> dict[str, Any]:
    """Bounded situational summary handed to the provider."""
    issues = collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags)
    return {
        "run_id": state.run_id,
        "recent_trace": [
            {"node": e.node, "status": e.status, "decision": e.decision, "reason": e.reason}
            for e in state.trace[-RECENT_TRACE_EVENTS:]
        ],
        "dirty_queue_count": len(state.dirty_topics),
        "dirty_queue_sample": state.dirty_topics[:DIRTY_QUEUE_SAMPLE],
        "issues_count": len(issues),
        "issues_sample": [
            {"id": i.id, "category": i.category, "severity": i.severity, "title": i.title}
            for i in issues[:ISSUES_SAMPLE]
        ],
        "current_next_action": state.next_action,
        "replan_count": state.reflection.replan_count,
    }


def extract_json(raw: str) -> str:
    """Strip markdown fences and surrounding prose from a JSON object."""
    s = raw.strip()
    if s.startswith("```"):
        lines = s.split("\n")[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        s = "\n".join(lines).strip()
    if not s.startswith("{"):
        first, last = s.find("{"), s.rfind("}")
        if first != -1 and last > first:
            s = s[first:last + 1]
    return s


def _map_plan(chosen: str, current: NextAction | None) -> NextAction:
    if chosen == "skip":
        return current or "skip"
    if chosen == "switch_to_section_review":
        return "section_review"
    return chosen  # type: ignore[return-value]


class ReflectionEngine:
    """Runs the reflect_and_replan node against a GraphState (mutated in place)."""

    def __init__(self, provider: ReflectionProvider, timeout_seconds: float = 15.0) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def reflect(self, state: GraphState) -> GraphState:
        started = datetime.now(timezone.utc)
        state.reflection.enabled = state.features.reflection

        if not state.features.reflection:
            state.trace.append(TraceEvent.record(
                NODE_ID, "skipped", started=started,
                reason="Reflection disabled; skipping.", data={"enabled": False},
            ))
            return state

        if state.reflection.replan_count >= MAX_REPLANS:
            out = default_no_replan("Replan limit reached; require human scope decision.")
            out.new_plan = ["ask_human_for_scope"]
            state.next_action = "ask_human_for_scope"
            self._record(state, out, started)
            return state

        payload = summarize_for_reflection(state)
        prompt = REFLECTION_PROMPT.format(payload=json.dumps(payload, indent=2))

        try:
            raw = await asyncio.wait_for(self.provider.run(payload, prompt), timeout=self.timeout_seconds)
        except Exception as e:
            logger.warning("Reflection provider %s failed: %s", self.provider.name, type(e).__name__)
            out = default_no_replan(
                f"Provider {self.provider.name} failed; continuing with current plan.", confidence=0.5,
            )
        else:
            try:
                out = ReflectionOutput.model_validate_json(extract_json(raw))
            except (ValidationError, ValueError) as e:
                logger.warning("Reflection output rejected: %s", e)
                out = default_no_replan(
                    f"Reflection parsing failed; keep current plan. ({type(e).__name__})"
                )
                self._record(state, out, started, fallback=True)
                return state

        chosen = out.new_plan[0] if out.new_plan else "skip"
        state.next_action = _map_plan(chosen, state.next_action)
        if out.should_replan:
            state.reflection.replan_count += 1
        self._record(state, out, started)
        logger.info(
            "Reflection: should_replan=%s next_action=%s confidence=%.2f",
            out.should_replan, state.next_action, out.confidence,
        )
        return state

    def _record(self, state: GraphState, out: ReflectionOutput, started: datetime, fallback: bool = False) -> None:
        state.reflection.last_should_replan = out.should_replan
        state.reflection.last_confidence = out.confidence
        state.reflection.last_new_plan = list(out.new_plan)
        data: dict[str, Any] = {
            "should_replan": out.should_replan,
            "new_plan": list(out.new_plan),
            "confidence": out.confidence,
            "next_action": state.next_action,
            "replan_count": state.reflection.replan_count,
        }
        if fallback:
            data["fallback"] = True
        state.trace.append(TraceEvent.record(
            NODE_ID, "executed", started=started,
            decision=state.next_action, reason=out.reason, data=data,
        ))
