"""Human Review Gate: decides whether a run must pause for approval."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel

from kycflow.models.review import GraphState, TraceEvent

NODE_ID = "human_review"

CRITICAL_RISK_CATEGORIES = frozenset({"kyc_risk", "pep", "sanctions"})
RISK_SCORE_THRESHOLD = 80


class GateOutcome(BaseModel):
    action: Literal["pause", "continue"]
    reason: str = ""


def requires_human_review(state: GraphState) -> bool:
    """Pause condition for the primary gate."""
    if state.requires_human_review:
        return True
    if any(i.severity == "FAIL" and i.category in CRITICAL_RISK_CATEGORIES for i in state.issues):
        return True
    return state.risk_score > RISK_SCORE_THRESHOLD or state.route_path == "human_gate"


def evaluate_human_review(state: GraphState) -> GateOutcome:
    """Run the gate node. Appends one trace event; mutates execution_terminated."""
    started = datetime.now(timezone.utc)

    if not requires_human_review(state):
        state.trace.append(TraceEvent.record(
            NODE_ID, "skipped", started=started, reason="Human review not required",
        ))
        return GateOutcome(action="continue", reason="human_review_skipped")

    decision = state.human_decision
    if decision is None or decision.gate_id != NODE_ID:
        state.trace.append(TraceEvent.record(
            NODE_ID, "waiting", started=started, reason="Awaiting human approval",
        ))
        return GateOutcome(action="pause", reason="Awaiting human approval")

    if decision.decision == "approve":
        state.trace.append(TraceEvent.record(
            NODE_ID, "executed", started=started, decision="approve",
            reason=decision.comment, data={"signer": decision.signer},
        ))
        return GateOutcome(action="continue", reason="human_approved")

    if decision.decision == "reject":
        state.execution_terminated = True
        state.trace.append(TraceEvent.record(
            NODE_ID, "executed", started=started, decision="reject",
            reason=decision.comment, data={"signer": decision.signer},
        ))
        return GateOutcome(action="continue", reason="human_rejected")

    state.trace.append(TraceEvent.record(
        NODE_ID, "waiting", started=started,
        reason=f"Invalid human decision for this gate: {decision.decision}",
    ))
    return GateOutcome(action="pause", reason="Invalid human decision")
