"""GraphOrchestrator — drives one KYC review run through the review graph.

Flow (kyc_review_v1):
  topic_assembler -> risk_triage -> parallel_checks -> risk_assessment
  -> human_review [pause: durable checkpoint + approval email]
  -> reflect_and_replan -> routing_decision
  -> (rerun parallel_checks once | human_gate [non-durable] | continue)
  -> finalize

Unexpected exceptions anywhere in the flow are turned into a degraded
result by the error handler. The degraded path never writes a checkpoint.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel

from kycflow.config import Settings
from kycflow.email.notifier import ApprovalContext, Notifier
from kycflow.engines.checks import collect_issues, execute_parallel_checks
from kycflow.engines.risk_signals import RiskAssessor, create_risk_assessor, signals_to_issues
from kycflow.engines.topics import assemble_topics, to_extracted_topics
from kycflow.engines.triage import triage_risk
from kycflow.graphs.definition import (
    CURRENT_GRAPH,
    KYC_REVIEW_V1,
    KYC_REVIEW_V1_1,
    compute_graph_diff,
    graph_info,
)
from kycflow.llm.reflection_provider import create_reflection_provider
from kycflow.models.checkpoint import CheckpointMetadata, RunCheckpoint
from kycflow.models.graph import GraphDefinition
from kycflow.models.review import (
    FeatureFlags,
    GraphState,
    HumanDecision,
    HumanGatePrompt,
    ReviewDocument,
    ReviewSummary,
    ReviewTrace,
    RunResult,
    TraceEvent,
    to_iso,
    utc_now_iso,
)
from kycflow.workflows.checkpoint_store import CheckpointStore, is_checkpoint_expired
from kycflow.workflows.engine import CheckpointLifecycle, IllegalTransitionError
from kycflow.workflows.human_review import NODE_ID as HUMAN_REVIEW_NODE
from kycflow.workflows.human_review import evaluate_human_review
from kycflow.workflows.reflection import ReflectionEngine
from kycflow.workflows.resume_cache import ResumeCache

logger = logging.getLogger(__name__)

HUMAN_GATE_NODE = "human_gate"
SCOPE_GATE_OPTIONS = ["approve_edd", "request_docs", "reject"]
MAX_HUMAN_GATES = 1

Route = Literal["continue", "rerun_checks", "human_gate"]


class RunOptions(BaseModel):
    mode: Literal["run", "resume"] = "run"
    checkpoint_run_id: str | None = None
    resume_token: str | None = None
    features: FeatureFlags | None = None


class GraphOrchestrator:
    """Executes the review graph for start, resume and scope-gate resume calls."""

    def __init__(
        self,
        store: CheckpointStore,
        risk_assessor: RiskAssessor,
        reflection_engine: ReflectionEngine,
        notifier: Notifier | None = None,
        resume_cache: ResumeCache | None = None,
        graph: GraphDefinition = CURRENT_GRAPH,
        approval_email_to: str = "",
        approval_base_url: str = "http://localhost:8000",
        reminder_delay_seconds: int = 180,
        checkpoint_max_age_hours: float = 24.0,
        include_graph_definition: bool = False,
        include_graph_diff: bool = False,
    ) -> None:
        self.store = store
        self.risk_assessor = risk_assessor
        self.reflection = reflection_engine
        self.notifier = notifier
        self.resume_cache = resume_cache if resume_cache is not None else ResumeCache()
        self.graph = graph
        self.approval_email_to = approval_email_to or None
        self.approval_base_url = approval_base_url
        self.reminder_delay_seconds = reminder_delay_seconds
        self.checkpoint_max_age_hours = checkpoint_max_age_hours
        self.include_graph_definition = include_graph_definition
        self.include_graph_diff = include_graph_diff
        self.lifecycle = CheckpointLifecycle()

    # === Entry points ===

    async def start(
        self,
        documents: list[ReviewDocument],
        features: FeatureFlags | None = None,
        dirty_topics: list[str] | None = None,
    ) -> RunResult:
        state = GraphState(
            documents=documents,
            dirty_topics=dirty_topics or [],
            features=features or FeatureFlags(),
        )
        return await self.run(state, RunOptions(mode="run"))

    async def resume(self, run_id: str, human_decision: HumanDecision | None = None) -> RunResult:
        """Continue a checkpointed run past the human_review gate."""
        state = GraphState(run_id=run_id, human_decision=human_decision)
        return await self.run(state, RunOptions(mode="resume", checkpoint_run_id=run_id))

    async def resume_from_gate(self, resume_token: str, human_decision: HumanDecision) -> RunResult:
        """Continue a run paused at the non-durable scope gate."""
        state = GraphState(human_decision=human_decision)
        return await self.run(state, RunOptions(resume_token=resume_token))

    async def run(self, state: GraphState, options: RunOptions) -> RunResult:
        checkpoint: RunCheckpoint | None = None

        if options.resume_token:
            return await self._continue_from_gate(state, options.resume_token)

        try:
            if options.mode == "resume":
                loaded = self._load_for_resume(options.checkpoint_run_id or state.run_id, state.human_decision)
                if isinstance(loaded, RunResult):
                    return loaded
                checkpoint, state = loaded
            if options.features is not None:
                state.features = options.features
            return await self._execute(state, checkpoint)
        except Exception as e:
            logger.error("Run %s failed: %s", state.run_id, e, exc_info=True)
            return self._degraded(state, e)

    # === Resume validation ===

    def _load_for_resume(
        self, run_id: str, decision: HumanDecision | None
    ) -> tuple[RunCheckpoint, GraphState] | RunResult:
        checkpoint = self.store.load(run_id)
        if checkpoint is None:
            return RunResult(status="not_found", run_id=run_id, message=f"Checkpoint not found: {run_id}")
        if checkpoint.status != "paused":
            return RunResult(
                status="invalid_state", run_id=run_id,
                message=f"Cannot resume checkpoint with status: {checkpoint.status}",
            )
        if is_checkpoint_expired(checkpoint, self.checkpoint_max_age_hours):
            return RunResult(status="invalid_state", run_id=run_id, message="Checkpoint expired")

        if decision is not None and decision.decision not in ("approve", "reject"):
            return RunResult(
                status="invalid_state", run_id=run_id,
                message=f"Invalid decision for {HUMAN_REVIEW_NODE}: {decision.decision}",
            )
        if decision is not None and checkpoint.decision and decision.decision != checkpoint.decision:
            return RunResult(
                status="invalid_state", run_id=run_id,
                message=f"Decision conflict: checkpoint already records '{checkpoint.decision}'",
            )
        if decision is None:
            if checkpoint.decision is None:
                return RunResult(
                    status="invalid_state", run_id=run_id, message="No human decision recorded for this run",
                )
            decision = HumanDecision(
                decision=checkpoint.decision,
                comment=checkpoint.decision_comment,
                signer=checkpoint.decided_by,
            )

        state = GraphState.model_validate(checkpoint.graph_state)
        state.human_decision = HumanDecision(
            gate_id=HUMAN_REVIEW_NODE,
            decision=decision.decision,
            comment=decision.comment,
            signer=decision.signer,
        )
        return checkpoint, state

    # === Graph execution ===

    async def _execute(self, state: GraphState, checkpoint: RunCheckpoint | None) -> RunResult:
        if checkpoint is None:
            await self._run_checks_pipeline(state)
        else:
            state.trace.append(TraceEvent.record(
                "execution_resumed", "executed",
                decision=f"Resumed with decision: {state.human_decision.decision}",
                reason=f"Resumed from checkpoint at {checkpoint.paused_at_node_id}",
            ))
            logger.info("Resuming run %s from %s", state.run_id, checkpoint.paused_at_node_id)

        gate = evaluate_human_review(state)
        if gate.action == "pause":
            return await self._pause_for_approval(state, gate.reason)

        if state.execution_terminated:
            self._close_checkpoint(state, "terminated")
            return self._terminated(state)

        await self.reflection.reflect(state)
        route = self._route_after_reflection(state)

        if route == "rerun_checks":
            await self._rerun_checks(state)
        elif route == "human_gate" and self._scope_gate_available(state):
            return self._open_scope_gate(state)

        result = self._finalize(state)
        self._close_checkpoint(state, "completed")
        return result

    async def _run_checks_pipeline(self, state: GraphState) -> None:
        started = datetime.now(timezone.utc)
        state.topic_sections = assemble_topics(state.documents)
        state.trace.append(TraceEvent.record(
            "topic_assembler", "executed", started=started,
            decision=f"Assembled {len(state.topic_sections)} topics",
            outputs_summary=f"{len(state.topic_sections)} topics from {len(state.documents)} documents",
        ))

        started = datetime.now(timezone.utc)
        triage = triage_risk(state.topic_sections)
        state.triage = triage
        state.trace.append(TraceEvent.record(
            "risk_triage", "executed", started=started,
            decision=f"Risk score: {triage.risk_score}, Path: {triage.route_path}",
            reason="; ".join(triage.reasons),
            outputs_summary=f"Score {triage.risk_score} -> {triage.route_path}",
            data={"breakdown": triage.breakdown.model_dump()},
        ))

        execution = await execute_parallel_checks(state.topic_sections, triage.route_path)
        state.conflicts = execution.conflicts
        state.coverage_gaps = execution.coverage_gaps
        state.policy_flags = execution.policy_flags
        state.trace.extend(execution.events)

        started = datetime.now(timezone.utc)
        assessment = await self.risk_assessor.assess(state.documents, state.topic_sections)
        state.risk_assessment = assessment
        state.issues = signals_to_issues(assessment)
        state.requires_human_review = assessment.requires_human_review
        state.trace.append(TraceEvent.record(
            "risk_assessment", "failed" if assessment.source == "degraded" else "executed",
            started=started,
            decision=f"{len(assessment.signals)} risk signals ({assessment.source})",
            reason=" -> ".join(assessment.execution_path),
            data={"requires_human_review": assessment.requires_human_review},
        ))

    async def _rerun_checks(self, state: GraphState) -> None:
        execution = await execute_parallel_checks(state.topic_sections, state.route_path)
        state.conflicts = execution.conflicts
        state.coverage_gaps = execution.coverage_gaps
        state.policy_flags = execution.policy_flags
        state.trace.extend(execution.events)
        state.checks_rerun = True

    def _route_after_reflection(self, state: GraphState) -> Route:
        action = state.next_action if state.features.reflection else None
        route: Route = "continue"
        decision = "Continue to finalize"

        if action == "rerun_batch_review" and not state.checks_rerun:
            route, decision = "rerun_checks", "Rerouting to parallel checks based on reflection"
        elif action == "ask_human_for_scope":
            route, decision = "human_gate", "Human scope decision requested"
        elif action == "section_review":
            route, decision = "human_gate", "Section review requires human scope decision"
        elif action == "tighten_policy":
            decision = "Policy tightened; continue to finalize"

        state.trace.append(TraceEvent.record(
            "routing_decision", "executed", decision=decision,
            reason=f"next_action={action}, replan_count={state.reflection.replan_count}",
            data={"route": route},
        ))
        return route

    def _scope_gate_available(self, state: GraphState) -> bool:
        return state.human_decision is None and state.human_gate_count < MAX_HUMAN_GATES

    # === Primary gate: durable pause ===

    async def _pause_for_approval(self, state: GraphState, reason: str) -> RunResult:
        now = utc_now_iso()
        issues = collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags)
        checkpoint = RunCheckpoint(
            run_id=state.run_id,
            graph_id=self.graph.graph_id,
            graph_version=self.graph.version,
            current_node_id="risk_assessment",
            paused_at_node_id=HUMAN_REVIEW_NODE,
            graph_state=state.model_dump(mode="json"),
            documents=state.documents,
            status="paused",
            created_at=now,
            paused_at=now,
            approval_token=secrets.token_hex(16),
            approval_email_to=self.approval_email_to,
            checkpoint_metadata=CheckpointMetadata(
                document_count=len(state.documents),
                topic_count=len(state.topic_sections),
                issue_count=len(issues),
                risk_score=state.risk_score,
                route_path=state.route_path,
            ),
        )
        checkpoint.append_event("paused", node=HUMAN_REVIEW_NODE, reason=reason)
        self.store.save(checkpoint)
        logger.info("Run %s paused at %s (risk score %d)", state.run_id, HUMAN_REVIEW_NODE, state.risk_score)

        await self._send_approval_email(checkpoint, state, issues)

        return RunResult(
            status="waiting_human",
            run_id=state.run_id,
            paused_at_node=HUMAN_REVIEW_NODE,
            reason=reason,
            issues=issues,
            topic_sections=state.topic_sections,
            extracted_topics=to_extracted_topics(state.topic_sections),
            conflicts=state.conflicts,
            coverage_gaps=state.coverage_gaps,
            trace=self._trace(state),
            checkpoint_metadata={
                "run_id": checkpoint.run_id,
                "status": checkpoint.status,
                "paused_at_node_id": checkpoint.paused_at_node_id,
                "created_at": checkpoint.created_at,
                "paused_at": checkpoint.paused_at,
                "document_count": len(state.documents),
                "approval_email_to": checkpoint.approval_email_to,
                "approval_email_sent": checkpoint.approval_email_sent,
                "approval_sent_at": checkpoint.approval_sent_at,
                "reminder_due_at": checkpoint.reminder_due_at,
            },
            message="Run paused for human review",
        )

    async def _send_approval_email(self, checkpoint: RunCheckpoint, state: GraphState, issues) -> None:
        """Best-effort. A delivery failure is logged and recorded, never raised."""
        if self.notifier is None or not checkpoint.approval_email_to:
            logger.info("No approval recipient configured; run %s waits for a manual decision", checkpoint.run_id)
            return

        context = ApprovalContext(
            kind="approval",
            run_id=checkpoint.run_id,
            approval_token=checkpoint.approval_token,
            recipient=checkpoint.approval_email_to,
            base_url=self.approval_base_url,
            risk_score=state.risk_score,
            route_path=state.route_path,
            issues=issues,
        )
        message_id = None
        error = None
        try:
            message_id = await self.notifier.send(context)
        except Exception as e:
            logger.warning("Approval email for run %s failed: %s", checkpoint.run_id, e)
            error = str(e)
        sent = datetime.now(timezone.utc)
        self._apply_email_outcome(checkpoint, context, sent, message_id, error)

        # The approval link is live once the email is out, so the stored
        # version may already carry a decision; record the outcome on it.
        try:
            latest = self.store.load(checkpoint.run_id)
            if latest is None:
                logger.warning("Run %s disappeared before its email outcome was recorded", checkpoint.run_id)
                return
            self._apply_email_outcome(latest, context, sent, message_id, error)
            self.store.save(latest)
        except Exception as e:
            logger.error("Could not record email outcome for run %s: %s", checkpoint.run_id, e)

    def _apply_email_outcome(
        self,
        checkpoint: RunCheckpoint,
        context: ApprovalContext,
        sent: datetime,
        message_id: str | None,
        error: str | None,
    ) -> None:
        if error is not None:
            checkpoint.append_event("approval_email_failed", error=error)
            return
        checkpoint.approval_email_sent = True
        checkpoint.approval_sent_at = to_iso(sent)
        checkpoint.approval_message_id = message_id
        checkpoint.approval_email_subject = context.subject
        checkpoint.reminder_due_at = to_iso(sent + timedelta(seconds=self.reminder_delay_seconds))
        checkpoint.append_event("approval_email_sent", to=checkpoint.approval_email_to, message_id=message_id)

    def _close_checkpoint(self, state: GraphState, outcome: Literal["completed", "terminated"]) -> None:
        """paused -> resumed -> completed on the latest stored version, one write."""
        if state.human_decision is None or state.human_decision.gate_id != HUMAN_REVIEW_NODE:
            return
        checkpoint = self.store.load(state.run_id)
        if checkpoint is None:
            return
        try:
            self.lifecycle.resume(checkpoint)
            self.lifecycle.complete(checkpoint, reason=outcome)
        except IllegalTransitionError as e:
            logger.warning("Run %s closed concurrently: %s", state.run_id, e)
            return

        checkpoint.graph_state = state.model_dump(mode="json")
        meta = checkpoint.checkpoint_metadata
        meta.issue_count = len(collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags))
        edd_open = checkpoint.edd_stage is not None and checkpoint.edd_stage.status not in ("approved", "rejected")
        if meta.review_process_status == "RUNNING" and not edd_open:
            if outcome == "completed":
                meta.review_process_status = "COMPLETE"
            else:
                meta.review_process_status = "FAILED"
                meta.failed_stage = HUMAN_REVIEW_NODE
                meta.failure_reason = "Rejected by human reviewer"
                meta.failed_at = utc_now_iso()
        self.store.save(checkpoint)

    # === Second gate: non-durable ===

    def _open_scope_gate(self, state: GraphState) -> RunResult:
        state.human_gate_count += 1
        reason = "Reflection requested a human scope decision"
        state.trace.append(TraceEvent.record(
            HUMAN_GATE_NODE, "waiting", decision="Human decision required", reason=reason,
        ))
        token = ResumeCache.make_token(state.run_id, HUMAN_GATE_NODE)
        self.resume_cache.put(token, {"state": state.model_dump(mode="json")})
        logger.info("Run %s waiting at %s", state.run_id, HUMAN_GATE_NODE)

        return RunResult(
            status="waiting_human",
            run_id=state.run_id,
            paused_at_node=HUMAN_GATE_NODE,
            reason=reason,
            topic_sections=state.topic_sections,
            extracted_topics=to_extracted_topics(state.topic_sections),
            conflicts=state.conflicts,
            coverage_gaps=state.coverage_gaps,
            trace=self._trace(state),
            human_gate=HumanGatePrompt(
                gate_id=HUMAN_GATE_NODE,
                prompt=(
                    f"KYC review flagged for scope decision (risk score: {state.risk_score}). "
                    "Please review and decide:"
                ),
                options=list(SCOPE_GATE_OPTIONS),
            ),
            resume_token=token,
        )

    async def _continue_from_gate(self, incoming: GraphState, token: str) -> RunResult:
        parsed = ResumeCache.parse_token(token)
        if parsed is None or parsed[1] != HUMAN_GATE_NODE:
            return RunResult(status="not_found", message="Invalid resume token")
        decision = incoming.human_decision
        if decision is None or decision.decision not in SCOPE_GATE_OPTIONS:
            return RunResult(
                status="invalid_state", run_id=parsed[0],
                message=f"Decision must be one of: {', '.join(SCOPE_GATE_OPTIONS)}",
            )
        entry = self.resume_cache.pop(token)
        if entry is None:
            return RunResult(
                status="not_found", run_id=parsed[0],
                message="Resume state expired or not found. Please restart review.",
            )

        state = GraphState.model_validate(entry["state"])
        try:
            state.human_decision = HumanDecision(
                gate_id=HUMAN_GATE_NODE,
                decision=decision.decision,
                comment=decision.comment,
                signer=decision.signer,
            )
            state.trace.append(TraceEvent.record(
                HUMAN_GATE_NODE, "executed", decision=f"User selected: {decision.decision}",
                reason=decision.comment,
            ))
            if decision.decision == "reject":
                state.execution_terminated = True
                return self._terminated(state)
            return self._finalize(state)
        except Exception as e:
            logger.error("Scope gate resume for run %s failed: %s", state.run_id, e, exc_info=True)
            return self._degraded(state, e)

    # === Results ===

    def _finalize(self, state: GraphState) -> RunResult:
        issues = collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags)
        state.trace.append(TraceEvent.record(
            "finalize", "executed", decision=f"Generated {len(issues)} issues",
            outputs_summary=f"{len(issues)} issues, {len(state.conflicts)} conflicts, {len(state.coverage_gaps)} gaps",
        ))
        logger.info("Run %s completed with %d issues", state.run_id, len(issues))
        return RunResult(
            status="completed",
            run_id=state.run_id,
            issues=issues,
            topic_sections=state.topic_sections,
            extracted_topics=to_extracted_topics(state.topic_sections),
            conflicts=state.conflicts,
            coverage_gaps=state.coverage_gaps,
            trace=self._trace(state),
        )

    def _terminated(self, state: GraphState) -> RunResult:
        state.trace.append(TraceEvent.record(
            "finalize", "executed", decision="Terminated by human rejection",
        ))
        logger.info("Run %s terminated by reviewer", state.run_id)
        return RunResult(
            status="terminated",
            run_id=state.run_id,
            reason="Rejected by human reviewer",
            issues=collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags),
            topic_sections=state.topic_sections,
            extracted_topics=to_extracted_topics(state.topic_sections),
            conflicts=state.conflicts,
            coverage_gaps=state.coverage_gaps,
            trace=self._trace(state),
        )

    def _degraded(self, state: GraphState, error: Exception) -> RunResult:
        state.trace.append(TraceEvent.record(
            "error_handler", "failed", reason=str(error) or type(error).__name__,
            data={"error_type": type(error).__name__},
        ))
        trace = self._trace(state, degraded=True)
        trace.summary = ReviewSummary()
        return RunResult(status="degraded", run_id=state.run_id, trace=trace, message="Review degraded")

    def _trace(self, state: GraphState, degraded: bool = False) -> ReviewTrace:
        summary = ReviewSummary(
            path=state.route_path,
            risk_score=state.risk_score,
            risk_breakdown=state.triage.breakdown if state.triage else None,
            coverage_missing_count=sum(1 for g in state.coverage_gaps if g.status == "missing"),
            conflict_count=len(state.conflicts),
        )
        trace = ReviewTrace(events=list(state.trace), summary=summary, degraded=degraded, graph=graph_info(self.graph))
        if self.include_graph_definition:
            trace.graph_definition = self.graph.model_dump(mode="json")
        if self.include_graph_diff:
            trace.graph_diff = compute_graph_diff(KYC_REVIEW_V1, KYC_REVIEW_V1_1).model_dump(mode="json")
        return trace


def create_orchestrator(
    config: Settings,
    store: CheckpointStore,
    notifier: Notifier | None = None,
    resume_cache: ResumeCache | None = None,
    llm=None,
) -> GraphOrchestrator:
    """Wire capabilities selected by configuration into an orchestrator."""
    provider = create_reflection_provider(config, llm=llm)
    return GraphOrchestrator(
        store=store,
        risk_assessor=create_risk_assessor(config, llm=llm),
        reflection_engine=ReflectionEngine(provider, timeout_seconds=config.reflection_timeout_seconds),
        notifier=notifier,
        resume_cache=resume_cache or ResumeCache(
            ttl_seconds=config.resume_cache_ttl_seconds,
            max_entries=config.resume_cache_max_entries,
        ),
        approval_email_to=config.approval_email_to,
        approval_base_url=config.approval_base_url,
        reminder_delay_seconds=config.reminder_delay_seconds,
        checkpoint_max_age_hours=config.checkpoint_max_age_hours,
        include_graph_definition=config.include_graph_definition,
        include_graph_diff=config.include_graph_diff,
    )
