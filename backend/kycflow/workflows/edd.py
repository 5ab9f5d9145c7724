"""Enhanced Due Diligence (EDD) sub-review: starter and decision.

EddSubReview.start() is idempotent on edd_stage.approval_token /
edd_stage.approval_sent_at. It persists the EDD stage BEFORE notifying so a
poller sees the stage even when delivery fails, then records the sent flag
on the latest stored version in a second save. A failed notification does
not undo the stage.

EddSubReview.submit_decision() records the nested approval with the same
idempotency / conflict / read-after-write protocol as the stage-1 finalizer.
"""

from __future__ import annotations

import logging
import secrets
from typing import Literal

from pydantic import BaseModel, Field

from kycflow.email.notifier import ApprovalContext, Notifier
from kycflow.models.checkpoint import (
    MIN_REJECT_COMMENT,
    Decision,
    EddFinding,
    EddFindingsBundle,
    EddStage,
    EventLogEntry,
    GraphPatch,
    RunCheckpoint,
    validate_checkpoint,
)
from kycflow.models.decision import DecisionMetadata, FinalizeResult, validate_token_format
from kycflow.models.review import utc_now_iso
from kycflow.workflows.checkpoint_store import CheckpointStore
from kycflow.workflows.engine import CheckpointLifecycle

logger = logging.getLogger(__name__)

EDD_NODE_ID = "edd"
EDD_FAILED_STAGE = "edd_review"


def build_edd_bundle() -> EddFindingsBundle:
    """Deterministic findings for the EDD reviewer. No external calls."""
    return EddFindingsBundle(
        findings=[
            EddFinding(
                severity="high",
                title="Source of Funds Mismatch",
                detail="Current disclosure: $5M from business sale | Wealth division record: $50M AUM (10x discrepancy)",
            ),
            EddFinding(
                severity="medium",
                title="Policy Change Triggers Additional Review",
                detail="Dec 1 2025 regulation: Offshore holding structures now require EDD",
            ),
            EddFinding(
                severity="medium",
                title="Complex Offshore Structure",
                detail="3-layer chain (BVI -> Cayman -> Swiss trust) obscures ultimate beneficial owner",
            ),
        ],
        evidence_summary=(
            "SOF mismatch: $5M disclosed vs $50M in Wealth report. 3-layer offshore structure detected. "
            "Policy update effective Dec 1 2025 requires EDD for offshore holdings."
        ),
        graph_patch=GraphPatch(
            add_nodes=[{"id": EDD_NODE_ID, "label": "Enhanced Due Diligence (EDD)", "type": "review"}],
            add_edges=[
                {"from": "human_review", "to": EDD_NODE_ID, "label": "Route: EDD"},
                {"from": EDD_NODE_ID, "to": "finalization", "label": "Complete"},
            ],
        ),
    )


class EddStartResult(BaseModel):
    ok: bool
    already_started: bool = False
    notification_sent: bool = False
    edd_stage: EddStage | None = None
    event_log: list[EventLogEntry] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class EddSubReview:
    def __init__(
        self,
        store: CheckpointStore,
        notifier: Notifier | None = None,
        base_url: str = "http://localhost:8000",
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.base_url = base_url
        self.lifecycle = CheckpointLifecycle()

    # === Starter ===

    async def start(self, checkpoint: RunCheckpoint, rejection_reason: str) -> EddStartResult:
        """Open the EDD stage on a checkpoint that already carries the stage-1 reject."""
        existing = checkpoint.edd_stage
        if existing is not None and (existing.approval_token or existing.approval_sent_at):
            logger.info("EDD already started for run %s; skipping", checkpoint.run_id)
            return EddStartResult(ok=True, already_started=True)

        working = checkpoint.model_copy(deep=True)
        working.edd_stage = EddStage(
            status="waiting_edd_approval",
            started_at=utc_now_iso(),
            approval_token=secrets.token_hex(16),
            approval_email_to=checkpoint.approval_email_to,
            bundle=build_edd_bundle(),
        )
        working.append_event("edd_started", rejection_reason=rejection_reason[:100])

        try:
            self.store.save(working)
        except Exception as e:
            logger.error("Could not persist EDD stage for run %s: %s", checkpoint.run_id, e)
            return EddStartResult(ok=False, errors=[f"Failed to save checkpoint: {e}"])
        logger.info("EDD sub-review started for run %s", checkpoint.run_id)

        result = EddStartResult(ok=True)
        stage = working.edd_stage
        if self.notifier is None or not stage.approval_email_to:
            result.errors.append("No EDD approval recipient configured")
        else:
            try:
                await self.notifier.send(ApprovalContext(
                    kind="edd_approval",
                    run_id=working.run_id,
                    approval_token=stage.approval_token,
                    recipient=stage.approval_email_to,
                    base_url=self.base_url,
                    edd_bundle=stage.bundle,
                ))
            except Exception as e:
                logger.warning("EDD approval email for run %s failed: %s", working.run_id, e)
                result.errors.append(f"Failed to send EDD approval email: {e}")
            else:
                result.notification_sent = True
                working = self._record_email_sent(working, result)

        result.edd_stage = working.edd_stage
        result.event_log = list(working.event_log)
        return result

    def _record_email_sent(self, working: RunCheckpoint, result: EddStartResult) -> RunCheckpoint:
        """Set the sent flag on the latest stored version.

        The EDD link is live once the email is out, so the stored checkpoint
        may already carry the EDD decision.
        """
        token = working.edd_stage.approval_token
        try:
            latest = self.store.load(working.run_id)
        except Exception as e:
            logger.error("Could not reload run %s after EDD email: %s", working.run_id, e)
            result.errors.append(f"Failed to record email flag: {e}")
            return working
        if latest is None or latest.edd_stage is None or latest.edd_stage.approval_token != token:
            logger.warning("EDD stage for run %s changed while the email was in flight", working.run_id)
            result.errors.append("EDD stage changed before the email flag was recorded")
            return working

        latest.edd_stage.approval_email_sent = True
        latest.edd_stage.approval_sent_at = utc_now_iso()
        latest.append_event("edd_email_sent", recipient=latest.edd_stage.approval_email_to)
        try:
            self.store.save(latest)
        except Exception as e:
            logger.error("Could not record EDD email flag for run %s: %s", latest.run_id, e)
            result.errors.append(f"Failed to record email flag: {e}")
        return latest

    # === Decision ===

    async def submit_decision(
        self,
        token: str,
        decision: Decision,
        reason: str | None,
        metadata: DecisionMetadata,
    ) -> FinalizeResult:
        error = validate_token_format(token)
        if error:
            return FinalizeResult(ok=False, status="validation_failed", message=error, errors=[error])
        token = token.strip()

        token_meta = self.store.token_metadata(token)
        if token_meta is None:
            return FinalizeResult(ok=False, status="not_found", message="Invalid or expired EDD approval token")
        if token_meta.token_type != "edd":
            return FinalizeResult(
                ok=False, status="wrong_endpoint", run_id=token_meta.run_id,
                message="This is a stage-1 approval token; use the approvals endpoint",
            )

        checkpoint = self.store.load(token_meta.run_id)
        if checkpoint is None or checkpoint.edd_stage is None:
            return FinalizeResult(ok=False, status="not_found", run_id=token_meta.run_id, message="EDD stage not found")
        run_id = checkpoint.run_id

        current = checkpoint.edd_stage.decision
        if current is not None:
            if current == decision:
                return FinalizeResult(
                    ok=True, status="already_finalized", run_id=run_id, decision=decision,
                    message="EDD decision already recorded (idempotent)",
                )
            return FinalizeResult(
                ok=False, status="conflict", run_id=run_id,
                current_decision=current, requested_decision=decision,
                message=f'Conflict: EDD decision already set to "{current}", cannot change to "{decision}"',
            )

        if decision == "reject" and len((reason or "").strip()) < MIN_REJECT_COMMENT:
            msg = f"Rejection reason must be at least {MIN_REJECT_COMMENT} characters"
            return FinalizeResult(ok=False, status="validation_failed", run_id=run_id, message=msg, errors=[msg])

        now = utc_now_iso()
        merged = checkpoint.model_copy(deep=True)
        stage = merged.edd_stage
        stage.decision = decision
        stage.decision_comment = reason.strip() if reason else None
        stage.decided_at = now
        stage.decided_by = metadata.decided_by
        stage.status = "approved" if decision == "approve" else "rejected"
        merged.append_event("edd_decision_recorded", decision=decision, decided_by=metadata.decided_by)
        self._close(merged, decision, stage.decision_comment or "", now)

        validation = validate_checkpoint(merged.model_dump(mode="json"))
        if not validation.ok:
            return FinalizeResult(
                ok=False, status="validation_failed", run_id=run_id,
                message="Validation failed before write", errors=validation.errors,
            )

        try:
            self.store.save(validation.checkpoint)
        except Exception as e:
            logger.error("EDD decision write for run %s failed: %s", run_id, e)
            return FinalizeResult(
                ok=False, status="write_failed", run_id=run_id,
                message="Failed to write EDD decision", errors=[str(e)],
            )

        reloaded = self.store.load(run_id)
        if reloaded is None or reloaded.edd_stage is None:
            return FinalizeResult(
                ok=False, status="write_failed", run_id=run_id,
                message="Checkpoint not found after write (concurrent deletion?)",
            )
        if reloaded.edd_stage.decision != decision:
            return FinalizeResult(
                ok=False, status="concurrent_modification", run_id=run_id,
                current_decision=reloaded.edd_stage.decision, requested_decision=decision,
                message=f'Concurrent modification detected: EDD decision changed to "{reloaded.edd_stage.decision}"',
            )
        if reloaded.edd_stage.decided_at != now or reloaded.edd_stage.decided_by != metadata.decided_by:
            return FinalizeResult(
                ok=True, status="already_finalized", run_id=run_id, decision=decision, concurrent=True,
                message="EDD decision recorded, but may have been written concurrently by another process",
            )

        logger.info("EDD decision %s recorded for run %s", decision, run_id)
        return FinalizeResult(
            ok=True, status="finalized", run_id=run_id, decision=decision,
            message=f'EDD decision "{decision}" successfully recorded',
        )

    def _close(self, checkpoint: RunCheckpoint, decision: Literal["approve", "reject"], reason: str, now: str) -> None:
        """Derive final_decision and close the run. An already-closed status is left as is."""
        meta = checkpoint.checkpoint_metadata
        open_run = not self.lifecycle.is_terminal(checkpoint)
        if decision == "approve":
            checkpoint.final_decision = "approved_with_edd"
            if open_run:
                self.lifecycle.complete(checkpoint, reason="EDD approved")
            meta.review_process_status = "COMPLETE"
            return

        checkpoint.final_decision = "rejected"
        if open_run:
            self.lifecycle.fail(checkpoint, stage=EDD_FAILED_STAGE, reason=reason)
            return
        meta.review_process_status = "FAILED"
        meta.failure_reason = reason
        meta.failed_stage = EDD_FAILED_STAGE
        meta.failed_at = now
