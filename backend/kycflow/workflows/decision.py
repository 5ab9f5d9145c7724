"""DecisionFinalizer — durably commits a stage-1 human decision.

Protocol, in order:
 1. token shape (16-256 printable ASCII after trim)    -> validation_failed
 2. token -> run_id, stage-1 tokens only                -> not_found / wrong_endpoint
 3. load checkpoint                                     -> not_found
 4. existing decision: same -> already_finalized, different -> conflict
 5. reject needs a reason of >= 10 chars                -> validation_failed
 6. merge decision + derived fields, validate the whole checkpoint
 7. reject with an EDD trigger: hand off to EddSubReview, merge its stage
 8. full overwrite, then read back:
      other decision                -> concurrent_modification
      same decision, other author   -> already_finalized (concurrent=True)

There is no compare-and-swap in the store; the read-after-write check is what
detects racing writers. Nothing here raises for not-found, conflict or
validation conditions.
"""

from __future__ import annotations

import logging

from kycflow.models.checkpoint import MIN_REJECT_COMMENT, Decision, RunCheckpoint, validate_checkpoint
from kycflow.models.decision import DecisionMetadata, FinalizeResult, validate_token_format
from kycflow.models.review import utc_now_iso
from kycflow.workflows.checkpoint_store import CheckpointStore
from kycflow.workflows.edd import EddSubReview
from kycflow.workflows.edd_trigger import EddTriggerPolicy, is_edd_trigger
from kycflow.workflows.engine import CheckpointLifecycle
from kycflow.workflows.human_review import NODE_ID as HUMAN_REVIEW_NODE

logger = logging.getLogger(__name__)


class DecisionFinalizer:
    def __init__(
        self,
        store: CheckpointStore,
        edd: EddSubReview | None = None,
        trigger_policy: EddTriggerPolicy | None = None,
    ) -> None:
        self.store = store
        self.edd = edd
        self.trigger_policy = trigger_policy or EddTriggerPolicy()
        self.lifecycle = CheckpointLifecycle()

    async def finalize(
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
            return FinalizeResult(ok=False, status="not_found", message="Invalid or expired approval token")
        if token_meta.token_type != "stage1":
            return FinalizeResult(
                ok=False, status="wrong_endpoint", run_id=token_meta.run_id,
                message="This is an EDD approval token; use the EDD endpoint",
            )

        checkpoint = self.store.load(token_meta.run_id)
        if checkpoint is None:
            return FinalizeResult(ok=False, status="not_found", run_id=token_meta.run_id, message="Checkpoint not found")
        run_id = checkpoint.run_id

        if checkpoint.decision:
            if checkpoint.decision == decision:
                return FinalizeResult(
                    ok=True, status="already_finalized", run_id=run_id, decision=decision,
                    message="Decision already recorded (idempotent)",
                )
            return FinalizeResult(
                ok=False, status="conflict", run_id=run_id,
                current_decision=checkpoint.decision, requested_decision=decision,
                message=f'Conflict: decision already set to "{checkpoint.decision}", cannot change to "{decision}"',
            )

        if decision == "reject":
            if not reason or not reason.strip():
                msg = "Rejection reason is required"
                return FinalizeResult(ok=False, status="validation_failed", run_id=run_id, message=msg, errors=[msg])
            if len(reason.strip()) < MIN_REJECT_COMMENT:
                msg = f"Rejection reason must be at least {MIN_REJECT_COMMENT} characters"
                return FinalizeResult(ok=False, status="validation_failed", run_id=run_id, message=msg, errors=[msg])

        if self.lifecycle.is_terminal(checkpoint):
            msg = f"Run is closed (status: {checkpoint.status})"
            return FinalizeResult(ok=False, status="validation_failed", run_id=run_id, message=msg, errors=[msg])

        now = utc_now_iso()
        merged = self._apply_decision(checkpoint, decision, reason, metadata, now)
        validation = validate_checkpoint(merged.model_dump(mode="json"))
        if not validation.ok:
            return self._invalid(run_id, validation.errors)

        edd_triggered = False
        edd_started = False
        if decision == "reject":
            edd_triggered = self.edd is not None and is_edd_trigger(reason, self.trigger_policy)
            if edd_triggered:
                started = await self.edd.start(validation.checkpoint, reason.strip())
                if not started.ok:
                    logger.warning("EDD sub-review for run %s did not start: %s", run_id, started.errors)
                elif not started.already_started:
                    edd_started = True
                    # The starter saved the reject with the EDD stage; continue from the
                    # stored version, which may already hold an EDD decision.
                    latest = self.store.load(run_id)
                    if latest is not None:
                        merged = latest
                    else:
                        merged.edd_stage = started.edd_stage
                        merged.event_log = started.event_log
            self._derive_reject_status(merged, reason.strip(), now)
            validation = validate_checkpoint(merged.model_dump(mode="json"))
            if not validation.ok:
                return self._invalid(run_id, validation.errors)

        try:
            self.store.save(validation.checkpoint)
        except Exception as e:
            logger.error("Decision write for run %s failed: %s", run_id, e)
            return FinalizeResult(
                ok=False, status="write_failed", run_id=run_id,
                message="Failed to write decision to checkpoint", errors=[str(e)],
            )

        reloaded = self.store.load(run_id)
        if reloaded is None:
            return FinalizeResult(
                ok=False, status="write_failed", run_id=run_id,
                message="Checkpoint not found after write (concurrent deletion?)",
            )
        if reloaded.decision != decision:
            return FinalizeResult(
                ok=False, status="concurrent_modification", run_id=run_id,
                current_decision=reloaded.decision, requested_decision=decision,
                message=f'Concurrent modification detected: decision changed to "{reloaded.decision}"',
            )
        if reloaded.decided_at != now or reloaded.decided_by != metadata.decided_by:
            return FinalizeResult(
                ok=True, status="already_finalized", run_id=run_id, decision=decision, concurrent=True,
                message="Decision recorded, but may have been written concurrently by another process",
            )

        logger.info("Decision %s recorded for run %s via %s", decision, run_id, metadata.finalized_via)
        return FinalizeResult(
            ok=True, status="finalized", run_id=run_id, decision=decision,
            edd_triggered=edd_triggered, edd_started=edd_started,
            message=f'Decision "{decision}" successfully recorded',
        )

    def _apply_decision(
        self,
        checkpoint: RunCheckpoint,
        decision: Decision,
        reason: str | None,
        metadata: DecisionMetadata,
        now: str,
    ) -> RunCheckpoint:
        merged = checkpoint.model_copy(deep=True)
        merged.decision = decision
        merged.decision_comment = reason.strip() if reason and reason.strip() else None
        merged.decided_at = now
        merged.decided_by = metadata.decided_by
        merged.finalized_via = metadata.finalized_via
        merged.token_hint = metadata.token_hint
        merged.append_event(
            "decision_recorded",
            decision=decision, decided_by=metadata.decided_by, finalized_via=metadata.finalized_via,
        )
        if decision == "approve":
            merged.final_decision = "approved"
            merged.checkpoint_metadata.review_process_status = "COMPLETE"
        return merged

    @staticmethod
    def _derive_reject_status(checkpoint: RunCheckpoint, reason: str, now: str) -> None:
        meta = checkpoint.checkpoint_metadata
        if checkpoint.edd_stage is not None:
            # A decided EDD stage has already closed the process
            if checkpoint.edd_stage.status not in ("approved", "rejected"):
                meta.review_process_status = "RUNNING"
            return
        checkpoint.final_decision = "rejected"
        meta.review_process_status = "FAILED"
        meta.failure_reason = reason
        meta.failed_stage = HUMAN_REVIEW_NODE
        meta.failed_at = now

    @staticmethod
    def _invalid(run_id: str, errors: list[str]) -> FinalizeResult:
        return FinalizeResult(
            ok=False, status="validation_failed", run_id=run_id,
            message="Validation failed before write", errors=errors,
        )
