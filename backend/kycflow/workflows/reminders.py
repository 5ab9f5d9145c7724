"""Approval reminders for runs paused at the human_review gate.

poll():   status projection for waiting clients; sends the automatic reminder
          once reminder_due_at has passed. The reminder flag is persisted
          BEFORE delivery is attempted, so concurrent polls send at most once.
remind(): manual reminder, rate-limited by a cooldown, only for paused runs
          without a decision.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import BaseModel

from kycflow.email.notifier import ApprovalContext, Notifier
from kycflow.engines.checks import collect_issues
from kycflow.models.checkpoint import RunCheckpoint
from kycflow.models.review import GraphState, parse_iso, to_iso
from kycflow.workflows.checkpoint_store import CheckpointStore

logger = logging.getLogger(__name__)

DEFAULT_REMINDER_DELAY_SECONDS = 180

PollStatus = Literal["waiting_human", "approved", "rejected", "not_found"]
RemindStatus = Literal["sent", "not_found", "not_pending", "cooldown", "no_recipient", "failed"]


class PollResult(BaseModel):
    ok: bool
    status: PollStatus
    run_id: str
    reminder_sent: bool = False
    elapsed_seconds: int | None = None
    reminder_due_in_seconds: int | None = None
    decision: dict[str, Any] | None = None
    checkpoint_metadata: dict[str, Any] | None = None
    message: str = ""


class RemindResult(BaseModel):
    ok: bool
    status: RemindStatus
    run_id: str
    retry_after_seconds: int | None = None
    message: str = ""


def _status_projection(checkpoint: RunCheckpoint) -> dict[str, Any]:
    meta = checkpoint.checkpoint_metadata
    return {
        "status": checkpoint.status,
        "approval_email_to": checkpoint.approval_email_to,
        "approval_sent_at": checkpoint.approval_sent_at,
        "reminder_sent_at": checkpoint.reminder_sent_at,
        "decided_by": checkpoint.decided_by,
        "decided_at": checkpoint.decided_at,
        "decision_comment": checkpoint.decision_comment,
        "final_decision": checkpoint.final_decision,
        "edd_stage": checkpoint.edd_stage.model_dump(mode="json", exclude={"approval_token"})
        if checkpoint.edd_stage else None,
        "review_process_status": meta.review_process_status,
        "failure_reason": meta.failure_reason,
        "failed_at": meta.failed_at,
        "failed_stage": meta.failed_stage,
    }


class ApprovalReminders:
    def __init__(
        self,
        store: CheckpointStore,
        notifier: Notifier | None = None,
        base_url: str = "http://localhost:8000",
        cooldown_seconds: int = 300,
        delay_seconds: int = DEFAULT_REMINDER_DELAY_SECONDS,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.base_url = base_url
        self.cooldown_seconds = cooldown_seconds
        self.delay_seconds = delay_seconds

    def _reminder_due_at(self, checkpoint: RunCheckpoint) -> datetime:
        if checkpoint.reminder_due_at:
            return parse_iso(checkpoint.reminder_due_at)
        sent = parse_iso(checkpoint.approval_sent_at or checkpoint.paused_at)
        return sent + timedelta(seconds=self.delay_seconds)

    async def poll(self, run_id: str, now: datetime | None = None) -> PollResult:
        checkpoint = self.store.load(run_id)
        if checkpoint is None:
            return PollResult(ok=False, status="not_found", run_id=run_id, message="Checkpoint not found")
        if checkpoint.decision:
            return self._decided(checkpoint)

        now = now or datetime.now(timezone.utc)
        reminder_sent = False
        if checkpoint.approval_email_sent and not checkpoint.reminder_email_sent:
            if now >= self._reminder_due_at(checkpoint):
                reminder_sent = await self._send_due_reminder(checkpoint, now)
                # The approver may have acted while the reminder was in flight
                checkpoint = self.store.load(run_id) or checkpoint
                if checkpoint.decision:
                    return self._decided(checkpoint, reminder_sent=reminder_sent)

        sent_at = parse_iso(checkpoint.approval_sent_at or checkpoint.paused_at)
        due_in = None
        if checkpoint.approval_email_sent and not checkpoint.reminder_email_sent:
            due_in = max(0, int((self._reminder_due_at(checkpoint) - now).total_seconds()))

        return PollResult(
            ok=True,
            status="waiting_human",
            run_id=run_id,
            reminder_sent=reminder_sent,
            elapsed_seconds=max(0, int((now - sent_at).total_seconds())),
            reminder_due_in_seconds=due_in,
            checkpoint_metadata=_status_projection(checkpoint),
        )

    @staticmethod
    def _decided(checkpoint: RunCheckpoint, reminder_sent: bool = False) -> PollResult:
        return PollResult(
            ok=True,
            status="approved" if checkpoint.decision == "approve" else "rejected",
            run_id=checkpoint.run_id,
            reminder_sent=reminder_sent,
            decision={
                "action": checkpoint.decision,
                "approver": checkpoint.decided_by,
                "timestamp": checkpoint.decided_at,
                "reason": checkpoint.decision_comment,
            },
            checkpoint_metadata=_status_projection(checkpoint),
        )

    async def _send_due_reminder(self, checkpoint: RunCheckpoint, now: datetime) -> bool:
        # Mark first: a failed send still counts as the one reminder.
        checkpoint.reminder_email_sent = True
        checkpoint.reminder_sent_at = to_iso(now)
        checkpoint.append_event("reminder_marked", trigger="poll")
        self.store.save(checkpoint)

        try:
            await self._deliver(checkpoint)
        except Exception as e:
            logger.warning("Reminder for run %s failed: %s", checkpoint.run_id, e)
            return False
        logger.info("Reminder sent for run %s", checkpoint.run_id)
        return True

    async def remind(self, run_id: str, now: datetime | None = None) -> RemindResult:
        checkpoint = self.store.load(run_id)
        if checkpoint is None:
            return RemindResult(ok=False, status="not_found", run_id=run_id, message="Checkpoint not found")
        if checkpoint.status != "paused" or checkpoint.decision:
            return RemindResult(
                ok=False, status="not_pending", run_id=run_id,
                message="Run is not waiting for a stage-1 decision",
            )
        if not checkpoint.approval_email_to or self.notifier is None:
            return RemindResult(ok=False, status="no_recipient", run_id=run_id, message="No approval recipient")

        now = now or datetime.now(timezone.utc)
        if checkpoint.reminder_sent_at:
            elapsed = (now - parse_iso(checkpoint.reminder_sent_at)).total_seconds()
            if elapsed < self.cooldown_seconds:
                wait = int(self.cooldown_seconds - elapsed) + 1
                return RemindResult(
                    ok=False, status="cooldown", run_id=run_id, retry_after_seconds=wait,
                    message=f"Reminder already sent; retry in {wait}s",
                )

        try:
            await self._deliver(checkpoint)
        except Exception as e:
            logger.warning("Manual reminder for run %s failed: %s", run_id, e)
            return RemindResult(ok=False, status="failed", run_id=run_id, message=str(e))

        # Record on the latest version: a decision may have landed during delivery
        latest = self.store.load(run_id)
        if latest is None:
            logger.warning("Run %s disappeared while its reminder was being sent", run_id)
        else:
            latest.reminder_email_sent = True
            latest.reminder_sent_at = to_iso(now)
            latest.append_event("reminder_sent", trigger="manual")
            self.store.save(latest)
        return RemindResult(ok=True, status="sent", run_id=run_id, message="Reminder sent")

    async def _deliver(self, checkpoint: RunCheckpoint) -> str:
        if self.notifier is None or not checkpoint.approval_email_to or not checkpoint.approval_token:
            raise ValueError("No approval recipient or token")
        state = GraphState.model_validate(checkpoint.graph_state)
        return await self.notifier.send(ApprovalContext(
            kind="reminder",
            run_id=checkpoint.run_id,
            approval_token=checkpoint.approval_token,
            recipient=checkpoint.approval_email_to,
            base_url=self.base_url,
            risk_score=state.risk_score,
            route_path=state.route_path,
            issues=collect_issues(state.issues, state.conflicts, state.coverage_gaps, state.policy_flags),
        ))
