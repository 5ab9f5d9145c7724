"""Checkpoint lifecycle state machine and transition table.

A RunCheckpoint is created paused. Every status change goes through
CheckpointLifecycle.transition(), which enforces the table below and stamps
the audit trail.
"""

from __future__ import annotations

from kycflow.models.checkpoint import RunCheckpoint
from kycflow.models.review import utc_now_iso

# === State Transition Table ===
# Key: (from_status, to_status) -> guard description
# Absent pair -> illegal transition

LEGAL_TRANSITIONS: dict[tuple[str, str], str] = {
    # From paused
    ("paused", "resumed"): "Resume call continues past the paused node",
    ("paused", "completed"): "Stage-1 approve / EDD approve finalized without resume",
    ("paused", "failed"): "Stage-1 reject without EDD, or EDD reject",
    # From resumed
    ("resumed", "completed"): "Resumed run reached finalize or terminated on reject",
    ("resumed", "failed"): "Resumed run failed",
    ("resumed", "paused"): "Resumed run paused again",
    # Terminal states: completed, failed; no transitions out
}

TERMINAL_STATES = {"completed", "failed"}


class IllegalTransitionError(Exception):
    """Raised when attempting an illegal checkpoint status transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition: {from_state} -> {to_state}. "
            f"See LEGAL_TRANSITIONS for valid transitions."
        )


class CheckpointLifecycle:
    """Stateless status-transition enforcement for RunCheckpoint objects.

    Usage:
        lifecycle = CheckpointLifecycle()
        lifecycle.resume(checkpoint)
        lifecycle.complete(checkpoint)
    """

    def can_transition(self, from_state: str, to_state: str) -> bool:
        return (from_state, to_state) in LEGAL_TRANSITIONS

    def is_terminal(self, checkpoint: RunCheckpoint) -> bool:
        return checkpoint.status in TERMINAL_STATES

    def transition(self, checkpoint: RunCheckpoint, to_state: str, reason: str = "") -> None:
        """Change status or raise IllegalTransitionError."""
        from_state = checkpoint.status
        if not self.can_transition(from_state, to_state):
            raise IllegalTransitionError(from_state, to_state)
        checkpoint.status = to_state  # type: ignore[assignment]
        checkpoint.append_event(
            "status_changed", from_status=from_state, to_status=to_state, reason=reason,
        )

    def resume(self, checkpoint: RunCheckpoint) -> None:
        self.transition(checkpoint, "resumed", reason="resume requested")
        checkpoint.resumed_at = utc_now_iso()

    def complete(self, checkpoint: RunCheckpoint, reason: str = "") -> None:
        """Close the checkpoint. review_process_status is left to the caller."""
        self.transition(checkpoint, "completed", reason=reason)

    def fail(self, checkpoint: RunCheckpoint, stage: str, reason: str) -> None:
        self.transition(checkpoint, "failed", reason=reason)
        meta = checkpoint.checkpoint_metadata
        meta.review_process_status = "FAILED"
        meta.failure_reason = reason
        meta.failed_stage = stage
        meta.failed_at = utc_now_iso()
