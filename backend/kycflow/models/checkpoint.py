"""RunCheckpoint — the durable unit of suspended execution.

The pydantic model carries every structural rule a checkpoint must satisfy
before it is written; validate_checkpoint() turns a ValidationError into
field-level messages. The two SQLModel tables hold the serialized payload
and the approval-token index.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field, ValidationError, field_validator, model_validator
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

from kycflow.models.review import ReviewDocument, parse_iso, to_iso, utc_now_iso

CheckpointStatus = Literal["paused", "resumed", "completed", "failed"]
Decision = Literal["approve", "reject"]
FinalizedVia = Literal["email_link", "web_form"]
FinalDecision = Literal["approved", "rejected", "approved_with_edd"]
EddStatus = Literal["idle", "running", "waiting_edd_approval", "approved", "rejected"]
ReviewProcessStatus = Literal["RUNNING", "COMPLETE", "FAILED"]
TokenType = Literal["stage1", "edd"]

MIN_REJECT_COMMENT = 10

_UUID_V4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _check_iso(value: str) -> str:
    try:
        parsed = parse_iso(value)
    except ValueError:
        raise ValueError("must be an ISO-8601 timestamp") from None
    if parsed.tzinfo is None or to_iso(parsed) != value:
        raise ValueError("must be a UTC ISO-8601 timestamp that round-trips exactly")
    return value


def _check_email(value: str) -> str:
    if not _EMAIL.match(value):
        raise ValueError("must be a valid email address")
    return value


IsoTimestamp = Annotated[str, AfterValidator(_check_iso)]
ApprovalToken = Annotated[str, Field(pattern=r"^[0-9a-f]{32}$")]
EmailAddress = Annotated[str, AfterValidator(_check_email)]


def _reject_needs_comment(decision: str | None, comment: str | None) -> None:
    if decision == "reject" and len((comment or "").strip()) < MIN_REJECT_COMMENT:
        raise ValueError(
            f"decision_comment must be at least {MIN_REJECT_COMMENT} characters when rejecting"
        )


class EventLogEntry(BaseModel):
    timestamp: IsoTimestamp
    event: str = Field(min_length=1)
    details: dict[str, Any] = Field(default_factory=dict)


class EddFinding(BaseModel):
    severity: Literal["high", "medium", "low"]
    title: str
    detail: str


class GraphPatch(BaseModel):
    """How the review graph is conceptually extended once EDD starts."""

    add_nodes: list[dict[str, Any]] = Field(default_factory=list)
    add_edges: list[dict[str, Any]] = Field(default_factory=list)


class EddFindingsBundle(BaseModel):
    findings: list[EddFinding] = Field(default_factory=list)
    evidence_summary: str = ""
    graph_patch: GraphPatch = Field(default_factory=GraphPatch)


class EddStage(BaseModel):
    """Nested Enhanced Due Diligence approval stage."""

    status: EddStatus = "idle"
    started_at: IsoTimestamp | None = None
    approval_token: ApprovalToken | None = None
    approval_email_to: EmailAddress | None = None
    approval_email_sent: bool = False
    approval_sent_at: IsoTimestamp | None = None
    decision: Decision | None = None
    decision_comment: str | None = None
    decided_at: IsoTimestamp | None = None
    decided_by: str | None = None
    bundle: EddFindingsBundle | None = None

    @model_validator(mode="after")
    def check_reject_comment(self) -> EddStage:
        _reject_needs_comment(self.decision, self.decision_comment)
        return self


class CheckpointMetadata(BaseModel):
    """Read projection for external consumers (status pages, pollers)."""

    review_process_status: ReviewProcessStatus = "RUNNING"
    failure_reason: str | None = None
    failed_at: IsoTimestamp | None = None
    failed_stage: str | None = None
    document_count: int = 0
    topic_count: int = 0
    issue_count: int = 0
    risk_score: int = 0
    route_path: str | None = None


class RunCheckpoint(BaseModel):
    """Durable snapshot of a paused run, sufficient to resume it later."""

    # Identity
    run_id: str
    graph_id: str = Field(min_length=1)
    graph_version: str = Field(min_length=1)

    # Position
    current_node_id: str = Field(min_length=1)
    paused_at_node_id: str = Field(min_length=1)

    # Payload
    graph_state: dict[str, Any]
    documents: list[ReviewDocument] = Field(default_factory=list)

    # Lifecycle
    status: CheckpointStatus
    created_at: IsoTimestamp
    paused_at: IsoTimestamp
    resumed_at: IsoTimestamp | None = None

    # Stage-1 approval
    approval_token: ApprovalToken | None = None
    approval_email_to: EmailAddress | None = None
    approval_email_sent: bool = False
    approval_sent_at: IsoTimestamp | None = None
    approval_message_id: str | None = None
    approval_email_subject: str | None = None
    reminder_email_sent: bool = False
    reminder_sent_at: IsoTimestamp | None = None
    reminder_due_at: IsoTimestamp | None = None

    # Decision (write-once, owned by the decision finalizer)
    decision: Decision | None = None
    decision_comment: str | None = None
    decided_at: IsoTimestamp | None = None
    decided_by: str | None = None
    finalized_via: FinalizedVia | None = None
    token_hint: str | None = Field(default=None, min_length=8, max_length=8)

    edd_stage: EddStage | None = None
    final_decision: FinalDecision | None = None

    event_log: list[EventLogEntry] = Field(default_factory=list)
    checkpoint_metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)

    @field_validator("run_id")
    @classmethod
    def validate_run_id(cls, v: str) -> str:
        if not _UUID_V4.match(v):
            raise ValueError("run_id must be a UUID v4")
        return v

    @model_validator(mode="after")
    def check_reject_comment(self) -> RunCheckpoint:
        _reject_needs_comment(self.decision, self.decision_comment)
        return self

    def append_event(self, event: str, **details: Any) -> None:
        """Append to the audit trail. Entries are never rewritten."""
        self.event_log.append(EventLogEntry(timestamp=utc_now_iso(), event=event, details=details))

    def token_entries(self) -> list[tuple[str, TokenType]]:
        """Approval tokens this checkpoint owns, for the token index."""
        entries: list[tuple[str, TokenType]] = []
        if self.approval_token:
            entries.append((self.approval_token, "stage1"))
        if self.edd_stage and self.edd_stage.approval_token:
            entries.append((self.edd_stage.approval_token, "edd"))
        return entries


class CheckpointValidation(BaseModel):
    ok: bool
    errors: list[str] = Field(default_factory=list)
    checkpoint: RunCheckpoint | None = None


def validate_checkpoint(data: dict[str, Any]) -> CheckpointValidation:
    """Validate a fully-merged checkpoint dict without raising."""
    try:
        checkpoint = RunCheckpoint.model_validate(data)
    except ValidationError as e:
        errors = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "checkpoint"
            errors.append(f"{loc}: {err['msg']}")
        return CheckpointValidation(ok=False, errors=errors)
    return CheckpointValidation(ok=True, checkpoint=checkpoint)


# === SQL tables ===


class CheckpointRecord(SQLModel, table=True):
    """One row per run. The payload is always overwritten as a whole."""

    __tablename__ = "run_checkpoint"

    run_id: str = SQLField(primary_key=True)
    status: str = SQLField(index=True)
    paused_at: str
    payload: dict = SQLField(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))


class ApprovalTokenIndex(SQLModel, table=True):
    """approval token -> run_id. Written in the same commit as the checkpoint."""

    __tablename__ = "approval_token_index"

    token: str = SQLField(primary_key=True)
    run_id: str = SQLField(index=True)
    token_type: str = "stage1"  # "stage1" | "edd"
    created_at: datetime = SQLField(default_factory=lambda: datetime.now(timezone.utc))
