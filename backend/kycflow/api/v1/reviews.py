"""Review run API.

Endpoints:
  POST /api/v1/reviews                    Start a review run over uploaded documents.
  GET  /api/v1/reviews                    List stored checkpoints (optionally by status).
  POST /api/v1/reviews/gate/resume        Resume a run paused at the scope gate.
  POST /api/v1/reviews/{run_id}/resume    Resume a checkpointed run past human review.
  GET  /api/v1/reviews/{run_id}           Checkpoint status projection.
"""

from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from kycflow.models.checkpoint import CheckpointStatus, EventLogEntry, RunCheckpoint
from kycflow.models.review import FeatureFlags, HumanDecision, ReviewDocument, RunResult
from kycflow.workflows.checkpoint_store import CheckpointStore, is_checkpoint_expired
from kycflow.workflows.orchestrator import GraphOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["reviews"])

# Module-level refs set by main.py
_orchestrator: GraphOrchestrator | None = None
_store: CheckpointStore | None = None
_max_age_hours: float = 24.0


def set_dependencies(orchestrator: GraphOrchestrator, store: CheckpointStore, max_age_hours: float = 24.0) -> None:
    global _orchestrator, _store, _max_age_hours
    _orchestrator = orchestrator
    _store = store
    _max_age_hours = max_age_hours


# === Request / Response Models ===


class DocumentIn(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    text: str = Field(max_length=500_000)
    doc_type_hint: str = "other"


class StartReviewRequest(BaseModel):
    documents: list[DocumentIn] = Field(min_length=1, max_length=50)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    dirty_topics: list[str] = Field(default_factory=list)


class ResumeRequest(BaseModel):
    """Omit `decision` to resume with the decision already recorded on the checkpoint."""
    decision: Literal["approve", "reject"] | None = None
    comment: str | None = Field(default=None, max_length=2000)
    signer: str | None = Field(default=None, max_length=200)


class GateResumeRequest(BaseModel):
    resume_token: str = Field(min_length=1, max_length=1000)
    decision: Literal["approve_edd", "request_docs", "reject"]
    comment: str | None = Field(default=None, max_length=2000)
    signer: str | None = Field(default=None, max_length=200)


class CheckpointSummary(BaseModel):
    run_id: str
    status: CheckpointStatus
    graph_id: str
    graph_version: str
    paused_at_node_id: str
    created_at: str
    paused_at: str
    resumed_at: str | None = None
    expired: bool = False
    approval_email_sent: bool = False
    reminder_email_sent: bool = False
    decision: str | None = None
    decided_at: str | None = None
    decided_by: str | None = None
    final_decision: str | None = None
    review_process_status: str
    edd_status: str | None = None
    risk_score: int = 0
    route_path: str | None = None


class CheckpointDetail(CheckpointSummary):
    event_log: list[EventLogEntry] = Field(default_factory=list)


# === Helpers ===

_RUN_STATUS_CODES = {"not_found": 404, "invalid_state": 409}


def _require_orchestrator() -> GraphOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Review engine not initialized.")
    return _orchestrator


def _require_store() -> CheckpointStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Checkpoint store not initialized.")
    return _store


def _raise_for_status(result: RunResult) -> RunResult:
    code = _RUN_STATUS_CODES.get(result.status)
    if code is not None:
        raise HTTPException(status_code=code, detail=result.message)
    return result


def _summary(checkpoint: RunCheckpoint, detail: bool = False) -> CheckpointSummary:
    meta = checkpoint.checkpoint_metadata
    fields = dict(
        run_id=checkpoint.run_id,
        status=checkpoint.status,
        graph_id=checkpoint.graph_id,
        graph_version=checkpoint.graph_version,
        paused_at_node_id=checkpoint.paused_at_node_id,
        created_at=checkpoint.created_at,
        paused_at=checkpoint.paused_at,
        resumed_at=checkpoint.resumed_at,
        expired=checkpoint.status == "paused" and is_checkpoint_expired(checkpoint, _max_age_hours),
        approval_email_sent=checkpoint.approval_email_sent,
        reminder_email_sent=checkpoint.reminder_email_sent,
        decision=checkpoint.decision,
        decided_at=checkpoint.decided_at,
        decided_by=checkpoint.decided_by,
        final_decision=checkpoint.final_decision,
        review_process_status=meta.review_process_status,
        edd_status=checkpoint.edd_stage.status if checkpoint.edd_stage else None,
        risk_score=meta.risk_score,
        route_path=meta.route_path,
    )
    if detail:
        return CheckpointDetail(event_log=checkpoint.event_log, **fields)
    return CheckpointSummary(**fields)


# === Endpoints ===


@router.post("/reviews", response_model=RunResult)
async def start_review(request: StartReviewRequest) -> RunResult:
    orchestrator = _require_orchestrator()
    documents = [ReviewDocument(**doc.model_dump()) for doc in request.documents]
    result = await orchestrator.start(documents, features=request.features, dirty_topics=request.dirty_topics)
    logger.info("Review %s -> %s", result.run_id, result.status)
    return result


@router.get("/reviews", response_model=list[CheckpointSummary])
async def list_reviews(status: CheckpointStatus | None = None) -> list[CheckpointSummary]:
    store = _require_store()
    return [_summary(cp) for cp in store.list_checkpoints(status=status)]


@router.post("/reviews/gate/resume", response_model=RunResult)
async def resume_from_gate(request: GateResumeRequest) -> RunResult:
    orchestrator = _require_orchestrator()
    decision = HumanDecision(
        gate_id="human_gate", decision=request.decision, comment=request.comment, signer=request.signer,
    )
    return _raise_for_status(await orchestrator.resume_from_gate(request.resume_token, decision))


@router.post("/reviews/{run_id}/resume", response_model=RunResult)
async def resume_review(run_id: str, request: ResumeRequest | None = None) -> RunResult:
    orchestrator = _require_orchestrator()
    decision = None
    if request is not None and request.decision is not None:
        decision = HumanDecision(decision=request.decision, comment=request.comment, signer=request.signer)
    return _raise_for_status(await orchestrator.resume(run_id, decision))


@router.get("/reviews/{run_id}", response_model=CheckpointDetail)
async def get_review(run_id: str) -> CheckpointDetail:
    store = _require_store()
    checkpoint = store.load(run_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"Checkpoint {run_id} not found.")
    return _summary(checkpoint, detail=True)
