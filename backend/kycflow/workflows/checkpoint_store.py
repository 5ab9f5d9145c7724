"""CheckpointStore — durable, token-indexed persistence of paused runs.

Contract:
- save() is a full overwrite of the checkpoint payload; callers read-modify-write.
- The token index rows are written in the same commit as the checkpoint row,
  so a token never resolves to a missing checkpoint.
- No implicit expiry. Callers judge staleness with is_checkpoint_expired().

There is no compare-and-swap: concurrent writers are detected by the decision
finalizer's read-after-write check, not prevented here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ValidationError
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from kycflow.models.checkpoint import (
    ApprovalTokenIndex,
    CheckpointRecord,
    CheckpointStatus,
    RunCheckpoint,
    TokenType,
)
from kycflow.models.review import parse_iso
from kycflow.workflows.engine import CheckpointLifecycle

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_HOURS = 24.0


class CheckpointStoreError(Exception):
    """Raised when a checkpoint cannot be persisted."""


class TokenCollisionError(CheckpointStoreError):
    """Raised when an approval token already belongs to another run."""

    def __init__(self, token: str, owner_run_id: str) -> None:
        self.owner_run_id = owner_run_id
        super().__init__(f"Approval token ...{token[-8:]} already indexed for run {owner_run_id}")


class TokenMetadata(BaseModel):
    run_id: str
    token_type: TokenType


class CheckpointStore:
    """SQLite-backed checkpoint store."""

    def __init__(self, engine: Engine | None = None) -> None:
        if engine is None:
            from kycflow.db.database import engine as default_engine
            engine = default_engine
        self.engine = engine
        self._lifecycle = CheckpointLifecycle()

    # === Writes ===

    def save(self, checkpoint: RunCheckpoint) -> None:
        """Persist the whole checkpoint and index its approval tokens atomically."""
        payload = checkpoint.model_dump(mode="json")
        with Session(self.engine) as session:
            for token, token_type in checkpoint.token_entries():
                existing = session.get(ApprovalTokenIndex, token)
                if existing is None:
                    session.add(ApprovalTokenIndex(token=token, run_id=checkpoint.run_id, token_type=token_type))
                elif existing.run_id != checkpoint.run_id:
                    raise TokenCollisionError(token, existing.run_id)

            record = session.get(CheckpointRecord, checkpoint.run_id)
            if record is None:
                record = CheckpointRecord(
                    run_id=checkpoint.run_id,
                    status=checkpoint.status,
                    paused_at=checkpoint.paused_at,
                    payload=payload,
                )
            else:
                record.status = checkpoint.status
                record.paused_at = checkpoint.paused_at
                record.payload = payload
                record.updated_at = datetime.now(timezone.utc)
            session.add(record)
            session.commit()
        logger.debug("Saved checkpoint %s (status=%s)", checkpoint.run_id, checkpoint.status)

    def update_status(self, run_id: str, status: CheckpointStatus, reason: str = "") -> bool:
        """Load, transition through the lifecycle table, save. False if missing."""
        checkpoint = self.load(run_id)
        if checkpoint is None:
            return False
        self._lifecycle.transition(checkpoint, status, reason=reason)
        self.save(checkpoint)
        return True

    def delete(self, run_id: str) -> bool:
        """Remove a checkpoint and every token that resolves to it."""
        with Session(self.engine) as session:
            record = session.get(CheckpointRecord, run_id)
            if record is None:
                return False
            for row in session.exec(select(ApprovalTokenIndex).where(ApprovalTokenIndex.run_id == run_id)):
                session.delete(row)
            session.delete(record)
            session.commit()
        return True

    # === Reads ===

    def load(self, run_id: str) -> RunCheckpoint | None:
        with Session(self.engine) as session:
            record = session.get(CheckpointRecord, run_id)
            if record is None:
                return None
            payload = dict(record.payload or {})
        try:
            return RunCheckpoint.model_validate(payload)
        except ValidationError as e:
            logger.error("Stored checkpoint %s failed validation: %s", run_id, e)
            return None

    def resolve_token(self, token: str) -> str | None:
        meta = self.token_metadata(token)
        return meta.run_id if meta else None

    def token_metadata(self, token: str) -> TokenMetadata | None:
        if not token:
            return None
        with Session(self.engine) as session:
            row = session.get(ApprovalTokenIndex, token)
            if row is None:
                return None
            return TokenMetadata(run_id=row.run_id, token_type=row.token_type)

    def load_by_token(self, token: str) -> RunCheckpoint | None:
        run_id = self.resolve_token(token)
        return self.load(run_id) if run_id else None

    def list_checkpoints(self, status: CheckpointStatus | None = None) -> list[RunCheckpoint]:
        """Most recently paused first."""
        with Session(self.engine) as session:
            stmt = select(CheckpointRecord)
            if status is not None:
                stmt = stmt.where(CheckpointRecord.status == status)
            stmt = stmt.order_by(CheckpointRecord.paused_at.desc())
            payloads = [dict(r.payload or {}) for r in session.exec(stmt)]
        checkpoints = []
        for payload in payloads:
            try:
                checkpoints.append(RunCheckpoint.model_validate(payload))
            except ValidationError as e:
                logger.error("Skipping invalid stored checkpoint %s: %s", payload.get("run_id"), e)
        return checkpoints


def is_checkpoint_expired(
    checkpoint: RunCheckpoint,
    max_age_hours: float = DEFAULT_MAX_AGE_HOURS,
    now: datetime | None = None,
) -> bool:
    """True when the checkpoint was paused longer ago than max_age_hours."""
    now = now or datetime.now(timezone.utc)
    return now - parse_iso(checkpoint.paused_at) > timedelta(hours=max_age_hours)
