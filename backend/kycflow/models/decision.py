"""Decision models shared by the stage-1 finalizer and the EDD decision path."""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field

from kycflow.models.checkpoint import Decision, FinalizedVia

FinalizeStatus = Literal[
    "finalized",                 # Decision written and verified
    "already_finalized",         # Same decision already recorded (idempotent)
    "conflict",                  # A different decision is already recorded
    "concurrent_modification",   # Read-after-write found another writer's decision
    "not_found",                 # Unknown token or missing checkpoint
    "validation_failed",         # Rejected before any write
    "write_failed",              # Store raised or the row vanished after write
    "wrong_endpoint",            # Token belongs to the other approval stage
]

TOKEN_MIN_LENGTH = 16
TOKEN_MAX_LENGTH = 256
_PRINTABLE_ASCII = re.compile(r"^[\x21-\x7e]+$")


def validate_token_format(token: str | None) -> str | None:
    """Return an error message, or None when the token shape is acceptable."""
    trimmed = (token or "").strip()
    if not TOKEN_MIN_LENGTH <= len(trimmed) <= TOKEN_MAX_LENGTH:
        return f"Token must be {TOKEN_MIN_LENGTH}-{TOKEN_MAX_LENGTH} characters after trimming"
    if not _PRINTABLE_ASCII.match(trimmed):
        return "Token contains invalid characters (only printable ASCII allowed)"
    return None


class DecisionMetadata(BaseModel):
    """Who decided and through which channel."""

    decided_by: str = Field(min_length=1)
    finalized_via: FinalizedVia
    token_hint: str = Field(min_length=8, max_length=8)

    @classmethod
    def for_token(cls, token: str, decided_by: str, finalized_via: FinalizedVia) -> DecisionMetadata:
        return cls(decided_by=decided_by, finalized_via=finalized_via, token_hint=token.strip()[-8:])


class FinalizeResult(BaseModel):
    ok: bool
    status: FinalizeStatus
    run_id: str | None = None
    decision: Decision | None = None
    current_decision: Decision | None = None
    requested_decision: Decision | None = None
    message: str = ""
    errors: list[str] = Field(default_factory=list)
    concurrent: bool = False
    edd_triggered: bool = False
    edd_started: bool = False
