"""GET /health: database, notification and capability checks.

Each check reports {"status": "ok"|"warning"|"error", "detail": ...}. Any
error makes the service unhealthy; warnings only degrade it.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from kycflow.config import settings

router = APIRouter()

VERSION = "0.3.0"


class HealthStatus(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    version: str
    checks: dict[str, dict]
    timestamp: datetime


def _check(status: str, detail: str) -> dict:
    return {"status": status, "detail": detail}


def _database() -> dict:
    # Looked up at call time so tests can swap the engine
    from kycflow.db import database

    try:
        with database.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()
    except Exception as e:
        return _check("error", str(e))
    return _check("ok", f"journal_mode={mode}")


def _smtp() -> dict:
    if not (settings.smtp_user and settings.smtp_password):
        return _check("warning", "SMTP credentials not set; approvals are manual")
    return _check("ok", f"{settings.smtp_host}:{settings.smtp_port}")


def _approval_recipient() -> dict:
    if not settings.approval_email_to:
        return _check("warning", "APPROVAL_EMAIL_TO not set")
    return _check("ok", settings.approval_email_to)


def _risk_analyzer() -> dict:
    if settings.risk_analyzer == "llm" and not settings.anthropic_api_key:
        return _check("warning", "llm analyzer without ANTHROPIC_API_KEY")
    return _check("ok", settings.risk_analyzer)


@router.get("/health", response_model=HealthStatus)
async def health_check() -> HealthStatus:
    checks = {
        "database": _database(),
        "smtp": _smtp(),
        "approval_recipient": _approval_recipient(),
        "reflection_provider": _check("ok", settings.reflection_provider),
        "risk_analyzer": _risk_analyzer(),
    }
    statuses = {c["status"] for c in checks.values()}
    if "error" in statuses:
        overall = "unhealthy"
    elif "warning" in statuses:
        overall = "degraded"
    else:
        overall = "healthy"
    return HealthStatus(status=overall, version=VERSION, checks=checks, timestamp=datetime.now(timezone.utc))
