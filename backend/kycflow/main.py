"""kycflow FastAPI application.

Entry point for the backend server. Capabilities (reflection provider, risk
analyzer, notifier) are built from Settings once, in the lifespan, and
injected into the workflow services.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kycflow.api.health import router as health_router
from kycflow.api.v1.approvals import router as approvals_router
from kycflow.api.v1.reviews import router as reviews_router
from kycflow.config import settings
from kycflow.db.database import create_db_and_tables
from kycflow.middleware.auth import APIKeyAuthMiddleware
from kycflow.middleware.rate_limit import RateLimitMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    create_db_and_tables()

    resume_cache = None
    try:
        from kycflow.api.v1.approvals import set_dependencies as set_approval_deps
        from kycflow.api.v1.reviews import set_dependencies as set_review_deps
        from kycflow.email.notifier import create_notifier
        from kycflow.workflows.checkpoint_store import CheckpointStore
        from kycflow.workflows.decision import DecisionFinalizer
        from kycflow.workflows.edd import EddSubReview
        from kycflow.workflows.edd_trigger import EddTriggerPolicy
        from kycflow.workflows.orchestrator import create_orchestrator
        from kycflow.workflows.reminders import ApprovalReminders

        store = CheckpointStore()
        notifier = create_notifier(settings)
        orchestrator = create_orchestrator(settings, store, notifier=notifier)
        resume_cache = orchestrator.resume_cache

        edd = EddSubReview(store, notifier=notifier, base_url=settings.approval_base_url)
        finalizer = DecisionFinalizer(store, edd=edd, trigger_policy=EddTriggerPolicy.from_settings(settings))
        reminders = ApprovalReminders(
            store,
            notifier=notifier,
            base_url=settings.approval_base_url,
            cooldown_seconds=settings.reminder_cooldown_seconds,
            delay_seconds=settings.reminder_delay_seconds,
        )

        set_review_deps(orchestrator, store, max_age_hours=settings.checkpoint_max_age_hours)
        set_approval_deps(finalizer, edd, reminders)

        resume_cache.start_sweeper(settings.resume_cache_sweep_seconds)
        logger.info(
            "Review engine ready (graph=%s@%s, reflection=%s, risk=%s)",
            orchestrator.graph.graph_id, orchestrator.graph.version,
            settings.reflection_provider, settings.risk_analyzer,
        )
    except Exception as e:
        logger.warning("Review engine init failed: %s", e)

    yield

    if resume_cache is not None:
        resume_cache.stop_sweeper()


app = FastAPI(
    title="kycflow",
    description="KYC document review graph with durable human approval",
    version="0.3.0",
    lifespan=lifespan,
)

# Middleware (order matters: first added = outermost)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(APIKeyAuthMiddleware)
app.add_middleware(RateLimitMiddleware, global_rpm=120, sensitive_rpm=20)


# Global exception handler: keep internal details out of responses
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        raise exc
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error."},
    )


# Routes
app.include_router(health_router)
app.include_router(reviews_router)
app.include_router(approvals_router)


@app.get("/")
async def root():
    return {"name": "kycflow", "version": "0.3.0", "status": "running"}
