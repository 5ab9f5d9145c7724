"""Approval API — stage-1 decisions, EDD decisions, reminders and polling.

Endpoints:
  GET  /api/v1/approvals/submit?token=&action=approve   Email-link approve (HTML page).
  POST /api/v1/approvals/submit                         Web-form approve / reject.
  POST /api/v1/approvals/remind                         Manual reminder (cooldown applies).
  GET  /api/v1/approvals/poll?run_id=                   Decision status; sends the due reminder.
  GET  /api/v1/edd/submit?token=&action=approve         Email-link EDD approve (HTML page).
  POST /api/v1/edd/submit                               Web-form EDD approve / reject.

Status mapping: not_found 404, conflict / concurrent_modification 409,
validation_failed 400, write_failed 500, wrong_endpoint 400 (WRONG_ENDPOINT).
"""

from __future__ import annotations

import logging
import re
from typing import Literal

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, Field

from kycflow.email.templates.approval import render_decision_page
from kycflow.models.decision import DecisionMetadata, FinalizeResult, validate_token_format
from kycflow.workflows.decision import DecisionFinalizer
from kycflow.workflows.edd import EddSubReview
from kycflow.workflows.reminders import ApprovalReminders, PollResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["approvals"])

# Module-level refs set by main.py
_finalizer: DecisionFinalizer | None = None
_edd: EddSubReview | None = None
_reminders: ApprovalReminders | None = None

EMAIL_LINK_SIGNER = "email_link_approver"
WEB_FORM_SIGNER = "web_form_reviewer"

_UUID_V4 = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE)


def set_dependencies(
    finalizer: DecisionFinalizer,
    edd: EddSubReview,
    reminders: ApprovalReminders,
) -> None:
    global _finalizer, _edd, _reminders
    _finalizer = finalizer
    _edd = edd
    _reminders = reminders


# === Request Models ===


class SubmitDecisionRequest(BaseModel):
    token: str = Field(min_length=1, max_length=512)
    action: Literal["approve", "reject"]
    reason: str | None = Field(default=None, max_length=2000)
    signer: str | None = Field(default=None, max_length=200)


class RemindRequest(BaseModel):
    run_id: str = Field(min_length=1, max_length=64)


# === Helpers ===

_FINALIZE_STATUS_CODES = {
    "finalized": 200,
    "already_finalized": 200,
    "not_found": 404,
    "conflict": 409,
    "concurrent_modification": 409,
    "validation_failed": 400,
    "write_failed": 500,
    "wrong_endpoint": 400,
}

_REMIND_STATUS_CODES = {
    "sent": 200,
    "not_found": 404,
    "not_pending": 409,
    "cooldown": 429,
    "no_recipient": 400,
    "failed": 502,
}


def _require(dep, name: str):
    if dep is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized.")
    return dep


def _json_result(result: FinalizeResult) -> JSONResponse:
    body = result.model_dump(mode="json")
    if result.status == "wrong_endpoint":
        body["error_code"] = "WRONG_ENDPOINT"
    return JSONResponse(status_code=_FINALIZE_STATUS_CODES[result.status], content=body)


def _html_result(result: FinalizeResult, title: str) -> HTMLResponse:
    return HTMLResponse(
        content=render_decision_page(title, result.message, ok=result.ok),
        status_code=_FINALIZE_STATUS_CODES[result.status],
    )


def _metadata(token: str, signer: str | None, via: Literal["email_link", "web_form"]) -> DecisionMetadata:
    default = EMAIL_LINK_SIGNER if via == "email_link" else WEB_FORM_SIGNER
    return DecisionMetadata.for_token(token, decided_by=signer or default, finalized_via=via)


def _token_error(token: str) -> FinalizeResult | None:
    error = validate_token_format(token)
    if error is None:
        return None
    return FinalizeResult(ok=False, status="validation_failed", message=error, errors=[error])


def _email_link_reject() -> FinalizeResult:
    msg = "Rejecting requires a reason; use the review form"
    return FinalizeResult(ok=False, status="validation_failed", message=msg, errors=[msg])


# === Stage-1 decisions ===


@router.get("/approvals/submit", response_class=HTMLResponse)
async def approve_via_email_link(
    token: str = Query(..., max_length=512),
    action: Literal["approve", "reject"] = "approve",
) -> HTMLResponse:
    finalizer = _require(_finalizer, "Decision finalizer")
    result = _token_error(token) or (_email_link_reject() if action == "reject" else None)
    if result is None:
        result = await finalizer.finalize(token, "approve", None, _metadata(token, None, "email_link"))
    logger.info("Email-link approval -> %s (run %s)", result.status, result.run_id)
    return _html_result(result, "KYC review decision")


@router.post("/approvals/submit")
async def submit_decision(request: SubmitDecisionRequest) -> JSONResponse:
    finalizer = _require(_finalizer, "Decision finalizer")
    result = _token_error(request.token)
    if result is None:
        result = await finalizer.finalize(
            request.token, request.action, request.reason,
            _metadata(request.token, request.signer, "web_form"),
        )
    logger.info("Web-form %s -> %s (run %s)", request.action, result.status, result.run_id)
    return _json_result(result)


# === Reminders / polling ===


@router.post("/approvals/remind")
async def remind(request: RemindRequest) -> JSONResponse:
    reminders = _require(_reminders, "Reminder service")
    result = await reminders.remind(request.run_id)
    headers = {"Retry-After": str(result.retry_after_seconds)} if result.retry_after_seconds else None
    return JSONResponse(
        status_code=_REMIND_STATUS_CODES[result.status],
        content=result.model_dump(mode="json"),
        headers=headers,
    )


@router.get("/approvals/poll", response_model=PollResult)
async def poll(run_id: str = Query(..., max_length=64)) -> PollResult:
    reminders = _require(_reminders, "Reminder service")
    if not _UUID_V4.match(run_id):
        raise HTTPException(status_code=400, detail="Invalid run_id format")
    result = await reminders.poll(run_id)
    if result.status == "not_found":
        raise HTTPException(status_code=404, detail=result.message)
    return result


# === EDD decisions ===


@router.get("/edd/submit", response_class=HTMLResponse)
async def approve_edd_via_email_link(
    token: str = Query(..., max_length=512),
    action: Literal["approve", "reject"] = "approve",
) -> HTMLResponse:
    edd = _require(_edd, "EDD sub-review")
    result = _token_error(token) or (_email_link_reject() if action == "reject" else None)
    if result is None:
        result = await edd.submit_decision(token, "approve", None, _metadata(token, None, "email_link"))
    logger.info("Email-link EDD approval -> %s (run %s)", result.status, result.run_id)
    return _html_result(result, "EDD review decision")


@router.post("/edd/submit")
async def submit_edd_decision(request: SubmitDecisionRequest) -> JSONResponse:
    edd = _require(_edd, "EDD sub-review")
    result = _token_error(request.token)
    if result is None:
        result = await edd.submit_decision(
            request.token, request.action, request.reason,
            _metadata(request.token, request.signer, "web_form"),
        )
    logger.info("Web-form EDD %s -> %s (run %s)", request.action, result.status, result.run_id)
    return _json_result(result)
