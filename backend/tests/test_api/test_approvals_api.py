"""Tests for the approval API: email-link and web-form decisions, EDD, polling, reminders."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

import secrets
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from kycflow.api.v1 import approvals, reviews
from kycflow.workflows.decision import DecisionFinalizer
from kycflow.workflows.edd import EddSubReview
from kycflow.workflows.reminders import ApprovalReminders

EDD_REASON = "Reject: UBO unclear behind the offshore holding structure"


@pytest.fixture
def client(store, notifier, make_orchestrator):
    app = FastAPI()
    app.include_router(reviews.router)
    app.include_router(approvals.router)

    edd = EddSubReview(store, notifier=notifier)
    reviews.set_dependencies(make_orchestrator(notifier=notifier), store)
    approvals.set_dependencies(
        DecisionFinalizer(store, edd=edd),
        edd,
        ApprovalReminders(store, notifier=notifier),
    )
    return TestClient(app)


def _start_paused(client, documents) -> str:
    body = {"documents": [d.model_dump(include={"filename", "text"}) for d in documents]}
    data = client.post("/api/v1/reviews", json=body).json()
    assert data["status"] == "waiting_human"
    return data["run_id"]


class TestFullApprovalFlow:
    def test_email_link_approve_then_resume(self, client, store, notifier, high_risk_documents):
        run_id = _start_paused(client, high_risk_documents)
        token = store.load(run_id).approval_token
        assert notifier.sent[0].approval_token == token

        resp = client.get("/api/v1/approvals/submit", params={"token": token, "action": "approve"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/html")
        assert store.load(run_id).finalized_via == "email_link"
        assert store.load(run_id).decided_by == "email_link_approver"

        poll = client.get("/api/v1/approvals/poll", params={"run_id": run_id}).json()
        assert poll["status"] == "approved"

        resumed = client.post(f"/api/v1/reviews/{run_id}/resume", json={})
        assert resumed.status_code == 200
        assert resumed.json()["status"] == "completed"

        detail = client.get(f"/api/v1/reviews/{run_id}").json()
        assert detail["status"] == "completed"
        assert detail["final_decision"] == "approved"
        assert detail["review_process_status"] == "COMPLETE"
        print("  PASS: email_link_approve_then_resume")

    def test_web_form_reject_then_edd(self, client, store, notifier, high_risk_documents):
        run_id = _start_paused(client, high_risk_documents)
        token = store.load(run_id).approval_token

        resp = client.post("/api/v1/approvals/submit", json={
            "token": token, "action": "reject", "reason": EDD_REASON, "signer": "alice",
        })
        assert resp.status_code == 200
        assert resp.json()["edd_triggered"] is True
        edd_token = store.load(run_id).edd_stage.approval_token
        assert notifier.kinds() == ["approval", "edd_approval"]

        wrong = client.post("/api/v1/approvals/submit", json={"token": edd_token, "action": "approve"})
        assert wrong.status_code == 400
        assert wrong.json()["error_code"] == "WRONG_ENDPOINT"

        edd = client.post("/api/v1/edd/submit", json={"token": edd_token, "action": "approve", "signer": "dana"})
        assert edd.status_code == 200
        assert edd.json()["status"] == "finalized"

        detail = client.get(f"/api/v1/reviews/{run_id}").json()
        assert detail["edd_status"] == "approved"
        assert detail["final_decision"] == "approved_with_edd"
        assert detail["status"] == "completed"


class TestSubmitDecision:
    def test_email_link_cannot_reject(self, client, make_checkpoint):
        cp = make_checkpoint()
        resp = client.get("/api/v1/approvals/submit", params={"token": cp.approval_token, "action": "reject"})
        assert resp.status_code == 400
        assert "reason" in resp.text

    def test_malformed_token(self, client):
        resp = client.post("/api/v1/approvals/submit", json={"token": "short", "action": "approve"})
        assert resp.status_code == 400
        assert resp.json()["status"] == "validation_failed"

    def test_unknown_token(self, client):
        resp = client.get("/api/v1/approvals/submit", params={"token": secrets.token_hex(16)})
        assert resp.status_code == 404

    def test_conflicting_decision(self, client, make_checkpoint):
        cp = make_checkpoint()
        client.post("/api/v1/approvals/submit", json={"token": cp.approval_token, "action": "approve"})
        resp = client.post("/api/v1/approvals/submit", json={
            "token": cp.approval_token, "action": "reject", "reason": "Changed my mind about the file",
        })
        assert resp.status_code == 409
        assert resp.json()["current_decision"] == "approve"

    def test_repeat_is_idempotent(self, client, make_checkpoint):
        cp = make_checkpoint()
        client.post("/api/v1/approvals/submit", json={"token": cp.approval_token, "action": "approve"})
        resp = client.post("/api/v1/approvals/submit", json={"token": cp.approval_token, "action": "approve"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "already_finalized"

    def test_short_reject_reason(self, client, make_checkpoint):
        cp = make_checkpoint()
        resp = client.post("/api/v1/approvals/submit", json={
            "token": cp.approval_token, "action": "reject", "reason": "bad",
        })
        assert resp.status_code == 400

    def test_not_initialized(self, monkeypatch):
        monkeypatch.setattr(approvals, "_finalizer", None)
        app = FastAPI()
        app.include_router(approvals.router)
        resp = TestClient(app).post("/api/v1/approvals/submit", json={"token": "x" * 32, "action": "approve"})
        assert resp.status_code == 503


class TestPollAndRemind:
    def test_poll_validates_run_id(self, client):
        assert client.get("/api/v1/approvals/poll", params={"run_id": "not-a-uuid"}).status_code == 400
        assert client.get("/api/v1/approvals/poll", params={"run_id": str(uuid4())}).status_code == 404

    def test_poll_waiting(self, client, make_checkpoint):
        cp = make_checkpoint()
        data = client.get("/api/v1/approvals/poll", params={"run_id": cp.run_id}).json()
        assert data["status"] == "waiting_human"
        assert data["checkpoint_metadata"]["status"] == "paused"

    def test_remind_then_cooldown(self, client, notifier, make_checkpoint):
        cp = make_checkpoint()
        first = client.post("/api/v1/approvals/remind", json={"run_id": cp.run_id})
        assert first.status_code == 200
        assert notifier.kinds() == ["reminder"]

        second = client.post("/api/v1/approvals/remind", json={"run_id": cp.run_id})
        assert second.status_code == 429
        assert int(second.headers["Retry-After"]) > 0

    def test_remind_status_codes(self, client, make_checkpoint):
        assert client.post("/api/v1/approvals/remind", json={"run_id": str(uuid4())}).status_code == 404
        closed = make_checkpoint(status="completed")
        assert client.post("/api/v1/approvals/remind", json={"run_id": closed.run_id}).status_code == 409
        no_one = make_checkpoint(approval_email_to=None)
        assert client.post("/api/v1/approvals/remind", json={"run_id": no_one.run_id}).status_code == 400


class TestEddSubmit:
    def test_edd_email_link_reject_refused(self, client):
        resp = client.get("/api/v1/edd/submit", params={"token": secrets.token_hex(16), "action": "reject"})
        assert resp.status_code == 400

    def test_stage1_token_on_edd_endpoint(self, client, make_checkpoint):
        cp = make_checkpoint()
        resp = client.post("/api/v1/edd/submit", json={"token": cp.approval_token, "action": "approve"})
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "WRONG_ENDPOINT"
