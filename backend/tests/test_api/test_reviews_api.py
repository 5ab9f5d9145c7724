"""Tests for the review run API: start, list, get, resume, scope gate resume."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from kycflow.api.v1 import reviews
from kycflow.llm.reflection_provider import MockReflectionProvider


def _payload(documents, **extra) -> dict:
    body = {"documents": [d.model_dump(include={"filename", "text"}) for d in documents]}
    body.update(extra)
    return body


@pytest.fixture
def client_for(store):
    """Factory: TestClient over the reviews router, wired to the given orchestrator."""

    def _make(orchestrator) -> TestClient:
        app = FastAPI()
        app.include_router(reviews.router)
        reviews.set_dependencies(orchestrator, store, max_age_hours=24.0)
        return TestClient(app)

    return _make


class TestStartReview:
    def test_low_risk_completes(self, client_for, make_orchestrator, low_risk_documents):
        client = client_for(make_orchestrator())
        resp = client.post("/api/v1/reviews", json=_payload(low_risk_documents))
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "completed"
        assert data["trace"]["summary"]["path"] == "fast"
        print("  PASS: low_risk_completes")

    def test_high_risk_pauses(self, client_for, make_orchestrator, high_risk_documents):
        client = client_for(make_orchestrator())
        resp = client.post("/api/v1/reviews", json=_payload(high_risk_documents))
        data = resp.json()
        assert data["status"] == "waiting_human"
        assert data["paused_at_node"] == "human_review"

        detail = client.get(f"/api/v1/reviews/{data['run_id']}").json()
        assert detail["status"] == "paused"
        assert detail["review_process_status"] == "RUNNING"
        assert detail["expired"] is False
        assert detail["event_log"][0]["event"] == "paused"

    def test_empty_documents_rejected(self, client_for, make_orchestrator):
        client = client_for(make_orchestrator())
        assert client.post("/api/v1/reviews", json={"documents": []}).status_code == 422

    def test_not_initialized(self, monkeypatch):
        monkeypatch.setattr(reviews, "_orchestrator", None)
        app = FastAPI()
        app.include_router(reviews.router)
        resp = TestClient(app).post("/api/v1/reviews", json={"documents": [{"filename": "a.txt", "text": "x"}]})
        assert resp.status_code == 503


class TestListAndGet:
    def test_list_by_status(self, client_for, make_orchestrator, make_checkpoint):
        client = client_for(make_orchestrator())
        paused = make_checkpoint()
        make_checkpoint(status="completed")

        all_runs = client.get("/api/v1/reviews").json()
        assert len(all_runs) == 2
        only_paused = client.get("/api/v1/reviews", params={"status": "paused"}).json()
        assert [r["run_id"] for r in only_paused] == [paused.run_id]

    def test_get_unknown(self, client_for, make_orchestrator):
        client = client_for(make_orchestrator())
        assert client.get(f"/api/v1/reviews/{uuid4()}").status_code == 404

    def test_expired_flag(self, client_for, make_orchestrator, make_checkpoint):
        client = client_for(make_orchestrator())
        cp = make_checkpoint(paused_ago_seconds=25 * 3600)
        assert client.get(f"/api/v1/reviews/{cp.run_id}").json()["expired"] is True


class TestResume:
    def test_resume_with_decision(self, client_for, make_orchestrator, store, high_risk_documents):
        client = client_for(make_orchestrator())
        run_id = client.post("/api/v1/reviews", json=_payload(high_risk_documents)).json()["run_id"]

        resp = client.post(
            f"/api/v1/reviews/{run_id}/resume",
            json={"decision": "approve", "comment": "ok", "signer": "alice"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert store.load(run_id).status == "completed"

    def test_resume_twice_conflicts(self, client_for, make_orchestrator, high_risk_documents):
        client = client_for(make_orchestrator())
        run_id = client.post("/api/v1/reviews", json=_payload(high_risk_documents)).json()["run_id"]
        client.post(f"/api/v1/reviews/{run_id}/resume", json={"decision": "approve"})
        assert client.post(f"/api/v1/reviews/{run_id}/resume", json={"decision": "approve"}).status_code == 409

    def test_resume_without_recorded_decision(self, client_for, make_orchestrator, high_risk_documents):
        client = client_for(make_orchestrator())
        run_id = client.post("/api/v1/reviews", json=_payload(high_risk_documents)).json()["run_id"]
        assert client.post(f"/api/v1/reviews/{run_id}/resume", json={}).status_code == 409

    def test_resume_unknown(self, client_for, make_orchestrator):
        client = client_for(make_orchestrator())
        resp = client.post(f"/api/v1/reviews/{uuid4()}/resume", json={"decision": "approve"})
        assert resp.status_code == 404


class TestGateResume:
    def test_gate_round_trip(self, client_for, make_orchestrator, low_risk_documents):
        orch = make_orchestrator(provider=MockReflectionProvider(test_mode="human"))
        client = client_for(orch)
        gate = client.post(
            "/api/v1/reviews", json=_payload(low_risk_documents, features={"reflection": True}),
        ).json()
        assert gate["status"] == "waiting_human"
        assert gate["paused_at_node"] == "human_gate"

        resp = client.post(
            "/api/v1/reviews/gate/resume",
            json={"resume_token": gate["resume_token"], "decision": "request_docs", "signer": "carol"},
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        again = client.post(
            "/api/v1/reviews/gate/resume",
            json={"resume_token": gate["resume_token"], "decision": "approve_edd"},
        )
        assert again.status_code == 404
        print("  PASS: gate_round_trip")

    def test_gate_bad_decision_value(self, client_for, make_orchestrator):
        client = client_for(make_orchestrator())
        resp = client.post("/api/v1/reviews/gate/resume", json={"resume_token": "x", "decision": "approve"})
        assert resp.status_code == 422
