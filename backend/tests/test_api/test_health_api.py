"""Tests for GET /health."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from unittest.mock import MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
from kycflow.api.health import router
from kycflow.config import Settings


def _client() -> TestClient:
    app = FastAPI()
    app.include_router(router)
    return TestClient(app)


def _settings(**overrides) -> Settings:
    fields = dict(
        smtp_user="kyc@example.com",
        smtp_password="app-password",
        approval_email_to="reviewer@example.com",
        risk_analyzer="pattern",
        anthropic_api_key="",
    )
    fields.update(overrides)
    return Settings(**fields)


class TestHealth:
    def test_healthy(self, engine):
        with patch("kycflow.api.health.settings", _settings()), patch("kycflow.db.database.engine", engine):
            data = _client().get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.3.0"
        assert data["checks"]["database"]["detail"] == "journal_mode=wal"
        assert data["checks"]["risk_analyzer"]["detail"] == "pattern"
        print("  PASS: healthy")

    def test_degraded_without_smtp(self, engine):
        with patch("kycflow.api.health.settings", _settings(smtp_user="", smtp_password="")), \
                patch("kycflow.db.database.engine", engine):
            data = _client().get("/health").json()
        assert data["status"] == "degraded"
        assert data["checks"]["smtp"]["status"] == "warning"

    def test_degraded_llm_analyzer_without_key(self, engine):
        with patch("kycflow.api.health.settings", _settings(risk_analyzer="llm")), \
                patch("kycflow.db.database.engine", engine):
            data = _client().get("/health").json()
        assert data["checks"]["risk_analyzer"]["status"] == "warning"
        assert data["status"] == "degraded"

    def test_unhealthy_when_database_down(self):
        broken = MagicMock()
        broken.connect.side_effect = RuntimeError("unable to open database file")
        with patch("kycflow.api.health.settings", _settings()), patch("kycflow.db.database.engine", broken):
            data = _client().get("/health").json()
        assert data["status"] == "unhealthy"
        assert data["checks"]["database"]["status"] == "error"
