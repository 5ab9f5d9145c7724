"""Shared test fixtures for kycflow backend tests."""

import os
import secrets
import sys
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

# Ensure backend is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from kycflow.db.database import create_db_and_tables, make_engine
from kycflow.email.notifier import ApprovalContext, NotificationError
from kycflow.engines.risk_signals import PatternRiskAnalyzer, RiskAssessor
from kycflow.llm.reflection_provider import MockReflectionProvider
from kycflow.models.checkpoint import RunCheckpoint
from kycflow.models.review import GraphState, ReviewDocument, to_iso
from kycflow.workflows.checkpoint_store import CheckpointStore
from kycflow.workflows.orchestrator import GraphOrchestrator
from kycflow.workflows.reflection import ReflectionEngine
from kycflow.workflows.resume_cache import ResumeCache

REVIEWER_EMAIL = "reviewer@example.com"

# Four critical topics at complete coverage, no high-risk keywords -> score 0, fast path.
CLIENT_IDENTITY = (
    "Client identity: the client's full name is Jane Example, date of birth 12 May 1980, "
    "nationality Canadian. Identity was verified against a valid passport, and the passport "
    "id number was recorded by the onboarding officer together with a copy of a utility bill."
)
SOURCE_OF_WEALTH = (
    "Source of wealth: the client's wealth derives from salary and employment income as a "
    "senior engineer over fifteen years, plus a modest inheritance received in 2019. "
    "Employment income is confirmed by payslips and tax returns covering the last three years."
)
BENEFICIAL_OWNERSHIP = (
    "Beneficial ownership: the client is the sole beneficial owner of the holding entity and "
    "its only director and shareholder. Ownership was confirmed from the company register "
    "extract, and no other shareholder or director holds any interest in the entity."
)
SCREENING = (
    "Screening: the client was screened against the consolidated watchlist on 3 March 2025 "
    "and no matches were returned. Screening is repeated quarterly by the onboarding team "
    "and the screening results are stored with the onboarding file for later audit."
)
PEP_DISCLOSURE = (
    "Screening note: the client holds current politically exposed person status as a "
    "former deputy minister of finance."
)


class RecordingNotifier:
    """In-memory notifier. Set fail=True to make every send raise.

    during_send, when set, is awaited with the context while the send is in
    flight, to act on the run before the sender resumes.
    """

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[ApprovalContext] = []
        self.during_send = None

    async def send(self, context: ApprovalContext) -> str:
        if self.during_send is not None:
            await self.during_send(context)
        if self.fail:
            raise NotificationError("SMTP delivery failed: connection refused")
        self.sent.append(context)
        return f"<msg-{len(self.sent)}@kycflow>"

    def kinds(self) -> list[str]:
        return [c.kind for c in self.sent]


def _document(*paragraphs: str, filename: str = "kyc_profile.txt") -> ReviewDocument:
    return ReviewDocument(filename=filename, text="\n\n".join(paragraphs))


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'kycflow_test.db'}")
    create_db_and_tables(bind=engine)
    return engine


@pytest.fixture
def store(engine):
    return CheckpointStore(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


@pytest.fixture
def low_risk_documents():
    return [_document(CLIENT_IDENTITY, SOURCE_OF_WEALTH, BENEFICIAL_OWNERSHIP, SCREENING)]


@pytest.fixture
def high_risk_documents():
    return [_document(CLIENT_IDENTITY, SOURCE_OF_WEALTH, BENEFICIAL_OWNERSHIP, SCREENING, PEP_DISCLOSURE)]


@pytest.fixture
def make_orchestrator(store):
    """Factory: orchestrator over the tmp store with the pattern analyzer and mock reflection."""

    def _make(notifier=None, provider=None, **kwargs) -> GraphOrchestrator:
        kwargs.setdefault("approval_email_to", REVIEWER_EMAIL)
        kwargs.setdefault("resume_cache", ResumeCache(ttl_seconds=60))
        return GraphOrchestrator(
            store=store,
            risk_assessor=RiskAssessor(fallback=PatternRiskAnalyzer()),
            reflection_engine=ReflectionEngine(provider or MockReflectionProvider(), timeout_seconds=1.0),
            notifier=notifier,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_checkpoint(store):
    """Factory: persist a paused checkpoint with a stage-1 token. Overrides are field values."""

    def _make(paused_ago_seconds: int = 0, **overrides) -> RunCheckpoint:
        paused = to_iso(datetime.now(timezone.utc) - timedelta(seconds=paused_ago_seconds))
        run_id = overrides.pop("run_id", str(uuid4()))
        fields = dict(
            run_id=run_id,
            graph_id="kyc_review_v1",
            graph_version="1.0.0",
            current_node_id="risk_assessment",
            paused_at_node_id="human_review",
            graph_state=GraphState(run_id=run_id).model_dump(mode="json"),
            status="paused",
            created_at=paused,
            paused_at=paused,
            approval_token=secrets.token_hex(16),
            approval_email_to=REVIEWER_EMAIL,
        )
        fields.update(overrides)
        checkpoint = RunCheckpoint(**fields)
        store.save(checkpoint)
        return checkpoint

    return _make
