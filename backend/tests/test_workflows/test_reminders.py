"""Tests for approval polling and reminders."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from kycflow.models.decision import DecisionMetadata
from kycflow.models.review import to_iso
from kycflow.workflows.decision import DecisionFinalizer
from kycflow.workflows.reminders import ApprovalReminders


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _approve_while_sending(store, decided_by: str = "alice"):
    """A during_send hook: the approver clicks the link while the email is in flight."""
    finalizer = DecisionFinalizer(store)

    async def _approve(context):
        meta = DecisionMetadata.for_token(context.approval_token, decided_by=decided_by, finalized_via="email_link")
        result = await finalizer.finalize(context.approval_token, "approve", None, meta)
        assert result.status == "finalized"

    return _approve


@pytest.fixture
def reminders(store, notifier):
    return ApprovalReminders(store, notifier=notifier, cooldown_seconds=300, delay_seconds=180)


@pytest.fixture
def emailed_checkpoint(make_checkpoint):
    """Paused checkpoint whose approval email went out `sent_ago` seconds ago."""

    def _make(sent_ago: int = 200, **overrides):
        sent = _now() - timedelta(seconds=sent_ago)
        overrides.setdefault("approval_email_sent", True)
        overrides.setdefault("approval_sent_at", to_iso(sent))
        overrides.setdefault("reminder_due_at", to_iso(sent + timedelta(seconds=180)))
        return make_checkpoint(paused_ago_seconds=sent_ago, **overrides)

    return _make


class TestPoll:
    @pytest.mark.asyncio
    async def test_unknown_run(self, reminders):
        result = await reminders.poll(str(uuid4()))
        assert result.status == "not_found"
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_due_reminder_sent_exactly_once(self, reminders, store, notifier, emailed_checkpoint):
        cp = emailed_checkpoint(sent_ago=200)

        first = await reminders.poll(cp.run_id)
        assert first.status == "waiting_human"
        assert first.reminder_sent is True
        assert notifier.kinds() == ["reminder"]
        assert notifier.sent[0].approval_token == cp.approval_token

        second = await reminders.poll(cp.run_id)
        assert second.reminder_sent is False
        assert second.reminder_due_in_seconds is None
        assert len(notifier.sent) == 1

        stored = store.load(cp.run_id)
        assert stored.reminder_email_sent is True
        assert stored.event_log[-1].event == "reminder_marked"
        print("  PASS: due_reminder_sent_exactly_once")

    @pytest.mark.asyncio
    async def test_decision_during_due_reminder(self, reminders, store, notifier, emailed_checkpoint):
        cp = emailed_checkpoint(sent_ago=200)
        notifier.during_send = _approve_while_sending(store)

        result = await reminders.poll(cp.run_id)

        assert result.status == "approved"
        assert result.reminder_sent is True
        assert result.decision["approver"] == "alice"
        stored = store.load(cp.run_id)
        assert stored.decision == "approve"
        assert stored.reminder_email_sent is True

    @pytest.mark.asyncio
    async def test_not_yet_due(self, reminders, notifier, emailed_checkpoint):
        cp = emailed_checkpoint(sent_ago=60)
        result = await reminders.poll(cp.run_id)
        assert result.reminder_sent is False
        assert 100 <= result.reminder_due_in_seconds <= 120
        assert 59 <= result.elapsed_seconds <= 61
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_still_counts(self, store, failing_notifier, emailed_checkpoint):
        reminders = ApprovalReminders(store, notifier=failing_notifier)
        cp = emailed_checkpoint(sent_ago=200)

        first = await reminders.poll(cp.run_id)
        assert first.reminder_sent is False
        assert store.load(cp.run_id).reminder_email_sent is True

        failing_notifier.fail = False
        await reminders.poll(cp.run_id)
        assert failing_notifier.sent == []

    @pytest.mark.asyncio
    async def test_no_reminder_without_first_email(self, reminders, notifier, make_checkpoint):
        cp = make_checkpoint(paused_ago_seconds=3600)
        result = await reminders.poll(cp.run_id)
        assert result.reminder_sent is False
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_decided_run(self, reminders, make_checkpoint):
        cp = make_checkpoint(
            decision="reject",
            decision_comment="Documents are out of date",
            decided_by="alice",
            decided_at=to_iso(_now()),
        )
        result = await reminders.poll(cp.run_id)
        assert result.status == "rejected"
        assert result.decision["action"] == "reject"
        assert result.decision["approver"] == "alice"
        assert result.decision["reason"] == "Documents are out of date"

    @pytest.mark.asyncio
    async def test_projection_hides_edd_token(self, reminders, store, emailed_checkpoint):
        from kycflow.models.checkpoint import EddStage

        cp = emailed_checkpoint(sent_ago=10)
        cp.edd_stage = EddStage(status="waiting_edd_approval", approval_token="ab" * 16)
        store.save(cp)
        result = await reminders.poll(cp.run_id)
        assert "approval_token" not in result.checkpoint_metadata["edd_stage"]
        assert result.checkpoint_metadata["review_process_status"] == "RUNNING"


class TestRemind:
    @pytest.mark.asyncio
    async def test_sent_then_cooldown(self, reminders, store, notifier, emailed_checkpoint):
        cp = emailed_checkpoint(sent_ago=30)
        now = _now().replace(microsecond=0)

        sent = await reminders.remind(cp.run_id, now=now)
        assert sent.status == "sent"
        assert store.load(cp.run_id).event_log[-1].event == "reminder_sent"

        blocked = await reminders.remind(cp.run_id, now=now + timedelta(seconds=10))
        assert blocked.status == "cooldown"
        assert blocked.retry_after_seconds == 291

        later = await reminders.remind(cp.run_id, now=now + timedelta(seconds=301))
        assert later.status == "sent"
        assert notifier.kinds() == ["reminder", "reminder"]
        print("  PASS: sent_then_cooldown")

    @pytest.mark.asyncio
    async def test_not_pending_when_decided(self, reminders, make_checkpoint):
        cp = make_checkpoint(decision="approve", decided_by="alice", decided_at=to_iso(_now()))
        result = await reminders.remind(cp.run_id)
        assert result.status == "not_pending"

    @pytest.mark.asyncio
    async def test_not_pending_when_closed(self, reminders, make_checkpoint):
        cp = make_checkpoint(status="completed")
        assert (await reminders.remind(cp.run_id)).status == "not_pending"

    @pytest.mark.asyncio
    async def test_no_recipient(self, reminders, make_checkpoint):
        cp = make_checkpoint(approval_email_to=None)
        assert (await reminders.remind(cp.run_id)).status == "no_recipient"

    @pytest.mark.asyncio
    async def test_unknown_run(self, reminders):
        assert (await reminders.remind(str(uuid4()))).status == "not_found"

    @pytest.mark.asyncio
    async def test_delivery_failure(self, store, failing_notifier, make_checkpoint):
        cp = make_checkpoint()
        result = await ApprovalReminders(store, notifier=failing_notifier).remind(cp.run_id)
        assert result.status == "failed"
        assert store.load(cp.run_id).reminder_email_sent is False

    @pytest.mark.asyncio
    async def test_decision_during_manual_reminder_is_kept(self, reminders, store, notifier, emailed_checkpoint):
        cp = emailed_checkpoint(sent_ago=30)
        notifier.during_send = _approve_while_sending(store)

        result = await reminders.remind(cp.run_id)

        assert result.status == "sent"
        stored = store.load(cp.run_id)
        assert stored.decision == "approve"
        assert stored.decided_by == "alice"
        assert stored.final_decision == "approved"
        assert stored.reminder_email_sent is True
        assert [e.event for e in stored.event_log][-2:] == ["decision_recorded", "reminder_sent"]
