"""Approval notifier — async SMTP delivery of approval links.

Uses aiosmtplib for non-blocking SMTP (STARTTLS). send() returns the
Message-ID on success and raises NotificationError on any failure; callers
treat notification as best-effort and never fail a run because of it.
"""

from __future__ import annotations

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Literal, Protocol

import aiosmtplib
from pydantic import BaseModel, Field

from kycflow.config import Settings
from kycflow.email.templates.approval import render_approval_email, render_edd_email
from kycflow.models.checkpoint import EddFindingsBundle
from kycflow.models.review import Issue

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Raised when an approval notification could not be delivered."""


class ApprovalContext(BaseModel):
    """Everything a notifier needs to render one approval message."""

    kind: Literal["approval", "edd_approval", "reminder"] = "approval"
    run_id: str
    approval_token: str
    recipient: str
    base_url: str = "http://localhost:8000"
    risk_score: int = 0
    route_path: str | None = None
    issues: list[Issue] = Field(default_factory=list)
    edd_bundle: EddFindingsBundle | None = None

    @property
    def subject(self) -> str:
        short = self.run_id[:8]
        if self.kind == "edd_approval":
            return f"[KYC] EDD approval required ({short})"
        if self.kind == "reminder":
            return f"[KYC] Reminder: approval pending ({short})"
        return f"[KYC] Review approval required ({short})"


class Notifier(Protocol):
    async def send(self, context: ApprovalContext) -> str:
        """Deliver the notification and return its message id."""
        ...


def render_body(context: ApprovalContext) -> str:
    if context.kind == "edd_approval":
        bundle = context.edd_bundle or EddFindingsBundle()
        return render_edd_email(
            run_id=context.run_id,
            token=context.approval_token,
            base_url=context.base_url,
            findings=[(f.severity, f.title, f.detail) for f in bundle.findings],
            evidence_summary=bundle.evidence_summary,
        )
    return render_approval_email(
        run_id=context.run_id,
        token=context.approval_token,
        base_url=context.base_url,
        risk_score=context.risk_score,
        route_path=context.route_path,
        issues=[(i.severity, i.title, i.detail) for i in context.issues],
        reminder=context.kind == "reminder",
    )


class SmtpNotifier:
    """Notifier backed by an SMTP relay."""

    def __init__(self, config: Settings) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.smtp_user and self.config.smtp_password)

    async def send(self, context: ApprovalContext) -> str:
        if not self.is_configured():
            raise NotificationError("SMTP credentials not configured")

        msg = MIMEMultipart("alternative")
        msg["Subject"] = context.subject
        msg["From"] = self.config.smtp_user
        msg["To"] = context.recipient
        msg["Message-ID"] = make_msgid(domain="kycflow")
        msg.attach(MIMEText(render_body(context), "html", "utf-8"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.config.smtp_host,
                port=self.config.smtp_port,
                start_tls=True,
                username=self.config.smtp_user,
                password=self.config.smtp_password,
            )
        except Exception as e:
            raise NotificationError(f"SMTP delivery failed: {e}") from e

        logger.info("%s email for run %s sent to %s", context.kind, context.run_id, context.recipient)
        return msg["Message-ID"]


def create_notifier(config: Settings) -> Notifier:
    return SmtpNotifier(config)
