"""HTML email templates for approval, EDD approval and reminder messages."""

from __future__ import annotations

import html
from urllib.parse import urlencode

SEVERITY_COLORS = {
    "FAIL": "#dc2626",
    "WARNING": "#d97706",
    "INFO": "#2563eb",
    "high": "#dc2626",
    "medium": "#d97706",
    "low": "#2563eb",
}

_WRAPPER = """\
<div style="font-family:Arial,Helvetica,sans-serif;max-width:640px;margin:0 auto;color:#111827">
  <h2 style="margin-bottom:4px">{title}</h2>
  <p style="color:#6b7280;margin-top:0">Run <code>{run_id}</code></p>
  {body}
  <p style="margin-top:24px">{actions}</p>
  <p style="color:#9ca3af;font-size:12px">This link is single-use per decision. Do not forward this email.</p>
</div>
"""


def _button(href: str, label: str, color: str) -> str:
    return (
        f'<a href="{html.escape(href)}" style="display:inline-block;padding:10px 18px;'
        f'background:{color};color:#ffffff;text-decoration:none;border-radius:6px;'
        f'margin-right:8px">{html.escape(label)}</a>'
    )


def _link(base_url: str, path: str, **params: str) -> str:
    return f"{base_url.rstrip('/')}{path}?{urlencode(params)}"


def _items(rows: list[tuple[str, str, str]]) -> str:
    """(severity, title, detail) rows as a styled list."""
    if not rows:
        return "<p>No findings.</p>"
    items = []
    for severity, title, detail in rows:
        color = SEVERITY_COLORS.get(severity, "#6b7280")
        items.append(
            f'<li style="margin-bottom:8px"><span style="color:{color};font-weight:bold">'
            f'{html.escape(severity)}</span> {html.escape(title)}'
            f'<br><span style="color:#4b5563">{html.escape(detail)}</span></li>'
        )
    return f'<ul style="padding-left:18px">{"".join(items)}</ul>'


def render_approval_email(
    run_id: str,
    token: str,
    base_url: str,
    risk_score: int,
    route_path: str | None,
    issues: list[tuple[str, str, str]],
    reminder: bool = False,
) -> str:
    """Stage-1 approval request (or its reminder).

    All user-supplied text is HTML-escaped.
    """
    title = "Reminder: KYC review awaiting your decision" if reminder else "KYC review requires approval"
    body = (
        f"<p>Risk score <b>{risk_score}</b>, route <b>{html.escape(route_path or 'n/a')}</b>.</p>"
        + _items(issues[:10])
    )
    actions = (
        _button(_link(base_url, "/api/v1/approvals/submit", token=token, action="approve"), "Approve", "#16a34a")
        + _button(_link(base_url, "/reviews/reject", token=token), "Reject with reason", "#dc2626")
    )
    return _WRAPPER.format(title=title, run_id=html.escape(run_id), body=body, actions=actions)


def render_edd_email(
    run_id: str,
    token: str,
    base_url: str,
    findings: list[tuple[str, str, str]],
    evidence_summary: str,
) -> str:
    """Enhanced Due Diligence approval request."""
    body = (
        "<p>Stage-1 review was rejected and Enhanced Due Diligence has started.</p>"
        + _items(findings)
        + f'<p style="color:#4b5563">{html.escape(evidence_summary)}</p>'
    )
    actions = (
        _button(_link(base_url, "/api/v1/edd/submit", token=token, action="approve"), "Approve EDD", "#16a34a")
        + _button(_link(base_url, "/reviews/edd/reject", token=token), "Reject EDD", "#dc2626")
    )
    return _WRAPPER.format(
        title="EDD review requires approval", run_id=html.escape(run_id), body=body, actions=actions,
    )


def render_decision_page(title: str, message: str, ok: bool = True) -> str:
    """Landing page shown after an email-link decision."""
    color = "#16a34a" if ok else "#dc2626"
    body = f'<p style="color:{color};font-weight:bold">{html.escape(message)}</p>'
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\"><title>"
        f"{html.escape(title)}</title></head><body>"
        f'<div style="font-family:Arial,Helvetica,sans-serif;max-width:640px;margin:40px auto">'
        f"<h2>{html.escape(title)}</h2>{body}</div></body></html>"
    )
