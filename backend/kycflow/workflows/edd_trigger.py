"""EDD trigger detector. Does a reject reason ask for Enhanced Due Diligence?

Two ways to trigger:
1. Legacy explicit markers: "Route: EDD" or "[DEMO_EDD]" (case-insensitive).
2. Natural language: the reason must contain a rejection indicator AND score
   at least `threshold` points across signal categories. Each category counts
   at most its cap no matter how many synonyms appear.

Default weights: ownership/UBO 3, offshore structure 3, identity
inconsistency 1, source of funds/wealth inconsistency 1, policy change 1.
Offshore structure language alone (3) does not reach the default threshold (4).
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from kycflow.config import Settings

logger = logging.getLogger(__name__)

LEGACY_MARKERS = ("route: edd", "[demo_edd]")

REJECTION_INDICATORS = (
    "reject",
    "decline",
    "unable to approve",
    "cannot approve",
    "cannot proceed",
    "do not approve",
    "not approved",
)

OWNERSHIP_TERMS = (
    r"\bubo\b",
    "ultimate beneficial owner",
    "beneficial owner",
    "look-through",
    "look through",
)

OFFSHORE_STRUCTURE_TERMS = (
    "holding chain",
    "holding structure",
    "ownership chain",
    "ownership structure",
    "entity chain",
    "structure",
)

INCONSISTENCY_TERMS = (
    "don't reconcile",
    "do not reconcile",
    "doesn't match",
    "does not match",
    "not match",
    "mismatch",
    "inconsisten",
    "discrepanc",
    "different from",
)

POLICY_CHANGE_TERMS = ("change", "update", "latest", "new", "recent", "revised")


class EddTriggerPolicy(BaseModel):
    """Category caps and threshold. Loaded from Settings, overridable in tests."""

    threshold: int = 4
    cap_ownership: int = Field(default=3, ge=0)
    cap_offshore: int = Field(default=3, ge=0)
    cap_identity: int = Field(default=1, ge=0)
    cap_source_of_funds: int = Field(default=1, ge=0)
    cap_policy: int = Field(default=1, ge=0)

    @classmethod
    def from_settings(cls, config: Settings) -> EddTriggerPolicy:
        return cls(
            threshold=config.edd_trigger_threshold,
            cap_ownership=config.edd_cap_ownership,
            cap_offshore=config.edd_cap_offshore,
            cap_identity=config.edd_cap_identity,
            cap_source_of_funds=config.edd_cap_source_of_funds,
            cap_policy=config.edd_cap_policy,
        )


class EddTriggerScore(BaseModel):
    triggered: bool
    legacy_marker: bool = False
    rejection_indicator: bool = False
    total: int = 0
    categories: dict[str, int] = Field(default_factory=dict)


def _any(text: str, terms: tuple[str, ...]) -> bool:
    return any(re.search(term, text) if term.startswith(r"\b") else term in text for term in terms)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower()).strip()


def has_rejection_indicator(text: str) -> bool:
    return _any(_normalize(text), REJECTION_INDICATORS)


def score_reason(reason: str | None, policy: EddTriggerPolicy | None = None) -> EddTriggerScore:
    """Full breakdown of how a reject reason scores."""
    policy = policy or EddTriggerPolicy()
    if not reason or not reason.strip():
        return EddTriggerScore(triggered=False)

    text = _normalize(reason)
    if any(marker in text for marker in LEGACY_MARKERS):
        return EddTriggerScore(triggered=True, legacy_marker=True)

    categories = {
        "ownership": policy.cap_ownership if _any(text, OWNERSHIP_TERMS) else 0,
        "offshore_structure": (
            policy.cap_offshore if "offshore" in text and _any(text, OFFSHORE_STRUCTURE_TERMS) else 0
        ),
        "identity_inconsistency": (
            policy.cap_identity
            if ("identity" in text or "identification" in text) and _any(text, INCONSISTENCY_TERMS)
            else 0
        ),
        "source_of_funds_inconsistency": (
            policy.cap_source_of_funds
            if _any(text, ("source of funds", "source of wealth", r"\bsof\b", r"\bsow\b"))
            and _any(text, INCONSISTENCY_TERMS)
            else 0
        ),
        "policy_change": (
            policy.cap_policy
            if _any(text, ("policy", "policies", "regulation")) and _any(text, POLICY_CHANGE_TERMS)
            else 0
        ),
    }
    total = sum(categories.values())
    rejection = _any(text, REJECTION_INDICATORS)
    return EddTriggerScore(
        triggered=rejection and total >= policy.threshold,
        rejection_indicator=rejection,
        total=total,
        categories=categories,
    )


def is_edd_trigger(reason: str | None, policy: EddTriggerPolicy | None = None) -> bool:
    result = score_reason(reason, policy)
    if result.total:
        logger.debug("EDD trigger score %d (triggered=%s): %s", result.total, result.triggered, result.categories)
    return result.triggered
