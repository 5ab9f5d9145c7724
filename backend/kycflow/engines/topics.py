"""Topic Assembler — deterministic keyword classification of KYC documents.

Each paragraph (blank-line separated, >20 chars) is assigned to the topic
whose keyword list it matches most often. Coverage is judged on the
assembled content length.
"""

from __future__ import annotations

import re

from kycflow.models.review import EvidenceRef, ExtractedTopic, ReviewDocument, TopicSection

TOPIC_KEYWORDS: dict[str, list[str]] = {
    "client_identity": ["name", "identity", "passport", "id number", "date of birth", "nationality"],
    "source_of_wealth": ["wealth", "income", "salary", "inheritance", "business", "employment"],
    "business_relationship": ["relationship", "purpose", "account", "services", "products"],
    "beneficial_ownership": ["beneficial owner", "ownership", "shareholder", "director", "ubo"],
    "risk_profile": ["risk", "appetite", "tolerance", "aml", "rating"],
    "sanctions_pep": ["sanctions", "pep", "politically exposed", "watchlist", "screening"],
    "transaction_patterns": ["transaction", "volume", "frequency", "pattern", "activity"],
}

TOPIC_TITLES: dict[str, str] = {
    "client_identity": "Client Identity & Verification",
    "source_of_wealth": "Source of Wealth & Income",
    "business_relationship": "Business Relationship Purpose",
    "beneficial_ownership": "Beneficial Ownership Structure",
    "risk_profile": "Risk Profile & Appetite",
    "sanctions_pep": "Sanctions & PEP Screening",
    "transaction_patterns": "Expected Transaction Patterns",
}

TOPIC_IDS: list[str] = list(TOPIC_KEYWORDS)

HIGH_RISK_KEYWORDS: list[str] = [
    "sanctions",
    "pep",
    "politically exposed",
    "high risk",
    "shell company",
    "offshore",
    "cash intensive",
    "cryptocurrency",
    "gambling",
    "arms",
    "tobacco",
]

MIN_PARAGRAPH_CHARS = 20
COMPLETE_COVERAGE_CHARS = 200
SNIPPET_CHARS = 100


def _best_topic(paragraph: str) -> str | None:
    lowered = paragraph.lower()
    best_topic, best_score = None, 0
    for topic_id in TOPIC_IDS:
        score = sum(1 for kw in TOPIC_KEYWORDS[topic_id] if kw in lowered)
        if score > best_score:
            best_topic, best_score = topic_id, score
    return best_topic


def assemble_topics(documents: list[ReviewDocument]) -> list[TopicSection]:
    """Classify document paragraphs into the fixed topic set.

    Always returns one section per topic, in TOPIC_IDS order.
    """
    sections = {
        topic_id: TopicSection(topic_id=topic_id, title=TOPIC_TITLES[topic_id])
        for topic_id in TOPIC_IDS
    }

    for doc in documents:
        paragraphs = [p for p in doc.text.split("\n\n") if len(p.strip()) > MIN_PARAGRAPH_CHARS]
        for idx, para in enumerate(paragraphs):
            topic_id = _best_topic(para)
            if topic_id is None:
                continue
            section = sections[topic_id]
            section.content += ("\n\n" if section.content else "") + para
            section.evidence_refs.append(EvidenceRef(
                doc_name=doc.filename,
                page_or_section=f"Para {idx + 1}",
                snippet=para[:SNIPPET_CHARS] + ("..." if len(para) > SNIPPET_CHARS else ""),
            ))

    for section in sections.values():
        length = len(section.content)
        if length == 0:
            section.coverage = "missing"
        elif length < COMPLETE_COVERAGE_CHARS:
            section.coverage = "partial"
        else:
            section.coverage = "complete"

    return list(sections.values())


def extract_high_risk_keywords(content: str) -> list[str]:
    """High-risk keywords present in the content, in catalogue order."""
    lowered = content.lower()
    return [kw for kw in HIGH_RISK_KEYWORDS if kw in lowered]


def to_extracted_topics(sections: list[TopicSection]) -> list[ExtractedTopic]:
    """Compact projection for responses. Missing topics are omitted."""
    extracted = []
    for section in sections:
        if section.coverage == "missing":
            continue
        summary = re.sub(r"\s+", " ", section.content).strip()[:200]
        extracted.append(ExtractedTopic(
            topic_id=section.topic_id,
            title=section.title,
            summary=summary,
            evidence=section.evidence_refs[:3],
            coverage=section.coverage,
        ))
    return extracted
