"""KYC review graph definitions, content checksum and structural diff.

The checksum identifies the *content* of a definition: node/edge order and
the free-form metadata block do not affect it.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from kycflow.models.graph import GraphChange, GraphDefinition, GraphDiff, GraphEdge, GraphNode
from kycflow.models.review import GraphInfo

_NODE_FIELDS = ("type", "label", "description", "binding", "config")
_EDGE_FIELDS = ("label", "condition")


def _node_payload(node: GraphNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "type": node.type,
        "label": node.label,
        "description": node.description,
        "binding": node.binding,
        "config": node.config,
    }


def _edge_payload(edge: GraphEdge) -> dict[str, Any]:
    return {
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "label": edge.label,
        "condition": edge.condition,
    }


def compute_checksum(definition: GraphDefinition) -> str:
    """First 12 hex chars of SHA-256 over the canonical definition."""
    canonical = {
        "graph_id": definition.graph_id,
        "version": definition.version,
        "description": definition.description,
        "nodes": [_node_payload(n) for n in sorted(definition.nodes, key=lambda n: n.id)],
        "edges": [_edge_payload(e) for e in sorted(definition.edges, key=lambda e: e.id)],
    }
    encoded = json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:12]


def compute_graph_diff(old: GraphDefinition, new: GraphDefinition) -> GraphDiff:
    """One change entry per added/removed element and per modified field."""
    changes: list[GraphChange] = []

    old_nodes = {n.id: n for n in old.nodes}
    new_nodes = {n.id: n for n in new.nodes}
    for node_id in sorted(new_nodes.keys() - old_nodes.keys()):
        changes.append(GraphChange(type="node_added", id=node_id, after=_node_payload(new_nodes[node_id])))
    for node_id in sorted(old_nodes.keys() - new_nodes.keys()):
        changes.append(GraphChange(type="node_removed", id=node_id, before=_node_payload(old_nodes[node_id])))
    for node_id in sorted(old_nodes.keys() & new_nodes.keys()):
        before, after = _node_payload(old_nodes[node_id]), _node_payload(new_nodes[node_id])
        for field in _NODE_FIELDS:
            if before[field] != after[field]:
                changes.append(GraphChange(
                    type="node_modified", id=node_id, field=field,
                    before=before[field], after=after[field],
                ))

    old_edges = {e.id: e for e in old.edges}
    new_edges = {e.id: e for e in new.edges}
    for edge_id in sorted(new_edges.keys() - old_edges.keys()):
        changes.append(GraphChange(type="edge_added", id=edge_id, after=_edge_payload(new_edges[edge_id])))
    for edge_id in sorted(old_edges.keys() - new_edges.keys()):
        changes.append(GraphChange(type="edge_removed", id=edge_id, before=_edge_payload(old_edges[edge_id])))
    for edge_id in sorted(old_edges.keys() & new_edges.keys()):
        before, after = _edge_payload(old_edges[edge_id]), _edge_payload(new_edges[edge_id])
        for field in _EDGE_FIELDS:
            if before[field] != after[field]:
                changes.append(GraphChange(
                    type="edge_modified", id=edge_id, field=field,
                    before=before[field], after=after[field],
                ))
        if (before["source"], before["target"]) != (after["source"], after["target"]):
            changes.append(GraphChange(
                type="edge_modified", id=edge_id, field="connection",
                before=f"{before['source']}->{before['target']}",
                after=f"{after['source']}->{after['target']}",
            ))

    return GraphDiff(from_version=old.version, to_version=new.version, changes=changes)


def graph_info(definition: GraphDefinition) -> GraphInfo:
    return GraphInfo(
        graph_id=definition.graph_id,
        version=definition.version,
        checksum=compute_checksum(definition),
    )


def _n(node_id: str, type_: str, label: str, description: str, binding: str | None = None,
       config: dict[str, Any] | None = None) -> GraphNode:
    return GraphNode(id=node_id, type=type_, label=label, description=description,
                     binding=binding, config=config)


def _e(source: str, target: str, label: str | None = None, condition: str | None = None) -> GraphEdge:
    return GraphEdge(id=f"e_{source}_{target}", source=source, target=target,
                     label=label, condition=condition)


KYC_REVIEW_V1 = GraphDefinition(
    graph_id="kyc_review_v1",
    version="1.0.0",
    description="KYC document review: triage, parallel checks, human gate, bounded reflection.",
    nodes=[
        _n("topic_assembler", "skill", "Topic Assembler",
           "Classify document paragraphs into KYC topics with coverage ratings.",
           binding="kycflow.engines.topics.assemble_topics"),
        _n("risk_triage", "skill", "Risk Triage",
           "Score coverage gaps and high-risk keywords into a route path.",
           binding="kycflow.engines.triage.triage_risk"),
        _n("parallel_checks", "agent", "Parallel Checks",
           "Conflict sweep, gap collector and policy-flag scanner, run concurrently.",
           binding="kycflow.engines.checks.execute_parallel_checks",
           config={"policy_flags_paths": ["escalate", "human_gate"]}),
        _n("risk_assessment", "agent", "Risk Signal Assessment",
           "Primary risk analyzer with pattern fallback; sets the review requirement.",
           binding="kycflow.engines.risk_signals.RiskAssessor.assess"),
        _n("human_review", "gate", "Human Review",
           "Pause for a human approve/reject decision.",
           binding="kycflow.workflows.human_review.evaluate_human_review",
           config={"risk_score_threshold": 80}),
        _n("reflect_and_replan", "agent", "Reflect and Replan",
           "Bounded self-correction over the recent trace.",
           binding="kycflow.workflows.reflection.ReflectionEngine.reflect",
           config={"max_replans": 1}),
        _n("routing_decision", "router", "Routing Decision",
           "Map the reflection next action to rerun, human gate or continue."),
        _n("human_gate", "gate", "Human Scope Gate",
           "Second, non-durable human gate for scope decisions.",
           config={"options": ["approve_edd", "request_docs", "reject"]}),
        _n("finalize", "system", "Finalize",
           "Aggregate issues, conflicts and gaps into the final response."),
        _n("error_handler", "system", "Error Handler",
           "Convert unexpected failures into a degraded response."),
    ],
    edges=[
        _e("topic_assembler", "risk_triage"),
        _e("risk_triage", "parallel_checks"),
        _e("parallel_checks", "risk_assessment"),
        _e("risk_assessment", "human_review"),
        _e("human_review", "reflect_and_replan", label="Approved", condition="decision == 'approve'"),
        _e("human_review", "finalize", label="Rejected", condition="decision == 'reject'"),
        _e("reflect_and_replan", "routing_decision"),
        _e("routing_decision", "parallel_checks", label="Rerun", condition="next_action == 'rerun_batch_review'"),
        _e("routing_decision", "human_gate", label="Ask human",
           condition="next_action in ('ask_human_for_scope', 'section_review')"),
        _e("routing_decision", "finalize", label="Continue"),
        _e("human_gate", "finalize"),
    ],
    metadata={"owner": "kyc-review"},
)

# 1.0.1 tightens the reflection timeout and labels the triage hand-off.
KYC_REVIEW_V1_1 = KYC_REVIEW_V1.model_copy(deep=True, update={"version": "1.0.1"})
for _node in KYC_REVIEW_V1_1.nodes:
    if _node.id == "reflect_and_replan":
        _node.config = {"max_replans": 1, "timeout_seconds": 15}
for _edge in KYC_REVIEW_V1_1.edges:
    if _edge.id == "e_risk_triage_parallel_checks":
        _edge.label = "Route"

GRAPH_REGISTRY: dict[str, GraphDefinition] = {
    KYC_REVIEW_V1.version: KYC_REVIEW_V1,
    KYC_REVIEW_V1_1.version: KYC_REVIEW_V1_1,
}

CURRENT_GRAPH = KYC_REVIEW_V1
