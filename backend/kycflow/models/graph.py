"""Declarative graph definition models for the review pipeline."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

NodeType = Literal["agent", "skill", "router", "gate", "system"]
ChangeType = Literal[
    "node_added",
    "node_removed",
    "node_modified",
    "edge_added",
    "edge_removed",
    "edge_modified",
]


class GraphNode(BaseModel):
    id: str
    type: NodeType
    label: str
    description: str = ""
    binding: str | None = None          # Python callable the node is bound to
    config: dict[str, Any] | None = None


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str
    label: str | None = None
    condition: str | None = None


class GraphDefinition(BaseModel):
    graph_id: str
    version: str
    description: str = ""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)  # Excluded from checksum


class GraphChange(BaseModel):
    type: ChangeType
    id: str
    field: str | None = None
    before: Any = None
    after: Any = None


class GraphDiff(BaseModel):
    from_version: str
    to_version: str
    changes: list[GraphChange] = Field(default_factory=list)
