from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NodeType = Literal["disease", "target", "pathway", "drug", "interaction"]
EdgeType = Literal["disease_target", "target_pathway", "target_drug", "target_target"]


class CamelModel(BaseModel):
    """Snake_case attributes in Python, camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def make_node_id(node_type: str, primary_id: str) -> str:
    return f"{node_type}:{primary_id}"


def make_edge_id(source: str, target: str, edge_type: str) -> str:
    return f"{source}→{target}:{edge_type}"


class GraphNode(CamelModel):
    id: str
    type: NodeType
    primary_id: str
    label: str
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    meta: dict[str, object] = Field(default_factory=dict)


class GraphEdge(CamelModel):
    id: str
    source: str
    target: str
    type: EdgeType
    weight: float = Field(default=0.0, ge=0.0, le=1.0)
    meta: dict[str, object] = Field(default_factory=dict)


class GraphPatch(CamelModel):
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.nodes and not self.edges


def clamp(value: float | None, low: float = 0.0, high: float = 1.0) -> float:
    if value is None:
        return low
    try:
        number = float(value)
    except (TypeError, ValueError):
        return low
    if number != number:  # NaN
        return low
    return max(low, min(high, number))


def build_node(
    node_type: str,
    primary_id: str,
    label: str | None = None,
    score: float | None = None,
    **meta: object,
) -> GraphNode:
    return GraphNode(
        id=make_node_id(node_type, primary_id),
        type=node_type,
        primary_id=primary_id,
        label=(label or primary_id)[:60],
        score=clamp(score),
        meta={k: v for k, v in meta.items() if v is not None},
    )


def build_edge(
    source_id: str,
    target_id: str,
    edge_type: str,
    weight: float | None = None,
    **meta: object,
) -> GraphEdge:
    """Edge between two node ids; ``meta`` may carry a ``source`` provenance key."""
    return GraphEdge(
        id=make_edge_id(source_id, target_id, edge_type),
        source=source_id,
        target=target_id,
        type=edge_type,
        weight=clamp(weight),
        meta={k: v for k, v in meta.items() if v is not None},
    )
