from __future__ import annotations

from collections import Counter
from typing import Iterable

from targetgraph.models.graph import GraphEdge, GraphNode, GraphPatch, clamp
from targetgraph.models.ranking import EvidenceRow


class GraphAggregator:
    """Id-keyed node/edge store for one build session.

    Merges are upserts: ``meta`` is merged last-write-wins and the other
    fields take the incoming value. Only items that are new or actually
    changed come back in the patch, so replaying a provider result yields
    an empty patch.
    """

    def __init__(self):
        self.nodes: dict[str, GraphNode] = {}
        self.edges: dict[str, GraphEdge] = {}

    @staticmethod
    def _merge_node(existing: GraphNode, incoming: GraphNode) -> GraphNode:
        return incoming.model_copy(update={"meta": {**existing.meta, **incoming.meta}})

    @staticmethod
    def _merge_edge(existing: GraphEdge, incoming: GraphEdge) -> GraphEdge:
        return incoming.model_copy(update={"meta": {**existing.meta, **incoming.meta}})

    def merge_provider_output(
        self,
        nodes: Iterable[GraphNode] = (),
        edges: Iterable[GraphEdge] = (),
    ) -> GraphPatch:
        patch = GraphPatch()

        for node in nodes:
            existing = self.nodes.get(node.id)
            merged = node if existing is None else self._merge_node(existing, node)
            if existing is not None and merged == existing:
                continue
            self.nodes[node.id] = merged
            patch.nodes.append(merged)

        for edge in edges:
            existing = self.edges.get(edge.id)
            merged = edge if existing is None else self._merge_edge(existing, edge)
            if existing is not None and merged == existing:
                continue
            self.edges[edge.id] = merged
            patch.edges.append(merged)

        return patch

    def update_node_meta(self, node_id: str, **meta: object) -> GraphPatch:
        node = self.nodes.get(node_id)
        if node is None:
            return GraphPatch()
        return self.merge_provider_output([node.model_copy(update={"meta": {**node.meta, **meta}})])

    def snapshot(self) -> tuple[list[GraphNode], list[GraphEdge]]:
        return list(self.nodes.values()), list(self.edges.values())

    def nodes_of_type(self, node_type: str) -> list[GraphNode]:
        return [n for n in self.nodes.values() if n.type == node_type]

    def counts(self) -> dict[str, int]:
        counts = Counter(n.type for n in self.nodes.values())
        counts["edges"] = len(self.edges)
        return dict(counts)

    def evidence_table(self) -> list[EvidenceRow]:
        nodes, edges = self.snapshot()
        return build_evidence_table(nodes, edges)


def build_evidence_table(nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> list[EvidenceRow]:
    """Per-target evidence features derived from a graph snapshot.

    Drug and interaction counts are normalized against the largest count
    in the same graph, so the values are only comparable within one build.
    """
    node_list = list(nodes)
    by_id = {n.id: n for n in node_list}
    targets = [n for n in node_list if n.type == "target"]

    pathways: dict[str, list[str]] = {t.id: [] for t in targets}
    drug_counts: Counter[str] = Counter()
    interaction_counts: Counter[str] = Counter()

    for edge in edges:
        if edge.type == "target_pathway" and edge.source in pathways:
            pathway = by_id.get(edge.target)
            if pathway is not None and pathway.primary_id not in pathways[edge.source]:
                pathways[edge.source].append(pathway.primary_id)
        elif edge.type == "target_drug" and edge.source in pathways:
            drug_counts[edge.source] += 1
        elif edge.type == "target_target":
            for endpoint in (edge.source, edge.target):
                if endpoint in pathways:
                    interaction_counts[endpoint] += 1

    max_drug = max([1, *drug_counts.values()])
    max_interaction = max([1, *interaction_counts.values()])

    rows: list[EvidenceRow] = []
    for target in targets:
        meta = target.meta
        article_count = int(meta.get("articleCount") or 0)
        trial_count = int(meta.get("trialCount") or 0)
        ot_evidence = meta.get("openTargetsEvidence")
        rows.append(
            EvidenceRow(
                target_id=target.primary_id,
                symbol=str(meta.get("symbol") or target.label),
                pathway_ids=pathways[target.id],
                open_targets_evidence=clamp(target.score if ot_evidence is None else ot_evidence),
                drug_actionability=min(1.0, drug_counts[target.id] / max_drug),
                network_centrality=min(1.0, interaction_counts[target.id] / max_interaction),
                literature_support=min(1.0, (article_count + trial_count) / 10),
                drug_count=drug_counts[target.id],
                interaction_count=interaction_counts[target.id],
                article_count=article_count,
                trial_count=trial_count,
            )
        )
    return rows
