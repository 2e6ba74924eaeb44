from __future__ import annotations

import json
import logging
from typing import AsyncIterable, AsyncIterator

from pydantic import ValidationError

from targetgraph.mappings import NEXT_ACTIONS, PHASE_TITLES
from targetgraph.models.graph import GraphEdge, GraphNode
from targetgraph.models.ranking import RankingResponse
from targetgraph.models.stream import PathUpdate, StreamError, StreamStatus
from targetgraph.services.aggregator import GraphAggregator
from targetgraph.services.framer import SseFrame, SseFramer, encode_sse
from targetgraph.services.ranking import rank_targets_fallback

logger = logging.getLogger(__name__)

_PASSTHROUGH = {"resolver_candidates", "resolver_selected"}


def _best_edge(edges: list[GraphEdge], source: str, edge_type: str) -> GraphEdge | None:
    best: GraphEdge | None = None
    for edge in edges:
        if edge.source != source or edge.type != edge_type:
            continue
        if best is None or edge.weight > best.weight:
            best = edge
    return best


def derive_path_update(nodes: list[GraphNode], edges: list[GraphEdge]) -> PathUpdate | None:
    """Leading chain: disease, its strongest target, then that target's strongest pathway and drug."""
    disease = next((n for n in nodes if n.type == "disease"), None)
    if disease is None:
        return None
    labels = {n.id: n.label for n in nodes}

    node_ids = [disease.id]
    edge_ids: list[str] = []
    lead = _best_edge(edges, disease.id, "disease_target")
    if lead is not None:
        node_ids.append(lead.target)
        edge_ids.append(lead.id)
        for edge_type in ("target_pathway", "target_drug"):
            edge = _best_edge(edges, lead.target, edge_type)
            if edge is not None:
                node_ids.append(edge.target)
                edge_ids.append(edge.id)

    summary = " → ".join(labels.get(node_id, node_id) for node_id in node_ids)
    return PathUpdate(node_ids=node_ids, edge_ids=edge_ids, summary=summary)


def _narration_detail(status: StreamStatus) -> str:
    if not status.counts:
        return status.message
    counts = " • ".join(f"{key}:{value}" for key, value in status.counts.items())
    return f"{status.message} ({counts})"


def build_brief_sections(
    aggregator: GraphAggregator,
    ranking: RankingResponse | None,
    source_health: dict[str, str],
) -> list[tuple[str, object]]:
    if ranking is None:
        ranking = rank_targets_fallback(aggregator.evidence_table())
    ranked = ranking.ranked_targets
    pathway_names = {n.primary_id: n.label for n in aggregator.nodes_of_type("pathway")}

    recommendation = None
    if ranked:
        top = ranked[0]
        pathway_id = top.pathway_hooks[0] if top.pathway_hooks else None
        recommendation = {
            "target": top.symbol,
            "id": top.id,
            "score": top.score,
            "why": "; ".join(top.reasons),
            "pathway": pathway_names.get(pathway_id, pathway_id) if pathway_id else None,
            "drugHook": top.drug_hooks[0] if top.drug_hooks else None,
            "interactionHook": top.interaction_hooks[0] if top.interaction_hooks else None,
        }

    alternatives = [
        {
            "symbol": t.symbol,
            "score": t.score,
            "reason": t.reasons[0] if t.reasons else "",
            "caveat": t.caveats[0] if t.caveats else "",
        }
        for t in ranked[1:6]
    ]
    evidence_trace = [
        {"symbol": t.symbol, "score": t.score, "refs": [r.to_wire() for r in t.evidence_refs]}
        for t in ranked[:8]
    ]

    caveats = list(ranking.system_summary.data_gaps)
    for source, level in source_health.items():
        if level != "green":
            caveats.append(f"{source} returned degraded results ({level})")
    if not ranked:
        caveats.append("No targets could be ranked from the collected evidence")

    return [
        ("recommendation", recommendation),
        ("alternatives", alternatives),
        ("evidence_trace", evidence_trace),
        ("caveats", caveats),
        ("next_actions", list(NEXT_ACTIONS)),
    ]


class EventBridge:
    """Republishes the raw build stream as the client-facing event set.

    Keeps its own copy of the graph so it can derive the leading path and
    the closing brief without reaching back into the build.
    """

    def __init__(self):
        self.framer = SseFramer()
        self.aggregator = GraphAggregator()
        self.ranking: RankingResponse | None = None
        self.source_health: dict[str, str] = {}
        self.finished = False
        self._path_signature: str | None = None
        self._last_narration: tuple[str, str] | None = None
        self._last_pct = 0

    def _on_status(self, data: dict) -> list[tuple[str, dict]]:
        status = StreamStatus.model_validate(data)
        self._last_pct = max(self._last_pct, status.pct)
        self.source_health.update(status.source_health)
        out = [("status", {**status.to_wire(), "pct": self._last_pct})]

        title = PHASE_TITLES.get(status.phase, status.phase)
        detail = _narration_detail(status)
        if (status.phase, detail) != self._last_narration:
            self._last_narration = (status.phase, detail)
            out.append(("narration_delta", {"phase": status.phase, "title": title, "detail": detail}))
        return out

    def _on_partial_graph(self, data: dict) -> list[tuple[str, dict]]:
        nodes, edges = [], []
        for raw in data.get("nodes") or []:
            try:
                nodes.append(GraphNode.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed node in partial_graph")
        for raw in data.get("edges") or []:
            try:
                edges.append(GraphEdge.model_validate(raw))
            except ValidationError:
                logger.debug("Dropping malformed edge in partial_graph")

        patch = self.aggregator.merge_provider_output(nodes, edges)
        if patch.is_empty():
            return []
        out = [
            (
                "graph_patch",
                {
                    "nodes": [n.to_wire() for n in patch.nodes],
                    "edges": [e.to_wire() for e in patch.edges],
                    "stats": self.aggregator.counts(),
                },
            )
        ]
        path = derive_path_update(*self.aggregator.snapshot())
        if path is not None and path.signature != self._path_signature:
            self._path_signature = path.signature
            out.append(("path_update", path.to_wire()))
        return out

    def _on_done(self, data: dict) -> list[tuple[str, dict]]:
        self.finished = True
        self.source_health.update(data.get("sourceHealth") or {})
        out = [
            ("brief_section", {"section": name, "data": content})
            for name, content in build_brief_sections(self.aggregator, self.ranking, self.source_health)
        ]
        out.append(("done", data))
        return out

    def handle_frame(self, frame: SseFrame) -> list[tuple[str, dict]]:
        try:
            data = frame.json()
        except json.JSONDecodeError:
            logger.debug("Dropping %s frame with invalid JSON", frame.event)
            return []
        if not isinstance(data, dict):
            return []

        try:
            if frame.event == "status":
                return self._on_status(data)
            if frame.event == "partial_graph":
                return self._on_partial_graph(data)
            if frame.event == "ranking":
                self.ranking = RankingResponse.model_validate(data)
                return [("ranking", data)]
            if frame.event == "error":
                error = StreamError.model_validate(data)
                if not error.recoverable:
                    self.finished = True
                return [("error", error.to_wire())]
            if frame.event == "done":
                return self._on_done(data)
        except ValidationError as exc:
            logger.debug("Dropping malformed %s frame: %s", frame.event, exc.errors()[:1])
            return []

        if frame.event in _PASSTHROUGH:
            return [(frame.event, data)]
        return []

    async def translate(self, chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
        async for chunk in chunks:
            for frame in self.framer.feed(chunk):
                for event, data in self.handle_frame(frame):
                    yield encode_sse(event, data)
                if self.finished:
                    return
        for frame in self.framer.flush():
            for event, data in self.handle_frame(frame):
                yield encode_sse(event, data)
        if not self.finished:
            yield encode_sse(
                "error",
                StreamError(
                    phase="bridge",
                    message="Upstream build stream ended before completion",
                    recoverable=False,
                ).to_wire(),
            )
