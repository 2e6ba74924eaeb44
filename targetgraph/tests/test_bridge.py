import asyncio

from targetgraph.models.graph import build_edge, build_node
from targetgraph.services.bridge import EventBridge, build_brief_sections, derive_path_update
from targetgraph.services.aggregator import GraphAggregator
from targetgraph.services.framer import SseFramer, encode_sse


def _graph_frame(nodes, edges) -> str:
    return encode_sse(
        "partial_graph",
        {"nodes": [n.to_wire() for n in nodes], "edges": [e.to_wire() for e in edges], "stats": {}},
    )


def _status_frame(phase: str, pct: int, message: str = "working", **extra) -> str:
    return encode_sse("status", {"phase": phase, "message": message, "pct": pct, **extra})


def _disease_and_targets():
    disease = build_node("disease", "EFO_0003060", "non-small cell lung carcinoma", 1.0)
    egfr = build_node("target", "ENSG00000146648", "EGFR", 0.9, symbol="EGFR")
    kras = build_node("target", "ENSG00000133703", "KRAS", 0.7, symbol="KRAS")
    edges = [
        build_edge(disease.id, egfr.id, "disease_target", 0.9),
        build_edge(disease.id, kras.id, "disease_target", 0.7),
    ]
    return disease, egfr, kras, edges


def _run(chunks) -> list:
    async def _source():
        for chunk in chunks:
            yield chunk

    async def _collect():
        return [frame async for frame in EventBridge().translate(_source())]

    framer = SseFramer()
    return framer.feed("".join(asyncio.run(_collect())))


def test_derive_path_update_follows_strongest_edges():
    disease, egfr, kras, edges = _disease_and_targets()
    pathway = build_node("pathway", "R-HSA-177929", "Signaling by EGFR", 0.6)
    edges.append(build_edge(egfr.id, pathway.id, "target_pathway", 0.65))

    path = derive_path_update([disease, egfr, kras, pathway], edges)

    assert path.node_ids == [disease.id, egfr.id, pathway.id]
    assert path.summary == "non-small cell lung carcinoma → EGFR → Signaling by EGFR"
    assert derive_path_update([egfr], []) is None


def test_same_leading_chain_emits_one_path_update():
    disease, egfr, kras, edges = _disease_and_targets()
    frames = _run(
        [
            _graph_frame([disease, egfr], edges[:1]),
            _graph_frame([kras], edges[1:]),
            encode_sse("done", {"elapsedMs": 10, "stats": {}, "sourceHealth": {}}),
        ]
    )

    events = [f.event for f in frames]
    assert events.count("graph_patch") == 2
    assert events.count("path_update") == 1


def test_status_becomes_narration_and_duplicates_are_suppressed():
    frames = _run(
        [
            _status_frame("P1", 18, counts={"target": 3}),
            _status_frame("P1", 18, counts={"target": 3}),
            _status_frame("P2", 10, message="mapping"),
            encode_sse("done", {"elapsedMs": 10, "stats": {}, "sourceHealth": {}}),
        ]
    )

    narration = [f.json() for f in frames if f.event == "narration_delta"]
    assert [n["detail"] for n in narration] == ["working (target:3)", "mapping"]
    assert narration[0]["title"]
    pcts = [f.json()["pct"] for f in frames if f.event == "status"]
    assert pcts == [18, 18, 18]


def test_done_is_preceded_by_brief_sections():
    disease, egfr, kras, edges = _disease_and_targets()
    frames = _run(
        [
            _graph_frame([disease, egfr, kras], edges),
            encode_sse("done", {"elapsedMs": 10, "stats": {}, "sourceHealth": {"reactome": "red"}}),
        ]
    )

    sections = [f.json() for f in frames if f.event == "brief_section"]
    assert [s["section"] for s in sections] == [
        "recommendation",
        "alternatives",
        "evidence_trace",
        "caveats",
        "next_actions",
    ]
    assert sections[0]["data"]["target"] == "EGFR"
    assert any("reactome" in caveat for caveat in sections[3]["data"])
    assert frames[-1].event == "done"


def test_stream_without_done_ends_with_terminal_error():
    frames = _run([_status_frame("P1", 20)])
    assert frames[-1].event == "error"
    assert frames[-1].json()["recoverable"] is False


def test_malformed_frames_are_dropped():
    frames = _run(
        [
            "event: status\ndata: {not json\n\n",
            encode_sse("status", {"phase": "P1"}),
            encode_sse("unknown_event", {"x": 1}),
            encode_sse("resolver_selected", {"diseaseId": "EFO_1", "name": "x"}),
            encode_sse("done", {"elapsedMs": 1, "stats": {}, "sourceHealth": {}}),
        ]
    )
    events = [f.event for f in frames]
    assert "status" not in events
    assert "unknown_event" not in events
    assert events[0] == "resolver_selected"
    assert events[-1] == "done"


def test_non_recoverable_error_stops_translation():
    frames = _run(
        [
            encode_sse("error", {"phase": "P3", "message": "boom", "recoverable": False}),
            _status_frame("P4", 75),
        ]
    )
    assert [f.event for f in frames] == ["error"]


def test_brief_without_targets_explains_gap():
    sections = dict(build_brief_sections(GraphAggregator(), None, {}))
    assert sections["recommendation"] is None
    assert sections["alternatives"] == []
    assert "No targets could be ranked from the collected evidence" in sections["caveats"]
