from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Iterator

from targetgraph.config import settings
from targetgraph.mappings import DEPTH_PROFILES, LLM_HEALTH_KEY, PHASE_PROGRESS
from targetgraph.models.graph import GraphPatch, build_edge, build_node, clamp
from targetgraph.models.providers import DrugHit, InteractionHit, LiteratureHit, PathwayHit, TargetHit
from targetgraph.models.request import BuildRequest
from targetgraph.models.stream import StreamError, StreamEvent, StreamStatus
from targetgraph.services.framer import encode_sse
from targetgraph.services.llm import llm_configured
from targetgraph.services.providers import (
    ProviderSet,
    get_providers,
    interaction_query,
    literature_query,
)
from targetgraph.services.ranking import rank_targets_fallback, refine_ranking
from targetgraph.services.rate_limit import RateLimitGuard, rate_limit_guard
from targetgraph.services.resolver import DiseaseResolver
from targetgraph.services.session import BuildSession, TargetRef, classify_health

logger = logging.getLogger(__name__)

PATHWAY_NODE_SCORE = 0.6
PATHWAY_EDGE_WEIGHT = 0.65
INTERACTION_NODE_SCORE = 0.35
SEEDED_TARGET_SCORE = 0.38
UNKNOWN_POTENCY_WEIGHT = 0.4


@dataclass
class Fetch:
    source: str
    key: str
    run: Callable[[], Awaitable[list]]


def _chunks(items: list, size: int) -> Iterator[list]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _drug_weight(hit: DrugHit) -> float:
    if hit.source == "chembl":
        if hit.potency is None:
            return UNKNOWN_POTENCY_WEIGHT
        return clamp(1 / (1 + max(hit.potency, 0.0) / 1000))
    return clamp((hit.phase or 0.0) / 4)


class BuildPipeline:
    """Runs phases P0-P6 for one query and queues stream events as it goes.

    Sub-fetches inside a phase run concurrently up to the profile's fan-out
    and are merged in completion order. Provider failures only degrade
    source health; an exception in the pipeline itself ends the stream
    with a non-recoverable error.
    """

    def __init__(
        self,
        request: BuildRequest,
        *,
        providers: ProviderSet | None = None,
        resolver: DiseaseResolver | None = None,
        guard: RateLimitGuard = rate_limit_guard,
        phase_timeout: float | None = None,
        ranking_timeout: float | None = None,
        queue_size: int | None = None,
    ):
        self.session = BuildSession(request=request)
        self.providers = providers or get_providers()
        self.resolver = resolver or DiseaseResolver(self.providers.diseases)
        self.guard = guard
        self.profile = DEPTH_PROFILES.get(request.mode, DEPTH_PROFILES["balanced"])
        self.phase_timeout = settings.PHASE_TIMEOUT_SECONDS if phase_timeout is None else phase_timeout
        self.ranking_timeout = settings.RANKING_TIMEOUT_SECONDS if ranking_timeout is None else ranking_timeout
        self.queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue(
            maxsize=queue_size or settings.STREAM_QUEUE_SIZE
        )
        self._last_pct = 0

    # -- emission -----------------------------------------------------------

    async def _emit(self, event: str, data: dict) -> None:
        if self.session.is_cancelled:
            return
        await self.queue.put(StreamEvent(event=event, data=data))

    async def _status(
        self,
        phase: str,
        message: str,
        pct: int,
        *,
        partial: bool = False,
        counts: dict[str, int] | None = None,
    ) -> None:
        self._last_pct = max(self._last_pct, pct)
        status = StreamStatus(
            phase=phase,
            message=message,
            pct=self._last_pct,
            elapsed_ms=self.session.elapsed_ms(),
            partial=partial,
            counts=counts or {},
            source_health=dict(self.session.source_health),
        )
        await self._emit("status", status.to_wire())

    async def _emit_patch(self, patch: GraphPatch) -> None:
        if patch.is_empty():
            return
        await self._emit(
            "partial_graph",
            {
                "nodes": [n.to_wire() for n in patch.nodes],
                "edges": [e.to_wire() for e in patch.edges],
                "stats": self.session.aggregator.counts(),
            },
        )

    async def _merge(self, nodes=(), edges=()) -> None:
        await self._emit_patch(self.session.aggregator.merge_provider_output(nodes, edges))

    async def _recoverable(self, phase: str, message: str) -> None:
        await self._emit("error", StreamError(phase=phase, message=message, recoverable=True).to_wire())

    # -- fan-out ------------------------------------------------------------

    async def _run_fetches(
        self,
        fetches: list[Fetch],
        handle: Callable[[Fetch, list], Awaitable[None]],
    ) -> dict[str, tuple[int, int]]:
        """Run fetches under the fan-out cap and the phase deadline.

        Returns ``source -> (non_empty, degraded)``; fetches still running at
        the deadline are cancelled and counted as degraded.
        """
        outcome: dict[str, list[int]] = defaultdict(lambda: [0, 0])
        if not fetches:
            return {}

        semaphore = asyncio.Semaphore(self.profile["fan_out"])

        async def guarded(fetch: Fetch) -> tuple[Fetch, list]:
            async with semaphore:
                return fetch, await fetch.run()

        tasks = {asyncio.create_task(guarded(f)): f for f in fetches}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.phase_timeout
        pending = set(tasks)
        try:
            while pending and not self.session.is_cancelled:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    fetch = tasks[task]
                    counts = outcome[fetch.source]
                    if task.cancelled() or task.exception() is not None:
                        logger.warning(
                            "%s fetch %r failed: %r",
                            fetch.source,
                            fetch.key,
                            None if task.cancelled() else task.exception(),
                        )
                        counts[1] += 1
                        continue
                    _, hits = task.result()
                    if hits:
                        counts[0] += 1
                    await handle(fetch, hits)
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in pending:
            fetch = tasks[task]
            logger.warning("%s fetch %r cut by the phase deadline", fetch.source, fetch.key)
            outcome[fetch.source][1] += 1

        result = {source: (counts[0], counts[1]) for source, counts in outcome.items()}
        for fetch in fetches:
            result.setdefault(fetch.source, (0, 0))
        if not self.session.is_cancelled:
            for source, (non_empty, degraded) in result.items():
                self.session.record_health(source, classify_health(non_empty, degraded))
        return result

    # -- phases -------------------------------------------------------------

    async def _resolve(self) -> None:
        session = self.session
        request = session.request
        start, end = PHASE_PROGRESS["P0"]
        session.phase = "P0"
        await self._status("P0", "Resolving disease query", start)

        timed_out = False
        try:
            resolution = await asyncio.wait_for(self.resolver.resolve(request.query), timeout=self.phase_timeout)
        except asyncio.TimeoutError:
            timed_out = True
            resolution = None

        candidates = resolution.candidates if resolution else []
        session.record_health("opentargets", classify_health(len(candidates), int(timed_out)))
        await self._emit(
            "resolver_candidates",
            {"query": request.query, "candidates": [c.to_wire() for c in candidates]},
        )

        degraded = False
        description = None
        if request.disease_id:
            session.disease_id = request.disease_id
            exact = next((c for c in candidates if c.id == request.disease_id), None)
            session.disease_name = exact.name if exact else request.query
            description = exact.description if exact else None
            rationale = "Disease id supplied by the caller."
        elif resolution is not None and resolution.selected is not None:
            session.disease_id = resolution.selected.id
            session.disease_name = resolution.selected.name
            description = resolution.selected.description
            rationale = resolution.rationale
        else:
            degraded = True
            session.disease_id = "QUERY_" + "_".join(request.query.split())
            session.disease_name = request.query
            rationale = "Disease resolver timed out." if timed_out else (
                resolution.rationale if resolution else "No disease match."
            )
            await self._recoverable("P0", f"Disease resolution failed: {rationale}")

        await self._emit(
            "resolver_selected",
            {
                "diseaseId": session.disease_id,
                "name": session.disease_name,
                "rationale": rationale,
                "degraded": degraded,
            },
        )
        disease = build_node(
            "disease",
            session.disease_id,
            session.disease_name,
            0.5 if degraded else 1.0,
            displayName=session.disease_name,
            description=description,
            query=request.query,
            degraded=degraded or None,
        )
        await self._merge([disease])
        await self._status("P0", f"Resolved to {session.disease_name} ({session.disease_id})", end)

    async def _collect_targets(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P1"]
        session.phase = "P1"
        await self._status("P1", "Fetching target evidence from OpenTargets", start)
        max_targets = self.profile["max_targets"]

        async def handle(fetch: Fetch, hits: list[TargetHit]) -> None:
            for batch in _chunks(hits[:max_targets], 5):
                await self._add_targets(batch)

        await self._run_fetches(
            [Fetch("opentargets", session.disease_id, lambda: self.providers.targets.search(session.disease_id, max_targets))],
            handle,
        )

        seeds = [s.strip().upper() for s in session.request.seed_targets if s.strip()]
        if not session.targets and seeds:
            await self._status(
                "P1",
                "No disease-target rows returned; switching to query-seeded targets",
                start + 4,
                partial=True,
                counts={"seedTargets": len(seeds)},
            )
            await self._add_targets(
                [
                    TargetHit(
                        target_id=f"QUERY_TARGET_{symbol}",
                        symbol=symbol,
                        name=symbol,
                        association_score=SEEDED_TARGET_SCORE,
                    )
                    for symbol in seeds[:max_targets]
                ],
                seeded=True,
            )

        if not session.targets:
            await self._recoverable("P1", "No targets found for the resolved disease")
        await self._status(
            "P1",
            f"Linked {len(session.targets)} targets",
            end,
            counts={"targets": len(session.targets)},
        )

    async def _add_targets(self, hits: list[TargetHit], seeded: bool = False) -> None:
        session = self.session
        nodes, edges = [], []
        for hit in hits:
            node = build_node(
                "target",
                hit.target_id,
                hit.symbol,
                hit.association_score,
                symbol=hit.symbol,
                name=hit.name,
                openTargetsEvidence=hit.association_score,
                seeded=seeded or None,
            )
            if session.target_by_symbol(hit.symbol) is None:
                session.targets.append(TargetRef(node.id, hit.target_id, hit.symbol, hit.association_score))
            nodes.append(node)
            edges.append(
                build_edge(
                    session.disease_node_id,
                    node.id,
                    "disease_target",
                    hit.association_score,
                    source="opentargets",
                    seeded=seeded or None,
                )
            )
        await self._merge(nodes, edges)

    async def _map_pathways(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P2"]
        session.phase = "P2"
        await self._status("P2", "Mapping targets to Reactome pathways", start)
        per_target = self.profile["pathways_per_target"]
        targets = {t.node_id: t for t in session.targets}

        async def handle(fetch: Fetch, hits: list[PathwayHit]) -> None:
            nodes, edges = [], []
            for hit in hits:
                node = build_node(
                    "pathway",
                    hit.id,
                    hit.name,
                    PATHWAY_NODE_SCORE,
                    species=hit.species,
                    url=hit.url,
                )
                nodes.append(node)
                edges.append(build_edge(fetch.key, node.id, "target_pathway", PATHWAY_EDGE_WEIGHT, source="reactome"))
            await self._merge(nodes, edges)

        await self._run_fetches(
            [
                Fetch("reactome", node_id, lambda t=t: self.providers.pathways.search(t.symbol, per_target))
                for node_id, t in targets.items()
            ],
            handle,
        )
        pathways = len(session.aggregator.nodes_of_type("pathway"))
        await self._status("P2", f"Mapped {pathways} pathways", end, counts={"pathways": pathways})

    async def _link_drugs(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P3"]
        session.phase = "P3"
        await self._status("P3", "Linking known drugs and ChEMBL compounds", start)
        per_target = self.profile["drugs_per_target"]
        chosen = sorted(session.targets, key=lambda t: t.score, reverse=True)[: self.profile["drug_targets"]]

        async def handle(fetch: Fetch, hits: list[DrugHit]) -> None:
            nodes, edges = [], []
            for hit in hits[:per_target]:
                weight = _drug_weight(hit)
                node = build_node(
                    "drug",
                    hit.drug_id,
                    hit.name,
                    weight,
                    source=hit.source,
                    phase=hit.phase,
                    status=hit.status,
                    mechanismOfAction=hit.mechanism_of_action,
                    drugType=hit.drug_type,
                    activityType=hit.activity_type,
                    potency=hit.potency,
                    potencyUnits=hit.potency_units,
                )
                nodes.append(node)
                edges.append(build_edge(fetch.key, node.id, "target_drug", weight, source=hit.source))
            await self._merge(nodes, edges)

        fetches: list[Fetch] = []
        for target in chosen:
            if not target.primary_id.startswith("QUERY_TARGET_"):
                fetches.append(
                    Fetch(
                        "opentargets",
                        target.node_id,
                        lambda t=target: self.providers.known_drugs.search(t.primary_id, per_target),
                    )
                )
            fetches.append(
                Fetch("chembl", target.node_id, lambda t=target: self.providers.activity_drugs.search(t.symbol, per_target))
            )
        await self._run_fetches(fetches, handle)
        drugs = len(session.aggregator.nodes_of_type("drug"))
        await self._status("P3", f"Linked {drugs} drugs", end, counts={"drugs": drugs})

    async def _expand_interactions(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P4"]
        session.phase = "P4"
        await self._status("P4", "Expanding STRING interaction neighborhood", start)
        seeds = sorted(session.targets, key=lambda t: t.score, reverse=True)[: self.profile["interaction_seeds"]]
        query = interaction_query([t.symbol for t in seeds])

        async def handle(fetch: Fetch, hits: list[InteractionHit]) -> None:
            nodes, edges = [], []
            for hit in hits:
                endpoints = []
                for symbol in (hit.source_symbol, hit.target_symbol):
                    target = session.target_by_symbol(symbol)
                    if target is not None:
                        endpoints.append((target.node_id, True))
                        continue
                    neighbor = build_node("interaction", symbol.upper(), symbol, INTERACTION_NODE_SCORE, symbol=symbol)
                    nodes.append(neighbor)
                    endpoints.append((neighbor.id, False))
                (a, a_is_target), (b, b_is_target) = endpoints
                if a == b or not (a_is_target or b_is_target):
                    continue
                if not a_is_target:
                    a, b = b, a
                edges.append(build_edge(a, b, "target_target", hit.score, source="string", evidence=hit.evidence or None))
            used = {e.source for e in edges} | {e.target for e in edges}
            await self._merge([n for n in nodes if n.id in used], edges)

        if query:
            await self._run_fetches(
                [Fetch("string", query, lambda: self.providers.interactions.search(query, self.profile["interaction_neighbors"]))],
                handle,
            )
        interactions = sum(1 for e in session.aggregator.edges.values() if e.type == "target_target")
        await self._status("P4", f"Added {interactions} interaction edges", end, counts={"interactions": interactions})

    async def _gather_literature(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P5"]
        session.phase = "P5"
        await self._status("P5", "Gathering literature and trial evidence", start)
        items = self.profile["literature_items"]
        chosen = sorted(session.targets, key=lambda t: t.score, reverse=True)[: self.profile["literature_targets"]]

        async def handle(fetch: Fetch, hits: list[LiteratureHit]) -> None:
            kind = "trial" if fetch.key.startswith("trials:") else "article"
            node_id = fetch.key.split(":", 1)[1]
            refs = [{"id": h.id, "title": h.title, "url": h.url, "source": h.source} for h in hits]
            if kind == "trial":
                patch = session.aggregator.update_node_meta(node_id, trialCount=len(hits), trials=refs)
            else:
                patch = session.aggregator.update_node_meta(node_id, articleCount=len(hits), articles=refs)
            await self._emit_patch(patch)

        fetches: list[Fetch] = []
        for target in chosen:
            query = literature_query(target.symbol, session.disease_name)
            fetches.append(Fetch("biomcp", f"articles:{target.node_id}", lambda q=query: self.providers.articles.search(q, items)))
            fetches.append(Fetch("biomcp", f"trials:{target.node_id}", lambda q=query: self.providers.trials.search(q, items)))
        await self._run_fetches(fetches, handle)

        articles = sum(int(n.meta.get("articleCount") or 0) for n in session.aggregator.nodes_of_type("target"))
        trials = sum(int(n.meta.get("trialCount") or 0) for n in session.aggregator.nodes_of_type("target"))
        await self._status(
            "P5",
            f"Collected {articles} articles and {trials} trials",
            end,
            counts={"articles": articles, "trials": trials},
        )

    async def _rank(self) -> None:
        session = self.session
        start, end = PHASE_PROGRESS["P6"]
        session.phase = "P6"
        await self._status("P6", "Ranking targets from the evidence table", start)

        rows = session.aggregator.evidence_table()
        baseline = rank_targets_fallback(rows)
        session.ranking = baseline
        await self._emit("ranking", {**baseline.to_wire(), "method": "deterministic"})

        if rows and llm_configured() and not self.guard.is_limited():
            await self._status("P6", "Refining ranking with Gemini", start + 2, partial=True)
            try:
                refined = await refine_ranking(rows, guard=self.guard, timeout=self.ranking_timeout)
            except asyncio.TimeoutError:
                await self._status("P6", "Baseline ranking kept (LLM refinement deferred)", start + 3, partial=True)
            except Exception as exc:
                logger.warning("LLM ranking degraded: %r", exc)
                session.record_health(LLM_HEALTH_KEY, "yellow")
                await self._recoverable("P6", f"Ranking degraded: {exc}")
            else:
                session.record_health(LLM_HEALTH_KEY, "green")
                if refined != baseline:
                    session.ranking = refined
                    await self._emit("ranking", {**refined.to_wire(), "method": "llm"})

        await self._status(
            "P6",
            f"Ranked {len(session.ranking.ranked_targets)} targets",
            end,
            counts={"rankedTargets": len(session.ranking.ranked_targets)},
        )

    async def _done(self) -> None:
        session = self.session
        stats = session.aggregator.counts()
        stats["rankedTargets"] = len(session.ranking.ranked_targets) if session.ranking else 0
        await self._status("P6", "Build complete", 100, counts=stats)
        await self._emit(
            "done",
            {
                "elapsedMs": session.elapsed_ms(),
                "stats": stats,
                "sourceHealth": dict(session.source_health),
            },
        )

    # -- lifecycle ----------------------------------------------------------

    async def run(self) -> None:
        phases = (
            self._resolve,
            self._collect_targets,
            self._map_pathways,
            self._link_drugs,
            self._expand_interactions,
            self._gather_literature,
            self._rank,
        )
        try:
            for phase in phases:
                if self.session.is_cancelled:
                    break
                await phase()
            if not self.session.is_cancelled:
                await self._done()
                logger.info(
                    "Build for %r finished in %dms: %s",
                    self.session.request.query,
                    self.session.elapsed_ms(),
                    self.session.aggregator.counts(),
                )
        except asyncio.CancelledError:
            self.session.cancel()
            raise
        except Exception as exc:
            logger.exception("Build failed in phase %s", self.session.phase)
            await self._emit(
                "error",
                StreamError(phase=self.session.phase, message=str(exc) or type(exc).__name__, recoverable=False).to_wire(),
            )
        finally:
            with contextlib.suppress(asyncio.QueueFull):
                self.queue.put_nowait(None)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Drive ``run`` in a task and yield its events until it finishes."""
        task = asyncio.create_task(self.run())
        try:
            while True:
                try:
                    event = await asyncio.wait_for(self.queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    if task.done():
                        break
                    continue
                if event is None:
                    break
                yield event
        finally:
            self.session.cancel()
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def cancel(self) -> None:
        self.session.cancel()


async def stream_build_events(pipeline: BuildPipeline) -> AsyncIterator[str]:
    events = pipeline.events()
    try:
        async for event in events:
            yield encode_sse(event.event, event.data)
    finally:
        await events.aclose()
