import logging
from typing import AsyncIterator, Literal

from fastapi import APIRouter, Query, Response
from fastapi.responses import StreamingResponse

from targetgraph.config import settings
from targetgraph.models.health import ProviderHealthSnapshot
from targetgraph.models.hypothesis import HypothesisRequest, HypothesisResponse
from targetgraph.models.ranking import RankingResponse, RankRequest
from targetgraph.models.request import BuildRequest, ResolveRequest, ResolveResponse
from targetgraph.services.bridge import EventBridge
from targetgraph.services.health import get_health_monitor
from targetgraph.services.hypothesis import generate_hypothesis
from targetgraph.services.orchestrator import BuildPipeline, stream_build_events
from targetgraph.services.ranking import rank_targets
from targetgraph.services.resolver import DiseaseResolver

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _build_request(query: str, disease_id: str | None, mode: str | None, seed_targets: str | None) -> BuildRequest:
    return BuildRequest(
        query=query.strip(),
        disease_id=(disease_id or "").strip() or None,
        mode=mode or settings.DEFAULT_MODE,
        seed_targets=[s.strip() for s in (seed_targets or "").split(",") if s.strip()],
    )


async def _raw_stream(pipeline: BuildPipeline) -> AsyncIterator[str]:
    source = stream_build_events(pipeline)
    try:
        async for chunk in source:
            yield chunk
    finally:
        # Runs on client disconnect as well as normal completion.
        pipeline.cancel()
        await source.aclose()


async def _bridged_stream(pipeline: BuildPipeline) -> AsyncIterator[str]:
    source = stream_build_events(pipeline)
    bridge = EventBridge()
    try:
        async for chunk in bridge.translate(source):
            yield chunk
    finally:
        pipeline.cancel()
        await source.aclose()


@router.get("/stream-graph")
async def stream_graph(
    query: str = Query(..., min_length=1, max_length=500),
    disease_id: str | None = Query(default=None, alias="diseaseId", max_length=200),
    mode: Literal["fast", "balanced", "deep"] | None = Query(default=None),
    seed_targets: str | None = Query(default=None, alias="seedTargets", max_length=500),
) -> StreamingResponse:
    request = _build_request(query, disease_id, mode, seed_targets)
    logger.info("stream-graph query=%r mode=%s", request.query, request.mode)
    return StreamingResponse(
        _raw_stream(BuildPipeline(request)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/run-case")
async def run_case(
    query: str = Query(..., min_length=1, max_length=500),
    disease_id: str | None = Query(default=None, alias="diseaseId", max_length=200),
    mode: Literal["fast", "balanced", "deep"] | None = Query(default=None),
    seed_targets: str | None = Query(default=None, alias="seedTargets", max_length=500),
) -> StreamingResponse:
    request = _build_request(query, disease_id, mode, seed_targets)
    logger.info("run-case query=%r mode=%s", request.query, request.mode)
    return StreamingResponse(
        _bridged_stream(BuildPipeline(request)),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.post("/rank", response_model=RankingResponse)
async def rank(request: RankRequest) -> RankingResponse:
    return await rank_targets(request.evidence_rows)


@router.post("/hypothesis", response_model=HypothesisResponse)
async def hypothesis(request: HypothesisRequest) -> HypothesisResponse:
    return await generate_hypothesis(request)


@router.post("/resolve-disease", response_model=ResolveResponse)
async def resolve_disease(request: ResolveRequest) -> ResolveResponse:
    return await DiseaseResolver().resolve(request.query)


@router.get("/provider-health", response_model=ProviderHealthSnapshot)
async def provider_health(response: Response, refresh: str | None = Query(default=None)) -> ProviderHealthSnapshot:
    response.headers["Cache-Control"] = "no-store"
    force = (refresh or "").strip().lower() == "1"
    return await get_health_monitor().snapshot(force_refresh=force)
