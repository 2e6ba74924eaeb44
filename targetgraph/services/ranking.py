from __future__ import annotations

import json
import logging

from targetgraph.config import settings
from targetgraph.mappings import MAX_RANKED_TARGETS, RANKING_DATA_GAPS, RANKING_WEIGHTS
from targetgraph.models.graph import clamp
from targetgraph.models.ranking import (
    EvidenceRef,
    EvidenceRow,
    RankedTarget,
    RankingResponse,
    SystemSummary,
)
from targetgraph.services.llm import structured_completion
from targetgraph.services.rate_limit import RateLimitGuard, rate_limit_guard

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = " ".join(
    [
        "You rank disease targets from an evidence table.",
        "Use ONLY the provided fields and target IDs.",
        "If information is missing, explicitly state 'not provided'.",
        "Never claim efficacy or provide clinical recommendation.",
        "Ranks must be consecutive integers starting at 1; scores lie between 0 and 1.",
    ]
)


def fallback_score(row: EvidenceRow) -> float:
    return (
        RANKING_WEIGHTS["openTargetsEvidence"] * clamp(row.open_targets_evidence)
        + RANKING_WEIGHTS["drugActionability"] * clamp(row.drug_actionability)
        + RANKING_WEIGHTS["networkCentrality"] * clamp(row.network_centrality)
        + RANKING_WEIGHTS["literatureSupport"] * clamp(row.literature_support)
    )


def _ranked_target(row: EvidenceRow, rank: int, score: float) -> RankedTarget:
    return RankedTarget(
        id=row.target_id,
        symbol=row.symbol,
        rank=rank,
        score=round(score, 4),
        reasons=[
            f"OpenTargets evidence {row.open_targets_evidence:.2f}",
            f"Drug actionability {row.drug_actionability:.2f} with {row.drug_count} linked drugs",
        ],
        caveats=[
            "No literature snippets provided"
            if row.article_count == 0
            else f"{row.article_count} article snippets provided"
        ],
        pathway_hooks=row.pathway_ids[:3],
        drug_hooks=[f"{row.drug_count} compounds"],
        interaction_hooks=[f"{row.interaction_count} interaction edges"],
        evidence_refs=[
            EvidenceRef(field="openTargetsEvidence", value=row.open_targets_evidence),
            EvidenceRef(field="drugActionability", value=row.drug_actionability),
            EvidenceRef(field="networkCentrality", value=row.network_centrality),
            EvidenceRef(field="literatureSupport", value=row.literature_support),
        ],
    )


def rank_targets_fallback(rows: list[EvidenceRow]) -> RankingResponse:
    """Deterministic weighted-sum ranking; pure, ties keep input order."""
    scored = sorted(
        ((row, fallback_score(row)) for row in rows),
        key=lambda item: item[1],
        reverse=True,
    )[:MAX_RANKED_TARGETS]

    key_pathways: list[str] = []
    for row, _ in scored:
        for pathway_id in row.pathway_ids:
            if pathway_id not in key_pathways:
                key_pathways.append(pathway_id)

    return RankingResponse(
        ranked_targets=[_ranked_target(row, idx + 1, score) for idx, (row, score) in enumerate(scored)],
        system_summary=SystemSummary(
            key_pathways=key_pathways[:8],
            actionable_targets=[row.symbol for row, _ in scored[:5]],
            data_gaps=list(RANKING_DATA_GAPS),
        ),
    )


def validate_ranking(ranking: RankingResponse, rows: list[EvidenceRow]) -> None:
    """Raise ValueError unless ranks are dense 1..N and ids come from ``rows``."""
    known = {row.target_id for row in rows}
    ranks = sorted(t.rank for t in ranking.ranked_targets)
    if ranks != list(range(1, len(ranks) + 1)):
        raise ValueError(f"ranks are not dense: {ranks}")
    unknown = [t.id for t in ranking.ranked_targets if t.id not in known]
    if unknown:
        raise ValueError(f"ranking references unknown targets: {unknown[:5]}")
    if len({t.id for t in ranking.ranked_targets}) != len(ranking.ranked_targets):
        raise ValueError("ranking lists a target more than once")


async def refine_ranking(
    rows: list[EvidenceRow],
    *,
    guard: RateLimitGuard = rate_limit_guard,
    timeout: float | None = None,
) -> RankingResponse:
    """LLM ranking of ``rows``, validated; raises on any failure."""
    user_prompt = "Evidence table:\n" + json.dumps(
        [row.to_wire() for row in rows], indent=2, ensure_ascii=False
    )
    ranking = await structured_completion(
        RankingResponse,
        _SYSTEM_PROMPT,
        user_prompt,
        guard=guard,
        timeout=settings.RANKING_TIMEOUT_SECONDS if timeout is None else timeout,
    )
    validate_ranking(ranking, rows)
    ranked = sorted(ranking.ranked_targets, key=lambda t: t.rank)[:MAX_RANKED_TARGETS]
    return ranking.model_copy(update={"ranked_targets": ranked})


async def rank_targets(
    rows: list[EvidenceRow],
    *,
    guard: RateLimitGuard = rate_limit_guard,
    timeout: float | None = None,
) -> RankingResponse:
    """LLM-refined ranking; any failure returns the deterministic ranking."""
    if not rows:
        return rank_targets_fallback(rows)
    try:
        return await refine_ranking(rows, guard=guard, timeout=timeout)
    except Exception as exc:
        logger.warning("LLM ranking unavailable, using deterministic ranking: %r", exc)
        return rank_targets_fallback(rows)
