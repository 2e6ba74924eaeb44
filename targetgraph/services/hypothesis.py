from __future__ import annotations

import json
import logging

from targetgraph.config import settings
from targetgraph.models.graph import clamp
from targetgraph.models.hypothesis import (
    HypothesisRequest,
    HypothesisResponse,
    MechanismThread,
    RecommendedTarget,
    ScoreBreakdown,
)
from targetgraph.models.ranking import EvidenceRow
from targetgraph.services.llm import structured_completion
from targetgraph.services.rate_limit import RateLimitGuard, rate_limit_guard

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = " ".join(
    [
        "Generate a mechanism thread from provided hypothesis evidence.",
        "Use only supplied values and IDs.",
        "If a detail is not provided, write 'not provided'.",
        "No efficacy claims and no clinical recommendations.",
    ]
)


def normalize_weights(novelty_to_actionability: float, risk_tolerance: float) -> dict[str, float]:
    """Slider positions (0-100) to evidence weights that sum to 1."""
    actionability_bias = novelty_to_actionability / 100
    novelty_bias = 1 - actionability_bias
    risk_bias = risk_tolerance / 100

    weights = {
        "openTargetsEvidence": clamp(0.35 - novelty_bias * 0.1),
        "drugActionability": clamp(0.2 + actionability_bias * 0.3),
        "networkCentrality": clamp(0.2 + novelty_bias * 0.2),
        "literatureSupport": clamp(0.25 - risk_bias * 0.15 + (1 - novelty_bias) * 0.1),
    }
    total = sum(weights.values())
    return {name: value / total for name, value in weights.items()}


def _breakdown(row: EvidenceRow) -> ScoreBreakdown:
    return ScoreBreakdown(
        open_targets_evidence=row.open_targets_evidence,
        drug_actionability=row.drug_actionability,
        network_centrality=row.network_centrality,
        literature_support=row.literature_support,
    )


def score_pathway_targets(request: HypothesisRequest) -> list[tuple[EvidenceRow, float]]:
    weights = normalize_weights(
        request.slider_weights.novelty_to_actionability,
        request.slider_weights.risk_tolerance,
    )
    rows = [r for r in request.graph_evidence_table if request.pathway_id in r.pathway_ids]
    scored = [
        (
            row,
            weights["openTargetsEvidence"] * row.open_targets_evidence
            + weights["drugActionability"] * row.drug_actionability
            + weights["networkCentrality"] * row.network_centrality
            + weights["literatureSupport"] * row.literature_support,
        )
        for row in rows
    ]
    return sorted(scored, key=lambda item: item[1], reverse=True)


def missing_inputs(rows: list[EvidenceRow]) -> list[str]:
    # The last three checks hold vacuously for an empty pathway.
    flags: list[str] = []
    if not rows:
        flags.append("No targets linked to selected pathway")
    if all(row.literature_support <= 0 for row in rows):
        flags.append("No literature/trial support provided for selected pathway targets")
    if all(row.drug_count <= 0 for row in rows):
        flags.append("No drug associations provided for selected pathway targets")
    if all(row.interaction_count <= 0 for row in rows):
        flags.append("No interaction neighborhood provided for selected pathway targets")
    return flags


def mechanism_thread_fallback(
    request: HypothesisRequest,
    scored: list[tuple[EvidenceRow, float]],
    flags: list[str],
) -> HypothesisResponse:
    pathway_id = request.pathway_id
    if scored:
        claim = (
            f"Within pathway {pathway_id}, {scored[0][0].symbol} is the strongest "
            "mechanistic lever in this evidence table."
        )
    else:
        claim = f"Insufficient evidence rows to generate a pathway-specific claim for {pathway_id}."

    return HypothesisResponse(
        recommended_targets=[
            RecommendedTarget(
                id=row.target_id,
                symbol=row.symbol,
                score=round(score, 4),
                score_breakdown=_breakdown(row),
                pathway_id=pathway_id,
            )
            for row, score in scored[: request.output_count]
        ],
        mechanism_thread=MechanismThread(
            claim=claim,
            evidence_bullets=[
                f"{row.symbol}: OT={row.open_targets_evidence:.2f}, Drug={row.drug_actionability:.2f}, "
                f"Centrality={row.network_centrality:.2f}, Literature={row.literature_support:.2f}"
                for row, _ in scored[:3]
            ],
            counterfactuals=["Alternative same-pathway targets may change if missing inputs are added."],
            caveats=list(flags) or ["No explicit missing input flags were provided."],
            next_experiments=[
                "Confirm target perturbation effect in pathway-relevant cellular model.",
                "Compare prioritized targets with matched perturbation controls.",
            ],
        ),
        missing_inputs=list(flags),
    )


async def generate_hypothesis(
    request: HypothesisRequest,
    *,
    guard: RateLimitGuard = rate_limit_guard,
    timeout: float | None = None,
) -> HypothesisResponse:
    scored = score_pathway_targets(request)
    flags = missing_inputs([row for row, _ in scored])
    fallback = mechanism_thread_fallback(request, scored, flags)

    payload = {
        "diseaseId": request.disease_id,
        "pathwayId": request.pathway_id,
        "outputCount": request.output_count,
        "missingInputs": flags,
        "scoredTargets": [
            {
                "id": row.target_id,
                "symbol": row.symbol,
                "score": round(score, 4),
                "scoreBreakdown": _breakdown(row).to_wire(),
            }
            for row, score in scored
        ],
    }
    try:
        response = await structured_completion(
            HypothesisResponse,
            _SYSTEM_PROMPT,
            json.dumps(payload, indent=2, ensure_ascii=False),
            guard=guard,
            timeout=settings.HYPOTHESIS_TIMEOUT_SECONDS if timeout is None else timeout,
        )
    except Exception as exc:
        logger.warning("Mechanism thread generation failed, using deterministic narrative: %r", exc)
        return fallback

    known = {row.target_id for row, _ in scored}
    if any(t.id not in known for t in response.recommended_targets):
        logger.warning("Mechanism thread cited targets outside the pathway; using deterministic narrative")
        return fallback
    return response.model_copy(
        update={
            "recommended_targets": response.recommended_targets[: request.output_count],
            "missing_inputs": flags,
        }
    )
