import asyncio

import pytest

from targetgraph.config import settings
from targetgraph.models.hypothesis import HypothesisRequest, HypothesisResponse, MechanismThread, SliderWeights
from targetgraph.models.ranking import EvidenceRow
from targetgraph.services import hypothesis
from targetgraph.services.rate_limit import RateLimitGuard


def _table() -> list[EvidenceRow]:
    return [
        EvidenceRow(
            target_id="ENSG1", symbol="PIK3CA", pathway_ids=["R-HSA-1257604"],
            open_targets_evidence=0.9, drug_actionability=1.0, network_centrality=0.5,
            literature_support=0.4, drug_count=4, interaction_count=2, article_count=4,
        ),
        EvidenceRow(
            target_id="ENSG2", symbol="AKT1", pathway_ids=["R-HSA-1257604", "R-HSA-2"],
            open_targets_evidence=0.6, drug_actionability=0.25, network_centrality=1.0,
            literature_support=0.0, drug_count=1, interaction_count=4,
        ),
        EvidenceRow(target_id="ENSG3", symbol="ESR1", pathway_ids=["R-HSA-9"], open_targets_evidence=1.0),
    ]


def _request(**overrides) -> HypothesisRequest:
    values = {
        "disease_id": "EFO_0000305",
        "pathway_id": "R-HSA-1257604",
        "output_count": 3,
        "slider_weights": SliderWeights(novelty_to_actionability=70, risk_tolerance=30),
        "graph_evidence_table": _table(),
    }
    values.update(overrides)
    return HypothesisRequest(**values)


@pytest.mark.parametrize("novelty,risk", [(0, 0), (50, 50), (100, 100), (30, 80)])
def test_weights_are_normalized(novelty, risk):
    weights = hypothesis.normalize_weights(novelty, risk)
    assert sum(weights.values()) == pytest.approx(1.0)
    assert all(0.0 <= w <= 1.0 for w in weights.values())


def test_actionability_slider_shifts_weight_to_drugs():
    novel = hypothesis.normalize_weights(0, 50)
    actionable = hypothesis.normalize_weights(100, 50)
    assert actionable["drugActionability"] > novel["drugActionability"]
    assert actionable["networkCentrality"] < novel["networkCentrality"]


def test_only_pathway_rows_are_scored_in_descending_order():
    scored = hypothesis.score_pathway_targets(_request())
    assert [row.symbol for row, _ in scored] == ["PIK3CA", "AKT1"]
    assert scored[0][1] > scored[1][1]


def test_missing_inputs_for_empty_pathway_flags_everything():
    assert hypothesis.missing_inputs([]) == [
        "No targets linked to selected pathway",
        "No literature/trial support provided for selected pathway targets",
        "No drug associations provided for selected pathway targets",
        "No interaction neighborhood provided for selected pathway targets",
    ]


def test_fallback_narrative_without_llm(monkeypatch):
    monkeypatch.setattr(settings, "LLM_ENABLED", False)
    response = asyncio.run(hypothesis.generate_hypothesis(_request(output_count=1), guard=RateLimitGuard()))

    assert [t.symbol for t in response.recommended_targets] == ["PIK3CA"]
    assert response.mechanism_thread.claim.startswith("Within pathway R-HSA-1257604, PIK3CA")
    assert len(response.mechanism_thread.evidence_bullets) == 2
    assert response.missing_inputs == []
    assert response.mechanism_thread.caveats == ["No explicit missing input flags were provided."]


def test_fallback_for_unknown_pathway(monkeypatch):
    monkeypatch.setattr(settings, "LLM_ENABLED", False)
    response = asyncio.run(
        hypothesis.generate_hypothesis(_request(pathway_id="R-HSA-404"), guard=RateLimitGuard())
    )
    assert response.recommended_targets == []
    assert response.mechanism_thread.claim.startswith("Insufficient evidence rows")
    assert "No targets linked to selected pathway" in response.missing_inputs


def test_llm_thread_citing_foreign_targets_is_rejected(monkeypatch):
    async def _completion(*_args, **_kwargs):
        return HypothesisResponse.model_validate(
            {
                "recommendedTargets": [
                    {
                        "id": "ENSG3",
                        "symbol": "ESR1",
                        "score": 0.9,
                        "scoreBreakdown": {
                            "openTargetsEvidence": 1.0,
                            "drugActionability": 0.0,
                            "networkCentrality": 0.0,
                            "literatureSupport": 0.0,
                        },
                        "pathwayId": "R-HSA-1257604",
                    }
                ],
                "mechanismThread": MechanismThread(claim="ESR1 drives it").to_wire(),
                "missingInputs": [],
            }
        )

    monkeypatch.setattr(hypothesis, "structured_completion", _completion)
    response = asyncio.run(hypothesis.generate_hypothesis(_request(), guard=RateLimitGuard()))
    assert response.recommended_targets[0].symbol == "PIK3CA"


def test_llm_timeout_uses_fallback(monkeypatch):
    async def _slow(*_args, **_kwargs):
        raise asyncio.TimeoutError()

    monkeypatch.setattr(hypothesis, "structured_completion", _slow)
    response = asyncio.run(hypothesis.generate_hypothesis(_request(), guard=RateLimitGuard()))
    assert response.mechanism_thread.next_experiments
