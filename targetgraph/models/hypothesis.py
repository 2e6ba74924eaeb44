from typing import Literal

from pydantic import Field

from targetgraph.models.graph import CamelModel
from targetgraph.models.ranking import EvidenceRow


class SliderWeights(CamelModel):
    novelty_to_actionability: float = Field(default=50.0, ge=0.0, le=100.0)
    risk_tolerance: float = Field(default=50.0, ge=0.0, le=100.0)


class HypothesisRequest(CamelModel):
    disease_id: str = Field(..., min_length=1)
    pathway_id: str = Field(..., min_length=1)
    output_count: Literal[1, 3] = 3
    slider_weights: SliderWeights = Field(default_factory=SliderWeights)
    graph_evidence_table: list[EvidenceRow] = Field(default_factory=list)


class ScoreBreakdown(CamelModel):
    open_targets_evidence: float
    drug_actionability: float
    network_centrality: float
    literature_support: float


class RecommendedTarget(CamelModel):
    id: str
    symbol: str
    score: float
    score_breakdown: ScoreBreakdown
    pathway_id: str


class MechanismThread(CamelModel):
    claim: str
    evidence_bullets: list[str] = Field(default_factory=list)
    counterfactuals: list[str] = Field(default_factory=list)
    caveats: list[str] = Field(default_factory=list)
    next_experiments: list[str] = Field(default_factory=list)


class HypothesisResponse(CamelModel):
    recommended_targets: list[RecommendedTarget] = Field(default_factory=list)
    mechanism_thread: MechanismThread
    missing_inputs: list[str] = Field(default_factory=list)
