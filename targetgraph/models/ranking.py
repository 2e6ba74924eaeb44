from pydantic import ConfigDict, Field

from targetgraph.models.graph import CamelModel


class EvidenceRow(CamelModel):
    target_id: str
    symbol: str
    pathway_ids: list[str] = Field(default_factory=list)
    open_targets_evidence: float = Field(default=0.0, ge=0.0, le=1.0)
    drug_actionability: float = Field(default=0.0, ge=0.0, le=1.0)
    network_centrality: float = Field(default=0.0, ge=0.0, le=1.0)
    literature_support: float = Field(default=0.0, ge=0.0, le=1.0)
    drug_count: int = Field(default=0, ge=0)
    interaction_count: int = Field(default=0, ge=0)
    article_count: int = Field(default=0, ge=0)
    trial_count: int = Field(default=0, ge=0)


class EvidenceRef(CamelModel):
    model_config = ConfigDict(frozen=True)

    field: str
    value: float | str


class RankedTarget(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    rank: int = Field(..., ge=1)
    score: float = Field(..., ge=0.0, le=1.0)
    reasons: list[str] = Field(default_factory=list)
    caveats: list[str] = Field(default_factory=list)
    pathway_hooks: list[str] = Field(default_factory=list)
    drug_hooks: list[str] = Field(default_factory=list)
    interaction_hooks: list[str] = Field(default_factory=list)
    evidence_refs: list[EvidenceRef] = Field(default_factory=list)


class SystemSummary(CamelModel):
    key_pathways: list[str] = Field(default_factory=list)
    actionable_targets: list[str] = Field(default_factory=list)
    data_gaps: list[str] = Field(default_factory=list)


class RankingResponse(CamelModel):
    ranked_targets: list[RankedTarget] = Field(default_factory=list)
    system_summary: SystemSummary = Field(default_factory=SystemSummary)


class RankRequest(CamelModel):
    evidence_rows: list[EvidenceRow] = Field(default_factory=list, max_length=200)
