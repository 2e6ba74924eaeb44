from typing import Literal

from pydantic import Field

from targetgraph.models.graph import CamelModel


class DiseaseHit(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str | None = None


class TargetHit(CamelModel):
    target_id: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1)
    name: str | None = None
    association_score: float = Field(default=0.0, ge=0.0, le=1.0)


class DrugHit(CamelModel):
    drug_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    source: Literal["opentargets", "chembl"] = "opentargets"
    phase: float | None = None
    status: str | None = None
    mechanism_of_action: str | None = None
    drug_type: str | None = None
    activity_type: str | None = None
    potency: float | None = None
    potency_units: str | None = None
    target_chembl_id: str | None = None


class PathwayHit(CamelModel):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    species: str | None = None
    url: str | None = None


class InteractionHit(CamelModel):
    source_symbol: str = Field(..., min_length=1)
    target_symbol: str = Field(..., min_length=1)
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[str] = Field(default_factory=list)


class LiteratureHit(CamelModel):
    id: str = Field(..., min_length=1)
    title: str = "Untitled"
    source: str = ""
    url: str | None = None
    kind: Literal["article", "trial"] = "article"
    status: str | None = None
