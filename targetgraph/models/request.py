from typing import Literal

from pydantic import Field

from targetgraph.models.graph import CamelModel
from targetgraph.models.providers import DiseaseHit


class BuildRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=500)
    disease_id: str | None = Field(default=None, max_length=200)
    mode: Literal["fast", "balanced", "deep"] = "balanced"
    seed_targets: list[str] = Field(default_factory=list, max_length=25)


class ResolveRequest(CamelModel):
    query: str = Field(..., max_length=500)


class ResolveResponse(CamelModel):
    query: str
    selected: DiseaseHit | None = None
    candidates: list[DiseaseHit] = Field(default_factory=list)
    rationale: str = ""
