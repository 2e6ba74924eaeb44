from dataclasses import dataclass, field

from pydantic import Field

from targetgraph.models.graph import CamelModel


class StreamStatus(CamelModel):
    phase: str
    message: str
    pct: int = Field(..., ge=0, le=100)
    elapsed_ms: int = 0
    partial: bool = False
    counts: dict[str, int] = Field(default_factory=dict)
    source_health: dict[str, str] = Field(default_factory=dict)


class StreamError(CamelModel):
    phase: str
    message: str
    recoverable: bool


class PathUpdate(CamelModel):
    node_ids: list[str]
    edge_ids: list[str]
    summary: str

    @property
    def signature(self) -> str:
        return "|".join(self.node_ids) + "::" + "|".join(self.edge_ids)


@dataclass
class StreamEvent:
    event: str
    data: dict = field(default_factory=dict)
