from typing import Literal

from pydantic import Field

from targetgraph.models.graph import CamelModel


class ProviderHealthRow(CamelModel):
    key: str
    label: str
    state: Literal["green", "red"]
    detail: str = ""
    latency_ms: int = Field(default=0, ge=0)
    checked_at: str


class ProviderHealthSnapshot(CamelModel):
    checked_at: str
    transport_mode: str
    tools: list[ProviderHealthRow] = Field(default_factory=list)
