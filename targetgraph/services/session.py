from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from targetgraph.mappings import HEALTH_LEVELS
from targetgraph.models.graph import make_node_id
from targetgraph.models.ranking import RankingResponse
from targetgraph.models.request import BuildRequest
from targetgraph.services.aggregator import GraphAggregator


def classify_health(non_empty: int, degraded: int) -> str:
    """red: nothing came back; yellow: results, but some fetches were cut; green otherwise."""
    if non_empty == 0:
        return "red"
    if degraded > 0:
        return "yellow"
    return "green"


@dataclass
class TargetRef:
    node_id: str
    primary_id: str
    symbol: str
    score: float


@dataclass
class BuildSession:
    """Mutable state for one streaming build; discarded when the stream ends."""

    request: BuildRequest
    aggregator: GraphAggregator = field(default_factory=GraphAggregator)
    source_health: dict[str, str] = field(default_factory=dict)
    ranking: RankingResponse | None = None
    phase: str = "P0"
    started_at: float = field(default_factory=time.monotonic)
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    disease_id: str = ""
    disease_name: str = ""
    targets: list[TargetRef] = field(default_factory=list)

    @property
    def disease_node_id(self) -> str:
        return make_node_id("disease", self.disease_id)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled.is_set()

    def cancel(self) -> None:
        self.cancelled.set()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def record_health(self, source: str, level: str) -> None:
        """Keep the worst level seen for ``source`` during this session."""
        current = self.source_health.get(source)
        if current is None or HEALTH_LEVELS.index(level) > HEALTH_LEVELS.index(current):
            self.source_health[source] = level

    def target_by_symbol(self, symbol: str) -> TargetRef | None:
        wanted = symbol.strip().upper()
        return next((t for t in self.targets if t.symbol.upper() == wanted), None)
