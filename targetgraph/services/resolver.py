from __future__ import annotations

import logging

from targetgraph.mappings import DISEASE_ID_PATTERN
from targetgraph.models.providers import DiseaseHit
from targetgraph.models.request import ResolveResponse
from targetgraph.services.providers import ProviderAdapter, get_providers

logger = logging.getLogger(__name__)


def pick_disease(query: str, candidates: list[DiseaseHit]) -> tuple[DiseaseHit | None, str]:
    if not candidates:
        return None, "No disease entity candidates found."

    ontology = [c for c in candidates if DISEASE_ID_PATTERN.match(c.id)]
    wanted = query.strip().lower()
    exact = next((c for c in ontology if c.name.lower() == wanted), None)
    if exact is not None:
        return exact, f"Exact name match on {exact.name} ({exact.id})."
    if ontology:
        chosen = ontology[0]
        return chosen, f"Top disease ontology match {chosen.name} ({chosen.id}) out of {len(candidates)} candidates."
    chosen = candidates[0]
    return chosen, f"No ontology-prefixed candidate; using top search hit {chosen.name} ({chosen.id})."


class DiseaseResolver:
    def __init__(self, adapter: ProviderAdapter | None = None):
        self.adapter = adapter

    async def resolve(self, query: str, size: int = 8) -> ResolveResponse:
        query = query.strip()
        if len(query) < 2:
            return ResolveResponse(query=query, rationale="Type at least 2 characters.")

        adapter = self.adapter or get_providers().diseases
        candidates = await adapter.search(query, size)
        selected, rationale = pick_disease(query, candidates)
        logger.info("Resolved %r -> %s", query, selected.id if selected else None)
        return ResolveResponse(
            query=query,
            selected=selected,
            candidates=candidates,
            rationale=rationale,
        )
