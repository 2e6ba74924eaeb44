from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from targetgraph.config import settings
from targetgraph.mappings import SOURCES
from targetgraph.models.health import ProviderHealthRow, ProviderHealthSnapshot
from targetgraph.services.cache import TTLCache
from targetgraph.services.providers import (
    ProviderSet,
    get_providers,
    interaction_query,
    literature_query,
)

logger = logging.getLogger(__name__)

_SNAPSHOT_KEY = "snapshot"


@dataclass
class Probe:
    key: str
    label: str
    run: Callable[[], Awaitable[list]]
    noun: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_probes(providers: ProviderSet) -> list[Probe]:
    """One small known-good query per source, in ``SOURCES`` order."""
    probes = [
        Probe("opentargets", "OpenTargets", lambda: providers.diseases.search("obesity", 2), "disease hit(s)"),
        Probe("reactome", "Reactome", lambda: providers.pathways.search("IL6", 3), "pathway hit(s)"),
        Probe(
            "string",
            "STRING",
            lambda: providers.interactions.search(interaction_query(["IL6", "TNF"]), 8),
            "interaction(s)",
        ),
        Probe("chembl", "ChEMBL", lambda: providers.activity_drugs.search("EGFR", 3), "compound(s)"),
        Probe(
            "biomcp",
            "BioMCP",
            lambda: providers.articles.search(literature_query("IL6", "obesity"), 2),
            "article(s)",
        ),
    ]
    by_key = {p.key: p for p in probes}
    return [by_key[source] for source in SOURCES]


class ProviderHealthMonitor:
    """Timed sample query per source; snapshots are cached for a short while."""

    def __init__(
        self,
        probes: list[Probe] | None = None,
        *,
        timeout: float | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._probes = probes
        self.timeout = settings.HEALTH_PROBE_TIMEOUT_SECONDS if timeout is None else timeout
        self.cache = TTLCache(
            ttl_seconds=settings.HEALTH_SNAPSHOT_TTL_SECONDS if ttl_seconds is None else ttl_seconds,
            max_entries=1,
            clock=clock,
        )

    @property
    def probes(self) -> list[Probe]:
        if self._probes is None:
            self._probes = default_probes(get_providers())
        return self._probes

    async def _run_probe(self, probe: Probe) -> ProviderHealthRow:
        started = time.perf_counter()
        try:
            hits = await asyncio.wait_for(probe.run(), timeout=self.timeout)
        except Exception as exc:
            logger.warning("Health probe for %s failed: %r", probe.key, exc)
            ok, detail = False, str(exc) or type(exc).__name__
        else:
            ok, detail = bool(hits), f"sample query returned {len(hits)} {probe.noun}"
        return ProviderHealthRow(
            key=probe.key,
            label=probe.label,
            state="green" if ok else "red",
            detail=detail,
            latency_ms=int((time.perf_counter() - started) * 1000),
            checked_at=_now_iso(),
        )

    async def snapshot(self, force_refresh: bool = False) -> ProviderHealthSnapshot:
        if not force_refresh:
            cached = self.cache.get(_SNAPSHOT_KEY)
            if cached is not None:
                return cached

        rows = await asyncio.gather(*(self._run_probe(p) for p in self.probes))
        snapshot = ProviderHealthSnapshot(
            checked_at=_now_iso(),
            transport_mode=settings.MCP_TRANSPORT_MODE,
            tools=list(rows),
        )
        self.cache.set(_SNAPSHOT_KEY, snapshot)
        return snapshot


_monitor: ProviderHealthMonitor | None = None


def get_health_monitor() -> ProviderHealthMonitor:
    global _monitor
    if _monitor is None:
        _monitor = ProviderHealthMonitor()
    return _monitor
