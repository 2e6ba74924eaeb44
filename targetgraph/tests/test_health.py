import asyncio
from types import SimpleNamespace

from targetgraph.mappings import SOURCES
from targetgraph.services.health import Probe, ProviderHealthMonitor, default_probes


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _probes(calls: list) -> list[Probe]:
    async def _ok():
        calls.append("opentargets")
        return [1, 2]

    async def _empty():
        calls.append("reactome")
        return []

    async def _hang():
        calls.append("string")
        await asyncio.sleep(5)
        return [1]

    async def _boom():
        calls.append("chembl")
        raise RuntimeError("connection refused")

    return [
        Probe("opentargets", "OpenTargets", _ok, "disease hit(s)"),
        Probe("reactome", "Reactome", _empty, "pathway hit(s)"),
        Probe("string", "STRING", _hang, "interaction(s)"),
        Probe("chembl", "ChEMBL", _boom, "compound(s)"),
    ]


def test_health_check_states_and_details():
    monitor = ProviderHealthMonitor(_probes([]), timeout=0.05)
    snapshot = asyncio.run(monitor.snapshot())
    rows = {row.key: row for row in snapshot.tools}

    assert rows["opentargets"].state == "green"
    assert rows["opentargets"].detail == "sample query returned 2 disease hit(s)"
    assert rows["reactome"].state == "red"
    assert rows["string"].state == "red"
    assert rows["chembl"].state == "red"
    assert rows["chembl"].detail == "connection refused"
    assert snapshot.to_wire()["tools"][0]["latencyMs"] >= 0


def test_snapshot_is_cached_until_ttl_or_refresh():
    calls: list[str] = []
    clock = _Clock()
    monitor = ProviderHealthMonitor(_probes(calls), timeout=0.05, ttl_seconds=90, clock=clock)

    first = asyncio.run(monitor.snapshot())
    second = asyncio.run(monitor.snapshot())
    assert first is second
    assert len(calls) == 4

    asyncio.run(monitor.snapshot(force_refresh=True))
    assert len(calls) == 8

    clock.now = 91
    asyncio.run(monitor.snapshot())
    assert len(calls) == 12


def test_default_probes_cover_every_source():
    class _Adapter:
        async def search(self, query, size):
            return []

    adapter = _Adapter()
    providers = SimpleNamespace(**{name: adapter for name in ("diseases", "pathways", "interactions", "activity_drugs", "articles")})
    assert [p.key for p in default_probes(providers)] == list(SOURCES)
