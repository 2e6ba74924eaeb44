import asyncio

import pytest

from targetgraph.services import providers
from targetgraph.services.cache import TTLCache
from targetgraph.services.session import classify_health


class _SlowTools:
    def __init__(self):
        self.calls = 0

    async def call_tool(self, name, args, timeout=None):
        self.calls += 1
        await asyncio.sleep(5)
        return {}

    async def call_tool_raw(self, name, args, timeout=None):
        self.calls += 1
        await asyncio.sleep(5)
        return ""


class _StaticTools:
    def __init__(self, payloads: dict):
        self.payloads = payloads
        self.calls: list[tuple[str, dict]] = []

    async def call_tool(self, name, args, timeout=None):
        self.calls.append((name, args))
        return self.payloads[name]

    async def call_tool_raw(self, name, args, timeout=None):
        self.calls.append((name, args))
        return self.payloads[name]


def _graphql_targets(*rows):
    return {
        "data": {
            "disease": {
                "associatedTargets": {
                    "rows": [
                        {"score": score, "target": {"id": tid, "approvedSymbol": sym, "approvedName": sym}}
                        for tid, sym, score in rows
                    ]
                }
            }
        }
    }


def test_primary_timeout_then_fallback_hits_is_green(monkeypatch):
    calls = []

    async def _fetch_json(url, **kwargs):
        calls.append(url)
        return _graphql_targets(
            ("ENSG1", "EGFR", 0.91),
            ("ENSG2", "KRAS", 0.8),
            ("ENSG3", "ALK", 0.7),
        )

    monkeypatch.setattr(providers, "fetch_json", _fetch_json)
    adapter = providers.DiseaseTargetsAdapter(_SlowTools(), cache=TTLCache(), tool_timeout=0.01)

    hits = asyncio.run(adapter.search("EFO_0003060", 10))

    assert [h.symbol for h in hits] == ["EGFR", "KRAS", "ALK"]
    assert calls == [providers.OPENTARGETS_GRAPHQL]
    assert classify_health(non_empty=1, degraded=0) == "green"


def test_invalid_record_only_drops_itself(monkeypatch):
    async def _fetch_json(url, **kwargs):
        return _graphql_targets(("ENSG1", "EGFR", 0.9), ("", "BROKEN", 0.5), ("ENSG3", "ALK", 0.7))

    monkeypatch.setattr(providers, "fetch_json", _fetch_json)
    adapter = providers.DiseaseTargetsAdapter(transport_mode="fallback_only", cache=TTLCache())

    hits = asyncio.run(adapter.search("EFO_1", 10))
    assert [h.target_id for h in hits] == ["ENSG1", "ENSG3"]


def test_results_are_cached_and_total_failure_is_not(monkeypatch):
    attempts = {"n": 0}

    async def _failing(url, **kwargs):
        attempts["n"] += 1
        raise RuntimeError("503 from upstream")

    monkeypatch.setattr(providers, "fetch_json", _failing)
    adapter = providers.DiseaseSearchAdapter(transport_mode="fallback_only", cache=TTLCache())
    assert asyncio.run(adapter.search("asthma", 5)) == []
    assert asyncio.run(adapter.search("asthma", 5)) == []
    assert attempts["n"] == 2

    async def _ok(url, **kwargs):
        attempts["n"] += 1
        return {"data": {"search": {"hits": [{"id": "MONDO_0004979", "name": "asthma"}]}}}

    monkeypatch.setattr(providers, "fetch_json", _ok)
    first = asyncio.run(adapter.search("Asthma", 5))
    second = asyncio.run(adapter.search("asthma ", 5))
    assert [h.id for h in first] == [h.id for h in second] == ["MONDO_0004979"]
    assert attempts["n"] == 3


def test_chembl_duplicates_keep_most_potent():
    tools = _StaticTools(
        {
            "search_targets": {"targets": [{"target_chembl_id": "CHEMBL203"}]},
            "search_activities": {
                "activities": [
                    {"molecule_chembl_id": "CHEMBL939", "molecule_pref_name": "GEFITINIB", "standard_value": "120"},
                    {"molecule_chembl_id": "CHEMBL939", "molecule_pref_name": "GEFITINIB", "standard_value": "3.1"},
                    {"molecule_chembl_id": "CHEMBL553", "standard_value": None},
                    {"molecule_chembl_id": "CHEMBL1173655", "standard_value": "15"},
                ]
            },
        }
    )
    adapter = providers.ActivityDrugsAdapter(tools, cache=TTLCache())

    hits = asyncio.run(adapter.search("EGFR", 10))

    assert [h.drug_id for h in hits] == ["CHEMBL939", "CHEMBL1173655", "CHEMBL553"]
    assert hits[0].potency == 3.1
    assert hits[0].name == "GEFITINIB"
    assert hits[2].name == "CHEMBL553"


def test_string_edges_dedupe_unordered_pairs_and_normalize_scores():
    tools = _StaticTools(
        {
            "get_interaction_network": {
                "edges": [
                    {"protein_a": "EGFR", "protein_b": "GRB2", "confidence_score": 999},
                    {"protein_a": "GRB2", "protein_b": "EGFR", "confidence_score": 0.4},
                    {"protein_a": "EGFR", "protein_b": "ERBB2", "confidence_score": 0.8, "evidence_types": "experiments"},
                ]
            }
        }
    )
    adapter = providers.InteractionAdapter(tools, cache=TTLCache())

    hits = asyncio.run(adapter.search(providers.interaction_query(["kras", "EGFR"]), 5))

    assert tools.calls[0][1]["protein_ids"] == ["EGFR", "KRAS"]
    assert len(hits) == 2
    assert hits[0].score == 0.999
    assert hits[1].evidence == ["experiments"]


def test_article_tool_text_is_parsed_and_empty_result_falls_back(monkeypatch):
    raw = "\n".join(
        [
            "# Results",
            "- Somatic EGFR mutations in lung cancer. PMID: 15118073",
            "- A preprint 10.1101/2020.01.01.123456",
            "no identifiers here",
        ]
    )
    adapter = providers.ArticleAdapter(_StaticTools({"article_searcher": raw}), cache=TTLCache())
    hits = asyncio.run(adapter.search(providers.literature_query("EGFR", "lung cancer"), 5))
    assert [h.id for h in hits] == ["15118073", "10.1101/2020.01.01.123456"]
    assert hits[0].url == "https://pubmed.ncbi.nlm.nih.gov/15118073/"

    async def _epmc(url, **kwargs):
        assert kwargs["params"]["query"] == "EGFR lung cancer"
        return {"resultList": {"result": [{"pmid": "1", "title": "t", "journalTitle": "Nature"}]}}

    monkeypatch.setattr(providers, "fetch_json", _epmc)
    empty = providers.ArticleAdapter(_StaticTools({"article_searcher": "nothing found"}), cache=TTLCache())
    hits = asyncio.run(empty.search(providers.literature_query("EGFR", "lung cancer"), 5))
    assert [(h.id, h.source) for h in hits] == [("1", "Nature")]


def test_trial_lines_extract_nct_ids():
    records = providers.TrialAdapter.parse_trial_lines("* nct01234567 Osimertinib trial\nNCT7654321\n", 5)
    assert [r["id"] for r in records] == ["NCT01234567"]
    assert records[0]["kind"] == "trial"


def test_fallback_only_mode_skips_tool(monkeypatch):
    tools = _StaticTools({"find_pathways_by_gene": {"pathways": [{"id": "R-HSA-1", "name": "x"}]}})

    async def _fetch_json(url, **kwargs):
        if "search/query" in url:
            return {"results": [{"typeName": "Protein", "entries": [{"stId": "R-HSA-P00533"}]}]}
        return [{"stId": "R-HSA-177929", "displayName": "Signaling by EGFR", "speciesName": "Homo sapiens"}]

    monkeypatch.setattr(providers, "fetch_json", _fetch_json)
    adapter = providers.PathwayAdapter(tools, cache=TTLCache(), transport_mode="fallback_only")
    hits = asyncio.run(adapter.search("EGFR", 4))

    assert tools.calls == []
    assert [(h.id, h.name, h.species) for h in hits] == [("R-HSA-177929", "Signaling by EGFR", "Homo sapiens")]


def test_adapter_base_requires_a_fallback():
    with pytest.raises(TypeError):
        providers.ProviderAdapter()


def test_tool_less_adapter_goes_straight_to_the_api(monkeypatch):
    tools = _StaticTools({})

    async def _fetch_json(url, **kwargs):
        return {
            "data": {
                "target": {
                    "knownDrugs": {
                        "rows": [
                            {"phase": 2, "drug": {"id": "CHEMBL939", "name": "GEFITINIB"}},
                            {"phase": 4, "drug": {"id": "CHEMBL939", "name": "GEFITINIB"}},
                        ]
                    }
                }
            }
        }

    monkeypatch.setattr(providers, "fetch_json", _fetch_json)
    adapter = providers.KnownDrugsAdapter(tools, cache=TTLCache())
    hits = asyncio.run(adapter.search("ENSG00000146648", 5))

    assert tools.calls == []
    assert [(h.drug_id, h.phase) for h in hits] == [("CHEMBL939", 4.0)]
