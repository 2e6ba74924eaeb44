from __future__ import annotations

import abc
import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

from pydantic import ValidationError

from targetgraph.config import settings
from targetgraph.models.graph import CamelModel, clamp
from targetgraph.models.providers import (
    DiseaseHit,
    DrugHit,
    InteractionHit,
    LiteratureHit,
    PathwayHit,
    TargetHit,
)
from targetgraph.services.cache import TTLCache
from targetgraph.services.http import fetch_json
from targetgraph.services.tools import McpToolClient, ToolCallError, ToolCaller

logger = logging.getLogger(__name__)

OPENTARGETS_GRAPHQL = "https://api.platform.opentargets.org/api/v4/graphql"
REACTOME_CONTENT = "https://reactome.org/ContentService"
STRING_API = "https://string-db.org/api/json"
CHEMBL_API = "https://www.ebi.ac.uk/chembl/api/data"
EUROPE_PMC_SEARCH = "https://www.ebi.ac.uk/europepmc/webservices/rest/search"
CTGOV_STUDIES = "https://clinicaltrials.gov/api/v2/studies"

_PMID = re.compile(r"PMID[:\s]+(\d+)", re.IGNORECASE)
_DOI = re.compile(r"10\.\d{4,9}/[\w.\-;()/:]+", re.IGNORECASE)
_NCT = re.compile(r"(NCT\d{8})", re.IGNORECASE)


def _dig(payload: object, *keys: str) -> object:
    current = payload
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _rows(payload: object, *keys: str) -> list:
    value = _dig(payload, *keys) if keys else payload
    return value if isinstance(value, list) else []


def _to_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def literature_query(symbol: str, disease: str) -> str:
    return f"{symbol}::{disease}"


def _split_literature_query(query: str) -> tuple[str, str]:
    symbol, _, disease = query.partition("::")
    return symbol.strip(), disease.strip()


class ProviderAdapter(abc.ABC):
    """Primary tool call, then direct API fallback, behind a TTL cache.

    ``search`` never raises: transport failures degrade to an empty list and
    each upstream record is validated on its own, so one bad record only
    drops itself.
    """

    source: str = ""
    tool_name: str | None = None
    hit_model: type[CamelModel] = CamelModel
    fallback_on_empty = False

    def __init__(
        self,
        tools: ToolCaller | None = None,
        cache: TTLCache | None = None,
        tool_timeout: float | None = None,
        fallback_timeout: float | None = None,
        transport_mode: str | None = None,
    ):
        self.tools = tools
        self.cache = cache if cache is not None else TTLCache()
        self.tool_timeout = settings.TOOL_TIMEOUT_SECONDS if tool_timeout is None else tool_timeout
        self.fallback_timeout = (
            settings.FALLBACK_TIMEOUT_SECONDS if fallback_timeout is None else fallback_timeout
        )
        self.transport_mode = transport_mode or settings.MCP_TRANSPORT_MODE

    async def _primary(self, query: str, size: int) -> list[dict]:
        raise ToolCallError(f"{self.source} adapter has no tool")

    @abc.abstractmethod
    async def _fallback(self, query: str, size: int) -> list[dict]:
        ...

    def identity(self, hit) -> str:
        return str(getattr(hit, "id"))

    def prefer(self, existing, incoming):
        return existing

    async def _finalize(self, hits: list, size: int) -> list:
        return hits[:size]

    def _use_primary(self) -> bool:
        return self.tools is not None and self.tool_name is not None and self.transport_mode != "fallback_only"

    def _validate(self, records: list) -> list:
        hits = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                hits.append(self.hit_model.model_validate(record))
            except ValidationError as exc:
                logger.debug("Dropping invalid %s record: %s", self.source, exc.errors()[:1])
        return hits

    def _dedupe(self, hits: list) -> list:
        kept: dict[str, object] = {}
        for hit in hits:
            key = self.identity(hit)
            kept[key] = self.prefer(kept[key], hit) if key in kept else hit
        return list(kept.values())

    async def search(self, query: str, size: int) -> list:
        key = (query.strip().lower(), size)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        records: list | None = None
        if self._use_primary():
            try:
                records = await asyncio.wait_for(self._primary(query, size), timeout=self.tool_timeout)
            except Exception as exc:
                logger.warning(
                    "%s tool %s failed for %r, falling back to direct API: %r",
                    self.source,
                    self.tool_name,
                    query,
                    exc,
                )
            if records is not None and not records and self.fallback_on_empty:
                records = None

        if records is None:
            try:
                records = await asyncio.wait_for(self._fallback(query, size), timeout=self.fallback_timeout)
            except Exception as exc:
                logger.warning(
                    "%s direct API failed for %r: %r",
                    self.source,
                    query,
                    exc,
                )
                return []

        hits = await self._finalize(self._dedupe(self._validate(records)), size)
        self.cache.set(key, hits)
        return list(hits)


class DiseaseSearchAdapter(ProviderAdapter):
    source = "opentargets"
    tool_name = "search_diseases"
    hit_model = DiseaseHit

    _QUERY = """
      query SearchDiseases($queryString: String!) {
        search(queryString: $queryString, entityNames: ["disease"]) {
          hits { id name description }
        }
      }
    """

    @staticmethod
    def _map(rows: list) -> list[dict]:
        return [
            {"id": hit.get("id"), "name": hit.get("name"), "description": hit.get("description")}
            for hit in rows
            if isinstance(hit, dict)
        ]

    async def _primary(self, query: str, size: int) -> list[dict]:
        payload = await self.tools.call_tool(self.tool_name, {"query": query, "size": size}, self.tool_timeout)
        return self._map(_rows(payload, "data", "search", "hits"))

    async def _fallback(self, query: str, size: int) -> list[dict]:
        payload = await fetch_json(
            OPENTARGETS_GRAPHQL,
            method="POST",
            json_body={"query": self._QUERY, "variables": {"queryString": query}},
            timeout=self.fallback_timeout,
        )
        return self._map(_rows(payload, "data", "search", "hits"))


class DiseaseTargetsAdapter(ProviderAdapter):
    source = "opentargets"
    tool_name = "get_disease_targets_summary"
    hit_model = TargetHit

    _QUERY = """
      query DiseaseTargets($efoId: String!, $size: Int!) {
        disease(efoId: $efoId) {
          associatedTargets(page: {index: 0, size: $size}) {
            rows {
              score
              target { id approvedName approvedSymbol }
            }
          }
        }
      }
    """

    def identity(self, hit: TargetHit) -> str:
        return hit.target_id

    async def _primary(self, query: str, size: int) -> list[dict]:
        payload = await self.tools.call_tool(
            self.tool_name, {"diseaseId": query, "size": size}, self.tool_timeout
        )
        return [
            {
                "target_id": row.get("targetId"),
                "symbol": row.get("targetSymbol"),
                "name": row.get("targetName"),
                "association_score": clamp(_to_float(row.get("associationScore"))),
            }
            for row in _rows(payload, "topTargets")
            if isinstance(row, dict)
        ]

    async def _fallback(self, query: str, size: int) -> list[dict]:
        payload = await fetch_json(
            OPENTARGETS_GRAPHQL,
            method="POST",
            json_body={"query": self._QUERY, "variables": {"efoId": query, "size": size}},
            timeout=self.fallback_timeout,
        )
        records = []
        for row in _rows(payload, "data", "disease", "associatedTargets", "rows"):
            target = _dig(row, "target") or {}
            records.append(
                {
                    "target_id": target.get("id"),
                    "symbol": target.get("approvedSymbol"),
                    "name": target.get("approvedName"),
                    "association_score": clamp(_to_float(_dig(row, "score"))),
                }
            )
        return records


class KnownDrugsAdapter(ProviderAdapter):
    """Open Targets known drugs; there is no tool for this, so only the API is used."""

    source = "opentargets"
    tool_name = None
    hit_model = DrugHit

    _QUERY = """
      query TargetKnownDrugs($id: String!) {
        target(ensemblId: $id) {
          knownDrugs(size: 50) {
            rows {
              phase
              status
              mechanismOfAction
              drug { id name maximumClinicalTrialPhase drugType }
            }
          }
        }
      }
    """

    def identity(self, hit: DrugHit) -> str:
        return hit.drug_id

    def prefer(self, existing: DrugHit, incoming: DrugHit) -> DrugHit:
        return incoming if (incoming.phase or 0) > (existing.phase or 0) else existing

    async def _fallback(self, query: str, size: int) -> list[dict]:
        payload = await fetch_json(
            OPENTARGETS_GRAPHQL,
            method="POST",
            json_body={"query": self._QUERY, "variables": {"id": query}},
            timeout=self.fallback_timeout,
        )
        records = []
        for row in _rows(payload, "data", "target", "knownDrugs", "rows"):
            drug = _dig(row, "drug") or {}
            phase = _to_float(_dig(row, "phase"))
            if phase is None:
                phase = _to_float(drug.get("maximumClinicalTrialPhase"))
            records.append(
                {
                    "drug_id": drug.get("id"),
                    "name": drug.get("name"),
                    "source": "opentargets",
                    "phase": phase or 0.0,
                    "status": _dig(row, "status"),
                    "mechanism_of_action": _dig(row, "mechanismOfAction"),
                    "drug_type": drug.get("drugType"),
                }
            )
        return records


class ActivityDrugsAdapter(ProviderAdapter):
    """ChEMBL bioactivity compounds for a target symbol, most potent first."""

    source = "chembl"
    tool_name = "search_activities"
    hit_model = DrugHit
    max_target_ids = 2
    activity_limit = 30

    def identity(self, hit: DrugHit) -> str:
        return hit.drug_id

    def prefer(self, existing: DrugHit, incoming: DrugHit) -> DrugHit:
        if (incoming.potency if incoming.potency is not None else float("inf")) < (
            existing.potency if existing.potency is not None else float("inf")
        ):
            return incoming
        return existing

    async def _finalize(self, hits: list[DrugHit], size: int) -> list[DrugHit]:
        ordered = sorted(hits, key=lambda h: h.potency if h.potency is not None else float("inf"))
        return ordered[:size]

    @staticmethod
    def _map_activities(rows: list, target_chembl_id: str) -> list[dict]:
        records = []
        for activity in rows:
            if not isinstance(activity, dict):
                continue
            molecule_id = activity.get("molecule_chembl_id")
            records.append(
                {
                    "drug_id": molecule_id,
                    "name": activity.get("molecule_pref_name") or molecule_id,
                    "source": "chembl",
                    "activity_type": activity.get("standard_type"),
                    "potency": _to_float(activity.get("standard_value")),
                    "potency_units": activity.get("standard_units"),
                    "target_chembl_id": target_chembl_id,
                }
            )
        return records

    async def _primary(self, query: str, size: int) -> list[dict]:
        targets = await self.tools.call_tool(
            "search_targets",
            {"query": query, "organism": "Homo sapiens", "limit": 5},
            self.tool_timeout,
        )
        target_ids = [t.get("target_chembl_id") for t in _rows(targets, "targets") if isinstance(t, dict)]
        records: list[dict] = []
        for target_chembl_id in [t for t in target_ids if t][: self.max_target_ids]:
            payload = await self.tools.call_tool(
                self.tool_name,
                {"target_chembl_id": target_chembl_id, "limit": self.activity_limit},
                self.tool_timeout,
            )
            records.extend(self._map_activities(_rows(payload, "activities"), target_chembl_id))
        return records

    async def _fallback(self, query: str, size: int) -> list[dict]:
        targets = await fetch_json(
            f"{CHEMBL_API}/target/search.json",
            params={"q": query, "limit": 5},
            timeout=self.fallback_timeout,
        )
        target_ids = [t.get("target_chembl_id") for t in _rows(targets, "targets") if isinstance(t, dict)]
        records: list[dict] = []
        for target_chembl_id in [t for t in target_ids if t][: self.max_target_ids]:
            payload = await fetch_json(
                f"{CHEMBL_API}/activity.json",
                params={"target_chembl_id": target_chembl_id, "limit": self.activity_limit},
                timeout=self.fallback_timeout,
            )
            records.extend(self._map_activities(_rows(payload, "activities"), target_chembl_id))
        return records


class PathwayAdapter(ProviderAdapter):
    source = "reactome"
    tool_name = "find_pathways_by_gene"
    hit_model = PathwayHit

    async def _primary(self, query: str, size: int) -> list[dict]:
        payload = await self.tools.call_tool(
            self.tool_name, {"gene": query, "species": "Homo sapiens"}, self.tool_timeout
        )
        return [
            {
                "id": p.get("id"),
                "name": p.get("name"),
                "species": p.get("species"),
                "url": p.get("url"),
            }
            for p in _rows(payload, "pathways")
            if isinstance(p, dict)
        ]

    async def _fallback(self, query: str, size: int) -> list[dict]:
        search = await fetch_json(
            f"{REACTOME_CONTENT}/search/query",
            params={"query": query, "types": "Protein", "cluster": "true"},
            timeout=self.fallback_timeout,
        )
        group = next(
            (g for g in _rows(search, "results") if isinstance(g, dict) and g.get("typeName") == "Protein"),
            None,
        )
        entries = _rows(group, "entries")
        st_id = entries[0].get("stId") if entries and isinstance(entries[0], dict) else None
        if not st_id:
            return []

        raw = await fetch_json(
            f"{REACTOME_CONTENT}/data/pathways/low/entity/{quote(st_id)}",
            timeout=self.fallback_timeout,
        )
        records = []
        for pathway in _rows(raw):
            if not isinstance(pathway, dict):
                continue
            name = pathway.get("displayName") or pathway.get("name")
            if isinstance(name, list):
                name = name[0] if name else None
            species = pathway.get("speciesName")
            if species is None:
                species = _dig((_rows(pathway, "species") or [{}])[0], "displayName")
            records.append(
                {
                    "id": pathway.get("stId"),
                    "name": name,
                    "species": species,
                    "url": f"https://reactome.org/content/detail/{pathway.get('stId')}",
                }
            )
        return records


class InteractionAdapter(ProviderAdapter):
    """STRING network around a seed set.

    The query is the comma-joined symbol list (see ``interaction_query``);
    ``size`` is the number of neighbor proteins STRING may add.
    """

    source = "string"
    tool_name = "get_interaction_network"
    hit_model = InteractionHit
    edges_per_neighbor = 4

    def identity(self, hit: InteractionHit) -> str:
        return "|".join(sorted((hit.source_symbol.upper(), hit.target_symbol.upper())))

    def prefer(self, existing: InteractionHit, incoming: InteractionHit) -> InteractionHit:
        return incoming if incoming.score > existing.score else existing

    async def _finalize(self, hits: list[InteractionHit], size: int) -> list[InteractionHit]:
        return hits[: max(size, 1) * self.edges_per_neighbor]

    @staticmethod
    def _required_score() -> int:
        return round(clamp(settings.STRING_CONFIDENCE) * 1000)

    async def _primary(self, query: str, size: int) -> list[dict]:
        payload = await self.tools.call_tool(
            self.tool_name,
            {
                "protein_ids": query.split(","),
                "species": "9606",
                "add_nodes": size,
                "required_score": self._required_score(),
            },
            self.tool_timeout,
        )
        records = []
        for edge in _rows(payload, "edges"):
            if not isinstance(edge, dict):
                continue
            score = _to_float(edge.get("confidence_score")) or 0.0
            evidence = edge.get("evidence_types")
            if isinstance(evidence, str):
                evidence = [evidence]
            records.append(
                {
                    "source_symbol": edge.get("protein_a"),
                    "target_symbol": edge.get("protein_b"),
                    "score": clamp(score / 1000 if score > 1 else score),
                    "evidence": evidence if isinstance(evidence, list) else [],
                }
            )
        return records

    async def _fallback(self, query: str, size: int) -> list[dict]:
        raw = await fetch_json(
            f"{STRING_API}/network",
            params={
                "identifiers": "\r".join(query.split(",")),
                "species": 9606,
                "required_score": self._required_score(),
                "add_white_nodes": size,
            },
            timeout=self.fallback_timeout,
        )
        records = []
        for row in _rows(raw):
            if not isinstance(row, dict):
                continue
            records.append(
                {
                    "source_symbol": row.get("preferredName_A") or row.get("preferredNameA"),
                    "target_symbol": row.get("preferredName_B") or row.get("preferredNameB"),
                    "score": clamp(_to_float(row.get("score"))),
                }
            )
        return records


def interaction_query(symbols: list[str]) -> str:
    return ",".join(sorted({s.strip().upper() for s in symbols if s and s.strip()}))


class ArticleAdapter(ProviderAdapter):
    """Article snippets for a ``symbol::disease`` query (see ``literature_query``)."""

    source = "biomcp"
    tool_name = "article_searcher"
    hit_model = LiteratureHit
    fallback_on_empty = True

    @staticmethod
    def parse_article_lines(raw: str, limit: int) -> list[dict]:
        records = []
        for line in (part.strip() for part in raw.split("\n")):
            pmid = _PMID.search(line)
            doi = _DOI.search(line)
            if not pmid and not doi:
                continue
            records.append(
                {
                    "id": pmid.group(1) if pmid else doi.group(0),
                    "title": re.sub(r"^[-*]\s*", "", line)[:180],
                    "source": "BioMCP",
                    "url": f"https://pubmed.ncbi.nlm.nih.gov/{pmid.group(1)}/" if pmid else f"https://doi.org/{doi.group(0)}",
                    "kind": "article",
                }
            )
            if len(records) >= limit:
                break
        return records

    async def _primary(self, query: str, size: int) -> list[dict]:
        symbol, disease = _split_literature_query(query)
        raw = await self.tools.call_tool_raw(
            self.tool_name,
            {
                "diseases": [disease] if disease else [],
                "genes": [symbol] if symbol else [],
                "page_size": size,
                "include_preprints": False,
            },
            self.tool_timeout,
        )
        return self.parse_article_lines(raw, size)

    async def _fallback(self, query: str, size: int) -> list[dict]:
        symbol, disease = _split_literature_query(query)
        payload = await fetch_json(
            EUROPE_PMC_SEARCH,
            params={
                "query": f"{symbol} {disease}".strip(),
                "format": "json",
                "pageSize": size,
                "resultType": "core",
            },
            timeout=self.fallback_timeout,
        )
        records = []
        for item in _rows(payload, "resultList", "result"):
            if not isinstance(item, dict):
                continue
            pmid, doi = item.get("pmid"), item.get("doi")
            if pmid:
                url = f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
            elif doi:
                url = f"https://doi.org/{doi}"
            else:
                url = "https://europepmc.org/"
            records.append(
                {
                    "id": pmid or doi or item.get("id"),
                    "title": item.get("title") or "Untitled article",
                    "source": item.get("journalTitle") or "Europe PMC",
                    "url": url,
                    "kind": "article",
                }
            )
        return records


class TrialAdapter(ProviderAdapter):
    """Clinical trials for a ``symbol::disease`` query."""

    source = "biomcp"
    tool_name = "trial_searcher"
    hit_model = LiteratureHit
    fallback_on_empty = True

    @staticmethod
    def parse_trial_lines(raw: str, limit: int) -> list[dict]:
        records = []
        for line in (part.strip() for part in raw.split("\n")):
            match = _NCT.search(line)
            if not match:
                continue
            nct_id = match.group(1).upper()
            records.append(
                {
                    "id": nct_id,
                    "title": re.sub(r"^[-*]\s*", "", line)[:180],
                    "source": "BioMCP",
                    "url": f"https://clinicaltrials.gov/study/{nct_id}",
                    "kind": "trial",
                }
            )
            if len(records) >= limit:
                break
        return records

    async def _primary(self, query: str, size: int) -> list[dict]:
        symbol, disease = _split_literature_query(query)
        raw = await self.tools.call_tool_raw(
            self.tool_name,
            {
                "conditions": [disease] if disease else [],
                "terms": [symbol] if symbol else [],
                "page_size": size,
            },
            self.tool_timeout,
        )
        return self.parse_trial_lines(raw, size)

    async def _fallback(self, query: str, size: int) -> list[dict]:
        symbol, disease = _split_literature_query(query)
        payload = await fetch_json(
            CTGOV_STUDIES,
            params={"query.term": f"{disease} {symbol}".strip(), "pageSize": size},
            timeout=self.fallback_timeout,
        )
        records = []
        for study in _rows(payload, "studies"):
            ident = _dig(study, "protocolSection", "identificationModule") or {}
            status = _dig(study, "protocolSection", "statusModule") or {}
            nct_id = ident.get("nctId")
            records.append(
                {
                    "id": nct_id,
                    "title": ident.get("briefTitle") or "Untitled trial",
                    "source": "ClinicalTrials.gov",
                    "url": f"https://clinicaltrials.gov/study/{nct_id}" if nct_id else None,
                    "kind": "trial",
                    "status": status.get("overallStatus"),
                }
            )
        return records


@dataclass
class ProviderSet:
    diseases: ProviderAdapter
    targets: ProviderAdapter
    known_drugs: ProviderAdapter
    activity_drugs: ProviderAdapter
    pathways: ProviderAdapter
    interactions: ProviderAdapter
    articles: ProviderAdapter
    trials: ProviderAdapter


_providers: ProviderSet | None = None


def get_providers() -> ProviderSet:
    """Process-wide adapters; their caches outlive individual builds."""
    global _providers
    if _providers is None:
        opentargets = McpToolClient(settings.OPENTARGETS_MCP_URL)
        biomcp = McpToolClient(settings.BIOMCP_URL)
        _providers = ProviderSet(
            diseases=DiseaseSearchAdapter(opentargets),
            targets=DiseaseTargetsAdapter(opentargets),
            known_drugs=KnownDrugsAdapter(),
            activity_drugs=ActivityDrugsAdapter(McpToolClient(settings.CHEMBL_MCP_URL)),
            pathways=PathwayAdapter(McpToolClient(settings.REACTOME_MCP_URL)),
            interactions=InteractionAdapter(McpToolClient(settings.STRING_MCP_URL)),
            articles=ArticleAdapter(biomcp),
            trials=TrialAdapter(biomcp),
        )
    return _providers
