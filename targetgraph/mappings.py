import re

SOURCES: tuple[str, ...] = ("opentargets", "reactome", "string", "chembl", "biomcp")

# Ordered from best to worst.
HEALTH_LEVELS: tuple[str, ...] = ("green", "yellow", "red")

# Health key for the LLM refinement step, reported alongside the providers.
LLM_HEALTH_KEY = "gemini"

# Disease ontology prefixes preferred when picking a resolver candidate.
DISEASE_ID_PATTERN = re.compile(r"^(EFO|MONDO|ORPHANET|DOID|HP)[_:]", re.IGNORECASE)

# (start, end) progress percentages announced by each phase.
PHASE_PROGRESS: dict[str, tuple[int, int]] = {
    "P0": (5, 12),
    "P1": (18, 30),
    "P2": (36, 52),
    "P3": (58, 68),
    "P4": (72, 80),
    "P5": (84, 90),
    "P6": (94, 98),
}

PHASE_TITLES: dict[str, str] = {
    "P0": "Resolving disease",
    "P1": "Collecting disease targets",
    "P2": "Mapping pathways",
    "P3": "Linking drugs",
    "P4": "Expanding interaction neighborhood",
    "P5": "Gathering literature and trials",
    "P6": "Ranking targets",
}

# Each profile widens every bound of the one before it.
DEPTH_PROFILES: dict[str, dict[str, int]] = {
    "fast": {
        "max_targets": 6,
        "pathways_per_target": 4,
        "drug_targets": 4,
        "drugs_per_target": 4,
        "interaction_seeds": 6,
        "interaction_neighbors": 5,
        "literature_targets": 2,
        "literature_items": 3,
        "fan_out": 2,
    },
    "balanced": {
        "max_targets": 12,
        "pathways_per_target": 6,
        "drug_targets": 8,
        "drugs_per_target": 6,
        "interaction_seeds": 10,
        "interaction_neighbors": 10,
        "literature_targets": 4,
        "literature_items": 4,
        "fan_out": 4,
    },
    "deep": {
        "max_targets": 20,
        "pathways_per_target": 8,
        "drug_targets": 12,
        "drugs_per_target": 8,
        "interaction_seeds": 14,
        "interaction_neighbors": 15,
        "literature_targets": 6,
        "literature_items": 5,
        "fan_out": 6,
    },
}

# Weighted sum used by the deterministic ranking.
RANKING_WEIGHTS: dict[str, float] = {
    "openTargetsEvidence": 0.40,
    "drugActionability": 0.25,
    "networkCentrality": 0.20,
    "literatureSupport": 0.15,
}

MAX_RANKED_TARGETS = 20

RANKING_DATA_GAPS: list[str] = [
    "Evidence derived from currently available tool and API responses only",
    "No claim of efficacy or clinical recommendation",
]

NEXT_ACTIONS: list[str] = [
    "Validate the lead target in a disease-relevant cellular perturbation model.",
    "Cross-check linked compounds for selectivity and clinical-stage liabilities.",
    "Re-run the build in deep mode to widen pathway and interaction coverage.",
]
