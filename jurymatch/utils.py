"""Shared helpers: JSON column parsing and canonical field normalization."""
from __future__ import annotations

import json
from typing import Any, Iterable

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def json_list(value: str | None) -> list[str]:
    """Parse a ``*_json`` column holding a list of strings."""
    parsed = json_parse(value, [])
    if not isinstance(parsed, list):
        return []
    return [str(v) for v in parsed if v is not None and str(v).strip()]


# ---------------------------------------------------------------------------
# Canonical vocabularies
# ---------------------------------------------------------------------------

CANONICAL_REGIONS: dict[str, list[str]] = {
    "Europe": ["EU", "Europe", "European Union", "EMEA"],
    "North America": ["NA", "North America", "USA", "US", "United States", "Canada"],
    "Asia": ["Asia", "APAC", "Asia Pacific", "SEA", "Southeast Asia"],
    "Middle East": ["ME", "Middle East", "MENA", "Gulf"],
    "Africa": ["Africa", "Sub-Saharan Africa", "North Africa"],
    "Latin America": ["LATAM", "Latin America", "South America", "Central America"],
    "Global": ["Global", "Worldwide", "International"],
}

CANONICAL_STAGES: dict[str, list[str]] = {
    "Pre-Seed": ["Pre-Seed", "Preseed", "Idea", "Concept"],
    "Seed": ["Seed", "Early Seed", "Late Seed"],
    "Series A": ["Series A", "A", "Post-Seed"],
    "Series B": ["Series B", "B", "Growth"],
    "Series C+": ["Series C", "C", "Series D", "D", "Late Stage"],
}

CANONICAL_VERTICALS: dict[str, list[str]] = {
    "Fintech": ["Fintech", "Financial Technology", "Finance", "Banking", "Payments"],
    "Healthcare": ["Healthcare", "Health", "MedTech", "Digital Health", "Biotech"],
    "Enterprise": ["Enterprise", "B2B", "SaaS", "Enterprise Software"],
    "Consumer": ["Consumer", "B2C", "E-commerce", "Retail"],
    "Climate": ["Climate", "CleanTech", "Green Tech", "Sustainability"],
    "AI/ML": ["AI", "ML", "Artificial Intelligence", "Machine Learning", "Deep Learning"],
    "EdTech": ["EdTech", "Education", "Learning", "E-learning"],
    "PropTech": ["PropTech", "Real Estate", "Property Technology"],
    "Mobility": ["Mobility", "Transportation", "Automotive", "Logistics"],
}

GLOBAL_REGION = "Global"


def _alias_index(vocabulary: dict[str, list[str]]) -> dict[str, str]:
    return {
        alias.casefold(): canonical
        for canonical, aliases in vocabulary.items()
        for alias in aliases
    }


_REGION_ALIASES = _alias_index(CANONICAL_REGIONS)
_STAGE_ALIASES = _alias_index(CANONICAL_STAGES)
_VERTICAL_ALIASES = _alias_index(CANONICAL_VERTICALS)


def _normalize(value: str, aliases: dict[str, str]) -> str:
    stripped = value.strip()
    return aliases.get(stripped.casefold(), stripped)


def _normalize_all(values: Iterable[str], aliases: dict[str, str]) -> list[str]:
    out: list[str] = []
    for v in values:
        if not v or not v.strip():
            continue
        canonical = _normalize(v, aliases)
        if canonical not in out:
            out.append(canonical)
    return out


def normalize_stage(value: str) -> str:
    return _normalize(value, _STAGE_ALIASES)


def normalize_regions(values: Iterable[str]) -> list[str]:
    return _normalize_all(values, _REGION_ALIASES)


def normalize_stages(values: Iterable[str]) -> list[str]:
    return _normalize_all(values, _STAGE_ALIASES)


def normalize_verticals(values: Iterable[str]) -> list[str]:
    return _normalize_all(values, _VERTICAL_ALIASES)
