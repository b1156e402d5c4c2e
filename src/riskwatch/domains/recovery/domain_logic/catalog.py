"""Intervention catalog — read-only candidates loaded from YAML at startup."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, get_args

import yaml

from riskwatch.domains.recovery.domain_logic.models import (
    CandidateIntervention,
    Difficulty,
    RecommendationType,
    Urgency,
)

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "catalog" / "interventions.yaml"


class CatalogError(Exception):
    """Raised when the catalog file is missing or malformed."""


class InterventionCatalog:
    """Immutable collection of CandidateIntervention, in file order.

    Usage::

        catalog = load_catalog_file(DEFAULT_CATALOG_PATH)
        breathing = catalog.list_candidates("breathing")
    """

    def __init__(self, candidates: list[CandidateIntervention]) -> None:
        self._candidates = tuple(candidates)
        self._by_id = {c.id: c for c in self._candidates}

    def __len__(self) -> int:
        return len(self._candidates)

    def list_candidates(self, category: str | None = None) -> list[CandidateIntervention]:
        if category is None:
            return list(self._candidates)
        return [c for c in self._candidates if c.category == category]

    def get(self, intervention_id: str) -> CandidateIntervention | None:
        return self._by_id.get(intervention_id)

    def categories(self) -> list[str]:
        return sorted({c.category for c in self._candidates})

    def to_list(self) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "title": c.title,
                "type": c.type,
                "category": c.category,
                "duration_minutes": c.duration_minutes,
                "difficulty": c.difficulty,
                "base_confidence": c.base_confidence,
                "urgency": c.urgency,
                "adaptive": c.adaptive,
                "description": c.description,
            }
            for c in self._candidates
        ]


def _choice(entry: dict[str, Any], key: str, allowed: tuple[str, ...], default: str | None = None) -> str:
    value = entry.get(key, default)
    if value not in allowed:
        raise CatalogError(
            f"Intervention {entry.get('id')!r}: {key} must be one of {', '.join(allowed)}, got {value!r}"
        )
    return value


def _parse_candidate(entry: dict[str, Any]) -> CandidateIntervention:
    try:
        candidate_id = str(entry["id"])
        title = str(entry["title"])
        category = str(entry["category"])
        duration = int(entry["duration_minutes"])
        base_confidence = float(entry["base_confidence"])
    except KeyError as exc:
        raise CatalogError(f"Intervention {entry.get('id')!r} is missing {exc.args[0]!r}") from exc
    except (TypeError, ValueError) as exc:
        raise CatalogError(f"Intervention {entry.get('id')!r} has a malformed field: {exc}") from exc

    if duration <= 0:
        raise CatalogError(f"Intervention {candidate_id!r}: duration_minutes must be positive")
    if not 0.0 <= base_confidence <= 1.0:
        raise CatalogError(f"Intervention {candidate_id!r}: base_confidence must be within 0..1")

    return CandidateIntervention(
        id=candidate_id,
        title=title,
        type=_choice(entry, "type", get_args(RecommendationType)),
        category=category,
        duration_minutes=duration,
        difficulty=_choice(entry, "difficulty", get_args(Difficulty)),
        base_confidence=base_confidence,
        urgency=_choice(entry, "urgency", get_args(Urgency), default="low"),
        adaptive=bool(entry.get("adaptive", False)),
        description=str(entry.get("description") or "").strip(),
    )


def load_catalog_data(data: dict[str, Any]) -> InterventionCatalog:
    """Build a catalog from already-parsed YAML content.

    Raises:
        CatalogError: On a malformed entry, a duplicate id or an empty catalog.
    """
    if not isinstance(data, dict) or not isinstance(data.get("interventions"), list):
        raise CatalogError("Catalog must be a mapping with an 'interventions' list")

    candidates: list[CandidateIntervention] = []
    seen: set[str] = set()
    for entry in data["interventions"]:
        if not isinstance(entry, dict):
            raise CatalogError(f"Catalog entry must be a mapping, got {type(entry).__name__}")
        candidate = _parse_candidate(entry)
        if candidate.id in seen:
            raise CatalogError(f"Duplicate intervention id: {candidate.id!r}")
        seen.add(candidate.id)
        candidates.append(candidate)

    if not candidates:
        raise CatalogError("Catalog contains no interventions")
    return InterventionCatalog(candidates)


def load_catalog_file(path: str | Path | None = None) -> InterventionCatalog:
    """Parse the YAML catalog at ``path`` (the packaged catalog by default)."""
    path = Path(path).expanduser() if path else DEFAULT_CATALOG_PATH
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise CatalogError(f"Cannot read catalog {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise CatalogError(f"Invalid YAML in catalog {path}: {exc}") from exc

    catalog = load_catalog_data(data)
    logger.info("Loaded %d interventions from %s", len(catalog), path)
    return catalog
