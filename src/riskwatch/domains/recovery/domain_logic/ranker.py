"""Recommendation ranking over the intervention catalog.

``rank`` is a pure function of its inputs. The only source of randomness is
an optional ``random.Random`` that orders entries still tied after
difficulty and duration (before the id).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Mapping, Sequence

from riskwatch.domains.recovery.domain_logic.models import (
    DEFAULT_CATEGORY_WEIGHT,
    DEFAULT_RANK_LIMIT,
    DIFFICULTY_ORDER,
    HIGH_RISK_CATEGORIES,
    LOW_MOOD_CATEGORIES,
    LOW_MOOD_MAX,
    RISK_LEVEL_ORDER,
    CandidateIntervention,
    RankingContext,
    Recommendation,
    RiskAssessment,
    Urgency,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def preferred_categories(context: RankingContext, assessment: RiskAssessment) -> frozenset[str] | None:
    """Categories favoured by the current state, or None for no bias."""
    if assessment.level in ("critical", "high"):
        return HIGH_RISK_CATEGORIES
    if context.mood <= LOW_MOOD_MAX:
        return LOW_MOOD_CATEGORIES
    return None


class RecommendationRanker:
    """Filters and orders catalog candidates for the current context.

    Usage::

        ranker = RecommendationRanker()
        recs = ranker.rank(context, assessment, catalog.list_candidates(), weights)
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng

    def rank(
        self,
        context: RankingContext,
        assessment: RiskAssessment,
        catalog: Sequence[CandidateIntervention],
        weights: Mapping[str, float] | None = None,
        limit: int = DEFAULT_RANK_LIMIT,
    ) -> list[Recommendation]:
        """Return at most ``limit`` recommendations, best first.

        Ordered by ``confidence * urgency_weight`` descending, then easier
        difficulty, shorter duration and id. Never empty for a non-empty
        catalog: when every candidate is filtered out the easiest catalog
        entry is returned on its own.
        """
        if not catalog or limit <= 0:
            return []
        weights = weights or {}
        bias = preferred_categories(context, assessment)

        eligible = [
            c for c in catalog
            if c.duration_minutes <= context.available_minutes
            and context.category_enabled(c.category)
            and (bias is None or c.category in bias)
        ]

        if not eligible:
            fallback = min(
                catalog,
                key=lambda c: (DIFFICULTY_ORDER[c.difficulty], c.duration_minutes, c.id),
            )
            logger.info(
                "No candidate matched (level=%s, minutes=%d); falling back to %s",
                assessment.level,
                context.available_minutes,
                fallback.id,
            )
            return [self._to_recommendation(fallback, assessment, weights, fallback=True)]

        recs = [self._to_recommendation(c, assessment, weights) for c in eligible]
        jitter = {r.id: self._rng.random() for r in recs} if self._rng else {}
        recs.sort(key=lambda r: (
            -r.score,
            DIFFICULTY_ORDER[r.difficulty],
            r.time_to_complete,
            jitter.get(r.id, 0.0),
            r.id,
        ))
        return recs[:limit]

    @staticmethod
    def _to_recommendation(
        candidate: CandidateIntervention,
        assessment: RiskAssessment,
        weights: Mapping[str, float],
        *,
        fallback: bool = False,
    ) -> Recommendation:
        weight = weights.get(candidate.category, DEFAULT_CATEGORY_WEIGHT)
        confidence = round(_clamp(candidate.base_confidence * (0.5 + weight)), 4)

        urgency: Urgency = candidate.urgency
        if RISK_LEVEL_ORDER[assessment.level] > RISK_LEVEL_ORDER[urgency]:
            urgency = assessment.level

        if fallback:
            reasoning = "Nothing else fits right now; this is the easiest option available."
        else:
            reasoning = (
                f"Suited to {assessment.level} risk; {candidate.category} has a "
                f"learned weight of {weight:.2f}."
            )
        return Recommendation(
            id=candidate.id,
            type=candidate.type,
            title=candidate.title,
            category=candidate.category,
            confidence=confidence,
            urgency=urgency,
            time_to_complete=candidate.duration_minutes,
            difficulty=candidate.difficulty,
            reasoning=reasoning,
        )

