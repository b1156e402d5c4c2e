"""Outcome feedback loop.

The only writer of learned state: per-category weights (an exponential moving
average of reported effectiveness) and per-activity adaptive difficulty.
"""

from __future__ import annotations

import logging
import math

from riskwatch.core.audit.logger import AuditEvent, AuditLogger
from riskwatch.core.storage.models import ActivityDifficulty, OutcomeRecord
from riskwatch.core.storage.repository import RecoveryRepository
from riskwatch.domains.recovery.domain_logic.models import (
    DEFAULT_CATEGORY_WEIGHT,
    DIFFICULTY_INITIAL,
    DIFFICULTY_MAX,
    DIFFICULTY_MIN,
    DIFFICULTY_STEP,
    EMA_LEARN,
    EMA_RETAIN,
    LOWER_RATIO,
    RAISE_RATIO,
    TARGET_SCORE_INITIAL,
    Recommendation,
)

logger = logging.getLogger(__name__)


class OutcomeFeedbackLoop:
    """Applies recorded outcomes to the ranker's learned state.

    Usage::

        loop = OutcomeFeedbackLoop(repository, audit)
        new_weight = loop.record_outcome(rec, outcome)
        state = loop.record_activity_performance("memory-match", score=95)
    """

    def __init__(self, repository: RecoveryRepository, audit: AuditLogger | None = None) -> None:
        self._repo = repository
        self._audit = audit

    def record_outcome(self, recommendation: Recommendation, outcome: OutcomeRecord) -> float:
        """Append ``outcome`` and fold its effectiveness into the category weight.

        ``new = old * 0.8 + delta * 0.2``, clamped to [0, 1].

        Returns:
            The updated category weight.
        """
        category = recommendation.category
        stored = OutcomeRecord(
            id=outcome.id,
            recommendation_id=recommendation.id,
            category=category,
            delivered=outcome.delivered,
            accepted=outcome.accepted,
            effectiveness_delta=outcome.effectiveness_delta,
            recorded_at=outcome.recorded_at,
        )
        outcome_id = self._repo.append_outcome(stored)

        old = self._repo.get_category_weight(category, DEFAULT_CATEGORY_WEIGHT)
        new = old * EMA_RETAIN + outcome.effectiveness_delta * EMA_LEARN
        new = max(0.0, min(1.0, new))
        self._repo.set_category_weight(category, new)

        logger.info("Category %s weight %.3f -> %.3f", category, old, new)
        if self._audit is not None:
            self._audit.log_event(AuditEvent(
                action="outcome_recorded",
                component="feedback",
                subject_id=outcome_id,
                metadata={
                    "category": category,
                    "accepted": outcome.accepted,
                    "old_weight": round(old, 4),
                    "new_weight": round(new, 4),
                },
            ))
        return new

    def record_activity_performance(self, activity_id: str, score: float) -> ActivityDifficulty:
        """Adapt difficulty and target score to how well the user did.

        Above 90% of the target the activity gets harder, below 40% easier;
        difficulty stays within [0.5, 3.0].
        """
        state = self._repo.get_activity_difficulty(activity_id) or ActivityDifficulty(
            activity_id=activity_id,
            difficulty=DIFFICULTY_INITIAL,
            target_score=TARGET_SCORE_INITIAL,
        )
        ratio = score / state.target_score if state.target_score > 0 else 0.0

        difficulty = state.difficulty
        target = state.target_score
        if ratio > RAISE_RATIO:
            difficulty = min(DIFFICULTY_MAX, difficulty + DIFFICULTY_STEP)
            target = math.ceil(round(target * 1.1, 6))
        elif ratio < LOWER_RATIO:
            difficulty = max(DIFFICULTY_MIN, difficulty - DIFFICULTY_STEP)
            target = math.ceil(round(target * 0.9, 6))

        # Rounding keeps repeated 0.1 steps from drifting past the bounds.
        updated = ActivityDifficulty(
            activity_id=activity_id,
            difficulty=round(difficulty, 2),
            target_score=max(1, target),
        )
        self._repo.save_activity_difficulty(updated)
        logger.debug(
            "Activity %s ratio=%.2f difficulty %.1f -> %.1f target %d -> %d",
            activity_id, ratio, state.difficulty, updated.difficulty,
            state.target_score, updated.target_score,
        )
        return updated

    def get_weights(self) -> dict[str, float]:
        return self._repo.get_category_weights()
